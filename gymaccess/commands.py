"""
Remote device commands: staff-issued relay triggers and the device-side
transport (pull pending work, report the outcome).

Command lifecycle: pending -> sent -> acknowledged | failed. Every status
change is published on the ``device_command_<id>`` realtime channel.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from .access_events import AccessEventLog
from .auth import TokenAuthenticator
from .errors import ConflictError, DeviceOfflineError, NotFoundError, ValidationError
from .models import STAFF_ROLES, AccessDevice, DeviceCommand, Employee, as_dict, utcnow
from .realtime import RealtimeHub
from .settings import DEFAULT_RELAY_DELAY

logger = logging.getLogger(__name__)

COMMANDS_TABLE = DeviceCommand.__tablename__
TERMINAL_STATUSES = ("acknowledged", "failed")


def command_channel(command_id: str) -> str:
    return f"device_command_{command_id}"


def resolve_duration(duration: Optional[int], relay_delay: Optional[int]) -> int:
    """Requested duration, else the device's relay delay, else the default. Zero falls through."""
    return duration or relay_delay or DEFAULT_RELAY_DELAY


class CommandDispatcher:
    def __init__(self, session_factory, event_log: AccessEventLog, hub: RealtimeHub,
                 authenticator: TokenAuthenticator):
        self.session_factory = session_factory
        self.event_log = event_log
        self.hub = hub
        self.authenticator = authenticator

    def _publish_status(self, command: DeviceCommand):
        self.hub.publish(COMMANDS_TABLE, "UPDATE", {
            "id": command.id,
            "device_id": command.device_id,
            "status": command.status,
            "executed_at": command.executed_at.isoformat() if command.executed_at else None,
        })

    def trigger_relay(self, user_id: str, device_id: str, duration: Optional[int] = None) -> Dict[str, Any]:
        """
        Open a device's relay on behalf of a staff member.

        The caller's role is checked before anything else is read or written.
        An offline device fails fast and nothing is recorded. On success a
        pending relay_open command and a manual_trigger access event are
        written together.
        """
        self.authenticator.require_role(user_id, STAFF_ROLES)

        if not device_id:
            raise ValidationError("device_id is required")
        if duration is not None and duration < 0:
            raise ValidationError("duration must not be negative")

        db = self.session_factory()
        try:
            device = db.query(AccessDevice).filter(AccessDevice.id == device_id).first()
            if not device:
                raise NotFoundError("Device not found")
            if not device.is_online:
                logger.info("Relay trigger refused: device %s is offline", device_id)
                raise DeviceOfflineError()

            resolved = resolve_duration(duration, device.relay_delay)
            employee = db.query(Employee).filter(Employee.user_id == user_id).first()

            command = DeviceCommand(
                device_id=device.id,
                command_type="relay_open",
                payload={"duration": resolved},
                issued_by=user_id,
                status="pending",
            )
            db.add(command)
            event = self.event_log.add_event(
                db,
                device_id=device.id,
                branch_id=device.branch_id,
                staff_id=employee.id if employee else None,
                event_type="manual_trigger",
                access_granted=True,
                response_sent="OPEN",
                device_message="Manual trigger by staff",
                processed_at=utcnow(),
            )
            self.event_log.commit(db, event)
            db.refresh(command)

            device_name = device.device_name
            command_id = command.id
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info("Relay trigger %s queued for device %s by user %s (%ss)",
                    command_id, device_id, user_id, resolved)
        return {
            "success": True,
            "message": "Relay trigger command sent",
            "device_id": device_id,
            "device_name": device_name,
            "duration": resolved,
            "command_id": command_id,
        }

    def send_device_command(self, device_id: str, command_type: str = "relay_open",
                            payload: Optional[Dict[str, Any]] = None,
                            issued_by: Optional[str] = None) -> Dict[str, Any]:
        """Queue an arbitrary command for a device."""
        if not command_type:
            raise ValidationError("command_type is required")

        db = self.session_factory()
        try:
            if not db.query(AccessDevice.id).filter(AccessDevice.id == device_id).first():
                raise NotFoundError("Device not found")
            command = DeviceCommand(
                device_id=device_id,
                command_type=command_type,
                payload=payload if payload is not None else {"duration": DEFAULT_RELAY_DELAY},
                issued_by=issued_by,
                status="pending",
            )
            db.add(command)
            db.commit()
            db.refresh(command)
            return as_dict(command)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_command(self, command_id: str) -> Optional[Dict[str, Any]]:
        db = self.session_factory()
        try:
            command = db.query(DeviceCommand).filter(DeviceCommand.id == command_id).first()
            return as_dict(command) if command else None
        finally:
            db.close()

    def fetch_pending_commands(self, device_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Hand pending commands to the device, oldest first, and mark them sent."""
        db = self.session_factory()
        try:
            if not db.query(AccessDevice.id).filter(AccessDevice.id == device_id).first():
                raise NotFoundError("Device not found")

            commands = db.query(DeviceCommand).filter(
                DeviceCommand.device_id == device_id,
                DeviceCommand.status == "pending",
            ).order_by(DeviceCommand.created_at).limit(limit).all()

            now = utcnow()
            for command in commands:
                command.status = "sent"
                command.sent_at = now
            db.commit()
            for command in commands:
                db.refresh(command)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        for command in commands:
            self._publish_status(command)
        return [as_dict(c) for c in commands]

    def report_command_result(self, command_id: str, success: bool) -> Dict[str, Any]:
        """Device callback closing a command as acknowledged or failed."""
        db = self.session_factory()
        try:
            command = db.query(DeviceCommand).filter(DeviceCommand.id == command_id).first()
            if not command:
                raise NotFoundError("Command not found")
            if command.status in TERMINAL_STATUSES:
                raise ConflictError(f"Command already {command.status}")

            command.status = "acknowledged" if success else "failed"
            command.executed_at = utcnow()
            db.commit()
            db.refresh(command)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if not success:
            logger.warning("Device %s reported command %s failed", command.device_id, command_id)
        self._publish_status(command)
        return as_dict(command)

    def subscribe_to_command_status(self, command_id: str,
                                    callback: Callable[[str, Optional[str]], None]) -> Callable[[], None]:
        """Call ``callback(status, executed_at)`` on every update; returns the teardown."""
        def on_update(row):
            callback(row["status"], row.get("executed_at"))

        return self.hub.subscribe(
            command_channel(command_id),
            "UPDATE",
            COMMANDS_TABLE,
            on_update,
            filter=f"id=eq.{command_id}",
        )
