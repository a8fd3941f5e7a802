import logging
from typing import Any, Dict, List, Optional

from .errors import NotFoundError, ValidationError
from .models import DEVICE_TYPES, AccessDevice, BiometricSyncItem, DeviceCommand, as_dict

logger = logging.getLogger(__name__)

# Fields an administrator may set. Liveness (is_online, last_heartbeat) and
# last_sync are owned by the heartbeat and sync paths.
EDITABLE_FIELDS = (
    "device_name",
    "ip_address",
    "mac_address",
    "branch_id",
    "device_type",
    "model",
    "serial_number",
    "relay_mode",
    "relay_delay",
)
# Empty values are ignored for these on update; the rest may be cleared
REQUIRED_ON_UPDATE = ("device_name", "ip_address", "branch_id", "device_type")


class DeviceRegistry:
    """
    Administrative CRUD over physical access terminals.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    @staticmethod
    def _check_type(device_type: str):
        if device_type not in DEVICE_TYPES:
            raise ValidationError(
                f"Invalid device type: {device_type}. Expected one of {', '.join(DEVICE_TYPES)}"
            )

    def add_device(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Register a new device.

        Args:
            data: branch_id, device_name and ip_address are required;
                device_type defaults to "turnstile". Anything outside the
                editable fields is ignored.

        Returns:
            The stored device.
        """
        for field in ("branch_id", "device_name", "ip_address"):
            if not data.get(field):
                raise ValidationError(f"{field} is required")

        device_type = data.get("device_type") or "turnstile"
        self._check_type(device_type)

        values = {k: data.get(k) for k in EDITABLE_FIELDS if data.get(k) is not None}
        values["device_type"] = device_type

        db = self.session_factory()
        try:
            device = AccessDevice(**values)
            db.add(device)
            db.commit()
            db.refresh(device)
            logger.info("Device %s (%s) registered at branch %s", device.id, device.device_name, device.branch_id)
            return as_dict(device)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def update_device(self, device_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Partial update of administrative fields."""
        if updates.get("device_type"):
            self._check_type(updates["device_type"])

        db = self.session_factory()
        try:
            device = db.query(AccessDevice).filter(AccessDevice.id == device_id).first()
            if not device:
                raise NotFoundError("Device not found")

            for field in EDITABLE_FIELDS:
                if field not in updates:
                    continue
                value = updates[field]
                if field in REQUIRED_ON_UPDATE and not value:
                    continue
                setattr(device, field, value)

            db.commit()
            db.refresh(device)
            return as_dict(device)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def delete_device(self, device_id: str) -> None:
        """
        Hard delete. Queued commands and sync work for the device go with it;
        access events keep their device_id for the audit trail.
        """
        db = self.session_factory()
        try:
            device = db.query(AccessDevice).filter(AccessDevice.id == device_id).first()
            if not device:
                raise NotFoundError("Device not found")

            db.query(DeviceCommand).filter(DeviceCommand.device_id == device_id).delete(synchronize_session=False)
            db.query(BiometricSyncItem).filter(BiometricSyncItem.device_id == device_id).delete(synchronize_session=False)
            db.delete(device)
            db.commit()
            logger.info("Device %s removed", device_id)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def fetch_devices(self, branch_id: Optional[str] = None) -> List[Dict[str, Any]]:
        db = self.session_factory()
        try:
            query = db.query(AccessDevice)
            if branch_id:
                query = query.filter(AccessDevice.branch_id == branch_id)
            return [as_dict(d) for d in query.order_by(AccessDevice.device_name).all()]
        finally:
            db.close()

    def fetch_device(self, device_id: str) -> Optional[Dict[str, Any]]:
        db = self.session_factory()
        try:
            device = db.query(AccessDevice).filter(AccessDevice.id == device_id).first()
            return as_dict(device) if device else None
        finally:
            db.close()

    def get_device_stats(self, branch_id: Optional[str] = None) -> Dict[str, Any]:
        """Online/offline counts and a per-type breakdown."""
        devices = self.fetch_devices(branch_id)
        online = len([d for d in devices if d["is_online"]])
        by_type: Dict[str, int] = {}
        for d in devices:
            by_type[d["device_type"]] = by_type.get(d["device_type"], 0) + 1
        return {
            "total": len(devices),
            "online": online,
            "offline": len(devices) - online,
            "by_type": by_type,
        }
