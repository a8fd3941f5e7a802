"""
Turnstile decisions for face-recognition devices.

A device posts the person it recognized; the service answers OPEN or DENIED
with the LED color, relay delay and the text to show, opens the visit when
access is granted and logs exactly one access event per decision.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .access_events import AccessEventLog
from .attendance import AttendanceValidator, StaffAttendanceService
from .errors import NotFoundError, ValidationError
from .models import AccessDevice, Employee, Member, utcnow
from .settings import DEFAULT_RELAY_DELAY

logger = logging.getLogger(__name__)

MEMBER_DENIAL_MESSAGES = {
    "expired": "Membership Expired - See Reception",
    "frozen": "Membership Frozen",
    "no_membership": "No Active Plan",
}


def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return utcnow()
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Invalid timestamp: {value}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _photo_preview(photo_base64: Optional[str]) -> Optional[str]:
    # Only a prefix of the capture is kept on the event row
    if not photo_base64:
        return None
    return f"data:image/jpeg;base64,{photo_base64[:100]}..."


def _open(message: str, relay_delay: Optional[int], **extra) -> Dict[str, Any]:
    return {"action": "OPEN", "message": message, "led_color": "GREEN",
            "relay_delay": relay_delay or DEFAULT_RELAY_DELAY, **extra}


def _denied(message: str, **extra) -> Dict[str, Any]:
    return {"action": "DENIED", "message": message, "led_color": "RED", "relay_delay": 0, **extra}


class GateDecisionService:
    def __init__(self, session_factory, event_log: AccessEventLog,
                 validator: AttendanceValidator, staff_attendance: StaffAttendanceService):
        self.session_factory = session_factory
        self.event_log = event_log
        self.validator = validator
        self.staff_attendance = staff_attendance

    def _lookup(self, device_id: str, person_uuid: str):
        db = self.session_factory()
        try:
            device = db.query(AccessDevice).filter(AccessDevice.id == device_id).first()
            if not device:
                raise NotFoundError("Device not found")
            member = db.query(Member).filter(Member.id == person_uuid).first()
            employee = None
            if not member:
                employee = db.query(Employee).filter(Employee.id == person_uuid).first()
            return device, member, employee
        finally:
            db.close()

    def _member_decision(self, device: AccessDevice, member: Member):
        name = member.full_name or "Member"
        who = {"person_name": name, "member_code": member.member_code}

        if member.branch_id != device.branch_id:
            return _denied("Wrong Branch", **who), "wrong_branch"

        result = self.validator.check_in(member.id, device.branch_id, method="biometric")
        if result["valid"]:
            return _open(f"Welcome, {name}!", device.relay_delay,
                         plan_name=result.get("plan_name"),
                         days_remaining=result.get("days_remaining"), **who), None

        reason = result.get("reason") or "unknown"
        if reason == "already_checked_in":
            return _open(f"Welcome back, {name}!", device.relay_delay, **who), None

        message = MEMBER_DENIAL_MESSAGES.get(reason, result.get("message") or "Please See Reception")
        return _denied(message, **who), reason

    def _staff_decision(self, device: AccessDevice, employee: Employee):
        name = employee.full_name or "Staff"
        if not employee.is_active:
            return _denied("Account Inactive", person_name=name), "inactive"
        if employee.branch_id != device.branch_id:
            return _denied("Wrong Branch", person_name=name), "wrong_branch"

        result = self.staff_attendance.check_in(employee.id, device.branch_id, method="biometric")
        if not result["success"] and result.get("reason") != "already_checked_in":
            return _denied(result["message"], person_name=name), result.get("reason")
        return _open(f"Welcome, {name}!", device.relay_delay, person_name=name), None

    def handle_access_event(self, device_id: str, person_uuid: str, confidence: Optional[float] = None,
                            photo_base64: Optional[str] = None,
                            timestamp: Optional[str] = None) -> Dict[str, Any]:
        """Decide OPEN/DENIED for a recognized face and log the outcome."""
        if not device_id or not person_uuid:
            raise ValidationError("device_id and person_uuid are required")

        processed_at = _parse_timestamp(timestamp)
        device, member, employee = self._lookup(device_id, person_uuid)

        event = {
            "device_id": device.id,
            "branch_id": device.branch_id,
            "event_type": "face_recognized",
            "confidence_score": confidence,
            "photo_url": _photo_preview(photo_base64),
            "processed_at": processed_at,
        }

        if member:
            event["member_id"] = member.id
            response, denial_reason = self._member_decision(device, member)
        elif employee:
            event["staff_id"] = employee.id
            response, denial_reason = self._staff_decision(device, employee)
        else:
            response, denial_reason = _denied("Not Registered"), "not_found"

        granted = response["action"] == "OPEN"
        event.update(
            access_granted=granted,
            denial_reason=None if granted else denial_reason,
            response_sent=response["action"],
            device_message=response["message"],
        )
        self.event_log.record_event(**event)

        logger.info("Device %s: %s for %s (%s)", device_id, response["action"], person_uuid,
                    denial_reason or "granted")
        return response
