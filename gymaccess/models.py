"""
SQLAlchemy models for the access-control service.
"""
import uuid
from datetime import date, datetime, timezone
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

DEVICE_TYPES = ("turnstile", "face_terminal", "other")
COMMAND_STATUSES = ("pending", "sent", "acknowledged", "failed")
SYNC_TYPES = ("add", "update", "delete")
SYNC_STATUSES = ("pending", "syncing", "completed", "failed")
STAFF_ROLES = ("owner", "admin", "manager", "staff")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_dict(row) -> Dict[str, Any]:
    """Column values of a model instance, dates as ISO strings (JSON serializable)."""
    out = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        if isinstance(value, (datetime, date)):
            value = value.isoformat()
        out[column.key] = value
    return out


# Tenant / people records. Owned by other parts of the platform; modelled here
# so the access core can resolve references on its own.

class Branch(Base):
    """A tenant's physical location."""
    __tablename__ = "branches"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Member(Base):
    __tablename__ = "members"

    id = Column(String(36), primary_key=True, default=new_id)
    branch_id = Column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    member_code = Column(String, unique=True, nullable=False)
    full_name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    biometric_photo_url = Column(String, nullable=True)
    biometric_enrolled = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Employee(Base):
    __tablename__ = "employees"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=True, index=True)
    branch_id = Column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    employee_code = Column(String, unique=True, nullable=False)
    full_name = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    biometric_photo_url = Column(String, nullable=True)
    biometric_enrolled = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class UserRole(Base):
    __tablename__ = "user_roles"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    role = Column(String, nullable=False)

    __table_args__ = (UniqueConstraint("user_id", "role", name="uq_user_role"),)


class ApiToken(Base):
    """Bearer token issued to a user. Only the SHA-256 digest is stored."""
    __tablename__ = "api_tokens"

    id = Column(Integer, primary_key=True)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    revoked = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class MembershipPlan(Base):
    __tablename__ = "membership_plans"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    duration_days = Column(Integer, nullable=False)


class Membership(Base):
    __tablename__ = "memberships"

    id = Column(String(36), primary_key=True, default=new_id)
    member_id = Column(String(36), ForeignKey("members.id"), nullable=False, index=True)
    plan_id = Column(String(36), ForeignKey("membership_plans.id"), nullable=False)
    branch_id = Column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    status = Column(String, default="active", nullable=False)  # active|frozen|expired|cancelled
    created_at = Column(DateTime, default=utcnow, nullable=False)


class MembershipFreeze(Base):
    """A period during which a membership cannot be used."""
    __tablename__ = "membership_freezes"

    id = Column(Integer, primary_key=True)
    membership_id = Column(String(36), ForeignKey("memberships.id"), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    reason = Column(String, nullable=True)


# Access-control core

class AccessDevice(Base):
    """Physical terminal: turnstile relay or face-recognition reader."""
    __tablename__ = "access_devices"

    id = Column(String(36), primary_key=True, default=new_id)
    branch_id = Column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    device_name = Column(String, nullable=False)
    ip_address = Column(String, nullable=False)
    mac_address = Column(String, nullable=True)
    device_type = Column(String, default="turnstile", nullable=False)
    model = Column(String, nullable=True)
    firmware_version = Column(String, nullable=True)
    serial_number = Column(String, nullable=True)
    relay_mode = Column(Integer, nullable=True)
    relay_delay = Column(Integer, nullable=True)
    # Liveness, written by the heartbeat path only
    is_online = Column(Boolean, default=False, nullable=False)
    last_heartbeat = Column(DateTime, nullable=True)
    last_sync = Column(DateTime, nullable=True)
    config = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class DeviceAccessEvent(Base):
    """Append-only audit record of a grant/deny decision."""
    __tablename__ = "device_access_events"

    id = Column(String(36), primary_key=True, default=new_id)
    # No FK: the row outlives the device it came from
    device_id = Column(String(36), nullable=True, index=True)
    branch_id = Column(String(36), nullable=False, index=True)
    member_id = Column(String(36), nullable=True, index=True)
    staff_id = Column(String(36), nullable=True)
    event_type = Column(String, nullable=False)
    access_granted = Column(Boolean, nullable=False)
    denial_reason = Column(String, nullable=True)
    confidence_score = Column(Float, nullable=True)
    photo_url = Column(Text, nullable=True)
    response_sent = Column(String, nullable=True)  # OPEN|DENIED
    device_message = Column(String, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class DeviceCommand(Base):
    __tablename__ = "device_commands"

    id = Column(String(36), primary_key=True, default=new_id)
    device_id = Column(String(36), ForeignKey("access_devices.id", ondelete="CASCADE"), nullable=False, index=True)
    command_type = Column(String, default="relay_open", nullable=False)
    payload = Column(JSON, nullable=True)
    issued_by = Column(String(36), nullable=True)
    status = Column(String, default="pending", nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    sent_at = Column(DateTime, nullable=True)
    executed_at = Column(DateTime, nullable=True)


class BiometricSyncItem(Base):
    """One unit of enrollment work for one person on one device."""
    __tablename__ = "biometric_sync_queue"

    id = Column(String(36), primary_key=True, default=new_id)
    member_id = Column(String(36), nullable=True, index=True)
    staff_id = Column(String(36), nullable=True, index=True)
    person_uuid = Column(String(36), nullable=False)  # member_id or staff_id
    person_name = Column(String, nullable=True)
    device_id = Column(String(36), nullable=False, index=True)
    sync_type = Column(String, default="add", nullable=False)
    photo_url = Column(String, nullable=True)
    status = Column(String, default="pending", nullable=False, index=True)
    retry_count = Column(Integer, default=0, nullable=False)
    error_message = Column(String, nullable=True)
    queued_at = Column(DateTime, default=utcnow, nullable=False)
    # Set by a device pull, cleared when that pull reports back
    claimed_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("person_uuid", "device_id", name="uq_sync_person_device"),
    )


class MemberAttendance(Base):
    __tablename__ = "member_attendance"

    id = Column(String(36), primary_key=True, default=new_id)
    member_id = Column(String(36), ForeignKey("members.id"), nullable=False, index=True)
    branch_id = Column(String(36), nullable=False, index=True)
    membership_id = Column(String(36), nullable=True)
    check_in = Column(DateTime, default=utcnow, nullable=False, index=True)
    check_out = Column(DateTime, nullable=True)
    check_in_method = Column(String, default="manual", nullable=False)

    __table_args__ = (
        # One open visit per member
        Index(
            "uq_member_attendance_open",
            "member_id",
            unique=True,
            sqlite_where=text("check_out IS NULL"),
            postgresql_where=text("check_out IS NULL"),
        ),
    )


class StaffAttendance(Base):
    __tablename__ = "staff_attendance"

    id = Column(String(36), primary_key=True, default=new_id)
    employee_id = Column(String(36), ForeignKey("employees.id"), nullable=False, index=True)
    branch_id = Column(String(36), nullable=False, index=True)
    check_in = Column(DateTime, default=utcnow, nullable=False, index=True)
    check_out = Column(DateTime, nullable=True)
    check_in_method = Column(String, default="manual", nullable=False)

    __table_args__ = (
        Index(
            "uq_staff_attendance_open",
            "employee_id",
            unique=True,
            sqlite_where=text("check_out IS NULL"),
            postgresql_where=text("check_out IS NULL"),
        ),
    )


class Lead(Base):
    __tablename__ = "leads"

    id = Column(String(36), primary_key=True, default=new_id)
    branch_id = Column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    full_name = Column(String, nullable=False)
    phone = Column(String, nullable=False, index=True)
    email = Column(String, nullable=True)
    source = Column(String, default="website", nullable=False)
    status = Column(String, default="new", nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
