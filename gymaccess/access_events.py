"""
Append-only access event log with realtime fan-out to dashboard listeners.
"""
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .models import AccessDevice, DeviceAccessEvent, Member, as_dict
from .realtime import RealtimeHub
from .settings import ACCESS_EVENT_LIMIT

logger = logging.getLogger(__name__)

ACCESS_EVENTS_TABLE = DeviceAccessEvent.__tablename__
ACCESS_EVENTS_CHANNEL = "device_access_events_realtime"

# Columns accepted by record_event; id and created_at are assigned here
EVENT_FIELDS = tuple(
    c.key for c in DeviceAccessEvent.__table__.columns if c.key not in ("id", "created_at")
)


class AccessEventLog:
    def __init__(self, session_factory, hub: RealtimeHub):
        self.session_factory = session_factory
        self.hub = hub
        # Held from commit through publish so listeners see events in commit order
        self._commit_lock = threading.Lock()

    def add_event(self, db, **fields) -> DeviceAccessEvent:
        """Stage an event on an open session; the caller finishes with commit()."""
        unknown = set(fields) - set(EVENT_FIELDS)
        if unknown:
            raise TypeError(f"Unknown access event fields: {sorted(unknown)}")
        event = DeviceAccessEvent(**fields)
        db.add(event)
        db.flush()
        return event

    def publish(self, event: DeviceAccessEvent) -> None:
        row = as_dict(event)
        delivered = self.hub.publish(ACCESS_EVENTS_TABLE, "INSERT", row)
        logger.debug("Access event %s delivered to %d listener(s)", row["id"], delivered)

    def commit(self, db, *events: DeviceAccessEvent) -> None:
        """Commit the session and publish its staged events."""
        with self._commit_lock:
            db.commit()
            for event in events:
                db.refresh(event)
                self.publish(event)

    def record_event(self, **fields) -> Dict[str, Any]:
        """Append one event and notify subscribers once it is committed."""
        db = self.session_factory()
        try:
            event = self.add_event(db, **fields)
            self.commit(db, event)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        return as_dict(event)

    def fetch_access_events(self, branch_id: Optional[str] = None, limit: int = ACCESS_EVENT_LIMIT,
                            event_type: Optional[str] = None, access_granted: Optional[bool] = None,
                            start_date: Optional[datetime] = None,
                            end_date: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Most recent first, each row carrying its device and member for display."""
        db = self.session_factory()
        try:
            query = db.query(DeviceAccessEvent, AccessDevice, Member)\
                .outerjoin(AccessDevice, AccessDevice.id == DeviceAccessEvent.device_id)\
                .outerjoin(Member, Member.id == DeviceAccessEvent.member_id)

            if branch_id:
                query = query.filter(DeviceAccessEvent.branch_id == branch_id)
            if event_type:
                query = query.filter(DeviceAccessEvent.event_type == event_type)
            if access_granted is not None:
                query = query.filter(DeviceAccessEvent.access_granted == access_granted)
            if start_date:
                query = query.filter(DeviceAccessEvent.created_at >= start_date)
            if end_date:
                query = query.filter(DeviceAccessEvent.created_at <= end_date)

            rows = query.order_by(DeviceAccessEvent.created_at.desc(), DeviceAccessEvent.id.desc())\
                .limit(limit)\
                .all()

            result = []
            for event, device, member in rows:
                item = as_dict(event)
                item["device"] = {
                    "device_name": device.device_name,
                    "ip_address": device.ip_address,
                } if device else None
                item["member"] = {
                    "member_code": member.member_code,
                    "full_name": member.full_name,
                } if member else None
                result.append(item)
            return result
        finally:
            db.close()

    def subscribe_to_access_events(self, branch_id: str,
                                   callback: Callable[[Dict[str, Any]], None]) -> Callable[[], None]:
        """
        Stream new events for one branch.

        Returns the unsubscribe function; it must be called to release the
        channel.
        """
        return self.hub.subscribe(
            ACCESS_EVENTS_CHANNEL,
            "INSERT",
            ACCESS_EVENTS_TABLE,
            callback,
            filter=f"branch_id=eq.{branch_id}",
        )
