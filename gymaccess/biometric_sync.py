"""
Biometric enrollment sync queue.

One row per (person, device). Queuing again upserts on that key, so repeated
requests collapse into the latest intent instead of piling up. Item states:
pending -> syncing -> completed | failed; a new upsert puts any item back to
pending while keeping its retry history.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from .errors import ConflictError, NoSyncDevicesError, NotFoundError, ValidationError
from .models import AccessDevice, BiometricSyncItem, Employee, Member, as_dict, new_id, utcnow
from .settings import SYNC_BACKOFF_BASE_SECONDS, SYNC_BACKOFF_MAX_SECONDS, SYNC_MAX_RETRIES

logger = logging.getLogger(__name__)

PERSON_TYPES = ("member", "staff")
OPEN_STATUSES = ("pending", "syncing")

_UPSERT_BY_DIALECT = {
    "sqlite": sqlite_insert,
    "postgresql": pg_insert,
}


class BiometricSyncQueue:
    def __init__(self, session_factory, max_retries: int = SYNC_MAX_RETRIES,
                 backoff_base_seconds: int = SYNC_BACKOFF_BASE_SECONDS,
                 backoff_max_seconds: int = SYNC_BACKOFF_MAX_SECONDS):
        self.session_factory = session_factory
        self.max_retries = max_retries
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds

    # --- helpers ---

    def backoff_for(self, retry_count: int) -> timedelta:
        """Wait before the next automatic attempt: base * 2^(n-1), capped."""
        exponent = max(retry_count - 1, 0)
        seconds = min(self.backoff_base_seconds * (2 ** exponent), self.backoff_max_seconds)
        return timedelta(seconds=seconds)

    def is_retryable(self, item: BiometricSyncItem) -> bool:
        return item.status == "failed" and item.retry_count < self.max_retries

    def serialize(self, item: BiometricSyncItem) -> Dict[str, Any]:
        data = as_dict(item)
        data["retryable"] = self.is_retryable(item)
        return data

    @staticmethod
    def _person_model(person_type: str):
        if person_type == "member":
            return Member
        if person_type == "staff":
            return Employee
        raise ValidationError(f"Invalid person type: {person_type}")

    @staticmethod
    def _target_devices(db, device_ids: Optional[Sequence[str]]) -> List[str]:
        if device_ids:
            found = {row.id for row in db.query(AccessDevice.id).filter(AccessDevice.id.in_(list(device_ids))).all()}
            missing = [d for d in device_ids if d not in found]
            if missing:
                raise NotFoundError(f"Device not found: {', '.join(missing)}")
            return list(dict.fromkeys(device_ids))

        rows = db.query(AccessDevice.id).filter(AccessDevice.device_type == "face_terminal").all()
        return [row.id for row in rows]

    @staticmethod
    def _upsert(db, rows: List[Dict[str, Any]]):
        dialect = db.get_bind().dialect.name
        insert = _UPSERT_BY_DIALECT.get(dialect)
        if insert is None:
            raise RuntimeError(f"Sync queue upsert is not supported on {dialect}")

        stmt = insert(BiometricSyncItem).values(rows)
        # retry_count and error_message carry over from the previous attempt
        stmt = stmt.on_conflict_do_update(
            index_elements=["person_uuid", "device_id"],
            set_={
                "member_id": stmt.excluded.member_id,
                "staff_id": stmt.excluded.staff_id,
                "person_name": stmt.excluded.person_name,
                "sync_type": stmt.excluded.sync_type,
                "photo_url": stmt.excluded.photo_url,
                "status": "pending",
                "queued_at": stmt.excluded.queued_at,
                "processed_at": None,
            },
        )
        db.execute(stmt)

    # --- enqueue ---

    def _queue(self, person_type: str, person_id: str, photo_url: str, person_name: str,
               device_ids: Optional[Sequence[str]]) -> List[Dict[str, Any]]:
        if not photo_url:
            raise ValidationError("photo_url is required")

        model = self._person_model(person_type)
        db = self.session_factory()
        try:
            person = db.query(model).filter(model.id == person_id).first()
            if not person:
                raise NotFoundError(f"{person_type.capitalize()} not found")

            targets = self._target_devices(db, device_ids)
            if not targets:
                raise NoSyncDevicesError()

            now = utcnow()
            rows = [{
                "id": new_id(),
                "member_id": person_id if person_type == "member" else None,
                "staff_id": person_id if person_type == "staff" else None,
                "person_uuid": person_id,
                "person_name": person_name or person.full_name,
                "device_id": device_id,
                "sync_type": "add",
                "photo_url": photo_url,
                "status": "pending",
                "retry_count": 0,
                "queued_at": now,
            } for device_id in targets]
            self._upsert(db, rows)

            # Enrollment is unconfirmed until a device reports success
            person.biometric_photo_url = photo_url
            person.biometric_enrolled = False
            db.commit()

            items = db.query(BiometricSyncItem).filter(
                BiometricSyncItem.person_uuid == person_id,
                BiometricSyncItem.device_id.in_(targets),
            ).order_by(BiometricSyncItem.device_id).all()
            logger.info("Queued biometric sync for %s %s on %d device(s)", person_type, person_id, len(items))
            return [self.serialize(i) for i in items]
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def queue_member_sync(self, member_id: str, photo_url: str, person_name: str,
                          device_ids: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
        """Queue a member's photo to the given devices, or to every face terminal."""
        return self._queue("member", member_id, photo_url, person_name, device_ids)

    def queue_staff_sync(self, staff_id: str, photo_url: str, person_name: str,
                         device_ids: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
        return self._queue("staff", staff_id, photo_url, person_name, device_ids)

    # --- queries ---

    def get_sync_item(self, sync_id: str) -> Optional[Dict[str, Any]]:
        db = self.session_factory()
        try:
            item = db.query(BiometricSyncItem).filter(BiometricSyncItem.id == sync_id).first()
            return self.serialize(item) if item else None
        finally:
            db.close()

    def get_sync_status(self, person_id: str, person_type: str) -> List[Dict[str, Any]]:
        self._person_model(person_type)
        column = BiometricSyncItem.member_id if person_type == "member" else BiometricSyncItem.staff_id
        db = self.session_factory()
        try:
            items = db.query(BiometricSyncItem)\
                .filter(column == person_id)\
                .order_by(BiometricSyncItem.queued_at.desc())\
                .all()
            return [self.serialize(i) for i in items]
        finally:
            db.close()

    def get_pending_sync_items(self, device_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Pending work, oldest first."""
        db = self.session_factory()
        try:
            query = db.query(BiometricSyncItem).filter(BiometricSyncItem.status == "pending")
            if device_id:
                query = query.filter(BiometricSyncItem.device_id == device_id)
            items = query.order_by(BiometricSyncItem.queued_at, BiometricSyncItem.id).all()
            return [self.serialize(i) for i in items]
        finally:
            db.close()

    def get_biometric_stats(self, branch_id: Optional[str] = None) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            members = db.query(Member)
            if branch_id:
                members = members.filter(Member.branch_id == branch_id)
            total = members.count()
            enrolled = members.filter(Member.biometric_enrolled == True).count()
            pending = db.query(BiometricSyncItem).filter(BiometricSyncItem.status == "pending").count()
            return {
                "enrolled_members": enrolled,
                "total_members": total,
                "enrollment_rate": round(enrolled / total * 100) if total else 0,
                "pending_syncs": pending,
            }
        finally:
            db.close()

    # --- removal ---

    def remove_biometric_data(self, person_id: str, person_type: str,
                              device_ids: Optional[Sequence[str]] = None) -> int:
        """Turn the person's queue rows into delete intents. Returns the row count."""
        model = self._person_model(person_type)
        column = BiometricSyncItem.member_id if person_type == "member" else BiometricSyncItem.staff_id

        db = self.session_factory()
        try:
            person = db.query(model).filter(model.id == person_id).first()
            if not person:
                raise NotFoundError(f"{person_type.capitalize()} not found")

            query = db.query(BiometricSyncItem).filter(column == person_id)
            if device_ids:
                query = query.filter(BiometricSyncItem.device_id.in_(list(device_ids)))

            now = utcnow()
            items = query.all()
            for item in items:
                item.sync_type = "delete"
                item.status = "pending"
                item.queued_at = now
                item.processed_at = None

            person.biometric_enrolled = False
            db.commit()
            logger.info("Queued biometric removal for %s %s on %d device(s)", person_type, person_id, len(items))
            return len(items)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # --- device side ---

    def claim_sync_items(self, device_id: str, limit: int = 50) -> Dict[str, Any]:
        """
        Device pull: hand over pending items (oldest first) and mark them syncing.
        """
        db = self.session_factory()
        try:
            device = db.query(AccessDevice).filter(AccessDevice.id == device_id).first()
            if not device:
                raise NotFoundError("Device not found")

            items = db.query(BiometricSyncItem).filter(
                BiometricSyncItem.device_id == device_id,
                BiometricSyncItem.status == "pending",
            ).order_by(BiometricSyncItem.queued_at, BiometricSyncItem.id).limit(limit).all()

            payload = []
            now = utcnow()
            for item in items:
                item.status = "syncing"
                item.claimed_at = now
                payload.append({
                    "id": item.id,
                    "person_uuid": item.person_uuid,
                    "person_name": item.person_name,
                    "photo_url": item.photo_url,
                    "action": item.sync_type,
                    "queued_at": item.queued_at.isoformat(),
                })

            device.last_sync = now
            db.commit()
            return {
                "device_id": device_id,
                "items": payload,
                "count": len(payload),
                "server_time": now.isoformat(),
            }
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def mark_sync_complete(self, sync_id: str, success: bool, error_message: Optional[str] = None,
                           queued_at: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Record the outcome reported by a sync worker.

        Success confirms enrollment for add/update items. Failure is terminal
        for the item: retry_count goes up and the error is kept on the row;
        the person's enrollment flag is left alone.

        A report that names the claimed request by its ``queued_at``, or one
        arriving after the item was re-queued, must match the current request.
        """
        if queued_at is not None and queued_at.tzinfo is not None:
            queued_at = queued_at.astimezone(timezone.utc).replace(tzinfo=None)

        db = self.session_factory()
        try:
            item = db.query(BiometricSyncItem).filter(BiometricSyncItem.id == sync_id).first()
            if not item:
                raise NotFoundError("Sync item not found")
            if item.status not in OPEN_STATUSES:
                raise ConflictError(f"Sync item already {item.status}")
            stale_claim = item.status == "pending" and item.claimed_at is not None
            if stale_claim or (queued_at is not None and queued_at != item.queued_at):
                raise ConflictError("Sync item was re-queued after it was claimed")

            item.claimed_at = None
            item.processed_at = utcnow()
            if success:
                item.status = "completed"
                item.error_message = None
                if item.sync_type != "delete":
                    model = Member if item.member_id else Employee
                    person = db.query(model).filter(model.id == item.person_uuid).first()
                    if person:
                        person.biometric_enrolled = True
            else:
                item.status = "failed"
                item.retry_count = (item.retry_count or 0) + 1
                item.error_message = error_message or "Sync failed"
                logger.warning("Biometric sync %s failed on device %s (attempt %d): %s",
                               sync_id, item.device_id, item.retry_count, item.error_message)

            db.commit()
            db.refresh(item)
            return self.serialize(item)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # --- retries ---

    def retry_sync(self, sync_id: str) -> Dict[str, Any]:
        """Operator retry of a failed item. The retry history is kept."""
        db = self.session_factory()
        try:
            item = db.query(BiometricSyncItem).filter(BiometricSyncItem.id == sync_id).first()
            if not item:
                raise NotFoundError("Sync item not found")
            if item.status != "failed":
                raise ConflictError(f"Only failed items can be retried (status is {item.status})")

            item.status = "pending"
            item.queued_at = utcnow()
            db.commit()
            db.refresh(item)
            return self.serialize(item)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def retry_failed_syncs(self, now: Optional[datetime] = None) -> List[str]:
        """
        Re-queue failed items whose backoff has elapsed and that are still
        under the retry limit. Returns the re-queued ids.
        """
        now = now or utcnow()
        db = self.session_factory()
        try:
            failed = db.query(BiometricSyncItem).filter(
                BiometricSyncItem.status == "failed",
                BiometricSyncItem.retry_count < self.max_retries,
            ).all()

            requeued = []
            for item in failed:
                last_attempt = item.processed_at or item.queued_at
                if last_attempt + self.backoff_for(item.retry_count) > now:
                    continue
                item.status = "pending"
                item.queued_at = now
                requeued.append(item.id)

            db.commit()
            if requeued:
                logger.info("Re-queued %d failed biometric sync item(s)", len(requeued))
            return requeued
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
