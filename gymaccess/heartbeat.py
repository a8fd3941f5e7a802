"""
Device liveness: heartbeat ingestion and the stale-device sweep.

These are the only writers of AccessDevice.is_online / last_heartbeat.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import update

from .errors import NotFoundError, ValidationError
from .models import AccessDevice, BiometricSyncItem, DeviceCommand, utcnow
from .settings import HEARTBEAT_TTL_SECONDS

logger = logging.getLogger(__name__)


class HeartbeatReceiver:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def receive(self, device_id: str, ip_address: Optional[str] = None,
                firmware_version: Optional[str] = None,
                status: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Record a ping from a device and report whether it has work waiting.

        Unknown devices raise NotFoundError before anything is written.
        """
        if not device_id:
            raise ValidationError("device_id is required")

        db = self.session_factory()
        try:
            device = db.query(AccessDevice).filter(AccessDevice.id == device_id).first()
            if not device:
                logger.warning("Heartbeat from unknown device %s", device_id)
                raise NotFoundError("Device not found")

            now = utcnow()
            device.is_online = True
            device.last_heartbeat = now
            if ip_address:
                device.ip_address = ip_address
            if firmware_version:
                device.firmware_version = firmware_version
            if status:
                device.config = status

            has_pending_syncs = db.query(BiometricSyncItem.id).filter(
                BiometricSyncItem.device_id == device_id,
                BiometricSyncItem.status == "pending",
            ).first() is not None
            has_pending_commands = db.query(DeviceCommand.id).filter(
                DeviceCommand.device_id == device_id,
                DeviceCommand.status == "pending",
            ).first() is not None

            db.commit()
            return {
                "success": True,
                "device_id": device.id,
                "has_pending_syncs": has_pending_syncs,
                "has_pending_commands": has_pending_commands,
                "server_time": now.isoformat(),
            }
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class LivenessSweeper:
    """Marks devices offline once their last heartbeat is older than the TTL."""

    def __init__(self, session_factory, ttl_seconds: int = HEARTBEAT_TTL_SECONDS):
        self.session_factory = session_factory
        self.ttl = timedelta(seconds=ttl_seconds)

    def sweep(self, now: Optional[datetime] = None) -> List[str]:
        cutoff = (now or utcnow()) - self.ttl

        db = self.session_factory()
        try:
            # Single conditional statement: a heartbeat landing mid-sweep is never overwritten
            result = db.execute(
                update(AccessDevice)
                .where(
                    AccessDevice.is_online == True,
                    AccessDevice.last_heartbeat.is_(None) | (AccessDevice.last_heartbeat < cutoff),
                )
                .values(is_online=False)
                .returning(AccessDevice.id),
                execution_options={"synchronize_session": False},
            )
            ids = sorted(row.id for row in result)
            db.commit()

            if ids:
                logger.info("Marked %d device(s) offline after %ss without heartbeat: %s",
                            len(ids), int(self.ttl.total_seconds()), ids)
            return ids
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
