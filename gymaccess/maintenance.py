"""
Background housekeeping: device liveness sweep and failed-sync retries.
"""
import logging
import threading
from typing import Any, Dict

from .biometric_sync import BiometricSyncQueue
from .heartbeat import LivenessSweeper
from .settings import MAINTENANCE_INTERVAL_SECONDS

logger = logging.getLogger(__name__)


class MaintenanceWorker:
    """
    Daemon thread that periodically:
    1. Marks devices offline once their heartbeat is stale
    2. Re-queues failed sync items whose backoff has elapsed
    """

    def __init__(self, sweeper: LivenessSweeper, sync_queue: BiometricSyncQueue,
                 interval_seconds: int = MAINTENANCE_INTERVAL_SECONDS):
        self.sweeper = sweeper
        self.sync_queue = sync_queue
        self.interval = interval_seconds
        self._stop = threading.Event()
        self._thread = None

    def run_once(self) -> Dict[str, Any]:
        offline = self.sweeper.sweep()
        requeued = self.sync_queue.retry_failed_syncs()
        return {"marked_offline": offline, "requeued_syncs": requeued}

    def _loop(self):
        logger.info("Maintenance worker started (every %ss)", self.interval)
        while not self._stop.wait(self.interval):
            try:
                self.run_once()
            except Exception:
                # Keep the loop alive; the next pass retries
                logger.exception("Maintenance pass failed")
        logger.info("Maintenance worker stopped")

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="gymaccess-maintenance", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
