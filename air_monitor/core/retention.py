# GNOME Desktop Air Monitor - Retention Worker
# Periodically prunes readings older than the configured horizon

import time
import logging
import threading
from typing import Callable, Optional

from air_monitor.database.db_manager import DatabaseManager
from air_monitor.utils.locks import CancelToken

logger = logging.getLogger(__name__)

RETENTION_INTERVAL = 600  # seconds
SECONDS_PER_DAY = 24 * 60 * 60


class RetentionWorker:
    """
    Deletes old readings once at start and then every RETENTION_INTERVAL.

    Args:
        db: Store to prune
        retention_days: Returns the current horizon in days; <= 0 disables pruning
    """

    def __init__(self, db: DatabaseManager, retention_days: Callable[[], int],
                 interval: float = RETENTION_INTERVAL, clock: Callable[[], float] = time.time):
        self.db = db
        self.retention_days = retention_days
        self.interval = interval
        self.clock = clock
        self._token: Optional[CancelToken] = None
        self._thread: Optional[threading.Thread] = None

    def prune(self) -> int:
        """
        Run one retention pass.

        Returns:
            Number of deleted readings
        """
        days = self.retention_days()
        if days <= 0:
            logger.debug("[RETENTION] Disabled")
            return 0

        cutoff = self.clock() - days * SECONDS_PER_DAY
        deleted = self.db.delete_readings_older_than(cutoff)
        if deleted:
            logger.info(f"[RETENTION] Deleted {deleted} readings older than {days} days")
        return deleted

    def start(self, parent: Optional[CancelToken] = None):
        self.stop()
        self._token = parent.child() if parent else CancelToken()
        self._thread = threading.Thread(
            target=self._retention_loop, args=(self._token,), name='retention', daemon=True
        )
        self._thread.start()
        logger.info("[RETENTION] Started retention worker")

    def stop(self, timeout: Optional[float] = None):
        if self._token:
            self._token.cancel()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._token = None
        self._thread = None

    def _retention_loop(self, token: CancelToken):
        while not token.cancelled:
            try:
                self.prune()
            except Exception as e:
                logger.error(f"[RETENTION] Retention pass failed: {e}")
            if token.wait(self.interval):
                break
        logger.info("[RETENTION] Retention worker stopped")
