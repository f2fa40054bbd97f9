from __future__ import annotations

import logging
import threading
from typing import Optional

from feedsync.config_manager import ConfigManager
from feedsync.models import BatchSyncResult
from feedsync.sync_engine import SyncEngine


logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self.last_result: Optional[BatchSyncResult] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()
        self._batch_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    @property
    def batch_in_progress(self) -> bool:
        return self._batch_lock.locked()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="feedsync-scheduler", daemon=True)
        self._thread.start()
        logger.info("Feed sync scheduler started")

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("Feed sync scheduler stopped")

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def run_batch(self, trigger: str) -> Optional[BatchSyncResult]:
        """Run one batch unless another one is still in flight."""
        if not self._batch_lock.acquire(blocking=False):
            logger.warning("Skipping %s sync tick: previous batch still running", trigger)
            return None
        try:
            self.last_result = self.sync_engine.sync_all_feeds(trigger=trigger)
            return self.last_result
        except Exception:
            logger.exception("Sync batch (%s) failed", trigger)
            return None
        finally:
            self._batch_lock.release()

    def _loop(self) -> None:
        if self.config_manager.load().sync.run_on_startup:
            self.run_batch("startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.run_batch("manual" if manual else "scheduled")
