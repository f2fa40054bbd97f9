import threading
import time
import unittest
from unittest import mock

from feedsync.models import AppConfig, BatchSyncResult
from feedsync.scheduler import SyncScheduler


class SyncSchedulerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config_manager = mock.Mock()
        self.config_manager.load.return_value = AppConfig.from_dict({"sync": {"run_on_startup": False}})
        self.engine = mock.Mock()
        self.engine.sync_all_feeds.side_effect = lambda trigger: BatchSyncResult(trigger=trigger)
        self.scheduler = SyncScheduler(self.engine, self.config_manager)

    def tearDown(self) -> None:
        self.scheduler.stop()

    def test_run_batch_records_last_result(self) -> None:
        result = self.scheduler.run_batch("manual")
        self.assertEqual(result.trigger, "manual")
        self.assertIs(self.scheduler.last_result, result)
        self.assertFalse(self.scheduler.batch_in_progress)

    def test_tick_during_running_batch_is_skipped(self) -> None:
        started = threading.Event()
        release = threading.Event()

        def slow_batch(trigger: str) -> BatchSyncResult:
            started.set()
            release.wait(timeout=5)
            return BatchSyncResult(trigger=trigger)

        self.engine.sync_all_feeds.side_effect = slow_batch
        worker = threading.Thread(target=self.scheduler.run_batch, args=("scheduled",))
        worker.start()
        try:
            self.assertTrue(started.wait(timeout=5))
            with self.assertLogs("feedsync.scheduler", level="WARNING"):
                self.assertIsNone(self.scheduler.run_batch("scheduled"))
        finally:
            release.set()
            worker.join(timeout=5)

        self.assertEqual(self.engine.sync_all_feeds.call_count, 1)

    def test_batch_exception_does_not_escape(self) -> None:
        self.engine.sync_all_feeds.side_effect = RuntimeError("database is locked")
        with self.assertLogs("feedsync.scheduler", level="ERROR"):
            self.assertIsNone(self.scheduler.run_batch("scheduled"))
        self.assertFalse(self.scheduler.batch_in_progress)

    def test_manual_trigger_wakes_loop(self) -> None:
        self.scheduler.start()
        self.assertTrue(self.scheduler.is_running)
        self.scheduler.trigger_manual()

        deadline = time.monotonic() + 5
        while not self.engine.sync_all_feeds.called and time.monotonic() < deadline:
            time.sleep(0.01)

        self.engine.sync_all_feeds.assert_called_with(trigger="manual")
        self.scheduler.stop()
        self.assertFalse(self.scheduler.is_running)

    def test_startup_batch_runs_when_enabled(self) -> None:
        self.config_manager.load.return_value = AppConfig()
        self.scheduler.start()

        deadline = time.monotonic() + 5
        while not self.engine.sync_all_feeds.called and time.monotonic() < deadline:
            time.sleep(0.01)

        self.engine.sync_all_feeds.assert_any_call(trigger="startup")


if __name__ == "__main__":
    unittest.main()
