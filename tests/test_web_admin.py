import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from feedsync.errors import FeedBusyError, FetchError, ParseError, RateLimitedError
from feedsync.models import BatchSyncResult, FeedSyncResult, SyncCounts
from feedsync.web_admin import create_app


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = str(Path(self.temp_dir.name) / "config.yaml")
        self.db_path = str(Path(self.temp_dir.name) / "feedsync.db")
        self.env = mock.patch.dict(
            os.environ,
            {"FEEDSYNC_CONFIG_PATH": self.config_path, "FEEDSYNC_DB_PATH": self.db_path},
        )
        self.env.start()
        self.app = create_app()
        self.context = self.app.state.context
        self.client = TestClient(self.app)

        resp = self.client.post(
            "/api/feeds",
            json={
                "user_id": 1,
                "name": "Room 12",
                "url": "https://beds24.com/ical/bookings.ics?roomid=12",
                "credential": "secret-token",
            },
        )
        self.assertEqual(resp.status_code, 201)
        self.feed_id = resp.json()["feed"]["id"]

    def tearDown(self) -> None:
        self.env.stop()
        self.temp_dir.cleanup()

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_config_get_and_merge(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"sync": {"interval_seconds": 600}}})
        self.assertEqual(resp.status_code, 200)
        config = resp.json()["config"]
        self.assertEqual(config["sync"]["interval_seconds"], 600)
        self.assertEqual(config["sync"]["window_future_days"], 360)

        resp = self.client.get("/api/config")
        self.assertEqual(resp.json()["sync"]["interval_seconds"], 600)

    def test_feed_listing_masks_credential(self) -> None:
        self.client.post("/api/feeds", json={"user_id": 2, "name": "Other", "url": "https://example.com/o.ics"})

        resp = self.client.get("/api/feeds", params={"user_id": 1})
        feeds = resp.json()["feeds"]
        self.assertEqual(len(feeds), 1)
        self.assertEqual(feeds[0]["credential"], "***")
        self.assertEqual(len(self.client.get("/api/feeds").json()["feeds"]), 2)

    def test_feed_update_keeps_masked_credential(self) -> None:
        resp = self.client.put(f"/api/feeds/{self.feed_id}", json={"name": "Renamed", "credential": "***"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["feed"]["name"], "Renamed")
        self.assertEqual(self.context.store.get_feed(self.feed_id).credential, "secret-token")

        self.client.put(f"/api/feeds/{self.feed_id}", json={"credential": ""})
        self.assertEqual(self.context.store.get_feed(self.feed_id).credential, "secret-token")

        self.client.put(f"/api/feeds/{self.feed_id}", json={"credential": "new-token"})
        self.assertEqual(self.context.store.get_feed(self.feed_id).credential, "new-token")

    def test_feed_validation_and_missing_feed(self) -> None:
        resp = self.client.post("/api/feeds", json={"user_id": 1, "name": "Bad", "url": "x", "direction": "both"})
        self.assertEqual(resp.status_code, 400)
        resp = self.client.put("/api/feeds/999", json={"name": "Nope"})
        self.assertEqual(resp.status_code, 404)
        resp = self.client.delete("/api/feeds/999")
        self.assertEqual(resp.status_code, 404)

    def test_delete_feed(self) -> None:
        resp = self.client.delete(f"/api/feeds/{self.feed_id}")
        self.assertEqual(resp.status_code, 200)
        self.assertIsNone(self.context.store.get_feed(self.feed_id))

    def test_sync_feed_unknown_and_disabled(self) -> None:
        self.assertEqual(self.client.post("/api/feeds/999/sync").status_code, 404)

        self.client.put(f"/api/feeds/{self.feed_id}", json={"enabled": False})
        resp = self.client.post(f"/api/feeds/{self.feed_id}/sync")
        self.assertEqual(resp.status_code, 409)

    def test_sync_feed_error_mapping(self) -> None:
        engine = mock.Mock()
        self.context.sync_engine = engine
        cases = [
            (RateLimitedError("503 x3", status_code=503), 429),
            (ParseError("not a calendar"), 422),
            (FetchError("HTTP 404", status_code=404), 502),
            (FeedBusyError(self.feed_id), 409),
        ]
        for error, status_code in cases:
            engine.sync_feed.side_effect = error
            resp = self.client.post(f"/api/feeds/{self.feed_id}/sync")
            self.assertEqual(resp.status_code, status_code, msg=type(error).__name__)

    def test_sync_feed_success(self) -> None:
        engine = mock.Mock()
        engine.sync_feed.return_value = FeedSyncResult(
            feed_id=self.feed_id,
            feed_name="Room 12",
            trigger="manual",
            status="success",
            message="ok",
            counts=SyncCounts(created=2),
        )
        self.context.sync_engine = engine

        resp = self.client.post(f"/api/feeds/{self.feed_id}/sync")

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["result"]["counts"]["created"], 2)
        engine.sync_feed.assert_called_once_with(self.feed_id, trigger="manual")

    def test_rate_limited_detail_is_readable(self) -> None:
        engine = mock.Mock()
        engine.sync_feed.side_effect = RateLimitedError("503 x3", status_code=503)
        self.context.sync_engine = engine

        resp = self.client.post(f"/api/feeds/{self.feed_id}/sync")

        self.assertEqual(resp.status_code, 429)
        self.assertIn("try later", resp.json()["detail"])

    def test_user_sync_returns_batch(self) -> None:
        engine = mock.Mock()
        engine.sync_user_feeds.return_value = BatchSyncResult(trigger="manual")
        self.context.sync_engine = engine

        resp = self.client.post("/api/users/1/sync")

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["result"]["success"], 0)
        engine.sync_user_feeds.assert_called_once_with(1, trigger="manual")

    def test_user_sync_reports_failed_feeds(self) -> None:
        engine = mock.Mock()
        engine.sync_user_feeds.return_value = BatchSyncResult(
            trigger="manual",
            results=[
                FeedSyncResult(
                    feed_id=self.feed_id,
                    feed_name="Room 12",
                    trigger="manual",
                    status="error",
                    message=f"Feed {self.feed_id} rate limited, try later",
                ),
                FeedSyncResult(feed_id=99, feed_name="Other", trigger="manual", status="success", message="ok"),
            ],
        )
        self.context.sync_engine = engine

        resp = self.client.post("/api/users/1/sync")

        self.assertEqual(resp.status_code, 502)
        body = resp.json()
        self.assertIn("1 of 2 feeds", body["message"])
        self.assertIn("try later", body["message"])
        self.assertEqual(body["result"]["errors"], 1)

    def test_sync_run_wakes_scheduler(self) -> None:
        scheduler = mock.Mock()
        self.context.scheduler = scheduler
        resp = self.client.post("/api/sync/run")
        self.assertEqual(resp.status_code, 200)
        scheduler.trigger_manual.assert_called_once_with()

    def test_sync_status_and_audit_events(self) -> None:
        self.context.store.record_sync_run(
            feed_id=self.feed_id,
            trigger="manual",
            status="success",
            message="ok",
            duration_ms=3,
        )
        resp = self.client.get("/api/sync/status")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertFalse(data["scheduler"]["running"])
        self.assertIsNone(data["scheduler"]["last_batch"])
        self.assertEqual(data["runs"][0]["feed_id"], self.feed_id)

        resp = self.client.get("/api/audit/events")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["events"], [])

    def test_duplicate_endpoints(self) -> None:
        resp = self.client.post("/api/admin/cleanup-duplicates")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["found"], 0)

        resp = self.client.get("/api/admin/similar-events", params={"threshold": 0.9})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["groups"], [])

        resp = self.client.get("/api/admin/similar-events", params={"threshold": 1.5})
        self.assertEqual(resp.status_code, 400)


if __name__ == "__main__":
    unittest.main()
