import errno
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from feedsync.config_manager import ConfigManager, merge_settings
from feedsync.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_creates_default_file_when_missing(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path))

            self.assertTrue(config_path.exists())
            config = manager.load()
            self.assertEqual(config.sync.interval_seconds, 60)
            self.assertEqual(config.database.path, "data/feedsync.db")

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path))
            config = AppConfig.from_dict(
                {
                    "beds24": {"api_base_url": "https://beds24.example.com/api/v2"},
                    "fetch": {"timeout_seconds": 10},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            self.assertTrue(config_path.exists())
            self.assertFalse(Path(str(config_path) + ".tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["beds24"]["api_base_url"], "https://beds24.example.com/api/v2")
            self.assertEqual(data["fetch"]["timeout_seconds"], 10)

    def test_update_deep_merges_sections(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            manager.update({"sync": {"window_future_days": 180}})

            config = manager.update({"sync": {"interval_seconds": 120}})

            self.assertEqual(config.sync.window_future_days, 180)
            self.assertEqual(config.sync.interval_seconds, 120)
            self.assertEqual(manager.load().sync.window_past_days, 30)

    def test_merge_settings_leaves_inputs_untouched(self) -> None:
        current = {"sync": {"interval_seconds": 60, "window_past_days": 30}, "beds24": {"api_base_url": "a"}}
        overrides = {"sync": {"interval_seconds": 90}, "beds24": "replaced"}

        merged = merge_settings(current, overrides)

        self.assertEqual(merged, {"sync": {"interval_seconds": 90, "window_past_days": 30}, "beds24": "replaced"})
        self.assertEqual(current["sync"]["interval_seconds"], 60)
        self.assertEqual(current["beds24"], {"api_base_url": "a"})

    def test_interval_is_clamped_to_minimum(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            config = manager.update({"sync": {"interval_seconds": 5}})
            self.assertEqual(config.sync.interval_seconds, 30)

    def test_database_path_env_override(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"))
            with mock.patch.dict(os.environ, {"FEEDSYNC_DB_PATH": "/tmp/override.db"}):
                self.assertEqual(manager.database_path(), "/tmp/override.db")
            with mock.patch.dict(os.environ, {}, clear=True):
                self.assertEqual(manager.database_path(), "data/feedsync.db")


if __name__ == "__main__":
    unittest.main()
