import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from groupcal.config_manager import ConfigManager
from groupcal.errors import ConfigError
from groupcal.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_missing_file_is_created_with_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(config_path, environ={})

            self.assertTrue(config_path.exists())
            self.assertEqual(manager.load(), AppConfig())

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path), environ={})
            config = AppConfig.from_dict(
                {
                    "graph": {"tenant_id": "t", "client_id": "c", "client_secret": "s"},
                    "sync": {"group_id": "group-1"},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["graph"]["tenant_id"], "t")
            self.assertEqual(data["sync"]["group_id"], "group-1")
            self.assertFalse(config_path.with_suffix(".yaml.tmp").exists())

    def test_environment_overrides_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            config_path.write_text(
                "graph:\n  tenant_id: file-tenant\n  client_id: file-client\nsync:\n  group_id: file-group\n",
                encoding="utf-8",
            )
            manager = ConfigManager(
                config_path,
                environ={"GROUPCAL_CLIENT_SECRET": "env-secret", "GROUPCAL_GROUP_ID": "env-group", "GROUPCAL_TIMEZONE": ""},
            )

            config = manager.load()

            self.assertEqual(config.graph.tenant_id, "file-tenant")
            self.assertEqual(config.graph.client_secret, "env-secret")
            self.assertEqual(config.sync.group_id, "env-group")
            self.assertEqual(config.sync.timezone, "UTC")

    def test_masked_hides_client_secret(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(Path(temp_dir) / "config.yaml", environ={"GROUPCAL_CLIENT_SECRET": "s3cr3t"})
            masked = manager.masked()
            self.assertEqual(masked["graph"]["client_secret"], "***")

    def test_invalid_yaml_is_config_error(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            config_path.write_text("graph: [unclosed\n", encoding="utf-8")
            manager = ConfigManager(config_path, environ={})
            with self.assertRaises(ConfigError):
                manager.load()

    def test_directory_path_is_config_error(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(temp_dir, environ={})
            with self.assertRaises(ConfigError) as ctx:
                manager.load()
            self.assertIn("Cannot read config", str(ctx.exception))

    def test_uncreatable_path_is_config_error(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            blocker = Path(temp_dir) / "blocker"
            blocker.write_text("not a directory", encoding="utf-8")
            with self.assertRaises(ConfigError):
                ConfigManager(blocker / "config.yaml", environ={})

    def test_scalar_section_is_config_error(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            config_path.write_text("sync: events.csv\n", encoding="utf-8")
            manager = ConfigManager(config_path, environ={})
            with self.assertRaises(ConfigError) as ctx:
                manager.load()
            self.assertIn("'sync'", str(ctx.exception))

    def test_empty_section_uses_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            config_path.write_text("graph:\nsync:\n", encoding="utf-8")
            manager = ConfigManager(config_path, environ={})
            self.assertEqual(manager.load(), AppConfig())

    def test_non_numeric_value_is_config_error(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            config_path.write_text("sync:\n  max_workers: many\n", encoding="utf-8")
            manager = ConfigManager(config_path, environ={})
            with self.assertRaises(ConfigError):
                manager.load()


if __name__ == "__main__":
    unittest.main()
