from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from groupcal.errors import ConfigError
from groupcal.models import AppConfig, default_app_config

CONFIG_SECTIONS = ("graph", "sync")

ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "GROUPCAL_TENANT_ID": ("graph", "tenant_id"),
    "GROUPCAL_CLIENT_ID": ("graph", "client_id"),
    "GROUPCAL_CLIENT_SECRET": ("graph", "client_secret"),
    "GROUPCAL_GROUP_ID": ("sync", "group_id"),
    "GROUPCAL_EVENTS_CSV": ("sync", "events_csv"),
    "GROUPCAL_TIMEZONE": ("sync", "timezone"),
}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_payload(environ: Mapping[str, str]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(name, "").strip()
        if value:
            payload.setdefault(section, {})[key] = value
    return payload


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str], environ: Mapping[str, str] | None = None) -> None:
        self.config_path = Path(config_path)
        self.environ = os.environ if environ is None else environ
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.save(default_app_config())
        except OSError as exc:
            raise ConfigError(f"Cannot create config {self.config_path}: {exc}") from exc

    def _read_file(self) -> dict[str, Any]:
        try:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except OSError as exc:
            raise ConfigError(f"Cannot read config {self.config_path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {self.config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Config root in {self.config_path} must be a mapping.")
        for section in CONFIG_SECTIONS:
            if data.get(section) is not None and not isinstance(data[section], dict):
                raise ConfigError(f"Config section '{section}' in {self.config_path} must be a mapping.")
        return data

    def load(self) -> AppConfig:
        with self._lock:
            data = _deep_merge(self._read_file(), _env_payload(self.environ))
            try:
                return AppConfig.from_dict(data)
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"Invalid config value: {exc}") from exc

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(config_dict, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                with self.config_path.open("w", encoding="utf-8") as handle:
                    yaml.safe_dump(
                        config_dict, handle, sort_keys=False, allow_unicode=True, default_flow_style=False
                    )
                if tmp_path.exists():
                    tmp_path.unlink()

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        if config.get("graph", {}).get("client_secret"):
            config["graph"]["client_secret"] = "***"
        return config
