"""Persisted user settings shared with the desktop app (``config.json``)."""

import copy
import dataclasses
import json
import logging
import os
import re
import sys
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .utils import atomic_write

_logger = logging.getLogger(__name__)

APP_DIRNAME = "ampsm"
USER_CONFIG_FILENAME = "config.json"
_SECRET_KEY_RE = re.compile(r"TOKEN|KEY|SECRET", re.IGNORECASE)
REDACTED = "[REDACTED]"


@dataclasses.dataclass
class PersistedConfig:
    """Typed view over the keys this package reads; ``raw`` keeps the rest."""

    raw: Dict[str, Any] = dataclasses.field(default_factory=dict)

    @property
    def custom_cli_path(self) -> Optional[str]:
        value = self.raw.get("customCliPath")
        return value if isinstance(value, str) else None

    @property
    def local_server_url(self) -> Optional[str]:
        value = self.raw.get("localServerUrl")
        return value if isinstance(value, str) else None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "PersistedConfig":
        return cls(raw=dict(data or {}))


def user_config_dir(
    *,
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    platform = platform or sys.platform
    env = env if env is not None else os.environ
    home = home or Path.home()
    if platform == "darwin":
        return home / "Library" / "Application Support" / APP_DIRNAME
    if platform.startswith("win"):
        appdata = env.get("APPDATA")
        base = Path(appdata) if appdata else home / "AppData" / "Roaming"
        return base / APP_DIRNAME
    xdg = env.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else home / ".config"
    return base / APP_DIRNAME


def user_config_path(**kwargs: Any) -> Path:
    return user_config_dir(**kwargs) / USER_CONFIG_FILENAME


def load_user_config(path: Optional[Path] = None) -> PersistedConfig:
    """Load the persisted settings; a missing or broken file yields an empty config."""
    path = path or user_config_path()
    if not path.exists():
        return PersistedConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        _logger.warning("Ignoring unreadable user config %s: %s", path, exc)
        return PersistedConfig()
    if not isinstance(data, dict):
        _logger.warning("Ignoring user config %s: top level is not an object", path)
        return PersistedConfig()
    return PersistedConfig.from_mapping(data)


def save_user_config(config: PersistedConfig, path: Optional[Path] = None) -> None:
    path = path or user_config_path()
    # Owner read/write only; the file may carry API tokens under ampEnv.
    atomic_write(path, json.dumps(config.raw, indent=2) + "\n", mode=0o600)


def _merge_settings(base: Dict[str, Any], updates: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_settings(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def update_user_config(
    updates: Mapping[str, Any], path: Optional[Path] = None
) -> PersistedConfig:
    """Merge ``updates`` into the stored settings and save them.

    Nested objects such as ``ampEnv`` are merged key by key, so setting one
    variable keeps the others.
    """
    current = load_user_config(path)
    config = PersistedConfig(raw=_merge_settings(current.raw, updates))
    save_user_config(config, path)
    return config


def get_value(config: PersistedConfig, key: str) -> Any:
    value: Any = config.raw
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def set_value(config: PersistedConfig, key: str, value: Any) -> PersistedConfig:
    raw = copy.deepcopy(config.raw)
    parts = key.split(".")
    current = raw
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value
    return PersistedConfig(raw=raw)


def redact_secrets(config: PersistedConfig) -> Dict[str, Any]:
    redacted = copy.deepcopy(config.raw)
    amp_env = redacted.get("ampEnv")
    if isinstance(amp_env, dict):
        for key, value in amp_env.items():
            if value and _SECRET_KEY_RE.search(key):
                amp_env[key] = REDACTED
    return redacted
