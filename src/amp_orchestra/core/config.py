import dataclasses
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, cast

import yaml
from dotenv import load_dotenv

CONFIG_DIRNAME = ".amp-orchestra"
CONFIG_FILENAME = ".amp-orchestra/config.yml"
ROOT_CONFIG_FILENAME = "amp-orchestra.yml"
ROOT_OVERRIDE_FILENAME = "amp-orchestra.override.yml"
CONFIG_VERSION = 1

DEFAULT_MAX_FILES = 10_000
DEFAULT_MAX_MB = 500

DEFAULT_CONFIG: Dict[str, Any] = {
    "version": CONFIG_VERSION,
    # Least-specific scope; suites and their cases narrow it.
    "defaults": {
        "amp_server_url": None,
        "amp_cli_path": None,
    },
    "suites": {},
    "toolbox": {
        "enabled": True,
        "runtime_root": "~/.amp-orchestra/runtime_toolboxes",
        "max_files": DEFAULT_MAX_FILES,
        "max_mb": DEFAULT_MAX_MB,
        "on_limit": "abort",  # abort|skip
        "profiles": [],
        "cache": {
            "max_entries": 20,
            "max_age_days": 14,
        },
    },
    "launch": {
        "args": ["-x", "--stream-json"],
    },
    "log": {
        "path": "~/.amp-orchestra/amp-orchestra.log",
        "max_bytes": 10_000_000,
        "backup_count": 3,
    },
}

SCOPE_KEYS = ("amp_server_url", "amp_cli_path")
ON_LIMIT_CHOICES = ("abort", "skip")


class ConfigError(Exception):
    """Raised when configuration is invalid."""


@dataclasses.dataclass
class LogConfig:
    path: Path
    max_bytes: int
    backup_count: int


@dataclasses.dataclass(frozen=True)
class ConfigScope:
    amp_server_url: Optional[str] = None
    amp_cli_path: Optional[str] = None


@dataclasses.dataclass
class SuiteConfig:
    scope: ConfigScope
    cases: Dict[str, ConfigScope]


@dataclasses.dataclass
class StructuredConfig:
    """The three nested connection scopes: defaults, suite, case."""

    defaults: ConfigScope = dataclasses.field(default_factory=ConfigScope)
    suites: Dict[str, SuiteConfig] = dataclasses.field(default_factory=dict)

    def scopes(
        self, suite: Optional[str] = None, case: Optional[str] = None
    ) -> List[Optional[ConfigScope]]:
        """Return ``[case, suite, defaults]``; missing scopes are None."""
        suite_cfg = self.suites.get(suite) if suite else None
        case_scope = suite_cfg.cases.get(case) if suite_cfg and case else None
        return [
            case_scope,
            suite_cfg.scope if suite_cfg else None,
            self.defaults,
        ]


@dataclasses.dataclass(frozen=True)
class ToolboxProfile:
    """Named, ordered toolbox roots; index 0 has the lowest precedence."""

    id: int
    name: str
    paths: Tuple[str, ...]


@dataclasses.dataclass
class ToolboxConfig:
    enabled: bool
    runtime_root: Path
    max_files: int
    max_total_bytes: int
    on_limit: str
    profiles: List[ToolboxProfile]
    cache_max_entries: int
    cache_max_age_days: Optional[int]

    def profile(self, name: str) -> Optional[ToolboxProfile]:
        for profile in self.profiles:
            if profile.name == name:
                return profile
        return None


@dataclasses.dataclass
class OrchestraConfig:
    raw: Dict[str, Any]
    root: Path
    version: int
    structured: StructuredConfig
    toolbox: ToolboxConfig
    launch_args: List[str]
    log: LogConfig


def _merge_defaults(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = cast(Dict[str, Any], json.loads(json.dumps(base)))
    for key, value in overrides.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_yaml_dict(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    except Exception as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must be a mapping: {path}")
    return data


def _load_root_config(root: Path) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    base = _load_yaml_dict(root / ROOT_CONFIG_FILENAME)
    if base:
        merged = _merge_defaults(merged, base)
    override_path = root / ROOT_OVERRIDE_FILENAME
    try:
        override = _load_yaml_dict(override_path)
    except ConfigError as exc:
        raise ConfigError(
            f"Invalid override config {override_path}; fix or delete it: {exc}"
        ) from exc
    if override:
        merged = _merge_defaults(merged, override)
    return merged


def resolve_config_data(
    root: Path, overrides: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    merged = _merge_defaults(DEFAULT_CONFIG, _load_root_config(root))
    if overrides:
        merged = _merge_defaults(merged, overrides)
    return merged


def find_nearest_config_path(start: Path) -> Optional[Path]:
    """Return the closest .amp-orchestra/config.yml walking upward from start."""
    start = start.resolve()
    search_dir = start if start.is_dir() else start.parent
    for current in [search_dir] + list(search_dir.parents):
        candidate = current / CONFIG_FILENAME
        if candidate.exists():
            return candidate
    return None


def load_dotenv_for_root(root: Path) -> None:
    """
    Best-effort load of environment variables for the provided root.

    Locations are deterministic rather than relative to the process CWD, which
    differs between the desktop app, the CLI and test runners.
    """
    try:
        root = root.resolve()
        for candidate in (root / ".env", root / CONFIG_DIRNAME / ".env"):
            if candidate.exists():
                # Root-local .env wins over inherited process env.
                load_dotenv(dotenv_path=candidate, override=True)
    except Exception:
        # Never fail config loading due to dotenv issues.
        pass


def load_config(start: Path, *, required: bool = False) -> OrchestraConfig:
    """
    Load the nearest config walking upward from ``start``.

    Without a config file the defaults (plus any root-level
    ``amp-orchestra.yml``) are used, since every connection source is optional.
    """
    config_path = find_nearest_config_path(start)
    if config_path is None:
        if required:
            raise ConfigError(
                f"Missing config file; expected to find {CONFIG_FILENAME} in {start} or parents"
            )
        root = (start if start.is_dir() else start.parent).resolve()
        load_dotenv_for_root(root)
        merged = resolve_config_data(root)
    else:
        root = config_path.parent.parent.resolve()
        load_dotenv_for_root(root)
        merged = resolve_config_data(root, _load_yaml_dict(config_path))
    _validate_config(merged)
    return build_config(root, merged)


def build_config(root: Path, cfg: Dict[str, Any]) -> OrchestraConfig:
    log_cfg = cfg.get("log") or {}
    log_defaults = DEFAULT_CONFIG["log"]
    return OrchestraConfig(
        raw=cfg,
        root=root,
        version=int(cfg["version"]),
        structured=_parse_structured(cfg),
        toolbox=_parse_toolbox_config(cfg.get("toolbox"), root),
        launch_args=[str(arg) for arg in (cfg.get("launch") or {}).get("args") or []],
        log=LogConfig(
            path=_resolve_path(root, log_cfg.get("path", log_defaults["path"])),
            max_bytes=int(log_cfg.get("max_bytes", log_defaults["max_bytes"])),
            backup_count=int(
                log_cfg.get("backup_count", log_defaults["backup_count"])
            ),
        ),
    )


def default_config(root: Optional[Path] = None) -> OrchestraConfig:
    return build_config((root or Path.cwd()).resolve(), _merge_defaults(DEFAULT_CONFIG, {}))


def _resolve_path(root: Path, raw: Any) -> Path:
    path = Path(str(raw)).expanduser()
    if not path.is_absolute():
        path = root / path
    return path


def _parse_scope(raw: Any) -> ConfigScope:
    raw = raw if isinstance(raw, dict) else {}
    return ConfigScope(
        amp_server_url=raw.get("amp_server_url") or None,
        amp_cli_path=raw.get("amp_cli_path") or None,
    )


def _parse_structured(cfg: Dict[str, Any]) -> StructuredConfig:
    suites: Dict[str, SuiteConfig] = {}
    for name, suite_raw in (cfg.get("suites") or {}).items():
        suite_raw = suite_raw if isinstance(suite_raw, dict) else {}
        cases = {
            str(case_name): _parse_scope(case_raw)
            for case_name, case_raw in (suite_raw.get("cases") or {}).items()
        }
        suites[str(name)] = SuiteConfig(scope=_parse_scope(suite_raw), cases=cases)
    return StructuredConfig(defaults=_parse_scope(cfg.get("defaults")), suites=suites)


def _parse_toolbox_config(cfg: Optional[Dict[str, Any]], root: Path) -> ToolboxConfig:
    defaults = DEFAULT_CONFIG["toolbox"]
    cfg = cfg if isinstance(cfg, dict) else defaults
    cache_cfg = cfg.get("cache") if isinstance(cfg.get("cache"), dict) else {}
    max_age_raw = cache_cfg.get(
        "max_age_days", defaults["cache"]["max_age_days"]
    )
    profiles = [
        ToolboxProfile(
            id=int(entry.get("id", idx + 1)),
            name=str(entry["name"]),
            paths=tuple(str(p) for p in entry.get("paths") or []),
        )
        for idx, entry in enumerate(cfg.get("profiles") or [])
    ]
    return ToolboxConfig(
        enabled=bool(cfg.get("enabled", defaults["enabled"])),
        runtime_root=_resolve_path(
            root, cfg.get("runtime_root", defaults["runtime_root"])
        ),
        max_files=int(cfg.get("max_files", defaults["max_files"])),
        max_total_bytes=int(cfg.get("max_mb", defaults["max_mb"])) * 1024 * 1024,
        on_limit=str(cfg.get("on_limit", defaults["on_limit"])),
        profiles=profiles,
        cache_max_entries=int(
            cache_cfg.get("max_entries", defaults["cache"]["max_entries"])
        ),
        cache_max_age_days=int(max_age_raw) if max_age_raw is not None else None,
    )


def _validate_version(cfg: Dict[str, Any]) -> None:
    if cfg.get("version") != CONFIG_VERSION:
        raise ConfigError(f"Unsupported config version; expected {CONFIG_VERSION}")


def _validate_scope(raw: Any, label: str) -> None:
    if raw is None:
        return
    if not isinstance(raw, dict):
        raise ConfigError(f"{label} must be a mapping")
    for key in SCOPE_KEYS:
        value = raw.get(key)
        if value is not None and not isinstance(value, str):
            raise ConfigError(f"{label}.{key} must be a string or null")


def _validate_config(cfg: Dict[str, Any]) -> None:
    _validate_version(cfg)
    _validate_scope(cfg.get("defaults"), "defaults")
    suites = cfg.get("suites")
    if suites is not None and not isinstance(suites, dict):
        raise ConfigError("suites must be a mapping of suite name to settings")
    for suite_name, suite_raw in (suites or {}).items():
        _validate_scope(suite_raw, f"suites.{suite_name}")
        cases = (suite_raw or {}).get("cases")
        if cases is not None and not isinstance(cases, dict):
            raise ConfigError(f"suites.{suite_name}.cases must be a mapping")
        for case_name, case_raw in (cases or {}).items():
            _validate_scope(case_raw, f"suites.{suite_name}.cases.{case_name}")

    toolbox = cfg.get("toolbox")
    if not isinstance(toolbox, dict):
        raise ConfigError("toolbox section must be a mapping")
    if not isinstance(toolbox.get("enabled", True), bool):
        raise ConfigError("toolbox.enabled must be boolean")
    if not isinstance(toolbox.get("runtime_root", ""), str):
        raise ConfigError("toolbox.runtime_root must be a string path")
    for key in ("max_files", "max_mb"):
        value = toolbox.get(key)
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise ConfigError(f"toolbox.{key} must be a positive integer")
    if toolbox.get("on_limit") not in ON_LIMIT_CHOICES:
        raise ConfigError(
            f"toolbox.on_limit must be one of {', '.join(ON_LIMIT_CHOICES)}"
        )
    profiles = toolbox.get("profiles")
    if profiles is not None and not isinstance(profiles, list):
        raise ConfigError("toolbox.profiles must be a list")
    seen: set[str] = set()
    for idx, entry in enumerate(profiles or []):
        if not isinstance(entry, dict):
            raise ConfigError(f"toolbox.profiles[{idx}] must be a mapping")
        name = entry.get("name")
        if not isinstance(name, str) or not name:
            raise ConfigError(f"toolbox.profiles[{idx}].name must be a non-empty string")
        if name in seen:
            raise ConfigError(f"toolbox.profiles[{idx}].name '{name}' is not unique")
        seen.add(name)
        paths = entry.get("paths", [])
        if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
            raise ConfigError(f"toolbox.profiles[{idx}].paths must be a list of strings")
    cache_cfg = toolbox.get("cache")
    if cache_cfg is not None and not isinstance(cache_cfg, dict):
        raise ConfigError("toolbox.cache must be a mapping")
    if isinstance(cache_cfg, dict):
        if not isinstance(cache_cfg.get("max_entries", 0), int):
            raise ConfigError("toolbox.cache.max_entries must be an integer")
        max_age = cache_cfg.get("max_age_days")
        if max_age is not None and not isinstance(max_age, int):
            raise ConfigError("toolbox.cache.max_age_days must be an integer or null")

    launch = cfg.get("launch")
    if not isinstance(launch, dict):
        raise ConfigError("launch section must be a mapping")
    if not isinstance(launch.get("args", []), list):
        raise ConfigError("launch.args must be a list")

    log_cfg = cfg.get("log")
    if not isinstance(log_cfg, dict):
        raise ConfigError("log section must be a mapping")
    if not isinstance(log_cfg.get("path", ""), str):
        raise ConfigError("log.path must be a string path")
    for key in ("max_bytes", "backup_count"):
        if not isinstance(log_cfg.get(key, 0), int):
            raise ConfigError(f"log.{key} must be an integer")
