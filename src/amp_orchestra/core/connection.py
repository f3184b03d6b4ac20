"""Decide which Amp backend a launch talks to and which executable it runs.

Sources are consulted in a fixed order, one slot at a time. The server-URL
slot is resolved completely first; only when it is empty does the CLI-path
slot get a look. Every source is a small provider returning an optional
string, and the ordered provider tuples below are the precedence table.

One exception to "server URL first": an override CLI path equal to
``PRODUCTION_SENTINEL`` forces the system binary even when a lower-priority
source (config, ``AMP_URL``, persisted settings) carries a server URL. An
override server URL still beats it, since both sit in the same tier and the
server slot is checked first within a tier.
"""

import dataclasses
import logging
import os
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

from .config import ConfigScope, StructuredConfig
from .user_config import PersistedConfig
from .utils import expand_home, resolve_executable

_logger = logging.getLogger(__name__)

PRODUCTION_SENTINEL = "production"
PRODUCTION_BINARY = "amp"
DEFAULT_LOCAL_CLI = ("amp", "cli", "dist", "main.js")

ENV_SERVER_URL = "AMP_URL"
ENV_CLI_PATH = "AMP_CLI_PATH"
ENV_CLI_PATH_LEGACY = "AMP_BIN"
ENV_TLS_BYPASS = "NODE_TLS_REJECT_UNAUTHORIZED"


@dataclasses.dataclass(frozen=True)
class Server:
    url: str
    source: str = dataclasses.field(default="", compare=False)
    mode = "server"


@dataclasses.dataclass(frozen=True)
class LocalCli:
    path: str
    source: str = dataclasses.field(default="", compare=False)
    mode = "local-cli"


@dataclasses.dataclass(frozen=True)
class Production:
    path: str = PRODUCTION_BINARY
    source: str = dataclasses.field(default="", compare=False)
    mode = "production"


ResolvedConnection = Union[Server, LocalCli, Production]


@dataclasses.dataclass(frozen=True)
class RuntimeOverrides:
    server_url: Optional[str] = None
    cli_path: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class GlobalFlags:
    amp_server: Optional[str] = None
    amp_path: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class ResolutionInputs:
    overrides: RuntimeOverrides
    scopes: Sequence[Optional[ConfigScope]]
    global_flags: GlobalFlags
    env: Mapping[str, Optional[str]]
    persisted: PersistedConfig


SourceProvider = Callable[[ResolutionInputs], Optional[str]]


def _scope_value(index: int, key: str) -> SourceProvider:
    def provider(inputs: ResolutionInputs) -> Optional[str]:
        if index >= len(inputs.scopes):
            return None
        scope = inputs.scopes[index]
        return getattr(scope, key) if scope is not None else None

    return provider


def _env_value(name: str) -> SourceProvider:
    return lambda inputs: inputs.env.get(name)


SERVER_URL_SOURCES: Tuple[Tuple[str, SourceProvider], ...] = (
    ("override", lambda i: i.overrides.server_url),
    ("config:case", _scope_value(0, "amp_server_url")),
    ("config:suite", _scope_value(1, "amp_server_url")),
    ("config:defaults", _scope_value(2, "amp_server_url")),
    ("flag:--amp-server", lambda i: i.global_flags.amp_server),
    (f"env:{ENV_SERVER_URL}", _env_value(ENV_SERVER_URL)),
    ("persisted:localServerUrl", lambda i: i.persisted.local_server_url),
)

CLI_PATH_SOURCES: Tuple[Tuple[str, SourceProvider], ...] = (
    ("override", lambda i: i.overrides.cli_path),
    ("config:case", _scope_value(0, "amp_cli_path")),
    ("config:suite", _scope_value(1, "amp_cli_path")),
    ("config:defaults", _scope_value(2, "amp_cli_path")),
    ("flag:--amp-path", lambda i: i.global_flags.amp_path),
    (f"env:{ENV_CLI_PATH}", _env_value(ENV_CLI_PATH)),
    (f"env:{ENV_CLI_PATH_LEGACY}", _env_value(ENV_CLI_PATH_LEGACY)),
    ("persisted:customCliPath", lambda i: i.persisted.custom_cli_path),
)


def first_present(
    sources: Sequence[Tuple[str, SourceProvider]], inputs: ResolutionInputs
) -> Optional[Tuple[str, str]]:
    """Return ``(source_name, value)`` for the first non-blank source."""
    for name, provider in sources:
        value = provider(inputs)
        if isinstance(value, str) and value.strip():
            return name, value.strip()
    return None


def default_local_cli_path(home: Optional[Path] = None) -> Path:
    return (home if home is not None else Path.home()).joinpath(*DEFAULT_LOCAL_CLI)


def _is_regular_file(path: Path) -> bool:
    # Absent is the expected case and falls through quietly; anything else
    # (permission denied, I/O error) is worth a warning but still falls through.
    try:
        os.stat(path)
    except (FileNotFoundError, NotADirectoryError):
        return False
    except OSError as exc:
        _logger.warning("Cannot inspect default Amp CLI at %s: %s", path, exc)
        return False
    return path.is_file()


def _cli_connection(value: str, source: str, home: Optional[Path]) -> ResolvedConnection:
    expanded = expand_home(value, home)
    if expanded == PRODUCTION_BINARY:
        return Production(source=source)
    return LocalCli(path=expanded, source=source)


def resolve_connection(
    overrides: Optional[RuntimeOverrides] = None,
    structured: Optional[StructuredConfig] = None,
    global_flags: Optional[GlobalFlags] = None,
    env: Optional[Mapping[str, Optional[str]]] = None,
    persisted: Optional[PersistedConfig] = None,
    *,
    suite: Optional[str] = None,
    case: Optional[str] = None,
    home: Optional[Path] = None,
) -> ResolvedConnection:
    """Resolve exactly one connection; never raises.

    ``env`` is passed explicitly; no process environment is read here.
    """
    overrides = overrides or RuntimeOverrides()
    structured = structured or StructuredConfig()
    inputs = ResolutionInputs(
        overrides=overrides,
        scopes=structured.scopes(suite, case),
        global_flags=global_flags or GlobalFlags(),
        env=env or {},
        persisted=persisted or PersistedConfig(),
    )

    override_url = first_present(SERVER_URL_SOURCES[:1], inputs)
    if override_url is not None:
        return Server(url=override_url[1], source=override_url[0])
    override_path = first_present(CLI_PATH_SOURCES[:1], inputs)
    if override_path is not None and override_path[1] == PRODUCTION_SENTINEL:
        return Production(source="override:production")

    server = first_present(SERVER_URL_SOURCES, inputs)
    if server is not None:
        return Server(url=server[1], source=server[0])

    cli = first_present(CLI_PATH_SOURCES, inputs)
    if cli is not None:
        return _cli_connection(cli[1], cli[0], home)

    local_default = default_local_cli_path(home)
    if _is_regular_file(local_default):
        return LocalCli(path=str(local_default), source="default:local-install")
    return Production(source="default")


def connection_environment(connection: ResolvedConnection) -> Dict[str, str]:
    """Variables a connection needs in the child environment."""
    from .env_sanitizer import is_loopback_url

    env: Dict[str, str] = {}
    if isinstance(connection, Server):
        env[ENV_SERVER_URL] = connection.url
        if is_loopback_url(connection.url):
            env[ENV_TLS_BYPASS] = "0"
    return env


def is_local_server(connection: ResolvedConnection) -> bool:
    from .env_sanitizer import is_loopback_url

    return isinstance(connection, Server) and is_loopback_url(connection.url)


def describe_connection(connection: ResolvedConnection) -> str:
    if isinstance(connection, Production):
        return "Production (ampcode.com)"
    if isinstance(connection, Server):
        label = "Local Server" if is_local_server(connection) else "Server"
        return f"{label} ({connection.url})"
    return f"Local CLI ({connection.path})"


def validate_cli_path(path: str, *, env: Optional[Mapping[str, str]] = None) -> bool:
    """True when ``path`` (or the bare production binary on PATH) is runnable."""
    return resolve_executable(expand_home(path), env=env) is not None
