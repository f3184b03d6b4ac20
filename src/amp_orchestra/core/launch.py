"""Compose resolver, toolbox merge and sanitizer into one launch description."""

import dataclasses
import logging
import os
import shlex
import subprocess
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from ..logging_utils import log_event
from .config import OrchestraConfig, ToolboxProfile, default_config
from .connection import (
    PRODUCTION_BINARY,
    GlobalFlags,
    LocalCli,
    Production,
    ResolvedConnection,
    RuntimeOverrides,
    connection_environment,
    describe_connection,
    resolve_connection,
)
from .env_sanitizer import sanitize_environment
from .toolbox import (
    ENV_TOOLBOX_PATHS,
    LimitExceeded,
    MergedToolbox,
    ToolboxLimits,
    merge_toolboxes,
    split_toolbox_paths,
    toolboxes_enabled,
)
from .user_config import PersistedConfig
from .utils import prepend_path

_logger = logging.getLogger(__name__)

ENV_EXTRA_ARGS = "AMP_ARGS"
ENV_ACTIVE_TOOLBOX = "AMP_TOOLBOX"
ENV_ACTIVE_PROFILE = "AMP_ACTIVE_TOOLBOX_PROFILE"

LAUNCH_CONTEXTS = ("chat", "tui", "external_tool")
NODE_SCRIPT_SUFFIXES = (".js", ".mjs", ".cjs")


@dataclasses.dataclass
class LaunchRequest:
    cwd: Path
    args: List[str] = dataclasses.field(default_factory=list)
    overrides: RuntimeOverrides = dataclasses.field(default_factory=RuntimeOverrides)
    suite: Optional[str] = None
    case: Optional[str] = None
    context: str = "chat"


@dataclasses.dataclass
class LaunchSpec:
    command: str
    args: List[str]
    cwd: Path
    env: Dict[str, str]
    connection: ResolvedConnection
    toolbox: Optional[MergedToolbox] = None

    @property
    def argv(self) -> List[str]:
        return [self.command, *self.args]


def command_for(connection: ResolvedConnection) -> List[str]:
    """argv prefix that runs the Amp CLI for ``connection``."""
    if isinstance(connection, LocalCli):
        if connection.path.endswith(NODE_SCRIPT_SUFFIXES):
            return ["node", connection.path]
        return [connection.path]
    if isinstance(connection, Production):
        return [connection.path]
    return [PRODUCTION_BINARY]


def _extra_args(env: Mapping[str, Optional[str]]) -> List[str]:
    raw = env.get(ENV_EXTRA_ARGS)
    if not raw:
        return []
    try:
        return [part for part in shlex.split(raw) if part]
    except ValueError:
        _logger.warning("Ignoring unparsable %s=%r", ENV_EXTRA_ARGS, raw)
        return []


def _toolbox_paths(
    env: Mapping[str, Optional[str]], profile: Optional[ToolboxProfile]
) -> List[str]:
    if profile is not None:
        return list(profile.paths)
    return split_toolbox_paths(env.get(ENV_TOOLBOX_PATHS))


def _apply_toolbox(
    env: Dict[str, str],
    config: OrchestraConfig,
    profile: Optional[ToolboxProfile],
    context: str,
) -> Optional[MergedToolbox]:
    if not config.toolbox.enabled or not toolboxes_enabled(env):
        return None
    paths = _toolbox_paths(env, profile)
    if not paths:
        return None
    base_limits = ToolboxLimits(
        max_files=config.toolbox.max_files,
        max_total_bytes=config.toolbox.max_total_bytes,
    )
    limits = ToolboxLimits.from_env(env, base_limits)
    try:
        merged = merge_toolboxes(
            paths, limits, runtime_root=config.toolbox.runtime_root
        )
    except LimitExceeded as exc:
        if config.toolbox.on_limit != "skip":
            raise
        log_event(
            _logger,
            logging.WARNING,
            f"launch.{context}.toolbox_skipped",
            profile=profile.name if profile is not None else None,
            reason=str(exc),
        )
        return None

    env.update(prepend_path(env, [str(merged.bin_path)]))
    env[ENV_ACTIVE_TOOLBOX] = str(merged.root_path)
    env[ENV_TOOLBOX_PATHS] = os.pathsep.join(paths)
    if profile is not None:
        env[ENV_ACTIVE_PROFILE] = profile.name
    log_event(
        _logger,
        logging.INFO,
        f"launch.{context}.toolbox",
        profile=profile.name if profile is not None else None,
        hash=merged.hash,
        files_count=merged.manifest.files_count,
        bytes=merged.manifest.bytes_total,
        cache_hit=merged.cache_hit,
    )
    return merged


def prepare_launch(
    request: LaunchRequest,
    *,
    config: Optional[OrchestraConfig] = None,
    env: Mapping[str, Optional[str]],
    persisted: Optional[PersistedConfig] = None,
    global_flags: Optional[GlobalFlags] = None,
    profile: Optional[ToolboxProfile] = None,
) -> LaunchSpec:
    """Resolve everything needed to spawn the Amp CLI for one launch.

    Raises ``LimitExceeded`` when the active toolboxes are over their limits
    and ``toolbox.on_limit`` is ``abort``.
    """
    if request.context not in LAUNCH_CONTEXTS:
        raise ValueError(f"Unknown launch context '{request.context}'")
    config = config or default_config(request.cwd)
    connection = resolve_connection(
        request.overrides,
        config.structured,
        global_flags,
        env,
        persisted,
        suite=request.suite,
        case=request.case,
    )
    log_event(
        _logger,
        logging.INFO,
        f"launch.{request.context}.connection",
        mode=connection.mode,
        target=describe_connection(connection),
        source=connection.source or "-",
    )

    base_env: Dict[str, str] = {k: v for k, v in env.items() if v is not None}
    base_env.update(connection_environment(connection))
    toolbox = _apply_toolbox(base_env, config, profile, request.context)

    argv = command_for(connection)
    args = [*argv[1:], *config.launch_args, *request.args, *_extra_args(base_env)]
    return LaunchSpec(
        command=argv[0],
        args=args,
        cwd=request.cwd,
        env=sanitize_environment(base_env, connection),
        connection=connection,
        toolbox=toolbox,
    )


def run_launch(
    spec: LaunchSpec,
    *,
    input_text: Optional[str] = None,
    capture_output: bool = False,
) -> "subprocess.CompletedProcess[str]":
    return subprocess.run(
        spec.argv,
        cwd=str(spec.cwd),
        env=spec.env,
        input=input_text,
        capture_output=capture_output,
        text=True,
        check=False,
    )

