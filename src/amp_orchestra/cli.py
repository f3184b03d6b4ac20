import dataclasses
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from .core.config import ConfigError, OrchestraConfig, ToolboxProfile, load_config
from .core.connection import (
    ENV_TLS_BYPASS,
    GlobalFlags,
    LocalCli,
    ResolvedConnection,
    RuntimeOverrides,
    connection_environment,
    describe_connection,
    resolve_connection,
    validate_cli_path,
)
from .core.env_sanitizer import sanitize_environment
from .core.launch import LaunchRequest, prepare_launch, run_launch
from .core.toolbox import (
    ToolboxError,
    ToolboxLimits,
    merge_toolboxes,
    prune_toolbox_cache,
)
from .core.user_config import (
    PersistedConfig,
    get_value,
    load_user_config,
    redact_secrets,
    set_value,
    update_user_config,
    user_config_path,
)
from .logging_utils import setup_rotating_logger

app = typer.Typer(add_completion=False)
toolbox_app = typer.Typer(add_completion=False, help="Toolbox merge cache.")
config_app = typer.Typer(add_completion=False, help="Persisted user settings.")
app.add_typer(toolbox_app, name="toolbox")
app.add_typer(config_app, name="config")

LOGGER_NAME = "amp_orchestra"


@dataclasses.dataclass
class CliState:
    flags: GlobalFlags
    user_config: Optional[Path]


def _state(ctx: typer.Context) -> CliState:
    obj = ctx.obj
    if isinstance(obj, CliState):
        return obj
    return CliState(flags=GlobalFlags(), user_config=None)


def _require_config(path: Optional[Path]) -> OrchestraConfig:
    try:
        config = load_config(path or Path.cwd())
    except ConfigError as exc:
        raise typer.Exit(str(exc))
    setup_rotating_logger(LOGGER_NAME, config.log)
    return config


def _connection_payload(connection: ResolvedConnection) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"mode": connection.mode, "source": connection.source}
    payload.update(
        {
            field.name: getattr(connection, field.name)
            for field in dataclasses.fields(connection)
            if field.name != "source"
        }
    )
    return payload


def _select_profile(
    config: OrchestraConfig, name: Optional[str]
) -> Optional[ToolboxProfile]:
    if not name:
        return None
    profile = config.toolbox.profile(name)
    if profile is None:
        raise typer.Exit(f"Unknown toolbox profile '{name}'")
    return profile


@app.callback()
def main(
    ctx: typer.Context,
    amp_server: Optional[str] = typer.Option(
        None, "--amp-server", help="Server URL for every launch in this process"
    ),
    amp_path: Optional[str] = typer.Option(
        None, "--amp-path", help="Amp CLI path for every launch in this process"
    ),
    user_config: Optional[Path] = typer.Option(
        None, "--user-config", help="Persisted settings file (defaults to ampsm/config.json)"
    ),
):
    """Resolve and launch the Amp CLI with composed toolboxes."""
    ctx.obj = CliState(
        flags=GlobalFlags(amp_server=amp_server, amp_path=amp_path),
        user_config=user_config,
    )


@app.command()
def resolve(
    ctx: typer.Context,
    path: Optional[Path] = typer.Option(None, "--path", help="Project path"),
    server_url: Optional[str] = typer.Option(None, "--server-url", help="Override server URL"),
    cli_path: Optional[str] = typer.Option(
        None, "--cli-path", help="Override CLI path ('production' forces the system amp)"
    ),
    suite: Optional[str] = typer.Option(None, "--suite"),
    case: Optional[str] = typer.Option(None, "--case"),
    output_json: bool = typer.Option(False, "--json", help="Emit JSON"),
):
    """Show which backend a launch would use."""
    state = _state(ctx)
    config = _require_config(path)
    connection = resolve_connection(
        RuntimeOverrides(server_url=server_url, cli_path=cli_path),
        config.structured,
        state.flags,
        os.environ,
        load_user_config(state.user_config),
        suite=suite,
        case=case,
    )
    if output_json:
        typer.echo(json.dumps(_connection_payload(connection)))
        return
    typer.echo(describe_connection(connection))
    typer.echo(f"Source: {connection.source}")
    if isinstance(connection, LocalCli) and not validate_cli_path(connection.path):
        typer.echo(f"Warning: {connection.path} is not an executable file")


@app.command()
def env(
    ctx: typer.Context,
    path: Optional[Path] = typer.Option(None, "--path", help="Project path"),
    server_url: Optional[str] = typer.Option(None, "--server-url"),
    cli_path: Optional[str] = typer.Option(None, "--cli-path"),
    suite: Optional[str] = typer.Option(None, "--suite"),
    case: Optional[str] = typer.Option(None, "--case"),
    prefix: str = typer.Option("AMP_", "--prefix", help="Only show keys with this prefix"),
):
    """Print the sanitized environment a launch would receive."""
    state = _state(ctx)
    config = _require_config(path)
    connection = resolve_connection(
        RuntimeOverrides(server_url=server_url, cli_path=cli_path),
        config.structured,
        state.flags,
        os.environ,
        load_user_config(state.user_config),
        suite=suite,
        case=case,
    )
    raw_env = dict(os.environ)
    raw_env.update(connection_environment(connection))
    sanitized = sanitize_environment(raw_env, connection)
    for key in sorted(sanitized):
        if key.startswith(prefix) or key == ENV_TLS_BYPASS:
            typer.echo(f"{key}={sanitized[key]}")


@app.command()
def launch(
    ctx: typer.Context,
    args: Optional[List[str]] = typer.Argument(None, help="Extra arguments for amp"),
    path: Optional[Path] = typer.Option(None, "--path", help="Working directory"),
    server_url: Optional[str] = typer.Option(None, "--server-url"),
    cli_path: Optional[str] = typer.Option(None, "--cli-path"),
    suite: Optional[str] = typer.Option(None, "--suite"),
    case: Optional[str] = typer.Option(None, "--case"),
    profile: Optional[str] = typer.Option(None, "--profile", help="Toolbox profile name"),
    context: str = typer.Option("chat", "--context", help="chat, tui or external_tool"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print instead of running"),
):
    """Prepare a launch and run it (or print it with --dry-run)."""
    state = _state(ctx)
    cwd = (path or Path.cwd()).resolve()
    config = _require_config(cwd)
    request = LaunchRequest(
        cwd=cwd,
        args=list(args or []),
        overrides=RuntimeOverrides(server_url=server_url, cli_path=cli_path),
        suite=suite,
        case=case,
        context=context,
    )
    try:
        spec = prepare_launch(
            request,
            config=config,
            env=os.environ,
            persisted=load_user_config(state.user_config),
            global_flags=state.flags,
            profile=_select_profile(config, profile),
        )
    except (ToolboxError, ValueError) as exc:
        raise typer.Exit(str(exc))
    if dry_run:
        payload = {
            "connection": _connection_payload(spec.connection),
            "argv": spec.argv,
            "cwd": str(spec.cwd),
            "path": spec.env.get("PATH", ""),
            "toolbox": str(spec.toolbox.bin_path) if spec.toolbox else None,
        }
        typer.echo(json.dumps(payload, indent=2))
        return
    result = run_launch(spec)
    raise typer.Exit(code=result.returncode)


@toolbox_app.command("merge")
def toolbox_merge(
    paths: List[Path] = typer.Argument(..., help="Toolbox roots, lowest precedence first"),
    max_files: Optional[int] = typer.Option(None, "--max-files"),
    max_mb: Optional[int] = typer.Option(None, "--max-mb"),
    path: Optional[Path] = typer.Option(None, "--path", help="Project path"),
):
    """Merge toolbox roots and print the resulting bin directory."""
    config = _require_config(path)
    limits = ToolboxLimits.from_env(
        os.environ,
        ToolboxLimits(
            max_files=config.toolbox.max_files,
            max_total_bytes=config.toolbox.max_total_bytes,
        ),
    )
    if max_files is not None:
        limits = dataclasses.replace(limits, max_files=max_files)
    if max_mb is not None:
        limits = dataclasses.replace(limits, max_total_bytes=max_mb * 1024 * 1024)
    try:
        merged = merge_toolboxes(paths, limits, runtime_root=config.toolbox.runtime_root)
    except ToolboxError as exc:
        raise typer.Exit(str(exc))
    typer.echo(str(merged.bin_path))
    typer.echo(
        f"hash={merged.hash} files={merged.manifest.files_count} "
        f"bytes={merged.manifest.bytes_total} cache_hit={merged.cache_hit}"
    )
    for skipped in merged.manifest.skipped:
        typer.echo(f"skipped: {skipped}")


@toolbox_app.command("prune")
def toolbox_prune(
    path: Optional[Path] = typer.Option(None, "--path", help="Project path"),
):
    """Remove old merged toolboxes from the runtime cache."""
    config = _require_config(path)
    removed = prune_toolbox_cache(
        config.toolbox.runtime_root,
        max_entries=config.toolbox.cache_max_entries,
        max_age_days=config.toolbox.cache_max_age_days,
    )
    typer.echo(f"Removed {len(removed)} toolbox director{'y' if len(removed) == 1 else 'ies'}")


@config_app.command("show")
def config_show(ctx: typer.Context):
    """Print persisted settings with secrets redacted."""
    state = _state(ctx)
    config = load_user_config(state.user_config)
    typer.echo(json.dumps(redact_secrets(config), indent=2))


@config_app.command("get")
def config_get(ctx: typer.Context, key: str = typer.Argument(...)):
    state = _state(ctx)
    value = get_value(load_user_config(state.user_config), key)
    typer.echo(json.dumps(value))


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    key: str = typer.Argument(...),
    value: str = typer.Argument(..., help="JSON value, or a plain string"),
):
    state = _state(ctx)
    try:
        parsed: Any = json.loads(value)
    except ValueError:
        parsed = value
    target = state.user_config or user_config_path()
    update_user_config(set_value(PersistedConfig(), key, parsed).raw, target)
    typer.echo(f"Set {key} in {target}")
