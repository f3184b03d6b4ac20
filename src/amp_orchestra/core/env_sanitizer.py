import ipaddress
import logging
from typing import Dict, Mapping, Optional
from urllib.parse import urlsplit

from .connection import (
    ENV_SERVER_URL,
    ENV_TLS_BYPASS,
    LocalCli,
    Production,
    ResolvedConnection,
    Server,
)

_logger = logging.getLogger(__name__)

TLS_BYPASS_VALUE = "0"


def _is_loopback_host(host: str) -> bool:
    host = host.strip().strip("[]").lower()
    if host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def is_loopback_url(url: Optional[str]) -> bool:
    """True when ``url`` points at this machine (``localhost``, 127/8, ``::1``)."""
    if not url or not url.strip():
        return False
    candidate = url.strip()
    if "://" not in candidate:
        candidate = f"//{candidate}"
    try:
        host = urlsplit(candidate).hostname
    except ValueError:
        return False
    return bool(host) and _is_loopback_host(host)


def sanitize_environment(
    raw_env: Mapping[str, Optional[str]], connection: ResolvedConnection
) -> Dict[str, str]:
    """Return the environment to hand to the launcher for ``connection``.

    Absent (``None``) values are dropped first. Sanitize right before each
    launch; the result depends on the environment snapshot it was given.
    """
    env: Dict[str, str] = {k: v for k, v in raw_env.items() if v is not None}

    if isinstance(connection, Production):
        if ENV_SERVER_URL in env:
            _logger.warning(
                "%s present in production mode (%r); removing to force system defaults",
                ENV_SERVER_URL,
                env[ENV_SERVER_URL],
            )
            env.pop(ENV_SERVER_URL, None)
            env.pop(ENV_TLS_BYPASS, None)
        return env

    if isinstance(connection, LocalCli):
        endpoint = env.get(ENV_SERVER_URL)
        if endpoint is None:
            return env
        if not is_loopback_url(endpoint):
            _logger.warning(
                "Removing non-local %s=%r for local CLI run", ENV_SERVER_URL, endpoint
            )
            env.pop(ENV_SERVER_URL)
        elif ENV_TLS_BYPASS not in env:
            env[ENV_TLS_BYPASS] = TLS_BYPASS_VALUE
        return env

    if isinstance(connection, Server):
        if is_loopback_url(connection.url) and ENV_TLS_BYPASS not in env:
            env[ENV_TLS_BYPASS] = TLS_BYPASS_VALUE
    return env
