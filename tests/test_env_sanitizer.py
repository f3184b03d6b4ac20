import logging

import pytest

from amp_orchestra.core.connection import LocalCli, Production, Server
from amp_orchestra.core.env_sanitizer import is_loopback_url, sanitize_environment


@pytest.mark.parametrize(
    "url",
    [
        "https://localhost:7002",
        "http://127.0.0.1",
        "http://127.8.0.1:9000/api",
        "http://[::1]:8080",
        "https://amp.localhost",
        "localhost:7002",
    ],
)
def test_loopback_urls(url):
    assert is_loopback_url(url)


@pytest.mark.parametrize(
    "url", ["https://ampcode.com", "http://10.0.0.5", "", None, "https://localhost.evil.com"]
)
def test_non_loopback_urls(url):
    assert not is_loopback_url(url)


def test_production_strips_endpoint_even_when_empty(caplog):
    raw = {"AMP_URL": "", "NODE_TLS_REJECT_UNAUTHORIZED": "0", "HOME": "/home/me"}
    with caplog.at_level(logging.WARNING, logger="amp_orchestra"):
        env = sanitize_environment(raw, Production())
    assert "AMP_URL" not in env
    assert "NODE_TLS_REJECT_UNAUTHORIZED" not in env
    assert env["HOME"] == "/home/me"
    assert "production mode" in caplog.text
    # The input mapping is left untouched.
    assert raw["AMP_URL"] == ""


def test_production_without_endpoint_is_quiet(caplog):
    with caplog.at_level(logging.WARNING, logger="amp_orchestra"):
        env = sanitize_environment({"PATH": "/usr/bin"}, Production())
    assert env == {"PATH": "/usr/bin"}
    assert caplog.text == ""


def test_local_cli_drops_remote_endpoint(caplog):
    raw = {"AMP_URL": "https://stale.example"}
    with caplog.at_level(logging.WARNING, logger="amp_orchestra"):
        env = sanitize_environment(raw, LocalCli(path="/opt/amp/main.js"))
    assert "AMP_URL" not in env
    assert "NODE_TLS_REJECT_UNAUTHORIZED" not in env
    assert "non-local" in caplog.text


def test_local_cli_keeps_loopback_endpoint_and_injects_tls_bypass():
    env = sanitize_environment(
        {"AMP_URL": "https://localhost:7002"}, LocalCli(path="/opt/amp/main.js")
    )
    assert env["AMP_URL"] == "https://localhost:7002"
    assert env["NODE_TLS_REJECT_UNAUTHORIZED"] == "0"


def test_local_cli_keeps_existing_tls_setting():
    env = sanitize_environment(
        {"AMP_URL": "http://127.0.0.1:7002", "NODE_TLS_REJECT_UNAUTHORIZED": "1"},
        LocalCli(path="/opt/amp"),
    )
    assert env["NODE_TLS_REJECT_UNAUTHORIZED"] == "1"


def test_server_loopback_injects_tls_bypass():
    env = sanitize_environment({}, Server(url="https://localhost:7002"))
    assert env == {"NODE_TLS_REJECT_UNAUTHORIZED": "0"}


def test_server_remote_leaves_environment_alone():
    raw = {"AMP_URL": "https://amp.example", "OTHER": "x"}
    env = sanitize_environment(raw, Server(url="https://amp.example"))
    assert env == raw


def test_absent_values_are_dropped():
    env = sanitize_environment({"AMP_URL": None, "KEEP": "1"}, Production())
    assert env == {"KEEP": "1"}


@pytest.mark.parametrize(
    "connection",
    [Production(), LocalCli(path="/opt/amp"), Server(url="https://localhost:7002")],
)
def test_sanitizing_twice_is_stable(connection):
    raw = {"AMP_URL": "https://localhost:7002", "PATH": "/usr/bin"}
    once = sanitize_environment(raw, connection)
    assert sanitize_environment(once, connection) == once
