"""Test harness configuration.

This repo uses a `src/` layout. In some developer environments an older
installed `amp_orchestra` package can shadow the local sources.

Ensure tests always import the in-repo code.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterator

import pytest


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    src_path = str(src_dir)
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


@pytest.fixture(autouse=True)
def _reset_package_logger() -> Iterator[None]:
    """CLI runs attach a file handler with propagate=False; undo it per test."""
    yield
    from amp_orchestra import logging_utils

    for name in list(logging_utils._LOGGER_CACHE):
        logger = logging_utils._LOGGER_CACHE.pop(name)
        for handler in list(logger.handlers):
            handler.close()
        logger.handlers.clear()
        logger.propagate = True


@pytest.fixture()
def toolbox_root(tmp_path: Path):
    """Factory creating a toolbox directory with a ``bin/`` of small files."""

    def _make(name: str, files: dict) -> Path:
        root = tmp_path / name
        bin_dir = root / "bin"
        bin_dir.mkdir(parents=True)
        for rel, content in files.items():
            path = bin_dir / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
            path.chmod(0o755)
        return root

    return _make


@pytest.fixture()
def runtime_root(tmp_path: Path) -> Path:
    return tmp_path / "runtime_toolboxes"


@pytest.fixture()
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    for name in (
        "AMP_URL",
        "AMP_CLI_PATH",
        "AMP_BIN",
        "AMP_ARGS",
        "AMP_TOOLBOX_PATHS",
        "AMP_ENABLE_TOOLBOXES",
        "AMP_TOOLBOX_MAX_FILES",
        "AMP_TOOLBOX_MAX_MB",
        "AMP_TOOLBOX_MAX_BYTES",
        "NODE_TLS_REJECT_UNAUTHORIZED",
    ):
        monkeypatch.delenv(name, raising=False)
    return home
