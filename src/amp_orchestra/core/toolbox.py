"""Content-addressed merge of toolbox directories.

An ordered list of toolbox roots is flattened into a single ``bin`` directory
under ``<runtime_root>/<hash>``. Later roots win name collisions. Merges are
built in a scratch directory and renamed into place, so a published merge is
always complete. A stale merge is moved aside (``.stale-*``) rather than
deleted, which keeps any PATH already handed to a running process valid until
the next prune.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import os
import shutil
import sys
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..logging_utils import log_event, safe_log
from .locks import LOCKS_DIRNAME, FileLock, FileLockBusy, file_lock, merge_lock_path
from .utils import is_within

_logger = logging.getLogger(__name__)

ENV_ENABLE_TOOLBOXES = "AMP_ENABLE_TOOLBOXES"
ENV_TOOLBOX_PATHS = "AMP_TOOLBOX_PATHS"
ENV_MAX_FILES = "AMP_TOOLBOX_MAX_FILES"
ENV_MAX_MB = "AMP_TOOLBOX_MAX_MB"
ENV_MAX_BYTES = "AMP_TOOLBOX_MAX_BYTES"

DEFAULT_MAX_FILES = 10_000
DEFAULT_MAX_TOTAL_BYTES = 500 * 1024 * 1024
MIB = 1024 * 1024

BIN_DIRNAME = "bin"
MANIFEST_FILENAME = "manifest.json"
HASH_LENGTH = 16
SCRATCH_PREFIX = ".tmp-"
STALE_PREFIX = ".stale-"

LinkFn = Callable[[str, str], Any]


class ToolboxError(Exception):
    """Base error for toolbox merges."""


class LimitExceeded(ToolboxError):
    """The merge would cross the configured file-count or size ceiling."""

    def __init__(self, kind: str, attempted: int, limit: int) -> None:
        self.kind = kind
        self.attempted = attempted
        self.limit = limit
        if kind == "files":
            detail = f"{attempted} files exceeds limit of {limit} files"
        else:
            detail = (
                f"{attempted} bytes ({attempted / MIB:.1f} MB) exceeds limit of "
                f"{limit} bytes ({limit / MIB:.1f} MB)"
            )
        super().__init__(f"Toolbox {kind} limit exceeded: {detail}")


class SourceUnavailable(ToolboxError):
    """A toolbox root is missing or unreadable."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Toolbox source unavailable: {path} ({reason})")


@dataclasses.dataclass(frozen=True)
class ToolboxLimits:
    max_files: int = DEFAULT_MAX_FILES
    max_total_bytes: int = DEFAULT_MAX_TOTAL_BYTES

    @classmethod
    def from_env(
        cls,
        env: Mapping[str, Optional[str]],
        base: Optional["ToolboxLimits"] = None,
    ) -> "ToolboxLimits":
        """Apply ``AMP_TOOLBOX_MAX_*`` overrides on top of ``base``.

        ``AMP_TOOLBOX_MAX_BYTES`` wins over ``AMP_TOOLBOX_MAX_MB``.
        """
        base = base or cls()
        max_files = _env_positive_int(env, ENV_MAX_FILES)
        max_bytes = _env_positive_int(env, ENV_MAX_BYTES)
        if max_bytes is None:
            max_mb = _env_positive_int(env, ENV_MAX_MB)
            max_bytes = max_mb * MIB if max_mb is not None else None
        return cls(
            max_files=max_files if max_files is not None else base.max_files,
            max_total_bytes=(
                max_bytes if max_bytes is not None else base.max_total_bytes
            ),
        )

    def check_next(self, files_count: int, bytes_total: int, next_size: int) -> None:
        if files_count + 1 > self.max_files:
            raise LimitExceeded("files", files_count + 1, self.max_files)
        if bytes_total + next_size > self.max_total_bytes:
            raise LimitExceeded("bytes", bytes_total + next_size, self.max_total_bytes)


def _env_positive_int(env: Mapping[str, Optional[str]], name: str) -> Optional[int]:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        _logger.warning("Ignoring %s=%r: not an integer", name, raw)
        return None
    if value <= 0:
        _logger.warning("Ignoring %s=%r: must be positive", name, raw)
        return None
    return value


@dataclasses.dataclass
class ToolboxEntry:
    name: str
    source_index: int
    source: str
    size: int
    strategy: str


@dataclasses.dataclass
class ToolboxManifest:
    hash: str
    sources: List[str]
    fingerprints: List[str]
    files_count: int
    bytes_total: int
    entries: List[ToolboxEntry]
    skipped: List[str]
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ToolboxManifest":
        return cls(
            hash=str(data["hash"]),
            sources=[str(s) for s in data["sources"]],
            fingerprints=[str(f) for f in data["fingerprints"]],
            files_count=int(data["files_count"]),
            bytes_total=int(data["bytes_total"]),
            entries=[ToolboxEntry(**entry) for entry in data.get("entries", [])],
            skipped=[str(s) for s in data.get("skipped", [])],
            created_at=str(data.get("created_at", "")),
        )


@dataclasses.dataclass
class MergedToolbox:
    hash: str
    root_path: Path
    bin_path: Path
    source_paths: List[Path]
    manifest: ToolboxManifest
    cache_hit: bool = False


LINK_STRATEGIES: Tuple[Tuple[str, LinkFn], ...] = (
    ("symlink", os.symlink),
    ("hardlink", os.link),
    ("copy", shutil.copy2),
)


def default_runtime_root(home: Optional[Path] = None) -> Path:
    return (home or Path.home()) / ".amp-orchestra" / "runtime_toolboxes"


def split_toolbox_paths(value: Optional[str], platform: Optional[str] = None) -> List[str]:
    """Split a toolbox path list: ``;`` on Windows, ``:`` or ``,`` elsewhere."""
    if not value:
        return []
    platform = platform or sys.platform
    if platform.startswith("win"):
        parts = value.split(";")
    else:
        parts = value.replace(",", ":").split(":")
    return [part.strip() for part in parts if part.strip()]


def toolboxes_enabled(env: Mapping[str, Optional[str]]) -> bool:
    raw = env.get(ENV_ENABLE_TOOLBOXES)
    if raw is None:
        return True
    return raw.strip().lower() not in ("0", "false")


def _normalize_sources(ordered_paths: Sequence[os.PathLike | str]) -> List[Path]:
    normalized: List[Path] = []
    for raw in ordered_paths:
        path = Path(raw).expanduser()
        try:
            path = path.resolve()
        except OSError:
            path = Path(os.path.abspath(path))
        normalized.append(path)
    return normalized


def merge_hash(ordered_paths: Sequence[os.PathLike | str]) -> str:
    """Stable, order-sensitive digest of the normalized source list."""
    hasher = hashlib.sha256()
    for path in _normalize_sources(ordered_paths):
        hasher.update(str(path).encode("utf-8"))
        hasher.update(b"\0")
    return hasher.hexdigest()[:HASH_LENGTH]


def _scan_dir(source: Path, *, log_skips: bool = True) -> Path:
    candidate = source / BIN_DIRNAME
    if not candidate.is_dir():
        return source
    target = candidate.resolve()
    if not is_within(source.resolve(), target):
        if log_skips:
            _logger.warning(
                "Skipping toolbox symlink escaping %s: %s -> %s",
                source,
                BIN_DIRNAME,
                target,
            )
        return source
    return candidate


def _scan_source(
    source: Path, *, log_skips: bool = True
) -> List[Tuple[str, Path, int]]:
    """List ``(relative_name, path, size)`` for every file a source contributes."""
    if not source.exists():
        raise SourceUnavailable(source, "does not exist")
    if not source.is_dir():
        raise SourceUnavailable(source, "not a directory")
    scan_root = _scan_dir(source, log_skips=log_skips)
    real_source = source.resolve()

    def _on_error(exc: OSError) -> None:
        raise SourceUnavailable(source, str(exc)) from exc

    found: List[Tuple[str, Path, int]] = []
    for dirpath, dirnames, filenames in os.walk(scan_root, onerror=_on_error):
        # Symlinked directories are listed but never descended into.
        dirnames[:] = sorted(
            d for d in dirnames if not os.path.islink(os.path.join(dirpath, d))
        )
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            rel = path.relative_to(scan_root).as_posix()
            target = path.resolve()
            if not is_within(real_source, target):
                if log_skips:
                    _logger.warning(
                        "Skipping toolbox symlink escaping %s: %s -> %s",
                        source,
                        rel,
                        target,
                    )
                continue
            try:
                stat = path.stat()
            except OSError as exc:
                _logger.warning("Skipping unreadable toolbox file %s: %s", path, exc)
                continue
            if not path.is_file():
                continue
            found.append((rel, path, stat.st_size))
    return found


def _fingerprint(source: Path) -> str:
    """Cheap recency signature: directory mtime plus each file's size and mtime."""
    scan_root = _scan_dir(source, log_skips=False)
    try:
        dir_mtime = scan_root.stat().st_mtime_ns
        files = _scan_source(source, log_skips=False)
    except (OSError, SourceUnavailable):
        return "unavailable"
    hasher = hashlib.sha256(str(dir_mtime).encode("utf-8"))
    for rel, path, size in files:
        try:
            mtime = path.stat().st_mtime_ns
        except OSError:
            mtime = 0
        hasher.update(f"{rel}\0{size}\0{mtime}\n".encode("utf-8"))
    return hasher.hexdigest()


def _load_manifest(root: Path) -> Optional[ToolboxManifest]:
    path = root / MANIFEST_FILENAME
    if not path.is_file():
        return None
    try:
        return ToolboxManifest.from_dict(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, ValueError, KeyError, TypeError) as exc:
        _logger.warning("Ignoring unreadable toolbox manifest %s: %s", path, exc)
        return None


def _cached_merge(
    root: Path, digest: str, sources: List[Path]
) -> Optional[MergedToolbox]:
    manifest = _load_manifest(root)
    if manifest is None or not (root / BIN_DIRNAME).is_dir():
        return None
    if manifest.sources != [str(s) for s in sources]:
        return None
    if manifest.fingerprints != [_fingerprint(s) for s in sources]:
        _logger.info("Toolbox merge %s is stale; rebuilding", digest)
        return None
    return MergedToolbox(
        hash=digest,
        root_path=root,
        bin_path=root / BIN_DIRNAME,
        source_paths=sources,
        manifest=manifest,
        cache_hit=True,
    )


def _clear_destination(bin_dir: Path, dst: Path) -> None:
    # A higher-precedence entry replaces whatever sits at dst or above it.
    current = bin_dir
    for part in dst.relative_to(bin_dir).parts[:-1]:
        current = current / part
        if current.is_symlink() or current.is_file():
            current.unlink()
    if dst.is_symlink() or dst.is_file():
        dst.unlink()
    elif dst.is_dir():
        shutil.rmtree(dst)
    dst.parent.mkdir(parents=True, exist_ok=True)


def _place(src: Path, dst: Path, strategies: Sequence[Tuple[str, LinkFn]]) -> str:
    errors: List[str] = []
    for name, link in strategies:
        try:
            link(str(src), str(dst))
        except OSError as exc:
            errors.append(f"{name}: {exc}")
            if os.path.lexists(dst):
                os.unlink(dst)
            continue
        return name
    raise ToolboxError(f"Could not place {src} into toolbox ({'; '.join(errors)})")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _build(
    scratch: Path,
    digest: str,
    sources: List[Path],
    limits: ToolboxLimits,
    strategies: Sequence[Tuple[str, LinkFn]],
) -> ToolboxManifest:
    bin_dir = scratch / BIN_DIRNAME
    bin_dir.mkdir(parents=True)
    files_count = 0
    bytes_total = 0
    entries: Dict[str, ToolboxEntry] = {}
    skipped: List[str] = []
    fingerprints: List[str] = []

    for idx, source in enumerate(sources):
        fingerprints.append(_fingerprint(source))
        try:
            files = _scan_source(source)
        except SourceUnavailable as exc:
            _logger.warning("%s; skipping", exc)
            skipped.append(str(source))
            continue
        for rel, path, size in files:
            limits.check_next(files_count, bytes_total, size)
            dst = bin_dir / rel
            _clear_destination(bin_dir, dst)
            strategy = _place(path, dst, strategies)
            files_count += 1
            bytes_total += size
            entries.pop(rel, None)
            entries[rel] = ToolboxEntry(
                name=rel,
                source_index=idx,
                source=str(source),
                size=size,
                strategy=strategy,
            )

    manifest = ToolboxManifest(
        hash=digest,
        sources=[str(s) for s in sources],
        fingerprints=fingerprints,
        files_count=files_count,
        bytes_total=bytes_total,
        entries=list(entries.values()),
        skipped=skipped,
        created_at=_now_iso(),
    )
    (scratch / MANIFEST_FILENAME).write_text(
        json.dumps(manifest.to_dict(), indent=2) + "\n", encoding="utf-8"
    )
    return manifest


def _mark_used(runtime_root: Path, digest: str) -> None:
    """Stamp the merge's lock file; prune ages merges by this mtime."""
    lock_path = merge_lock_path(runtime_root, digest)
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_path.touch()
    except OSError as exc:
        safe_log(
            _logger, logging.WARNING, "Failed to record use of toolbox %s", digest, exc=exc
        )


def _last_used(runtime_root: Path, merge_dir: Path) -> Optional[float]:
    """Latest of the build (manifest) and last-use (lock file) timestamps."""
    stamps: List[float] = []
    for path in (
        merge_dir / MANIFEST_FILENAME,
        merge_lock_path(runtime_root, merge_dir.name),
    ):
        try:
            stamps.append(path.stat().st_mtime)
        except OSError:
            continue
    return max(stamps) if stamps else None


def _publish(scratch: Path, root: Path) -> None:
    if root.exists():
        stale = root.parent / f"{STALE_PREFIX}{root.name}-{uuid.uuid4().hex[:8]}"
        os.replace(root, stale)
    os.replace(scratch, root)


def merge_toolboxes(
    ordered_paths: Sequence[os.PathLike | str],
    limits: Optional[ToolboxLimits] = None,
    *,
    runtime_root: Optional[Path] = None,
    strategies: Optional[Sequence[Tuple[str, LinkFn]]] = None,
) -> MergedToolbox:
    """Merge ``ordered_paths`` (index 0 lowest precedence) into one bin directory.

    Raises ``LimitExceeded`` when the merge would cross ``limits``; nothing is
    left on disk in that case. Missing sources are skipped with a warning.
    """
    if not ordered_paths:
        raise ToolboxError("no toolbox roots provided")
    sources = _normalize_sources(ordered_paths)
    digest = merge_hash(sources)
    runtime_root = runtime_root or default_runtime_root()
    root = runtime_root / digest
    limits = limits or ToolboxLimits()
    strategies = strategies or LINK_STRATEGIES

    cached = _cached_merge(root, digest, sources)
    if cached is not None:
        _mark_used(runtime_root, digest)
        return cached

    with file_lock(merge_lock_path(runtime_root, digest)):
        # Another builder may have published while we waited on the lock.
        cached = _cached_merge(root, digest, sources)
        if cached is not None:
            _mark_used(runtime_root, digest)
            return cached
        scratch = runtime_root / f"{SCRATCH_PREFIX}{digest}-{uuid.uuid4().hex[:8]}"
        try:
            manifest = _build(scratch, digest, sources, limits, strategies)
            _publish(scratch, root)
        except BaseException:
            shutil.rmtree(scratch, ignore_errors=True)
            raise
        _mark_used(runtime_root, digest)

    strategies_used = sorted({entry.strategy for entry in manifest.entries})
    log_event(
        _logger,
        logging.INFO,
        "toolbox.merged",
        hash=digest,
        files=manifest.files_count,
        bytes=manifest.bytes_total,
        strategies=",".join(strategies_used) or "-",
        skipped=len(manifest.skipped),
    )
    return MergedToolbox(
        hash=digest,
        root_path=root,
        bin_path=root / BIN_DIRNAME,
        source_paths=sources,
        manifest=manifest,
    )


def prune_toolbox_cache(
    runtime_root: Path,
    *,
    max_entries: Optional[int] = None,
    max_age_days: Optional[int] = None,
    scratch_grace_seconds: float = 3600,
    now: Optional[float] = None,
) -> List[Path]:
    """Remove old merges and leftover scratch/stale directories.

    A merge's age is its last use: every build and cache hit touches
    ``.locks/<hash>.lock``, and the newer of that stamp and the manifest
    counts. Merges whose build lock is currently held are left alone. A
    process that received a merge's PATH and then went quiet for longer than
    ``max_age_days`` is not tracked.
    """
    if not runtime_root.is_dir():
        return []
    now = now if now is not None else time.time()
    removed: List[Path] = []
    published: List[Tuple[float, Path]] = []

    for child in runtime_root.iterdir():
        if not child.is_dir() or child.name == LOCKS_DIRNAME:
            continue
        try:
            mtime = child.stat().st_mtime
        except OSError:
            continue
        if child.name.startswith((SCRATCH_PREFIX, STALE_PREFIX)):
            if now - mtime >= scratch_grace_seconds:
                shutil.rmtree(child, ignore_errors=True)
                removed.append(child)
            continue
        stamp = _last_used(runtime_root, child)
        published.append((stamp if stamp is not None else mtime, child))

    published.sort(key=lambda item: item[0], reverse=True)
    for idx, (last_used, child) in enumerate(published):
        too_many = max_entries is not None and idx >= max_entries
        too_old = max_age_days is not None and now - last_used > max_age_days * 86400
        if not (too_many or too_old):
            continue
        lock = FileLock(merge_lock_path(runtime_root, child.name))
        try:
            lock.acquire(blocking=False)
        except FileLockBusy:
            safe_log(
                _logger,
                logging.INFO,
                "Toolbox merge %s is being built; not pruning",
                child.name,
            )
            continue
        try:
            shutil.rmtree(child)
            removed.append(child)
            log_event(
                _logger,
                logging.INFO,
                "toolbox.pruned",
                hash=child.name,
                reason="max_entries" if too_many else "max_age_days",
                idle_seconds=int(now - last_used),
            )
        except OSError as exc:
            safe_log(
                _logger, logging.WARNING, "Failed to prune toolbox %s", child, exc=exc
            )
        finally:
            lock.release()
    return removed
