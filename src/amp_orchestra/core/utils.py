import os
import shutil
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence


def is_within(root: Path, target: Path) -> bool:
    try:
        target.relative_to(root)
        return True
    except ValueError:
        return False


def expand_home(value: str, home: Optional[Path] = None) -> str:
    """Expand a leading ``~/`` against ``home`` (defaults to the user's home)."""
    if value.startswith("~/"):
        base = home if home is not None else Path.home()
        return str(base / value[2:])
    return value


def atomic_write(path: Path, content: str, *, mode: Optional[int] = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        f.write(content)
    if mode is not None:
        os.chmod(tmp_path, mode)
    tmp_path.replace(path)


def prepend_path(
    env: Mapping[str, str], entries: Sequence[str], *, sep: str = os.pathsep
) -> Dict[str, str]:
    """Return a copy of ``env`` with ``entries`` placed ahead of its PATH."""
    updated = dict(env)
    existing = [p for p in (updated.get("PATH") or "").split(sep) if p]
    merged: list[str] = []
    for p in list(entries) + existing:
        if p and p not in merged:
            merged.append(p)
    updated["PATH"] = sep.join(merged)
    return updated


def resolve_executable(
    binary: str, *, env: Optional[Mapping[str, str]] = None
) -> Optional[str]:
    """
    Resolve an executable the way the launched process would see it.
    Returns an absolute path if found, else None.
    """
    if not binary:
        return None
    # If explicitly provided a path, respect it.
    if os.path.sep in binary or (os.path.altsep and os.path.altsep in binary):
        candidate = Path(binary).expanduser()
        if candidate.is_file() and os.access(str(candidate), os.X_OK):
            return str(candidate)
        return None
    path = env.get("PATH") if env is not None else os.environ.get("PATH")
    return shutil.which(binary, path=path)
