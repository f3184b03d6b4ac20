import errno
import os
import socket
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator, Optional

try:
    import fcntl
except ImportError:  # pragma: no cover - Windows fallback
    fcntl = None  # type: ignore[assignment]

try:
    import msvcrt
except ImportError:  # pragma: no cover - POSIX default
    msvcrt = None  # type: ignore[assignment]

LOCKS_DIRNAME = ".locks"


class FileLockError(Exception):
    """Raised when a file lock fails unexpectedly."""


class FileLockBusy(FileLockError):
    """Raised when a file lock is already held by another process."""


class FileLock:
    """Advisory inter-process lock backed by a lock file.

    The holder's pid and host are written into the file so a stuck merge can
    be traced back to its owner.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._file: Optional[IO[str]] = None

    def acquire(self, *, blocking: bool = True) -> None:
        if self._file is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lock_file = self.path.open("a+", encoding="utf-8")
        try:
            if fcntl is not None:
                flags = fcntl.LOCK_EX
                if not blocking:
                    flags |= fcntl.LOCK_NB
                fcntl.flock(lock_file.fileno(), flags)
            elif msvcrt is not None:
                lock_file.seek(0)
                mode = msvcrt.LK_LOCK if blocking else msvcrt.LK_NBLCK
                msvcrt.locking(lock_file.fileno(), mode, 1)
        except OSError as exc:
            lock_file.close()
            if not blocking and (
                exc.errno in (errno.EACCES, errno.EAGAIN) or msvcrt is not None
            ):
                raise FileLockBusy(f"Lock already held: {self.path}") from exc
            raise FileLockError(f"Failed to acquire lock {self.path}: {exc}") from exc
        self._file = lock_file
        self._write_owner()

    def _write_owner(self) -> None:
        lock_file = self._file
        if lock_file is None or fcntl is None:
            return
        try:
            lock_file.seek(0)
            lock_file.truncate()
            lock_file.write(f"{os.getpid()}@{socket.gethostname()}\n")
            lock_file.flush()
        except OSError:
            # Owner info is diagnostic only.
            pass

    def release(self) -> None:
        lock_file = self._file
        if lock_file is None:
            return
        try:
            if fcntl is not None:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
            elif msvcrt is not None:
                lock_file.seek(0)
                msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
        finally:
            lock_file.close()
            self._file = None

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def merge_lock_path(runtime_root: Path, digest: str) -> Path:
    return runtime_root / LOCKS_DIRNAME / f"{digest}.lock"


@contextmanager
def file_lock(path: Path, *, blocking: bool = True) -> Iterator[FileLock]:
    lock = FileLock(path)
    lock.acquire(blocking=blocking)
    try:
        yield lock
    finally:
        lock.release()
