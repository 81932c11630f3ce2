"""Per-file locks and atomic writes shared by apply and sync."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator

from ai_toolbox.errors import IoError

logger = logging.getLogger("ai_toolbox.fileio")

_registry_lock = threading.Lock()
_locks: dict[str, threading.RLock] = {}


def _lock_key(path: str | Path) -> str:
    return os.path.realpath(os.path.expanduser(str(path)))


def file_lock(path: str | Path) -> threading.RLock:
    """Return the process-wide lock guarding writes to ``path``."""
    key = _lock_key(path)
    with _registry_lock:
        lock = _locks.get(key)
        if lock is None:
            lock = _locks[key] = threading.RLock()
        return lock


@contextmanager
def locked_files(paths: Iterable[str | Path]) -> Iterator[None]:
    """Hold the locks of every path, acquired in a stable order."""
    keys = sorted({_lock_key(p) for p in paths})
    acquired = []
    try:
        for key in keys:
            lock = file_lock(key)
            lock.acquire()
            acquired.append(lock)
        yield
    finally:
        for lock in reversed(acquired):
            lock.release()


def _to_bytes(data: str | bytes) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else data


def _stage(path: Path, data: bytes, mtime: float | None = None) -> str:
    """Write ``data`` to a temp file beside ``path`` and return its name."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    except OSError as e:
        raise IoError(f"Cannot create temp file: {e.strerror or e}", str(path)) from e
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if mtime is not None:
            os.utime(tmp, (mtime, mtime))
    except OSError as e:
        _unlink_quietly(tmp)
        raise IoError(f"Write failed: {e.strerror or e}", str(path)) from e
    return tmp


def _unlink_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


def atomic_write(path: str | Path, data: str | bytes, mtime: float | None = None) -> None:
    """Replace ``path`` with ``data`` via temp file + rename.

    Caller holds the file lock when the path may be shared.
    """
    path = Path(path)
    tmp = _stage(path, _to_bytes(data), mtime)
    try:
        os.replace(tmp, path)
    except OSError as e:
        _unlink_quietly(tmp)
        raise IoError(f"Rename failed: {e.strerror or e}", str(path)) from e


class AtomicFileSet:
    """Write several files so that either all of them change or none do.

    Use as a context manager: ``stage()`` each target inside the block; the
    set is committed on a clean exit and discarded if the block raises.
    """

    def __init__(self) -> None:
        self._staged: list[tuple[Path, str]] = []

    def __enter__(self) -> AtomicFileSet:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.discard()
            return
        self.commit()

    @property
    def paths(self) -> list[Path]:
        return [path for path, _ in self._staged]

    def stage(self, path: str | Path, data: str | bytes) -> None:
        self._staged.append((Path(path), _stage(Path(path), _to_bytes(data))))

    def discard(self) -> None:
        for _, tmp in self._staged:
            _unlink_quietly(tmp)
        self._staged = []

    def commit(self) -> None:
        with locked_files(self.paths):
            self._commit_locked()

    def _commit_locked(self) -> None:
        backups: dict[Path, str | None] = {}
        try:
            for path, _ in self._staged:
                backups[path] = self._backup(path)
        except IoError:
            self._drop_backups(backups)
            self.discard()
            raise

        replaced: list[Path] = []
        try:
            for path, tmp in self._staged:
                try:
                    os.replace(tmp, path)
                except OSError as e:
                    raise IoError(f"Rename failed: {e.strerror or e}", str(path)) from e
                replaced.append(path)
        except IoError:
            self._rollback(replaced, backups)
            self._drop_backups(backups)
            self.discard()
            raise
        self._drop_backups(backups)
        self._staged = []

    @staticmethod
    def _backup(path: Path) -> str | None:
        if not path.is_file():
            return None
        backup = None
        try:
            fd, backup = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".bak", dir=path.parent)
            os.close(fd)
            shutil.copy2(path, backup)
        except OSError as e:
            if backup is not None:
                _unlink_quietly(backup)
            raise IoError(f"Backup failed: {e.strerror or e}", str(path)) from e
        return backup

    @staticmethod
    def _rollback(replaced: list[Path], backups: dict[Path, str | None]) -> None:
        for path in reversed(replaced):
            backup = backups.pop(path, None)
            try:
                if backup is None:
                    path.unlink()
                else:
                    os.replace(backup, path)
            except OSError as e:
                logger.error("Could not restore %s after a failed write: %s", path, e)

    @staticmethod
    def _drop_backups(backups: dict[Path, str | None]) -> None:
        for backup in backups.values():
            if backup is not None:
                _unlink_quietly(backup)
