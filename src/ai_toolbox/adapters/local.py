"""Local filesystem transport: a directory standing in for a remote home."""

from __future__ import annotations

import os
from pathlib import Path

from ai_toolbox.adapters.base import ProgressCallback, RemoteStat, RemoteTransport
from ai_toolbox.errors import IoError, RemoteConnectionError, RemoteFileError
from ai_toolbox.fileio import atomic_write


class LocalTransport(RemoteTransport):
    """Maps remote paths under ``root``.

    ``~/x`` lands at ``root/x`` and ``/etc/x`` at ``root/etc/x``. Used for
    ``file://`` connections and in tests.
    """

    def __init__(self, root: Path | str):
        self.root = Path(root)
        self.connected = False

    def _path(self, remote: str) -> Path:
        if remote == "~":
            return self.root
        if remote.startswith("~/"):
            return self.root / remote[2:]
        return self.root / remote.lstrip("/")

    def connect(self) -> None:
        if not self.root.is_dir():
            raise RemoteConnectionError(f"Cannot connect to {self.display_name}: not a directory")
        self.connected = True

    def close(self) -> None:
        self.connected = False

    def stat(self, path: str) -> RemoteStat | None:
        p = self._path(path)
        try:
            st = p.stat()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise RemoteFileError(f"stat failed: {e}", path) from e
        if not p.is_file():
            return None
        return RemoteStat(mtime=st.st_mtime, size=st.st_size)

    def read_file(self, path: str, progress: ProgressCallback | None = None) -> bytes:
        try:
            data = self._path(path).read_bytes()
        except OSError as e:
            raise RemoteFileError(f"read failed: {e}", path) from e
        if progress is not None:
            progress(len(data), len(data))
        return data

    def write_file(
        self,
        path: str,
        data: bytes,
        mtime: float | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        target = self._path(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise RemoteFileError(f"mkdir failed: {e}", path) from e
        try:
            atomic_write(target, data, mtime=mtime)
        except IoError as e:
            raise RemoteFileError(str(e)) from e
        if progress is not None:
            progress(len(data), len(data))

    @property
    def display_name(self) -> str:
        return f"file://{os.fspath(self.root)}"
