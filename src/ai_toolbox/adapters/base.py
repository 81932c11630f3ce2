"""Abstract base class for remote transports."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

# Called with (bytes_done, total_bytes) while a file moves.
ProgressCallback = Callable[[int, int], None]

CHUNK_SIZE = 64 * 1024


@dataclass
class RemoteStat:
    mtime: float
    size: int


class RemoteTransport(ABC):
    """The capabilities the sync engine needs from a remote host.

    One ``connect()`` opens the session used by every later call until
    ``close()``. Session-level failures raise RemoteConnectionError;
    failures of a single file raise RemoteFileError.
    """

    @abstractmethod
    def connect(self) -> None:
        """Open the session."""

    @abstractmethod
    def stat(self, path: str) -> RemoteStat | None:
        """Stat a remote regular file. Returns None if it does not exist."""

    @abstractmethod
    def read_file(self, path: str, progress: ProgressCallback | None = None) -> bytes:
        """Read a remote file."""

    @abstractmethod
    def write_file(
        self,
        path: str,
        data: bytes,
        mtime: float | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        """Write a remote file, creating parent directories.

        When ``mtime`` is given the remote file's modification time is set
        to it.
        """

    @abstractmethod
    def close(self) -> None:
        """Close the session. Safe to call more than once."""

    def probe(self) -> str:
        """Check the open session; returns a short description of the remote."""
        return self.display_name

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable name for status messages."""

    def __enter__(self) -> RemoteTransport:
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
