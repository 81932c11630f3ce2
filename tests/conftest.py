"""Shared test fixtures."""

import os
from pathlib import Path

import pytest

from ai_toolbox.adapters.base import CHUNK_SIZE, RemoteStat, RemoteTransport
from ai_toolbox.config import Settings, SSHConnection, SSHSyncConfig
from ai_toolbox.errors import RemoteConnectionError, RemoteFileError
from ai_toolbox.mappings import Direction, FileMapping
from ai_toolbox.service import Toolbox
from ai_toolbox.store import open_stores


class FakeTransport(RemoteTransport):
    """In-memory remote host.

    ``files`` maps remote path to ``(data, mtime)``. Paths in ``denied``
    fail like a permission error; ``drop_on`` loses the session when that
    path is touched.
    """

    def __init__(self):
        self.files: dict[str, tuple[bytes, float]] = {}
        self.denied: set[str] = set()
        self.drop_on: set[str] = set()
        self.fail_connect: str | None = None
        self.connects = 0
        self.closed = 0
        self.writes: list[str] = []

    def _check(self, path: str) -> None:
        if path in self.drop_on:
            raise RemoteConnectionError("Lost connection to fake: broken pipe")
        if path in self.denied:
            raise RemoteFileError("Permission denied", path)

    def connect(self) -> None:
        self.connects += 1
        if self.fail_connect:
            raise RemoteConnectionError(self.fail_connect)

    def close(self) -> None:
        self.closed += 1

    def stat(self, path):
        self._check(path)
        if path not in self.files:
            return None
        data, mtime = self.files[path]
        return RemoteStat(mtime=mtime, size=len(data))

    def read_file(self, path, progress=None):
        self._check(path)
        data = self.files[path][0]
        if progress is not None:
            progress(len(data), len(data))
        return data

    def write_file(self, path, data, mtime=None, progress=None):
        self._check(path)
        total = len(data)
        sent = 0
        while sent < total:
            sent = min(total, sent + CHUNK_SIZE)
            if progress is not None:
                progress(sent, total)
        self.files[path] = (bytes(data), mtime if mtime is not None else 0.0)
        self.writes.append(path)

    @property
    def display_name(self) -> str:
        return "fake"


@pytest.fixture
def home(tmp_path):
    """A fake user home directory."""
    h = tmp_path / "home"
    h.mkdir()
    return h


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def stores(data_dir):
    return open_stores(data_dir)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def connection():
    return SSHConnection(id="dev", name="Dev box", host="devbox", username="me")


@pytest.fixture
def toolbox(data_dir, home, transport):
    tb = Toolbox(
        Settings(data_dir=data_dir, home=home),
        transport_factory=lambda conn: transport,
        environ={},
    )
    yield tb
    tb.close()


def write_local(home: Path, rel: str, text: str, mtime: float | None = None) -> Path:
    path = home / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def mapping(id: str, rel: str, direction=Direction.PUSH, enabled=True, module="claude") -> FileMapping:
    return FileMapping(
        id=id,
        name=id,
        module=module,
        local_path=f"~/{rel}",
        remote_path=f"~/{rel}",
        direction=direction,
        enabled=enabled,
    )


def sync_config(connection: SSHConnection, mappings: list[FileMapping], enabled=True) -> SSHSyncConfig:
    return SSHSyncConfig(
        enabled=enabled,
        active_connection_id=connection.id,
        connections=[connection],
        file_mappings=mappings,
    )
