"""Remote transports used by the sync engine."""

from __future__ import annotations

from ai_toolbox.adapters.base import RemoteStat, RemoteTransport
from ai_toolbox.adapters.local import LocalTransport
from ai_toolbox.adapters.ssh import SshTransport
from ai_toolbox.config import DEFAULT_CONNECT_TIMEOUT, SSHConnection

__all__ = ["LocalTransport", "RemoteStat", "RemoteTransport", "SshTransport", "create_transport"]

FILE_SCHEME = "file://"


def create_transport(
    connection: SSHConnection,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
) -> RemoteTransport:
    """Factory: the right transport for a saved connection."""
    if connection.host.startswith(FILE_SCHEME):
        return LocalTransport(connection.host[len(FILE_SCHEME):])
    return SshTransport(connection, connect_timeout=connect_timeout)
