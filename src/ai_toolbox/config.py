"""Configuration management for ai-toolbox."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ai_toolbox.errors import CodecError, ValidationError
from ai_toolbox.fileio import atomic_write, file_lock
from ai_toolbox.mappings import Direction, FileMapping, default_mappings, validate_mappings

CONFIG_DIR = Path.home() / ".config" / "ai-toolbox"
CONFIG_VERSION = 1
DEFAULT_CONNECT_TIMEOUT = 10.0


@dataclass
class Settings:
    """Process-level settings: where data lives and how long to wait for SSH."""

    data_dir: Path = CONFIG_DIR
    home: Path = field(default_factory=Path.home)
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT

    @property
    def ssh_config_file(self) -> Path:
        return self.data_dir / "ssh.json"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> Settings:
        """Read ``AI_TOOLBOX_HOME`` and ``AI_TOOLBOX_CONNECT_TIMEOUT``."""
        env = os.environ if environ is None else environ
        data_dir = Path(env["AI_TOOLBOX_HOME"]).expanduser() if env.get("AI_TOOLBOX_HOME") else CONFIG_DIR
        raw_timeout = env.get("AI_TOOLBOX_CONNECT_TIMEOUT")
        try:
            timeout = float(raw_timeout) if raw_timeout else DEFAULT_CONNECT_TIMEOUT
        except ValueError:
            raise ValidationError(
                f"AI_TOOLBOX_CONNECT_TIMEOUT must be a number, got {raw_timeout!r}"
            ) from None
        if timeout <= 0:
            raise ValidationError("AI_TOOLBOX_CONNECT_TIMEOUT must be positive")
        return cls(data_dir=data_dir, connect_timeout=timeout)


@dataclass
class SSHConnection:
    """A saved SSH target."""

    id: str
    name: str
    host: str
    port: int = 22
    username: str = ""
    auth_method: str = "key"
    private_key_path: str = ""
    password: str = ""
    passphrase: str = ""
    sort_order: int = 0

    @property
    def target(self) -> str:
        return f"{self.username}@{self.host}" if self.username else self.host

    def validate(self) -> None:
        if not self.host:
            raise ValidationError(f"Connection '{self.name or self.id}': host is required")
        if not 0 < int(self.port) < 65536:
            raise ValidationError(f"Connection '{self.name or self.id}': invalid port {self.port}")
        if self.auth_method not in ("key", "password"):
            raise ValidationError(
                f"Connection '{self.name or self.id}': auth method must be 'key' or 'password'"
            )
        if self.auth_method == "password" and not self.password:
            raise ValidationError(
                f"Connection '{self.name or self.id}': password auth needs a password"
            )


@dataclass
class SSHSyncConfig:
    """Root SSH sync configuration."""

    enabled: bool = False
    active_connection_id: str = ""
    connections: list[SSHConnection] = field(default_factory=list)
    file_mappings: list[FileMapping] = field(default_factory=default_mappings)
    allowed_roots: list[str] = field(default_factory=list)
    last_sync_time: str | None = None
    last_sync_status: str = "never"
    last_sync_error: str | None = None

    def get_connection(self, connection_id: str) -> SSHConnection | None:
        for conn in self.connections:
            if conn.id == connection_id:
                return conn
        return None

    def active_connection(self) -> SSHConnection | None:
        if not self.active_connection_id:
            return None
        return self.get_connection(self.active_connection_id)

    def get_mapping(self, mapping_id: str) -> FileMapping | None:
        for mapping in self.file_mappings:
            if mapping.id == mapping_id:
                return mapping
        return None


def _get(d: dict, snake: str, camel: str, default: Any = None) -> Any:
    if snake in d:
        return d[snake]
    return d.get(camel, default)


def _connection_from_dict(d: dict) -> SSHConnection:
    return SSHConnection(
        id=d["id"],
        name=d.get("name", ""),
        host=d.get("host", ""),
        port=int(d.get("port", 22)),
        username=d.get("username", ""),
        auth_method=_get(d, "auth_method", "authMethod", "key"),
        private_key_path=_get(d, "private_key_path", "privateKeyPath", ""),
        password=d.get("password", ""),
        passphrase=d.get("passphrase", ""),
        sort_order=int(_get(d, "sort_order", "sortOrder", 0)),
    )


def _mapping_from_dict(d: dict) -> FileMapping:
    direction = d.get("direction", Direction.PUSH.value)
    try:
        direction = Direction(direction)
    except ValueError:
        raise CodecError(f"unknown direction '{direction}'", f"file_mappings.{d.get('id')}") from None
    return FileMapping(
        id=d["id"],
        name=d.get("name", ""),
        module=d.get("module", ""),
        local_path=_get(d, "local_path", "localPath", ""),
        remote_path=_get(d, "remote_path", "remotePath", ""),
        direction=direction,
        enabled=d.get("enabled", True),
    )


def load_ssh_config(path: Path) -> SSHSyncConfig:
    """Load SSH sync config from disk. Returns defaults if the file doesn't exist.

    A document without a ``file_mappings`` key gets the default mapping set;
    an explicit empty list stays empty.
    """
    if not path.exists():
        return SSHSyncConfig()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise CodecError(f"invalid SSH config: {e}", str(path)) from e

    try:
        connections = sorted(
            (_connection_from_dict(c) for c in data.get("connections", [])),
            key=lambda c: (c.sort_order, c.name),
        )
        raw_mappings = _get(data, "file_mappings", "fileMappings")
        mappings = (
            default_mappings()
            if raw_mappings is None
            else [_mapping_from_dict(m) for m in raw_mappings]
        )
    except (KeyError, TypeError) as e:
        raise CodecError(f"malformed SSH config entry: {e}", str(path)) from e

    return SSHSyncConfig(
        enabled=bool(data.get("enabled", False)),
        active_connection_id=_get(data, "active_connection_id", "activeConnectionId", ""),
        connections=connections,
        file_mappings=mappings,
        allowed_roots=list(_get(data, "allowed_roots", "allowedRoots", [])),
        last_sync_time=_get(data, "last_sync_time", "lastSyncTime"),
        last_sync_status=_get(data, "last_sync_status", "lastSyncStatus", "never"),
        last_sync_error=_get(data, "last_sync_error", "lastSyncError"),
    )


def validate_ssh_config(config: SSHSyncConfig, home: Path | None = None) -> None:
    ids = [c.id for c in config.connections]
    if len(ids) != len(set(ids)):
        raise ValidationError("Duplicate connection ids")
    for conn in config.connections:
        conn.validate()
    if config.active_connection_id and config.get_connection(config.active_connection_id) is None:
        raise ValidationError(f"Active connection '{config.active_connection_id}' does not exist")
    validate_mappings(config.file_mappings, config.allowed_roots, home)


def save_ssh_config(config: SSHSyncConfig, path: Path, home: Path | None = None) -> None:
    """Validate and save SSH sync config to disk."""
    validate_ssh_config(config, home)

    data: dict[str, Any] = {
        "version": CONFIG_VERSION,
        "enabled": config.enabled,
        "active_connection_id": config.active_connection_id,
        "connections": [],
        "file_mappings": [],
        "allowed_roots": list(config.allowed_roots),
        "last_sync_time": config.last_sync_time,
        "last_sync_status": config.last_sync_status,
        "last_sync_error": config.last_sync_error,
    }

    for conn in config.connections:
        cd: dict[str, Any] = {
            "id": conn.id,
            "name": conn.name,
            "host": conn.host,
            "port": conn.port,
            "username": conn.username,
            "auth_method": conn.auth_method,
            "sort_order": conn.sort_order,
        }
        if conn.private_key_path:
            cd["private_key_path"] = conn.private_key_path
        if conn.password:
            cd["password"] = conn.password
        if conn.passphrase:
            cd["passphrase"] = conn.passphrase
        data["connections"].append(cd)

    for m in config.file_mappings:
        data["file_mappings"].append(
            {
                "id": m.id,
                "name": m.name,
                "module": m.module,
                "local_path": m.local_path,
                "remote_path": m.remote_path,
                "direction": Direction(m.direction).value,
                "enabled": m.enabled,
            }
        )

    with file_lock(path):
        atomic_write(path, json.dumps(data, indent=2) + "\n")
