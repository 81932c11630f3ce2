"""Command surface: one object wiring stores, apply, SSH config and sync.

Front ends (the CLI here, a GUI or tray elsewhere) call these methods and
subscribe to ``toolbox.bus`` for change and sync notifications.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

from ai_toolbox.adapters import create_transport
from ai_toolbox.apply import ApplyEngine
from ai_toolbox.config import (
    Settings,
    SSHConnection,
    SSHSyncConfig,
    load_ssh_config,
    save_ssh_config,
)
from ai_toolbox.errors import ValidationError
from ai_toolbox.events import ChangeOrigin, ConfigChanged, EventBus, SyncProgress
from ai_toolbox.mappings import FileMapping, default_mappings
from ai_toolbox.store import Category, CommonConfig, ProviderRecord, ProviderStore, open_stores
from ai_toolbox.sync import Observer, OutcomeStatus, SyncEngine, SyncResult, TransportFactory
from ai_toolbox.tools import ToolId, get_tool

logger = logging.getLogger("ai_toolbox.service")

SSH_CHANNEL = "ssh"


@dataclass
class SyncStatus:
    ssh_available: bool
    active_connection_name: str | None
    status: str
    last_sync_time: str | None
    last_sync_status: str
    last_sync_error: str | None
    progress: SyncProgress | None = None


class Toolbox:
    def __init__(
        self,
        settings: Settings | None = None,
        bus: EventBus | None = None,
        transport_factory: TransportFactory | None = None,
        environ: dict[str, str] | None = None,
    ):
        self.settings = settings or Settings.from_env()
        self.bus = bus or EventBus()
        self.environ = environ
        self.stores = open_stores(self.settings.data_dir)
        self.apply_engine = ApplyEngine(self.stores, self.settings.home, self.bus, environ)
        self.transport_factory = transport_factory or self._default_transport
        self.sync_engine = SyncEngine(self.transport_factory, self.bus)
        self._ssh_lock = threading.RLock()

    def _default_transport(self, connection: SSHConnection):
        return create_transport(connection, self.settings.connect_timeout)

    def _store(self, tool: str | ToolId) -> ProviderStore:
        return self.stores[get_tool(tool)]

    def _changed(self, tool: str | ToolId, origin: ChangeOrigin) -> None:
        name = tool if tool == SSH_CHANNEL else get_tool(tool).value
        self.bus.publish(ConfigChanged(name, origin))

    # -- providers -----------------------------------------------------

    def list_providers(self, tool: str | ToolId) -> list[ProviderRecord]:
        return self._store(tool).list()

    def get_provider(self, tool: str | ToolId, provider_id: str) -> ProviderRecord:
        return self._store(tool).get(provider_id)

    def create_provider(
        self,
        tool: str | ToolId,
        name: str,
        settings: Any,
        category: str | Category = Category.CUSTOM,
        provider_id: str | None = None,
        origin: ChangeOrigin = ChangeOrigin.UI,
        **extras: str | None,
    ) -> ProviderRecord:
        record = self._store(tool).create(name, settings, category, provider_id, **extras)
        self._changed(tool, origin)
        return record

    def update_provider(
        self,
        tool: str | ToolId,
        provider_id: str,
        name: str | None = None,
        settings: Any = None,
        category: str | Category | None = None,
        origin: ChangeOrigin = ChangeOrigin.UI,
        **extras: str | None,
    ) -> ProviderRecord:
        """Update a record. Editing the applied record does not re-apply it."""
        record = self._store(tool).update(provider_id, name, settings, category, **extras)
        self._changed(tool, origin)
        return record

    def delete_provider(
        self, tool: str | ToolId, provider_id: str, origin: ChangeOrigin = ChangeOrigin.UI
    ) -> None:
        self._store(tool).delete(provider_id)
        self._changed(tool, origin)

    def reorder_providers(
        self, tool: str | ToolId, ids: list[str], origin: ChangeOrigin = ChangeOrigin.UI
    ) -> None:
        self._store(tool).reorder(ids)
        self._changed(tool, origin)

    def select_provider(
        self, tool: str | ToolId, provider_id: str, origin: ChangeOrigin = ChangeOrigin.UI
    ) -> None:
        self._store(tool).select(provider_id)
        self._changed(tool, origin)

    def apply_config(
        self, tool: str | ToolId, provider_id: str, origin: ChangeOrigin = ChangeOrigin.UI
    ) -> ProviderRecord:
        return self.apply_engine.apply(get_tool(tool), provider_id, origin)

    def preview_config(self, tool: str | ToolId, provider_id: str):
        return self.apply_engine.preview(get_tool(tool), provider_id)

    def toggle_disabled(
        self,
        tool: str | ToolId,
        provider_id: str,
        disabled: bool,
        origin: ChangeOrigin = ChangeOrigin.UI,
    ) -> ProviderRecord:
        record = self._store(tool).set_disabled(provider_id, disabled)
        self._changed(tool, origin)
        return record

    def get_common_config(self, tool: str | ToolId) -> CommonConfig:
        return self._store(tool).get_common_config()

    def save_common_config(
        self, tool: str | ToolId, settings: Any, origin: ChangeOrigin = ChangeOrigin.UI
    ) -> CommonConfig:
        common = self._store(tool).save_common_config(settings)
        self._changed(tool, origin)
        return common

    # -- ssh sync ------------------------------------------------------

    def get_ssh_config(self) -> SSHSyncConfig:
        return load_ssh_config(self.settings.ssh_config_file)

    def save_ssh_config(
        self, config: SSHSyncConfig, origin: ChangeOrigin = ChangeOrigin.UI
    ) -> SyncResult | None:
        """Validate and save. Turning sync on runs a full sync, whose result is returned."""
        with self._ssh_lock:
            was_enabled = self.get_ssh_config().enabled
            save_ssh_config(config, self.settings.ssh_config_file, self.settings.home)
        self._changed(SSH_CHANNEL, origin)

        if config.enabled and not was_enabled and config.active_connection() is not None:
            logger.info("SSH sync enabled, running a full sync")
            return self.sync()
        return None

    def sync(
        self,
        module_filter: str | None = None,
        observer: Observer | None = None,
        cancel: threading.Event | None = None,
    ) -> SyncResult:
        config = self.get_ssh_config()
        if not config.enabled:
            raise ValidationError("SSH sync is not enabled")
        result = self.sync_engine.sync(
            config,
            module_filter=module_filter,
            observer=observer,
            cancel=cancel,
            home=self.settings.home,
            environ=self.environ,
        )
        self._record_result(result)
        return result

    def _record_result(self, result: SyncResult) -> None:
        with self._ssh_lock:
            config = self.get_ssh_config()
            config.last_sync_time = result.finished_at
            config.last_sync_status = result.durable_status
            config.last_sync_error = result.error or _failure_summary(result)
            save_ssh_config(config, self.settings.ssh_config_file, self.settings.home)

    def get_status(self) -> SyncStatus:
        config = self.get_ssh_config()
        active = config.active_connection() if config.enabled else None
        return SyncStatus(
            ssh_available=active is not None,
            active_connection_name=active.name if active else None,
            status=self.sync_engine.status,
            last_sync_time=config.last_sync_time,
            last_sync_status=config.last_sync_status,
            last_sync_error=config.last_sync_error,
            progress=self.sync_engine.progress,
        )

    def get_default_mappings(self) -> list[FileMapping]:
        return default_mappings()

    def test_connection(self, connection: SSHConnection) -> str:
        """Open a session to ``connection`` and return what the remote reports."""
        connection.validate()
        with self.transport_factory(connection) as transport:
            return transport.probe()

    def close(self) -> None:
        self.bus.close()


def _failure_summary(result: SyncResult) -> str | None:
    failed = [o for o in result.outcomes if o.status is OutcomeStatus.FAILED]
    if not failed:
        return None
    return "; ".join(f"{o.mapping_id}: {o.reason}" for o in failed)
