"""Apply engine: write a provider's merged settings into the tool's native files."""

from __future__ import annotations

import logging
from pathlib import Path

from ai_toolbox import codec
from ai_toolbox.errors import CodecError, IoError, NotFoundError
from ai_toolbox.events import ChangeOrigin, ConfigChanged, EventBus
from ai_toolbox.fileio import AtomicFileSet, file_lock
from ai_toolbox.store import ProviderRecord, ProviderStore
from ai_toolbox.tools import (
    ToolId,
    claude_settings_path,
    codex_config_paths,
    oh_my_opencode_config_path,
    opencode_config_path,
)

logger = logging.getLogger("ai_toolbox.apply")


class ApplyEngine:
    """Merges provider + common config and writes native files atomically.

    The applied marker only moves after every native file was written; a
    failed write leaves the files and the previously applied record as they
    were.
    """

    def __init__(
        self,
        stores: dict[ToolId, ProviderStore],
        home: Path,
        bus: EventBus | None = None,
        environ: dict[str, str] | None = None,
    ):
        self.stores = stores
        self.home = Path(home)
        self.bus = bus
        self.environ = environ

    def native_targets(self, tool: ToolId, common) -> dict[str, Path]:
        """Map each rendered role to the file it is written to."""
        if tool is ToolId.CLAUDE_CODE:
            return {"settings": claude_settings_path(self.home)}
        if tool is ToolId.CODEX:
            config, auth = codex_config_paths(self.home)
            return {"config": config, "auth": auth}
        if tool is ToolId.OPENCODE:
            path = opencode_config_path(self.home, common.config_path, self.environ)
            return {"config": path}
        return {"config": oh_my_opencode_config_path(self.home)}

    def _load(self, tool: ToolId, provider_id: str) -> tuple[ProviderRecord, object]:
        store = self.stores[tool]
        record = store.get(provider_id)
        if record.is_disabled:
            raise NotFoundError(f"Provider '{record.name}' is disabled and cannot be applied")
        return record, store.get_common_config().settings

    def _hand_edits(self, store: ProviderStore, common, targets: dict[str, Path]) -> dict[str, dict]:
        """Top-level keys in the native files that the last apply did not write.

        Keys written for the previously applied provider are left out so
        they do not leak into the next one. ``auth`` is never carried over.
        """
        written: dict[str, set] = {}
        try:
            previous = store.applied()
        except CodecError as e:
            logger.warning("Cannot read the applied %s provider: %s", store.tool.value, e)
            previous = None
        if previous is not None:
            for role, document in codec.native_documents(previous.settings, common):
                written[role] = set(document)

        kept = {}
        for role, path in targets.items():
            if role == "auth" or not path.is_file():
                continue
            try:
                with file_lock(path):
                    text = path.read_text(encoding="utf-8")
            except OSError as e:
                raise IoError(f"Cannot read native file: {e}", str(path)) from e
            if not text.strip():
                continue
            try:
                current = codec.load_native(text, str(path))
            except CodecError as e:
                logger.warning("Replacing unreadable %s: %s", path, e)
                continue
            kept[role] = {k: v for k, v in current.items() if k not in written.get(role, ())}
        return kept

    def preview(self, tool: ToolId, provider_id: str) -> list[tuple[Path, str]]:
        """Rendered native files for ``provider_id``, without writing anything."""
        record, common = self._load(tool, provider_id)
        targets = self.native_targets(tool, common)
        kept = self._hand_edits(self.stores[tool], common, targets)
        rendered = codec.render(record.settings, common, kept)
        return [(targets[role], text) for role, text in rendered]

    def apply(
        self,
        tool: ToolId,
        provider_id: str,
        origin: ChangeOrigin = ChangeOrigin.UI,
    ) -> ProviderRecord:
        store = self.stores[tool]
        with store.lock:
            record, common = self._load(tool, provider_id)
            targets = self.native_targets(tool, common)
            kept = self._hand_edits(store, common, targets)
            rendered = codec.render(record.settings, common, kept)

            with AtomicFileSet() as files:
                for role, text in rendered:
                    files.stage(targets[role], text)

            applied = store.set_applied(provider_id)

        logger.info(
            "Applied %s provider %s to %s",
            tool.value,
            provider_id,
            ", ".join(str(targets[role]) for role, _ in rendered),
        )
        if self.bus is not None:
            self.bus.publish(ConfigChanged(tool.value, origin))
        return applied
