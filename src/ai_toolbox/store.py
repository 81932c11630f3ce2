"""Provider store: ordered, exclusively-applied provider records per tool.

Each tool has one store persisted as a JSON document. Every mutation builds
a new copy of the rows, persists it, and only then swaps it in, all under
the store's lock, so readers never see a half-applied change.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from ai_toolbox import codec
from ai_toolbox.errors import CodecError, InUseError, NotFoundError, ValidationError
from ai_toolbox.fileio import atomic_write, file_lock
from ai_toolbox.tools import ToolId

logger = logging.getLogger("ai_toolbox.store")

STORE_VERSION = 1

EXTRA_FIELDS = ("source_provider_id", "website_url", "notes", "icon", "icon_color")

# Older documents used camelCase keys.
_LEGACY_KEYS = {
    "settingsConfig": "settings_config",
    "sortIndex": "sort_index",
    "isApplied": "is_applied",
    "isDisabled": "is_disabled",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "sourceProviderId": "source_provider_id",
    "websiteUrl": "website_url",
    "iconColor": "icon_color",
}


class Category(str, Enum):
    OFFICIAL = "official"
    THIRD_PARTY = "third_party"
    CUSTOM = "custom"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ProviderRecord:
    """Snapshot of one provider (or agents profile) record."""

    id: str
    name: str
    category: str
    settings: Any
    sort_index: int = 0
    is_applied: bool = False
    is_disabled: bool = False
    created_at: str = ""
    updated_at: str = ""
    source_provider_id: str | None = None
    website_url: str | None = None
    notes: str | None = None
    icon: str | None = None
    icon_color: str | None = None


@dataclass
class CommonConfig:
    tool: ToolId
    settings: Any
    updated_at: str | None = None


def _normalize_row(raw: dict) -> dict:
    row = {}
    for key, value in raw.items():
        row[_LEGACY_KEYS.get(key, key)] = value
    row.setdefault("settings_config", "{}")
    if row.get("sort_index") is None:
        row["sort_index"] = 0
    row["is_applied"] = bool(row.get("is_applied", False))
    row["is_disabled"] = bool(row.get("is_disabled", False))
    row.setdefault("created_at", "")
    row.setdefault("updated_at", "")
    return row


def _check_category(category: str | Category) -> str:
    try:
        return Category(category).value
    except ValueError:
        valid = ", ".join(c.value for c in Category)
        raise ValidationError(f"Unknown category '{category}' (expected one of: {valid})") from None


class ProviderStore:
    """CRUD, ordering and the exclusive applied marker for one tool."""

    def __init__(self, tool: ToolId, path: Path):
        self.tool = tool
        self.path = Path(path)
        self._lock = threading.RLock()
        self._rows: dict[str, dict] = {}
        self._common: dict[str, Any] = {"config": "", "updated_at": None}
        self._selected_id: str | None = None
        self._load()

    # -- persistence ---------------------------------------------------

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise CodecError(f"invalid store document: {e}", str(self.path)) from e

        rows = {}
        for raw in data.get("providers", []):
            row = _normalize_row(raw)
            if not row.get("id"):
                raise CodecError("provider without id", str(self.path))
            rows[row["id"]] = row
        applied = [r["id"] for r in rows.values() if r["is_applied"]]
        if len(applied) > 1:
            raise CodecError(f"more than one applied provider: {', '.join(applied)}", str(self.path))
        for row in rows.values():
            if row["is_applied"] and row["is_disabled"]:
                raise CodecError(f"provider {row['id']} is both applied and disabled", str(self.path))

        common = data.get("common_config") or {}
        self._rows = rows
        self._common = {
            "config": common.get("config", ""),
            "updated_at": common.get("updated_at") or common.get("updatedAt"),
        }
        self._selected_id = data.get("selected_id")
        logger.debug("Loaded %d %s provider(s) from %s", len(rows), self.tool.value, self.path)

    def _persist(
        self,
        rows: dict[str, dict],
        common: dict[str, Any] | None = None,
        selected_id: str | None | object = ...,
    ) -> None:
        """Write the new state, then swap it in. Caller holds the lock."""
        common = self._common if common is None else common
        if selected_id is ...:
            selected_id = self._selected_id
        doc = {
            "version": STORE_VERSION,
            "tool": self.tool.value,
            "selected_id": selected_id,
            "providers": sorted(rows.values(), key=_row_order),
            "common_config": common,
        }
        with file_lock(self.path):
            atomic_write(self.path, json.dumps(doc, indent=2, ensure_ascii=False) + "\n")
        self._rows = rows
        self._common = common
        self._selected_id = selected_id

    # -- snapshots -----------------------------------------------------

    def _to_record(self, row: dict) -> ProviderRecord:
        settings = codec.decode(self.tool, row["settings_config"])
        return ProviderRecord(
            id=row["id"],
            name=row.get("name", ""),
            category=row.get("category", Category.CUSTOM.value),
            settings=settings,
            sort_index=row["sort_index"],
            is_applied=row["is_applied"],
            is_disabled=row["is_disabled"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            **{name: row.get(name) for name in EXTRA_FIELDS},
        )

    def _row(self, provider_id: str) -> dict:
        row = self._rows.get(provider_id)
        if row is None:
            raise NotFoundError(f"No {self.tool.value} provider with id '{provider_id}'")
        return row

    def list(self) -> list[ProviderRecord]:
        """All records, in presentation order."""
        with self._lock:
            rows = sorted(self._rows.values(), key=_row_order)
            return [self._to_record(row) for row in rows]

    def get(self, provider_id: str) -> ProviderRecord:
        with self._lock:
            return self._to_record(self._row(provider_id))

    def applied(self) -> ProviderRecord | None:
        with self._lock:
            for row in self._rows.values():
                if row["is_applied"]:
                    return self._to_record(row)
            return None

    @property
    def lock(self) -> threading.RLock:
        """The store's mutation lock, for callers that must read and mutate as one step."""
        return self._lock

    @property
    def selected_id(self) -> str | None:
        return self._selected_id

    # -- mutations -----------------------------------------------------

    def _check_settings(self, settings: Any, common: bool = False) -> str:
        """Encode ``settings``, refusing anything that would not decode again."""
        expected = codec.settings_type(self.tool, common)
        if not isinstance(settings, expected):
            kind = "common config" if common else "providers"
            raise ValidationError(
                f"{self.tool.value} {kind} take {expected.__name__}, "
                f"got {type(settings).__name__}"
            )
        try:
            blob = codec.encode(settings)
            codec.decode(self.tool, blob, common)
        except CodecError as e:
            raise ValidationError(f"Invalid {self.tool.value} settings: {e}") from e
        return blob

    def create(
        self,
        name: str,
        settings: Any,
        category: str | Category = Category.CUSTOM,
        provider_id: str | None = None,
        **extras: str | None,
    ) -> ProviderRecord:
        if not name or not name.strip():
            raise ValidationError("Provider name must not be empty")
        blob = self._check_settings(settings)
        category = _check_category(category)
        _check_extras(extras)
        with self._lock:
            if provider_id is None:
                provider_id = uuid.uuid4().hex
            elif not provider_id.strip():
                raise ValidationError("Provider id must not be empty")
            elif provider_id in self._rows:
                raise ValidationError(f"Provider id '{provider_id}' already exists")
            now = _now()
            row = {
                "id": provider_id,
                "name": name.strip(),
                "category": category,
                "settings_config": blob,
                "sort_index": max((r["sort_index"] for r in self._rows.values()), default=-1) + 1,
                "is_applied": False,
                "is_disabled": False,
                "created_at": now,
                "updated_at": now,
            }
            row.update({k: v for k, v in extras.items() if v is not None})
            rows = copy.deepcopy(self._rows)
            rows[provider_id] = row
            self._persist(rows)
            logger.info("Created %s provider %s (%s)", self.tool.value, provider_id, row["name"])
            return self._to_record(row)

    def update(
        self,
        provider_id: str,
        name: str | None = None,
        settings: Any = None,
        category: str | Category | None = None,
        **extras: str | None,
    ) -> ProviderRecord:
        """Change descriptive fields and settings. Flags and order are untouched."""
        _check_extras(extras)
        with self._lock:
            rows = copy.deepcopy(self._rows)
            row = rows.get(provider_id)
            if row is None:
                raise NotFoundError(f"No {self.tool.value} provider with id '{provider_id}'")
            if name is not None:
                if not name.strip():
                    raise ValidationError("Provider name must not be empty")
                row["name"] = name.strip()
            if settings is not None:
                row["settings_config"] = self._check_settings(settings)
            if category is not None:
                row["category"] = _check_category(category)
            for key, value in extras.items():
                if value is not None:
                    row[key] = value or None
            row["updated_at"] = _now()
            self._persist(rows)
            return self._to_record(row)

    def delete(self, provider_id: str) -> None:
        with self._lock:
            row = self._row(provider_id)
            if row["is_applied"]:
                raise InUseError(
                    f"Provider '{row.get('name', provider_id)}' is applied; "
                    "apply another provider first"
                )
            rows = copy.deepcopy(self._rows)
            del rows[provider_id]
            selected = None if self._selected_id == provider_id else self._selected_id
            self._persist(rows, selected_id=selected)
            logger.info("Deleted %s provider %s", self.tool.value, provider_id)

    def reorder(self, ids: list[str]) -> None:
        """Set the full order. ``ids`` must name every record exactly once."""
        with self._lock:
            if len(ids) != len(set(ids)):
                raise ValidationError("Reorder list contains duplicate ids")
            if set(ids) != set(self._rows):
                missing = sorted(set(self._rows) - set(ids))
                unknown = sorted(set(ids) - set(self._rows))
                raise ValidationError(
                    f"Reorder list must name every provider exactly once "
                    f"(missing: {missing}, unknown: {unknown})"
                )
            rows = copy.deepcopy(self._rows)
            for index, provider_id in enumerate(ids):
                rows[provider_id]["sort_index"] = index
            self._persist(rows)

    def select(self, provider_id: str) -> None:
        """Mark a record as the current selection without applying it."""
        with self._lock:
            self._row(provider_id)
            self._persist(self._rows, selected_id=provider_id)

    def set_applied(self, provider_id: str) -> ProviderRecord:
        """Make ``provider_id`` the only applied record, in one transaction."""
        with self._lock:
            row = self._row(provider_id)
            if row["is_disabled"]:
                raise NotFoundError(
                    f"Provider '{row.get('name', provider_id)}' is disabled and cannot be applied"
                )
            now = _now()
            rows = copy.deepcopy(self._rows)
            for other in rows.values():
                flag = other["id"] == provider_id
                if other["is_applied"] != flag:
                    other["is_applied"] = flag
                    other["updated_at"] = now
            self._persist(rows)
            return self._to_record(rows[provider_id])

    def clear_applied(self) -> None:
        with self._lock:
            if not any(r["is_applied"] for r in self._rows.values()):
                return
            now = _now()
            rows = copy.deepcopy(self._rows)
            for row in rows.values():
                if row["is_applied"]:
                    row["is_applied"] = False
                    row["updated_at"] = now
            self._persist(rows)

    def set_disabled(self, provider_id: str, disabled: bool) -> ProviderRecord:
        with self._lock:
            row = self._row(provider_id)
            if disabled and row["is_applied"]:
                raise InUseError(
                    f"Provider '{row.get('name', provider_id)}' is applied; "
                    "clear or switch the applied provider before disabling it"
                )
            rows = copy.deepcopy(self._rows)
            rows[provider_id]["is_disabled"] = disabled
            rows[provider_id]["updated_at"] = _now()
            self._persist(rows)
            return self._to_record(rows[provider_id])

    # -- common config -------------------------------------------------

    def get_common_config(self) -> CommonConfig:
        with self._lock:
            settings = codec.decode(self.tool, self._common["config"], common=True)
            return CommonConfig(self.tool, settings, self._common.get("updated_at"))

    def save_common_config(self, settings: Any) -> CommonConfig:
        blob = self._check_settings(settings, common=True)
        with self._lock:
            common = {"config": blob, "updated_at": _now()}
            self._persist(self._rows, common=common)
            return CommonConfig(self.tool, settings, common["updated_at"])


def _row_order(row: dict) -> tuple:
    return (row["sort_index"], row["created_at"], row["id"])


def _check_extras(extras: dict) -> None:
    unknown = set(extras) - set(EXTRA_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown provider field(s): {', '.join(sorted(unknown))}")


def open_stores(data_dir: Path) -> dict[ToolId, ProviderStore]:
    """Open (or start) the store of every managed tool under ``data_dir``."""
    providers_dir = Path(data_dir) / "providers"
    return {tool: ProviderStore(tool, providers_dir / f"{tool.value}.json") for tool in ToolId}
