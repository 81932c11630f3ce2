"""File mappings: the default set, validation and local-side resolution."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ai_toolbox.errors import ValidationError
from ai_toolbox.tools import (
    oh_my_opencode_config_path,
    oh_my_opencode_slim_config_path,
    opencode_config_path,
)


class Direction(str, Enum):
    PUSH = "push"
    PULL = "pull"
    BIDIRECTIONAL = "bidirectional"


@dataclass
class FileMapping:
    """A local file mirrored to a remote path."""

    id: str
    name: str
    module: str
    local_path: str
    remote_path: str
    direction: Direction = Direction.PUSH
    enabled: bool = True


def default_mappings() -> list[FileMapping]:
    """The built-in mapping set.

    Existing entries keep their position and id across versions; new ones
    are only ever appended.
    """
    return [
        FileMapping(
            id="opencode-main",
            name="OpenCode config",
            module="opencode",
            local_path="~/.config/opencode/opencode.jsonc",
            remote_path="~/.config/opencode/opencode.jsonc",
        ),
        FileMapping(
            id="opencode-oh-my",
            name="Oh My OpenCode config",
            module="opencode",
            local_path="~/.config/opencode/oh-my-opencode.jsonc",
            remote_path="~/.config/opencode/oh-my-opencode.jsonc",
        ),
        FileMapping(
            id="opencode-oh-my-slim",
            name="Oh My OpenCode Slim config",
            module="opencode",
            local_path="~/.config/opencode/oh-my-opencode-slim.json",
            remote_path="~/.config/opencode/oh-my-opencode-slim.json",
            enabled=False,
        ),
        FileMapping(
            id="opencode-auth",
            name="OpenCode auth",
            module="opencode",
            local_path="~/.local/share/opencode/auth.json",
            remote_path="~/.local/share/opencode/auth.json",
        ),
        FileMapping(
            id="claude-settings",
            name="Claude Code settings",
            module="claude",
            local_path="~/.claude/settings.json",
            remote_path="~/.claude/settings.json",
        ),
        FileMapping(
            id="claude-config",
            name="Claude Code config",
            module="claude",
            local_path="~/.claude/config.json",
            remote_path="~/.claude/config.json",
        ),
        FileMapping(
            id="codex-auth",
            name="Codex auth",
            module="codex",
            local_path="~/.codex/auth.json",
            remote_path="~/.codex/auth.json",
        ),
        FileMapping(
            id="codex-config",
            name="Codex config",
            module="codex",
            local_path="~/.codex/config.toml",
            remote_path="~/.codex/config.toml",
        ),
    ]


def expand_local_path(
    path: str,
    home: Path | None = None,
    environ: dict[str, str] | None = None,
) -> str:
    """Expand ``~``, ``$HOME`` and the usual Windows ``%VAR%`` forms."""
    home_str = str(home if home is not None else Path.home())
    env = os.environ if environ is None else environ
    result = path
    if result == "~" or result.startswith("~/"):
        result = home_str + result[1:]
    values = {
        "HOME": home_str,
        "USERPROFILE": env.get("USERPROFILE") or home_str,
        "APPDATA": env.get("APPDATA"),
        "LOCALAPPDATA": env.get("LOCALAPPDATA"),
    }
    for var, value in values.items():
        if value:
            result = result.replace(f"%{var}%", value).replace(f"${var}", value)
    return result


def _within(path: Path, roots: list[Path]) -> bool:
    for root in roots:
        try:
            path.relative_to(root)
            return True
        except ValueError:
            continue
    return False


def validate_mappings(
    mappings: list[FileMapping],
    allowed_roots: list[str] | None = None,
    home: Path | None = None,
    environ: dict[str, str] | None = None,
) -> None:
    """Raise ValidationError for a mapping set that must not be saved or run.

    Checks unique ids, known directions, absolute local paths inside the
    allowed roots (symlinks resolved), a remote path, and that no two
    enabled mappings share a local path.
    """
    home = Path(home) if home is not None else Path.home()
    roots = [Path(expand_local_path(r, home, environ)).resolve() for r in (allowed_roots or [str(home)])]
    seen_ids: set[str] = set()
    local_owner: dict[str, str] = {}

    for mapping in mappings:
        if not mapping.id:
            raise ValidationError("Mapping id must not be empty")
        if mapping.id in seen_ids:
            raise ValidationError(f"Duplicate mapping id '{mapping.id}'")
        seen_ids.add(mapping.id)

        try:
            Direction(mapping.direction)
        except ValueError:
            raise ValidationError(
                f"Mapping '{mapping.id}': unknown direction '{mapping.direction}'"
            ) from None

        local = expand_local_path(mapping.local_path, home, environ)
        if not os.path.isabs(local):
            raise ValidationError(f"Mapping '{mapping.id}': local path must be absolute: {local}")
        if not _within(Path(local).resolve(), roots):
            raise ValidationError(
                f"Mapping '{mapping.id}': local path {local} is outside the allowed roots"
            )

        remote = mapping.remote_path.strip()
        if not remote or not (remote.startswith("/") or remote == "~" or remote.startswith("~/")):
            raise ValidationError(
                f"Mapping '{mapping.id}': remote path must be absolute or start with ~/"
            )

        if not mapping.enabled:
            continue
        key = os.path.normpath(local)
        if key in local_owner:
            raise ValidationError(
                f"Mappings '{local_owner[key]}' and '{mapping.id}' are both enabled "
                f"for the same local path {local}"
            )
        local_owner[key] = mapping.id


def resolve_dynamic_paths(mappings: list[FileMapping], home: Path) -> list[FileMapping]:
    """Point the OpenCode mappings at the config file variant that exists."""
    resolvers = {
        "opencode-main": lambda: opencode_config_path(home, environ={}),
        "opencode-oh-my": lambda: oh_my_opencode_config_path(home),
        "opencode-oh-my-slim": lambda: oh_my_opencode_slim_config_path(home),
    }
    resolved = []
    for mapping in mappings:
        resolver = resolvers.get(mapping.id)
        if resolver is not None:
            actual = resolver()
            mapping = FileMapping(
                id=mapping.id,
                name=mapping.name,
                module=mapping.module,
                local_path=str(actual),
                remote_path=f"~/.config/opencode/{actual.name}",
                direction=mapping.direction,
                enabled=mapping.enabled,
            )
        resolved.append(mapping)
    return resolved


@dataclass
class LocalStat:
    mtime: float
    size: int


@dataclass
class ResolvedOperation:
    """An enabled mapping with its local endpoint expanded and stat'ed."""

    mapping: FileMapping
    local_path: Path
    remote_path: str
    local: LocalStat | None

    @property
    def mapping_id(self) -> str:
        return self.mapping.id

    @property
    def direction(self) -> Direction:
        return Direction(self.mapping.direction)


@dataclass
class Resolution:
    operations: list[ResolvedOperation] = field(default_factory=list)
    disabled: list[FileMapping] = field(default_factory=list)


def stat_local(path: Path) -> LocalStat | None:
    try:
        st = path.stat()
    except FileNotFoundError:
        return None
    if not path.is_file():
        return None
    return LocalStat(mtime=st.st_mtime, size=st.st_size)


def resolve(
    mappings: list[FileMapping],
    module_filter: str | None = None,
    allowed_roots: list[str] | None = None,
    home: Path | None = None,
    environ: dict[str, str] | None = None,
) -> Resolution:
    """First resolution phase: everything that can be known without a session.

    Mappings outside ``module_filter`` are dropped; disabled ones are
    returned separately so the run can report them as skipped. The remote
    side is stat'ed later, once connected.
    """
    home = Path(home) if home is not None else Path.home()
    selected = [m for m in mappings if module_filter is None or m.module == module_filter]
    selected = resolve_dynamic_paths(selected, home)
    validate_mappings(selected, allowed_roots, home, environ)

    resolution = Resolution()
    for mapping in selected:
        if not mapping.enabled:
            resolution.disabled.append(mapping)
            continue
        local_path = Path(expand_local_path(mapping.local_path, home, environ))
        resolution.operations.append(
            ResolvedOperation(
                mapping=mapping,
                local_path=local_path,
                remote_path=mapping.remote_path.strip(),
                local=stat_local(local_path),
            )
        )
    return resolution
