"""Translation between typed tool settings, stored blobs and native files.

Every provider record carries a typed settings value. The store persists it
as an opaque string (``encode``) and reads it back with ``decode``; the apply
engine turns the merged value into the text of the tool's native files
(``render``). Nothing in here touches the filesystem.
"""

from __future__ import annotations

import copy
import json
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar

import toml

from ai_toolbox.errors import CodecError
from ai_toolbox.tools import OH_MY_OPENCODE_SCHEMA, ToolId

# Claude Code reads its model overrides from these env vars.
CLAUDE_MODEL_ENV = {
    "model": "ANTHROPIC_MODEL",
    "haiku_model": "ANTHROPIC_DEFAULT_HAIKU_MODEL",
    "sonnet_model": "ANTHROPIC_DEFAULT_SONNET_MODEL",
    "opus_model": "ANTHROPIC_DEFAULT_OPUS_MODEL",
}

OPENCODE_MODEL_EMPTY_FIELDS = ("options", "variants", "modalities")


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _type_name(value: Any) -> str:
    return "null" if value is None else type(value).__name__


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _expect_dict(value: Any, path: str) -> dict:
    if not isinstance(value, dict):
        raise CodecError(f"expected an object, got {_type_name(value)}", path)
    return value


def _opt_dict(data: dict, key: str, path: str) -> dict | None:
    value = data.get(key)
    if value is None:
        return None
    return dict(_expect_dict(value, _join(path, key)))


def _opt_str(data: dict, key: str, path: str) -> str | None:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise CodecError(f"expected a string, got {_type_name(value)}", _join(path, key))
    return value


def _opt_str_list(data: dict, key: str, path: str) -> list[str] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, list):
        raise CodecError(f"expected a list, got {_type_name(value)}", _join(path, key))
    for i, item in enumerate(value):
        if not isinstance(item, str):
            raise CodecError(f"expected a string, got {_type_name(item)}", f"{_join(path, key)}[{i}]")
    return list(value)


def _scalar_map(value: Any, path: str) -> dict[str, Any]:
    mapping = _expect_dict(value, path)
    for key, item in mapping.items():
        if isinstance(item, (dict, list)) or item is None:
            raise CodecError(f"expected a scalar, got {_type_name(item)}", _join(path, key))
    return dict(mapping)


def _load_json_object(blob: str, path: str = "") -> dict:
    try:
        data = json.loads(blob)
    except (TypeError, ValueError) as e:
        raise CodecError(f"invalid JSON: {e}", path or None) from e
    return _expect_dict(data, path or "<root>")


def _load_toml(text: str, path: str) -> dict:
    try:
        return toml.loads(text)
    except toml.TomlDecodeError as e:
        raise CodecError(f"invalid TOML: {e}", path) from e


_TOML_ESCAPES = {
    "\\": "\\\\",
    '"': '\\"',
    "\b": "\\b",
    "\t": "\\t",
    "\n": "\\n",
    "\f": "\\f",
    "\r": "\\r",
}


def _toml_str(value: str) -> str:
    out = []
    for ch in value:
        if ch in _TOML_ESCAPES:
            out.append(_TOML_ESCAPES[ch])
        elif ord(ch) < 0x20 or ord(ch) == 0x7F:
            out.append(f"\\u{ord(ch):04x}")
        else:
            out.append(ch)
    return '"' + "".join(out) + '"'


class _TomlEncoder(toml.TomlEncoder):
    """toml's encoder with string escaping that covers every control character."""

    def __init__(self) -> None:
        super().__init__()
        self.dump_funcs[str] = _toml_str


def _dump_toml(table: dict, path: str) -> str:
    try:
        return toml.dumps(table, encoder=_TomlEncoder())
    except (IndexError, TypeError, ValueError) as e:
        raise CodecError(f"cannot write TOML: {e}", path) from e


def _drop_none(data: dict) -> dict:
    return {k: v for k, v in data.items() if v is not None}


def deep_merge(base: dict, override: dict) -> dict:
    """Merge ``override`` into a copy of ``base``.

    Nested objects are merged key by key, anything else (lists included) is
    replaced wholesale by the override.
    """
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _dump_json(data: dict) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


# ---------------------------------------------------------------------------
# Typed settings
# ---------------------------------------------------------------------------


@dataclass
class ClaudeSettings:
    """Claude Code provider (and common) settings."""

    tool: ClassVar[ToolId] = ToolId.CLAUDE_CODE

    env: dict[str, Any] = field(default_factory=dict)
    model: str | None = None
    haiku_model: str | None = None
    sonnet_model: str | None = None
    opus_model: str | None = None
    other: dict[str, Any] = field(default_factory=dict)

    _KEYS: ClassVar[dict[str, str]] = {
        "model": "model",
        "haikuModel": "haiku_model",
        "sonnetModel": "sonnet_model",
        "opusModel": "opus_model",
    }

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = copy.deepcopy(self.other)
        if self.env:
            data["env"] = dict(self.env)
        for key, attr in self._KEYS.items():
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict, path: str = "") -> ClaudeSettings:
        data = dict(data)
        env = data.pop("env", None)
        kwargs = {attr: _opt_str(data, key, path) for key, attr in cls._KEYS.items()}
        for key in cls._KEYS:
            data.pop(key, None)
        return cls(
            env={} if env is None else _scalar_map(env, _join(path, "env")),
            other=data,
            **kwargs,
        )

    def to_native(self) -> dict[str, Any]:
        """Shape of ``~/.claude/settings.json``."""
        data = copy.deepcopy(self.other)
        env = dict(self.env)
        for attr, var in CLAUDE_MODEL_ENV.items():
            value = getattr(self, attr)
            if value:
                env[var] = value
        if env:
            data["env"] = env
        return data


@dataclass
class CodexSettings:
    """Codex provider settings: the ``auth.json`` object and ``config.toml`` table."""

    tool: ClassVar[ToolId] = ToolId.CODEX

    auth: dict[str, Any] = field(default_factory=dict)
    config: dict[str, Any] = field(default_factory=dict)
    other: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = copy.deepcopy(self.other)
        data["auth"] = copy.deepcopy(self.auth)
        data["config"] = _dump_toml(self.config, "config")
        return data

    @classmethod
    def from_dict(cls, data: dict, path: str = "") -> CodexSettings:
        data = dict(data)
        auth = data.pop("auth", None)
        config_text = data.pop("config", None)
        if config_text is not None and not isinstance(config_text, str):
            raise CodecError(
                f"expected TOML text, got {_type_name(config_text)}", _join(path, "config")
            )
        return cls(
            auth={} if auth is None else dict(_expect_dict(auth, _join(path, "auth"))),
            config=_load_toml(config_text or "", _join(path, "config")),
            other=data,
        )


@dataclass
class CodexCommonSettings:
    """Codex common config: a TOML table merged under every provider's config."""

    tool: ClassVar[ToolId] = ToolId.CODEX

    config: dict[str, Any] = field(default_factory=dict)

    def encode(self) -> str:
        return _dump_toml(self.config, "config")

    @classmethod
    def decode(cls, blob: str) -> CodexCommonSettings:
        return cls(config=_load_toml(blob, "config"))


@dataclass
class OpenCodeSettings:
    """One OpenCode provider entry, written under ``provider.<key>``."""

    tool: ClassVar[ToolId] = ToolId.OPENCODE

    key: str
    options: dict[str, Any]
    npm: str | None = None
    name: str | None = None
    models: dict[str, Any] = field(default_factory=dict)
    model: str | None = None
    other: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = copy.deepcopy(self.other)
        data["key"] = self.key
        data["options"] = copy.deepcopy(self.options)
        data["models"] = copy.deepcopy(self.models)
        data.update(_drop_none({"npm": self.npm, "name": self.name, "model": self.model}))
        return data

    @classmethod
    def from_dict(cls, data: dict, path: str = "") -> OpenCodeSettings:
        data = dict(data)
        key = data.pop("key", None)
        if not isinstance(key, str) or not key:
            raise CodecError("expected a non-empty provider key", _join(path, "key"))
        options = _expect_dict(data.pop("options", None), _join(path, "options"))
        base_url = options.get("baseURL")
        if not isinstance(base_url, str):
            raise CodecError(
                f"expected a string, got {_type_name(base_url)}",
                _join(path, "options.baseURL"),
            )
        models = data.pop("models", None)
        models = {} if models is None else _expect_dict(models, _join(path, "models"))
        for model_id, model in models.items():
            _expect_dict(model, _join(path, f"models.{model_id}"))
        settings = cls(
            key=key,
            options=dict(options),
            npm=_opt_str(data, "npm", path),
            name=_opt_str(data, "name", path),
            models=copy.deepcopy(models),
            model=_opt_str(data, "model", path),
        )
        for known in ("npm", "name", "model"):
            data.pop(known, None)
        settings.other = data
        return settings

    def to_native(self) -> dict[str, Any]:
        entry: dict[str, Any] = copy.deepcopy(self.other)
        entry.update(_drop_none({"npm": self.npm, "name": self.name or self.key}))
        entry["options"] = copy.deepcopy(self.options)
        models = {}
        for model_id, model in self.models.items():
            model = copy.deepcopy(model)
            for empty in OPENCODE_MODEL_EMPTY_FIELDS:
                if model.get(empty) == {}:
                    del model[empty]
            models[model_id] = model
        entry["models"] = models
        data: dict[str, Any] = {"provider": {self.key: entry}}
        default_model = self.model or next(iter(self.models), None)
        if default_model:
            data["model"] = f"{self.key}/{default_model}"
        return data


@dataclass
class OpenCodeCommonSettings:
    """Top-level ``opencode.json`` fields plus an optional custom file location."""

    tool: ClassVar[ToolId] = ToolId.OPENCODE

    config_path: str | None = None
    other: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = copy.deepcopy(self.other)
        if self.config_path:
            data["config_path"] = self.config_path
        return data

    @classmethod
    def from_dict(cls, data: dict, path: str = "") -> OpenCodeCommonSettings:
        data = dict(data)
        config_path = _opt_str(data, "config_path", path)
        if config_path is None:
            config_path = _opt_str(data, "configPath", path)
        data.pop("config_path", None)
        data.pop("configPath", None)
        return cls(config_path=config_path or None, other=data)


@dataclass
class AgentsProfileSettings:
    """oh-my-opencode agents profile: per-slot settings objects."""

    tool: ClassVar[ToolId] = ToolId.OH_MY_OPENCODE

    agents: dict[str, dict[str, Any]] = field(default_factory=dict)
    other: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = copy.deepcopy(self.other)
        data["agents"] = copy.deepcopy(self.agents)
        return data

    @classmethod
    def from_dict(cls, data: dict, path: str = "") -> AgentsProfileSettings:
        data = dict(data)
        raw = data.pop("agents", None)
        agents: dict[str, dict[str, Any]] = {}
        if raw is not None:
            for slot, slot_settings in _expect_dict(raw, _join(path, "agents")).items():
                # An empty slot is stored as null by older profiles.
                if slot_settings is None:
                    continue
                agents[slot] = dict(_expect_dict(slot_settings, _join(path, f"agents.{slot}")))
        return cls(agents=agents, other=data)

    def to_native(self) -> dict[str, Any]:
        data = copy.deepcopy(self.other)
        if self.agents:
            data["agents"] = copy.deepcopy(self.agents)
        return data


@dataclass
class OhMyGlobalSettings:
    """oh-my-opencode global config shared by every agents profile."""

    tool: ClassVar[ToolId] = ToolId.OH_MY_OPENCODE

    schema: str | None = None
    sisyphus_agent: dict[str, Any] | None = None
    disabled_agents: list[str] | None = None
    disabled_mcps: list[str] | None = None
    disabled_hooks: list[str] | None = None
    lsp: dict[str, Any] | None = None
    experimental: dict[str, Any] | None = None
    other: dict[str, Any] = field(default_factory=dict)

    _DICT_FIELDS: ClassVar[tuple[str, ...]] = ("sisyphus_agent", "lsp", "experimental")
    _LIST_FIELDS: ClassVar[tuple[str, ...]] = ("disabled_agents", "disabled_mcps", "disabled_hooks")

    def _fields(self) -> dict[str, Any]:
        data: dict[str, Any] = {"$schema": self.schema}
        for name in self._DICT_FIELDS + self._LIST_FIELDS:
            data[name] = copy.deepcopy(getattr(self, name))
        return _drop_none(data)

    def to_dict(self) -> dict[str, Any]:
        data = copy.deepcopy(self.other)
        data.update(self._fields())
        return data

    @classmethod
    def from_dict(cls, data: dict, path: str = "") -> OhMyGlobalSettings:
        data = dict(data)
        kwargs: dict[str, Any] = {"schema": _opt_str(data, "$schema", path)}
        for name in cls._DICT_FIELDS:
            kwargs[name] = _opt_dict(data, name, path)
        for name in cls._LIST_FIELDS:
            kwargs[name] = _opt_str_list(data, name, path)
        for key in ("$schema",) + cls._DICT_FIELDS + cls._LIST_FIELDS:
            data.pop(key, None)
        return cls(other=data, **kwargs)

    def to_native(self) -> dict[str, Any]:
        data = self.to_dict()
        data.setdefault("$schema", OH_MY_OPENCODE_SCHEMA)
        return data


PROVIDER_TYPES: dict[ToolId, type] = {
    ToolId.CLAUDE_CODE: ClaudeSettings,
    ToolId.CODEX: CodexSettings,
    ToolId.OPENCODE: OpenCodeSettings,
    ToolId.OH_MY_OPENCODE: AgentsProfileSettings,
}

COMMON_TYPES: dict[ToolId, type] = {
    ToolId.CLAUDE_CODE: ClaudeSettings,
    ToolId.CODEX: CodexCommonSettings,
    ToolId.OPENCODE: OpenCodeCommonSettings,
    ToolId.OH_MY_OPENCODE: OhMyGlobalSettings,
}


def settings_type(tool: ToolId, common: bool = False) -> type:
    return (COMMON_TYPES if common else PROVIDER_TYPES)[tool]


def empty_common(tool: ToolId):
    """The common config a tool starts with before the user saves one."""
    return COMMON_TYPES[tool]()


# ---------------------------------------------------------------------------
# Blob encode/decode
# ---------------------------------------------------------------------------


def encode(settings) -> str:
    """Serialize typed settings into the blob persisted by the store."""
    if isinstance(settings, CodexCommonSettings):
        return settings.encode()
    return json.dumps(settings.to_dict(), ensure_ascii=False)


def decode(tool: ToolId, blob: str, common: bool = False):
    """Parse a stored blob into the typed settings for ``tool``.

    Raises CodecError naming the offending field; nothing is coerced.
    """
    cls = settings_type(tool, common)
    if cls is CodexCommonSettings:
        return CodexCommonSettings.decode(blob)
    if not blob.strip() and common:
        return cls()
    return cls.from_dict(_load_json_object(blob))


# ---------------------------------------------------------------------------
# Native rendering
# ---------------------------------------------------------------------------


def load_native(text: str, path: str) -> dict:
    """Parse the current contents of a native file (TOML for ``.toml``, else JSON)."""
    if path.endswith(".toml"):
        return _load_toml(text, path)
    return _load_json_object(text, path)


def native_documents(provider, common) -> list[tuple[str, dict]]:
    """Merge provider settings over the common config.

    Returns ``[(role, document), ...]`` in write order. Roles: ``settings``
    (Claude), ``config`` and ``auth`` (Codex), ``config`` (OpenCode and
    oh-my-opencode).
    """
    if isinstance(provider, ClaudeSettings):
        return [("settings", deep_merge(common.to_native(), provider.to_native()))]
    if isinstance(provider, CodexSettings):
        return [("config", deep_merge(common.config, provider.config)), ("auth", provider.auth)]
    if isinstance(provider, OpenCodeSettings):
        return [("config", deep_merge(common.other, provider.to_native()))]
    if isinstance(provider, AgentsProfileSettings):
        return [("config", deep_merge(common.to_native(), provider.to_native()))]
    raise CodecError(f"cannot render {type(provider).__name__}")


def render(provider, common, existing: dict[str, dict] | None = None) -> list[tuple[str, str]]:
    """Text of each native file, in write order.

    ``existing`` maps a role to top-level keys to keep from the file on
    disk; the rendered settings win on collisions.
    """
    existing = existing or {}
    files = []
    for role, document in native_documents(provider, common):
        document = {**existing.get(role, {}), **document}
        if isinstance(provider, CodexSettings) and role == "config":
            files.append((role, _dump_toml(document, "config")))
        else:
            files.append((role, _dump_json(document)))
    return files


# ---------------------------------------------------------------------------
# KEY=VALUE env blocks
# ---------------------------------------------------------------------------

_ENV_LINE = re.compile(r"^(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*)$")
_NEEDS_QUOTES = re.compile(r"[\s#\"'\\$`]")


def _quote_env(value: str) -> str:
    if value and not _NEEDS_QUOTES.search(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _unquote_env(raw: str, lineno: int) -> str:
    raw = raw.strip()
    if len(raw) >= 2 and raw[0] == raw[-1] == "'":
        return raw[1:-1]
    if raw.startswith('"'):
        if len(raw) < 2 or not raw.endswith('"') or raw.endswith('\\"') and not raw.endswith('\\\\"'):
            raise CodecError("unterminated double quote", f"line {lineno}")
        body = raw[1:-1]
        return re.sub(r"\\(.)", r"\1", body)
    if raw.startswith("'"):
        raise CodecError("unterminated single quote", f"line {lineno}")
    # Unquoted values may carry a trailing comment.
    return raw.split(" #", 1)[0].strip()


def encode_env_block(env: dict[str, Any]) -> str:
    """Render ``env`` as ``KEY=VALUE`` lines."""
    lines = []
    for key, value in env.items():
        if isinstance(value, bool):
            value = "true" if value else "false"
        lines.append(f"{key}={_quote_env(str(value))}")
    return "\n".join(lines) + ("\n" if lines else "")


def decode_env_block(text: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines (``export`` prefix and quotes allowed)."""
    env: dict[str, str] = {}
    for lineno, line in enumerate(text.splitlines(), 1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        match = _ENV_LINE.match(stripped)
        if not match:
            raise CodecError(f"expected KEY=VALUE, got {stripped!r}", f"line {lineno}")
        env[match.group(1)] = _unquote_env(match.group(2), lineno)
    return env
