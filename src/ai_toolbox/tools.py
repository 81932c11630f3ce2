"""Built-in definitions for the AI coding tools we manage."""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path

from ai_toolbox.errors import ValidationError


class ToolId(str, Enum):
    """Tools that own a provider store."""

    CLAUDE_CODE = "claude_code"
    CODEX = "codex"
    OPENCODE = "opencode"
    OH_MY_OPENCODE = "oh_my_opencode"


TOOLS = {
    ToolId.CLAUDE_CODE: {
        "display": "Claude Code",
        "module": "claude",
        "local_dir": "~/.claude",
    },
    ToolId.CODEX: {
        "display": "Codex",
        "module": "codex",
        "local_dir": "~/.codex",
    },
    ToolId.OPENCODE: {
        "display": "OpenCode",
        "module": "opencode",
        "local_dir": "~/.config/opencode",
    },
    ToolId.OH_MY_OPENCODE: {
        "display": "Oh My OpenCode",
        "module": "opencode",
        "local_dir": "~/.config/opencode",
    },
}

# Append only: new agents go at the end so existing display order stays put.
AGENT_SLOTS = (
    "Sisyphus",
    "Planner-Sisyphus",
    "oracle",
    "librarian",
    "explore",
    "frontend-ui-ux-engineer",
    "document-writer",
    "multimodal-looker",
    "build",
    "plan",
    "OpenCode-Builder",
    "Prometheus (Planner)",
    "Metis (Plan Consultant)",
    "Momus (Plan Reviewer)",
    "orchestrator-sisyphus",
)

OH_MY_OPENCODE_SCHEMA = (
    "https://raw.githubusercontent.com/code-yeongyu/oh-my-opencode/"
    "master/assets/oh-my-opencode.schema.json"
)


def get_tool(name: str | ToolId) -> ToolId:
    """Parse a tool id, accepting the enum value or a few common aliases."""
    if isinstance(name, ToolId):
        return name
    key = name.strip().lower().replace("-", "_")
    aliases = {"claude": "claude_code", "claudecode": "claude_code", "omo": "oh_my_opencode"}
    key = aliases.get(key, key)
    try:
        return ToolId(key)
    except ValueError:
        valid = ", ".join(t.value for t in ToolId)
        raise ValidationError(f"Unknown tool '{name}' (expected one of: {valid})") from None


def list_tools() -> dict:
    """Return all tool definitions."""
    return dict(TOOLS)


def claude_settings_path(home: Path) -> Path:
    return home / ".claude" / "settings.json"


def codex_config_paths(home: Path) -> tuple[Path, Path]:
    """Return ``(config.toml, auth.json)``; apply writes them in this order."""
    codex_dir = home / ".codex"
    return codex_dir / "config.toml", codex_dir / "auth.json"


def _first_existing(candidates: list[Path]) -> Path:
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return candidates[0]


def opencode_config_path(
    home: Path,
    custom_path: str | None = None,
    environ: dict[str, str] | None = None,
) -> Path:
    """Resolve the OpenCode config file.

    Priority: custom path from the common config, then ``OPENCODE_CONFIG``,
    then an existing ``opencode.jsonc``/``opencode.json``, else
    ``opencode.jsonc`` for a new file.
    """
    if custom_path:
        return Path(custom_path).expanduser()
    env = os.environ if environ is None else environ
    env_path = env.get("OPENCODE_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    config_dir = home / ".config" / "opencode"
    return _first_existing([config_dir / "opencode.jsonc", config_dir / "opencode.json"])


def oh_my_opencode_config_path(home: Path) -> Path:
    config_dir = home / ".config" / "opencode"
    return _first_existing(
        [config_dir / "oh-my-opencode.jsonc", config_dir / "oh-my-opencode.json"]
    )


def oh_my_opencode_slim_config_path(home: Path) -> Path:
    config_dir = home / ".config" / "opencode"
    return _first_existing(
        [config_dir / "oh-my-opencode-slim.json", config_dir / "oh-my-opencode-slim.jsonc"]
    )
