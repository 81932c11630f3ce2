"""Tests for the apply engine."""

import json

import pytest
import toml

from ai_toolbox.apply import ApplyEngine
from ai_toolbox.codec import (
    AgentsProfileSettings,
    ClaudeSettings,
    CodexCommonSettings,
    CodexSettings,
    OhMyGlobalSettings,
    OpenCodeCommonSettings,
    OpenCodeSettings,
)
from ai_toolbox.errors import CodecError, IoError, NotFoundError
from ai_toolbox.events import ChangeOrigin, ConfigChanged, EventBus
from ai_toolbox.tools import ToolId


@pytest.fixture
def bus():
    b = EventBus()
    yield b
    b.close()


@pytest.fixture
def engine(stores, home, bus):
    return ApplyEngine(stores, home, bus, environ={})


def codex_provider(key="sk-new", model="gpt-5"):
    return CodexSettings(auth={"OPENAI_API_KEY": key}, config={"model": model})


class TestClaudeApply:
    def test_writes_settings_and_marks_applied(self, engine, stores, home):
        store = stores[ToolId.CLAUDE_CODE]
        store.save_common_config(ClaudeSettings(env={"DISABLE_TELEMETRY": "1"}))
        record = store.create(
            "Proxy",
            ClaudeSettings(env={"ANTHROPIC_BASE_URL": "https://proxy"}, sonnet_model="s-1"),
        )
        engine.apply(ToolId.CLAUDE_CODE, record.id)

        data = json.loads((home / ".claude" / "settings.json").read_text())
        assert data["env"] == {
            "DISABLE_TELEMETRY": "1",
            "ANTHROPIC_BASE_URL": "https://proxy",
            "ANTHROPIC_DEFAULT_SONNET_MODEL": "s-1",
        }
        assert store.applied().id == record.id

    def test_emits_config_changed(self, engine, stores, bus):
        sub = bus.subscribe(ConfigChanged)
        record = stores[ToolId.CLAUDE_CODE].create("A", ClaudeSettings())
        engine.apply(ToolId.CLAUDE_CODE, record.id, origin=ChangeOrigin.TRAY)
        [event] = sub.drain()
        assert event.tool == "claude_code"
        assert event.origin is ChangeOrigin.TRAY

    def test_disabled_provider(self, engine, stores, home):
        store = stores[ToolId.CLAUDE_CODE]
        record = store.create("A", ClaudeSettings())
        store.set_disabled(record.id, True)
        with pytest.raises(NotFoundError):
            engine.apply(ToolId.CLAUDE_CODE, record.id)
        assert not (home / ".claude" / "settings.json").exists()

    def test_missing_provider(self, engine):
        with pytest.raises(NotFoundError):
            engine.apply(ToolId.CLAUDE_CODE, "nope")


class TestCodexApply:
    def test_writes_config_and_auth(self, engine, stores, home):
        store = stores[ToolId.CODEX]
        store.save_common_config(CodexCommonSettings(config={"approval_policy": "never"}))
        record = store.create("OpenAI", codex_provider())
        engine.apply(ToolId.CODEX, record.id)

        config = toml.loads((home / ".codex" / "config.toml").read_text())
        auth = json.loads((home / ".codex" / "auth.json").read_text())
        assert config == {"approval_policy": "never", "model": "gpt-5"}
        assert auth == {"OPENAI_API_KEY": "sk-new"}

    def test_failed_auth_write_leaves_both_files_and_marker(self, engine, stores, home):
        store = stores[ToolId.CODEX]
        old = store.create("Old", codex_provider("sk-old", "gpt-4"))
        engine.apply(ToolId.CODEX, old.id)
        config_path = home / ".codex" / "config.toml"
        auth_path = home / ".codex" / "auth.json"
        old_config = config_path.read_text()

        # A directory in place of auth.json makes its rename fail after
        # config.toml was already replaced.
        auth_path.unlink()
        auth_path.mkdir()

        new = store.create("New", codex_provider("sk-new", "gpt-5"))
        with pytest.raises(IoError) as exc:
            engine.apply(ToolId.CODEX, new.id)

        assert "auth.json" in str(exc.value)
        assert config_path.read_text() == old_config
        assert auth_path.is_dir()
        assert store.applied().id == old.id
        leftovers = [p.name for p in config_path.parent.iterdir() if p.name.endswith((".tmp", ".bak"))]
        assert leftovers == []

    def test_malformed_stored_blob(self, engine, stores):
        store = stores[ToolId.CODEX]
        record = store.create("Broken", codex_provider())
        store._rows[record.id]["settings_config"] = '{"config": "model = "}'
        with pytest.raises(CodecError):
            engine.apply(ToolId.CODEX, record.id)
        assert store.applied() is None


class TestOpenCodeApply:
    def provider(self):
        return OpenCodeSettings(
            key="acme",
            options={"baseURL": "https://api.acme.dev/v1"},
            models={"big": {"name": "Big"}},
        )

    def test_new_file_defaults_to_jsonc(self, engine, stores, home):
        record = stores[ToolId.OPENCODE].create("Acme", self.provider())
        engine.apply(ToolId.OPENCODE, record.id)
        data = json.loads((home / ".config" / "opencode" / "opencode.jsonc").read_text())
        assert data["model"] == "acme/big"
        assert data["provider"]["acme"]["options"]["baseURL"] == "https://api.acme.dev/v1"

    def test_existing_json_variant_is_used(self, engine, stores, home):
        target = home / ".config" / "opencode" / "opencode.json"
        target.parent.mkdir(parents=True)
        target.write_text("{}")
        record = stores[ToolId.OPENCODE].create("Acme", self.provider())
        engine.apply(ToolId.OPENCODE, record.id)
        assert "acme" in json.loads(target.read_text())["provider"]
        assert not (target.parent / "opencode.jsonc").exists()

    def test_custom_config_path_from_common(self, engine, stores, tmp_path):
        custom = tmp_path / "elsewhere" / "oc.json"
        store = stores[ToolId.OPENCODE]
        store.save_common_config(OpenCodeCommonSettings(config_path=str(custom), other={"theme": "dark"}))
        record = store.create("Acme", self.provider())
        engine.apply(ToolId.OPENCODE, record.id)
        data = json.loads(custom.read_text())
        assert data["theme"] == "dark"
        assert "config_path" not in data

    def test_opencode_config_env(self, stores, home, tmp_path):
        env_path = tmp_path / "from-env.json"
        engine = ApplyEngine(stores, home, environ={"OPENCODE_CONFIG": str(env_path)})
        record = stores[ToolId.OPENCODE].create("Acme", self.provider())
        engine.apply(ToolId.OPENCODE, record.id)
        assert env_path.exists()


class TestOhMyOpenCodeApply:
    def test_writes_profile_with_global_config(self, engine, stores, home):
        store = stores[ToolId.OH_MY_OPENCODE]
        store.save_common_config(OhMyGlobalSettings(disabled_mcps=["websearch"]))
        record = store.create("Fast", AgentsProfileSettings(agents={"explore": {"model": "acme/small"}}))
        engine.apply(ToolId.OH_MY_OPENCODE, record.id)
        data = json.loads((home / ".config" / "opencode" / "oh-my-opencode.jsonc").read_text())
        assert data["agents"]["explore"] == {"model": "acme/small"}
        assert data["disabled_mcps"] == ["websearch"]


class TestPreview:
    def test_preview_writes_nothing(self, engine, stores, home):
        record = stores[ToolId.CODEX].create("OpenAI", codex_provider())
        files = engine.preview(ToolId.CODEX, record.id)
        assert [p.name for p, _ in files] == ["config.toml", "auth.json"]
        assert not (home / ".codex").exists()
        assert stores[ToolId.CODEX].applied() is None


class TestHandEdits:
    def test_claude_keys_added_by_hand_survive(self, engine, stores, home):
        target = home / ".claude" / "settings.json"
        target.parent.mkdir(parents=True)
        target.write_text(json.dumps({"permissions": {"allow": ["Bash(ls)"]}, "env": {"OLD": "1"}}))
        record = stores[ToolId.CLAUDE_CODE].create("Proxy", ClaudeSettings(env={"A": "1"}))
        engine.apply(ToolId.CLAUDE_CODE, record.id)

        data = json.loads(target.read_text())
        assert data["permissions"] == {"allow": ["Bash(ls)"]}
        assert data["env"] == {"A": "1"}

    def test_previous_provider_keys_do_not_leak(self, engine, stores, home):
        store = stores[ToolId.CLAUDE_CODE]
        first = store.create("First", ClaudeSettings(env={"A": "1"}, other={"apiKeyHelper": "helper"}))
        second = store.create("Second", ClaudeSettings())
        engine.apply(ToolId.CLAUDE_CODE, first.id)
        target = home / ".claude" / "settings.json"
        data = json.loads(target.read_text())
        data["statusLine"] = {"type": "command"}
        target.write_text(json.dumps(data))

        engine.apply(ToolId.CLAUDE_CODE, second.id)
        assert json.loads(target.read_text()) == {"statusLine": {"type": "command"}}

    def test_opencode_mcp_and_plugin_survive(self, engine, stores, home):
        target = home / ".config" / "opencode" / "opencode.json"
        target.parent.mkdir(parents=True)
        target.write_text(json.dumps({"mcp": {"fs": {"type": "local"}}, "plugin": ["p"]}))
        provider = OpenCodeSettings(key="acme", options={"baseURL": "https://api.acme.dev/v1"})
        record = stores[ToolId.OPENCODE].create("Acme", provider)
        engine.apply(ToolId.OPENCODE, record.id)

        data = json.loads(target.read_text())
        assert data["mcp"] == {"fs": {"type": "local"}}
        assert data["plugin"] == ["p"]
        assert "acme" in data["provider"]

    def test_codex_config_keeps_tables_but_not_auth(self, engine, stores, home):
        config_path = home / ".codex" / "config.toml"
        config_path.parent.mkdir(parents=True)
        config_path.write_text('[mcp_servers.fs]\ncommand = "fs"\n')
        (home / ".codex" / "auth.json").write_text('{"OLD_KEY": "x"}')
        record = stores[ToolId.CODEX].create("OpenAI", codex_provider())
        engine.apply(ToolId.CODEX, record.id)

        config = toml.loads(config_path.read_text())
        assert config == {"mcp_servers": {"fs": {"command": "fs"}}, "model": "gpt-5"}
        assert json.loads((home / ".codex" / "auth.json").read_text()) == {"OPENAI_API_KEY": "sk-new"}

    def test_unreadable_file_is_replaced(self, engine, stores, home):
        target = home / ".claude" / "settings.json"
        target.parent.mkdir(parents=True)
        target.write_text("{not json")
        record = stores[ToolId.CLAUDE_CODE].create("Proxy", ClaudeSettings(env={"A": "1"}))
        engine.apply(ToolId.CLAUDE_CODE, record.id)
        assert json.loads(target.read_text()) == {"env": {"A": "1"}}
