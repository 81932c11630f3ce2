"""Tests for the Toolbox command surface."""

import json

import pytest

from ai_toolbox.codec import ClaudeSettings, CodexSettings
from ai_toolbox.errors import InUseError, RemoteConnectionError, ValidationError
from ai_toolbox.events import ChangeOrigin, ConfigChanged, SyncCompleted
from ai_toolbox.sync import RunStatus

from conftest import mapping, sync_config, write_local


class TestProviderCommands:
    def test_changes_are_announced(self, toolbox):
        sub = toolbox.bus.subscribe(ConfigChanged)
        record = toolbox.create_provider("claude", "Proxy", ClaudeSettings(), origin=ChangeOrigin.CLI)
        toolbox.update_provider("claude", record.id, name="Proxy 2")
        toolbox.toggle_disabled("claude", record.id, True, origin=ChangeOrigin.TRAY)

        events = sub.drain()
        assert [e.tool for e in events] == ["claude_code"] * 3
        assert [e.origin for e in events] == [ChangeOrigin.CLI, ChangeOrigin.UI, ChangeOrigin.TRAY]

    def test_apply_writes_native_files(self, toolbox, home):
        record = toolbox.create_provider(
            "codex", "OpenAI", CodexSettings(auth={"OPENAI_API_KEY": "sk"}, config={"model": "gpt-5"})
        )
        toolbox.apply_config("codex", record.id)
        assert json.loads((home / ".codex" / "auth.json").read_text()) == {"OPENAI_API_KEY": "sk"}
        assert toolbox.get_provider("codex", record.id).is_applied

    def test_delete_applied_is_refused(self, toolbox):
        record = toolbox.create_provider("claude", "A", ClaudeSettings())
        toolbox.apply_config("claude", record.id)
        with pytest.raises(InUseError):
            toolbox.delete_provider("claude", record.id)

    def test_reorder(self, toolbox):
        ids = [toolbox.create_provider("claude", n, ClaudeSettings()).id for n in "abc"]
        toolbox.reorder_providers("claude", list(reversed(ids)))
        assert [r.id for r in toolbox.list_providers("claude")] == list(reversed(ids))

    def test_unknown_tool(self, toolbox):
        with pytest.raises(ValidationError, match="Unknown tool"):
            toolbox.list_providers("vim")

    def test_common_config(self, toolbox):
        toolbox.save_common_config("claude", ClaudeSettings(env={"A": "1"}))
        assert toolbox.get_common_config("claude").settings.env == {"A": "1"}


class TestSshConfig:
    def test_save_rejects_invalid_mappings(self, toolbox, connection):
        config = sync_config(connection, [mapping("a", "x.json"), mapping("b", "x.json")])
        with pytest.raises(ValidationError):
            toolbox.save_ssh_config(config)
        assert toolbox.get_ssh_config().enabled is False

    def test_save_announces_ssh_change(self, toolbox, connection):
        sub = toolbox.bus.subscribe(ConfigChanged)
        toolbox.save_ssh_config(sync_config(connection, [], enabled=False))
        assert [e.tool for e in sub.drain()] == ["ssh"]

    def test_enabling_runs_full_sync(self, toolbox, transport, connection, home):
        write_local(home, ".claude/settings.json", "{}")
        result = toolbox.save_ssh_config(sync_config(connection, [mapping("s", ".claude/settings.json")]))
        assert result.status is RunStatus.SUCCESS
        assert "~/.claude/settings.json" in transport.files

        saved = toolbox.get_ssh_config()
        assert saved.last_sync_status == "success"
        assert saved.last_sync_time == result.finished_at

    def test_saving_while_enabled_does_not_sync(self, toolbox, transport, connection):
        toolbox.save_ssh_config(sync_config(connection, []))
        connects = transport.connects
        assert toolbox.save_ssh_config(sync_config(connection, [])) is None
        assert transport.connects == connects


class TestSync:
    def test_disabled_sync_is_refused(self, toolbox, connection):
        toolbox.save_ssh_config(sync_config(connection, [], enabled=False))
        with pytest.raises(ValidationError, match="not enabled"):
            toolbox.sync()

    def test_partial_failure_is_persisted_as_error(self, toolbox, transport, connection, home):
        toolbox.save_ssh_config(sync_config(connection, [], enabled=False))
        config = toolbox.get_ssh_config()
        config.enabled = True
        config.file_mappings = [mapping("ok", "ok.json"), mapping("bad", "bad.json")]
        write_local(home, "ok.json", "1")
        write_local(home, "bad.json", "2")
        transport.denied.add("~/bad.json")

        result = toolbox.save_ssh_config(config)
        assert result.status is RunStatus.PARTIAL_FAILURE
        saved = toolbox.get_ssh_config()
        assert saved.last_sync_status == "error"
        assert saved.last_sync_error.startswith("bad: ")

    def test_completion_is_published(self, toolbox, connection):
        sub = toolbox.bus.subscribe(SyncCompleted)
        toolbox.save_ssh_config(sync_config(connection, []))
        [event] = sub.drain()
        assert event.result.status is RunStatus.SUCCESS

    def test_status(self, toolbox, connection):
        status = toolbox.get_status()
        assert status.ssh_available is False
        assert status.status == "idle"
        assert status.last_sync_status == "never"

        toolbox.save_ssh_config(sync_config(connection, []))
        status = toolbox.get_status()
        assert status.ssh_available is True
        assert status.active_connection_name == "Dev box"
        assert status.status == "success"
        assert status.progress is None

    def test_default_mappings(self, toolbox):
        assert toolbox.get_default_mappings()[0].id == "opencode-main"


class TestConnectionCheck:
    def test_probe(self, toolbox, transport, connection):
        assert toolbox.test_connection(connection) == "fake"
        assert transport.connects == 1
        assert transport.closed == 1

    def test_invalid_connection(self, toolbox, connection):
        connection.port = 0
        with pytest.raises(ValidationError):
            toolbox.test_connection(connection)

    def test_unreachable(self, toolbox, transport, connection):
        transport.fail_connect = "No route to host"
        with pytest.raises(RemoteConnectionError, match="No route"):
            toolbox.test_connection(connection)
