"""Tests for the provider store."""

import json
import threading

import pytest

from ai_toolbox import store as store_module
from ai_toolbox.codec import (
    ClaudeSettings,
    CodexCommonSettings,
    CodexSettings,
    OpenCodeCommonSettings,
    OpenCodeSettings,
)
from ai_toolbox.errors import CodecError, InUseError, IoError, NotFoundError, ValidationError
from ai_toolbox.store import Category, ProviderStore
from ai_toolbox.tools import ToolId


@pytest.fixture
def store(tmp_path):
    return ProviderStore(ToolId.CLAUDE_CODE, tmp_path / "providers" / "claude_code.json")


def claude(url="https://api.example"):
    return ClaudeSettings(env={"ANTHROPIC_BASE_URL": url})


@pytest.fixture
def abc(store):
    for pid in ("a", "b", "c"):
        store.create(pid.upper(), claude(), provider_id=pid)
    return store


class TestCreate:
    def test_first_record_gets_sort_index_zero(self, store):
        record = store.create("Official", claude(), Category.OFFICIAL)
        assert record.sort_index == 0
        assert record.is_applied is False
        assert record.category == "official"
        assert record.created_at == record.updated_at
        assert len(record.id) == 32

    def test_sort_index_is_max_plus_one(self, abc):
        abc.reorder(["c", "a", "b"])
        record = abc.create("D", claude())
        assert record.sort_index == 3

    def test_duplicate_supplied_id(self, abc):
        with pytest.raises(ValidationError, match="already exists"):
            abc.create("Again", claude(), provider_id="a")

    def test_settings_must_match_tool(self, store):
        with pytest.raises(ValidationError, match="ClaudeSettings"):
            store.create("Wrong", CodexSettings())

    @pytest.mark.parametrize("provider_id", ["", "   "])
    def test_blank_supplied_id(self, store, provider_id):
        with pytest.raises(ValidationError, match="must not be empty"):
            store.create("X", claude(), provider_id=provider_id)
        assert store.list() == []
        assert ProviderStore(ToolId.CLAUDE_CODE, store.path).list() == []

    def test_settings_that_would_not_read_back(self, store):
        with pytest.raises(ValidationError, match="env.K"):
            store.create("Bad", ClaudeSettings(env={"K": None}))
        store.create("Good", claude(), provider_id="good")
        assert [r.id for r in store.list()] == ["good"]

    def test_opencode_provider_needs_key(self, tmp_path):
        store = ProviderStore(ToolId.OPENCODE, tmp_path / "opencode.json")
        with pytest.raises(ValidationError, match="key"):
            store.create("Bad", OpenCodeSettings(key="", options={}))
        assert store.list() == []

    def test_empty_name(self, store):
        with pytest.raises(ValidationError):
            store.create("  ", claude())

    def test_unknown_extra_field(self, store):
        with pytest.raises(ValidationError, match="colour"):
            store.create("X", claude(), colour="red")

    def test_extras_are_kept(self, store):
        record = store.create("X", claude(), website_url="https://x.dev", notes="team key")
        assert store.get(record.id).website_url == "https://x.dev"
        assert store.get(record.id).notes == "team key"


class TestUpdate:
    def test_update_keeps_flags_and_order(self, abc):
        abc.set_applied("b")
        before = abc.get("b")
        after = abc.update("b", name="Bee", settings=claude("https://new"))
        assert after.name == "Bee"
        assert after.settings.env["ANTHROPIC_BASE_URL"] == "https://new"
        assert after.is_applied is True
        assert after.sort_index == before.sort_index
        assert after.created_at == before.created_at

    def test_update_missing(self, store):
        with pytest.raises(NotFoundError):
            store.update("nope", name="x")


class TestDelete:
    def test_delete_applied_is_refused(self, abc):
        abc.set_applied("a")
        with pytest.raises(InUseError):
            abc.delete("a")
        assert abc.get("a").is_applied

    def test_delete_missing(self, store):
        with pytest.raises(NotFoundError):
            store.delete("nope")

    def test_delete_clears_selection(self, abc):
        abc.select("b")
        abc.delete("b")
        assert abc.selected_id is None
        assert [r.id for r in abc.list()] == ["a", "c"]


class TestReorder:
    def test_reorder_scenario(self, abc):
        abc.reorder(["b", "a", "c"])
        assert [r.id for r in abc.list()] == ["b", "a", "c"]

    def test_reorder_requires_every_id(self, abc):
        with pytest.raises(ValidationError):
            abc.reorder(["a", "b"])
        assert [r.id for r in abc.list()] == ["a", "b", "c"]

    def test_reorder_rejects_duplicates(self, abc):
        with pytest.raises(ValidationError, match="duplicate"):
            abc.reorder(["a", "a", "b", "c"])

    def test_reorder_rejects_unknown(self, abc):
        with pytest.raises(ValidationError, match="unknown"):
            abc.reorder(["a", "b", "z"])


class TestExclusiveApply:
    def test_at_most_one_applied(self, abc):
        assert abc.applied() is None
        for pid in ["a", "c", "b", "b", "a"]:
            abc.set_applied(pid)
            applied = [r.id for r in abc.list() if r.is_applied]
            assert applied == [pid]

    def test_disabled_cannot_be_applied(self, abc):
        abc.set_disabled("a", True)
        with pytest.raises(NotFoundError, match="disabled"):
            abc.set_applied("a")

    def test_applied_cannot_be_disabled(self, abc):
        abc.set_applied("a")
        with pytest.raises(InUseError):
            abc.set_disabled("a", True)
        assert abc.get("a").is_disabled is False

    def test_clear_applied(self, abc):
        abc.set_applied("c")
        abc.clear_applied()
        assert abc.applied() is None
        abc.set_disabled("c", True)
        assert abc.get("c").is_disabled

    def test_set_applied_missing(self, store):
        with pytest.raises(NotFoundError):
            store.set_applied("nope")

    def test_concurrent_set_applied(self, store):
        ids = [f"p{i}" for i in range(8)]
        for pid in ids:
            store.create(pid, claude(), provider_id=pid)
        start = threading.Barrier(len(ids))

        def apply(pid):
            start.wait(timeout=5)
            for _ in range(20):
                store.set_applied(pid)

        threads = [threading.Thread(target=apply, args=(pid,)) for pid in ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        applied = [r.id for r in store.list() if r.is_applied]
        assert len(applied) == 1
        reopened = ProviderStore(ToolId.CLAUDE_CODE, store.path)
        assert [r.id for r in reopened.list() if r.is_applied] == applied


class TestSelect:
    def test_select_is_persisted_and_does_not_apply(self, abc):
        abc.select("c")
        assert abc.get("c").is_applied is False
        reopened = ProviderStore(abc.tool, abc.path)
        assert reopened.selected_id == "c"

    def test_select_missing(self, store):
        with pytest.raises(NotFoundError):
            store.select("nope")


class TestPersistence:
    def test_reload_keeps_state(self, abc):
        abc.set_applied("b")
        abc.reorder(["c", "b", "a"])
        reopened = ProviderStore(abc.tool, abc.path)
        assert [r.id for r in reopened.list()] == ["c", "b", "a"]
        assert reopened.applied().id == "b"

    def test_failed_persist_leaves_store_unchanged(self, abc, monkeypatch):
        def boom(path, data, mtime=None):
            raise IoError("Disk full", str(path))

        monkeypatch.setattr(store_module, "atomic_write", boom)
        with pytest.raises(IoError):
            abc.set_applied("a")
        assert abc.applied() is None

    def test_legacy_camel_case_document(self, tmp_path):
        path = tmp_path / "claude_code.json"
        path.write_text(
            json.dumps(
                {
                    "providers": [
                        {
                            "id": "old",
                            "name": "Old",
                            "category": "custom",
                            "settingsConfig": json.dumps({"env": {"ANTHROPIC_AUTH_TOKEN": "t"}}),
                            "sortIndex": None,
                            "isApplied": True,
                            "isDisabled": False,
                            "websiteUrl": "https://old.dev",
                        }
                    ]
                }
            )
        )
        store = ProviderStore(ToolId.CLAUDE_CODE, path)
        record = store.get("old")
        assert record.is_applied
        assert record.sort_index == 0
        assert record.website_url == "https://old.dev"
        assert record.settings.env == {"ANTHROPIC_AUTH_TOKEN": "t"}

    def test_two_applied_records_is_corrupt(self, tmp_path):
        path = tmp_path / "claude_code.json"
        rows = [
            {"id": pid, "name": pid, "settings_config": "{}", "is_applied": True}
            for pid in ("x", "y")
        ]
        path.write_text(json.dumps({"providers": rows}))
        with pytest.raises(CodecError, match="more than one applied"):
            ProviderStore(ToolId.CLAUDE_CODE, path)

    def test_malformed_settings_surface_on_read(self, tmp_path):
        path = tmp_path / "claude_code.json"
        path.write_text(json.dumps({"providers": [{"id": "x", "settings_config": "{broken"}]}))
        store = ProviderStore(ToolId.CLAUDE_CODE, path)
        with pytest.raises(CodecError):
            store.get("x")


class TestCommonConfig:
    def test_defaults_to_empty(self, store):
        assert store.get_common_config().settings == ClaudeSettings()

    def test_save_and_reload(self, tmp_path):
        path = tmp_path / "codex.json"
        store = ProviderStore(ToolId.CODEX, path)
        store.save_common_config(CodexCommonSettings(config={"approval_policy": "never"}))
        reopened = ProviderStore(ToolId.CODEX, path)
        common = reopened.get_common_config()
        assert common.settings.config == {"approval_policy": "never"}
        assert common.updated_at

    def test_wrong_type(self, store):
        with pytest.raises(ValidationError):
            store.save_common_config(CodexCommonSettings())

    def test_common_that_would_not_read_back(self, store):
        with pytest.raises(ValidationError, match="env.K"):
            store.save_common_config(ClaudeSettings(env={"K": ["list"]}))
        assert store.get_common_config().settings == ClaudeSettings()

    def test_opencode_common_config_path_must_be_text(self, tmp_path):
        store = ProviderStore(ToolId.OPENCODE, tmp_path / "opencode.json")
        with pytest.raises(ValidationError, match="config_path"):
            store.save_common_config(OpenCodeCommonSettings(config_path=42))
