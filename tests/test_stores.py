"""Tests for the JSON state stores."""

import json

import pytest

from etools.core.errors import StoreError
from etools.plugins.stores import (
    AbbreviationStore,
    EnablementStore,
    SettingsStore,
    StateStores,
    UsageStatsStore,
)


class TestJsonStore:
    def test_missing_file_is_empty(self, tmp_path):
        assert EnablementStore(tmp_path).load() == {}

    def test_save_creates_parent_dirs(self, tmp_path):
        store = SettingsStore(tmp_path / "a" / "b")
        store.save({"foo": {"x": 1}})
        assert json.loads(store.path.read_text()) == {"foo": {"x": 1}}

    def test_malformed_file_raises(self, tmp_path):
        store = EnablementStore(tmp_path)
        store.path.write_text("{broken")
        with pytest.raises(StoreError):
            store.load()

    def test_non_object_raises(self, tmp_path):
        store = EnablementStore(tmp_path)
        store.path.write_text("[true]")
        with pytest.raises(StoreError):
            store.load()

    def test_remove_absent_is_noop(self, tmp_path):
        store = UsageStatsStore(tmp_path)
        assert store.remove("ghost") is False
        assert not store.path.exists()

    def test_get_set_remove(self, tmp_path):
        store = EnablementStore(tmp_path)
        store.set("foo", False)
        assert store.get("foo") is False
        assert store.remove("foo") is True
        assert store.get("foo") is None

    def test_file_names(self, tmp_path):
        stores = StateStores(tmp_path)
        assert [s.path.name for s in stores] == [
            "plugin-state.json",
            "plugin-settings.json",
            "plugin-usage-stats.json",
            "plugin_abbreviations.json",
        ]


class TestEnablementStore:
    def test_unknown_is_enabled(self, tmp_path):
        assert EnablementStore(tmp_path).is_enabled("anything") is True

    def test_set_enabled(self, tmp_path):
        store = EnablementStore(tmp_path)
        state = store.set_enabled("foo", False)
        assert state == {"foo": False}
        assert store.is_enabled("foo") is False
        assert store.is_enabled("foo", {"foo": True}) is True


class TestSettingsStore:
    def test_set_and_get(self, tmp_path):
        store = SettingsStore(tmp_path)
        store.set_setting("foo", "color", "red")
        store.set_setting("foo", "limit", 5)
        assert store.get_settings("foo") == {"color": "red", "limit": 5}
        assert store.get_setting("foo", "color") == "red"
        assert store.get_setting("foo", "missing") is None
        assert store.get_settings("bar") == {}


class TestUsageStatsStore:
    def test_record_counts_and_averages(self, tmp_path):
        store = UsageStatsStore(tmp_path)
        store.record("foo", execution_time=100, timestamp=1000)
        stats = store.record("foo", execution_time=200, timestamp=2000)
        assert stats.usage_count == 2
        assert stats.last_used == 2000
        assert stats.last_execution_time == 200
        assert stats.average_execution_time == 150
        assert store.get_stats("foo") == stats

    def test_average_ignores_untimed_runs(self, tmp_path):
        store = UsageStatsStore(tmp_path)
        store.record("foo")
        store.record("foo")
        store.record("foo", execution_time=100)
        stats = store.record("foo", execution_time=200)
        assert stats.usage_count == 4
        assert stats.timed_runs == 2
        assert stats.average_execution_time == 150
        assert UsageStatsStore(tmp_path).get_stats("foo").timed_runs == 2

    def test_older_records_without_timed_runs(self, tmp_path):
        store = UsageStatsStore(tmp_path)
        store.save({"foo": {"usage_count": 3, "average_execution_time": 100}})
        assert store.record("foo", execution_time=200).average_execution_time == 150

    def test_last_used_never_decreases(self, tmp_path):
        store = UsageStatsStore(tmp_path)
        store.record("foo", timestamp=5000)
        assert store.record("foo", timestamp=1000).last_used == 5000

    def test_reset(self, tmp_path):
        store = UsageStatsStore(tmp_path)
        store.record("foo")
        assert store.reset("foo") is True
        assert store.get_stats("foo").usage_count == 0


class TestAbbreviationStore:
    def test_set_replaces_same_keyword(self, tmp_path):
        store = AbbreviationStore(tmp_path)
        store.set_abbreviation("foo", "f")
        store.set_abbreviation("foo", "fo")
        store.set_abbreviation("foo", "f", enabled=False)
        assert store.get_abbreviations("foo") == [
            {"keyword": "fo", "enabled": True},
            {"keyword": "f", "enabled": False},
        ]

    def test_remove(self, tmp_path):
        store = AbbreviationStore(tmp_path)
        store.set_abbreviation("foo", "f")
        assert store.remove_abbreviation("foo", "f") is True
        assert store.remove_abbreviation("foo", "f") is False
        assert store.get_abbreviations("foo") == []


class TestStateStores:
    def test_remove_all(self, tmp_path):
        stores = StateStores(tmp_path)
        stores.enablement.set_enabled("foo", False)
        stores.settings.set_setting("foo", "k", "v")
        stores.usage.record("foo")
        stores.abbreviations.set_abbreviation("foo", "f")
        stores.remove_all("foo")
        for store in stores:
            assert "foo" not in store.load()

    def test_remove_all_without_entries(self, tmp_path):
        StateStores(tmp_path).remove_all("ghost")
