"""JSON-backed state stores keyed by plugin id.

Each store owns one file under the data directory, loads it on demand and
rewrites it in full on every mutation (last writer wins). Stores do no
locking of their own; each carries a ``lock`` that callers hold around
read-modify-write sequences.
"""

from __future__ import annotations

import json
import threading
from dataclasses import asdict
from pathlib import Path
from typing import Any

import structlog

from etools.core.errors import StoreError
from etools.core.utils import now_ms, read_json, write_json

from .models import PluginUsageStats

logger = structlog.get_logger(__name__)

ENABLEMENT_FILE = "plugin-state.json"
SETTINGS_FILE = "plugin-settings.json"
USAGE_STATS_FILE = "plugin-usage-stats.json"
ABBREVIATIONS_FILE = "plugin_abbreviations.json"


class JsonStore:
    """A flat JSON object persisted to a single file."""

    filename = "store.json"

    def __init__(self, data_dir: Path):
        self.path = Path(data_dir) / self.filename
        self.lock = threading.RLock()

    def load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = read_json(self.path)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StoreError(f"malformed store file {self.path}: {e}") from e
        except OSError as e:
            raise StoreError(f"failed to read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StoreError(f"malformed store file {self.path}: expected a JSON object")
        return data

    def save(self, data: dict[str, Any]) -> None:
        try:
            write_json(self.path, data)
        except OSError as e:
            raise StoreError(f"failed to write {self.path}: {e}") from e
        logger.debug("store saved", store=self.filename, entries=len(data))

    def get(self, plugin_id: str, default: Any = None) -> Any:
        return self.load().get(plugin_id, default)

    def set(self, plugin_id: str, value: Any) -> None:
        data = self.load()
        data[plugin_id] = value
        self.save(data)

    def remove(self, plugin_id: str) -> bool:
        """Drop the entry for *plugin_id*. Absent entries are not an error."""
        data = self.load()
        if plugin_id not in data:
            return False
        del data[plugin_id]
        self.save(data)
        return True


class EnablementStore(JsonStore):
    """plugin_id -> bool; unknown plugins are enabled."""

    filename = ENABLEMENT_FILE

    def is_enabled(self, plugin_id: str, state: dict[str, Any] | None = None) -> bool:
        state = self.load() if state is None else state
        return bool(state.get(plugin_id, True))

    def set_enabled(self, plugin_id: str, enabled: bool) -> dict[str, Any]:
        data = self.load()
        data[plugin_id] = bool(enabled)
        self.save(data)
        return data


class SettingsStore(JsonStore):
    """plugin_id -> {setting key -> JSON value}."""

    filename = SETTINGS_FILE

    def get_settings(self, plugin_id: str) -> dict[str, Any]:
        value = self.get(plugin_id, {})
        return dict(value) if isinstance(value, dict) else {}

    def get_setting(self, plugin_id: str, key: str) -> Any:
        return self.get_settings(plugin_id).get(key)

    def set_setting(self, plugin_id: str, key: str, value: Any) -> None:
        data = self.load()
        settings = data.get(plugin_id)
        if not isinstance(settings, dict):
            settings = {}
        settings[key] = value
        data[plugin_id] = settings
        self.save(data)


class UsageStatsStore(JsonStore):
    """plugin_id -> PluginUsageStats."""

    filename = USAGE_STATS_FILE

    def get_stats(self, plugin_id: str, data: dict[str, Any] | None = None) -> PluginUsageStats:
        data = self.load() if data is None else data
        value = data.get(plugin_id)
        return PluginUsageStats.from_dict(value) if isinstance(value, dict) else PluginUsageStats()

    def record(
        self, plugin_id: str, execution_time: int | None = None, timestamp: int | None = None
    ) -> PluginUsageStats:
        """Count one use; execution_time (ms) feeds the running average."""
        data = self.load()
        stats = self.get_stats(plugin_id, data)
        stats.usage_count += 1
        stats.last_used = max(stats.last_used or 0, timestamp if timestamp is not None else now_ms())
        if execution_time is not None:
            previous = stats.average_execution_time
            stats.timed_runs += 1
            if previous is None:
                stats.average_execution_time = int(execution_time)
            else:
                n = stats.timed_runs
                stats.average_execution_time = round((previous * (n - 1) + execution_time) / n)
            stats.last_execution_time = int(execution_time)
        data[plugin_id] = asdict(stats)
        self.save(data)
        return stats

    def reset(self, plugin_id: str) -> bool:
        return self.remove(plugin_id)


class AbbreviationStore(JsonStore):
    """plugin_id -> [{keyword, enabled}]."""

    filename = ABBREVIATIONS_FILE

    def get_abbreviations(self, plugin_id: str) -> list[dict[str, Any]]:
        value = self.get(plugin_id, [])
        return [a for a in value if isinstance(a, dict)] if isinstance(value, list) else []

    def set_abbreviation(self, plugin_id: str, keyword: str, enabled: bool = True) -> None:
        data = self.load()
        existing = data.get(plugin_id)
        if not isinstance(existing, list):
            existing = []
        entries = [a for a in existing if isinstance(a, dict) and a.get("keyword") != keyword]
        entries.append({"keyword": keyword, "enabled": bool(enabled)})
        data[plugin_id] = entries
        self.save(data)

    def remove_abbreviation(self, plugin_id: str, keyword: str) -> bool:
        data = self.load()
        entries = data.get(plugin_id)
        if not isinstance(entries, list):
            return False
        kept = [a for a in entries if not (isinstance(a, dict) and a.get("keyword") == keyword)]
        if len(kept) == len(entries):
            return False
        data[plugin_id] = kept
        self.save(data)
        return True


class StateStores:
    """The four stores, created together under one data directory."""

    def __init__(self, data_dir: Path):
        self.enablement = EnablementStore(data_dir)
        self.settings = SettingsStore(data_dir)
        self.usage = UsageStatsStore(data_dir)
        self.abbreviations = AbbreviationStore(data_dir)

    def __iter__(self):
        return iter((self.enablement, self.settings, self.usage, self.abbreviations))

    def remove_all(self, plugin_id: str) -> None:
        for store in self:
            with store.lock:
                store.remove(plugin_id)
