"""Plugin lifecycle: install, uninstall, enable, disable, update, health, bulk operations.

Plugins live at ``<plugins_dir>/node_modules/<namespace>/<id>``; the short
id (the package name without its namespace) is the key into every state
store. The dependency manifest at ``<plugins_dir>/package.json`` lists what
should be installed, keyed by full package name.
"""

from __future__ import annotations

import copy
import json
import shutil
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

import structlog

from etools.core.errors import (
    EtoolsError,
    IoError,
    JsonParseError,
    NotFoundError,
    ProtectedPluginError,
    StoreError,
    TransportError,
    ValidationError,
)
from etools.core.utils import now_ms, package_name, read_json, short_id, write_json

from . import metadata as etp
from .cache import TTLCache
from .installer import PackageInstaller, PackageSource
from .models import (
    BulkOperation,
    BulkOperationResult,
    BulkOperationStatus,
    BulkOperationType,
    MarketplacePlugin,
    PackageValidation,
    Plugin,
    PluginErrorEntry,
    PluginHealth,
    PluginHealthStatus,
    PluginPage,
    PluginSource,
    PluginTrigger,
    PluginUpdateInfo,
    PluginUpdateMetadata,
    PluginUsageStats,
    classify_results,
)
from .npm import NpmPackageManager, PackageManager
from .registry import RegistryClient
from .stores import StateStores

if TYPE_CHECKING:
    from etools.core.config import Config

logger = structlog.get_logger(__name__)

PROTECTED_PLUGIN_IDS = frozenset({"core", "system"})

DEFAULT_DEPENDENCY_MANIFEST = {
    "name": "etools-plugins",
    "version": "1.0.0",
    "description": "Installed plugins registry",
    "dependencies": {},
}


def _error_entry(code: str, message: str, **context: str) -> PluginErrorEntry:
    return PluginErrorEntry(
        code=code, message=message, timestamp=now_ms(), context=context or None
    )


class PluginLifecycleManager:
    """Owns the plugin-list and enablement caches and orchestrates every lifecycle operation."""

    def __init__(
        self,
        config: Config,
        registry: RegistryClient | None = None,
        installer: PackageInstaller | None = None,
        package_manager: PackageManager | None = None,
        stores: StateStores | None = None,
        plugin_cache: TTLCache[list[Plugin]] | None = None,
        state_cache: TTLCache[dict[str, bool]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.registry = registry or RegistryClient(config)
        self.installer = installer or PackageInstaller(config)
        self.package_manager = package_manager or NpmPackageManager(
            config.plugins_dir, config.npm_command, config.subprocess_timeout
        )
        self.stores = stores or StateStores(config.data_dir)
        self.plugin_cache = plugin_cache or TTLCache(config.list_ttl, clock)
        self.state_cache = state_cache or TTLCache(config.state_ttl, clock)
        self._manifest_lock = threading.Lock()

    # ── Paths ───────────────────────────────────────────────────────

    def _short(self, plugin_id: str) -> str:
        return short_id(plugin_id, self.config.namespace)

    def _package(self, plugin_id: str) -> str:
        return package_name(plugin_id, self.config.namespace)

    def _dir_name(self, plugin_id: str) -> str:
        """Short id that is safe to use as a single path component."""
        sid = self._short(plugin_id)
        if not sid or sid in (".", "..") or "/" in sid or "\\" in sid:
            raise NotFoundError(f"invalid plugin id: {plugin_id!r}")
        return sid

    def plugin_path(self, plugin_id: str) -> Path:
        return self.config.modules_dir / self._dir_name(plugin_id)

    def _resolve(self, plugin_id: str) -> tuple[str, Path]:
        """Accept a short id or a full package name; fail if nothing is installed there."""
        sid = self._dir_name(plugin_id)
        path = self.config.modules_dir / sid
        if not path.is_dir():
            raise NotFoundError(f"plugin not installed: {plugin_id}")
        return sid, path

    def _health_path(self, plugin_id: str) -> Path:
        return self.config.health_dir / f"{self._dir_name(plugin_id)}.json"

    # ── Dependency manifest ─────────────────────────────────────────

    def _read_dependency_manifest(self, create: bool = False) -> dict[str, Any]:
        path = self.config.dependency_manifest_path
        if not path.exists():
            data = copy.deepcopy(DEFAULT_DEPENDENCY_MANIFEST)
            if create:
                write_json(path, data)
            return data
        try:
            data = read_json(path)
        except (json.JSONDecodeError, OSError) as e:
            raise StoreError(f"failed to read {path}: {e}") from e
        if not isinstance(data, dict):
            raise StoreError(f"{path} must contain a JSON object")
        if not isinstance(data.get("dependencies"), dict):
            data["dependencies"] = {}
        return data

    def dependencies(self) -> dict[str, str]:
        return dict(self._read_dependency_manifest()["dependencies"])

    def _add_dependency(self, name: str, specifier: str, replace: bool = False) -> bool:
        """Add *name* (overwrite only with *replace*). Returns True when the manifest changed."""
        with self._manifest_lock:
            data = self._read_dependency_manifest(create=True)
            if not replace and name in data["dependencies"]:
                logger.debug("dependency already present", package=name)
                return False
            if data["dependencies"].get(name) == specifier:
                return False
            data["dependencies"][name] = specifier
            write_json(self.config.dependency_manifest_path, data)
            return True

    def _remove_dependency(self, name: str) -> bool:
        with self._manifest_lock:
            if not self.config.dependency_manifest_path.exists():
                return False
            data = self._read_dependency_manifest()
            if data["dependencies"].pop(name, None) is None:
                logger.debug("dependency not present", package=name)
                return False
            write_json(self.config.dependency_manifest_path, data)
            return True

    # ── Reading installed packages ──────────────────────────────────

    def _read_package(self, path: Path) -> etp.ValidatedPackage:
        manifest = path / "package.json"
        try:
            text = manifest.read_text(encoding="utf-8")
        except OSError as e:
            raise IoError(f"failed to read {manifest}: {e}") from e
        return etp.parse_package_text(text, self.config.namespace)

    def _enablement_state(self) -> dict[str, bool]:
        """Read-through the enablement cache."""
        state = self.state_cache.get()
        if state is None:
            generation = self.state_cache.generation
            state = self.stores.enablement.load()
            self.state_cache.set(state, generation=generation)
        return state

    def _is_enabled(self, plugin_id: str) -> bool:
        return self.stores.enablement.is_enabled(self._short(plugin_id), self._enablement_state())

    def _build_plugin(
        self,
        sid: str,
        path: Path,
        validated: etp.ValidatedPackage,
        enabled: bool,
        usage: PluginUsageStats,
        source: PluginSource,
        health: PluginHealth | None = None,
    ) -> Plugin:
        meta = validated.metadata
        if meta.id != sid:
            logger.warning("metadata id differs from install directory", plugin_id=sid, etools_id=meta.id)
        settings = meta.setting_defaults()
        settings.update(self.stores.settings.get_settings(sid))
        try:
            installed_at = int(path.stat().st_ctime * 1000)
        except OSError:
            installed_at = 0
        return Plugin(
            id=sid,
            name=meta.display_name,
            version=validated.version,
            description=validated.description,
            author=validated.author,
            enabled=enabled,
            permissions=list(meta.permissions),
            entry_point=validated.main,
            triggers=list(meta.triggers),
            settings=settings,
            health=health or self.get_plugin_health(sid),
            usage_stats=usage,
            installed_at=installed_at,
            install_path=str(path.resolve()),
            source=source,
        )

    def _source_for(self, validated: etp.ValidatedPackage, deps: dict[str, str]) -> PluginSource:
        return PluginSource.MARKETPLACE if validated.name in deps else PluginSource.LOCAL

    def get_installed_plugin(self, plugin_id: str, health: PluginHealth | None = None) -> Plugin:
        sid, path = self._resolve(plugin_id)
        validated = self._read_package(path)
        return self._build_plugin(
            sid,
            path,
            validated,
            enabled=self._is_enabled(sid),
            usage=self.stores.usage.get_stats(sid),
            source=self._source_for(validated, self.dependencies()),
            health=health,
        )

    # ── Listing ─────────────────────────────────────────────────────

    def _scan_plugins(self) -> list[Plugin]:
        root = self.config.modules_dir
        if not root.is_dir():
            return []
        state = self._enablement_state()
        usage = self.stores.usage.load()
        deps = self.dependencies()
        plugins: list[Plugin] = []
        for path in sorted(root.iterdir()):
            if not path.is_dir() or path.name.startswith("."):
                continue
            try:
                validated = self._read_package(path)
            except (ValidationError, IoError) as e:
                logger.warning("skipping installed package", plugin_id=path.name, error=str(e))
                continue
            plugins.append(
                self._build_plugin(
                    path.name,
                    path,
                    validated,
                    enabled=self.stores.enablement.is_enabled(path.name, state),
                    usage=self.stores.usage.get_stats(path.name, usage),
                    source=self._source_for(validated, deps),
                )
            )
        logger.debug("scanned plugin directory", count=len(plugins))
        return plugins

    def list_plugins(self) -> list[Plugin]:
        cached = self.plugin_cache.get()
        if cached is None:
            # a write that lands mid-scan bumps the generation; keep its invalidation
            generation = self.plugin_cache.generation
            cached = self._scan_plugins()
            self.plugin_cache.set(cached, generation=generation)
        else:
            logger.debug("plugin list cache hit")
        return copy.deepcopy(cached)

    def refresh_plugins(self) -> list[Plugin]:
        self.plugin_cache.invalidate()
        return self.list_plugins()

    # ── Enable / disable ────────────────────────────────────────────

    def _set_enabled(self, plugin_id: str, enabled: bool) -> Plugin:
        sid, _ = self._resolve(plugin_id)
        store = self.stores.enablement
        with store.lock:
            state = dict(self._enablement_state())
            state[sid] = enabled
            store.save(state)
            self.state_cache.set(state)
        self.plugin_cache.invalidate()
        health = self.check_plugin_health(sid)
        logger.info("plugin enabled" if enabled else "plugin disabled", plugin_id=sid)
        return self.get_installed_plugin(sid, health=health)

    def enable_plugin(self, plugin_id: str) -> Plugin:
        return self._set_enabled(plugin_id, True)

    def disable_plugin(self, plugin_id: str) -> Plugin:
        return self._set_enabled(plugin_id, False)

    # ── Install / uninstall / update ────────────────────────────────

    def install_plugin(self, name: str) -> Plugin:
        """Fetch *name* with the package manager and register it in the dependency manifest."""
        name = self._package(name)
        self._dir_name(name)
        self.package_manager.install(name)

        path = self.config.plugins_dir / "node_modules" / name
        try:
            validated = self._read_package(path)
            etp.check_identity(validated)
        except (ValidationError, IoError):
            self._discard_install(name, path)
            raise
        self._add_dependency(name, f"^{validated.version}")
        self.plugin_cache.invalidate()

        sid = self._short(name)
        logger.info("plugin installed", plugin_id=sid, package=name, version=validated.version)
        return self._build_plugin(
            sid,
            path,
            validated,
            enabled=self._is_enabled(sid),
            usage=self.stores.usage.get_stats(sid),
            source=PluginSource.MARKETPLACE,
        )

    def _discard_install(self, name: str, path: Path) -> None:
        """Remove a package that the package manager fetched but that failed validation."""
        logger.warning("installed package is not a valid plugin, removing", package=name)
        try:
            self.package_manager.uninstall(name)
        except EtoolsError as e:
            logger.warning("package manager could not remove package", package=name, error=str(e))
        shutil.rmtree(path, ignore_errors=True)

    def install_from_package(self, source: PackageSource, auto_enable: bool = False) -> Plugin:
        """Validate, stage and install a local package file or in-memory archive."""
        extraction = self.installer.extract_package(source)
        try:
            sid = extraction.manifest.id
            self.installer.install_plugin(extraction.path, sid)
        finally:
            self.installer.cleanup(extraction.path)

        store = self.stores.enablement
        with store.lock:
            state = dict(self._enablement_state())
            state[sid] = auto_enable
            store.save(state)
            self.state_cache.set(state)
        self.plugin_cache.invalidate()

        health = self.check_plugin_health(sid)
        plugin = self.get_installed_plugin(sid, health=health)
        plugin.source = PluginSource.LOCAL
        return plugin

    def validate_package(self, source: PackageSource) -> PackageValidation:
        return self.installer.validate_package(source)

    def _installed_package_name(self, sid: str) -> str:
        """Read the real package name from the installed package, else synthesize it."""
        manifest = self.config.modules_dir / sid / "package.json"
        if manifest.exists():
            try:
                data = read_json(manifest)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("unreadable package.json, using default name", plugin_id=sid, error=str(e))
            else:
                if isinstance(data, dict) and isinstance(data.get("name"), str) and data["name"]:
                    return data["name"]
        return self._package(sid)

    def uninstall_plugin(self, plugin_id: str) -> None:
        sid = self._dir_name(plugin_id)
        if sid in PROTECTED_PLUGIN_IDS:
            raise ProtectedPluginError(f"cannot uninstall core plugin: {sid}")

        name = self._installed_package_name(sid)
        self.package_manager.uninstall(name)
        self._remove_dependency(name)

        path = self.config.modules_dir / sid
        if path.exists():
            try:
                shutil.rmtree(path)
            except OSError as e:
                raise IoError(f"failed to remove {path}: {e}") from e

        self.stores.remove_all(sid)
        self._health_path(sid).unlink(missing_ok=True)
        self.state_cache.invalidate()
        self.plugin_cache.invalidate()
        logger.info("plugin uninstalled", plugin_id=sid, package=name)

    def update_plugin(self, plugin_id: str) -> Plugin:
        sid, _ = self._resolve(plugin_id)
        name = self._installed_package_name(sid)
        self.package_manager.upgrade(name)
        self.plugin_cache.invalidate()
        plugin = self.get_installed_plugin(sid)
        self._add_dependency(name, f"^{plugin.version}", replace=True)
        logger.info("plugin updated", plugin_id=sid, version=plugin.version)
        return plugin

    def check_updates(self) -> list[PluginUpdateInfo]:
        updates: list[PluginUpdateInfo] = []
        for name, specifier in self.dependencies().items():
            try:
                current = self._read_package(self.config.plugins_dir / "node_modules" / name).version
            except (ValidationError, IoError):
                current = str(specifier).lstrip("^~=")
            try:
                latest = self.registry.latest_version(name)
            except (TransportError, NotFoundError) as e:
                logger.warning("update check failed", package=name, error=str(e))
                continue
            if latest != current:
                updates.append(PluginUpdateInfo(name, current, latest, has_update=True))
        logger.info("update check complete", updates=len(updates))
        return updates

    def annotate_updates(self, plugins: list[Plugin], updates: list[PluginUpdateInfo]) -> list[Plugin]:
        by_id = {self._short(u.package_name): u for u in updates}
        for plugin in plugins:
            if update := by_id.get(plugin.id):
                plugin.update_metadata = PluginUpdateMetadata(update.latest_version, update.has_update)
        return plugins

    # ── Health ──────────────────────────────────────────────────────

    def check_plugin_health(self, plugin_id: str) -> PluginHealth:
        sid = self._dir_name(plugin_id)
        path = self.config.modules_dir / sid
        health = PluginHealth(last_checked=now_ms())

        if not path.is_dir():
            health.status = PluginHealthStatus.ERROR
            health.message = "Plugin directory not found"
            health.errors.append(
                _error_entry("DIRECTORY_MISSING", "Plugin directory missing", path=str(path))
            )
        elif not self._is_enabled(sid):
            health.status = PluginHealthStatus.WARNING
            health.message = "Plugin is disabled"
        else:
            try:
                self._read_package(path)
            except IoError as e:
                health.status = PluginHealthStatus.ERROR
                health.message = "Cannot read plugin manifest"
                health.errors.append(_error_entry("MANIFEST_UNREADABLE", str(e)))
            except JsonParseError as e:
                health.status = PluginHealthStatus.ERROR
                health.message = "Invalid manifest format"
                health.errors.append(_error_entry("MANIFEST_INVALID", str(e)))
            except ValidationError as e:
                health.status = PluginHealthStatus.ERROR
                health.message = "Manifest fails ETP validation"
                health.errors.append(_error_entry("MANIFEST_INVALID", str(e), code=e.code))
            else:
                health.status = PluginHealthStatus.HEALTHY
                health.message = "Plugin is healthy and enabled"

        try:
            write_json(self._health_path(sid), health.to_dict())
        except OSError as e:
            raise IoError(f"failed to write health file for {sid}: {e}") from e
        logger.debug("health checked", plugin_id=sid, status=health.status.value)
        return health

    def get_plugin_health(self, plugin_id: str) -> PluginHealth:
        path = self._health_path(plugin_id)
        if not path.exists():
            return PluginHealth()
        try:
            return PluginHealth.from_dict(read_json(path))
        except (json.JSONDecodeError, OSError, ValueError, TypeError, KeyError) as e:
            logger.warning("unreadable health file", plugin_id=plugin_id, error=str(e))
            return PluginHealth()

    # ── Settings, usage, abbreviations ──────────────────────────────

    def get_settings(self, plugin_id: str) -> dict[str, Any]:
        return self.stores.settings.get_settings(self._short(plugin_id))

    def get_setting(self, plugin_id: str, key: str) -> Any:
        return self.stores.settings.get_setting(self._short(plugin_id), key)

    def set_setting(self, plugin_id: str, key: str, value: Any) -> None:
        with self.stores.settings.lock:
            self.stores.settings.set_setting(self._short(plugin_id), key, value)
        self.plugin_cache.invalidate()

    def get_usage_stats(self, plugin_id: str) -> PluginUsageStats:
        return self.stores.usage.get_stats(self._short(plugin_id))

    def record_usage(self, plugin_id: str, execution_time: int | None = None) -> PluginUsageStats:
        with self.stores.usage.lock:
            stats = self.stores.usage.record(self._short(plugin_id), execution_time)
        self.plugin_cache.invalidate()
        return stats

    def reset_usage_stats(self, plugin_id: str) -> None:
        with self.stores.usage.lock:
            self.stores.usage.reset(self._short(plugin_id))
        self.plugin_cache.invalidate()

    def get_abbreviations(self) -> dict[str, list[dict[str, Any]]]:
        return self.stores.abbreviations.load()

    def set_abbreviation(self, plugin_id: str, keyword: str, enabled: bool = True) -> None:
        with self.stores.abbreviations.lock:
            self.stores.abbreviations.set_abbreviation(self._short(plugin_id), keyword, enabled)

    def remove_abbreviation(self, plugin_id: str, keyword: str) -> bool:
        with self.stores.abbreviations.lock:
            return self.stores.abbreviations.remove_abbreviation(self._short(plugin_id), keyword)

    # ── Marketplace ─────────────────────────────────────────────────

    def _mark_installed(self, page: PluginPage) -> PluginPage:
        for plugin in page.plugins:
            path = self.config.modules_dir / plugin.id
            if not path.is_dir():
                continue
            plugin.installed = True
            try:
                plugin.installed_version = self._read_package(path).version
            except (ValidationError, IoError):
                plugin.installed_version = None
            plugin.update_available = (
                plugin.installed_version is not None
                and plugin.installed_version != plugin.latest_version
            )
        return page

    def marketplace_list(
        self, category: str | None = None, page: int = 1, page_size: int = 20
    ) -> PluginPage:
        return self._mark_installed(self.registry.list(category, page, page_size))

    def marketplace_search(
        self, query: str, category: str | None = None, page: int = 1, page_size: int = 20
    ) -> PluginPage:
        return self._mark_installed(self.registry.search(query, category, page, page_size))

    def get_plugin(self, plugin_id: str) -> Plugin:
        entry: MarketplacePlugin = self.registry.get_plugin(self._short(plugin_id))
        installed = (self.config.modules_dir / entry.id).is_dir()
        return Plugin(
            id=entry.id,
            name=entry.name,
            version=entry.version,
            description=entry.description,
            author=entry.author,
            enabled=self._is_enabled(entry.id) if installed else False,
            permissions=list(entry.permissions),
            triggers=[PluginTrigger(keyword=k) for k in entry.triggers],
            install_path=str(self.config.modules_dir / entry.id) if installed else "",
            source=PluginSource.MARKETPLACE,
            update_metadata=PluginUpdateMetadata(entry.latest_version, False),
        )

    # ── Bulk operations ─────────────────────────────────────────────

    def _run_bulk(
        self,
        operation_type: BulkOperationType,
        plugin_ids: list[str],
        action: Callable[[str], Any],
    ) -> BulkOperation:
        op = BulkOperation(
            operation_type=operation_type,
            target_plugin_ids=list(plugin_ids),
            started_at=now_ms(),
        )
        # one result per distinct id; running the same id twice concurrently is unsafe
        unique = list(dict.fromkeys(plugin_ids))
        op.status = BulkOperationStatus.IN_PROGRESS

        results: dict[str, BulkOperationResult] = {}
        if unique:
            workers = max(1, min(self.config.max_workers, len(unique)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="etools-bulk") as pool:
                futures = {pool.submit(action, pid): pid for pid in unique}
                for future in as_completed(futures):
                    pid = futures[future]
                    try:
                        future.result()
                    except Exception as e:
                        logger.warning(
                            "bulk item failed", operation=operation_type.value, plugin_id=pid, error=str(e)
                        )
                        results[pid] = BulkOperationResult(pid, success=False, error=str(e))
                    else:
                        results[pid] = BulkOperationResult(pid, success=True)

        op.results = [results[pid] for pid in unique]
        op.status = classify_results(op.results)
        op.completed_at = now_ms()
        logger.info(
            "bulk operation finished",
            operation=operation_type.value,
            status=op.status.value,
            failures=len(op.failures),
        )
        return op

    def bulk_enable(self, plugin_ids: list[str]) -> BulkOperation:
        return self._run_bulk(BulkOperationType.ENABLE, plugin_ids, self.enable_plugin)

    def bulk_disable(self, plugin_ids: list[str]) -> BulkOperation:
        return self._run_bulk(BulkOperationType.DISABLE, plugin_ids, self.disable_plugin)

    def bulk_uninstall(self, plugin_ids: list[str]) -> BulkOperation:
        return self._run_bulk(BulkOperationType.UNINSTALL, plugin_ids, self.uninstall_plugin)

    def bulk_update(self, plugin_ids: list[str]) -> BulkOperation:
        return self._run_bulk(BulkOperationType.UPDATE, plugin_ids, self.update_plugin)
