"""Plugins: ETP validation, registry client, package installer, state stores, lifecycle management."""

from .cache import TTLCache
from .installer import PackageInstaller
from .lifecycle import PluginLifecycleManager
from .metadata import EtoolsMetadata, PluginCategory, parse
from .models import (
    BulkOperation,
    BulkOperationStatus,
    BulkOperationType,
    MarketplacePlugin,
    PackageValidation,
    Plugin,
    PluginHealth,
    PluginHealthStatus,
    PluginPage,
    PluginSource,
)
from .npm import NpmPackageManager, PackageManager
from .registry import RegistryClient
from .stores import StateStores

__all__ = [
    "BulkOperation",
    "BulkOperationStatus",
    "BulkOperationType",
    "EtoolsMetadata",
    "MarketplacePlugin",
    "NpmPackageManager",
    "PackageInstaller",
    "PackageManager",
    "PackageValidation",
    "Plugin",
    "PluginCategory",
    "PluginHealth",
    "PluginHealthStatus",
    "PluginLifecycleManager",
    "PluginPage",
    "PluginSource",
    "RegistryClient",
    "StateStores",
    "TTLCache",
    "parse",
]
