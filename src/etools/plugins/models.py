"""Plugin data models: Plugin, health, usage stats, bulk operations, marketplace records."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class PluginSource(str, Enum):
    MARKETPLACE = "marketplace"
    LOCAL = "local"
    GITHUB_RELEASE = "github_release"


class PluginHealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"
    UNKNOWN = "unknown"


class BulkOperationType(str, Enum):
    ENABLE = "enable"
    DISABLE = "disable"
    UNINSTALL = "uninstall"
    UPDATE = "update"


class BulkOperationStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"


# ── Plugin record ───────────────────────────────────────────────────


@dataclass
class PluginTrigger:
    keyword: str
    description: str = ""
    hotkey: str | None = None

    @classmethod
    def from_value(cls, value: Any) -> PluginTrigger | None:
        """Accept either a bare keyword string or a {keyword, description, hotkey} object."""
        if isinstance(value, str):
            return cls(keyword=value) if value else None
        if isinstance(value, dict) and isinstance(value.get("keyword"), str):
            hotkey = value.get("hotkey")
            return cls(
                keyword=value["keyword"],
                description=str(value.get("description") or ""),
                hotkey=hotkey if isinstance(hotkey, str) else None,
            )
        return None


@dataclass
class PluginErrorEntry:
    code: str
    message: str
    timestamp: int
    context: dict[str, str] | None = None


@dataclass
class PluginHealth:
    status: PluginHealthStatus = PluginHealthStatus.UNKNOWN
    message: str | None = None
    last_checked: int = 0
    errors: list[PluginErrorEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PluginHealth:
        return cls(
            status=PluginHealthStatus(data.get("status", "unknown")),
            message=data.get("message"),
            last_checked=int(data.get("last_checked", 0)),
            errors=[PluginErrorEntry(**e) for e in data.get("errors", [])],
        )


@dataclass
class PluginUsageStats:
    last_used: int | None = None
    usage_count: int = 0
    last_execution_time: int | None = None
    average_execution_time: int | None = None
    # runs that reported an execution time; the average is over these only
    timed_runs: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PluginUsageStats:
        average = data.get("average_execution_time")
        timed = data.get("timed_runs")
        return cls(
            last_used=data.get("last_used"),
            usage_count=int(data.get("usage_count", 0)),
            last_execution_time=data.get("last_execution_time"),
            average_execution_time=average,
            timed_runs=int(timed) if timed is not None else int(average is not None),
        )


@dataclass
class PluginUpdateMetadata:
    latest_version: str
    has_update: bool


@dataclass
class PluginUpdateInfo:
    package_name: str
    current_version: str
    latest_version: str
    has_update: bool


@dataclass
class Plugin:
    """An installed (or listed) plugin. A derived view, never the source of truth."""

    id: str
    name: str
    version: str
    description: str = ""
    author: str | None = None
    enabled: bool = True
    permissions: list[str] = field(default_factory=list)
    entry_point: str = "index.js"
    triggers: list[PluginTrigger] = field(default_factory=list)
    settings: dict[str, Any] = field(default_factory=dict)
    health: PluginHealth = field(default_factory=PluginHealth)
    usage_stats: PluginUsageStats = field(default_factory=PluginUsageStats)
    installed_at: int = 0
    install_path: str = ""
    source: PluginSource = PluginSource.MARKETPLACE
    update_metadata: PluginUpdateMetadata | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["health"] = self.health.to_dict()
        data["source"] = self.source.value
        return data


# ── Bulk operations ─────────────────────────────────────────────────


@dataclass
class BulkOperationResult:
    plugin_id: str
    success: bool
    error: str | None = None


@dataclass
class BulkOperation:
    operation_type: BulkOperationType
    target_plugin_ids: list[str]
    status: BulkOperationStatus = BulkOperationStatus.PENDING
    results: list[BulkOperationResult] = field(default_factory=list)
    started_at: int = 0
    completed_at: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.completed_at is not None

    @property
    def failures(self) -> list[BulkOperationResult]:
        return [r for r in self.results if not r.success]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["operation_type"] = self.operation_type.value
        data["status"] = self.status.value
        return data


def classify_results(results: list[BulkOperationResult]) -> BulkOperationStatus:
    """All succeeded -> COMPLETED, none -> FAILED, otherwise PARTIAL_FAILURE."""
    if all(r.success for r in results):
        return BulkOperationStatus.COMPLETED
    if any(r.success for r in results):
        return BulkOperationStatus.PARTIAL_FAILURE
    return BulkOperationStatus.FAILED


# ── Marketplace ─────────────────────────────────────────────────────


@dataclass
class MarketplacePlugin:
    """A validated registry entry."""

    id: str
    name: str
    version: str
    description: str
    author: str
    category: str
    permissions: list[str] = field(default_factory=list)
    triggers: list[str] = field(default_factory=list)
    icon: str | None = None
    homepage: str | None = None
    repository: str | None = None
    screenshots: list[str] | None = None
    tags: list[str] = field(default_factory=list)
    package_name: str = ""
    installed: bool = False
    installed_version: str | None = None
    update_available: bool = False
    latest_version: str = ""


@dataclass
class PluginPage:
    plugins: list[MarketplacePlugin]
    total: int
    page: int
    page_size: int
    has_more: bool


# ── Package installer ───────────────────────────────────────────────


@dataclass
class PluginManifest:
    """The parts of a validated package.json the installer reports back."""

    id: str
    name: str
    version: str
    description: str = ""
    author: str | None = None
    permissions: list[str] = field(default_factory=list)
    entry: str = "index.js"
    triggers: list[PluginTrigger] = field(default_factory=list)


@dataclass
class ValidationIssue:
    code: str
    message: str
    field: str | None = None


@dataclass
class PackageValidation:
    is_valid: bool
    manifest: PluginManifest | None = None
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)


@dataclass
class ExtractedFile:
    path: str
    size: int
    file_type: str  # "file" or "directory"


@dataclass
class ExtractionResult:
    path: str
    manifest: PluginManifest
    files: list[ExtractedFile] = field(default_factory=list)
