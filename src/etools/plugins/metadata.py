"""etools plugin metadata protocol (ETP): strict parsing of a package.json "etools" block.

Every plugin package must carry an ``etools`` object in its package.json.
There is no backward-compatible inference: a missing block, a missing
required field or an unknown category is a hard failure. Optional fields
are parsed best-effort and dropped when malformed.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from etools.core.errors import (
    IdMismatch,
    InvalidCategory,
    InvalidPackageName,
    JsonParseError,
    MissingEtoolsField,
    MissingRequiredField,
)

from .models import PluginTrigger

DEFAULT_NAMESPACE = "@etools-plugin"
DEFAULT_ENTRY_POINT = "index.js"


class PluginCategory(str, Enum):
    PRODUCTIVITY = "productivity"
    DEVELOPER = "developer"
    UTILITIES = "utilities"
    SEARCH = "search"
    MEDIA = "media"
    INTEGRATION = "integration"

    @classmethod
    def parse(cls, value: str) -> PluginCategory:
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise InvalidCategory(value, [c.value for c in cls]) from None

    @property
    def label(self) -> str:
        return self.value.capitalize()


@dataclass
class SettingOption:
    label: str
    value: Any


@dataclass
class PluginSetting:
    """A typed setting descriptor declared by the plugin."""

    key: str
    label: str
    type: str  # "string" | "number" | "boolean" | "select"
    default: Any = None
    options: list[SettingOption] | None = None
    description: str | None = None


@dataclass
class EtoolsMetadata:
    id: str
    display_name: str
    category: PluginCategory
    permissions: list[str] = field(default_factory=list)
    triggers: list[PluginTrigger] = field(default_factory=list)
    description: str | None = None
    icon: str | None = None
    homepage: str | None = None
    screenshots: list[str] | None = None
    settings: list[PluginSetting] | None = None
    namespace: str = DEFAULT_NAMESPACE

    @property
    def package_name(self) -> str:
        return f"{self.namespace}/{self.id}"

    def setting_defaults(self) -> dict[str, Any]:
        return {s.key: s.default for s in self.settings or []}


@dataclass
class ValidatedPackage:
    """A package.json that passed ETP validation, with the package-level fields we use."""

    name: str
    version: str
    metadata: EtoolsMetadata
    description: str = ""
    author: str | None = None
    main: str = DEFAULT_ENTRY_POINT
    keywords: list[str] = field(default_factory=list)


# ── Field helpers ───────────────────────────────────────────────────


def _required_str(meta: dict, key: str) -> str:
    value = meta.get(key)
    if not isinstance(value, str) or not value.strip():
        raise MissingRequiredField(key)
    return value


def _required_list(meta: dict, key: str) -> list:
    value = meta.get(key)
    if not isinstance(value, list):
        raise MissingRequiredField(key)
    return value


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _optional_str_list(value: Any) -> list[str] | None:
    if not isinstance(value, list):
        return None
    return [v for v in value if isinstance(v, str)]


def _parse_settings(value: Any) -> list[PluginSetting] | None:
    """All-or-nothing: one malformed descriptor drops the whole list."""
    if not isinstance(value, list):
        return None
    settings: list[PluginSetting] = []
    for item in value:
        if not isinstance(item, dict):
            return None
        key, label, kind = item.get("key"), item.get("label"), item.get("type")
        if not all(isinstance(v, str) for v in (key, label, kind)) or "default" not in item:
            return None
        options = None
        if item.get("options") is not None:
            raw_options = item["options"]
            if not isinstance(raw_options, list) or not all(
                isinstance(o, dict) and isinstance(o.get("label"), str) and "value" in o
                for o in raw_options
            ):
                return None
            options = [SettingOption(label=o["label"], value=o["value"]) for o in raw_options]
        settings.append(
            PluginSetting(
                key=key,
                label=label,
                type=kind,
                default=item["default"],
                options=options,
                description=_optional_str(item.get("description")),
            )
        )
    return settings


def author_name(value: Any) -> str | None:
    """npm ``author`` may be a string or a {name, email, url} object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict) and isinstance(value.get("name"), str):
        return value["name"]
    return None


# ── Parsing ─────────────────────────────────────────────────────────


def parse(package_json: Any, namespace: str = DEFAULT_NAMESPACE) -> EtoolsMetadata:
    """Validate a package.json object and return its ETP metadata.

    Raises a ValidationError subclass at the first failure.
    """
    if not isinstance(package_json, dict):
        raise JsonParseError("package.json must be a JSON object")

    meta = package_json.get("etools")
    if not isinstance(meta, dict):
        raise MissingEtoolsField()

    name = package_json.get("name")
    if not isinstance(name, str) or not name.startswith(namespace + "/"):
        raise InvalidPackageName(name if isinstance(name, str) else "", namespace)

    plugin_id = _required_str(meta, "id")
    display_name = _required_str(meta, "displayName")
    category_raw = _required_str(meta, "category")
    permissions = _required_list(meta, "permissions")
    triggers = _required_list(meta, "triggers")
    category = PluginCategory.parse(category_raw)

    description = _optional_str(meta.get("description")) or _optional_str(
        package_json.get("description")
    )

    return EtoolsMetadata(
        id=plugin_id,
        display_name=display_name,
        category=category,
        permissions=[p for p in permissions if isinstance(p, str)],
        triggers=[t for t in map(PluginTrigger.from_value, triggers) if t is not None],
        description=description,
        icon=_optional_str(meta.get("icon")),
        homepage=_optional_str(meta.get("homepage")),
        screenshots=_optional_str_list(meta.get("screenshots")),
        settings=_parse_settings(meta.get("settings")),
        namespace=namespace,
    )


def parse_text(text: str, namespace: str = DEFAULT_NAMESPACE) -> EtoolsMetadata:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise JsonParseError(str(e)) from e
    return parse(data, namespace)


def parse_package(package_json: Any, namespace: str = DEFAULT_NAMESPACE) -> ValidatedPackage:
    """Validate and lift the package-level fields (version, main, author) alongside."""
    metadata = parse(package_json, namespace)
    version = package_json.get("version")
    main = package_json.get("main")
    keywords = package_json.get("keywords")
    return ValidatedPackage(
        name=package_json["name"],
        version=version if isinstance(version, str) and version else "0.0.0",
        metadata=metadata,
        description=metadata.description or "",
        author=author_name(package_json.get("author")),
        main=main if isinstance(main, str) and main else DEFAULT_ENTRY_POINT,
        keywords=[k for k in keywords if isinstance(k, str)] if isinstance(keywords, list) else [],
    )


def parse_package_text(text: str, namespace: str = DEFAULT_NAMESPACE) -> ValidatedPackage:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise JsonParseError(str(e)) from e
    return parse_package(data, namespace)


def check_identity(package: ValidatedPackage) -> None:
    """The plugin installs under its package name, so ``etools.id`` must equal that name's last segment."""
    expected = package.name.rsplit("/", 1)[-1]
    if package.metadata.id != expected:
        raise IdMismatch(package.metadata.id, package.name)
