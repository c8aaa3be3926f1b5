"""Exception hierarchy shared by the validator, registry, installer and lifecycle layers."""

from __future__ import annotations

from typing import Any


class EtoolsError(Exception):
    """Base class for every error raised by etools."""


class ConfigError(EtoolsError):
    """settings.json or an environment override could not be applied."""


# ── Validation ──────────────────────────────────────────────────────


class ValidationError(EtoolsError):
    """A package manifest does not conform to the etools metadata protocol."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "field": self.field}


class MissingEtoolsField(ValidationError):
    code = "MISSING_ETOOLS_FIELD"

    def __init__(self):
        super().__init__("Missing required 'etools' field in package.json", field="etools")


class MissingRequiredField(ValidationError):
    code = "MISSING_REQUIRED_FIELD"

    def __init__(self, field: str):
        label = field if field == "name" else f"etools.{field}"
        super().__init__(f"Missing required field: {label}", field=field)


class InvalidCategory(ValidationError):
    code = "INVALID_CATEGORY"

    def __init__(self, category: str, allowed: list[str]):
        super().__init__(
            f"Invalid category '{category}', must be one of: {', '.join(allowed)}",
            field="category",
        )
        self.category = category


class InvalidPackageName(ValidationError):
    code = "INVALID_PACKAGE_NAME"

    def __init__(self, name: str, namespace: str):
        super().__init__(
            f"Invalid package name '{name}', must start with {namespace}/", field="name"
        )
        self.name = name


class IdMismatch(ValidationError):
    code = "ID_MISMATCH"

    def __init__(self, plugin_id: str, name: str):
        super().__init__(
            f"etools.id '{plugin_id}' does not match package name '{name}'", field="id"
        )


class MissingManifest(ValidationError):
    code = "MANIFEST_MISSING"

    def __init__(self, name: str = "package.json"):
        super().__init__(f"{name} not found in package", field=name)


class JsonParseError(ValidationError):
    code = "JSON_PARSE_ERROR"

    def __init__(self, detail: str):
        super().__init__(f"Failed to parse JSON: {detail}")


# ── Transport / process / filesystem ────────────────────────────────


class TransportError(EtoolsError):
    """Registry unreachable, timed out, or answered with a non-2xx status."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class SubprocessError(EtoolsError):
    """The package manager exited non-zero (or could not be started)."""

    def __init__(self, message: str, returncode: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class IoError(EtoolsError):
    """Filesystem read/write failure."""


class StoreError(IoError):
    """A state store file exists but cannot be read or parsed."""


class NotFoundError(EtoolsError):
    """Unknown plugin id or package name."""


class ProtectedPluginError(EtoolsError):
    """Attempt to uninstall a plugin the launcher depends on."""


# ── Package installer ───────────────────────────────────────────────


class InstallerError(EtoolsError):
    code = "INSTALLER_ERROR"


class ArchiveCorrupt(InstallerError):
    code = "ARCHIVE_CORRUPT"


class ManifestInvalid(InstallerError):
    code = "MANIFEST_INVALID"

    def __init__(self, error: ValidationError):
        super().__init__(f"Invalid plugin manifest: {error}")
        self.error = error


class EntryPointMissing(InstallerError):
    code = "ENTRY_POINT_MISSING"


class IoFailure(IoError, InstallerError):
    code = "IO_FAILURE"
