"""Package installer: validate, stage and materialize plugin archives.

Packages are zip files or npm-style gzip tarballs (files under a single
``package/`` directory). Validation and extraction never touch the live
plugin tree; ``install_plugin`` swaps a staged tree into place.
"""

from __future__ import annotations

import io
import json
import os
import shutil
import tarfile
import uuid
import zipfile
import zlib
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Union

import structlog

from etools.core.errors import (
    ArchiveCorrupt,
    EntryPointMissing,
    IoFailure,
    JsonParseError,
    ManifestInvalid,
    MissingManifest,
    ValidationError,
)
from etools.core.utils import safe_path

from . import metadata as etp
from .models import (
    ExtractedFile,
    ExtractionResult,
    PackageValidation,
    PluginManifest,
    ValidationIssue,
)

if TYPE_CHECKING:
    from etools.core.config import Config

logger = structlog.get_logger(__name__)

PackageSource = Union[str, Path, bytes]

KNOWN_PERMISSIONS = frozenset(
    {
        "read:clipboard",
        "write:clipboard",
        "read:files",
        "write:files",
        "network:request",
        "shell:execute",
        "show:notification",
        "settings:access",
    }
)
DANGEROUS_PERMISSIONS = frozenset({"shell:execute", "write:files"})

MANIFEST_NAME = "package.json"


# ── Archive reading ─────────────────────────────────────────────────


def _normalize(name: str) -> str | None:
    """Archive member name -> clean relative posix path ('' / None for unusable names)."""
    parts = [p for p in PurePosixPath(name.replace("\\", "/")).parts if p not in ("", ".")]
    if not parts or parts[0] == "/":
        return None
    return "/".join(parts)


def _read_bytes(source: PackageSource) -> bytes:
    if isinstance(source, (bytes, bytearray)):
        return bytes(source)
    path = Path(source)
    try:
        return path.read_bytes()
    except OSError as e:
        raise IoFailure(f"cannot read package {path}: {e}") from e


def _read_archive(data: bytes) -> dict[str, bytes]:
    """Load every regular file of a zip or tar(.gz) archive into memory."""
    files: dict[str, bytes] = {}
    buf = io.BytesIO(data)
    if zipfile.is_zipfile(buf):
        try:
            with zipfile.ZipFile(buf) as zf:
                for info in zf.infolist():
                    if info.is_dir():
                        continue
                    name = _normalize(info.filename)
                    if name:
                        files[name] = zf.read(info)
        except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, ValueError, zlib.error) as e:
            raise ArchiveCorrupt(f"corrupt zip archive: {e}") from e
        return files

    buf.seek(0)
    try:
        with tarfile.open(fileobj=buf, mode="r:*") as tf:
            for member in tf.getmembers():
                if not member.isfile():
                    if not member.isdir():
                        logger.warning("skipping non-regular archive member", member=member.name)
                    continue
                name = _normalize(member.name)
                extracted = tf.extractfile(member)
                if name and extracted is not None:
                    files[name] = extracted.read()
    except (tarfile.TarError, OSError, EOFError, zlib.error) as e:
        raise ArchiveCorrupt(f"not a valid zip or tar archive: {e}") from e
    return files


def _strip_root(files: dict[str, bytes]) -> dict[str, bytes]:
    """Drop a single shared top-level directory (npm tarballs use 'package/')."""
    if MANIFEST_NAME in files or not files:
        return files
    roots = {name.split("/", 1)[0] for name in files}
    if len(roots) == 1 and all("/" in name for name in files):
        return {name.split("/", 1)[1]: content for name, content in files.items()}
    return files


def _manifest_from(validated: etp.ValidatedPackage) -> PluginManifest:
    meta = validated.metadata
    return PluginManifest(
        id=meta.id,
        name=meta.display_name,
        version=validated.version,
        description=validated.description,
        author=validated.author,
        permissions=list(meta.permissions),
        entry=validated.main,
        triggers=list(meta.triggers),
    )


# ── Installer ───────────────────────────────────────────────────────


class PackageInstaller:
    def __init__(self, config: Config):
        self.config = config

    @property
    def staging_root(self) -> Path:
        return self.config.staging_dir

    def _load(self, source: PackageSource) -> dict[str, bytes]:
        files = _read_archive(_read_bytes(source))
        if not files:
            raise ArchiveCorrupt("archive is empty")
        return _strip_root(files)

    def _inspect(
        self, files: dict[str, bytes]
    ) -> tuple[PackageValidation, etp.ValidatedPackage | ValidationError]:
        """Validation report plus the parsed package, or the error that stopped parsing."""
        result = PackageValidation(is_valid=False)

        raw = files.get(MANIFEST_NAME)
        try:
            if raw is None:
                raise MissingManifest(MANIFEST_NAME)
            try:
                data = json.loads(raw.decode("utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise JsonParseError(str(e)) from e
            validated = etp.parse_package(data, self.config.namespace)
            etp.check_identity(validated)
        except ValidationError as e:
            result.errors.append(ValidationIssue(e.code, e.message, e.field))
            return result, e

        meta = validated.metadata
        result.manifest = _manifest_from(validated)

        entry = _normalize(validated.main)
        if not entry or entry not in files:
            result.errors.append(
                ValidationIssue(
                    EntryPointMissing.code, f"entry point not found: {validated.main}", "main"
                )
            )

        for permission in meta.permissions:
            if permission not in KNOWN_PERMISSIONS:
                result.warnings.append(
                    ValidationIssue(
                        "UNKNOWN_PERMISSION", f"unknown permission: {permission}", "permissions"
                    )
                )
            elif permission in DANGEROUS_PERMISSIONS:
                result.warnings.append(
                    ValidationIssue(
                        "DANGEROUS_PERMISSION",
                        f"plugin requests a dangerous permission: {permission}",
                        "permissions",
                    )
                )
        if not meta.triggers:
            result.warnings.append(
                ValidationIssue("NO_TRIGGERS", "plugin declares no triggers", "triggers")
            )

        result.is_valid = not result.errors
        return result, validated

    def validate_package(self, source: PackageSource) -> PackageValidation:
        """Inspect a package without installing it.

        Unreadable sources raise IoFailure; everything else is reported in
        the returned errors/warnings.
        """
        try:
            files = self._load(source)
        except ArchiveCorrupt as e:
            return PackageValidation(
                is_valid=False, errors=[ValidationIssue(ArchiveCorrupt.code, str(e))]
            )
        validation, _ = self._inspect(files)
        logger.debug(
            "validated package",
            is_valid=validation.is_valid,
            errors=len(validation.errors),
            warnings=len(validation.warnings),
        )
        return validation

    def extract_package(self, source: PackageSource) -> ExtractionResult:
        """Unpack a valid package into a private staging directory."""
        files = self._load(source)
        validation, validated = self._inspect(files)
        if isinstance(validated, ValidationError):
            raise ManifestInvalid(validated) from validated
        if not validation.is_valid:
            raise EntryPointMissing(validation.errors[0].message)

        dest = self.staging_root / f"{validated.metadata.id}-{uuid.uuid4().hex[:8]}"
        extracted: list[ExtractedFile] = []
        try:
            dest.mkdir(parents=True, exist_ok=False)
            dirs: set[str] = set()
            for name, content in sorted(files.items()):
                try:
                    target = safe_path(name, cwd=dest)
                except ValueError as e:
                    raise ArchiveCorrupt(str(e)) from e
                for parent in PurePosixPath(name).parents:
                    key = str(parent)
                    if key != "." and key not in dirs:
                        dirs.add(key)
                        extracted.append(ExtractedFile(key, 0, "directory"))
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(content)
                extracted.append(ExtractedFile(name, len(content), "file"))
        except ArchiveCorrupt:
            shutil.rmtree(dest, ignore_errors=True)
            raise
        except OSError as e:
            shutil.rmtree(dest, ignore_errors=True)
            raise IoFailure(f"failed to extract package: {e}") from e

        logger.info("extracted package", plugin_id=validated.metadata.id, path=str(dest))
        return ExtractionResult(path=str(dest), manifest=validation.manifest, files=extracted)

    def install_plugin(self, staged_path: str | Path, plugin_id: str) -> Path:
        """Replace the live directory for *plugin_id* with the staged tree, in full."""
        staged = Path(staged_path)
        if not staged.is_dir():
            raise IoFailure(f"staged package not found: {staged}")
        if not plugin_id or "/" in plugin_id or "\\" in plugin_id or plugin_id in (".", ".."):
            raise IoFailure(f"invalid plugin id: {plugin_id!r}")

        modules = self.config.modules_dir
        target = modules / plugin_id
        incoming = modules / f".{plugin_id}.incoming-{uuid.uuid4().hex[:8]}"
        retired = modules / f".{plugin_id}.retired-{uuid.uuid4().hex[:8]}"
        try:
            modules.mkdir(parents=True, exist_ok=True)
            shutil.copytree(staged, incoming, symlinks=False)
            if target.exists():
                os.replace(target, retired)
            os.replace(incoming, target)
        except OSError as e:
            shutil.rmtree(incoming, ignore_errors=True)
            if retired.exists() and not target.exists():
                os.replace(retired, target)
            raise IoFailure(f"failed to install {plugin_id}: {e}") from e
        shutil.rmtree(retired, ignore_errors=True)
        logger.info("installed plugin files", plugin_id=plugin_id, path=str(target))
        return target

    def cleanup(self, staged_path: str | Path) -> None:
        """Remove a staging directory created by extract_package."""
        staged = Path(staged_path).resolve()
        if self.staging_root.resolve() in staged.parents:
            shutil.rmtree(staged, ignore_errors=True)
