"""Timestamps, JSON file helpers, path safety, package-name helpers."""

from __future__ import annotations

import json
import os
import tempfile
import time
from pathlib import Path
from typing import Any


def now_ms() -> int:
    """Current Unix time in milliseconds."""
    return int(time.time() * 1000)


def read_json(path: Path) -> Any:
    """Read and parse a JSON file. Raises OSError / json.JSONDecodeError."""
    return json.loads(path.read_text(encoding="utf-8"))


def write_json(path: Path, data: Any) -> None:
    """Write *data* as pretty JSON, replacing the file in one rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(data, indent=2) + "\n")
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def safe_path(path: str, cwd: Path | None = None) -> Path:
    """Resolve *path* relative to *cwd*, raising ValueError on traversal."""
    base = (cwd or Path.cwd()).resolve()
    resolved = (base / path).resolve()
    if base not in resolved.parents and resolved != base:
        raise ValueError(f"Path traversal detected: {path!r} escapes {base}")
    return resolved


def short_id(plugin_id: str, namespace: str) -> str:
    """'@etools-plugin/devtools' -> 'devtools'; short ids pass through."""
    prefix = namespace.rstrip("/") + "/"
    return plugin_id[len(prefix):] if plugin_id.startswith(prefix) else plugin_id


def package_name(plugin_id: str, namespace: str) -> str:
    """'devtools' -> '@etools-plugin/devtools'; full names pass through."""
    if plugin_id.startswith("@"):
        return plugin_id
    return f"{namespace.rstrip('/')}/{plugin_id}"


def human_size(size: int) -> str:
    """Format bytes to human readable."""
    for unit in ("B", "KB", "MB", "GB"):
        if abs(size) < 1024:
            return f"{size:.1f}{unit}" if unit != "B" else f"{size}{unit}"
        size /= 1024  # type: ignore
    return f"{size:.1f}TB"
