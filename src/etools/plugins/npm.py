"""Package-manager capability: install / uninstall / upgrade by package name."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Protocol

import structlog

from etools.core.errors import SubprocessError, TransportError

logger = structlog.get_logger(__name__)


class PackageManager(Protocol):
    def install(self, name: str) -> None: ...

    def uninstall(self, name: str) -> None: ...

    def upgrade(self, name: str) -> None: ...


class NpmPackageManager:
    """Runs the npm executable with the plugin root as working directory."""

    def __init__(self, cwd: Path, command: str = "npm", timeout: float = 120):
        self.cwd = Path(cwd)
        self.command = command
        self.timeout = timeout

    def _run(self, *args: str) -> str:
        cmd = [self.command, *args]
        self.cwd.mkdir(parents=True, exist_ok=True)
        logger.info("running package manager", command=" ".join(cmd), cwd=str(self.cwd))
        try:
            result = subprocess.run(
                cmd,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise TransportError(f"{' '.join(cmd)} timed out after {self.timeout}s") from e
        except (FileNotFoundError, PermissionError) as e:
            raise SubprocessError(f"failed to execute {self.command}: {e}") from e
        if result.returncode != 0:
            raise SubprocessError(
                f"{self.command} {args[0]} failed: {result.stderr}",
                returncode=result.returncode,
                stderr=result.stderr,
            )
        logger.debug("package manager finished", command=" ".join(cmd), stdout=result.stdout)
        return result.stdout

    def install(self, name: str) -> None:
        self._run("install", name)

    def uninstall(self, name: str) -> None:
        self._run("uninstall", name)

    def upgrade(self, name: str) -> None:
        self._run("install", f"{name}@latest")
