"""Configuration: env, paths, registry, timeouts."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigError

ENV_PREFIX = "ETOOLS_"

# settings.json key -> Config attribute
_SETTINGS_KEYS = {
    "pluginsDir": "plugins_dir",
    "stagingDir": "staging_dir",
    "registryUrl": "registry_url",
    "namespace": "namespace",
    "discoveryKeyword": "discovery_keyword",
    "npmCommand": "npm_command",
    "listTtl": "list_ttl",
    "stateTtl": "state_ttl",
    "httpTimeout": "http_timeout",
    "subprocessTimeout": "subprocess_timeout",
    "maxWorkers": "max_workers",
    "logLevel": "log_level",
}

_PATH_FIELDS = ("data_dir", "plugins_dir", "staging_dir")
_FLOAT_FIELDS = ("list_ttl", "state_ttl", "http_timeout", "subprocess_timeout")
_INT_FIELDS = ("max_workers",)


@dataclass
class Config:
    data_dir: Path = field(default_factory=lambda: Path.home() / ".etools")
    plugins_dir: Path | None = None  # None = data_dir / "plugins"
    staging_dir: Path | None = None  # None = data_dir / "temp"
    registry_url: str = "https://registry.npmjs.org"
    namespace: str = "@etools-plugin"
    discovery_keyword: str = "etools-plugin"
    npm_command: str = "npm"
    list_ttl: float = 60.0
    state_ttl: float = 30.0
    http_timeout: float = 30.0
    subprocess_timeout: float = 120.0
    max_workers: int = 8
    log_level: str = "WARNING"
    verbose: bool = False

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir)
        if self.plugins_dir is None:
            self.plugins_dir = self.data_dir / "plugins"
        if self.staging_dir is None:
            self.staging_dir = self.data_dir / "temp"
        self.plugins_dir = Path(self.plugins_dir)
        self.staging_dir = Path(self.staging_dir)

    @property
    def modules_dir(self) -> Path:
        """Where the package manager materializes namespaced packages."""
        return self.plugins_dir / "node_modules" / self.namespace

    @property
    def dependency_manifest_path(self) -> Path:
        return self.plugins_dir / "package.json"

    @property
    def health_dir(self) -> Path:
        return self.data_dir / "health"

    @property
    def settings_path(self) -> Path:
        return self.data_dir / "settings.json"

    @property
    def search_url(self) -> str:
        return f"{self.registry_url.rstrip('/')}/-/v1/search"


def _coerce(name: str, value):
    try:
        if name in _PATH_FIELDS:
            return Path(value).expanduser()
        if name in _FLOAT_FIELDS:
            return float(value)
        if name in _INT_FIELDS:
            return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid value for {name}: {value!r}") from e
    return value


def _apply_settings(config: Config, path: Path) -> None:
    """Apply a single settings.json file to config."""
    if not path.exists():
        return
    try:
        data = json.loads(path.read_text())
    except (json.JSONDecodeError, OSError) as e:
        raise ConfigError(f"failed to read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a JSON object")
    for key, attr in _SETTINGS_KEYS.items():
        if key in data:
            setattr(config, attr, _coerce(attr, data[key]))


def _apply_env(config: Config) -> None:
    for attr in _SETTINGS_KEYS.values():
        if value := os.getenv(ENV_PREFIX + attr.upper()):
            setattr(config, attr, _coerce(attr, value))


def load_config(
    data_dir: Path | None = None,
    verbose: bool = False,
    **overrides,
) -> Config:
    """Load config with priority: CLI args > env > .env > settings.json > defaults."""
    load_dotenv()

    if data_dir is None and (env_dir := os.getenv(ENV_PREFIX + "DATA_DIR")):
        data_dir = Path(env_dir).expanduser()

    config = Config(data_dir=data_dir) if data_dir is not None else Config()
    config.verbose = verbose

    _apply_settings(config, config.settings_path)
    _apply_env(config)

    for attr, value in overrides.items():
        if value is None:
            continue
        if not hasattr(config, attr):
            raise ConfigError(f"unknown config option: {attr}")
        setattr(config, attr, _coerce(attr, value))

    if verbose and config.log_level == "WARNING":
        config.log_level = "DEBUG"

    return config
