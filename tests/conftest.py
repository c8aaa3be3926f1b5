"""Shared fixtures: isolated config, package.json builders, fake package manager, fake clock."""

import io
import json
import shutil
import tarfile
import zipfile

import pytest

from etools.core.config import Config
from etools.core.errors import SubprocessError

NAMESPACE = "@etools-plugin"


def make_manifest(plugin_id="foo", version="1.0.0", namespace=NAMESPACE, **etools):
    meta = {
        "id": plugin_id,
        "displayName": plugin_id.capitalize(),
        "category": "utilities",
        "permissions": [],
        "triggers": [f"{plugin_id}:"],
    }
    meta.update(etools)
    return {
        "name": f"{namespace}/{plugin_id}",
        "version": version,
        "description": f"The {plugin_id} plugin",
        "main": "index.js",
        "etools": meta,
    }


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakePackageManager:
    """Materializes package directories instead of running npm."""

    def __init__(self, config, failing=(), latest=None):
        self.config = config
        self.failing = set(failing)
        self.latest = latest or {}
        self.manifests = {}
        self.calls = []

    def _dir(self, name):
        return self.config.plugins_dir / "node_modules" / name

    def _check(self, op, name):
        self.calls.append((op, name))
        if name in self.failing:
            raise SubprocessError(f"npm {op} failed: E404 {name}", returncode=1, stderr=f"E404 {name}")

    def install(self, name):
        self._check("install", name)
        plugin_id = name.split("/", 1)[1]
        manifest = self.manifests.get(name) or make_manifest(plugin_id, namespace=name.split("/")[0])
        path = self._dir(name)
        path.mkdir(parents=True, exist_ok=True)
        (path / "package.json").write_text(json.dumps(manifest))
        (path / "index.js").write_text("module.exports = {}\n")

    def uninstall(self, name):
        self._check("uninstall", name)
        shutil.rmtree(self._dir(name), ignore_errors=True)

    def upgrade(self, name):
        self._check("upgrade", name)
        path = self._dir(name) / "package.json"
        data = json.loads(path.read_text())
        data["version"] = self.latest.get(name, data["version"])
        path.write_text(json.dumps(data))


def build_zip(files):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buf.getvalue()


def build_tgz(files, root="package"):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, content in files.items():
            data = content.encode() if isinstance(content, str) else content
            info = tarfile.TarInfo(f"{root}/{name}" if root else name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


@pytest.fixture
def config(tmp_path):
    return Config(data_dir=tmp_path / "data")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def package_manager(config):
    return FakePackageManager(config)


@pytest.fixture
def write_plugin(config):
    """Write an installed plugin directory directly into the plugin tree."""

    def _write(plugin_id, manifest=None, **etools):
        path = config.modules_dir / plugin_id
        path.mkdir(parents=True, exist_ok=True)
        data = manifest if manifest is not None else make_manifest(plugin_id, **etools)
        text = data if isinstance(data, str) else json.dumps(data)
        (path / "package.json").write_text(text)
        (path / "index.js").write_text("module.exports = {}\n")
        return path

    return _write
