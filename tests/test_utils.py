"""Tests for utils: safe_path, JSON helpers, package-name helpers, human_size."""

import json

import pytest

from etools.core.utils import human_size, package_name, read_json, safe_path, short_id, write_json


class TestSafePath:
    def test_resolves_nested(self, tmp_path):
        (tmp_path / "sub").mkdir()
        result = safe_path("sub/bar.txt", cwd=tmp_path)
        assert result == (tmp_path / "sub" / "bar.txt").resolve()

    def test_blocks_traversal(self, tmp_path):
        with pytest.raises(ValueError, match="traversal"):
            safe_path("../../etc/passwd", cwd=tmp_path)

    def test_blocks_absolute_outside(self, tmp_path):
        with pytest.raises(ValueError, match="traversal"):
            safe_path("/etc/passwd", cwd=tmp_path)

    def test_dot_dot_within_cwd(self, tmp_path):
        result = safe_path("sub/../foo.txt", cwd=tmp_path)
        assert result == (tmp_path / "foo.txt").resolve()


class TestJsonFiles:
    def test_write_creates_parents(self, tmp_path):
        path = tmp_path / "a" / "b.json"
        write_json(path, {"x": [1, 2]})
        assert read_json(path) == {"x": [1, 2]}
        assert [p.name for p in path.parent.iterdir()] == ["b.json"]

    def test_overwrite(self, tmp_path):
        path = tmp_path / "s.json"
        write_json(path, {"a": 1})
        write_json(path, {"b": 2})
        assert json.loads(path.read_text()) == {"b": 2}


class TestPackageNames:
    def test_short_id(self):
        assert short_id("@etools-plugin/devtools", "@etools-plugin") == "devtools"
        assert short_id("devtools", "@etools-plugin") == "devtools"
        assert short_id("@other/devtools", "@etools-plugin") == "@other/devtools"

    def test_package_name(self):
        assert package_name("devtools", "@etools-plugin") == "@etools-plugin/devtools"
        assert package_name("@scope/bar", "@etools-plugin") == "@scope/bar"


class TestHumanSize:
    def test_bytes(self):
        assert human_size(500) == "500B"

    def test_kilobytes(self):
        assert human_size(2048) == "2.0KB"
