"""永続化ヘルパーとプロジェクト解決のテスト。"""

import json

import pytest

from src.managers.collaborators import DirectoryProjectResolver, ProjectResolver
from src.managers.persistence import atomic_write_json, file_lock, read_json


class TestAtomicWriteJson:
    """atomic_write_json / read_json のテスト。"""

    def test_write_and_read(self, temp_dir):
        path = temp_dir / "nested" / "state.json"

        atomic_write_json(path, {"name": "テスト", "count": 1})

        assert read_json(path) == {"name": "テスト", "count": 1}
        assert [p.name for p in path.parent.iterdir()] == ["state.json"]

    def test_read_missing(self, temp_dir):
        assert read_json(temp_dir / "missing.json") is None

    def test_read_corrupt(self, temp_dir):
        """壊れたファイルは JSONDecodeError になることをテスト。"""
        path = temp_dir / "broken.json"
        path.write_text("{", encoding="utf-8")

        with pytest.raises(json.JSONDecodeError):
            read_json(path)

    def test_failed_write_keeps_existing_file(self, temp_dir):
        """シリアライズに失敗しても既存ファイルが残ることをテスト。"""
        path = temp_dir / "state.json"
        atomic_write_json(path, {"ok": True})

        with pytest.raises(ValueError):
            circular: dict = {}
            circular["self"] = circular
            atomic_write_json(path, circular)

        assert read_json(path) == {"ok": True}

    def test_file_lock_creates_lock_file(self, temp_dir):
        target = temp_dir / "pids.json"
        with file_lock(target):
            atomic_write_json(target, [])
        assert (temp_dir / "pids.json.lock").exists()


class TestDirectoryProjectResolver:
    """DirectoryProjectResolver のテスト。"""

    def test_resolves_existing_directory(self, temp_dir):
        (temp_dir / "proj-a").mkdir()
        resolver = DirectoryProjectResolver(str(temp_dir))

        assert isinstance(resolver, ProjectResolver)
        assert resolver.get_project_path("proj-a") == str(temp_dir / "proj-a")
        assert resolver.get_project_path("missing") is None

    def test_rejects_path_traversal(self, temp_dir):
        """ベースディレクトリ外を指す ID を拒否することをテスト。"""
        (temp_dir / "base").mkdir()
        resolver = DirectoryProjectResolver(str(temp_dir / "base"))

        assert resolver.get_project_path("..") is None

    def test_register_override(self, temp_dir):
        """明示的に登録したパスが優先されることをテスト。"""
        resolver = DirectoryProjectResolver(str(temp_dir / "base"))
        resolver.register("external", str(temp_dir))

        assert resolver.get_project_path("external") == str(temp_dir)
