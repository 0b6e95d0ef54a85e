"""
Tests for the persisted snapshot cache.
"""

import asyncio
import json
import os

from achievement_watcher.models import AchievementState
from achievement_watcher.snapshot_cache import SnapshotCache


class TestSnapshotCache:
    """Test snapshot persistence"""

    def test_round_trip_and_format(self, tmp_path):
        """Snapshots are stored as pretty-printed JSON without empty progress fields"""
        cache = SnapshotCache(tmp_path)
        snapshot = {
            "A": AchievementState(earned=True, earned_time=1700000000000),
            "B": AchievementState(earned=False, earned_time=0, progress=3, max_progress=10),
        }
        asyncio.run(cache.save("My Game", snapshot))

        text = (tmp_path / "My Game.json").read_text()
        assert "\n  " in text
        assert json.loads(text) == {
            "A": {"earned": True, "earned_time": 1700000000000},
            "B": {"earned": False, "earned_time": 0, "progress": 3, "max_progress": 10},
        }
        assert asyncio.run(cache.load("My Game")) == snapshot

    def test_missing_and_corrupt(self, tmp_path):
        """Missing or corrupt caches load as empty"""
        cache = SnapshotCache(tmp_path)
        assert asyncio.run(cache.load("none")) == {}
        (tmp_path / "bad.json").write_text("{")
        assert asyncio.run(cache.load("bad")) == {}

    def test_tolerant_load(self, tmp_path):
        """Loosely typed caches from other tools are accepted"""
        (tmp_path / "old.json").write_text(json.dumps({"A": {"earned": 1, "earned_time": "1700000000000"}}))
        assert asyncio.run(SnapshotCache(tmp_path).load("old")) == {
            "A": AchievementState(earned=True, earned_time=1700000000000),
        }

    def test_names_are_sanitized(self, tmp_path):
        """Config names become safe file names"""
        cache = SnapshotCache(tmp_path)
        assert cache.path_for('Game: "Deluxe"?').name == "Game Deluxe.json"
        assert cache.path_for("CON").name == "_CON.json"


class TestFileMeta:
    """Test the source file fingerprint sidecar"""

    def test_unchanged_detection(self, tmp_path):
        """A recorded file is unchanged until its size or mtime moves"""
        cache = SnapshotCache(tmp_path / "cache")
        source = tmp_path / "achievements.json"
        source.write_text("[]")

        async def scenario():
            assert await cache.source_unchanged("g", source) is False
            await cache.update_file_meta("g", source)
            assert await cache.source_unchanged("g", source) is True
            source.write_text("[1]")
            return await cache.source_unchanged("g", source)

        assert asyncio.run(scenario()) is False
        assert (tmp_path / "cache" / "g_filemeta.json").is_file()

    def test_vanished_source(self, tmp_path):
        """Missing sources have no fingerprint"""
        cache = SnapshotCache(tmp_path)
        assert asyncio.run(cache.update_file_meta("g", tmp_path / "gone.json")) is None


class TestRenameDelete:
    """Test cache moves along with config changes"""

    def test_rename(self, tmp_path):
        """Snapshot and sidecar move together"""
        cache = SnapshotCache(tmp_path)
        source = tmp_path / "save.json"
        source.write_text("[]")

        async def scenario():
            await cache.save("old", {"A": AchievementState(earned=True, earned_time=1)})
            await cache.update_file_meta("old", source)
            await cache.rename("old", "new")
            return await cache.load("new"), await cache.get_file_meta("new", source)

        snapshot, meta = asyncio.run(scenario())
        assert snapshot["A"].earned is True
        assert meta is not None and meta.size == os.path.getsize(source)
        assert not (tmp_path / "old.json").exists()
        assert not (tmp_path / "old_filemeta.json").exists()

    def test_delete(self, tmp_path):
        """Both files are removed; deleting twice is harmless"""
        cache = SnapshotCache(tmp_path)

        async def scenario():
            await cache.save("g", {})
            await cache.delete("g")
            await cache.delete("g")

        asyncio.run(scenario())
        assert not (tmp_path / "g.json").exists()
