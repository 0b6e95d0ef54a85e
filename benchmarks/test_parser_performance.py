"""
Performance benchmarks for the save parsers and the diff engine.
Sizes are in the range of large real games (several hundred achievements).
"""
import struct

import pytest

from achievement_watcher.canonical import NameIndex, crc32_name, resolve_canonical_name
from achievement_watcher.diff_engine import diff
from achievement_watcher.models import AchievementState, SchemaEntry
from achievement_watcher.parsers import ParseContext
from achievement_watcher.parsers.ini_save import interpret_ini_text
from achievement_watcher.parsers.json_save import interpret_document
from achievement_watcher.parsers.stats_bin import read_stats_records

ACHIEVEMENT_COUNT = 500
NAMES = [f"ACH_{i:04d}" for i in range(ACHIEVEMENT_COUNT)]


@pytest.fixture
def ctx():
    return ParseContext(schema=[SchemaEntry(name=name) for name in NAMES])


def test_json_document_interpretation(benchmark, ctx):
    """Benchmark interpreting a native JSON save"""
    document = {
        name: {"earned": i % 2 == 0, "earned_time": 1700000000 + i}
        for i, name in enumerate(NAMES)
    }

    result = benchmark(interpret_document, document, ctx)
    assert len(result) == ACHIEVEMENT_COUNT


def test_ini_interpretation(benchmark, ctx):
    """Benchmark parsing an INI save with one section per achievement"""
    text = "\n".join(
        f"[{name}]\nAchieved=1\nUnlockTime={1700000000 + i}\n" for i, name in enumerate(NAMES)
    )

    result = benchmark(interpret_ini_text, text, ctx)
    assert len(result) == ACHIEVEMENT_COUNT


def test_stats_bin_records(benchmark):
    """Benchmark decoding stats.bin records"""
    records = b"".join(
        struct.pack("<IIIIIi", int(crc32_name(name), 16), 0, 1700000000 + i, 0, 0, 1)
        for i, name in enumerate(NAMES)
    )
    data = struct.pack("<i", ACHIEVEMENT_COUNT) + records

    result = benchmark(read_stats_records, data)
    assert len(result) == ACHIEVEMENT_COUNT


def test_canonical_name_resolution(benchmark):
    """Benchmark resolving loosely-cased keys against the schema"""
    index = NameIndex([SchemaEntry(name=name) for name in NAMES])
    keys = [name.lower() for name in NAMES]

    def resolve_all():
        return [resolve_canonical_name(key, index) for key in keys]

    result = benchmark(resolve_all)
    assert result == NAMES


def test_snapshot_diff(benchmark):
    """Benchmark diffing two large snapshots with a handful of changes"""
    previous = {name: AchievementState(earned=False, earned_time=0) for name in NAMES}
    current = dict(previous)
    for name in NAMES[:10]:
        current[name] = AchievementState(earned=True, earned_time=1700000000000)

    result = benchmark(diff, previous, current)
    assert len(result.earned_transitions) == 10
