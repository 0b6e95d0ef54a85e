"""
Shared fixtures. Per-user directories are redirected to a temporary home
before the package (and its ConfigManager singleton) is imported.
"""

import os
import struct
import tempfile

import pytest

_TEST_HOME = tempfile.mkdtemp(prefix="achievement-watcher-tests-")
os.environ["XDG_CONFIG_HOME"] = os.path.join(_TEST_HOME, "config")
os.environ["XDG_CACHE_HOME"] = os.path.join(_TEST_HOME, "cache")

from achievement_watcher.models import SchemaEntry  # noqa: E402
from achievement_watcher.parsers import ParseContext  # noqa: E402
from achievement_watcher.task_registry import reset_shutdown_state  # noqa: E402


@pytest.fixture(autouse=True)
def clean_task_registry():
    reset_shutdown_state()
    yield
    reset_shutdown_state()


@pytest.fixture
def make_ctx():
    """ParseContext over an in-memory schema built from achievement names"""
    def factory(*names, config=None):
        schema = [SchemaEntry(name=name, display_name={"english": name.title()}) for name in names]
        return ParseContext(config=config, schema=schema)
    return factory


@pytest.fixture
def pack_stats_bin():
    """stats.bin bytes for (crc int, unlock time, achieved) records"""
    def pack(records):
        body = b"".join(struct.pack("<IIIIIi", crc, 0, unlock, 0, 0, achieved) for crc, unlock, achieved in records)
        return struct.pack("<i", len(records)) + body
    return pack
