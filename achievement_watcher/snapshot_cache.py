"""
Persisted per-game snapshot cache.

One pretty-printed JSON file per game config
(``{name: {earned, earned_time, progress?, max_progress?}}``) plus a
``<name>_filemeta.json`` sidecar remembering the stat() fingerprint of each
source file at its last successful parse.
"""

import asyncio
import os
from pathlib import Path
from typing import Dict, Optional

import aiofiles
import msgspec

from achievement_watcher.config import get_cache_dir, sanitize_config_name
from achievement_watcher.logger import setup_logger
from achievement_watcher.models import (
    FileMeta,
    Snapshot,
    decode_json,
    encode_json,
    format_json,
    snapshot_from_raw,
)

logger = setup_logger()

FILEMETA_SUFFIX = "_filemeta.json"


class SnapshotCache:
    """
    Async JSON store for snapshots, keyed by game config name.

    Writes go to a temporary file that replaces the target, so a crash never
    leaves a truncated cache behind.
    """

    def __init__(self, cache_dir: Optional[Path] = None):
        self._cache_dir = Path(cache_dir) if cache_dir else None

    @property
    def cache_dir(self) -> Path:
        if self._cache_dir is None:
            self._cache_dir = get_cache_dir()
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        return self._cache_dir

    def path_for(self, name: str) -> Path:
        return self.cache_dir / f"{sanitize_config_name(name)}.json"

    def meta_path_for(self, name: str) -> Path:
        return self.cache_dir / f"{sanitize_config_name(name)}{FILEMETA_SUFFIX}"

    async def _read(self, path: Path):
        try:
            async with aiofiles.open(path, "rb") as f:
                data = await f.read()
        except FileNotFoundError:
            return None
        if not data.strip():
            return None
        try:
            return decode_json(data)
        except msgspec.DecodeError as e:
            logger.warning(f"Ignoring corrupt cache file {path}: {e}")
            return None

    async def _write(self, path: Path, obj):
        tmp = path.with_name(path.name + ".tmp")
        async with aiofiles.open(tmp, "wb") as f:
            await f.write(format_json(encode_json(obj)))
        await asyncio.to_thread(os.replace, tmp, path)

    async def load(self, name: str) -> Snapshot:
        """Cached snapshot for a game; empty when none was persisted yet"""
        return snapshot_from_raw(await self._read(self.path_for(name)))

    async def save(self, name: str, snapshot: Snapshot):
        await self._write(self.path_for(name), snapshot)
        logger.debug(f"Persisted snapshot for {name} ({len(snapshot)} entries)")

    async def load_file_meta(self, name: str) -> Dict[str, FileMeta]:
        raw = await self._read(self.meta_path_for(name))
        if not isinstance(raw, dict):
            return {}
        meta = {}
        for source, entry in raw.items():
            if isinstance(entry, dict) and isinstance(entry.get("mtime_ns"), int) and isinstance(entry.get("size"), int):
                meta[source] = FileMeta(mtime_ns=entry["mtime_ns"], size=entry["size"])
        return meta

    async def get_file_meta(self, name: str, source) -> Optional[FileMeta]:
        return (await self.load_file_meta(name)).get(str(source))

    async def update_file_meta(self, name: str, source) -> Optional[FileMeta]:
        """Record the current stat() of a source file; None when it vanished"""
        try:
            st = await asyncio.to_thread(os.stat, source)
        except OSError:
            return None
        meta = await self.load_file_meta(name)
        entry = FileMeta(mtime_ns=st.st_mtime_ns, size=st.st_size)
        meta[str(source)] = entry
        await self._write(self.meta_path_for(name), meta)
        return entry

    async def source_unchanged(self, name: str, source) -> bool:
        """The file still has the mtime and size recorded at its last parse"""
        recorded = await self.get_file_meta(name, source)
        if recorded is None:
            return False
        try:
            st = await asyncio.to_thread(os.stat, source)
        except OSError:
            return False
        return st.st_mtime_ns == recorded.mtime_ns and st.st_size == recorded.size

    async def rename(self, old_name: str, new_name: str):
        """Move the snapshot and its sidecar along with a renamed config"""
        for old, new in ((self.path_for(old_name), self.path_for(new_name)),
                         (self.meta_path_for(old_name), self.meta_path_for(new_name))):
            if old == new or not old.exists():
                continue
            await asyncio.to_thread(os.replace, old, new)
        logger.info(f"Renamed snapshot cache {old_name} -> {new_name}")

    async def delete(self, name: str):
        for path in (self.path_for(name), self.meta_path_for(name)):
            try:
                await asyncio.to_thread(path.unlink)
            except FileNotFoundError:
                continue
        logger.info(f"Deleted snapshot cache for {name}")
