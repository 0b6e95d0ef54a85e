"""
Game config files: one JSON document per tracked game in the configs dir.
"""

import asyncio
import os
from pathlib import Path
from typing import List, Optional

import aiofiles
import msgspec

from achievement_watcher.config import get_configs_dir, sanitize_config_name
from achievement_watcher.logger import setup_logger
from achievement_watcher.models import GameConfig, decode_json, encode_json, format_json

logger = setup_logger()


def config_file_for(name: str, configs_dir: Optional[Path] = None) -> Path:
    return Path(configs_dir or get_configs_dir()) / f"{sanitize_config_name(name)}.json"


async def _read_raw(path: Path):
    async with aiofiles.open(path, "rb") as f:
        data = await f.read()
    return decode_json(data)


async def load_game_configs(configs_dir: Optional[Path] = None) -> List[GameConfig]:
    """
    Read every game config in the configs directory.

    Files that are not valid JSON or lack a name are skipped with a warning.
    """
    configs_dir = Path(configs_dir or get_configs_dir())
    if not configs_dir.is_dir():
        return []

    configs = []
    for path in sorted(configs_dir.glob("*.json")):
        try:
            raw = await _read_raw(path)
        except (OSError, msgspec.DecodeError) as e:
            logger.warning(f"Skipping unreadable game config {path.name}: {e}")
            continue
        config = GameConfig.from_raw(raw)
        if config is None:
            logger.warning(f"Skipping game config without a name: {path.name}")
            continue
        configs.append(config)
    logger.info(f"Loaded {len(configs)} game config(s) from {configs_dir}")
    return configs


async def mark_platinum(config: GameConfig, configs_dir: Optional[Path] = None) -> bool:
    """
    Persist ``"platinum": true`` into the game's config file.

    Other keys in the file are left untouched. Returns False when the file
    could not be updated.
    """
    path = config_file_for(config.name, configs_dir)
    try:
        raw = await _read_raw(path)
    except FileNotFoundError:
        raw = None
    except (OSError, msgspec.DecodeError) as e:
        logger.error(f"Cannot update platinum flag for {config.name}: {e}")
        return False
    if not isinstance(raw, dict):
        raw = msgspec.to_builtins(config)
    raw["platinum"] = True

    tmp = path.with_name(path.name + ".tmp")
    try:
        async with aiofiles.open(tmp, "wb") as f:
            await f.write(format_json(encode_json(raw)))
        await asyncio.to_thread(os.replace, tmp, path)
    except OSError as e:
        logger.error(f"Cannot write platinum flag for {config.name}: {e}")
        return False
    config.platinum = True
    return True
