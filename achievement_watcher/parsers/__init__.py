"""
Save-format parsers.

Each parser takes ``(source, fallback, ctx)`` and returns a Snapshot keyed
by canonical achievement name, returning ``fallback`` itself when the
source cannot be read.
"""

from pathlib import Path
from typing import Callable, Optional

from achievement_watcher.constants import (
    PLATFORM_RPCS3,
    PLATFORM_SHADPS4,
    PLATFORM_STEAM_OFFICIAL,
    PLATFORM_XENIA,
)
from achievement_watcher.models import Snapshot
from achievement_watcher.parsers.common import (
    ParseContext,
    ParseError,
    coerce_bool,
    hex_le32,
    merge_snapshot,
    normalize_epoch,
)
from achievement_watcher.parsers.ini_save import parse_ini_save
from achievement_watcher.parsers.json_save import parse_json_save
from achievement_watcher.parsers.lumaplay import parse_lumaplay_save
from achievement_watcher.parsers.rpcs3_trophy import parse_rpcs3_save
from achievement_watcher.parsers.shadps4_trophy import parse_ps4_save
from achievement_watcher.parsers.stats_bin import parse_stats_bin
from achievement_watcher.parsers.steam_kv import is_user_stats_file, parse_steam_user_stats
from achievement_watcher.parsers.tenoke import parse_tenoke_save
from achievement_watcher.parsers.xenia_gpd import parse_gpd_save

FILE_PARSERS = {
    "achievements.json": parse_json_save,
    "achievements.ini": parse_ini_save,
    "user_stats.ini": parse_tenoke_save,
    "stats.bin": parse_stats_bin,
}

# Relative to a save directory, highest priority first
SAVE_DIR_FILES = (
    "achievements.json",
    "Stats/achievements.ini",
    "achievements.ini",
    "user_stats.ini",
    "stats.bin",
)


def parser_for(path, platform: Optional[str] = None) -> Optional[Callable]:
    """
    Pick the parser for a source file.

    Args:
        path: Candidate file
        platform: Game config platform

    Returns:
        Parser callable, or None when the file is not a recognised source
    """
    name = Path(path).name.lower()
    if platform == PLATFORM_XENIA:
        return parse_gpd_save if name.endswith(".gpd") else None
    if platform == PLATFORM_RPCS3:
        return parse_rpcs3_save if name in ("tropusr.dat", "tropconf.sfm") else None
    if platform == PLATFORM_SHADPS4:
        return parse_ps4_save if name.startswith("trop") and name.endswith(".xml") else None
    if platform == PLATFORM_STEAM_OFFICIAL:
        return parse_steam_user_stats if is_user_stats_file(path) else None
    return FILE_PARSERS.get(name)


def parse_source(path, fallback: Optional[Snapshot] = None, ctx: Optional[ParseContext] = None) -> Snapshot:
    """Parse one source file with the parser matching its name and the game platform"""
    ctx = ctx or ParseContext()
    platform = ctx.config.platform if ctx.config else None
    parser = parser_for(path, platform)
    if parser is None:
        return fallback if fallback is not None else {}
    return parser(path, fallback, ctx)


def load_achievements_from_save_dir(save_dir, fallback: Optional[Snapshot] = None,
                                    ctx: Optional[ParseContext] = None) -> Snapshot:
    """
    Parse the highest-priority save file present in a directory.

    ``Stats/achievements.ini`` is read directly when ``save_dir`` itself is
    the Stats folder.
    """
    save_dir = Path(save_dir)
    for relative in SAVE_DIR_FILES:
        candidate = save_dir / relative
        if relative.startswith("Stats/") and save_dir.name.lower() == "stats":
            candidate = save_dir / Path(relative).name
        if candidate.is_file():
            return parse_source(candidate, fallback, ctx)
    return fallback if fallback is not None else {}


__all__ = [
    "ParseContext",
    "ParseError",
    "coerce_bool",
    "hex_le32",
    "load_achievements_from_save_dir",
    "merge_snapshot",
    "normalize_epoch",
    "parse_gpd_save",
    "parse_ini_save",
    "parse_json_save",
    "parse_lumaplay_save",
    "parse_ps4_save",
    "parse_rpcs3_save",
    "parse_source",
    "parse_stats_bin",
    "parse_steam_user_stats",
    "parse_tenoke_save",
    "parser_for",
]
