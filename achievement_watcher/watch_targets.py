"""
Watch target resolution.

Turns a game config into the priority-ordered list of save files that may
hold its achievement state, plus the directories to observe. Resolution
is repeated on every evaluation so a target never stays pinned to a file
that has since disappeared.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from achievement_watcher.constants import (
    PLATFORM_LUMAPLAY,
    PLATFORM_RPCS3,
    PLATFORM_SHADPS4,
    PLATFORM_STEAM_OFFICIAL,
    PLATFORM_XENIA,
)
from achievement_watcher.models import GameConfig
from achievement_watcher.parsers import parser_for
from achievement_watcher.parsers.steam_kv import pick_latest_user_bin


def _emulator_candidates(save_path: Path, appid: str) -> List[Path]:
    """JSON, then INI, then stats.bin locations under an emulator save root"""
    candidates = [
        save_path / "achievements.json",
        save_path / appid / "achievements.json",
        save_path / "steam_settings" / appid / "achievements.json",
        save_path / "remote" / appid / "achievements.json",
        save_path / "achievements.ini",
        save_path / appid / "achievements.ini",
        save_path / "steam_settings" / appid / "achievements.ini",
        save_path / "SteamData" / "user_stats.ini",
        save_path / "user_stats.ini",
        save_path / appid / "SteamData" / "user_stats.ini",
        save_path / "Stats" / "achievements.ini",
        save_path / appid / "Stats" / "achievements.ini",
        save_path / "UniverseLANData" / "Achievements.ini",
        save_path / "stats.bin",
        save_path / appid / "stats.bin",
        save_path / "steam_settings" / appid / "stats.bin",
    ]
    # Path("x") / "" == Path("x"), so an empty appid just repeats the root entries
    return list(dict.fromkeys(candidates))


def resolve_gpd_path(config: GameConfig) -> Optional[Path]:
    if config.gpd_path and Path(config.gpd_path).is_file():
        return Path(config.gpd_path)
    if not config.save_path:
        return None
    base = Path(config.save_path)
    if config.appid and (base / f"{config.appid}.gpd").is_file():
        return base / f"{config.appid}.gpd"
    if base.is_dir():
        for entry in sorted(base.iterdir()):
            if entry.is_file() and entry.suffix.lower() == ".gpd":
                return entry
    return base / f"{config.appid}.gpd" if config.appid else None


def resolve_trophy_dir(config: GameConfig) -> Optional[Path]:
    """trophy_path when it exists, else save_path"""
    direct = Path(config.trophy_path) if config.trophy_path else None
    if direct and direct.is_dir():
        return direct
    if config.save_path:
        return Path(config.save_path)
    return direct


def _find_case_insensitive(directory: Path, name: str) -> Path:
    if directory.is_dir():
        for entry in directory.iterdir():
            if entry.name.lower() == name.lower():
                return entry
    return directory / name


@dataclass
class WatchTarget:
    """A game config and its candidate save files, highest priority first"""
    config: GameConfig
    candidates: List[Path] = field(default_factory=list)
    roots: List[Tuple[Path, bool]] = field(default_factory=list)

    @property
    def uses_registry(self) -> bool:
        return self.config.platform == PLATFORM_LUMAPLAY

    def refresh(self):
        """Rebuild candidates (latest user stats file, GPD lookup) from disk"""
        self.candidates, self.roots = build_candidates(self.config)

    def resolve(self) -> Optional[Path]:
        """First existing candidate, re-checked on each call"""
        self.refresh()
        for candidate in self.candidates:
            if candidate.is_file():
                return candidate
        return None

    def is_relevant(self, path) -> bool:
        """A file event that may change this game's achievement state"""
        path = Path(path)
        if parser_for(path, self.config.platform) is None:
            return False
        if path in self.candidates:
            return True
        for root, recursive in self.roots:
            if path.parent == root or (recursive and root in path.parents):
                return self._appid_matches(path)
        return False

    def _appid_matches(self, path: Path) -> bool:
        if self.config.platform != PLATFORM_STEAM_OFFICIAL or not self.config.appid:
            return True
        return path.name.lower().endswith(f"_{self.config.appid.lower()}.bin")


def build_candidates(config: GameConfig) -> Tuple[List[Path], List[Tuple[Path, bool]]]:
    """
    Candidate files and (directory, recursive) observation roots for a config.
    """
    platform = config.platform
    save_path = Path(config.save_path) if config.save_path else None

    if platform == PLATFORM_LUMAPLAY:
        return [], []

    if platform == PLATFORM_XENIA:
        gpd = resolve_gpd_path(config)
        candidates = [gpd] if gpd else []
        root = gpd.parent if gpd else save_path
        return candidates, [(root, False)] if root else []

    if platform == PLATFORM_RPCS3:
        trophy_dir = resolve_trophy_dir(config)
        if trophy_dir is None:
            return [], []
        return [_find_case_insensitive(trophy_dir, "TROPUSR.DAT")], [(trophy_dir, False)]

    if platform == PLATFORM_SHADPS4:
        trophy_dir = Path(config.trophy_path) if config.trophy_path else save_path
        if trophy_dir is None:
            return [], []
        xml_dir = trophy_dir / "Xml"
        return [_find_case_insensitive(xml_dir, "TROP.XML")], [(xml_dir, False)]

    if save_path is None:
        return [], []

    if platform == PLATFORM_STEAM_OFFICIAL:
        latest = pick_latest_user_bin(save_path, config.appid) if config.appid else None
        return ([latest] if latest else []), [(save_path, False)]

    return _emulator_candidates(save_path, config.appid or ""), [(save_path, True)]


def build_watch_target(config: GameConfig) -> WatchTarget:
    target = WatchTarget(config=config)
    target.refresh()
    return target
