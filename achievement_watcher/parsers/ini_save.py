"""
achievements.ini save parser (emulator INI families).

Type 2 sections carry plain values (``Achieved=1``, ``UnlockTime=...``).
Type 1 sections carry ``State``/``CurProgress``/``MaxProgress``/``Time``
fields that are usually little-endian uint32 hex strings.
"""

import configparser
from pathlib import Path
from typing import Dict, Optional

from achievement_watcher.logger import setup_logger
from achievement_watcher.models import AchievementState, Snapshot
from achievement_watcher.parsers.common import (
    ParseContext,
    ParseError,
    coerce_bool,
    first_present,
    hex_le32,
    make_state,
    safe_parser,
    to_number,
)

logger = setup_logger()

LEAF_KEYS = frozenset({
    "State", "Time", "CurProgress", "MaxProgress",
    "Achieved", "achieved", "UnlockTime", "timestamp",
})
TYPE2_MARKERS = frozenset({"Achieved", "achieved", "UnlockTime", "unlocktime"})
TYPE1_MARKERS = frozenset({
    "State", "Time", "CurProgress", "MaxProgress",
    "curProgress", "maxProgress", "Progress", "Max", "max",
})

TYPE2_EARNED_KEYS = ("Achieved", "achieved", "ACHIEVED", "Earned", "earned", "Unlocked", "unlocked")
TYPE2_TIME_KEYS = ("UnlockTime", "unlockTime", "timestamp", "earned_time", "earnedTime", "Time", "time")
PROGRESS_KEYS = ("CurProgress", "curProgress", "progress", "Progress")
MAX_PROGRESS_KEYS = ("MaxProgress", "maxProgress", "max_progress", "Max", "max")
TYPE1_TIME_KEYS = ("Time", "UnlockTime", "unlockTime", "timestamp", "time")

# configparser treats its default section specially; no real save uses this name
_NO_DEFAULT_SECTION = "\x00defaults"


def _is_steam_section(title: str) -> bool:
    return title == "Steam" or title.startswith("Steam.")


def read_ini_sections(text: str) -> Dict[str, Dict[str, str]]:
    """
    Parse INI text into {section title: {key: value}} for achievement leaf sections.

    Keys keep their case. Sections named Steam (or Steam.*) hold emulator
    settings and are skipped, as are sections without any achievement field.
    """
    parser = configparser.ConfigParser(
        strict=False,
        interpolation=None,
        default_section=_NO_DEFAULT_SECTION,
        allow_no_value=True,
    )
    parser.optionxform = str
    try:
        parser.read_string(text.lstrip("\ufeff"))
    except configparser.Error as e:
        raise ParseError(f"malformed INI: {e}") from e

    sections = {}
    for title in parser.sections():
        if _is_steam_section(title):
            continue
        values = {key: (value or "").strip().strip('"') for key, value in parser.items(title)}
        if LEAF_KEYS.intersection(values):
            sections[title] = values
    return sections


def parse_type2_section(section: Dict[str, str]) -> AchievementState:
    earned = coerce_bool(first_present(section, *TYPE2_EARNED_KEYS))
    return make_state(
        earned=earned,
        earned_time=first_present(section, *TYPE2_TIME_KEYS),
        progress=first_present(section, *PROGRESS_KEYS),
        max_progress=first_present(section, *MAX_PROGRESS_KEYS),
    )


def _hex_or_number(raw) -> Optional[float]:
    if raw is None or raw == "":
        return None
    decoded = hex_le32(raw)
    return decoded if decoded is not None else to_number(raw)


def parse_type1_section(section: Dict[str, str]) -> AchievementState:
    state = hex_le32(section.get("State"))
    progress = _hex_or_number(first_present(section, *PROGRESS_KEYS))
    max_progress = _hex_or_number(first_present(section, *MAX_PROGRESS_KEYS))
    earned_time = _hex_or_number(first_present(section, *TYPE1_TIME_KEYS))

    achieved = str(first_present(section, "achieved", "Achieved") or "").strip() == "1"
    unlocked = coerce_bool(first_present(section, "Unlocked", "unlocked"))
    by_state = state is not None and state > 0
    by_progress = (
        progress is not None and max_progress is not None
        and max_progress > 0 and progress >= max_progress
    )
    return make_state(
        earned=achieved or unlocked or by_state or by_progress,
        earned_time=earned_time or 0,
        progress=progress,
        max_progress=max_progress,
    )


def parse_ini_section(section: Dict[str, str]) -> AchievementState:
    """Type 2 whenever any type-2 field is present, type 1 otherwise"""
    if TYPE2_MARKERS.intersection(section):
        return parse_type2_section(section)
    return parse_type1_section(section)


def interpret_ini_text(text: str, ctx: Optional[ParseContext] = None) -> Snapshot:
    ctx = ctx or ParseContext()
    return {
        ctx.canonical(title): parse_ini_section(section)
        for title, section in read_ini_sections(text).items()
    }


@safe_parser
def parse_ini_save(path, fallback: Optional[Snapshot], ctx: ParseContext) -> Snapshot:
    """
    Parse an achievements.ini save file.

    Args:
        path: File path
        fallback: Previous snapshot (merge base)
        ctx: Per-game parse context

    Returns:
        Snapshot keyed by canonical name
    """
    text = Path(path).read_text(encoding="utf-8", errors="replace")
    return interpret_ini_text(text, ctx)
