"""
Shared helpers for the save-format parsers.

Every parser produces a Snapshot keyed by canonical achievement name and
never raises to its caller: failures surface as the fallback snapshot
itself (same object), which the orchestrator reads as "nothing new yet".
"""

import functools
import re
import struct
from typing import Any, Callable, Dict, List, Optional

import msgspec

from achievement_watcher.canonical import NameIndex, build_crc_name_map, load_schema
from achievement_watcher.constants import EPOCH_SECONDS_THRESHOLD
from achievement_watcher.logger import setup_logger
from achievement_watcher.models import AchievementState, GameConfig, SchemaEntry, Snapshot, to_number

logger = setup_logger()

_NON_HEX = re.compile(r"[^0-9a-fA-F]")
_TRUE_STRINGS = frozenset({"1", "true", "yes"})


class ParseError(ValueError):
    """Raised inside a parser when the input does not match the expected shape"""


def normalize_epoch(value) -> int:
    """
    Normalize an epoch timestamp to milliseconds.

    Args:
        value: Seconds or milliseconds since the epoch (number or numeric string)

    Returns:
        Milliseconds, or 0 for unknown / non-positive / non-numeric input
    """
    number = to_number(value)
    if number is None or number <= 0:
        return 0
    if number < EPOCH_SECONDS_THRESHOLD:
        number *= 1000
    return int(number)


def coerce_bool(value) -> bool:
    """True, numeric 1 or one of "1"/"true"/"yes" (any case); everything else is False"""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return False


def hex_le32(raw) -> Optional[int]:
    """
    Decode the first 8 hex digits of a value as a little-endian uint32.

    A leading 0x is dropped before the hex digits are collected. Returns
    None when fewer than 8 hex digits remain.
    """
    text = str(raw if raw is not None else "").strip()
    if text[:2].lower() == "0x":
        text = text[2:]
    digits = _NON_HEX.sub("", text)
    if len(digits) < 8:
        return None
    return int.from_bytes(bytes.fromhex(digits[:8]), "little")


def first_present(mapping: Dict[str, Any], *keys):
    for key in keys:
        if key in mapping and mapping[key] is not None:
            return mapping[key]
    return None


def make_state(earned: bool, earned_time=0, progress=None, max_progress=None) -> AchievementState:
    return AchievementState(
        earned=bool(earned),
        earned_time=normalize_epoch(earned_time),
        progress=to_number(progress),
        max_progress=to_number(max_progress),
    )


def merge_snapshot(current: Snapshot, previous: Optional[Snapshot]) -> Snapshot:
    """
    Apply the previous snapshot as merge base onto a freshly parsed one.

    - an earned achievement never reads back as unearned
    - a known unlock time is kept when the new read reports none
    - achievements missing from the new read are carried over
    """
    if not previous:
        return dict(current)
    merged: Snapshot = {}
    for name, state in current.items():
        prev = previous.get(name)
        if prev is not None and prev.earned:
            if not state.earned:
                state = prev
            elif state.earned_time <= 0 < prev.earned_time:
                state = AchievementState(
                    earned=True,
                    earned_time=prev.earned_time,
                    progress=state.progress,
                    max_progress=state.max_progress,
                )
        merged[name] = state
    for name, prev in previous.items():
        if name not in merged:
            merged[name] = prev
    return merged


class ParseContext:
    """
    Per-game inputs shared by the parsers: config metadata, schema, name index.

    The schema is read lazily once per context.
    """

    def __init__(self, config: Optional[GameConfig] = None, schema: Optional[List[SchemaEntry]] = None,
                 language: str = "english"):
        self.config = config
        self.language = language
        self._schema = schema
        self._index = None
        self._crc_map = None

    @property
    def appid(self) -> str:
        return self.config.appid if self.config else ""

    @property
    def schema(self) -> List[SchemaEntry]:
        if self._schema is None:
            config_path = self.config.config_path if self.config else None
            self._schema = load_schema(config_path, self.appid or None)
        return self._schema

    @property
    def index(self) -> NameIndex:
        if self._index is None:
            self._index = NameIndex(self.schema)
        return self._index

    @property
    def crc_map(self) -> Dict[str, str]:
        if self._crc_map is None:
            self._crc_map = build_crc_name_map(self.schema)
        return self._crc_map

    def canonical(self, raw_key) -> str:
        return self.index.resolve(raw_key)


def safe_parser(func: Callable) -> Callable:
    """
    Decorator for parser entry points ``func(source, fallback, ctx=None)``.

    A successful parse is merged onto the fallback with merge_snapshot().
    Any exception is logged and turned into the fallback snapshot itself,
    or a new empty dict when no fallback was given.
    """
    @functools.wraps(func)
    def wrapper(source, fallback: Optional[Snapshot] = None, ctx: Optional[ParseContext] = None, **kwargs):
        try:
            current = func(source, fallback, ctx or ParseContext(), **kwargs)
        except (ParseError, OSError, ValueError, KeyError, IndexError, TypeError, ArithmeticError,
                RecursionError, struct.error, msgspec.DecodeError) as e:
            logger.debug(f"{func.__name__} could not parse {source}: {e}")
            return fallback if fallback is not None else {}
        return merge_snapshot(current, fallback)
    return wrapper
