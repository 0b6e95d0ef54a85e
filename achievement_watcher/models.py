"""
msgspec-based data models for type-safe, high-performance serialization.

This module provides:
- The canonical achievement state record and the Snapshot alias built on it
- The read-only achievement schema entry and the game config record
- Notification payloads handed to the presentation layer
- Convenience functions for JSON encoding/decoding/pretty-printing

Files written by other tools (schemas, game configs, old caches) are loose
about types, so each model that is read from disk has a tolerant
``from_raw`` constructor next to the strict msgspec definition.
"""

import math
from typing import Optional, List, Dict, Union, Any

import msgspec

from .constants import PLATFORM_STEAM, VALID_PLATFORMS


# =============================================================================
# Global Encoders/Decoders
# =============================================================================

json_encoder = msgspec.json.Encoder()
json_decoder = msgspec.json.Decoder()


def encode_json(obj) -> bytes:
    """
    Encode object to JSON bytes using msgspec.

    Args:
        obj: Any msgspec.Struct or serializable object

    Returns:
        JSON as bytes
    """
    return json_encoder.encode(obj)


def decode_json(data: bytes, type=None):
    """
    Decode JSON bytes to object using msgspec.

    Args:
        data: JSON as bytes
        type: Optional msgspec.Struct type for validation

    Returns:
        Decoded object (validated if type provided)
    """
    if type:
        return msgspec.json.Decoder(type).decode(data)
    return json_decoder.decode(data)


def format_json(data: bytes, indent: int = 2) -> bytes:
    """
    Format JSON with indentation for pretty-printing.

    Args:
        data: JSON as bytes
        indent: Number of spaces per indentation level

    Returns:
        Formatted JSON as bytes
    """
    return msgspec.json.format(data, indent=indent)


def to_number(value) -> Optional[float]:
    """Finite number from an int/float/numeric or 0x-prefixed string, None otherwise"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            try:
                number = float(int(text, 0))
            except (ValueError, OverflowError):
                return None
        if not math.isfinite(number):
            return None
        return int(number) if number.is_integer() else number
    return None


# =============================================================================
# Achievement State / Snapshot
# =============================================================================

class AchievementState(msgspec.Struct, omit_defaults=True):
    """
    Canonical runtime record for one achievement of one game.

    earned_time is always milliseconds since the epoch, 0 when unknown.
    progress/max_progress only exist for incremental achievements.
    """
    earned: bool
    earned_time: int
    progress: Optional[float] = None
    max_progress: Optional[float] = None

    @classmethod
    def from_raw(cls, raw: Any) -> "AchievementState":
        """Build a state from a loosely-typed mapping (old caches, foreign tools)"""
        if isinstance(raw, AchievementState):
            return raw
        if not isinstance(raw, dict):
            return cls(earned=False, earned_time=0)
        earned = raw.get("earned") is True or raw.get("earned") == 1
        earned_time = to_number(raw.get("earned_time"))
        return cls(
            earned=earned,
            earned_time=int(earned_time) if earned_time and earned_time > 0 else 0,
            progress=to_number(raw.get("progress")),
            max_progress=to_number(raw.get("max_progress")),
        )


# Canonical achievement name -> state
Snapshot = Dict[str, AchievementState]


def snapshot_from_raw(raw: Any) -> Snapshot:
    if not isinstance(raw, dict):
        return {}
    return {str(name): AchievementState.from_raw(value) for name, value in raw.items()}


class DiffResult(msgspec.Struct):
    """Names that became earned / changed progress between two snapshots"""
    earned_transitions: List[str] = msgspec.field(default_factory=list)
    progress_transitions: List[str] = msgspec.field(default_factory=list)

    def __bool__(self):
        return bool(self.earned_transitions or self.progress_transitions)


class FileMeta(msgspec.Struct):
    """stat() fingerprint of a source file at its last successful parse"""
    mtime_ns: int
    size: int


# =============================================================================
# Schema
# =============================================================================

LocalizedText = Union[str, Dict[str, str]]


def _localized_from_raw(value) -> LocalizedText:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items() if isinstance(v, (str, int, float))}
    return ""


def _hidden_from_raw(value) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return 1 if value else 0
    return 1 if str(value or "").strip().lower() in ("1", "true", "yes") else 0


def _int_or_none(value) -> Optional[int]:
    number = to_number(value)
    return int(number) if number is not None else None


class SchemaEntry(
    msgspec.Struct,
    omit_defaults=True,
    rename={"display_name": "displayName", "statid": "statId", "image_id": "imageId", "trophy_type": "trophyType"},
):
    """
    One achievement of a game's static schema (achievements.json).

    Produced by an external generator or by the container schema helpers,
    never mutated by the watcher.
    """
    name: str
    display_name: LocalizedText = ""
    description: LocalizedText = ""
    icon: str = ""
    icon_gray: str = ""
    hidden: int = 0
    statid: Optional[int] = None
    bit: Optional[int] = None
    image_id: Optional[int] = None
    trophy_type: Optional[str] = None
    gamerscore: Optional[int] = None

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["SchemaEntry"]:
        if not isinstance(raw, dict):
            return None
        name = raw.get("name")
        if name is None or name == "":
            return None
        return cls(
            name=str(name),
            display_name=_localized_from_raw(raw.get("displayName")),
            description=_localized_from_raw(raw.get("description")),
            icon=str(raw.get("icon") or ""),
            icon_gray=str(raw.get("icon_gray") or raw.get("icongray") or ""),
            hidden=_hidden_from_raw(raw.get("hidden")),
            statid=_int_or_none(raw.get("statId")),
            bit=_int_or_none(raw.get("bit")),
            image_id=_int_or_none(raw.get("imageId")),
            trophy_type=raw.get("trophyType") if isinstance(raw.get("trophyType"), str) else None,
            gamerscore=_int_or_none(raw.get("gamerscore")),
        )


def schema_from_raw(raw: Any) -> List[SchemaEntry]:
    if not isinstance(raw, list):
        return []
    entries = (SchemaEntry.from_raw(item) for item in raw)
    return [entry for entry in entries if entry is not None]


# =============================================================================
# Game Config
# =============================================================================

def normalize_platform(value) -> str:
    raw = str(value or "").strip().lower()
    return raw if raw in VALID_PLATFORMS else PLATFORM_STEAM


class GameConfig(msgspec.Struct, omit_defaults=True):
    """
    Per-game config as written by the config layer (one JSON file per game).

    Unknown keys in the file are ignored.
    """
    name: str
    appid: str = ""
    platform: str = PLATFORM_STEAM
    config_path: Optional[str] = None
    save_path: Optional[str] = None
    gpd_path: Optional[str] = None
    trophy_path: Optional[str] = None
    user: Optional[str] = None
    platinum: bool = False

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["GameConfig"]:
        if not isinstance(raw, dict) or not raw.get("name"):
            return None

        def opt_str(key):
            value = raw.get(key)
            return str(value) if isinstance(value, (str, int)) and str(value) else None

        appid = raw.get("appid", raw.get("appId", ""))
        return cls(
            name=str(raw["name"]),
            appid=str(appid if appid is not None else "").strip(),
            platform=normalize_platform(raw.get("platform")),
            config_path=opt_str("config_path"),
            save_path=opt_str("save_path"),
            gpd_path=opt_str("gpd_path"),
            trophy_path=opt_str("trophy_path") or opt_str("trophy_dir"),
            user=opt_str("user"),
            platinum=raw.get("platinum") is True,
        )


# =============================================================================
# Notification payloads
# =============================================================================

class NotificationPayload(msgspec.Struct, omit_defaults=True, rename={"display_name": "displayName"}):
    """
    Payload handed to the notification presentation layer.

    icon_path is the resolved absolute icon file (or the generic fallback).
    """
    display_name: str
    description: str = ""
    icon: str = ""
    icon_gray: str = ""
    icon_path: str = ""
    config_path: Optional[str] = None
    preset: Optional[str] = None
    position: Optional[str] = None
    sound: Optional[str] = None
    progress: Optional[float] = None
    max_progress: Optional[float] = None
    kind: str = "earned"
    game: str = ""
    achievement: str = ""
