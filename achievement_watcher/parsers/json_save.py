"""
achievements.json save parser.

Three row shapes are understood and tried in order: the emulator-native one
(``achieved``/``UnlockTime``), Epic-style (``AchievementId``/``UnlockTime``)
and GOG-style (``unlock_time``/``unlocked``). The first shape that yields at
least one entry wins.
"""

import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import msgspec

from achievement_watcher.logger import setup_logger
from achievement_watcher.models import Snapshot, decode_json
from achievement_watcher.parsers.common import (
    ParseContext,
    ParseError,
    coerce_bool,
    first_present,
    make_state,
    normalize_epoch,
    safe_parser,
)

logger = setup_logger()

READ_ATTEMPTS = 6

EARNED_KEYS = ("achieved", "Achieved", "ACHIEVED", "earned")
PROGRESS_KEYS = ("CurProgress", "curProgress", "progress", "Progress")
MAX_PROGRESS_KEYS = ("MaxProgress", "maxProgress", "max_progress", "Max", "max")
TIME_KEYS = ("UnlockTime", "unlockTime", "timestamp", "earned_time", "earnedTime")
NATIVE_KEYS = frozenset(EARNED_KEYS + PROGRESS_KEYS + MAX_PROGRESS_KEYS + TIME_KEYS)

EPIC_FLAG_KEYS = ("achieved", "Achieved", "bIsUnlocked", "unlocked", "Unlocked")
GOG_NAME_KEYS = ("name", "achievement_key", "api_key", "id")


def read_json_with_retry(path: Path, attempts: int = READ_ATTEMPTS) -> Any:
    """
    Read and decode a JSON file that another process may still be writing.

    Args:
        path: JSON file
        attempts: Maximum number of reads

    Returns:
        The decoded document

    Raises:
        ParseError: when every attempt hit a locked, empty or truncated file
    """
    last_error = None
    for attempt in range(attempts):
        try:
            data = path.read_bytes()
            if not data.strip():
                raise ParseError("empty file")
            return decode_json(data)
        except FileNotFoundError:
            raise
        except (OSError, ParseError, msgspec.DecodeError) as e:
            last_error = e
            if attempt < attempts - 1:
                time.sleep(0.045 + 0.035 * attempt)
    raise ParseError(f"{path} unreadable after {attempts} attempts: {last_error}")


def _rows(parsed) -> List[Tuple[Optional[str], Dict[str, Any]]]:
    """(key-or-None, row) pairs for list and dict documents"""
    if isinstance(parsed, list):
        return [(None, row) for row in parsed if isinstance(row, dict)]
    if isinstance(parsed, dict):
        nested = parsed.get("achievements")
        if isinstance(nested, list):
            return _rows(nested)
        return [(str(key), row) for key, row in parsed.items() if isinstance(row, dict)]
    return []


def _parse_iso_or_epoch(value) -> int:
    if isinstance(value, str) and value.strip() and not value.strip().lstrip("-").isdigit():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return 0
        return normalize_epoch(parsed.timestamp() * 1000)
    return normalize_epoch(value)


class NativeShape:
    """Rows keyed by name (array) or by the dict key, with achieved/UnlockTime"""
    label = "native"

    @staticmethod
    def applies(rows) -> bool:
        return any(NATIVE_KEYS.intersection(row) for _, row in rows)

    @staticmethod
    def interpret(rows, ctx: ParseContext) -> Snapshot:
        out: Snapshot = {}
        for key, row in rows:
            if not NATIVE_KEYS.intersection(row):
                continue
            name = key if key is not None else first_present(row, "name", "Name", "id")
            if name is None or name == "":
                continue
            out[ctx.canonical(name)] = make_state(
                earned=coerce_bool(first_present(row, *EARNED_KEYS)),
                earned_time=first_present(row, *TIME_KEYS),
                progress=first_present(row, *PROGRESS_KEYS),
                max_progress=first_present(row, *MAX_PROGRESS_KEYS),
            )
        return out


class EpicShape:
    """AchievementId rows; a positive unlock time implies earned"""
    label = "epic"

    @staticmethod
    def applies(rows) -> bool:
        return any("AchievementId" in row for _, row in rows)

    @staticmethod
    def interpret(rows, ctx: ParseContext) -> Snapshot:
        out: Snapshot = {}
        for _, row in rows:
            name = row.get("AchievementId")
            if name is None or name == "":
                continue
            earned_time = _parse_iso_or_epoch(first_present(row, "UnlockTime", "unlockTime"))
            earned = earned_time > 0 or coerce_bool(first_present(row, *EPIC_FLAG_KEYS))
            out[ctx.canonical(name)] = make_state(
                earned=earned,
                earned_time=earned_time,
                progress=first_present(row, "Progress", "progress"),
                max_progress=first_present(row, "MaxProgress", "maxProgress"),
            )
        return out


class GogShape:
    """Flat rows with unlock_time + unlocked"""
    label = "gog"

    @staticmethod
    def applies(rows) -> bool:
        return any("unlock_time" in row or "unlocked" in row for _, row in rows)

    @staticmethod
    def interpret(rows, ctx: ParseContext) -> Snapshot:
        out: Snapshot = {}
        for key, row in rows:
            if "unlock_time" not in row and "unlocked" not in row:
                continue
            name = first_present(row, *GOG_NAME_KEYS) if key is None else key
            if name is None or name == "":
                continue
            earned_time = _parse_iso_or_epoch(row.get("unlock_time"))
            out[ctx.canonical(name)] = make_state(
                earned=coerce_bool(row.get("unlocked")),
                earned_time=earned_time,
            )
        return out


SHAPES: Tuple = (NativeShape, EpicShape, GogShape)


def interpret_document(parsed, ctx: Optional[ParseContext] = None, shapes: Iterable = SHAPES) -> Snapshot:
    """Run the shape interpreters in order and return the first non-empty result"""
    ctx = ctx or ParseContext()
    rows = _rows(parsed)
    for shape in shapes:
        if not shape.applies(rows):
            continue
        snapshot = shape.interpret(rows, ctx)
        if snapshot:
            logger.debug(f"achievements.json matched {shape.label} shape ({len(snapshot)} entries)")
            return snapshot
    return {}


@safe_parser
def parse_json_save(path, fallback: Optional[Snapshot], ctx: ParseContext) -> Snapshot:
    """
    Parse an achievements.json save file.

    Args:
        path: File path
        fallback: Previous snapshot (merge base)
        ctx: Per-game parse context

    Returns:
        Snapshot keyed by canonical name
    """
    parsed = read_json_with_retry(Path(path))
    if not isinstance(parsed, (list, dict)):
        raise ParseError(f"unexpected JSON document in {path}")
    return interpret_document(parsed, ctx)
