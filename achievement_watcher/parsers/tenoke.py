"""
Tenoke user_stats.ini parser.

The file looks like INI but values may be inline brace objects::

    [STATS]
    "kills" = 12

    [ACHIEVEMENTS]
    "ACH_WIN" = {unlocked = true, time = 1700000000}
    "ACH_KILL_50" = {unlocked = false, progress = 12, max_progress = 50}

so it is read with a line scanner instead of configparser.
"""

import re
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from achievement_watcher.models import Snapshot
from achievement_watcher.parsers.common import (
    ParseContext,
    coerce_bool,
    first_present,
    make_state,
    safe_parser,
    to_number,
)

_SECTION = re.compile(r"^\[([^\]]+)\]$")
_ENTRY = re.compile(r'^"?([^"=]+?)"?\s*=\s*(.+)$')
_BRACE_FIELD = re.compile(r'"?(\w+)"?\s*=\s*("[^"]*"|[^,}]+)')


def _scalar(raw: str) -> Any:
    text = raw.strip().rstrip(",").strip()
    if len(text) >= 2 and text[0] == text[-1] == '"':
        return text[1:-1]
    lowered = text.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    number = to_number(text)
    return number if number is not None else text


def parse_value(raw: str) -> Any:
    """A scalar, or a dict for ``{key = value, ...}`` objects"""
    text = raw.strip()
    if text.startswith("{"):
        body = text[1:text.rfind("}")] if "}" in text else text[1:]
        return {key: _scalar(value) for key, value in _BRACE_FIELD.findall(body)}
    return _scalar(text)


def scan_user_stats(text: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Split user_stats.ini text into its stats and achievements maps.

    Returns:
        (stats, achievements), both {key: scalar-or-dict}
    """
    stats: Dict[str, Any] = {}
    achievements: Dict[str, Any] = {}
    current = None
    for line in text.lstrip("\ufeff").splitlines():
        line = line.strip()
        if not line or line.startswith((";", "#", "//")):
            continue
        section = _SECTION.match(line)
        if section:
            name = section.group(1).strip().upper()
            current = stats if name == "STATS" else achievements if name == "ACHIEVEMENTS" else None
            continue
        if current is None:
            continue
        entry = _ENTRY.match(line)
        if entry:
            current[entry.group(1).strip()] = parse_value(entry.group(2))
    return stats, achievements


def interpret_user_stats(text: str, ctx: Optional[ParseContext] = None) -> Snapshot:
    ctx = ctx or ParseContext()
    _, achievements = scan_user_stats(text)
    out: Snapshot = {}
    for key, value in achievements.items():
        if isinstance(value, dict):
            state = make_state(
                earned=coerce_bool(first_present(value, "unlocked", "achieved", "earned")),
                earned_time=first_present(value, "time", "unlock_time", "UnlockTime"),
                progress=first_present(value, "progress", "CurProgress"),
                max_progress=first_present(value, "max_progress", "maxProgress", "MaxProgress", "max"),
            )
        else:
            state = make_state(earned=coerce_bool(value))
        out[ctx.canonical(key)] = state
    return out


@safe_parser
def parse_tenoke_save(path, fallback: Optional[Snapshot], ctx: ParseContext) -> Snapshot:
    text = Path(path).read_text(encoding="utf-8", errors="replace")
    return interpret_user_stats(text, ctx)
