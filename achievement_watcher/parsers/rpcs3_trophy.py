"""
RPCS3 (PS3) trophy set parser.

A trophy set directory holds ``TROPCONF.SFM`` (XML-ish trophy list) and
``TROPUSR.DAT`` (binary per-user progress, big-endian). TROPUSR.DAT has no
documented layout: its header is scanned for a "type 6" table descriptor
and the id/flag field offsets are picked by scoring how often the record
id matches its index.
"""

import html
import re
import struct
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from achievement_watcher.constants import TROPHY_GRADES
from achievement_watcher.logger import setup_logger
from achievement_watcher.models import SchemaEntry, Snapshot
from achievement_watcher.parsers.common import ParseContext, ParseError, make_state, safe_parser

logger = setup_logger()

TROPCONF_NAME = "TROPCONF.SFM"
TROPUSR_NAME = "TROPUSR.DAT"

HEADER_SCAN_BYTES = 0x600
DESCRIPTOR_TYPE = 6
ENTRY_SIZE_RANGE = (0x10, 0x400)
COUNT_RANGE = (1, 5000)
RECORD_PADDING = 0x10
ID_OFFSETS = (0x10, 0x00, 0x08, 0x14, 0x0C)
DEFAULT_SCORE_WINDOW = 96

_TROPHY_RE = re.compile(r"<trophy\b([^>]*)>(.*?)</trophy>", re.IGNORECASE | re.DOTALL)
_ICON_RE = re.compile(r"^trop(\d{3})\.png$", re.IGNORECASE)


def _attr(attrs: str, name: str) -> str:
    match = re.search(rf'\b{name}\s*=\s*"([^"]*)"', attrs, re.IGNORECASE)
    return match.group(1).strip() if match else ""


def _tag(fragment: str, tag: str) -> str:
    match = re.search(rf"<{tag}>(.*?)</{tag}>", fragment, re.IGNORECASE | re.DOTALL)
    return html.unescape(match.group(1).strip()) if match else ""


@dataclass
class TrophyDef:
    id: int
    ttype: str = ""
    hidden: str = ""
    name: str = ""
    detail: str = ""


@dataclass
class TropConf:
    title_name: str = ""
    title_detail: str = ""
    npcommid: str = ""
    trophies: List[TrophyDef] = field(default_factory=list)


@dataclass
class TropusrLayout:
    entry_size: int
    stride: int
    base_offset: int
    count_in_usr: int
    id_offset: int
    flag_offset: int
    descriptor_index: int


@dataclass
class TropusrResult:
    """Detected layout, trophy id -> unlocked, and whether the id check matched at all"""
    layout: TropusrLayout
    unlock_map: Dict[int, bool]
    confident: bool


@dataclass
class TrophySet:
    title: str
    conf: TropConf
    usr: TropusrResult
    icons: Dict[int, str] = field(default_factory=dict)
    fallback_icon: str = ""


def parse_tropconf(text: str) -> TropConf:
    """Regex scan of TROPCONF.SFM; trophies come back sorted by id"""
    trophies = []
    for match in _TROPHY_RE.finditer(text):
        attrs, body = match.group(1), match.group(2)
        trophy_id = _attr(attrs, "id")
        if not trophy_id.isdigit():
            continue
        trophies.append(TrophyDef(
            id=int(trophy_id),
            ttype=_attr(attrs, "ttype"),
            hidden=_attr(attrs, "hidden"),
            name=_tag(body, "name"),
            detail=_tag(body, "detail"),
        ))
    trophies.sort(key=lambda t: t.id)
    return TropConf(
        title_name=_tag(text, "title-name"),
        title_detail=_tag(text, "title-detail"),
        npcommid=_tag(text, "npcommid"),
        trophies=trophies,
    )


def _u32(data: bytes, offset: int) -> Optional[int]:
    if offset + 4 > len(data):
        return None
    return struct.unpack_from(">I", data, offset)[0]


def _descriptor_candidates(data: bytes):
    words = [_u32(data, off) for off in range(0, min(HEADER_SCAN_BYTES, len(data)), 4)]
    for i in range(len(words) - 5):
        if words[i] != DESCRIPTOR_TYPE:
            continue
        entry_size, count, base_offset = words[i + 1], words[i + 3], words[i + 5]
        if not entry_size or not ENTRY_SIZE_RANGE[0] <= entry_size <= ENTRY_SIZE_RANGE[1]:
            continue
        if not count or not COUNT_RANGE[0] <= count <= COUNT_RANGE[1]:
            continue
        if not base_offset or base_offset >= len(data):
            continue
        yield {
            "entry_size": entry_size,
            "count": count,
            "base_offset": base_offset,
            "stride": entry_size + RECORD_PADDING,
            "descriptor_index": i,
        }


def _score(data: bytes, candidate, want_count: Optional[int]):
    """Best (score, id offset, id matches) for one descriptor"""
    window = min(want_count, candidate["count"]) if want_count else min(DEFAULT_SCORE_WINDOW, candidate["count"])
    best = (-1, None, 0)
    for id_offset in ID_OFFSETS:
        id_match = bin_like = 0
        for index in range(window):
            id_pos = candidate["base_offset"] + index * candidate["stride"] + id_offset
            if id_pos + 8 > len(data):
                break
            if _u32(data, id_pos) == index:
                id_match += 1
            if _u32(data, id_pos + 4) in (0, 1):
                bin_like += 1
        score = id_match * 10 + bin_like
        if score > best[0]:
            best = (score, id_offset, id_match)
    return best


def parse_tropusr(data: bytes, trophy_count: Optional[int] = None) -> TropusrResult:
    """
    Locate the trophy state table in TROPUSR.DAT and read the unlock flags.

    Args:
        data: File contents
        trophy_count: Number of trophies in TROPCONF.SFM, bounds the scan

    Returns:
        TropusrResult; ``confident`` is False when no record id matched its index

    Raises:
        ParseError: no plausible descriptor in the header
    """
    chosen = None
    chosen_score = (-1, None, 0)
    for candidate in _descriptor_candidates(data):
        score = _score(data, candidate, trophy_count)
        if score[0] > chosen_score[0]:
            chosen, chosen_score = candidate, score
    if chosen is None or chosen_score[1] is None:
        raise ParseError("No valid type=6 descriptor found in TROPUSR.DAT header")

    _, id_offset, id_match = chosen_score
    confident = id_match > 0
    if not confident:
        logger.warning("TROPUSR.DAT: could not validate trophy id == index, using best-guess offsets")

    count = min(trophy_count, chosen["count"]) if trophy_count else chosen["count"]
    unlock_map = {}
    for index in range(count):
        id_pos = chosen["base_offset"] + index * chosen["stride"] + id_offset
        if id_pos + 8 > len(data):
            break
        unlock_map[_u32(data, id_pos)] = _u32(data, id_pos + 4) == 1

    layout = TropusrLayout(
        entry_size=chosen["entry_size"],
        stride=chosen["stride"],
        base_offset=chosen["base_offset"],
        count_in_usr=chosen["count"],
        id_offset=id_offset,
        flag_offset=id_offset + 4,
        descriptor_index=chosen["descriptor_index"],
    )
    return TropusrResult(layout=layout, unlock_map=unlock_map, confident=confident)


def _icon_index(trophy_dir: Path):
    icons, fallback = {}, ""
    for entry in trophy_dir.iterdir():
        if not entry.is_file():
            continue
        if entry.name.lower() == "icon0.png":
            fallback = entry.name
            continue
        match = _ICON_RE.match(entry.name)
        if match:
            icons[int(match.group(1))] = entry.name
    return icons, fallback


def parse_trophy_set_dir(trophy_dir) -> TrophySet:
    trophy_dir = Path(trophy_dir)
    conf_path = trophy_dir / TROPCONF_NAME
    usr_path = trophy_dir / TROPUSR_NAME
    if not conf_path.is_file():
        raise ParseError(f"Missing {TROPCONF_NAME}: {conf_path}")
    if not usr_path.is_file():
        raise ParseError(f"Missing {TROPUSR_NAME}: {usr_path}")

    conf = parse_tropconf(conf_path.read_text(encoding="utf-8", errors="replace"))
    usr = parse_tropusr(usr_path.read_bytes(), len(conf.trophies) or None)
    icons, fallback = _icon_index(trophy_dir)
    return TrophySet(
        title=conf.title_name or trophy_dir.name,
        conf=conf,
        usr=usr,
        icons=icons,
        fallback_icon=fallback,
    )


def grade_label(ttype: str) -> str:
    code = (ttype or "").upper()
    return TROPHY_GRADES.get(code, code.lower() or "unknown")


def is_hidden_flag(value) -> bool:
    return str(value or "").strip().lower() in ("yes", "true", "1")


def build_snapshot_from_trophy(trophy_set: TrophySet) -> Snapshot:
    """Snapshot keyed by decimal trophy id; TROPUSR.DAT carries no times"""
    return {
        str(t.id): make_state(earned=trophy_set.usr.unlock_map.get(t.id, False))
        for t in trophy_set.conf.trophies
    }


def build_schema_from_trophy(trophy_set: TrophySet) -> List[SchemaEntry]:
    entries = []
    for t in trophy_set.conf.trophies:
        name = str(t.id)
        icon = trophy_set.icons.get(t.id, trophy_set.fallback_icon)
        entries.append(SchemaEntry(
            name=name,
            display_name={"english": t.name or name},
            description={"english": t.detail},
            icon=icon,
            icon_gray=icon,
            hidden=1 if is_hidden_flag(t.hidden) else 0,
            trophy_type=grade_label(t.ttype),
            image_id=t.id,
        ))
    return entries


@safe_parser
def parse_rpcs3_save(path, fallback: Optional[Snapshot], ctx: ParseContext) -> Snapshot:
    """
    Parse an RPCS3 trophy set.

    ``path`` is the trophy directory or any file inside it. Trophies that
    become earned are stamped with the current time.
    """
    path = Path(path)
    trophy_dir = path if path.is_dir() else path.parent
    snapshot = build_snapshot_from_trophy(parse_trophy_set_dir(trophy_dir))

    now_ms = int(time.time() * 1000)
    previous = fallback or {}
    out: Snapshot = {}
    for key, state in snapshot.items():
        name = ctx.canonical(key)
        prev = previous.get(name)
        if state.earned and not (prev is not None and prev.earned):
            state = make_state(earned=True, earned_time=now_ms)
        out[name] = state
    return out
