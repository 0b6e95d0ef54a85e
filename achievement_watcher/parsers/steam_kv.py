"""
Steam binary key-value reader and the official Steam stats parser.

Binary KV nodes are ``<type byte><cstring key><payload>``:

    0x00  nested object (children until 0x08)
    0x01  null-terminated UTF-8 string
    0x02  int32 LE
    0x03  float32 LE
    0x07  uint64 LE (kept as a decimal string)
    0x08  end of the current object

``UserGameStats_<user>_<appid>.bin`` stores one packed 32-bit value per stat
id; every achievement is one bit of one stat. ``UserGameStatsSchema_<appid>.bin``
maps stat id/bit pairs to achievement API names.
"""

import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from achievement_watcher.logger import setup_logger
from achievement_watcher.models import SchemaEntry, Snapshot
from achievement_watcher.parsers.common import ParseContext, ParseError, make_state, safe_parser

logger = setup_logger()

KV_OBJECT = 0x00
KV_STRING = 0x01
KV_INT32 = 0x02
KV_FLOAT32 = 0x03
KV_UINT64 = 0x07
KV_END = 0x08

TIMES_KEYS = ("AchievementTimes", "achievementTimes", "AchievementsTimes", "achievement_times")


def _read_cstring(data: bytes, offset: int) -> Tuple[str, int]:
    end = data.find(b"\x00", offset)
    if end < 0:
        end = len(data)
    return data[offset:end].decode("utf-8", errors="replace"), end + 1


def _add_key(obj: Dict[str, Any], key: str, value):
    """Repeated keys collect into a list"""
    if key in obj:
        current = obj[key]
        if isinstance(current, list):
            current.append(value)
        else:
            obj[key] = [current, value]
    else:
        obj[key] = value


def _parse_children(data: bytes, offset: int) -> Tuple[Dict[str, Any], int]:
    obj: Dict[str, Any] = {}
    while offset < len(data):
        node_type = data[offset]
        offset += 1
        if node_type == KV_END:
            return obj, offset
        key, offset = _read_cstring(data, offset)
        if node_type == KV_OBJECT:
            child, offset = _parse_children(data, offset)
            _add_key(obj, key, child)
        elif node_type == KV_STRING:
            value, offset = _read_cstring(data, offset)
            _add_key(obj, key, value)
        elif node_type == KV_INT32:
            _add_key(obj, key, struct.unpack_from("<i", data, offset)[0])
            offset += 4
        elif node_type == KV_FLOAT32:
            _add_key(obj, key, struct.unpack_from("<f", data, offset)[0])
            offset += 4
        elif node_type == KV_UINT64:
            _add_key(obj, key, str(struct.unpack_from("<Q", data, offset)[0]))
            offset += 8
        else:
            raise ParseError(f"Unsupported KV type 0x{node_type:02x} (key={key!r})")
    return obj, offset


def parse_kv_binary(data: bytes) -> Tuple[str, Dict[str, Any]]:
    """
    Parse a binary KV document.

    Args:
        data: File contents

    Returns:
        (root name, tree) where the tree is nested dicts/lists of scalars
    """
    if not data or len(data) < 2:
        raise ParseError("Empty/invalid KV file")
    if data[0] == KV_OBJECT:
        root_name, offset = _read_cstring(data, 1)
        tree, _ = _parse_children(data, offset)
        return root_name or "root", tree
    tree, _ = _parse_children(data, 0)
    return "root", tree


@dataclass
class UserStat:
    """Packed stat value plus per-bit unlock times"""
    data: int
    times: Dict[str, int] = field(default_factory=dict)


@dataclass
class SteamAchievementBit:
    """One achievement as located in the stats schema"""
    api: str
    stat_id: int
    bit: int
    display_name: Any = ""
    description: Any = ""
    icon: Optional[str] = None
    icon_gray: Optional[str] = None
    hidden: int = 0


def _children(node) -> List[Tuple[str, Any]]:
    """(key, value) pairs of a node, expanding duplicate-key lists"""
    pairs = []
    for key, value in node.items():
        if isinstance(value, list):
            pairs.extend((key, item) for item in value)
        else:
            pairs.append((key, value))
    return pairs


def _to_timestamp(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def extract_user_stats(tree: Dict[str, Any]) -> Dict[str, UserStat]:
    """Every object with an int ``data`` field is a stat keyed by its parent key"""
    stats: Dict[str, UserStat] = {}

    def walk(node, key):
        if not isinstance(node, dict):
            return
        value = node.get("data")
        if isinstance(value, int) and not isinstance(value, bool):
            times = {}
            times_node = next((node[k] for k in TIMES_KEYS if isinstance(node.get(k), dict)), None)
            for bit, raw in (times_node or {}).items():
                ts = _to_timestamp(raw)
                if ts is not None:
                    times[str(bit)] = ts
            stats[str(key)] = UserStat(data=value & 0xFFFFFFFF, times=times)
        for child_key, child in _children(node):
            walk(child, child_key)

    walk(tree, "root")
    return stats


def _localized(value) -> Dict[str, str]:
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items() if isinstance(v, (str, int, float))}
    if isinstance(value, str):
        return {"english": value}
    return {}


def _hidden(value) -> int:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return 1 if value else 0
    return 1 if str(value if value is not None else "").strip().lower() in ("1", "true", "yes") else 0


def _int_or_none(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _infer_stat_and_bit(path: List[str]) -> Tuple[Optional[int], Optional[int]]:
    """Last numeric path component is the bit, the numeric one before it the stat id"""
    for i in range(len(path) - 1, -1, -1):
        if path[i].isdigit():
            for j in range(i - 1, -1, -1):
                if path[j].isdigit():
                    return int(path[j]), int(path[i])
            return None, int(path[i])
    return None, None


def extract_schema_achievements(tree: Dict[str, Any]) -> List[SteamAchievementBit]:
    """
    Collect achievement stat/bit entries from a stats schema tree.

    Modern schemas nest ``bits`` objects under each stat id; older ones only
    carry ``name`` nodes whose numeric path components give stat id and bit.
    The first entry per API name wins.
    """
    results: List[SteamAchievementBit] = []

    def push(api, stat_id, bit, display, desc, icon, icon_gray, hidden):
        if not api or stat_id is None or bit is None:
            return
        results.append(SteamAchievementBit(
            api=str(api),
            stat_id=stat_id,
            bit=bit,
            display_name=_localized(display or api),
            description=_localized(desc or ""),
            icon=icon,
            icon_gray=icon_gray or icon,
            hidden=_hidden(hidden),
        ))

    def walk(node, path):
        if not isinstance(node, dict):
            return
        bits = node.get("bits")
        if isinstance(bits, dict):
            stat_id = _int_or_none(path[-1])
            for bit_key, bit_node in bits.items():
                bit_node = bit_node if isinstance(bit_node, dict) else {}
                display = bit_node.get("display") if isinstance(bit_node.get("display"), dict) else {}
                bit = _int_or_none(bit_node.get("bit", bit_key))
                name = bit_node.get("name") or bit_node.get("api") or bit_node.get("statname")
                push(
                    name or f"stat{stat_id}_bit{bit}",
                    stat_id,
                    bit,
                    display.get("name") or bit_node.get("displayName") or bit_node.get("name"),
                    display.get("desc") or bit_node.get("description") or "",
                    display.get("icon") or bit_node.get("icon"),
                    display.get("icon_gray") or display.get("icongray") or bit_node.get("icon_gray"),
                    display.get("hidden", bit_node.get("hidden", node.get("hidden"))),
                )

        name = node.get("name")
        if isinstance(name, str) and name:
            stat_id, bit = _infer_stat_and_bit(path)
            push(
                name,
                stat_id,
                bit,
                node.get("display") or node.get("DisplayName") or node.get("displayName") or name,
                node.get("desc") or node.get("description") or node.get("Desc") or "",
                node.get("icon") or node.get("Icon"),
                node.get("icon_gray") or node.get("iconGray"),
                node.get("hidden"),
            )

        for key, child in _children(node):
            walk(child, path + [str(key)])

    walk(tree, ["root"])
    seen = set()
    deduped = []
    for entry in results:
        if entry.api in seen:
            continue
        seen.add(entry.api)
        deduped.append(entry)
    return deduped


def schema_entries_from_bits(bits: List[SteamAchievementBit]) -> List[SchemaEntry]:
    return [
        SchemaEntry(
            name=b.api,
            display_name=b.display_name,
            description=b.description,
            icon=b.icon or "",
            icon_gray=b.icon_gray or "",
            hidden=b.hidden,
            statid=b.stat_id,
            bit=b.bit,
        )
        for b in bits
    ]


def build_snapshot_from_stats(bits: List[SteamAchievementBit], stats: Dict[str, UserStat]) -> Snapshot:
    """earned = (stat >> bit) & 1, time from the stat's per-bit time map"""
    snapshot: Snapshot = {}
    for entry in bits:
        stat = stats.get(str(entry.stat_id)) or UserStat(data=0)
        earned = (stat.data >> entry.bit) & 1 == 1
        earned_time = stat.times.get(str(entry.bit), 0) if earned else 0
        snapshot[entry.api] = make_state(earned=earned, earned_time=earned_time)
    return snapshot


def pick_latest_user_bin(stats_dir, appid) -> Optional[Path]:
    """Most recently modified UserGameStats_<user>_<appid>.bin in a directory"""
    stats_dir = Path(stats_dir)
    if not stats_dir.is_dir():
        return None
    suffix = f"_{str(appid).lower()}.bin"
    candidates = [
        p for p in stats_dir.iterdir()
        if p.is_file() and p.name.lower().startswith("usergamestats_") and p.name.lower().endswith(suffix)
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.stat().st_mtime)


def is_user_stats_file(path, appid=None) -> bool:
    name = Path(path).name.lower()
    if not (name.startswith("usergamestats_") and name.endswith(".bin")):
        return False
    return not appid or name.endswith(f"_{str(appid).lower()}.bin")


def _bits_from_schema(ctx: ParseContext) -> List[SteamAchievementBit]:
    return [
        SteamAchievementBit(api=e.name, stat_id=e.statid, bit=e.bit)
        for e in ctx.schema
        if e.statid is not None and e.bit is not None
    ]


def load_schema_bits(stats_dir, appid) -> List[SteamAchievementBit]:
    schema_bin = Path(stats_dir) / f"UserGameStatsSchema_{appid}.bin"
    if not schema_bin.is_file():
        return []
    _, tree = parse_kv_binary(schema_bin.read_bytes())
    return extract_schema_achievements(tree)


@safe_parser
def parse_steam_user_stats(path, fallback: Optional[Snapshot], ctx: ParseContext) -> Snapshot:
    """
    Parse an official Steam user stats file.

    ``path`` may be the stats file itself or the stats directory; in the
    latter case the newest user file for the game is used.
    """
    path = Path(path)
    appid = ctx.appid
    if path.is_dir() or not is_user_stats_file(path):
        stats_dir = path if path.is_dir() else path.parent
        path = pick_latest_user_bin(stats_dir, appid)
        if path is None:
            raise ParseError(f"No UserGameStats file for {appid} in {stats_dir}")

    bits = _bits_from_schema(ctx) or load_schema_bits(path.parent, appid)
    if not bits:
        raise ParseError(f"No stat/bit schema available for {appid}")
    _, tree = parse_kv_binary(path.read_bytes())
    return build_snapshot_from_stats(bits, extract_user_stats(tree))
