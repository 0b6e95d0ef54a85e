"""
stats.bin parser.

Layout (little-endian): int32 record count, then 24-byte records::

    0x00  uint32  CRC32 of the achievement API name
    0x08  int32   unlock time (epoch seconds)
    0x14  int32   achieved flag (0/1; any other value marks a non-achievement stat)
"""

import struct
from pathlib import Path
from typing import Dict, Optional

from achievement_watcher.logger import setup_logger
from achievement_watcher.models import AchievementState, Snapshot
from achievement_watcher.parsers.common import ParseContext, ParseError, make_state, safe_parser

logger = setup_logger()

HEADER_SIZE = 4
RECORD_SIZE = 24


def read_stats_records(data: bytes) -> Dict[str, AchievementState]:
    """
    Decode stats.bin bytes into {crc hex: state}.

    Raises:
        ParseError: header count does not match the number of records
    """
    if len(data) < HEADER_SIZE:
        raise ParseError("stats.bin shorter than its header")
    (expected,) = struct.unpack_from("<i", data, 0)
    body = data[HEADER_SIZE:]
    chunk_count = -(-len(body) // RECORD_SIZE)
    if chunk_count != expected:
        raise ParseError(f"stats.bin declares {expected} records, found {chunk_count}")

    records = {}
    for offset in range(0, len(body) - RECORD_SIZE + 1, RECORD_SIZE):
        crc = format(int.from_bytes(body[offset:offset + 4], "little"), "08x")
        (unlock_time,) = struct.unpack_from("<i", body, offset + 8)
        (achieved,) = struct.unpack_from("<i", body, offset + 20)
        if achieved in (0, 1):
            records[crc] = make_state(earned=achieved == 1, earned_time=unlock_time)
    return records


@safe_parser
def parse_stats_bin(path, fallback: Optional[Snapshot], ctx: ParseContext) -> Snapshot:
    """
    Parse a stats.bin file, resolving CRC keys through the game schema.

    Args:
        path: File path
        fallback: Previous snapshot (merge base)
        ctx: Per-game parse context

    Returns:
        Snapshot keyed by canonical name; unresolved CRCs stay as hex keys
    """
    records = read_stats_records(Path(path).read_bytes())
    crc_map = ctx.crc_map
    out: Snapshot = {}
    unresolved = []
    for crc, state in records.items():
        name = crc_map.get(crc)
        if name is None:
            unresolved.append(crc)
            name = crc
        out[name] = state
    if unresolved and crc_map:
        logger.warning(f"stats.bin: {len(unresolved)} CRC(s) not in schema for {path}: {', '.join(unresolved[:5])}")
    return out
