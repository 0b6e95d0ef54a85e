"""
Xbox 360 GPD (XDBF container) parser for Xenia saves.

Header (0x18 bytes): magic ``XDBF``, version, entry table length, entry
count, free table length, free count. Xenia writes the numeric fields in
either byte order, so both are decoded and the one with a sane version
wins. The entry table (0x12 bytes per entry: namespace u16, id u64,
offset u32, length u32) and free table (0x08 bytes per entry) follow;
entry offsets are relative to the end of both tables.
"""

import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from achievement_watcher.logger import setup_logger
from achievement_watcher.models import SchemaEntry, Snapshot
from achievement_watcher.parsers.common import ParseContext, ParseError, make_state, safe_parser

logger = setup_logger()

XDBF_MAGIC = b"XDBF"
XDBF_HEADER_SIZE = 0x18
ENTRY_SIZE = 0x12
FREE_ENTRY_SIZE = 0x08
ACHIEVEMENT_PAYLOAD_MIN = 0x1C

ACHIEVEMENT_NAMESPACE = 1
IMAGE_NAMESPACE = 2
STRING_NAMESPACE = 5
TITLE_STRING_ID = 0x8000

ACHIEVEMENT_EARNED_FLAG = 0x20000
ACHIEVEMENT_SHOW_UNACHIEVED_FLAG = 0x8

VERSION_MIN = 0x00010000
VERSION_MAX = 0x00020000

FILETIME_EPOCH_DIFF_MS = 11_644_473_600_000
DOTNET_EPOCH_DIFF_MS = 62_135_596_800_000
# 2000-01-01 .. 2100-01-01
PLAUSIBLE_MIN_MS = 946_684_800_000
PLAUSIBLE_MAX_MS = 4_102_444_800_000


@dataclass
class XdbfHeader:
    version: int
    entry_table_length: int
    entry_count: int
    free_table_length: int
    free_count: int
    endian: str

    @property
    def prefix(self) -> str:
        return ">" if self.endian == "be" else "<"


@dataclass
class XdbfEntry:
    namespace: int
    id: int
    offset: int
    length: int


@dataclass
class GpdAchievement:
    achievement_id: int
    image_id: int
    gamerscore: int
    flags: int
    unlock_raw: int
    name: str = ""
    locked_description: str = ""
    unlocked_description: str = ""

    @property
    def earned(self) -> bool:
        return bool(self.flags & ACHIEVEMENT_EARNED_FLAG)


@dataclass
class GpdFile:
    title: str
    achievements: List[GpdAchievement] = field(default_factory=list)
    images: Dict[int, bytes] = field(default_factory=dict)
    endian: str = "be"


def normalize_unlock_time(raw: Optional[int]) -> int:
    """
    Convert a GPD unlock timestamp to epoch milliseconds.

    The value is tried as Win32 FILETIME first, then as .NET ticks; the
    first interpretation that lands between 2000 and 2100 wins. When neither
    does, the FILETIME reading is returned.
    """
    if raw is None or raw <= 0:
        return 0
    filetime_ms = raw // 10_000 - FILETIME_EPOCH_DIFF_MS
    if PLAUSIBLE_MIN_MS < filetime_ms < PLAUSIBLE_MAX_MS:
        return filetime_ms
    dotnet_ms = raw // 10_000 - DOTNET_EPOCH_DIFF_MS
    if PLAUSIBLE_MIN_MS < dotnet_ms < PLAUSIBLE_MAX_MS:
        return dotnet_ms
    return filetime_ms


def _version_ok(version: int) -> bool:
    return VERSION_MIN <= version <= VERSION_MAX


def parse_header(data: bytes) -> Optional[XdbfHeader]:
    if len(data) < XDBF_HEADER_SIZE or data[:4] != XDBF_MAGIC:
        return None
    be = XdbfHeader(*struct.unpack_from(">5I", data, 4), endian="be")
    le = XdbfHeader(*struct.unpack_from("<5I", data, 4), endian="le")
    be_ok, le_ok = _version_ok(be.version), _version_ok(le.version)
    if be_ok and not le_ok:
        return be
    if le_ok and not be_ok:
        return le
    chosen = be if be_ok else le
    logger.warning(f"GPD header byte order ambiguous (be=0x{be.version:08x}, le=0x{le.version:08x}), using {chosen.endian}")
    return chosen


def resolve_table_sizes(header: XdbfHeader, file_size: int):
    """
    Work out (entry slots, free slots, data base offset).

    Table lengths are normally slot counts but some writers store byte
    lengths instead.
    """
    entry_slots = header.entry_table_length
    free_slots = header.free_table_length

    if header.endian == "be":
        base = XDBF_HEADER_SIZE + entry_slots * ENTRY_SIZE + free_slots * FREE_ENTRY_SIZE
        if base > file_size or header.entry_count > entry_slots:
            if header.entry_table_length % ENTRY_SIZE == 0:
                entry_slots = header.entry_table_length // ENTRY_SIZE
            if header.free_table_length % FREE_ENTRY_SIZE == 0:
                free_slots = header.free_table_length // FREE_ENTRY_SIZE
    else:
        entry_is_bytes = (
            header.entry_table_length % ENTRY_SIZE == 0
            and header.entry_count > 0
            and header.entry_table_length >= header.entry_count * ENTRY_SIZE
        )
        free_is_bytes = (
            header.free_table_length % FREE_ENTRY_SIZE == 0
            and header.free_count > 0
            and header.free_table_length >= header.free_count * FREE_ENTRY_SIZE
        )
        if entry_is_bytes:
            entry_slots = header.entry_table_length // ENTRY_SIZE
        if free_is_bytes:
            free_slots = header.free_table_length // FREE_ENTRY_SIZE

    base = XDBF_HEADER_SIZE + entry_slots * ENTRY_SIZE + free_slots * FREE_ENTRY_SIZE
    return entry_slots, free_slots, base


def parse_entries(data: bytes, header: XdbfHeader) -> List[XdbfEntry]:
    entry_slots, _, base = resolve_table_sizes(header, len(data))
    total = header.entry_count if 0 < header.entry_count <= entry_slots else entry_slots
    fmt = header.prefix + "HQII"

    entries = []
    for i in range(total):
        pos = XDBF_HEADER_SIZE + i * ENTRY_SIZE
        if pos + ENTRY_SIZE > len(data):
            break
        namespace, entry_id, offset, length = struct.unpack_from(fmt, data, pos)
        if not length:
            continue
        absolute = base + offset
        if absolute + length > len(data):
            continue
        entries.append(XdbfEntry(namespace, entry_id, absolute, length))
    return entries


def _read_utf16be_cstring(data: bytes, offset: int):
    """(text, next offset) for a null-terminated UTF-16BE string"""
    cursor = offset
    while cursor + 1 < len(data):
        if data[cursor] == 0 and data[cursor + 1] == 0:
            text = data[offset:cursor].decode("utf-16-be", errors="replace")
            return text.strip(), cursor + 2
        cursor += 2
    return data[offset:cursor].decode("utf-16-be", errors="replace").strip(), cursor


def decode_utf16be(data: bytes) -> str:
    if len(data) % 2:
        data = data[:-1]
    return data.decode("utf-16-be", errors="replace").rstrip("\x00").strip()


def parse_achievement_payload(payload: bytes, endian: str = "be") -> Optional[GpdAchievement]:
    if len(payload) < ACHIEVEMENT_PAYLOAD_MIN:
        return None
    prefix = ">" if endian == "be" else "<"
    struct_size, achievement_id, image_id, gamerscore, flags, unlock_raw = struct.unpack_from(
        prefix + "IIIiIq", payload, 0
    )
    start = struct_size if struct_size >= ACHIEVEMENT_PAYLOAD_MIN else ACHIEVEMENT_PAYLOAD_MIN
    name, cursor = _read_utf16be_cstring(payload, start)
    locked, cursor = _read_utf16be_cstring(payload, cursor)
    unlocked, _ = _read_utf16be_cstring(payload, cursor)
    return GpdAchievement(
        achievement_id=achievement_id,
        image_id=image_id,
        gamerscore=gamerscore,
        flags=flags,
        unlock_raw=unlock_raw,
        name=name,
        locked_description=locked,
        unlocked_description=unlocked,
    )


def parse_gpd_bytes(data: bytes, title_hint: str = "") -> GpdFile:
    """
    Parse a GPD file's bytes.

    Args:
        data: File contents
        title_hint: Title to use when the file has no title string

    Returns:
        GpdFile with achievements, images by id and the detected byte order

    Raises:
        ParseError: not an XDBF container
    """
    header = parse_header(data)
    if header is None:
        raise ParseError("not an XDBF container")

    gpd = GpdFile(title=title_hint, endian=header.endian)
    for entry in parse_entries(data, header):
        payload = data[entry.offset:entry.offset + entry.length]
        if entry.namespace == ACHIEVEMENT_NAMESPACE:
            achievement = parse_achievement_payload(payload, header.endian)
            if achievement:
                gpd.achievements.append(achievement)
        elif entry.namespace == IMAGE_NAMESPACE:
            gpd.images[entry.id] = bytes(payload)
        elif entry.namespace == STRING_NAMESPACE and entry.id == TITLE_STRING_ID:
            gpd.title = decode_utf16be(payload) or gpd.title
    return gpd


def parse_gpd_file(path) -> GpdFile:
    path = Path(path)
    return parse_gpd_bytes(path.read_bytes(), title_hint=path.stem)


def build_snapshot_from_gpd(gpd: GpdFile) -> Snapshot:
    """Snapshot keyed by the decimal achievement id"""
    return {
        str(a.achievement_id): make_state(
            earned=a.earned,
            earned_time=normalize_unlock_time(a.unlock_raw) if a.earned else 0,
        )
        for a in gpd.achievements
    }


def build_schema_from_gpd(gpd: GpdFile, prefer_locked: bool = False) -> List[SchemaEntry]:
    """
    Schema entries for a GPD title.

    Achievements without the show-unachieved flag are hidden. Icons point
    at ``img/<imageId>.png`` as written by export_gpd_images().
    """
    entries = []
    for a in gpd.achievements:
        name = str(a.achievement_id)
        hidden = 0 if a.flags & ACHIEVEMENT_SHOW_UNACHIEVED_FLAG else 1
        locked = a.locked_description.strip()
        unlocked = (a.unlocked_description or locked).strip()
        description = locked if prefer_locked and not hidden else unlocked or locked
        icon = f"img/{a.image_id}.png" if a.image_id in gpd.images else ""
        entries.append(SchemaEntry(
            name=name,
            display_name={"english": a.name or name},
            description={"english": description},
            icon=icon,
            icon_gray=icon,
            hidden=hidden,
            image_id=a.image_id,
            gamerscore=a.gamerscore,
        ))
    return entries


def export_gpd_images(gpd: GpdFile, config_path) -> int:
    """Write image-namespace PNG blobs to <config_path>/img/<id>.png; returns files written"""
    img_dir = Path(config_path) / "img"
    img_dir.mkdir(parents=True, exist_ok=True)
    written = 0
    for image_id, blob in gpd.images.items():
        target = img_dir / f"{image_id}.png"
        if target.exists() and target.stat().st_size == len(blob):
            continue
        target.write_bytes(blob)
        written += 1
    if written:
        logger.debug(f"Exported {written} GPD image(s) to {img_dir}")
    return written


@safe_parser
def parse_gpd_save(path, fallback: Optional[Snapshot], ctx: ParseContext) -> Snapshot:
    """
    Parse a Xenia GPD file into a snapshot.

    Args:
        path: GPD file path
        fallback: Previous snapshot (merge base)
        ctx: Per-game parse context

    Returns:
        Snapshot keyed by canonical name (the decimal achievement id when
        the schema was generated from the GPD itself)
    """
    snapshot = build_snapshot_from_gpd(parse_gpd_file(path))
    return {ctx.canonical(key): state for key, state in snapshot.items()}
