"""
shadPS4 (PS4) trophy set parser.

A trophy directory (``.../TrophyFiles/trophy00``) keeps one XML file per
language under ``Xml/``: ``TROP.XML`` and ``TROP_NN.XML``. Each lists
``<trophy id hidden unlockstate timestamp>`` elements with ``<name>`` and
``<detail>`` children.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional
from xml.etree.ElementTree import ParseError as XmlParseError

from defusedxml import ElementTree

from achievement_watcher.constants import DEFAULT_LANGUAGE, PS4_LANG_MAP
from achievement_watcher.logger import setup_logger
from achievement_watcher.models import AchievementState, SchemaEntry, Snapshot
from achievement_watcher.parsers.common import ParseContext, ParseError, make_state, normalize_epoch, safe_parser

logger = setup_logger()

XML_DIR = "Xml"
_LANG_FILE_RE = re.compile(r"^trop(_\d{2})?\.xml$", re.IGNORECASE)
_LANG_SUFFIX_RE = re.compile(r"trop_(\d{2})\.xml$", re.IGNORECASE)


@dataclass
class Ps4Trophy:
    id: str
    hidden: int = 0
    display_name: Dict[str, str] = field(default_factory=dict)
    description: Dict[str, str] = field(default_factory=dict)


@dataclass
class Ps4TrophySet:
    title: str
    npcommid: str
    xml_dir: Path
    trophies: List[Ps4Trophy] = field(default_factory=list)


def language_for_file(filename: str) -> str:
    name = Path(filename).name.lower()
    if name == "trop.xml":
        return DEFAULT_LANGUAGE
    match = _LANG_SUFFIX_RE.search(name)
    return PS4_LANG_MAP.get(match.group(1), "") if match else ""


def list_language_files(xml_dir: Path) -> List[Path]:
    if not xml_dir.is_dir():
        return []
    return sorted(p for p in xml_dir.iterdir() if p.is_file() and _LANG_FILE_RE.match(p.name))


def _load(path: Path):
    try:
        return ElementTree.parse(path).getroot()
    except XmlParseError as e:
        raise ParseError(f"Malformed trophy XML {path}: {e}") from e


def _child_text(element, tag: str) -> str:
    child = element.find(tag)
    return (child.text or "").strip() if child is not None else ""


def resolve_trophy_dir(path) -> Path:
    """Trophy directory for a path that is the directory, its Xml folder or a file in it"""
    path = Path(path)
    if path.is_file():
        path = path.parent
    if path.name.lower() == XML_DIR.lower():
        path = path.parent
    return path


def parse_ps4_trophy_set(trophy_dir) -> Ps4TrophySet:
    """
    Merge every language file of a trophy set.

    Languages missing a translation are filled with the English text.
    """
    trophy_dir = Path(trophy_dir)
    xml_dir = trophy_dir / XML_DIR
    files = list_language_files(xml_dir)
    if not files:
        raise ParseError(f"No TROP*.XML found in {xml_dir}")

    by_lower = {p.name.lower(): p for p in files}
    base = by_lower.get("trop_01.xml") or by_lower.get("trop.xml") or files[0]
    base_root = _load(base)
    npcommid = (base_root.findtext(".//npcommid") or "").strip()
    title = (base_root.findtext(".//title-name") or "").strip() or npcommid

    trophies: Dict[str, Ps4Trophy] = {}
    for path in files:
        lang = language_for_file(path.name) or DEFAULT_LANGUAGE
        root = base_root if path == base else _load(path)
        for element in root.iter("trophy"):
            trophy_id = element.get("id")
            if trophy_id is None:
                continue
            entry = trophies.setdefault(trophy_id, Ps4Trophy(id=trophy_id))
            if (element.get("hidden") or "no").lower() == "yes":
                entry.hidden = 1
            name = _child_text(element, "name")
            detail = _child_text(element, "detail")
            if name:
                entry.display_name[lang] = name
            if detail:
                entry.description[lang] = detail

    languages = set(PS4_LANG_MAP.values()) | {DEFAULT_LANGUAGE}
    for entry in trophies.values():
        english_name = entry.display_name.get(DEFAULT_LANGUAGE, "")
        english_desc = entry.description.get(DEFAULT_LANGUAGE, "")
        for lang in languages:
            entry.display_name.setdefault(lang, english_name)
            entry.description.setdefault(lang, english_desc)

    ordered = sorted(trophies.values(), key=lambda t: int(t.id) if t.id.isdigit() else 0)
    return Ps4TrophySet(title=title, npcommid=npcommid, xml_dir=xml_dir, trophies=ordered)


def build_schema_from_ps4(trophy_set: Ps4TrophySet) -> List[SchemaEntry]:
    entries = []
    for t in trophy_set.trophies:
        image_id = int(t.id) if t.id.isdigit() else 0
        icon = f"img/TROP{image_id:03d}.PNG"
        entries.append(SchemaEntry(
            name=t.id,
            display_name=dict(t.display_name),
            description=dict(t.description),
            icon=icon,
            icon_gray=icon,
            hidden=t.hidden,
            image_id=image_id,
        ))
    return entries


def build_snapshot_from_ps4(xml_dir: Path, previous: Optional[Snapshot] = None) -> Snapshot:
    """
    Unlock state across all language files, starting from the previous snapshot.

    A trophy is earned when ``unlockstate="true"`` or ``unlocked="yes"``.
    """
    snapshot: Snapshot = dict(previous or {})
    for path in list_language_files(Path(xml_dir)):
        for element in _load(path).iter("trophy"):
            trophy_id = element.get("id")
            if trophy_id is None:
                continue
            unlocked = (
                (element.get("unlockstate") or "").lower() == "true"
                or (element.get("unlocked") or "").lower() == "yes"
            )
            prev = snapshot.get(trophy_id)
            if unlocked:
                earned_time = normalize_epoch(element.get("timestamp")) or (prev.earned_time if prev else 0)
                snapshot[trophy_id] = AchievementState(
                    earned=True,
                    earned_time=earned_time,
                    progress=prev.progress if prev else None,
                    max_progress=prev.max_progress if prev else None,
                )
            elif prev is None:
                snapshot[trophy_id] = make_state(earned=False)
    return snapshot


@safe_parser
def parse_ps4_save(path, fallback: Optional[Snapshot], ctx: ParseContext) -> Snapshot:
    xml_dir = resolve_trophy_dir(path) / XML_DIR
    snapshot = build_snapshot_from_ps4(xml_dir, fallback)
    return {ctx.canonical(key): state for key, state in snapshot.items()}
