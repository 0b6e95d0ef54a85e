"""
Achievement name canonicalization.

Save formats key achievements by API name, by a prefixed variant of it
(ACH_10), by a bare numeric id or by the localized display name. Everything
is mapped back onto the schema's ``name`` so snapshots from different
sources stay comparable.
"""

import re
import unicodedata
import zlib
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import msgspec

from .constants import DEFAULT_LANGUAGE, HIDDEN_PLACEHOLDER
from .logger import setup_logger
from .models import SchemaEntry, decode_json, schema_from_raw

logger = setup_logger()

_WHITESPACE = re.compile(r"\s+")
_ACH_PREFIX = re.compile(r"^ach_", re.IGNORECASE)
_TRAILING_DIGITS = re.compile(r"^(.*)_(\d+)$")


def normalize(text) -> str:
    """NFKC, unify ellipsis, collapse whitespace, trim and lowercase."""
    value = unicodedata.normalize("NFKC", str(text if text is not None else ""))
    value = value.replace("…", "...")
    return _WHITESPACE.sub(" ", value).strip().lower()


def get_safe_localized_text(value, lang: str = DEFAULT_LANGUAGE) -> str:
    """
    Pick a display string out of a plain or per-language value.

    Args:
        value: str or {language: text}
        lang: Preferred language key

    Returns:
        Requested language, then english, then the first non-empty value,
        then the hidden placeholder
    """
    if isinstance(value, str):
        return value if value.strip() else HIDDEN_PLACEHOLDER
    if isinstance(value, dict):
        for key in (lang, DEFAULT_LANGUAGE):
            text = value.get(key)
            if isinstance(text, str) and text.strip():
                return text
        for text in value.values():
            if isinstance(text, str) and text.strip():
                return text
    return HIDDEN_PLACEHOLDER


def _display_values(value) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for text in value.values():
            if isinstance(text, str):
                yield text


def key_candidates(raw_key: str) -> List[str]:
    """raw, raw without an ach_ prefix, then the _<digits> suffix when a lettered prefix exists"""
    raw_key = str(raw_key).strip()
    if not raw_key:
        return []
    candidates = [raw_key]
    stripped = _ACH_PREFIX.sub("", raw_key)
    if stripped and stripped != raw_key:
        candidates.append(stripped)
    match = _TRAILING_DIGITS.match(stripped)
    if match and re.search(r"[A-Za-z]", match.group(1)):
        candidates.append(match.group(2))
    seen = set()
    return [c for c in candidates if not (c in seen or seen.add(c))]


class NameIndex:
    """Lookup tables from normalized API name / display name to canonical name"""

    def __init__(self, schema: Optional[List[SchemaEntry]] = None):
        self.by_name: Dict[str, str] = {}
        self.by_display: Dict[str, str] = {}
        for entry in schema or []:
            self.by_name.setdefault(normalize(entry.name), entry.name)
            for text in _display_values(entry.display_name):
                norm = normalize(text)
                if norm:
                    self.by_display.setdefault(norm, entry.name)

    def __len__(self):
        return len(self.by_name)

    def resolve(self, raw_key) -> str:
        """
        Map a raw save key onto the schema name.

        Each candidate is checked against API names first, then display
        names. Unmatched keys are returned unchanged.
        """
        raw = str(raw_key)
        if not self.by_name:
            return raw
        for candidate in key_candidates(raw):
            norm = normalize(candidate)
            if norm in self.by_name:
                return self.by_name[norm]
            if norm in self.by_display:
                return self.by_display[norm]
        return raw


def resolve_canonical_name(raw_key, index: Optional[NameIndex]) -> str:
    if index is None:
        return str(raw_key)
    return index.resolve(raw_key)


def schema_file_candidates(config_path, appid=None) -> List[Path]:
    base = Path(config_path)
    candidates = [base / "achievements.json"]
    if appid:
        candidates.append(base / str(appid) / "achievements.json")
    return candidates


def load_schema(config_path, appid=None) -> List[SchemaEntry]:
    """Read achievements.json from the game's config directory; empty when absent or broken"""
    if not config_path:
        return []
    for path in schema_file_candidates(config_path, appid):
        if not path.is_file():
            continue
        try:
            raw = decode_json(path.read_bytes())
        except (OSError, msgspec.DecodeError) as e:
            logger.warning(f"Could not read schema {path}: {e}")
            continue
        entries = schema_from_raw(raw)
        if entries:
            logger.debug(f"Loaded {len(entries)} schema entries from {path}")
            return entries
    return []


def crc32_name(name: str) -> str:
    return format(zlib.crc32(name.encode("utf-8")) & 0xFFFFFFFF, "08x")


def build_crc_name_map(schema: List[SchemaEntry]) -> Dict[str, str]:
    """8-hex CRC32 of each schema name -> name, used by stats.bin"""
    return {crc32_name(entry.name): entry.name for entry in schema}


def find_schema_entry(schema: List[SchemaEntry], name: str) -> Optional[SchemaEntry]:
    for entry in schema:
        if entry.name == name:
            return entry
    target = normalize(name)
    for entry in schema:
        if normalize(entry.name) == target:
            return entry
    return None
