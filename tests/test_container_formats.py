"""
Tests for the binary/container parsers: Steam user stats, Xenia GPD,
RPCS3 trophy sets and shadPS4 trophy XML.
"""

import os
import struct
from unittest.mock import patch

import pytest

from achievement_watcher.diff_engine import diff
from achievement_watcher.models import AchievementState, GameConfig, SchemaEntry
from achievement_watcher.parsers import ParseContext, parser_for
from achievement_watcher.parsers.common import ParseError
from achievement_watcher.parsers.rpcs3_trophy import (
    build_schema_from_trophy,
    parse_rpcs3_save,
    parse_trophy_set_dir,
    parse_tropusr,
)
from achievement_watcher.parsers.shadps4_trophy import build_schema_from_ps4, parse_ps4_save, parse_ps4_trophy_set
from achievement_watcher.parsers.steam_kv import (
    extract_schema_achievements,
    extract_user_stats,
    parse_kv_binary,
    parse_steam_user_stats,
    pick_latest_user_bin,
    schema_entries_from_bits,
)
from achievement_watcher.parsers.xenia_gpd import (
    build_schema_from_gpd,
    export_gpd_images,
    normalize_unlock_time,
    parse_gpd_bytes,
    parse_gpd_save,
)

FILETIME_1700000000 = (1700000000000 + 11_644_473_600_000) * 10_000


# -- Steam binary KV --------------------------------------------------------

def kv_obj(key, *children):
    return b"\x00" + key.encode() + b"\x00" + b"".join(children) + b"\x08"


def kv_int(key, value):
    return b"\x02" + key.encode() + b"\x00" + struct.pack("<i", value)


def kv_str(key, value):
    return b"\x01" + key.encode() + b"\x00" + value.encode() + b"\x00"


def user_stats_bin(data, times):
    return kv_obj(
        "UserGameStats",
        kv_obj("cache", kv_obj("1", kv_int("data", data), kv_obj("AchievementTimes", *(
            kv_int(str(bit), ts) for bit, ts in times.items()
        )))),
    )


def stats_schema_bin():
    return kv_obj(
        "480",
        kv_obj("stats", kv_obj("1", kv_str("type", "4"), kv_obj(
            "bits",
            kv_obj("0", kv_str("name", "ACH_WIN"), kv_int("bit", 0),
                   kv_obj("display", kv_obj("name", kv_str("english", "Win")))),
            kv_obj("1", kv_str("name", "ACH_LOSE"), kv_int("bit", 1)),
        ))),
    )


class TestSteamUserStats:
    """Test the official Steam stats reader"""

    def test_kv_tree(self):
        """Nested objects, ints and strings decode into dicts"""
        root, tree = parse_kv_binary(kv_obj("root", kv_int("a", -1), kv_str("b", "x"), kv_obj("c")))
        assert root == "root"
        assert tree == {"a": -1, "b": "x", "c": {}}

    def test_unknown_node_type(self):
        """Unsupported node types are a parse error"""
        with pytest.raises(ParseError):
            parse_kv_binary(kv_obj("root")[:-1] + b"\x05k\x00")

    def test_user_stats(self):
        """Stats are keyed by stat id with per-bit unlock times"""
        _, tree = parse_kv_binary(user_stats_bin(0b01, {0: 1700000000}))
        stats = extract_user_stats(tree)
        assert stats["1"].data == 1
        assert stats["1"].times == {"0": 1700000000}

    def test_schema_bits(self):
        """Bit entries come from the stats schema, one per API name"""
        _, tree = parse_kv_binary(stats_schema_bin())
        bits = extract_schema_achievements(tree)
        assert [(b.api, b.stat_id, b.bit) for b in bits] == [("ACH_WIN", 1, 0), ("ACH_LOSE", 1, 1)]
        assert bits[0].display_name == {"english": "Win"}

    def test_schema_entries_from_bits(self):
        """Stats schema bits become schema entries carrying statid/bit"""
        _, tree = parse_kv_binary(stats_schema_bin())
        entries = schema_entries_from_bits(extract_schema_achievements(tree))
        assert [(e.name, e.statid, e.bit) for e in entries] == [("ACH_WIN", 1, 0), ("ACH_LOSE", 1, 1)]
        assert entries[0].display_name == {"english": "Win"}

    def test_parse_with_game_schema(self, tmp_path):
        """statId/bit pairs from the game schema decide earned state"""
        path = tmp_path / "UserGameStats_1234_480.bin"
        path.write_bytes(user_stats_bin(0b01, {0: 1700000000}))
        config = GameConfig(name="Spacewar", appid="480", platform="steam-official", save_path=str(tmp_path))
        ctx = ParseContext(config, schema=[
            SchemaEntry(name="ACH_WIN", statid=1, bit=0),
            SchemaEntry(name="ACH_LOSE", statid=1, bit=1),
        ])
        snapshot = parse_steam_user_stats(path, None, ctx)
        assert snapshot == {
            "ACH_WIN": AchievementState(earned=True, earned_time=1700000000000),
            "ACH_LOSE": AchievementState(earned=False, earned_time=0),
        }

    def test_parse_with_schema_bin(self, tmp_path):
        """Without a game schema the stats schema file supplies the bits"""
        (tmp_path / "UserGameStats_1234_480.bin").write_bytes(user_stats_bin(0b10, {1: 1700000000}))
        (tmp_path / "UserGameStatsSchema_480.bin").write_bytes(stats_schema_bin())
        config = GameConfig(name="Spacewar", appid="480", platform="steam-official")
        snapshot = parse_steam_user_stats(tmp_path, None, ParseContext(config, schema=[]))
        assert snapshot["ACH_LOSE"].earned is True
        assert snapshot["ACH_WIN"].earned is False

    def test_latest_user_file(self, tmp_path):
        """The most recently modified user file for the appid is picked"""
        old = tmp_path / "UserGameStats_1_480.bin"
        new = tmp_path / "UserGameStats_2_480.bin"
        other = tmp_path / "UserGameStats_3_999.bin"
        for i, path in enumerate((old, new, other)):
            path.write_bytes(b"x")
            os.utime(path, (1000 + i, 1000 + i))
        assert pick_latest_user_bin(tmp_path, "480") == new

    def test_parser_selection(self):
        """steam-official only accepts user stats files"""
        assert parser_for("UserGameStats_1_480.bin", "steam-official") is parse_steam_user_stats
        assert parser_for("stats.bin", "steam-official") is None


# -- Xenia GPD ----------------------------------------------------------------

def achievement_payload(achievement_id, flags, unlock=0, image_id=0, name="Win"):
    head = struct.pack(">IIIiIq", 0x1C, achievement_id, image_id, 10, flags, unlock)
    strings = b"".join(s.encode("utf-16-be") + b"\x00\x00" for s in (name, "Locked", "Unlocked"))
    return head + strings


def build_gpd(entries):
    """XDBF bytes (big-endian) for (namespace, id, payload) entries"""
    header = b"XDBF" + struct.pack(">5I", 0x10000, len(entries), len(entries), 0, 0)
    table, blobs, offset = b"", b"", 0
    for namespace, entry_id, payload in entries:
        table += struct.pack(">HQII", namespace, entry_id, offset, len(payload))
        blobs += payload
        offset += len(payload)
    return header + table + blobs


class TestXeniaGpd:
    """Test GPD parsing"""

    def test_flag_transition(self, tmp_path):
        """Setting 0x20000 on id 5 between two reads is one earned transition"""
        path = tmp_path / "4D5307E6.gpd"
        ctx = ParseContext(schema=[])
        path.write_bytes(build_gpd([(1, 5, achievement_payload(5, 0x8)), (1, 6, achievement_payload(6, 0x8))]))
        first = parse_gpd_save(path, {}, ctx)
        assert first["5"].earned is False

        path.write_bytes(build_gpd([
            (1, 5, achievement_payload(5, 0x20008, FILETIME_1700000000)),
            (1, 6, achievement_payload(6, 0x8)),
        ]))
        second = parse_gpd_save(path, first, ctx)
        result = diff(first, second)
        assert result.earned_transitions == ["5"]
        assert second["5"].earned_time == 1700000000000

    def test_unlock_time_interpretations(self):
        """FILETIME first, .NET ticks when FILETIME is implausible"""
        dotnet = (1700000000000 + 62_135_596_800_000) * 10_000
        assert normalize_unlock_time(FILETIME_1700000000) == 1700000000000
        assert normalize_unlock_time(dotnet) == 1700000000000
        assert normalize_unlock_time(0) == 0

    def test_title_schema_and_images(self, tmp_path):
        """Title string, hidden flag and exported icons"""
        title = "Halo".encode("utf-16-be") + b"\x00\x00"
        gpd = parse_gpd_bytes(build_gpd([
            (1, 1, achievement_payload(1, 0x8, image_id=7, name="Visible")),
            (1, 2, achievement_payload(2, 0x0, name="Secret")),
            (2, 7, b"\x89PNG-data"),
            (5, 0x8000, title),
        ]))
        assert gpd.title == "Halo"
        schema = build_schema_from_gpd(gpd)
        assert [(e.name, e.hidden, e.icon) for e in schema] == [("1", 0, "img/7.png"), ("2", 1, "")]
        assert schema[0].display_name == {"english": "Visible"}
        assert export_gpd_images(gpd, tmp_path) == 1
        assert (tmp_path / "img" / "7.png").read_bytes() == b"\x89PNG-data"
        assert export_gpd_images(gpd, tmp_path) == 0

    def test_not_xdbf(self, tmp_path):
        """Other files return the fallback object"""
        path = tmp_path / "bad.gpd"
        path.write_bytes(b"NOPE" + bytes(40))
        fallback = {}
        assert parse_gpd_save(path, fallback) is fallback


# -- RPCS3 ----------------------------------------------------------------------

TROPCONF = """<?xml version="1.0" encoding="utf-8"?>
<trophyconf version="1.1">
<npcommid>NPWR00001_00</npcommid>
<title-name>Test Game</title-name>
<trophy id="000" hidden="no" ttype="B" pid="000"><name>First</name><detail>Do it &amp; win</detail></trophy>
<trophy id="001" hidden="yes" ttype="G" pid="000"><name>Second</name><detail>Secret</detail></trophy>
<trophy id="002" hidden="no" ttype="P" pid="000"><name>Platinum</name><detail>All</detail></trophy>
</trophyconf>
"""


def build_tropusr(flags):
    """Header with a type-6 descriptor followed by 0x20-byte records"""
    base = 0x40
    header = struct.pack(">7I", 0x818F54AD, 6, 0x10, 0, len(flags), 0, base)
    data = header.ljust(base, b"\x00")
    for index, flag in enumerate(flags):
        data += bytes(0x10) + struct.pack(">II", index, flag) + bytes(8)
    return data


@pytest.fixture
def trophy_dir(tmp_path):
    directory = tmp_path / "NPWR00001_00"
    directory.mkdir()
    (directory / "TROPCONF.SFM").write_text(TROPCONF)
    (directory / "TROPUSR.DAT").write_bytes(build_tropusr([1, 0, 1]))
    (directory / "TROP000.PNG").write_bytes(b"png")
    (directory / "ICON0.PNG").write_bytes(b"png")
    return directory


class TestRpcs3Trophies:
    """Test RPCS3 trophy set parsing"""

    def test_tropusr_layout(self):
        """The id==index scan finds the records and their flags"""
        result = parse_tropusr(build_tropusr([1, 0, 1]), 3)
        assert result.confident is True
        assert result.layout.id_offset == 0x10
        assert result.unlock_map == {0: True, 1: False, 2: True}

    def test_no_descriptor(self):
        """A header without a type-6 descriptor is a parse error"""
        with pytest.raises(ParseError):
            parse_tropusr(bytes(0x100), 3)

    def test_new_trophies_get_current_time(self, trophy_dir):
        """Newly earned trophies are stamped; known times are kept"""
        previous = {"0": AchievementState(earned=True, earned_time=5)}
        with patch("achievement_watcher.parsers.rpcs3_trophy.time.time", return_value=1700000000.0):
            snapshot = parse_rpcs3_save(trophy_dir / "TROPUSR.DAT", previous, ParseContext(schema=[]))
        assert snapshot["0"] == AchievementState(earned=True, earned_time=5)
        assert snapshot["1"].earned is False
        assert snapshot["2"] == AchievementState(earned=True, earned_time=1700000000000)

    def test_schema(self, trophy_dir):
        """Grades, hidden flags, unescaped details and icons"""
        schema = build_schema_from_trophy(parse_trophy_set_dir(trophy_dir))
        assert [e.trophy_type for e in schema] == ["bronze", "gold", "platinum"]
        assert [e.hidden for e in schema] == [0, 1, 0]
        assert schema[0].description == {"english": "Do it & win"}
        assert schema[0].icon == "TROP000.PNG"
        assert schema[1].icon == "ICON0.PNG"

    def test_missing_usr_file(self, trophy_dir):
        """A set without TROPUSR.DAT returns the fallback object"""
        (trophy_dir / "TROPUSR.DAT").unlink()
        fallback = {}
        assert parse_rpcs3_save(trophy_dir, fallback) is fallback


# -- shadPS4 ----------------------------------------------------------------------

TROP_XML = """<?xml version="1.0" encoding="UTF-8"?>
<trophyconf version="1.0" platform="ps4">
<npcommid>NPWR12345_00</npcommid>
<title-name>PS4 Game</title-name>
<trophy id="0" hidden="no" ttype="B" unlockstate="true" timestamp="1700000000"><name>First</name><detail>Do it</detail></trophy>
<trophy id="1" hidden="yes" ttype="G"><name>Second</name><detail>Secret</detail></trophy>
</trophyconf>
"""

TROP_02_XML = """<?xml version="1.0" encoding="UTF-8"?>
<trophyconf version="1.0" platform="ps4">
<trophy id="0" hidden="no" ttype="B"><name>Premier</name><detail>Fais-le</detail></trophy>
</trophyconf>
"""


@pytest.fixture
def ps4_dir(tmp_path):
    xml_dir = tmp_path / "trophy00" / "Xml"
    xml_dir.mkdir(parents=True)
    (xml_dir / "TROP.XML").write_text(TROP_XML)
    (xml_dir / "TROP_02.XML").write_text(TROP_02_XML)
    return tmp_path / "trophy00"


class TestShadPs4Trophies:
    """Test shadPS4 trophy XML parsing"""

    def test_snapshot(self, ps4_dir):
        """unlockstate/timestamp decide the earned state"""
        snapshot = parse_ps4_save(ps4_dir / "Xml" / "TROP.XML", None, ParseContext(schema=[]))
        assert snapshot == {
            "0": AchievementState(earned=True, earned_time=1700000000000),
            "1": AchievementState(earned=False, earned_time=0),
        }

    def test_languages_merge(self, ps4_dir):
        """Translations are merged and missing languages use the English text"""
        schema = build_schema_from_ps4(parse_ps4_trophy_set(ps4_dir))
        first = schema[0]
        assert first.display_name["french"] == "Premier"
        assert first.display_name["english"] == "First"
        assert first.display_name["german"] == "First"
        assert first.icon == "img/TROP000.PNG"
        assert schema[1].hidden == 1

    def test_malformed_xml(self, ps4_dir):
        """Broken XML returns the fallback object"""
        (ps4_dir / "Xml" / "TROP.XML").write_text("<trophyconf><trophy id=")
        fallback = {"0": AchievementState(earned=True, earned_time=1)}
        assert parse_ps4_save(ps4_dir, fallback) is fallback
