"""
LumaPlay registry reader.

LumaPlay keeps achievements as registry values under
``HKCU\\SOFTWARE\\LumaPlay\\<user>\\<appid>\\Achievements``. Values are read
through ``reg.exe query`` run as an async subprocess; on other platforms
every lookup is simply "not found".
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import List, Optional

from achievement_watcher.constants import LUMAPLAY_ROOT_KEY
from achievement_watcher.logger import setup_logger
from achievement_watcher.models import Snapshot
from achievement_watcher.parsers.common import ParseContext, make_state, merge_snapshot
from achievement_watcher.platform_utils import IS_WINDOWS, get_reg_exe

logger = setup_logger()

_VALUE_LINE = re.compile(r"^\s{2,}(.+?)\s{2,}(REG_[A-Z0-9_]+)\s{2,}(.*)$", re.IGNORECASE)
_HEX_TOKEN = re.compile(r"^0x[0-9a-f]+$", re.IGNORECASE)
_DEC_TOKEN = re.compile(r"^-?\d+$")
_APPID = re.compile(r"^[0-9a-fA-F]+$")
_TRUE_TEXT = frozenset({"true", "yes", "unlocked", "earned", "1"})
_HKCU_PREFIX = "HKEY_CURRENT_USER\\SOFTWARE\\LumaPlay\\"


@dataclass
class RegQueryResult:
    ok: bool
    stdout: str = ""
    stderr: str = ""
    code: int = -1


@dataclass
class RegistryValue:
    name: str
    type: str
    raw: str
    earned: bool


@dataclass
class LumaPlayRead:
    found: bool
    appid: str
    user: str = ""
    key_path: str = ""
    values: List[RegistryValue] = field(default_factory=list)


async def run_reg_query(*args: str) -> RegQueryResult:
    """
    Run ``reg query <args>`` without blocking the event loop.

    Returns:
        RegQueryResult; ok is False off Windows or when reg.exe fails
    """
    if not IS_WINDOWS:
        return RegQueryResult(ok=False, stderr="unsupported-platform")
    try:
        proc = await asyncio.create_subprocess_exec(
            get_reg_exe(), "query", *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
    except OSError as e:
        return RegQueryResult(ok=False, stderr=str(e))
    code = proc.returncode if proc.returncode is not None else -1
    return RegQueryResult(
        ok=code == 0,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        code=code,
    )


def parse_numeric_registry_value(reg_type: str, raw: str) -> Optional[int]:
    """DWORD/QWORD payloads as int (0x-hex or decimal); None for other types"""
    kind = (reg_type or "").upper()
    if "DWORD" not in kind and "QWORD" not in kind:
        return None
    parts = (raw or "").strip().split()
    if not parts:
        return None
    token = parts[0]
    if _HEX_TOKEN.match(token):
        return int(token[2:], 16)
    if _DEC_TOKEN.match(token):
        return int(token)
    return None


def parse_boolean_registry_value(reg_type: str, raw: str) -> bool:
    numeric = parse_numeric_registry_value(reg_type, raw)
    if numeric is not None:
        return numeric > 0
    return (raw or "").strip().lower() in _TRUE_TEXT


def parse_registry_value_lines(output: str) -> List[RegistryValue]:
    """name/type/value triples from reg query output, skipping (Default)"""
    values = []
    for line in (output or "").splitlines():
        match = _VALUE_LINE.match(line)
        if not match:
            continue
        name = match.group(1).strip()
        if not name or name.lower() == "(default)":
            continue
        reg_type = match.group(2).strip().upper()
        raw = match.group(3).strip()
        values.append(RegistryValue(name, reg_type, raw, parse_boolean_registry_value(reg_type, raw)))
    return values


def _subkeys(output: str, parent: str) -> List[str]:
    prefix = parent.lower() + "\\"
    names = []
    for line in (output or "").splitlines():
        line = line.strip()
        if not line.lower().startswith(prefix):
            continue
        name = line[len(prefix):]
        if name and "\\" not in name and name not in names:
            names.append(name)
    return names


async def list_users() -> List[str]:
    result = await run_reg_query(LUMAPLAY_ROOT_KEY)
    if not result.ok:
        return []
    return _subkeys(result.stdout, _HKCU_PREFIX.rstrip("\\"))


async def list_appids_for_user(user: str) -> List[str]:
    user = (user or "").strip()
    if not user:
        return []
    result = await run_reg_query(f"{LUMAPLAY_ROOT_KEY}\\{user}")
    if not result.ok:
        return []
    return [a for a in _subkeys(result.stdout, f"{_HKCU_PREFIX}{user}") if _APPID.match(a)]


def achievements_key(user: str, appid: str) -> str:
    return f"{LUMAPLAY_ROOT_KEY}\\{user}\\{appid}\\Achievements"


async def read_lumaplay_values(appid, preferred_user: str = "") -> LumaPlayRead:
    """
    Find the Achievements key for an appid (preferred user first) and read its values.
    """
    appid = str(appid or "").strip()
    if not appid or not _APPID.match(appid):
        return LumaPlayRead(found=False, appid=appid)
    users = [preferred_user.strip()] if preferred_user and preferred_user.strip() else []
    for user in await list_users():
        if user not in users:
            users.append(user)
    for user in users:
        key_path = achievements_key(user, appid)
        result = await run_reg_query(key_path)
        if result.ok:
            return LumaPlayRead(
                found=True,
                appid=appid,
                user=user,
                key_path=key_path,
                values=parse_registry_value_lines(result.stdout),
            )
    return LumaPlayRead(found=False, appid=appid)


async def scan_lumaplay_entries() -> List[LumaPlayRead]:
    """Every (user, appid) pair that has an Achievements key; first user wins per appid"""
    found = {}
    for user in await list_users():
        for appid in await list_appids_for_user(user):
            if appid in found:
                continue
            key_path = achievements_key(user, appid)
            if (await run_reg_query(key_path)).ok:
                found[appid] = LumaPlayRead(found=True, appid=appid, user=user, key_path=key_path)
    return list(found.values())


def build_snapshot_from_values(values: List[RegistryValue], previous: Optional[Snapshot],
                               ctx: ParseContext) -> Snapshot:
    """
    Registry values carry no unlock time: an entry keeps the previous time
    when it was already earned, otherwise it is 0.
    """
    previous = previous or {}
    snapshot: Snapshot = {}
    for value in values:
        name = ctx.canonical(value.name)
        prev = previous.get(name)
        earned_time = prev.earned_time if value.earned and prev is not None and prev.earned else 0
        snapshot[name] = make_state(earned=value.earned, earned_time=earned_time)
    return snapshot


async def parse_lumaplay_save(appid, fallback: Optional[Snapshot] = None, ctx: Optional[ParseContext] = None,
                              preferred_user: str = "") -> Snapshot:
    """
    Read a LumaPlay game's achievements from the registry.

    Returns the fallback itself when the key is missing or the query fails.
    """
    ctx = ctx or ParseContext()
    try:
        read = await read_lumaplay_values(appid, preferred_user)
    except (OSError, ValueError) as e:
        logger.debug(f"LumaPlay registry read failed for {appid}: {e}")
        read = LumaPlayRead(found=False, appid=str(appid))
    if not read.found:
        return fallback if fallback is not None else {}
    return merge_snapshot(build_snapshot_from_values(read.values, fallback, ctx), fallback)
