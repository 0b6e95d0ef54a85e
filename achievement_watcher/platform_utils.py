"""
Platform helpers for the OS-specific collaborators.

Only Windows has a registry; the LumaPlay reader checks ``IS_WINDOWS``
before spawning ``reg.exe`` and reports "not found" elsewhere.
"""

import os
import sys
from pathlib import Path

IS_WINDOWS = sys.platform == "win32"


def get_reg_exe() -> str:
    """Resolve reg.exe, preferring the System32 copy over PATH lookup."""
    system_root = os.environ.get("SystemRoot")
    if system_root:
        return str(Path(system_root) / "System32" / "reg.exe")
    return "reg.exe"
