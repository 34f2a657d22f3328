"""Foreground application hint.

Windows uses win32 APIs and psutil. Other platforms return ``None`` and the
pipeline derives the hint from OCR text instead.
"""

import sys
from typing import Any, cast

import psutil

if sys.platform == "win32":
    import pywintypes  # pyright: ignore[reportMissingImports]
    import win32gui  # pyright: ignore[reportMissingImports]
    import win32process  # pyright: ignore[reportMissingImports]
else:  # pragma: no cover
    pywintypes = cast("Any", None)
    win32gui = cast("Any", None)
    win32process = cast("Any", None)


def _strip_exe(name: str) -> str:
    return name[:-4] if name.lower().endswith(".exe") else name


def get_active_application() -> str | None:
    """前面ウィンドウのアプリ名を返す. 取得できなければ None."""
    if sys.platform != "win32" or win32gui is None:
        return None

    hwnd = win32gui.GetForegroundWindow()
    if not hwnd:
        return None

    try:
        _, pid = win32process.GetWindowThreadProcessId(hwnd)
    except pywintypes.error:
        return None

    try:
        process_name = psutil.Process(pid).name()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None
    return _strip_exe(process_name) or None
