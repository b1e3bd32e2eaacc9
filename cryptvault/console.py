"""Colored, tagged operator output mirrored into the run log."""

from __future__ import annotations

import os
import sys

from .executil import log


class Colors:
    RED = "\033[0;31m"
    GREEN = "\033[0;32m"
    YELLOW = "\033[1;33m"
    BLUE = "\033[0;34m"
    CYAN = "\033[0;36m"
    MAGENTA = "\033[0;35m"
    BOLD = "\033[1m"
    RESET = "\033[0m"


def _use_color(stream) -> bool:
    if os.environ.get("NO_COLOR"):
        return False
    isatty = getattr(stream, "isatty", None)
    try:
        return bool(isatty and isatty())
    except ValueError:
        return False


def _emit(stream, color: str, tag: str, msg: str) -> None:
    if _use_color(stream):
        prefix = f"{color}{tag}{Colors.RESET}"
    else:
        prefix = tag
    print(f"{prefix} {msg}" if prefix else msg, file=stream, flush=True)


def error(msg: str) -> None:
    _emit(sys.stderr, Colors.RED, "[ERROR]", msg)
    log("ERROR", "console", message=msg)


def warn(msg: str) -> None:
    _emit(sys.stdout, Colors.YELLOW, "[WARNING]", msg)
    log("WARN", "console", message=msg)


def info(msg: str) -> None:
    _emit(sys.stdout, Colors.BLUE, "[INFO]", msg)
    log("INFO", "console", message=msg)


def success(msg: str) -> None:
    _emit(sys.stdout, Colors.CYAN, "[SUCCESS]", msg)
    log("INFO", "console", message=msg, success=True)


def step(msg: str) -> None:
    _emit(sys.stdout, Colors.GREEN, "→", msg)
    log("INFO", "console", message=msg)


def section(title: str) -> None:
    line = f"═══ {title} ═══"
    if _use_color(sys.stdout):
        line = f"{Colors.MAGENTA}{line}{Colors.RESET}"
    print(f"\n{line}\n", flush=True)
    log("INFO", "section", title=title)


def plain(msg: str = "") -> None:
    print(msg, flush=True)
    if msg:
        log("INFO", "console", message=msg)
