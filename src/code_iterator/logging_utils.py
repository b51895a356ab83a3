"""Runtime logging helpers."""

from __future__ import annotations

import sys
from logging import Handler
from typing import Any, Literal, TextIO

from loguru import logger
from rich import get_console
from rich.logging import RichHandler

LogProfile = Literal["default", "rich"]

_PLAIN_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<7} | {name}:{function}:{line} | {message}"
_configured: tuple[LogProfile, str] | None = None


def _console_sink() -> Handler:
    # Event keys already carry the context; rich only adds time and level columns.
    return RichHandler(console=get_console(), show_path=False, markup=False, rich_tracebacks=True)


def _sink_for(profile: LogProfile) -> tuple[Handler | TextIO, str]:
    if profile == "rich":
        return _console_sink(), "{message}"
    return sys.stderr, _PLAIN_FORMAT


def configure_logging(*, profile: LogProfile = "default", level: str = "INFO") -> None:
    """Route loguru output to stderr (or a rich console) at ``level``.

    Repeated calls with the same profile and level are no-ops.
    """

    global _configured
    wanted = (profile, level.upper())
    if _configured == wanted:
        return

    sink, fmt = _sink_for(profile)
    options: dict[str, Any] = {"level": wanted[1], "format": fmt, "backtrace": False, "diagnose": False}
    logger.remove()
    logger.add(sink, **options)
    _configured = wanted
