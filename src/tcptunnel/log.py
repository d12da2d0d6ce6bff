from __future__ import annotations

import logging
import sys
from typing import Optional, TextIO

from colorama import Fore, Style, init as colorama_init

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_LEVEL_COLORS = {
    logging.DEBUG: Fore.BLUE,
    logging.INFO: Fore.GREEN,
    logging.WARNING: Fore.YELLOW,
    logging.ERROR: Fore.RED,
    logging.CRITICAL: Fore.MAGENTA,
}


class ColorFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        color = _LEVEL_COLORS.get(record.levelno)
        if not color:
            return super().format(record)
        original = record.levelname
        record.levelname = f"{color}{original}{Style.RESET_ALL}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


def setup_logging(level: str = "INFO", stream: Optional[TextIO] = None, color: Optional[bool] = None) -> logging.Logger:
    """
    Configure the "tcptunnel" logger tree with one stream handler.

    Safe to call more than once; the handler is replaced, not duplicated.
    """
    out = stream or sys.stderr
    if color is None:
        color = bool(getattr(out, "isatty", lambda: False)())
    if color:
        colorama_init()

    root = logging.getLogger("tcptunnel")
    for h in list(root.handlers):
        if getattr(h, "_tcptunnel", False):
            root.removeHandler(h)
    handler = logging.StreamHandler(out)
    handler.setFormatter(ColorFormatter(LOG_FORMAT) if color else logging.Formatter(LOG_FORMAT))
    handler._tcptunnel = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    lvl = logging.getLevelName((level or "INFO").upper())
    root.setLevel(lvl if isinstance(lvl, int) else logging.INFO)
    root.debug("logging level set to %s", logging.getLevelName(root.level))
    return root
