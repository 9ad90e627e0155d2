"""Logging utilities for genworld simulations.

Everything goes through the standard ``logging`` module so levels and handlers
can be configured by the host application. Messages carry a bracketed marker so
deterministic engine work, Cognition Service calls and failures stay easy to
tell apart, with ANSI colour when a terminal handler is installed.
"""

import logging
import os
from enum import Enum
from typing import Optional


class Color(Enum):
    """ANSI color codes for terminal output."""

    BLUE = "\033[94m"      # Deterministic engine work (clock, queue, world state)
    YELLOW = "\033[93m"    # Cognition Service calls
    RED = "\033[91m"       # Errors, retries, fallbacks
    GREEN = "\033[92m"     # Completed ticks
    CYAN = "\033[96m"      # Info/metadata

    BOLD = "\033[1m"
    RESET = "\033[0m"


def colored(text: str, color: Color, bold: bool = False) -> str:
    """Wrap text in ANSI color codes unless GENWORLD_NO_COLOR is set."""
    if os.getenv("GENWORLD_NO_COLOR"):
        return text

    prefix = color.value
    if bold:
        prefix = Color.BOLD.value + prefix

    return f"{prefix}{text}{Color.RESET.value}"


# Markers for operation types (color-blind accessible)
LOG_TAG_DETERMINISTIC = "[•]"
LOG_TAG_LLM = "[AI]"
LOG_TAG_ERROR = "[!]"
LOG_TAG_SUCCESS = "[✓]"
LOG_TAG_INFO = "[i]"

_TAG_COLORS = {
    LOG_TAG_DETERMINISTIC: Color.BLUE,
    LOG_TAG_LLM: Color.YELLOW,
    LOG_TAG_ERROR: Color.RED,
    LOG_TAG_SUCCESS: Color.GREEN,
    LOG_TAG_INFO: Color.CYAN,
}

_LEVEL_COLORS = {
    logging.WARNING: Color.RED,
    logging.ERROR: Color.RED,
    logging.CRITICAL: Color.RED,
}


def get_logger(name: str) -> logging.Logger:
    """Return the ``genworld.<name>`` logger."""
    if name.startswith("genworld"):
        return logging.getLogger(name)
    return logging.getLogger(f"genworld.{name}")


class ColoredFormatter(logging.Formatter):
    """Colour a record by its marker tag, falling back to its level."""

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        message = record.getMessage()
        for tag, color in _TAG_COLORS.items():
            if message.startswith(tag):
                return colored(text, color)
        color = _LEVEL_COLORS.get(record.levelno)
        return colored(text, color) if color else text


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """Install a coloured stream handler on the ``genworld`` root logger.

    Safe to call repeatedly; the handler is only attached once. ``level``
    defaults to ``Config.LOG_LEVEL``.
    """
    from .config import Config

    root = logging.getLogger("genworld")
    root.setLevel((level or Config.LOG_LEVEL).upper())
    if not any(isinstance(h.formatter, ColoredFormatter) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(ColoredFormatter("%(asctime)s %(name)s %(message)s", "%H:%M:%S"))
        root.addHandler(handler)
    return root
