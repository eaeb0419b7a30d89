"""Logging utilities for stepwise components.

Provides color-coded output to distinguish deterministic planner/store work
from external tool or inference calls, retries and degraded operation.
"""

import os
from enum import Enum
from typing import Optional


class Color(Enum):
    """ANSI color codes for terminal output."""

    # Colors for operation types
    BLUE = "\033[94m"      # Deterministic operations (planner, stores)
    YELLOW = "\033[93m"    # External calls (tools, inference, embeddings)
    RED = "\033[91m"       # Errors, retries, degraded mode
    GREEN = "\033[92m"     # Success/completion
    CYAN = "\033[96m"      # Info/metadata

    # Formatting
    BOLD = "\033[1m"
    RESET = "\033[0m"


_LEVELS = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40}
LOG_LEVELS = tuple(_LEVELS)

_level: Optional[str] = None


def colored(text: str, color: Color, bold: bool = False) -> str:
    """Wrap text in ANSI color codes if colors are enabled.

    Args:
        text: Text to colorize
        color: Color to apply
        bold: Whether to make text bold

    Returns:
        Colorized text if STEPWISE_NO_COLOR is not set, otherwise plain text
    """
    if os.getenv("STEPWISE_NO_COLOR"):
        return text

    prefix = color.value
    if bold:
        prefix = Color.BOLD.value + prefix

    return f"{prefix}{text}{Color.RESET.value}"


def set_log_level(level: Optional[str]) -> None:
    """Set the minimum level printed; ``None`` falls back to the LOG_LEVEL env var.

    Raises:
        ValueError: If ``level`` is not one of ``LOG_LEVELS``
    """
    global _level
    if level is not None and level.upper() not in _LEVELS:
        raise ValueError(f"Unknown log level '{level}'. Choose one of: {', '.join(LOG_LEVELS)}")
    _level = level.upper() if level is not None else None


def _enabled(level: str) -> bool:
    current = _level or os.getenv("LOG_LEVEL", "INFO").upper()
    threshold = _LEVELS.get(current, 20)
    return _LEVELS[level] >= threshold


def _emit(level: str, tag: str, message: str, color: Color) -> None:
    if _enabled(level):
        print(colored(f"{tag} {message}", color))


def log_planner(message: str) -> None:
    """Log a deterministic planner/store operation (blue)."""
    _emit("DEBUG", LOG_TAG_DETERMINISTIC, message, Color.BLUE)


def log_tool(message: str) -> None:
    """Log an external tool, inference or embedding call (yellow)."""
    _emit("INFO", LOG_TAG_EXTERNAL, message, Color.YELLOW)


def log_error(message: str) -> None:
    """Log an error or retry (red)."""
    _emit("ERROR", LOG_TAG_ERROR, message, Color.RED)


def log_warning(message: str) -> None:
    """Log degraded operation (red, warning level)."""
    _emit("WARNING", LOG_TAG_ERROR, message, Color.RED)


def log_success(message: str) -> None:
    """Log a success (green)."""
    _emit("INFO", LOG_TAG_SUCCESS, message, Color.GREEN)


def log_info(message: str) -> None:
    """Log metadata/info (cyan)."""
    _emit("INFO", LOG_TAG_INFO, message, Color.CYAN)


# Markers for operation types (color-blind accessible)
LOG_TAG_DETERMINISTIC = "[•]"  # Deterministic operation
LOG_TAG_EXTERNAL = "[AI]"      # External call
LOG_TAG_ERROR = "[!]"          # Error/retry
LOG_TAG_SUCCESS = "[✓]"        # Success
LOG_TAG_INFO = "[i]"           # Information
