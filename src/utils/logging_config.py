"""
Centralised loguru setup.

One stderr sink for the whole process. Each line carries the level, the time,
the id of the meme invocation that produced it (or "---" outside one), and
for configured levels the source location.
"""

import sys

from loguru import logger

from common import global_config
from src.utils.context import invocation_id

NO_INVOCATION = "---"
_INVOCATION_COLORS = ["green", "yellow", "blue", "magenta", "cyan", "red"]
_LEVEL_NAMES = ("debug", "info", "warning", "error", "critical")

_logging_initialized = False


def _invocation_color(current_id: str) -> str:
    """Stable color per invocation id so interleaved invocations stay readable"""
    if current_id == NO_INVOCATION:
        return "white"
    return _INVOCATION_COLORS[sum(map(ord, current_id[-8:])) % len(_INVOCATION_COLORS)]


def _location_format(level: str) -> str | None:
    location = global_config.logging.format.location
    if not location.enabled:
        return None

    shown_for = {
        "debug": location.show_for_debug,
        "info": location.show_for_info,
        "warning": location.show_for_warning,
        "error": location.show_for_error,
    }
    if not shown_for.get(level.lower(), True):
        return None

    parts = []
    if location.show_file:
        parts.append("<cyan>{file.name}</cyan>")
    if location.show_function:
        parts.append("<cyan>{function}</cyan>")
    if location.show_line:
        parts.append("<cyan>{line}</cyan>")
    return ":".join(parts) or None


def _format_record(record: dict) -> str:
    fmt = global_config.logging.format
    columns = ["<level>{level: <6}</level>"]

    if fmt.show_time:
        columns.append("{time:HH:mm:ss}")
    if fmt.show_invocation_id:
        color = _invocation_color(record["extra"]["invocation_id"])
        columns.append(f"<{color}>{{extra[invocation_id]}}</{color}>")

    location = _location_format(record["level"].name)
    if location:
        columns.append(location)

    columns.append("<level>{message}</level>{exception}")
    return " | ".join(columns) + "\n"


def _level_enabled(level: str, overrides: dict[str, bool]) -> bool:
    level = level.lower()
    if level in overrides:
        return overrides[level]
    # levels without a config switch (TRACE, SUCCESS, custom) are always shown
    return getattr(global_config.logging.levels, level, True)


def setup_logging(*, debug=None, info=None, warning=None, error=None, critical=None):
    """Install the process-wide sink; later calls are no-ops.

    Each keyword, when given, overrides the matching `logging.levels` switch
    from global_config (e.g. `setup_logging(debug=True)` in tests).
    """
    global _logging_initialized

    if _logging_initialized:
        return

    requested = dict(zip(_LEVEL_NAMES, (debug, info, warning, error, critical)))
    overrides = {level: enabled for level, enabled in requested.items() if enabled is not None}

    def log_filter(record):
        record["extra"]["invocation_id"] = invocation_id.get() or NO_INVOCATION
        return _level_enabled(record["level"].name, overrides)

    logger.remove()
    logger.add(
        sys.stderr,
        format=_format_record,
        colorize=True,
        enqueue=True,
        backtrace=True,
        diagnose=True,
        catch=True,
        filter=log_filter,
    )

    _logging_initialized = True
