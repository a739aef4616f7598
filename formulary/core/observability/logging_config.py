"""
Logging configuration — set up once by the CLI entrypoint.

Every module does ``logger = logging.getLogger(__name__)`` and inherits
this configuration. Install steps log at INFO (one line per state
transition) and DEBUG (commands, paths, digests).

Levels are resolved in precedence order:
    --debug  >  --verbose  >  --quiet  >  FORMULARY_LOG_LEVEL  >  WARNING

Optional file output via FORMULARY_LOG_FILE / FORMULARY_LOG_FILE_LEVEL.
"""

from __future__ import annotations

import logging
import os
import sys

LOG_LEVEL_ENV = "FORMULARY_LOG_LEVEL"
LOG_FILE_ENV = "FORMULARY_LOG_FILE"
LOG_FILE_LEVEL_ENV = "FORMULARY_LOG_FILE_LEVEL"

# Console format per level: the lower the level, the more context per line.
# (highest level the tier applies to, format, datefmt)
_CONSOLE_TIERS: tuple[tuple[int, str, str | None], ...] = (
    (logging.DEBUG, "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d — %(message)s", "%H:%M:%S"),
    (logging.INFO, "%(asctime)s %(name)s: %(message)s", "%H:%M:%S"),
    (logging.CRITICAL, "%(levelname)s: %(message)s", None),
)

_FILE_FORMAT = "%(asctime)s %(levelname)-5s %(process)d %(name)s:%(lineno)d — %(message)s"
_FILE_DATEFMT = "%Y-%m-%dT%H:%M:%S"


def resolve_level(debug: bool = False, verbose: bool = False, quiet: bool = False) -> str:
    """Pick the console log level from CLI flags, then the environment."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    return os.environ.get(LOG_LEVEL_ENV, "WARNING")


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """Route all records to stderr, and optionally to a file.

    Replaces any handlers already on the root logger, so calling it
    again (one CLI invocation after another in the same process)
    reconfigures rather than duplicates output.

    Args:
        level: Console level name (DEBUG, INFO, WARNING, ERROR).
        log_file: Path of an extra log file.
        log_file_level: Level for ``log_file``; defaults to ``level``.
    """
    console_level = _parse_level(level)
    handlers = [_console_handler(console_level)]

    if log_file:
        file_level = _parse_level(log_file_level or level)
        handlers.append(_file_handler(log_file, file_level))

    root = logging.getLogger()
    for old in root.handlers[:]:
        root.removeHandler(old)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(min(h.level for h in handlers))

    logging.raiseExceptions = False


def _console_handler(level: int) -> logging.Handler:
    fmt, datefmt = next((f, d) for limit, f, d in _CONSOLE_TIERS if level <= limit)
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    return handler


def _file_handler(path: str, level: int) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATEFMT))
    return handler


def _parse_level(name: str | None) -> int:
    """Level name → number. Unknown names mean WARNING."""
    value = logging.getLevelName(name.upper()) if name else logging.WARNING
    return value if isinstance(value, int) else logging.WARNING
