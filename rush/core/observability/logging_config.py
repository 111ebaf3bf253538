"""
Logging configuration — one-time setup for the ``rush`` entrypoint.

Modules log through ``logging.getLogger(__name__)``; user-facing output
goes through ``click.echo`` and is never routed through logging. Log
records therefore go to stderr so they never mix with ``--json`` output.

Level precedence:
    --debug  >  --verbose  >  --quiet  >  RUSH_LOG_LEVEL  >  WARNING

Optional file output via RUSH_LOG_FILE / RUSH_LOG_FILE_LEVEL.
"""

from __future__ import annotations

import logging
import sys

# ── Format strings ──────────────────────────────────────────────

# WARNING and above: the message is enough
_FMT_MINIMAL = "rush: %(message)s"

# INFO: which pipeline stage said it, and when
_FMT_VERBOSE = "%(asctime)s [%(name)s] %(message)s"

# DEBUG: file:line for tracing a failed install
_FMT_DEBUG = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d — %(message)s"

_DATEFMT_CONSOLE = "%H:%M:%S"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"

ENV_LOG_LEVEL = "RUSH_LOG_LEVEL"
ENV_LOG_FILE = "RUSH_LOG_FILE"
ENV_LOG_FILE_LEVEL = "RUSH_LOG_FILE_LEVEL"


def resolve_level(
    *,
    debug: bool = False,
    verbose: bool = False,
    quiet: bool = False,
    env_level: str | None = None,
) -> str:
    """Pick the console level name from CLI flags and the environment."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    return env_level or "WARNING"


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """Install handlers on the root logger, replacing any existing ones.

    Args:
        level: Console level name.
        log_file: Optional path of a log file that always gets the
            detailed format.
        log_file_level: Level for the file handler (default: ``level``).
    """
    console_level = _parse_level(level)
    if console_level <= logging.DEBUG:
        console_fmt = _FMT_DEBUG
    elif console_level <= logging.INFO:
        console_fmt = _FMT_VERBOSE
    else:
        console_fmt = _FMT_MINIMAL

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(console_fmt, datefmt=_DATEFMT_CONSOLE))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root_level = console_level

    if log_file:
        file_level = _parse_level(log_file_level or level)
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setLevel(file_level)
        handler.setFormatter(logging.Formatter(_FMT_DEBUG, datefmt=_DATEFMT_FILE))
        root.addHandler(handler)
        root_level = min(root_level, file_level)

    root.setLevel(root_level)

    # A broken stderr must not turn into an install failure
    logging.raiseExceptions = False


def _parse_level(level: str | None) -> int:
    """Convert a level name to its numeric constant (WARNING if unknown)."""
    if not level:
        return logging.WARNING
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return logging.WARNING
    return numeric
