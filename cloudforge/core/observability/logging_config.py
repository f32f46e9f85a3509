"""
Logging configuration — one setup call for the CLI and the web server.

Called once at startup by main.py.  Every module does
``logger = logging.getLogger(__name__)`` and inherits this config.

Console level, in precedence order:
    CLI flag  >  CF_LOG_LEVEL  >  WARNING

A log file is added when CF_LOG_FILE is set; its level comes from
CF_LOG_FILE_LEVEL and defaults to the console level.  Terraform output
lines are logged at DEBUG by the supervisor, so a DEBUG log file is a
full transcript of every deployment the process ran.
"""

from __future__ import annotations

import logging
import os
import sys

# level threshold → (format, datefmt); first match wins
_CONSOLE_FORMATS: tuple[tuple[int, str, str | None], ...] = (
    (logging.DEBUG, "%(asctime)s %(levelname)-5s [%(threadName)s] %(name)s:%(lineno)d  %(message)s", "%H:%M:%S"),
    (logging.INFO, "%(asctime)s [%(name)s] %(message)s", "%H:%M:%S"),
    (logging.CRITICAL, "%(message)s", None),
)

_FILE_FORMAT = "%(asctime)s %(levelname)-5s [%(threadName)s] %(name)s:%(lineno)d  %(message)s"
_FILE_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are noisy at INFO
_NOISY_LOGGERS = ("werkzeug", "urllib3")


def resolve_level(*, debug: bool = False, verbose: bool = False, quiet: bool = False) -> str:
    """Pick the console level from CLI flags, falling back to CF_LOG_LEVEL."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    return os.environ.get("CF_LOG_LEVEL", "WARNING")


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
    quiet_third_party: bool = True,
) -> None:
    """Replace the root logger's handlers with CloudForge's.

    Args:
        level: Console level name.  Unknown names mean WARNING.
        log_file: Optional log file path (appended to).
        log_file_level: Level for the log file; defaults to ``level``.
        quiet_third_party: Hold werkzeug/urllib3 at WARNING unless the
            console is at DEBUG.
    """
    console_level = _parse_level(level)
    handlers: list[logging.Handler] = [_console_handler(console_level)]

    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else console_level
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATEFMT))
        handlers.append(fh)

    root = logging.getLogger()
    root.handlers[:] = handlers
    root.setLevel(min(h.level for h in handlers))

    if quiet_third_party and console_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    # Errors inside logging itself are not raised
    logging.raiseExceptions = False


def _console_handler(level: int) -> logging.Handler:
    fmt, datefmt = next((f, d) for threshold, f, d in _CONSOLE_FORMATS if level <= threshold)
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    return handler


def _parse_level(level: str | None) -> int:
    numeric = logging.getLevelName(level.upper()) if level else logging.WARNING
    return numeric if isinstance(numeric, int) else logging.WARNING
