from __future__ import annotations

import logging
import sys
from pathlib import Path

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _normalize_level(level: str | int) -> int:
    """Coerce level name or integer-like value to a logging level int."""
    if isinstance(level, int):
        return int(level)
    if isinstance(level, str):
        lvl = getattr(logging, level.upper(), None)
        if isinstance(lvl, int):
            return lvl
        try:
            return int(level)
        except ValueError:
            return logging.INFO
    return logging.INFO


def setup_logging(
    level: str | int = "INFO",
    log_file: str | None = None,
    log_format: str | None = None,
    log_dateformat: str | None = None,
) -> None:
    """Configure logging for the worker process.

    - Installs a single handler on the root logger: stdout, or `log_file` when given.
    - Replaces existing handlers (`force=True`).
    - Aligns the `archiver` namespace and any pre-created `archiver.*` loggers
      to the chosen level, so relay console output follows it too.
    """
    lvl = _normalize_level(level)

    handler: logging.Handler
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stdout)

    handler.setFormatter(logging.Formatter(log_format or DEFAULT_FORMAT, log_dateformat))

    logging.basicConfig(level=lvl, handlers=[handler], force=True)
    logging.getLogger().setLevel(lvl)
    logging.getLogger("archiver").setLevel(lvl)

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if isinstance(name, str) and name.startswith("archiver."):
            logging.getLogger(name).setLevel(lvl)

    # aiohttp access/client chatter stays at WARNING unless debugging
    if lvl > logging.DEBUG:
        logging.getLogger("aiohttp").setLevel(logging.WARNING)


def setup_logging_from_settings(settings) -> None:
    setup_logging(
        settings.LOG_LEVEL,
        settings.LOG_FILE,
        settings.LOG_FORMAT,
        settings.LOG_DATEFORMAT,
    )
