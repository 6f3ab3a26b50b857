from __future__ import annotations

from archiver.runner.logging import setup_logging, setup_logging_from_settings
from archiver.runner.service import ArchiverService

__all__ = ["ArchiverService", "setup_logging", "setup_logging_from_settings"]
