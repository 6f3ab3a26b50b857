from __future__ import annotations

__version__ = "0.1.0"

from archiver import handlers, relay, settings, signals, store, utils

__all__ = [
    "handlers",
    "relay",
    "settings",
    "signals",
    "store",
    "utils",
]
