from .base import FailedDownload, QueueItem, QueueStore, UnitOfWork
from .factory import create_store, create_store_from_settings
from .memory import MemoryQueueStore
from .sqlite import SQLiteQueueStore

__all__ = [
    "FailedDownload",
    "MemoryQueueStore",
    "QueueItem",
    "QueueStore",
    "SQLiteQueueStore",
    "UnitOfWork",
    "create_store",
    "create_store_from_settings",
]
