import asyncio
import logging
from itertools import count

from archiver.store.base import FailedDownload, QueueItem, QueueStore, validate_url

logger = logging.getLogger(__name__)


class MemoryQueueStore(QueueStore):
    """In-process store for tests and one-off runs; contents die with the process.

    Concurrency:
      - Guarded by an `asyncio.Lock`; use from a single event loop.
      - Dicts keep insertion order, so listing is oldest first.
    """

    def __init__(self, **kwargs) -> None:
        if kwargs:
            keys = ", ".join(str(k) for k in kwargs)
            raise TypeError(f"Unexpected keyword argument(s) for MemoryQueueStore: {keys}")
        self._queue: dict[int, str] = {}
        self._failed: dict[int, FailedDownload] = {}
        self._queue_ids = count(1)
        self._failed_ids = count(1)
        self._lock = asyncio.Lock()
        self._closed = False

    async def enqueue(self, url: str) -> QueueItem:
        url = validate_url(url)
        async with self._lock:
            self._check_open()
            item = QueueItem(next(self._queue_ids), url)
            self._queue[item.id] = item.url
        logger.debug("Enqueued #%d %s", item.id, url)
        return item

    async def list_queued(self) -> list[QueueItem]:
        async with self._lock:
            self._check_open()
            return [QueueItem(i, u) for i, u in self._queue.items()]

    async def count_queued(self) -> int:
        async with self._lock:
            return len(self._queue)

    async def list_failed(self) -> list[FailedDownload]:
        async with self._lock:
            self._check_open()
            return list(self._failed.values())

    async def count_failed(self) -> int:
        async with self._lock:
            return len(self._failed)

    async def remove_failed(self, failed_id: int) -> bool:
        async with self._lock:
            self._check_open()
            return self._failed.pop(failed_id, None) is not None

    async def retry_failed(self, failed_id: int) -> QueueItem | None:
        async with self._lock:
            self._check_open()
            record = self._failed.pop(failed_id, None)
            if record is None:
                return None
            item = QueueItem(next(self._queue_ids), record.url)
            self._queue[item.id] = item.url
            return item

    async def _apply(self, removals: list[int], failures: list[tuple[str, str]]) -> None:
        async with self._lock:
            self._check_open()
            for item_id in removals:
                self._queue.pop(item_id, None)
            for url, message in failures:
                fid = next(self._failed_ids)
                self._failed[fid] = FailedDownload(fid, url, message)

    async def close(self) -> None:
        self._closed = True

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("Queue store is closed")

    def __repr__(self) -> str:
        return f"<MemoryQueueStore queued={len(self._queue)} failed={len(self._failed)}>"
