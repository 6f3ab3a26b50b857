from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

UNKNOWN_ERROR = "unknown error"


@dataclass(frozen=True, slots=True)
class QueueItem:
    """One pending download request."""

    id: int
    url: str


@dataclass(frozen=True, slots=True)
class FailedDownload:
    """A request that could not be completed; kept until an operator acts on it."""

    id: int
    url: str
    error_message: str


def validate_url(url: object) -> str:
    if not isinstance(url, str) or not url.strip():
        raise ValueError("Queue URL cannot be empty")
    return url.strip()


class UnitOfWork:
    """Changes staged during one worker pass, applied together on `commit()`.

    After a successful commit the staged changes are cleared; when `commit()`
    raises they are kept so the caller can retry.
    """

    __slots__ = ("_store", "_removals", "_failures")

    def __init__(self, store: QueueStore) -> None:
        self._store = store
        self._removals: list[int] = []
        self._failures: list[tuple[str, str]] = []

    def remove_queued(self, item: QueueItem | int) -> None:
        item_id = item.id if isinstance(item, QueueItem) else int(item)
        if item_id not in self._removals:
            self._removals.append(item_id)

    def add_failed(self, url: str, message: str | None) -> None:
        text = (message or "").strip() or UNKNOWN_ERROR
        self._failures.append((url, text))

    @property
    def pending(self) -> int:
        return len(self._removals) + len(self._failures)

    async def commit(self) -> None:
        if not self.pending:
            return
        await self._store._apply(list(self._removals), list(self._failures))
        self._removals.clear()
        self._failures.clear()

    def discard(self) -> None:
        self._removals.clear()
        self._failures.clear()

    async def __aenter__(self) -> UnitOfWork:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is None:
            await self.commit()
        return False


class QueueStore(ABC):
    """Persistent download queue plus the failed-download log.

    Producers `enqueue()` URLs; the worker lists the queue and records its
    results through a `UnitOfWork`. Operators inspect and retry failures.

    Semantics:
      - `list_queued()` returns items oldest first (ascending id).
      - ids are never reused; a retried failure becomes a new queue item.
      - `_apply()` performs removals and failure inserts atomically.
    """

    @abstractmethod
    async def enqueue(self, url: str) -> QueueItem:
        """Add `url` to the queue. Raises ValueError for an empty URL."""
        ...

    @abstractmethod
    async def list_queued(self) -> list[QueueItem]: ...

    @abstractmethod
    async def count_queued(self) -> int: ...

    @abstractmethod
    async def list_failed(self) -> list[FailedDownload]: ...

    @abstractmethod
    async def count_failed(self) -> int: ...

    @abstractmethod
    async def remove_failed(self, failed_id: int) -> bool:
        """Delete a failure record; False if it did not exist."""
        ...

    @abstractmethod
    async def retry_failed(self, failed_id: int) -> QueueItem | None:
        """Re-enqueue a failed URL as a new item and drop the failure record."""
        ...

    @abstractmethod
    async def _apply(self, removals: list[int], failures: list[tuple[str, str]]) -> None:
        """Atomically delete queue ids in `removals` and insert `(url, message)` failures."""
        ...

    @abstractmethod
    async def close(self) -> None: ...

    def unit_of_work(self) -> UnitOfWork:
        return UnitOfWork(self)

    async def __aenter__(self) -> QueueStore:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"
