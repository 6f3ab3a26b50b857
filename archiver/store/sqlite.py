import asyncio
import logging
import sqlite3
import threading
from pathlib import Path

from archiver.store.base import FailedDownload, QueueItem, QueueStore, validate_url

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS download_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS failed_downloads (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL,
    error_message TEXT NOT NULL
);
"""


class SQLiteQueueStore(QueueStore):
    """SQLite-backed store shared with external producers (API, CLI).

    Every call runs in a worker thread via `asyncio.to_thread`; a lock
    serializes access to the single connection. `_apply` and `retry_failed`
    each run in one transaction.
    """

    def __init__(self, path: str | Path = "archiver.db") -> None:
        self._path = str(path)
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = sqlite3.connect(
            self._path, check_same_thread=False
        )
        self._lock = threading.Lock()
        with self._conn:
            self._conn.executescript(SCHEMA)
        logger.debug("Opened queue store %s", self._path)

    @property
    def path(self) -> str:
        return self._path

    async def enqueue(self, url: str) -> QueueItem:
        url = validate_url(url)
        item_id = await self._run(self._insert_queue, url)
        logger.debug("Enqueued #%d %s", item_id, url)
        return QueueItem(item_id, url)

    async def list_queued(self) -> list[QueueItem]:
        rows = await self._run(self._fetch, "SELECT id, url FROM download_queue ORDER BY id")
        return [QueueItem(int(r[0]), r[1]) for r in rows]

    async def count_queued(self) -> int:
        rows = await self._run(self._fetch, "SELECT COUNT(*) FROM download_queue")
        return int(rows[0][0])

    async def list_failed(self) -> list[FailedDownload]:
        rows = await self._run(
            self._fetch, "SELECT id, url, error_message FROM failed_downloads ORDER BY id"
        )
        return [FailedDownload(int(r[0]), r[1], r[2]) for r in rows]

    async def count_failed(self) -> int:
        rows = await self._run(self._fetch, "SELECT COUNT(*) FROM failed_downloads")
        return int(rows[0][0])

    async def remove_failed(self, failed_id: int) -> bool:
        return await self._run(self._delete_failed, failed_id)

    async def retry_failed(self, failed_id: int) -> QueueItem | None:
        return await self._run(self._retry_failed, failed_id)

    async def _apply(self, removals: list[int], failures: list[tuple[str, str]]) -> None:
        await self._run(self._apply_sync, removals, failures)

    async def close(self) -> None:
        await asyncio.to_thread(self._close_sync)

    # Blocking helpers; called with the lock held

    async def _run(self, fn, *args):
        return await asyncio.to_thread(self._locked, fn, *args)

    def _locked(self, fn, *args):
        with self._lock:
            if self._conn is None:
                raise RuntimeError("Queue store is closed")
            return fn(self._conn, *args)

    @staticmethod
    def _fetch(conn: sqlite3.Connection, sql: str) -> list[tuple]:
        return conn.execute(sql).fetchall()

    @staticmethod
    def _insert_queue(conn: sqlite3.Connection, url: str) -> int:
        with conn:
            cur = conn.execute("INSERT INTO download_queue (url) VALUES (?)", (url,))
        return int(cur.lastrowid)

    @staticmethod
    def _delete_failed(conn: sqlite3.Connection, failed_id: int) -> bool:
        with conn:
            cur = conn.execute("DELETE FROM failed_downloads WHERE id = ?", (failed_id,))
        return cur.rowcount > 0

    @staticmethod
    def _retry_failed(conn: sqlite3.Connection, failed_id: int) -> QueueItem | None:
        with conn:
            row = conn.execute(
                "SELECT url FROM failed_downloads WHERE id = ?", (failed_id,)
            ).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM failed_downloads WHERE id = ?", (failed_id,))
            cur = conn.execute("INSERT INTO download_queue (url) VALUES (?)", (row[0],))
        return QueueItem(int(cur.lastrowid), row[0])

    @staticmethod
    def _apply_sync(
        conn: sqlite3.Connection, removals: list[int], failures: list[tuple[str, str]]
    ) -> None:
        with conn:
            conn.executemany("DELETE FROM download_queue WHERE id = ?", [(i,) for i in removals])
            conn.executemany(
                "INSERT INTO failed_downloads (url, error_message) VALUES (?, ?)", failures
            )

    def _close_sync(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __repr__(self) -> str:
        return f"<SQLiteQueueStore path={self._path!r}>"
