from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import asdict, dataclass
from pathlib import Path

from archiver import signals
from archiver.handlers.base import DownloadHandler, DownloadResult
from archiver.handlers.registry import HandlerRegistry
from archiver.notify import TAG_FAILURE, TAG_SUCCESS, NotificationPusher
from archiver.relay import RelayClient
from archiver.settings import ConfigurationError
from archiver.store.base import QueueItem, QueueStore, UnitOfWork
from archiver.utils.url import InvalidUrl

logger = logging.getLogger(__name__)

SOURCE = "Worker"

TITLE_SUCCESS = "Download Successful"
TITLE_FAILED = "Download Failed"
TITLE_ERROR = "Error Downloading"


@dataclass(slots=True)
class PassReport:
    """Counts for one drain of the queue."""

    seen: int = 0
    completed: int = 0
    failed: int = 0
    faulted: int = 0
    deferred: int = 0

    @property
    def processed(self) -> int:
        return self.completed + self.failed + self.faulted

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class QueueWorker:
    """Drains the download queue on a fixed interval.

    Responsibilities
        - Snapshot the queue and process items one at a time, oldest first.
        - Resolve each URL through the HandlerRegistry and invoke the handler.
        - Stage queue removals and failure records in a UnitOfWork; commit per pass.
        - Report every outcome through the relay and the notification pusher.

    Outcomes per item
        - no handler        -> failure record, Warning relay event
        - handler success   -> item removed, Information relay event
        - handler failure   -> failure record with the handler's message, Error relay event
        - handler exception -> failure record with the exception text, Critical relay
          event, staged changes saved immediately

    Every outcome removes the item from the queue. A single item never stops
    the loop; only `stop()` or task cancellation ends `run()`. Outcomes staged before a
    cancellation are still saved.
    """

    __slots__ = (
        "_store",
        "_registry",
        "_relay",
        "_pusher",
        "_destination_root",
        "_max_threads",
        "_interval",
        "_stop_event",
        "_running",
        "signals",
    )

    def __init__(
        self,
        store: QueueStore,
        registry: HandlerRegistry,
        relay: RelayClient,
        pusher: NotificationPusher,
        *,
        destination_root: str | Path | None,
        max_threads: int = 10,
        interval: float = 10.0,
        signal_registry: signals.SignalRegistry | None = None,
    ) -> None:
        """Initialize the worker.

        Raises:
            ConfigurationError: if `destination_root` is unset or not an existing directory.
            ValueError: if `max_threads` < 1 or `interval` < 0.
        """
        if not destination_root:
            raise ConfigurationError("Destination root is not configured")
        root = Path(destination_root)
        if not root.is_dir():
            raise ConfigurationError(f"Destination root {root} does not exist or is not a directory")
        if isinstance(max_threads, bool) or not isinstance(max_threads, int) or max_threads < 1:
            raise ValueError(f"max_threads must be an int >= 1, got {max_threads!r}")
        if interval < 0:
            raise ValueError(f"interval must be >= 0, got {interval!r}")

        self._store = store
        self._registry = registry
        self._relay = relay
        self._pusher = pusher
        self._destination_root = str(root)
        self._max_threads = max_threads
        self._interval = float(interval)
        self._stop_event = asyncio.Event()
        self._running = False
        self.signals = (signal_registry or signals.signals_registry).for_sender(self)

    @property
    def destination_root(self) -> str:
        return self._destination_root

    @property
    def max_threads(self) -> int:
        return self._max_threads

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request a graceful stop; the item in flight finishes first."""
        self._stop_event.set()

    async def run(self) -> None:
        """Run passes every `interval` seconds until `stop()` or cancellation."""
        if self._running:
            raise RuntimeError("QueueWorker is already running")
        self._running = True

        await self._relay.information(SOURCE, "Background download worker started successfully")
        await self.signals.send_async("worker_started")

        try:
            while not self.stopping:
                if await self._wait_interval():
                    break
                try:
                    await self.run_once()
                except Exception as exc:
                    logger.exception("Worker pass failed")
                    await self._relay.critical(SOURCE, f"Worker pass failed: {exc}")
        finally:
            self._running = False
            logger.info("Download worker stopped")
            await self.signals.send_async("worker_stopped")

    async def run_once(self) -> PassReport:
        """Process a snapshot of the queue once and commit the results."""
        report = PassReport()
        await self._relay.debug(SOURCE, "Checking for items to download...")

        items = await self._store.list_queued()
        report.seen = len(items)
        if items:
            await self._relay.information(SOURCE, f"Found {len(items)} items in download queue")
        await self.signals.send_async("pass_started", items=len(items))

        uow = self._store.unit_of_work()
        try:
            for index, item in enumerate(items):
                if self.stopping:
                    report.deferred = len(items) - index
                    logger.info("Stop requested, leaving %d items queued", report.deferred)
                    break
                await self._process(item, uow, report)
        except BaseException:
            # Outcomes already relayed must not be downloaded again
            await self._save_partial(uow)
            raise

        await uow.commit()

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Pass finished: %s", report.to_dict())
        await self.signals.send_async("pass_finished", report=report)
        return report

    async def _process(self, item: QueueItem, uow: UnitOfWork, report: PassReport) -> None:
        url = item.url
        await self._relay.information(SOURCE, f"Starting download: {url}")
        await self.signals.send_async("item_started", item=item)

        reason = None
        try:
            handler = self._registry.resolve(url)
        except InvalidUrl as exc:
            logger.warning("Invalid queue URL #%d %r: %s", item.id, url, exc)
            handler = None
            reason = exc

        if handler is None:
            message = f"No handler found for {url}"
            if reason is not None:
                message = f"{message} ({reason})"
            await self._relay.warning(SOURCE, f"No download handler found for URL: {url}")
            await self._pusher.notify(TITLE_FAILED, message, TAG_FAILURE)
            uow.add_failed(url, message)
            uow.remove_queued(item)
            report.failed += 1
            await self.signals.send_async("item_failed", item=item, message=message)
            return

        await self._relay.debug(SOURCE, f"Using download handler: {type(handler).__name__}")

        try:
            result = await self._invoke(handler, url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.exception("Handler %s raised for %s", type(handler).__name__, url)
            await self._relay.critical(SOURCE, f"Exception during download: {message}")
            await self._pusher.notify(TITLE_ERROR, message, TAG_FAILURE)
            uow.add_failed(url, message)
            uow.remove_queued(item)
            report.faulted += 1
            await self._save_partial(uow)
            await self.signals.send_async("item_failed", item=item, message=message, exception=exc)
            return

        if result.success:
            await self._relay.information(SOURCE, f"Download completed successfully: {result.message}")
            await self._pusher.notify(TITLE_SUCCESS, result.message, TAG_SUCCESS)
            uow.remove_queued(item)
            report.completed += 1
            await self.signals.send_async("item_completed", item=item, result=result)
        else:
            await self._relay.error(SOURCE, f"Download failed: {result.message}")
            await self._pusher.notify(TITLE_FAILED, result.message, TAG_FAILURE)
            uow.add_failed(url, result.message)
            uow.remove_queued(item)
            report.failed += 1
            await self.signals.send_async("item_failed", item=item, message=result.message)

    async def _invoke(self, handler: DownloadHandler, url: str) -> DownloadResult:
        if inspect.iscoroutinefunction(handler.download):
            result = await handler.download(url, self._destination_root, self._max_threads)
        else:
            result = await asyncio.to_thread(
                handler.download, url, self._destination_root, self._max_threads
            )
            if inspect.isawaitable(result):
                result = await result

        if not isinstance(result, DownloadResult):
            raise TypeError(
                f"{type(handler).__name__}.download() returned {type(result).__name__}, "
                "expected DownloadResult"
            )
        return result

    async def _save_partial(self, uow: UnitOfWork) -> None:
        try:
            await asyncio.shield(uow.commit())
        except Exception:
            logger.exception("Saving partial results failed")

    async def _wait_interval(self) -> bool:
        """Sleep for the interval; True if `stop()` was called meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
        except TimeoutError:
            return False
        return True


__all__ = ["PassReport", "QueueWorker", "SOURCE"]
