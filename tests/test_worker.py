"""Tests for archiver.worker.QueueWorker

Tests focus on the following behavior:
- Per-item outcomes: success, handler failure, missing handler, handler exception
- Every outcome removes the item; failures leave a FailedDownload record
- Relay events and push notifications emitted for each outcome
- Stop semantics: in-flight item finishes, remaining items stay queued
- Signals/stats integration
"""

import asyncio
import threading
from unittest.mock import AsyncMock, Mock

import pytest

from archiver.handlers import DownloadResult, HandlerRegistry, download_handler
from archiver.notify import TAG_FAILURE, TAG_SUCCESS
from archiver.relay import Level, RelayClient
from archiver.settings import ConfigurationError
from archiver.stats import StatsCollector
from archiver.store import MemoryQueueStore
from archiver.worker import (
    SOURCE,
    TITLE_ERROR,
    TITLE_FAILED,
    TITLE_SUCCESS,
    PassReport,
    QueueWorker,
)


@download_handler("https://siteb.com")
class ExplodingHandler:
    async def download(self, url, destination_root, max_threads):
        raise RuntimeError("disk full")


@download_handler("https://sync.example")
class ThreadedHandler:
    threads: list[int] = []

    def download(self, url, destination_root, max_threads):
        type(self).threads.append(threading.get_ident())
        return DownloadResult(True, f"synced {url}")


@download_handler("https://slow.example")
class SlowHandler:
    async def download(self, url, destination_root, max_threads):
        await asyncio.sleep(10)
        return DownloadResult(True, "too late")


@download_handler("https://sloppy.example")
class SloppyHandler:
    async def download(self, url, destination_root, max_threads):
        return "ok"


@pytest.fixture
def store():
    return MemoryQueueStore()


@pytest.fixture
def relay():
    return RelayClient()


@pytest.fixture
def pusher():
    p = Mock()
    p.notify = AsyncMock(return_value=True)
    return p


@pytest.fixture
def registry(site_a_handler):
    r = HandlerRegistry()
    for cls in (site_a_handler, ExplodingHandler, ThreadedHandler, SloppyHandler, SlowHandler):
        r.register_type(cls)
    return r


@pytest.fixture
def worker(store, registry, relay, pusher, tmp_path, signal_registry):
    return QueueWorker(
        store,
        registry,
        relay,
        pusher,
        destination_root=tmp_path,
        max_threads=4,
        interval=0.01,
        signal_registry=signal_registry,
    )


def events(relay, level=None):
    return [
        m.message
        for m in relay.drain_recent(1000)
        if m.source == SOURCE and (level is None or m.level is level)
    ]


# Construction Tests


@pytest.mark.parametrize("root", [None, ""])
def test_missing_destination_root_is_configuration_error(store, registry, relay, pusher, root):
    with pytest.raises(ConfigurationError, match="not configured"):
        QueueWorker(store, registry, relay, pusher, destination_root=root)


def test_nonexistent_destination_root_is_configuration_error(store, registry, relay, pusher, tmp_path):
    with pytest.raises(ConfigurationError, match="does not exist"):
        QueueWorker(store, registry, relay, pusher, destination_root=tmp_path / "nope")


@pytest.mark.parametrize("kwargs", [{"max_threads": 0}, {"max_threads": True}, {"interval": -1}])
def test_invalid_limits_raise(store, registry, relay, pusher, tmp_path, kwargs):
    with pytest.raises(ValueError):
        QueueWorker(store, registry, relay, pusher, destination_root=tmp_path, **kwargs)


# Outcome Tests


@pytest.mark.asyncio
async def test_handler_failure_is_recorded(worker, store, relay, pusher, site_a_handler):
    site_a_handler.result = DownloadResult(False, "403")
    await store.enqueue("https://siteA.com/x")

    report = await worker.run_once()

    assert report.failed == 1
    assert await store.list_queued() == []
    [record] = await store.list_failed()
    assert (record.url, record.error_message) == ("https://siteA.com/x", "403")
    assert "Download failed: 403" in events(relay, Level.ERROR)
    pusher.notify.assert_awaited_once_with(TITLE_FAILED, "403", TAG_FAILURE)


@pytest.mark.asyncio
async def test_unknown_origin_is_recorded_without_invoking_handlers(
    worker, store, relay, pusher, site_a_handler
):
    await store.enqueue("https://unknown.example/x")

    report = await worker.run_once()

    assert report.failed == 1
    assert site_a_handler.calls == []
    [record] = await store.list_failed()
    assert record.error_message == "No handler found for https://unknown.example/x"
    assert events(relay, Level.WARNING) == [
        "No download handler found for URL: https://unknown.example/x"
    ]
    pusher.notify.assert_awaited_once_with(
        TITLE_FAILED, "No handler found for https://unknown.example/x", TAG_FAILURE
    )


@pytest.mark.asyncio
async def test_invalid_url_is_treated_as_missing_handler(worker, store):
    await store.enqueue("not a url")

    report = await worker.run_once()

    assert report.failed == 1
    [record] = await store.list_failed()
    assert record.error_message.startswith("No handler found for not a url (")
    assert "Invalid URL format" in record.error_message


@pytest.mark.asyncio
async def test_success_removes_item_without_failure(worker, store, relay, pusher, site_a_handler, tmp_path):
    await store.enqueue("https://sitea.com/gallery/1")

    report = await worker.run_once()

    assert report == PassReport(seen=1, completed=1)
    assert await store.count_queued() == 0
    assert await store.count_failed() == 0
    assert site_a_handler.calls == [("https://sitea.com/gallery/1", str(tmp_path), 4)]
    assert "Download completed successfully: saved" in events(relay, Level.INFORMATION)
    assert "Using download handler: SiteAHandler" in events(relay, Level.DEBUG)
    pusher.notify.assert_awaited_once_with(TITLE_SUCCESS, "saved", TAG_SUCCESS)


@pytest.mark.asyncio
async def test_handler_exception_is_recorded_and_pass_continues(
    worker, store, relay, pusher, site_a_handler
):
    await store.enqueue("https://siteb.com/boom")
    await store.enqueue("https://sitea.com/fine")

    report = await worker.run_once()

    assert (report.faulted, report.completed) == (1, 1)
    assert await store.count_queued() == 0
    [record] = await store.list_failed()
    assert (record.url, record.error_message) == ("https://siteb.com/boom", "disk full")
    assert events(relay, Level.CRITICAL) == ["Exception during download: disk full"]
    pusher.notify.assert_any_await(TITLE_ERROR, "disk full", TAG_FAILURE)


@pytest.mark.asyncio
async def test_handler_exception_saves_results_immediately(worker, store, signal_registry):
    await store.enqueue("https://siteb.com/boom")
    await store.enqueue("https://sitea.com/fine")
    seen = []

    async def on_item_started(sender, item=None, **kwargs):
        if item.url.startswith("https://sitea.com"):
            seen.append((await store.count_queued(), await store.count_failed()))

    signal_registry.connect("item_started", on_item_started)

    await worker.run_once()

    assert seen == [(1, 1)]


@pytest.mark.asyncio
async def test_sync_handler_runs_in_thread(worker, store, relay):
    ThreadedHandler.threads = []
    await store.enqueue("https://sync.example/1")

    report = await worker.run_once()

    assert report.completed == 1
    assert ThreadedHandler.threads and ThreadedHandler.threads[0] != threading.get_ident()
    assert "Download completed successfully: synced https://sync.example/1" in events(relay)


@pytest.mark.asyncio
async def test_wrong_return_type_is_a_fault(worker, store):
    await store.enqueue("https://sloppy.example/1")

    report = await worker.run_once()

    assert report.faulted == 1
    [record] = await store.list_failed()
    assert "expected DownloadResult" in record.error_message


@pytest.mark.asyncio
async def test_empty_queue_only_checks(worker, relay, pusher):
    report = await worker.run_once()

    assert report.seen == 0
    assert events(relay) == ["Checking for items to download..."]
    pusher.notify.assert_not_awaited()


@pytest.mark.asyncio
async def test_items_processed_oldest_first(worker, store, relay):
    for n in range(3):
        await store.enqueue(f"https://sitea.com/{n}")

    await worker.run_once()

    started = [m for m in events(relay) if m.startswith("Starting download")]
    assert started == [f"Starting download: https://sitea.com/{n}" for n in range(3)]
    assert "Found 3 items in download queue" in events(relay, Level.INFORMATION)


# Stop / Loop Tests


@pytest.mark.asyncio
async def test_stop_mid_pass_leaves_remaining_items_queued(worker, store, signal_registry):
    for n in range(3):
        await store.enqueue(f"https://sitea.com/{n}")

    async def stop_after_first(sender, **kwargs):
        sender.stop()

    signal_registry.connect("item_completed", stop_after_first)

    report = await worker.run_once()

    assert (report.completed, report.deferred) == (1, 2)
    assert [i.url for i in await store.list_queued()] == ["https://sitea.com/1", "https://sitea.com/2"]


@pytest.mark.asyncio
async def test_run_until_stopped(worker, store, relay, signal_registry):
    await store.enqueue("https://sitea.com/1")
    lifecycle = []

    async def on_started(sender, **kwargs):
        lifecycle.append("started")

    async def on_pass_finished(sender, report=None, **kwargs):
        lifecycle.append(report.processed)
        sender.stop()

    async def on_stopped(sender, **kwargs):
        lifecycle.append("stopped")

    signal_registry.connect("worker_started", on_started)
    signal_registry.connect("pass_finished", on_pass_finished)
    signal_registry.connect("worker_stopped", on_stopped)

    await worker.run()

    assert lifecycle == ["started", 1, "stopped"]
    assert worker.is_running is False
    assert events(relay)[0] == "Background download worker started successfully"


@pytest.mark.asyncio
async def test_stop_before_first_pass(worker, store):
    await store.enqueue("https://sitea.com/1")
    worker.stop()

    await worker.run()

    assert await store.count_queued() == 1


@pytest.mark.asyncio
async def test_pass_errors_are_relayed_and_loop_continues(worker, store, relay, signal_registry):
    store.list_queued = AsyncMock(side_effect=[RuntimeError("db locked"), []])

    async def on_pass_finished(sender, **kwargs):
        sender.stop()

    signal_registry.connect("pass_finished", on_pass_finished)

    await worker.run()

    assert store.list_queued.await_count == 2
    assert events(relay, Level.CRITICAL) == ["Worker pass failed: db locked"]


@pytest.mark.asyncio
async def test_run_twice_raises(worker):
    worker._running = True
    with pytest.raises(RuntimeError, match="already running"):
        await worker.run()


# Stats Tests


@pytest.mark.asyncio
async def test_stats_follow_worker_signals(worker, store, signal_registry, site_a_handler):
    stats = StatsCollector()
    stats.connect(signal_registry, sender=worker)
    await store.enqueue("https://sitea.com/ok")
    await store.enqueue("https://siteb.com/boom")
    await store.enqueue("https://unknown.example/x")

    await worker.run_once()

    assert stats.get_value("passes") == 1
    assert stats.get_value("items/started") == 3
    assert stats.get_value("items/completed") == 1
    assert stats.get_value("items/failed") == 2
    assert stats.get_value("items/failed/exception/RuntimeError") == 1


def test_pass_report_to_dict():
    report = PassReport(seen=4, completed=1, failed=1, faulted=1, deferred=1)

    assert report.processed == 3
    assert report.to_dict() == {"seen": 4, "completed": 1, "failed": 1, "faulted": 1, "deferred": 1}


# Cancellation Tests


@pytest.mark.asyncio
async def test_cancelled_pass_keeps_finished_outcomes(worker, store, relay, signal_registry, site_a_handler):
    site_a_handler.result = DownloadResult(False, "403")
    await store.enqueue("https://sitea.com/a")
    await store.enqueue("https://slow.example/b")
    slow_started = asyncio.Event()

    async def on_item_started(sender, item=None, **kwargs):
        if item.url.startswith("https://slow.example"):
            slow_started.set()

    signal_registry.connect("item_started", on_item_started)

    task = asyncio.create_task(worker.run_once())
    await slow_started.wait()
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert "Download failed: 403" in events(relay, Level.ERROR)
    assert [i.url for i in await store.list_queued()] == ["https://slow.example/b"]
    [record] = await store.list_failed()
    assert (record.url, record.error_message) == ("https://sitea.com/a", "403")
