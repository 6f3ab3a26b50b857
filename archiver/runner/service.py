from __future__ import annotations

import asyncio
import contextlib
import logging
import signal as _signal

from archiver import signals
from archiver.handlers.registry import HandlerRegistry
from archiver.kavita import KavitaClient
from archiver.notify import NotificationPusher
from archiver.relay import RelayClient
from archiver.settings import Settings
from archiver.stats import StatsCollector
from archiver.store import QueueStore, create_store_from_settings
from archiver.worker import PassReport, QueueWorker

logger = logging.getLogger(__name__)


class ArchiverService:
    """Owns the process-wide collaborators and their lifecycle.

    Components are created on `start()` unless injected, handed to the worker
    by reference, and released on `close()` in reverse order. Commands that do
    not download (enqueue, listing, health) never build the worker, so they
    work without a destination root.
    With Kavita configured, each completed download requests a library scan.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: QueueStore | None = None,
        registry: HandlerRegistry | None = None,
        relay: RelayClient | None = None,
        pusher: NotificationPusher | None = None,
        kavita: KavitaClient | None = None,
        signal_registry: signals.SignalRegistry | None = None,
    ) -> None:
        self.settings = settings
        self._store = store
        self._registry = registry
        self._relay = relay
        self._pusher = pusher
        self._kavita = kavita
        self._signals = signal_registry or signals.signals_registry
        self._worker: QueueWorker | None = None
        self.stats = StatsCollector()
        self._started = False
        self._closed = False

    async def start(self) -> None:
        """Create missing components, load handlers and start the relay drain task."""
        if self._started:
            return
        s = self.settings

        if self._store is None:
            self._store = create_store_from_settings(s)
        if self._registry is None:
            self._registry = HandlerRegistry()
        if not self._registry.is_frozen:
            self._registry.initialize(s.PLUGIN_DIRECTORY, builtins=s.HANDLERS)
        if self._relay is None:
            self._relay = RelayClient.from_settings(s)
        if self._pusher is None:
            self._pusher = NotificationPusher.from_settings(s)
        if self._kavita is None:
            self._kavita = KavitaClient.from_settings(s)

        self._relay.start()
        self._started = True
        logger.debug("Service started with store=%r relay=%r", self._store, self._relay)

    # Components

    @property
    def store(self) -> QueueStore:
        return self._require(self._store, "store")

    @property
    def registry(self) -> HandlerRegistry:
        return self._require(self._registry, "registry")

    @property
    def relay(self) -> RelayClient:
        return self._require(self._relay, "relay")

    @property
    def pusher(self) -> NotificationPusher:
        return self._require(self._pusher, "pusher")

    @property
    def kavita(self) -> KavitaClient:
        return self._require(self._kavita, "kavita")

    @property
    def worker(self) -> QueueWorker:
        """The queue worker; built on first access.

        Raises:
            ConfigurationError: if the destination root is missing.
        """
        if self._worker is None:
            s = self.settings
            self._worker = QueueWorker(
                self.store,
                self.registry,
                self.relay,
                self.pusher,
                destination_root=s.require_destination_root(),
                max_threads=s.MAX_THREADS,
                interval=s.POLL_INTERVAL,
                signal_registry=self._signals,
            )
            self.stats.connect(self._signals, sender=self._worker)
            if self.kavita.enabled and s.KAVITA_SCAN_ON_COMPLETE:
                self._signals.connect("item_completed", self._scan_library, sender=self._worker)
        return self._worker

    # Running

    async def run(self, *, install_signal_handlers: bool = True) -> None:
        """Run the worker until SIGINT/SIGTERM or `stop()`."""
        await self.start()
        worker = self.worker

        installed: list[int] = []
        if install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (_signal.SIGINT, _signal.SIGTERM):
                with contextlib.suppress(NotImplementedError, RuntimeError):
                    loop.add_signal_handler(sig, self.stop)
                    installed.append(sig)

        try:
            await worker.run()
        finally:
            if installed:
                loop = asyncio.get_running_loop()
                for sig in installed:
                    loop.remove_signal_handler(sig)

    async def run_once(self) -> PassReport:
        await self.start()
        return await self.worker.run_once()

    def stop(self) -> None:
        if self._worker is not None:
            logger.info("Shutdown requested")
            self._worker.stop()

    async def close(self) -> None:
        """Release components in reverse order of creation. Idempotent."""
        if self._closed:
            return
        self._closed = True

        if self._worker is not None:
            self._worker.stop()
            self.stats.disconnect()
            self._signals.disconnect("item_completed", self._scan_library, sender=self._worker)
            if logger.isEnabledFor(logging.INFO) and self.stats.get_stats():
                logger.info("Worker stats:\n%s", self.stats.log_stats())

        for name, component in (
            ("kavita", self._kavita),
            ("pusher", self._pusher),
            ("relay", self._relay),
            ("store", self._store),
        ):
            if component is None:
                continue
            try:
                await component.close()
            except Exception:
                logger.exception("Error closing %s", name)

    async def _scan_library(self, sender, **kwargs) -> None:
        await self.kavita.scan_library(wait=False)

    async def __aenter__(self) -> ArchiverService:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False

    @staticmethod
    def _require(component, name: str):
        if component is None:
            raise RuntimeError(f"ArchiverService not started: no {name}")
        return component


__all__ = ["ArchiverService"]
