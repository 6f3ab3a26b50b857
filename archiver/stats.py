import logging
import math
from collections import defaultdict
from datetime import datetime
from threading import RLock

from archiver.signals import SignalRegistry

logger = logging.getLogger(__name__)


class StatsCollector:
    """Thread-safe counters for the download worker.

    `connect()` subscribes the collector to a worker's signals so counts stay
    current without the worker knowing about statistics.
    """

    def __init__(self) -> None:
        self._stats: dict[str, int | float | str] = defaultdict(int)
        self._lock = RLock()
        self._start_time: datetime | None = None
        self._subscriptions: list[tuple[SignalRegistry, str, object]] = []

    def inc_value(self, key: str, count: int = 1) -> None:
        """Increment counter (thread-safe). Coerces non-numeric to 0."""
        with self._lock:
            current = self._stats[key]
            if not isinstance(current, (int, float)):
                current = 0
            self._stats[key] = current + count

    def set_meta(self, key: str, value: str) -> None:
        """Set string metadata (thread-safe)."""
        if not isinstance(value, str):
            raise TypeError("set_meta accepts only str")
        with self._lock:
            self._stats[key] = value

    def get_value(
        self, key: str, default: int | float | str | None = None
    ) -> int | float | str | None:
        with self._lock:
            return self._stats.get(key, default)

    def get_stats(self) -> dict[str, int | float | str]:
        """Get all stats (snapshot)."""
        with self._lock:
            return dict(self._stats)

    # Signal handlers

    async def _on_worker_started(self, sender, **kwargs) -> None:
        with self._lock:
            self._start_time = datetime.now()
            self.set_meta("start_time", self._start_time.isoformat())

    async def _on_worker_stopped(self, sender, **kwargs) -> None:
        finish = datetime.now()
        with self._lock:
            self.set_meta("finish_time", finish.isoformat())
            if self._start_time:
                self._stats["elapsed_time_seconds"] = (finish - self._start_time).total_seconds()

    async def _on_pass_finished(self, sender, report=None, **kwargs) -> None:
        self.inc_value("passes")

    async def _on_item_started(self, sender, **kwargs) -> None:
        self.inc_value("items/started")

    async def _on_item_completed(self, sender, **kwargs) -> None:
        self.inc_value("items/completed")

    async def _on_item_failed(self, sender, exception=None, **kwargs) -> None:
        self.inc_value("items/failed")
        if exception is not None:
            self.inc_value(f"items/failed/exception/{type(exception).__name__}")

    def connect(self, registry: SignalRegistry, sender: object = None) -> None:
        """Subscribe to the worker signals emitted by `sender` on `registry`."""
        for signal, handler in (
            ("worker_started", self._on_worker_started),
            ("worker_stopped", self._on_worker_stopped),
            ("pass_finished", self._on_pass_finished),
            ("item_started", self._on_item_started),
            ("item_completed", self._on_item_completed),
            ("item_failed", self._on_item_failed),
        ):
            registry.connect(signal, handler, sender=sender)
            self._subscriptions.append((registry, signal, handler))

    def disconnect(self) -> None:
        for registry, signal, handler in self._subscriptions:
            registry.disconnect(signal, handler)
        self._subscriptions.clear()

    def log_stats(self) -> str:
        """Render collected stats, one `key: value` per line."""
        stats = self.get_stats()
        lines = []
        for key in sorted(stats):
            value = stats[key]
            if isinstance(value, float):
                value = f"{value:.6g}" if math.isfinite(value) else str(value)
            elif isinstance(value, int):
                value = f"{value:,}"
            lines.append(f"  {key}: {value}")
        return "\n".join(lines)
