"""Resilient status relay: local log first, then best-effort delivery to an observer.

Delivery never blocks or fails the caller for longer than the retry policy:

  - up to `max_retries` POST attempts, `retry_delay` seconds apart
  - after the last failed attempt the message is buffered and the circuit opens
  - while the circuit is open `send()` only buffers (no network I/O)
  - once `circuit_timeout` has elapsed the circuit closes and delivery resumes
  - a background task re-delivers buffered messages every `drain_interval`

The buffer holds at most `buffer_size` messages; the oldest is evicted first.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum

import aiohttp
import orjson
from yarl import URL

from archiver.utils.settings import mask_url

logger = logging.getLogger(__name__)

# Local emission; operators see every message here even when the observer is down.
console = logging.getLogger("archiver.relay.console")


class Level(str, Enum):
    DEBUG = "Debug"
    INFORMATION = "Information"
    WARNING = "Warning"
    ERROR = "Error"
    CRITICAL = "Critical"

    @classmethod
    def parse(cls, value: Level | str) -> Level:
        """Accept a Level, its wire value, or its name (any case); unknown -> INFORMATION."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        for level in cls:
            if text in (level.value.lower(), level.name.lower()):
                return level
        if text == "info":
            return cls.INFORMATION
        logger.debug("Unknown relay level %r, using Information", value)
        return cls.INFORMATION

    @property
    def logging_level(self) -> int:
        return _LOGGING_LEVELS[self]


_LOGGING_LEVELS = {
    Level.DEBUG: logging.DEBUG,
    Level.INFORMATION: logging.INFO,
    Level.WARNING: logging.WARNING,
    Level.ERROR: logging.ERROR,
    Level.CRITICAL: logging.CRITICAL,
}


@dataclass(frozen=True, slots=True)
class RelayMessage:
    level: Level
    source: str
    message: str
    timestamp: datetime

    def to_dict(self) -> dict[str, str]:
        return {
            "level": self.level.value,
            "source": self.source,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> bytes:
        return orjson.dumps(self.to_dict())


@dataclass(slots=True)
class CircuitState:
    is_open: bool = False
    opened_at: float | None = None


class RelayDeliveryError(Exception):
    """A single delivery attempt to the observer failed."""


class RelayClient:
    """Process-wide status sink shared by the worker and handlers.

    Usage:
        async with RelayClient("https://monitor/api/console") as relay:
            await relay.information("Worker", "Download complete")

    With no `url` the client only logs locally.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        circuit_timeout: float = 60.0,
        buffer_size: int = 1000,
        drain_interval: float = 5.0,
        request_timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")

        self._url = url or None
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._circuit_timeout = circuit_timeout
        self._buffer_size = buffer_size
        self._drain_interval = drain_interval
        self._request_timeout = request_timeout
        self._clock = clock

        self._session = session
        self._own_session = session is None

        # Guards _pending, _history, _circuit and _dropped
        self._lock = threading.Lock()
        self._pending: deque[RelayMessage] = deque(maxlen=buffer_size)
        self._history: deque[RelayMessage] = deque(maxlen=buffer_size)
        self._circuit = CircuitState()
        self._dropped = 0

        self._drain_task: asyncio.Task[None] | None = None
        self._closed = False

    @classmethod
    def from_settings(cls, settings, **kwargs) -> RelayClient:
        return cls(
            settings.RELAY_URL,
            max_retries=settings.RELAY_MAX_RETRIES,
            retry_delay=settings.RELAY_RETRY_DELAY,
            circuit_timeout=settings.RELAY_CIRCUIT_TIMEOUT,
            buffer_size=settings.RELAY_BUFFER_SIZE,
            drain_interval=settings.RELAY_DRAIN_INTERVAL,
            request_timeout=settings.RELAY_TIMEOUT,
            **kwargs,
        )

    # Public API

    async def send(self, level: Level | str, source: str, message: str) -> None:
        """Log `message` locally, then try to deliver it. Never raises."""
        msg = RelayMessage(Level.parse(level), str(source), str(message), datetime.now(UTC))
        console.log(msg.level.logging_level, "[%s] %s", msg.source, msg.message)

        with self._lock:
            self._history.append(msg)

        if self._url is None or self._closed:
            return

        if not self._allow_delivery():
            self._buffer(msg)
            return

        if not await self._deliver_with_retry(msg):
            self._buffer(msg)
            self._open_circuit()

    async def debug(self, source: str, message: str) -> None:
        await self.send(Level.DEBUG, source, message)

    async def information(self, source: str, message: str) -> None:
        await self.send(Level.INFORMATION, source, message)

    async def warning(self, source: str, message: str) -> None:
        await self.send(Level.WARNING, source, message)

    async def error(self, source: str, message: str) -> None:
        await self.send(Level.ERROR, source, message)

    async def critical(self, source: str, message: str) -> None:
        await self.send(Level.CRITICAL, source, message)

    def drain_recent(self, n: int = 100) -> list[RelayMessage]:
        """Return the last `n` messages sent (oldest first) for replay to a new observer."""
        if n <= 0:
            return []
        with self._lock:
            history = list(self._history)
        return history[-n:]

    async def is_healthy(self) -> bool:
        """Probe `<url>/health`. Returns False on any error, without a URL, or once closed."""
        if self._url is None or self._closed:
            return False
        try:
            session = self._get_session()
            async with session.get(str(URL(self._url) / "health")) as resp:
                return 200 <= resp.status < 300
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Relay health probe failed: %s", exc)
            return False

    async def flush(self) -> int:
        """Deliver buffered messages in order; return how many were delivered.

        The first message that still fails is put back together with the
        untried rest, ahead of anything buffered meanwhile, and the circuit opens.
        """
        if self._url is None or not self._allow_delivery():
            return 0

        with self._lock:
            batch = list(self._pending)
            self._pending.clear()
        if not batch:
            return 0

        delivered = 0
        try:
            for msg in batch:
                if not await self._deliver_with_retry(msg):
                    break
                delivered += 1
        finally:
            if delivered < len(batch):
                self._requeue(batch[delivered:])

        if delivered < len(batch):
            self._open_circuit()
        elif delivered:
            logger.info("Relay delivered %d buffered messages", delivered)
        return delivered

    # Lifecycle

    def start(self) -> None:
        """Start the background drain task (requires a running loop)."""
        if self._url is None or self._closed:
            return
        if self._drain_task is not None and not self._drain_task.done():
            return
        self._drain_task = asyncio.create_task(self._drain_loop(), name="relay-drain")

    async def close(self) -> None:
        """Stop draining and release the owned HTTP session. Idempotent."""
        if self._closed:
            return
        self._closed = True

        if self._drain_task is not None:
            self._drain_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._drain_task
            self._drain_task = None

        if self._session is not None and self._own_session:
            try:
                await self._session.close()
            except Exception:
                logger.exception("Error closing relay session")
        self._session = None

        pending = self.pending
        if pending:
            logger.warning("Relay closed with %d undelivered messages", pending)

    async def __aenter__(self) -> RelayClient:
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False

    # Introspection

    @property
    def url(self) -> str | None:
        return self._url

    @property
    def circuit(self) -> CircuitState:
        with self._lock:
            return replace(self._circuit)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._dropped

    def __repr__(self) -> str:
        return (
            f"RelayClient(url={mask_url(self._url)!r}, open={self._circuit.is_open}, "
            f"pending={len(self._pending)})"
        )

    # Internals

    def _allow_delivery(self) -> bool:
        """True when the circuit is closed, closing it first if the timeout elapsed."""
        with self._lock:
            if not self._circuit.is_open:
                return True
            opened_at = self._circuit.opened_at or 0.0
            if self._clock() - opened_at < self._circuit_timeout:
                return False
            self._circuit = CircuitState()
        logger.info("Relay circuit closed, resuming delivery")
        return True

    def _open_circuit(self) -> None:
        with self._lock:
            was_open = self._circuit.is_open
            self._circuit = CircuitState(is_open=True, opened_at=self._clock())
            pending = len(self._pending)
        if not was_open:
            logger.warning(
                "Relay circuit opened for %.0fs after %d failed attempts (%d buffered)",
                self._circuit_timeout,
                self._max_retries,
                pending,
            )

    def _buffer(self, msg: RelayMessage) -> None:
        with self._lock:
            if len(self._pending) == self._buffer_size:
                self._dropped += 1
            self._pending.append(msg)

    def _requeue(self, batch: list[RelayMessage]) -> None:
        with self._lock:
            combined = batch + list(self._pending)
            overflow = len(combined) - self._buffer_size
            if overflow > 0:
                self._dropped += overflow
            self._pending = deque(combined, maxlen=self._buffer_size)

    async def _deliver_with_retry(self, msg: RelayMessage) -> bool:
        for attempt in range(1, self._max_retries + 1):
            try:
                await self._deliver_once(msg)
                return True
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.debug(
                    "Relay delivery attempt %d/%d failed: %s", attempt, self._max_retries, exc
                )
            if attempt < self._max_retries and self._retry_delay > 0:
                await asyncio.sleep(self._retry_delay)
        return False

    async def _deliver_once(self, msg: RelayMessage) -> None:
        assert self._url is not None
        session = self._get_session()
        try:
            async with session.post(
                self._url,
                data=msg.to_json(),
                headers={"Content-Type": "application/json"},
            ) as resp:
                if resp.status >= 300:
                    raise RelayDeliveryError(f"observer returned HTTP {resp.status}")
        except (aiohttp.ClientError, TimeoutError, OSError) as exc:
            raise RelayDeliveryError(str(exc) or type(exc).__name__) from exc

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._request_timeout)
            )
            self._own_session = True
        return self._session

    async def _drain_loop(self) -> None:
        while True:
            await asyncio.sleep(self._drain_interval)
            try:
                await self.flush()
            except Exception:
                logger.exception("Relay drain pass failed")


__all__ = [
    "CircuitState",
    "Level",
    "RelayClient",
    "RelayDeliveryError",
    "RelayMessage",
]
