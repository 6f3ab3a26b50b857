import inspect
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

SUPPORTED_SIGNALS: list[str] = [
    # Worker lifecycle
    "worker_started",
    "worker_stopped",
    # One drain of the queue
    "pass_started",
    "pass_finished",
    # Queue item lifecycle
    "item_started",
    "item_completed",
    "item_failed",
]

Handler = Callable[..., Awaitable[object | None]]


class _HandlerRef:
    """A registered handler with its delivery priority and optional sender filter."""

    __slots__ = ("fn", "priority", "sender_filter")

    def __init__(self, fn: Handler, *, priority: int = 0, sender_filter: object = None) -> None:
        self.fn = fn
        self.priority = priority
        self.sender_filter = sender_filter

    def matches_sender(self, sender: object) -> bool:
        return self.sender_filter is None or self.sender_filter is sender


class SignalRegistry:
    """Central registry of async signal handlers.

    Handlers run sequentially in priority order (higher first). A handler that
    raises is logged and skipped unless the caller asks for exceptions to propagate,
    so observers (stats, dashboards) can never break the worker loop.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[_HandlerRef]] = {name: [] for name in SUPPORTED_SIGNALS}

    def connect(
        self,
        signal: str,
        handler: Handler,
        *,
        priority: int = 0,
        sender: object = None,
    ) -> None:
        """Register an async handler for `signal`.

        Args:
            signal: Name of the signal (must be in SUPPORTED_SIGNALS).
            handler: Async callable invoked as `await handler(sender, **kwargs)`.
            priority: Handlers with higher priority run earlier.
            sender: If provided, the handler only receives events for that exact sender.

        Raises:
            ValueError: if signal is unknown.
            TypeError: if handler is not an async function.
        """
        if signal not in self._handlers:
            raise ValueError(f"Unknown signal: {signal!r}")
        if not inspect.iscoroutinefunction(handler):
            raise TypeError("Signal handlers must be `async def` callables")

        for ref in self._handlers[signal]:
            if ref.fn == handler and ref.sender_filter is sender:
                return

        self._handlers[signal].append(_HandlerRef(handler, priority=priority, sender_filter=sender))
        self._handlers[signal].sort(key=lambda h: h.priority, reverse=True)

    def disconnect(self, signal: str, handler: Handler, *, sender: object = None) -> None:
        """Unregister `handler`; with `sender` only the registration for that sender."""
        if signal not in self._handlers:
            return
        self._handlers[signal] = [
            ref
            for ref in self._handlers[signal]
            if not (ref.fn == handler and (sender is None or ref.sender_filter is sender))
        ]

    def receivers(self, signal: str, sender: object = None) -> list[Handler]:
        return [ref.fn for ref in self._handlers.get(signal, []) if ref.matches_sender(sender)]

    async def send_async(
        self,
        signal: str,
        *,
        sender: object = None,
        raise_exceptions: bool = False,
        **kwargs: object,
    ) -> list[object]:
        """Emit `signal` to matching handlers and collect their non-None results."""
        results: list[object] = []
        for handler in self.receivers(signal, sender):
            try:
                res = await handler(sender, **kwargs)
            except Exception:
                logger.exception("Signal handler for %s failed", signal)
                if raise_exceptions:
                    raise
                continue
            if res is not None:
                results.append(res)
        return results

    def for_sender(self, sender: object) -> "SignalDispatcher":
        """Return a SignalDispatcher bound to `sender`."""
        return SignalDispatcher(self, sender)


class SignalDispatcher:
    """Sender-bound proxy over a SignalRegistry.

    `connect`/`disconnect` default their sender filter to the bound sender and
    `send_async` always emits as the bound sender.
    """

    def __init__(self, registry: SignalRegistry, sender: object) -> None:
        self._registry = registry
        self._sender = sender

    @property
    def registry(self) -> SignalRegistry:
        return self._registry

    def connect(self, signal: str, handler: Handler, *, priority: int = 0) -> None:
        self._registry.connect(signal, handler, priority=priority, sender=self._sender)

    def disconnect(self, signal: str, handler: Handler) -> None:
        self._registry.disconnect(signal, handler, sender=self._sender)

    async def send_async(
        self, signal: str, *, raise_exceptions: bool = False, **kwargs: object
    ) -> list[object]:
        return await self._registry.send_async(
            signal, sender=self._sender, raise_exceptions=raise_exceptions, **kwargs
        )


# === Global Instance ===
signals_registry = SignalRegistry()


__all__ = [
    "SignalRegistry",
    "SignalDispatcher",
    "signals_registry",
    "SUPPORTED_SIGNALS",
]
