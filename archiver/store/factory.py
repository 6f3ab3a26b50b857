from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from archiver.store.base import QueueStore
from archiver.store.memory import MemoryQueueStore
from archiver.store.sqlite import SQLiteQueueStore

# Allowed keyword arguments per backend; used to filter `**kwargs` so that
# backend constructors only receive supported parameters.
_ALLOWED_KWARGS: dict[str, Iterable[str]] = {
    "memory": set(),
    "sqlite": {"path"},
}


def _filter_kwargs(allowed: Iterable[str], kwargs: Mapping[str, Any]) -> dict[str, Any]:
    """Return a new dict containing only keys from `kwargs` that are in `allowed`."""
    return {k: v for k, v in kwargs.items() if k in allowed}


def create_store(backend: str = "memory", **kwargs: Any) -> QueueStore:
    """Create a `QueueStore` for the given backend name.

    Args:
        backend: Backend identifier (case-insensitive): "memory" (default) or "sqlite".
        **kwargs: Keyword arguments; only backend-supported keys are forwarded.

    Raises:
        ValueError: If `backend` is unrecognized.
    """
    if not backend:
        backend = "memory"
    backend_name = backend.lower().strip()

    if backend_name == "memory":
        return MemoryQueueStore(**_filter_kwargs(_ALLOWED_KWARGS["memory"], kwargs))

    if backend_name == "sqlite":
        return SQLiteQueueStore(**_filter_kwargs(_ALLOWED_KWARGS["sqlite"], kwargs))

    supported = ", ".join(sorted(_ALLOWED_KWARGS.keys()))
    raise ValueError(f"Unknown store backend: {backend!r}. Supported: {supported}")


def create_store_from_settings(settings) -> QueueStore:
    return create_store(settings.STORE_BACKEND, path=settings.STORE_PATH)
