"""Contract every download handler implements."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, TypeVar, runtime_checkable

from archiver.utils.url import normalize_origin

H = TypeVar("H", bound=type)


@dataclass(frozen=True, slots=True)
class DownloadResult:
    """Outcome of one handler invocation."""

    success: bool
    message: str

    @classmethod
    def ok(cls, message: str = "Download complete") -> DownloadResult:
        return cls(True, message)

    @classmethod
    def failed(cls, message: str) -> DownloadResult:
        return cls(False, message)


@runtime_checkable
class DownloadHandler(Protocol):
    """Protocol that all download handlers must implement.

    Handlers are responsible for:
    - Downloading everything behind `url` into `destination_root` (ideally a
      sub directory such as "Manga" or "Videos")
    - Keeping their own concurrency at or below `max_threads`
    - Reporting ordinary failures as `DownloadResult(False, message)` instead of raising

    A handler is constructed with no arguments for every queue item and
    discarded afterwards, so it must not rely on state shared across calls.
    `download` may be `async def` or a plain function; plain functions are run
    in a worker thread.
    """

    def download(
        self, url: str, destination_root: str, max_threads: int
    ) -> DownloadResult | Awaitable[DownloadResult]:
        """Download the content at `url`.

        Args:
            url: The URL of the source to download
            destination_root: Root directory downloads are written under
            max_threads: Upper bound on concurrent transfers

        Returns:
            DownloadResult describing success or the reason for failure
        """
        ...


def download_handler(origin: str) -> Callable[[H], H]:
    """Class decorator declaring the origin (`scheme://host`) a handler serves.

    Example:
        @download_handler("https://manga.example")
        class MangaHandler:
            async def download(self, url, destination_root, max_threads):
                ...
    """
    normalized = normalize_origin(origin)

    def decorate(cls: H) -> H:
        if not inspect.isclass(cls):
            raise TypeError(f"@download_handler must decorate a class, got {cls!r}")
        cls.origin = normalized
        return cls

    return decorate


def handler_origin(handler_cls: type) -> str | None:
    """Return the origin a handler class declares, or None."""
    origin = getattr(handler_cls, "origin", None)
    return origin if isinstance(origin, str) and origin else None


def is_handler_class(obj: object) -> bool:
    """True for concrete classes that satisfy the DownloadHandler protocol."""
    return (
        inspect.isclass(obj)
        and not inspect.isabstract(obj)
        and issubclass(obj, DownloadHandler)
    )
