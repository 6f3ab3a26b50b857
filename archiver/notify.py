"""Push notifications to an ntfy-style endpoint."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

import aiohttp

from archiver.utils.settings import mask_url

logger = logging.getLogger(__name__)

TAG_SUCCESS = "white_check_mark"
TAG_FAILURE = "x"


class NotificationPusher:
    """POST a plain-text body with `Title`/`Tags` headers to the configured URL.

    Without a URL every call returns False; pushes are optional.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._url = url or None
        self._timeout = timeout
        self._session = session
        self._own_session = session is None

    @classmethod
    def from_settings(cls, settings, **kwargs) -> NotificationPusher:
        return cls(settings.NOTIFICATION_URL, timeout=settings.NOTIFICATION_TIMEOUT, **kwargs)

    @property
    def enabled(self) -> bool:
        return self._url is not None

    async def notify(self, title: str, body: str, tags: str | Iterable[str] = "") -> bool:
        """Send one notification. Returns True on a 2xx response; never raises."""
        if self._url is None:
            return False

        if not isinstance(tags, str):
            tags = ",".join(tags)
        headers = {"Title": title, "Content-Type": "text/plain; charset=utf-8"}
        if tags:
            headers["Tags"] = tags

        try:
            session = self._get_session()
            async with session.post(
                self._url, data=body.encode("utf-8"), headers=headers
            ) as resp:
                if 200 <= resp.status < 300:
                    return True
                logger.warning(
                    "Notification %r rejected by %s: HTTP %d", title, mask_url(self._url), resp.status
                )
                return False
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Notification %r to %s failed: %s", title, mask_url(self._url), exc)
            return False

    async def close(self) -> None:
        if self._session is not None and self._own_session:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout)
            )
            self._own_session = True
        return self._session


__all__ = ["NotificationPusher", "TAG_SUCCESS", "TAG_FAILURE"]
