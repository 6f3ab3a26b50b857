"""Ask a Kavita server to rescan the library that downloads land in."""

from __future__ import annotations

import asyncio
import logging

import aiohttp
import orjson

from archiver.utils.settings import mask_url

logger = logging.getLogger(__name__)


class KavitaClient:
    """Authenticate as a Kavita plugin and trigger library scans.

    The plugin token is fetched lazily and cached; a scan answered with 401
    fetches a fresh token once and retries. Scans are best effort: failures
    are logged and reported as False, never raised.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        api_key: str | None = None,
        plugin_name: str = "Downloader",
        library_id: str | None = None,
        force_scan: bool = False,
        scan_delay: float = 15.0,
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/") if base_url else None
        self._api_key = api_key or None
        self._plugin_name = plugin_name
        self._library_id = library_id or None
        self._force_scan = force_scan
        self._scan_delay = scan_delay
        self._timeout = timeout
        self._session = session
        self._own_session = session is None
        self._token: str | None = None

    @classmethod
    def from_settings(cls, settings, **kwargs) -> KavitaClient:
        return cls(
            settings.KAVITA_URL,
            api_key=settings.KAVITA_API_KEY,
            plugin_name=settings.KAVITA_PLUGIN_NAME,
            library_id=settings.KAVITA_LIBRARY_ID,
            force_scan=settings.KAVITA_FORCE_SCAN,
            scan_delay=settings.KAVITA_SCAN_DELAY,
            timeout=settings.KAVITA_TIMEOUT,
            **kwargs,
        )

    @property
    def enabled(self) -> bool:
        return None not in (self._base_url, self._api_key, self._library_id)

    @property
    def token(self) -> str | None:
        return self._token

    async def authenticate(self) -> str | None:
        """Exchange the API key for a plugin token. Returns None on failure."""
        if self._base_url is None or self._api_key is None:
            return None

        url = f"{self._base_url}/api/Plugin/authenticate"
        params = {"apiKey": self._api_key, "pluginName": self._plugin_name}
        try:
            session = self._get_session()
            async with session.post(url, params=params, headers={"Accept": "text/plain"}) as resp:
                if not 200 <= resp.status < 300:
                    logger.warning(
                        "Kavita authentication at %s rejected: HTTP %d",
                        mask_url(self._base_url),
                        resp.status,
                    )
                    return None
                body = await resp.read()
            payload = orjson.loads(body)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Kavita authentication at %s failed: %s", mask_url(self._base_url), exc)
            return None

        token = payload.get("token") if isinstance(payload, dict) else None
        if not token:
            logger.warning("Kavita authentication at %s returned no token", mask_url(self._base_url))
            return None
        logger.debug("Obtained Kavita token")
        self._token = token
        return token

    async def scan_library(
        self,
        library_id: str | None = None,
        *,
        force: bool | None = None,
        wait: bool = True,
    ) -> bool:
        """Request a scan of `library_id` (the configured library by default).

        With `wait`, sleeps for the configured scan delay after the request so
        callers can expect the new files to be indexed.
        """
        library_id = library_id or self._library_id
        if self._base_url is None or self._api_key is None or library_id is None:
            return False
        force = self._force_scan if force is None else force

        ok = await self._post_scan(library_id, force)
        if wait and self._scan_delay > 0:
            await asyncio.sleep(self._scan_delay)
        return ok

    async def _post_scan(self, library_id: str, force: bool) -> bool:
        url = f"{self._base_url}/api/Library/scan"
        params = {"libraryId": library_id, "force": "true" if force else "false"}

        for attempt in (1, 2):
            token = self._token or await self.authenticate()
            if token is None:
                return False
            headers = {"Authorization": f"Bearer {token}", "accept": "*/*"}
            try:
                session = self._get_session()
                async with session.post(url, params=params, headers=headers) as resp:
                    status = resp.status
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Kavita scan of library %s failed: %s", library_id, exc)
                return False

            if 200 <= status < 300:
                logger.info("Kavita scan of library %s requested", library_id)
                return True
            if status == 401 and attempt == 1:
                # token expired
                self._token = None
                continue
            logger.warning("Kavita scan of library %s rejected: HTTP %d", library_id, status)
            return False
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

    def __repr__(self) -> str:
        return f"<KavitaClient {mask_url(self._base_url)} library={self._library_id}>"


__all__ = ["KavitaClient"]
