"""Base class for handlers that resolve a page into a set of files to fetch."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path

import aiohttp

from archiver.handlers.base import DownloadResult
from archiver.utils.fs import safe_relative_path

logger = logging.getLogger(__name__)

FileSpec = tuple[str, str]  # (file url, path relative to the handler's directory)


class FileSetHandler(ABC):
    """Fetch every file behind a URL with bounded concurrency.

    Subclasses implement `collect()` (the site-specific part) and usually set
    `subdirectory`; `download()` does the transfer:

      - files land in `destination_root/subdirectory/<relative path>`
      - at most `max_threads` transfers run at once
      - files that already exist are skipped unless `overwrite` is set
      - any collect or fetch error yields `DownloadResult(False, ...)`

    Override `finalize()` to post-process the written files (e.g. zip a chapter).
    """

    subdirectory: str = ""
    overwrite: bool = False
    timeout: float = 180.0
    headers: dict[str, str] = {}
    chunk_size: int = 64 * 1024

    @abstractmethod
    async def collect(self, session: aiohttp.ClientSession, url: str) -> list[FileSpec]:
        """Return the `(file_url, relative_path)` pairs to download for `url`."""

    async def finalize(self, target: Path, written: list[Path]) -> None:
        return None

    async def download(self, url: str, destination_root: str, max_threads: int) -> DownloadResult:
        target = Path(destination_root)
        if self.subdirectory:
            target = target / safe_relative_path(self.subdirectory)

        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout, headers=self.headers) as session:
            try:
                files = await self.collect(session, url)
            except (aiohttp.ClientError, TimeoutError, OSError, ValueError) as exc:
                logger.warning("Collecting files for %s failed: %s", url, exc)
                return DownloadResult.failed(f"Failed to read {url}: {exc}")

            if not files:
                return DownloadResult.failed(f"No files found at {url}")

            semaphore = asyncio.Semaphore(max(1, max_threads))
            results = await asyncio.gather(
                *(self._fetch(session, semaphore, file_url, target, rel) for file_url, rel in files),
                return_exceptions=True,
            )

        written: list[Path] = []
        errors: list[BaseException] = []
        for res in results:
            if isinstance(res, Path):
                written.append(res)
            elif isinstance(res, Exception):
                errors.append(res)
            elif isinstance(res, BaseException):
                raise res

        if errors:
            logger.warning("%d of %d files failed for %s", len(errors), len(files), url)
            return DownloadResult.failed(f"{len(errors)} of {len(files)} files failed: {errors[0]}")

        try:
            await self.finalize(target, written)
        except OSError as exc:
            return DownloadResult.failed(f"Post-processing {url} failed: {exc}")

        return DownloadResult.ok(f"Downloaded {len(files)} files to {target}")

    async def _fetch(
        self,
        session: aiohttp.ClientSession,
        semaphore: asyncio.Semaphore,
        file_url: str,
        target: Path,
        relative: str,
    ) -> Path:
        path = target / safe_relative_path(relative)
        if path.exists() and not self.overwrite:
            logger.debug("Skipping existing file %s", path)
            return path

        async with semaphore:
            async with session.get(file_url) as resp:
                resp.raise_for_status()
                data = await resp.read()

        await asyncio.to_thread(_write_file, path, data)
        logger.debug("Saved %s (%d bytes)", path, len(data))
        return path


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".part")
    tmp.write_bytes(data)
    tmp.replace(path)


__all__ = ["FileSetHandler", "FileSpec"]
