"""Shared fixtures: fake aiohttp sessions, handler classes, a fresh signal registry."""

from unittest.mock import AsyncMock, Mock

import pytest

from archiver.handlers import DownloadResult, download_handler
from archiver.signals import SignalRegistry


class FakeResponse:
    """Stand-in for an aiohttp response used as `async with session.post(...)`."""

    def __init__(self, status: int = 200, body: bytes = b"") -> None:
        self.status = status
        self.body = body

    async def read(self) -> bytes:
        return self.body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


@pytest.fixture
def fake_session():
    """Factory for a session whose post/get answer with `status` and `body` or raise `exc`."""

    def make(status: int = 200, exc: BaseException | None = None, body: bytes = b"") -> Mock:
        def respond(*args, **kwargs):
            if exc is not None:
                raise exc
            return FakeResponse(status, body)

        session = Mock()
        session.post = Mock(side_effect=respond)
        session.get = Mock(side_effect=respond)
        session.close = AsyncMock()
        return session

    return make


@pytest.fixture
def signal_registry():
    return SignalRegistry()


@download_handler("https://sitea.com")
class SiteAHandler:
    """Handler whose outcome is set per test through class attributes."""

    result = DownloadResult(True, "saved")
    calls: list[tuple[str, str, int]] = []

    async def download(self, url, destination_root, max_threads):
        type(self).calls.append((url, destination_root, max_threads))
        return type(self).result


@pytest.fixture
def site_a_handler():
    SiteAHandler.result = DownloadResult(True, "saved")
    SiteAHandler.calls = []
    return SiteAHandler
