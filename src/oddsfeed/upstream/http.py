from __future__ import annotations

import asyncio
from typing import Any, Optional

import aiohttp
import structlog

from oddsfeed.utils.errors import FetchError

log = structlog.get_logger("http")

DEFAULT_HEADERS = {"Accept": "application/json", "User-Agent": "oddsfeed/0.1"}


class JsonHttpClient:
    """
    Thin aiohttp wrapper shared by the upstream REST clients.

    One ClientSession per client, opened lazily (or via start()) and closed by
    close(). Every failure (network, timeout, non-2xx, bad JSON) comes out as
    FetchError so callers have one thing to catch.
    """
    def __init__(self, base_url: str, *, timeout_s: float = 8.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._session = session
        self._owns_session = session is None

    async def start(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout, headers=DEFAULT_HEADERS)

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def get_json(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        await self.start()
        assert self._session is not None
        url = f"{self.base_url}/{path.lstrip('/')}"
        clean = {k: str(v) for k, v in (params or {}).items() if v is not None}
        try:
            async with self._session.get(url, params=clean) as resp:
                if resp.status != 200:
                    body = await _maybe_text(resp)
                    raise FetchError(f"{url} returned {resp.status}: {body[:200]}", status=resp.status)
                try:
                    return await resp.json(content_type=None)
                except ValueError as e:
                    raise FetchError(f"{url} returned invalid json: {e}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FetchError(f"{url} request failed: {e!r}") from e


async def _maybe_text(resp: aiohttp.ClientResponse) -> str:
    try:
        return await resp.text()
    except (aiohttp.ClientError, UnicodeDecodeError):
        return "<no body>"
