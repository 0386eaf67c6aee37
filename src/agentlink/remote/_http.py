"""Shared aiohttp plumbing for the backend clients."""

from __future__ import annotations

from typing import Any

import aiohttp

from agentlink.errors import RemoteHTTPError
from agentlink.logger import logger


class JsonHttpClient:
    """Small JSON-over-HTTP client around one lazily created ClientSession.

    Non-2xx responses raise :class:`RemoteHTTPError`; transport failures
    surface as the underlying ``aiohttp.ClientError`` or ``TimeoutError`` so
    the governor can classify them.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        bearer: str | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        headers = {"Accept": "application/json"}
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        if params:
            params = {k: str(v) for k, v in params.items()}

        session = self._get_session()
        async with session.request(
            method,
            url,
            json=json,
            params=params,
            headers=headers,
            timeout=self._timeout,
        ) as resp:
            if resp.status >= 400:
                body = await resp.text()
                logger.debug("Remote call failed", method=method, url=url, status=resp.status)
                raise RemoteHTTPError(resp.status, resp.reason or "", body, url=url)
            if resp.status == 204:
                return None
            text = await resp.text()
            if not text:
                return None
            return await resp.json(content_type=None)

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> Any:
        return await self.request("POST", path, **kwargs)
