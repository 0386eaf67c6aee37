"""Client for the local control API of a running agentlink service."""

from __future__ import annotations

from typing import Any

import aiohttp

from agentlink.errors import AgentLinkError


class ControlError(AgentLinkError):
    """The control API answered with an error, or no service is listening."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ControlClient:
    def __init__(self, base_url: str, *, timeout: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def _request(self, method: str, path: str, data: dict[str, Any] | None = None) -> Any:
        try:
            async with (
                aiohttp.ClientSession(timeout=self._timeout) as session,
                session.request(method, f"{self._base_url}{path}", json=data) as resp,
            ):
                body = await resp.json(content_type=None)
                if resp.status >= 400:
                    message = body.get("error") if isinstance(body, dict) else None
                    raise ControlError(message or f"HTTP {resp.status}", resp.status)
                return body
        except aiohttp.ClientConnectionError as exc:
            raise ControlError(
                f"agentlink is not running at {self._base_url} (start it with `agentlink run`)"
            ) from exc

    async def _get(self, path: str) -> Any:
        return await self._request("GET", path)

    async def _post(self, path: str, data: dict[str, Any] | None = None) -> Any:
        return await self._request("POST", path, data or {})

    async def health(self) -> dict[str, Any]:
        return await self._get("/health")

    async def status(self) -> dict[str, Any]:
        return await self._get("/api/status")

    async def connect(self, device_name: str | None = None) -> dict[str, Any]:
        return await self._post("/api/connect", {"device_name": device_name} if device_name else None)

    async def disconnect(self, *, delete_remote: bool = False, clear_local: bool = True) -> dict[str, Any]:
        return await self._post(
            "/api/disconnect", {"delete_remote": delete_remote, "clear_local": clear_local}
        )

    async def report_context(self) -> dict[str, Any]:
        return await self._post("/api/context/report")

    async def chat_start(self) -> dict[str, Any]:
        return await self._post("/api/chat/start")

    async def chat_stop(self) -> dict[str, Any]:
        return await self._post("/api/chat/stop")

    async def chat_send(self, target_agent_id: str, content: str) -> dict[str, Any]:
        return await self._post(
            "/api/chat/send", {"target_agent_id": target_agent_id, "content": content}
        )
