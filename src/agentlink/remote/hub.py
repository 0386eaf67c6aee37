"""Client for the agent-to-agent messaging hub."""

from __future__ import annotations

from typing import Any

import aiohttp

from agentlink.errors import RemoteHTTPError
from agentlink.remote._http import JsonHttpClient
from agentlink.types import ChatMessage, ChatRole, Conversation


class HubClient(JsonHttpClient):
    """Bearer-authenticated calls against the hub's ``/api`` surface."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        super().__init__(base_url, timeout=timeout, session=session)
        self.api_key = api_key

    def _auth(self) -> str:
        if not self.api_key:
            raise RemoteHTTPError(401, "Unauthorized", "no API key configured")
        return self.api_key

    async def send_heartbeat(self, supports_chat: bool = True, *, status: str | None = None) -> int:
        """Returns the hub's unread message count."""
        body: dict[str, Any] = {"supports_chat": supports_chat}
        if status:
            body["status"] = status
        data = await self.post("/api/heartbeat", json=body, bearer=self._auth())
        if not isinstance(data, dict):
            return 0
        return int(data.get("unread_count") or 0)

    async def get_conversations(self) -> list[Conversation]:
        data = await self.get("/api/messages", bearer=self._auth())
        raw = data.get("conversations") if isinstance(data, dict) else None
        return [Conversation.from_dict(c) for c in raw or [] if isinstance(c, dict)]

    async def get_messages(self, peer_id: str, limit: int = 50) -> list[ChatMessage]:
        data = await self.get(
            f"/api/messages/{peer_id}", params={"limit": limit}, bearer=self._auth()
        )
        raw = data.get("messages") if isinstance(data, dict) else None
        return [ChatMessage.from_dict(m) for m in raw or [] if isinstance(m, dict) and "id" in m]

    async def send_message(self, target_agent_id: str, content: str) -> dict[str, Any]:
        data = await self.post(
            "/api/message",
            json={"target_agent_id": target_agent_id, "content": content},
            bearer=self._auth(),
        )
        return data if isinstance(data, dict) else {}

    async def register(
        self,
        *,
        name: str,
        description: str,
        role: ChatRole = "both",
        endpoint: str | None = None,
        tags: list[str] | None = None,
        skills: list[str] | None = None,
    ) -> dict[str, Any]:
        """Register a new agent. Unauthenticated; returns ``{api_key, agent_id}``."""
        body: dict[str, Any] = {
            "name": name,
            "description": description,
            "role": role,
            "entity_type": "agent",
        }
        if endpoint:
            body["endpoint"] = endpoint
        if tags:
            body["tags"] = tags
        if skills:
            body["skills"] = skills
        data = await self.post("/api/register", json=body)
        if not isinstance(data, dict) or not data.get("api_key") or not data.get("agent_id"):
            raise RemoteHTTPError(200, "Invalid response", str(data)[:200])
        return data
