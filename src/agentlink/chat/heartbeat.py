"""Keeps the agent marked online on the hub."""

from __future__ import annotations

from agentlink.config import RetryConfig
from agentlink.event_bus import ChatHeartbeatSent, EventBus, UnreadMessages
from agentlink.governor import Governor
from agentlink.logger import logger
from agentlink.pollers import Poller, TickContext
from agentlink.remote import HubClient
from agentlink.state import ChatCredentialsStore
from agentlink.types import now_ms


class ChatHeartbeat:
    def __init__(
        self,
        client: HubClient,
        governor: Governor,
        store: ChatCredentialsStore,
        bus: EventBus,
        *,
        interval: float,
        retry: RetryConfig,
    ) -> None:
        self._client = client
        self._governor = governor
        self._store = store
        self._bus = bus
        self._retry = retry
        self.last_heartbeat_at: int | None = None
        self.unread_count = 0
        # The first beat is sent synchronously by ChatManager.start().
        self.poller = Poller(
            "chat-heartbeat",
            interval,
            self._tick,
            governor,
            feature="heartbeat",
            bus=bus,
            immediate=False,
        )

    async def _tick(self, ctx: TickContext) -> None:
        unread = await self._governor.with_retry(
            lambda: self._client.send_heartbeat(True),
            "chat-heartbeat",
            max_retries=self._retry.tick_max_retries,
        )
        if ctx.stale:
            return
        self._record(unread)

    async def send_once(self) -> int:
        """Single online heartbeat outside the loop; raises ClassifiedError."""
        unread = await self._governor.track(lambda: self._client.send_heartbeat(True), "chat-heartbeat")
        self._record(unread)
        return unread

    def _record(self, unread: int) -> None:
        self.last_heartbeat_at = now_ms()
        self.unread_count = unread
        self._store.update_fields(last_heartbeat_at=self.last_heartbeat_at)
        self._bus.emit(ChatHeartbeatSent(unread_count=unread))
        if unread > 0:
            self._bus.emit(UnreadMessages(count=unread))

    async def send_offline(self) -> bool:
        """Best-effort final heartbeat marking the agent offline."""
        try:
            await self._client.send_heartbeat(False, status="offline")
        except Exception as exc:
            logger.warning("Offline heartbeat failed", err=str(exc))
            return False
        return True
