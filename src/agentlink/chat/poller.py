"""Fetches unread conversations and feeds them to the deduplicator."""

from __future__ import annotations

from agentlink.chat.dedup import MessageDeduplicator
from agentlink.config import RetryConfig
from agentlink.errors import ClassifiedError
from agentlink.event_bus import EventBus, NewMessage
from agentlink.governor import Governor
from agentlink.logger import logger
from agentlink.pollers import Poller, TickContext
from agentlink.remote import HubClient
from agentlink.types import Conversation


class MessagePoller:
    def __init__(
        self,
        client: HubClient,
        governor: Governor,
        dedup: MessageDeduplicator,
        bus: EventBus,
        *,
        interval: float,
        fetch_limit: int,
        retry: RetryConfig,
    ) -> None:
        self._client = client
        self._governor = governor
        self._dedup = dedup
        self._fetch_limit = fetch_limit
        self._retry = retry
        self.unread_count = 0
        self.poller = Poller(
            "chat-messages",
            interval,
            self._tick,
            governor,
            feature="chat-messages",
            bus=bus,
        )

    async def _tick(self, ctx: TickContext) -> None:
        conversations = await self._governor.with_retry(
            self._client.get_conversations,
            "chat-conversations",
            max_retries=self._retry.tick_max_retries,
        )
        if ctx.stale:
            return
        self.unread_count = sum(c.unread_count for c in conversations)
        for conversation in conversations:
            if conversation.unread_count <= 0:
                continue
            await self._process_conversation(conversation, ctx)
            if ctx.stale:
                return

    async def _process_conversation(
        self, conversation: Conversation, ctx: TickContext
    ) -> list[NewMessage]:
        peer_id = conversation.peer_id
        try:
            messages = await self._governor.track(
                lambda: self._client.get_messages(peer_id, self._fetch_limit),
                "chat-messages",
            )
        except ClassifiedError as exc:
            logger.warning(
                "Failed to fetch conversation", peer_id=peer_id, code=exc.code, err=exc.message
            )
            return []
        if ctx.stale:
            return []
        return self._dedup.process(messages, peer_id, conversation.peer_name)
