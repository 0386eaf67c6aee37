"""Messaging channel: owns the chat heartbeat, message poller and dedup ledger.

Chat runs only when credentials exist and their ``enabled`` flag is set.
The flag changes only through :meth:`ChatManager.enable` and
:meth:`ChatManager.disable`; ``start``/``stop`` never touch it.
"""

from __future__ import annotations

from typing import Any

from agentlink.chat.dedup import MessageDeduplicator, ProcessedLedger
from agentlink.chat.heartbeat import ChatHeartbeat
from agentlink.chat.poller import MessagePoller
from agentlink.config import Settings, get_settings
from agentlink.errors import (
    AlreadyRunning,
    ClassifiedError,
    NotRegistered,
    NotRunning,
    RemoteUnavailable,
)
from agentlink.event_bus import ChatStarted, ChatStopped, EventBus
from agentlink.governor import Governor
from agentlink.logger import logger
from agentlink.remote import HubClient
from agentlink.state import ChatCredentialsStore
from agentlink.types import ChatCredentials, ChatRole, ChatStatus


class ChatManager:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: HubClient | None = None,
        governor: Governor | None = None,
        store: ChatCredentialsStore | None = None,
    ) -> None:
        s = settings or get_settings()
        self._settings = s
        self.bus = EventBus()
        self.store = store or ChatCredentialsStore(s.chat_credentials_path)
        self.governor = governor or Governor(s)
        self.credentials = self.store.load()
        self.client = client or HubClient(
            s.chat.hub_url, self._api_key(self.credentials), timeout=s.timeouts.request
        )
        self.ledger = ProcessedLedger(
            self.credentials.processed_message_ids if self.credentials else (),
            persist=self.store.save_processed_message_ids,
        )
        self.dedup = MessageDeduplicator(self.ledger, self.bus)
        self.heartbeat = ChatHeartbeat(
            self.client,
            self.governor,
            self.store,
            self.bus,
            interval=s.chat.heartbeat_interval,
            retry=s.retry,
        )
        self.messages = MessagePoller(
            self.client,
            self.governor,
            self.dedup,
            self.bus,
            interval=s.chat.message_poll_interval,
            fetch_limit=s.chat.message_fetch_limit,
            retry=s.retry,
        )
        self.running = False

    def _api_key(self, credentials: ChatCredentials | None) -> str | None:
        override = self._settings.chat.api_key
        if override is not None:
            return override.get_secret_value()
        return credentials.api_key if credentials else None

    def reload_credentials(self) -> ChatCredentials | None:
        self.credentials = self.store.load()
        self.client.api_key = self._api_key(self.credentials)
        return self.credentials

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Start both loops if chat is enabled. Returns whether it started."""
        if self.running:
            raise AlreadyRunning("Chat service is already running")
        credentials = self.reload_credentials()
        if credentials is None:
            raise NotRegistered("No chat credentials; run `agentlink chat register` first")
        if not credentials.enabled:
            logger.info("Chat disabled, not starting", agent_id=credentials.agent_id)
            return False

        try:
            await self.heartbeat.send_once()
        except ClassifiedError as exc:
            self._stop_loops()
            raise RemoteUnavailable(f"Initial chat heartbeat failed: {exc.message}") from exc

        self.heartbeat.poller.start()
        self.messages.poller.start()
        self.running = True
        logger.info("Chat started", agent_id=credentials.agent_id)
        self.bus.emit(ChatStarted(agent_id=credentials.agent_id))
        return True

    def _stop_loops(self) -> None:
        self.messages.poller.stop()
        self.heartbeat.poller.stop()

    async def stop(self) -> None:
        if not self.running:
            raise NotRunning("Chat service is not running")
        self._stop_loops()
        self.running = False
        await self.heartbeat.send_offline()
        agent_id = self.credentials.agent_id if self.credentials else ""
        logger.info("Chat stopped", agent_id=agent_id)
        self.bus.emit(ChatStopped(agent_id=agent_id))

    async def enable(self) -> bool:
        if self.running:
            raise AlreadyRunning("Chat service is already running")
        if self.store.set_enabled(True) is None:
            raise NotRegistered("No chat credentials; run `agentlink chat register` first")
        try:
            return await self.start()
        except RemoteUnavailable:
            self.store.set_enabled(False)
            raise

    async def disable(self) -> None:
        if not self.running:
            raise NotRunning("Chat service is not running")
        await self.stop()
        self.store.set_enabled(False)
        self.reload_credentials()

    async def shutdown(self) -> None:
        """Process exit: stop loops and go offline, keep ``enabled`` as is."""
        if self.running:
            await self.stop()
        await self.client.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def send_message(self, target_agent_id: str, content: str) -> dict[str, Any]:
        if self.credentials is None and self.reload_credentials() is None:
            raise NotRegistered("No chat credentials")
        return await self.governor.with_retry(
            lambda: self.client.send_message(target_agent_id, content), "chat-send"
        )

    def status(self) -> ChatStatus:
        credentials = self.credentials
        return ChatStatus(
            running=self.running,
            enabled=bool(credentials and credentials.enabled),
            agent_id=credentials.agent_id if credentials else None,
            agent_name=credentials.agent_name if credentials else None,
            last_heartbeat_at=self.heartbeat.last_heartbeat_at
            or (credentials.last_heartbeat_at if credentials else None),
            unread_count=max(self.heartbeat.unread_count, self.messages.unread_count),
        )


async def register_agent(
    *,
    name: str,
    description: str,
    role: ChatRole = "both",
    endpoint: str | None = None,
    tags: list[str] | None = None,
    settings: Settings | None = None,
    client: HubClient | None = None,
) -> ChatCredentials:
    """Register a new agent on the hub and store its credentials (disabled)."""
    s = settings or get_settings()
    hub = client or HubClient(s.chat.hub_url, timeout=s.timeouts.request)
    try:
        data = await hub.register(
            name=name, description=description, role=role, endpoint=endpoint, tags=tags
        )
    finally:
        if client is None:
            await hub.close()
    credentials = ChatCredentials(
        api_key=str(data["api_key"]),
        agent_id=str(data["agent_id"]),
        agent_name=name,
        role=role,
        endpoint=endpoint,
    )
    ChatCredentialsStore(s.chat_credentials_path).save(credentials)
    logger.info("Chat agent registered", agent_id=credentials.agent_id)
    return credentials
