"""Lightweight asyncio event bus for intra-process pub/sub.

Each component owns its own :class:`EventBus`; the orchestrator is the only
place that subscribes across components.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import defaultdict
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from agentlink.errors import ClassifiedError
from agentlink.logger import logger

# --- Connector events ---


@dataclass
class QrGenerated:
    """A pairing token was issued; render ``qr_payload`` for the user."""

    qr_payload: str
    token: str
    expires_in: float


@dataclass
class PairingExpired:
    token: str
    reason: str  # "timeout", "attempts", "remote"


@dataclass
class Registered:
    connector_id: str
    device_name: str
    user_id: str
    resumed: bool = False


@dataclass
class Disconnected:
    connector_id: str | None
    cleared_local: bool
    remote_ok: bool | None  # None when the remote was not contacted


@dataclass
class StateChanged:
    previous: str
    current: str


@dataclass
class HeartbeatSent:
    connector_id: str
    timestamp: int


@dataclass
class CommandReceived:
    command_id: str
    command_type: str


@dataclass
class AiPrompt:
    """An ``ai_prompt`` command that needs the executor."""

    command_id: str
    prompt: str


@dataclass
class CommandResultReported:
    command_id: str
    status: str
    cached: bool = False


@dataclass
class WorkContextReported:
    connector_id: str
    reported_at: int
    length: int


@dataclass
class PollerError:
    poller: str
    error: ClassifiedError


# --- Chat events ---


@dataclass
class ChatStarted:
    agent_id: str


@dataclass
class ChatStopped:
    agent_id: str


@dataclass
class ChatHeartbeatSent:
    unread_count: int


@dataclass
class UnreadMessages:
    count: int


@dataclass
class NewMessage:
    message_id: str
    peer_id: str
    peer_name: str
    content: str
    timestamp: str


# --- Governor events ---


@dataclass
class ErrorRecorded:
    error: ClassifiedError


@dataclass
class CircuitBreakerTriggered:
    consecutive_failures: int
    last_error: ClassifiedError | None = None


@dataclass
class NetworkLost:
    pass


@dataclass
class NetworkRestored:
    pass


@dataclass
class DataCached:
    type: str
    queue_size: int


@dataclass
class SyncDropped:
    """A pending item reached its attempt cap and was discarded."""

    type: str
    attempts: int
    payload: dict[str, Any] = field(default_factory=dict)


Event: TypeAlias = (
    QrGenerated
    | PairingExpired
    | Registered
    | Disconnected
    | StateChanged
    | HeartbeatSent
    | CommandReceived
    | AiPrompt
    | CommandResultReported
    | WorkContextReported
    | PollerError
    | ChatStarted
    | ChatStopped
    | ChatHeartbeatSent
    | UnreadMessages
    | NewMessage
    | ErrorRecorded
    | CircuitBreakerTriggered
    | NetworkLost
    | NetworkRestored
    | DataCached
    | SyncDropped
)
Listener: TypeAlias = Callable[[Any], Coroutine[Any, Any, None]]


class EventBus:
    """Fire-and-forget async event dispatcher."""

    def __init__(self) -> None:
        self._listeners: defaultdict[type, list[Listener]] = defaultdict(list)
        self._pending: set[asyncio.Future[None]] = set()

    def subscribe(self, event_type: type, listener: Listener) -> Callable[[], None]:
        """Subscribe to an event type. Returns an unsubscribe function."""
        self._listeners[event_type].append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners[event_type].remove(listener)

        return _unsubscribe

    def emit(self, event: Event) -> None:
        """Emit an event to all subscribers. Non-blocking, fire-and-forget."""
        for listener in list(self._listeners[type(event)]):
            fut = asyncio.ensure_future(_safe_call(listener, event))
            self._pending.add(fut)
            fut.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait until every listener call scheduled so far has finished."""
        while pending := [f for f in self._pending if not f.done()]:
            await asyncio.wait(pending)


async def _safe_call(listener: Listener, event: Event) -> None:
    try:
        await listener(event)
    except Exception as exc:
        logger.warning(
            "EventBus listener error",
            event_type=type(event).__name__,
            err=str(exc),
        )
