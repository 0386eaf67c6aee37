"""At-most-once processing of remote items.

:class:`ProcessedLedger` is a bounded, insertion-ordered set of IDs that is
persisted after every commit. It backs both chat message deduplication and
command deduplication.
"""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Callable, Iterable

from agentlink.event_bus import EventBus, NewMessage
from agentlink.logger import logger
from agentlink.types import ChatMessage

LEDGER_CAPACITY = 1000


class ProcessedLedger:
    def __init__(
        self,
        ids: Iterable[str] = (),
        *,
        capacity: int = LEDGER_CAPACITY,
        persist: Callable[[list[str]], None] | None = None,
    ) -> None:
        self.capacity = capacity
        self._persist = persist
        self._ids: OrderedDict[str, None] = OrderedDict()
        for item in ids:
            self._insert(item)

    def __contains__(self, item: object) -> bool:
        return item in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def ids(self) -> list[str]:
        return list(self._ids)

    def _insert(self, item: str) -> None:
        self._ids[item] = None
        while len(self._ids) > self.capacity:
            self._ids.popitem(last=False)

    def commit(self, item: str) -> bool:
        """Record ``item``; returns False if it was already present."""
        if item in self._ids:
            return False
        self._insert(item)
        if self._persist is not None:
            self._persist(self.ids())
        return True


def _newest_first(messages: list[ChatMessage]) -> list[ChatMessage]:
    # ISO-8601 timestamps sort lexically; stable sort keeps wire order on ties.
    return sorted(messages, key=lambda m: m.created_at, reverse=True)


class MessageDeduplicator:
    """Turns fetched peer batches into at most one ``NewMessage`` per ID."""

    def __init__(self, ledger: ProcessedLedger, bus: EventBus) -> None:
        self.ledger = ledger
        self._bus = bus

    def process(self, messages: list[ChatMessage], peer_id: str, peer_name: str) -> list[NewMessage]:
        accepted: list[NewMessage] = []
        from_peer = [m for m in messages if m.sender == peer_id]
        for message in _newest_first(from_peer):
            if message.id in self.ledger:
                continue
            event = NewMessage(
                message_id=message.id,
                peer_id=peer_id,
                peer_name=peer_name,
                content=message.content,
                timestamp=message.created_at,
            )
            self._bus.emit(event)
            # Committed before any listener has run so a crash cannot redeliver.
            self.ledger.commit(message.id)
            accepted.append(event)
        if accepted:
            logger.info("New chat messages", peer_id=peer_id, count=len(accepted))
        return accepted
