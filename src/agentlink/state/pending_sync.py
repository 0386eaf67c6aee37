"""Offline cache of remote writes awaiting resend."""

from __future__ import annotations

from agentlink.logger import logger
from agentlink.state._documents import JsonDocument
from agentlink.types import PendingSyncItem


class PendingSyncStore(JsonDocument):
    def load(self) -> list[PendingSyncItem]:
        raw = self.read()
        if raw is None:
            return []
        if not isinstance(raw, list):
            logger.warning("Ignoring malformed pending-sync cache", path=str(self.path))
            return []
        items = [PendingSyncItem.from_dict(entry) for entry in raw]
        return [item for item in items if item is not None]

    def save(self, items: list[PendingSyncItem]) -> None:
        self.write([item.to_dict() for item in items])

    def append(self, item: PendingSyncItem) -> int:
        items = self.load()
        items.append(item)
        self.save(items)
        return len(items)
