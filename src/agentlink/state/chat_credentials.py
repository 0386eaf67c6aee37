"""Chat credentials document: API key, agent identity, enabled flag, ledger."""

from __future__ import annotations

from typing import Any

from agentlink.logger import logger
from agentlink.state._documents import JsonDocument
from agentlink.types import ChatCredentials


class ChatCredentialsStore(JsonDocument):
    def load(self) -> ChatCredentials | None:
        raw = self.read()
        if raw is None:
            return None
        credentials = ChatCredentials.from_dict(raw)
        if credentials is None:
            logger.warning("Ignoring incomplete chat credentials", path=str(self.path))
        return credentials

    def save(self, credentials: ChatCredentials) -> None:
        self.write(credentials.to_dict())
        logger.debug("Chat credentials saved", agent_id=credentials.agent_id)

    def clear(self) -> None:
        self.delete()

    def update_fields(self, **fields: Any) -> ChatCredentials | None:
        raw = self.update(**fields)
        return ChatCredentials.from_dict(raw) if raw is not None else None

    def set_enabled(self, enabled: bool) -> ChatCredentials | None:
        return self.update_fields(enabled=enabled)

    def processed_message_ids(self) -> list[str]:
        credentials = self.load()
        return list(credentials.processed_message_ids) if credentials else []

    def save_processed_message_ids(self, ids: list[str]) -> None:
        self.update(processed_message_ids=ids)
