"""Registration document: the device's binding to a remote account."""

from __future__ import annotations

from typing import Any

from agentlink.logger import logger
from agentlink.state._documents import JsonDocument
from agentlink.types import Registration


class RegistrationStore(JsonDocument):
    def load(self) -> Registration | None:
        raw = self.read()
        if raw is None:
            return None
        registration = Registration.from_dict(raw)
        if registration is None:
            logger.warning("Ignoring incomplete registration", path=str(self.path))
        return registration

    def save(self, registration: Registration) -> None:
        self.write(registration.to_dict())
        logger.debug("Registration saved", connector_id=registration.connector_id)

    def clear(self) -> None:
        if self.delete():
            logger.info("Registration cleared", path=str(self.path))

    def update_fields(self, **fields: Any) -> Registration | None:
        """Read-modify-write selected fields; returns the updated registration."""
        raw = self.update(**fields)
        return Registration.from_dict(raw) if raw is not None else None

    def processed_command_ids(self) -> list[str]:
        registration = self.load()
        return list(registration.processed_command_ids) if registration else []

    def save_processed_command_ids(self, ids: list[str]) -> None:
        self.update(processed_command_ids=ids)
