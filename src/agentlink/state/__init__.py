"""Persistent store: one JSON document per concern.

  registration    : device to account binding and the command ledger
  chat_credentials: messaging identity, enabled flag and the message ledger
  pending_sync    : remote writes cached while offline
"""

from __future__ import annotations

from dataclasses import dataclass

from agentlink.config import Settings
from agentlink.state._documents import JsonDocument
from agentlink.state.chat_credentials import ChatCredentialsStore
from agentlink.state.pending_sync import PendingSyncStore
from agentlink.state.registration import RegistrationStore


@dataclass
class Stores:
    registration: RegistrationStore
    chat_credentials: ChatCredentialsStore
    pending_sync: PendingSyncStore

    @classmethod
    def from_settings(cls, settings: Settings) -> Stores:
        return cls(
            registration=RegistrationStore(settings.registration_path),
            chat_credentials=ChatCredentialsStore(settings.chat_credentials_path),
            pending_sync=PendingSyncStore(settings.pending_sync_path),
        )


__all__ = [
    "ChatCredentialsStore",
    "JsonDocument",
    "PendingSyncStore",
    "RegistrationStore",
    "Stores",
]
