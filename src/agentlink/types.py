"""Data models for agentlink."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any, Literal, TypeAlias

RegistrationStatus: TypeAlias = Literal["pending", "connected", "disconnected", "error"]
ChatRole: TypeAlias = Literal["consumer", "provider", "both"]
PendingSyncType: TypeAlias = Literal["heartbeat", "command-result", "work-context"]
CommandStatus: TypeAlias = Literal["completed", "failed"]

CHAT_ROLES: tuple[ChatRole, ...] = ("consumer", "provider", "both")
PENDING_SYNC_TYPES: tuple[PendingSyncType, ...] = ("heartbeat", "command-result", "work-context")

AI_PROMPT_COMMAND = "ai_prompt"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds (the backend's unit)."""
    return int(time.time() * 1000)


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and len(value) > 0


class ConnectionState(StrEnum):
    UNREGISTERED = "unregistered"
    PAIRING = "pairing"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Pairing channel
# ---------------------------------------------------------------------------


@dataclass
class Registration:
    """Binding between this device and a remote user account."""

    connector_id: str
    device_name: str
    token: str
    device_type: str = "desktop"
    user_id: str = ""
    status: RegistrationStatus = "connected"
    registered_at: int = field(default_factory=now_ms)
    last_context_report_at: int | None = None
    processed_command_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Any) -> Registration | None:
        """Build from a persisted document, or None if required fields are missing."""
        if not isinstance(raw, dict):
            return None
        if not all(_non_empty_str(raw.get(k)) for k in ("connector_id", "token", "device_name")):
            return None
        status = raw.get("status")
        if status not in ("pending", "connected", "disconnected", "error"):
            status = "connected"
        processed = raw.get("processed_command_ids")
        return cls(
            connector_id=raw["connector_id"],
            device_name=raw["device_name"],
            token=raw["token"],
            device_type=str(raw.get("device_type") or "desktop"),
            user_id=str(raw.get("user_id") or ""),
            status=status,
            registered_at=int(raw.get("registered_at") or now_ms()),
            last_context_report_at=raw.get("last_context_report_at"),
            processed_command_ids=[str(i) for i in processed] if isinstance(processed, list) else [],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def public_dict(self) -> dict[str, Any]:
        """Serializable view without the bearer token or the ledger."""
        data = self.to_dict()
        data.pop("token")
        data.pop("processed_command_ids")
        return data


@dataclass
class PairingToken:
    token: str
    created_at: int
    expires_at: int

    def is_valid(self, at: int | None = None) -> bool:
        return (at if at is not None else now_ms()) < self.expires_at


@dataclass
class PairingResult:
    qr_payload: str
    token: str
    device_id: str
    expires_in: float  # seconds until the token lapses locally


@dataclass
class LoginStatus:
    registered: bool = False
    expired: bool = False
    connector_id: str = ""
    device_name: str = ""
    user_id: str = ""

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> LoginStatus:
        return cls(
            registered=bool(raw.get("registered")),
            expired=bool(raw.get("expired")),
            connector_id=str(raw.get("connector_id") or ""),
            device_name=str(raw.get("device_name") or ""),
            user_id=str(raw.get("user_id") or ""),
        )


@dataclass
class BackendCommand:
    command_id: str
    command_type: str
    command_payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    created_at: str = ""

    @classmethod
    def from_dict(cls, raw: Any) -> BackendCommand | None:
        """Parse one polled command, or None when it has no usable id."""
        if not isinstance(raw, dict):
            return None
        command_id = raw.get("command_id")
        if command_id is None or command_id == "":
            return None
        payload = raw.get("command_payload")
        try:
            priority = int(raw.get("priority") or 0)
        except (TypeError, ValueError):
            priority = 0
        return cls(
            command_id=str(command_id),
            command_type=str(raw.get("command_type") or ""),
            command_payload=payload if isinstance(payload, dict) else {},
            priority=priority,
            created_at=str(raw.get("created_at") or ""),
        )

    @property
    def prompt(self) -> str:
        return str(self.command_payload.get("prompt") or "")


@dataclass
class ConnectorStatus:
    state: ConnectionState
    registration: Registration | None
    has_active_token: bool
    runtime_attached: bool = False
    active_pollers: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "registration": self.registration.public_dict() if self.registration else None,
            "has_active_token": self.has_active_token,
            "runtime_attached": self.runtime_attached,
            "active_pollers": self.active_pollers,
        }


# ---------------------------------------------------------------------------
# Messaging channel
# ---------------------------------------------------------------------------


@dataclass
class ChatCredentials:
    api_key: str
    agent_id: str
    agent_name: str
    role: ChatRole = "both"
    endpoint: str | None = None
    registered_at: int = field(default_factory=now_ms)
    enabled: bool = False
    last_heartbeat_at: int | None = None
    processed_message_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Any) -> ChatCredentials | None:
        if not isinstance(raw, dict):
            return None
        if not all(_non_empty_str(raw.get(k)) for k in ("api_key", "agent_id")):
            return None
        role = raw.get("role")
        processed = raw.get("processed_message_ids")
        return cls(
            api_key=raw["api_key"],
            agent_id=raw["agent_id"],
            agent_name=str(raw.get("agent_name") or raw["agent_id"]),
            role=role if role in CHAT_ROLES else "both",
            endpoint=raw.get("endpoint"),
            registered_at=int(raw.get("registered_at") or now_ms()),
            enabled=bool(raw.get("enabled", False)),
            last_heartbeat_at=raw.get("last_heartbeat_at"),
            processed_message_ids=[str(i) for i in processed] if isinstance(processed, list) else [],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ChatMessage:
    id: str
    sender: str  # "from" on the wire
    content: str
    created_at: str = ""

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ChatMessage:
        return cls(
            id=str(raw["id"]),
            sender=str(raw.get("from") or ""),
            content=str(raw.get("content") or ""),
            created_at=str(raw.get("created_at") or ""),
        )


@dataclass
class Conversation:
    peer_id: str
    peer_name: str
    unread_count: int = 0
    last_message: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Conversation:
        peer = raw.get("peer") or {}
        return cls(
            peer_id=str(peer.get("id") or ""),
            peer_name=str(peer.get("name") or peer.get("id") or ""),
            unread_count=int(raw.get("unread_count") or 0),
            last_message=raw.get("last_message"),
        )


@dataclass
class ChatStatus:
    running: bool
    enabled: bool
    agent_id: str | None
    agent_name: str | None
    last_heartbeat_at: int | None = None
    unread_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Offline cache
# ---------------------------------------------------------------------------


@dataclass
class PendingSyncItem:
    type: PendingSyncType
    payload: dict[str, Any]
    created_at: int = field(default_factory=now_ms)
    attempts: int = 0
    max_attempts: int = 3

    @classmethod
    def from_dict(cls, raw: Any) -> PendingSyncItem | None:
        if not isinstance(raw, dict) or raw.get("type") not in PENDING_SYNC_TYPES:
            return None
        payload = raw.get("payload")
        return cls(
            type=raw["type"],
            payload=payload if isinstance(payload, dict) else {},
            created_at=int(raw.get("created_at") or now_ms()),
            attempts=int(raw.get("attempts") or 0),
            max_attempts=int(raw.get("max_attempts") or 3),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
