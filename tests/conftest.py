"""Shared test fixtures for agentlink."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset(
    {
        "storage_dir",
        "registration_path",
        "chat_credentials_path",
        "pending_sync_path",
        "workspace_dir",
        "pairing_api_url",
        "context_report_interval",
    }
)


def make_settings(storage_dir: Path | None = None, **overrides: Any):
    """Create a Settings object with sensible defaults for testing.

    No agentlink.toml, no .env, no environment variables. Accepts model
    fields (connector, chat, retry, ...) and cached property overrides.

    Usage::

        s = make_settings(tmp_path)
        s = make_settings(tmp_path, retry=RetryConfig(max_retries=2, jitter=0))
    """
    from agentlink.config import (
        ChatConfig,
        ConnectorConfig,
        ExecutorConfig,
        LoggingConfig,
        NetworkConfig,
        RetryConfig,
        ServerConfig,
        Settings,
        StorageConfig,
        TimeoutsConfig,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults: dict[str, Any] = {
        "connector": ConnectorConfig(),
        "chat": ChatConfig(),
        "retry": RetryConfig(),
        "network": NetworkConfig(),
        "timeouts": TimeoutsConfig(),
        "executor": ExecutorConfig(),
        "server": ServerConfig(),
        "storage": StorageConfig(dir=str(storage_dir) if storage_dir else None),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Spin the loop until ``predicate()`` holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


async def no_sleep(_delay: float) -> None:
    """Drop-in for asyncio.sleep in retry paths."""
    await asyncio.sleep(0)


def collect(bus, event_type) -> list:
    """Subscribe a recording listener; drain the bus before asserting."""
    events: list = []

    async def listener(event) -> None:
        events.append(event)

    bus.subscribe(event_type, listener)
    return events


def make_registration(**overrides: Any):
    from agentlink.types import Registration

    fields: dict[str, Any] = {
        "connector_id": "conn-1",
        "device_name": "laptop",
        "token": "secret-token",
        "user_id": "user-1",
    }
    fields.update(overrides)
    return Registration(**fields)


# ---------------------------------------------------------------------------
# Fakes for the remote clients and the executor
# ---------------------------------------------------------------------------


class FakePairingClient:
    """In-memory stand-in for PairingClient that records every call."""

    def __init__(self) -> None:
        from agentlink.types import LoginStatus

        self.qr_response: dict[str, Any] = {
            "token": "tok-1",
            "qr_data": "https://app.example/pair?token=tok-1",
            "expires_in": 300,
        }
        self.qr_error: Exception | None = None
        self.login_status = LoginStatus()
        self.login_checks = 0
        self.heartbeats: list[dict[str, Any]] = []
        self.heartbeat_error: Exception | None = None
        self.commands: list[Any] = []
        self.polls = 0
        self.results: list[dict[str, Any]] = []
        self.result_error: Exception | None = None
        self.contexts: list[dict[str, Any]] = []
        self.disconnects: list[dict[str, Any]] = []
        self.disconnect_error: Exception | None = None
        self.closed = False

    async def create_qr_token(self, device_name: str, device_type: str, device_id: str) -> dict:
        if self.qr_error:
            raise self.qr_error
        return dict(self.qr_response)

    async def check_login_status(self, token: str):
        self.login_checks += 1
        return self.login_status

    async def send_heartbeat(
        self, connector_id, token, *, timestamp, status="online", last_activity=None
    ) -> None:
        if self.heartbeat_error:
            raise self.heartbeat_error
        self.heartbeats.append({"connector_id": connector_id, "token": token, "timestamp": timestamp})

    async def poll_commands(self, connector_id: str, limit: int = 10) -> list:
        self.polls += 1
        return list(self.commands)

    async def report_command_result(self, **payload: Any) -> None:
        if self.result_error:
            raise self.result_error
        self.results.append(payload)

    async def report_work_context(self, **payload: Any) -> None:
        self.contexts.append(payload)

    async def disconnect(self, connector_id: str, token: str, *, delete: bool = False) -> None:
        if self.disconnect_error:
            raise self.disconnect_error
        self.disconnects.append({"connector_id": connector_id, "delete": delete})

    async def close(self) -> None:
        self.closed = True


class FakeHubClient:
    """In-memory stand-in for HubClient."""

    def __init__(self) -> None:
        self.api_key: str | None = None
        self.heartbeats: list[tuple[bool, str | None]] = []
        self.heartbeat_error: Exception | None = None
        self.unread = 0
        self.conversations: list[Any] = []
        self.messages: dict[str, list[Any]] = {}
        self.failing_peers: set[str] = set()
        self.sent: list[tuple[str, str]] = []
        self.registrations: list[dict[str, Any]] = []
        self.closed = False

    async def send_heartbeat(self, supports_chat: bool = True, *, status: str | None = None) -> int:
        if self.heartbeat_error:
            raise self.heartbeat_error
        self.heartbeats.append((supports_chat, status))
        return self.unread

    async def get_conversations(self) -> list:
        return list(self.conversations)

    async def get_messages(self, peer_id: str, limit: int = 50) -> list:
        from agentlink.errors import RemoteHTTPError

        if peer_id in self.failing_peers:
            raise RemoteHTTPError(500, "Internal Server Error")
        return list(self.messages.get(peer_id, []))

    async def send_message(self, target_agent_id: str, content: str) -> dict[str, Any]:
        self.sent.append((target_agent_id, content))
        return {"success": True, "message_id": "out-1"}

    async def register(self, **kwargs: Any) -> dict[str, Any]:
        self.registrations.append(kwargs)
        return {"api_key": "key-new", "agent_id": "agent-new"}

    async def close(self) -> None:
        self.closed = True


class FakeExecutor:
    """Answers every prompt with ``text``, or raises ``error``."""

    def __init__(
        self,
        text: str = "Refactored the sync module and fixed flaky tests.",
        *,
        is_error: bool = False,
        error: Exception | None = None,
    ) -> None:
        self.text = text
        self.is_error = is_error
        self.error = error
        self.prompts: list[str] = []
        self.session_keys: list[str] = []

    async def execute(self, prompt: str, session_key: str, timeout: float):
        from agentlink.executor import ExecutionResult

        self.prompts.append(prompt)
        self.session_keys.append(session_key)
        if self.error is not None:
            raise self.error
        return ExecutionResult(text=self.text, is_error=self.is_error)


class MockHttpDeps:
    """Records every control call; ``fail_with`` makes the next call raise."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.fail_with: Exception | None = None

    def _record(self, name: str, args: Any = None) -> None:
        self.calls.append((name, args))
        if self.fail_with is not None:
            raise self.fail_with

    def status(self) -> dict[str, Any]:
        self._record("status")
        return {"connector": {"state": "connected"}, "executor_available": True}

    async def connect(self, device_name: str | None = None) -> dict[str, Any]:
        self._record("connect", device_name)
        return {"registered": False, "token": "tok-1"}

    async def disconnect(
        self, *, delete_remote: bool = False, clear_local: bool = True
    ) -> dict[str, Any]:
        self._record("disconnect", (delete_remote, clear_local))
        return {"connector_id": "conn-1", "cleared_local": clear_local, "remote_ok": True}

    async def report_context(self) -> dict[str, Any]:
        self._record("report_context")
        return {"reported": True, "length": 12}

    async def chat_start(self) -> dict[str, Any]:
        self._record("chat_start")
        return {"started": True, "running": True}

    async def chat_stop(self) -> dict[str, Any]:
        self._record("chat_stop")
        return {"running": False}

    async def chat_send(self, target_agent_id: str, content: str) -> dict[str, Any]:
        self._record("chat_send", (target_agent_id, content))
        return {"success": True}


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch, tmp_path):
    """Ensure each test starts with a clean Settings singleton.

    Storage points at the test's tmp_path so nothing touches ~/.agentlink.
    """
    safe = make_settings(tmp_path / "agentlink-home")
    monkeypatch.setattr("agentlink.config._settings", safe)


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path):
    from agentlink.config import NetworkConfig, RetryConfig

    return make_settings(
        tmp_path,
        retry=RetryConfig(max_retries=3, base_delay=0.01, max_delay=0.05, jitter=0.0),
        network=NetworkConfig(limited_threshold=50, circuit_breaker_threshold=100),
    )


@pytest.fixture
def governor(settings):
    from agentlink.governor import Governor

    return Governor(settings, sleep=no_sleep)
