"""Integration tests for AgentLinkApp: event wiring, startup and control ops."""

from __future__ import annotations

from typing import Any

import pytest
from conftest import (
    FakeExecutor,
    FakeHubClient,
    FakePairingClient,
    make_registration,
    make_settings,
    no_sleep,
    wait_for,
)

from agentlink.app import EMPTY_OUTPUT_RESPONSE, AgentLinkApp
from agentlink.chat import ChatManager
from agentlink.config import ChatConfig, ConnectorConfig, NetworkConfig, RetryConfig
from agentlink.connector import ConnectorManager
from agentlink.errors import ExecutorUnavailable
from agentlink.governor import Governor
from agentlink.state import PendingSyncStore
from agentlink.types import (
    BackendCommand,
    ChatCredentials,
    ChatMessage,
    ConnectionState,
    Conversation,
    PendingSyncItem,
)


@pytest.fixture
def pairing() -> FakePairingClient:
    return FakePairingClient()


@pytest.fixture
def hub() -> FakeHubClient:
    return FakeHubClient()


@pytest.fixture
async def make_app(tmp_path, pairing, hub, monkeypatch):
    apps: list[AgentLinkApp] = []

    def _make(
        executor: Any = None, *, auto_pair: bool = False, auto_reply: bool = True
    ) -> AgentLinkApp:
        s = make_settings(
            tmp_path,
            connector=ConnectorConfig(
                heartbeat_interval=10,
                command_poll_interval=0.01,
                pairing_poll_interval=10,
                auto_pair=auto_pair,
            ),
            chat=ChatConfig(heartbeat_interval=30, auto_reply=auto_reply),
            retry=RetryConfig(max_retries=1, tick_max_retries=0, base_delay=0.01, jitter=0.0),
            network=NetworkConfig(limited_threshold=1000, circuit_breaker_threshold=1000),
            workspace_dir=tmp_path,
        )
        governor = Governor(s, pending_store=PendingSyncStore(s.pending_sync_path), sleep=no_sleep)

        async def _online() -> bool:
            return True

        # No real connectivity probe in tests.
        monkeypatch.setattr(governor, "check_connectivity", _online)
        app = AgentLinkApp(
            s,
            governor=governor,
            connector=ConnectorManager(s, client=pairing, governor=governor, device_id="dev-1"),
            chat=ChatManager(s, client=hub, governor=governor),
            executor=executor,
            resolve=False,
        )
        apps.append(app)
        return app

    yield _make
    for app in apps:
        await app.shutdown()


def _ai_prompt(command_id: str = "cmd-1", prompt: str = "What changed today?") -> BackendCommand:
    return BackendCommand(
        command_id=command_id, command_type="ai_prompt", command_payload={"prompt": prompt}
    )


def _save_chat(app: AgentLinkApp, *, enabled: bool) -> None:
    app.stores.chat_credentials.save(
        ChatCredentials(api_key="key-1", agent_id="agent-1", agent_name="Agent", enabled=enabled)
    )
    app.chat.reload_credentials()


# ---------------------------------------------------------------------------
# Command execution
# ---------------------------------------------------------------------------


class TestAiPrompt:
    async def test_prompt_executed_and_result_reported(self, make_app, pairing):
        executor = FakeExecutor("All tests pass.")
        app = make_app(executor)
        app.stores.registration.save(make_registration())
        pairing.commands = [_ai_prompt()]

        await app.start()
        await wait_for(lambda: any(r["command_id"] == "cmd-1" for r in pairing.results))

        result = next(r for r in pairing.results if r["command_id"] == "cmd-1")
        assert result["status"] == "completed"
        assert result["result"] == {"response": "All tests pass."}
        assert result["error_message"] is None
        assert "command-cmd-1" in executor.session_keys
        assert "What changed today?" in executor.prompts

    async def test_empty_output_gets_placeholder_response(self, make_app, pairing):
        app = make_app(FakeExecutor(""))
        app.stores.registration.save(make_registration(last_context_report_at=2**62))
        pairing.commands = [_ai_prompt()]

        await app.start()
        await wait_for(lambda: bool(pairing.results))

        assert pairing.results[0]["status"] == "completed"
        assert pairing.results[0]["result"] == {"response": EMPTY_OUTPUT_RESPONSE}

    async def test_no_executor_reports_failure(self, make_app, pairing):
        app = make_app(None)
        app.stores.registration.save(make_registration())
        pairing.commands = [_ai_prompt()]

        await app.start()
        await wait_for(lambda: bool(pairing.results))

        assert pairing.results[0]["status"] == "failed"
        assert pairing.results[0]["error_message"] == "Executor not available"

    @pytest.mark.parametrize(
        ("executor", "message"),
        [
            (FakeExecutor("boom", is_error=True), "boom"),
            (FakeExecutor(error=TimeoutError()), "Execution timed out after 300.0s"),
            (FakeExecutor(error=RuntimeError("crashed")), "crashed"),
        ],
    )
    async def test_executor_failure_reports_failed(self, make_app, pairing, executor, message):
        app = make_app(executor)
        app.stores.registration.save(make_registration(last_context_report_at=2**62))
        pairing.commands = [_ai_prompt()]

        await app.start()
        await wait_for(lambda: bool(pairing.results))

        assert pairing.results[0]["status"] == "failed"
        assert pairing.results[0]["error_message"] == message


# ---------------------------------------------------------------------------
# Chat auto-reply
# ---------------------------------------------------------------------------


class TestChatReply:
    @staticmethod
    def _inbox(hub: FakeHubClient) -> None:
        hub.conversations = [Conversation(peer_id="peer-1", peer_name="Peer", unread_count=1)]
        hub.messages["peer-1"] = [ChatMessage(id="m1", sender="peer-1", content="ping")]

    async def test_new_message_answered(self, make_app, hub):
        self._inbox(hub)
        executor = FakeExecutor("pong")
        app = make_app(executor)
        _save_chat(app, enabled=True)

        await app.start()
        await wait_for(lambda: bool(hub.sent))

        assert hub.sent == [("peer-1", "pong")]
        assert executor.session_keys == ["chat-m1"]

    async def test_auto_reply_disabled(self, make_app, hub):
        self._inbox(hub)
        executor = FakeExecutor("pong")
        app = make_app(executor, auto_reply=False)
        _save_chat(app, enabled=True)

        await app.start()
        await wait_for(lambda: app.chat.messages.poller.tick_count >= 1)
        await app.chat.bus.drain()

        assert hub.sent == []
        assert executor.prompts == []

    async def test_disabled_chat_not_started(self, make_app, hub):
        app = make_app(FakeExecutor())
        _save_chat(app, enabled=False)

        await app.start()

        assert not app.chat.running
        assert hub.heartbeats == []


# ---------------------------------------------------------------------------
# Startup and shutdown
# ---------------------------------------------------------------------------


class TestStartup:
    async def test_auto_pair_when_unregistered(self, make_app, pairing):
        app = make_app(auto_pair=True)

        await app.start()
        await wait_for(lambda: app.last_qr is not None)

        assert app.connector.state == ConnectionState.PAIRING
        assert app.status()["pending_qr"].endswith("deviceId=dev-1")

    async def test_flushes_pending_on_start(self, make_app, pairing):
        app = make_app()
        app.stores.registration.save(make_registration())
        app.stores.pending_sync.append(
            PendingSyncItem(
                type="command-result",
                payload={
                    "command_id": "old-1",
                    "connector_id": "conn-1",
                    "status": "completed",
                    "result": None,
                    "error_message": None,
                },
            )
        )

        await app.start()

        assert pairing.results[0]["command_id"] == "old-1"
        assert app.governor.pending_count() == 0

    async def test_shutdown_keeps_state(self, make_app, pairing, hub):
        app = make_app()
        app.stores.registration.save(make_registration())
        _save_chat(app, enabled=True)
        await app.start()

        await app.shutdown()

        assert app.stores.registration.load() is not None
        assert app.stores.chat_credentials.load().enabled is True
        assert hub.heartbeats[-1] == (False, "offline")
        assert pairing.closed


# ---------------------------------------------------------------------------
# Control operations
# ---------------------------------------------------------------------------


class TestControlOps:
    async def test_connect_when_registered(self, make_app, pairing):
        app = make_app()
        app.stores.registration.save(make_registration())
        await app.start()

        result = await app.connect()

        assert result["registered"] is True
        assert result["registration"]["connector_id"] == "conn-1"
        assert "token" not in result["registration"]

    async def test_connect_starts_pairing(self, make_app):
        app = make_app()
        await app.start()

        result = await app.connect("my-laptop")

        assert result["registered"] is False
        assert result["token"] == "tok-1"
        assert result["device_id"] == "dev-1"

    async def test_disconnect(self, make_app, pairing):
        app = make_app()
        app.stores.registration.save(make_registration())
        await app.start()

        result = await app.disconnect(delete_remote=True)

        assert result == {"connector_id": "conn-1", "cleared_local": True, "remote_ok": True}
        assert app.stores.registration.load() is None

    async def test_report_context_requires_executor(self, make_app):
        app = make_app(None)
        app.stores.registration.save(make_registration())
        await app.start()

        with pytest.raises(ExecutorUnavailable):
            await app.report_context()

    async def test_report_context(self, make_app, pairing):
        app = make_app(FakeExecutor("Worked on the release notes."))
        app.stores.registration.save(make_registration(last_context_report_at=2**62))
        await app.start()

        result = await app.report_context()

        assert result == {"reported": True, "length": len("Worked on the release notes.")}
        assert pairing.contexts[-1]["context"] == "Worked on the release notes."

    async def test_chat_start_stop(self, make_app, hub):
        app = make_app()
        _save_chat(app, enabled=False)
        await app.start()

        started = await app.chat_start()
        assert started["started"] is True
        assert started["running"] is True

        stopped = await app.chat_stop()
        assert stopped["running"] is False
        assert app.stores.chat_credentials.load().enabled is False

    async def test_status_shape(self, make_app):
        app = make_app()
        await app.start()

        status = app.status()

        assert set(status) == {"connector", "chat", "governor", "executor_available", "pending_qr"}
        assert status["connector"]["state"] == "unregistered"
        assert status["executor_available"] is False
