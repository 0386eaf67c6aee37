"""Tests for the pairing and hub HTTP clients against an in-process backend."""

from __future__ import annotations

from typing import Any

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from agentlink.errors import RemoteHTTPError
from agentlink.remote import HubClient, PairingClient


class _Recorder:
    def __init__(self) -> None:
        self.requests: list[dict[str, Any]] = []

    async def capture(self, request: web.Request) -> dict[str, Any]:
        body = await request.json() if request.can_read_body else None
        entry = {
            "method": request.method,
            "path": request.path,
            "query": dict(request.query),
            "auth": request.headers.get("Authorization"),
            "body": body,
        }
        self.requests.append(entry)
        return entry


@pytest.fixture
def recorder() -> _Recorder:
    return _Recorder()


@pytest.fixture
async def backend(recorder):
    """Fake pairing backend plus hub, recording every request."""

    async def qr_token(request: web.Request) -> web.Response:
        await recorder.capture(request)
        return web.json_response(
            {"token": "tok-1", "qr_data": "https://app.example/pair?token=tok-1", "expires_in": 300}
        )

    async def login_status(request: web.Request) -> web.Response:
        await recorder.capture(request)
        return web.json_response(
            {"registered": True, "connector_id": "conn-1", "device_name": "laptop", "user_id": "u1"}
        )

    async def ok(request: web.Request) -> web.Response:
        await recorder.capture(request)
        return web.json_response({"success": True})

    async def no_content(request: web.Request) -> web.Response:
        await recorder.capture(request)
        return web.Response(status=204)

    async def commands(request: web.Request) -> web.Response:
        await recorder.capture(request)
        return web.json_response(
            [
                {"command_type": "ai_prompt", "command_payload": {"prompt": "no id"}},
                "not-an-object",
                {
                    "command_id": "cmd-1",
                    "command_type": "ai_prompt",
                    "command_payload": {"prompt": "hello"},
                    "priority": 1,
                }
            ]
        )

    async def unauthorized(request: web.Request) -> web.Response:
        await recorder.capture(request)
        return web.json_response({"error": "bad token"}, status=401)

    async def hub_heartbeat(request: web.Request) -> web.Response:
        await recorder.capture(request)
        return web.json_response({"unread_count": 3})

    async def conversations(request: web.Request) -> web.Response:
        await recorder.capture(request)
        return web.json_response(
            {
                "conversations": [
                    {"peer": {"id": "peer-1", "name": "Peer"}, "unread_count": 2},
                    {"peer": {"id": "peer-2"}, "unread_count": 0},
                ]
            }
        )

    async def messages(request: web.Request) -> web.Response:
        await recorder.capture(request)
        return web.json_response(
            {
                "messages": [
                    {"id": "m1", "from": "peer-1", "content": "hi", "created_at": "2026-01-01"},
                    {"from": "peer-1", "content": "no id"},
                ]
            }
        )

    async def register(request: web.Request) -> web.Response:
        entry = await recorder.capture(request)
        if entry["body"]["name"] == "broken":
            return web.json_response({"agent_id": "a1"})
        return web.json_response({"api_key": "key-1", "agent_id": "agent-1"})

    app = web.Application()
    app.router.add_post("/qr-token", qr_token)
    app.router.add_get("/check-login-status", login_status)
    app.router.add_post("/heartbeat", ok)
    app.router.add_get("/commands/poll", commands)
    app.router.add_post("/commands/result", no_content)
    app.router.add_post("/work-context", ok)
    app.router.add_post("/disconnect", unauthorized)
    app.router.add_post("/api/heartbeat", hub_heartbeat)
    app.router.add_get("/api/messages", conversations)
    app.router.add_get("/api/messages/{peer_id}", messages)
    app.router.add_post("/api/message", ok)
    app.router.add_post("/api/register", register)

    server = TestServer(app)
    await server.start_server()
    yield f"http://localhost:{server.port}"
    await server.close()


class TestPairingClient:
    @pytest.fixture
    async def client(self, backend):
        client = PairingClient(backend, timeout=5)
        yield client
        await client.close()

    async def test_create_qr_token(self, client, recorder):
        data = await client.create_qr_token("laptop", "desktop", "dev-123")
        assert data["token"] == "tok-1"
        assert recorder.requests[0]["body"] == {
            "device_name": "laptop",
            "device_type": "desktop",
            "device_id": "dev-123",
        }

    async def test_check_login_status(self, client, recorder):
        status = await client.check_login_status("tok-1")
        assert status.registered is True
        assert status.connector_id == "conn-1"
        assert recorder.requests[0]["query"] == {"token": "tok-1"}

    async def test_heartbeat_uses_bearer_token(self, client, recorder):
        await client.send_heartbeat("conn-1", "secret", timestamp=123, last_activity=100)
        request = recorder.requests[0]
        assert request["auth"] == "Bearer secret"
        assert request["body"] == {
            "connector_id": "conn-1",
            "status": "online",
            "timestamp": 123,
            "work_status": {"last_activity": 100},
        }

    async def test_poll_commands(self, client, recorder):
        commands = await client.poll_commands("conn-1", limit=5)
        assert [c.command_id for c in commands] == ["cmd-1"]
        assert commands[0].prompt == "hello"
        assert recorder.requests[0]["query"] == {"connector_id": "conn-1", "limit": "5"}

    async def test_poll_skips_malformed_commands(self, client):
        commands = await client.poll_commands("conn-1")
        assert len(commands) == 1
        assert commands[0].command_id == "cmd-1"
        assert commands[0].priority == 1

    async def test_report_result_accepts_no_content(self, client, recorder):
        await client.report_command_result("cmd-1", "conn-1", "completed", result="done")
        assert recorder.requests[0]["body"]["status"] == "completed"
        assert recorder.requests[0]["body"]["error_message"] is None

    async def test_error_status_raises(self, client):
        with pytest.raises(RemoteHTTPError) as info:
            await client.disconnect("conn-1", "secret")
        assert info.value.status == 401
        assert "bad token" in info.value.body


class TestHubClient:
    @pytest.fixture
    async def client(self, backend):
        client = HubClient(backend, "key-1", timeout=5)
        yield client
        await client.close()

    async def test_heartbeat_returns_unread(self, client, recorder):
        assert await client.send_heartbeat() == 3
        assert recorder.requests[0]["auth"] == "Bearer key-1"
        assert recorder.requests[0]["body"] == {"supports_chat": True}

    async def test_offline_heartbeat(self, client, recorder):
        await client.send_heartbeat(False, status="offline")
        assert recorder.requests[0]["body"] == {"supports_chat": False, "status": "offline"}

    async def test_conversations(self, client):
        conversations = await client.get_conversations()
        assert [(c.peer_id, c.peer_name, c.unread_count) for c in conversations] == [
            ("peer-1", "Peer", 2),
            ("peer-2", "peer-2", 0),
        ]

    async def test_messages_skip_entries_without_id(self, client, recorder):
        messages = await client.get_messages("peer-1", limit=20)
        assert [(m.id, m.sender) for m in messages] == [("m1", "peer-1")]
        assert recorder.requests[0]["path"] == "/api/messages/peer-1"
        assert recorder.requests[0]["query"] == {"limit": "20"}

    async def test_send_message(self, client, recorder):
        await client.send_message("peer-1", "hello")
        assert recorder.requests[0]["body"] == {"target_agent_id": "peer-1", "content": "hello"}

    async def test_missing_key_fails_before_request(self, backend, recorder):
        client = HubClient(backend)
        try:
            with pytest.raises(RemoteHTTPError) as info:
                await client.send_heartbeat()
        finally:
            await client.close()
        assert info.value.status == 401
        assert recorder.requests == []

    async def test_register_is_unauthenticated(self, backend, recorder):
        client = HubClient(backend)
        try:
            data = await client.register(name="bot", description="d", tags=["x"])
        finally:
            await client.close()
        assert data["api_key"] == "key-1"
        request = recorder.requests[0]
        assert request["auth"] is None
        assert request["body"]["entity_type"] == "agent"
        assert request["body"]["tags"] == ["x"]

    async def test_register_requires_key_in_response(self, client):
        with pytest.raises(RemoteHTTPError):
            await client.register(name="broken", description="d")
