"""Client for the pairing/command backend (``/connector/pinai``)."""

from __future__ import annotations

from typing import Any

import aiohttp

from agentlink.errors import RemoteHTTPError
from agentlink.logger import logger, mask_token
from agentlink.remote._http import JsonHttpClient
from agentlink.types import BackendCommand, CommandStatus, LoginStatus


class PairingClient(JsonHttpClient):
    """Typed wrappers for every pairing-backend endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        super().__init__(base_url, timeout=timeout, session=session)

    async def create_qr_token(
        self, device_name: str, device_type: str, device_id: str
    ) -> dict[str, Any]:
        data = await self.post(
            "/qr-token",
            json={"device_name": device_name, "device_type": device_type, "device_id": device_id},
        )
        if not isinstance(data, dict) or not data.get("token") or "qr_data" not in data:
            raise RemoteHTTPError(200, "Invalid response", str(data)[:200])
        logger.debug(
            "QR token created",
            token=mask_token(data["token"]),
            expires_in=data.get("expires_in"),
        )
        return data

    async def check_login_status(self, token: str) -> LoginStatus:
        data = await self.get("/check-login-status", params={"token": token})
        return LoginStatus.from_dict(data if isinstance(data, dict) else {})

    async def send_heartbeat(
        self,
        connector_id: str,
        token: str,
        *,
        timestamp: int,
        status: str = "online",
        last_activity: int | None = None,
    ) -> None:
        body: dict[str, Any] = {
            "connector_id": connector_id,
            "status": status,
            "timestamp": timestamp,
        }
        if last_activity is not None:
            body["work_status"] = {"last_activity": last_activity}
        await self.post("/heartbeat", json=body, bearer=token)

    async def poll_commands(self, connector_id: str, limit: int = 10) -> list[BackendCommand]:
        data = await self.get(
            "/commands/poll", params={"connector_id": connector_id, "limit": limit}
        )
        if not isinstance(data, list):
            raise RemoteHTTPError(200, "Invalid response", str(data)[:200])
        commands: list[BackendCommand] = []
        for item in data:
            command = BackendCommand.from_dict(item)
            if command is None:
                logger.warning("Skipping malformed command", raw=str(item)[:200])
                continue
            commands.append(command)
        return commands

    async def report_command_result(
        self,
        command_id: str,
        connector_id: str,
        status: CommandStatus,
        result: Any = None,
        error_message: str | None = None,
    ) -> None:
        await self.post(
            "/commands/result",
            json={
                "command_id": command_id,
                "connector_id": connector_id,
                "status": status,
                "result": result,
                "error_message": error_message,
            },
        )

    async def report_work_context(self, connector_id: str, context: str, reported_at: int) -> None:
        await self.post(
            "/work-context",
            json={"connector_id": connector_id, "context": context, "reported_at": reported_at},
        )

    async def disconnect(self, connector_id: str, token: str, *, delete: bool = False) -> None:
        await self.post(
            "/disconnect",
            json={"connector_id": connector_id, "delete": delete},
            bearer=token,
        )
