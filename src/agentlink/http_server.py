"""Local HTTP control API.

Binds to ``server.host`` (loopback by default); the CLI talks to a running
service through it.
"""

from __future__ import annotations

import json
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from aiohttp import web

from agentlink.errors import (
    AgentLinkError,
    AlreadyRunning,
    ClassifiedError,
    ExecutorUnavailable,
    NotRegistered,
    NotRunning,
    RemoteUnavailable,
)
from agentlink.logger import logger

_start_time = time.monotonic()


class HttpDeps(Protocol):
    """Control operations provided by the application."""

    def status(self) -> dict[str, Any]: ...

    async def connect(self, device_name: str | None = None) -> dict[str, Any]: ...

    async def disconnect(
        self, *, delete_remote: bool = False, clear_local: bool = True
    ) -> dict[str, Any]: ...

    async def report_context(self) -> dict[str, Any]: ...

    async def chat_start(self) -> dict[str, Any]: ...

    async def chat_stop(self) -> dict[str, Any]: ...

    async def chat_send(self, target_agent_id: str, content: str) -> dict[str, Any]: ...


deps_key = web.AppKey("deps", HttpDeps)


def _status_for(exc: AgentLinkError) -> int:
    if isinstance(exc, (AlreadyRunning, NotRunning, NotRegistered)):
        return 409
    if isinstance(exc, (RemoteUnavailable, ExecutorUnavailable)):
        return 503
    if isinstance(exc, ClassifiedError):
        return 400 if exc.category == "validation" else 502
    return 500


@web.middleware
async def _error_middleware(
    request: web.Request, handler: Callable[[web.Request], Awaitable[web.StreamResponse]]
) -> web.StreamResponse:
    try:
        return await handler(request)
    except AgentLinkError as exc:
        status = _status_for(exc)
        logger.info("Control request failed", path=request.path, status=status, err=str(exc))
        return web.json_response({"error": str(exc)}, status=status)


async def _json_body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError as exc:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "invalid JSON body"}), content_type="application/json"
        ) from exc
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "JSON object expected"}), content_type="application/json"
        )
    return body


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------


async def _handle_health(request: web.Request) -> web.Response:
    return web.json_response(
        {"status": "ok", "uptime_seconds": round(time.monotonic() - _start_time)}
    )


async def _handle_status(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    return web.json_response(deps.status())


async def _handle_connect(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    body = await _json_body(request)
    device_name = body.get("device_name")
    if device_name is not None and not isinstance(device_name, str):
        return web.json_response({"error": "device_name must be a string"}, status=400)
    return web.json_response(await deps.connect(device_name or None))


async def _handle_disconnect(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    body = await _json_body(request)
    result = await deps.disconnect(
        delete_remote=bool(body.get("delete_remote", False)),
        clear_local=bool(body.get("clear_local", True)),
    )
    return web.json_response(result)


async def _handle_context_report(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    return web.json_response(await deps.report_context())


async def _handle_chat_start(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    return web.json_response(await deps.chat_start())


async def _handle_chat_stop(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    return web.json_response(await deps.chat_stop())


async def _handle_chat_send(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    body = await _json_body(request)
    target = body.get("target_agent_id", "")
    content = body.get("content", "")
    if not target or not content:
        return web.json_response({"error": "target_agent_id and content required"}, status=400)
    return web.json_response(await deps.chat_send(str(target), str(content)))


# ------------------------------------------------------------------
# Server setup
# ------------------------------------------------------------------


def create_app(deps: HttpDeps) -> web.Application:
    app = web.Application(middlewares=[_error_middleware])
    app[deps_key] = deps
    app.router.add_get("/health", _handle_health)
    app.router.add_get("/api/status", _handle_status)
    app.router.add_post("/api/connect", _handle_connect)
    app.router.add_post("/api/disconnect", _handle_disconnect)
    app.router.add_post("/api/context/report", _handle_context_report)
    app.router.add_post("/api/chat/start", _handle_chat_start)
    app.router.add_post("/api/chat/stop", _handle_chat_stop)
    app.router.add_post("/api/chat/send", _handle_chat_send)
    return app


async def start_http_server(deps: HttpDeps, host: str, port: int) -> web.AppRunner:
    """Create, start, and return the HTTP server runner."""
    runner = web.AppRunner(create_app(deps))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("HTTP server listening", host=host, port=port)
    return runner
