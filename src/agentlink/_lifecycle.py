"""Application lifecycle: startup, signal handling, shutdown.

Each function receives the ``AgentLinkApp`` instance so it can access
runtime state without being a method.
"""

from __future__ import annotations

import asyncio
import os
import signal
import threading
from typing import TYPE_CHECKING

from agentlink.http_server import start_http_server
from agentlink.logger import logger

if TYPE_CHECKING:
    from agentlink.app import AgentLinkApp

# Hard-exit deadline if graceful shutdown hangs.
SHUTDOWN_DEADLINE = 12.0


async def shutdown_app(app: AgentLinkApp, sig_name: str, done: asyncio.Event) -> None:
    """Graceful shutdown handler. Second signal force-exits."""
    if app._shutting_down:
        logger.info("Force shutdown")
        os._exit(1)
    app._shutting_down = True
    logger.info("Shutdown signal received", signal=sig_name)

    watchdog = threading.Timer(SHUTDOWN_DEADLINE, lambda: os._exit(1))
    watchdog.daemon = True
    watchdog.start()
    try:
        await app.shutdown()
    finally:
        watchdog.cancel()
        done.set()


async def run_app(app: AgentLinkApp) -> None:
    """Main entry point: start subsystems, serve the control API, wait for a signal."""
    s = app.settings
    done = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda s=sig: asyncio.ensure_future(shutdown_app(app, s.name, done)),
        )

    await app.start()
    app._http_runner = await start_http_server(app, s.server.host, s.server.port)
    logger.info(
        "agentlink running",
        state=app.connector.state.value,
        chat=app.chat.running,
        local=f"http://{s.server.host}:{s.server.port}/api/status",
    )
    await done.wait()
