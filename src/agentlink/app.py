"""Main orchestrator: wires the two channels, the governor and the executor.

This is the only place that subscribes to events across components. The
connector and chat manager never know about the executor; accepted events
are forwarded here and results are reported back through them.
"""

from __future__ import annotations

from typing import Any

from aiohttp import web

from agentlink.chat import ChatManager
from agentlink.config import Settings, get_settings
from agentlink.connector import ConnectorManager, ConnectorRuntime
from agentlink.errors import (
    AlreadyRunning,
    ClassifiedError,
    ExecutorUnavailable,
    NotRegistered,
)
from agentlink.event_bus import (
    AiPrompt,
    CircuitBreakerTriggered,
    NetworkLost,
    NetworkRestored,
    NewMessage,
    PairingExpired,
    PollerError,
    QrGenerated,
    Registered,
)
from agentlink.executor import Executor, resolve_executor
from agentlink.governor import Governor
from agentlink.logger import logger
from agentlink.state import Stores
from agentlink.types import CommandStatus
from agentlink.utils import create_background_task

EMPTY_OUTPUT_RESPONSE = "Command executed but no output was generated."


class AgentLinkApp:
    """Main application class; owns all runtime state and wires subsystems."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        governor: Governor | None = None,
        connector: ConnectorManager | None = None,
        chat: ChatManager | None = None,
        executor: Executor | None = None,
        resolve: bool = True,
    ) -> None:
        s = settings or get_settings()
        self.settings = s
        self.stores = Stores.from_settings(s)
        self.governor = governor or Governor(s, pending_store=self.stores.pending_sync)
        self.connector = connector or ConnectorManager(
            s, governor=self.governor, store=self.stores.registration
        )
        self.chat = chat or ChatManager(
            s, governor=self.governor, store=self.stores.chat_credentials
        )
        self.executor = executor
        self._resolve_executor = resolve and executor is None
        self.last_qr: QrGenerated | None = None
        self._http_runner: web.AppRunner | None = None
        self._shutting_down = False
        self._started = False
        self._wire_events()

    # ------------------------------------------------------------------
    # Event wiring
    # ------------------------------------------------------------------

    def _wire_events(self) -> None:
        cbus = self.connector.bus
        cbus.subscribe(AiPrompt, self._on_ai_prompt)
        cbus.subscribe(QrGenerated, self._on_qr_generated)
        cbus.subscribe(PairingExpired, self._on_pairing_expired)
        cbus.subscribe(Registered, self._on_registered)
        cbus.subscribe(PollerError, self._on_poller_error)
        self.chat.bus.subscribe(NewMessage, self._on_new_message)
        self.chat.bus.subscribe(PollerError, self._on_poller_error)
        gbus = self.governor.bus
        gbus.subscribe(CircuitBreakerTriggered, self._on_circuit_breaker)
        gbus.subscribe(NetworkLost, self._on_network_lost)
        gbus.subscribe(NetworkRestored, self._on_network_restored)

    async def _on_ai_prompt(self, event: AiPrompt) -> None:
        status, result, error = await self._execute_prompt(event.prompt, f"command-{event.command_id}")
        await self.connector.report_command_result(event.command_id, status, result, error)

    async def _execute_prompt(
        self, prompt: str, session_key: str
    ) -> tuple[CommandStatus, dict[str, Any] | None, str | None]:
        if self.executor is None:
            return "failed", None, "Executor not available"
        try:
            result = await self.executor.execute(
                prompt, session_key, self.settings.timeouts.execution
            )
        except TimeoutError:
            return "failed", None, f"Execution timed out after {self.settings.timeouts.execution}s"
        except Exception as exc:
            logger.error("Executor failed", session_key=session_key, err=str(exc))
            return "failed", None, str(exc) or type(exc).__name__
        if result.is_error:
            return "failed", None, result.text or "Execution failed"
        return "completed", {"response": result.text or EMPTY_OUTPUT_RESPONSE}, None

    async def _on_new_message(self, event: NewMessage) -> None:
        if not self.settings.chat.auto_reply:
            return
        if self.executor is None:
            logger.warning("Chat message not answered: no executor", message_id=event.message_id)
            return
        status, result, error = await self._execute_prompt(
            event.content, f"chat-{event.message_id}"
        )
        if status != "completed" or result is None:
            logger.warning("Chat reply not sent", message_id=event.message_id, err=error)
            return
        try:
            await self.chat.send_message(event.peer_id, result["response"])
        except ClassifiedError as exc:
            logger.warning(
                "Failed to send chat reply", peer_id=event.peer_id, code=exc.code, err=exc.message
            )

    async def _on_qr_generated(self, event: QrGenerated) -> None:
        self.last_qr = event
        logger.info("Scan to pair", qr_payload=event.qr_payload, expires_in=event.expires_in)

    async def _on_pairing_expired(self, event: PairingExpired) -> None:
        self.last_qr = None
        logger.warning("Pairing expired; run `agentlink connect` to try again", reason=event.reason)

    async def _on_registered(self, event: Registered) -> None:
        self.last_qr = None

    async def _on_poller_error(self, event: PollerError) -> None:
        logger.debug("Poller error", poller=event.poller, code=event.error.code)

    async def _on_circuit_breaker(self, event: CircuitBreakerTriggered) -> None:
        logger.error(
            "Remote calls failing repeatedly",
            consecutive_failures=event.consecutive_failures,
            last_code=event.last_error.code if event.last_error else None,
        )

    async def _on_network_lost(self, _event: NetworkLost) -> None:
        logger.warning("Offline; pollers paused until connectivity returns")

    async def _on_network_restored(self, _event: NetworkRestored) -> None:
        logger.info("Online again; resuming pollers")

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Bring every subsystem up according to the persisted state."""
        if self._started:
            return
        self._started = True
        if self._resolve_executor:
            self.executor = resolve_executor(self.settings)
        self.governor.start()

        self.connector.resume_from_store()
        self.connector.attach_runtime(
            ConnectorRuntime(workspace_dir=self.settings.workspace_dir, executor=self.executor)
        )

        if self.connector.registration is None and self.settings.connector.auto_pair:
            create_background_task(self._auto_pair(), name="auto-pair")

        credentials = self.chat.credentials
        if credentials is not None and credentials.enabled:
            try:
                await self.chat.start()
            except (ClassifiedError, NotRegistered, AlreadyRunning) as exc:
                logger.warning("Chat not started", err=str(exc))
            except Exception as exc:
                logger.error("Chat failed to start", err=str(exc))
        else:
            logger.info("Chat not enabled")

        if self.governor.is_online:
            await self.governor.flush_pending()

    async def _auto_pair(self) -> None:
        result = await self.connector.begin_pairing()
        logger.info("Waiting for the app to scan the pairing code", token_expires_in=result.expires_in)

    async def shutdown(self) -> None:
        """Chat offline, connector stopped, governor stopped. The store is kept."""
        try:
            await self.chat.shutdown()
        except Exception as exc:
            logger.warning("Chat shutdown failed", err=str(exc))
        await self.connector.shutdown()
        await self.governor.stop()
        if self._http_runner is not None:
            await self._http_runner.cleanup()
            self._http_runner = None

    # ------------------------------------------------------------------
    # Control operations (used by the HTTP API)
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        return {
            "connector": self.connector.status().to_dict(),
            "chat": self.chat.status().to_dict(),
            "governor": self.governor.status(),
            "executor_available": self.executor is not None,
            "pending_qr": self.last_qr.qr_payload if self.last_qr else None,
        }

    async def connect(self, device_name: str | None = None) -> dict[str, Any]:
        registration = self.connector.registration
        if registration is not None:
            return {"registered": True, "registration": registration.public_dict()}
        result = await self.connector.begin_pairing(device_name)
        return {
            "registered": False,
            "qr_payload": result.qr_payload,
            "token": result.token,
            "device_id": result.device_id,
            "expires_in": result.expires_in,
        }

    async def disconnect(self, *, delete_remote: bool = False, clear_local: bool = True) -> dict[str, Any]:
        event = await self.connector.disconnect(clear_local=clear_local, delete_remote=delete_remote)
        return {
            "connector_id": event.connector_id,
            "cleared_local": event.cleared_local,
            "remote_ok": event.remote_ok,
        }

    async def report_context(self) -> dict[str, Any]:
        if self.executor is None:
            raise ExecutorUnavailable("Executor not available")
        snapshot = await self.connector.report_work_context(force=True)
        if snapshot is None:
            return {"reported": False}
        return {"reported": True, "length": len(snapshot.context)}

    async def chat_start(self) -> dict[str, Any]:
        started = await self.chat.enable()
        return {"started": started, **self.chat.status().to_dict()}

    async def chat_stop(self) -> dict[str, Any]:
        await self.chat.disable()
        return self.chat.status().to_dict()

    async def chat_send(self, target_agent_id: str, content: str) -> dict[str, Any]:
        return await self.chat.send_message(target_agent_id, content)
