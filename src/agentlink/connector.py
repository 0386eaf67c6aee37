"""Pairing/command channel: registration state machine and its pollers.

States::

    UNREGISTERED ──begin_pairing──▶ PAIRING ──registered──▶ CONNECTED
         ▲                            │                      │  ▲
         └──────── expired ───────────┘             auth fail│  │heartbeat ok
                                                             ▼  │
    DISCONNECTED ◀──────────── disconnect() ──────────────── ERROR

Every await that precedes a state write is followed by an epoch check, so
a ``disconnect()`` issued while a tick is in flight wins.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import quote

from agentlink.chat.dedup import ProcessedLedger
from agentlink.config import Settings, get_settings
from agentlink.device import default_device_name, get_device_id
from agentlink.errors import (
    ClassifiedError,
    ExecutorUnavailable,
    NotRegistered,
    RemoteUnavailable,
)
from agentlink.event_bus import (
    AiPrompt,
    CommandReceived,
    CommandResultReported,
    Disconnected,
    EventBus,
    HeartbeatSent,
    PairingExpired,
    QrGenerated,
    Registered,
    StateChanged,
    WorkContextReported,
)
from agentlink.executor import Executor
from agentlink.governor import Governor
from agentlink.logger import logger, mask_token
from agentlink.pollers import Poller, TickContext
from agentlink.registration_watcher import RegistrationWatcher
from agentlink.remote import PairingClient
from agentlink.state import RegistrationStore
from agentlink.types import (
    AI_PROMPT_COMMAND,
    BackendCommand,
    CommandStatus,
    ConnectionState,
    ConnectorStatus,
    LoginStatus,
    PairingResult,
    PairingToken,
    PendingSyncItem,
    Registration,
    now_ms,
)
from agentlink.utils import create_background_task
from agentlink.work_context import COLLECT_TIMEOUT, WorkContextSnapshot, collect_work_context


@dataclass
class ConnectorRuntime:
    """What the pollers need from the host; supplied once the executor is resolved."""

    workspace_dir: Path
    executor: Executor | None = None


@dataclass
class _PairingAttempt:
    token: PairingToken
    device_name: str
    poller: Poller | None = None
    timer: asyncio.TimerHandle | None = None
    attempts: int = 0
    done: bool = False


def append_device_id(qr_data: str, device_id: str) -> str:
    sep = "&" if "?" in qr_data else "?"
    return f"{qr_data}{sep}deviceId={quote(device_id, safe='')}"


@dataclass
class _Tickers:
    heartbeat: Poller
    commands: Poller
    all: list[Poller] = field(default_factory=list)


class ConnectorManager:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: PairingClient | None = None,
        governor: Governor | None = None,
        store: RegistrationStore | None = None,
        device_id: str | None = None,
    ) -> None:
        s = settings or get_settings()
        self._cfg = s.connector
        self._retry = s.retry
        self._context_interval_ms = int(s.context_report_interval * 1000)
        self.bus = EventBus()
        self.client = client or PairingClient(s.pairing_api_url, timeout=s.timeouts.request)
        self.governor = governor or Governor(s)
        self.store = store or RegistrationStore(s.registration_path)
        self._device_id = device_id

        self.state = ConnectionState.UNREGISTERED
        self.registration: Registration | None = None
        self._token: PairingToken | None = None
        self._pairing: _PairingAttempt | None = None
        self._runtime: ConnectorRuntime | None = None
        self._epoch = 0
        self._registration_lock = asyncio.Lock()
        self._reporting = False
        self._ledger = ProcessedLedger()

        heartbeat = Poller(
            "heartbeat",
            self._cfg.heartbeat_interval,
            self._heartbeat_tick,
            self.governor,
            feature="heartbeat",
            bus=self.bus,
        )
        commands = Poller(
            "commands",
            self._cfg.command_poll_interval,
            self._command_tick,
            self.governor,
            feature="commands",
            bus=self.bus,
        )
        self._tickers = _Tickers(heartbeat, commands, [heartbeat, commands])
        self._watcher = RegistrationWatcher(self.store.path, self.reload_registration)
        self.governor.set_sync_handler(self.sync_pending)

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def watching(self) -> bool:
        return self._watcher.running

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        previous, self.state = self.state, state
        logger.info("Connector state changed", previous=previous.value, current=state.value)
        self.bus.emit(StateChanged(previous=previous.value, current=state.value))

    def _stop_pollers(self) -> None:
        for poller in self._tickers.all:
            poller.stop()

    def _start_pollers_if_ready(self) -> None:
        if self._runtime is None or self.registration is None:
            return
        if self.state not in (ConnectionState.CONNECTED, ConnectionState.ERROR):
            return
        for poller in self._tickers.all:
            if not poller.running:
                poller.start()

    def _adopt(self, registration: Registration, *, persist: bool, resumed: bool = False) -> None:
        """Install ``registration`` as current and bring the channel up."""
        self._end_pairing()
        if persist:
            self.store.save(registration)
        self.registration = registration
        self._ledger = ProcessedLedger(
            registration.processed_command_ids,
            persist=self.store.save_processed_command_ids,
        )
        self._set_state(
            ConnectionState.ERROR if registration.status == "error" else ConnectionState.CONNECTED
        )
        self._watcher.stop()
        self._start_pollers_if_ready()
        logger.info(
            "Connector registered",
            connector_id=registration.connector_id,
            device_name=registration.device_name,
            resumed=resumed,
        )
        self.bus.emit(
            Registered(
                connector_id=registration.connector_id,
                device_name=registration.device_name,
                user_id=registration.user_id,
                resumed=resumed,
            )
        )

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def resume_from_store(self) -> ConnectionState:
        """Resolve the initial state from disk without touching the network.

        Must run inside the event loop. Pollers wait for :meth:`attach_runtime`.
        """
        registration = self.store.load()
        if registration is not None:
            self._adopt(registration, persist=False, resumed=True)
        else:
            self._set_state(ConnectionState.UNREGISTERED)
            self._watcher.start()
        return self.state

    def attach_runtime(self, runtime: ConnectorRuntime) -> None:
        self._runtime = runtime
        self._start_pollers_if_ready()

    async def reload_registration(self) -> None:
        """Adopt a registration written to disk by someone else."""
        async with self._registration_lock:
            registration = self.store.load()
            if registration is None:
                return
            current = self.registration
            if current is not None and current.connector_id == registration.connector_id:
                return
            logger.info("Registration file changed", connector_id=registration.connector_id)
            self._adopt(registration, persist=False)

    # ------------------------------------------------------------------
    # Pairing
    # ------------------------------------------------------------------

    @property
    def has_active_token(self) -> bool:
        return self._token is not None and self._token.is_valid()

    def _end_pairing(self) -> None:
        """Cancel the active attempt without emitting ``PairingExpired``."""
        attempt, self._pairing = self._pairing, None
        self._token = None
        if attempt is None:
            return
        attempt.done = True
        if attempt.poller is not None:
            attempt.poller.stop()
        if attempt.timer is not None:
            attempt.timer.cancel()

    def _expire_pairing(self, attempt: _PairingAttempt, reason: str) -> None:
        if attempt.done:
            return
        attempt.done = True
        if attempt.poller is not None:
            attempt.poller.stop()
        if attempt.timer is not None:
            attempt.timer.cancel()
        if self._pairing is attempt:
            self._pairing = None
            self._token = None
            if self.state == ConnectionState.PAIRING:
                self._set_state(ConnectionState.UNREGISTERED)
        logger.warning("Pairing token expired", reason=reason, attempts=attempt.attempts)
        self.bus.emit(PairingExpired(token=attempt.token.token, reason=reason))

    async def begin_pairing(self, device_name: str | None = None) -> PairingResult:
        """Request a QR token and start waiting for the user to scan it."""
        self._end_pairing()
        name = device_name or default_device_name(self._cfg.device_name_prefix)
        device_id = self._device_id or get_device_id()

        try:
            data = await self.governor.track(
                lambda: self.client.create_qr_token(name, self._cfg.device_type, device_id),
                "qr-token",
            )
        except ClassifiedError as exc:
            raise RemoteUnavailable(f"Failed to create QR token: {exc.message}") from exc

        # A concurrent call may have started an attempt while we awaited.
        self._end_pairing()

        server_expiry = float(data.get("expires_in") or self._cfg.qr_code_timeout)
        expires_in = min(self._cfg.qr_code_timeout, server_expiry)
        created = now_ms()
        token = PairingToken(
            token=data["token"], created_at=created, expires_at=created + int(expires_in * 1000)
        )
        qr_payload = append_device_id(str(data["qr_data"]), device_id)

        attempt = _PairingAttempt(token=token, device_name=name)
        self._pairing = attempt
        self._token = token
        if self.registration is None:
            self._set_state(ConnectionState.PAIRING)

        logger.info("Pairing started", token=mask_token(token.token), expires_in=expires_in)
        self.bus.emit(QrGenerated(qr_payload=qr_payload, token=token.token, expires_in=expires_in))

        loop = asyncio.get_running_loop()
        attempt.timer = loop.call_later(expires_in, self._expire_pairing, attempt, "timeout")

        async def _tick(ctx: TickContext) -> None:
            await self._pairing_tick(attempt, ctx)

        attempt.poller = Poller(
            "pairing", self._cfg.pairing_poll_interval, _tick, self.governor, bus=self.bus
        )
        attempt.poller.start()
        return PairingResult(
            qr_payload=qr_payload, token=token.token, device_id=device_id, expires_in=expires_in
        )

    async def _pairing_tick(self, attempt: _PairingAttempt, ctx: TickContext) -> None:
        if attempt.done:
            return
        if attempt.attempts >= self._cfg.pairing_max_attempts:
            self._expire_pairing(attempt, "attempts")
            return
        attempt.attempts += 1
        status = await self.governor.track(
            lambda: self.client.check_login_status(attempt.token.token), "check-login-status"
        )
        if ctx.stale or attempt.done:
            return
        if status.expired:
            self._expire_pairing(attempt, "remote")
            return
        if status.registered:
            await self._complete_pairing(attempt, status)

    async def _complete_pairing(self, attempt: _PairingAttempt, status: LoginStatus) -> None:
        async with self._registration_lock:
            if attempt.done or attempt is not self._pairing:
                return
            if not status.connector_id:
                logger.warning("Login status reported registered without a connector id")
                return
            registration = Registration(
                connector_id=status.connector_id,
                device_name=status.device_name or attempt.device_name,
                device_type=self._cfg.device_type,
                token=attempt.token.token,
                user_id=status.user_id,
                status="connected",
            )
            self._adopt(registration, persist=True)

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def _context_report_due(self, at: int | None = None) -> bool:
        if self._reporting or self.registration is None:
            return False
        if self._runtime is None or self._runtime.executor is None:
            return False
        if not self.governor.should_enable_feature("work-context"):
            return False
        last = self.registration.last_context_report_at
        if last is None:
            return True
        return (at if at is not None else now_ms()) - last >= self._context_interval_ms

    async def _heartbeat_tick(self, ctx: TickContext) -> None:
        registration = self.registration
        if registration is None:
            return
        epoch = self._epoch

        if self._context_report_due():
            create_background_task(self.report_work_context(), name="work-context-report")

        timestamp = now_ms()
        try:
            await self.governor.with_retry(
                lambda: self.client.send_heartbeat(
                    registration.connector_id,
                    registration.token,
                    timestamp=timestamp,
                    last_activity=timestamp,
                ),
                "heartbeat",
                max_retries=self._retry.tick_max_retries,
            )
        except ClassifiedError as exc:
            if exc.category == "authentication" and not ctx.stale and epoch == self._epoch:
                self._enter_error(exc)
            raise

        if ctx.stale or epoch != self._epoch:
            return
        if self.state == ConnectionState.ERROR:
            self._recover()
        self.bus.emit(HeartbeatSent(connector_id=registration.connector_id, timestamp=timestamp))

    def _enter_error(self, error: ClassifiedError) -> None:
        if self.state == ConnectionState.ERROR or self.registration is None:
            return
        logger.error("Heartbeat rejected, connector in error state", code=error.code)
        self.registration.status = "error"
        self.store.update_fields(status="error")
        self._set_state(ConnectionState.ERROR)

    def _recover(self) -> None:
        if self.registration is None:
            return
        logger.info("Heartbeat accepted again, connector recovered")
        self.registration.status = "connected"
        self.store.update_fields(status="connected")
        self._set_state(ConnectionState.CONNECTED)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _command_tick(self, ctx: TickContext) -> None:
        registration = self.registration
        if registration is None:
            return
        epoch = self._epoch
        commands = await self.governor.with_retry(
            lambda: self.client.poll_commands(registration.connector_id, self._cfg.command_poll_limit),
            "commands-poll",
            max_retries=self._retry.tick_max_retries,
        )
        if ctx.stale or epoch != self._epoch:
            return
        for command in commands:
            self._dispatch_command(command)

    def _dispatch_command(self, command: BackendCommand) -> None:
        if not self._ledger.commit(command.command_id):
            logger.debug("Skipping already processed command", command_id=command.command_id)
            return
        logger.info(
            "Command received", command_id=command.command_id, command_type=command.command_type
        )
        self.bus.emit(
            CommandReceived(command_id=command.command_id, command_type=command.command_type)
        )
        if command.command_type == AI_PROMPT_COMMAND and command.prompt:
            self.bus.emit(AiPrompt(command_id=command.command_id, prompt=command.prompt))
            return
        if command.command_type == AI_PROMPT_COMMAND:
            message = "Empty prompt"
        else:
            message = f"Unknown command type: {command.command_type}"
        create_background_task(
            self.report_command_result(command.command_id, "failed", None, message),
            name=f"command-result-{command.command_id}",
        )

    @property
    def processed_command_ids(self) -> list[str]:
        return self._ledger.ids()

    async def report_command_result(
        self,
        command_id: str,
        status: CommandStatus,
        result: Any = None,
        error_message: str | None = None,
    ) -> bool:
        """Send a command result. Returns False when it was cached for later."""
        registration = self.registration
        if registration is None:
            raise NotRegistered("Not registered")
        payload = {
            "command_id": command_id,
            "connector_id": registration.connector_id,
            "status": status,
            "result": result,
            "error_message": error_message,
        }
        try:
            await self.governor.with_retry(
                lambda: self.client.report_command_result(**payload), "command-result"
            )
        except ClassifiedError as exc:
            if not exc.retryable:
                raise
            self.governor.cache_for_sync("command-result", payload)
            self.bus.emit(CommandResultReported(command_id=command_id, status=status, cached=True))
            return False
        logger.info("Command result reported", command_id=command_id, status=status)
        self.bus.emit(CommandResultReported(command_id=command_id, status=status))
        return True

    # ------------------------------------------------------------------
    # Work context
    # ------------------------------------------------------------------

    @property
    def reporting_context(self) -> bool:
        return self._reporting

    async def report_work_context(self, *, force: bool = False) -> WorkContextSnapshot | None:
        """Collect and send a work-context snapshot.

        Overlapping calls are no-ops. Without ``force`` the report only runs
        once the configured interval has elapsed since the last one.
        """
        if self._reporting:
            logger.debug("Work context report already in flight")
            return None
        registration = self.registration
        if registration is None:
            raise NotRegistered("Not registered")
        executor = self._runtime.executor if self._runtime else None
        if executor is None:
            raise ExecutorUnavailable("No executor available for work context")
        if not force and not self._context_report_due():
            return None

        self._reporting = True
        epoch = self._epoch
        try:
            snapshot = await collect_work_context(
                executor, since=registration.last_context_report_at, timeout=COLLECT_TIMEOUT
            )
            if epoch != self._epoch:
                return None
            if snapshot.is_empty:
                logger.info("Work context empty, not reporting")
                return None

            reported_at = now_ms()
            payload = {
                "connector_id": registration.connector_id,
                "context": snapshot.context,
                "reported_at": reported_at,
            }
            try:
                await self.governor.with_retry(
                    lambda: self.client.report_work_context(**payload), "work-context"
                )
            except ClassifiedError as exc:
                if not exc.retryable or epoch != self._epoch:
                    raise
                self.governor.cache_for_sync("work-context", payload)

            if epoch != self._epoch:
                return None
            registration.last_context_report_at = reported_at
            self.store.update_fields(last_context_report_at=reported_at)
            self.bus.emit(
                WorkContextReported(
                    connector_id=registration.connector_id,
                    reported_at=reported_at,
                    length=len(snapshot.context),
                )
            )
            return snapshot
        finally:
            self._reporting = False

    # ------------------------------------------------------------------
    # Pending sync
    # ------------------------------------------------------------------

    async def sync_pending(self, item: PendingSyncItem) -> None:
        """Resend one cached item; raises on failure so the queue keeps it."""
        payload = item.payload
        if item.type == "command-result":
            await self.governor.track(
                lambda: self.client.report_command_result(**payload), "sync-command-result"
            )
        elif item.type == "work-context":
            await self.governor.track(
                lambda: self.client.report_work_context(**payload), "sync-work-context"
            )
        else:
            # Stale heartbeats carry no information worth replaying.
            logger.debug("Discarding cached item", type=item.type)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def disconnect(
        self,
        *,
        clear_local: bool = True,
        notify_remote: bool = True,
        delete_remote: bool = False,
        watch_for_registration: bool | None = None,
    ) -> Disconnected:
        self._epoch += 1
        self._stop_pollers()
        self._end_pairing()
        self._watcher.stop()

        registration = self.registration
        remote_ok: bool | None = None
        if registration is not None and notify_remote:
            try:
                await self.governor.track(
                    lambda: self.client.disconnect(
                        registration.connector_id, registration.token, delete=delete_remote
                    ),
                    "disconnect",
                )
                remote_ok = True
            except ClassifiedError as exc:
                remote_ok = False
                logger.warning("Remote disconnect failed", code=exc.code, err=exc.message)

        cleared = False
        if registration is not None and clear_local and (not notify_remote or remote_ok):
            self.store.clear()
            cleared = True
        elif registration is not None and clear_local:
            logger.warning("Keeping local registration because the remote was not notified")

        self.registration = None
        self._ledger = ProcessedLedger()
        self._set_state(ConnectionState.DISCONNECTED)
        event = Disconnected(
            connector_id=registration.connector_id if registration else None,
            cleared_local=cleared,
            remote_ok=remote_ok,
        )
        self.bus.emit(event)

        watch = clear_local if watch_for_registration is None else watch_for_registration
        if watch:
            self._watcher.start()
        return event

    async def shutdown(self) -> None:
        """Stop every loop for process exit; the remote and the store are untouched."""
        self._epoch += 1
        self._stop_pollers()
        self._end_pairing()
        self._watcher.stop()
        await self.client.close()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> ConnectorStatus:
        return ConnectorStatus(
            state=self.state,
            registration=self.registration,
            has_active_token=self.has_active_token,
            runtime_attached=self._runtime is not None,
            active_pollers=[p.name for p in self._tickers.all if p.running],
        )
