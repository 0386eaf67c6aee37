"""Error classification, retry/backoff, circuit breaker and degradation.

Every remote call made by a poller or a control operation goes through
:meth:`Governor.with_retry` or :meth:`Governor.track`. The governor keeps
the failure statistics that drive the circuit breaker and the degradation
tiers, probes connectivity in the background, and owns the pending-sync
queue that is replayed once the network comes back.
"""

from __future__ import annotations

import asyncio
import contextlib
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias, TypeVar

import aiohttp

from agentlink.config import NetworkConfig, RetryConfig, Settings, get_settings
from agentlink.errors import (
    AlreadyRunning,
    ClassifiedError,
    ErrorCategory,
    ErrorSeverity,
    NotRegistered,
    NotRunning,
    RemoteHTTPError,
)
from agentlink.event_bus import (
    CircuitBreakerTriggered,
    DataCached,
    ErrorRecorded,
    EventBus,
    NetworkLost,
    NetworkRestored,
    SyncDropped,
)
from agentlink.logger import logger
from agentlink.state import PendingSyncStore
from agentlink.types import PendingSyncItem, PendingSyncType, now_ms

T = TypeVar("T")

DegradationLevel: TypeAlias = Literal["full", "limited", "offline"]
SyncHandler: TypeAlias = Callable[[PendingSyncItem], Awaitable[None]]

# Features that stay on in the "limited" tier.
LIMITED_FEATURES = frozenset({"heartbeat"})


@dataclass(frozen=True)
class _ErrorCode:
    code: str
    category: ErrorCategory
    severity: ErrorSeverity


NETWORK_OFFLINE = _ErrorCode("E001", "network", "high")
NETWORK_TIMEOUT = _ErrorCode("E002", "timeout", "medium")
NETWORK_DNS = _ErrorCode("E003", "network", "high")
SERVER_UNAVAILABLE = _ErrorCode("E101", "server", "high")
SERVER_INTERNAL = _ErrorCode("E102", "server", "medium")
SERVER_RATE_LIMIT = _ErrorCode("E103", "server", "low")
AUTH_INVALID_TOKEN = _ErrorCode("E201", "authentication", "critical")
AUTH_EXPIRED = _ErrorCode("E202", "authentication", "high")
AUTH_UNAUTHORIZED = _ErrorCode("E203", "authentication", "critical")
VALIDATION_FAILED = _ErrorCode("E301", "validation", "low")
INVALID_RESPONSE = _ErrorCode("E302", "validation", "medium")
CLIENT_DISCONNECTED = _ErrorCode("E401", "client", "medium")
CLIENT_STATE_INVALID = _ErrorCode("E402", "client", "high")
UNKNOWN = _ErrorCode("E999", "unknown", "medium")


def _code_for_status(status: int) -> _ErrorCode | None:
    if status == 401:
        return AUTH_UNAUTHORIZED
    if status == 403:
        return AUTH_INVALID_TOKEN
    if status == 429:
        return SERVER_RATE_LIMIT
    if status in (502, 503, 504):
        return SERVER_UNAVAILABLE
    if 500 <= status < 600:
        return SERVER_INTERNAL
    if 400 <= status < 500:
        return VALIDATION_FAILED
    return None


def _code_for_message(message: str) -> _ErrorCode:
    """Fallback classification from the lower-cased error text."""
    if "enotfound" in message or "dns" in message or "name resolution" in message:
        return NETWORK_DNS
    if "econnrefused" in message or "network" in message or "connection refused" in message:
        return NETWORK_OFFLINE
    if "timeout" in message or "timed out" in message or "etimedout" in message:
        return NETWORK_TIMEOUT
    if "503" in message or "service unavailable" in message:
        return SERVER_UNAVAILABLE
    if "500" in message or "internal server" in message:
        return SERVER_INTERNAL
    if "429" in message or "rate limit" in message:
        return SERVER_RATE_LIMIT
    if "401" in message or "unauthorized" in message:
        return AUTH_UNAUTHORIZED
    if "403" in message or "forbidden" in message:
        return AUTH_INVALID_TOKEN
    if "token" in message and "expired" in message:
        return AUTH_EXPIRED
    if "400" in message or "bad request" in message:
        return VALIDATION_FAILED
    if "invalid" in message and "response" in message:
        return INVALID_RESPONSE
    return UNKNOWN


def _code_for(exc: BaseException) -> _ErrorCode:
    if isinstance(exc, RemoteHTTPError):
        by_status = _code_for_status(exc.status)
        if by_status is not None:
            return by_status
        return _code_for_message(str(exc).lower())
    # TimeoutError is an OSError subclass, so it must be checked first.
    if isinstance(exc, TimeoutError):
        return NETWORK_TIMEOUT
    if isinstance(exc, aiohttp.ServerDisconnectedError):
        return NETWORK_OFFLINE
    if isinstance(exc, (aiohttp.ClientConnectionError, ConnectionError)):
        message = str(exc).lower()
        if "name resolution" in message or "dns" in message or "nodename" in message:
            return NETWORK_DNS
        return NETWORK_OFFLINE
    if isinstance(exc, (aiohttp.ContentTypeError, ValueError)) and "json" in str(exc).lower():
        return INVALID_RESPONSE
    if isinstance(exc, (NotRunning, AlreadyRunning, NotRegistered)):
        return CLIENT_STATE_INVALID
    return _code_for_message(str(exc).lower())


def is_retryable(category: ErrorCategory, severity: ErrorSeverity) -> bool:
    if category == "authentication" or severity == "critical":
        return False
    return category in ("network", "server", "timeout")


@dataclass
class ErrorStats:
    total_errors: int = 0
    errors_by_category: dict[str, int] = field(default_factory=dict)
    errors_by_severity: dict[str, int] = field(default_factory=dict)
    consecutive_failures: int = 0
    last_error: ClassifiedError | None = None
    last_success_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_errors": self.total_errors,
            "errors_by_category": dict(self.errors_by_category),
            "errors_by_severity": dict(self.errors_by_severity),
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "last_success_at": self.last_success_at,
        }


class Governor:
    """Wraps remote calls with classification, retry and bookkeeping."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        pending_store: PendingSyncStore | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        s = settings or get_settings()
        self._retry: RetryConfig = s.retry
        self._network: NetworkConfig = s.network
        self._pending = pending_store or PendingSyncStore(s.pending_sync_path)
        self._sleep = sleep
        self._rng = rng
        self.bus = EventBus()
        self.stats = ErrorStats()
        self._online = True
        self._breaker_tripped = False
        self._sync_handler: SyncHandler | None = None
        self._flushing = False
        self._probe_task: asyncio.Task[None] | None = None
        self._probe_stop: asyncio.Event | None = None
        self.bus.subscribe(NetworkRestored, self._on_network_restored)

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify(self, exc: BaseException, context: dict[str, Any] | None = None) -> ClassifiedError:
        if isinstance(exc, ClassifiedError):
            return exc
        code = _code_for(exc)
        return ClassifiedError(
            str(exc) or type(exc).__name__,
            code=code.code,
            category=code.category,
            severity=code.severity,
            retryable=is_retryable(code.category, code.severity),
            context=context,
        )

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def record_failure(
        self, exc: BaseException, context: dict[str, Any] | None = None
    ) -> ClassifiedError:
        error = self.classify(exc, context)
        stats = self.stats
        stats.total_errors += 1
        stats.errors_by_category[error.category] = (
            stats.errors_by_category.get(error.category, 0) + 1
        )
        stats.errors_by_severity[error.severity] = (
            stats.errors_by_severity.get(error.severity, 0) + 1
        )
        stats.consecutive_failures += 1
        stats.last_error = error
        self.bus.emit(ErrorRecorded(error=error))

        threshold = self._network.circuit_breaker_threshold
        if stats.consecutive_failures >= threshold and not self._breaker_tripped:
            self._breaker_tripped = True
            logger.warning(
                "Circuit breaker triggered",
                consecutive_failures=stats.consecutive_failures,
                last_code=error.code,
            )
            self.bus.emit(
                CircuitBreakerTriggered(
                    consecutive_failures=stats.consecutive_failures, last_error=error
                )
            )
        return error

    def record_success(self) -> None:
        self.stats.consecutive_failures = 0
        self.stats.last_success_at = now_ms()
        self._breaker_tripped = False

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    def retry_delay(self, attempt: int) -> float:
        """Jittered exponential backoff for the zero-based ``attempt``."""
        r = self._retry
        delay = min(r.max_delay, r.base_delay * (r.multiplier**attempt))
        spread = delay * r.jitter
        delay += spread * (2 * self._rng() - 1)
        return min(r.max_delay, max(0.0, delay))

    async def with_retry(
        self,
        fn: Callable[[], Awaitable[T]],
        context: str = "",
        *,
        max_retries: int | None = None,
    ) -> T:
        """Run ``fn``, retrying retryable failures up to ``max_retries`` times.

        Raises the final :class:`ClassifiedError` (chained to the original
        exception) once retries are exhausted or a non-retryable failure
        occurs.
        """
        retries = self._retry.max_retries if max_retries is None else max(0, max_retries)
        attempt = 0
        previous_delay = 0.0
        while True:
            try:
                result = await fn()
            except Exception as exc:
                error = self.record_failure(exc, {"operation": context, "attempt": attempt + 1})
                if not error.retryable or attempt >= retries:
                    raise error from exc
                delay = max(previous_delay, self.retry_delay(attempt))
                previous_delay = delay
                logger.info(
                    "Retrying remote call",
                    operation=context,
                    attempt=attempt + 1,
                    max_retries=retries,
                    delay=round(delay, 2),
                    code=error.code,
                )
                await self._sleep(delay)
                attempt += 1
            else:
                self.record_success()
                return result

    async def track(self, fn: Callable[[], Awaitable[T]], context: str = "") -> T:
        """Single attempt with the same bookkeeping as :meth:`with_retry`."""
        return await self.with_retry(fn, context, max_retries=0)

    # ------------------------------------------------------------------
    # Degradation
    # ------------------------------------------------------------------

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def degradation_level(self) -> DegradationLevel:
        if not self._online:
            return "offline"
        if self.stats.consecutive_failures >= self._network.limited_threshold:
            return "limited"
        return "full"

    def should_enable_feature(self, feature: str) -> bool:
        level = self.degradation_level
        if level == "offline":
            return False
        if level == "limited":
            return feature in LIMITED_FEATURES
        return True

    # ------------------------------------------------------------------
    # Connectivity probe
    # ------------------------------------------------------------------

    async def check_connectivity(self) -> bool:
        timeout = aiohttp.ClientTimeout(total=self._network.probe_timeout)
        try:
            async with (
                aiohttp.ClientSession(timeout=timeout) as session,
                session.head(self._network.probe_url, allow_redirects=True) as resp,
            ):
                online = resp.ok
        except (aiohttp.ClientError, TimeoutError, OSError):
            online = False
        self.set_online(online)
        return online

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        if online:
            logger.info("Network restored")
            self.bus.emit(NetworkRestored())
        else:
            logger.warning("Network lost")
            self.bus.emit(NetworkLost())

    def start(self) -> None:
        if self._probe_task is not None and not self._probe_task.done():
            return
        self._probe_stop = asyncio.Event()
        self._probe_task = asyncio.create_task(self._probe_loop(self._probe_stop), name="net-probe")

    async def stop(self) -> None:
        if self._probe_stop is not None:
            self._probe_stop.set()
        task, self._probe_task = self._probe_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _probe_loop(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            await self.check_connectivity()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self._network.probe_interval)

    # ------------------------------------------------------------------
    # Pending sync
    # ------------------------------------------------------------------

    def set_sync_handler(self, handler: SyncHandler | None) -> None:
        self._sync_handler = handler

    def cache_for_sync(self, type: PendingSyncType, payload: dict[str, Any]) -> None:
        size = self._pending.append(PendingSyncItem(type=type, payload=payload))
        logger.info("Cached for later sync", type=type, queue_size=size)
        self.bus.emit(DataCached(type=type, queue_size=size))

    def pending_count(self) -> int:
        return len(self._pending.load())

    async def flush_pending(self) -> int:
        """Resend cached items once each. Returns how many succeeded."""
        if self._sync_handler is None or self._flushing:
            return 0
        self._flushing = True
        sent = 0
        try:
            items = self._pending.load()
            if not items:
                return 0
            logger.info("Flushing pending sync queue", count=len(items))
            remaining: list[PendingSyncItem] = []
            for item in items:
                try:
                    await self._sync_handler(item)
                except Exception as exc:
                    item.attempts += 1
                    if item.attempts >= item.max_attempts:
                        logger.warning(
                            "Dropping pending item after max attempts",
                            type=item.type,
                            attempts=item.attempts,
                            err=str(exc),
                        )
                        self.bus.emit(
                            SyncDropped(type=item.type, attempts=item.attempts, payload=item.payload)
                        )
                    else:
                        remaining.append(item)
                else:
                    sent += 1
            # Items cached while the resends were in flight were appended after the snapshot.
            added = self._pending.load()[len(items):]
            self._pending.save(remaining + added)
            return sent
        finally:
            self._flushing = False

    async def _on_network_restored(self, _event: NetworkRestored) -> None:
        await self.flush_pending()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        return {
            "online": self._online,
            "degradation_level": self.degradation_level,
            "circuit_breaker_tripped": self._breaker_tripped,
            "pending_sync": self.pending_count(),
            "stats": self.stats.to_dict(),
        }
