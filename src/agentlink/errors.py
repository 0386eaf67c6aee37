"""Exception types shared across agentlink."""

from __future__ import annotations

import time
from typing import Any, Literal, TypeAlias

ErrorCategory: TypeAlias = Literal[
    "network",
    "timeout",
    "server",
    "authentication",
    "validation",
    "client",
    "unknown",
]
ErrorSeverity: TypeAlias = Literal["low", "medium", "high", "critical"]

ERROR_CATEGORIES: tuple[ErrorCategory, ...] = (
    "network",
    "timeout",
    "server",
    "authentication",
    "validation",
    "client",
    "unknown",
)
ERROR_SEVERITIES: tuple[ErrorSeverity, ...] = ("low", "medium", "high", "critical")


class AgentLinkError(Exception):
    """Base class for every error raised by agentlink."""


class RemoteHTTPError(AgentLinkError):
    """A backend answered with a non-2xx status."""

    def __init__(self, status: int, reason: str = "", body: str = "", *, url: str = "") -> None:
        self.status = status
        self.reason = reason
        self.body = body
        self.url = url
        detail = f" {body[:200]}" if body else ""
        super().__init__(f"HTTP {status} {reason}{detail}".strip())


class RemoteUnavailable(AgentLinkError):
    """A required remote call failed and the operation cannot proceed."""


class AlreadyRunning(AgentLinkError):
    """Start was called on something that is already running."""


class NotRunning(AgentLinkError):
    """An operation needs a running service that is stopped."""


class NotRegistered(AgentLinkError):
    """An operation needs a registration or credentials that do not exist."""


class ExecutorUnavailable(AgentLinkError):
    """No executor capability was resolved at startup."""


class ClassifiedError(AgentLinkError):
    """A failure after classification by the governor.

    Carries the category/severity pair that drives retry and degradation
    decisions, plus the original exception as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str,
        category: ErrorCategory,
        severity: ErrorSeverity,
        retryable: bool,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.severity = severity
        self.retryable = retryable
        self.context = context or {}
        self.timestamp = int(time.time() * 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "category": self.category,
            "severity": self.severity,
            "retryable": self.retryable,
            "timestamp": self.timestamp,
            "context": self.context,
        }

    def __repr__(self) -> str:
        return (
            f"ClassifiedError({self.code}, {self.category}/{self.severity}, "
            f"retryable={self.retryable}, {self.message!r})"
        )
