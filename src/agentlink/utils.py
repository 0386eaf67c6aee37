"""Shared utility functions.

Small helpers used across multiple modules: atomic JSON document writes,
tolerant JSON reads, and background tasks that log their failures.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

from agentlink.logger import logger


def write_json_atomic(path: Path, data: Any, *, indent: int | None = 2) -> None:
    """Write JSON data to a file using atomic rename (tmp → final).

    Readers either see the old content or the complete new content.
    Creates parent directories if they don't exist.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(data, indent=indent))
    tmp.replace(path)


def read_json(path: Path) -> Any | None:
    """Read a JSON document, returning None when it is missing or unparseable."""
    try:
        text = path.read_text()
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning("Failed to read document", path=str(path), err=str(exc))
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring corrupt document", path=str(path), err=str(exc))
        return None


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them.

    A drop-in replacement for ``asyncio.create_task`` for fire-and-forget
    work (result reports, context reports) where we don't await the result
    but still want failures to appear in logs.
    """
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    task.add_done_callback(_log_task_exception)
    return task


# Strong references so the loop cannot garbage-collect running tasks.
_background_tasks: set[asyncio.Task[Any]] = set()


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    """Callback attached to background tasks; logs unhandled exceptions."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )
