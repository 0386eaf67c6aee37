"""Watches the storage directory for a registration written by another process.

Uses watchdog (inotify on Linux, FSEvents on macOS). Events arrive on the
observer thread and are forwarded into the event loop through a queue;
the callback always runs on the loop.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from agentlink.logger import logger


class _RegistrationEventHandler(FileSystemEventHandler):
    """Enqueues events that touch the registration file."""

    def __init__(
        self,
        target: Path,
        loop: asyncio.AbstractEventLoop,
        queue: asyncio.Queue[Path],
    ) -> None:
        super().__init__()
        self._target = target
        self._loop = loop
        self._queue = queue

    def _enqueue_if_target(self, path_str: str | bytes) -> None:
        if isinstance(path_str, bytes):
            path_str = path_str.decode(errors="replace")
        if Path(path_str).name != self._target.name:
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, self._target)

    def on_created(self, event: Any) -> None:
        self._enqueue_if_target(event.src_path)

    def on_modified(self, event: Any) -> None:
        self._enqueue_if_target(event.src_path)

    def on_moved(self, event: Any) -> None:
        # Atomic writes (tmp → .json rename) generate moved events, not created
        self._enqueue_if_target(event.dest_path)


class RegistrationWatcher:
    """Calls ``on_change`` whenever the registration file appears or changes."""

    def __init__(self, path: Path, on_change: Callable[[], Awaitable[None]]) -> None:
        self.path = path
        self._on_change = on_change
        self._observer: Any = None
        self._consumer: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        if self._observer is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Path] = asyncio.Queue()
        handler = _RegistrationEventHandler(self.path, loop, queue)
        observer = Observer()
        observer.schedule(handler, str(self.path.parent), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        self._consumer = asyncio.create_task(self._consume(queue), name="registration-watcher")
        logger.info("Watching for registration", path=str(self.path))

    def stop(self) -> None:
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
        consumer, self._consumer = self._consumer, None
        if consumer is not None and consumer is not asyncio.current_task():
            consumer.cancel()

    async def _consume(self, queue: asyncio.Queue[Path]) -> None:
        me = asyncio.current_task()
        while self._consumer is me:
            await queue.get()
            # Coalesce the burst of events a single write produces.
            while not queue.empty():
                queue.get_nowait()
            try:
                await self._on_change()
            except Exception as exc:
                logger.error("Error handling registration change", err=str(exc))

    async def trigger(self) -> None:
        """Run the change callback directly (startup sweep and tests)."""
        await self._on_change()
