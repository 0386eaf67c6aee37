"""Independently startable/stoppable interval loops.

A :class:`Poller` runs its tick immediately, then every ``interval``
seconds, never overlapping ticks. Stopping is synchronous: it bumps the
generation counter so a tick that is still awaiting cannot record or emit
anything once it returns.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import TypeAlias

from agentlink.errors import AlreadyRunning
from agentlink.event_bus import EventBus, PollerError
from agentlink.governor import Governor
from agentlink.logger import logger

Tick: TypeAlias = Callable[["TickContext"], Awaitable[None]]


class TickContext:
    """Handed to every tick so it can tell whether its run is still current."""

    def __init__(self, poller: Poller, generation: int) -> None:
        self._poller = poller
        self.generation = generation

    @property
    def stale(self) -> bool:
        return self._poller._generation != self.generation or not self._poller.running


class Poller:
    def __init__(
        self,
        name: str,
        interval: float,
        tick: Tick,
        governor: Governor,
        *,
        feature: str | None = None,
        bus: EventBus | None = None,
        immediate: bool = True,
    ) -> None:
        self.name = name
        self.interval = interval
        self._tick = tick
        self._governor = governor
        self.feature = feature
        self._bus = bus
        self.immediate = immediate  # False: wait one interval before the first tick
        self._generation = 0
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self.tick_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            raise AlreadyRunning(f"Poller {self.name} is already running")
        self._generation += 1
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(
            self._run(self._generation, self._stop_event), name=f"poller-{self.name}"
        )
        logger.debug("Poller started", poller=self.name, interval=self.interval)

    def stop(self) -> None:
        """Stop the loop. No-op when already stopped; safe mid-tick."""
        if self._task is None:
            return
        self._generation += 1
        if self._stop_event is not None:
            self._stop_event.set()
        task, self._task = self._task, None
        # A tick that is awaiting a remote call is abandoned, not awaited.
        # A tick stopping its own poller finishes normally and the loop exits.
        if task is not asyncio.current_task():
            task.cancel()
        logger.debug("Poller stopped", poller=self.name)

    async def _run(self, generation: int, stop_event: asyncio.Event) -> None:
        ctx = TickContext(self, generation)
        if not self.immediate:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
        while not stop_event.is_set() and generation == self._generation:
            if self.feature is None or self._governor.should_enable_feature(self.feature):
                await self._run_tick(ctx)
            else:
                logger.debug("Poller tick skipped (degraded)", poller=self.name)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)

    async def _run_tick(self, ctx: TickContext) -> None:
        try:
            await self._tick(ctx)
        except Exception as exc:
            if ctx.stale:
                return
            error = self._governor.classify(exc)
            logger.warning(
                "Poller tick failed",
                poller=self.name,
                code=error.code,
                category=error.category,
                err=error.message,
            )
            if self._bus is not None:
                self._bus.emit(PollerError(poller=self.name, error=error))
        else:
            if not ctx.stale:
                self.tick_count += 1
