"""Tests for the EventBus pub/sub system."""

from __future__ import annotations

import asyncio
from unittest.mock import Mock

import pytest

from agentlink.event_bus import (
    EventBus,
    HeartbeatSent,
    NewMessage,
    QrGenerated,
)


@pytest.fixture
def bus() -> EventBus:
    """Create a fresh EventBus for each test."""
    return EventBus()


class TestEventBus:
    """Test EventBus subscription and emission."""

    async def test_subscribe_and_emit(self, bus: EventBus) -> None:
        received: list[QrGenerated] = []

        async def listener(event: QrGenerated) -> None:
            received.append(event)

        bus.subscribe(QrGenerated, listener)

        event = QrGenerated(qr_payload="https://example.test/p?token=t1", token="t1", expires_in=300)
        bus.emit(event)
        await bus.drain()

        assert received == [event]

    async def test_listener_only_receives_subscribed_type(self, bus: EventBus) -> None:
        received: list[object] = []

        async def listener(event: object) -> None:
            received.append(event)

        bus.subscribe(HeartbeatSent, listener)
        bus.emit(QrGenerated(qr_payload="p", token="t", expires_in=1))
        bus.emit(HeartbeatSent(connector_id="c1", timestamp=1))
        await bus.drain()

        assert received == [HeartbeatSent(connector_id="c1", timestamp=1)]

    async def test_multiple_listeners(self, bus: EventBus) -> None:
        calls: list[str] = []

        async def first(_event: HeartbeatSent) -> None:
            calls.append("first")

        async def second(_event: HeartbeatSent) -> None:
            calls.append("second")

        bus.subscribe(HeartbeatSent, first)
        bus.subscribe(HeartbeatSent, second)
        bus.emit(HeartbeatSent(connector_id="c1", timestamp=1))
        await bus.drain()

        assert sorted(calls) == ["first", "second"]

    async def test_unsubscribe(self, bus: EventBus) -> None:
        received: list[HeartbeatSent] = []

        async def listener(event: HeartbeatSent) -> None:
            received.append(event)

        unsubscribe = bus.subscribe(HeartbeatSent, listener)
        unsubscribe()
        unsubscribe()  # idempotent
        bus.emit(HeartbeatSent(connector_id="c1", timestamp=1))
        await bus.drain()

        assert received == []

    async def test_failing_listener_does_not_affect_others(self, bus: EventBus) -> None:
        received: list[NewMessage] = []

        async def broken(_event: NewMessage) -> None:
            raise RuntimeError("listener blew up")

        async def healthy(event: NewMessage) -> None:
            received.append(event)

        bus.subscribe(NewMessage, broken)
        bus.subscribe(NewMessage, healthy)
        bus.emit(
            NewMessage(
                message_id="m1", peer_id="p1", peer_name="Peer", content="hi", timestamp=""
            )
        )
        await bus.drain()

        assert len(received) == 1

    async def test_listener_error_is_logged(self, bus: EventBus, monkeypatch) -> None:
        log = Mock()
        monkeypatch.setattr("agentlink.event_bus.logger", log)

        async def broken(_event: HeartbeatSent) -> None:
            raise RuntimeError("listener blew up")

        bus.subscribe(HeartbeatSent, broken)
        bus.emit(HeartbeatSent(connector_id="c1", timestamp=1))
        await bus.drain()

        log.warning.assert_called_once_with(
            "EventBus listener error", event_type="HeartbeatSent", err="listener blew up"
        )

    async def test_emit_without_listeners_is_noop(self, bus: EventBus) -> None:
        bus.emit(HeartbeatSent(connector_id="c1", timestamp=1))
        await bus.drain()

    async def test_emit_is_non_blocking(self, bus: EventBus) -> None:
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(_event: HeartbeatSent) -> None:
            started.set()
            await release.wait()

        bus.subscribe(HeartbeatSent, slow)
        bus.emit(HeartbeatSent(connector_id="c1", timestamp=1))
        assert not started.is_set()

        await asyncio.wait_for(started.wait(), timeout=1)
        release.set()
        await bus.drain()

    async def test_drain_waits_for_chained_emits(self, bus: EventBus) -> None:
        seen: list[str] = []

        async def on_heartbeat(_event: HeartbeatSent) -> None:
            bus.emit(QrGenerated(qr_payload="p", token="t", expires_in=1))

        async def on_qr(_event: QrGenerated) -> None:
            await asyncio.sleep(0)
            seen.append("qr")

        bus.subscribe(HeartbeatSent, on_heartbeat)
        bus.subscribe(QrGenerated, on_qr)
        bus.emit(HeartbeatSent(connector_id="c1", timestamp=1))
        await bus.drain()

        assert seen == ["qr"]

    async def test_drain_finishes_after_deep_chain(self, bus: EventBus) -> None:
        hops: list[int] = []

        async def relay(event: HeartbeatSent) -> None:
            hops.append(event.timestamp)
            if event.timestamp < 5:
                bus.emit(HeartbeatSent(connector_id="c1", timestamp=event.timestamp + 1))

        bus.subscribe(HeartbeatSent, relay)
        bus.emit(HeartbeatSent(connector_id="c1", timestamp=1))
        await asyncio.wait_for(bus.drain(), timeout=2)

        assert hops == [1, 2, 3, 4, 5]
