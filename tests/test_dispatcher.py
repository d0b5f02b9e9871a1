"""
Fan-out dispatcher tests.

Tests cover:
- channel delivery reaches exactly the live subscribers
- unsubscribed principals are skipped
- send failures unregister the broken connection and are not raised
- per-principal ordering under concurrent dispatch
- broadcast with exclusion, notification framing
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from schoolsync.sync.dispatcher import FanoutDispatcher
from schoolsync.sync.registry import ConnectionRegistry

from helpers import make_ws, sent_frames


@pytest.fixture
def registry(metrics):
    return ConnectionRegistry(metrics)


@pytest.fixture
def dispatcher(registry, metrics):
    return FanoutDispatcher(registry, metrics)


async def _connect(registry, principal_id, *channels):
    ws = make_ws()
    await registry.register(principal_id, "student", ws)
    for channel in channels:
        registry.subscribe(principal_id, channel)
    ws.send_text.reset_mock()
    return ws


class TestSendToChannel:
    async def test_delivers_to_subscribers_only(self, registry, dispatcher):
        a = await _connect(registry, "a", "grades:42")
        b = await _connect(registry, "b", "grades:42")
        c = await _connect(registry, "c", "grades:43")

        delivered = await dispatcher.send_to_channel("grades:42", {"version": 3})

        assert delivered == 2
        expected = [{"type": "channel", "channel": "grades:42", "data": {"version": 3}}]
        assert sent_frames(a) == expected
        assert sent_frames(b) == expected
        assert sent_frames(c) == []

    async def test_unsubscribed_principal_not_reached(self, registry, dispatcher):
        a = await _connect(registry, "a", "grades:42")
        b = await _connect(registry, "b", "grades:42")
        registry.unsubscribe("b", "grades:42")

        await dispatcher.send_to_channel("grades:42", {})

        assert len(sent_frames(a)) == 1
        assert sent_frames(b) == []

    async def test_empty_channel(self, dispatcher):
        assert await dispatcher.send_to_channel("nobody:1", {}) == 0


class TestSendToPrincipal:
    async def test_not_live_is_noop(self, dispatcher):
        assert await dispatcher.send_to_principal("ghost", {"type": "x"}) is False

    async def test_failure_unregisters_and_swallows(self, registry, dispatcher, metrics):
        ws = await _connect(registry, "a", "grades:42")
        ws.send_text = AsyncMock(side_effect=ConnectionResetError("peer gone"))

        assert await dispatcher.send_to_principal("a", {"type": "x"}) is False

        assert registry.get("a") is None
        assert registry.subscribers_of("grades:42") == set()
        assert metrics.get("delivery_failures_total") == 1

    async def test_one_failure_does_not_stop_others(self, registry, dispatcher):
        bad = await _connect(registry, "a", "ch")
        good = await _connect(registry, "b", "ch")
        bad.send_text = AsyncMock(side_effect=RuntimeError("boom"))

        assert await dispatcher.send_to_channel("ch", {"n": 1}) == 1
        assert len(sent_frames(good)) == 1

    async def test_send_to_principals_dedupes(self, registry, dispatcher, metrics):
        ws = await _connect(registry, "a")
        assert await dispatcher.send_to_principals(["a", "a", "ghost"], {"type": "x"}) == 1
        assert len(sent_frames(ws)) == 1
        assert metrics.get("messages_delivered_total") == 1

    async def test_per_principal_order_preserved(self, registry, dispatcher):
        ws = await _connect(registry, "a")
        received = []

        async def slow_send(text):
            # Yield mid-write; a second writer must not interleave.
            await asyncio.sleep(0)
            received.append(text)

        ws.send_text = AsyncMock(side_effect=slow_send)

        await asyncio.gather(
            *(dispatcher.send_to_principal("a", {"type": "n", "n": i}) for i in range(10))
        )

        assert received == [
            '{"type": "n", "n": %d}' % i for i in range(10)
        ]


class TestBroadcastAndNotify:
    async def test_broadcast_excludes(self, registry, dispatcher):
        a = await _connect(registry, "a")
        b = await _connect(registry, "b")

        assert await dispatcher.broadcast({"type": "maintenance"}, exclude_principal_id="a") == 1

        assert sent_frames(a) == []
        assert sent_frames(b) == [{"type": "maintenance"}]

    async def test_notification_frame(self, registry, dispatcher):
        ws = await _connect(registry, "a")
        await dispatcher.send_notification(["a"], {"category": "grade"})
        assert sent_frames(ws) == [{"type": "notification", "payload": {"category": "grade"}}]
