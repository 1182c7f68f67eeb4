"""
Tests for inbound event deduplication and dispatch.
"""
import asyncio
from typing import List

import pytest

from payout_core.core.idempotency import InMemoryEventRegistry
from payout_core.database.repository import InMemoryRepository
from payout_core.domain.models import InboundEvent
from payout_core.integrations.notifications import LoggingNotifier
from payout_core.integrations.webhook_handler import EventDispatcher


def _event(event_id: str = "evt_1", **payload) -> InboundEvent:
    return InboundEvent(
        event_id=event_id,
        processor="x",
        event_type="charge.captured",
        transaction_id="txn_1",
        payload=payload,
    )


@pytest.fixture
def dispatcher() -> EventDispatcher:
    return EventDispatcher(InMemoryEventRegistry(), InMemoryRepository(), LoggingNotifier())


class TestEventDispatcher:
    """Test suite for the event dispatcher."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_new_event_dispatched(self, dispatcher: EventDispatcher) -> None:
        """Test that a new event reaches its handler."""
        handled: List[str] = []

        async def handler(event: InboundEvent) -> dict:
            handled.append(event.event_id)
            return {"ok": True}

        dispatcher.register_handler("charge.captured", handler)

        result = await dispatcher.dispatch(_event())

        assert result == {
            "status": "processed",
            "event_id": "evt_1",
            "event_type": "charge.captured",
            "result": {"ok": True},
        }
        assert handled == ["evt_1"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_replay_is_dropped_and_counted(self, dispatcher: EventDispatcher) -> None:
        """Test that an identical replay is not handled again."""
        calls = []

        async def handler(event: InboundEvent) -> None:
            calls.append(event)

        dispatcher.register_handler("charge.captured", handler)

        await dispatcher.dispatch(_event())
        replay = await dispatcher.dispatch(_event())

        assert replay["status"] == "duplicate"
        assert len(calls) == 1
        assert await dispatcher.registry.duplicate_count("x:evt_1") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_conflicting_replay_is_flagged(self, dispatcher: EventDispatcher) -> None:
        """Test that a replay with a different payload is held for review."""

        async def handler(event: InboundEvent) -> None:
            return None

        dispatcher.register_handler("charge.captured", handler)

        await dispatcher.dispatch(_event(amount_cents=5000))
        conflict = await dispatcher.dispatch(_event(amount_cents=9000))

        assert conflict["status"] == "conflict"
        flags = await dispatcher.repository.list_flags()
        assert [(f.kind, f.reference) for f in flags] == [("conflicting_duplicate_event", "x:evt_1")]
        assert dispatcher.notifier.alerts[0][0] == "conflicting_duplicate_event"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_handler_allows_redelivery(self, dispatcher: EventDispatcher) -> None:
        """Test that an event is remembered only after its handler succeeds."""
        attempts = []

        async def handler(event: InboundEvent) -> str:
            attempts.append(event.event_id)
            if len(attempts) == 1:
                raise ConnectionError("database unavailable")
            return "done"

        dispatcher.register_handler("charge.captured", handler)

        with pytest.raises(ConnectionError):
            await dispatcher.dispatch(_event())
        retried = await dispatcher.dispatch(_event())

        assert retried["status"] == "processed"
        assert len(attempts) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_event_without_handler(self, dispatcher: EventDispatcher) -> None:
        """Test an event type nobody handles."""
        result = await dispatcher.dispatch(_event())

        assert result["status"] == "no_handler"

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_duplicates_handled_once(self, dispatcher: EventDispatcher) -> None:
        """Test that simultaneous deliveries of one event run the handler once."""
        calls = []

        async def handler(event: InboundEvent) -> None:
            calls.append(event.event_id)
            await asyncio.sleep(0.01)

        dispatcher.register_handler("charge.captured", handler)

        results = await asyncio.gather(*(dispatcher.dispatch(_event()) for _ in range(5)))

        assert sorted(r["status"] for r in results) == ["duplicate"] * 4 + ["processed"]
        assert calls == ["evt_1"]
