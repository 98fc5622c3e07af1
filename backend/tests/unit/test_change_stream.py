"""
Unit tests for the change stream and its SSE relay.

WHAT: Subscription filtering, cross-thread delivery, closing, SSE events
WHY: Sessions and SSE clients must only see their own threads' changes
HOW: Publish hand-built events and read them from subscriptions
"""

import asyncio
import json
from datetime import datetime
from decimal import Decimal

import pytest

from novaland.api.v1.endpoints.streaming import change_event_generator
from novaland.core.change_stream import (
    ChangeEvent, ChangeStream, ChangeType, THREADS_TABLE, MESSAGES_TABLE
)
from novaland.core.models import MessageType, OfferStatus, ThreadStatus
from novaland.models.chat import MessageRecord, ThreadRecord
from tests.conftest import BUYER, SELLER, STRANGER


def _offer_event(status=OfferStatus.PENDING, change=ChangeType.INSERT) -> ChangeEvent:
    record = MessageRecord(
        id=1,
        thread_id=10,
        sender_wallet=BUYER,
        created_at=datetime(2024, 5, 1, 12, 0, 0),
        type=MessageType.OFFER,
        content="",
        price=Decimal("1.5"),
        status=status
    )
    return ChangeEvent(
        table=MESSAGES_TABLE,
        type=change,
        new=record,
        participants=frozenset({BUYER, SELLER})
    )


def _thread_event() -> ChangeEvent:
    record = ThreadRecord(
        id=10,
        buyer_wallet=BUYER,
        seller_wallet=SELLER,
        property_id=1,
        status=ThreadStatus.CLOSED,
        created_at=datetime(2024, 5, 1, 12, 0, 0)
    )
    return ChangeEvent(
        table=THREADS_TABLE,
        type=ChangeType.UPDATE,
        new=record,
        old=record.model_copy(update={"status": ThreadStatus.OPEN}),
        participants=record.participants()
    )


@pytest.mark.unit
class TestChangeStream:
    """Test subscription filters and delivery."""

    @pytest.mark.asyncio
    async def test_participant_filter(self):
        stream = ChangeStream()
        seller = stream.subscribe(wallet=SELLER.upper().replace("0X", "0x"))
        stranger = stream.subscribe(wallet=STRANGER)

        delivered = stream.publish(_offer_event())

        assert delivered == 1
        event = await seller.get(timeout=1)
        assert event.new.price == Decimal("1.5")
        assert stranger.pending() == 0

    @pytest.mark.asyncio
    async def test_table_filter(self):
        stream = ChangeStream()
        threads_only = stream.subscribe(tables=[THREADS_TABLE])

        stream.publish(_offer_event())
        stream.publish(_thread_event())

        event = await threads_only.get(timeout=1)
        assert event.table == THREADS_TABLE
        assert threads_only.pending() == 0

    @pytest.mark.asyncio
    async def test_publish_from_worker_thread(self):
        """Events published off the loop reach the subscriber's loop."""
        stream = ChangeStream()
        subscription = stream.subscribe(wallet=BUYER)

        await asyncio.to_thread(stream.publish, _offer_event())

        event = await subscription.get(timeout=1)
        assert event.new.id == 1

    @pytest.mark.asyncio
    async def test_close_ends_iteration(self):
        stream = ChangeStream()
        subscription = stream.subscribe(wallet=BUYER)
        stream.publish(_offer_event())
        subscription.close()

        received = [event async for event in subscription]

        assert len(received) == 1
        assert stream.subscriber_count == 0
        assert stream.publish(_offer_event()) == 0

    @pytest.mark.asyncio
    async def test_close_all(self):
        stream = ChangeStream()
        first = stream.subscribe(wallet=BUYER)
        second = stream.subscribe(wallet=SELLER)

        assert stream.close_all() == 2

        assert [event async for event in first] == []
        assert [event async for event in second] == []
        assert stream.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_get_timeout(self):
        subscription = ChangeStream().subscribe()

        with pytest.raises(asyncio.TimeoutError):
            await subscription.get(timeout=0.01)

    def test_payload_is_json_safe(self):
        payload = _thread_event().to_payload()

        encoded = json.loads(json.dumps(payload))
        assert encoded["table"] == "threads"
        assert encoded["type"] == "UPDATE"
        assert encoded["new"]["status"] == "closed"
        assert encoded["old"]["status"] == "open"

    def test_record_prefers_new_snapshot(self):
        event = _thread_event()
        deleted = ChangeEvent(table=THREADS_TABLE, type=ChangeType.DELETE, old=event.old)

        assert event.record is event.new
        assert deleted.record is event.old


@pytest.mark.unit
class TestChangeEventGenerator:
    """Test the SSE event generator."""

    @pytest.mark.asyncio
    async def test_connected_then_changes(self):
        stream = ChangeStream()
        subscription = stream.subscribe(wallet=BUYER)
        generator = change_event_generator(subscription)

        connected = await generator.__anext__()
        stream.publish(_offer_event())
        change = await generator.__anext__()
        await generator.aclose()

        assert connected["event"] == "connected"
        assert json.loads(connected["data"])["wallet"] == BUYER
        assert change["event"] == "change"
        data = json.loads(change["data"])
        assert data["table"] == "messages"
        assert data["new"]["price"] == "1.5"
        assert stream.subscriber_count == 0
