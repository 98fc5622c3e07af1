"""
Integration tests for realtime reconciliation.

WHAT: Change events from the counterparty applied to a live session
WHY: New messages, offer resolutions and closures must show up without a reload
HOW: Connected MarketplaceSession; the counterparty writes through the store
"""

from decimal import Decimal

import pytest

from novaland.core.change_stream import ChangeEvent, ChangeType, MESSAGES_TABLE, THREADS_TABLE
from novaland.core.models import OfferStatus, ThreadStatus
from novaland.services.marketplace_session import MarketplaceSession
from novaland.utils.exceptions import StoreUnavailableException
from tests.conftest import BUYER, SELLER


@pytest.fixture
def buyer_session(store, stream, peer):
    return MarketplaceSession(BUYER, store=store, stream=stream, peer=peer, debounce_seconds=0.01)


@pytest.mark.integration
class TestIncomingMessages:
    """Inserts from the counterparty."""

    @pytest.mark.asyncio
    async def test_inactive_thread_becomes_unread_until_opened(self, store, buyer_session):
        first = store.create_thread(BUYER, SELLER, 1)
        second = store.create_thread(BUYER, SELLER, 2)
        await buyer_session.connect()
        buyer_session.activate_thread(first.id)

        store.insert_message(second.id, SELLER, "Price is firm")
        await buyer_session.reconciler.drain()

        assert second.id in buyer_session.unread
        rows = {r.thread_id: r for r in buyer_session.thread_views()}
        assert rows[second.id].is_unread
        assert not rows[first.id].is_unread

        buyer_session.activate_thread(second.id)

        assert second.id not in buyer_session.unread
        assert [m.content for m in buyer_session.messages] == ["Price is firm"]
        assert store.unread_counts(BUYER) == {}
        await buyer_session.disconnect()

    @pytest.mark.asyncio
    async def test_active_thread_refetched_and_marked_read(self, store, buyer_session):
        thread = store.create_thread(BUYER, SELLER, 1)
        await buyer_session.connect()
        buyer_session.activate_thread(thread.id)

        store.insert_message(thread.id, SELLER, "Hello")
        await buyer_session.reconciler.drain()

        assert [m.content for m in buyer_session.messages] == ["Hello"]
        assert thread.id not in buyer_session.unread
        assert store.unread_counts(BUYER) == {}
        await buyer_session.disconnect()

    @pytest.mark.asyncio
    async def test_read_elsewhere_clears_unread(self, store, buyer_session):
        """The same wallet reading a thread in another tab clears the flag here."""
        first = store.create_thread(BUYER, SELLER, 1)
        second = store.create_thread(BUYER, SELLER, 2)
        await buyer_session.connect()
        buyer_session.activate_thread(first.id)
        store.insert_message(second.id, SELLER, "Price is firm")
        store.insert_message(second.id, SELLER, "Let me know")
        await buyer_session.reconciler.drain()
        assert second.id in buyer_session.unread

        assert store.mark_thread_read(second.id, BUYER) == 2
        await buyer_session.reconciler.drain()

        assert second.id not in buyer_session.unread
        rows = {r.thread_id: r for r in buyer_session.thread_views()}
        assert not rows[second.id].is_unread
        await buyer_session.disconnect()

    @pytest.mark.asyncio
    async def test_counterparty_read_keeps_unread(self, store, buyer_session):
        first = store.create_thread(BUYER, SELLER, 1)
        second = store.create_thread(BUYER, SELLER, 2)
        await buyer_session.connect()
        buyer_session.activate_thread(first.id)
        store.insert_message(second.id, SELLER, "Price is firm")
        store.insert_message(second.id, BUYER, "Can you do 1.1?")
        await buyer_session.reconciler.drain()

        store.mark_thread_read(second.id, SELLER)
        await buyer_session.reconciler.drain()

        assert second.id in buyer_session.unread
        assert store.unread_counts(BUYER) == {second.id: 1}
        await buyer_session.disconnect()

    @pytest.mark.asyncio
    async def test_own_inserts_are_ignored(self, store, buyer_session):
        thread = store.create_thread(BUYER, SELLER, 1)
        await buyer_session.connect()

        store.insert_message(thread.id, BUYER, "Sent from another tab")
        await buyer_session.reconciler.drain()

        assert buyer_session.unread == set()
        await buyer_session.disconnect()

    @pytest.mark.asyncio
    async def test_other_wallets_events_not_received(self, store, buyer_session):
        outsider = "0x" + "ab" * 20
        thread = store.create_thread(outsider, SELLER, 1)
        await buyer_session.connect()

        store.insert_message(thread.id, SELLER, "Not for the buyer")
        await buyer_session.reconciler.drain()

        assert buyer_session.unread == set()
        assert buyer_session.reconciler.handled == 0
        await buyer_session.disconnect()


@pytest.mark.integration
class TestOfferResolution:
    """Offer updates and thread closures."""

    @pytest.mark.asyncio
    async def test_acceptance_enables_purchase(self, store, buyer_session, monkeypatch):
        thread = store.create_thread(BUYER, SELLER, 1)
        await buyer_session.connect()
        buyer_session.activate_thread(thread.id)
        offer = buyer_session.submit_offer("1.1").value
        await buyer_session.reconciler.drain()

        refetches = []
        original = buyer_session.refresh_threads

        def counting(raise_errors=False):
            refetches.append(raise_errors)
            return original(raise_errors=raise_errors)

        monkeypatch.setattr(buyer_session, "refresh_threads", counting)

        store.resolve_offer(offer.id, OfferStatus.ACCEPTED)
        await buyer_session.reconciler.drain()

        assert buyer_session.accepted_offer_id == offer.id
        assert not buyer_session.offer_state.has_pending_offer
        assert buyer_session.can_purchase
        assert refetches == [True]
        await buyer_session.disconnect()

    @pytest.mark.asyncio
    async def test_refetches_coalesce(self, buyer_session, monkeypatch):
        await buyer_session.connect()
        refetches = []
        monkeypatch.setattr(
            buyer_session, "refresh_threads", lambda raise_errors=False: refetches.append(raise_errors)
        )

        for _ in range(3):
            buyer_session.reconciler.schedule_thread_refetch()
        await buyer_session.reconciler.drain()

        assert refetches == [True]
        await buyer_session.disconnect()

    @pytest.mark.asyncio
    async def test_closure_by_counterparty_clears_accepted_offer(self, store, buyer_session):
        thread = store.create_thread(BUYER, SELLER, 1)
        offer = store.insert_offer(thread.id, BUYER, Decimal("1.2"))
        store.resolve_offer(offer.id, OfferStatus.ACCEPTED)
        await buyer_session.connect()
        buyer_session.activate_thread(thread.id)
        assert buyer_session.accepted_offer_id == offer.id

        store.close_thread(thread.id)
        await buyer_session.reconciler.drain()

        assert buyer_session.active_thread.status == ThreadStatus.CLOSED
        assert buyer_session.accepted_offer_id is None
        assert not buyer_session.can_purchase
        await buyer_session.disconnect()


@pytest.mark.integration
class TestHandlerFailures:

    def test_failed_refetch_leaves_state_unchanged(self, store, buyer_session, monkeypatch):
        thread = store.create_thread(BUYER, SELLER, 1)
        store.insert_message(thread.id, SELLER, "Hello")
        buyer_session.refresh_threads()
        buyer_session.activate_thread(thread.id)
        before = list(buyer_session.messages)
        record = store.insert_message(thread.id, SELLER, "Are you there?")

        def failing(thread_id):
            raise StoreUnavailableException("fetch messages", "database is locked")

        monkeypatch.setattr(store, "list_messages", failing)
        event = ChangeEvent(
            table=MESSAGES_TABLE,
            type=ChangeType.INSERT,
            new=record,
            participants=thread.participants()
        )

        buyer_session.reconciler.handle(event)

        assert buyer_session.reconciler.failures == 1
        assert buyer_session.messages == before
        assert buyer_session.last_error is None

    def test_unknown_table_ignored(self, buyer_session):
        buyer_session.reconciler.handle(ChangeEvent(table="users", type=ChangeType.INSERT))

        assert buyer_session.reconciler.failures == 0

    def test_thread_event_for_other_thread(self, store, buyer_session, monkeypatch):
        """Inactive thread changes only schedule a refetch."""
        thread = store.create_thread(BUYER, SELLER, 1)
        scheduled = []
        monkeypatch.setattr(
            buyer_session.reconciler, "schedule_thread_refetch", lambda: scheduled.append(True)
        )

        buyer_session.reconciler.handle(ChangeEvent(
            table=THREADS_TABLE, type=ChangeType.INSERT, new=thread, participants=thread.participants()
        ))

        assert scheduled == [True]
        assert buyer_session.active_thread is None
