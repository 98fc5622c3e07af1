"""
Unit tests for NegotiationStore.

WHAT: Thread/message persistence, compare-and-swap offer updates, unread
      counts, change events and the identity directory
WHY: Every other component relies on the store's guarantees
HOW: Store over a fresh SQLite file; events read from a synchronous subscription
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest
from sqlalchemy import create_engine

from novaland.core.change_stream import ChangeType, THREADS_TABLE, MESSAGES_TABLE
from novaland.core.database import build_session_factory
from novaland.core.models import ThreadStatus, MessageType, OfferStatus
from novaland.core.negotiation_store import NegotiationStore, normalize_wallet
from novaland.utils.exceptions import (
    AlreadyResolvedException,
    MessageNotFoundException,
    NotAnOfferException,
    OfferPendingException,
    StoreUnavailableException,
    ThreadClosedException,
    ThreadNotFoundException,
    ValidationException,
)
from tests.conftest import BUYER, SELLER, OTHER_BUYER


def drain(subscription) -> list:
    events = []
    while not subscription.queue.empty():
        events.append(subscription.queue.get_nowait())
    return events


@pytest.mark.unit
class TestThreads:
    """Test thread creation, listing and closure."""

    def test_create_thread_normalizes_wallets(self, store):
        thread = store.create_thread(BUYER.upper().replace("0X", "0x"), SELLER, 1)

        assert thread.buyer_wallet == BUYER
        assert thread.seller_wallet == SELLER
        assert thread.status == ThreadStatus.OPEN

    def test_create_thread_returns_existing_open_thread(self, store):
        first = store.create_thread(BUYER, SELLER, 1)
        second = store.create_thread(BUYER, SELLER, 1)

        assert second.id == first.id
        assert len(store.list_threads(BUYER)) == 1

    def test_create_thread_after_closure_opens_new_one(self, store):
        first = store.create_thread(BUYER, SELLER, 1)
        store.close_thread(first.id)

        second = store.create_thread(BUYER, SELLER, 1)
        assert second.id != first.id

    def test_create_thread_rejects_self_conversation(self, store):
        with pytest.raises(ValidationException):
            store.create_thread(SELLER, SELLER, 1)

    def test_get_thread_not_found(self, store):
        with pytest.raises(ThreadNotFoundException):
            store.get_thread(42)

    def test_list_threads_by_role_newest_first(self, store):
        older = store.create_thread(BUYER, SELLER, 1)
        newer = store.create_thread(BUYER, SELLER, 2)
        selling = store.create_thread(SELLER, BUYER, 3)

        as_buyer = store.list_threads(BUYER, role="buyer")
        as_seller = store.list_threads(BUYER, role="seller")
        everything = store.list_threads(BUYER)

        assert [t.id for t in as_buyer] == [newer.id, older.id]
        assert [t.id for t in as_seller] == [selling.id]
        assert {t.id for t in everything} == {older.id, newer.id, selling.id}
        assert store.list_threads(OTHER_BUYER) == []

    def test_close_thread_is_idempotent(self, store, stream):
        thread = store.create_thread(BUYER, SELLER, 1)
        subscription = stream.subscribe()

        closed = store.close_thread(thread.id)
        again = store.close_thread(thread.id)

        assert closed.status == ThreadStatus.CLOSED
        assert again.status == ThreadStatus.CLOSED
        events = drain(subscription)
        assert len(events) == 1
        assert events[0].table == THREADS_TABLE
        assert events[0].type == ChangeType.UPDATE
        assert events[0].old.status == ThreadStatus.OPEN


@pytest.mark.unit
class TestMessages:
    """Test message and offer inserts."""

    def test_messages_ordered_by_creation(self, store):
        thread = store.create_thread(BUYER, SELLER, 1)
        store.insert_message(thread.id, BUYER, "Hi")
        store.insert_message(thread.id, SELLER, "Hello")
        store.insert_offer(thread.id, BUYER, Decimal("1.1"), "opening")

        messages = store.list_messages(thread.id)
        assert [m.content for m in messages] == ["Hi", "Hello", "opening"]
        assert messages[2].type == MessageType.OFFER
        assert messages[2].status == OfferStatus.PENDING
        assert messages[2].price == Decimal("1.1")

    def test_insert_on_closed_thread_rejected(self, store):
        thread = store.create_thread(BUYER, SELLER, 1)
        store.close_thread(thread.id)

        with pytest.raises(ThreadClosedException):
            store.insert_message(thread.id, BUYER, "Still there?")
        with pytest.raises(ThreadClosedException):
            store.insert_offer(thread.id, BUYER, Decimal("1"))

    def test_insert_on_unknown_thread(self, store):
        with pytest.raises(ThreadNotFoundException):
            store.insert_message(7, BUYER, "Hi")

    def test_second_pending_offer_rejected(self, store):
        thread = store.create_thread(BUYER, SELLER, 1)
        store.insert_offer(thread.id, BUYER, Decimal("1"))

        with pytest.raises(OfferPendingException):
            store.insert_offer(thread.id, BUYER, Decimal("2"))
        assert len(store.list_messages(thread.id)) == 1

    def test_concurrent_offers_leave_one_pending(self, store):
        """Writers racing on the same thread: one wins, the rest see its offer."""
        thread = store.create_thread(BUYER, SELLER, 1)
        start = threading.Barrier(4)

        def submit(price):
            start.wait()
            try:
                return store.insert_offer(thread.id, BUYER, Decimal(price))
            except OfferPendingException as e:
                return e

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(submit, ["1.1", "1.2", "1.3", "1.4"]))

        offers = [r for r in results if not isinstance(r, OfferPendingException)]
        assert len(offers) == 1
        assert sum(isinstance(r, OfferPendingException) for r in results) == 3
        pending = [m for m in store.list_messages(thread.id) if m.status == OfferStatus.PENDING]
        assert [m.id for m in pending] == [offers[0].id]

    def test_duplicate_client_id_rejected(self, store):
        thread = store.create_thread(BUYER, SELLER, 1)
        store.insert_message(thread.id, BUYER, "Hi", client_id="c-1")

        with pytest.raises(ValidationException):
            store.insert_message(thread.id, BUYER, "Hi again", client_id="c-1")

    def test_insert_publishes_event_to_participants(self, store, stream):
        thread = store.create_thread(BUYER, SELLER, 1)
        seller_sub = stream.subscribe(wallet=SELLER)
        outsider_sub = stream.subscribe(wallet=OTHER_BUYER)

        record = store.insert_message(thread.id, BUYER, "Hi")

        events = drain(seller_sub)
        assert len(events) == 1
        assert events[0].table == MESSAGES_TABLE
        assert events[0].type == ChangeType.INSERT
        assert events[0].new.id == record.id
        assert events[0].participants == frozenset({BUYER, SELLER})
        assert drain(outsider_sub) == []


@pytest.mark.unit
class TestResolveOffer:
    """Test the compare-and-swap offer transition."""

    def test_resolve_pending_offer(self, store, stream):
        thread = store.create_thread(BUYER, SELLER, 1)
        offer = store.insert_offer(thread.id, BUYER, Decimal("1.5"))
        subscription = stream.subscribe(tables=[MESSAGES_TABLE])

        accepted = store.resolve_offer(offer.id, OfferStatus.ACCEPTED)

        assert accepted.status == OfferStatus.ACCEPTED
        assert store.latest_accepted_offer(thread.id).id == offer.id
        assert not store.has_pending_offer(thread.id)
        event = drain(subscription)[0]
        assert event.type == ChangeType.UPDATE
        assert event.old.status == OfferStatus.PENDING
        assert event.new.status == OfferStatus.ACCEPTED

    def test_second_resolution_loses(self, store):
        """Accept then reject: the reject matches no pending row."""
        thread = store.create_thread(BUYER, SELLER, 1)
        offer = store.insert_offer(thread.id, BUYER, Decimal("1.5"))
        store.resolve_offer(offer.id, OfferStatus.ACCEPTED)

        with pytest.raises(AlreadyResolvedException) as exc_info:
            store.resolve_offer(offer.id, OfferStatus.REJECTED)

        assert exc_info.value.details["current_status"] == "accepted"
        assert store.get_message(offer.id).status == OfferStatus.ACCEPTED

    def test_resolve_chat_message(self, store):
        thread = store.create_thread(BUYER, SELLER, 1)
        message = store.insert_message(thread.id, BUYER, "Hi")

        with pytest.raises(NotAnOfferException):
            store.resolve_offer(message.id, OfferStatus.ACCEPTED)

    def test_resolve_on_closed_thread_rejected(self, store, stream):
        thread = store.create_thread(BUYER, SELLER, 1)
        offer = store.insert_offer(thread.id, BUYER, Decimal("1.5"))
        store.close_thread(thread.id)
        subscription = stream.subscribe(tables=[MESSAGES_TABLE])

        with pytest.raises(ThreadClosedException):
            store.resolve_offer(offer.id, OfferStatus.ACCEPTED)

        assert store.get_message(offer.id).status == OfferStatus.PENDING
        assert store.latest_accepted_offer(thread.id) is None
        assert drain(subscription) == []

    def test_resolve_unknown_message(self, store):
        with pytest.raises(MessageNotFoundException):
            store.resolve_offer(404, OfferStatus.REJECTED)

    def test_cannot_resolve_back_to_pending(self, store):
        with pytest.raises(ValueError):
            store.resolve_offer(1, OfferStatus.PENDING)

    def test_new_offer_allowed_after_rejection(self, store):
        thread = store.create_thread(BUYER, SELLER, 1)
        first = store.insert_offer(thread.id, BUYER, Decimal("1"))
        store.resolve_offer(first.id, OfferStatus.REJECTED)

        second = store.insert_offer(thread.id, BUYER, Decimal("1.1"))
        assert second.status == OfferStatus.PENDING
        assert store.latest_accepted_offer(thread.id) is None


@pytest.mark.unit
class TestReadMarkers:
    """Test unread counts and read markers."""

    def test_unread_counts_only_counterparty_messages(self, store):
        thread = store.create_thread(BUYER, SELLER, 1)
        store.insert_message(thread.id, BUYER, "Hi")
        store.insert_message(thread.id, SELLER, "Hello")
        store.insert_message(thread.id, SELLER, "Still interested?")

        assert store.unread_counts(BUYER) == {thread.id: 2}
        assert store.unread_counts(SELLER) == {thread.id: 1}

    def test_mark_thread_read(self, store, stream):
        thread = store.create_thread(BUYER, SELLER, 1)
        store.insert_message(thread.id, SELLER, "Hello")
        store.insert_message(thread.id, BUYER, "Hi")
        subscription = stream.subscribe(wallet=SELLER)

        updated = store.mark_thread_read(thread.id, BUYER)

        assert updated == 1
        assert store.unread_counts(BUYER) == {}
        assert store.unread_counts(SELLER) == {thread.id: 1}
        events = drain(subscription)
        assert [e.new.read for e in events] == [True]
        assert store.mark_thread_read(thread.id, BUYER) == 0


@pytest.mark.unit
class TestIdentityDirectory:

    def test_lookup_names(self, store):
        store.upsert_user(BUYER, "Alice")
        store.upsert_user(SELLER, None)

        assert store.lookup_names([BUYER, SELLER, OTHER_BUYER]) == {BUYER: "Alice"}
        assert store.lookup_names([]) == {}

    def test_upsert_updates_name(self, store):
        store.upsert_user(BUYER, "Alice")
        store.upsert_user(BUYER.upper().replace("0X", "0x"), "Alice B.")

        assert store.lookup_names([BUYER]) == {BUYER: "Alice B."}


@pytest.mark.unit
class TestStoreFailures:

    def test_backend_errors_surface_as_store_unavailable(self, tmp_path):
        """A database without tables fails every operation as retryable."""
        engine = create_engine(f"sqlite:///{tmp_path / 'empty.db'}")
        store = NegotiationStore(build_session_factory(engine))

        with pytest.raises(StoreUnavailableException) as exc_info:
            store.list_threads(BUYER)

        assert exc_info.value.retryable
        assert exc_info.value.details["operation"] == "fetch conversations"
        engine.dispose()

    def test_normalize_wallet(self):
        assert normalize_wallet("  0xABCdef  ") == "0xabcdef"
