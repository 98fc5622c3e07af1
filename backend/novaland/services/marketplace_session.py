"""
Marketplace client session.

WHAT: Per-wallet conversation state: thread list, active thread, message view,
      unread flags, purchase eligibility
WHY: One logical actor per connected wallet composing cache, resolver, store,
     state machine, orchestrator and reconciler
HOW: Mutations go through the state machine / orchestrator, local sends are
     appended optimistically as pending entries and reconciled by client_id
"""

from decimal import Decimal
from typing import Any, Callable, Literal, Optional

from ..chain import ChainPeer
from ..core.change_stream import ChangeStream
from ..core.models import MessageType, OfferStatus
from ..core.negotiation_store import NegotiationStore, negotiation_store, normalize_wallet
from ..models.chat import ThreadRecord, MessageRecord, MessageEntry, ThreadDisplay
from ..models.results import OperationResult, PurchaseOutcome, PurchasePhase
from .identity_resolver import IdentityResolver
from .offer_state_machine import OfferStateMachine, OfferThreadState, derive_offer_state, parse_price
from .property_cache import PropertyCache
from .purchase_orchestrator import PurchaseOrchestrator
from .realtime_reconciler import RealtimeReconciler
from .view_models import build_thread_views
from ..utils.exceptions import (
    BusinessException,
    InvalidPriceException,
    NoActiveThreadException,
    ValidationException,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)

ViewRole = Literal["buyer", "seller"]


class MarketplaceSession:
    """
    Client session for one connected wallet.

    Errors from store refreshes are reported to `on_error` and kept in
    `last_error`; mutating operations also return them in their result.
    """

    def __init__(
        self,
        wallet: str,
        *,
        store: Optional[NegotiationStore] = None,
        stream: Optional[ChangeStream] = None,
        peer: Optional[ChainPeer] = None,
        cache: Optional[PropertyCache] = None,
        identities: Optional[IdentityResolver] = None,
        orchestrator: Optional[PurchaseOrchestrator] = None,
        on_error: Optional[Callable[[BusinessException], None]] = None,
        debounce_seconds: Optional[float] = None
    ):
        self.wallet = normalize_wallet(wallet)
        self.store = store or negotiation_store
        self.cache = cache or PropertyCache(peer)
        self.identities = identities or IdentityResolver(self.store)
        self.on_error = on_error
        self.offers = OfferStateMachine(self.store)
        self.orchestrator = orchestrator or PurchaseOrchestrator(self.store, self.cache, peer)
        self.reconciler = RealtimeReconciler(self, stream, debounce_seconds)

        self.view: ViewRole = "buyer"
        self.threads: list[ThreadRecord] = []
        self.active_thread: Optional[ThreadRecord] = None
        self.messages: list[MessageEntry] = []
        self.offer_state = OfferThreadState()
        self.unread: set[int] = set()
        self.names: dict[str, str] = {}
        self.missing_properties: set[int] = set()
        self.last_error: Optional[BusinessException] = None
        self.connected = False

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    def report(self, error: BusinessException) -> None:
        self.last_error = error
        if self.on_error:
            self.on_error(error)

    def clear_error(self) -> None:
        self.last_error = None

    def _handle(self, error: BusinessException, raise_errors: bool) -> bool:
        if raise_errors:
            raise error
        self.report(error)
        return False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Load properties, fetch threads and start the realtime consumer."""
        try:
            await self.cache.load_all()
        except BusinessException as e:
            logger.error(f"Property load on connect failed: {e.message}")
            self.report(e)
        self.refresh_threads()
        await self.reconciler.start()
        self.connected = True
        logger.info(f"Session connected for {self.wallet}")

    async def disconnect(self) -> None:
        """Stop the consumer and clear all session state."""
        await self.reconciler.stop()
        self.threads = []
        self.active_thread = None
        self.messages = []
        self.offer_state = OfferThreadState()
        self.unread.clear()
        self.names = {}
        self.missing_properties = set()
        self.last_error = None
        self.connected = False
        logger.info(f"Session disconnected for {self.wallet}")

    def set_view(self, role: ViewRole) -> None:
        """Switch between buying and selling conversations."""
        if role not in ("buyer", "seller"):
            raise ValueError(f"Unknown view: {role}")
        self.view = role
        self.activate_thread(None)
        self.refresh_threads()

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def refresh_threads(self, raise_errors: bool = False) -> bool:
        """Reload the thread list, unread flags and counterparty names."""
        try:
            threads = self.store.list_threads(self.wallet, role=self.view)
            counts = self.store.unread_counts(self.wallet)
        except BusinessException as e:
            return self._handle(e, raise_errors)

        self.threads = threads
        self.unread |= {tid for tid, count in counts.items() if count > 0}
        if self.active_thread is not None:
            self.unread.discard(self.active_thread.id)
            fresh = next((t for t in threads if t.id == self.active_thread.id), None)
            if fresh is not None:
                self.replace_active_thread(fresh)

        self.names.update(self.identities.resolve_many(t.counterparty(self.wallet) for t in threads))
        return True

    def replace_active_thread(self, thread: ThreadRecord) -> None:
        """Swap in a fresher record of the active thread."""
        if self.active_thread is None or self.active_thread.id != thread.id:
            return
        self.active_thread = thread
        if not thread.is_open:
            self.offer_state.accepted_offer_id = None

    def activate_thread(self, thread_id: Optional[int]) -> bool:
        """Select a thread: load its messages and mark them read."""
        if thread_id is None:
            self.active_thread = None
            self.messages = []
            self.offer_state = OfferThreadState()
            return True

        thread = next((t for t in self.threads if t.id == thread_id), None)
        if thread is None:
            try:
                thread = self.store.get_thread(thread_id)
            except BusinessException as e:
                return self._handle(e, False)

        self.active_thread = thread
        self.messages = []
        self.clear_error()
        if not self.refresh_messages(thread_id):
            return False
        return self.mark_read(thread_id)

    @property
    def accepted_offer_id(self) -> Optional[int]:
        """Accepted-offer pointer of the active thread, only while it is open."""
        if self.active_thread is None or not self.active_thread.is_open:
            return None
        return self.offer_state.accepted_offer_id

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def refresh_messages(self, thread_id: Optional[int] = None, raise_errors: bool = False) -> bool:
        """
        Refetch the active thread's messages.

        Pending local entries not yet matched by a stored record are kept.
        """
        if self.active_thread is None:
            return True
        thread_id = thread_id if thread_id is not None else self.active_thread.id
        if thread_id != self.active_thread.id:
            return True

        try:
            records = self.store.list_messages(thread_id)
        except BusinessException as e:
            return self._handle(e, raise_errors)

        stored_ids = {r.client_id for r in records if r.client_id}
        pending = [
            m for m in self.messages
            if m.pending_confirmation and m.thread_id == thread_id and m.client_id not in stored_ids
        ]
        self.messages = [MessageEntry.from_record(r) for r in records] + pending
        self.offer_state = derive_offer_state(records)
        return True

    def mark_read(self, thread_id: int, raise_errors: bool = False) -> bool:
        try:
            self.store.mark_thread_read(thread_id, self.wallet)
        except BusinessException as e:
            return self._handle(e, raise_errors)
        self.unread.discard(thread_id)
        return True

    def mark_unread(self, thread_id: int) -> None:
        self.unread.add(thread_id)

    def sync_unread(self, thread_id: int) -> None:
        """Drop the unread flag once the store holds nothing unread for this wallet there."""
        if self.store.unread_counts(self.wallet).get(thread_id, 0) == 0:
            self.unread.discard(thread_id)

    def _confirm_entry(self, client_id: str, record: MessageRecord) -> None:
        """Replace the pending entry with the stored record, never duplicating it."""
        confirmed = MessageEntry.from_record(record)
        remaining = []
        replaced = False
        for entry in self.messages:
            if entry.client_id == client_id:
                if not replaced:
                    remaining.append(confirmed)
                    replaced = True
            elif entry.id is not None and entry.id == record.id:
                continue
            else:
                remaining.append(entry)
        if not replaced:
            remaining.append(confirmed)
        self.messages = remaining

    def _drop_entry(self, client_id: str) -> None:
        self.messages = [m for m in self.messages if m.client_id != client_id]

    def send_message(self, text: str) -> OperationResult[MessageRecord]:
        thread = self.active_thread
        if thread is None:
            return self._result_error(NoActiveThreadException())
        content = (text or "").strip()
        if not content:
            return self._result_error(ValidationException("Message cannot be empty"))

        entry = MessageEntry(
            thread_id=thread.id,
            sender_wallet=self.wallet,
            content=content,
            pending_confirmation=True
        )
        self.messages.append(entry)
        try:
            record = self.store.insert_message(thread.id, self.wallet, content, client_id=entry.client_id)
        except BusinessException as e:
            self._drop_entry(entry.client_id)
            return self._result_error(e)

        self._confirm_entry(entry.client_id, record)
        return OperationResult.success(record)

    def submit_offer(self, price: Any, note: str = "") -> OperationResult[MessageRecord]:
        thread = self.active_thread
        if thread is None:
            return self._result_error(NoActiveThreadException())

        entry = MessageEntry(
            thread_id=thread.id,
            sender_wallet=self.wallet,
            type=MessageType.OFFER,
            content=note,
            price=self._display_price(price),
            status=OfferStatus.PENDING,
            pending_confirmation=True
        )
        self.messages.append(entry)
        result = self.offers.submit_offer(thread, self.wallet, price, note, client_id=entry.client_id)
        if not result.ok:
            self._drop_entry(entry.client_id)
            self.report(result.error)
            return result

        self._confirm_entry(entry.client_id, result.value)
        self.offer_state.has_pending_offer = True
        self.offer_state.pending_offer_id = result.value.id
        return result

    @staticmethod
    def _display_price(price: Any) -> Optional[Decimal]:
        try:
            return parse_price(price)
        except InvalidPriceException:
            return None

    def accept_offer(self, offer_id: int) -> OperationResult[MessageRecord]:
        thread = self.active_thread
        if thread is None:
            return self._result_error(NoActiveThreadException())
        try:
            offer = self.store.get_message(offer_id)
        except BusinessException as e:
            return self._result_error(e)

        result = self.offers.accept_offer(thread, offer, self.wallet)
        return self._after_resolution(result)

    def reject_offer(self, offer_id: int) -> OperationResult[MessageRecord]:
        thread = self.active_thread
        if thread is None:
            return self._result_error(NoActiveThreadException())
        result = self.offers.reject_offer(thread, offer_id, self.wallet)
        return self._after_resolution(result)

    def _after_resolution(self, result: OperationResult[MessageRecord]) -> OperationResult[MessageRecord]:
        if not result.ok:
            self.report(result.error)
            return result
        self.refresh_messages()
        return result

    def _result_error(self, error: BusinessException) -> OperationResult:
        self.report(error)
        return OperationResult.failure(error)

    # ------------------------------------------------------------------
    # Purchase
    # ------------------------------------------------------------------

    @property
    def can_purchase(self) -> bool:
        """Purchase control visibility for the active thread."""
        thread = self.active_thread
        if thread is None or not thread.is_open or thread.buyer_wallet != self.wallet:
            return False
        if self.accepted_offer_id is None:
            return False
        return not (
            self.orchestrator.is_in_flight(thread.id)
            or self.orchestrator.needs_verification(thread.id)
            or self.orchestrator.settled_tx(thread.id) is not None
        )

    async def proceed_to_purchase(self) -> PurchaseOutcome:
        outcome = await self.orchestrator.proceed_to_purchase(self.active_thread, self.wallet)
        self._after_purchase(outcome)
        return outcome

    async def verify_purchase(self) -> PurchaseOutcome:
        if self.active_thread is None:
            outcome = self._no_active_thread()
        else:
            outcome = await self.orchestrator.verify_transaction(self.active_thread)
        self._after_purchase(outcome)
        return outcome

    async def retry_thread_closure(self) -> PurchaseOutcome:
        if self.active_thread is None:
            outcome = self._no_active_thread()
        else:
            outcome = await self.orchestrator.retry_thread_closure(self.active_thread)
        self._after_purchase(outcome)
        return outcome

    @staticmethod
    def _no_active_thread() -> PurchaseOutcome:
        return PurchaseOutcome(thread_id=None, phase=PurchasePhase.FAILED, error=NoActiveThreadException())

    def _after_purchase(self, outcome: PurchaseOutcome) -> None:
        if outcome.error is not None:
            self.report(outcome.error)
        if outcome.reconciled and self.active_thread is not None:
            try:
                self.replace_active_thread(self.store.get_thread(self.active_thread.id))
            except BusinessException as e:
                self.report(e)
            self.refresh_threads()

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def thread_views(self) -> list[ThreadDisplay]:
        """Conversation list rows, recomputed from the current cache contents."""
        rows, missing = build_thread_views(
            self.threads,
            self.cache.snapshot(),
            self.names,
            self.wallet,
            active_thread_id=self.active_thread.id if self.active_thread else None,
            unread=self.unread,
            loading=self.cache.loading
        )
        self.missing_properties = missing
        return rows

    async def refresh_property_titles(self) -> set[int]:
        """Top up properties the thread list references but the cache lacks."""
        self.thread_views()
        if not self.missing_properties:
            return set()
        still_missing = await self.cache.top_up(self.missing_properties)
        self.missing_properties = still_missing
        return still_missing
