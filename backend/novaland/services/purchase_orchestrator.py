"""
Purchase orchestrator.

WHAT: Accepted offer -> on-chain purchase -> closed thread
WHY: The chain transfer and the store update can fail independently; a
     resubmitted purchase could pay twice
HOW: Preconditions, fresh listing validation, one PurchaseProperty call with the
     listing price, bounded confirmation wait, then thread closure and cache refresh.
     Per-thread single-flight, and threads with an unverified or unreconciled
     purchase are blocked from a second chain call.
"""

from decimal import Decimal
from typing import Callable, Optional

from web3 import Web3

from ..chain import (
    ChainPeer,
    TxHandle,
    get_chain_peer,
    ChainUnavailableError,
    ChainTimeoutError,
    TransactionRejectedError,
)
from ..core.config import settings
from ..core.negotiation_store import NegotiationStore, negotiation_store, normalize_wallet
from ..models.chat import ThreadRecord, MessageRecord
from ..models.property import PropertyRecord
from ..models.results import PurchaseOutcome, PurchasePhase
from .property_cache import PropertyCache
from ..utils.exceptions import (
    BusinessException,
    ValidationException,
    NoActiveThreadException,
    ThreadClosedException,
    NotBuyerException,
    NoAcceptedOfferException,
    PurchaseInFlightException,
    AlreadySettledException,
    NeedsVerificationException,
    NotListedException,
    OwnerMismatchException,
    InvalidListingPriceException,
    PriceMismatchException,
    ChainUnavailableException,
    StoreUnavailableException,
    TransactionRejectedException,
    TransactionRevertedException,
    TransactionUnconfirmedException,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)

CLOSURE_FAILED_WARNING = (
    "Blockchain purchase successful, but failed to update conversation status. "
    "Property is yours, but conversation status may be outdated."
)


class PurchaseOrchestrator:
    """
    Drives purchases for a session.

    State kept per thread:
      - in flight: an orchestration is running (single-flight guard)
      - unverified: submitted but outcome unknown (hash may be missing)
      - settled: chain succeeded, thread closure still outstanding
    """

    def __init__(
        self,
        store: Optional[NegotiationStore] = None,
        cache: Optional[PropertyCache] = None,
        peer: Optional[ChainPeer] = None,
        *,
        price_policy: Optional[str] = None,
        revalidate_listing: Optional[bool] = None,
        confirmation_timeout: Optional[float] = None,
        on_phase: Optional[Callable[[int, PurchasePhase], None]] = None,
        on_error: Optional[Callable[[BusinessException], None]] = None
    ):
        self.store = store or negotiation_store
        self._peer = peer
        self.cache = cache or PropertyCache(peer)
        self.price_policy = price_policy or settings.SETTLEMENT_PRICE_POLICY
        self.revalidate_listing = (
            settings.PURCHASE_REVALIDATE_LISTING if revalidate_listing is None else revalidate_listing
        )
        self.confirmation_timeout = confirmation_timeout or settings.CHAIN_CONFIRMATION_TIMEOUT
        self.on_phase = on_phase
        self.on_error = on_error

        self._in_flight: set[int] = set()
        self._unverified: dict[int, Optional[TxHandle]] = {}
        self._settled: dict[int, str] = {}
        self._phases: dict[int, PurchasePhase] = {}

    @property
    def peer(self) -> ChainPeer:
        return self._peer or get_chain_peer()

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    def phase(self, thread_id: int) -> PurchasePhase:
        return self._phases.get(thread_id, PurchasePhase.IDLE)

    def is_in_flight(self, thread_id: int) -> bool:
        return thread_id in self._in_flight

    def needs_verification(self, thread_id: int) -> bool:
        return thread_id in self._unverified

    def settled_tx(self, thread_id: int) -> Optional[str]:
        """Hash of a purchase that succeeded on chain but left the thread open."""
        return self._settled.get(thread_id)

    def reset(self, thread_id: Optional[int] = None) -> None:
        """Forget phase bookkeeping. Settled and unverified blocks are kept."""
        if thread_id is None:
            self._phases.clear()
        else:
            self._phases.pop(thread_id, None)

    def _set_phase(self, thread_id: int, phase: PurchasePhase) -> None:
        self._phases[thread_id] = phase
        logger.info(f"Purchase for thread {thread_id}: {phase.value}")
        if self.on_phase:
            try:
                self.on_phase(thread_id, phase)
            except Exception as e:
                logger.error(f"Purchase phase observer failed: {e}", exc_info=True)

    def _failed(
        self,
        thread_id: Optional[int],
        error: BusinessException,
        record_phase: bool = True,
        **fields
    ) -> PurchaseOutcome:
        if thread_id is not None and record_phase:
            self._set_phase(thread_id, PurchasePhase.FAILED)
        if self.on_error:
            self.on_error(error)
        logger.warning(f"Purchase for thread {thread_id} failed: {error.code.value} - {error.message}")
        return PurchaseOutcome(thread_id=thread_id, phase=PurchasePhase.FAILED, error=error, **fields)

    # ------------------------------------------------------------------
    # Purchase
    # ------------------------------------------------------------------

    async def proceed_to_purchase(
        self,
        thread: Optional[ThreadRecord],
        acting_wallet: str
    ) -> PurchaseOutcome:
        """
        Purchase the thread's property at the current listing price.

        Never raises; every failure is carried by the returned outcome.
        """
        if thread is None:
            return self._failed(None, NoActiveThreadException())

        thread_id = thread.id
        # Blocks that must not disturb the phase of another attempt
        if thread_id in self._in_flight:
            return self._failed(thread_id, PurchaseInFlightException(thread_id), record_phase=False)
        if thread_id in self._settled:
            return self._failed(
                thread_id, AlreadySettledException(thread_id, self._settled[thread_id]), record_phase=False
            )
        if thread_id in self._unverified:
            handle = self._unverified[thread_id]
            return self._failed(
                thread_id,
                NeedsVerificationException(thread_id, handle.tx_hash if handle else None),
                record_phase=False
            )

        buyer = normalize_wallet(acting_wallet)
        if not thread.is_open:
            return self._failed(thread_id, ThreadClosedException(thread_id))
        if buyer != thread.buyer_wallet:
            return self._failed(thread_id, NotBuyerException(buyer, "initiate the purchase after an offer is accepted"))

        self._in_flight.add(thread_id)
        try:
            return await self._purchase(thread, buyer)
        finally:
            self._in_flight.discard(thread_id)

    async def _purchase(self, thread: ThreadRecord, buyer: str) -> PurchaseOutcome:
        thread_id = thread.id
        property_id = thread.property_id
        self._set_phase(thread_id, PurchasePhase.PENDING)

        # Preconditions against the store
        try:
            current = self.store.get_thread(thread_id)
            if not current.is_open:
                raise ThreadClosedException(thread_id)
            offer = self.store.latest_accepted_offer(thread_id)
            if offer is None:
                raise NoAcceptedOfferException(thread_id)
        except BusinessException as e:
            return self._failed(thread_id, e, property_id=property_id)
        except Exception as e:
            logger.error(f"Purchase preconditions for thread {thread_id} failed: {e}", exc_info=True)
            return self._failed(
                thread_id, StoreUnavailableException("check the conversation", str(e)), property_id=property_id
            )

        # Steps 1-3: resolve, validate, compute payment. Nothing has been sent yet.
        try:
            record = await self._resolve_listing(property_id)
            self._validate(thread, record, offer)
        except BusinessException as e:
            return self._failed(thread_id, e, property_id=property_id)
        except Exception as e:
            logger.error(f"Listing lookup for property {property_id} failed: {e}", exc_info=True)
            return self._failed(thread_id, ChainUnavailableException(str(e)), property_id=property_id)

        amount_wei = record.price_wei
        logger.info(
            f"Thread {thread_id}: contract requires {record.price} ETH ({amount_wei} wei), "
            f"accepted offer was {offer.price} ETH"
        )

        # Step 4: submit
        try:
            handle = await self.peer.submit_purchase(property_id, buyer, value_wei=amount_wei)
        except TransactionRejectedError as e:
            return self._failed(
                thread_id, TransactionRejectedException(str(e)),
                property_id=property_id, amount=record.price, amount_wei=amount_wei
            )
        except ChainUnavailableError as e:
            return self._failed(
                thread_id, ChainUnavailableException(str(e)),
                property_id=property_id, amount=record.price, amount_wei=amount_wei
            )
        except Exception as e:
            # Submission outcome unknown: the transaction may have been broadcast
            logger.error(f"Purchase submission for thread {thread_id} ended ambiguously: {e}", exc_info=True)
            self._unverified[thread_id] = None
            return self._failed(
                thread_id, TransactionUnconfirmedException(None, str(e)),
                property_id=property_id, amount=record.price, amount_wei=amount_wei
            )

        self._set_phase(thread_id, PurchasePhase.CONFIRMING)
        return await self._confirm(thread, handle, record.price)

    async def _resolve_listing(self, property_id: int) -> PropertyRecord:
        """Cache lookup; a hit is re-read from chain when revalidation is on."""
        if self.cache.get(property_id) is not None and not self.revalidate_listing:
            return self.cache.get(property_id)
        if self.cache.get(property_id) is not None:
            return await self.cache.refresh(property_id)
        return await self.cache.resolve(property_id)

    def _validate(self, thread: ThreadRecord, record: PropertyRecord, offer: MessageRecord) -> None:
        if not record.is_listed:
            raise NotListedException(record.product_id)
        if record.owner != thread.seller_wallet:
            raise OwnerMismatchException(record.product_id, record.owner, thread.seller_wallet)
        if record.price_wei <= 0:
            raise InvalidListingPriceException(record.product_id, record.price)
        if self.price_policy == "offer" and offer.price is not None:
            if Web3.to_wei(offer.price, "ether") != record.price_wei:
                raise PriceMismatchException(record.product_id, record.price, offer.price)

    async def _confirm(self, thread: ThreadRecord, handle: TxHandle, amount: Decimal) -> PurchaseOutcome:
        thread_id = thread.id
        fields = dict(
            property_id=thread.property_id,
            amount=amount,
            amount_wei=handle.value_wei,
            tx_hash=handle.tx_hash
        )
        try:
            receipt = await self.peer.wait_for_confirmation(handle, timeout=self.confirmation_timeout)
        except (ChainTimeoutError, ChainUnavailableError) as e:
            self._unverified[thread_id] = handle
            return self._failed(thread_id, TransactionUnconfirmedException(handle.tx_hash, str(e)), **fields)
        except Exception as e:
            logger.error(f"Confirmation of {handle.tx_hash} failed unexpectedly: {e}", exc_info=True)
            self._unverified[thread_id] = handle
            return self._failed(thread_id, TransactionUnconfirmedException(handle.tx_hash, str(e)), **fields)

        if not receipt.succeeded:
            return self._failed(thread_id, TransactionRevertedException(handle.tx_hash), **fields)

        logger.info(f"Property {thread.property_id} purchase confirmed on chain: {handle.tx_hash}")
        self._set_phase(thread_id, PurchasePhase.SUCCESS)
        return await self._reconcile(thread, **fields)

    async def _reconcile(self, thread: ThreadRecord, **fields) -> PurchaseOutcome:
        """Step 5: close the thread and refresh the property. Never touches the chain."""
        tx_hash = fields.get("tx_hash") or ""
        outcome = PurchaseOutcome(thread_id=thread.id, phase=PurchasePhase.SUCCESS, **fields)
        try:
            self.store.close_thread(thread.id)
            outcome.reconciled = True
            self._settled.pop(thread.id, None)
        except Exception as e:
            error = e if isinstance(e, BusinessException) else StoreUnavailableException("close the conversation", str(e))
            logger.error(f"Thread {thread.id} closure failed after purchase {tx_hash}: {error.message}")
            self._settled[thread.id] = tx_hash
            outcome.warning = CLOSURE_FAILED_WARNING
            outcome.error = error
            if self.on_error:
                self.on_error(error)

        # The purchase stands whatever the refresh does
        try:
            await self.cache.refresh(thread.property_id)
        except Exception as e:
            logger.warning(f"Property {thread.property_id} refresh after purchase failed, invalidating: {e}")
            self.cache.invalidate(thread.property_id)
        return outcome

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def verify_transaction(self, thread: ThreadRecord) -> PurchaseOutcome:
        """
        Resolve an ambiguous purchase by re-polling its receipt. Never resubmits.

        Without a transaction hash, the chain itself is checked: the purchase
        counts as done when the buyer now owns the property, and as absent only
        when the buyer also has no transaction waiting to be mined.
        """
        thread_id = thread.id
        if thread_id in self._settled:
            return await self.retry_thread_closure(thread)
        if thread_id not in self._unverified:
            return self._failed(
                thread_id, ValidationException("No unverified purchase for this conversation"),
                record_phase=False
            )
        if thread_id in self._in_flight:
            return self._failed(thread_id, PurchaseInFlightException(thread_id), record_phase=False)

        handle = self._unverified[thread_id]
        self._in_flight.add(thread_id)
        try:
            self._set_phase(thread_id, PurchasePhase.CONFIRMING)
            if handle is None:
                return await self._verify_by_ownership(thread)

            self._unverified.pop(thread_id)
            return await self._confirm(thread, handle, Decimal(Web3.from_wei(handle.value_wei, "ether")))
        finally:
            self._in_flight.discard(thread_id)

    async def _verify_by_ownership(self, thread: ThreadRecord) -> PurchaseOutcome:
        thread_id = thread.id
        property_id = thread.property_id
        # Pending check first: a transaction mined in between shows up as ownership below
        try:
            pending = await self.peer.has_pending_transactions(thread.buyer_wallet)
            record = await self.cache.refresh(property_id)
        except Exception as e:
            message = e.message if isinstance(e, BusinessException) else str(e)
            logger.warning(f"Thread {thread_id}: purchase still unknown, keeping block: {message}")
            return self._failed(thread_id, TransactionUnconfirmedException(None, message), property_id=property_id)

        if record.owner == thread.buyer_wallet:
            self._unverified.pop(thread_id, None)
            logger.info(f"Thread {thread_id}: buyer owns property {property_id}, purchase verified")
            self._set_phase(thread_id, PurchasePhase.SUCCESS)
            return await self._reconcile(
                thread, property_id=property_id, amount=record.price, amount_wei=record.price_wei
            )

        if pending:
            logger.info(f"Thread {thread_id}: buyer has unmined transactions, keeping block")
            return self._failed(
                thread_id,
                TransactionUnconfirmedException(None, "Purchase may still be pending on chain"),
                property_id=property_id
            )

        self._unverified.pop(thread_id, None)
        logger.warning(f"Thread {thread_id}: no purchase and nothing pending on chain, block cleared")
        return self._failed(
            thread_id,
            TransactionRejectedException("Purchase not found on chain and nothing is pending; you may try again"),
            property_id=property_id
        )

    def clear_verification(self, thread_id: int) -> bool:
        """Operator override: drop an unverified block after checking the chain by hand."""
        if thread_id not in self._unverified:
            return False
        self._unverified.pop(thread_id)
        logger.warning(f"Unverified purchase block for thread {thread_id} cleared manually")
        self._phases.pop(thread_id, None)
        return True

    async def retry_thread_closure(self, thread: ThreadRecord) -> PurchaseOutcome:
        """Re-run only the store update for a settled but unreconciled thread."""
        thread_id = thread.id
        tx_hash = self._settled.get(thread_id)
        if tx_hash is None:
            return self._failed(
                thread_id, ValidationException("No settled purchase awaiting closure for this conversation"),
                record_phase=False
            )

        outcome = PurchaseOutcome(
            thread_id=thread_id, phase=PurchasePhase.SUCCESS,
            property_id=thread.property_id, tx_hash=tx_hash or None
        )
        try:
            self.store.close_thread(thread_id)
        except BusinessException as e:
            logger.error(f"Retry of thread {thread_id} closure failed: {e.message}")
            outcome.warning = CLOSURE_FAILED_WARNING
            outcome.error = e
            return outcome

        self._settled.pop(thread_id, None)
        outcome.reconciled = True
        logger.info(f"Thread {thread_id} closed after earlier closure failure")
        return outcome
