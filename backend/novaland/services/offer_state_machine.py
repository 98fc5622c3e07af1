"""
Offer state machine.

WHAT: Legal transitions of offer messages and the per-thread pending constraint
WHY: Only the buyer offers, only the seller resolves, and only pending offers move
HOW: Guards checked before any store call, compare-and-swap resolution in the store,
     every outcome returned as an OperationResult
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, localcontext
from typing import Any, Callable, Optional, Sequence

from ..core.models import OfferStatus
from ..core.negotiation_store import NegotiationStore, negotiation_store, normalize_wallet
from ..models.chat import ThreadRecord, MessageRecord
from ..models.results import OperationResult
from ..utils.exceptions import (
    BusinessException,
    StoreUnavailableException,
    NotBuyerException,
    NotSellerException,
    SelfDealException,
    NotPendingException,
    NotAnOfferException,
    ThreadClosedException,
    InvalidPriceException,
    MessageNotFoundException,
    OfferPendingException,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Smallest unit of the contract currency (wei) expressed in ether
PRICE_QUANTUM = Decimal("1e-18")


def parse_price(price: Any) -> Decimal:
    """
    Parse an offer price into a positive, finite Decimal.

    Raises:
        InvalidPriceException: booleans, unparsable text, zero, negatives, NaN,
            infinities, or more precision than the currency supports
    """
    if price is None or isinstance(price, bool):
        raise InvalidPriceException(price)
    try:
        value = price if isinstance(price, Decimal) else Decimal(str(price).strip())
        if not value.is_finite() or value <= 0:
            raise InvalidPriceException(price)
        with localcontext() as ctx:
            # Wide enough that large prices quantize without overflowing
            ctx.prec = 100
            if value != value.quantize(PRICE_QUANTUM):
                raise InvalidPriceException(price)
    except (InvalidOperation, ValueError) as e:
        raise InvalidPriceException(price) from e
    return value


@dataclass
class OfferThreadState:
    """Derived offer flags of one thread."""
    has_pending_offer: bool = False
    pending_offer_id: Optional[int] = None
    accepted_offer_id: Optional[int] = None


def derive_offer_state(messages: Sequence[MessageRecord]) -> OfferThreadState:
    """Offer flags from a thread's messages in display order."""
    state = OfferThreadState()
    for message in messages:
        if message.is_pending_offer:
            state.has_pending_offer = True
            state.pending_offer_id = message.id
        elif message.is_offer and message.status == OfferStatus.ACCEPTED:
            state.accepted_offer_id = message.id
    return state


class OfferStateMachine:
    """
    Transition rules for offers. Holds no durable state.

    Errors are returned in the OperationResult and also passed to `on_error`
    when one is given.
    """

    def __init__(
        self,
        store: Optional[NegotiationStore] = None,
        on_error: Optional[Callable[[BusinessException], None]] = None
    ):
        self.store = store or negotiation_store
        self.on_error = on_error

    def _fail(self, operation: str, error: BusinessException) -> OperationResult:
        logger.info(f"{operation} refused: {error.code.value} - {error.message}")
        if self.on_error:
            self.on_error(error)
        return OperationResult.failure(error)

    def _unexpected(self, operation: str, error: Exception) -> OperationResult:
        logger.error(f"{operation} failed unexpectedly: {error}", exc_info=True)
        return self._fail(operation, StoreUnavailableException(operation, str(error)))

    def submit_offer(
        self,
        thread: ThreadRecord,
        sender_wallet: str,
        price: Any,
        note: str = "",
        client_id: Optional[str] = None
    ) -> OperationResult[MessageRecord]:
        """
        Append a pending offer from the thread's buyer.

        Errors: NOT_BUYER, THREAD_CLOSED, OFFER_PENDING, INVALID_PRICE, STORE_UNAVAILABLE
        """
        operation = "submit offer"
        try:
            sender = normalize_wallet(sender_wallet)
            if sender != thread.buyer_wallet:
                raise NotBuyerException(sender)
            if not thread.is_open:
                raise ThreadClosedException(thread.id)
            # Rechecked by the store inside the insert transaction
            if self.store.has_pending_offer(thread.id):
                raise OfferPendingException(thread.id)
            value = parse_price(price)
            offer = self.store.insert_offer(thread.id, sender, value, note or "", client_id=client_id)
        except BusinessException as e:
            return self._fail(operation, e)
        except Exception as e:
            return self._unexpected(operation, e)
        return OperationResult.success(offer)

    def accept_offer(
        self,
        thread: ThreadRecord,
        offer: MessageRecord,
        acting_wallet: str
    ) -> OperationResult[MessageRecord]:
        """
        Accept a pending offer as the thread's seller.

        Errors: NOT_SELLER, SELF_DEAL, NOT_AN_OFFER, NOT_PENDING, THREAD_CLOSED,
        ALREADY_RESOLVED, MESSAGE_NOT_FOUND, STORE_UNAVAILABLE
        """
        return self._resolve("accept offer", thread, offer, acting_wallet, OfferStatus.ACCEPTED)

    def reject_offer(
        self,
        thread: ThreadRecord,
        offer_id: int,
        acting_wallet: str
    ) -> OperationResult[MessageRecord]:
        """Reject a pending offer by id. Same guards as accept_offer."""
        operation = "reject offer"
        try:
            offer = self.store.get_message(offer_id)
        except BusinessException as e:
            return self._fail(operation, e)
        except Exception as e:
            return self._unexpected(operation, e)
        return self._resolve(operation, thread, offer, acting_wallet, OfferStatus.REJECTED)

    def _resolve(
        self,
        operation: str,
        thread: ThreadRecord,
        offer: MessageRecord,
        acting_wallet: str,
        new_status: OfferStatus
    ) -> OperationResult[MessageRecord]:
        try:
            acting = normalize_wallet(acting_wallet)
            if offer.thread_id != thread.id:
                raise MessageNotFoundException(offer.id)
            if acting != thread.seller_wallet:
                action = "accept offers" if new_status == OfferStatus.ACCEPTED else "reject offers"
                raise NotSellerException(acting, action)
            if offer.sender_wallet == acting:
                raise SelfDealException(offer.id)
            if not offer.is_offer:
                raise NotAnOfferException(offer.id)
            if offer.status != OfferStatus.PENDING:
                raise NotPendingException(offer.id, offer.status.value if offer.status else None)
            if not thread.is_open:
                raise ThreadClosedException(thread.id)
            resolved = self.store.resolve_offer(offer.id, new_status)
        except BusinessException as e:
            return self._fail(operation, e)
        except Exception as e:
            return self._unexpected(operation, e)
        return OperationResult.success(resolved)

    def thread_state(self, thread_id: int) -> OperationResult[OfferThreadState]:
        """Current offer flags of a thread, read from the store."""
        operation = "load offer state"
        try:
            messages = self.store.list_messages(thread_id)
        except BusinessException as e:
            return self._fail(operation, e)
        except Exception as e:
            return self._unexpected(operation, e)
        return OperationResult.success(derive_offer_state(messages))
