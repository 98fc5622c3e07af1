"""
Custom business exceptions for negotiation and purchase operations.

WHAT: Domain-specific exceptions carrying an error kind and a category
WHY: Consistent error handling across the state machine, orchestrator and API
HOW: Exception classes with error codes, user-facing messages and details
"""

import enum
from typing import Optional, List, Dict, Any


class ErrorCategory(str, enum.Enum):
    """How an error should be surfaced."""
    PRECONDITION = "precondition"  # wrong actor or state, never sent to a collaborator
    COLLABORATOR = "collaborator"  # store or chain call failed, retryable
    AMBIGUOUS = "ambiguous"  # outcome unknown, needs verification
    STALE = "stale"  # cached listing no longer matches the conversation


class ErrorKind(str, enum.Enum):
    """Error codes surfaced by the core operations."""
    # Preconditions
    NOT_BUYER = "NOT_BUYER"
    NOT_SELLER = "NOT_SELLER"
    SELF_DEAL = "SELF_DEAL"
    NOT_PENDING = "NOT_PENDING"
    NOT_AN_OFFER = "NOT_AN_OFFER"
    ALREADY_RESOLVED = "ALREADY_RESOLVED"
    THREAD_CLOSED = "THREAD_CLOSED"
    OFFER_PENDING = "OFFER_PENDING"
    INVALID_PRICE = "INVALID_PRICE"
    NO_ACTIVE_THREAD = "NO_ACTIVE_THREAD"
    NO_ACCEPTED_OFFER = "NO_ACCEPTED_OFFER"
    PURCHASE_IN_FLIGHT = "PURCHASE_IN_FLIGHT"
    ALREADY_SETTLED = "ALREADY_SETTLED"
    THREAD_NOT_FOUND = "THREAD_NOT_FOUND"
    MESSAGE_NOT_FOUND = "MESSAGE_NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    # Stale data
    PROPERTY_NOT_FOUND = "PROPERTY_NOT_FOUND"
    NOT_LISTED = "NOT_LISTED"
    OWNER_MISMATCH = "OWNER_MISMATCH"
    PRICE_MISMATCH = "PRICE_MISMATCH"
    # Collaborator failures
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    CHAIN_UNAVAILABLE = "CHAIN_UNAVAILABLE"
    TX_REJECTED = "TX_REJECTED"
    TX_REVERTED = "TX_REVERTED"
    # Ambiguous outcomes
    TX_UNCONFIRMED = "TX_UNCONFIRMED"
    NEEDS_VERIFICATION = "NEEDS_VERIFICATION"


class BusinessException(Exception):
    """Base class for business logic exceptions."""

    category: ErrorCategory = ErrorCategory.PRECONDITION

    def __init__(self, message: str, code: ErrorKind, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details

    @property
    def retryable(self) -> bool:
        return self.category == ErrorCategory.COLLABORATOR


class NotBuyerException(BusinessException):
    """Raised when someone other than the thread's buyer acts as buyer."""

    def __init__(self, wallet: str, action: str = "make an offer"):
        super().__init__(
            message=f"Only the buyer can {action}.",
            code=ErrorKind.NOT_BUYER,
            details={"wallet": wallet}
        )


class NotSellerException(BusinessException):
    """Raised when someone other than the thread's seller resolves an offer."""

    def __init__(self, wallet: str, action: str = "accept offers"):
        super().__init__(
            message=f"Only the seller can {action}.",
            code=ErrorKind.NOT_SELLER,
            details={"wallet": wallet}
        )


class SelfDealException(BusinessException):
    """Raised when a wallet tries to resolve its own offer."""

    def __init__(self, message_id: int):
        super().__init__(
            message="You cannot accept or reject your own offer.",
            code=ErrorKind.SELF_DEAL,
            details={"message_id": message_id}
        )


class NotPendingException(BusinessException):
    """Raised when an offer is no longer pending."""

    def __init__(self, message_id: int, current_status: Optional[str]):
        super().__init__(
            message="This offer is not pending.",
            code=ErrorKind.NOT_PENDING,
            details={"message_id": message_id, "current_status": current_status}
        )


class AlreadyResolvedException(BusinessException):
    """Raised when a conditional status update matched no pending offer."""

    def __init__(self, message_id: int, current_status: Optional[str]):
        super().__init__(
            message="This offer was already resolved by another action.",
            code=ErrorKind.ALREADY_RESOLVED,
            details={"message_id": message_id, "current_status": current_status}
        )


class NotAnOfferException(BusinessException):
    """Raised when an offer transition targets a plain chat message."""

    def __init__(self, message_id: int):
        super().__init__(
            message="This message is not an offer.",
            code=ErrorKind.NOT_AN_OFFER,
            details={"message_id": message_id}
        )


class ThreadClosedException(BusinessException):
    """Raised when mutating a closed thread."""

    def __init__(self, thread_id: int):
        super().__init__(
            message="This conversation is closed.",
            code=ErrorKind.THREAD_CLOSED,
            details={"thread_id": thread_id}
        )


class OfferPendingException(BusinessException):
    """Raised when a thread already holds a pending offer."""

    def __init__(self, thread_id: int):
        super().__init__(
            message="An offer is already pending.",
            code=ErrorKind.OFFER_PENDING,
            details={"thread_id": thread_id}
        )


class InvalidPriceException(BusinessException):
    """Raised for prices that are not positive finite numbers."""

    def __init__(self, price: Any):
        super().__init__(
            message="Please enter a valid positive price.",
            code=ErrorKind.INVALID_PRICE,
            details={"price": str(price)}
        )


class InvalidListingPriceException(InvalidPriceException):
    """Raised when the on-chain listing price is not positive."""

    category = ErrorCategory.STALE

    def __init__(self, property_id: int, price: Any):
        super().__init__(price)
        self.message = "Invalid property price found."
        self.details = {"property_id": property_id, "price": str(price)}


class NoActiveThreadException(BusinessException):
    """Raised when an operation needs an active thread and there is none."""

    def __init__(self):
        super().__init__(
            message="No conversation is selected.",
            code=ErrorKind.NO_ACTIVE_THREAD
        )


class NoAcceptedOfferException(BusinessException):
    """Raised when purchasing without an accepted offer."""

    def __init__(self, thread_id: int):
        super().__init__(
            message="Cannot proceed with purchase. Ensure an offer is accepted and the conversation is active.",
            code=ErrorKind.NO_ACCEPTED_OFFER,
            details={"thread_id": thread_id}
        )


class PurchaseInFlightException(BusinessException):
    """Raised when a purchase for the thread is already running."""

    def __init__(self, thread_id: int):
        super().__init__(
            message="A purchase is already in progress for this conversation.",
            code=ErrorKind.PURCHASE_IN_FLIGHT,
            details={"thread_id": thread_id}
        )


class AlreadySettledException(BusinessException):
    """Raised when the chain purchase already succeeded for this thread."""

    def __init__(self, thread_id: int, tx_hash: str):
        super().__init__(
            message="This property was already purchased; only the conversation status is outdated.",
            code=ErrorKind.ALREADY_SETTLED,
            details={"thread_id": thread_id, "tx_hash": tx_hash}
        )


class ThreadNotFoundException(BusinessException):
    """Raised when a thread is not found."""

    def __init__(self, thread_id: int):
        super().__init__(
            message=f"Conversation not found: {thread_id}",
            code=ErrorKind.THREAD_NOT_FOUND,
            details={"thread_id": thread_id}
        )


class MessageNotFoundException(BusinessException):
    """Raised when a message is not found."""

    def __init__(self, message_id: int):
        super().__init__(
            message=f"Message not found: {message_id}",
            code=ErrorKind.MESSAGE_NOT_FOUND,
            details={"message_id": message_id}
        )


class ValidationException(BusinessException):
    """Raised for validation errors."""

    def __init__(self, message: str, field_errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(
            message=message,
            code=ErrorKind.VALIDATION_ERROR,
            details={"field_errors": field_errors} if field_errors else None
        )


class PropertyNotFoundException(BusinessException):
    """Raised when the chain has no record of the thread's property."""

    category = ErrorCategory.STALE

    def __init__(self, property_id: int):
        super().__init__(
            message="Failed to fetch property details from blockchain. Cannot proceed.",
            code=ErrorKind.PROPERTY_NOT_FOUND,
            details={"property_id": property_id}
        )


class NotListedException(BusinessException):
    """Raised when the property is no longer listed for sale."""

    category = ErrorCategory.STALE

    def __init__(self, property_id: int):
        super().__init__(
            message="Property is no longer listed for sale.",
            code=ErrorKind.NOT_LISTED,
            details={"property_id": property_id}
        )


class OwnerMismatchException(BusinessException):
    """Raised when the on-chain owner is no longer the thread's seller."""

    category = ErrorCategory.STALE

    def __init__(self, property_id: int, owner: str, seller: str):
        super().__init__(
            message="Property owner may have changed. Cannot proceed.",
            code=ErrorKind.OWNER_MISMATCH,
            details={"property_id": property_id, "owner": owner, "seller": seller}
        )


class PriceMismatchException(BusinessException):
    """Raised when the listing price differs from the accepted offer price."""

    category = ErrorCategory.STALE

    def __init__(self, property_id: int, listing_price: Any, offer_price: Any):
        super().__init__(
            message="The listing price no longer matches the accepted offer.",
            code=ErrorKind.PRICE_MISMATCH,
            details={
                "property_id": property_id,
                "listing_price": str(listing_price),
                "offer_price": str(offer_price)
            }
        )


class StoreUnavailableException(BusinessException):
    """Raised when the backing store call fails."""

    category = ErrorCategory.COLLABORATOR

    def __init__(self, operation: str, reason: str = ""):
        super().__init__(
            message=f"Failed to {operation}. Please try again.",
            code=ErrorKind.STORE_UNAVAILABLE,
            details={"operation": operation, "reason": reason}
        )


class ChainUnavailableException(BusinessException):
    """Raised when the chain peer cannot be reached before any submission."""

    category = ErrorCategory.COLLABORATOR

    def __init__(self, reason: str = ""):
        super().__init__(
            message="The blockchain node is not reachable. Please try again.",
            code=ErrorKind.CHAIN_UNAVAILABLE,
            details={"reason": reason}
        )


class TransactionRejectedException(BusinessException):
    """Raised when the node or contract refused the transaction before submission."""

    category = ErrorCategory.COLLABORATOR

    def __init__(self, reason: str = ""):
        super().__init__(
            message="Transaction was rejected before it was submitted.",
            code=ErrorKind.TX_REJECTED,
            details={"reason": reason}
        )


class TransactionRevertedException(BusinessException):
    """Raised when the purchase transaction reverted on chain."""

    category = ErrorCategory.COLLABORATOR

    def __init__(self, tx_hash: str):
        super().__init__(
            message=(
                "Blockchain transaction failed (reverted). Possible reasons: not listed, "
                "price mismatch, insufficient funds, owner changed."
            ),
            code=ErrorKind.TX_REVERTED,
            details={"tx_hash": tx_hash}
        )


class TransactionUnconfirmedException(BusinessException):
    """Raised when a submitted transaction's outcome is unknown."""

    category = ErrorCategory.AMBIGUOUS

    def __init__(self, tx_hash: Optional[str], reason: str = ""):
        super().__init__(
            message="Transaction status is unknown. Check the transaction status before trying again.",
            code=ErrorKind.TX_UNCONFIRMED,
            details={"tx_hash": tx_hash, "reason": reason}
        )


class NeedsVerificationException(BusinessException):
    """Raised when a new purchase is attempted while an earlier one is unverified."""

    category = ErrorCategory.AMBIGUOUS

    def __init__(self, thread_id: int, tx_hash: Optional[str]):
        super().__init__(
            message="An earlier purchase for this conversation has not been verified yet.",
            code=ErrorKind.NEEDS_VERIFICATION,
            details={"thread_id": thread_id, "tx_hash": tx_hash}
        )
