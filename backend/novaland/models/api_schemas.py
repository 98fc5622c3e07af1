"""
Pydantic API schemas for the v1 endpoints.

WHAT: Request and response models for FastAPI
WHY: Type-safe validation and serialization for marketplace clients
HOW: Pydantic v2 models with validators and constraints
"""

import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ..core.models import ThreadStatus, MessageType, OfferStatus
from ..models.chat import ThreadRecord, MessageRecord
from ..models.property import PropertyRecord
from ..models.results import PurchaseOutcome, PurchasePhase

WALLET_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


def validate_wallet(value: str) -> str:
    """Hex address check; returns the lower-case form."""
    value = value.strip()
    if not WALLET_PATTERN.match(value):
        raise ValueError(f"Invalid wallet address: {value}")
    return value.lower()


# ========== Threads ==========

class CreateThreadRequest(BaseModel):
    """Start a conversation with a property's seller (caller is the buyer)."""
    seller_wallet: str = Field(..., description="Seller wallet address")
    property_id: int = Field(..., ge=0, description="On-chain property id")

    @field_validator("seller_wallet")
    @classmethod
    def check_seller_wallet(cls, v: str) -> str:
        return validate_wallet(v)


class ThreadResponse(BaseModel):
    """Conversation list entry."""
    id: int
    buyer_wallet: str
    seller_wallet: str
    property_id: int
    status: ThreadStatus
    created_at: datetime
    property_title: Optional[str] = None
    counterparty_name: Optional[str] = None
    unread_count: int = 0

    @classmethod
    def from_record(cls, record: ThreadRecord, **extra) -> "ThreadResponse":
        return cls(**record.model_dump(), **extra)


class ThreadListResponse(BaseModel):
    """Threads where the caller participates, newest first."""
    threads: List[ThreadResponse]
    total: int


class ThreadDetailResponse(ThreadResponse):
    """Conversation with its derived offer state."""
    has_pending_offer: bool = False
    pending_offer_id: Optional[int] = None
    accepted_offer_id: Optional[int] = None
    purchase_phase: PurchasePhase = PurchasePhase.IDLE
    needs_verification: bool = False


# ========== Messages and offers ==========

class MessageResponse(BaseModel):
    """Stored chat message or offer."""
    id: int
    thread_id: int
    sender_wallet: str
    created_at: datetime
    type: MessageType
    content: Optional[str] = None
    price: Optional[str] = None
    status: Optional[OfferStatus] = None
    read: Optional[bool] = None
    client_id: Optional[str] = None

    @classmethod
    def from_record(cls, record: MessageRecord) -> "MessageResponse":
        data = record.model_dump()
        data["price"] = format(record.price, "f") if record.price is not None else None
        return cls(**data)


class MessageListResponse(BaseModel):
    messages: List[MessageResponse]
    total: int


class SendMessageRequest(BaseModel):
    """Send a chat message."""
    content: str = Field(..., min_length=1, max_length=2000, description="Message text")
    client_id: Optional[str] = Field(None, max_length=36, description="Client-side id for reconciliation")

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content must not be blank")
        return v.strip()


class SubmitOfferRequest(BaseModel):
    """
    Submit an offer.

    The price is validated by the offer state machine so that malformed
    prices surface as INVALID_PRICE.
    """
    price: Any = Field(..., description="Offer price in ETH")
    note: str = Field("", max_length=500, description="Free-text note")
    client_id: Optional[str] = Field(None, max_length=36)


class ReadResponse(BaseModel):
    thread_id: int
    updated: int


# ========== Purchase ==========

class ErrorBody(BaseModel):
    error: str
    message: str
    category: str
    retryable: bool
    details: Optional[Any] = None


class PurchaseResponse(BaseModel):
    """Purchase outcome."""
    thread_id: Optional[int]
    phase: PurchasePhase
    property_id: Optional[int] = None
    amount: Optional[str] = None
    amount_wei: Optional[str] = None
    tx_hash: Optional[str] = None
    reconciled: bool = False
    needs_verification: bool = False
    warning: Optional[str] = None
    error: Optional[ErrorBody] = None

    @classmethod
    def from_outcome(cls, outcome: PurchaseOutcome) -> "PurchaseResponse":
        error = None
        if outcome.error is not None:
            error = ErrorBody(
                error=outcome.error.code.value,
                message=outcome.error.message,
                category=outcome.error.category.value,
                retryable=outcome.error.retryable,
                details=outcome.error.details
            )
        return cls(
            thread_id=outcome.thread_id,
            phase=outcome.phase,
            property_id=outcome.property_id,
            amount=format(outcome.amount, "f") if outcome.amount is not None else None,
            amount_wei=str(outcome.amount_wei) if outcome.amount_wei is not None else None,
            tx_hash=outcome.tx_hash,
            reconciled=outcome.reconciled,
            needs_verification=outcome.needs_verification,
            warning=outcome.warning,
            error=error
        )


# ========== Properties ==========

class PropertyResponse(BaseModel):
    """Cached property listing."""
    product_id: int
    owner: str
    price: str
    price_wei: str
    is_listed: bool
    title: str
    category: str
    images: List[str]
    location: List[str]
    documents: List[str]
    description: str
    nft_id: str

    @classmethod
    def from_record(cls, record: PropertyRecord) -> "PropertyResponse":
        data = record.model_dump()
        data["price"] = format(record.price, "f")
        data["price_wei"] = str(record.price_wei)
        return cls(**data)


# ========== Status ==========

class ComponentStatus(BaseModel):
    available: bool
    error: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class StatusResponse(BaseModel):
    status: Literal["healthy", "degraded"]
    version: str
    app_name: str
    database: ComponentStatus
    chain: ComponentStatus
    price_policy: Literal["listing", "offer"]
