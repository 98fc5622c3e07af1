"""
Conversation domain models.

WHAT: Read models for threads and messages plus the session's message view
WHY: Decouple services and API from ORM sessions
HOW: Pydantic v2 models built from ORM rows with from_attributes
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from ..core.models import ThreadStatus, MessageType, OfferStatus


class ThreadRecord(BaseModel):
    """Snapshot of a persisted thread."""

    id: int
    buyer_wallet: str
    seller_wallet: str
    property_id: int
    status: ThreadStatus
    created_at: datetime

    model_config = {"from_attributes": True}

    @property
    def is_open(self) -> bool:
        return self.status == ThreadStatus.OPEN

    def participants(self) -> frozenset[str]:
        return frozenset({self.buyer_wallet, self.seller_wallet})

    def counterparty(self, wallet: str) -> str:
        """The other participant from `wallet`'s point of view."""
        return self.seller_wallet if wallet == self.buyer_wallet else self.buyer_wallet


class MessageRecord(BaseModel):
    """Snapshot of a persisted message or offer."""

    id: int
    thread_id: int
    sender_wallet: str
    created_at: datetime
    type: MessageType
    content: Optional[str] = None
    price: Optional[Decimal] = None
    status: Optional[OfferStatus] = None
    read: Optional[bool] = None
    client_id: Optional[str] = None

    model_config = {"from_attributes": True}

    @property
    def is_offer(self) -> bool:
        return self.type == MessageType.OFFER

    @property
    def is_pending_offer(self) -> bool:
        return self.is_offer and self.status == OfferStatus.PENDING


class MessageEntry(BaseModel):
    """
    One row of a session's message view.

    Entries created by a local send are `pending_confirmation` until the stored
    record replaces them (matched by client_id) or the send fails.
    """

    client_id: str = Field(default_factory=lambda: str(uuid4()))
    id: Optional[int] = None
    thread_id: int
    sender_wallet: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
    type: MessageType = MessageType.MESSAGE
    content: Optional[str] = None
    price: Optional[Decimal] = None
    status: Optional[OfferStatus] = None
    read: Optional[bool] = None
    pending_confirmation: bool = False

    @classmethod
    def from_record(cls, record: MessageRecord) -> "MessageEntry":
        return cls(
            client_id=record.client_id or f"msg-{record.id}",
            id=record.id,
            thread_id=record.thread_id,
            sender_wallet=record.sender_wallet,
            created_at=record.created_at,
            type=record.type,
            content=record.content,
            price=record.price,
            status=record.status,
            read=record.read,
        )


class ThreadDisplay(BaseModel):
    """Derived view model for one row of the conversation list."""

    thread_id: int
    property_id: int
    property_title: str
    counterparty_wallet: str
    counterparty_name: str
    status: ThreadStatus
    is_active: bool = False
    is_unread: bool = False

    @property
    def is_closed(self) -> bool:
        return self.status == ThreadStatus.CLOSED
