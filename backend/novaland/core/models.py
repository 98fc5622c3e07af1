"""
ORM models for negotiation persistence.

WHAT: SQLAlchemy models for threads, messages and the user directory
WHY: Persist conversations, offers and display names
HOW: Declarative models with constraints, relationships and indexes
"""

from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text,
    ForeignKey, CheckConstraint, Index, Enum as SQLEnum, text
)
from sqlalchemy.orm import relationship
from sqlalchemy.types import TypeDecorator
from decimal import Decimal
import enum

from .database import Base


def _enum_values(enum_cls) -> list[str]:
    """Persist enum values ("open") rather than member names ("OPEN")."""
    return [member.value for member in enum_cls]


class DecimalString(TypeDecorator):
    """Exact decimal stored as text; SQLite would round NUMERIC through float."""

    impl = String
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return format(Decimal(str(value)).normalize(), "f")

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


class ThreadStatus(str, enum.Enum):
    """Thread status values."""
    OPEN = "open"
    CLOSED = "closed"


class MessageType(str, enum.Enum):
    """Message type values."""
    MESSAGE = "message"
    OFFER = "offer"


class OfferStatus(str, enum.Enum):
    """Offer status values (pending is the only non-terminal state)."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class User(Base):
    """
    User table - identity directory.

    WHAT: Maps a wallet address to a display name
    WHY: Thread lists show counterparty names instead of raw addresses
    HOW: Lower-case wallet address as primary key
    """
    __tablename__ = "users"

    wallet_address = Column(String(42), primary_key=True)
    name = Column(String(100), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f"<User(wallet={self.wallet_address}, name={self.name})>"


class Thread(Base):
    """
    Thread table - one conversation per (buyer, seller, property).

    WHAT: Conversation between a prospective buyer and a property's seller
    WHY: Scope offers and messages to a single negotiation
    HOW: Status moves open -> closed only on purchase; rows are never deleted
    """
    __tablename__ = "threads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    buyer_wallet = Column(String(42), nullable=False)
    seller_wallet = Column(String(42), nullable=False)
    property_id = Column(Integer, nullable=False)
    status = Column(
        SQLEnum(ThreadStatus, name="thread_status", values_callable=_enum_values),
        nullable=False,
        default=ThreadStatus.OPEN
    )
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    messages = relationship("Message", back_populates="thread")

    __table_args__ = (
        CheckConstraint("buyer_wallet <> seller_wallet", name="check_distinct_parties"),
        Index("idx_thread_buyer", "buyer_wallet"),
        Index("idx_thread_seller", "seller_wallet"),
    )

    def __repr__(self):
        return f"<Thread(id={self.id}, property={self.property_id}, status={self.status})>"


class Message(Base):
    """
    Message table - chat messages and offers within a thread.

    WHAT: Ordered events of a thread; offers carry price, note and status
    WHY: Track the negotiation history and the offer lifecycle
    HOW: Immutable apart from `read` and the one-way offer `status`
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    thread_id = Column(Integer, ForeignKey("threads.id"), nullable=False)
    sender_wallet = Column(String(42), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    type = Column(
        SQLEnum(MessageType, name="message_type", values_callable=_enum_values),
        nullable=False,
        default=MessageType.MESSAGE
    )
    content = Column(Text, nullable=True)  # chat text, or the note of an offer
    price = Column(DecimalString(80), nullable=True)
    status = Column(
        SQLEnum(OfferStatus, name="offer_status", values_callable=_enum_values),
        nullable=True
    )
    read = Column(Boolean, nullable=True)  # NULL until the recipient reads it
    client_id = Column(String(36), nullable=True, unique=True)

    thread = relationship("Thread", back_populates="messages")

    __table_args__ = (
        CheckConstraint(
            "type <> 'offer' OR (price IS NOT NULL AND CAST(price AS NUMERIC) > 0 AND status IS NOT NULL)",
            name="check_offer_fields"
        ),
        Index("idx_message_thread_created", "thread_id", "created_at"),
        # At most one pending offer per thread
        Index(
            "uq_thread_single_pending_offer",
            "thread_id",
            unique=True,
            sqlite_where=text("type = 'offer' AND status = 'pending'"),
            postgresql_where=text("type = 'offer' AND status = 'pending'"),
        ),
    )

    def __repr__(self):
        return f"<Message(id={self.id}, thread={self.thread_id}, type={self.type}, status={self.status})>"
