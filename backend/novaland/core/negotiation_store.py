"""
Negotiation store.

WHAT: Create/read/update operations on threads, messages and the user directory
WHY: Single owner of Thread/Message persistence for every other component
HOW: Short SQLAlchemy sessions per operation, compare-and-swap offer updates,
     change events published to the ChangeStream after each commit
"""

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Literal, Optional

from sqlalchemy import update, select, or_, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .change_stream import (
    ChangeEvent, ChangeStream, ChangeType, THREADS_TABLE, MESSAGES_TABLE, change_stream
)
from .database import get_db, SessionLocal
from .models import Thread, Message, User, ThreadStatus, MessageType, OfferStatus
from ..models.chat import ThreadRecord, MessageRecord
from ..utils.exceptions import (
    BusinessException,
    StoreUnavailableException,
    ThreadNotFoundException,
    MessageNotFoundException,
    ThreadClosedException,
    OfferPendingException,
    AlreadyResolvedException,
    NotAnOfferException,
    ValidationException,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)

Role = Literal["buyer", "seller"]


def normalize_wallet(wallet: str) -> str:
    """Wallet addresses are compared lower-case everywhere."""
    return wallet.strip().lower()


class NegotiationStore:
    """
    Persistence for threads, messages and display names.

    Every public method opens its own session; failures of the backing store
    surface as StoreUnavailableException.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        stream: Optional[ChangeStream] = None
    ):
        self._session_factory = session_factory or SessionLocal
        self.stream = stream or change_stream

    @contextmanager
    def _session(self, operation: str):
        try:
            with get_db(self._session_factory) as db:
                yield db
        except BusinessException:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Store operation '{operation}' failed: {e}", exc_info=True)
            raise StoreUnavailableException(operation, str(e)) from e

    def _publish(self, events: list[ChangeEvent]) -> None:
        for event in events:
            self.stream.publish(event)

    @staticmethod
    def _participants(thread: Thread) -> frozenset[str]:
        return frozenset({thread.buyer_wallet, thread.seller_wallet})

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def create_thread(self, buyer_wallet: str, seller_wallet: str, property_id: int) -> ThreadRecord:
        """
        Open a conversation, or return the open one for the same triple.

        Raises:
            ValidationException: buyer and seller are the same wallet
        """
        buyer = normalize_wallet(buyer_wallet)
        seller = normalize_wallet(seller_wallet)
        if buyer == seller:
            raise ValidationException("Buyer and seller must be different wallets")

        events = []
        with self._session("create conversation") as db:
            existing = (
                db.query(Thread)
                .filter_by(buyer_wallet=buyer, seller_wallet=seller, property_id=property_id)
                .filter(Thread.status == ThreadStatus.OPEN)
                .order_by(Thread.created_at.desc(), Thread.id.desc())
                .first()
            )
            if existing:
                return ThreadRecord.model_validate(existing)

            thread = Thread(
                buyer_wallet=buyer,
                seller_wallet=seller,
                property_id=property_id,
                status=ThreadStatus.OPEN,
                created_at=datetime.utcnow()
            )
            db.add(thread)
            db.flush()
            record = ThreadRecord.model_validate(thread)
            events.append(ChangeEvent(
                table=THREADS_TABLE,
                type=ChangeType.INSERT,
                new=record,
                participants=self._participants(thread)
            ))

        logger.info(f"Created thread {record.id} for property {property_id} ({buyer} -> {seller})")
        self._publish(events)
        return record

    def get_thread(self, thread_id: int) -> ThreadRecord:
        """
        Raises:
            ThreadNotFoundException: no such thread
        """
        with self._session("load conversation") as db:
            thread = db.get(Thread, thread_id)
            if not thread:
                raise ThreadNotFoundException(thread_id)
            return ThreadRecord.model_validate(thread)

    def list_threads(self, wallet: str, role: Optional[Role] = None) -> list[ThreadRecord]:
        """Threads where the wallet is buyer and/or seller, newest first."""
        wallet = normalize_wallet(wallet)
        with self._session("fetch conversations") as db:
            query = db.query(Thread)
            if role == "buyer":
                query = query.filter(Thread.buyer_wallet == wallet)
            elif role == "seller":
                query = query.filter(Thread.seller_wallet == wallet)
            else:
                query = query.filter(or_(Thread.buyer_wallet == wallet, Thread.seller_wallet == wallet))
            threads = query.order_by(Thread.created_at.desc(), Thread.id.desc()).all()
            return [ThreadRecord.model_validate(t) for t in threads]

    def close_thread(self, thread_id: int) -> ThreadRecord:
        """
        Mark a thread closed. Closing a closed thread is a no-op.

        Raises:
            ThreadNotFoundException: no such thread
        """
        events = []
        with self._session("close conversation") as db:
            thread = db.get(Thread, thread_id)
            if not thread:
                raise ThreadNotFoundException(thread_id)
            if thread.status == ThreadStatus.CLOSED:
                return ThreadRecord.model_validate(thread)

            old = ThreadRecord.model_validate(thread)
            thread.status = ThreadStatus.CLOSED
            db.flush()
            record = ThreadRecord.model_validate(thread)
            events.append(ChangeEvent(
                table=THREADS_TABLE,
                type=ChangeType.UPDATE,
                new=record,
                old=old,
                participants=self._participants(thread)
            ))

        logger.info(f"Thread {thread_id} closed")
        self._publish(events)
        return record

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def list_messages(self, thread_id: int) -> list[MessageRecord]:
        """Messages of a thread ordered by created_at, ties by insertion order."""
        with self._session("fetch messages") as db:
            messages = (
                db.query(Message)
                .filter(Message.thread_id == thread_id)
                .order_by(Message.created_at.asc(), Message.id.asc())
                .all()
            )
            return [MessageRecord.model_validate(m) for m in messages]

    def get_message(self, message_id: int) -> MessageRecord:
        """
        Raises:
            MessageNotFoundException: no such message
        """
        with self._session("load message") as db:
            message = db.get(Message, message_id)
            if not message:
                raise MessageNotFoundException(message_id)
            return MessageRecord.model_validate(message)

    def insert_message(
        self,
        thread_id: int,
        sender_wallet: str,
        content: str,
        client_id: Optional[str] = None
    ) -> MessageRecord:
        """
        Append a chat message.

        Raises:
            ThreadNotFoundException: no such thread
            ThreadClosedException: thread is closed
        """
        sender = normalize_wallet(sender_wallet)
        events = []
        with self._session("send message") as db:
            thread = self._open_thread(db, thread_id)
            message = Message(
                thread_id=thread_id,
                sender_wallet=sender,
                created_at=datetime.utcnow(),
                type=MessageType.MESSAGE,
                content=content,
                client_id=client_id
            )
            db.add(message)
            self._flush_insert(db, thread_id, client_id)
            record = MessageRecord.model_validate(message)
            events.append(ChangeEvent(
                table=MESSAGES_TABLE,
                type=ChangeType.INSERT,
                new=record,
                participants=self._participants(thread)
            ))

        self._publish(events)
        return record

    def insert_offer(
        self,
        thread_id: int,
        sender_wallet: str,
        price: Decimal,
        note: str = "",
        client_id: Optional[str] = None
    ) -> MessageRecord:
        """
        Append a pending offer.

        The open-thread and no-pending-offer checks run in the same transaction
        as the insert; the partial unique index catches concurrent writers.

        Raises:
            ThreadNotFoundException: no such thread
            ThreadClosedException: thread is closed
            OfferPendingException: thread already holds a pending offer
        """
        sender = normalize_wallet(sender_wallet)
        events = []
        with self._session("send offer") as db:
            thread = self._open_thread(db, thread_id)
            if self._pending_offer_query(db, thread_id).first() is not None:
                raise OfferPendingException(thread_id)

            offer = Message(
                thread_id=thread_id,
                sender_wallet=sender,
                created_at=datetime.utcnow(),
                type=MessageType.OFFER,
                content=note,
                price=price,
                status=OfferStatus.PENDING,
                client_id=client_id
            )
            db.add(offer)
            self._flush_insert(db, thread_id, client_id)
            record = MessageRecord.model_validate(offer)
            events.append(ChangeEvent(
                table=MESSAGES_TABLE,
                type=ChangeType.INSERT,
                new=record,
                participants=self._participants(thread)
            ))

        logger.info(f"Offer {record.id} of {price} submitted on thread {thread_id}")
        self._publish(events)
        return record

    def _open_thread(self, db, thread_id: int) -> Thread:
        thread = db.get(Thread, thread_id)
        if not thread:
            raise ThreadNotFoundException(thread_id)
        if thread.status != ThreadStatus.OPEN:
            raise ThreadClosedException(thread_id)
        return thread

    @staticmethod
    def _flush_insert(db, thread_id: int, client_id: Optional[str]) -> None:
        try:
            db.flush()
        except IntegrityError as e:
            if client_id and "client_id" in str(e.orig):
                raise ValidationException(f"Duplicate client_id: {client_id}") from e
            # uq_thread_single_pending_offer: another writer won the race
            logger.warning(f"Concurrent pending offer rejected on thread {thread_id}")
            raise OfferPendingException(thread_id) from e

    @staticmethod
    def _pending_offer_query(db, thread_id: int):
        return db.query(Message).filter(
            Message.thread_id == thread_id,
            Message.type == MessageType.OFFER,
            Message.status == OfferStatus.PENDING
        )

    def has_pending_offer(self, thread_id: int) -> bool:
        with self._session("check pending offers") as db:
            return self._pending_offer_query(db, thread_id).first() is not None

    def latest_accepted_offer(self, thread_id: int) -> Optional[MessageRecord]:
        """Most recent accepted offer of the thread, if any."""
        with self._session("load accepted offer") as db:
            offer = (
                db.query(Message)
                .filter(
                    Message.thread_id == thread_id,
                    Message.type == MessageType.OFFER,
                    Message.status == OfferStatus.ACCEPTED
                )
                .order_by(Message.created_at.desc(), Message.id.desc())
                .first()
            )
            return MessageRecord.model_validate(offer) if offer else None

    def resolve_offer(self, message_id: int, new_status: OfferStatus) -> MessageRecord:
        """
        Move a pending offer to accepted or rejected.

        Conditional update: `SET status = :new WHERE id = :id AND status = 'pending'`
        and the offer's thread is still open, in one statement.

        Raises:
            MessageNotFoundException: no such message
            NotAnOfferException: message is plain chat
            ThreadClosedException: the offer's thread has been closed
            AlreadyResolvedException: no pending offer matched (lost a race)
        """
        if new_status == OfferStatus.PENDING:
            raise ValueError("An offer can only be resolved to accepted or rejected")

        events = []
        with self._session("update offer") as db:
            result = db.execute(
                update(Message)
                .where(
                    Message.id == message_id,
                    Message.type == MessageType.OFFER,
                    Message.status == OfferStatus.PENDING,
                    Message.thread_id.in_(
                        select(Thread.id).where(Thread.status == ThreadStatus.OPEN)
                    )
                )
                .values(status=new_status)
                .execution_options(synchronize_session=False)
            )
            message = db.get(Message, message_id)
            if result.rowcount == 0:
                if message is None:
                    raise MessageNotFoundException(message_id)
                if message.type != MessageType.OFFER:
                    raise NotAnOfferException(message_id)
                thread = db.get(Thread, message.thread_id)
                if thread is not None and thread.status != ThreadStatus.OPEN:
                    logger.warning(f"Offer {message_id} not resolved, thread {thread.id} is closed")
                    raise ThreadClosedException(thread.id)
                current = message.status.value if message.status else None
                logger.warning(f"Offer {message_id} already resolved (status={current})")
                raise AlreadyResolvedException(message_id, current)

            db.refresh(message)
            record = MessageRecord.model_validate(message)
            old = record.model_copy(update={"status": OfferStatus.PENDING})
            thread = db.get(Thread, message.thread_id)
            events.append(ChangeEvent(
                table=MESSAGES_TABLE,
                type=ChangeType.UPDATE,
                new=record,
                old=old,
                participants=self._participants(thread)
            ))

        logger.info(f"Offer {message_id} {new_status.value}")
        self._publish(events)
        return record

    def mark_thread_read(self, thread_id: int, reader_wallet: str) -> int:
        """
        Mark the counterparty's unread messages in a thread as read.

        Returns:
            Number of messages updated
        """
        reader = normalize_wallet(reader_wallet)
        events = []
        with self._session("mark messages read") as db:
            thread = db.get(Thread, thread_id)
            if not thread:
                raise ThreadNotFoundException(thread_id)
            unread = (
                db.query(Message)
                .filter(
                    Message.thread_id == thread_id,
                    Message.sender_wallet != reader,
                    or_(Message.read.is_(None), Message.read.is_(False))
                )
                .all()
            )
            participants = self._participants(thread)
            for message in unread:
                old = MessageRecord.model_validate(message)
                message.read = True
                events.append(ChangeEvent(
                    table=MESSAGES_TABLE,
                    type=ChangeType.UPDATE,
                    new=old.model_copy(update={"read": True}),
                    old=old,
                    participants=participants
                ))

        if events:
            logger.debug(f"Marked {len(events)} message(s) read in thread {thread_id} for {reader}")
        self._publish(events)
        return len(events)

    def unread_counts(self, wallet: str) -> dict[int, int]:
        """Per-thread count of messages from the counterparty not yet read by `wallet`."""
        wallet = normalize_wallet(wallet)
        with self._session("count unread messages") as db:
            rows = (
                db.query(Message.thread_id, func.count(Message.id))
                .join(Thread, Thread.id == Message.thread_id)
                .filter(
                    or_(Thread.buyer_wallet == wallet, Thread.seller_wallet == wallet),
                    Message.sender_wallet != wallet,
                    or_(Message.read.is_(None), Message.read.is_(False))
                )
                .group_by(Message.thread_id)
                .all()
            )
            return {thread_id: count for thread_id, count in rows}

    # ------------------------------------------------------------------
    # Identity directory
    # ------------------------------------------------------------------

    def lookup_names(self, addresses: Iterable[str]) -> dict[str, str]:
        """Batch lookup of display names; addresses without a name are omitted."""
        wanted = {normalize_wallet(a) for a in addresses if a}
        if not wanted:
            return {}
        with self._session("look up names") as db:
            users = db.query(User).filter(User.wallet_address.in_(wanted)).all()
            return {u.wallet_address: u.name for u in users if u.name}

    def upsert_user(self, wallet: str, name: Optional[str]) -> None:
        wallet = normalize_wallet(wallet)
        with self._session("save user") as db:
            user = db.get(User, wallet)
            if user:
                user.name = name
            else:
                db.add(User(wallet_address=wallet, name=name))


# Singleton instance
negotiation_store = NegotiationStore()
