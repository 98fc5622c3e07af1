"""
In-process change stream for threads and messages.

WHAT: Push feed of insert/update/delete events published by the store
WHY: Sessions and the SSE endpoint react to counterparty mutations
HOW: Per-subscriber asyncio.Queue, filtered by table and participant wallet
"""

import asyncio
import enum
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from ..utils.logger import get_logger

logger = get_logger(__name__)

THREADS_TABLE = "threads"
MESSAGES_TABLE = "messages"


class ChangeType(str, enum.Enum):
    """Change event types."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """
    One committed mutation.

    `new` and `old` are record snapshots (ThreadRecord / MessageRecord);
    `participants` are the buyer and seller wallets of the affected thread.
    """
    table: str
    type: ChangeType
    new: Optional[Any] = None
    old: Optional[Any] = None
    participants: frozenset[str] = field(default_factory=frozenset)
    commit_timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def record(self) -> Any:
        """The most recent snapshot carried by the event."""
        return self.new if self.new is not None else self.old

    def to_payload(self) -> dict:
        """JSON-safe representation for SSE clients."""
        return {
            "table": self.table,
            "type": self.type.value,
            "new": self.new.model_dump(mode="json") if self.new is not None else None,
            "old": self.old.model_dump(mode="json") if self.old is not None else None,
            "commit_timestamp": self.commit_timestamp.isoformat(),
        }


_CLOSED = object()


class Subscription:
    """
    A filtered view of the change stream.

    Iterate with `async for event in subscription`; iteration ends after close().
    """

    def __init__(
        self,
        stream: "ChangeStream",
        wallet: Optional[str],
        tables: Optional[Iterable[str]] = None
    ):
        self._stream = stream
        self.wallet = wallet.lower() if wallet else None
        self.tables = frozenset(tables) if tables else None
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        try:
            self._loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    def matches(self, event: ChangeEvent) -> bool:
        """Server-side filter: table, then participant equality."""
        if self.tables is not None and event.table not in self.tables:
            return False
        if self.wallet is not None and self.wallet not in event.participants:
            return False
        return True

    def deliver(self, event: ChangeEvent) -> None:
        """Enqueue an event from any thread."""
        if self.closed:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if self._loop is None or running is self._loop or self._loop.is_closed():
            self.queue.put_nowait(event)
        else:
            # Published from a worker thread (sync endpoint), hand over to our loop
            self._loop.call_soon_threadsafe(self.queue.put_nowait, event)

    async def get(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """
        Next event, or None when closed.

        Raises:
            asyncio.TimeoutError: No event within `timeout`
        """
        if timeout is None:
            item = await self.queue.get()
        else:
            item = await asyncio.wait_for(self.queue.get(), timeout=timeout)
        if item is _CLOSED:
            return None
        return item

    def pending(self) -> int:
        """Events queued and not yet consumed."""
        return self.queue.qsize()

    def close(self) -> None:
        """Stop receiving events and wake any waiting consumer."""
        if self.closed:
            return
        self.closed = True
        self._stream.unsubscribe(self)
        self.queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class ChangeStream:
    """Publish/subscribe hub fed by NegotiationStore after each commit."""

    def __init__(self):
        self._subscribers: set[Subscription] = set()
        self._lock = threading.Lock()

    def subscribe(
        self,
        wallet: Optional[str] = None,
        tables: Optional[Iterable[str]] = None
    ) -> Subscription:
        """
        Subscribe to events.

        Args:
            wallet: Only events for threads where this wallet participates
            tables: Only events for these tables (default: all)
        """
        subscription = Subscription(self, wallet, tables)
        with self._lock:
            self._subscribers.add(subscription)
        logger.debug(f"Change stream subscription added (wallet={subscription.wallet})")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscribers.discard(subscription)

    def publish(self, event: ChangeEvent) -> int:
        """
        Deliver an event to every matching subscriber.

        Returns:
            Number of subscribers the event was delivered to
        """
        with self._lock:
            subscribers = list(self._subscribers)

        delivered = 0
        for subscription in subscribers:
            if subscription.matches(event):
                subscription.deliver(event)
                delivered += 1
        logger.debug(f"Published {event.type.value} on {event.table} to {delivered} subscriber(s)")
        return delivered

    def close_all(self) -> int:
        """Close every subscription; their consumers stop iterating."""
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.close()
        return len(subscribers)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)


# Singleton instance
change_stream = ChangeStream()
