"""
Realtime reconciler.

WHAT: Applies change-stream events to one client session
WHY: Counterparty messages, offer resolutions and thread closures must show up
     without a manual refresh
HOW: Single consumer task over a participant-filtered subscription; active-thread
     events refetch and mark read, inactive inserts mark unread, offer resolutions
     and thread changes trigger a debounced thread-list refetch
"""

import asyncio
from typing import TYPE_CHECKING, Optional

from ..core.change_stream import (
    ChangeEvent, ChangeStream, ChangeType, Subscription,
    THREADS_TABLE, MESSAGES_TABLE, change_stream
)
from ..core.config import settings
from ..core.models import OfferStatus
from ..models.chat import ThreadRecord
from ..utils.logger import get_logger

if TYPE_CHECKING:
    from .marketplace_session import MarketplaceSession

logger = get_logger(__name__)

RESOLVED_STATUSES = (OfferStatus.ACCEPTED, OfferStatus.REJECTED)


class RealtimeReconciler:
    """Event consumer for a MarketplaceSession."""

    def __init__(
        self,
        session: "MarketplaceSession",
        stream: Optional[ChangeStream] = None,
        debounce_seconds: Optional[float] = None
    ):
        self.session = session
        self.stream = stream or change_stream
        self.debounce_seconds = (
            settings.THREAD_REFETCH_DEBOUNCE_SECONDS if debounce_seconds is None else debounce_seconds
        )
        self._subscription: Optional[Subscription] = None
        self._consumer: Optional[asyncio.Task] = None
        self._refetch_task: Optional[asyncio.Task] = None
        self.handled = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    async def start(self) -> None:
        """Subscribe for the session's wallet and start consuming."""
        if self.running:
            return
        self._subscription = self.stream.subscribe(
            wallet=self.session.wallet,
            tables=(THREADS_TABLE, MESSAGES_TABLE)
        )
        self._consumer = asyncio.create_task(self._consume(self._subscription))
        logger.info(f"Realtime reconciler started for {self.session.wallet}")

    async def stop(self) -> None:
        """Unsubscribe and wait for the consumer to finish."""
        if self._refetch_task and not self._refetch_task.done():
            self._refetch_task.cancel()
        if self._subscription:
            self._subscription.close()
        if self._consumer:
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
        self._subscription = None
        self._consumer = None
        self._refetch_task = None
        logger.info(f"Realtime reconciler stopped for {self.session.wallet}")

    async def drain(self) -> None:
        """Wait until queued events and debounced refetches are processed."""
        while True:
            if self._subscription is not None and self._subscription.pending() and self.running:
                await asyncio.sleep(0)
                continue
            if self._refetch_task is not None and not self._refetch_task.done():
                await asyncio.wait({self._refetch_task})
                continue
            break

    async def _consume(self, subscription: Subscription) -> None:
        async for event in subscription:
            self.handle(event)

    def handle(self, event: ChangeEvent) -> None:
        """Apply one event. Failures are logged and leave the session untouched."""
        try:
            if event.table == MESSAGES_TABLE:
                self._on_message(event)
            elif event.table == THREADS_TABLE:
                self._on_thread(event)
            self.handled += 1
        except Exception as e:
            self.failures += 1
            logger.error(
                f"Failed to reconcile {event.type.value} on {event.table}: {e}",
                exc_info=True
            )

    def _on_message(self, event: ChangeEvent) -> None:
        record = event.record
        if record is None:
            return
        session = self.session

        # Already shown through the optimistic append of the sending call
        if event.type == ChangeType.INSERT and record.sender_wallet == session.wallet:
            return

        active = session.active_thread
        if active is not None and record.thread_id == active.id:
            session.refresh_messages(active.id, raise_errors=True)
            session.mark_read(active.id, raise_errors=True)
        elif event.type == ChangeType.INSERT:
            logger.debug(f"New message in inactive thread {record.thread_id}, marking unread")
            session.mark_unread(record.thread_id)
        elif self._read_by_wallet(event) and record.thread_id in session.unread:
            # Read from another tab or device
            session.sync_unread(record.thread_id)

        if event.type == ChangeType.UPDATE and self._offer_resolved(event):
            self.schedule_thread_refetch()

    def _read_by_wallet(self, event: ChangeEvent) -> bool:
        new, old = event.new, event.old
        if event.type != ChangeType.UPDATE or new is None or old is None:
            return False
        return bool(new.read) and not old.read and new.sender_wallet != self.session.wallet

    @staticmethod
    def _offer_resolved(event: ChangeEvent) -> bool:
        new, old = event.new, event.old
        if new is None or not new.is_offer or new.status not in RESOLVED_STATUSES:
            return False
        return old is None or old.status != new.status

    def _on_thread(self, event: ChangeEvent) -> None:
        record = event.record
        session = self.session
        active = session.active_thread
        if (
            isinstance(event.new, ThreadRecord)
            and active is not None
            and record.id == active.id
        ):
            # e.g. closed by the counterparty's purchase
            session.replace_active_thread(event.new)
        self.schedule_thread_refetch()

    def schedule_thread_refetch(self) -> None:
        """Refetch the thread list after the debounce delay; bursts coalesce."""
        if self._refetch_task is not None and not self._refetch_task.done():
            return
        self._refetch_task = asyncio.get_running_loop().create_task(self._debounced_refetch())

    async def _debounced_refetch(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        try:
            self.session.refresh_threads(raise_errors=True)
        except Exception as e:
            self.failures += 1
            logger.error(f"Debounced thread refetch failed: {e}", exc_info=True)
