"""
Property cache.

WHAT: Process-lifetime mapping from property id to last-known listing data
WHY: Thread titles and purchase validation need owner, price and listing flag
HOW: Bulk fill from FetchProperties on connect, per-id top-up and refresh,
     version counter and listeners for the view-model pipeline
"""

import asyncio
from typing import Callable, Iterable, Optional

from ..chain import (
    ChainPeer,
    get_chain_peer,
    ChainUnavailableError,
    ChainTimeoutError,
    ChainResponseError,
)
from ..models.property import PropertyRecord
from ..utils.exceptions import ChainUnavailableException, PropertyNotFoundException
from ..utils.logger import get_logger

logger = get_logger(__name__)

_READ_ERRORS = (ChainUnavailableError, ChainTimeoutError, ChainResponseError)


class PropertyCache:
    """Soft cache of on-chain property records. Never authoritative."""

    def __init__(self, peer: Optional[ChainPeer] = None):
        self._peer = peer
        self._records: dict[int, PropertyRecord] = {}
        self._load_task: Optional[asyncio.Task] = None
        self._loaded = False
        self._listeners: list[Callable[[], None]] = []
        self.version = 0

    @property
    def peer(self) -> ChainPeer:
        return self._peer or get_chain_peer()

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def loading(self) -> bool:
        """A bulk load is in progress."""
        return self._load_task is not None and not self._load_task.done()

    def add_listener(self, callback: Callable[[], None]) -> None:
        """Call `callback` whenever the cached records change."""
        self._listeners.append(callback)

    def _changed(self) -> None:
        self.version += 1
        for callback in list(self._listeners):
            try:
                callback()
            except Exception as e:
                logger.error(f"Property cache listener failed: {e}", exc_info=True)

    async def load_all(self, force: bool = False) -> dict[int, PropertyRecord]:
        """
        Bulk fill from the chain. Concurrent callers share one fetch.

        Raises:
            ChainUnavailableException: enumeration failed
        """
        if self._loaded and not force:
            return self.snapshot()
        if self._load_task is None or self._load_task.done():
            self._load_task = asyncio.ensure_future(self._load())
        await self._load_task
        return self.snapshot()

    async def _load(self) -> None:
        try:
            raw_properties = await self.peer.fetch_properties()
        except _READ_ERRORS as e:
            logger.error(f"Failed to load properties from chain: {e}")
            raise ChainUnavailableException(str(e)) from e

        self._records = {raw.product_id: PropertyRecord.from_chain(raw) for raw in raw_properties}
        self._loaded = True
        logger.info(f"Property cache filled with {len(self._records)} properties")
        self._changed()

    def get(self, property_id: int) -> Optional[PropertyRecord]:
        return self._records.get(property_id)

    def snapshot(self) -> dict[int, PropertyRecord]:
        return dict(self._records)

    async def resolve(self, property_id: int) -> PropertyRecord:
        """
        Cached record, or fetch and populate on a miss.

        Raises:
            PropertyNotFoundException: chain has no such property
            ChainUnavailableException: lookup failed
        """
        cached = self._records.get(property_id)
        if cached is not None:
            return cached
        return await self._fetch(property_id)

    async def refresh(self, property_id: int) -> PropertyRecord:
        """
        Re-read a property from the chain and update owner, price and listing.

        Raises:
            PropertyNotFoundException: chain has no such property (entry dropped)
            ChainUnavailableException: lookup failed (entry left as is)
        """
        return await self._fetch(property_id)

    async def _fetch(self, property_id: int) -> PropertyRecord:
        try:
            raw = await self.peer.fetch_property(property_id)
        except _READ_ERRORS as e:
            logger.error(f"Failed to fetch property {property_id} from chain: {e}")
            raise ChainUnavailableException(str(e)) from e

        if raw is None:
            self.invalidate(property_id)
            raise PropertyNotFoundException(property_id)

        existing = self._records.get(property_id)
        record = existing.with_chain_state(raw) if existing else PropertyRecord.from_chain(raw)
        self._records[property_id] = record
        self._changed()
        return record

    def invalidate(self, property_id: int) -> None:
        """Drop one entry so that the next lookup refetches it."""
        if self._records.pop(property_id, None) is not None:
            logger.debug(f"Property {property_id} invalidated")
            self._changed()

    async def top_up(self, property_ids: Iterable[int]) -> set[int]:
        """
        Fetch properties missing from the cache with one enumeration.

        Failures are logged; the view keeps its fallback titles.

        Returns:
            Ids that are still missing afterwards
        """
        missing = {pid for pid in property_ids if pid not in self._records}
        if not missing:
            return set()

        try:
            raw_properties = await self.peer.fetch_properties()
        except _READ_ERRORS as e:
            logger.warning(f"Property top-up for {sorted(missing)} failed: {e}")
            return missing

        added = 0
        for raw in raw_properties:
            if raw.product_id in missing and raw.product_id not in self._records:
                self._records[raw.product_id] = PropertyRecord.from_chain(raw)
                added += 1
        if added:
            self._changed()

        still_missing = {pid for pid in missing if pid not in self._records}
        if still_missing:
            logger.warning(f"Properties not found on chain: {sorted(still_missing)}")
        return still_missing

    def clear(self) -> None:
        self._records.clear()
        self._loaded = False
        self._changed()
