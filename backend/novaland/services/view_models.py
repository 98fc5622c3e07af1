"""
Thread list view models.

WHAT: ThreadDisplay rows derived from threads, cached properties and names
WHY: Property titles depend on the cache and the cache is refilled in the
     background; a pure function keeps the dependency one-directional
HOW: Recompute from inputs on every cache version change, report missing ids
"""

from typing import Iterable, Mapping, Optional

from ..models.chat import ThreadRecord, ThreadDisplay
from ..models.property import PropertyRecord
from .identity_resolver import short_address

LOADING_TITLE = "Loading Property Info..."
MISSING_TITLE = "Unknown Property (Re-fetching...)"


def property_title(record: Optional[PropertyRecord], loading: bool) -> str:
    if record is not None:
        return record.title or "Unnamed Property"
    return LOADING_TITLE if loading else MISSING_TITLE


def build_thread_views(
    threads: Iterable[ThreadRecord],
    properties: Mapping[int, PropertyRecord],
    names: Mapping[str, str],
    wallet: str,
    active_thread_id: Optional[int] = None,
    unread: Iterable[int] = (),
    loading: bool = False
) -> tuple[list[ThreadDisplay], set[int]]:
    """
    Build display rows for the conversation list.

    Returns:
        (rows, property ids missing from the cache)
    """
    unread_ids = set(unread)
    rows = []
    missing: set[int] = set()

    for thread in threads:
        record = properties.get(thread.property_id)
        if record is None and not loading:
            missing.add(thread.property_id)
        counterparty = thread.counterparty(wallet)
        rows.append(ThreadDisplay(
            thread_id=thread.id,
            property_id=thread.property_id,
            property_title=property_title(record, loading),
            counterparty_wallet=counterparty,
            counterparty_name=names.get(counterparty) or short_address(counterparty),
            status=thread.status,
            is_active=thread.id == active_thread_id,
            is_unread=thread.id in unread_ids and thread.id != active_thread_id,
        ))

    return rows, missing
