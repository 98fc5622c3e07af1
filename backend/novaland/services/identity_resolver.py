"""
Identity resolver.

WHAT: Wallet address to display name mapping
WHY: Conversation lists show counterparty names
HOW: Batched directory lookup, memoized, truncated-address fallback label
"""

from typing import Iterable, Optional

from ..core.negotiation_store import NegotiationStore, negotiation_store, normalize_wallet
from ..utils.exceptions import StoreUnavailableException
from ..utils.logger import get_logger

logger = get_logger(__name__)


def short_address(address: str) -> str:
    """Deterministic fallback label, e.g. 0x1234...abcd."""
    if not address:
        return "Unknown User"
    if len(address) <= 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


class IdentityResolver:
    """Memoizing display-name lookup over the user directory."""

    def __init__(self, store: Optional[NegotiationStore] = None):
        self._store = store or negotiation_store
        self._names: dict[str, str] = {}

    def resolve_many(self, addresses: Iterable[str]) -> dict[str, str]:
        """
        Names for every address, looking up only the unresolved ones.

        A directory failure yields fallback labels that are not memoized,
        so the next call retries the lookup.
        """
        wanted = [normalize_wallet(a) for a in addresses if a]
        unresolved = sorted({a for a in wanted if a not in self._names})

        if unresolved:
            try:
                found = self._store.lookup_names(unresolved)
            except StoreUnavailableException as e:
                logger.warning(f"Identity lookup failed for {len(unresolved)} address(es): {e.message}")
                return {a: self._names.get(a) or short_address(a) for a in wanted}

            for address in unresolved:
                self._names[address] = found.get(address) or short_address(address)

        return {a: self._names[a] for a in wanted}

    def resolve(self, address: str) -> str:
        if not address:
            return short_address(address)
        return self.resolve_many([address])[normalize_wallet(address)]

    def forget(self, address: Optional[str] = None) -> None:
        """Drop one memoized name, or all of them."""
        if address is None:
            self._names.clear()
        else:
            self._names.pop(normalize_wallet(address), None)
