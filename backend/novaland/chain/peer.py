"""
Chain peer protocol definition.

WHAT: Abstract interface for the marketplace contract peer
WHY: Decouple orchestration from web3 and allow test doubles
HOW: Use Protocol to define async read, submit and confirm methods
"""

from typing import Protocol
from .types import ChainStatus, OnChainProperty, TxHandle, TxReceipt


class ChainPeer(Protocol):
    """Protocol defining the interface all chain peers must implement."""

    async def ping(self) -> ChainStatus:
        """Check node health and contract reachability."""
        ...

    async def fetch_properties(self) -> list[OnChainProperty]:
        """Enumerate every property the contract knows about."""
        ...

    async def fetch_property(self, property_id: int) -> OnChainProperty | None:
        """Describe one property, or None if the contract has no such id."""
        ...

    async def has_pending_transactions(self, address: str) -> bool:
        """Whether the account has sent transactions that are not mined yet."""
        ...

    async def submit_purchase(
        self,
        property_id: int,
        buyer: str,
        *,
        value_wei: int
    ) -> TxHandle:
        """Send PurchaseProperty with the attached payment; returns once submitted."""
        ...

    async def wait_for_confirmation(
        self,
        handle: TxHandle,
        *,
        timeout: float
    ) -> TxReceipt:
        """Wait for the transaction to be mined."""
        ...
