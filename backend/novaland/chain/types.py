"""
Chain peer types, dataclasses, and exceptions.

WHAT: Standard type definitions for marketplace contract interactions
WHY: Ensure consistent contracts across chain peer implementations
HOW: Dataclasses for structs/handles/receipts, custom exceptions for errors
"""

from dataclasses import dataclass, field


@dataclass
class OnChainProperty:
    """Raw property struct as returned by FetchProperties (price in wei)."""
    product_id: int
    owner: str
    price_wei: int
    is_listed: bool
    title: str = ""
    category: str = ""
    images: list[str] = field(default_factory=list)
    location: list[str] = field(default_factory=list)
    documents: list[str] = field(default_factory=list)
    description: str = ""
    nft_id: str = ""


@dataclass
class TxHandle:
    """A submitted transaction awaiting confirmation."""
    tx_hash: str
    property_id: int
    buyer: str
    value_wei: int


@dataclass
class TxReceipt:
    """Mined transaction outcome."""
    tx_hash: str
    status: int  # 1 success, 0 reverted
    block_number: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass
class ChainStatus:
    """Health status of the chain peer."""
    available: bool
    rpc_url: str
    chain_id: int | None = None
    property_count: int | None = None
    error: str | None = None


# Chain peer exceptions
class ChainUnavailableError(Exception):
    """Node is not reachable or a read call failed."""
    pass


class ChainTimeoutError(Exception):
    """Request or confirmation wait timed out."""
    pass


class TransactionRejectedError(Exception):
    """Node or contract refused the transaction before it was submitted."""
    pass


class ChainResponseError(Exception):
    """Node returned a response that could not be decoded."""
    pass
