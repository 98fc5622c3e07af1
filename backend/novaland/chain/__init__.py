"""Marketplace contract peer layer."""

from .types import (
    OnChainProperty,
    TxHandle,
    TxReceipt,
    ChainStatus,
    ChainUnavailableError,
    ChainTimeoutError,
    TransactionRejectedError,
    ChainResponseError,
)
from .peer import ChainPeer
from .peer_factory import get_chain_peer, set_chain_peer, reset_chain_peer

__all__ = [
    "OnChainProperty",
    "TxHandle",
    "TxReceipt",
    "ChainStatus",
    "ChainUnavailableError",
    "ChainTimeoutError",
    "TransactionRejectedError",
    "ChainResponseError",
    "ChainPeer",
    "get_chain_peer",
    "set_chain_peer",
    "reset_chain_peer",
]
