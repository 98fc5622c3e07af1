"""
Chain peer factory with singleton pattern.

WHAT: Factory to get the configured chain peer
WHY: Centralize peer construction and avoid multiple web3 clients
HOW: Build Web3ChainPeer from settings on first use, cache singleton
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .peer import ChainPeer

# Singleton instance
_peer_instance: "ChainPeer | None" = None


def get_chain_peer() -> "ChainPeer":
    """
    Get the configured chain peer singleton.

    Returns:
        ChainPeer bound to settings.CHAIN_RPC_URL and the marketplace contract
    """
    global _peer_instance

    if _peer_instance is None:
        # Import here to avoid loading web3 at package import time
        from ..core.config import settings
        from ..utils.logger import get_logger
        from .web3_peer import Web3ChainPeer

        logger = get_logger(__name__)
        _peer_instance = Web3ChainPeer()
        logger.info(
            f"Chain peer initialized: {settings.CHAIN_RPC_URL} "
            f"(contract {settings.MARKETPLACE_CONTRACT_ADDRESS})"
        )

    return _peer_instance


def set_chain_peer(peer: "ChainPeer") -> None:
    """Install a specific peer (used by tests and embedding applications)."""
    global _peer_instance
    _peer_instance = peer


def reset_chain_peer() -> None:
    """Reset the peer singleton (useful for testing)."""
    global _peer_instance
    _peer_instance = None
