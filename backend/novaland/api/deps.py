"""
FastAPI dependencies.

WHAT: Shared service instances and the acting wallet
WHY: Endpoints stay thin and tests swap collaborators via dependency_overrides
HOW: Lazily created module singletons, header-based wallet extraction
"""

from typing import Optional

from fastapi import Depends, Header

from ..chain import ChainPeer, get_chain_peer
from ..core.change_stream import ChangeStream, change_stream
from ..core.negotiation_store import NegotiationStore, negotiation_store
from ..models.api_schemas import validate_wallet
from ..services.identity_resolver import IdentityResolver
from ..services.offer_state_machine import OfferStateMachine
from ..services.property_cache import PropertyCache
from ..services.purchase_orchestrator import PurchaseOrchestrator
from ..utils.exceptions import ValidationException

_property_cache: Optional[PropertyCache] = None
_identity_resolver: Optional[IdentityResolver] = None
_orchestrator: Optional[PurchaseOrchestrator] = None


def get_store() -> NegotiationStore:
    return negotiation_store


def get_stream() -> ChangeStream:
    return change_stream


def get_peer() -> ChainPeer:
    return get_chain_peer()


def get_property_cache(peer: ChainPeer = Depends(get_peer)) -> PropertyCache:
    global _property_cache
    if _property_cache is None:
        _property_cache = PropertyCache(peer)
    return _property_cache


def get_identity_resolver(store: NegotiationStore = Depends(get_store)) -> IdentityResolver:
    global _identity_resolver
    if _identity_resolver is None:
        _identity_resolver = IdentityResolver(store)
    return _identity_resolver


def get_offer_state_machine(store: NegotiationStore = Depends(get_store)) -> OfferStateMachine:
    return OfferStateMachine(store)


def get_purchase_orchestrator(
    store: NegotiationStore = Depends(get_store),
    cache: PropertyCache = Depends(get_property_cache),
    peer: ChainPeer = Depends(get_peer)
) -> PurchaseOrchestrator:
    # One instance per process so the single-flight guard spans requests
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = PurchaseOrchestrator(store, cache, peer)
    return _orchestrator


def parse_wallet(value: Optional[str]) -> str:
    """
    Raises:
        ValidationException: missing or malformed address
    """
    if not value:
        raise ValidationException("X-Wallet-Address header is required")
    try:
        return validate_wallet(value)
    except ValueError as e:
        raise ValidationException(str(e)) from e


def get_wallet(x_wallet_address: Optional[str] = Header(None)) -> str:
    """Acting wallet from the X-Wallet-Address header."""
    return parse_wallet(x_wallet_address)


def reset_dependencies() -> None:
    """Drop cached service instances (useful for testing)."""
    global _property_cache, _identity_resolver, _orchestrator
    _property_cache = None
    _identity_resolver = None
    _orchestrator = None
