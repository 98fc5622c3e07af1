"""
Thread and message endpoints.

WHAT: Conversations, chat messages and read markers
WHY: Buyers open conversations about a property; both parties chat in them
HOW: FastAPI router over NegotiationStore with participant checks
"""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, status

from ...deps import (
    get_store,
    get_wallet,
    get_property_cache,
    get_identity_resolver,
    get_purchase_orchestrator,
)
from ....core.negotiation_store import NegotiationStore
from ....models.api_schemas import (
    CreateThreadRequest,
    ThreadResponse,
    ThreadListResponse,
    ThreadDetailResponse,
    MessageResponse,
    MessageListResponse,
    SendMessageRequest,
    ReadResponse,
)
from ....models.chat import ThreadRecord
from ....services.identity_resolver import IdentityResolver
from ....services.offer_state_machine import derive_offer_state
from ....services.property_cache import PropertyCache
from ....services.purchase_orchestrator import PurchaseOrchestrator
from ....services.view_models import property_title
from ....utils.exceptions import ThreadNotFoundException
from ....utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


def load_participant_thread(store: NegotiationStore, thread_id: int, wallet: str) -> ThreadRecord:
    """
    Thread the wallet participates in.

    Raises:
        ThreadNotFoundException: unknown thread, or the wallet is not a participant
    """
    thread = store.get_thread(thread_id)
    if wallet not in thread.participants():
        logger.warning(f"Wallet {wallet} requested thread {thread_id} without participating")
        raise ThreadNotFoundException(thread_id)
    return thread


@router.post("/threads", response_model=ThreadResponse, status_code=status.HTTP_201_CREATED)
async def create_thread(
    request: CreateThreadRequest,
    wallet: str = Depends(get_wallet),
    store: NegotiationStore = Depends(get_store)
):
    """
    Open a conversation with a seller about a property.

    Returns the existing open conversation for the same buyer, seller and property.
    """
    thread = store.create_thread(wallet, request.seller_wallet, request.property_id)
    return ThreadResponse.from_record(thread)


@router.get("/threads", response_model=ThreadListResponse)
async def list_threads(
    role: Optional[Literal["buyer", "seller"]] = Query(None, description="Filter by the caller's role"),
    wallet: str = Depends(get_wallet),
    store: NegotiationStore = Depends(get_store),
    cache: PropertyCache = Depends(get_property_cache),
    identities: IdentityResolver = Depends(get_identity_resolver)
):
    """List conversations where the caller is buyer and/or seller, newest first."""
    threads = store.list_threads(wallet, role=role)
    counts = store.unread_counts(wallet)
    names = identities.resolve_many(t.counterparty(wallet) for t in threads)
    properties = cache.snapshot()

    responses = [
        ThreadResponse.from_record(
            t,
            property_title=property_title(properties.get(t.property_id), cache.loading),
            counterparty_name=names.get(t.counterparty(wallet)),
            unread_count=counts.get(t.id, 0)
        )
        for t in threads
    ]
    return ThreadListResponse(threads=responses, total=len(responses))


@router.get("/threads/{thread_id}", response_model=ThreadDetailResponse)
async def get_thread(
    thread_id: int,
    wallet: str = Depends(get_wallet),
    store: NegotiationStore = Depends(get_store),
    cache: PropertyCache = Depends(get_property_cache),
    identities: IdentityResolver = Depends(get_identity_resolver),
    orchestrator: PurchaseOrchestrator = Depends(get_purchase_orchestrator)
):
    """Conversation details with offer state and purchase phase."""
    thread = load_participant_thread(store, thread_id, wallet)
    offer_state = derive_offer_state(store.list_messages(thread_id))
    counterparty = thread.counterparty(wallet)

    return ThreadDetailResponse(
        **thread.model_dump(),
        property_title=property_title(cache.get(thread.property_id), cache.loading),
        counterparty_name=identities.resolve(counterparty),
        unread_count=store.unread_counts(wallet).get(thread_id, 0),
        has_pending_offer=offer_state.has_pending_offer,
        pending_offer_id=offer_state.pending_offer_id,
        accepted_offer_id=offer_state.accepted_offer_id if thread.is_open else None,
        purchase_phase=orchestrator.phase(thread_id),
        needs_verification=orchestrator.needs_verification(thread_id)
    )


@router.get("/threads/{thread_id}/messages", response_model=MessageListResponse)
async def list_messages(
    thread_id: int,
    wallet: str = Depends(get_wallet),
    store: NegotiationStore = Depends(get_store)
):
    """Messages ordered by creation time."""
    load_participant_thread(store, thread_id, wallet)
    messages = [MessageResponse.from_record(m) for m in store.list_messages(thread_id)]
    return MessageListResponse(messages=messages, total=len(messages))


@router.post(
    "/threads/{thread_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED
)
async def send_message(
    thread_id: int,
    request: SendMessageRequest,
    wallet: str = Depends(get_wallet),
    store: NegotiationStore = Depends(get_store)
):
    """Append a chat message from the caller."""
    load_participant_thread(store, thread_id, wallet)
    record = store.insert_message(thread_id, wallet, request.content, client_id=request.client_id)
    return MessageResponse.from_record(record)


@router.post("/threads/{thread_id}/read", response_model=ReadResponse)
async def mark_read(
    thread_id: int,
    wallet: str = Depends(get_wallet),
    store: NegotiationStore = Depends(get_store)
):
    """Mark the counterparty's messages in the thread as read."""
    load_participant_thread(store, thread_id, wallet)
    updated = store.mark_thread_read(thread_id, wallet)
    return ReadResponse(thread_id=thread_id, updated=updated)
