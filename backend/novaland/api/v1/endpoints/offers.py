"""
Offer endpoints.

WHAT: Submit, accept and reject offers
WHY: Expose the offer state machine to marketplace clients
HOW: Thin wrappers that raise the carried business error on failure
"""

from fastapi import APIRouter, Depends, status

from .threads import load_participant_thread
from ...deps import get_store, get_wallet, get_offer_state_machine
from ....core.negotiation_store import NegotiationStore
from ....models.api_schemas import MessageResponse, SubmitOfferRequest
from ....models.results import OperationResult
from ....services.offer_state_machine import OfferStateMachine

router = APIRouter()


def unwrap(result: OperationResult) -> MessageResponse:
    if not result.ok:
        raise result.error
    return MessageResponse.from_record(result.value)


@router.post(
    "/threads/{thread_id}/offers",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED
)
async def submit_offer(
    thread_id: int,
    request: SubmitOfferRequest,
    wallet: str = Depends(get_wallet),
    store: NegotiationStore = Depends(get_store),
    offers: OfferStateMachine = Depends(get_offer_state_machine)
):
    """Submit an offer as the thread's buyer."""
    thread = load_participant_thread(store, thread_id, wallet)
    return unwrap(offers.submit_offer(thread, wallet, request.price, request.note, client_id=request.client_id))


@router.post("/threads/{thread_id}/offers/{offer_id}/accept", response_model=MessageResponse)
async def accept_offer(
    thread_id: int,
    offer_id: int,
    wallet: str = Depends(get_wallet),
    store: NegotiationStore = Depends(get_store),
    offers: OfferStateMachine = Depends(get_offer_state_machine)
):
    """Accept a pending offer as the thread's seller."""
    thread = load_participant_thread(store, thread_id, wallet)
    offer = store.get_message(offer_id)
    return unwrap(offers.accept_offer(thread, offer, wallet))


@router.post("/threads/{thread_id}/offers/{offer_id}/reject", response_model=MessageResponse)
async def reject_offer(
    thread_id: int,
    offer_id: int,
    wallet: str = Depends(get_wallet),
    store: NegotiationStore = Depends(get_store),
    offers: OfferStateMachine = Depends(get_offer_state_machine)
):
    """Reject a pending offer as the thread's seller."""
    thread = load_participant_thread(store, thread_id, wallet)
    return unwrap(offers.reject_offer(thread, offer_id, wallet))
