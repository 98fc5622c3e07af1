"""
Purchase endpoints.

WHAT: Run, verify and reconcile property purchases
WHY: The buyer settles an accepted offer on chain
HOW: PurchaseOrchestrator outcome mapped to 200 (success), 202 (needs
     verification) or the error's status code
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from .threads import load_participant_thread
from ...deps import get_store, get_wallet, get_purchase_orchestrator
from ....core.negotiation_store import NegotiationStore
from ....models.api_schemas import PurchaseResponse
from ....models.results import PurchaseOutcome
from ....services.purchase_orchestrator import PurchaseOrchestrator
from ....utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


def outcome_response(outcome: PurchaseOutcome):
    """
    Successful outcomes (including an unreconciled thread) are 200, ambiguous
    ones 202; anything else raises the carried error.
    """
    body = PurchaseResponse.from_outcome(outcome)
    if outcome.succeeded:
        return body
    if outcome.needs_verification:
        return JSONResponse(status_code=202, content=body.model_dump(mode="json"))
    raise outcome.error


@router.post("/threads/{thread_id}/purchase", response_model=PurchaseResponse)
async def proceed_to_purchase(
    thread_id: int,
    wallet: str = Depends(get_wallet),
    store: NegotiationStore = Depends(get_store),
    orchestrator: PurchaseOrchestrator = Depends(get_purchase_orchestrator)
):
    """Purchase the thread's property at the current listing price."""
    thread = load_participant_thread(store, thread_id, wallet)
    logger.info(f"Purchase requested for thread {thread_id} by {wallet}")
    return outcome_response(await orchestrator.proceed_to_purchase(thread, wallet))


@router.post("/threads/{thread_id}/purchase/verify", response_model=PurchaseResponse)
async def verify_purchase(
    thread_id: int,
    wallet: str = Depends(get_wallet),
    store: NegotiationStore = Depends(get_store),
    orchestrator: PurchaseOrchestrator = Depends(get_purchase_orchestrator)
):
    """Re-check an ambiguous purchase without resubmitting it."""
    thread = load_participant_thread(store, thread_id, wallet)
    return outcome_response(await orchestrator.verify_transaction(thread))


@router.post("/threads/{thread_id}/purchase/retry-closure", response_model=PurchaseResponse)
async def retry_thread_closure(
    thread_id: int,
    wallet: str = Depends(get_wallet),
    store: NegotiationStore = Depends(get_store),
    orchestrator: PurchaseOrchestrator = Depends(get_purchase_orchestrator)
):
    """Close a thread whose purchase settled on chain but whose closure failed."""
    thread = load_participant_thread(store, thread_id, wallet)
    return outcome_response(await orchestrator.retry_thread_closure(thread))
