"""
Status and health check endpoints.

WHAT: Health monitoring for the chain node and database
WHY: Quick diagnostics for frontend and ops
HOW: FastAPI endpoints calling chain peer ping and DB ping
"""

from fastapi import APIRouter, Depends

from ...deps import get_peer
from ....chain import ChainPeer
from ....core.database import ping_database
from ....core.config import settings
from ....models.api_schemas import ComponentStatus, StatusResponse
from ....utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.get("/status", response_model=StatusResponse)
async def service_status(peer: ChainPeer = Depends(get_peer)):
    """
    Check chain node and database status.

    WHAT: Get health status of the chain peer and database
    WHY: Frontend can check before starting a purchase
    HOW: Call peer.ping() and database.ping_database()
    """
    try:
        chain_status = await peer.ping()
        chain = ComponentStatus(
            available=chain_status.available,
            error=chain_status.error,
            details={
                "rpc_url": chain_status.rpc_url,
                "chain_id": chain_status.chain_id,
                "property_count": chain_status.property_count,
            }
        )
    except Exception as e:
        logger.error(f"Failed to get chain status: {e}")
        chain = ComponentStatus(available=False, error=str(e))

    db_status = ping_database()
    database = ComponentStatus(
        available=db_status["available"],
        error=db_status["error"],
        details={"url": db_status["url"]}
    )

    healthy = chain.available and database.available
    return StatusResponse(
        status="healthy" if healthy else "degraded",
        version=settings.APP_VERSION,
        app_name=settings.APP_NAME,
        database=database,
        chain=chain,
        price_policy=settings.SETTLEMENT_PRICE_POLICY
    )
