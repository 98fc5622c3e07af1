"""
FastAPI application entry point.

WHAT: App wiring for the negotiation and purchase API
WHY: One place where the store, change stream, chain peer and routes meet
HOW: Lifespan creates tables and warms the property cache; shutdown ends
     open change streams before the chain peer and engine are released
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.deps import get_property_cache, reset_dependencies
from .api.v1.router import api_router
from .chain import get_chain_peer, reset_chain_peer
from .core.change_stream import change_stream
from .core.config import settings
from .core.database import init_db, close_db
from .middleware.error_handler import register_exception_handlers
from .utils.exceptions import BusinessException
from .utils.logger import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)


async def warm_property_cache() -> None:
    """Bulk-load listings so that the first thread list has titles."""
    peer = get_chain_peer()
    status = await peer.ping()
    if not status.available:
        logger.warning(f"Chain node unavailable at startup: {status.error}")
        return
    logger.info(f"Chain {status.chain_id} reachable, {status.property_count} properties on contract")
    try:
        await get_property_cache(peer).load_all()
    except BusinessException as e:
        # Lookups fall back to per-property fetches
        logger.warning(f"Property preload failed: {e.message}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    init_db()
    logger.info(
        f"Chain peer: {settings.CHAIN_RPC_URL}, contract {settings.MARKETPLACE_CONTRACT_ADDRESS}, "
        f"settlement price policy: {settings.SETTLEMENT_PRICE_POLICY}"
    )
    if settings.PRELOAD_PROPERTIES:
        await warm_property_cache()

    yield

    closed = change_stream.close_all()
    logger.info(f"Shutting down, closed {closed} change stream subscription(s)")
    reset_dependencies()
    reset_chain_peer()
    close_db()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)
app.include_router(api_router)


@app.get("/")
async def root():
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "contract": settings.MARKETPLACE_CONTRACT_ADDRESS
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "novaland.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
