"""
SSE streaming endpoint.

WHAT: Server-Sent Events relay of the change stream
WHY: Clients receive counterparty messages, offer resolutions and closures live
HOW: EventSourceResponse over a participant-filtered ChangeStream subscription
"""

import json
from datetime import datetime
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Header, Query
from sse_starlette.sse import EventSourceResponse

from ...deps import get_stream, parse_wallet
from ....core.change_stream import ChangeStream, Subscription
from ....core.config import settings
from ....utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


async def change_event_generator(subscription: Subscription) -> AsyncIterator[dict]:
    """
    Generate SSE events for one wallet.

    Yields:
        SSE event dicts: "connected" once, then one "change" per event
    """
    yield {
        "event": "connected",
        "data": json.dumps({
            "type": "connected",
            "wallet": subscription.wallet,
            "timestamp": datetime.now().isoformat()
        })
    }

    try:
        async for event in subscription:
            yield {
                "event": "change",
                "data": json.dumps(event.to_payload())
            }
    finally:
        subscription.close()
        logger.info(f"SSE stream ended for {subscription.wallet}")


@router.get("/stream")
async def stream_changes(
    wallet: Optional[str] = Query(None, description="Wallet address (EventSource cannot set headers)"),
    x_wallet_address: Optional[str] = Header(None),
    stream: ChangeStream = Depends(get_stream)
):
    """
    Stream change events for threads where the wallet participates.

    Returns:
        EventSourceResponse with heartbeat pings
    """
    acting = parse_wallet(x_wallet_address or wallet)
    subscription = stream.subscribe(wallet=acting)
    logger.info(f"SSE stream requested for {acting}")

    return EventSourceResponse(
        change_event_generator(subscription),
        ping=settings.SSE_HEARTBEAT_INTERVAL,
        media_type="text/event-stream"
    )
