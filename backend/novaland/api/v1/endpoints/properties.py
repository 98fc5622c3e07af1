"""
Property endpoints.

WHAT: Cached on-chain property listings
WHY: Clients show titles and the settlement price next to offers
HOW: PropertyCache lookup, fetching from chain on a miss
"""

from fastapi import APIRouter, Depends, Query

from ...deps import get_property_cache
from ....models.api_schemas import PropertyResponse
from ....services.property_cache import PropertyCache

router = APIRouter()


@router.get("/properties/{property_id}", response_model=PropertyResponse)
async def get_property(
    property_id: int,
    refresh: bool = Query(False, description="Re-read from chain instead of using the cache"),
    cache: PropertyCache = Depends(get_property_cache)
):
    """Last known listing data of a property."""
    if refresh:
        record = await cache.refresh(property_id)
    else:
        record = await cache.resolve(property_id)
    return PropertyResponse.from_record(record)
