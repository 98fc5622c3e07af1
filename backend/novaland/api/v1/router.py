"""
API v1 router aggregation.

WHAT: Mount every v1 endpoint module under /api/v1
WHY: main.py includes a single router
HOW: One include per endpoint module, tagged by resource
"""

from fastapi import APIRouter

from .endpoints import offers, properties, purchase, status, streaming, threads

API_PREFIX = "/api/v1"

api_router = APIRouter()

for module, tag in (
    (status, "status"),
    (threads, "threads"),
    (offers, "offers"),
    (purchase, "purchase"),
    (properties, "properties"),
    (streaming, "streaming"),
):
    api_router.include_router(module.router, prefix=API_PREFIX, tags=[tag])
