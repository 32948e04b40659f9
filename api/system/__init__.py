"""System health endpoints."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from cache import CacheClient
from ..deps import get_cache, get_store

logger = logging.getLogger(__name__)

SERVICE_NAME = "storefront"

# Create router
router = APIRouter(
    prefix="/api",
    tags=["System"]
)

class SystemHealth(BaseModel):
    """Model for system health data."""
    status: str
    service: str
    timestamp: datetime
    database_status: str
    cache_status: str

async def _database_status(store) -> str:
    try:
        return "connected" if await store.ping() else "unavailable"
    except Exception as e:
        logger.warning(f"Health check could not reach the database: {e}")
        return "unavailable"

async def _cache_status(cache: CacheClient) -> str:
    if not cache.enabled:
        return "disabled"
    return "connected" if await cache.ping() else "unavailable"

@router.get("/health")
async def get_system_health(
    store=Depends(get_store),
    cache: CacheClient = Depends(get_cache)
) -> SystemHealth:
    """Get system health status.

    The cache is optional, so only an unreachable database degrades the status.

    Returns:
        SystemHealth object with store and cache reachability
    """
    database_status = await _database_status(store)
    cache_status = await _cache_status(cache)

    return SystemHealth(
        status="ok" if database_status == "connected" else "degraded",
        service=SERVICE_NAME,
        timestamp=datetime.now(timezone.utc),
        database_status=database_status,
        cache_status=cache_status
    )
