"""Health check endpoints."""
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from api.dependencies import get_query_caches, get_settings
from core.config import Settings
from core.query_cache import QueryCacheRegistry

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    environment: str
    cache_entries: int


@router.get("/health", response_model=HealthResponse)
async def health_check(
    settings: Settings = Depends(get_settings),
    caches: QueryCacheRegistry = Depends(get_query_caches),
) -> HealthResponse:
    """Check application health. Does not require a session."""
    return HealthResponse(
        status="healthy",
        environment=settings.app_env,
        cache_entries=len(caches),
    )
