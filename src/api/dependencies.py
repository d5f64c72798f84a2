"""FastAPI dependencies for injection."""
import httpx
from fastapi import Depends, HTTPException, Request, status

from core import query_cache
from core.config import Settings, get_settings
from core.query_cache import QueryCache, QueryCacheRegistry
from schemas.session import DelegatedSession, LocalSession
from services import api_client
from services.job_gateway import JobGateway
from services.job_mutations import JobMutations
from services.session_store import SessionStore


def get_http_client() -> httpx.AsyncClient:
    """Get the shared upstream HTTP client."""
    return api_client.get_http_client()


def get_query_caches() -> QueryCacheRegistry:
    """Get the process-wide registry of per-session query caches."""
    return query_cache.get_query_caches()


def get_session_store(
    settings: Settings = Depends(get_settings),
    http_client: httpx.AsyncClient = Depends(get_http_client),
    caches: QueryCacheRegistry = Depends(get_query_caches),
) -> SessionStore:
    """Build the session store for this request."""
    return SessionStore(settings, http_client, caches)


def get_current_session(
    request: Request,
    store: SessionStore = Depends(get_session_store),
) -> LocalSession | DelegatedSession:
    """Dependency that returns the current session, or 401 if there is none."""
    session = store.current_session(request.cookies)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return session


def get_query_cache(
    session: LocalSession | DelegatedSession = Depends(get_current_session),
    caches: QueryCacheRegistry = Depends(get_query_caches),
) -> QueryCache:
    """Get the query cache owned by the current session."""
    return caches.for_session(session)


def get_job_gateway(
    settings: Settings = Depends(get_settings),
    http_client: httpx.AsyncClient = Depends(get_http_client),
    cache: QueryCache = Depends(get_query_cache),
) -> JobGateway:
    """Build the job gateway for this request."""
    return JobGateway(http_client, cache, settings)


def get_job_mutations(
    settings: Settings = Depends(get_settings),
    http_client: httpx.AsyncClient = Depends(get_http_client),
    cache: QueryCache = Depends(get_query_cache),
) -> JobMutations:
    """Build the job mutation pipeline for this request."""
    return JobMutations(http_client, cache, settings)


__all__ = [
    "get_current_session",
    "get_http_client",
    "get_job_gateway",
    "get_job_mutations",
    "get_query_cache",
    "get_query_caches",
    "get_session_store",
    "get_settings",
]
