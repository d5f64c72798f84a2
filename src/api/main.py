"""FastAPI application entry point."""
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from api.routers import auth, health, scheduled_jobs
from core.config import get_settings
from core.query_cache import QueryCacheRegistry, set_query_caches
from services.api_client import create_http_client, set_http_client
from services.exceptions import (
    DashboardError,
    FetchFailedError,
    InvalidCredentialsError,
    MalformedUpstreamResponseError,
    NetworkFailureError,
    RemoteRejectedError,
    UnauthorizedError,
    ValidationError,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None]:
    """Manage application lifespan - startup and shutdown."""
    app_settings = get_settings()
    logging.basicConfig(
        level=app_settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Startup: shared upstream client and per-session query caches
    http_client = create_http_client(app_settings)
    set_http_client(http_client)
    set_query_caches(QueryCacheRegistry.from_settings(app_settings))
    logger.info("Dashboard API started app_env=%s", app_settings.app_env)

    yield

    # Shutdown: drop the caches and close the upstream client
    set_query_caches(None)
    await http_client.aclose()
    set_http_client(None)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        """Process request and add security headers to response."""
        response = await call_next(request)
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Responses carry session-scoped job data
        response.headers["Cache-Control"] = "no-store"
        # HSTS only where session cookies are Secure
        if get_settings().cookie_secure:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response


app_settings = get_settings()

app = FastAPI(
    title="Scheduled Jobs Dashboard API",
    description="Session-authenticated access to NAVI and CVER scheduled jobs.",
    version="0.1.0",
    lifespan=lifespan,
)


def _error_status(exc: DashboardError) -> int:  # noqa: PLR0911
    """Map a service error to the HTTP status returned to the dashboard."""
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, (UnauthorizedError, InvalidCredentialsError)):
        return 401
    if isinstance(exc, (FetchFailedError, RemoteRejectedError)):
        if exc.status_code == 401:
            return 401
        # Upstream 4xx business errors keep their status; upstream 5xx become 502
        return exc.status_code if 400 <= exc.status_code < 500 else 502
    if isinstance(exc, MalformedUpstreamResponseError):
        return 502
    if isinstance(exc, NetworkFailureError):
        return 503
    return 500


@app.exception_handler(DashboardError)
async def dashboard_error_handler(_request: Request, exc: DashboardError) -> JSONResponse:
    """Translate service errors into JSON responses the dashboard can show inline."""
    status_code = _error_status(exc)
    content: dict = {"detail": exc.message, "error": type(exc).__name__}
    if isinstance(exc, (FetchFailedError, RemoteRejectedError)):
        content["upstream_status"] = exc.status_code
    if status_code >= 500:
        logger.warning("request_failed error=%s detail=%s", type(exc).__name__, exc.message)
    return JSONResponse(status_code=status_code, content=content)


# Security headers middleware (runs after CORS, adds headers to responses)
app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=app_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(auth.router)
app.include_router(scheduled_jobs.router)
