"""Login, Casso SSO, session introspection and logout endpoints."""
import logging

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from api.dependencies import get_session_store, get_settings
from core.config import Settings
from schemas.session import AuthResult, CassoLoginRequest, LoginRequest, UserResponse
from services.exceptions import (
    ConfigurationError,
    DashboardError,
    InvalidCredentialsError,
    MalformedUpstreamResponseError,
    NetworkFailureError,
    ValidationError,
)
from services.session_store import SessionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

# Login failures are reported inline to the form, so they keep the AuthResult shape
_FAILURE_STATUS: dict[type[DashboardError], int] = {
    ValidationError: 400,
    InvalidCredentialsError: 401,
    ConfigurationError: 500,
    MalformedUpstreamResponseError: 502,
    NetworkFailureError: 503,
}


def _failure(error: DashboardError, settings: Settings) -> JSONResponse:
    """Build a `{success: false}` response, pointing non-local users at the SSO portal."""
    redirect_url = None
    if not settings.is_local and isinstance(error, (ConfigurationError, InvalidCredentialsError)):
        redirect_url = settings.sso_portal_url or None
    result = AuthResult(success=False, error=error.message, redirect_url=redirect_url)
    return JSONResponse(
        status_code=_FAILURE_STATUS.get(type(error), 500),
        content=result.model_dump(),
    )


@router.post("/login", response_model=AuthResult)
async def login(
    data: LoginRequest,
    response: Response,
    store: SessionStore = Depends(get_session_store),
    settings: Settings = Depends(get_settings),
) -> AuthResult | JSONResponse:
    """
    Log in with username and password.

    In local mode any non-empty pair is accepted and an admin session is issued.
    Elsewhere the upstream login endpoint decides.
    """
    try:
        session = await store.exchange_credentials(response, data.username, data.password)
    except DashboardError as e:
        logger.info("login_failed error=%s", type(e).__name__)
        return _failure(e, settings)
    return AuthResult(success=True, user=UserResponse.from_session(session), redirect_url="/")


@router.post("/casso", response_model=AuthResult)
async def login_casso(
    data: CassoLoginRequest,
    response: Response,
    store: SessionStore = Depends(get_session_store),
    settings: Settings = Depends(get_settings),
) -> AuthResult | JSONResponse:
    """Exchange a Casso SSO token for a session."""
    try:
        session = await store.exchange_delegated_token(
            response, data.employee_id, data.casso_token,
        )
    except DashboardError as e:
        logger.info("casso_login_failed error=%s", type(e).__name__)
        return _failure(e, settings)
    return AuthResult(success=True, user=UserResponse.from_session(session), redirect_url="/")


@router.get("/casso/callback")
async def casso_callback(
    employee_id: str = Query(default="", alias="employee-id"),
    casso_token: str = Query(default="", alias="casso-token"),
    store: SessionStore = Depends(get_session_store),
) -> RedirectResponse:
    """
    Landing point for the Casso portal redirect.

    Exchanges the token and sends the browser to the dashboard, or back to the
    login page with an error code when the exchange fails.
    """
    redirect = RedirectResponse(url="/", status_code=303)
    try:
        await store.exchange_delegated_token(redirect, employee_id, casso_token)
    except DashboardError as e:
        logger.info("casso_callback_failed error=%s", type(e).__name__)
        return RedirectResponse(url="/login?error=casso", status_code=303)
    return redirect


@router.get("/user", response_model=None)
async def get_user(
    request: Request,
    store: SessionStore = Depends(get_session_store),
) -> dict | JSONResponse:
    """Return the identity of the current session, or 401 if there is none."""
    session = store.current_session(request.cookies)
    if session is None:
        return JSONResponse(
            status_code=401,
            content={"success": False, "error": "Not authenticated"},
        )
    return {"success": True, "user": UserResponse.from_session(session).model_dump()}


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    store: SessionStore = Depends(get_session_store),
) -> dict:
    """End the session and drop its query cache. Succeeds even without a session."""
    store.end_session(response, request.cookies)
    return {"success": True}
