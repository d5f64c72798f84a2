"""
Session cookie persistence.

A session is stored in two httpOnly cookies that are always written and
cleared together:

- `logged-in`: the literal "true", for cheap presence checks.
- `user-session`: the session identity as an HS256-signed JWT. The signature
  prevents a client from editing its own role; `exp` enforces the 7-day TTL
  even if the browser ignores the cookie's max-age.

A request carrying only one of the two cookies is treated as unauthenticated.
"""
import logging
from collections.abc import Mapping
from datetime import datetime, UTC

import jwt
import pydantic
from starlette.responses import Response

from core.config import Settings
from schemas.session import SESSION_TTL, DelegatedSession, LocalSession, session_adapter

logger = logging.getLogger(__name__)

LOGGED_IN_COOKIE = "logged-in"
SESSION_COOKIE = "user-session"
SESSION_MAX_AGE = int(SESSION_TTL.total_seconds())
JWT_ALGORITHM = "HS256"


def encode_session(session: LocalSession | DelegatedSession, secret: str) -> str:
    """Serialize a session into a signed JWT."""
    payload = {
        "sub": session.subject_id,
        "kind": session.kind,
        "name": session.display_name,
        "username": session.username,
        "role": session.role,
        "iat": session.issued_at,
        "exp": session.expires_at,
    }
    if session.access is not None:
        payload["access"] = session.access
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def decode_session(token: str, secret: str) -> LocalSession | DelegatedSession | None:
    """
    Verify and deserialize a session JWT.

    Returns:
        The session, or None if the token is tampered, expired, or incomplete.
    """
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[JWT_ALGORITHM],
            options={"require": ["sub", "iat", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        logger.info("session_cookie_expired")
        return None
    except jwt.PyJWTError as e:
        logger.warning("session_cookie_invalid error=%s", e)
        return None

    try:
        return session_adapter.validate_python({
            "kind": payload.get("kind"),
            "subject_id": payload.get("sub"),
            "display_name": payload.get("name"),
            "username": payload.get("username"),
            "role": payload.get("role"),
            "access": payload.get("access"),
            "issued_at": datetime.fromtimestamp(payload["iat"], UTC),
        })
    except (pydantic.ValidationError, TypeError, ValueError, OverflowError) as e:
        # Partial identity is treated as no identity
        logger.warning("session_cookie_incomplete error=%s", e)
        return None


def read_session(
    cookies: Mapping[str, str], settings: Settings,
) -> LocalSession | DelegatedSession | None:
    """Read the session from request cookies. Never raises."""
    logged_in = cookies.get(LOGGED_IN_COOKIE)
    token = cookies.get(SESSION_COOKIE)

    if logged_in != "true" or not token:
        if logged_in or token:
            logger.warning(
                "session_cookie_partial logged_in=%s has_session=%s", logged_in, bool(token),
            )
        return None

    return decode_session(token, settings.session_secret_key)


def write_session(
    response: Response,
    session: LocalSession | DelegatedSession,
    settings: Settings,
) -> None:
    """Set both session cookies on the response."""
    cookie_options = {
        "max_age": SESSION_MAX_AGE,
        "path": "/",
        "httponly": True,
        "secure": settings.cookie_secure,
        "samesite": "lax",
    }
    response.set_cookie(LOGGED_IN_COOKIE, "true", **cookie_options)
    response.set_cookie(
        SESSION_COOKIE,
        encode_session(session, settings.session_secret_key),
        **cookie_options,
    )


def clear_session(response: Response, settings: Settings) -> None:
    """Expire both session cookies on the response."""
    for name in (LOGGED_IN_COOKIE, SESSION_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            httponly=True,
            secure=settings.cookie_secure,
            samesite="lax",
        )
