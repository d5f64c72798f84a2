"""
Session lifecycle: credential and Casso SSO exchange, persistence, teardown.

The execution mode comes from `Settings.app_env` and is resolved once when the
store is built. In local mode credential login succeeds for any non-empty pair
and fabricates an admin session without an upstream credential, so the
dashboard can run without the identity provider. Every other mode talks to the
upstream and never fabricates a session.
"""
import logging
from collections.abc import Mapping
from datetime import datetime, UTC
from typing import Any

import httpx
from starlette.responses import Response

from core import session_cookies
from core.config import Settings
from core.query_cache import QueryCacheRegistry
from schemas.session import DelegatedSession, LocalSession
from shared.api_errors import extract_error_message
from services.exceptions import (
    ConfigurationError,
    InvalidCredentialsError,
    MalformedUpstreamResponseError,
    NetworkFailureError,
    ValidationError,
)

logger = logging.getLogger(__name__)

LOCAL_ROLE = "admin"
LOCAL_SUBJECT_ID = "1"
DEFAULT_ROLE = "user"
CASSO_DISPLAY_NAME = "Casso User"


class SessionStore:
    """Produces, persists, and tears down the authenticated identity."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        query_caches: QueryCacheRegistry,
    ) -> None:
        self._settings = settings
        self._client = http_client
        self._caches = query_caches

    async def exchange_credentials(
        self, response: Response, username: str, password: str,
    ) -> LocalSession | DelegatedSession:
        """
        Log in with a username and password.

        Args:
            response: Response the session cookies are written to on success.
            username: Login name; must be non-empty.
            password: Password; must be non-empty.

        Returns:
            The new session (already persisted).

        Raises:
            ValidationError: If either field is empty.
            ConfigurationError: Outside local mode, if no SSO exchange endpoint is configured.
            InvalidCredentialsError: If the upstream rejects the login or answers without
                a bearer credential.
            NetworkFailureError: If the upstream cannot be reached.
        """
        if not username or not password:
            raise ValidationError("Username and password are required")

        if self._settings.is_local:
            session = LocalSession(
                subject_id=LOCAL_SUBJECT_ID,
                display_name=username,
                username=username,
                role=LOCAL_ROLE,
                issued_at=datetime.now(UTC),
            )
            self.persist(response, session)
            return session

        self._require_sso_endpoint()
        try:
            data = await self._post_exchange(
                self._settings.credential_login_url,
                {"username": username, "password": password},
            )
        except MalformedUpstreamResponseError as e:
            raise InvalidCredentialsError("Invalid credentials") from e

        access = data.get("access")
        if not access:
            raise InvalidCredentialsError("Invalid credentials")

        session = DelegatedSession(
            subject_id=str(data.get("id") or username),
            display_name=data.get("username") or username,
            username=data.get("username") or username,
            role=data.get("role") or DEFAULT_ROLE,
            access=access,
            issued_at=datetime.now(UTC),
        )
        self.persist(response, session)
        return session

    async def exchange_delegated_token(
        self, response: Response, subject_id: str, sso_token: str,
    ) -> LocalSession | DelegatedSession:
        """
        Log in by exchanging a Casso SSO token for an upstream bearer credential.

        The upstream is authoritative for id, username and role; local values are
        only used when the response omits them.

        Raises:
            ValidationError: If either field is empty.
            ConfigurationError: If no SSO exchange endpoint is configured.
            InvalidCredentialsError: If the upstream rejects the token.
            MalformedUpstreamResponseError: If a success response has no bearer credential.
            NetworkFailureError: If the upstream cannot be reached.
        """
        if not subject_id or not sso_token:
            raise ValidationError("Employee ID and Casso token are required")

        if self._settings.is_local:
            session = LocalSession(
                subject_id=subject_id,
                display_name=CASSO_DISPLAY_NAME,
                username=subject_id,
                role=LOCAL_ROLE,
                issued_at=datetime.now(UTC),
            )
            self.persist(response, session)
            return session

        self._require_sso_endpoint()
        data = await self._post_exchange(
            self._settings.sso_exchange_url,
            {"employee-id": subject_id, "casso-token": sso_token},
        )

        access = data.get("access")
        if not access:
            raise MalformedUpstreamResponseError("Invalid response from authentication server")

        session = DelegatedSession(
            subject_id=str(data.get("id") or subject_id),
            display_name=data.get("username") or CASSO_DISPLAY_NAME,
            username=data.get("username") or subject_id,
            role=data.get("role") or DEFAULT_ROLE,
            access=access,
            issued_at=datetime.now(UTC),
        )
        self.persist(response, session)
        return session

    def persist(self, response: Response, session: LocalSession | DelegatedSession) -> None:
        """Write the session cookies, replacing any previous session wholesale."""
        session_cookies.write_session(response, session, self._settings)
        logger.info(
            "session_created kind=%s subject_id=%s role=%s",
            session.kind,
            session.subject_id,
            session.role,
        )

    def current_session(
        self, cookies: Mapping[str, str],
    ) -> LocalSession | DelegatedSession | None:
        """Get the persisted session, or None if absent, partial, corrupted, or expired."""
        return session_cookies.read_session(cookies, self._settings)

    def end_session(self, response: Response, cookies: Mapping[str, str]) -> None:
        """
        Clear the session cookies and the session's query cache.

        Other sessions keep their caches. Safe to call repeatedly or without a session.
        """
        session = self.current_session(cookies)
        session_cookies.clear_session(response, self._settings)
        if session is not None:
            self._caches.discard(session)
            logger.info("session_ended subject_id=%s", session.subject_id)

    def _require_sso_endpoint(self) -> None:
        if not self._settings.sso_exchange_url:
            raise ConfigurationError(
                "Casso API URL is not configured. Please log in through Casso SSO.",
            )

    async def _post_exchange(self, url: str, body: dict[str, str]) -> dict[str, Any]:
        """
        POST an exchange request and return the decoded JSON object.

        Raises:
            InvalidCredentialsError: On a non-2xx response (upstream message passed through).
            MalformedUpstreamResponseError: On a 2xx response that is not a JSON object.
            NetworkFailureError: If no response was received.
        """
        try:
            response = await self._client.post(url, json=body)
        except httpx.RequestError as e:
            logger.warning("session_exchange_unreachable url=%s error=%s", url, e)
            raise NetworkFailureError("Authentication server is unavailable") from e

        if not response.is_success:
            message = extract_error_message(response)
            logger.warning(
                "session_exchange_rejected url=%s status=%s", url, response.status_code,
            )
            raise InvalidCredentialsError(message or "Authentication failed")

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedUpstreamResponseError(
                "Invalid response from authentication server",
            ) from e
        if not isinstance(data, dict):
            raise MalformedUpstreamResponseError("Invalid response from authentication server")
        return data
