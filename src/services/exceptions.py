"""Shared exceptions for service layer operations."""


class DashboardError(Exception):
    """Base class for errors surfaced by the session, gateway and mutation services."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(DashboardError):
    """Raised when the caller passes malformed input. Never reaches the upstream API."""


class ConfigurationError(DashboardError):
    """Raised when a required endpoint or environment value is missing."""


class InvalidCredentialsError(DashboardError):
    """Raised when a credential or SSO exchange is rejected."""


class UnauthorizedError(DashboardError):
    """
    Raised when the upstream API rejects the session's bearer credential.

    Callers should force re-authentication.
    """


class MalformedUpstreamResponseError(DashboardError):
    """Raised when the upstream answers with a success status but required fields are missing."""


class NetworkFailureError(DashboardError):
    """Raised when no response was received from the upstream API."""


class RemoteRejectedError(DashboardError):
    """Raised when the upstream API returns a non-2xx business error."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        super().__init__(message)


class FetchFailedError(DashboardError):
    """
    Raised when a list read returns a non-2xx response.

    Carries the upstream status and raw response text so the caller can decide
    whether to offer a retry.
    """

    def __init__(self, status_code: int, text: str) -> None:
        self.status_code = status_code
        self.text = text
        super().__init__(f"Error fetching data: {status_code} {text}")
