"""
Upstream API error parsing.

Both the job gateway and the mutation pipeline receive non-2xx responses from
the upstream job API. This module extracts a semantic category and a
human-readable message from such responses; each service then raises its own
exception type from the parsed result.
"""

from dataclasses import dataclass
from typing import Any, Literal

import httpx

ErrorCategory = Literal[
    "auth",        # 401 - Invalid or expired bearer credential
    "forbidden",   # 403 - Access denied
    "not_found",   # 404 - Job does not exist
    "validation",  # 400/422 - Upstream rejected the payload
    "conflict",    # 409 - Upstream business conflict
    "internal",    # 5xx or unexpected errors
]

# Keys the upstream uses for error messages, in lookup order
_MESSAGE_KEYS = ("detail", "message", "error")


@dataclass
class ParsedApiError:
    """Parsed API error with semantic category and message."""

    category: ErrorCategory
    status_code: int
    message: str


def parse_http_error(response: httpx.Response) -> ParsedApiError:  # noqa: PLR0911
    """
    Parse an upstream error response into a semantic category.

    The upstream's own message is passed through verbatim when one is present;
    otherwise a generic message for the status code is used.

    Args:
        response: The non-2xx response from httpx.

    Returns:
        ParsedApiError with category, status code, and message.
    """
    status = response.status_code
    message = extract_error_message(response)

    if status == 401:
        return ParsedApiError("auth", status, message or "Invalid or expired token")

    if status == 403:
        return ParsedApiError("forbidden", status, message or "Access denied")

    if status == 404:
        return ParsedApiError("not_found", status, message or "Not found")

    if status == 409:
        return ParsedApiError("conflict", status, message or "Conflict")

    if status in (400, 422):
        return ParsedApiError("validation", status, message or "Validation error")

    return ParsedApiError("internal", status, message or f"API error {status}")


def extract_error_message(response: httpx.Response) -> str:
    """
    Extract the upstream's error message from a response body.

    Handles Django REST style `{"detail": ...}`, `{"message": ...}` and
    `{"error": ...}` bodies, field-error dicts like `{"status": ["invalid"]}`,
    and falls back to the raw response text for non-JSON bodies.
    """
    try:
        body = response.json()
    except ValueError:
        return response.text.strip()

    if isinstance(body, dict):
        for key in _MESSAGE_KEYS:
            value = body.get(key)
            if value:
                return _stringify(value)
        # Field errors: {"status": ["Not a valid choice."]}
        messages = [f"{field}: {_stringify(errors)}" for field, errors in body.items()]
        return "; ".join(messages)
    if isinstance(body, list):
        return "; ".join(_stringify(item) for item in body)
    if isinstance(body, str):
        return body
    return ""


def _stringify(value: Any) -> str:
    """Flatten a message value (string, list of strings, or nested dict) to text."""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "; ".join(_stringify(item) for item in value)
    if isinstance(value, dict):
        inner = value.get("message")
        if isinstance(inner, str):
            return inner
        return "; ".join(f"{k}: {_stringify(v)}" for k, v in value.items())
    return str(value)
