"""HTTP client helpers for forwarding requests to the upstream job API."""

from typing import Any

import httpx

from core.config import Settings, get_settings


def create_http_client(settings: Settings) -> httpx.AsyncClient:
    """Create the shared client for upstream requests."""
    return httpx.AsyncClient(
        base_url=settings.upstream_api_url,
        timeout=settings.upstream_timeout,
    )


def _json_body(response: httpx.Response) -> Any:
    """Decode a JSON body, treating an empty body (e.g. 204) as None."""
    if not response.content:
        return None
    return response.json()


def _get_headers(token: str | None) -> dict[str, str]:
    """Get common headers for API requests. Bearer auth only when a credential exists."""
    headers = {"Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


async def api_get(
    client: httpx.AsyncClient,
    path: str,
    token: str | None,
    params: dict[str, Any] | None = None,
) -> Any:
    """Make an authenticated GET request to the API."""
    response = await client.get(
        path,
        params=params,
        headers=_get_headers(token),
    )
    response.raise_for_status()
    return response.json()


async def api_post(
    client: httpx.AsyncClient,
    path: str,
    token: str | None,
    json: dict[str, Any] | None = None,
) -> Any:
    """Make an authenticated POST request to the API."""
    response = await client.post(
        path,
        json=json,
        headers=_get_headers(token),
    )
    response.raise_for_status()
    return _json_body(response)


async def api_patch(
    client: httpx.AsyncClient,
    path: str,
    token: str | None,
    json: dict[str, Any],
) -> Any:
    """Make an authenticated PATCH request to the API."""
    response = await client.patch(
        path,
        json=json,
        headers=_get_headers(token),
    )
    response.raise_for_status()
    return _json_body(response)


async def api_delete(
    client: httpx.AsyncClient,
    path: str,
    token: str | None,
) -> None:
    """Make an authenticated DELETE request to the API."""
    response = await client.delete(
        path,
        headers=_get_headers(token),
    )
    response.raise_for_status()


# Global HTTP client state using a container to avoid global statement
class _HttpClientState:
    """Container for the shared upstream client."""

    client: httpx.AsyncClient | None = None


_state = _HttpClientState()


def get_http_client() -> httpx.AsyncClient:
    """Get the shared upstream client, creating it on first access."""
    if _state.client is None or _state.client.is_closed:
        _state.client = create_http_client(get_settings())
    return _state.client


def set_http_client(client: httpx.AsyncClient | None) -> None:
    """Set (or reset) the shared upstream client."""
    _state.client = client
