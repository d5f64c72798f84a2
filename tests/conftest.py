"""Pytest fixtures for testing."""
import os

# Must be set before any app import triggers Settings validation
os.environ["APP_ENV"] = "local"
os.environ["SESSION_SECRET_KEY"] = "test-session-secret"

from collections.abc import AsyncGenerator, Generator  # noqa: E402
from datetime import UTC, datetime  # noqa: E402
from typing import Any  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
import respx  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from core.config import Settings  # noqa: E402
from core.query_cache import QueryCache, QueryCacheRegistry  # noqa: E402
from core.session_cookies import LOGGED_IN_COOKIE, SESSION_COOKIE, encode_session  # noqa: E402
from schemas.session import DelegatedSession, LocalSession  # noqa: E402

UPSTREAM_URL = "http://upstream.test"
SSO_EXCHANGE_PATH = "/casso/exchange/"
SESSION_SECRET = "test-session-secret"


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def local_settings() -> Settings:
    """Settings for local mode (no identity provider)."""
    return Settings(
        APP_ENV="local",
        SESSION_SECRET_KEY=SESSION_SECRET,
        API_URL=UPSTREAM_URL,
        API_LOGIN_URL="",
        CASSO_URL="",
    )


@pytest.fixture
def production_settings() -> Settings:
    """Settings for production mode with the SSO exchange endpoint configured."""
    return Settings(
        APP_ENV="production",
        SESSION_SECRET_KEY=SESSION_SECRET,
        API_URL=UPSTREAM_URL,
        API_LOGIN_URL=f"{UPSTREAM_URL}{SSO_EXCHANGE_PATH}",
        CASSO_URL="https://casso.test/login",
    )


@pytest.fixture
def unconfigured_production_settings() -> Settings:
    """Settings for production mode without an SSO exchange endpoint."""
    return Settings(
        APP_ENV="production",
        SESSION_SECRET_KEY=SESSION_SECRET,
        API_URL=UPSTREAM_URL,
        API_LOGIN_URL="",
        CASSO_URL="https://casso.test/login",
    )


@pytest.fixture
def clock() -> FakeClock:
    """Hand-driven clock for cache freshness tests."""
    return FakeClock()


@pytest.fixture
def query_cache(clock: FakeClock) -> QueryCache:
    """Empty query cache using the fake clock and default windows."""
    return QueryCache(stale_seconds=60, gc_seconds=300, clock=clock)


@pytest.fixture
def query_caches(clock: FakeClock) -> QueryCacheRegistry:
    """Empty per-session cache registry using the fake clock."""
    return QueryCacheRegistry(lambda: QueryCache(stale_seconds=60, gc_seconds=300, clock=clock))


@pytest.fixture
async def http_client() -> AsyncGenerator[httpx.AsyncClient]:
    """Upstream client pointed at the mocked upstream host."""
    async with httpx.AsyncClient(base_url=UPSTREAM_URL, timeout=5.0) as client:
        yield client


@pytest.fixture
def mock_api() -> Generator[respx.MockRouter]:
    """Mock the upstream API. Unmatched requests fail the test."""
    with respx.mock(base_url=UPSTREAM_URL, assert_all_called=False) as respx_mock:
        yield respx_mock


@pytest.fixture
def local_session() -> LocalSession:
    """Admin session fabricated in local mode."""
    return LocalSession(
        subject_id="1",
        display_name="dev",
        username="dev",
        role="admin",
        issued_at=datetime.now(UTC),
    )


@pytest.fixture
def delegated_session() -> DelegatedSession:
    """Session backed by an upstream bearer credential."""
    return DelegatedSession(
        subject_id="E123",
        display_name="Jane Operator",
        username="jane",
        role="user",
        access="upstream-access-token",
        issued_at=datetime.now(UTC),
    )


def session_cookie_values(
    session: LocalSession | DelegatedSession, secret: str = SESSION_SECRET,
) -> dict[str, str]:
    """Cookie values a browser holds for `session`."""
    return {LOGGED_IN_COOKIE: "true", SESSION_COOKIE: encode_session(session, secret)}


@pytest.fixture
def app_settings(local_settings: Settings) -> Settings:
    """Settings injected into the app. Override in a test class to change mode."""
    return local_settings


@pytest.fixture
async def client(
    app_settings: Settings,
    http_client: httpx.AsyncClient,
    query_caches: QueryCacheRegistry,
) -> AsyncGenerator[AsyncClient]:
    """Create a test client with settings, upstream client and cache overrides."""
    from api.dependencies import get_http_client, get_query_caches, get_settings
    from api.main import app

    app.dependency_overrides[get_settings] = lambda: app_settings
    app.dependency_overrides[get_http_client] = lambda: http_client
    app.dependency_overrides[get_query_caches] = lambda: query_caches

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def login_as(client: AsyncClient):  # noqa: ANN201
    """Put the session cookies for a session on the test client."""
    def _login(session: LocalSession | DelegatedSession) -> None:
        for name, value in session_cookie_values(session).items():
            client.cookies.set(name, value)
    return _login


def job(job_id: str, status: str = "ACTIVE", **fields: Any) -> dict[str, Any]:
    """Build an upstream scheduled job payload."""
    return {
        "id": job_id,
        "status": status,
        "setting_id": f"setting-{job_id}",
        "job_name": f"Job {job_id}",
        **fields,
    }


def job_page(count: int, ids: list[str]) -> dict[str, Any]:
    """Build an upstream `{count, results}` list body."""
    return {"count": count, "results": [job(job_id) for job_id in ids]}


@pytest.fixture
def make_job():  # noqa: ANN201
    """Factory for upstream scheduled job payloads."""
    return job


@pytest.fixture
def make_page():  # noqa: ANN201
    """Factory for upstream list bodies."""
    return job_page
