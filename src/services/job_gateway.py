"""Paginated, cache-aware reads of the upstream scheduled job collection."""
import logging
from typing import Any

import httpx
import pydantic

from core.config import Settings
from core.query_cache import QueryCache, QueryKey, partition_tag
from schemas.scheduled_job import ScheduledJob, ScheduledJobPage
from schemas.session import DelegatedSession, LocalSession
from services.api_client import api_get
from services.exceptions import (
    FetchFailedError,
    MalformedUpstreamResponseError,
    NetworkFailureError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# One transparent retry on network-level failures; HTTP errors are never retried
MAX_FETCH_ATTEMPTS = 2


class JobGateway:
    """
    Serves job pages from the query cache, fetching from upstream on miss or staleness.

    Every entry is tagged with its partition, so the mutation pipeline can
    invalidate all pages of one partition together.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        query_cache: QueryCache,
        settings: Settings,
    ) -> None:
        self._client = http_client
        self._cache = query_cache
        self._settings = settings

    async def list_jobs(
        self,
        session: LocalSession | DelegatedSession,
        partition: str,
        page: int = 1,
        page_size: int = 20,
        search: str = "",
    ) -> ScheduledJobPage:
        """
        Get one page of jobs in a partition.

        Args:
            session: Current session; its bearer credential is sent when present.
            partition: Job partition (e.g. 'NAVI').
            page: 1-based page number.
            page_size: Jobs per page.
            search: Free-text filter. Empty means no filter.

        Returns:
            The page items and the partition's total count for the filter.

        Raises:
            ValidationError: If page or page_size is below 1.
            FetchFailedError: If the upstream answers with a non-2xx status.
            NetworkFailureError: If the upstream is unreachable after one retry.
            MalformedUpstreamResponseError: If the body is not `{count, results[]}`.
        """
        if page < 1:
            raise ValidationError(f"page must be >= 1 (got {page})")
        if page_size < 1:
            raise ValidationError(f"page_size must be >= 1 (got {page_size})")

        key = QueryKey(
            partition=partition, page=page, page_size=page_size, search=search.strip(),
        )

        entry = self._cache.get_fresh(key)
        if entry is None:
            data = await self._fetch(session, key)
            items, total_count = self._parse_page(data)
            entry = self._cache.put(
                key,
                items=items,
                total_count=total_count,
                tags=frozenset({partition_tag(partition)}),
            )

        return ScheduledJobPage(items=list(entry.items), total_count=entry.total_count)

    async def _fetch(
        self, session: LocalSession | DelegatedSession, key: QueryKey,
    ) -> Any:
        params: dict[str, Any] = {
            "partition": key.partition,
            "page": key.page,
            "limit": key.page_size,
        }
        if key.search:
            params["search"] = key.search

        attempt = 1
        while True:
            try:
                return await api_get(
                    self._client, self._settings.jobs_path, session.access, params,
                )
            except httpx.HTTPStatusError as e:
                logger.warning(
                    "job_fetch_failed key=%s status=%s", key, e.response.status_code,
                )
                raise FetchFailedError(e.response.status_code, e.response.text) from e
            except httpx.TransportError as e:
                if attempt == MAX_FETCH_ATTEMPTS:
                    logger.warning("job_fetch_unreachable key=%s error=%s", key, e)
                    raise NetworkFailureError(f"Upstream API unavailable: {e}") from e
                logger.info("job_fetch_retry key=%s error=%s", key, e)
                attempt += 1
            except httpx.RequestError as e:
                raise NetworkFailureError(f"Upstream API unavailable: {e}") from e
            except ValueError as e:
                raise MalformedUpstreamResponseError("Job list response is not valid JSON") from e

    @staticmethod
    def _parse_page(data: Any) -> tuple[tuple[ScheduledJob, ...], int]:
        """Validate an upstream `{count, results[]}` body."""
        if not isinstance(data, dict):
            raise MalformedUpstreamResponseError("Job list response is not an object")
        count = data.get("count")
        results = data.get("results")
        if not isinstance(count, int) or not isinstance(results, list):
            raise MalformedUpstreamResponseError("Job list response is missing count or results")
        try:
            items = tuple(ScheduledJob.model_validate(item) for item in results)
        except pydantic.ValidationError as e:
            raise MalformedUpstreamResponseError(f"Invalid job in list response: {e}") from e
        return items, count
