"""
Optimistic create/update/delete of scheduled jobs.

Every mutation runs the same protocol against the query cache:

1. Snapshot: capture every cache entry tagged with the job's partition.
2. Apply: swap in rewritten copies of those entries showing the intended result.
3. Commit: send the mutation upstream.
4. Invalidate the partition tag on success, so the next read refetches server truth,
   or Rollback on failure, then re-raise. Rollback puts a snapshot entry back only
   while the cache still holds the entry this mutation wrote, so it never undoes a
   concurrent mutation's invalidation or a logout that cleared the cache.

Steps 1-2 run without an intervening await, as does step 4, so no other
coroutine can observe a partially applied or partially restored partition.
Entries are immutable, which is what makes the snapshot an exact restore point.
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from enum import StrEnum
from typing import Any

import httpx
import pydantic

from core.config import Settings
from core.query_cache import CacheEntry, QueryCache, QueryKey, partition_tag
from schemas.scheduled_job import JobStatus, ScheduledJob
from schemas.session import DelegatedSession, LocalSession
from services.api_client import api_delete, api_patch, api_post
from services.exceptions import (
    MalformedUpstreamResponseError,
    NetworkFailureError,
    RemoteRejectedError,
    UnauthorizedError,
    ValidationError,
)
from shared.api_errors import parse_http_error

logger = logging.getLogger(__name__)

EntryTransform = Callable[[CacheEntry], CacheEntry]

# Mutations still committing after their caller was cancelled
_in_flight: set[asyncio.Task] = set()


class MutationPhase(StrEnum):
    """Phases of one mutation attempt, logged as the attempt progresses."""

    SNAPSHOT = "snapshot"
    APPLY = "apply"
    COMMIT = "commit"
    INVALIDATE = "invalidate"
    ROLLBACK = "rollback"


def merge_job(entry: CacheEntry, job_id: str, changes: Mapping[str, Any]) -> CacheEntry:
    """Merge `changes` into the job with `job_id`. Unspecified fields keep their value."""
    if not any(job.id == job_id for job in entry.items):
        return entry
    items = tuple(job.merged(changes) if job.id == job_id else job for job in entry.items)
    return entry.with_items(items, entry.total_count)


def remove_job(entry: CacheEntry, job_id: str) -> CacheEntry:
    """Remove the job with `job_id` and decrement the total. No-op if it is absent."""
    items = tuple(job for job in entry.items if job.id != job_id)
    if len(items) == len(entry.items):
        return entry
    return entry.with_items(items, max(entry.total_count - 1, 0))


def _require_job_id(job_id: str) -> str:
    job_id = str(job_id).strip()
    if not job_id:
        raise ValidationError("Job ID is required")
    return job_id


def _validate_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Check a field mapping sent upstream on create or update."""
    if not isinstance(fields, Mapping):
        raise ValidationError("Job fields must be an object")
    if not fields:
        raise ValidationError("At least one field is required")
    if "status" in fields:
        try:
            JobStatus(fields["status"])
        except ValueError:
            allowed = ", ".join(s.value for s in JobStatus)
            raise ValidationError(
                f"Invalid status '{fields['status']}'. Expected one of: {allowed}",
            )
    return dict(fields)


class JobMutations:
    """Runs optimistic mutations against the upstream job API and the query cache."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        query_cache: QueryCache,
        settings: Settings,
    ) -> None:
        self._client = http_client
        self._cache = query_cache
        self._settings = settings

    async def update_job(
        self,
        session: LocalSession | DelegatedSession,
        partition: str,
        job_id: str,
        changes: Mapping[str, Any],
    ) -> ScheduledJob | None:
        """
        Update fields of a job.

        Args:
            session: Current session; its bearer credential is sent when present.
            partition: Partition the job belongs to.
            job_id: Job identifier. Cannot be changed.
            changes: Changed fields only; other fields keep their cached values.

        Returns:
            The job as returned by the upstream, or None if it returned no body.

        Raises:
            ValidationError: If the input is malformed. Nothing is sent upstream.
            UnauthorizedError: If the upstream rejects the bearer credential.
            RemoteRejectedError: If the upstream returns another non-2xx status.
            NetworkFailureError: If no response was received.
        """
        job_id = _require_job_id(job_id)
        changes = _validate_fields(changes)
        if "id" in changes:
            if str(changes.pop("id")) != job_id:
                raise ValidationError("Job ID cannot be changed")
            if not changes:
                raise ValidationError("At least one field is required")

        result = await self._run(
            f"update job_id={job_id}",
            partition,
            apply=lambda entry: merge_job(entry, job_id, changes),
            commit=lambda: api_patch(
                self._client, self._job_path(job_id), session.access, changes,
            ),
        )
        return self._parse_job(result)

    async def delete_job(
        self,
        session: LocalSession | DelegatedSession,
        partition: str,
        job_id: str,
    ) -> None:
        """
        Delete a job.

        The job disappears from cached pages immediately. If it is not cached the
        upstream call is still made, and a failure still restores the snapshot.

        Raises:
            ValidationError: If job_id is empty.
            UnauthorizedError: If the upstream rejects the bearer credential.
            RemoteRejectedError: If the upstream returns another non-2xx status.
            NetworkFailureError: If no response was received.
        """
        job_id = _require_job_id(job_id)
        await self._run(
            f"delete job_id={job_id}",
            partition,
            apply=lambda entry: remove_job(entry, job_id),
            commit=lambda: api_delete(self._client, self._job_path(job_id), session.access),
        )

    async def create_job(
        self,
        session: LocalSession | DelegatedSession,
        partition: str,
        fields: Mapping[str, Any],
    ) -> ScheduledJob | None:
        """
        Create a job in a partition.

        The upstream assigns the id and page position, so nothing is applied
        optimistically; the partition is invalidated once the create succeeds.
        """
        fields = _validate_fields(fields)
        if "id" in fields:
            raise ValidationError("Job ID is assigned by the server")
        payload = {**fields, "partition": partition}

        result = await self._run(
            "create",
            partition,
            apply=None,
            commit=lambda: api_post(
                self._client, self._settings.jobs_path, session.access, payload,
            ),
        )
        return self._parse_job(result)

    async def _run(
        self,
        action: str,
        partition: str,
        apply: EntryTransform | None,
        commit: Callable[[], Awaitable[Any]],
    ) -> Any:
        # Runs to completion even if the awaiting caller is cancelled
        task = asyncio.create_task(self._execute(action, partition, apply, commit))
        _in_flight.add(task)
        task.add_done_callback(_in_flight.discard)
        return await asyncio.shield(task)

    async def _execute(
        self,
        action: str,
        partition: str,
        apply: EntryTransform | None,
        commit: Callable[[], Awaitable[Any]],
    ) -> Any:
        tag = partition_tag(partition)

        snapshot = self._cache.snapshot(tag)
        logger.debug(
            "job_mutation phase=%s action=%s entries=%s",
            MutationPhase.SNAPSHOT, action, len(snapshot),
        )
        written: dict[QueryKey, CacheEntry] = {}
        if apply is not None:
            written = {key: apply(entry) for key, entry in snapshot.items()}
            self._cache.replace(written)
            logger.debug("job_mutation phase=%s action=%s", MutationPhase.APPLY, action)

        try:
            logger.debug("job_mutation phase=%s action=%s", MutationPhase.COMMIT, action)
            result = await self._commit(commit)
        except Exception:
            restored = self._cache.restore(snapshot, written)
            logger.warning(
                "job_mutation phase=%s action=%s partition=%s restored=%s",
                MutationPhase.ROLLBACK, action, partition, restored,
            )
            raise

        invalidated = self._cache.invalidate(tag)
        logger.info(
            "job_mutation phase=%s action=%s partition=%s entries=%s",
            MutationPhase.INVALIDATE, action, partition, invalidated,
        )
        return result

    @staticmethod
    async def _commit(commit: Callable[[], Awaitable[Any]]) -> Any:
        """Send the upstream request, translating httpx errors into service errors."""
        try:
            return await commit()
        except httpx.HTTPStatusError as e:
            parsed = parse_http_error(e.response)
            if parsed.category == "auth":
                raise UnauthorizedError(parsed.message) from e
            raise RemoteRejectedError(parsed.status_code, parsed.message) from e
        except httpx.RequestError as e:
            raise NetworkFailureError(f"Upstream API unavailable: {e}") from e
        except ValueError as e:
            # The write was accepted; only the response body is unreadable
            logger.warning("job_mutation_unreadable_response error=%s", e)
            return None

    def _job_path(self, job_id: str) -> str:
        return f"{self._settings.jobs_path.rstrip('/')}/{job_id}/"

    @staticmethod
    def _parse_job(data: Any) -> ScheduledJob | None:
        if data is None:
            return None
        try:
            return ScheduledJob.model_validate(data)
        except pydantic.ValidationError as e:
            raise MalformedUpstreamResponseError(f"Invalid job in response: {e}") from e
