"""Tests for the optimistic mutation pipeline."""
import asyncio
import json

import httpx
import pytest
import respx

from core.config import Settings
from core.query_cache import CacheEntry, QueryCache, QueryKey, partition_tag
from schemas.scheduled_job import ScheduledJob
from schemas.session import DelegatedSession
from services.exceptions import (
    NetworkFailureError,
    RemoteRejectedError,
    UnauthorizedError,
    ValidationError,
)
from services.job_gateway import JobGateway
from services.job_mutations import JobMutations, _in_flight, merge_job, remove_job

JOBS_PATH = "/scheduled-jobs/"
NAVI_PAGE = QueryKey("NAVI", 1, 20)
CVER_PAGE = QueryKey("CVER", 1, 20)


def _seed(cache: QueryCache, key: QueryKey, ids: list[str], total: int) -> CacheEntry:
    items = tuple(
        ScheduledJob.model_validate(
            {"id": job_id, "status": "ACTIVE", "job_name": f"Job {job_id}"},
        )
        for job_id in ids
    )
    return cache.put(
        key, items=items, total_count=total, tags=frozenset({partition_tag(key.partition)}),
    )


@pytest.fixture
def mutations(
    local_settings: Settings, http_client: httpx.AsyncClient, query_cache: QueryCache,
) -> JobMutations:
    """Mutation pipeline wired to the mocked upstream and the test cache."""
    return JobMutations(http_client, query_cache, local_settings)


class TestEntryTransforms:
    """Tests for the pure cache entry rewrites."""

    def test__merge_job__changes_only_given_fields(self, query_cache: QueryCache) -> None:
        """Unspecified fields keep their cached values."""
        entry = _seed(query_cache, NAVI_PAGE, ["1", "2"], 2)

        merged = merge_job(entry, "2", {"status": "INACTIVE"})

        job = merged.items[1]
        assert job.status == "INACTIVE"
        assert job.job_name == "Job 2"
        assert merged.items[0] is entry.items[0]
        assert entry.items[1].status == "ACTIVE"

    def test__merge_job__absent_id_is_noop(self, query_cache: QueryCache) -> None:
        """Pages that do not show the job are left as they are."""
        entry = _seed(query_cache, NAVI_PAGE, ["1"], 1)
        assert merge_job(entry, "99", {"status": "INACTIVE"}) is entry

    def test__remove_job__drops_item_and_decrements_total(self, query_cache: QueryCache) -> None:
        """The job disappears and the total shrinks by one."""
        entry = _seed(query_cache, NAVI_PAGE, ["1", "2"], 57)

        removed = remove_job(entry, "1")

        assert [job.id for job in removed.items] == ["2"]
        assert removed.total_count == 56

    def test__remove_job__absent_id_is_noop(self, query_cache: QueryCache) -> None:
        """The total only changes for pages that held the job."""
        entry = _seed(query_cache, NAVI_PAGE, ["1"], 57)
        assert remove_job(entry, "99") is entry


class TestUpdateJob:
    """Optimistic update with commit, invalidate and rollback."""

    async def test__cache_shows_change_while_commit_pending(
        self,
        mutations: JobMutations,
        query_cache: QueryCache,
        delegated_session: DelegatedSession,
        mock_api: respx.MockRouter,
    ) -> None:
        """Readers see the new status before the upstream answers."""
        _seed(query_cache, NAVI_PAGE, ["6", "7"], 57)
        seen: list[CacheEntry | None] = []

        def respond(request: httpx.Request) -> httpx.Response:
            seen.append(query_cache.peek(NAVI_PAGE))
            return httpx.Response(200, json={"id": "7", "status": "INACTIVE"})

        mock_api.patch(f"{JOBS_PATH}7/").mock(side_effect=respond)

        result = await mutations.update_job(delegated_session, "NAVI", "7", {"status": "INACTIVE"})

        assert [job.status for job in seen[0].items] == ["ACTIVE", "INACTIVE"]
        assert result.id == "7"
        assert result.status == "INACTIVE"

    async def test__success__invalidates_partition_and_sends_changes(
        self,
        mutations: JobMutations,
        query_cache: QueryCache,
        delegated_session: DelegatedSession,
        mock_api: respx.MockRouter,
    ) -> None:
        """On success every page of the partition is refetched on next read."""
        _seed(query_cache, NAVI_PAGE, ["7"], 1)
        _seed(query_cache, QueryKey("NAVI", 2, 20), ["8"], 1)
        cver = _seed(query_cache, CVER_PAGE, ["7"], 1)
        route = mock_api.patch(f"{JOBS_PATH}7/").mock(
            return_value=httpx.Response(200, json={"id": "7", "status": "INACTIVE"}),
        )

        await mutations.update_job(delegated_session, "NAVI", "7", {"status": "INACTIVE"})

        request = route.calls.last.request
        assert json.loads(request.content) == {"status": "INACTIVE"}
        assert request.headers["authorization"] == "Bearer upstream-access-token"
        assert query_cache.get_fresh(NAVI_PAGE) is None
        assert query_cache.get_fresh(QueryKey("NAVI", 2, 20)) is None
        assert query_cache.get_fresh(CVER_PAGE) is cver

    async def test__remote_rejection__restores_snapshot_exactly(
        self,
        mutations: JobMutations,
        query_cache: QueryCache,
        delegated_session: DelegatedSession,
        mock_api: respx.MockRouter,
    ) -> None:
        """After a rejected update the cache is identical to before the attempt."""
        before = _seed(query_cache, NAVI_PAGE, ["6", "7"], 57)
        mock_api.patch(f"{JOBS_PATH}7/").mock(
            return_value=httpx.Response(400, json={"status": ["Not a valid choice."]}),
        )

        with pytest.raises(RemoteRejectedError) as exc_info:
            await mutations.update_job(delegated_session, "NAVI", "7", {"status": "INACTIVE"})

        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "status: Not a valid choice."
        after = query_cache.peek(NAVI_PAGE)
        assert after is before
        assert query_cache.get_fresh(NAVI_PAGE) is before

    async def test__rejected_credential__raises_unauthorized_and_rolls_back(
        self,
        mutations: JobMutations,
        query_cache: QueryCache,
        delegated_session: DelegatedSession,
        mock_api: respx.MockRouter,
    ) -> None:
        """A 401 asks the caller to re-authenticate."""
        before = _seed(query_cache, NAVI_PAGE, ["7"], 1)
        mock_api.patch(f"{JOBS_PATH}7/").mock(
            return_value=httpx.Response(401, json={"detail": "Token is invalid or expired"}),
        )

        with pytest.raises(UnauthorizedError, match="Token is invalid or expired"):
            await mutations.update_job(delegated_session, "NAVI", "7", {"status": "INACTIVE"})

        assert query_cache.peek(NAVI_PAGE) is before

    async def test__network_failure__rolls_back(
        self,
        mutations: JobMutations,
        query_cache: QueryCache,
        delegated_session: DelegatedSession,
        mock_api: respx.MockRouter,
    ) -> None:
        """Mutations are never retried; a transport error restores the cache."""
        before = _seed(query_cache, NAVI_PAGE, ["7"], 1)
        route = mock_api.patch(f"{JOBS_PATH}7/").mock(
            side_effect=httpx.ConnectError("Connection refused"),
        )

        with pytest.raises(NetworkFailureError):
            await mutations.update_job(delegated_session, "NAVI", "7", {"status": "INACTIVE"})

        assert route.call_count == 1
        assert query_cache.peek(NAVI_PAGE) is before

    async def test__empty_success_body__returns_none_and_invalidates(
        self,
        mutations: JobMutations,
        query_cache: QueryCache,
        delegated_session: DelegatedSession,
        mock_api: respx.MockRouter,
    ) -> None:
        """A 204 answer still counts as a committed update."""
        _seed(query_cache, NAVI_PAGE, ["7"], 1)
        mock_api.patch(f"{JOBS_PATH}7/").mock(return_value=httpx.Response(204))

        result = await mutations.update_job(delegated_session, "NAVI", "7", {"job_name": "x"})

        assert result is None
        assert query_cache.peek(NAVI_PAGE).stale is True

    @pytest.mark.parametrize(
        ("job_id", "changes", "message"),
        [
            ("7", {}, "At least one field is required"),
            ("7", {"status": "PAUSED"}, "Invalid status 'PAUSED'"),
            ("7", {"id": "8", "status": "ACTIVE"}, "Job ID cannot be changed"),
            ("7", {"id": "7"}, "At least one field is required"),
            ("  ", {"status": "ACTIVE"}, "Job ID is required"),
        ],
    )
    async def test__malformed_input__raises_validation_error_without_side_effects(
        self,
        mutations: JobMutations,
        query_cache: QueryCache,
        delegated_session: DelegatedSession,
        mock_api: respx.MockRouter,
        job_id: str,
        changes: dict,
        message: str,
    ) -> None:
        """Invalid updates never reach the upstream or touch the cache."""
        before = _seed(query_cache, NAVI_PAGE, ["7"], 1)

        with pytest.raises(ValidationError, match=message):
            await mutations.update_job(delegated_session, "NAVI", job_id, changes)

        assert mock_api.calls.call_count == 0
        assert query_cache.get_fresh(NAVI_PAGE) is before

    async def test__unchanged_id_in_changes__is_not_sent(
        self,
        mutations: JobMutations,
        query_cache: QueryCache,
        delegated_session: DelegatedSession,
        mock_api: respx.MockRouter,
    ) -> None:
        """Echoing the current id back is allowed and stripped from the payload."""
        route = mock_api.patch(f"{JOBS_PATH}7/").mock(return_value=httpx.Response(204))

        await mutations.update_job(
            delegated_session, "NAVI", "7", {"id": "7", "status": "ACTIVE"},
        )

        assert json.loads(route.calls.last.request.content) == {"status": "ACTIVE"}


class TestDeleteJob:
    """Optimistic delete."""

    async def test__job_disappears_then_partition_refetched(
        self,
        mutations: JobMutations,
        local_settings: Settings,
        http_client: httpx.AsyncClient,
        query_cache: QueryCache,
        delegated_session: DelegatedSession,
        mock_api: respx.MockRouter,
        make_page,
    ) -> None:
        """The row is removed and the total decremented while pending; a read refetches."""
        _seed(query_cache, NAVI_PAGE, ["6", "7"], 57)
        seen: list[CacheEntry | None] = []

        def respond(request: httpx.Request) -> httpx.Response:
            seen.append(query_cache.peek(NAVI_PAGE))
            return httpx.Response(204)

        mock_api.delete(f"{JOBS_PATH}7/").mock(side_effect=respond)
        list_route = mock_api.get(JOBS_PATH).mock(
            return_value=httpx.Response(200, json=make_page(56, ["6"])),
        )

        await mutations.delete_job(delegated_session, "NAVI", "7")

        assert [job.id for job in seen[0].items] == ["6"]
        assert seen[0].total_count == 56
        gateway = JobGateway(http_client, query_cache, local_settings)
        page = await gateway.list_jobs(delegated_session, "NAVI", page=1, page_size=20)
        assert list_route.call_count == 1
        assert page.total_count == 56

    async def test__failure__restores_row_and_total(
        self,
        mutations: JobMutations,
        query_cache: QueryCache,
        delegated_session: DelegatedSession,
        mock_api: respx.MockRouter,
    ) -> None:
        """A rejected delete puts the row back exactly."""
        before = _seed(query_cache, NAVI_PAGE, ["6", "7"], 57)
        mock_api.delete(f"{JOBS_PATH}7/").mock(
            return_value=httpx.Response(409, json={"detail": "Job is running"}),
        )

        with pytest.raises(RemoteRejectedError, match="Job is running"):
            await mutations.delete_job(delegated_session, "NAVI", "7")

        assert query_cache.peek(NAVI_PAGE) is before
        assert query_cache.peek(NAVI_PAGE).total_count == 57

    async def test__uncached_job__still_deleted_upstream(
        self,
        mutations: JobMutations,
        query_cache: QueryCache,
        delegated_session: DelegatedSession,
        mock_api: respx.MockRouter,
    ) -> None:
        """Deleting a job no cached page shows still calls the upstream."""
        before = _seed(query_cache, NAVI_PAGE, ["6"], 57)
        route = mock_api.delete(f"{JOBS_PATH}99/").mock(return_value=httpx.Response(204))

        await mutations.delete_job(delegated_session, "NAVI", "99")

        assert route.call_count == 1
        entry = query_cache.peek(NAVI_PAGE)
        assert entry.items == before.items
        assert entry.total_count == 57
        assert entry.stale is True


class TestCreateJob:
    """Non-optimistic create."""

    async def test__posts_fields_with_partition_and_invalidates(
        self,
        mutations: JobMutations,
        query_cache: QueryCache,
        delegated_session: DelegatedSession,
        mock_api: respx.MockRouter,
    ) -> None:
        """The new job is not guessed into a page; the partition is refetched instead."""
        before = _seed(query_cache, CVER_PAGE, ["1"], 1)
        seen: list[CacheEntry | None] = []

        def respond(request: httpx.Request) -> httpx.Response:
            seen.append(query_cache.peek(CVER_PAGE))
            return httpx.Response(201, json={"id": 12, "status": "ACTIVE", "job_name": "Weekly"})

        route = mock_api.post(JOBS_PATH).mock(side_effect=respond)

        created = await mutations.create_job(
            delegated_session, "CVER", {"status": "ACTIVE", "job_name": "Weekly"},
        )

        assert seen == [before]
        assert json.loads(route.calls.last.request.content) == {
            "status": "ACTIVE",
            "job_name": "Weekly",
            "partition": "CVER",
        }
        assert created.id == "12"
        assert query_cache.get_fresh(CVER_PAGE) is None

    async def test__client_supplied_id__raises_validation_error(
        self,
        mutations: JobMutations,
        delegated_session: DelegatedSession,
        mock_api: respx.MockRouter,
    ) -> None:
        """Ids are assigned by the upstream."""
        with pytest.raises(ValidationError, match="assigned by the server"):
            await mutations.create_job(delegated_session, "CVER", {"id": "5", "status": "ACTIVE"})

        assert mock_api.calls.call_count == 0

    async def test__failure__leaves_cache_fresh(
        self,
        mutations: JobMutations,
        query_cache: QueryCache,
        delegated_session: DelegatedSession,
        mock_api: respx.MockRouter,
    ) -> None:
        """A rejected create invalidates nothing."""
        before = _seed(query_cache, CVER_PAGE, ["1"], 1)
        mock_api.post(JOBS_PATH).mock(
            return_value=httpx.Response(422, json={"detail": "job_name is required"}),
        )

        with pytest.raises(RemoteRejectedError):
            await mutations.create_job(delegated_session, "CVER", {"status": "ACTIVE"})

        assert query_cache.get_fresh(CVER_PAGE) is before


class TestAbandonedMutation:
    """A mutation keeps running when its caller goes away."""

    async def test__cancelled_caller__mutation_completes(
        self,
        mutations: JobMutations,
        query_cache: QueryCache,
        delegated_session: DelegatedSession,
        mock_api: respx.MockRouter,
    ) -> None:
        """Cancelling the awaiting task does not strand the optimistic state."""
        _seed(query_cache, NAVI_PAGE, ["7"], 1)
        release = asyncio.Event()
        committed = asyncio.Event()

        async def slow_commit() -> None:
            await release.wait()
            committed.set()

        task = asyncio.create_task(
            mutations._run(
                "update job_id=7",
                "NAVI",
                apply=lambda entry: merge_job(entry, "7", {"status": "INACTIVE"}),
                commit=slow_commit,
            ),
        )
        for _ in range(3):
            await asyncio.sleep(0)
        assert query_cache.peek(NAVI_PAGE).items[0].status == "INACTIVE"

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(_in_flight) == 1

        release.set()
        await asyncio.wait_for(committed.wait(), timeout=1)
        for _ in range(5):
            await asyncio.sleep(0)

        entry = query_cache.peek(NAVI_PAGE)
        assert entry.stale is True
        assert entry.items[0].status == "INACTIVE"
        assert _in_flight == set()


class TestOverlappingMutations:
    """Rollback only undoes this mutation's own optimistic write."""

    async def test__failed_rollback_keeps_earlier_success_invalidation(
        self,
        mutations: JobMutations,
        query_cache: QueryCache,
    ) -> None:
        """A later failure on the same partition does not revive a fresh page."""
        _seed(query_cache, NAVI_PAGE, ["7", "8"], 2)
        release_update = asyncio.Event()
        release_delete = asyncio.Event()

        async def update_commit() -> None:
            await release_update.wait()

        async def delete_commit() -> None:
            await release_delete.wait()
            raise httpx.ConnectError("Connection refused")

        update = asyncio.create_task(
            mutations._run(
                "update job_id=7",
                "NAVI",
                apply=lambda entry: merge_job(entry, "7", {"status": "INACTIVE"}),
                commit=update_commit,
            ),
        )
        for _ in range(3):
            await asyncio.sleep(0)
        delete = asyncio.create_task(
            mutations._run(
                "delete job_id=8",
                "NAVI",
                apply=lambda entry: remove_job(entry, "8"),
                commit=delete_commit,
            ),
        )
        for _ in range(3):
            await asyncio.sleep(0)

        release_update.set()
        await update
        release_delete.set()
        with pytest.raises(NetworkFailureError):
            await delete

        assert query_cache.peek(NAVI_PAGE).stale is True
        assert query_cache.get_fresh(NAVI_PAGE) is None

    async def test__rollback_after_clear_leaves_cache_empty(
        self,
        mutations: JobMutations,
        query_cache: QueryCache,
    ) -> None:
        """Entries cleared on logout are not restored by a failing commit."""
        _seed(query_cache, NAVI_PAGE, ["7"], 1)
        release = asyncio.Event()

        async def failing_commit() -> None:
            await release.wait()
            raise httpx.ConnectError("Connection refused")

        task = asyncio.create_task(
            mutations._run(
                "update job_id=7",
                "NAVI",
                apply=lambda entry: merge_job(entry, "7", {"status": "INACTIVE"}),
                commit=failing_commit,
            ),
        )
        for _ in range(3):
            await asyncio.sleep(0)

        query_cache.clear()
        release.set()
        with pytest.raises(NetworkFailureError):
            await task

        assert len(query_cache) == 0
        assert query_cache.get_fresh(NAVI_PAGE) is None
