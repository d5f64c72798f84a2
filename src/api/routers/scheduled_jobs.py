"""Scheduled job table endpoints."""
from typing import Any

from fastapi import APIRouter, Body, Depends, Query

from api.dependencies import get_current_session, get_job_gateway, get_job_mutations
from schemas.scheduled_job import JobType, ScheduledJob, ScheduledJobListResponse
from schemas.session import DelegatedSession, LocalSession
from services.job_gateway import JobGateway
from services.job_mutations import JobMutations

router = APIRouter(prefix="/scheduled-jobs", tags=["scheduled-jobs"])


@router.get("/{job_type}", response_model=ScheduledJobListResponse)
async def list_scheduled_jobs(
    job_type: JobType,
    page: int = Query(default=1, ge=1, description="1-based page number"),
    limit: int = Query(default=20, ge=1, description="Jobs per page"),
    search: str = Query(default="", description="Free-text filter"),
    session: LocalSession | DelegatedSession = Depends(get_current_session),
    gateway: JobGateway = Depends(get_job_gateway),
) -> ScheduledJobListResponse:
    """
    List jobs of one partition with pagination and search.

    Pages are served from the query cache while fresh (60 seconds by default)
    and refetched from the upstream after that or after any mutation in the
    same partition.
    """
    result = await gateway.list_jobs(session, job_type.value, page, limit, search)
    return ScheduledJobListResponse(
        items=result.items,
        total=result.total_count,
        page=page,
        limit=limit,
        has_more=page * limit < result.total_count,
    )


@router.post("/{job_type}", response_model=ScheduledJob | None, status_code=201)
async def create_scheduled_job(
    job_type: JobType,
    data: dict[str, Any] = Body(...),
    session: LocalSession | DelegatedSession = Depends(get_current_session),
    mutations: JobMutations = Depends(get_job_mutations),
) -> ScheduledJob | None:
    """Create a job in the partition."""
    return await mutations.create_job(session, job_type.value, data)


@router.patch("/{job_type}/{job_id}", response_model=ScheduledJob | None)
async def update_scheduled_job(
    job_type: JobType,
    job_id: str,
    changes: dict[str, Any] = Body(...),
    session: LocalSession | DelegatedSession = Depends(get_current_session),
    mutations: JobMutations = Depends(get_job_mutations),
) -> ScheduledJob | None:
    """
    Update changed fields of a job.

    Cached pages show the change immediately; they are restored if the upstream
    rejects it.
    """
    return await mutations.update_job(session, job_type.value, job_id, changes)


@router.delete("/{job_type}/{job_id}", status_code=204)
async def delete_scheduled_job(
    job_type: JobType,
    job_id: str,
    session: LocalSession | DelegatedSession = Depends(get_current_session),
    mutations: JobMutations = Depends(get_job_mutations),
) -> None:
    """Delete a job."""
    await mutations.delete_job(session, job_type.value, job_id)
