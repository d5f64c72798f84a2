"""Pydantic schemas for scheduled job endpoints."""
from collections.abc import Mapping
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator


class JobType(StrEnum):
    """Partition of the upstream job collection. Partitions never overlap."""

    NAVI = "NAVI"
    CVER = "CVER"


class JobStatus(StrEnum):
    """Scheduler status of a job."""

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class ScheduledJob(BaseModel):
    """
    Local copy of a scheduled job owned by the upstream API.

    Only `id` and `status` are modelled explicitly. Every other upstream column
    (setting_id, job_name, scheduler_weekday, spreadsheet_id, ...) is kept as an
    extra field so new columns round-trip without schema changes.

    Instances are frozen: the query cache shares them between entries and
    snapshots, so an update always produces a new object via `merged()`.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    id: str
    status: JobStatus

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        """Upstream ids may be integers; compare them as strings."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    def merged(self, changes: Mapping[str, Any]) -> "ScheduledJob":
        """Return a new job with `changes` merged field-wise over this one."""
        return ScheduledJob.model_validate({**self.model_dump(), **changes})


class ScheduledJobPage(BaseModel):
    """One page of jobs as served by the gateway."""

    items: list[ScheduledJob]
    total_count: int


class ScheduledJobListResponse(BaseModel):
    """Schema for paginated scheduled job list responses."""

    items: list[ScheduledJob]
    total: int
    page: int
    limit: int
    has_more: bool
