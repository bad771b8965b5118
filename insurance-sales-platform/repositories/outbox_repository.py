"""
Follow-up job repository (persistence).

Backs the durable outbox in `queue_jobs`. Jobs are claimed with a
conditional pending -> processing update so two consumers never run the
same job; `dedupe_key` is unique so a follow-up is enqueued at most once.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Mapping, Optional
from uuid import UUID

from domain.outbox import FollowUpJob, JobStatus
from domain.time import parse_optional_utc_datetime, parse_utc_datetime, to_iso_utc
from repositories.storage import StorageGateway

# Supabase table name for queued jobs.
# Keep this aligned with your database schema.
_JOBS_TABLE: str = "queue_jobs"


def _row_to_job(row: Mapping[str, Any]) -> FollowUpJob:
    return FollowUpJob(
        job_id=UUID(str(row["id"])),
        job_type=str(row["job_type"]),
        status=JobStatus(str(row["status"])),
        scheduled_at=parse_utc_datetime(row["scheduled_at"]),
        payload=row.get("payload") or {},
        queue_name=str(row.get("queue_name") or "default"),
        priority=int(row.get("priority") or 0),
        max_retries=int(row.get("max_retries") or 3),
        retry_count=int(row.get("retry_count") or 0),
        dedupe_key=row.get("dedupe_key"),
        started_at=parse_optional_utc_datetime(row.get("started_at")),
        completed_at=parse_optional_utc_datetime(row.get("completed_at")),
        error_message=row.get("error_message"),
    )


def insert_job(storage: StorageGateway, job: FollowUpJob) -> FollowUpJob:
    """
    Append a job.

    Raises:
        ConflictError: a job with the same dedupe_key already exists.
    """

    row = storage.insert(
        _JOBS_TABLE,
        {
            "id": str(job.job_id),
            "job_type": job.job_type,
            "queue_name": job.queue_name,
            "payload": dict(job.payload),
            "status": job.status.value,
            "priority": job.priority,
            "max_retries": job.max_retries,
            "retry_count": job.retry_count,
            "dedupe_key": job.dedupe_key,
            "scheduled_at": to_iso_utc(job.scheduled_at, name="scheduled_at"),
        },
    )
    return _row_to_job(row)


def get_job(storage: StorageGateway, job_id: UUID) -> Optional[FollowUpJob]:
    row = storage.get(_JOBS_TABLE, str(job_id))
    return _row_to_job(row) if row else None


def list_jobs(storage: StorageGateway, filters: Optional[Mapping[str, Any]] = None) -> List[FollowUpJob]:
    rows = storage.query(_JOBS_TABLE, filters, order_by="scheduled_at")
    return [_row_to_job(row) for row in rows]


def list_due_jobs(storage: StorageGateway, now: datetime, limit: int) -> List[FollowUpJob]:
    """Pending jobs whose scheduled time has passed, highest priority first."""

    rows = storage.query(
        _JOBS_TABLE,
        {"status": JobStatus.PENDING.value},
        lte={"scheduled_at": to_iso_utc(now, name="now")},
        order_by=["-priority", "scheduled_at"],
        limit=limit,
    )
    return [_row_to_job(row) for row in rows]


def claim_job(storage: StorageGateway, job: FollowUpJob, now: datetime) -> FollowUpJob:
    """
    Raises:
        ConflictError: another consumer already claimed the job.
    """

    row = storage.conditional_update(
        _JOBS_TABLE,
        str(job.job_id),
        expected={"status": JobStatus.PENDING.value},
        patch={"status": JobStatus.PROCESSING.value, "started_at": to_iso_utc(now, name="started_at")},
    )
    return _row_to_job(row)


def _finish(storage: StorageGateway, job: FollowUpJob, patch: Mapping[str, Any]) -> FollowUpJob:
    row = storage.conditional_update(
        _JOBS_TABLE,
        str(job.job_id),
        expected={"status": JobStatus.PROCESSING.value},
        patch=patch,
    )
    return _row_to_job(row)


def complete_job(storage: StorageGateway, job: FollowUpJob, now: datetime) -> FollowUpJob:
    return _finish(
        storage,
        job,
        {
            "status": JobStatus.COMPLETED.value,
            "completed_at": to_iso_utc(now, name="completed_at"),
            "error_message": None,
        },
    )


def reschedule_job(
    storage: StorageGateway,
    job: FollowUpJob,
    scheduled_at: datetime,
    error_message: str,
) -> FollowUpJob:
    return _finish(
        storage,
        job,
        {
            "status": JobStatus.PENDING.value,
            "retry_count": job.retry_count + 1,
            "scheduled_at": to_iso_utc(scheduled_at, name="scheduled_at"),
            "started_at": None,
            "error_message": error_message,
        },
    )


def dead_letter_job(storage: StorageGateway, job: FollowUpJob, now: datetime, error_message: str) -> FollowUpJob:
    return _finish(
        storage,
        job,
        {
            "status": JobStatus.DEAD_LETTER.value,
            "retry_count": job.retry_count + 1,
            "completed_at": to_iso_utc(now, name="completed_at"),
            "error_message": error_message,
        },
    )


__all__ = [
    "insert_job",
    "get_job",
    "list_jobs",
    "list_due_jobs",
    "claim_job",
    "complete_job",
    "reschedule_job",
    "dead_letter_job",
]
