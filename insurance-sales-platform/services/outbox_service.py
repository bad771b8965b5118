"""
Outbox service for durable follow-up work.

Workflows never start timers for dependent work. They append a pending job
(`enqueue_follow_up`), and a scheduled consumer (`process_pending_jobs`)
claims due jobs and runs them through the workflow orchestrator.

Handles:
- Deduplicated enqueue (unique dedupe_key; a duplicate returns the existing job)
- Claiming with a conditional pending -> processing update
- Retry with 2^n minute backoff, then dead_letter once retries are exhausted
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID, uuid4

from domain.errors import ConflictError, SalesPlatformError
from domain.outbox import DEFAULT_MAX_RETRIES, DEFAULT_QUEUE, FollowUpJob, JobStatus, retry_delay
from domain.workflow import TriggerType, WorkflowId
from repositories.outbox_repository import (
    claim_job,
    complete_job,
    dead_letter_job,
    insert_job,
    list_due_jobs,
    list_jobs,
    reschedule_job,
)
from services.context import ServiceContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class JobOutcome:
    job_id: UUID
    job_type: str
    status: str  # completed, retry, dead_letter, skipped
    error: Optional[str] = None


@dataclass(frozen=True, slots=True)
class OutboxBatchResult:
    """
    Summary of one consumer pass.

    claimed: jobs this consumer claimed and ran
    completed / retried / dead_lettered: outcome counts among claimed jobs
    outcomes: per-job detail, including jobs skipped because another consumer won the claim
    """

    claimed: int
    completed: int
    retried: int
    dead_lettered: int
    outcomes: List[JobOutcome] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "claimed": self.claimed,
            "completed": self.completed,
            "retried": self.retried,
            "dead_lettered": self.dead_lettered,
            "outcomes": [
                {"job_id": str(o.job_id), "job_type": o.job_type, "status": o.status, "error": o.error}
                for o in self.outcomes
            ],
        }


def dedupe_key_for(workflow_id: WorkflowId, entity_id: Any) -> str:
    return f"{workflow_id.value}:{entity_id}"


def enqueue_follow_up(
    ctx: ServiceContext,
    workflow_id: WorkflowId,
    payload: Mapping[str, Any],
    *,
    delay: timedelta = timedelta(0),
    dedupe_key: Optional[str] = None,
    priority: int = 0,
    max_retries: int = DEFAULT_MAX_RETRIES,
    queue_name: str = DEFAULT_QUEUE,
) -> FollowUpJob:
    """
    Append a pending follow-up job for `workflow_id`.

    When `dedupe_key` is set and a job with that key already exists, the
    existing job is returned and nothing new is enqueued.
    """

    job = FollowUpJob(
        job_id=uuid4(),
        job_type=workflow_id.value,
        status=JobStatus.PENDING,
        scheduled_at=ctx.now() + delay,
        payload=dict(payload),
        queue_name=queue_name,
        priority=priority,
        max_retries=max_retries,
        dedupe_key=dedupe_key,
    )
    try:
        stored = insert_job(ctx.storage, job)
    except ConflictError:
        if dedupe_key is None:
            raise
        existing = list_jobs(ctx.storage, {"dedupe_key": dedupe_key})
        if not existing:
            raise
        logger.info(
            "Follow-up already enqueued",
            extra={"job_type": workflow_id.value, "dedupe_key": dedupe_key},
        )
        return existing[0]

    logger.info(
        "Follow-up enqueued",
        extra={
            "job_id": str(stored.job_id),
            "job_type": stored.job_type,
            "scheduled_at": stored.scheduled_at.isoformat(),
        },
    )
    return stored


def process_pending_jobs(ctx: ServiceContext, limit: Optional[int] = None) -> OutboxBatchResult:
    """
    Claim and run due jobs, continuing past individual failures.
    """

    # Imported here: the orchestrator's workflows enqueue through this module.
    from services.workflow_orchestrator import execute

    batch_size = limit if limit is not None else ctx.settings.outbox_batch_size
    due = list_due_jobs(ctx.storage, ctx.now(), batch_size)

    outcomes: List[JobOutcome] = []
    completed = retried = dead_lettered = 0

    for job in due:
        try:
            claimed = claim_job(ctx.storage, job, ctx.now())
        except ConflictError:
            outcomes.append(JobOutcome(job.job_id, job.job_type, "skipped", "claimed by another consumer"))
            continue

        try:
            execute(
                ctx,
                claimed.job_type,
                TriggerType.SCHEDULE,
                dict(claimed.payload),
            )
        except SalesPlatformError as exc:
            outcome = _record_failure(ctx, claimed, exc.message)
        except Exception as exc:
            logger.exception("Follow-up job crashed", extra={"job_id": str(claimed.job_id)})
            outcome = _record_failure(ctx, claimed, str(exc))
        else:
            complete_job(ctx.storage, claimed, ctx.now())
            outcome = JobOutcome(claimed.job_id, claimed.job_type, "completed")

        if outcome.status == "completed":
            completed += 1
        elif outcome.status == "retry":
            retried += 1
        else:
            dead_lettered += 1
        outcomes.append(outcome)

    claimed_count = completed + retried + dead_lettered
    if due:
        logger.info(
            "Outbox pass finished",
            extra={
                "claimed": claimed_count,
                "completed": completed,
                "retried": retried,
                "dead_lettered": dead_lettered,
            },
        )
    return OutboxBatchResult(
        claimed=claimed_count,
        completed=completed,
        retried=retried,
        dead_lettered=dead_lettered,
        outcomes=outcomes,
    )


def _record_failure(ctx: ServiceContext, job: FollowUpJob, error: str) -> JobOutcome:
    if job.retries_left:
        next_run = ctx.now() + retry_delay(job.retry_count)
        reschedule_job(ctx.storage, job, next_run, error)
        logger.warning(
            "Follow-up job failed, retry scheduled",
            extra={"job_id": str(job.job_id), "retry_count": job.retry_count + 1, "error": error},
        )
        return JobOutcome(job.job_id, job.job_type, "retry", error)

    dead_letter_job(ctx.storage, job, ctx.now(), error)
    logger.error(
        "Follow-up job moved to dead letter",
        extra={"job_id": str(job.job_id), "job_type": job.job_type, "error": error},
    )
    return JobOutcome(job.job_id, job.job_type, "dead_letter", error)


__all__ = [
    "JobOutcome",
    "OutboxBatchResult",
    "dedupe_key_for",
    "enqueue_follow_up",
    "process_pending_jobs",
]
