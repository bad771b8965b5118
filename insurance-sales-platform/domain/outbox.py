"""
Domain: durable follow-up jobs (outbox).

A workflow that needs another workflow to run later appends a job instead of
starting a timer. A scheduled consumer claims due jobs and runs them through
the orchestrator, which gives at-least-once execution across restarts.

Job lifecycle:
    pending -> processing -> completed
    processing -> pending        retry, 2^n minutes later
    processing -> dead_letter    retries exhausted
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Mapping, Optional
from uuid import UUID

from .time import require_utc_timestamp

DEFAULT_QUEUE = "default"
DEFAULT_MAX_RETRIES = 3


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


def retry_delay(retry_count: int) -> timedelta:
    """Exponential backoff between attempts: 2^n minutes."""

    return timedelta(minutes=2 ** retry_count)


@dataclass(frozen=True, slots=True)
class FollowUpJob:
    job_id: UUID
    job_type: str  # a WorkflowId value
    status: JobStatus
    scheduled_at: datetime
    payload: Mapping[str, Any] = field(default_factory=dict)
    queue_name: str = DEFAULT_QUEUE
    priority: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_count: int = 0
    dedupe_key: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    def __post_init__(self) -> None:
        require_utc_timestamp("scheduled_at", self.scheduled_at)
        for name in ("started_at", "completed_at"):
            value = getattr(self, name)
            if value is not None:
                require_utc_timestamp(name, value)

    def is_due(self, now: datetime) -> bool:
        return self.status is JobStatus.PENDING and self.scheduled_at <= now

    @property
    def retries_left(self) -> bool:
        return self.retry_count + 1 < self.max_retries


__all__ = [
    "DEFAULT_QUEUE",
    "DEFAULT_MAX_RETRIES",
    "JobStatus",
    "retry_delay",
    "FollowUpJob",
]
