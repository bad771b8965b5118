"""
Domain: workflow executions.

Every orchestrator invocation leaves one append-only execution log row:
inserted `running`, then moved exactly once to `completed` or `failed`.
"""

from __future__ import annotations

import random
import string
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from .errors import ValidationError
from .time import require_utc_timestamp

_BASE36 = string.digits + string.ascii_lowercase


class WorkflowId(str, Enum):
    LEAD_QUALIFICATION = "lead-qualification"
    PAYMENT_FOLLOW_UP = "payment-follow-up"
    POLICY_EMISSION = "policy-emission"
    RECOVERY_CAMPAIGN = "recovery-campaign"
    COMMISSION_CALCULATION = "commission-calculation"
    WELCOME_KIT = "welcome-kit"
    PAYMENT_WEBHOOK = "payment-webhook"


class TriggerType(str, Enum):
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    MANUAL = "manual"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def parse_workflow_id(value: Any) -> WorkflowId:
    try:
        return WorkflowId(str(value))
    except ValueError as exc:
        raise ValidationError(f"Unknown workflow: {value}") from exc


def parse_trigger_type(value: Any) -> TriggerType:
    try:
        return TriggerType(str(value))
    except ValueError as exc:
        allowed = ", ".join(t.value for t in TriggerType)
        raise ValidationError(f"Unknown trigger_type {value!r}; expected one of: {allowed}") from exc


def generate_execution_id(now: datetime, rng: Optional[random.Random] = None) -> str:
    """`exec_{epochMillis}_{9 random base36 chars}`."""

    rng = rng or random.SystemRandom()
    suffix = "".join(rng.choice(_BASE36) for _ in range(9))
    return f"exec_{int(now.timestamp() * 1000)}_{suffix}"


@dataclass(frozen=True, slots=True)
class WorkflowExecution:
    execution_id: str
    workflow_id: str
    trigger_type: str
    status: ExecutionStatus
    started_at: datetime
    trigger_data: Mapping[str, Any]
    workflow_name: Optional[str] = None
    tenant_id: Optional[str] = None
    result_data: Optional[Mapping[str, Any]] = None
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    def __post_init__(self) -> None:
        require_utc_timestamp("started_at", self.started_at)
        if self.completed_at is not None:
            require_utc_timestamp("completed_at", self.completed_at)
        if self.duration_ms is not None and self.duration_ms < 0:
            raise ValueError("duration_ms must not be negative")


@dataclass(frozen=True, slots=True)
class WorkflowRun:
    """What a caller of the orchestrator gets back."""

    execution_id: str
    workflow_id: str
    result: Mapping[str, Any]
    duration_ms: int


__all__ = [
    "WorkflowId",
    "TriggerType",
    "ExecutionStatus",
    "parse_workflow_id",
    "parse_trigger_type",
    "generate_execution_id",
    "WorkflowExecution",
    "WorkflowRun",
]
