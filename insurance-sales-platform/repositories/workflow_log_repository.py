"""
Automation log repository (persistence).

Append-only audit of orchestrator executions. A row is inserted `running`
and finished exactly once; finishing is conditional on it still running.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Mapping, Optional

from domain.time import parse_optional_utc_datetime, parse_utc_datetime, to_iso_utc
from domain.workflow import ExecutionStatus, WorkflowExecution
from repositories.storage import StorageGateway

# Supabase table name for execution logs.
# Keep this aligned with your database schema.
_LOGS_TABLE: str = "automation_logs"


def _row_to_execution(row: Mapping[str, Any]) -> WorkflowExecution:
    duration = row.get("duration_ms")
    return WorkflowExecution(
        execution_id=str(row["id"]),
        workflow_id=str(row["workflow_id"]),
        trigger_type=str(row["trigger_type"]),
        status=ExecutionStatus(str(row["status"])),
        started_at=parse_utc_datetime(row["started_at"]),
        trigger_data=row.get("trigger_data") or {},
        workflow_name=row.get("workflow_name"),
        tenant_id=row.get("tenant_id"),
        result_data=row.get("result_data"),
        error_message=row.get("error_message"),
        completed_at=parse_optional_utc_datetime(row.get("completed_at")),
        duration_ms=int(duration) if duration is not None else None,
    )


def insert_execution(storage: StorageGateway, execution: WorkflowExecution) -> WorkflowExecution:
    row = storage.insert(
        _LOGS_TABLE,
        {
            "id": execution.execution_id,
            "workflow_id": execution.workflow_id,
            "workflow_name": execution.workflow_name,
            "trigger_type": execution.trigger_type,
            "trigger_data": dict(execution.trigger_data),
            "tenant_id": execution.tenant_id,
            "status": execution.status.value,
            "started_at": to_iso_utc(execution.started_at, name="started_at"),
        },
    )
    return _row_to_execution(row)


def finish_execution(
    storage: StorageGateway,
    execution_id: str,
    status: ExecutionStatus,
    completed_at: datetime,
    duration_ms: int,
    result_data: Optional[Mapping[str, Any]] = None,
    error_message: Optional[str] = None,
) -> WorkflowExecution:
    """
    Record the terminal outcome of a running execution.

    Raises:
        ConflictError: the execution was already finished.
    """

    row = storage.conditional_update(
        _LOGS_TABLE,
        execution_id,
        expected={"status": ExecutionStatus.RUNNING.value},
        patch={
            "status": status.value,
            "result_data": dict(result_data) if result_data is not None else None,
            "error_message": error_message,
            "completed_at": to_iso_utc(completed_at, name="completed_at"),
            "duration_ms": duration_ms,
        },
    )
    return _row_to_execution(row)


def get_execution(storage: StorageGateway, execution_id: str) -> Optional[WorkflowExecution]:
    row = storage.get(_LOGS_TABLE, execution_id)
    return _row_to_execution(row) if row else None


def list_executions(
    storage: StorageGateway,
    workflow_id: Optional[str] = None,
    limit: int = 50,
) -> List[WorkflowExecution]:
    filters = {"workflow_id": workflow_id} if workflow_id else None
    rows = storage.query(_LOGS_TABLE, filters, order_by="started_at", descending=True, limit=limit)
    return [_row_to_execution(row) for row in rows]


__all__ = [
    "insert_execution",
    "finish_execution",
    "get_execution",
    "list_executions",
]
