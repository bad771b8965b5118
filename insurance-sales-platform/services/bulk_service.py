"""
Bulk operations and reconciliation.

Each operation processes a list of ids one at a time and never aborts the
batch: every id gets its own success or failure entry in the summary.
Policy re-emission and reconciliation dispatch through the workflow
orchestrator, so each item also leaves its own `automation_logs` row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar
from uuid import UUID

from domain.errors import SalesPlatformError
from domain.sale import SaleStatus
from domain.workflow import TriggerType, WorkflowId
from repositories.policy_repository import get_policy_for_sale
from repositories.sale_repository import list_sales_by_status
from services.commission_service import approve_commissions
from services.context import ServiceContext
from services.sale_state_machine import parse_sale_status, transition
from services.workflow_orchestrator import execute

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class BulkItemResult:
    id: str
    success: bool
    error: Optional[str] = None
    detail: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class BulkResult:
    operation: str
    processed: int
    succeeded: int
    failed: int
    results: List[BulkItemResult]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "results": [
                {"id": r.id, "success": r.success, "error": r.error, "detail": r.detail, **r.data}
                for r in self.results
            ],
        }


def _run_each(
    operation: str,
    ids: Iterable[T],
    action: Callable[[T], Dict[str, Any]],
) -> BulkResult:
    results: List[BulkItemResult] = []
    for item_id in ids:
        try:
            data = action(item_id)
        except SalesPlatformError as exc:
            logger.warning(
                "Bulk item failed",
                extra={"operation": operation, "item_id": str(item_id), "error_code": exc.code},
            )
            results.append(BulkItemResult(str(item_id), False, exc.code, exc.message))
            continue
        results.append(BulkItemResult(str(item_id), True, data=data))

    succeeded = sum(1 for r in results if r.success)
    logger.info(
        "Bulk operation finished",
        extra={"operation": operation, "processed": len(results), "succeeded": succeeded},
    )
    return BulkResult(
        operation=operation,
        processed=len(results),
        succeeded=succeeded,
        failed=len(results) - succeeded,
        results=results,
    )


def bulk_transition_sales(
    ctx: ServiceContext,
    sale_ids: Iterable[UUID],
    new_status: str,
    loss_reason: Optional[str] = None,
) -> BulkResult:
    target = parse_sale_status(new_status)

    def _one(sale_id: UUID) -> Dict[str, Any]:
        sale = transition(ctx, sale_id, target, loss_reason=loss_reason)
        return {"status": sale.status.value}

    return _run_each("transition_sales", sale_ids, _one)


def bulk_reemit_policies(ctx: ServiceContext, sale_ids: Iterable[UUID]) -> BulkResult:
    def _one(sale_id: UUID) -> Dict[str, Any]:
        run = execute(ctx, WorkflowId.POLICY_EMISSION, TriggerType.MANUAL, {"sale_id": str(sale_id)})
        return {
            "policy_number": run.result["policy_number"],
            "policy_status": run.result["status"],
            "execution_id": run.execution_id,
        }

    return _run_each("reemit_policies", sale_ids, _one)


def bulk_approve_commissions(ctx: ServiceContext, commission_ids: Iterable[UUID]) -> BulkResult:
    def _one(commission_id: UUID) -> Dict[str, Any]:
        commission = approve_commissions(ctx, commission_id)
        return {"status": commission.status.value, "amount": str(commission.amount)}

    return _run_each("approve_commissions", commission_ids, _one)


def reconcile_paid_sales(ctx: ServiceContext, limit: Optional[int] = None) -> BulkResult:
    """
    Re-drive issuance for paid sales that have no issued policy.

    Covers a crash between the `pago` write and the follow-ups, and follow-up
    jobs that ended in dead_letter. Commissions are recomputed too; that run
    skips rules that already produced a commission for the sale. A policy
    still `processando` within PROCESSING_GRACE belongs to a live run and is
    left alone. `limit` caps the stuck sales handled, not the sales scanned.
    """

    now = ctx.now()
    stuck = [
        sale.sale_id
        for sale in list_sales_by_status(ctx.storage, SaleStatus.PAGO)
        if _needs_issuance(ctx, sale.sale_id, now)
    ]
    if limit is not None:
        stuck = stuck[:limit]

    def _one(sale_id: UUID) -> Dict[str, Any]:
        trigger = {"sale_id": str(sale_id)}
        emission = execute(ctx, WorkflowId.POLICY_EMISSION, TriggerType.MANUAL, trigger)
        commissions = execute(ctx, WorkflowId.COMMISSION_CALCULATION, TriggerType.MANUAL, trigger)
        return {
            "policy_number": emission.result["policy_number"],
            "policy_status": emission.result["status"],
            "commissions_created": commissions.result["commissions_created"],
            "execution_ids": [emission.execution_id, commissions.execution_id],
        }

    return _run_each("reconcile_paid_sales", stuck, _one)


def _needs_issuance(ctx: ServiceContext, sale_id: UUID, now: datetime) -> bool:
    policy = get_policy_for_sale(ctx.storage, sale_id)
    return policy is None or policy.needs_issuance(now)



__all__ = [
    "BulkItemResult",
    "BulkResult",
    "bulk_transition_sales",
    "bulk_reemit_policies",
    "bulk_approve_commissions",
    "reconcile_paid_sales",
]
