"""
Workflow API Endpoints.

Operator surface over the services: run a workflow, move sales, open
payments, bulk operations, and the scheduler passes (outbox, recovery).

Service errors are not caught here; the pipeline's exception handlers turn
them into `{"error": code, "detail": message}` responses.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from api.models import (
    BulkIdsRequest,
    BulkResponse,
    BulkTransitionRequest,
    ExecutionResponse,
    OutboxBatchResponse,
    PaymentOpenRequest,
    PaymentResponse,
    RecoverySendRequest,
    RecoveryTriggerRequest,
    SaleCreateRequest,
    SaleResponse,
    SaleTransitionRequest,
    WorkflowRunRequest,
    WorkflowRunResponse,
)
from api.pipeline import AuthenticatedUser, Role, get_context, require_role
from domain.payment import Payment
from domain.sale import Sale
from repositories.sale_repository import require_sale
from repositories.workflow_log_repository import list_executions
from services.bulk_service import (
    bulk_approve_commissions,
    bulk_reemit_policies,
    bulk_transition_sales,
    reconcile_paid_sales,
)
from services.context import ServiceContext
from services.outbox_service import process_pending_jobs
from services.payment_service import open_payment
from services.recovery_service import process_due_campaigns, send_recovery_message, trigger_recovery
from services.sale_state_machine import create_sale, transition
from services.workflow_orchestrator import run_workflow

router = APIRouter()

_operators = require_role(Role.ADMIN, Role.GESTOR, Role.OPERADOR)
_sellers = require_role(Role.ADMIN, Role.GESTOR, Role.VENDAS)
_collections = require_role(Role.ADMIN, Role.GESTOR, Role.COBRANCA)
_managers = require_role(Role.ADMIN, Role.GESTOR)


def _sale_response(sale: Sale) -> SaleResponse:
    return SaleResponse(
        sale_id=sale.sale_id,
        client_id=sale.client_id,
        product_id=sale.product_id,
        lead_id=sale.lead_id,
        seller_id=sale.seller_id,
        value=sale.value,
        status=sale.status.value,
        installments=sale.installments,
        loss_reason=sale.loss_reason,
        created_at=sale.created_at,
        closed_at=sale.closed_at,
    )


def _payment_response(payment: Payment) -> PaymentResponse:
    return PaymentResponse(
        payment_id=payment.payment_id,
        sale_id=payment.sale_id,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status.value,
        stripe_payment_intent_id=payment.stripe_payment_intent_id,
        stripe_checkout_session_id=payment.stripe_checkout_session_id,
        payment_method=payment.payment_method,
        paid_at=payment.paid_at,
    )


# ============================================================================
# Workflows
# ============================================================================

@router.post(
    "/workflows/{workflow_id}/run",
    response_model=WorkflowRunResponse,
    summary="Run Workflow",
    description="Run a named workflow and record its execution log.",
)
def run_named_workflow(
    workflow_id: str,
    request: WorkflowRunRequest,
    ctx: ServiceContext = Depends(get_context),
    user: AuthenticatedUser = Depends(_operators),
):
    """
    Run one workflow synchronously.

    **Workflows:** lead-qualification, payment-follow-up, policy-emission,
    recovery-campaign, commission-calculation, welcome-kit.

    An unknown workflow id or malformed trigger data still leaves a `failed`
    execution log row and answers 422.
    """
    return WorkflowRunResponse(**run_workflow(ctx, workflow_id, request.trigger_type, request.trigger_data))


@router.get(
    "/workflows/executions",
    response_model=List[ExecutionResponse],
    summary="List Executions",
)
def list_workflow_executions(
    workflow_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    ctx: ServiceContext = Depends(get_context),
    user: AuthenticatedUser = Depends(_operators),
):
    return [
        ExecutionResponse(
            execution_id=e.execution_id,
            workflow_id=e.workflow_id,
            workflow_name=e.workflow_name,
            trigger_type=e.trigger_type,
            status=e.status.value,
            started_at=e.started_at,
            completed_at=e.completed_at,
            duration_ms=e.duration_ms,
            error_message=e.error_message,
            result_data=dict(e.result_data) if e.result_data is not None else None,
        )
        for e in list_executions(ctx.storage, workflow_id=workflow_id, limit=limit)
    ]


# ============================================================================
# Sales & Payments
# ============================================================================

@router.post("/sales", response_model=SaleResponse, status_code=201, summary="Create Sale")
def create_new_sale(
    request: SaleCreateRequest,
    ctx: ServiceContext = Depends(get_context),
    user: AuthenticatedUser = Depends(_sellers),
):
    sale = create_sale(
        ctx,
        request.client_id,
        request.product_id,
        request.value,
        lead_id=request.lead_id,
        seller_id=request.seller_id,
        installments=request.installments,
    )
    return _sale_response(sale)


@router.get("/sales/{sale_id}", response_model=SaleResponse, summary="Get Sale")
def get_sale(
    sale_id: UUID,
    ctx: ServiceContext = Depends(get_context),
    user: AuthenticatedUser = Depends(_sellers),
):
    return _sale_response(require_sale(ctx.storage, sale_id))


@router.post(
    "/sales/{sale_id}/transition",
    response_model=SaleResponse,
    summary="Transition Sale",
    description="Move a sale along pendente -> qualificado -> proposta -> pago | perdido.",
)
def transition_sale(
    sale_id: UUID,
    request: SaleTransitionRequest,
    ctx: ServiceContext = Depends(get_context),
    user: AuthenticatedUser = Depends(_sellers),
):
    """
    Reaching `pago` queues policy emission and commission calculation.
    Terminal sales answer 409; `perdido` without a loss reason answers 422.
    """
    return _sale_response(transition(ctx, sale_id, request.status, loss_reason=request.loss_reason))


@router.post("/payments", response_model=PaymentResponse, status_code=201, summary="Open Payment")
def open_sale_payment(
    request: PaymentOpenRequest,
    ctx: ServiceContext = Depends(get_context),
    user: AuthenticatedUser = Depends(_sellers),
):
    payment = open_payment(
        ctx,
        request.sale_id,
        amount=request.amount,
        currency=request.currency,
        payment_intent_id=request.payment_intent_id,
        checkout_session_id=request.checkout_session_id,
    )
    return _payment_response(payment)


# ============================================================================
# Bulk operations
# ============================================================================

@router.post("/bulk/sales/transition", response_model=BulkResponse, summary="Bulk Transition Sales")
def bulk_transition(
    request: BulkTransitionRequest,
    ctx: ServiceContext = Depends(get_context),
    user: AuthenticatedUser = Depends(_managers),
):
    result = bulk_transition_sales(ctx, request.sale_ids, request.status, loss_reason=request.loss_reason)
    return BulkResponse(**result.to_dict())


@router.post("/bulk/policies/reemit", response_model=BulkResponse, summary="Bulk Re-emit Policies")
def bulk_reemit(
    request: BulkIdsRequest,
    ctx: ServiceContext = Depends(get_context),
    user: AuthenticatedUser = Depends(_managers),
):
    """`ids` are sale ids; each paid sale's policy is emitted or re-driven."""
    return BulkResponse(**bulk_reemit_policies(ctx, request.ids).to_dict())


@router.post("/bulk/commissions/approve", response_model=BulkResponse, summary="Bulk Approve Commissions")
def bulk_approve(
    request: BulkIdsRequest,
    ctx: ServiceContext = Depends(get_context),
    user: AuthenticatedUser = Depends(_managers),
):
    return BulkResponse(**bulk_approve_commissions(ctx, request.ids).to_dict())


@router.post("/bulk/reconcile", response_model=BulkResponse, summary="Reconcile Paid Sales")
def reconcile(
    limit: Optional[int] = Query(None, ge=1),
    ctx: ServiceContext = Depends(get_context),
    user: AuthenticatedUser = Depends(_managers),
):
    return BulkResponse(**reconcile_paid_sales(ctx, limit=limit).to_dict())


# ============================================================================
# Scheduler passes
# ============================================================================

@router.post("/outbox/process", response_model=OutboxBatchResponse, summary="Process Outbox")
def process_outbox(
    limit: Optional[int] = Query(None, ge=1),
    ctx: ServiceContext = Depends(get_context),
    user: AuthenticatedUser = Depends(_operators),
):
    return OutboxBatchResponse(**process_pending_jobs(ctx, limit=limit).to_dict())


@router.post("/recovery/trigger", summary="Trigger Recovery Campaign")
def trigger_lead_recovery(
    request: RecoveryTriggerRequest,
    ctx: ServiceContext = Depends(get_context),
    user: AuthenticatedUser = Depends(_collections),
):
    campaign = trigger_recovery(ctx, request.lead_id, request.reason, max_attempts=request.max_attempts)
    return {
        "campaign_id": str(campaign.campaign_id),
        "lead_id": str(campaign.lead_id),
        "trigger_reason": campaign.trigger_reason.value,
        "status": campaign.status.value,
        "attempts": campaign.attempts,
        "max_attempts": campaign.max_attempts,
        "next_attempt_at": campaign.next_attempt_at.isoformat() if campaign.next_attempt_at else None,
    }


@router.post("/recovery/send", summary="Send Recovery Message")
def send_lead_recovery(
    request: RecoverySendRequest,
    ctx: ServiceContext = Depends(get_context),
    user: AuthenticatedUser = Depends(_collections),
):
    attempt = send_recovery_message(
        ctx, request.lead_id, reason=request.reason, respect_schedule=request.respect_schedule
    )
    return attempt.to_dict()


@router.post("/recovery/process", summary="Process Due Recovery Campaigns")
def process_recovery(
    limit: Optional[int] = Query(None, ge=1),
    ctx: ServiceContext = Depends(get_context),
    user: AuthenticatedUser = Depends(_collections),
):
    results = process_due_campaigns(ctx, limit=limit)
    return {"processed": len(results), "results": results}
