"""
Workflow orchestrator.

Single entry point for every named workflow, whether triggered by a webhook,
the scheduler (outbox consumer) or an operator:

1. Generate an execution id `exec_{epochMillis}_{base36}`
2. Insert an `automation_logs` row with status `running`
3. Dispatch to the registered workflow
4. Finish the row exactly once: `completed` with the result, or `failed`
   with the error message, both with the measured duration
5. Re-raise failures to the caller

Unknown workflow ids and malformed trigger data also end in a `failed` row.
"""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Union
from uuid import UUID

from domain.errors import IntegrationError, NotFoundError, SalesPlatformError, ValidationError
from domain.intent import next_action_for, score_lead
from domain.sale import SaleStatus
from domain.workflow import (
    ExecutionStatus,
    TriggerType,
    WorkflowExecution,
    WorkflowId,
    WorkflowRun,
    generate_execution_id,
    parse_trigger_type,
    parse_workflow_id,
)
from repositories.client_repository import require_client
from repositories.lead_repository import get_lead_by_id, record_qualification
from repositories.message_repository import get_active_template, record_outbound_message
from repositories.sale_repository import require_sale
from repositories.workflow_log_repository import finish_execution, insert_execution
from services.commission_service import calculate_commissions
from services.context import ServiceContext
from services.messaging import render_template
from services.outbox_service import dedupe_key_for, enqueue_follow_up
from services.payment_service import handle_stripe_event
from services.policy_issuance_service import issue_policy, policy_summary, trigger_welcome_kit
from services.recovery_service import send_recovery_message, trigger_recovery
from services.sale_state_machine import create_sale, parse_amount, transition

logger = logging.getLogger(__name__)

WorkflowHandler = Callable[[ServiceContext, Mapping[str, Any]], Dict[str, Any]]

WORKFLOW_NAMES: Mapping[WorkflowId, str] = {
    WorkflowId.LEAD_QUALIFICATION: "Qualificação de Leads",
    WorkflowId.PAYMENT_FOLLOW_UP: "Follow-up de Pagamento",
    WorkflowId.POLICY_EMISSION: "Emissão de Apólice",
    WorkflowId.RECOVERY_CAMPAIGN: "Campanha de Recuperação",
    WorkflowId.COMMISSION_CALCULATION: "Cálculo de Comissões",
    WorkflowId.WELCOME_KIT: "Kit de Boas-vindas",
    WorkflowId.PAYMENT_WEBHOOK: "Evento de Pagamento",
}

FOLLOW_UP_INTERVAL = timedelta(hours=24)

FOLLOW_UP_TEMPLATES: Mapping[str, str] = {
    "low": "gentle_reminder",
    "medium": "payment_reminder",
    "high": "urgent_payment_notice",
}

DEFAULT_FOLLOW_UP_MESSAGES: Mapping[str, str] = {
    "low": "Oi {{client_name}}! Passando para lembrar do pagamento do seu seguro. Qualquer dúvida, é só chamar! 😊",
    "medium": "{{client_name}}, seu pagamento de R$ {{value}} ainda está pendente. Vamos finalizar sua proteção hoje? 🛡️",
    "high": "{{client_name}}, seu pagamento de R$ {{value}} está em atraso há {{days_overdue}} dias. Regularize agora para não perder sua cotação! 🚨",
}


# ============================================================================
# Trigger data helpers
# ============================================================================

def _require_uuid(data: Mapping[str, Any], key: str) -> UUID:
    raw = data.get(key)
    if not raw:
        raise ValidationError(f"{key} is required")
    try:
        return UUID(str(raw))
    except ValueError as exc:
        raise ValidationError(f"{key} must be a UUID, got {raw!r}") from exc


def _optional_uuid(data: Mapping[str, Any], key: str) -> Optional[UUID]:
    return _require_uuid(data, key) if data.get(key) else None


def _require_int(data: Mapping[str, Any], key: str, default: Optional[int] = None) -> int:
    raw = data.get(key, default)
    if raw is None:
        raise ValidationError(f"{key} is required")
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{key} must be an integer, got {raw!r}") from exc


# ============================================================================
# Workflows
# ============================================================================

def _lead_qualification(ctx: ServiceContext, data: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Classify the inbound message, score the lead and decide the next action.

    A qualifying lead with a product and value becomes a sale in `qualificado`.
    """

    lead_id = _optional_uuid(data, "lead_id")
    lead = get_lead_by_id(ctx.storage, lead_id) if lead_id else None
    if lead_id and lead is None:
        raise NotFoundError("lead", lead_id)

    contact = {
        "phone": data.get("phone") or (lead.phone if lead else None),
        "email": data.get("email") or (lead.email if lead else None),
        "name": data.get("name") or (lead.name if lead else None),
    }
    classification = ctx.classifier.classify(str(data.get("message") or ""))
    score = score_lead(classification.intent, contact)
    next_action = next_action_for(score)

    result: Dict[str, Any] = {
        "intent": classification.intent,
        "confidence": classification.confidence,
        "score": score,
        "next_action": next_action,
        "processed_at": ctx.now().isoformat(),
    }

    if lead is not None:
        status = "qualificado" if next_action == "send_proposal" else "em_contato"
        record_qualification(ctx.storage, lead.lead_id, score, classification.intent, status)

    product_id = _optional_uuid(data, "product_id")
    client_id = _optional_uuid(data, "client_id") or (lead.client_id if lead else None)
    if next_action == "send_proposal" and product_id and client_id and data.get("value") is not None:
        sale = create_sale(
            ctx,
            client_id,
            product_id,
            parse_amount(data.get("value")),
            lead_id=lead.lead_id if lead else None,
            seller_type="automated",
        )
        sale = transition(ctx, sale.sale_id, SaleStatus.QUALIFICADO)
        result["sale_id"] = str(sale.sale_id)
        result["sale_status"] = sale.status.value

    return result


def payment_urgency(days_overdue: int) -> str:
    if days_overdue > 7:
        return "high"
    if days_overdue > 3:
        return "medium"
    return "low"


def _payment_follow_up(ctx: ServiceContext, data: Mapping[str, Any]) -> Dict[str, Any]:
    """Remind the client of an open sale's payment and schedule the next reminder."""

    sale_id = _require_uuid(data, "sale_id")
    days_overdue = _require_int(data, "days_overdue", default=0)
    sale = require_sale(ctx.storage, sale_id)
    if sale.is_terminal:
        return {"message_sent": False, "reason": f"sale is {sale.status.value}"}

    client = require_client(ctx.storage, sale.client_id)
    urgency = payment_urgency(days_overdue)
    template_name = FOLLOW_UP_TEMPLATES[urgency]
    template = get_active_template(ctx.storage, template_name) or DEFAULT_FOLLOW_UP_MESSAGES[urgency]
    text = render_template(
        template,
        {"client_name": client.first_name, "value": f"{sale.value:.2f}", "days_overdue": days_overdue},
    )
    if not client.phone:
        raise IntegrationError(f"client {client.client_id} has no phone for payment reminders")
    delivery = ctx.messaging.send(client.phone, text)

    now = ctx.now()
    try:
        record_outbound_message(
            ctx.storage, delivery.address, text, now, external_id=delivery.external_id, client_id=client.client_id
        )
    except SalesPlatformError:
        logger.warning("Could not log payment reminder", extra={"sale_id": str(sale_id)}, exc_info=True)

    next_follow_up = now + FOLLOW_UP_INTERVAL
    enqueue_follow_up(
        ctx,
        WorkflowId.PAYMENT_FOLLOW_UP,
        {"sale_id": str(sale_id), "days_overdue": days_overdue + 1},
        delay=FOLLOW_UP_INTERVAL,
        dedupe_key=dedupe_key_for(WorkflowId.PAYMENT_FOLLOW_UP, f"{sale_id}:{days_overdue + 1}"),
    )
    return {
        "urgency": urgency,
        "message_sent": True,
        "template_used": template_name,
        "next_follow_up": next_follow_up.isoformat(),
    }


def _policy_emission(ctx: ServiceContext, data: Mapping[str, Any]) -> Dict[str, Any]:
    return policy_summary(issue_policy(ctx, _require_uuid(data, "sale_id")))


def _recovery_campaign(ctx: ServiceContext, data: Mapping[str, Any]) -> Dict[str, Any]:
    lead_id = _require_uuid(data, "lead_id")
    action = str(data.get("action") or "send")
    if action == "trigger":
        if not data.get("reason"):
            raise ValidationError("reason is required to trigger a recovery campaign")
        campaign = trigger_recovery(ctx, lead_id, data["reason"])
        return {
            "action": action,
            "campaign_id": str(campaign.campaign_id),
            "status": campaign.status.value,
            "next_attempt_at": campaign.next_attempt_at.isoformat() if campaign.next_attempt_at else None,
        }
    if action == "send":
        attempt = send_recovery_message(
            ctx,
            lead_id,
            data.get("reason"),
            respect_schedule=bool(data.get("respect_schedule", False)),
        )
        return {"action": action, **attempt.to_dict()}
    raise ValidationError(f"Unknown recovery action {action!r}; expected 'trigger' or 'send'")


def _commission_calculation(ctx: ServiceContext, data: Mapping[str, Any]) -> Dict[str, Any]:
    return calculate_commissions(ctx, _require_uuid(data, "sale_id")).to_dict()


def _welcome_kit(ctx: ServiceContext, data: Mapping[str, Any]) -> Dict[str, Any]:
    return trigger_welcome_kit(ctx, data)


def _payment_webhook(ctx: ServiceContext, data: Mapping[str, Any]) -> Dict[str, Any]:
    return handle_stripe_event(ctx, data)


WORKFLOW_REGISTRY: Mapping[WorkflowId, WorkflowHandler] = {
    WorkflowId.LEAD_QUALIFICATION: _lead_qualification,
    WorkflowId.PAYMENT_FOLLOW_UP: _payment_follow_up,
    WorkflowId.POLICY_EMISSION: _policy_emission,
    WorkflowId.RECOVERY_CAMPAIGN: _recovery_campaign,
    WorkflowId.COMMISSION_CALCULATION: _commission_calculation,
    WorkflowId.WELCOME_KIT: _welcome_kit,
    WorkflowId.PAYMENT_WEBHOOK: _payment_webhook,
}


# ============================================================================
# Execution
# ============================================================================

def _elapsed_ms(started: float) -> int:
    return max(0, int((time.perf_counter() - started) * 1000))


def execute(
    ctx: ServiceContext,
    workflow_id: Union[str, WorkflowId],
    trigger_type: Union[str, TriggerType],
    trigger_data: Any,
) -> WorkflowRun:
    """
    Run one workflow and record its execution log.

    Raises whatever the workflow raised (after logging it as failed);
    ValidationError for an unknown workflow, unknown trigger type or
    non-object trigger data.
    """

    raw_workflow = workflow_id.value if isinstance(workflow_id, WorkflowId) else str(workflow_id)
    raw_trigger = trigger_type.value if isinstance(trigger_type, TriggerType) else str(trigger_type)
    data = dict(trigger_data) if isinstance(trigger_data, Mapping) else {}

    started_at = ctx.now()
    started = time.perf_counter()
    execution_id = generate_execution_id(started_at, ctx.rng)
    known = raw_workflow in {w.value for w in WorkflowId}

    insert_execution(
        ctx.storage,
        WorkflowExecution(
            execution_id=execution_id,
            workflow_id=raw_workflow,
            trigger_type=raw_trigger,
            status=ExecutionStatus.RUNNING,
            started_at=started_at,
            trigger_data=data,
            workflow_name=WORKFLOW_NAMES[WorkflowId(raw_workflow)] if known else None,
            tenant_id=ctx.tenant_id,
        ),
    )

    try:
        workflow = parse_workflow_id(raw_workflow)
        parse_trigger_type(raw_trigger)
        if not isinstance(trigger_data, Mapping):
            raise ValidationError("trigger_data must be an object")
        result = WORKFLOW_REGISTRY[workflow](ctx, data)
    except Exception as exc:
        duration_ms = _elapsed_ms(started)
        message = exc.message if isinstance(exc, SalesPlatformError) else str(exc)
        finish_execution(
            ctx.storage,
            execution_id,
            ExecutionStatus.FAILED,
            completed_at=ctx.now(),
            duration_ms=duration_ms,
            error_message=message,
        )
        logger.error(
            "Workflow failed",
            extra={
                "execution_id": execution_id,
                "workflow_id": raw_workflow,
                "duration_ms": duration_ms,
                "error": message,
            },
        )
        raise

    duration_ms = _elapsed_ms(started)
    finish_execution(
        ctx.storage,
        execution_id,
        ExecutionStatus.COMPLETED,
        completed_at=ctx.now(),
        duration_ms=duration_ms,
        result_data=result,
    )
    logger.info(
        "Workflow completed",
        extra={"execution_id": execution_id, "workflow_id": raw_workflow, "duration_ms": duration_ms},
    )
    return WorkflowRun(
        execution_id=execution_id,
        workflow_id=raw_workflow,
        result=result,
        duration_ms=duration_ms,
    )


def run_workflow(
    ctx: ServiceContext,
    workflow_id: Union[str, WorkflowId],
    trigger_type: Union[str, TriggerType],
    payload: Any,
) -> Dict[str, Any]:
    """Trigger surface for the HTTP layer and scripts."""

    run = execute(ctx, workflow_id, trigger_type, payload)
    return {
        "execution_id": run.execution_id,
        "workflow_id": run.workflow_id,
        "result": dict(run.result),
        "duration_ms": run.duration_ms,
    }


__all__ = [
    "WORKFLOW_NAMES",
    "WORKFLOW_REGISTRY",
    "payment_urgency",
    "execute",
    "run_workflow",
]
