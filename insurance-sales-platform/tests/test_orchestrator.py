"""
Tests for `services/workflow_orchestrator.py` and `domain/intent.py`.

Covers contract rules:
- Every execution leaves exactly one log row, finished completed or failed.
- Execution ids are `exec_{epochMillis}_{9 base36 chars}` and unique.
- Unknown workflows and non-object trigger data fail with a logged row.
- Lead qualification scores intent and contact completeness; > 70 sends a proposal.
- Payment follow-up picks urgency by days overdue and schedules the next reminder in 24h.
"""

from __future__ import annotations

import re
from datetime import timedelta
from decimal import Decimal

import pytest

from domain.errors import NotFoundError, ValidationError
from domain.intent import CANCELLATION, GENERAL_INQUIRY, INSURANCE_INTEREST, PRICE_INQUIRY, score_lead
from domain.sale import SaleStatus
from repositories.lead_repository import require_lead
from repositories.outbox_repository import list_jobs
from repositories.sale_repository import require_sale
from services.workflow_orchestrator import execute, payment_urgency, run_workflow

from conftest import NOW

EXECUTION_ID = re.compile(r"^exec_\d+_[0-9a-z]{9}$")


def _logs(storage):
    return storage.rows("automation_logs")


def test_unknown_workflow_leaves_failed_row(ctx, storage) -> None:
    """Verify an unknown workflow id raises and is still logged as failed."""

    with pytest.raises(ValidationError, match="Unknown workflow: nope"):
        execute(ctx, "nope", "manual", {})

    [row] = _logs(storage)
    assert row["status"] == "failed"
    assert row["workflow_id"] == "nope"
    assert row["error_message"] == "Unknown workflow: nope"
    assert row["duration_ms"] >= 0


def test_unknown_trigger_type_fails(ctx, storage) -> None:
    """Verify an unknown trigger type is rejected and logged."""

    with pytest.raises(ValidationError):
        execute(ctx, "lead-qualification", "cron", {"message": "oi"})

    assert [row["status"] for row in _logs(storage)] == ["failed"]


def test_non_object_trigger_data_fails(ctx, storage) -> None:
    """Verify a list or string payload is a validation error with a failed row."""

    with pytest.raises(ValidationError, match="trigger_data must be an object"):
        execute(ctx, "lead-qualification", "webhook", ["not", "an", "object"])

    [row] = _logs(storage)
    assert row["status"] == "failed"
    assert row["trigger_data"] == {}


def test_successful_run_leaves_completed_row(ctx, storage) -> None:
    """Verify a completed row with the result, timing and a well-formed execution id."""

    run = execute(ctx, "lead-qualification", "webhook", {"message": "Quero um seguro", "phone": "11999990000"})

    assert EXECUTION_ID.match(run.execution_id)
    assert run.execution_id.startswith(f"exec_{int(NOW.timestamp() * 1000)}_")
    [row] = _logs(storage)
    assert row["id"] == run.execution_id
    assert row["status"] == "completed"
    assert row["workflow_name"] == "Qualificação de Leads"
    assert row["result_data"] == dict(run.result)
    assert row["completed_at"] is not None
    assert row["error_message"] is None


def test_execution_ids_are_unique(ctx) -> None:
    """Verify repeated runs at the same instant get distinct ids."""

    ids = {execute(ctx, "lead-qualification", "manual", {"message": "oi"}).execution_id for _ in range(20)}

    assert len(ids) == 20


def test_workflow_failure_is_logged_and_reraised(ctx, storage) -> None:
    """Verify a workflow error propagates after the row is marked failed."""

    missing = "00000000-0000-0000-0000-000000000099"

    with pytest.raises(NotFoundError):
        execute(ctx, "policy-emission", "manual", {"sale_id": missing})

    [row] = _logs(storage)
    assert row["status"] == "failed"
    assert row["error_message"] == f"sale not found: {missing}"


def test_missing_sale_id_is_validation_error(ctx) -> None:
    """Verify workflows that need a sale reject payloads without one."""

    with pytest.raises(ValidationError, match="sale_id is required"):
        execute(ctx, "commission-calculation", "manual", {})


@pytest.mark.parametrize(
    "intent, contact, expected",
    [
        (INSURANCE_INTEREST, {"phone": "1", "email": "a@b", "name": "A"}, 100),
        (INSURANCE_INTEREST, {}, 80),
        (PRICE_INQUIRY, {"phone": "1"}, 80),
        (GENERAL_INQUIRY, {"phone": "1", "email": "a@b"}, 70),
        (CANCELLATION, {"phone": "1"}, 20),
        (CANCELLATION, {}, 10),
    ],
)
def test_score_lead(intent, contact, expected) -> None:
    """Verify base 50, intent bonus, +10 per contact field, clamped to [0, 100]."""

    assert score_lead(intent, contact) == expected


def test_lead_qualification_high_score_creates_qualified_sale(ctx, seed, storage) -> None:
    """Verify a high-scoring lead with product and value becomes a qualificado sale."""

    client = seed.client()
    product = seed.product("auto")
    lead = seed.lead(client_id=client.client_id)

    run = execute(
        ctx,
        "lead-qualification",
        "webhook",
        {
            "lead_id": str(lead.lead_id),
            "message": "Quero fazer um seguro para meu carro",
            "product_id": str(product.product_id),
            "value": "1800.00",
        },
    )

    assert run.result["intent"] == INSURANCE_INTEREST
    assert run.result["score"] == 100
    assert run.result["next_action"] == "send_proposal"
    sale = require_sale(storage, run.result["sale_id"])
    assert sale.status is SaleStatus.QUALIFICADO
    assert sale.value == Decimal("1800.00")
    assert sale.lead_id == lead.lead_id
    assert sale.seller_type == "automated"
    stored_lead = require_lead(storage, lead.lead_id)
    assert stored_lead.score == 100
    assert stored_lead.status == "qualificado"


def test_lead_qualification_low_score_requests_info(ctx, storage) -> None:
    """Verify a vague message without contact details asks for more information."""

    run = execute(ctx, "lead-qualification", "webhook", {"message": "bom dia"})

    assert run.result["intent"] == GENERAL_INQUIRY
    assert run.result["score"] == 50
    assert run.result["next_action"] == "request_more_info"
    assert "sale_id" not in run.result
    assert storage.rows("sales") == []


def test_lead_qualification_cancellation_scores_low(ctx) -> None:
    """Verify a cancellation message with a phone scores 20."""

    run = execute(ctx, "lead-qualification", "webhook", {"message": "Quero cancelar", "phone": "11999990000"})

    assert run.result["intent"] == CANCELLATION
    assert run.result["score"] == 20


@pytest.mark.parametrize(
    "days, urgency",
    [(0, "low"), (3, "low"), (4, "medium"), (7, "medium"), (8, "high"), (30, "high")],
)
def test_payment_urgency(days, urgency) -> None:
    """Verify > 7 days is high, > 3 is medium, otherwise low."""

    assert payment_urgency(days) == urgency


def test_payment_follow_up_sends_and_schedules_next(ctx, seed, messaging) -> None:
    """Verify a reminder is sent and the next one is queued 24h later with one more day overdue."""

    sale = seed.sale(status=SaleStatus.PROPOSTA, value="750.00")

    run = execute(ctx, "payment-follow-up", "schedule", {"sale_id": str(sale.sale_id), "days_overdue": 8})

    assert run.result["urgency"] == "high"
    assert run.result["message_sent"] is True
    assert run.result["template_used"] == "urgent_payment_notice"
    assert messaging.sent[0][1] == (
        "Maria, seu pagamento de R$ 750.00 está em atraso há 8 dias. "
        "Regularize agora para não perder sua cotação! 🚨"
    )
    [job] = list_jobs(ctx.storage, {"job_type": "payment-follow-up"})
    assert job.payload == {"sale_id": str(sale.sale_id), "days_overdue": 9}
    assert job.scheduled_at == NOW + timedelta(hours=24)
    assert job.dedupe_key == f"payment-follow-up:{sale.sale_id}:9"


def test_payment_follow_up_skips_closed_sale(ctx, seed, messaging) -> None:
    """Verify a paid sale gets no reminder and no further follow-up."""

    sale = seed.sale(status=SaleStatus.PAGO)

    run = execute(ctx, "payment-follow-up", "schedule", {"sale_id": str(sale.sale_id)})

    assert run.result["message_sent"] is False
    assert messaging.sent == []
    assert list_jobs(ctx.storage, {"job_type": "payment-follow-up"}) == []


def test_recovery_workflow_trigger_then_send(ctx, seed, messaging) -> None:
    """Verify the recovery workflow can start a campaign and send its first nudge."""

    lead = seed.lead(name="Ana")

    started = execute(ctx, "recovery-campaign", "manual", {"action": "trigger", "lead_id": str(lead.lead_id), "reason": "abandono"})
    sent = execute(ctx, "recovery-campaign", "manual", {"action": "send", "lead_id": str(lead.lead_id)})

    assert started.result["status"] == "ativo"
    assert sent.result["status"] == "sent"
    assert sent.result["attempts"] == 1
    assert len(messaging.sent) == 1


def test_recovery_workflow_rejects_unknown_action(ctx, seed) -> None:
    """Verify an unknown recovery action is a validation error."""

    lead = seed.lead()

    with pytest.raises(ValidationError):
        execute(ctx, "recovery-campaign", "manual", {"action": "pause", "lead_id": str(lead.lead_id)})


def test_run_workflow_returns_plain_dict(ctx) -> None:
    """Verify the trigger surface returns execution_id, workflow_id, result and duration_ms."""

    out = run_workflow(ctx, "lead-qualification", "manual", {"message": "qual o preço?"})

    assert set(out) == {"execution_id", "workflow_id", "result", "duration_ms"}
    assert out["workflow_id"] == "lead-qualification"
    assert out["result"]["intent"] == PRICE_INQUIRY
    assert isinstance(out["duration_ms"], int)
