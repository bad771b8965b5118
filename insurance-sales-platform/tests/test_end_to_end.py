"""
End-to-end flow over the in-memory gateways.

Covers contract rules:
- A sale reaching pago is issued exactly one policy and one commission per rule.
- The client gets exactly one delivery message.
- The welcome kit runs only after its delay, through the outbox.
- Every workflow run leaves a completed execution log row.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from domain.policy import PolicyStatus
from domain.sale import SaleStatus
from repositories.commission_repository import list_commissions_for_sale
from repositories.policy_repository import get_policy_for_sale
from services.bulk_service import reconcile_paid_sales
from services.outbox_service import process_pending_jobs
from services.sale_state_machine import transition


def test_paid_sale_to_policy_commission_and_welcome_kit(ctx, seed, storage, messaging, welcome_kit, clock) -> None:
    """Verify pago -> outbox pass -> emitida policy, 100.00 commission, one message, then the welcome kit."""

    sale = seed.sale(status=SaleStatus.PROPOSTA, value="2000.00", category="auto")
    seed.rule(sale.product_id, percentage="5")

    transition(ctx, sale.sale_id, SaleStatus.PAGO)
    first = process_pending_jobs(ctx)

    assert [o.job_type for o in first.outcomes] == ["policy-emission", "commission-calculation"]
    assert first.completed == 2

    policy = get_policy_for_sale(storage, sale.sale_id)
    assert policy.status is PolicyStatus.EMITIDA
    assert policy.insurer == "SulAmérica"
    [commission] = list_commissions_for_sale(storage, sale.sale_id)
    assert commission.amount == Decimal("100.00")
    assert len(messaging.sent) == 1
    assert welcome_kit.payloads == []

    clock.advance(timedelta(seconds=3))
    second = process_pending_jobs(ctx)

    assert [o.job_type for o in second.outcomes] == ["welcome-kit"]
    assert welcome_kit.payloads == [
        {
            "policy_id": str(policy.policy_id),
            "sale_id": str(sale.sale_id),
            "client_id": str(sale.client_id),
        }
    ]
    assert {row["status"] for row in storage.rows("automation_logs")} == {"completed"}
    assert len(storage.rows("automation_logs")) == 3

    # Nothing left to re-drive, and re-processing sends nothing new.
    assert reconcile_paid_sales(ctx).processed == 0
    clock.advance(timedelta(hours=1))
    assert process_pending_jobs(ctx).claimed == 0
    assert len(messaging.sent) == 1
    assert len(storage.rows("policies")) == 1
