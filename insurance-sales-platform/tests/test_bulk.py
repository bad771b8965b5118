"""
Tests for `services/bulk_service.py`.

Covers contract rules:
- Bulk operations report one entry per id and never abort on a failure.
- Reconciliation re-drives paid sales lacking an issued policy, and only those.
- A policy still processando within the grace period is not re-driven.
- Re-emission and reconciliation run as workflows and leave execution rows.
- The reconcile limit applies after filtering out issued sales.
"""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest

from domain.errors import IntegrationError
from domain.policy import PROCESSING_GRACE, Policy, PolicyStatus, coverage_window
from domain.sale import SaleStatus
from repositories.policy_repository import get_policy_for_sale, insert_policy
from services.bulk_service import (
    bulk_approve_commissions,
    bulk_reemit_policies,
    bulk_transition_sales,
    reconcile_paid_sales,
)
from services.commission_service import calculate_commissions
from services.policy_issuance_service import issue_policy

from conftest import NOW


def test_bulk_transition_mixes_successes_and_failures(ctx, seed) -> None:
    """Verify each sale gets its own outcome and one failure does not stop the rest."""

    open_sale = seed.sale(status=SaleStatus.QUALIFICADO)
    paid_sale = seed.sale(status=SaleStatus.PAGO)
    missing = uuid4()

    result = bulk_transition_sales(ctx, [open_sale.sale_id, paid_sale.sale_id, missing], "proposta")

    assert (result.processed, result.succeeded, result.failed) == (3, 1, 2)
    by_id = {r.id: r for r in result.results}
    assert by_id[str(open_sale.sale_id)].data == {"status": "proposta"}
    assert by_id[str(paid_sale.sale_id)].error == "INVALID_TRANSITION"
    assert by_id[str(missing)].error == "NOT_FOUND"


def test_bulk_result_to_dict_flattens_item_data(ctx, seed) -> None:
    """Verify the serialized summary merges per-item data into each entry."""

    sale = seed.sale()

    summary = bulk_transition_sales(ctx, [sale.sale_id], "perdido", loss_reason="Sem retorno").to_dict()

    assert summary["operation"] == "transition_sales"
    assert summary["results"] == [
        {"id": str(sale.sale_id), "success": True, "error": None, "detail": None, "status": "perdido"}
    ]


def test_bulk_approve_commissions(ctx, seed) -> None:
    """Verify approval per commission, with an already-approved one reported as a conflict."""

    sale = seed.sale(status=SaleStatus.PAGO, value="1000.00")
    seed.rule(sale.product_id, percentage="5")
    seed.rule(sale.product_id, percentage="2")
    first, second = calculate_commissions(ctx, sale.sale_id).created

    bulk_approve_commissions(ctx, [first.commission_id])
    result = bulk_approve_commissions(ctx, [first.commission_id, second.commission_id])

    assert [r.success for r in result.results] == [False, True]
    assert result.results[0].error == "CONFLICT"
    assert result.results[1].data["status"] == "aprovada"


def test_reconcile_redrives_only_stuck_paid_sales(ctx, seed, documents, storage) -> None:
    """Verify paid sales with a failed or missing policy are issued; issued ones are left alone."""

    issued = seed.sale(status=SaleStatus.PAGO)
    issue_policy(ctx, issued.sale_id)

    documents.fail_with = IntegrationError("pdf service down")
    failed = seed.sale(status=SaleStatus.PAGO)
    with pytest.raises(IntegrationError):
        issue_policy(ctx, failed.sale_id)
    documents.fail_with = None

    never_started = seed.sale(status=SaleStatus.PAGO)
    seed.rule(never_started.product_id)
    seed.sale(status=SaleStatus.PROPOSTA)

    result = reconcile_paid_sales(ctx)

    assert {r.id for r in result.results} == {str(failed.sale_id), str(never_started.sale_id)}
    assert result.succeeded == 2
    assert get_policy_for_sale(storage, failed.sale_id).status is PolicyStatus.EMITIDA
    assert get_policy_for_sale(storage, never_started.sale_id).status is PolicyStatus.EMITIDA
    assert len(storage.rows("commissions")) == 1
    assert len(storage.rows("policies")) == 3


def test_bulk_reemit_reports_unpaid_sales(ctx, seed) -> None:
    """Verify re-emission issues paid sales and reports unpaid ones as validation errors."""

    paid = seed.sale(status=SaleStatus.PAGO)
    unpaid = seed.sale(status=SaleStatus.PROPOSTA)

    result = bulk_reemit_policies(ctx, [paid.sale_id, unpaid.sale_id])

    assert result.results[0].success is True
    assert result.results[0].data["policy_status"] == "emitida"
    assert result.results[1].error == "VALIDATION_ERROR"


def test_bulk_reemit_logs_one_workflow_run_per_sale(ctx, seed, storage) -> None:
    """Verify each re-emitted sale leaves its own execution row, failed ones included."""

    paid = seed.sale(status=SaleStatus.PAGO)
    unpaid = seed.sale(status=SaleStatus.PROPOSTA)

    result = bulk_reemit_policies(ctx, [paid.sale_id, unpaid.sale_id])

    logs = storage.rows("automation_logs")
    assert [(row["workflow_id"], row["trigger_type"], row["status"]) for row in logs] == [
        ("policy-emission", "manual", "completed"),
        ("policy-emission", "manual", "failed"),
    ]
    assert logs[1]["trigger_data"] == {"sale_id": str(unpaid.sale_id)}
    assert result.results[0].data["execution_id"] == logs[0]["id"]


def test_reconcile_logs_emission_and_commission_runs(ctx, seed, storage) -> None:
    """Verify a reconciled sale runs issuance and commissions as logged workflows."""

    sale = seed.sale(status=SaleStatus.PAGO)

    result = reconcile_paid_sales(ctx)

    logs = storage.rows("automation_logs")
    assert [(row["workflow_id"], row["status"]) for row in logs] == [
        ("policy-emission", "completed"),
        ("commission-calculation", "completed"),
    ]
    assert result.results[0].id == str(sale.sale_id)
    assert result.results[0].data["execution_ids"] == [row["id"] for row in logs]


def test_reconcile_limit_counts_only_stuck_sales(ctx, seed) -> None:
    """Verify an issued sale listed first does not use up the limit."""

    healthy = seed.sale(status=SaleStatus.PAGO)
    issue_policy(ctx, healthy.sale_id)
    stuck = seed.sale(status=SaleStatus.PAGO)

    result = reconcile_paid_sales(ctx, limit=1)

    assert [r.id for r in result.results] == [str(stuck.sale_id)]
    assert result.succeeded == 1


def test_reconcile_skips_live_processing_policy(ctx, seed, storage, messaging, clock) -> None:
    """Verify a policy processando within the grace period is left alone, then re-driven once it stalls."""

    sale = seed.sale(status=SaleStatus.PAGO)
    start, end = coverage_window(NOW.date())
    insert_policy(
        storage,
        Policy(
            policy_id=uuid4(),
            policy_number="202500000001",
            sale_id=sale.sale_id,
            client_id=sale.client_id,
            product_id=sale.product_id,
            insurer="Porto Seguro",
            status=PolicyStatus.PROCESSANDO,
            coverage_start=start,
            coverage_end=end,
            created_at=NOW,
            processing_started_at=NOW,
        ),
    )

    assert reconcile_paid_sales(ctx).processed == 0
    assert messaging.sent == []

    clock.advance(PROCESSING_GRACE + timedelta(minutes=1))
    result = reconcile_paid_sales(ctx)

    assert result.succeeded == 1
    assert get_policy_for_sale(storage, sale.sale_id).status is PolicyStatus.EMITIDA
    assert len(storage.rows("policies")) == 1
    assert len(messaging.sent) == 1
