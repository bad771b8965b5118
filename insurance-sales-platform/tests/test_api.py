"""
Tests for the HTTP layer (`api/`).

Covers contract rules:
- Every workflow endpoint requires a Bearer token for an active user with an allowed role.
- Service errors map to status codes with an `{"error", "detail"}` body.
- The Stripe webhook verifies signatures when a secret is configured.
- Webhook events run as a logged `payment-webhook` workflow in the threadpool.
"""

from __future__ import annotations

import json
from dataclasses import replace
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from api.main import app
from api.pipeline import get_context, get_token_verifier
from api.routers import webhooks
from config import Settings
from domain.sale import SaleStatus
from services.payment_service import open_payment
from services.workflow_orchestrator import execute

ADMIN = {"Authorization": "Bearer admin-token"}
SELLER = {"Authorization": "Bearer vendas-token"}
COLLECTOR = {"Authorization": "Bearer cobranca-token"}
INACTIVE = {"Authorization": "Bearer inactive-token"}


@pytest.fixture
def client(ctx, storage):
    for user_id, role, active in [
        ("admin-token", "admin", True),
        ("vendas-token", "vendas", True),
        ("cobranca-token", "cobranca", True),
        ("inactive-token", "gestor", False),
    ]:
        storage.insert(
            "users",
            {"id": user_id, "email": f"{role}@corretora.com.br", "role": role, "is_active": active},
        )

    app.dependency_overrides[get_context] = lambda: ctx
    # Tokens double as user ids so tests can pick the caller by header.
    app.dependency_overrides[get_token_verifier] = lambda: (lambda token: token)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_health(client) -> None:
    """Verify the health endpoint needs no authentication."""

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["service"] == "insurance-sales-platform-api"


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Basic abc"}])
def test_missing_bearer_token_is_401(client, headers) -> None:
    """Verify requests without a Bearer token are rejected."""

    response = client.get("/api/v1/workflows/executions", headers=headers)

    assert response.status_code == 401


def test_unknown_user_is_401(client) -> None:
    """Verify a valid token without a profile row is rejected."""

    response = client.get("/api/v1/workflows/executions", headers={"Authorization": "Bearer nobody"})

    assert response.status_code == 401
    assert response.json()["detail"] == "User profile not found"


def test_inactive_user_is_403(client) -> None:
    """Verify inactive accounts are refused."""

    response = client.get("/api/v1/workflows/executions", headers=INACTIVE)

    assert response.status_code == 403
    assert response.json()["detail"] == "User account is inactive"


def test_role_not_allowed_is_403(client) -> None:
    """Verify a collections user cannot create sales."""

    body = {"client_id": str(uuid4()), "product_id": str(uuid4()), "value": "100.00"}

    response = client.post("/api/v1/sales", json=body, headers=COLLECTOR)

    assert response.status_code == 403
    assert response.json()["detail"].startswith("Access denied. Required roles:")


def test_create_and_transition_sale(client, seed, storage) -> None:
    """Verify a seller can open a sale and move it to pago, which queues the follow-ups."""

    customer = seed.client()
    product = seed.product("vida")

    created = client.post(
        "/api/v1/sales",
        json={"client_id": str(customer.client_id), "product_id": str(product.product_id), "value": "1200.00"},
        headers=SELLER,
    )
    assert created.status_code == 201
    sale_id = created.json()["sale_id"]
    assert created.json()["status"] == "pendente"

    paid = client.post(f"/api/v1/sales/{sale_id}/transition", json={"status": "pago"}, headers=SELLER)

    assert paid.status_code == 200
    assert paid.json()["status"] == "pago"
    assert paid.json()["closed_at"] is not None
    assert len(storage.rows("queue_jobs")) == 2


def test_invalid_transition_is_409(client, seed) -> None:
    """Verify leaving a terminal status answers 409 with the error code."""

    sale = seed.sale(status=SaleStatus.PAGO)

    response = client.post(f"/api/v1/sales/{sale.sale_id}/transition", json={"status": "proposta"}, headers=ADMIN)

    assert response.status_code == 409
    assert response.json()["error"] == "INVALID_TRANSITION"


def test_lost_without_reason_is_422(client, seed) -> None:
    """Verify perdido without a loss reason answers 422."""

    sale = seed.sale()

    response = client.post(f"/api/v1/sales/{sale.sale_id}/transition", json={"status": "perdido"}, headers=ADMIN)

    assert response.status_code == 422
    assert response.json()["error"] == "VALIDATION_ERROR"


def test_unknown_sale_is_404(client) -> None:
    """Verify a missing sale answers 404."""

    response = client.get("/api/v1/sales/00000000-0000-0000-0000-000000000404", headers=SELLER)

    assert response.status_code == 404
    assert response.json()["error"] == "NOT_FOUND"


def test_run_unknown_workflow_is_422_and_logged(client, storage) -> None:
    """Verify an unknown workflow answers 422 and leaves a failed execution row."""

    response = client.post("/api/v1/workflows/does-not-exist/run", json={}, headers=ADMIN)

    assert response.status_code == 422
    assert response.json() == {"error": "VALIDATION_ERROR", "detail": "Unknown workflow: does-not-exist"}
    assert [row["status"] for row in storage.rows("automation_logs")] == ["failed"]


def test_run_workflow_and_list_executions(client) -> None:
    """Verify a run returns its execution id and shows up in the execution list."""

    run = client.post(
        "/api/v1/workflows/lead-qualification/run",
        json={"trigger_type": "manual", "trigger_data": {"message": "quanto custa o seguro?"}},
        headers=ADMIN,
    )
    assert run.status_code == 200
    execution_id = run.json()["execution_id"]

    listed = client.get("/api/v1/workflows/executions", params={"workflow_id": "lead-qualification"}, headers=ADMIN)

    assert listed.status_code == 200
    assert [e["execution_id"] for e in listed.json()] == [execution_id]
    assert listed.json()[0]["status"] == "completed"


def test_bulk_transition_endpoint(client, seed) -> None:
    """Verify the bulk endpoint reports per-id outcomes."""

    good = seed.sale(status=SaleStatus.QUALIFICADO)
    bad = seed.sale(status=SaleStatus.PERDIDO)

    response = client.post(
        "/api/v1/bulk/sales/transition",
        json={"sale_ids": [str(good.sale_id), str(bad.sale_id)], "status": "proposta"},
        headers=ADMIN,
    )

    assert response.status_code == 200
    body = response.json()
    assert (body["succeeded"], body["failed"]) == (1, 1)
    assert body["results"][1]["error"] == "INVALID_TRANSITION"


def test_bulk_endpoint_requires_manager(client) -> None:
    """Verify sellers cannot run bulk operations."""

    response = client.post("/api/v1/bulk/reconcile", headers=SELLER)

    assert response.status_code == 403


def test_recovery_trigger_endpoint(client, seed) -> None:
    """Verify collections can start a recovery campaign."""

    lead = seed.lead()

    response = client.post(
        "/api/v1/recovery/trigger",
        json={"lead_id": str(lead.lead_id), "reason": "abandono"},
        headers=COLLECTOR,
    )

    assert response.status_code == 200
    assert response.json()["status"] == "ativo"
    assert response.json()["attempts"] == 0


def test_outbox_process_endpoint(client) -> None:
    """Verify an operator can drain the outbox (empty here)."""

    response = client.post("/api/v1/outbox/process", headers=ADMIN)

    assert response.status_code == 200
    assert response.json()["claimed"] == 0


def test_webhook_without_secret_handles_event(client, ctx, seed, storage) -> None:
    """Verify unsigned webhooks are processed when no secret is configured."""

    sale = seed.sale(status=SaleStatus.PROPOSTA)
    open_payment(ctx, sale.sale_id, payment_intent_id="pi_api")
    event = {"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_api", "amount": 100000}}}

    response = client.post("/api/v1/webhooks/stripe", content=json.dumps(event))

    assert response.status_code == 200
    assert response.json()["handled"] is True
    assert response.json()["event_type"] == "payment_intent.succeeded"
    assert storage.get("sales", str(sale.sale_id))["status"] == "pago"


def test_webhook_with_secret_rejects_unsigned_body(client, ctx) -> None:
    """Verify a configured secret makes unsigned webhooks fail with 400."""

    ctx.settings = replace(Settings(), stripe_webhook_secret="whsec_test")
    event = {"id": "evt_2", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_x"}}}

    response = client.post("/api/v1/webhooks/stripe", content=json.dumps(event))

    assert response.status_code == 400
    assert response.json()["detail"] == "Missing stripe-signature header"


def test_webhook_rejects_malformed_body(client) -> None:
    """Verify a body that is not a Stripe event answers 400."""

    response = client.post("/api/v1/webhooks/stripe", content=b"not json")

    assert response.status_code == 400


def test_webhook_runs_as_logged_workflow_in_threadpool(client, ctx, seed, storage, monkeypatch) -> None:
    """Verify the event is dispatched through the orchestrator off the event loop and leaves a log row."""

    offloaded = []
    real_run_in_threadpool = webhooks.run_in_threadpool

    async def _recording(func, *args, **kwargs):
        offloaded.append(func)
        return await real_run_in_threadpool(func, *args, **kwargs)

    monkeypatch.setattr(webhooks, "run_in_threadpool", _recording)
    sale = seed.sale(status=SaleStatus.PROPOSTA)
    open_payment(ctx, sale.sale_id, payment_intent_id="pi_logged")
    event = {"id": "evt_3", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_logged", "amount": 100000}}}

    response = client.post("/api/v1/webhooks/stripe", content=json.dumps(event))

    assert response.status_code == 200
    assert offloaded == [execute]
    [log] = storage.rows("automation_logs")
    assert (log["workflow_id"], log["trigger_type"], log["status"]) == ("payment-webhook", "webhook", "completed")
    assert log["trigger_data"]["id"] == "evt_3"
    assert response.json()["detail"]["execution_id"] == log["id"]
