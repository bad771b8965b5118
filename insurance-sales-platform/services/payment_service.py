"""
Payment service and Stripe webhook handling.

Payments are opened pending when checkout starts and only moved by processor
events. A terminal payment is never touched again, so Stripe re-delivering an
event is a no-op.

Handled events:
- payment_intent.succeeded        payment succeeded, sale -> pago, recovery closed
- payment_intent.payment_failed   payment failed, recovery `pagamento_falhou` started
- checkout.session.completed      checkout session id and method recorded
- checkout.session.expired        payment canceled, recovery `checkout_expirado` started
- invoice.payment_succeeded       recurring payment logged
"""

from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional
from uuid import UUID, uuid4

import stripe

from domain.errors import (
    ConflictError,
    InvalidTransitionError,
    SalesPlatformError,
    ValidationError,
)
from domain.payment import Payment, PaymentStatus
from domain.recovery import RecoveryReason
from domain.sale import Sale, SaleStatus
from domain.time import to_iso_utc
from domain.workflow import WorkflowId
from repositories.message_repository import insert_notification
from repositories.payment_repository import (
    get_payment_by_intent,
    get_payment_by_session,
    insert_payment,
    list_payments_for_sale,
    record_checkout_details,
    update_pending_payment,
)
from repositories.sale_repository import require_sale
from services.context import ServiceContext
from services.outbox_service import dedupe_key_for, enqueue_follow_up
from services.recovery_service import mark_recovered, trigger_recovery
from services.sale_state_machine import parse_amount, transition

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300


def verify_stripe_signature(payload: bytes, signature: Optional[str], secret: str) -> None:
    """
    Check the Stripe-Signature header against the raw request body.

    Raises:
        ValidationError: header missing or signature invalid/expired.
    """

    if not signature:
        raise ValidationError("Missing stripe-signature header")
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            signature,
            secret,
            SIGNATURE_TOLERANCE_SECONDS,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
        raise ValidationError("Invalid Stripe signature") from exc


def parse_stripe_event(payload: bytes) -> Dict[str, Any]:
    try:
        event = json.loads(payload)
    except ValueError as exc:
        raise ValidationError("Webhook body is not valid JSON") from exc
    if not isinstance(event, dict) or not event.get("type"):
        raise ValidationError("Webhook body is not a Stripe event")
    return event


def open_payment(
    ctx: ServiceContext,
    sale_id: UUID,
    *,
    amount: Any = None,
    currency: str = "brl",
    payment_intent_id: Optional[str] = None,
    checkout_session_id: Optional[str] = None,
) -> Payment:
    """
    Record a pending payment attempt for an open sale.

    Raises:
        NotFoundError: no such sale.
        ValidationError: the sale is already closed, or amount malformed.
    """

    sale = require_sale(ctx.storage, sale_id)
    if sale.is_terminal:
        raise ValidationError(
            f"sale {sale_id} is '{sale.status.value}'; payments can only be opened for open sales",
            details={"sale_id": str(sale_id), "status": sale.status.value},
        )
    payment = Payment(
        payment_id=uuid4(),
        sale_id=sale.sale_id,
        amount=parse_amount(amount, "amount") if amount is not None else sale.value,
        currency=currency.lower(),
        status=PaymentStatus.PENDING,
        stripe_payment_intent_id=payment_intent_id,
        stripe_checkout_session_id=checkout_session_id,
        created_at=ctx.now(),
    )
    stored = insert_payment(ctx.storage, payment)
    logger.info("Payment opened", extra={"payment_id": str(stored.payment_id), "sale_id": str(sale_id)})
    return stored


def handle_stripe_event(ctx: ServiceContext, event: Mapping[str, Any]) -> Dict[str, Any]:
    """Dispatch one Stripe event; returns a small summary of what was done."""

    event_type = str(event.get("type") or "")
    obj = (event.get("data") or {}).get("object") or {}
    logger.info("Processing Stripe event", extra={"event_type": event_type, "event_id": event.get("id")})

    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.info("Unhandled Stripe event type", extra={"event_type": event_type})
        return {"event_type": event_type, "handled": False, "reason": "unhandled event type"}

    result = handler(ctx, obj)
    return {"event_type": event_type, **result}


def _unknown_payment(reference: Any) -> Dict[str, Any]:
    logger.warning("Stripe event for unknown payment", extra={"reference": str(reference)})
    return {"handled": False, "reason": "unknown payment"}


def _already_final(payment: Payment) -> Dict[str, Any]:
    return {
        "handled": False,
        "reason": "payment already final",
        "payment_id": str(payment.payment_id),
        "payment_status": payment.status.value,
    }


def _settle(ctx: ServiceContext, payment: Payment, patch: Mapping[str, Any]) -> Optional[Payment]:
    """Move a pending payment; None when another delivery settled it first."""

    try:
        return update_pending_payment(ctx.storage, payment, patch)
    except ConflictError:
        logger.info("Payment settled concurrently", extra={"payment_id": str(payment.payment_id)})
        return None


def _handle_payment_succeeded(ctx: ServiceContext, intent: Mapping[str, Any]) -> Dict[str, Any]:
    payment = get_payment_by_intent(ctx.storage, str(intent.get("id")))
    if payment is None:
        return _unknown_payment(intent.get("id"))
    if payment.is_terminal:
        return _already_final(payment)

    others = [
        p for p in list_payments_for_sale(ctx.storage, payment.sale_id)
        if p.status is PaymentStatus.SUCCEEDED and p.payment_id != payment.payment_id
    ]
    if others:
        logger.error(
            "Sale already has a succeeded payment",
            extra={"sale_id": str(payment.sale_id), "payment_id": str(payment.payment_id)},
        )
        return {"handled": False, "reason": "sale already paid", "payment_id": str(payment.payment_id)}

    methods = intent.get("payment_method_types") or []
    settled = _settle(
        ctx,
        payment,
        {
            "status": PaymentStatus.SUCCEEDED.value,
            "paid_at": to_iso_utc(ctx.now(), name="paid_at"),
            "payment_method": methods[0] if methods else payment.payment_method,
        },
    )
    if settled is None:
        return {"handled": False, "reason": "payment already final", "payment_id": str(payment.payment_id)}

    sale_outcome = _mark_sale_paid(ctx, settled.sale_id)
    sale = require_sale(ctx.storage, settled.sale_id)

    recovered = None
    if sale.lead_id is not None:
        recovered = mark_recovered(ctx, sale.lead_id, settled.amount)

    amount = Decimal(str(intent.get("amount") or 0)) / 100
    try:
        insert_notification(
            ctx.storage,
            "Nova Venda Confirmada",
            f"Pagamento de R$ {amount:.2f} confirmado via Stripe",
            ctx.now(),
            notification_type="success",
            data={"payment_id": str(settled.payment_id), "sale_id": str(settled.sale_id)},
        )
    except SalesPlatformError:
        logger.warning("Could not create payment notification", exc_info=True)

    return {
        "handled": True,
        "payment_id": str(settled.payment_id),
        "sale_id": str(settled.sale_id),
        "sale_transition": sale_outcome,
        "recovery_closed": recovered is not None,
    }


def _mark_sale_paid(ctx: ServiceContext, sale_id: UUID) -> str:
    try:
        transition(ctx, sale_id, SaleStatus.PAGO)
    except ConflictError:
        return "already_paid"
    except InvalidTransitionError as exc:
        logger.error(
            "Payment succeeded for a closed sale",
            extra={"sale_id": str(sale_id), "from_status": exc.from_status},
        )
        return "rejected"
    return "paid"


def _start_recovery(ctx: ServiceContext, sale: Sale, reason: RecoveryReason, payment: Payment) -> bool:
    """Start the lead's campaign and queue its first nudge right away."""

    if sale.lead_id is None:
        return False
    trigger_recovery(ctx, sale.lead_id, reason)
    enqueue_follow_up(
        ctx,
        WorkflowId.RECOVERY_CAMPAIGN,
        {"action": "send", "lead_id": str(sale.lead_id), "reason": reason.value},
        dedupe_key=dedupe_key_for(WorkflowId.RECOVERY_CAMPAIGN, f"{payment.payment_id}:{reason.value}"),
    )
    return True


def _handle_payment_failed(ctx: ServiceContext, intent: Mapping[str, Any]) -> Dict[str, Any]:
    payment = get_payment_by_intent(ctx.storage, str(intent.get("id")))
    if payment is None:
        return _unknown_payment(intent.get("id"))
    if payment.is_terminal:
        return _already_final(payment)

    settled = _settle(ctx, payment, {"status": PaymentStatus.FAILED.value})
    if settled is None:
        return {"handled": False, "reason": "payment already final", "payment_id": str(payment.payment_id)}

    sale = require_sale(ctx.storage, settled.sale_id)
    started = _start_recovery(ctx, sale, RecoveryReason.PAGAMENTO_FALHOU, settled)
    return {"handled": True, "payment_id": str(settled.payment_id), "recovery_started": started}


def _handle_checkout_completed(ctx: ServiceContext, session: Mapping[str, Any]) -> Dict[str, Any]:
    session_id = str(session.get("id"))
    intent_id = session.get("payment_intent")
    payment = get_payment_by_intent(ctx.storage, str(intent_id)) if intent_id else None
    if payment is None:
        payment = get_payment_by_session(ctx.storage, session_id)
    if payment is None:
        return _unknown_payment(intent_id or session_id)

    methods = session.get("payment_method_types") or []
    updated = record_checkout_details(ctx.storage, payment, session_id, methods[0] if methods else "unknown")
    return {"handled": True, "payment_id": str(updated.payment_id)}


def _handle_checkout_expired(ctx: ServiceContext, session: Mapping[str, Any]) -> Dict[str, Any]:
    payment = get_payment_by_session(ctx.storage, str(session.get("id")))
    if payment is None:
        return _unknown_payment(session.get("id"))
    if payment.is_terminal:
        return _already_final(payment)

    settled = _settle(ctx, payment, {"status": PaymentStatus.CANCELED.value})
    if settled is None:
        return {"handled": False, "reason": "payment already final", "payment_id": str(payment.payment_id)}

    sale = require_sale(ctx.storage, settled.sale_id)
    started = _start_recovery(ctx, sale, RecoveryReason.CHECKOUT_EXPIRADO, settled)
    return {"handled": True, "payment_id": str(settled.payment_id), "recovery_started": started}


def _handle_invoice_paid(ctx: ServiceContext, invoice: Mapping[str, Any]) -> Dict[str, Any]:
    logger.info(
        "Recurring payment received",
        extra={"invoice_id": invoice.get("id"), "amount_paid": invoice.get("amount_paid")},
    )
    return {"handled": True, "invoice_id": invoice.get("id")}


_HANDLERS = {
    "payment_intent.succeeded": _handle_payment_succeeded,
    "payment_intent.payment_failed": _handle_payment_failed,
    "checkout.session.completed": _handle_checkout_completed,
    "checkout.session.expired": _handle_checkout_expired,
    "invoice.payment_succeeded": _handle_invoice_paid,
}


__all__ = [
    "verify_stripe_signature",
    "parse_stripe_event",
    "open_payment",
    "handle_stripe_event",
]
