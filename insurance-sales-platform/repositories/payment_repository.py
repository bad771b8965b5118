"""
Payment repository (persistence).

Payments are located by the processor identifiers carried in webhook events
and moved out of `pending` with a conditional update, so a re-delivered event
cannot overwrite a terminal payment.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, List, Mapping, Optional
from uuid import UUID

from domain.payment import Payment, PaymentStatus
from domain.time import parse_optional_utc_datetime, to_iso_utc
from repositories.storage import StorageGateway

# Supabase table name for payments.
# Keep this aligned with your database schema.
_PAYMENTS_TABLE: str = "payments"


def _row_to_payment(row: Mapping[str, Any]) -> Payment:
    return Payment(
        payment_id=UUID(str(row["id"])),
        sale_id=UUID(str(row["sale_id"])),
        amount=Decimal(str(row["amount"])),
        currency=str(row.get("currency") or "brl"),
        status=PaymentStatus(str(row["status"])),
        stripe_payment_intent_id=row.get("stripe_payment_intent_id"),
        stripe_checkout_session_id=row.get("stripe_checkout_session_id"),
        payment_method=row.get("payment_method"),
        paid_at=parse_optional_utc_datetime(row.get("paid_at")),
        created_at=parse_optional_utc_datetime(row.get("created_at")),
    )


def insert_payment(storage: StorageGateway, payment: Payment) -> Payment:
    row = storage.insert(
        _PAYMENTS_TABLE,
        {
            "id": str(payment.payment_id),
            "sale_id": str(payment.sale_id),
            "amount": str(payment.amount),
            "currency": payment.currency,
            "status": payment.status.value,
            "stripe_payment_intent_id": payment.stripe_payment_intent_id,
            "stripe_checkout_session_id": payment.stripe_checkout_session_id,
            "payment_method": payment.payment_method,
            "paid_at": None,
            "created_at": to_iso_utc(payment.created_at, name="created_at") if payment.created_at else None,
        },
    )
    return _row_to_payment(row)


def _first(storage: StorageGateway, filters: Mapping[str, Any]) -> Optional[Payment]:
    rows = storage.query(_PAYMENTS_TABLE, filters, limit=1)
    return _row_to_payment(rows[0]) if rows else None


def get_payment_by_intent(storage: StorageGateway, payment_intent_id: str) -> Optional[Payment]:
    return _first(storage, {"stripe_payment_intent_id": payment_intent_id})


def get_payment_by_session(storage: StorageGateway, checkout_session_id: str) -> Optional[Payment]:
    return _first(storage, {"stripe_checkout_session_id": checkout_session_id})


def list_payments_for_sale(storage: StorageGateway, sale_id: UUID) -> List[Payment]:
    rows = storage.query(_PAYMENTS_TABLE, {"sale_id": str(sale_id)}, order_by="created_at")
    return [_row_to_payment(row) for row in rows]


def update_pending_payment(
    storage: StorageGateway,
    payment: Payment,
    patch: Mapping[str, Any],
) -> Payment:
    """
    Apply `patch` only while the payment is still pending.

    Raises:
        ConflictError: the payment already reached a terminal status.
    """

    row = storage.conditional_update(
        _PAYMENTS_TABLE,
        str(payment.payment_id),
        expected={"status": PaymentStatus.PENDING.value},
        patch=patch,
    )
    return _row_to_payment(row)


def record_checkout_details(
    storage: StorageGateway,
    payment: Payment,
    checkout_session_id: str,
    payment_method: Optional[str],
) -> Payment:
    """Attach checkout metadata; allowed in any status since it does not change the outcome."""

    row = storage.update(
        _PAYMENTS_TABLE,
        str(payment.payment_id),
        {"stripe_checkout_session_id": checkout_session_id, "payment_method": payment_method},
    )
    return _row_to_payment(row) if row else payment


__all__ = [
    "record_checkout_details",
    "insert_payment",
    "get_payment_by_intent",
    "get_payment_by_session",
    "list_payments_for_sale",
    "update_pending_payment",
]
