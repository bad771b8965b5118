"""
Domain: Payment attempts.

A Payment is one checkout attempt for exactly one Sale. It is created pending
when checkout starts and mutated only by processor webhook events.

Rules:
- succeeded, failed and canceled are terminal; terminal payments are immutable.
- At most one payment per sale may be succeeded (enforced by the payment service).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from .time import require_utc_timestamp


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


@dataclass(frozen=True, slots=True)
class Payment:
    payment_id: UUID
    sale_id: UUID
    amount: Decimal
    currency: str
    status: PaymentStatus
    stripe_payment_intent_id: Optional[str] = None
    stripe_checkout_session_id: Optional[str] = None
    payment_method: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.paid_at is not None:
            require_utc_timestamp("paid_at", self.paid_at)
        if self.created_at is not None:
            require_utc_timestamp("created_at", self.created_at)
        if self.amount < 0:
            raise ValueError("amount must not be negative")
        if (self.paid_at is not None) != (self.status is PaymentStatus.SUCCEEDED):
            raise ValueError("paid_at must be set if and only if the payment succeeded")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


__all__ = ["PaymentStatus", "Payment"]
