"""
Domain: Sale lifecycle.

A Sale is one prospective insurance purchase moving through the pipeline:

    pendente, qualificado, proposta   open; any open status may move to any other
    pago, perdido                     terminal

Rules implemented here:
- Open statuses may move forward or back (a proposal can return to
  qualification).
- `pago` and `perdido` are terminal; nothing leaves a terminal state.
- closed_at is set if and only if the status is terminal.
- loss_reason is set only when the status is `perdido`.
- Sales are never deleted; cancellation is the `perdido` status.

All allowed moves live in ALLOWED_SALE_TRANSITIONS; no other module branches
on raw status strings.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Mapping, Optional
from uuid import UUID

from .errors import InvalidTransitionError
from .time import require_utc_timestamp


class SaleStatus(str, Enum):
    PENDENTE = "pendente"
    QUALIFICADO = "qualificado"
    PROPOSTA = "proposta"
    PAGO = "pago"
    PERDIDO = "perdido"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_SALE_STATUSES


TERMINAL_SALE_STATUSES: frozenset[SaleStatus] = frozenset({SaleStatus.PAGO, SaleStatus.PERDIDO})

ALLOWED_SALE_TRANSITIONS: Mapping[SaleStatus, frozenset[SaleStatus]] = {
    status: frozenset() if status in TERMINAL_SALE_STATUSES else frozenset(set(SaleStatus) - {status})
    for status in SaleStatus
}


def validate_sale_transition(current: SaleStatus, target: SaleStatus) -> None:
    """Raise InvalidTransitionError unless current -> target is in the table."""

    if target not in ALLOWED_SALE_TRANSITIONS[current]:
        raise InvalidTransitionError("sale", current.value, target.value)


@dataclass(frozen=True, slots=True)
class Sale:
    """
    Immutable snapshot of a sale row.

    State changes produce a new instance through `transitioned`; persistence of
    that instance is the sale state machine's job.
    """

    sale_id: UUID
    client_id: UUID
    product_id: UUID
    value: Decimal
    status: SaleStatus
    created_at: datetime
    lead_id: Optional[UUID] = None
    seller_id: Optional[UUID] = None
    seller_type: str = "manual"  # manual, automated
    installments: int = 1
    loss_reason: Optional[str] = None
    conversion_time: Optional[str] = None  # Postgres interval text, e.g. "12 hours"
    closed_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        require_utc_timestamp("created_at", self.created_at)
        if self.closed_at is not None:
            require_utc_timestamp("closed_at", self.closed_at)
        if self.value < 0:
            raise ValueError("value must not be negative")
        if self.installments < 1:
            raise ValueError("installments must be at least 1")
        if (self.closed_at is not None) != self.status.is_terminal:
            raise ValueError("closed_at must be set if and only if the sale is in a terminal status")
        if self.loss_reason is not None and self.status is not SaleStatus.PERDIDO:
            raise ValueError("loss_reason is only allowed on lost sales")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transitioned(
        self,
        new_status: SaleStatus,
        at: datetime,
        loss_reason: Optional[str] = None,
    ) -> "Sale":
        """Return the sale moved to `new_status`, validated against the table."""

        validate_sale_transition(self.status, new_status)
        return replace(
            self,
            status=new_status,
            loss_reason=loss_reason if new_status is SaleStatus.PERDIDO else None,
            closed_at=at if new_status.is_terminal else None,
        )


__all__ = [
    "SaleStatus",
    "TERMINAL_SALE_STATUSES",
    "ALLOWED_SALE_TRANSITIONS",
    "validate_sale_transition",
    "Sale",
]
