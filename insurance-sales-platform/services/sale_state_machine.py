"""
Sale state machine.

The only writer of sale status. Every change goes through `transition`, which
validates against the central transition table and persists with a conditional
update on the status that was read, so exactly one of several concurrent
callers wins.

Moving a sale to `pago` appends the policy-emission and commission-calculation
follow-ups to the outbox after the status write commits.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional, Union
from uuid import UUID, uuid4

from domain.errors import ConflictError, ValidationError
from domain.outbox import FollowUpJob
from domain.sale import Sale, SaleStatus, validate_sale_transition
from domain.workflow import WorkflowId
from repositories.client_repository import require_client, require_product
from repositories.sale_repository import insert_sale, require_sale, write_sale_status
from services.context import ServiceContext
from services.outbox_service import dedupe_key_for, enqueue_follow_up

logger = logging.getLogger(__name__)


def parse_sale_status(value: Union[str, SaleStatus]) -> SaleStatus:
    if isinstance(value, SaleStatus):
        return value
    try:
        return SaleStatus(str(value))
    except ValueError as exc:
        allowed = ", ".join(s.value for s in SaleStatus)
        raise ValidationError(f"Unknown sale status {value!r}; expected one of: {allowed}") from exc


def parse_amount(value: Any, name: str = "value") -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{name} must be a number, got {value!r}") from exc
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"{name} must be a non-negative number, got {value!r}")
    return amount


def create_sale(
    ctx: ServiceContext,
    client_id: UUID,
    product_id: UUID,
    value: Any,
    *,
    lead_id: Optional[UUID] = None,
    seller_id: Optional[UUID] = None,
    seller_type: str = "manual",
    installments: int = 1,
    conversion_time: Optional[str] = None,
) -> Sale:
    """
    Open a new `pendente` sale for an existing client and product.

    Raises:
        NotFoundError: client or product missing.
        ValidationError: value or installments malformed.
    """

    require_client(ctx.storage, client_id)
    require_product(ctx.storage, product_id)
    if installments < 1:
        raise ValidationError("installments must be at least 1")

    sale = Sale(
        sale_id=uuid4(),
        client_id=client_id,
        product_id=product_id,
        value=parse_amount(value),
        status=SaleStatus.PENDENTE,
        created_at=ctx.now(),
        lead_id=lead_id,
        seller_id=seller_id,
        seller_type=seller_type,
        installments=installments,
        conversion_time=conversion_time,
    )
    stored = insert_sale(ctx.storage, sale)
    logger.info("Sale created", extra={"sale_id": str(stored.sale_id), "value": str(stored.value)})
    return stored


def transition(
    ctx: ServiceContext,
    sale_id: UUID,
    new_status: Union[str, SaleStatus],
    loss_reason: Optional[str] = None,
) -> Sale:
    """
    Move a sale to `new_status`.

    Raises:
        NotFoundError: no such sale.
        ConflictError: the sale already has `new_status`, or another writer
            changed it between our read and write. Nothing is triggered.
        InvalidTransitionError: the move is not in the transition table
            (e.g. leaving pago or perdido). The row is unchanged.
        ValidationError: unknown status, or perdido without a loss reason.
    """

    target = parse_sale_status(new_status)
    sale = require_sale(ctx.storage, sale_id)

    if sale.status is target:
        raise ConflictError(
            f"sale {sale_id} is already '{target.value}'",
            details={"sale_id": str(sale_id), "status": target.value},
        )
    validate_sale_transition(sale.status, target)
    if target is SaleStatus.PERDIDO and not (loss_reason or "").strip():
        raise ValidationError("loss_reason is required to mark a sale as perdido")

    updated = sale.transitioned(target, ctx.now(), loss_reason=loss_reason)
    stored = write_sale_status(ctx.storage, sale, updated)

    logger.info(
        "Sale transitioned",
        extra={"sale_id": str(sale_id), "from_status": sale.status.value, "to_status": target.value},
    )

    if target is SaleStatus.PAGO:
        schedule_paid_follow_ups(ctx, stored)
    return stored


def schedule_paid_follow_ups(ctx: ServiceContext, sale: Sale) -> List[FollowUpJob]:
    """
    Enqueue issuance and commission work for a paid sale.

    Deduplicated per sale, so calling it again (e.g. from reconciliation)
    does not enqueue twice.
    """

    payload = {"sale_id": str(sale.sale_id)}
    return [
        enqueue_follow_up(
            ctx,
            workflow_id,
            payload,
            dedupe_key=dedupe_key_for(workflow_id, sale.sale_id),
            priority=priority,
        )
        for workflow_id, priority in (
            (WorkflowId.POLICY_EMISSION, 10),
            (WorkflowId.COMMISSION_CALCULATION, 5),
        )
    ]


__all__ = [
    "parse_sale_status",
    "parse_amount",
    "create_sale",
    "transition",
    "schedule_paid_follow_ups",
]
