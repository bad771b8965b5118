"""
Commission calculation service.

Evaluates the active commission rules of a paid sale's product and appends
one `pendente` commission per matching rule. Re-running for the same sale is
safe: rules that already produced a commission are skipped, and the unique
(sale_id, rule_id) constraint turns a concurrent duplicate insert into a skip.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from domain.commission import Commission, CommissionStatus
from domain.errors import ConflictError, ValidationError
from domain.sale import SaleStatus
from repositories.client_repository import get_product_by_id
from repositories.commission_repository import (
    approve_commission,
    insert_commission,
    list_active_rules_for_product,
    list_commissions_for_sale,
)
from repositories.sale_repository import require_sale
from services.context import ServiceContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CommissionCalculation:
    """
    Result of one calculation run.

    created: commissions inserted by this run
    skipped_rule_ids: matching rules that already had a commission for the sale
    total_amount: sum of the commissions created by this run
    """

    sale_id: UUID
    created: List[Commission] = field(default_factory=list)
    skipped_rule_ids: List[UUID] = field(default_factory=list)
    total_amount: Decimal = Decimal("0.00")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sale_id": str(self.sale_id),
            "commissions_created": len(self.created),
            "commission_ids": [str(c.commission_id) for c in self.created],
            "skipped_rule_ids": [str(r) for r in self.skipped_rule_ids],
            "total_amount": str(self.total_amount),
        }


def calculate_commissions(ctx: ServiceContext, sale_id: UUID) -> CommissionCalculation:
    """
    Compute commissions for a paid sale.

    Raises:
        NotFoundError: no such sale.
        ValidationError: the sale is not `pago`.
    """

    sale = require_sale(ctx.storage, sale_id)
    if sale.status is not SaleStatus.PAGO:
        raise ValidationError(
            f"sale {sale_id} must be 'pago' to calculate commissions, found '{sale.status.value}'",
            details={"sale_id": str(sale_id), "status": sale.status.value},
        )

    product = get_product_by_id(ctx.storage, sale.product_id)
    category: Optional[str] = product.category if product else None

    today = ctx.now().date()
    rules = [r for r in list_active_rules_for_product(ctx.storage, sale.product_id) if r.is_valid_on(today)]
    already = {c.rule_id for c in list_commissions_for_sale(ctx.storage, sale.sale_id) if c.rule_id}

    created: List[Commission] = []
    skipped: List[UUID] = []

    for rule in rules:
        if not rule.applies_to(sale, category):
            continue
        if rule.rule_id in already:
            skipped.append(rule.rule_id)
            continue

        commission = Commission(
            commission_id=uuid4(),
            sale_id=sale.sale_id,
            rule_id=rule.rule_id,
            user_id=sale.seller_id,
            amount=rule.amount_for(sale),
            percentage=rule.percentage,
            base_value=sale.value,
            status=CommissionStatus.PENDENTE,
            created_at=ctx.now(),
        )
        try:
            created.append(insert_commission(ctx.storage, commission))
        except ConflictError:
            logger.info(
                "Commission already recorded concurrently",
                extra={"sale_id": str(sale.sale_id), "rule_id": str(rule.rule_id)},
            )
            skipped.append(rule.rule_id)

    total = sum((c.amount for c in created), Decimal("0.00"))
    logger.info(
        "Commissions calculated",
        extra={
            "sale_id": str(sale.sale_id),
            "rules_evaluated": len(rules),
            "commissions_created": len(created),
            "total_amount": str(total),
        },
    )
    return CommissionCalculation(
        sale_id=sale.sale_id,
        created=created,
        skipped_rule_ids=skipped,
        total_amount=total,
    )


def approve_commissions(ctx: ServiceContext, commission_id: UUID) -> Commission:
    """
    Approve one pendente commission.

    Raises:
        NotFoundError: no such commission.
        ConflictError: the commission is not pendente any more.
    """

    approved = approve_commission(ctx.storage, commission_id, ctx.now())
    logger.info("Commission approved", extra={"commission_id": str(commission_id)})
    return approved


__all__ = [
    "CommissionCalculation",
    "calculate_commissions",
    "approve_commissions",
]
