"""
Commission repository (persistence).

Rules are read-only configuration; commissions are appended once per
(sale_id, rule_id), enforced by a unique constraint in the database.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Mapping, Optional
from uuid import UUID

from domain.commission import Commission, CommissionRule, CommissionStatus, RuleConditions
from domain.errors import NotFoundError
from domain.time import parse_date, parse_optional_utc_datetime, to_iso_utc
from repositories.storage import StorageGateway, optional_decimal, optional_uuid

# Supabase table names.
# Keep these aligned with your database schema.
_RULES_TABLE: str = "commission_rules"
_COMMISSIONS_TABLE: str = "commissions"


def _row_to_rule(row: Mapping[str, Any]) -> CommissionRule:
    return CommissionRule(
        rule_id=UUID(str(row["id"])),
        product_id=UUID(str(row["product_id"])),
        percentage=Decimal(str(row["percentage"])),
        valid_from=parse_date(row["valid_from"]),
        valid_until=parse_date(row.get("valid_until")),
        min_amount=optional_decimal(row.get("min_amount")),
        max_amount=optional_decimal(row.get("max_amount")),
        is_active=bool(row.get("is_active", True)),
        conditions=RuleConditions.from_mapping(row.get("conditions")),
    )


def _row_to_commission(row: Mapping[str, Any]) -> Commission:
    return Commission(
        commission_id=UUID(str(row["id"])),
        sale_id=UUID(str(row["sale_id"])),
        rule_id=optional_uuid(row.get("rule_id")),
        user_id=optional_uuid(row.get("user_id")),
        amount=Decimal(str(row["amount"])),
        percentage=Decimal(str(row["percentage"])),
        base_value=Decimal(str(row["base_value"])),
        status=CommissionStatus(str(row.get("status") or "pendente")),
        created_at=parse_optional_utc_datetime(row.get("created_at")),
        approved_at=parse_optional_utc_datetime(row.get("approved_at")),
    )


def list_active_rules_for_product(storage: StorageGateway, product_id: UUID) -> List[CommissionRule]:
    """Active rules for a product; date validity is checked by the caller."""

    rows = storage.query(_RULES_TABLE, {"product_id": str(product_id), "is_active": True})
    return [_row_to_rule(row) for row in rows]


def insert_rule(storage: StorageGateway, rule: CommissionRule) -> CommissionRule:
    conditions = rule.conditions
    row = storage.insert(
        _RULES_TABLE,
        {
            "id": str(rule.rule_id),
            "product_id": str(rule.product_id),
            "percentage": str(rule.percentage),
            "valid_from": rule.valid_from.isoformat(),
            "valid_until": rule.valid_until.isoformat() if rule.valid_until else None,
            "min_amount": str(rule.min_amount) if rule.min_amount is not None else None,
            "max_amount": str(rule.max_amount) if rule.max_amount is not None else None,
            "is_active": rule.is_active,
            "conditions": {
                "seller_type": conditions.seller_type,
                "product_category": conditions.product_category,
                "min_conversion_time": conditions.min_conversion_time,
            },
        },
    )
    return _row_to_rule(row)


def list_commissions_for_sale(storage: StorageGateway, sale_id: UUID) -> List[Commission]:
    rows = storage.query(_COMMISSIONS_TABLE, {"sale_id": str(sale_id)}, order_by="created_at")
    return [_row_to_commission(row) for row in rows]


def list_commissions_by_status(
    storage: StorageGateway,
    status: CommissionStatus,
    limit: Optional[int] = None,
) -> List[Commission]:
    rows = storage.query(_COMMISSIONS_TABLE, {"status": status.value}, order_by="created_at", limit=limit)
    return [_row_to_commission(row) for row in rows]


def insert_commission(storage: StorageGateway, commission: Commission) -> Commission:
    """
    Append a commission.

    Raises:
        ConflictError: a commission for the same (sale, rule) already exists.
    """

    row = storage.insert(
        _COMMISSIONS_TABLE,
        {
            "id": str(commission.commission_id),
            "sale_id": str(commission.sale_id),
            "rule_id": str(commission.rule_id) if commission.rule_id else None,
            "user_id": str(commission.user_id) if commission.user_id else None,
            "amount": str(commission.amount),
            "percentage": str(commission.percentage),
            "base_value": str(commission.base_value),
            "status": commission.status.value,
            "created_at": to_iso_utc(commission.created_at, name="created_at") if commission.created_at else None,
        },
    )
    return _row_to_commission(row)


def approve_commission(storage: StorageGateway, commission_id: UUID, approved_at: datetime) -> Commission:
    """
    Move a commission from pendente to aprovada.

    Raises:
        NotFoundError: no such commission.
        ConflictError: the commission is no longer pendente.
    """

    row = storage.conditional_update(
        _COMMISSIONS_TABLE,
        str(commission_id),
        expected={"status": CommissionStatus.PENDENTE.value},
        patch={
            "status": CommissionStatus.APROVADA.value,
            "approved_at": to_iso_utc(approved_at, name="approved_at"),
        },
    )
    return _row_to_commission(row)


def get_commission_by_id(storage: StorageGateway, commission_id: UUID) -> Optional[Commission]:
    row = storage.get(_COMMISSIONS_TABLE, str(commission_id))
    return _row_to_commission(row) if row else None


def require_commission(storage: StorageGateway, commission_id: UUID) -> Commission:
    commission = get_commission_by_id(storage, commission_id)
    if commission is None:
        raise NotFoundError("commission", commission_id)
    return commission


__all__ = [
    "list_active_rules_for_product",
    "insert_rule",
    "list_commissions_for_sale",
    "list_commissions_by_status",
    "insert_commission",
    "approve_commission",
    "get_commission_by_id",
    "require_commission",
]
