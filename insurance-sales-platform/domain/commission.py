"""
Domain: Commission rules and commissions.

Contract excerpts implemented here:
- A rule applies to a paid sale when, in order:
  a. sale.value >= min_amount (if set),
  b. sale.value <= max_amount (if set),
  c. every extra condition that is specified holds: seller type, product
     category, minimum conversion time in hours.
- amount = value * percentage / 100, percentage stored as a plain number
  (5 means 5%). Amounts are rounded half-up to cents.
- At most one commission per (sale, rule).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Mapping, Optional
from uuid import UUID

from .sale import Sale
from .time import require_utc_timestamp

_CENTS = Decimal("0.01")

_HOURS_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*hours?\s*$", re.IGNORECASE)
_DAYS_RE = re.compile(r"^\s*(-?\d+)\s*days?\s*(.*)$", re.IGNORECASE)
_CLOCK_RE = re.compile(r"^\s*(-?\d+):(\d{2})(?::(\d{2}(?:\.\d+)?))?\s*$")


class CommissionStatus(str, Enum):
    PENDENTE = "pendente"
    APROVADA = "aprovada"
    PAGA = "paga"


def parse_interval_hours(text: Optional[str]) -> Optional[float]:
    """
    Convert a Postgres interval rendering into hours.

    Accepts "12 hours", "1 day 02:30:00", "3 days" and "36:00:00".
    Returns None when the text is missing or not understood.
    """

    if not text:
        return None

    match = _HOURS_RE.match(text)
    if match:
        return float(match.group(1))

    hours = 0.0
    rest = text
    match = _DAYS_RE.match(text)
    if match:
        hours += int(match.group(1)) * 24
        rest = match.group(2)
        if not rest.strip():
            return hours

    match = _CLOCK_RE.match(rest)
    if not match:
        return None
    hours += int(match.group(1)) + int(match.group(2)) / 60
    if match.group(3):
        hours += float(match.group(3)) / 3600
    return hours


def commission_amount(value: Decimal, percentage: Decimal) -> Decimal:
    return (value * percentage / Decimal(100)).quantize(_CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True, slots=True)
class RuleConditions:
    seller_type: Optional[str] = None
    product_category: Optional[str] = None
    min_conversion_time: Optional[float] = None  # hours

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "RuleConditions":
        if not raw:
            return cls()
        min_conversion = raw.get("min_conversion_time")
        return cls(
            seller_type=raw.get("seller_type") or None,
            product_category=raw.get("product_category") or None,
            min_conversion_time=float(min_conversion) if min_conversion is not None else None,
        )

    def hold_for(self, sale: Sale, product_category: Optional[str]) -> bool:
        if self.seller_type and sale.seller_type != self.seller_type:
            return False
        if self.product_category and product_category != self.product_category:
            return False
        if self.min_conversion_time is not None:
            hours = parse_interval_hours(sale.conversion_time)
            # Sales without a measurable conversion time are not held to this condition.
            if hours is not None and hours < self.min_conversion_time:
                return False
        return True


@dataclass(frozen=True, slots=True)
class CommissionRule:
    """Read-only configuration row from `commission_rules`."""

    rule_id: UUID
    product_id: UUID
    percentage: Decimal
    valid_from: date
    valid_until: Optional[date] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    is_active: bool = True
    conditions: RuleConditions = field(default_factory=RuleConditions)

    def is_valid_on(self, day: date) -> bool:
        if not self.is_active or self.valid_from > day:
            return False
        return self.valid_until is None or self.valid_until >= day

    def applies_to(self, sale: Sale, product_category: Optional[str]) -> bool:
        if self.min_amount is not None and sale.value < self.min_amount:
            return False
        if self.max_amount is not None and sale.value > self.max_amount:
            return False
        return self.conditions.hold_for(sale, product_category)

    def amount_for(self, sale: Sale) -> Decimal:
        return commission_amount(sale.value, self.percentage)


@dataclass(frozen=True, slots=True)
class Commission:
    commission_id: UUID
    sale_id: UUID
    rule_id: Optional[UUID]
    user_id: Optional[UUID]
    amount: Decimal
    percentage: Decimal
    base_value: Decimal
    status: CommissionStatus = CommissionStatus.PENDENTE
    created_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.created_at is not None:
            require_utc_timestamp("created_at", self.created_at)
        if self.approved_at is not None:
            require_utc_timestamp("approved_at", self.approved_at)


__all__ = [
    "CommissionStatus",
    "parse_interval_hours",
    "commission_amount",
    "RuleConditions",
    "CommissionRule",
    "Commission",
]
