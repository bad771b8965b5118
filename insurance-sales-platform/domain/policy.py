"""
Domain: Policies and the pure rules used to issue them.

Contract excerpts implemented here:
- Policy numbers are `{4-digit year}{6 digits}{2 digits}`: the year, the last
  six digits of the epoch-millisecond clock, and a zero-padded random 0-99.
  The format is persisted and must not change.
- Status moves forward only: processando -> emitida | erro, and emitida ->
  entregue. An `erro` policy may be re-driven (erro -> processando) by
  reconciliation; it keeps its number.
- A `processando` policy belongs to the run that set processing_started_at;
  another run may take it over only after PROCESSING_GRACE has passed.
- document_url exists only once the policy is issued (emitida or entregue).
- Insurer selection is a pure function of (product category, sale value) over a
  configurable rule table.
"""

from __future__ import annotations

import random
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Tuple
from uuid import UUID

from .errors import InvalidTransitionError
from .time import require_utc_timestamp

POLICY_NUMBER_PATTERN = re.compile(r"^\d{4}\d{6}\d{2}$")
COVERAGE_DAYS = 365

# Must exceed DOCUMENT_TIMEOUT_SECONDS.
PROCESSING_GRACE = timedelta(minutes=10)


class PolicyStatus(str, Enum):
    PROCESSANDO = "processando"
    EMITIDA = "emitida"
    ERRO = "erro"
    ENTREGUE = "entregue"

    @property
    def is_issued(self) -> bool:
        return self in (PolicyStatus.EMITIDA, PolicyStatus.ENTREGUE)


ALLOWED_POLICY_TRANSITIONS: Mapping[PolicyStatus, frozenset[PolicyStatus]] = {
    PolicyStatus.PROCESSANDO: frozenset({PolicyStatus.EMITIDA, PolicyStatus.ERRO}),
    PolicyStatus.ERRO: frozenset({PolicyStatus.PROCESSANDO}),
    PolicyStatus.EMITIDA: frozenset({PolicyStatus.ENTREGUE}),
    PolicyStatus.ENTREGUE: frozenset(),
}


def validate_policy_transition(current: PolicyStatus, target: PolicyStatus) -> None:
    if target not in ALLOWED_POLICY_TRANSITIONS[current]:
        raise InvalidTransitionError("policy", current.value, target.value)


def generate_policy_number(now: datetime, rng: Optional[random.Random] = None) -> str:
    """
    Build a policy number from the clock and a random suffix.

    Not globally unique on its own; the issuance workflow re-draws on collision.
    """

    rng = rng or random.Random()
    epoch_ms = int(now.timestamp() * 1000)
    return f"{now.year:04d}{epoch_ms % 1_000_000:06d}{rng.randint(0, 99):02d}"


def coverage_window(start: date) -> Tuple[date, date]:
    """Coverage runs from the issuance day for 365 days."""

    return start, start + timedelta(days=COVERAGE_DAYS)


# ============================================================================
# Insurer selection
# ============================================================================

@dataclass(frozen=True, slots=True)
class InsurerRule:
    """
    Insurer choice for one product category.

    When `threshold` is set and the sale value is strictly greater than it,
    `premium_insurer` wins; otherwise `insurer`.
    """

    category: str
    insurer: str
    premium_insurer: Optional[str] = None
    threshold: Optional[Decimal] = None

    def select(self, value: Decimal) -> str:
        if self.threshold is not None and self.premium_insurer and value > self.threshold:
            return self.premium_insurer
        return self.insurer


@dataclass(frozen=True, slots=True)
class InsurerTable:
    rules: Tuple[InsurerRule, ...]
    default_insurer: str

    def select(self, category: Optional[str], value: Decimal) -> str:
        for rule in self.rules:
            if rule.category == category:
                return rule.select(value)
        return self.default_insurer

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "InsurerTable":
        """
        Build a table from a JSON config value, e.g. a tenant's
        `system_configs.insurer_rules` row:

            {"default": "Porto Seguro",
             "rules": [{"category": "auto", "insurer": "SulAmérica",
                        "premium_insurer": "Porto Seguro", "threshold": 2000}]}
        """

        rules = []
        for raw in config.get("rules", []):
            threshold = raw.get("threshold")
            rules.append(
                InsurerRule(
                    category=str(raw["category"]),
                    insurer=str(raw["insurer"]),
                    premium_insurer=raw.get("premium_insurer"),
                    threshold=Decimal(str(threshold)) if threshold is not None else None,
                )
            )
        return cls(
            rules=tuple(rules),
            default_insurer=str(config.get("default", DEFAULT_INSURER)),
        )


DEFAULT_INSURER = "Porto Seguro"

DEFAULT_INSURER_RULES: Tuple[InsurerRule, ...] = (
    InsurerRule("auto", insurer="SulAmérica", premium_insurer="Porto Seguro", threshold=Decimal("2000")),
    InsurerRule("vida", insurer="MetLife", premium_insurer="Bradesco Seguros", threshold=Decimal("1000")),
    InsurerRule("residencial", insurer="Tokio Marine", premium_insurer="Porto Seguro", threshold=Decimal("1500")),
    InsurerRule("empresarial", insurer="Zurich Seguros"),
    InsurerRule("viagem", insurer="Assist Card"),
)

DEFAULT_INSURER_TABLE = InsurerTable(rules=DEFAULT_INSURER_RULES, default_insurer=DEFAULT_INSURER)


def select_insurer(
    category: Optional[str],
    value: Decimal,
    table: InsurerTable = DEFAULT_INSURER_TABLE,
) -> str:
    return table.select(category, value)


# ============================================================================
# Policy entity
# ============================================================================

@dataclass(frozen=True, slots=True)
class Policy:
    policy_id: UUID
    policy_number: str
    sale_id: UUID
    client_id: UUID
    product_id: UUID
    insurer: str
    status: PolicyStatus
    coverage_start: date
    coverage_end: date
    document_url: Optional[str] = None
    emission_time_ms: Optional[int] = None
    delivery_attempts: int = 0
    delivery_whatsapp: bool = False
    delivery_email: bool = False
    last_delivery_attempt: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not POLICY_NUMBER_PATTERN.match(self.policy_number):
            raise ValueError(f"Invalid policy number format: {self.policy_number!r}")
        if self.coverage_end <= self.coverage_start:
            raise ValueError("coverage_end must be after coverage_start")
        if self.document_url is not None and not self.status.is_issued:
            raise ValueError("document_url is only set on issued policies")
        if self.status.is_issued and not self.document_url:
            raise ValueError("issued policies require a document_url")
        if self.delivery_attempts < 0:
            raise ValueError("delivery_attempts must not be negative")
        if self.last_delivery_attempt is not None:
            require_utc_timestamp("last_delivery_attempt", self.last_delivery_attempt)
        if self.created_at is not None:
            require_utc_timestamp("created_at", self.created_at)
        if self.processing_started_at is not None:
            require_utc_timestamp("processing_started_at", self.processing_started_at)

    @property
    def is_delivered(self) -> bool:
        return self.delivery_whatsapp or self.delivery_email or self.status is PolicyStatus.ENTREGUE

    def is_stalled(self, now: datetime) -> bool:
        """True for a `processando` policy whose run has gone quiet."""
        if self.status is not PolicyStatus.PROCESSANDO:
            return False
        if self.processing_started_at is None:
            return True
        return now - self.processing_started_at >= PROCESSING_GRACE

    def needs_issuance(self, now: datetime) -> bool:
        return self.status is PolicyStatus.ERRO or self.is_stalled(now)

    @property
    def document_file_name(self) -> str:
        return f"apolice_{self.policy_number}.pdf"


def insurer_table_from_rows(rows: Iterable[Mapping[str, Any]]) -> Optional[InsurerTable]:
    """Return the configured table from `system_configs` rows, if any."""

    for row in rows:
        value = row.get("value")
        if isinstance(value, Mapping) and value.get("rules"):
            return InsurerTable.from_config(value)
    return None


__all__ = [
    "POLICY_NUMBER_PATTERN",
    "COVERAGE_DAYS",
    "PROCESSING_GRACE",
    "PolicyStatus",
    "ALLOWED_POLICY_TRANSITIONS",
    "validate_policy_transition",
    "generate_policy_number",
    "coverage_window",
    "InsurerRule",
    "InsurerTable",
    "DEFAULT_INSURER",
    "DEFAULT_INSURER_RULES",
    "DEFAULT_INSURER_TABLE",
    "select_insurer",
    "Policy",
    "insurer_table_from_rows",
]
