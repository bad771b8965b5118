"""
Pytest configuration and shared fixtures.

Adds the project directory to the Python path so tests can import domain,
repositories, services and api, and provides in-memory stand-ins for the
external gateways:

- InMemoryStorage: StorageGateway honouring the unique constraints and the
  conditional updates the services rely on
- RecordingMessaging: MessagingGateway that records every message
- FakeDocumentGenerator / FakeWelcomeKit: document and welcome-kit gateways
- Clock: fixed, manually advanced UTC clock
"""

from __future__ import annotations

import copy
import random
import sys
import time
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple
from uuid import UUID, uuid4

import pytest

# Add the insurance-sales-platform directory to the Python path
# so tests can import domain, repositories, etc.
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from config import Settings  # noqa: E402
from domain.client import Client, Product  # noqa: E402
from domain.commission import CommissionRule, RuleConditions  # noqa: E402
from domain.errors import ConflictError, IntegrationError, NotFoundError  # noqa: E402
from domain.lead import Lead  # noqa: E402
from domain.sale import Sale, SaleStatus  # noqa: E402
from repositories.client_repository import insert_client, insert_product  # noqa: E402
from repositories.commission_repository import insert_rule  # noqa: E402
from repositories.lead_repository import insert_lead  # noqa: E402
from repositories.sale_repository import insert_sale  # noqa: E402
from repositories.storage import OrderBy, order_columns  # noqa: E402
from services.context import ServiceContext  # noqa: E402
from services.messaging import DeliveryResult, normalize_phone  # noqa: E402

NOW = datetime(2025, 3, 10, 12, 0, 0, tzinfo=timezone.utc)
RNG_SEED = 42

Row = Dict[str, Any]


class InMemoryStorage:
    """Dict-backed StorageGateway with the same constraint semantics as the schema."""

    UNIQUE: Mapping[str, Tuple[Tuple[str, ...], ...]] = {
        "policies": (("policy_number",), ("sale_id",)),
        "commissions": (("sale_id", "rule_id"),),
        "recovery_campaigns": (("lead_id",),),
        "queue_jobs": (("dedupe_key",),),
        "payments": (("stripe_payment_intent_id",),),
    }

    def __init__(self) -> None:
        self.tables: Dict[str, Dict[str, Row]] = defaultdict(dict)
        self.queries: List[Dict[str, Any]] = []

    def rows(self, table: str) -> List[Row]:
        return [copy.deepcopy(row) for row in self.tables[table].values()]

    def _check_unique(self, table: str, row: Mapping[str, Any], ignore_id: Optional[str] = None) -> None:
        for columns in self.UNIQUE.get(table, ()):
            key = tuple(row.get(c) for c in columns)
            if any(v is None for v in key):
                continue
            for other in self.tables[table].values():
                if other["id"] != ignore_id and tuple(other.get(c) for c in columns) == key:
                    raise ConflictError(
                        f"Failed to insert into {table}: duplicate key",
                        details={"postgres_code": "23505", "columns": list(columns)},
                    )

    def get(self, table: str, row_id: str) -> Optional[Row]:
        row = self.tables[table].get(str(row_id))
        return copy.deepcopy(row) if row is not None else None

    def insert(self, table: str, fields: Mapping[str, Any]) -> Row:
        row = copy.deepcopy(dict(fields))
        row["id"] = str(row.get("id") or uuid4())
        if row["id"] in self.tables[table]:
            raise ConflictError(f"Failed to insert into {table}: duplicate key")
        self._check_unique(table, row)
        self.tables[table][row["id"]] = row
        return copy.deepcopy(row)

    def update(self, table: str, row_id: str, patch: Mapping[str, Any]) -> Optional[Row]:
        row = self.tables[table].get(str(row_id))
        if row is None:
            return None
        row.update(copy.deepcopy(dict(patch)))
        return copy.deepcopy(row)

    def conditional_update(
        self,
        table: str,
        row_id: str,
        expected: Mapping[str, Any],
        patch: Mapping[str, Any],
    ) -> Row:
        row = self.tables[table].get(str(row_id))
        if row is None:
            raise NotFoundError(table, row_id)
        if any(row.get(k) != v for k, v in expected.items()):
            raise ConflictError(
                f"{table} {row_id} changed concurrently; expected {dict(expected)}",
                details={"table": table, "id": str(row_id)},
            )
        row.update(copy.deepcopy(dict(patch)))
        return copy.deepcopy(row)

    def upsert(self, table: str, fields: Mapping[str, Any], on_conflict: str) -> Row:
        columns = [c.strip() for c in on_conflict.split(",")]
        for row in self.tables[table].values():
            if all(row.get(c) == fields.get(c) for c in columns):
                row.update(copy.deepcopy({k: v for k, v in fields.items() if k != "id"}))
                return copy.deepcopy(row)
        return self.insert(table, fields)

    def query(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        order_by: OrderBy = None,
        descending: bool = False,
        limit: Optional[int] = None,
        lte: Optional[Mapping[str, Any]] = None,
    ) -> List[Row]:
        self.queries.append({"table": table, "filters": dict(filters or {}), "lte": dict(lte or {}), "limit": limit})
        matches = [
            row
            for row in self.tables[table].values()
            if all(row.get(k) == v for k, v in (filters or {}).items())
            and all(row.get(k) is not None and row.get(k) <= v for k, v in (lte or {}).items())
        ]
        # Stable sorts, last key first, give multi-column ordering.
        for column, desc in reversed(order_columns(order_by, descending)):
            matches.sort(
                key=lambda r, c=column: (r.get(c) is None, "" if r.get(c) is None else r.get(c)),
                reverse=desc,
            )
        if limit is not None:
            matches = matches[:limit]
        return [copy.deepcopy(row) for row in matches]


class RecordingMessaging:
    """MessagingGateway that records (contact, text) pairs instead of sending."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, str]] = []
        self.fail_with: Optional[Exception] = None

    def send(self, contact: str, text: str) -> DeliveryResult:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((contact, text))
        return DeliveryResult(channel="whatsapp", address=normalize_phone(contact), external_id=f"wamid-{len(self.sent)}")


class FakeDocumentGenerator:
    def __init__(self) -> None:
        self.generated: List[str] = []
        self.fail_with: Optional[Exception] = None
        self.delay_seconds: float = 0.0

    def generate_policy_document(self, policy: Any, sale: Any, client: Any, product: Any) -> str:
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if self.fail_with is not None:
            raise self.fail_with
        self.generated.append(policy.policy_number)
        return f"https://storage.example.com/policies/policy_{policy.policy_number}.pdf"


class FakeWelcomeKit:
    def __init__(self) -> None:
        self.payloads: List[Mapping[str, Any]] = []

    def trigger(self, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        self.payloads.append(dict(payload))
        return {"success": True}


class Clock:
    """Fixed UTC clock; tests move it explicitly."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class Seeder:
    """Writes reference rows (clients, products, leads, sales, rules) through the repositories."""

    def __init__(self, storage: InMemoryStorage, clock: Clock) -> None:
        self.storage = storage
        self.clock = clock

    def client(
        self,
        full_name: str = "Maria Silva",
        phone: Optional[str] = "+55 (11) 98765-4321",
        cpf: Optional[str] = "123.456.789-00",
        cnpj: Optional[str] = None,
    ) -> Client:
        return insert_client(
            self.storage,
            Client(client_id=uuid4(), full_name=full_name, phone=phone, email="maria@example.com", cpf=cpf, cnpj=cnpj),
        )

    def product(self, category: str = "auto", name: str = "Seguro Auto") -> Product:
        return insert_product(self.storage, Product(product_id=uuid4(), name=name, category=category))

    def lead(
        self,
        name: Optional[str] = "João Souza",
        phone: Optional[str] = "11999990000",
        client_id: Optional[UUID] = None,
    ) -> Lead:
        return insert_lead(
            self.storage,
            Lead(
                lead_id=uuid4(),
                created_at=self.clock(),
                name=name,
                phone=phone,
                email="joao@example.com",
                client_id=client_id,
            ),
        )

    def sale(
        self,
        status: SaleStatus = SaleStatus.PENDENTE,
        value: str = "1000.00",
        category: str = "auto",
        client: Optional[Client] = None,
        product: Optional[Product] = None,
        lead_id: Optional[UUID] = None,
        seller_id: Optional[UUID] = None,
        seller_type: str = "manual",
        conversion_time: Optional[str] = None,
    ) -> Sale:
        client = client or self.client()
        product = product or self.product(category)
        return insert_sale(
            self.storage,
            Sale(
                sale_id=uuid4(),
                client_id=client.client_id,
                product_id=product.product_id,
                value=Decimal(value),
                status=status,
                created_at=self.clock(),
                lead_id=lead_id,
                seller_id=seller_id,
                seller_type=seller_type,
                conversion_time=conversion_time,
                loss_reason="Sem interesse" if status is SaleStatus.PERDIDO else None,
                closed_at=self.clock() if status.is_terminal else None,
            ),
        )

    def rule(
        self,
        product_id: UUID,
        percentage: str = "5",
        min_amount: Optional[str] = None,
        max_amount: Optional[str] = None,
        valid_from: Optional[date] = None,
        valid_until: Optional[date] = None,
        conditions: Optional[RuleConditions] = None,
    ) -> CommissionRule:
        return insert_rule(
            self.storage,
            CommissionRule(
                rule_id=uuid4(),
                product_id=product_id,
                percentage=Decimal(percentage),
                valid_from=valid_from or (self.clock().date() - timedelta(days=30)),
                valid_until=valid_until,
                min_amount=Decimal(min_amount) if min_amount is not None else None,
                max_amount=Decimal(max_amount) if max_amount is not None else None,
                conditions=conditions or RuleConditions(),
            ),
        )


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def messaging() -> RecordingMessaging:
    return RecordingMessaging()


@pytest.fixture
def documents() -> FakeDocumentGenerator:
    return FakeDocumentGenerator()


@pytest.fixture
def welcome_kit() -> FakeWelcomeKit:
    return FakeWelcomeKit()


@pytest.fixture
def ctx(
    storage: InMemoryStorage,
    messaging: RecordingMessaging,
    documents: FakeDocumentGenerator,
    welcome_kit: FakeWelcomeKit,
    clock: Clock,
) -> ServiceContext:
    return ServiceContext(
        storage=storage,
        messaging=messaging,
        documents=documents,
        welcome_kit=welcome_kit,
        settings=Settings(),
        clock=clock,
        rng=random.Random(RNG_SEED),
    )


@pytest.fixture
def seed(storage: InMemoryStorage, clock: Clock) -> Seeder:
    return Seeder(storage, clock)


__all__ = [
    "NOW",
    "RNG_SEED",
    "InMemoryStorage",
    "RecordingMessaging",
    "FakeDocumentGenerator",
    "FakeWelcomeKit",
    "Clock",
    "Seeder",
    "IntegrationError",
]
