"""
Policy repository (persistence).

Persists policies, their document records, and the per-tenant insurer table.
Status writes are guarded by the status the issuance workflow last read.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Mapping, Optional
from uuid import UUID, uuid4

from domain.errors import NotFoundError
from domain.policy import InsurerTable, Policy, PolicyStatus, insurer_table_from_rows
from domain.time import parse_date, parse_optional_utc_datetime, to_iso_utc
from repositories.storage import StorageGateway

# Supabase table names.
# Keep these aligned with your database schema.
_POLICIES_TABLE: str = "policies"
_POLICY_DOCUMENTS_TABLE: str = "policy_documents"
_SYSTEM_CONFIGS_TABLE: str = "system_configs"

INSURER_RULES_CONFIG_KEY: str = "insurer_rules"


def _row_to_policy(row: Mapping[str, Any]) -> Policy:
    emission = row.get("emission_time_ms")
    return Policy(
        policy_id=UUID(str(row["id"])),
        policy_number=str(row["policy_number"]),
        sale_id=UUID(str(row["sale_id"])),
        client_id=UUID(str(row["client_id"])),
        product_id=UUID(str(row["product_id"])),
        insurer=str(row["insurer"]),
        status=PolicyStatus(str(row["status"])),
        coverage_start=parse_date(row["coverage_start_date"]),
        coverage_end=parse_date(row["coverage_end_date"]),
        document_url=row.get("pdf_url"),
        emission_time_ms=int(emission) if emission is not None else None,
        delivery_attempts=int(row.get("delivery_attempts") or 0),
        delivery_whatsapp=bool(row.get("delivery_whatsapp", False)),
        delivery_email=bool(row.get("delivery_email", False)),
        last_delivery_attempt=parse_optional_utc_datetime(row.get("last_delivery_attempt")),
        error_message=row.get("error_message"),
        created_at=parse_optional_utc_datetime(row.get("created_at")),
        processing_started_at=parse_optional_utc_datetime(row.get("processing_started_at")),
    )


def _optional_iso(value: Optional[datetime]) -> Optional[str]:
    return to_iso_utc(value) if value is not None else None


def insert_policy(storage: StorageGateway, policy: Policy) -> Policy:
    """
    Insert a new policy row.

    Raises:
        ConflictError: the policy number is taken, or the sale already has a
            policy (unique constraints).
    """

    row = storage.insert(
        _POLICIES_TABLE,
        {
            "id": str(policy.policy_id),
            "policy_number": policy.policy_number,
            "sale_id": str(policy.sale_id),
            "client_id": str(policy.client_id),
            "product_id": str(policy.product_id),
            "insurer": policy.insurer,
            "status": policy.status.value,
            "coverage_start_date": policy.coverage_start.isoformat(),
            "coverage_end_date": policy.coverage_end.isoformat(),
            "pdf_url": policy.document_url,
            "delivery_attempts": policy.delivery_attempts,
            "delivery_whatsapp": policy.delivery_whatsapp,
            "delivery_email": policy.delivery_email,
            "created_at": to_iso_utc(policy.created_at, name="created_at") if policy.created_at else None,
            "processing_started_at": _optional_iso(policy.processing_started_at),
        },
    )
    return _row_to_policy(row)


def get_policy_by_id(storage: StorageGateway, policy_id: UUID) -> Optional[Policy]:
    row = storage.get(_POLICIES_TABLE, str(policy_id))
    return _row_to_policy(row) if row else None


def require_policy(storage: StorageGateway, policy_id: UUID) -> Policy:
    policy = get_policy_by_id(storage, policy_id)
    if policy is None:
        raise NotFoundError("policy", policy_id)
    return policy


def get_policy_for_sale(storage: StorageGateway, sale_id: UUID) -> Optional[Policy]:
    """Return the most recent policy created for a sale, if any."""

    rows = storage.query(
        _POLICIES_TABLE,
        {"sale_id": str(sale_id)},
        order_by="created_at",
        descending=True,
        limit=1,
    )
    return _row_to_policy(rows[0]) if rows else None


def policy_number_exists(storage: StorageGateway, policy_number: str) -> bool:
    return bool(storage.query(_POLICIES_TABLE, {"policy_number": policy_number}, limit=1))


def update_policy(
    storage: StorageGateway,
    policy: Policy,
    patch: Mapping[str, Any],
    expected: Optional[Mapping[str, Any]] = None,
) -> Policy:
    """
    Write `patch` if the stored status still equals `policy.status`.

    `expected` adds further columns that must still hold the values read,
    e.g. the processing claim or the delivery attempt counter.

    Raises:
        ConflictError: another issuance run moved the policy first.
    """

    guard = {"status": policy.status.value}
    guard.update(expected or {})
    row = storage.conditional_update(
        _POLICIES_TABLE,
        str(policy.policy_id),
        expected=guard,
        patch=patch,
    )
    return _row_to_policy(row)


def processing_claim(policy: Policy) -> dict[str, Any]:
    """Columns identifying the issuance run that owns a `processando` policy."""

    return {"processing_started_at": _optional_iso(policy.processing_started_at)}


def delivery_claim(policy: Policy) -> dict[str, Any]:
    """Columns identifying the delivery attempt read from `policy`."""

    return {"delivery_attempts": policy.delivery_attempts, "delivery_whatsapp": policy.delivery_whatsapp}


def insert_policy_document(
    storage: StorageGateway,
    policy: Policy,
    file_name: str,
    file_url: str,
    mime_type: str,
    document_type: str = "policy",
) -> dict[str, Any]:
    return storage.insert(
        _POLICY_DOCUMENTS_TABLE,
        {
            "id": str(uuid4()),
            "policy_id": str(policy.policy_id),
            "document_type": document_type,
            "file_name": file_name,
            "file_url": file_url,
            "mime_type": mime_type,
        },
    )


def list_policy_documents(storage: StorageGateway, policy_id: UUID) -> List[dict[str, Any]]:
    return storage.query(_POLICY_DOCUMENTS_TABLE, {"policy_id": str(policy_id)})


def get_configured_insurer_table(storage: StorageGateway) -> Optional[InsurerTable]:
    """Tenant override of the insurer table, stored under system_configs."""

    rows = storage.query(_SYSTEM_CONFIGS_TABLE, {"key": INSURER_RULES_CONFIG_KEY}, limit=1)
    return insurer_table_from_rows(rows)


__all__ = [
    "INSURER_RULES_CONFIG_KEY",
    "insert_policy",
    "get_policy_by_id",
    "require_policy",
    "get_policy_for_sale",
    "policy_number_exists",
    "update_policy",
    "processing_claim",
    "delivery_claim",
    "insert_policy_document",
    "list_policy_documents",
    "get_configured_insurer_table",
]
