"""
Lead repository (persistence).

This module provides *only* persistence operations for the Lead domain entity.
No business rules (scoring, intent, recovery eligibility) belong here.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional
from uuid import UUID

from domain.errors import NotFoundError
from domain.lead import Lead
from domain.time import parse_utc_datetime, to_iso_utc
from repositories.storage import StorageGateway, optional_uuid

# Supabase table name for Lead records.
# Keep this aligned with your database schema.
_LEADS_TABLE: str = "leads"


def _lead_to_row(lead: Lead) -> dict[str, Any]:
    """Convert a domain Lead to a Supabase row payload."""

    return {
        "id": str(lead.lead_id),
        "created_at": to_iso_utc(lead.created_at, name="created_at"),
        "source": lead.source,
        "status": lead.status,
        "name": lead.name,
        "phone": lead.phone,
        "email": lead.email,
        "client_id": str(lead.client_id) if lead.client_id else None,
        "score": lead.score,
        "intent": lead.intent,
    }


def _row_to_lead(row: Mapping[str, Any]) -> Lead:
    """Convert a Supabase row into a domain Lead."""

    score = row.get("score")
    return Lead(
        lead_id=UUID(str(row["id"])),
        created_at=parse_utc_datetime(row["created_at"]),
        source=str(row.get("source") or "whatsapp"),
        status=str(row.get("status") or "novo"),
        name=row.get("name"),
        phone=row.get("phone"),
        email=row.get("email"),
        client_id=optional_uuid(row.get("client_id")),
        score=int(score) if score is not None else None,
        intent=row.get("intent"),
    )


def insert_lead(storage: StorageGateway, lead: Lead) -> Lead:
    """
    Insert a Lead.

    Raises:
    - ConflictError if a lead with the same id already exists.
    - ValueError/TypeError for invalid domain values (e.g., timestamps).
    """

    row = storage.insert(_LEADS_TABLE, _lead_to_row(lead))
    return _row_to_lead(row)


def get_lead_by_id(storage: StorageGateway, lead_id: UUID) -> Optional[Lead]:
    row = storage.get(_LEADS_TABLE, str(lead_id))
    return _row_to_lead(row) if row else None


def require_lead(storage: StorageGateway, lead_id: UUID) -> Lead:
    lead = get_lead_by_id(storage, lead_id)
    if lead is None:
        raise NotFoundError("lead", lead_id)
    return lead


def record_qualification(
    storage: StorageGateway,
    lead_id: UUID,
    score: int,
    intent: str,
    status: str,
) -> Lead:
    """Store the latest qualification outcome on the lead."""

    row = storage.update(
        _LEADS_TABLE,
        str(lead_id),
        {"score": score, "intent": intent, "status": status},
    )
    if row is None:
        raise NotFoundError("lead", lead_id)
    return _row_to_lead(row)


__all__ = [
    "insert_lead",
    "get_lead_by_id",
    "require_lead",
    "record_qualification",
]
