"""
Recovery campaign repository (persistence).

There is at most one campaign row per lead: triggering recovery upserts on
`lead_id`, and every attempt increment is conditional on the attempt count
that was read.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Mapping, Optional
from uuid import UUID

from domain.recovery import RecoveryCampaign, RecoveryReason, RecoveryStatus
from domain.time import parse_optional_utc_datetime, to_iso_utc
from repositories.storage import StorageGateway, optional_decimal

# Supabase table name for recovery campaigns.
# Keep this aligned with your database schema.
_CAMPAIGNS_TABLE: str = "recovery_campaigns"


def _row_to_campaign(row: Mapping[str, Any]) -> RecoveryCampaign:
    return RecoveryCampaign(
        campaign_id=UUID(str(row["id"])),
        lead_id=UUID(str(row["lead_id"])),
        trigger_reason=RecoveryReason(str(row["trigger_reason"])),
        status=RecoveryStatus(str(row["status"])),
        attempts=int(row.get("attempts") or 0),
        max_attempts=int(row.get("max_attempts") or 3),
        next_attempt_at=parse_optional_utc_datetime(row.get("next_attempt_at")),
        last_attempt_at=parse_optional_utc_datetime(row.get("last_attempt_at")),
        success=bool(row.get("success", False)),
        recovered_value=optional_decimal(row.get("recovered_value")),
        created_at=parse_optional_utc_datetime(row.get("created_at")),
    )


def upsert_campaign(
    storage: StorageGateway,
    lead_id: UUID,
    reason: RecoveryReason,
    max_attempts: int,
    next_attempt_at: datetime,
    now: datetime,
) -> RecoveryCampaign:
    """(Re)start the lead's campaign: attempts reset, status ativo."""

    row = storage.upsert(
        _CAMPAIGNS_TABLE,
        {
            "lead_id": str(lead_id),
            "trigger_reason": reason.value,
            "status": RecoveryStatus.ATIVO.value,
            "attempts": 0,
            "max_attempts": max_attempts,
            "next_attempt_at": to_iso_utc(next_attempt_at, name="next_attempt_at"),
            "last_attempt_at": None,
            "success": False,
            "recovered_value": None,
            "created_at": to_iso_utc(now, name="created_at"),
        },
        on_conflict="lead_id",
    )
    return _row_to_campaign(row)


def get_active_campaign(storage: StorageGateway, lead_id: UUID) -> Optional[RecoveryCampaign]:
    rows = storage.query(
        _CAMPAIGNS_TABLE,
        {"lead_id": str(lead_id), "status": RecoveryStatus.ATIVO.value},
        order_by="created_at",
        descending=True,
        limit=1,
    )
    return _row_to_campaign(rows[0]) if rows else None


def get_campaign_for_lead(storage: StorageGateway, lead_id: UUID) -> Optional[RecoveryCampaign]:
    rows = storage.query(_CAMPAIGNS_TABLE, {"lead_id": str(lead_id)}, limit=1)
    return _row_to_campaign(rows[0]) if rows else None


def update_campaign(
    storage: StorageGateway,
    read: RecoveryCampaign,
    patch: Mapping[str, Any],
) -> RecoveryCampaign:
    """
    Write `patch` only if the row still has the status and attempts that were read.

    Raises:
        ConflictError: a concurrent send or completion won the race.
    """

    row = storage.conditional_update(
        _CAMPAIGNS_TABLE,
        str(read.campaign_id),
        expected={"status": read.status.value, "attempts": read.attempts},
        patch=patch,
    )
    return _row_to_campaign(row)


def list_active_campaigns(storage: StorageGateway, limit: Optional[int] = None) -> List[RecoveryCampaign]:
    rows = storage.query(
        _CAMPAIGNS_TABLE,
        {"status": RecoveryStatus.ATIVO.value},
        order_by="next_attempt_at",
        limit=limit,
    )
    return [_row_to_campaign(row) for row in rows]


__all__ = [
    "upsert_campaign",
    "get_active_campaign",
    "get_campaign_for_lead",
    "update_campaign",
    "list_active_campaigns",
]
