"""
Recovery campaign service.

Runs the bounded nudge sequence for a lead whose sale stalled:

    trigger_recovery       (re)start the lead's campaign, first nudge due in 1h
    send_recovery_message  send the next nudge, or cancel once attempts are used up
    mark_recovered         close the campaign when the lead converts
    process_due_campaigns  scheduler entry point for every due campaign

The send step persists the new attempt count with a conditional update on
the count it read, so two overlapping sends cannot both count as the same
attempt.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import UUID

from domain.errors import IntegrationError, NotFoundError, SalesPlatformError
from domain.lead import Lead
from domain.recovery import (
    DEFAULT_MAX_ATTEMPTS,
    FIRST_ATTEMPT_DELAY,
    RecoveryCampaign,
    RecoveryReason,
    RecoveryStatus,
    backoff_interval,
    coerce_reason,
    select_recovery_message,
)
from domain.time import to_iso_utc
from repositories.client_repository import get_client_by_id
from repositories.lead_repository import require_lead
from repositories.message_repository import record_outbound_message
from repositories.recovery_repository import (
    get_active_campaign,
    list_active_campaigns,
    update_campaign,
    upsert_campaign,
)
from services.context import ServiceContext

logger = logging.getLogger(__name__)

_FALLBACK_NAME = "cliente"


@dataclass(frozen=True, slots=True)
class RecoveryAttempt:
    """
    Outcome of one send step.

    status: sent, canceled (attempts exhausted, nothing sent) or
            not_due (schedule respected, nothing sent)
    """

    lead_id: UUID
    campaign_id: UUID
    status: str
    attempts: int
    next_attempt_at: Optional[datetime] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lead_id": str(self.lead_id),
            "campaign_id": str(self.campaign_id),
            "status": self.status,
            "attempts": self.attempts,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "message": self.message,
        }


def trigger_recovery(
    ctx: ServiceContext,
    lead_id: UUID,
    reason: Union[str, RecoveryReason],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> RecoveryCampaign:
    """
    Start (or restart) the lead's campaign: attempts 0, status ativo,
    first nudge due one hour from now.

    Raises:
        NotFoundError: no such lead.
        ValidationError: unknown reason.
    """

    parsed = coerce_reason(reason)
    require_lead(ctx.storage, lead_id)
    now = ctx.now()
    campaign = upsert_campaign(
        ctx.storage,
        lead_id,
        parsed,
        max_attempts=max_attempts,
        next_attempt_at=now + FIRST_ATTEMPT_DELAY,
        now=now,
    )
    logger.info(
        "Recovery campaign triggered",
        extra={"lead_id": str(lead_id), "trigger_reason": parsed.value, "campaign_id": str(campaign.campaign_id)},
    )
    return campaign


def _contact_for(ctx: ServiceContext, lead: Lead) -> Tuple[str, Optional[str], Optional[UUID]]:
    """Return (first name, phone, client id) used to address the lead."""

    client = get_client_by_id(ctx.storage, lead.client_id) if lead.client_id else None
    if client is not None:
        return client.first_name or _FALLBACK_NAME, client.phone or lead.phone, client.client_id
    name = (lead.name or "").split()
    return (name[0] if name else _FALLBACK_NAME), lead.phone, None


def send_recovery_message(
    ctx: ServiceContext,
    lead_id: UUID,
    reason: Union[str, RecoveryReason, None] = None,
    respect_schedule: bool = False,
) -> RecoveryAttempt:
    """
    Send the next nudge of the lead's active campaign.

    `reason` picks the message sequence; it defaults to the campaign's
    trigger reason. With `respect_schedule`, a campaign whose next attempt
    is still in the future is left alone.

    Raises:
        NotFoundError: no active campaign (or lead) for the lead id.
        IntegrationError: the message could not be sent; attempts unchanged.
        ConflictError: a concurrent send already recorded this attempt.
    """

    campaign = get_active_campaign(ctx.storage, lead_id)
    if campaign is None:
        raise NotFoundError("recovery_campaign", lead_id)

    if campaign.is_exhausted:
        update_campaign(ctx.storage, campaign, {"status": RecoveryStatus.CANCELADO.value, "success": False})
        logger.info(
            "Recovery campaign canceled, max attempts reached",
            extra={"lead_id": str(lead_id), "attempts": campaign.attempts},
        )
        return RecoveryAttempt(lead_id, campaign.campaign_id, "canceled", campaign.attempts)

    now = ctx.now()
    if respect_schedule and not campaign.is_due(now):
        return RecoveryAttempt(
            lead_id, campaign.campaign_id, "not_due", campaign.attempts, campaign.next_attempt_at
        )

    lead = require_lead(ctx.storage, lead_id)
    name, phone, client_id = _contact_for(ctx, lead)
    if not phone:
        raise IntegrationError(f"lead {lead_id} has no phone for recovery messages")

    attempt_number = campaign.attempts + 1
    text = select_recovery_message(reason or campaign.trigger_reason, attempt_number, name)
    result = ctx.messaging.send(phone, text)

    next_attempt_at = now + backoff_interval(campaign.attempts)
    updated = update_campaign(
        ctx.storage,
        campaign,
        {
            "attempts": attempt_number,
            "next_attempt_at": to_iso_utc(next_attempt_at, name="next_attempt_at"),
            "last_attempt_at": to_iso_utc(now, name="last_attempt_at"),
        },
    )

    try:
        record_outbound_message(
            ctx.storage,
            result.address,
            text,
            now,
            external_id=result.external_id,
            client_id=client_id,
            lead_id=lead_id,
        )
    except SalesPlatformError:
        logger.warning("Could not log recovery message", extra={"lead_id": str(lead_id)}, exc_info=True)

    logger.info(
        "Recovery message sent",
        extra={"lead_id": str(lead_id), "attempt": attempt_number, "next_attempt_at": next_attempt_at.isoformat()},
    )
    return RecoveryAttempt(lead_id, campaign.campaign_id, "sent", updated.attempts, next_attempt_at, text)


def mark_recovered(
    ctx: ServiceContext,
    lead_id: UUID,
    recovered_value: Optional[Decimal] = None,
) -> Optional[RecoveryCampaign]:
    """Close the lead's active campaign as successful; None when there is none."""

    campaign = get_active_campaign(ctx.storage, lead_id)
    if campaign is None:
        return None
    updated = update_campaign(
        ctx.storage,
        campaign,
        {
            "status": RecoveryStatus.CONCLUIDO.value,
            "success": True,
            "recovered_value": str(recovered_value) if recovered_value is not None else None,
        },
    )
    logger.info("Lead recovered", extra={"lead_id": str(lead_id), "recovered_value": str(recovered_value)})
    return updated


def process_due_campaigns(ctx: ServiceContext, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """
    Send every due active campaign (and cancel exhausted ones).

    One lead's failure is recorded in its summary entry and does not stop
    the batch.
    """

    now = ctx.now()
    summary: List[Dict[str, Any]] = []
    for campaign in list_active_campaigns(ctx.storage, limit=limit):
        if not campaign.is_exhausted and not campaign.is_due(now):
            continue
        try:
            attempt = send_recovery_message(ctx, campaign.lead_id, respect_schedule=True)
        except SalesPlatformError as exc:
            logger.warning(
                "Recovery send failed",
                extra={"lead_id": str(campaign.lead_id), "error_code": exc.code, "error": exc.message},
            )
            summary.append(
                {"lead_id": str(campaign.lead_id), "success": False, "error": exc.code, "detail": exc.message}
            )
            continue
        summary.append({"success": True, **attempt.to_dict()})
    return summary


__all__ = [
    "RecoveryAttempt",
    "trigger_recovery",
    "send_recovery_message",
    "mark_recovered",
    "process_due_campaigns",
]
