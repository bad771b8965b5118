"""
Tests for `domain/recovery.py` and `services/recovery_service.py`.

Covers contract rules:
- Triggering (re)starts the lead's single campaign: attempts 0, ativo, due in 1h.
- Each send increments attempts by exactly one and schedules 60 / 360 / 1440 minutes out.
- Once attempts reach max_attempts the next call cancels without sending.
- Message text is picked by (reason, attempt), clamped to the last message.
- A failed send leaves the attempt count unchanged; a stale read conflicts.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

import services.recovery_service as recovery_service
from domain.errors import ConflictError, IntegrationError, NotFoundError, ValidationError
from domain.recovery import (
    RECOVERY_MESSAGES,
    RecoveryReason,
    RecoveryStatus,
    backoff_interval,
    select_recovery_message,
)
from repositories.recovery_repository import get_active_campaign, get_campaign_for_lead
from services.recovery_service import (
    mark_recovered,
    process_due_campaigns,
    send_recovery_message,
    trigger_recovery,
)

from conftest import NOW


@pytest.mark.parametrize(
    "attempts_before, minutes",
    [(0, 60), (1, 360), (2, 1440), (3, 1440), (10, 1440)],
)
def test_backoff_interval(attempts_before, minutes) -> None:
    """Verify backoff is indexed by attempts before the send and clamped to the last entry."""

    assert backoff_interval(attempts_before) == timedelta(minutes=minutes)


def test_select_message_clamps_attempt_number() -> None:
    """Verify attempts past the sequence repeat the final message."""

    last = RECOVERY_MESSAGES[RecoveryReason.ABANDONO][2].format(name="Ana")

    assert select_recovery_message("abandono", 5, "Ana") == last
    assert select_recovery_message("abandono", 3, "Ana") == last
    assert select_recovery_message("abandono", 1, "Ana").startswith("Oi Ana!")


def test_select_message_unknown_reason_falls_back_to_abandono() -> None:
    """Verify an unknown reason uses the abandonment sequence."""

    assert select_recovery_message("outro", 1, "Ana") == select_recovery_message("abandono", 1, "Ana")


def test_trigger_recovery_defaults(ctx, seed) -> None:
    """Verify a new campaign starts ativo with zero attempts, due one hour from now."""

    lead = seed.lead()

    campaign = trigger_recovery(ctx, lead.lead_id, "abandono")

    assert campaign.status is RecoveryStatus.ATIVO
    assert campaign.attempts == 0
    assert campaign.max_attempts == 3
    assert campaign.success is False
    assert campaign.trigger_reason is RecoveryReason.ABANDONO
    assert campaign.next_attempt_at == NOW + timedelta(hours=1)


def test_retrigger_resets_the_single_campaign(ctx, seed, storage) -> None:
    """Verify triggering again resets the same row instead of adding one."""

    lead = seed.lead()
    first = trigger_recovery(ctx, lead.lead_id, "abandono")
    send_recovery_message(ctx, lead.lead_id)

    second = trigger_recovery(ctx, lead.lead_id, "pagamento_falhou")

    assert second.campaign_id == first.campaign_id
    assert second.attempts == 0
    assert second.trigger_reason is RecoveryReason.PAGAMENTO_FALHOU
    assert len(storage.rows("recovery_campaigns")) == 1


def test_trigger_rejects_unknown_reason(ctx, seed) -> None:
    """Verify an unknown trigger reason is a validation error."""

    lead = seed.lead()

    with pytest.raises(ValidationError):
        trigger_recovery(ctx, lead.lead_id, "mudou_de_ideia")


def test_trigger_unknown_lead_raises_not_found(ctx) -> None:
    """Verify triggering for a missing lead raises NotFoundError."""

    with pytest.raises(NotFoundError):
        trigger_recovery(ctx, uuid4(), "abandono")


def test_attempts_then_cancel(ctx, seed, messaging, clock) -> None:
    """Verify three sends with 60/360/1440 minute backoff, then cancellation without a fourth message."""

    lead = seed.lead(name="João Souza")
    trigger_recovery(ctx, lead.lead_id, "abandono")
    expected_backoff = [60, 360, 1440]

    for attempt, minutes in enumerate(expected_backoff, start=1):
        result = send_recovery_message(ctx, lead.lead_id)
        assert result.status == "sent"
        assert result.attempts == attempt
        assert result.next_attempt_at == clock() + timedelta(minutes=minutes)
        assert result.message == RECOVERY_MESSAGES[RecoveryReason.ABANDONO][attempt - 1].format(name="João")
        clock.advance(timedelta(minutes=minutes))

    canceled = send_recovery_message(ctx, lead.lead_id)

    assert canceled.status == "canceled"
    assert canceled.attempts == 3
    assert len(messaging.sent) == 3
    campaign = get_campaign_for_lead(ctx.storage, lead.lead_id)
    assert campaign.status is RecoveryStatus.CANCELADO
    assert campaign.success is False

    with pytest.raises(NotFoundError):
        send_recovery_message(ctx, lead.lead_id)


def test_send_uses_reason_override(ctx, seed, messaging) -> None:
    """Verify an explicit reason picks that sequence instead of the trigger reason."""

    lead = seed.lead(name="Ana Lima")
    trigger_recovery(ctx, lead.lead_id, "abandono")

    send_recovery_message(ctx, lead.lead_id, reason="checkout_expirado")

    assert messaging.sent[0][1] == RECOVERY_MESSAGES[RecoveryReason.CHECKOUT_EXPIRADO][0].format(name="Ana")


def test_send_prefers_linked_client_contact(ctx, seed, messaging) -> None:
    """Verify a lead linked to a client is addressed by the client's first name and phone."""

    client = seed.client(full_name="Carla Mendes", phone="21988887777")
    lead = seed.lead(name="lead sem nome", phone="11000000000", client_id=client.client_id)
    trigger_recovery(ctx, lead.lead_id, "sem_resposta")

    send_recovery_message(ctx, lead.lead_id)

    assert messaging.sent == [("21988887777", "Oi Carla! Como posso ajudar com seu seguro?")]


def test_send_without_campaign_raises_not_found(ctx, seed) -> None:
    """Verify sending for a lead with no active campaign raises NotFoundError."""

    lead = seed.lead()

    with pytest.raises(NotFoundError):
        send_recovery_message(ctx, lead.lead_id)


def test_send_respects_schedule_when_asked(ctx, seed, messaging) -> None:
    """Verify respect_schedule leaves a not-yet-due campaign alone."""

    lead = seed.lead()
    trigger_recovery(ctx, lead.lead_id, "abandono")

    result = send_recovery_message(ctx, lead.lead_id, respect_schedule=True)

    assert result.status == "not_due"
    assert result.attempts == 0
    assert messaging.sent == []


def test_failed_send_keeps_attempts(ctx, seed, messaging) -> None:
    """Verify a messaging failure propagates and does not count as an attempt."""

    lead = seed.lead()
    trigger_recovery(ctx, lead.lead_id, "abandono")
    messaging.fail_with = IntegrationError("WhatsApp API error: 500")

    with pytest.raises(IntegrationError):
        send_recovery_message(ctx, lead.lead_id)

    assert get_active_campaign(ctx.storage, lead.lead_id).attempts == 0


def test_lead_without_phone_cannot_be_nudged(ctx, seed) -> None:
    """Verify a lead with no phone raises IntegrationError and keeps its attempts."""

    lead = seed.lead(phone=None)
    trigger_recovery(ctx, lead.lead_id, "abandono")

    with pytest.raises(IntegrationError):
        send_recovery_message(ctx, lead.lead_id)

    assert get_active_campaign(ctx.storage, lead.lead_id).attempts == 0


def test_stale_campaign_read_conflicts(ctx, seed, monkeypatch) -> None:
    """Verify two sends based on the same read record only one attempt."""

    lead = seed.lead()
    trigger_recovery(ctx, lead.lead_id, "abandono")
    stale = get_active_campaign(ctx.storage, lead.lead_id)
    send_recovery_message(ctx, lead.lead_id)
    monkeypatch.setattr(recovery_service, "get_active_campaign", lambda storage, lead_id: stale)

    with pytest.raises(ConflictError):
        send_recovery_message(ctx, lead.lead_id)

    assert get_campaign_for_lead(ctx.storage, lead.lead_id).attempts == 1


def test_mark_recovered_closes_campaign(ctx, seed) -> None:
    """Verify a converted lead's campaign becomes concluido with the recovered value."""

    lead = seed.lead()
    trigger_recovery(ctx, lead.lead_id, "checkout_expirado")

    campaign = mark_recovered(ctx, lead.lead_id, Decimal("1200.00"))

    assert campaign.status is RecoveryStatus.CONCLUIDO
    assert campaign.success is True
    assert campaign.recovered_value == Decimal("1200.00")
    assert mark_recovered(ctx, lead.lead_id) is None


def test_process_due_campaigns_sends_only_due(ctx, seed, messaging, clock) -> None:
    """Verify the scheduler pass sends due campaigns and skips future ones."""

    due_lead = seed.lead(name="Ana", phone="11911111111")
    later_lead = seed.lead(name="Bia", phone="11922222222")
    trigger_recovery(ctx, due_lead.lead_id, "abandono")
    clock.advance(timedelta(minutes=30))
    trigger_recovery(ctx, later_lead.lead_id, "abandono")
    clock.advance(timedelta(minutes=40))

    results = process_due_campaigns(ctx)

    assert [r["lead_id"] for r in results] == [str(due_lead.lead_id)]
    assert results[0]["success"] is True
    assert results[0]["attempts"] == 1
    assert [contact for contact, _ in messaging.sent] == ["11911111111"]


def test_process_due_campaigns_continues_past_failures(ctx, seed, messaging, clock) -> None:
    """Verify one failing lead is reported and the batch goes on."""

    broken = seed.lead(phone=None)
    working = seed.lead(phone="11933333333")
    trigger_recovery(ctx, broken.lead_id, "abandono")
    trigger_recovery(ctx, working.lead_id, "abandono")
    clock.advance(timedelta(hours=2))

    results = process_due_campaigns(ctx)

    outcomes = {r["lead_id"]: r for r in results}
    assert outcomes[str(broken.lead_id)]["success"] is False
    assert outcomes[str(broken.lead_id)]["error"] == "INTEGRATION_ERROR"
    assert outcomes[str(working.lead_id)]["success"] is True
    assert len(messaging.sent) == 1
