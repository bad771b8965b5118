"""
Domain: Recovery campaigns.

A recovery campaign is a bounded, backoff-scheduled sequence of outbound nudges
for a lead whose sale stalled (abandoned quote, failed payment, expired checkout,
no response).

Contract excerpts implemented here:
- One campaign per lead (upsert keyed by lead_id).
- 0 <= attempts <= max_attempts (default 3).
- status becomes `cancelado` when attempts reached max_attempts without success,
  `concluido` exactly when success is recorded.
- Backoff after a send is indexed by the attempt count *before* the send:
  60, 360, 1440 minutes, clamped to the last entry.
- Message text is keyed by (reason, attempt number), attempt 1-indexed and
  clamped to the last message of the reason.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Mapping, Optional, Tuple, Union
from uuid import UUID

from .errors import ValidationError
from .time import require_utc_timestamp

BACKOFF_MINUTES: Tuple[int, ...] = (60, 360, 1440)
DEFAULT_MAX_ATTEMPTS = 3
FIRST_ATTEMPT_DELAY = timedelta(hours=1)


class RecoveryReason(str, Enum):
    ABANDONO = "abandono"
    SEM_RESPOSTA = "sem_resposta"
    CHECKOUT_EXPIRADO = "checkout_expirado"
    PAGAMENTO_FALHOU = "pagamento_falhou"


class RecoveryStatus(str, Enum):
    ATIVO = "ativo"
    CONCLUIDO = "concluido"
    CANCELADO = "cancelado"


def coerce_reason(value: Union[str, RecoveryReason, None]) -> RecoveryReason:
    """Parse a trigger reason, rejecting unknown values."""

    if isinstance(value, RecoveryReason):
        return value
    try:
        return RecoveryReason(str(value))
    except ValueError as exc:
        allowed = ", ".join(r.value for r in RecoveryReason)
        raise ValidationError(f"Unknown recovery reason {value!r}; expected one of: {allowed}") from exc


def backoff_interval(attempts_before_send: int) -> timedelta:
    index = min(max(attempts_before_send, 0), len(BACKOFF_MINUTES) - 1)
    return timedelta(minutes=BACKOFF_MINUTES[index])


RECOVERY_MESSAGES: Mapping[RecoveryReason, Tuple[str, ...]] = {
    RecoveryReason.ABANDONO: (
        "Oi {name}! 👋 Notamos que você não concluiu sua cotação de seguro. Precisa de ajuda? É só responder aqui! 😊",
        "{name}, ainda está interessado em proteger seu patrimônio? 🛡️ Sua cotação está guardada e você pode finalizar em 2 minutos!",
        "Última chance, {name}! 🚨 Não deixe seu patrimônio desprotegido. Finalize sua cotação agora com desconto especial! 💰",
    ),
    RecoveryReason.PAGAMENTO_FALHOU: (
        "Opa {name}! 😅 Parece que houve um probleminha no pagamento. Vamos tentar novamente? É rapidinho!",
        "{name}, que tal tentarmos outro método de pagamento? 💳 PIX é instantâneo e super seguro!",
        "{name}, não desista! 💪 Temos outras opções de pagamento. Sua proteção é importante!",
    ),
    RecoveryReason.CHECKOUT_EXPIRADO: (
        "{name}, seu link de pagamento expirou! 😔 Mas não se preocupe, vou gerar um novo para você agora mesmo! ⚡",
        "{name}, ainda quer finalizar seu seguro? 🤔 Posso gerar um novo link de pagamento em segundos!",
        "Última oportunidade, {name}! 🎯 Não perca mais tempo, sua proteção está a um clique de distância!",
    ),
    RecoveryReason.SEM_RESPOSTA: (
        "Oi {name}! Como posso ajudar com seu seguro?",
        "{name}, ainda tem interesse em nossa proposta?",
        "{name}, estamos aqui se precisar de alguma coisa!",
    ),
}


def select_recovery_message(
    reason: Union[str, RecoveryReason],
    attempt_number: int,
    client_name: str,
) -> str:
    """
    Pick the nudge text for a 1-indexed attempt.

    Unknown reasons fall back to the abandonment sequence; attempts past the end
    of a sequence repeat its final ("last chance") message.
    """

    try:
        key = reason if isinstance(reason, RecoveryReason) else RecoveryReason(reason)
    except ValueError:
        key = RecoveryReason.ABANDONO
    messages = RECOVERY_MESSAGES[key]
    index = min(max(attempt_number, 1), len(messages)) - 1
    return messages[index].format(name=client_name)


@dataclass(frozen=True, slots=True)
class RecoveryCampaign:
    campaign_id: UUID
    lead_id: UUID
    trigger_reason: RecoveryReason
    status: RecoveryStatus
    attempts: int
    max_attempts: int
    next_attempt_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    success: bool = False
    recovered_value: Optional[Decimal] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0 <= self.attempts <= self.max_attempts:
            raise ValueError("attempts must stay within [0, max_attempts]")
        if self.success != (self.status is RecoveryStatus.CONCLUIDO):
            raise ValueError("success is recorded exactly when the campaign is concluido")
        for name in ("next_attempt_at", "last_attempt_at", "created_at"):
            value = getattr(self, name)
            if value is not None:
                require_utc_timestamp(name, value)

    @property
    def is_active(self) -> bool:
        return self.status is RecoveryStatus.ATIVO

    @property
    def is_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def is_due(self, now: datetime) -> bool:
        return self.next_attempt_at is None or self.next_attempt_at <= now


__all__ = [
    "BACKOFF_MINUTES",
    "DEFAULT_MAX_ATTEMPTS",
    "FIRST_ATTEMPT_DELAY",
    "RecoveryReason",
    "RecoveryStatus",
    "coerce_reason",
    "backoff_interval",
    "RECOVERY_MESSAGES",
    "select_recovery_message",
    "RecoveryCampaign",
]
