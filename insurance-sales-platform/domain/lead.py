"""
Domain: Lead entity.

A Lead is a single inbound contact (WhatsApp conversation, n8n webhook, manual
entry) that may later be linked to a Client and converted into a Sale.

Notes:
- received_at / created_at are UTC timestamps.
- Scoring and intent are written by the lead-qualification workflow; this
  entity only stores the last result.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

from .time import require_utc_timestamp


@dataclass(frozen=True, slots=True)
class Lead:
    """Immutable snapshot of a `leads` row."""

    lead_id: UUID
    created_at: datetime
    source: str = "whatsapp"
    status: str = "novo"
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    client_id: Optional[UUID] = None
    score: Optional[int] = None
    intent: Optional[str] = None

    def __post_init__(self) -> None:
        require_utc_timestamp("created_at", self.created_at)
        if self.score is not None and not 0 <= self.score <= 100:
            raise ValueError("score must be within [0, 100]")


__all__ = ["Lead"]
