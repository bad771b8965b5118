"""
Domain: Clients (policy holders) and the products they buy.

Clients are the people or companies a sale, policy and messages refer to.
Products carry the category used by insurer selection and commission rules.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from .time import require_utc_timestamp


@dataclass(frozen=True, slots=True)
class Client:
    """Policy holder contact details."""

    client_id: UUID
    full_name: str
    phone: Optional[str] = None
    email: Optional[str] = None

    # Brazilian tax identifiers; one of them is needed to issue a policy
    cpf: Optional[str] = None
    cnpj: Optional[str] = None

    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        """Validate timestamps are UTC-aware."""
        if self.created_at is not None:
            require_utc_timestamp("created_at", self.created_at)

    @property
    def first_name(self) -> str:
        """First word of the full name, used to personalise messages."""
        parts = self.full_name.split()
        return parts[0] if parts else ""


@dataclass(frozen=True, slots=True)
class Product:
    product_id: UUID
    name: str
    category: str  # auto, vida, residencial, empresarial, viagem
    base_price: Optional[Decimal] = None
    is_active: bool = True


__all__ = ["Client", "Product"]
