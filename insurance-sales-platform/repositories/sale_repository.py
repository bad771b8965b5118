"""
Sale repository (persistence).

This module provides *only* persistence operations for the Sale domain entity.
It does not decide which transitions are allowed; it writes the status the
sale state machine hands it, guarded by the status it last read.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, List, Mapping, Optional
from uuid import UUID

from domain.errors import NotFoundError
from domain.sale import Sale, SaleStatus
from domain.time import parse_optional_utc_datetime, parse_utc_datetime, to_iso_utc
from repositories.storage import StorageGateway, optional_uuid

# Supabase table name for sales.
# Keep this aligned with your database schema.
_SALES_TABLE: str = "sales"


def _row_to_sale(row: Mapping[str, Any]) -> Sale:
    """Convert a Supabase row into a Sale."""

    return Sale(
        sale_id=UUID(str(row["id"])),
        client_id=UUID(str(row["client_id"])),
        product_id=UUID(str(row["product_id"])),
        value=Decimal(str(row["value"])),
        status=SaleStatus(str(row["status"])),
        created_at=parse_utc_datetime(row["created_at"]),
        lead_id=optional_uuid(row.get("lead_id")),
        seller_id=optional_uuid(row.get("seller_id")),
        seller_type=str(row.get("seller_type") or "manual"),
        installments=int(row.get("installments") or 1),
        loss_reason=row.get("loss_reason"),
        conversion_time=row.get("conversion_time"),
        closed_at=parse_optional_utc_datetime(row.get("closed_at")),
    )


def _sale_to_row(sale: Sale) -> dict[str, Any]:
    return {
        "id": str(sale.sale_id),
        "client_id": str(sale.client_id),
        "product_id": str(sale.product_id),
        "lead_id": str(sale.lead_id) if sale.lead_id else None,
        "seller_id": str(sale.seller_id) if sale.seller_id else None,
        "seller_type": sale.seller_type,
        "value": str(sale.value),
        "installments": sale.installments,
        "status": sale.status.value,
        "loss_reason": sale.loss_reason,
        "conversion_time": sale.conversion_time,
        "created_at": to_iso_utc(sale.created_at, name="created_at"),
        "closed_at": to_iso_utc(sale.closed_at, name="closed_at") if sale.closed_at else None,
    }


def insert_sale(storage: StorageGateway, sale: Sale) -> Sale:
    """Insert a new sale row and return it as stored."""

    row = storage.insert(_SALES_TABLE, _sale_to_row(sale))
    return _row_to_sale(row)


def get_sale_by_id(storage: StorageGateway, sale_id: UUID) -> Optional[Sale]:
    """
    Retrieve a single sale by its ID.

    Returns:
        Sale or None if not found
    """

    row = storage.get(_SALES_TABLE, str(sale_id))
    return _row_to_sale(row) if row else None


def require_sale(storage: StorageGateway, sale_id: UUID) -> Sale:
    sale = get_sale_by_id(storage, sale_id)
    if sale is None:
        raise NotFoundError("sale", sale_id)
    return sale


def write_sale_status(storage: StorageGateway, read: Sale, updated: Sale) -> Sale:
    """
    Persist a status change only if the row still has the status that was read.

    Raises:
        ConflictError: another writer changed the status first.
        NotFoundError: the row disappeared.
    """

    patch: dict[str, Any] = {
        "status": updated.status.value,
        "loss_reason": updated.loss_reason,
        "closed_at": to_iso_utc(updated.closed_at, name="closed_at") if updated.closed_at else None,
    }
    row = storage.conditional_update(
        _SALES_TABLE,
        str(read.sale_id),
        expected={"status": read.status.value},
        patch=patch,
    )
    return _row_to_sale(row)


def list_sales_by_status(
    storage: StorageGateway,
    status: SaleStatus,
    limit: Optional[int] = None,
) -> List[Sale]:
    rows = storage.query(
        _SALES_TABLE,
        {"status": status.value},
        order_by="created_at",
        limit=limit,
    )
    return [_row_to_sale(row) for row in rows]


__all__ = [
    "insert_sale",
    "get_sale_by_id",
    "require_sale",
    "write_sale_status",
    "list_sales_by_status",
]
