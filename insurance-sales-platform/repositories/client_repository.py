"""
Client and product repository.

Read access to the policy holders and products the workflows need for
messaging, insurer selection and commission rules. Client and product
management itself lives in the admin front-end.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional
from uuid import UUID

from domain.client import Client, Product
from domain.errors import NotFoundError
from domain.time import parse_optional_utc_datetime
from repositories.storage import StorageGateway, optional_decimal

_CLIENTS_TABLE: str = "clients"
_PRODUCTS_TABLE: str = "products"


def _row_to_client(row: Mapping[str, Any]) -> Client:
    return Client(
        client_id=UUID(str(row["id"])),
        full_name=str(row.get("full_name") or ""),
        phone=row.get("phone"),
        email=row.get("email"),
        cpf=row.get("cpf"),
        cnpj=row.get("cnpj"),
        created_at=parse_optional_utc_datetime(row.get("created_at")),
    )


def _row_to_product(row: Mapping[str, Any]) -> Product:
    return Product(
        product_id=UUID(str(row["id"])),
        name=str(row.get("name") or ""),
        category=str(row.get("category") or ""),
        base_price=optional_decimal(row.get("base_price")),
        is_active=bool(row.get("is_active", True)),
    )


def get_client_by_id(storage: StorageGateway, client_id: UUID) -> Optional[Client]:
    """
    Get a client by their ID.

    Returns:
        Client domain model or None if not found
    """
    row = storage.get(_CLIENTS_TABLE, str(client_id))
    return _row_to_client(row) if row else None


def require_client(storage: StorageGateway, client_id: UUID) -> Client:
    client = get_client_by_id(storage, client_id)
    if client is None:
        raise NotFoundError("client", client_id)
    return client


def get_product_by_id(storage: StorageGateway, product_id: UUID) -> Optional[Product]:
    row = storage.get(_PRODUCTS_TABLE, str(product_id))
    return _row_to_product(row) if row else None


def require_product(storage: StorageGateway, product_id: UUID) -> Product:
    product = get_product_by_id(storage, product_id)
    if product is None:
        raise NotFoundError("product", product_id)
    return product


def insert_client(storage: StorageGateway, client: Client) -> Client:
    row = storage.insert(
        _CLIENTS_TABLE,
        {
            "id": str(client.client_id),
            "full_name": client.full_name,
            "phone": client.phone,
            "email": client.email,
            "cpf": client.cpf,
            "cnpj": client.cnpj,
        },
    )
    return _row_to_client(row)


def insert_product(storage: StorageGateway, product: Product) -> Product:
    row = storage.insert(
        _PRODUCTS_TABLE,
        {
            "id": str(product.product_id),
            "name": product.name,
            "category": product.category,
            "base_price": str(product.base_price) if product.base_price is not None else None,
            "is_active": product.is_active,
        },
    )
    return _row_to_product(row)


__all__ = [
    "get_client_by_id",
    "require_client",
    "get_product_by_id",
    "require_product",
    "insert_client",
    "insert_product",
]
