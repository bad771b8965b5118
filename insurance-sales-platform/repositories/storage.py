"""
Storage gateway.

The workflows persist every entity through this narrow interface so they can
run against Supabase in production and against an in-memory store in tests.

Operations:
- get(table, id)                                  -> row | None
- insert(table, fields)                           -> row   (ConflictError on unique violation)
- update(table, id, patch)                        -> row | None
- conditional_update(table, id, expected, patch)  -> row   (NotFoundError | ConflictError)
- upsert(table, fields, on_conflict)              -> row
- query(table, filters, order_by, descending, limit, lte) -> rows

Rows are plain dicts of JSON-compatible values; every table has an `id`
primary key. Equality filters with a None value match NULL. `lte` bounds
columns from above (ISO timestamps compare in time order). `order_by` is a
column name, or a list of them where a "-" prefix sorts that column
descending.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, Union
from uuid import UUID

from domain.errors import ConflictError, NotFoundError, StorageError

Row = Dict[str, Any]
OrderBy = Union[str, Sequence[str], None]

# Postgres unique_violation
_UNIQUE_VIOLATION = "23505"


class StorageGateway(Protocol):
    def get(self, table: str, row_id: str) -> Optional[Row]: ...

    def insert(self, table: str, fields: Mapping[str, Any]) -> Row: ...

    def update(self, table: str, row_id: str, patch: Mapping[str, Any]) -> Optional[Row]: ...

    def conditional_update(
        self,
        table: str,
        row_id: str,
        expected: Mapping[str, Any],
        patch: Mapping[str, Any],
    ) -> Row: ...

    def upsert(self, table: str, fields: Mapping[str, Any], on_conflict: str) -> Row: ...

    def query(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        order_by: OrderBy = None,
        descending: bool = False,
        limit: Optional[int] = None,
        lte: Optional[Mapping[str, Any]] = None,
    ) -> List[Row]: ...


class SupabaseStorage:
    """StorageGateway backed by the supabase-py query builder."""

    def __init__(self, client: Any) -> None:
        self._client = client

    def _execute(self, builder: Any, action: str) -> List[Row]:
        from postgrest.exceptions import APIError

        try:
            response = builder.execute()
        except APIError as exc:
            if getattr(exc, "code", None) == _UNIQUE_VIOLATION:
                raise ConflictError(
                    f"Failed to {action}: duplicate key",
                    details={"postgres_code": exc.code, "detail": getattr(exc, "details", None)},
                ) from exc
            raise StorageError(f"Failed to {action}: {getattr(exc, 'message', exc)}") from exc

        error = getattr(response, "error", None)
        if error:
            raise StorageError(f"Failed to {action}: {error}")

        return list(getattr(response, "data", None) or [])

    @staticmethod
    def _apply_filters(builder: Any, filters: Optional[Mapping[str, Any]]) -> Any:
        for column, value in (filters or {}).items():
            if value is None:
                builder = builder.is_(column, "null")
            else:
                builder = builder.eq(column, value)
        return builder

    def get(self, table: str, row_id: str) -> Optional[Row]:
        builder = self._client.table(table).select("*").eq("id", str(row_id)).limit(1)
        rows = self._execute(builder, f"get {table}")
        return rows[0] if rows else None

    def insert(self, table: str, fields: Mapping[str, Any]) -> Row:
        rows = self._execute(self._client.table(table).insert(dict(fields)), f"insert into {table}")
        if not rows:
            raise StorageError(f"Failed to insert into {table}: no row returned")
        return rows[0]

    def update(self, table: str, row_id: str, patch: Mapping[str, Any]) -> Optional[Row]:
        builder = self._client.table(table).update(dict(patch)).eq("id", str(row_id))
        rows = self._execute(builder, f"update {table}")
        return rows[0] if rows else None

    def conditional_update(
        self,
        table: str,
        row_id: str,
        expected: Mapping[str, Any],
        patch: Mapping[str, Any],
    ) -> Row:
        builder = self._client.table(table).update(dict(patch)).eq("id", str(row_id))
        builder = self._apply_filters(builder, expected)
        rows = self._execute(builder, f"update {table}")
        if rows:
            return rows[0]

        if self.get(table, row_id) is None:
            raise NotFoundError(table, row_id)
        raise ConflictError(
            f"{table} {row_id} changed concurrently; expected {dict(expected)}",
            details={"table": table, "id": str(row_id), "expected": dict(expected)},
        )

    def upsert(self, table: str, fields: Mapping[str, Any], on_conflict: str) -> Row:
        builder = self._client.table(table).upsert(dict(fields), on_conflict=on_conflict)
        rows = self._execute(builder, f"upsert into {table}")
        if not rows:
            raise StorageError(f"Failed to upsert into {table}: no row returned")
        return rows[0]

    def query(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        order_by: OrderBy = None,
        descending: bool = False,
        limit: Optional[int] = None,
        lte: Optional[Mapping[str, Any]] = None,
    ) -> List[Row]:
        builder = self._apply_filters(self._client.table(table).select("*"), filters)
        for column, bound in (lte or {}).items():
            builder = builder.lte(column, bound)
        for column, desc in order_columns(order_by, descending):
            builder = builder.order(column, desc=desc)
        if limit is not None:
            builder = builder.limit(limit)
        return self._execute(builder, f"query {table}")


# ============================================================================
# Row value helpers shared by the repositories
# ============================================================================

def order_columns(order_by: OrderBy, descending: bool = False) -> List[Tuple[str, bool]]:
    """Normalize `order_by` to (column, descending) pairs."""

    if not order_by:
        return []
    if isinstance(order_by, str):
        return [(order_by, descending)]
    return [(column[1:], True) if column.startswith("-") else (column, False) for column in order_by]


def optional_uuid(value: Any) -> Optional[UUID]:
    if value is None or value == "":
        return None
    return UUID(str(value))


def optional_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def optional_str(value: Optional[object]) -> Optional[str]:
    return None if value is None else str(value)


__all__ = [
    "Row",
    "StorageGateway",
    "SupabaseStorage",
    "OrderBy",
    "order_columns",
    "optional_uuid",
    "optional_decimal",
    "optional_str",
]
