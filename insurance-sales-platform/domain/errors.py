"""
Domain: error taxonomy.

Every failure surfaced by the workflows is one of these types, so callers
(HTTP layer, scheduler, bulk operations) can branch on the class and report
the machine-readable `code` without parsing messages.

    SalesPlatformError
    +-- NotFoundError            referenced entity absent; no retry
    +-- InvalidTransitionError   state machine violation; no retry
    +-- ConflictError            lost a conditional-update race; stop, do not retry
    +-- IntegrationError         messaging / document / function call failed
    +-- ValidationError          malformed workflow input
    +-- StorageError             backend returned an unexpected error
"""

from __future__ import annotations

from typing import Any, Mapping, Optional


class SalesPlatformError(Exception):
    """Base class. `code` is stable and safe to return to API clients."""

    code: str = "SALES_PLATFORM_ERROR"

    def __init__(self, message: str, *, details: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})


class NotFoundError(SalesPlatformError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(
            f"{entity} not found: {entity_id}",
            details={"entity": entity, "entity_id": str(entity_id)},
        )
        self.entity = entity
        self.entity_id = entity_id


class InvalidTransitionError(SalesPlatformError):
    code = "INVALID_TRANSITION"

    def __init__(self, entity: str, from_status: str, to_status: str) -> None:
        super().__init__(
            f"{entity} cannot go from '{from_status}' to '{to_status}'",
            details={"entity": entity, "from_status": from_status, "to_status": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


class ConflictError(SalesPlatformError):
    """Another writer changed the row first; treat as already handled."""

    code = "CONFLICT"


class IntegrationError(SalesPlatformError):
    code = "INTEGRATION_ERROR"


class ValidationError(SalesPlatformError):
    code = "VALIDATION_ERROR"


class StorageError(SalesPlatformError):
    code = "STORAGE_ERROR"


__all__ = [
    "SalesPlatformError",
    "NotFoundError",
    "InvalidTransitionError",
    "ConflictError",
    "IntegrationError",
    "ValidationError",
    "StorageError",
]
