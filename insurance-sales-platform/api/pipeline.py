"""
Shared request pipeline.

Everything a router needs besides its own logic lives here:

- request logging middleware (one line per request, with duration)
- `authenticate_request`: Bearer token verified through Supabase auth, profile
  loaded from `users`, inactive accounts rejected
- `require_role(...)`: dependency factory restricting an endpoint to roles
- exception handlers translating the error taxonomy into HTTP responses
- `get_context`: the service context used by every endpoint
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Type

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from domain.errors import (
    ConflictError,
    IntegrationError,
    InvalidTransitionError,
    NotFoundError,
    SalesPlatformError,
    StorageError,
    ValidationError,
)
from services.context import ServiceContext, build_default_context

logger = logging.getLogger(__name__)

_USERS_TABLE: str = "users"

security = HTTPBearer(auto_error=False)


class Role(str, Enum):
    ADMIN = "admin"
    GESTOR = "gestor"
    OPERADOR = "operador"
    VENDAS = "vendas"
    COBRANCA = "cobranca"


@dataclass(frozen=True, slots=True)
class AuthenticatedUser:
    id: str
    email: str
    role: str
    is_active: bool
    permissions: List[str] = field(default_factory=list)


# Status codes by error class; the first matching base wins.
ERROR_STATUS: Dict[Type[SalesPlatformError], int] = {
    NotFoundError: 404,
    InvalidTransitionError: 409,
    ConflictError: 409,
    IntegrationError: 502,
    ValidationError: 422,
    StorageError: 500,
}


def status_for(exc: SalesPlatformError) -> int:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


async def handle_platform_error(request: Request, exc: SalesPlatformError) -> JSONResponse:
    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "Request failed",
        extra={"path": request.url.path, "error_code": exc.code, "status_code": status_code},
    )
    return JSONResponse(status_code=status_code, content={"error": exc.code, "detail": exc.message})


async def log_requests(request: Request, call_next: Callable[[Request], Any]) -> Any:
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = int((time.perf_counter() - started) * 1000)
    logger.info(
        "%s %s -> %s",
        request.method,
        request.url.path,
        response.status_code,
        extra={"duration_ms": duration_ms, "status_code": response.status_code},
    )
    return response


def install_pipeline(app: FastAPI) -> None:
    """Register the logging middleware and the error handlers on `app`."""

    app.middleware("http")(log_requests)
    app.add_exception_handler(SalesPlatformError, handle_platform_error)


# ============================================================================
# Dependencies
# ============================================================================

@lru_cache(maxsize=1)
def _default_context() -> ServiceContext:
    return build_default_context()


def get_context() -> ServiceContext:
    return _default_context()


def _supabase_token_verifier(token: str) -> str:
    from repositories.client import get_supabase

    try:
        response = get_supabase().auth.get_user(token)
    except Exception as exc:
        raise HTTPException(status_code=401, detail="Invalid or expired token") from exc
    user = getattr(response, "user", None)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return str(user.id)


def get_token_verifier() -> Callable[[str], str]:
    """Returns a callable mapping a bearer token to the auth user id."""

    return _supabase_token_verifier


def authenticate_request(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    verify_token: Callable[[str], str] = Depends(get_token_verifier),
    ctx: ServiceContext = Depends(get_context),
) -> AuthenticatedUser:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing or invalid authorization header")

    user_id = verify_token(credentials.credentials)

    profile = ctx.storage.get(_USERS_TABLE, user_id)
    if profile is None:
        raise HTTPException(status_code=401, detail="User profile not found")
    if not profile.get("is_active", False):
        raise HTTPException(status_code=403, detail="User account is inactive")

    return AuthenticatedUser(
        id=str(profile["id"]),
        email=str(profile.get("email") or ""),
        role=str(profile.get("role") or ""),
        is_active=True,
        permissions=list(profile.get("permissions") or []),
    )


def require_role(*roles: Role) -> Callable[..., AuthenticatedUser]:
    """
    Dependency factory.
    Usage: user: AuthenticatedUser = Depends(require_role(Role.ADMIN, Role.GESTOR))
    """

    allowed = {role.value for role in roles}

    def _check(user: AuthenticatedUser = Depends(authenticate_request)) -> AuthenticatedUser:
        if user.role not in allowed:
            logger.warning(
                "Access denied",
                extra={"user_id": user.id, "role": user.role, "required": sorted(allowed)},
            )
            raise HTTPException(
                status_code=403,
                detail=f"Access denied. Required roles: {', '.join(sorted(allowed))}",
            )
        return user

    return _check


__all__ = [
    "Role",
    "AuthenticatedUser",
    "ERROR_STATUS",
    "status_for",
    "install_pipeline",
    "get_context",
    "get_token_verifier",
    "authenticate_request",
    "require_role",
]
