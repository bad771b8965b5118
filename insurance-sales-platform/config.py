"""
Runtime configuration.

Settings are read from the environment. A `.env` file in the
insurance-sales-platform directory is loaded first so local runs behave like
the deployed functions.

Environment variables:
- SUPABASE_URL / SUPABASE_KEY: backend credentials (server-side key only)
- WHATSAPP_API_BASE_URL / WHATSAPP_API_TOKEN: outbound messaging provider
- MESSAGING_TIMEOUT_SECONDS: bound on a single outbound message call
- DOCUMENT_TIMEOUT_SECONDS: bound on policy document generation
- POLICY_DOCUMENTS_BUCKET: storage bucket receiving policy documents
- STRIPE_WEBHOOK_SECRET: enables Stripe-Signature verification when set
- WELCOME_KIT_DELAY_SECONDS: delay before the welcome kit follow-up runs
- OUTBOX_BATCH_SIZE: jobs drained per scheduler pass
- LOG_LEVEL: root log level for the API and scripts
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

env_path = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=env_path)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be a number, got {raw!r}") from exc


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True, slots=True)
class Settings:
    """Immutable snapshot of the process configuration."""

    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    whatsapp_base_url: Optional[str] = None
    whatsapp_token: Optional[str] = None
    messaging_timeout_seconds: float = 10.0
    document_timeout_seconds: float = 30.0
    policy_documents_bucket: str = "policies"
    stripe_webhook_secret: Optional[str] = None
    welcome_kit_delay_seconds: int = 3
    outbox_batch_size: int = 25
    log_level: str = "INFO"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings from the environment (cached for the process lifetime)."""

    return Settings(
        supabase_url=os.getenv("SUPABASE_URL"),
        supabase_key=os.getenv("SUPABASE_KEY"),
        whatsapp_base_url=os.getenv("WHATSAPP_API_BASE_URL"),
        whatsapp_token=os.getenv("WHATSAPP_API_TOKEN"),
        messaging_timeout_seconds=_float_env("MESSAGING_TIMEOUT_SECONDS", 10.0),
        document_timeout_seconds=_float_env("DOCUMENT_TIMEOUT_SECONDS", 30.0),
        policy_documents_bucket=os.getenv("POLICY_DOCUMENTS_BUCKET", "policies"),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
        welcome_kit_delay_seconds=_int_env("WELCOME_KIT_DELAY_SECONDS", 3),
        outbox_batch_size=_int_env("OUTBOX_BATCH_SIZE", 25),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once for the API process or a script."""

    logging.basicConfig(
        level=level or get_settings().log_level,
        format=LOG_FORMAT,
    )


__all__ = ["Settings", "get_settings", "configure_logging"]
