"""
Service context.

Bundles the collaborators every workflow needs (storage, messaging, document
generation, clock, settings) so services take one argument instead of
reaching for module-level clients. Production code builds it with
`build_default_context()`; tests build it from in-memory fakes.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from config import Settings, get_settings
from domain.intent import IntentClassifier, KeywordIntentClassifier
from domain.time import require_utc_timestamp, utc_now
from repositories.storage import StorageGateway
from services.documents import DocumentGenerator, WelcomeKitTrigger
from services.messaging import MessagingGateway


@dataclass
class ServiceContext:
    storage: StorageGateway
    messaging: MessagingGateway
    documents: DocumentGenerator
    welcome_kit: Optional[WelcomeKitTrigger] = None
    settings: Settings = field(default_factory=get_settings)
    clock: Callable[[], datetime] = utc_now
    classifier: IntentClassifier = field(default_factory=KeywordIntentClassifier)
    rng: random.Random = field(default_factory=random.Random)
    tenant_id: Optional[str] = None

    def now(self) -> datetime:
        value = self.clock()
        require_utc_timestamp("now", value)
        return value


def build_default_context(tenant_id: Optional[str] = None) -> ServiceContext:
    """Wire the Supabase-backed gateways from the process settings."""

    from repositories.client import get_supabase
    from repositories.storage import SupabaseStorage
    from services.documents import SupabaseDocumentGenerator, SupabaseWelcomeKitTrigger
    from services.messaging import WhatsAppGateway

    settings = get_settings()
    client = get_supabase()
    return ServiceContext(
        storage=SupabaseStorage(client),
        messaging=WhatsAppGateway.from_settings(settings),
        documents=SupabaseDocumentGenerator(client, bucket=settings.policy_documents_bucket),
        welcome_kit=SupabaseWelcomeKitTrigger(client),
        settings=settings,
        tenant_id=tenant_id,
    )


__all__ = ["ServiceContext", "build_default_context"]
