"""
Messaging and notification records.

Outbound WhatsApp messages are logged to `whatsapp_messages`, message
templates are read from `whatsapp_templates`, and operator-facing
notifications go to `notifications`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional
from uuid import UUID, uuid4

from domain.time import to_iso_utc
from repositories.storage import Row, StorageGateway

_TEMPLATES_TABLE: str = "whatsapp_templates"
_MESSAGES_TABLE: str = "whatsapp_messages"
_NOTIFICATIONS_TABLE: str = "notifications"
_SYSTEM_CONFIGS_TABLE: str = "system_configs"


def get_active_template(storage: StorageGateway, name: str) -> Optional[str]:
    """Return the content of the active template called `name`, if any."""

    rows = storage.query(_TEMPLATES_TABLE, {"name": name, "is_active": True}, limit=1)
    if not rows:
        return None
    content = rows[0].get("content")
    return str(content) if content else None


def record_outbound_message(
    storage: StorageGateway,
    phone: str,
    content: str,
    sent_at: datetime,
    *,
    status: str = "sent",
    external_id: Optional[str] = None,
    client_id: Optional[UUID] = None,
    lead_id: Optional[UUID] = None,
    message_type: str = "text",
) -> Row:
    return storage.insert(
        _MESSAGES_TABLE,
        {
            "id": str(uuid4()),
            "phone_number": phone,
            "content": content,
            "direction": "outbound",
            "message_type": message_type,
            "status": status,
            "external_id": external_id,
            "client_id": str(client_id) if client_id else None,
            "lead_id": str(lead_id) if lead_id else None,
            "created_at": to_iso_utc(sent_at, name="sent_at"),
        },
    )


def insert_notification(
    storage: StorageGateway,
    title: str,
    message: str,
    created_at: datetime,
    *,
    notification_type: str = "info",
    data: Optional[Mapping[str, Any]] = None,
) -> Row:
    return storage.insert(
        _NOTIFICATIONS_TABLE,
        {
            "id": str(uuid4()),
            "title": title,
            "message": message,
            "type": notification_type,
            "data": dict(data or {}),
            "created_at": to_iso_utc(created_at, name="created_at"),
        },
    )


def get_system_config(storage: StorageGateway, key: str) -> Optional[Any]:
    rows = storage.query(_SYSTEM_CONFIGS_TABLE, {"key": key}, limit=1)
    return rows[0].get("value") if rows else None


__all__ = [
    "get_active_template",
    "record_outbound_message",
    "insert_notification",
    "get_system_config",
]
