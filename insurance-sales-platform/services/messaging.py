"""
Messaging gateway.

The workflows hand an already-rendered text and a contact address to a
`MessagingGateway`; they never deal with the provider API or template storage.

`WhatsAppGateway` talks to the WhatsApp HTTP API:

    POST {base_url}/v1/messages/send-text
    Authorization: Bearer {token}
    {"phone": "<digits only>", "message": "<text>"}

Any transport failure or non-2xx answer is raised as IntegrationError; the
caller decides whether that is fatal (policy delivery) or retried later
(recovery, follow-up jobs).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol

import httpx

from config import Settings
from domain.errors import IntegrationError

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")
_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    """Outcome of one accepted outbound message."""

    channel: str
    address: str
    external_id: Optional[str] = None


class MessagingGateway(Protocol):
    def send(self, contact: str, text: str) -> DeliveryResult: ...


def normalize_phone(phone: str) -> str:
    """Strip everything but digits, as the provider expects."""

    return _NON_DIGITS.sub("", phone or "")


def render_template(template: str, values: Mapping[str, Any]) -> str:
    """
    Substitute `{{name}}` placeholders.

    Unknown placeholders are left untouched so a template edited by an
    operator never breaks delivery.
    """

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in values and values[key] is not None:
            return str(values[key])
        return match.group(0)

    return _PLACEHOLDER.sub(_replace, template)


class WhatsAppGateway:
    """MessagingGateway backed by the WhatsApp send-text endpoint."""

    def __init__(
        self,
        base_url: Optional[str],
        token: Optional[str],
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._base_url = (base_url or "").rstrip("/")
        self._token = token
        self._timeout = timeout_seconds
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "WhatsAppGateway":
        return cls(
            base_url=settings.whatsapp_base_url,
            token=settings.whatsapp_token,
            timeout_seconds=settings.messaging_timeout_seconds,
        )

    def send(self, contact: str, text: str) -> DeliveryResult:
        if not self._base_url or not self._token:
            raise IntegrationError("WhatsApp API not configured")

        phone = normalize_phone(contact)
        if not phone:
            raise IntegrationError("Cannot send WhatsApp message: contact has no phone digits")

        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(
                    f"{self._base_url}/v1/messages/send-text",
                    json={"phone": phone, "message": text},
                    headers={"Authorization": f"Bearer {self._token}"},
                )
        except httpx.TimeoutException as exc:
            logger.warning("WhatsApp API timeout", extra={"phone": phone})
            raise IntegrationError(f"WhatsApp API timed out after {self._timeout}s") from exc
        except httpx.HTTPError as exc:
            logger.warning("WhatsApp API connection error", extra={"phone": phone})
            raise IntegrationError(f"WhatsApp API error: {exc}") from exc

        if response.status_code >= 400:
            raise IntegrationError(
                f"WhatsApp API error: {response.status_code} {response.reason_phrase}",
                details={"status_code": response.status_code},
            )

        external_id: Optional[str] = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            raw_id = body.get("id") or body.get("message_id")
            external_id = str(raw_id) if raw_id else None

        return DeliveryResult(channel="whatsapp", address=phone, external_id=external_id)


__all__ = [
    "DeliveryResult",
    "MessagingGateway",
    "normalize_phone",
    "render_template",
    "WhatsAppGateway",
]
