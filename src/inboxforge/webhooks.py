"""Summary: Webhook payload normalization and verification.

Importance: Turns each channel's wire format into InboundEvents and delivery receipts.
Alternatives: Parse payloads inline inside the HTTP handlers.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parseaddr
from typing import Any

from inboxforge.models import (
    DELIVERY_DELIVERED,
    DELIVERY_FAILED,
    DELIVERY_READ,
    DELIVERY_SENT,
    EMAIL,
    INSTAGRAM,
    TIKTOK,
    WHATSAPP,
    DeliveryStatusEvent,
    InboundEvent,
)


logger = logging.getLogger(__name__)

WHATSAPP_PLACEHOLDERS = {
    "audio": "[Audio]",
    "location": "[Location]",
    "contacts": "[Contact]",
    "sticker": "[Sticker]",
}
WHATSAPP_STATUSES = {
    "sent": DELIVERY_SENT,
    "delivered": DELIVERY_DELIVERED,
    "read": DELIVERY_READ,
    "failed": DELIVERY_FAILED,
}


@dataclass(frozen=True)
class RoutedEvent:
    """Summary: Inbound event plus the business-side account it was addressed to.

    Importance: The account id is how a webhook finds the owning tenant.
    Alternatives: Resolve tenants inside the parser.
    """

    account_id: str
    event: InboundEvent


@dataclass(frozen=True)
class DirectMessageEvent:
    """Summary: A DM-style messaging event whose direction is not yet known.

    Importance: Instagram and TikTok echo business-sent messages; the tenant lookup decides
    which side is the business.
    Alternatives: Trust an is_echo flag alone.
    """

    channel: str
    sender_id: str
    recipient_id: str
    message_id: str | None
    text: str
    is_echo: bool = False
    sender_name: str | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True)
class WhatsAppBatch:
    messages: list[RoutedEvent] = field(default_factory=list)
    statuses: list[DeliveryStatusEvent] = field(default_factory=list)


def parse_address(value: str) -> tuple[str | None, str]:
    """Summary: Split a "Name <address>" header into name and address.

    Importance: Email identity is the bare address; the name is display text only.
    Alternatives: Match the header with a regular expression.
    """

    name, address = parseaddr(value)
    return name.strip() or None, address.strip() or value.strip()


def business_address(value: str) -> str:
    """Strip the inbound routing subdomain (hello@inbound.example.com -> hello@example.com)."""

    _, address = parse_address(value)
    return address.replace("@inbound.", "@").lower()


def parse_email_payload(body: dict[str, Any]) -> RoutedEvent | None:
    """Summary: Normalize an inbound-email webhook.

    Importance: Content falls back from text to html to subject.
    Alternatives: Require a plain-text body on every email.
    """

    if body.get("type") != "email.received":
        return None
    data = body.get("data") or {}
    sender = data.get("from") or ""
    to = data.get("to") or ""
    if isinstance(to, list):
        to = to[0] if to else ""
    if not sender or not to:
        raise ValueError("Email payload requires from and to addresses")
    sender_name, sender_email = parse_address(sender)
    subject = data.get("subject")
    content = data.get("text") or data.get("html") or subject or ""
    return RoutedEvent(
        account_id=business_address(to),
        event=InboundEvent(
            channel=EMAIL,
            customer_identity=sender_email.lower(),
            customer_name=sender_name or sender_email,
            content=content,
            subject=subject,
            external_message_id=data.get("email_id"),
            metadata={"from_email": sender_email, "email_id": data.get("email_id")},
        ),
    )


def parse_whatsapp_payload(body: dict[str, Any]) -> WhatsAppBatch:
    """Summary: Normalize a WhatsApp Business webhook into messages and delivery receipts.

    Importance: A single delivery can carry several messages and status updates.
    Alternatives: Handle only the first change of each entry.
    """

    batch = WhatsAppBatch()
    if body.get("object") != "whatsapp_business_account":
        return batch
    for entry in body.get("entry") or []:
        for change in entry.get("changes") or []:
            if change.get("field") != "messages":
                continue
            value = change.get("value") or {}
            phone_number_id = str((value.get("metadata") or {}).get("phone_number_id", ""))
            names = {
                contact.get("wa_id"): (contact.get("profile") or {}).get("name")
                for contact in value.get("contacts") or []
            }
            for message in value.get("messages") or []:
                customer_phone = str(message.get("from", ""))
                if not customer_phone or not phone_number_id:
                    logger.warning("Skipping WhatsApp message without sender or phone number id.")
                    continue
                batch.messages.append(
                    RoutedEvent(
                        account_id=phone_number_id,
                        event=InboundEvent(
                            channel=WHATSAPP,
                            customer_identity=customer_phone,
                            customer_name=names.get(customer_phone) or customer_phone,
                            content=whatsapp_message_text(message),
                            external_message_id=message.get("id"),
                            metadata={
                                "message_type": message.get("type"),
                                "phone_number_id": phone_number_id,
                                "customer_phone": customer_phone,
                            },
                        ),
                    )
                )
            for status in value.get("statuses") or []:
                mapped = WHATSAPP_STATUSES.get(status.get("status"))
                if mapped is None or not status.get("id"):
                    continue
                errors = status.get("errors") or []
                batch.statuses.append(
                    DeliveryStatusEvent(
                        channel=WHATSAPP,
                        external_message_id=status["id"],
                        status=mapped,
                        timestamp=_epoch(status.get("timestamp")),
                        error=(errors[0].get("title") or errors[0].get("message")) if errors else None,
                    )
                )
    return batch


def whatsapp_message_text(message: dict[str, Any]) -> str:
    message_type = message.get("type")
    if message_type == "text":
        return (message.get("text") or {}).get("body", "")
    if message_type in ("image", "video"):
        caption = (message.get(message_type) or {}).get("caption")
        return caption or f"[{message_type.capitalize()}]"
    if message_type == "document":
        return (message.get("document") or {}).get("filename") or "[Document]"
    return WHATSAPP_PLACEHOLDERS.get(message_type, "[Media]")


def parse_instagram_payload(body: dict[str, Any]) -> list[DirectMessageEvent]:
    events: list[DirectMessageEvent] = []
    if body.get("object") != "instagram":
        return events
    for entry in body.get("entry") or []:
        for messaging in entry.get("messaging") or []:
            message = messaging.get("message")
            if not message:
                continue
            sender_id = str((messaging.get("sender") or {}).get("id", ""))
            recipient_id = str((messaging.get("recipient") or {}).get("id", ""))
            if not sender_id or not recipient_id:
                continue
            events.append(
                DirectMessageEvent(
                    channel=INSTAGRAM,
                    sender_id=sender_id,
                    recipient_id=recipient_id,
                    message_id=message.get("mid"),
                    text=message.get("text") or "[Media]",
                    is_echo=message.get("is_echo") is True,
                    timestamp=_epoch_millis(messaging.get("timestamp")),
                )
            )
    return events


def parse_tiktok_payload(body: dict[str, Any]) -> list[DirectMessageEvent]:
    if body.get("event") not in ("receive_message", "direct_message"):
        return []
    content = body.get("content") or (body.get("message") or {}).get("content") or {}
    if not isinstance(content, dict):
        content = {}
    sender = content.get("sender") or {}
    sender_id = sender.get("open_id") or body.get("from_user_id")
    recipient_id = (content.get("receiver") or {}).get("open_id") or body.get("to_user_id")
    if not sender_id or not recipient_id:
        logger.warning("Skipping TikTok message without sender or recipient.")
        return []
    return [
        DirectMessageEvent(
            channel=TIKTOK,
            sender_id=str(sender_id),
            recipient_id=str(recipient_id),
            message_id=content.get("msg_id") or body.get("msg_id"),
            text=content.get("text") or (body.get("message") or {}).get("text") or "[Media]",
            sender_name=sender.get("display_name"),
            timestamp=_epoch(body.get("create_time")),
        )
    ]


def verify_signature(raw_body: bytes, header: str | None, secret: str, prefix: str = "sha256=") -> bool:
    """Summary: Verify an HMAC-SHA256 webhook signature over the raw request body.

    Importance: Rejects forged webhook deliveries.
    Alternatives: Rely on an IP allowlist.
    """

    if not header or not secret:
        return False
    expected = prefix + hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode("utf-8"), header.strip().encode("utf-8"))


def verify_subscription(params: dict[str, str], verify_token: str) -> str | None:
    """Return the hub challenge when a Meta subscription request carries our verify token."""

    if params.get("hub.mode") == "subscribe" and params.get("hub.verify_token") == verify_token:
        return params.get("hub.challenge", "")
    return None


def _epoch(value: Any) -> datetime | None:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError):
        return None


def _epoch_millis(value: Any) -> datetime | None:
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return None
