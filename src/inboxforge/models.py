"""Summary: Domain model dataclasses for InboxForge.

Importance: Defines the core entities shared across services and storage.
Alternatives: Use Pydantic models or ORM classes directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


EMAIL = "email"
INSTAGRAM = "instagram"
WHATSAPP = "whatsapp"
TIKTOK = "tiktok"
CHANNELS = (EMAIL, INSTAGRAM, WHATSAPP, TIKTOK)

STATUS_OPEN = "open"
STATUS_ARCHIVED = "archived"
ARCHIVE_TYPES = ("archived", "resolved")

SENDER_CUSTOMER = "customer"
SENDER_BUSINESS = "business"
SENDER_AI = "ai"

DELIVERY_RECEIVED = "received"
DELIVERY_SENDING = "sending"
DELIVERY_SENT = "sent"
DELIVERY_DELIVERED = "delivered"
DELIVERY_READ = "read"
DELIVERY_FAILED = "failed"


def utc_now() -> datetime:
    """Summary: Return the current time as an aware UTC datetime.

    Importance: Keeps window and expiry arithmetic in a single timezone.
    Alternatives: Store naive timestamps and assume UTC everywhere.
    """

    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Summary: Render a datetime as a fixed-width UTC ISO string.

    Importance: Stored timestamps are compared as text inside SQL.
    Alternatives: Store epoch seconds as integers.
    """

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str | None) -> datetime | None:
    """Summary: Parse a stored ISO timestamp into an aware datetime.

    Importance: Storage keeps ISO strings while services compare datetimes.
    Alternatives: Store epoch seconds as integers.
    """

    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Tenant:
    """Summary: Represents a business account that owns channels and quotas.

    Importance: Tenants are the unit of quota enforcement and credential ownership.
    Alternatives: Scope everything by user instead of business.
    """

    name: str
    email: str
    subscription_tier: str = "free"


@dataclass(frozen=True)
class CredentialRecord:
    """Summary: Decoded credential for one connected platform account.

    Importance: Carries everything the token lifecycle needs to decide on a refresh.
    Alternatives: Pass raw database rows to the lifecycle manager.
    """

    id: int
    tenant_id: int
    platform: str
    external_account_id: str
    access_token: str
    token_expires_at: datetime | None
    metadata: dict[str, Any] = field(default_factory=dict)
    username: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class InboundEvent:
    """Summary: Normalized inbound message from any channel.

    Importance: Lets the ingestion router ignore raw webhook wire formats.
    Alternatives: Route raw payloads through channel-specific ingestion paths.
    """

    channel: str
    customer_identity: str
    customer_name: str | None
    content: str
    subject: str | None = None
    external_message_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IngestResult:
    """Summary: Outcome of routing one inbound event.

    Importance: Exposes whether a conversation was created or a delivery repeated.
    Alternatives: Return only the conversation id.
    """

    conversation_id: int
    message_id: int
    created_conversation: bool
    duplicate: bool = False


@dataclass(frozen=True)
class DeliveryStatusEvent:
    """Summary: Upstream delivery receipt for an outbound message.

    Importance: Moves outbound messages forward to delivered or read.
    Alternatives: Poll the platform for message status.
    """

    channel: str
    external_message_id: str
    status: str
    timestamp: datetime | None = None
    error: str | None = None
