"""Summary: Routes normalized inbound events into conversations.

Importance: Threads every channel's messages per customer identity, gated by the conversation quota.
Alternatives: Let each webhook handler write conversations directly.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from inboxforge.errors import NotFoundError, QuotaExceeded
from inboxforge.models import (
    DELIVERY_RECEIVED,
    SENDER_CUSTOMER,
    InboundEvent,
    IngestResult,
    format_timestamp,
    utc_now,
)
from inboxforge.storage.sqlite_store import SqliteStore
from inboxforge.usage import CONVERSATIONS, UsageMeter


logger = logging.getLogger(__name__)

MEDIA_PLACEHOLDER = "[Media]"


@dataclass(frozen=True)
class IngestionRouter:
    """Summary: Find-or-create a conversation for an inbound event and append the message.

    Importance: Keeps at most one open conversation per (tenant, channel, customer identity)
    and stays idempotent under redelivered webhooks.
    Alternatives: Create a conversation per message and merge later.
    """

    store: SqliteStore
    usage: UsageMeter
    now: Callable[[], datetime] = utc_now

    def ingest(self, tenant_id: int, event: InboundEvent) -> IngestResult:
        """Summary: Persist an inbound message, creating its conversation when needed.

        Importance: Raises QuotaExceeded without writing anything when a new conversation
        is needed but the tenant's monthly allowance is used up.
        Alternatives: Accept the message and hide it until the tenant upgrades.
        """

        if self.store.get_tenant(tenant_id) is None:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        duplicate = self._find_duplicate(event)
        if duplicate is not None:
            return duplicate

        now = format_timestamp(self.now())
        existing = self.store.find_open_conversation(
            tenant_id, event.channel, event.customer_identity
        )
        if existing is not None:
            conversation_id, created = existing.id, False
            self._touch(conversation_id, event, existing.customer_name, now)
        else:
            conversation_id, created = self._create(tenant_id, event, now)

        message_id = self.store.insert_message(
            conversation_id=conversation_id,
            tenant_id=tenant_id,
            sender_type=SENDER_CUSTOMER,
            sender_name=event.customer_name or event.customer_identity,
            content=_message_content(event),
            channel=event.channel,
            status=DELIVERY_RECEIVED,
            external_message_id=event.external_message_id,
            metadata=json.dumps(_message_metadata(event)),
            created_at=now,
        )
        if message_id is None:
            # Lost a race with a concurrent delivery of the same upstream message.
            duplicate = self._find_duplicate(event)
            if duplicate is not None:
                if created and duplicate.conversation_id != conversation_id:
                    self.store.delete_conversation(conversation_id)
                    self.usage.release(tenant_id, CONVERSATIONS)
                    logger.info(
                        "Dropped empty conversation %s; message %s is already stored.",
                        conversation_id,
                        duplicate.message_id,
                    )
                return duplicate
            raise RuntimeError("Message insert was ignored without a stored duplicate")
        logger.info(
            "Stored %s message %s in conversation %s (new=%s).",
            event.channel,
            message_id,
            conversation_id,
            created,
        )
        return IngestResult(
            conversation_id=conversation_id,
            message_id=message_id,
            created_conversation=created,
        )

    def _create(self, tenant_id: int, event: InboundEvent, now: str) -> tuple[int, bool]:
        if not self.usage.try_increment(tenant_id, CONVERSATIONS):
            counter = self.usage.counter(tenant_id, CONVERSATIONS)
            logger.warning(
                "Conversation limit reached for tenant %s; dropped %s message from %s.",
                tenant_id,
                event.channel,
                event.customer_identity,
            )
            raise QuotaExceeded(CONVERSATIONS, counter.used, counter.limit, counter.reset_at)
        conversation_id, created = self.store.create_conversation(
            tenant_id, event.channel, event.customer_identity, event.customer_name, now
        )
        if created:
            logger.info(
                "Created %s conversation %s for tenant %s.", event.channel, conversation_id, tenant_id
            )
            return conversation_id, True
        # A concurrent event created it first; treat as found and return the unit.
        self.usage.release(tenant_id, CONVERSATIONS)
        self.store.record_inbound_activity(conversation_id, now)
        return conversation_id, False

    def _touch(
        self, conversation_id: int, event: InboundEvent, current_name: str | None, now: str
    ) -> None:
        self.store.record_inbound_activity(conversation_id, now)
        if event.customer_name and event.customer_name != current_name:
            # Identity representation changed; update display text only, never merge.
            self.store.update_customer_name(conversation_id, event.customer_name)

    def _find_duplicate(self, event: InboundEvent) -> IngestResult | None:
        if not event.external_message_id:
            return None
        stored = self.store.find_message_by_external_id(event.channel, event.external_message_id)
        if stored is None:
            return None
        logger.warning(
            "Ignoring duplicate %s delivery %s.", event.channel, event.external_message_id
        )
        return IngestResult(
            conversation_id=stored.conversation_id,
            message_id=stored.id,
            created_conversation=False,
            duplicate=True,
        )


def _message_content(event: InboundEvent) -> str:
    content = (event.content or "").strip()
    if content:
        return content
    if event.subject and event.subject.strip():
        return event.subject.strip()
    return MEDIA_PLACEHOLDER


def _message_metadata(event: InboundEvent) -> dict:
    metadata = dict(event.metadata)
    if event.subject:
        metadata.setdefault("subject", event.subject)
    return metadata
