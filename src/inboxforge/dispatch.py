"""Summary: Outbound message dispatch and delivery tracking.

Importance: Sends replies through the right channel with a valid credential and records the outcome.
Alternatives: Queue outbound messages and deliver them from a worker.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from inboxforge.config import AppConfig
from inboxforge.credentials import CredentialStore
from inboxforge.errors import (
    InvalidStateError,
    NotFoundError,
    ReconnectRequired,
    SendFailed,
    UpstreamTransientError,
)
from inboxforge.models import (
    DELIVERY_DELIVERED,
    DELIVERY_FAILED,
    DELIVERY_READ,
    DELIVERY_SENDING,
    DELIVERY_SENT,
    EMAIL,
    INSTAGRAM,
    SENDER_BUSINESS,
    TIKTOK,
    WHATSAPP,
    DeliveryStatusEvent,
    format_timestamp,
    utc_now,
)
from inboxforge.storage.sqlite_store import SqliteStore, StoredConversation, StoredMessage
from inboxforge.tokens import TokenLifecycleManager
from inboxforge.transport import request_json


logger = logging.getLogger(__name__)

DELIVERY_RANK = {DELIVERY_SENDING: 0, DELIVERY_SENT: 1, DELIVERY_DELIVERED: 2, DELIVERY_READ: 3}


class ChannelSender:
    """Summary: Platform send endpoints for each outbound channel.

    Importance: Keeps wire formats out of the dispatcher so tests can swap the transport.
    Alternatives: Use provider SDKs.
    """

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    def send_instagram(
        self, access_token: str, account_id: str, recipient_id: str, text: str
    ) -> str | None:
        payload = self._post(
            f"{self._config.meta_graph_base_url}/{account_id}/messages",
            params={"access_token": access_token},
            body={"recipient": {"id": recipient_id}, "message": {"text": text}},
            channel=INSTAGRAM,
        )
        return payload.get("message_id")

    def send_whatsapp(
        self, access_token: str, phone_number_id: str, to: str, text: str
    ) -> str | None:
        payload = self._post(
            f"{self._config.meta_graph_base_url}/{phone_number_id}/messages",
            headers={"Authorization": f"Bearer {access_token}"},
            body={
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": to,
                "type": "text",
                "text": {"body": text},
            },
            channel=WHATSAPP,
        )
        messages = payload.get("messages") or []
        return messages[0].get("id") if messages else None

    def send_email(
        self, from_email: str, from_name: str, to: str, subject: str, text: str
    ) -> None:
        if not self._config.sendgrid_api_key:
            raise SendFailed(
                "Email service not configured. Please set SENDGRID_API_KEY in your environment."
            )
        self._post(
            self._config.sendgrid_api_url,
            headers={"Authorization": f"Bearer {self._config.sendgrid_api_key}"},
            body={
                "personalizations": [{"to": [{"email": to}]}],
                "from": {"email": from_email, "name": from_name},
                "subject": subject,
                "content": [{"type": "text/plain", "value": text}],
            },
            channel=EMAIL,
        )

    def _post(
        self,
        url: str,
        body: dict,
        channel: str,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict:
        try:
            return request_json(
                "POST",
                url,
                self._config.http_timeout_seconds,
                params=params,
                json_body=body,
                headers=headers,
            )
        except UpstreamTransientError as exc:
            raise SendFailed(f"{channel} delivery failed: {exc.detail}") from exc


@dataclass(frozen=True)
class MessageDispatcher:
    """Summary: Composes, sends, retries, and tracks outbound messages.

    Importance: Outbound status moves sending -> sent or failed; only an explicit retry
    moves a failed message back to sending.
    Alternatives: Fire-and-forget sends without persisted status.
    """

    store: SqliteStore
    credentials: CredentialStore
    tokens: TokenLifecycleManager
    sender: ChannelSender
    now: Callable[[], datetime] = utc_now

    def send(
        self, tenant_id: int, conversation_id: int, content: str, sender_name: str | None = None
    ) -> StoredMessage:
        """Summary: Store a business reply and deliver it.

        Importance: The message row exists before delivery so a failure stays retryable.
        Alternatives: Persist only successfully delivered messages.
        """

        conversation = self._conversation(conversation_id)
        if conversation.tenant_id != tenant_id:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        if not content.strip():
            raise ValueError("Message content is required")
        now = format_timestamp(self.now())
        message_id = self.store.insert_message(
            conversation_id=conversation.id,
            tenant_id=tenant_id,
            sender_type=SENDER_BUSINESS,
            sender_name=sender_name,
            content=content,
            channel=conversation.channel,
            status=DELIVERY_SENDING,
            external_message_id=None,
            metadata=json.dumps({}),
            created_at=now,
        )
        self.store.touch_conversation(conversation.id, now)
        return self._deliver(self._message(message_id), conversation)

    def retry(self, message_id: int) -> StoredMessage:
        """Summary: Re-send a failed message.

        Importance: Only the latest failure is kept; a renewed failure overwrites it.
        Alternatives: Keep a history of every delivery attempt.
        """

        message = self._message(message_id)
        if message.status != DELIVERY_FAILED:
            raise InvalidStateError(
                f"Message {message_id} is {message.status}; only failed messages can be retried"
            )
        self.store.mark_message_sending(message_id)
        logger.info("Retrying message %s.", message_id)
        return self._deliver(self._message(message_id), self._conversation(message.conversation_id))

    def apply_delivery_status(self, event: DeliveryStatusEvent) -> bool:
        """Summary: Apply an upstream delivery receipt without moving a message backward.

        Importance: Receipts arrive out of order; read must not regress to delivered.
        Alternatives: Overwrite status with every receipt.
        """

        message = self.store.find_message_by_external_id(event.channel, event.external_message_id)
        if message is None:
            logger.debug("No message for %s receipt %s.", event.channel, event.external_message_id)
            return False
        if not _advances(message.status, event.status):
            logger.info(
                "Ignoring %s receipt for message %s already %s.",
                event.status,
                message.id,
                message.status,
            )
            return False
        at = format_timestamp(event.timestamp or self.now())
        self.store.update_message_receipt(
            message.id,
            event.status,
            delivered_at=at if event.status in (DELIVERY_DELIVERED, DELIVERY_READ) else None,
            read_at=at if event.status == DELIVERY_READ else None,
            error_message=event.error if event.status == DELIVERY_FAILED else None,
        )
        logger.info("Message %s is now %s.", message.id, event.status)
        return True

    def _deliver(self, message: StoredMessage, conversation: StoredConversation) -> StoredMessage:
        try:
            external_id = self._transmit(message, conversation)
        except (SendFailed, ReconnectRequired) as exc:
            self.store.mark_message_failed(message.id, format_timestamp(self.now()), str(exc))
            logger.error("Failed to send %s message %s: %s", message.channel, message.id, exc)
            if isinstance(exc, SendFailed):
                raise SendFailed(exc.reason, message_id=message.id) from exc
            raise
        except Exception as exc:
            # Unexpected errors still leave the message retryable.
            reason = str(exc) or type(exc).__name__
            self.store.mark_message_failed(message.id, format_timestamp(self.now()), reason)
            logger.exception("Unexpected error sending %s message %s.", message.channel, message.id)
            raise SendFailed(reason, message_id=message.id) from exc
        self.store.mark_message_sent(message.id, format_timestamp(self.now()), external_id)
        logger.info("Sent %s message %s.", message.channel, message.id)
        return self._message(message.id)

    def _transmit(self, message: StoredMessage, conversation: StoredConversation) -> str | None:
        channel = conversation.channel
        if channel == EMAIL:
            tenant = self.store.get_tenant(conversation.tenant_id)
            if tenant is None:
                raise NotFoundError(f"Tenant {conversation.tenant_id} not found")
            self.sender.send_email(
                from_email=tenant.email,
                from_name=tenant.name,
                to=conversation.customer_identity,
                subject=f"Re: Message from {tenant.name}",
                text=message.content,
            )
            return None
        if channel == INSTAGRAM:
            credential = self._credential(conversation.tenant_id, channel)
            token = self.tokens.ensure_valid(credential, channel)
            return self.sender.send_instagram(
                token, credential.external_account_id, conversation.customer_identity, message.content
            )
        if channel == WHATSAPP:
            credential = self._credential(conversation.tenant_id, channel)
            phone_number_id = credential.metadata.get("phone_number_id")
            if not phone_number_id:
                raise SendFailed("WhatsApp phone number id missing from connection")
            token = self.tokens.ensure_valid(credential, channel)
            return self.sender.send_whatsapp(
                token, str(phone_number_id), conversation.customer_identity, message.content
            )
        if channel == TIKTOK:
            raise SendFailed("TikTok direct messages cannot be sent through the API")
        raise SendFailed(f"Unsupported channel: {channel}")

    def _credential(self, tenant_id: int, channel: str):
        credential = self.credentials.active_for(tenant_id, channel)
        if credential is None:
            raise SendFailed(f"{channel} is not connected")
        return credential

    def _conversation(self, conversation_id: int) -> StoredConversation:
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def _message(self, message_id: int) -> StoredMessage:
        message = self.store.get_message(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        return message


def _advances(current: str, new: str) -> bool:
    if current == new:
        return False
    if new == DELIVERY_FAILED:
        return current in (DELIVERY_SENDING, DELIVERY_SENT)
    if current not in DELIVERY_RANK:
        return False
    return DELIVERY_RANK[new] > DELIVERY_RANK[current]
