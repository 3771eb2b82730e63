"""Summary: Application services for InboxForge.

Importance: Orchestrates tenants, channel connections, conversations, and webhook handling.
Alternatives: Build a full service layer with dependency injection framework.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from inboxforge.config import AppConfig
from inboxforge.credentials import CredentialStore
from inboxforge.dispatch import MessageDispatcher
from inboxforge.errors import (
    InboxForgeError,
    InvalidStateError,
    NotFoundError,
    UpstreamTransientError,
)
from inboxforge.ingestion import IngestionRouter
from inboxforge.models import (
    ARCHIVE_TYPES,
    CHANNELS,
    DELIVERY_SENT,
    INSTAGRAM,
    SENDER_BUSINESS,
    CredentialRecord,
    InboundEvent,
    IngestResult,
    Tenant,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from inboxforge.oauth import (
    CONNECT_PLATFORMS,
    PlatformOAuthClient,
    build_auth_url,
    create_state_token,
)
from inboxforge.storage.sqlite_store import (
    SqliteStore,
    StoredConversation,
    StoredMessage,
    StoredTenant,
)
from inboxforge.tokens import TokenLifecycleManager
from inboxforge.usage import AI_SUGGESTIONS, TIER_LIMITS, UsageCounter, UsageMeter, UsageStatus
from inboxforge.webhooks import (
    DirectMessageEvent,
    parse_email_payload,
    parse_instagram_payload,
    parse_tiktok_payload,
    parse_whatsapp_payload,
    verify_signature,
)


logger = logging.getLogger(__name__)

OAUTH_STATE_TTL = timedelta(minutes=10)


@dataclass(frozen=True)
class TenantService:
    """Summary: Manages tenant records, tiers, and usage reads.

    Importance: Tenants own quotas and channel credentials.
    Alternatives: Use an external account service.
    """

    store: SqliteStore
    usage: UsageMeter

    def create_tenant(self, name: str, email: str, tier: str = "free") -> StoredTenant:
        """Summary: Create or ensure a tenant exists.

        Importance: Seeds both usage windows so the first quota check has a reset time.
        Alternatives: Create tenants without usage state and initialize lazily.
        """

        _check_tier(tier)
        ai_reset_at, conversations_reset_at = self.usage.initial_reset_times()
        tenant_id = self.store.ensure_tenant(
            Tenant(name=name, email=email.strip().lower(), subscription_tier=tier),
            ai_reset_at=ai_reset_at,
            conversations_reset_at=conversations_reset_at,
            created_at=format_timestamp(self.usage.now()),
        )
        logger.info("Ensured tenant %s (%s).", tenant_id, email)
        return self.get_tenant(tenant_id)

    def get_tenant(self, tenant_id: int) -> StoredTenant:
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        return tenant

    def set_tier(self, tenant_id: int, tier: str) -> StoredTenant:
        """Summary: Change a tenant's subscription tier.

        Importance: New limits apply on the next quota check; counters are kept.
        Alternatives: Reset counters whenever the tier changes.
        """

        _check_tier(tier)
        if not self.store.set_subscription_tier(tenant_id, tier):
            raise NotFoundError(f"Tenant {tenant_id} not found")
        logger.info("Tenant %s moved to %s tier.", tenant_id, tier)
        return self.get_tenant(tenant_id)

    def usage_status(self, tenant_id: int) -> UsageStatus:
        return self.usage.status(tenant_id)

    def consume_ai_suggestion(self, tenant_id: int) -> UsageCounter:
        """Consume one daily AI suggestion or raise QuotaExceeded."""

        return self.usage.require(tenant_id, AI_SUGGESTIONS)


@dataclass(frozen=True)
class ConnectionService:
    """Summary: Runs the OAuth connect flow and manages channel connections.

    Importance: Creates the credential records the token lifecycle keeps valid.
    Alternatives: Paste platform tokens in manually.
    """

    store: SqliteStore
    config: AppConfig
    credentials: CredentialStore
    oauth: PlatformOAuthClient
    tokens: TokenLifecycleManager
    now: Callable[[], datetime] = utc_now

    def start(self, tenant_id: int, platform: str) -> dict[str, str]:
        """Summary: Begin an OAuth connection for a tenant.

        Importance: Binds a single-use state token to the tenant for the callback.
        Alternatives: Pass the tenant id through the state parameter directly.
        """

        _check_platform(platform)
        if self.store.get_tenant(tenant_id) is None:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        state = create_state_token()
        self.store.save_oauth_state(state, platform, tenant_id, format_timestamp(self.now()))
        return {"url": build_auth_url(self.config, platform, state), "state": state}

    def complete(self, platform: str, code: str, state: str) -> CredentialRecord:
        """Summary: Finish an OAuth connection and store the resulting credential.

        Importance: Each platform derives its channel account differently.
        Alternatives: Store the raw user token and resolve accounts at send time.
        """

        _check_platform(platform)
        record = self.store.pop_oauth_state(state)
        if record is None or record.platform != platform:
            raise InvalidStateError("Invalid OAuth state")
        if self.now() - parse_timestamp(record.created_at) > OAUTH_STATE_TTL:
            raise InvalidStateError("OAuth state expired")
        if platform == "instagram":
            credential = self._connect_instagram(record.tenant_id, code)
        elif platform == "whatsapp":
            credential = self._connect_whatsapp(record.tenant_id, code)
        elif platform == "facebook":
            credential = self._connect_facebook(record.tenant_id, code)
        else:
            credential = self._connect_tiktok(record.tenant_id, code)
        logger.info("Connected %s account for tenant %s.", platform, record.tenant_id)
        return credential

    def disconnect(self, tenant_id: int, platform: str) -> int:
        _check_platform(platform)
        return self.credentials.deactivate(tenant_id, platform)

    def refresh(self, tenant_id: int, platform: str) -> CredentialRecord:
        credential = self.credentials.active_for(tenant_id, platform)
        if credential is None:
            raise NotFoundError(f"No active {platform} connection for tenant {tenant_id}")
        self.tokens.refresh(credential, platform)
        return self.credentials.get(credential.id)

    def _connect_instagram(self, tenant_id: int, code: str) -> CredentialRecord:
        short = self.oauth.exchange_code("instagram", code)
        user = self.oauth.exchange_for_long_lived_token(short.access_token, "instagram")
        pages = self.oauth.list_page_accounts(user.access_token)
        if not pages:
            raise InvalidStateError(
                "No Facebook pages found. Connect an Instagram Business account to a Facebook Page first."
            )
        page = pages[0]
        account = self.oauth.get_object(page.id, "instagram_business_account", page.access_token)
        ig_account = account.get("instagram_business_account") or {}
        if not ig_account.get("id"):
            raise InvalidStateError("No Instagram Business account connected to this Facebook Page.")
        ig_user_id = str(ig_account["id"])
        profile = self.oauth.get_object(ig_user_id, "username", page.access_token)
        return self.credentials.save(
            tenant_id=tenant_id,
            platform="instagram",
            external_account_id=ig_user_id,
            access_token=page.access_token,
            token_expires_at=user.expires_at,
            metadata={
                "page_id": page.id,
                "page_name": page.name,
                "long_lived_user_token": user.access_token,
            },
            username=profile.get("username"),
        )

    def _connect_whatsapp(self, tenant_id: int, code: str) -> CredentialRecord:
        short = self.oauth.exchange_code("whatsapp", code)
        grant = self.oauth.exchange_for_long_lived_token(short.access_token, "whatsapp")
        token = grant.access_token
        businesses = self.oauth.list_edge("me", "businesses", token)
        if not businesses:
            raise InvalidStateError(
                "No businesses found. Set up a WhatsApp Business account first."
            )
        business_id = str(businesses[0]["id"])
        accounts = self.oauth.list_edge(business_id, "owned_whatsapp_business_accounts", token)
        if not accounts:
            raise InvalidStateError("No WhatsApp Business accounts found for this business.")
        waba_id = str(accounts[0]["id"])
        phones = self.oauth.list_edge(waba_id, "phone_numbers", token)
        if not phones:
            raise InvalidStateError("No phone numbers found for this WhatsApp Business account.")
        phone = phones[0]
        return self.credentials.save(
            tenant_id=tenant_id,
            platform="whatsapp",
            external_account_id=waba_id,
            access_token=token,
            token_expires_at=grant.expires_at,
            metadata={
                "phone_number_id": str(phone["id"]),
                "display_phone_number": phone.get("display_phone_number"),
                "waba_id": waba_id,
                "business_id": business_id,
            },
            username=phone.get("display_phone_number"),
        )

    def _connect_facebook(self, tenant_id: int, code: str) -> CredentialRecord:
        short = self.oauth.exchange_code("facebook", code)
        user = self.oauth.exchange_for_long_lived_token(short.access_token, "facebook")
        pages = self.oauth.list_page_accounts(user.access_token)
        if not pages:
            raise InvalidStateError("No Facebook pages found")
        page = pages[0]
        # Page tokens derived from a long-lived user token do not expire.
        return self.credentials.save(
            tenant_id=tenant_id,
            platform="facebook",
            external_account_id=page.id,
            access_token=page.access_token,
            token_expires_at=None,
            metadata={"page_name": page.name},
            username=page.name,
        )

    def _connect_tiktok(self, tenant_id: int, code: str) -> CredentialRecord:
        grant = self.oauth.exchange_code("tiktok", code)
        open_id = grant.raw.get("open_id")
        if not open_id:
            raise UpstreamTransientError("TikTok token response did not include open_id")
        user = self.oauth.get_tiktok_user(grant.access_token)
        return self.credentials.save(
            tenant_id=tenant_id,
            platform="tiktok",
            external_account_id=str(open_id),
            access_token=grant.access_token,
            token_expires_at=grant.expires_at,
            metadata={
                "refresh_token": grant.refresh_token,
                "open_id": open_id,
                "scope": grant.raw.get("scope"),
            },
            username=user.get("username") or user.get("display_name") or str(open_id),
        )


@dataclass(frozen=True)
class ConversationService:
    """Summary: Inbox and archive operations on conversations.

    Importance: Archiving frees the customer identity for a new conversation.
    Alternatives: Keep a single conversation per customer forever.
    """

    store: SqliteStore
    now: Callable[[], datetime] = utc_now

    def get(self, conversation_id: int) -> StoredConversation:
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def list_conversations(
        self, tenant_id: int, archived: bool = False, limit: int = 50
    ) -> list[StoredConversation]:
        return self.store.list_conversations(tenant_id, archived, limit)

    def list_messages(self, conversation_id: int) -> list[StoredMessage]:
        self.get(conversation_id)
        return self.store.list_conversation_messages(conversation_id)

    def archive(self, conversation_id: int, archive_type: str = "archived") -> StoredConversation:
        if archive_type not in ARCHIVE_TYPES:
            raise ValueError(f"Unknown archive type: {archive_type}")
        self.get(conversation_id)
        self.store.archive_conversation(conversation_id, archive_type, format_timestamp(self.now()))
        logger.info("Archived conversation %s as %s.", conversation_id, archive_type)
        return self.get(conversation_id)

    def reopen(self, conversation_id: int) -> StoredConversation:
        """Summary: Move an archived conversation back to the inbox.

        Importance: Fails when the customer already has a newer open conversation.
        Alternatives: Merge the two conversations.
        """

        self.get(conversation_id)
        try:
            self.store.reopen_conversation(conversation_id)
        except sqlite3.IntegrityError as exc:
            raise InvalidStateError(
                "Customer already has an open conversation on this channel"
            ) from exc
        logger.info("Reopened conversation %s.", conversation_id)
        return self.get(conversation_id)

    def mark_read(self, conversation_id: int) -> StoredConversation:
        self.get(conversation_id)
        self.store.mark_conversation_read(conversation_id)
        return self.get(conversation_id)

    def update_notes(self, conversation_id: int, notes: str) -> StoredConversation:
        self.get(conversation_id)
        self.store.update_conversation_notes(conversation_id, notes)
        return self.get(conversation_id)

    def delete(self, conversation_id: int) -> None:
        self.get(conversation_id)
        self.store.delete_conversation(conversation_id)
        logger.info("Deleted conversation %s and its messages.", conversation_id)


@dataclass(frozen=True)
class WebhookService:
    """Summary: Resolves webhook deliveries to tenants and feeds the ingestion router.

    Importance: Meta and TikTok deliveries are acknowledged even when one event fails,
    so upstream does not redeliver forever.
    Alternatives: Fail the whole delivery on the first bad event.
    """

    store: SqliteStore
    config: AppConfig
    credentials: CredentialStore
    router: IngestionRouter
    dispatcher: MessageDispatcher
    tokens: TokenLifecycleManager
    oauth: PlatformOAuthClient
    now: Callable[[], datetime] = utc_now

    def signature_ok(self, platform: str, raw_body: bytes, header: str | None) -> bool:
        """Summary: Check a webhook signature when both a secret and a header are present.

        Importance: Unsigned deliveries are accepted so local testing keeps working.
        Alternatives: Require a signature on every delivery.
        """

        if platform == "tiktok":
            secret, prefix = self.config.tiktok_client_secret, ""
        else:
            secret, prefix = self.config.meta_credentials(platform)[1], "sha256="
        if not secret or not header:
            return True
        return verify_signature(raw_body, header, secret, prefix=prefix)

    def handle_email(self, body: dict[str, Any]) -> IngestResult | None:
        """Summary: Ingest an inbound email.

        Importance: Unknown businesses raise NotFoundError and exhausted quotas raise
        QuotaExceeded so the caller can answer 404 or 429.
        Alternatives: Drop such emails silently.
        """

        routed = parse_email_payload(body)
        if routed is None:
            return None
        tenant = self.store.get_tenant_by_email(routed.account_id)
        if tenant is None:
            raise NotFoundError(f"No business found for {routed.account_id}")
        return self.router.ingest(tenant.id, routed.event)

    def handle_whatsapp(self, body: dict[str, Any]) -> dict[str, int]:
        batch = parse_whatsapp_payload(body)
        stored = 0
        for routed in batch.messages:
            credential = self.credentials.find_by_metadata(
                "whatsapp", "phone_number_id", routed.account_id
            )
            if credential is None:
                logger.warning("No business found for WhatsApp phone number %s.", routed.account_id)
                continue
            if self._ingest_quietly(credential.tenant_id, routed.event):
                stored += 1
        updated = sum(1 for status in batch.statuses if self.dispatcher.apply_delivery_status(status))
        return {"messages": stored, "statuses": updated}

    def handle_instagram(self, body: dict[str, Any]) -> dict[str, int]:
        return self._handle_direct_messages(parse_instagram_payload(body))

    def handle_tiktok(self, body: dict[str, Any]) -> dict[str, int]:
        return self._handle_direct_messages(parse_tiktok_payload(body))

    def simulate(
        self,
        tenant_id: int,
        channel: str,
        customer_name: str,
        customer_contact: str,
        message: str,
        subject: str | None = None,
    ) -> IngestResult:
        """Summary: Inject a customer message as if a channel had delivered it.

        Importance: Exercises ingestion and quotas locally without platform accounts.
        Alternatives: Replay recorded webhook payloads.
        """

        if channel not in CHANNELS:
            raise ValueError(f"Unknown channel: {channel}")
        event = InboundEvent(
            channel=channel,
            customer_identity=_normalize_contact(channel, customer_contact),
            customer_name=customer_name,
            content=message,
            subject=subject or ("No Subject" if channel == "email" else None),
            metadata={"simulated": True},
        )
        return self.router.ingest(tenant_id, event)

    def _handle_direct_messages(self, events: list[DirectMessageEvent]) -> dict[str, int]:
        counts = {"messages": 0, "echoes": 0}
        for event in events:
            try:
                outcome = self._route_direct_message(event)
            except Exception:
                logger.exception(
                    "Failed to process %s message %s; acknowledging anyway.",
                    event.channel,
                    event.message_id,
                )
                continue
            if outcome is not None:
                counts[outcome] += 1
        return counts

    def _route_direct_message(self, event: DirectMessageEvent) -> str | None:
        credential = self.credentials.find_by_account(event.channel, event.recipient_id)
        is_echo = False
        if credential is None:
            credential = self.credentials.find_by_account(event.channel, event.sender_id)
            is_echo = credential is not None
        if credential is None:
            logger.warning(
                "No business found for %s accounts %s/%s.",
                event.channel,
                event.sender_id,
                event.recipient_id,
            )
            return None
        is_echo = is_echo or event.is_echo or event.sender_id == credential.external_account_id
        if is_echo:
            return "echoes" if self._record_echo(credential, event) else None
        inbound = InboundEvent(
            channel=event.channel,
            customer_identity=event.sender_id,
            customer_name=self._display_name(credential, event),
            content=event.text,
            external_message_id=event.message_id,
            metadata={"sender_id": event.sender_id, "recipient_id": event.recipient_id},
        )
        return "messages" if self._ingest_quietly(credential.tenant_id, inbound) else None

    def _ingest_quietly(self, tenant_id: int, event: InboundEvent) -> bool:
        try:
            result = self.router.ingest(tenant_id, event)
        except InboxForgeError as exc:
            logger.warning(
                "Dropped %s message from %s for tenant %s: %s",
                event.channel,
                event.customer_identity,
                tenant_id,
                exc,
            )
            return False
        except Exception:
            logger.exception(
                "Failed to store %s message from %s for tenant %s.",
                event.channel,
                event.customer_identity,
                tenant_id,
            )
            return False
        return not result.duplicate

    def _display_name(self, credential: CredentialRecord, event: DirectMessageEvent) -> str:
        if event.channel != INSTAGRAM:
            return f"@{event.sender_name or event.sender_id}"
        username = None
        try:
            token = self.tokens.ensure_valid(credential, INSTAGRAM)
            username = self.oauth.get_object(event.sender_id, "username", token).get("username")
        except Exception as exc:
            logger.warning("Could not resolve Instagram username for %s: %s", event.sender_id, exc)
        return f"@{username or event.sender_id}"

    def _record_echo(self, credential: CredentialRecord, event: DirectMessageEvent) -> bool:
        """Summary: Store a message the business sent from the platform's own app.

        Importance: Keeps the thread complete; replies sent through InboxForge are already stored.
        Alternatives: Ignore echoes entirely.
        """

        conversation = self.store.find_open_conversation(
            credential.tenant_id, event.channel, event.recipient_id
        )
        if conversation is None:
            logger.warning("Echo message for unknown %s conversation.", event.channel)
            return False
        if event.message_id and self.store.find_message_by_external_id(
            event.channel, event.message_id
        ):
            logger.debug("Echo %s already stored.", event.message_id)
            return False
        sent_at = format_timestamp(event.timestamp or self.now())
        self.store.insert_message(
            conversation_id=conversation.id,
            tenant_id=credential.tenant_id,
            sender_type=SENDER_BUSINESS,
            sender_name=credential.username,
            content=event.text,
            channel=event.channel,
            status=DELIVERY_SENT,
            external_message_id=event.message_id,
            metadata=json.dumps({"is_echo": True}),
            created_at=format_timestamp(self.now()),
            sent_at=sent_at,
        )
        self.store.touch_conversation(conversation.id, format_timestamp(self.now()))
        return True


def _check_tier(tier: str) -> None:
    if tier not in TIER_LIMITS:
        raise ValueError(f"Unknown subscription tier: {tier}")


def _normalize_contact(channel: str, contact: str) -> str:
    contact = contact.strip()
    return contact.lower() if channel == "email" else contact


def _check_platform(platform: str) -> None:
    if platform not in CONNECT_PLATFORMS:
        raise ValueError(f"Unknown platform: {platform}")
