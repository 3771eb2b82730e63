"""Summary: Application factory wiring core services.

Importance: Centralizes dependency creation for the CLI and API layers.
Alternatives: Instantiate services manually in each entrypoint.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from inboxforge.config import AppConfig
from inboxforge.credentials import CredentialStore
from inboxforge.dispatch import ChannelSender, MessageDispatcher
from inboxforge.ingestion import IngestionRouter
from inboxforge.models import utc_now
from inboxforge.oauth import PlatformOAuthClient
from inboxforge.rate_limit import RateLimiter
from inboxforge.services import (
    ConnectionService,
    ConversationService,
    TenantService,
    WebhookService,
)
from inboxforge.storage.sqlite_store import SqliteStore
from inboxforge.token_codec import TokenCodec
from inboxforge.tokens import TokenLifecycleManager
from inboxforge.usage import UsageMeter


@dataclass(frozen=True)
class AppContext:
    """Summary: Bundle of core components and services for InboxForge.

    Importance: Simplifies passing dependencies to UI or API layers.
    Alternatives: Use a dependency injection container.
    """

    config: AppConfig
    store: SqliteStore
    credentials: CredentialStore
    tokens: TokenLifecycleManager
    usage: UsageMeter
    router: IngestionRouter
    dispatcher: MessageDispatcher
    rate_limiter: RateLimiter
    tenants: TenantService
    connections: ConnectionService
    conversations: ConversationService
    webhooks: WebhookService


def build_context(
    config: AppConfig,
    oauth: PlatformOAuthClient | None = None,
    sender: ChannelSender | None = None,
    now: Callable[[], datetime] = utc_now,
) -> AppContext:
    """Summary: Build every component from configuration.

    Importance: One construction path; tests swap the upstream clients and the clock.
    Alternatives: Construct dependencies separately per request.
    """

    store = SqliteStore(config.db_path)
    store.initialize()
    oauth = oauth or PlatformOAuthClient(config, now=now)
    sender = sender or ChannelSender(config)
    credentials = CredentialStore(store=store, codec=TokenCodec(config.token_secret), now=now)
    tokens = TokenLifecycleManager(
        credentials=credentials,
        oauth=oauth,
        refresh_window_days=config.token_refresh_window_days,
        now=now,
    )
    usage = UsageMeter(store=store, now=now)
    router = IngestionRouter(store=store, usage=usage, now=now)
    dispatcher = MessageDispatcher(
        store=store, credentials=credentials, tokens=tokens, sender=sender, now=now
    )
    return AppContext(
        config=config,
        store=store,
        credentials=credentials,
        tokens=tokens,
        usage=usage,
        router=router,
        dispatcher=dispatcher,
        rate_limiter=RateLimiter(
            store=store,
            max_requests=config.rate_limit_requests,
            window_seconds=config.rate_limit_window_seconds,
            now=now,
        ),
        tenants=TenantService(store=store, usage=usage),
        connections=ConnectionService(
            store=store,
            config=config,
            credentials=credentials,
            oauth=oauth,
            tokens=tokens,
            now=now,
        ),
        conversations=ConversationService(store=store, now=now),
        webhooks=WebhookService(
            store=store,
            config=config,
            credentials=credentials,
            router=router,
            dispatcher=dispatcher,
            tokens=tokens,
            oauth=oauth,
            now=now,
        ),
    )
