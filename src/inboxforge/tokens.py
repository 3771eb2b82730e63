"""Summary: Token lifecycle management for connected channel credentials.

Importance: Keeps long-lived platform tokens valid before they expire, without failing requests
on a transient refresh error while the current token still works.
Alternatives: Refresh tokens from a scheduled job, or ask tenants to reconnect on expiry.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Hashable, TypeVar

from inboxforge.credentials import CredentialStore
from inboxforge.errors import ReconnectRequired, UpstreamTransientError
from inboxforge.models import CredentialRecord, utc_now
from inboxforge.oauth import PlatformOAuthClient


logger = logging.getLogger(__name__)

T = TypeVar("T")

DERIVED_PLATFORMS = ("instagram",)
DIRECT_PLATFORMS = ("whatsapp", "facebook")
REFRESH_GRANT_PLATFORMS = ("tiktok",)


class _Flight:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: object = None
        self.error: Exception | None = None


class SingleFlight:
    """Summary: Collapses concurrent calls with the same key into one execution.

    Importance: Only one refresh per credential is in flight; other callers wait for its result.
    Alternatives: Serialize every refresh behind one global lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._flights: dict[Hashable, _Flight] = {}

    def do(self, key: Hashable, fn: Callable[[], T]) -> T:
        with self._lock:
            flight = self._flights.get(key)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._flights[key] = flight
        if not leader:
            flight.done.wait()
            if flight.error is not None:
                raise flight.error
            return flight.result  # type: ignore[return-value]
        try:
            flight.result = fn()
        except Exception as exc:
            flight.error = exc
            raise
        finally:
            with self._lock:
                self._flights.pop(key, None)
            flight.done.set()
        return flight.result  # type: ignore[return-value]


@dataclass(frozen=True)
class TokenLifecycleManager:
    """Summary: Returns a usable access token for a credential, refreshing when due.

    Importance: Every outbound platform call goes through ensure_valid first.
    Alternatives: Let platform calls fail with 401 and refresh reactively.
    """

    credentials: CredentialStore
    oauth: PlatformOAuthClient
    refresh_window_days: int = 7
    now: Callable[[], datetime] = utc_now
    flights: SingleFlight = field(default_factory=SingleFlight)

    def ensure_valid(self, credential: CredentialRecord, platform: str | None = None) -> str:
        """Summary: Return a usable access token, refreshing it when it is close to expiry.

        Importance: Tokens without expiry are permanent; tokens expiring beyond the look-ahead
        window are used as-is; anything else is refreshed. A failed refresh is fatal only when
        the stored token has already expired.
        Alternatives: Always refresh on every call.
        """

        platform = platform or credential.platform
        if credential.token_expires_at is None:
            return credential.access_token
        now = self.now()
        if credential.token_expires_at > now + self._window():
            return credential.access_token
        return self.flights.do(
            credential.id, lambda: self._refresh_if_still_due(credential, platform)
        )

    def refresh(self, credential: CredentialRecord, platform: str | None = None) -> str:
        """Summary: Force a refresh regardless of expiry.

        Importance: Lets operators rotate a token on demand.
        Alternatives: Wait for the look-ahead window.
        """

        platform = platform or credential.platform
        return self.flights.do(credential.id, lambda: self._refresh(credential, platform))

    def _refresh_if_still_due(self, credential: CredentialRecord, platform: str) -> str:
        current = self.credentials.get(credential.id)
        if current is None or not current.is_active:
            raise ReconnectRequired(platform)
        if current.token_expires_at is None or current.token_expires_at > self.now() + self._window():
            logger.info("Credential %s was already refreshed; using stored token.", current.id)
            return current.access_token
        expired = current.token_expires_at <= self.now()
        logger.info(
            "Refreshing %s credential %s (expired=%s, expires_at=%s).",
            platform,
            current.id,
            expired,
            current.token_expires_at.isoformat(),
        )
        try:
            return self._refresh(current, platform)
        except Exception as exc:
            # Misconfiguration and malformed upstream replies count as refresh failures too.
            if expired:
                logger.error(
                    "Refresh failed for expired %s credential %s: %s", platform, current.id, exc
                )
                raise ReconnectRequired(platform) from exc
            logger.warning(
                "Token refresh failed for %s credential %s, but token still valid: %s",
                platform,
                current.id,
                exc,
            )
            return current.access_token

    def _refresh(self, credential: CredentialRecord, platform: str) -> str:
        if platform in DERIVED_PLATFORMS:
            return self._refresh_derived(credential, platform)
        if platform in DIRECT_PLATFORMS:
            grant = self.oauth.exchange_for_long_lived_token(credential.access_token, platform)
            self.credentials.update_tokens(
                credential.id, grant.access_token, grant.expires_at, credential.metadata
            )
            logger.info("Refreshed %s token for credential %s.", platform, credential.id)
            return grant.access_token
        if platform in REFRESH_GRANT_PLATFORMS:
            return self._refresh_with_grant(credential, platform)
        raise ValueError(f"Unsupported platform for token refresh: {platform}")

    def _refresh_derived(self, credential: CredentialRecord, platform: str) -> str:
        """Summary: Refresh the backing user token and re-derive the page token from it.

        Importance: The page token is a function of the user token and the selected page,
        so both are rotated together.
        Alternatives: Store the user token as the channel token and skip page derivation.
        """

        user_token = credential.metadata.get("long_lived_user_token") or credential.access_token
        grant = self.oauth.exchange_for_long_lived_token(user_token, platform)
        pages = self.oauth.list_page_accounts(grant.access_token)
        metadata = dict(credential.metadata)
        metadata["long_lived_user_token"] = grant.access_token
        if not pages:
            self.credentials.update_tokens(
                credential.id, grant.access_token, grant.expires_at, metadata
            )
            logger.warning(
                "No pages found while refreshing credential %s; stored user token directly.",
                credential.id,
            )
            return grant.access_token
        page_id = metadata.get("page_id")
        page = next((page for page in pages if page.id == page_id), pages[0])
        if page.id != page_id:
            logger.warning(
                "Page %s not found for credential %s; using page %s.", page_id, credential.id, page.id
            )
        metadata["page_id"] = page.id
        if page.name:
            metadata["page_name"] = page.name
        self.credentials.update_tokens(credential.id, page.access_token, grant.expires_at, metadata)
        logger.info("Refreshed %s tokens for credential %s.", platform, credential.id)
        return page.access_token

    def _refresh_with_grant(self, credential: CredentialRecord, platform: str) -> str:
        refresh_token = credential.metadata.get("refresh_token")
        if not refresh_token:
            raise UpstreamTransientError(f"No refresh token stored for {platform} credential")
        grant = self.oauth.refresh_tiktok_token(refresh_token)
        metadata = dict(credential.metadata)
        if grant.refresh_token:
            metadata["refresh_token"] = grant.refresh_token
        self.credentials.update_tokens(credential.id, grant.access_token, grant.expires_at, metadata)
        logger.info("Refreshed %s token for credential %s.", platform, credential.id)
        return grant.access_token

    def _window(self) -> timedelta:
        return timedelta(days=self.refresh_window_days)
