"""Summary: OAuth helpers for Meta and TikTok channel connections.

Importance: Generates authorization URLs and performs code, long-lived, and refresh exchanges.
Alternatives: Use provider SDKs for OAuth flows.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable
import urllib.parse

from inboxforge.config import AppConfig
from inboxforge.errors import UpstreamTransientError
from inboxforge.models import utc_now
from inboxforge.transport import request_json


META_PLATFORMS = ("instagram", "whatsapp", "facebook")
CONNECT_PLATFORMS = META_PLATFORMS + ("tiktok",)
LONG_LIVED_DEFAULT_EXPIRES_IN = 5184000

META_SCOPES = {
    "instagram": (
        "business_management,pages_show_list,pages_read_engagement,instagram_basic,"
        "instagram_manage_messages,pages_manage_metadata"
    ),
    "whatsapp": "business_management,whatsapp_business_management,whatsapp_business_messaging",
    "facebook": "pages_show_list,pages_messaging,pages_manage_metadata",
}
TIKTOK_AUTH_URL = "https://www.tiktok.com/v2/auth/authorize/"
TIKTOK_SCOPES = "user.info.basic"


@dataclass(frozen=True)
class TokenGrant:
    """Summary: Normalized token response data.

    Importance: Provides a consistent token representation for storage and refresh logic.
    Alternatives: Store the raw provider response without normalization.
    """

    access_token: str
    expires_at: datetime | None
    refresh_token: str | None
    raw: dict[str, Any]

    @staticmethod
    def from_response(
        payload: dict[str, Any], now: datetime, default_expires_in: int | None = None
    ) -> "TokenGrant":
        """Summary: Build a TokenGrant from a provider payload.

        Importance: Normalizes expiry and optional fields across providers.
        Alternatives: Use provider-specific token response classes.
        """

        access_token = payload.get("access_token")
        if not access_token:
            raise UpstreamTransientError("Token response did not include an access token")
        expires_in = payload.get("expires_in", default_expires_in)
        expires_at = None
        if expires_in is not None:
            expires_at = now + timedelta(seconds=int(expires_in))
        return TokenGrant(
            access_token=access_token,
            expires_at=expires_at,
            refresh_token=payload.get("refresh_token"),
            raw=payload,
        )


@dataclass(frozen=True)
class PageAccount:
    """A Facebook page and the page token derived from a user token."""

    id: str
    name: str | None
    access_token: str


class PlatformOAuthClient:
    """Summary: Upstream OAuth and Graph lookups used by connections and token refresh.

    Importance: Isolates every network call the token lifecycle depends on so tests can fake it.
    Alternatives: Call platform endpoints inline from services.
    """

    def __init__(self, config: AppConfig, now: Callable[[], datetime] = utc_now) -> None:
        self._config = config
        self._now = now

    def exchange_code(self, platform: str, code: str) -> TokenGrant:
        """Summary: Exchange an authorization code for a short-lived token.

        Importance: Completes the OAuth callback for every connectable platform.
        Alternatives: Use provider SDKs or external auth services.
        """

        if platform == "tiktok":
            _ensure_oauth_config(
                self._config.tiktok_client_key, self._config.tiktok_client_secret, platform
            )
            payload = request_json(
                "POST",
                self._config.tiktok_token_url,
                self._config.http_timeout_seconds,
                form={
                    "client_key": self._config.tiktok_client_key,
                    "client_secret": self._config.tiktok_client_secret,
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": self._config.oauth_redirect_uri(platform),
                },
            )
            return TokenGrant.from_response(payload, self._now())
        client_id, client_secret = self._meta_app(platform)
        payload = request_json(
            "GET",
            f"{self._config.meta_graph_base_url}/oauth/access_token",
            self._config.http_timeout_seconds,
            params={
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": self._config.oauth_redirect_uri(platform),
                "code": code,
            },
        )
        return TokenGrant.from_response(payload, self._now())

    def exchange_for_long_lived_token(self, token: str, platform: str) -> TokenGrant:
        """Summary: Exchange a short-lived or long-lived token for a fresh long-lived token.

        Importance: The same grant serves the first exchange and every later refresh.
        Alternatives: Ask the tenant to reconnect whenever a token expires.
        """

        client_id, client_secret = self._meta_app(platform)
        payload = request_json(
            "GET",
            f"{self._config.meta_graph_base_url}/oauth/access_token",
            self._config.http_timeout_seconds,
            params={
                "grant_type": "fb_exchange_token",
                "client_id": client_id,
                "client_secret": client_secret,
                "fb_exchange_token": token,
            },
        )
        return TokenGrant.from_response(
            payload, self._now(), default_expires_in=LONG_LIVED_DEFAULT_EXPIRES_IN
        )

    def list_page_accounts(self, user_token: str) -> list[PageAccount]:
        """Summary: List the pages (and page tokens) derivable from a user token.

        Importance: Instagram channel tokens are page tokens re-derived after each refresh.
        Alternatives: Store page tokens only and give up on automatic refresh.
        """

        payload = request_json(
            "GET",
            f"{self._config.meta_graph_base_url}/me/accounts",
            self._config.http_timeout_seconds,
            params={"access_token": user_token},
        )
        return [
            PageAccount(id=str(page["id"]), name=page.get("name"), access_token=page["access_token"])
            for page in payload.get("data", [])
            if page.get("id") and page.get("access_token")
        ]

    def refresh_tiktok_token(self, refresh_token: str) -> TokenGrant:
        _ensure_oauth_config(
            self._config.tiktok_client_key, self._config.tiktok_client_secret, "tiktok"
        )
        payload = request_json(
            "POST",
            self._config.tiktok_token_url,
            self._config.http_timeout_seconds,
            form={
                "client_key": self._config.tiktok_client_key,
                "client_secret": self._config.tiktok_client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )
        return TokenGrant.from_response(payload, self._now())

    def get_object(self, object_id: str, fields: str, access_token: str) -> dict[str, Any]:
        """Summary: Fetch fields of a Graph object.

        Importance: Resolves Instagram accounts, usernames, and WhatsApp business assets.
        Alternatives: Add one method per Graph lookup.
        """

        return request_json(
            "GET",
            f"{self._config.meta_graph_base_url}/{object_id}",
            self._config.http_timeout_seconds,
            params={"fields": fields, "access_token": access_token},
        )

    def list_edge(self, object_id: str, edge: str, access_token: str) -> list[dict[str, Any]]:
        payload = request_json(
            "GET",
            f"{self._config.meta_graph_base_url}/{object_id}/{edge}",
            self._config.http_timeout_seconds,
            params={"access_token": access_token},
        )
        return list(payload.get("data", []))

    def get_tiktok_user(self, access_token: str) -> dict[str, Any]:
        payload = request_json(
            "GET",
            f"{self._config.tiktok_api_base_url}/user/info/",
            self._config.http_timeout_seconds,
            params={"fields": "open_id,union_id,avatar_url,display_name,username"},
            headers={"Authorization": f"Bearer {access_token}"},
        )
        return dict(payload.get("data", {}).get("user", {}))

    def _meta_app(self, platform: str) -> tuple[str, str]:
        if platform not in META_PLATFORMS:
            raise ValueError(f"Unknown Meta platform: {platform}")
        client_id, client_secret = self._config.meta_credentials(platform)
        _ensure_oauth_config(client_id, client_secret, platform)
        return client_id, client_secret


def create_state_token() -> str:
    """Summary: Generate a CSRF state token.

    Importance: Protects OAuth flows from CSRF attacks.
    Alternatives: Use server-side session storage with pre-generated tokens.
    """

    return secrets.token_urlsafe(24)


def build_auth_url(config: AppConfig, platform: str, state: str) -> str:
    """Summary: Build the authorization URL that starts a channel connection.

    Importance: Sends the tenant to the provider consent screen with our callback and state.
    Alternatives: Hardcode authorization links in the frontend.
    """

    if platform == "tiktok":
        params = {
            "client_key": config.tiktok_client_key,
            "scope": TIKTOK_SCOPES,
            "response_type": "code",
            "redirect_uri": config.oauth_redirect_uri(platform),
            "state": state,
        }
        return TIKTOK_AUTH_URL + "?" + urllib.parse.urlencode(params)
    if platform not in META_PLATFORMS:
        raise ValueError(f"Unknown OAuth platform: {platform}")
    client_id, _ = config.meta_credentials(platform)
    version = config.meta_graph_base_url.rstrip("/").rsplit("/", 1)[-1]
    params = {
        "client_id": client_id,
        "redirect_uri": config.oauth_redirect_uri(platform),
        "scope": META_SCOPES[platform],
        "response_type": "code",
        "state": state,
    }
    return f"https://www.facebook.com/{version}/dialog/oauth?" + urllib.parse.urlencode(params)


def _ensure_oauth_config(client_id: str, client_secret: str, platform: str) -> None:
    """Summary: Validate that OAuth credentials exist.

    Importance: Prevents confusing token exchange errors when credentials are missing.
    Alternatives: Allow requests to fail at the provider endpoint.
    """

    if not client_id or not client_secret:
        raise ValueError(f"Missing OAuth client credentials for {platform}")
