"""Summary: Shared fixtures for InboxForge tests.

Importance: Gives every test an isolated database, a controllable clock, and fake upstream platforms.
Alternatives: Patch network calls with monkeypatch in each test module.
"""

from __future__ import annotations

import io
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from inboxforge.app import AppContext, build_context
from inboxforge.config import AppConfig
from inboxforge.errors import SendFailed, UpstreamTransientError
from inboxforge.oauth import PageAccount, TokenGrant


START = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


class FakeResponse(io.BytesIO):
    """Context-managed body standing in for a urlopen response."""

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *args) -> None:
        self.close()


class FakeOAuthClient:
    """Summary: In-memory stand-in for the platform OAuth and Graph endpoints.

    Importance: Records every upstream call so tests can assert that none happened.
    Alternatives: Serve canned responses from a local HTTP server.
    """

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.calls: list[tuple] = []
        self.fail = False
        self.expires_in = timedelta(days=60)
        self.issued = 0
        self.pages = [PageAccount(id="page-1", name="Corner Shop", access_token="page-token-new")]
        self.objects: dict[str, dict] = {}
        self.edges: dict[tuple[str, str], list[dict]] = {}
        self.code_grants: dict[str, dict] = {}

    def exchange_code(self, platform: str, code: str) -> TokenGrant:
        self.calls.append(("exchange_code", platform, code))
        payload = self.code_grants.get(platform, {"access_token": f"{platform}-short"})
        return TokenGrant.from_response(payload, self.clock(), 3600)

    def exchange_for_long_lived_token(self, token: str, platform: str) -> TokenGrant:
        self.calls.append(("exchange", platform, token))
        if self.fail:
            raise UpstreamTransientError("Error validating access token", status_code=400)
        self.issued += 1
        return TokenGrant(
            access_token=f"{platform}-long-{self.issued}",
            expires_at=self.clock() + self.expires_in,
            refresh_token=None,
            raw={},
        )

    def list_page_accounts(self, user_token: str) -> list[PageAccount]:
        self.calls.append(("pages", user_token))
        return list(self.pages)

    def refresh_tiktok_token(self, refresh_token: str) -> TokenGrant:
        self.calls.append(("tiktok_refresh", refresh_token))
        if self.fail:
            raise UpstreamTransientError("invalid_grant")
        self.issued += 1
        return TokenGrant(
            access_token=f"tiktok-access-{self.issued}",
            expires_at=self.clock() + timedelta(days=1),
            refresh_token=f"tiktok-refresh-{self.issued}",
            raw={},
        )

    def get_object(self, object_id: str, fields: str, access_token: str) -> dict:
        self.calls.append(("object", object_id, fields))
        if self.fail:
            raise UpstreamTransientError("lookup failed")
        return dict(self.objects.get(object_id, {}))

    def list_edge(self, object_id: str, edge: str, access_token: str) -> list[dict]:
        self.calls.append(("edge", object_id, edge))
        return list(self.edges.get((object_id, edge), []))

    def get_tiktok_user(self, access_token: str) -> dict:
        self.calls.append(("tiktok_user", access_token))
        return {"display_name": "Tok Shop", "username": "tokshop"}


class FakeSender:
    """Summary: Records outbound sends and fails on demand.

    Importance: Lets dispatch tests script a failure followed by a success.
    Alternatives: Mock the HTTP transport.
    """

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.failures: list[str] = []

    def send_instagram(
        self, access_token: str, account_id: str, recipient_id: str, text: str
    ) -> str:
        return self._record("instagram", token=access_token, to=recipient_id, text=text)

    def send_whatsapp(self, access_token: str, phone_number_id: str, to: str, text: str) -> str:
        return self._record("whatsapp", token=access_token, to=to, text=text)

    def send_email(self, from_email: str, from_name: str, to: str, subject: str, text: str) -> None:
        self._record("email", sender=from_email, to=to, subject=subject, text=text)

    def _record(self, channel: str, **payload: str) -> str:
        if self.failures:
            raise SendFailed(self.failures.pop(0))
        self.sent.append({"channel": channel, **payload})
        return f"{channel}-mid-{len(self.sent)}"


def make_config(tmp_path: Path, **overrides) -> AppConfig:
    values = dict(
        db_path=str(tmp_path / "inboxforge.db"),
        api_host="127.0.0.1",
        api_port=8000,
        api_key="",
        token_secret="test-secret",
        app_url="http://localhost:8000",
        meta_app_id="meta-app",
        meta_app_secret="",
        instagram_app_id="",
        instagram_app_secret="",
        meta_graph_base_url="https://graph.facebook.com/v21.0",
        tiktok_client_key="tiktok-key",
        tiktok_client_secret="",
        tiktok_token_url="https://open.tiktokapis.com/v2/oauth/token/",
        tiktok_api_base_url="https://open.tiktokapis.com/v2",
        sendgrid_api_key="",
        sendgrid_api_url="https://api.sendgrid.com/v3/mail/send",
        webhook_verify_token="verify-me",
    )
    values.update(overrides)
    return AppConfig(**values)


def whatsapp_payload(messages=None, statuses=None, phone_number_id="pn-1") -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "metadata": {"phone_number_id": phone_number_id},
                            "contacts": [{"wa_id": "15550001", "profile": {"name": "Jane"}}],
                            "messages": messages or [],
                            "statuses": statuses or [],
                        },
                    }
                ]
            }
        ],
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def oauth(clock: FakeClock) -> FakeOAuthClient:
    return FakeOAuthClient(clock)


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return make_config(tmp_path)


@pytest.fixture
def context(
    config: AppConfig, oauth: FakeOAuthClient, sender: FakeSender, clock: FakeClock
) -> AppContext:
    return build_context(config, oauth=oauth, sender=sender, now=clock)
