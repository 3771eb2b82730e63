"""Summary: Tests for webhook routing to tenants.

Importance: Webhooks identify the business only by channel account ids or addresses.
Alternatives: Require tenant ids in webhook URLs.
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import timedelta
from pathlib import Path

import pytest

from inboxforge.app import AppContext, build_context
from inboxforge.errors import NotFoundError, QuotaExceeded
from inboxforge.ingestion import IngestionRouter
from conftest import FakeClock, FakeOAuthClient, FakeSender, make_config, whatsapp_payload


def _tenant_with(context: AppContext, clock: FakeClock, platform: str, account: str, **metadata) -> int:
    tenant = context.tenants.create_tenant("Acme", "hello@acme.test")
    context.credentials.save(
        tenant_id=tenant.id,
        platform=platform,
        external_account_id=account,
        access_token=f"{platform}-token",
        token_expires_at=clock() + timedelta(days=30),
        metadata=metadata,
        username="acme.shop",
    )
    return tenant.id


def _instagram_event(sender: str, recipient: str, mid: str, text: str, is_echo: bool = False) -> dict:
    return {
        "object": "instagram",
        "entry": [
            {
                "messaging": [
                    {
                        "sender": {"id": sender},
                        "recipient": {"id": recipient},
                        "message": {"mid": mid, "text": text, "is_echo": is_echo},
                    }
                ]
            }
        ],
    }


def test_email_routes_by_business_address(context: AppContext) -> None:
    tenant = context.tenants.create_tenant("Acme", "hello@acme.test")
    result = context.webhooks.handle_email(
        {
            "type": "email.received",
            "data": {
                "from": "Jane <jane@example.com>",
                "to": "hello@inbound.acme.test",
                "subject": "Hi",
                "text": "Hello there",
            },
        }
    )
    conversation = context.store.get_conversation(result.conversation_id)
    assert conversation.tenant_id == tenant.id
    assert conversation.customer_identity == "jane@example.com"


def test_email_for_unknown_business(context: AppContext) -> None:
    with pytest.raises(NotFoundError):
        context.webhooks.handle_email(
            {"type": "email.received", "data": {"from": "jane@example.com", "to": "nobody@example.com"}}
        )


def test_email_over_quota_raises(context: AppContext) -> None:
    tenant = context.tenants.create_tenant("Acme", "hello@acme.test")
    for index in range(50):
        context.usage.try_increment(tenant.id, "conversations")
    with pytest.raises(QuotaExceeded):
        context.webhooks.handle_email(
            {"type": "email.received", "data": {"from": "jane@example.com", "to": "hello@acme.test"}}
        )


def test_whatsapp_messages_and_receipts(context: AppContext, clock: FakeClock) -> None:
    tenant_id = _tenant_with(context, clock, "whatsapp", "waba-1", phone_number_id="pn-1")
    counts = context.webhooks.handle_whatsapp(
        whatsapp_payload(
            messages=[{"from": "15550001", "id": "wamid.1", "type": "text", "text": {"body": "Hi"}}]
        )
    )
    assert counts == {"messages": 1, "statuses": 0}
    conversation = context.store.find_open_conversation(tenant_id, "whatsapp", "15550001")
    assert conversation.customer_name == "Jane"

    reply = context.dispatcher.send(tenant_id, conversation.id, "Hello!")
    counts = context.webhooks.handle_whatsapp(
        whatsapp_payload(statuses=[{"id": reply.external_message_id, "status": "delivered"}])
    )
    assert counts == {"messages": 0, "statuses": 1}
    assert context.store.get_message(reply.id).status == "delivered"


def test_whatsapp_unknown_phone_number_is_skipped(context: AppContext) -> None:
    counts = context.webhooks.handle_whatsapp(
        whatsapp_payload(
            messages=[{"from": "15550001", "id": "wamid.1", "type": "text", "text": {"body": "Hi"}}],
            phone_number_id="pn-unknown",
        )
    )
    assert counts["messages"] == 0


def test_whatsapp_over_quota_is_acknowledged(context: AppContext, clock: FakeClock) -> None:
    tenant_id = _tenant_with(context, clock, "whatsapp", "waba-1", phone_number_id="pn-1")
    for _ in range(50):
        context.usage.try_increment(tenant_id, "conversations")
    counts = context.webhooks.handle_whatsapp(
        whatsapp_payload(
            messages=[{"from": "15550001", "id": "wamid.1", "type": "text", "text": {"body": "Hi"}}]
        )
    )
    assert counts["messages"] == 0
    assert context.store.find_open_conversation(tenant_id, "whatsapp", "15550001") is None


def test_instagram_resolves_username_and_records_echo(
    context: AppContext, clock: FakeClock, oauth: FakeOAuthClient
) -> None:
    """Summary: Customer DMs get a resolved display name; business echoes join the thread.

    Importance: Replies sent from the Instagram app must appear in the conversation.
    Alternatives: Ignore echo events.
    """

    tenant_id = _tenant_with(context, clock, "instagram", "ig-1", page_id="page-1")
    oauth.objects = {"1789": {"username": "jane.doe"}}
    counts = context.webhooks.handle_instagram(_instagram_event("1789", "ig-1", "mid.1", "Hello"))
    assert counts == {"messages": 1, "echoes": 0}
    conversation = context.store.find_open_conversation(tenant_id, "instagram", "1789")
    assert conversation.customer_name == "@jane.doe"

    echo = _instagram_event("ig-1", "1789", "mid.2", "Hi Jane!", is_echo=True)
    assert context.webhooks.handle_instagram(echo) == {"messages": 0, "echoes": 1}
    assert context.webhooks.handle_instagram(echo) == {"messages": 0, "echoes": 0}
    messages = context.conversations.list_messages(conversation.id)
    assert [(m.sender_type, m.content) for m in messages] == [
        ("customer", "Hello"),
        ("business", "Hi Jane!"),
    ]


def test_instagram_username_lookup_failure_uses_id(
    context: AppContext, clock: FakeClock, oauth: FakeOAuthClient
) -> None:
    tenant_id = _tenant_with(context, clock, "instagram", "ig-1", page_id="page-1")
    oauth.fail = True
    context.webhooks.handle_instagram(_instagram_event("1789", "ig-1", "mid.1", "Hello"))
    conversation = context.store.find_open_conversation(tenant_id, "instagram", "1789")
    assert conversation.customer_name == "@1789"


def test_tiktok_message_routes_by_open_id(context: AppContext, clock: FakeClock) -> None:
    tenant_id = _tenant_with(context, clock, "tiktok", "open-business", refresh_token="r")
    counts = context.webhooks.handle_tiktok(
        {
            "event": "receive_message",
            "content": {
                "msg_id": "tt-1",
                "text": "In stock?",
                "sender": {"open_id": "open-customer", "display_name": "tok_fan"},
                "receiver": {"open_id": "open-business"},
            },
        }
    )
    assert counts == {"messages": 1, "echoes": 0}
    conversation = context.store.find_open_conversation(tenant_id, "tiktok", "open-customer")
    assert conversation.customer_name == "@tok_fan"


def test_simulate_normalizes_email(context: AppContext) -> None:
    tenant = context.tenants.create_tenant("Acme", "hello@acme.test")
    result = context.webhooks.simulate(tenant.id, "email", "Jane", " Jane@Example.com ", "Hi")
    conversation = context.store.get_conversation(result.conversation_id)
    assert conversation.customer_identity == "jane@example.com"
    with pytest.raises(ValueError):
        context.webhooks.simulate(tenant.id, "fax", "Jane", "123", "Hi")


def test_signature_checks(tmp_path: Path, clock: FakeClock) -> None:
    config = make_config(tmp_path, meta_app_secret="app-secret", tiktok_client_secret="tt-secret")
    context = build_context(config, oauth=FakeOAuthClient(clock), sender=FakeSender(), now=clock)
    body = b'{"object": "instagram"}'
    meta = "sha256=" + hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()
    tiktok = hmac.new(b"tt-secret", body, hashlib.sha256).hexdigest()
    assert context.webhooks.signature_ok("instagram", body, meta) is True
    assert context.webhooks.signature_ok("whatsapp", body, "sha256=bad") is False
    assert context.webhooks.signature_ok("tiktok", body, tiktok) is True
    assert context.webhooks.signature_ok("instagram", body, None) is True


def test_instagram_lookup_crash_falls_back_to_id(
    context: AppContext, clock: FakeClock, oauth: FakeOAuthClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Summary: Any username lookup error keeps the message and shows the platform id.

    Importance: Meta must get an acknowledgement and the customer message must not be lost.
    Alternatives: Reject the delivery and rely on redelivery.
    """

    tenant_id = _tenant_with(context, clock, "instagram", "ig-1", page_id="page-1")

    def broken_lookup(object_id, fields, access_token):
        raise ValueError("Missing OAuth client credentials for instagram")

    monkeypatch.setattr(oauth, "get_object", broken_lookup)
    counts = context.webhooks.handle_instagram(_instagram_event("1789", "ig-1", "mid.1", "Hello"))
    assert counts == {"messages": 1, "echoes": 0}
    conversation = context.store.find_open_conversation(tenant_id, "instagram", "1789")
    assert conversation.customer_name == "@1789"


def test_event_failure_does_not_block_the_rest(
    context: AppContext, clock: FakeClock, monkeypatch: pytest.MonkeyPatch
) -> None:
    tenant_id = _tenant_with(context, clock, "tiktok", "open-business", refresh_token="r")
    original_ingest = IngestionRouter.ingest
    calls = []

    def flaky_ingest(router, tenant, event):
        calls.append(event.external_message_id)
        if len(calls) == 1:
            raise RuntimeError("database is locked")
        return original_ingest(router, tenant, event)

    monkeypatch.setattr(IngestionRouter, "ingest", flaky_ingest)
    body = {
        "event": "receive_message",
        "content": {
            "msg_id": "tt-1",
            "text": "In stock?",
            "sender": {"open_id": "open-customer", "display_name": "tok_fan"},
            "receiver": {"open_id": "open-business"},
        },
    }
    assert context.webhooks.handle_tiktok(body) == {"messages": 0, "echoes": 0}
    assert context.webhooks.handle_tiktok(body) == {"messages": 1, "echoes": 0}
    assert context.store.find_open_conversation(tenant_id, "tiktok", "open-customer") is not None
