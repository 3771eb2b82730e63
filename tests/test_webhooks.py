"""Summary: Tests for webhook payload normalization and verification.

Importance: Each channel's wire format must land in the same normalized event shape.
Alternatives: Test only end-to-end through the HTTP layer.
"""

from __future__ import annotations

import hashlib
import hmac

from conftest import whatsapp_payload
from inboxforge.webhooks import (
    business_address,
    parse_address,
    parse_email_payload,
    parse_instagram_payload,
    parse_tiktok_payload,
    parse_whatsapp_payload,
    verify_signature,
    verify_subscription,
)


def test_parse_address() -> None:
    assert parse_address('"Jane Doe" <Jane@Example.com>') == ("Jane Doe", "Jane@Example.com")
    assert parse_address("jane@example.com") == (None, "jane@example.com")
    assert parse_address("jane@example.com (Jane Doe)") == ("Jane Doe", "jane@example.com")
    assert parse_address('"Doe, Jane" <jane@example.com>') == ("Doe, Jane", "jane@example.com")
    assert business_address("Shop <hello@inbound.acme.test>") == "hello@acme.test"


def test_parse_email_payload() -> None:
    routed = parse_email_payload(
        {
            "type": "email.received",
            "data": {
                "email_id": "em-1",
                "from": "Jane Doe <Jane@Example.com>",
                "to": ["hello@inbound.acme.test"],
                "subject": "Order status",
                "html": "<p>Where is my order?</p>",
            },
        }
    )
    assert routed.account_id == "hello@acme.test"
    assert routed.event.customer_identity == "jane@example.com"
    assert routed.event.customer_name == "Jane Doe"
    assert routed.event.content == "<p>Where is my order?</p>"
    assert routed.event.external_message_id == "em-1"


def test_email_payload_other_events_ignored() -> None:
    assert parse_email_payload({"type": "email.delivered", "data": {}}) is None


def test_parse_whatsapp_messages_and_statuses() -> None:
    batch = parse_whatsapp_payload(
        whatsapp_payload(
            messages=[
                {"from": "15550001", "id": "wamid.1", "type": "text", "text": {"body": "Hi"}},
                {"from": "15550001", "id": "wamid.2", "type": "image", "image": {}},
                {"from": "15550001", "id": "wamid.3", "type": "audio"},
            ],
            statuses=[
                {"id": "wamid.out", "status": "read", "timestamp": "1773576000"},
                {"id": "wamid.out2", "status": "failed", "errors": [{"title": "Re-engagement"}]},
                {"id": "wamid.out3", "status": "deleted"},
            ],
        )
    )
    assert [routed.account_id for routed in batch.messages] == ["pn-1"] * 3
    assert [routed.event.content for routed in batch.messages] == ["Hi", "[Image]", "[Audio]"]
    assert batch.messages[0].event.customer_name == "Jane"
    assert [status.status for status in batch.statuses] == ["read", "failed"]
    assert batch.statuses[0].timestamp is not None
    assert batch.statuses[1].error == "Re-engagement"


def test_parse_whatsapp_ignores_other_objects() -> None:
    batch = parse_whatsapp_payload({"object": "page", "entry": []})
    assert batch.messages == []
    assert batch.statuses == []


def test_parse_instagram_payload() -> None:
    events = parse_instagram_payload(
        {
            "object": "instagram",
            "entry": [
                {
                    "messaging": [
                        {
                            "sender": {"id": "1789"},
                            "recipient": {"id": "ig-business"},
                            "timestamp": 1773576000000,
                            "message": {"mid": "mid.1", "text": "Hello"},
                        },
                        {
                            "sender": {"id": "ig-business"},
                            "recipient": {"id": "1789"},
                            "message": {"mid": "mid.2", "text": "Hi!", "is_echo": True},
                        },
                        {"sender": {"id": "1789"}, "recipient": {"id": "ig-business"}, "read": {}},
                    ]
                }
            ],
        }
    )
    assert len(events) == 2
    assert events[0].sender_id == "1789"
    assert events[0].is_echo is False
    assert events[1].is_echo is True


def test_parse_tiktok_payload() -> None:
    events = parse_tiktok_payload(
        {
            "event": "receive_message",
            "create_time": 1773576000,
            "content": {
                "msg_id": "tt-1",
                "text": "Is this in stock?",
                "sender": {"open_id": "open-customer", "display_name": "tok_fan"},
                "receiver": {"open_id": "open-business"},
            },
        }
    )
    assert len(events) == 1
    assert events[0].recipient_id == "open-business"
    assert events[0].sender_name == "tok_fan"
    assert parse_tiktok_payload({"event": "authorization.removed"}) == []


def test_verify_signature() -> None:
    body = b'{"object": "instagram"}'
    digest = hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()
    assert verify_signature(body, f"sha256={digest}", "app-secret") is True
    assert verify_signature(body, f"sha256={digest}", "other-secret") is False
    assert verify_signature(body, digest, "app-secret", prefix="") is True
    assert verify_signature(body, "sha256=é", "app-secret") is False
    assert verify_signature(body, None, "app-secret") is False


def test_verify_subscription() -> None:
    params = {"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "42"}
    assert verify_subscription(params, "verify-me") == "42"
    assert verify_subscription(params, "wrong") is None
