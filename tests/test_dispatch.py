"""Summary: Tests for outbound dispatch, retry, and delivery receipts.

Importance: A failed send must stay retryable and receipts must never move a message backward.
Alternatives: Verify delivery only through manual sends.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from inboxforge.app import AppContext
from inboxforge.errors import InvalidStateError, NotFoundError, ReconnectRequired, SendFailed
from inboxforge.models import DeliveryStatusEvent, InboundEvent
from conftest import FakeClock, FakeOAuthClient, FakeSender


def _whatsapp_conversation(
    context: AppContext, clock: FakeClock, expires_in: timedelta = timedelta(days=30)
) -> tuple[int, int]:
    tenant = context.tenants.create_tenant("Acme", "hello@acme.test")
    context.credentials.save(
        tenant_id=tenant.id,
        platform="whatsapp",
        external_account_id="waba-1",
        access_token="wa-token",
        token_expires_at=clock() + expires_in,
        metadata={"phone_number_id": "pn-1"},
    )
    result = context.router.ingest(
        tenant.id,
        InboundEvent(channel="whatsapp", customer_identity="15550001", customer_name="Jane", content="Hi"),
    )
    return tenant.id, result.conversation_id


def test_send_whatsapp_marks_sent(context: AppContext, clock: FakeClock, sender: FakeSender) -> None:
    tenant_id, conversation_id = _whatsapp_conversation(context, clock)
    clock.advance(minutes=1)
    message = context.dispatcher.send(tenant_id, conversation_id, "Hello Jane", "Sam")
    assert message.status == "sent"
    assert message.sender_type == "business"
    assert message.external_message_id == "whatsapp-mid-1"
    assert message.sent_at == "2026-03-15T12:01:00.000000+00:00"
    assert sender.sent == [{"channel": "whatsapp", "token": "wa-token", "to": "15550001", "text": "Hello Jane"}]
    conversation = context.store.get_conversation(conversation_id)
    assert conversation.last_message_at == "2026-03-15T12:01:00.000000+00:00"


def test_failed_send_then_retry(context: AppContext, clock: FakeClock, sender: FakeSender) -> None:
    """Summary: A failed send is stored as failed and a retry moves it to sent.

    Importance: The failure detail is kept until a retry succeeds and clears it.
    Alternatives: Drop failed messages and ask the user to retype them.
    """

    tenant_id, conversation_id = _whatsapp_conversation(context, clock)
    sender.failures.append("whatsapp delivery failed: (#131047) Re-engagement message")
    with pytest.raises(SendFailed) as excinfo:
        context.dispatcher.send(tenant_id, conversation_id, "Hello Jane")
    message_id = excinfo.value.message_id
    failed = context.store.get_message(message_id)
    assert failed.status == "failed"
    assert "Re-engagement" in failed.error_message
    assert failed.failed_at is not None

    retried = context.dispatcher.retry(message_id)
    assert retried.status == "sent"
    assert retried.failed_at is None
    assert retried.error_message is None
    assert retried.sent_at is not None


def test_retry_failure_keeps_latest_error(context: AppContext, clock: FakeClock, sender: FakeSender) -> None:
    tenant_id, conversation_id = _whatsapp_conversation(context, clock)
    sender.failures.extend(["first failure", "second failure"])
    with pytest.raises(SendFailed) as excinfo:
        context.dispatcher.send(tenant_id, conversation_id, "Hello")
    clock.advance(minutes=10)
    with pytest.raises(SendFailed):
        context.dispatcher.retry(excinfo.value.message_id)
    message = context.store.get_message(excinfo.value.message_id)
    assert message.error_message == "second failure"
    assert message.failed_at == "2026-03-15T12:10:00.000000+00:00"


def test_retry_requires_failed_message(context: AppContext, clock: FakeClock) -> None:
    tenant_id, conversation_id = _whatsapp_conversation(context, clock)
    message = context.dispatcher.send(tenant_id, conversation_id, "Hello")
    with pytest.raises(InvalidStateError):
        context.dispatcher.retry(message.id)


def test_send_with_expired_token_requires_reconnect(
    context: AppContext, clock: FakeClock, oauth: FakeOAuthClient, sender: FakeSender
) -> None:
    tenant_id, conversation_id = _whatsapp_conversation(context, clock, timedelta(days=1))
    clock.advance(days=2)
    oauth.fail = True
    with pytest.raises(ReconnectRequired):
        context.dispatcher.send(tenant_id, conversation_id, "Hello")
    messages = context.conversations.list_messages(conversation_id)
    assert messages[-1].status == "failed"
    assert sender.sent == []


def test_send_refreshes_token_inside_window(
    context: AppContext, clock: FakeClock, oauth: FakeOAuthClient, sender: FakeSender
) -> None:
    tenant_id, conversation_id = _whatsapp_conversation(context, clock, timedelta(days=3))
    context.dispatcher.send(tenant_id, conversation_id, "Hello")
    assert sender.sent[0]["token"] == "whatsapp-long-1"


def test_send_without_connection_fails(context: AppContext, sender: FakeSender) -> None:
    tenant = context.tenants.create_tenant("Acme", "hello@acme.test")
    result = context.router.ingest(
        tenant.id,
        InboundEvent(channel="instagram", customer_identity="1789", customer_name="@jane", content="Hi"),
    )
    with pytest.raises(SendFailed) as excinfo:
        context.dispatcher.send(tenant.id, result.conversation_id, "Hello")
    assert "not connected" in excinfo.value.reason


def test_send_email_uses_tenant_identity(context: AppContext, sender: FakeSender) -> None:
    tenant = context.tenants.create_tenant("Acme", "hello@acme.test")
    result = context.router.ingest(
        tenant.id,
        InboundEvent(channel="email", customer_identity="jane@example.com", customer_name="Jane", content="Hi"),
    )
    message = context.dispatcher.send(tenant.id, result.conversation_id, "Thanks for writing")
    assert message.status == "sent"
    assert sender.sent[0]["sender"] == "hello@acme.test"
    assert sender.sent[0]["subject"] == "Re: Message from Acme"


def test_send_rejects_other_tenant(context: AppContext, clock: FakeClock) -> None:
    _, conversation_id = _whatsapp_conversation(context, clock)
    other = context.tenants.create_tenant("Other", "other@example.test")
    with pytest.raises(NotFoundError):
        context.dispatcher.send(other.id, conversation_id, "Hello")


def test_delivery_receipts_are_monotonic(context: AppContext, clock: FakeClock) -> None:
    """Summary: Receipts advance sent -> delivered -> read and never regress.

    Importance: Upstream receipts can arrive out of order.
    Alternatives: Apply every receipt as it arrives.
    """

    tenant_id, conversation_id = _whatsapp_conversation(context, clock)
    message = context.dispatcher.send(tenant_id, conversation_id, "Hello")

    def receipt(status: str) -> bool:
        return context.dispatcher.apply_delivery_status(
            DeliveryStatusEvent(channel="whatsapp", external_message_id=message.external_message_id, status=status)
        )

    assert receipt("read") is True
    assert receipt("delivered") is False
    assert receipt("failed") is False
    stored = context.store.get_message(message.id)
    assert stored.status == "read"
    assert stored.read_at is not None
    assert stored.delivered_at is not None
    assert context.dispatcher.apply_delivery_status(
        DeliveryStatusEvent(channel="whatsapp", external_message_id="unknown", status="read")
    ) is False


def test_unexpected_send_error_leaves_message_retryable(
    context: AppContext, clock: FakeClock, sender: FakeSender, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Summary: A crash inside the transport still marks the message failed.

    Importance: A message stuck in sending could never be retried.
    Alternatives: Sweep stale sending rows from a background job.
    """

    tenant_id, conversation_id = _whatsapp_conversation(context, clock)

    def broken_send(access_token, phone_number_id, to, text):
        raise RuntimeError("socket closed mid-request")

    monkeypatch.setattr(sender, "send_whatsapp", broken_send)
    with pytest.raises(SendFailed) as excinfo:
        context.dispatcher.send(tenant_id, conversation_id, "Hello Jane")
    message = context.store.get_message(excinfo.value.message_id)
    assert message.status == "failed"
    assert message.error_message == "socket closed mid-request"

    monkeypatch.undo()
    assert context.dispatcher.retry(message.id).status == "sent"
