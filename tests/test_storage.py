"""Summary: Tests for SQLite storage layer.

Importance: Ensures the uniqueness and conditional-write guarantees hold in the database itself.
Alternatives: Rely on service-level tests only.
"""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path

import pytest

from inboxforge.models import Tenant
from inboxforge.storage.sqlite_store import SqliteStore


NOW = "2026-03-15T12:00:00.000000+00:00"


def _store(tmp_path: Path) -> tuple[SqliteStore, int]:
    store = SqliteStore(str(tmp_path / "test.db"))
    store.initialize()
    tenant_id = store.ensure_tenant(
        Tenant(name="Acme", email="hello@acme.test"),
        ai_reset_at="2026-03-16T00:00:00.000000+00:00",
        conversations_reset_at="2026-04-01T00:00:00.000000+00:00",
        created_at=NOW,
    )
    return store, tenant_id


def _message(store: SqliteStore, conversation_id: int, tenant_id: int, external_id: str | None):
    return store.insert_message(
        conversation_id=conversation_id,
        tenant_id=tenant_id,
        sender_type="customer",
        sender_name="Jane",
        content="Hi",
        channel="whatsapp",
        status="received",
        external_message_id=external_id,
        metadata=json.dumps({}),
        created_at=NOW,
    )


def test_ensure_tenant_is_idempotent(tmp_path: Path) -> None:
    store, tenant_id = _store(tmp_path)
    again = store.ensure_tenant(
        Tenant(name="Acme again", email="hello@acme.test"),
        ai_reset_at=NOW,
        conversations_reset_at=NOW,
        created_at=NOW,
    )
    assert again == tenant_id
    assert store.get_tenant_by_email("HELLO@acme.test").id == tenant_id


def test_single_open_conversation_per_identity(tmp_path: Path) -> None:
    """Summary: A second create for the same identity resolves to the existing row.

    Importance: Concurrent first messages from one customer must not fork the thread.
    Alternatives: Check-then-insert without a constraint.
    """

    store, tenant_id = _store(tmp_path)
    first_id, created = store.create_conversation(tenant_id, "whatsapp", "15550001", "Jane", NOW)
    second_id, created_again = store.create_conversation(
        tenant_id, "whatsapp", "15550001", "Jane", NOW
    )
    assert created is True
    assert created_again is False
    assert second_id == first_id


def test_archived_conversation_frees_identity(tmp_path: Path) -> None:
    store, tenant_id = _store(tmp_path)
    first_id, _ = store.create_conversation(tenant_id, "email", "jane@example.com", "Jane", NOW)
    store.archive_conversation(first_id, "resolved", NOW)
    second_id, created = store.create_conversation(
        tenant_id, "email", "jane@example.com", "Jane", NOW
    )
    assert created is True
    assert second_id != first_id
    with pytest.raises(sqlite3.IntegrityError):
        store.reopen_conversation(first_id)


def test_increment_usage_stops_at_limit(tmp_path: Path) -> None:
    store, tenant_id = _store(tmp_path)
    assert store.increment_usage(tenant_id, "ai_suggestions", 2) is True
    assert store.increment_usage(tenant_id, "ai_suggestions", 2) is True
    assert store.increment_usage(tenant_id, "ai_suggestions", 2) is False
    assert store.get_tenant(tenant_id).ai_suggestions_used == 2
    assert store.increment_usage(tenant_id, "ai_suggestions", None) is True
    assert store.get_tenant(tenant_id).ai_suggestions_used == 3


def test_reset_usage_applies_once_per_window(tmp_path: Path) -> None:
    store, tenant_id = _store(tmp_path)
    store.increment_usage(tenant_id, "ai_suggestions", None)
    due = "2026-03-16T00:00:01.000000+00:00"
    next_reset = "2026-03-17T00:00:00.000000+00:00"
    assert store.reset_usage(tenant_id, "ai_suggestions", due, next_reset) is True
    store.increment_usage(tenant_id, "ai_suggestions", None)
    assert store.reset_usage(tenant_id, "ai_suggestions", due, next_reset) is False
    tenant = store.get_tenant(tenant_id)
    assert tenant.ai_suggestions_used == 1
    assert tenant.ai_suggestions_reset_at == next_reset


def test_release_usage_never_goes_negative(tmp_path: Path) -> None:
    store, tenant_id = _store(tmp_path)
    store.release_usage(tenant_id, "conversations")
    assert store.get_tenant(tenant_id).conversations_used == 0


def test_duplicate_external_message_id_is_ignored(tmp_path: Path) -> None:
    store, tenant_id = _store(tmp_path)
    conversation_id, _ = store.create_conversation(tenant_id, "whatsapp", "15550001", None, NOW)
    first = _message(store, conversation_id, tenant_id, "wamid.1")
    assert first is not None
    assert _message(store, conversation_id, tenant_id, "wamid.1") is None
    assert _message(store, conversation_id, tenant_id, None) is not None
    assert _message(store, conversation_id, tenant_id, None) is not None
    assert len(store.list_conversation_messages(conversation_id)) == 3


def test_delete_conversation_removes_messages(tmp_path: Path) -> None:
    store, tenant_id = _store(tmp_path)
    conversation_id, _ = store.create_conversation(tenant_id, "whatsapp", "15550001", None, NOW)
    message_id = _message(store, conversation_id, tenant_id, "wamid.9")
    assert store.delete_conversation(conversation_id) is True
    assert store.get_conversation(conversation_id) is None
    assert store.get_message(message_id) is None


def test_credential_upsert_reactivates(tmp_path: Path) -> None:
    store, tenant_id = _store(tmp_path)
    kwargs = dict(
        tenant_id=tenant_id,
        platform="whatsapp",
        external_account_id="waba-1",
        username="+1 555",
        access_token="encoded",
        token_expires_at=None,
        metadata=json.dumps({"phone_number_id": 12345}),
        now=NOW,
    )
    credential_id = store.upsert_credential(**kwargs)
    assert store.deactivate_credentials(tenant_id, "whatsapp", NOW) == 1
    assert store.get_active_credential(tenant_id, "whatsapp") is None
    assert store.upsert_credential(**kwargs) == credential_id
    found = store.find_active_credential_by_metadata("whatsapp", "phone_number_id", "12345")
    assert found is not None
    assert found.id == credential_id


def test_rate_limit_counts_per_window(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    assert store.hit_rate_limit("10.0.0.1", NOW) == 1
    assert store.hit_rate_limit("10.0.0.1", NOW) == 2
    assert store.hit_rate_limit("10.0.0.2", NOW) == 1
    assert store.hit_rate_limit("10.0.0.1", "2026-03-15T12:01:00.000000+00:00") == 1


def test_rate_limit_prunes_expired_windows_for_every_key(tmp_path: Path) -> None:
    """Summary: A hit from one caller clears stale windows left by others.

    Importance: Callers that never return would otherwise grow the table forever.
    Alternatives: Prune on a schedule.
    """

    store, _ = _store(tmp_path)
    store.hit_rate_limit("10.0.0.1", NOW)
    store.hit_rate_limit("10.0.0.3", NOW)
    store.hit_rate_limit("10.0.0.2", "2026-03-15T12:01:00.000000+00:00")
    connection = sqlite3.connect(tmp_path / "test.db")
    try:
        rows = connection.execute("SELECT key FROM rate_limits").fetchall()
    finally:
        connection.close()
    assert rows == [("10.0.0.2",)]


def test_oauth_state_is_single_use(tmp_path: Path) -> None:
    store, tenant_id = _store(tmp_path)
    store.save_oauth_state("state-1", "instagram", tenant_id, NOW)
    record = store.pop_oauth_state("state-1")
    assert record.tenant_id == tenant_id
    assert store.pop_oauth_state("state-1") is None
