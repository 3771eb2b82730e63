"""Summary: SQLite storage implementation for InboxForge.

Importance: Provides the relational store behind credentials, usage counters, and conversations.
Alternatives: Use an ORM or a hosted Postgres database.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from inboxforge.models import Tenant


USAGE_COLUMNS = {
    "ai_suggestions": ("ai_suggestions_used", "ai_suggestions_reset_at"),
    "conversations": ("conversations_used", "conversations_reset_at"),
}

_CONVERSATION_COLUMNS = """
    id, tenant_id, channel, customer_identity, customer_name, status, archive_type,
    archived_at, unread_count, last_message_at, notes, tags, created_at
"""

_MESSAGE_COLUMNS = """
    id, conversation_id, tenant_id, sender_type, sender_name, content, channel, status,
    external_message_id, metadata, created_at, sent_at, failed_at, error_message,
    delivered_at, read_at
"""

_CREDENTIAL_COLUMNS = """
    id, tenant_id, platform, external_account_id, username, access_token,
    token_expires_at, metadata, is_active, created_at, updated_at
"""


@dataclass(frozen=True)
class StoredTenant:
    """Summary: Tenant record including the embedded usage counters.

    Importance: Usage counters live on the tenant row and are read together with the tier.
    Alternatives: Keep usage counters in a separate table.
    """

    id: int
    name: str
    email: str
    subscription_tier: str
    ai_suggestions_used: int
    ai_suggestions_reset_at: str
    conversations_used: int
    conversations_reset_at: str
    created_at: str


@dataclass(frozen=True)
class StoredCredential:
    """Summary: Credential row as persisted (tokens still encoded).

    Importance: Keeps decoding in the credential layer rather than storage.
    Alternatives: Decode secrets inside SQL helpers.
    """

    id: int
    tenant_id: int
    platform: str
    external_account_id: str
    username: str | None
    access_token: str
    token_expires_at: str | None
    metadata: str
    is_active: int
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class StoredConversation:
    """Summary: Conversation record with database identifier.

    Importance: Threads messages for one customer identity on one channel.
    Alternatives: Group messages on the fly by sender.
    """

    id: int
    tenant_id: int
    channel: str
    customer_identity: str
    customer_name: str | None
    status: str
    archive_type: str | None
    archived_at: str | None
    unread_count: int
    last_message_at: str | None
    notes: str | None
    tags: str | None
    created_at: str


@dataclass(frozen=True)
class StoredMessage:
    """Summary: Message record with delivery state.

    Importance: Links messages to conversations and tracks outbound delivery.
    Alternatives: Keep delivery state in a separate outbox table.
    """

    id: int
    conversation_id: int
    tenant_id: int
    sender_type: str
    sender_name: str | None
    content: str
    channel: str
    status: str
    external_message_id: str | None
    metadata: str
    created_at: str
    sent_at: str | None
    failed_at: str | None
    error_message: str | None
    delivered_at: str | None
    read_at: str | None


@dataclass(frozen=True)
class StoredOAuthState:
    """Summary: Pending OAuth authorization bound to a tenant.

    Importance: Lets the callback know which tenant started the flow.
    Alternatives: Encode the tenant id directly in the state parameter.
    """

    state: str
    platform: str
    tenant_id: int
    created_at: str


class SqliteStore:
    """Summary: SQLite-backed storage for InboxForge.

    Importance: Enables local-first persistence with minimal dependencies.
    Alternatives: Use Postgres and SQLAlchemy from day one.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = Path(db_path)

    def initialize(self) -> None:
        """Summary: Create tables and indexes if they do not exist.

        Importance: Ensures the database is ready for ingestion and dispatch.
        Alternatives: Run migrations using a dedicated migration tool.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS tenants (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    subscription_tier TEXT NOT NULL DEFAULT 'free',
                    ai_suggestions_used INTEGER NOT NULL DEFAULT 0,
                    ai_suggestions_reset_at TEXT NOT NULL,
                    conversations_used INTEGER NOT NULL DEFAULT 0,
                    conversations_reset_at TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS credentials (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id INTEGER NOT NULL,
                    platform TEXT NOT NULL,
                    external_account_id TEXT NOT NULL,
                    username TEXT,
                    access_token TEXT NOT NULL,
                    token_expires_at TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(tenant_id, platform, external_account_id)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id INTEGER NOT NULL,
                    channel TEXT NOT NULL,
                    customer_identity TEXT NOT NULL,
                    customer_name TEXT,
                    status TEXT NOT NULL,
                    archive_type TEXT,
                    archived_at TEXT,
                    unread_count INTEGER NOT NULL DEFAULT 0,
                    last_message_at TEXT,
                    notes TEXT,
                    tags TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS conversations_active_identity
                ON conversations (tenant_id, channel, customer_identity)
                WHERE status != 'archived'
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id INTEGER NOT NULL,
                    tenant_id INTEGER NOT NULL,
                    sender_type TEXT NOT NULL,
                    sender_name TEXT,
                    content TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    status TEXT NOT NULL,
                    external_message_id TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    sent_at TEXT,
                    failed_at TEXT,
                    error_message TEXT,
                    delivered_at TEXT,
                    read_at TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS messages_external_id
                ON messages (channel, external_message_id)
                WHERE external_message_id IS NOT NULL
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS messages_conversation_order
                ON messages (conversation_id, created_at, id)
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS rate_limits (
                    key TEXT NOT NULL,
                    window_start TEXT NOT NULL,
                    count INTEGER NOT NULL,
                    PRIMARY KEY (key, window_start)
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS oauth_states (
                    state TEXT PRIMARY KEY,
                    platform TEXT NOT NULL,
                    tenant_id INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            connection.commit()

    # Tenants and usage counters

    def ensure_tenant(
        self, tenant: Tenant, ai_reset_at: str, conversations_reset_at: str, created_at: str
    ) -> int:
        """Summary: Ensure a tenant exists and return its ID.

        Importance: Seeds both usage windows at tenant creation.
        Alternatives: Create usage rows lazily on the first quota check.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO tenants (
                    name, email, subscription_tier, ai_suggestions_reset_at,
                    conversations_reset_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    tenant.name,
                    tenant.email,
                    tenant.subscription_tier,
                    ai_reset_at,
                    conversations_reset_at,
                    created_at,
                ),
            )
            if cursor.rowcount == 1:
                tenant_id = cursor.lastrowid
            else:
                cursor.execute("SELECT id FROM tenants WHERE email = ?", (tenant.email,))
                row = cursor.fetchone()
                tenant_id = int(row[0]) if row else 0
            connection.commit()
        return int(tenant_id)

    def get_tenant(self, tenant_id: int) -> StoredTenant | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                SELECT id, name, email, subscription_tier, ai_suggestions_used,
                       ai_suggestions_reset_at, conversations_used, conversations_reset_at, created_at
                FROM tenants WHERE id = ?
                """,
                (tenant_id,),
            )
            row = cursor.fetchone()
        return StoredTenant(*row) if row else None

    def get_tenant_by_email(self, email: str) -> StoredTenant | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("SELECT id FROM tenants WHERE lower(email) = lower(?)", (email,))
            row = cursor.fetchone()
        return self.get_tenant(int(row[0])) if row else None

    def set_subscription_tier(self, tenant_id: int, tier: str) -> bool:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "UPDATE tenants SET subscription_tier = ? WHERE id = ?", (tier, tenant_id)
            )
            connection.commit()
            return cursor.rowcount == 1

    def reset_usage(self, tenant_id: int, resource: str, due_at: str, next_reset_at: str) -> bool:
        """Summary: Zero a usage counter if its window has elapsed.

        Importance: The reset only applies while the stored window is still due, so a
        window is rolled over once even when several readers notice it together.
        Alternatives: Reset counters from a scheduled background job.
        """

        used_column, reset_column = USAGE_COLUMNS[resource]
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                UPDATE tenants SET {used_column} = 0, {reset_column} = ?
                WHERE id = ? AND {reset_column} <= ?
                """,
                (next_reset_at, tenant_id, due_at),
            )
            connection.commit()
            return cursor.rowcount == 1

    def increment_usage(self, tenant_id: int, resource: str, limit: int | None) -> bool:
        """Summary: Increment a usage counter only while it is below the limit.

        Importance: A single conditional write keeps concurrent callers under the cap.
        Alternatives: Read the counter, compare in Python, and write it back.
        """

        used_column, _ = USAGE_COLUMNS[resource]
        with self._connection() as connection:
            cursor = connection.cursor()
            if limit is None:
                cursor.execute(
                    f"UPDATE tenants SET {used_column} = {used_column} + 1 WHERE id = ?",
                    (tenant_id,),
                )
            else:
                cursor.execute(
                    f"""
                    UPDATE tenants SET {used_column} = {used_column} + 1
                    WHERE id = ? AND {used_column} < ?
                    """,
                    (tenant_id, limit),
                )
            connection.commit()
            return cursor.rowcount == 1

    def release_usage(self, tenant_id: int, resource: str) -> None:
        used_column, _ = USAGE_COLUMNS[resource]
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                UPDATE tenants SET {used_column} = {used_column} - 1
                WHERE id = ? AND {used_column} > 0
                """,
                (tenant_id,),
            )
            connection.commit()

    # Credentials

    def upsert_credential(
        self,
        tenant_id: int,
        platform: str,
        external_account_id: str,
        username: str | None,
        access_token: str,
        token_expires_at: str | None,
        metadata: str,
        now: str,
    ) -> int:
        """Summary: Insert or refresh a platform connection and return its ID.

        Importance: Reconnecting the same account reactivates the existing record.
        Alternatives: Delete and recreate credentials on every OAuth callback.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO credentials (
                    tenant_id, platform, external_account_id, username, access_token,
                    token_expires_at, metadata, is_active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT(tenant_id, platform, external_account_id) DO UPDATE SET
                    username = excluded.username,
                    access_token = excluded.access_token,
                    token_expires_at = excluded.token_expires_at,
                    metadata = excluded.metadata,
                    is_active = 1,
                    updated_at = excluded.updated_at
                """,
                (
                    tenant_id,
                    platform,
                    external_account_id,
                    username,
                    access_token,
                    token_expires_at,
                    metadata,
                    now,
                    now,
                ),
            )
            cursor.execute(
                """
                SELECT id FROM credentials
                WHERE tenant_id = ? AND platform = ? AND external_account_id = ?
                """,
                (tenant_id, platform, external_account_id),
            )
            row = cursor.fetchone()
            connection.commit()
        return int(row[0])

    def get_credential(self, credential_id: int) -> StoredCredential | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"SELECT {_CREDENTIAL_COLUMNS} FROM credentials WHERE id = ?", (credential_id,)
            )
            row = cursor.fetchone()
        return StoredCredential(*row) if row else None

    def get_active_credential(self, tenant_id: int, platform: str) -> StoredCredential | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {_CREDENTIAL_COLUMNS} FROM credentials
                WHERE tenant_id = ? AND platform = ? AND is_active = 1
                ORDER BY updated_at DESC, id DESC
                LIMIT 1
                """,
                (tenant_id, platform),
            )
            row = cursor.fetchone()
        return StoredCredential(*row) if row else None

    def find_active_credential(
        self, platform: str, external_account_id: str
    ) -> StoredCredential | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {_CREDENTIAL_COLUMNS} FROM credentials
                WHERE platform = ? AND external_account_id = ? AND is_active = 1
                ORDER BY updated_at DESC, id DESC
                LIMIT 1
                """,
                (platform, external_account_id),
            )
            row = cursor.fetchone()
        return StoredCredential(*row) if row else None

    def find_active_credential_by_metadata(
        self, platform: str, key: str, value: str
    ) -> StoredCredential | None:
        """Summary: Find an active credential by a metadata attribute.

        Importance: WhatsApp webhooks identify the business by phone_number_id only.
        Alternatives: Promote every lookup attribute to its own column.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {_CREDENTIAL_COLUMNS} FROM credentials
                WHERE platform = ? AND is_active = 1
                  AND CAST(json_extract(metadata, ?) AS TEXT) = ?
                ORDER BY updated_at DESC, id DESC
                LIMIT 1
                """,
                (platform, f"$.{key}", value),
            )
            row = cursor.fetchone()
        return StoredCredential(*row) if row else None

    def update_credential_tokens(
        self,
        credential_id: int,
        access_token: str,
        token_expires_at: str | None,
        metadata: str,
        now: str,
    ) -> None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE credentials
                SET access_token = ?, token_expires_at = ?, metadata = ?, updated_at = ?
                WHERE id = ?
                """,
                (access_token, token_expires_at, metadata, now, credential_id),
            )
            connection.commit()

    def deactivate_credentials(self, tenant_id: int, platform: str, now: str) -> int:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE credentials SET is_active = 0, updated_at = ?
                WHERE tenant_id = ? AND platform = ? AND is_active = 1
                """,
                (now, tenant_id, platform),
            )
            connection.commit()
            return cursor.rowcount

    # Conversations

    def find_open_conversation(
        self, tenant_id: int, channel: str, customer_identity: str
    ) -> StoredConversation | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {_CONVERSATION_COLUMNS} FROM conversations
                WHERE tenant_id = ? AND channel = ? AND customer_identity = ?
                  AND status != 'archived'
                LIMIT 1
                """,
                (tenant_id, channel, customer_identity),
            )
            row = cursor.fetchone()
        return StoredConversation(*row) if row else None

    def create_conversation(
        self,
        tenant_id: int,
        channel: str,
        customer_identity: str,
        customer_name: str | None,
        now: str,
    ) -> tuple[int, bool]:
        """Summary: Create an open conversation unless one is already active.

        Importance: The active-identity index turns a concurrent duplicate into a lookup.
        Alternatives: Lock the tenant row around find-or-create.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO conversations (
                    tenant_id, channel, customer_identity, customer_name, status,
                    unread_count, last_message_at, created_at
                ) VALUES (?, ?, ?, ?, 'open', 1, ?, ?)
                """,
                (tenant_id, channel, customer_identity, customer_name, now, now),
            )
            if cursor.rowcount == 1:
                conversation_id, created = int(cursor.lastrowid), True
            else:
                cursor.execute(
                    """
                    SELECT id FROM conversations
                    WHERE tenant_id = ? AND channel = ? AND customer_identity = ?
                      AND status != 'archived'
                    """,
                    (tenant_id, channel, customer_identity),
                )
                conversation_id, created = int(cursor.fetchone()[0]), False
            connection.commit()
        return conversation_id, created

    def record_inbound_activity(self, conversation_id: int, now: str) -> None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE conversations
                SET unread_count = unread_count + 1, last_message_at = ?, status = 'open'
                WHERE id = ?
                """,
                (now, conversation_id),
            )
            connection.commit()

    def touch_conversation(self, conversation_id: int, now: str) -> None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "UPDATE conversations SET last_message_at = ? WHERE id = ?",
                (now, conversation_id),
            )
            connection.commit()

    def update_customer_name(self, conversation_id: int, customer_name: str) -> None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "UPDATE conversations SET customer_name = ? WHERE id = ?",
                (customer_name, conversation_id),
            )
            connection.commit()

    def get_conversation(self, conversation_id: int) -> StoredConversation | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ?",
                (conversation_id,),
            )
            row = cursor.fetchone()
        return StoredConversation(*row) if row else None

    def list_conversations(
        self, tenant_id: int, archived: bool, limit: int
    ) -> list[StoredConversation]:
        """Summary: List open or archived conversations for a tenant.

        Importance: Feeds the inbox and archive views, most recent first.
        Alternatives: Return every conversation and filter client-side.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            if archived:
                cursor.execute(
                    f"""
                    SELECT {_CONVERSATION_COLUMNS} FROM conversations
                    WHERE tenant_id = ? AND status = 'archived'
                    ORDER BY archived_at DESC, id DESC
                    LIMIT ?
                    """,
                    (tenant_id, limit),
                )
            else:
                cursor.execute(
                    f"""
                    SELECT {_CONVERSATION_COLUMNS} FROM conversations
                    WHERE tenant_id = ? AND status != 'archived'
                    ORDER BY last_message_at DESC, id DESC
                    LIMIT ?
                    """,
                    (tenant_id, limit),
                )
            rows = cursor.fetchall()
        return [StoredConversation(*row) for row in rows]

    def archive_conversation(self, conversation_id: int, archive_type: str, now: str) -> bool:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE conversations
                SET status = 'archived', archive_type = ?, archived_at = ?
                WHERE id = ?
                """,
                (archive_type, now, conversation_id),
            )
            connection.commit()
            return cursor.rowcount == 1

    def reopen_conversation(self, conversation_id: int) -> bool:
        """Raises sqlite3.IntegrityError when the identity already has an open conversation."""

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE conversations
                SET status = 'open', archive_type = NULL, archived_at = NULL
                WHERE id = ?
                """,
                (conversation_id,),
            )
            connection.commit()
            return cursor.rowcount == 1

    def mark_conversation_read(self, conversation_id: int) -> bool:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "UPDATE conversations SET unread_count = 0 WHERE id = ?", (conversation_id,)
            )
            connection.commit()
            return cursor.rowcount == 1

    def update_conversation_notes(self, conversation_id: int, notes: str) -> bool:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "UPDATE conversations SET notes = ? WHERE id = ?", (notes, conversation_id)
            )
            connection.commit()
            return cursor.rowcount == 1

    def delete_conversation(self, conversation_id: int) -> bool:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
            cursor.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
            deleted = cursor.rowcount == 1
            connection.commit()
        return deleted

    # Messages

    def insert_message(
        self,
        conversation_id: int,
        tenant_id: int,
        sender_type: str,
        sender_name: str | None,
        content: str,
        channel: str,
        status: str,
        external_message_id: str | None,
        metadata: str,
        created_at: str,
        sent_at: str | None = None,
    ) -> int | None:
        """Summary: Persist a message and return its ID.

        Importance: Returns None when the upstream message id was already stored.
        Alternatives: Check for duplicates with a separate query first.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO messages (
                    conversation_id, tenant_id, sender_type, sender_name, content, channel,
                    status, external_message_id, metadata, created_at, sent_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation_id,
                    tenant_id,
                    sender_type,
                    sender_name,
                    content,
                    channel,
                    status,
                    external_message_id,
                    metadata,
                    created_at,
                    sent_at,
                ),
            )
            message_id = int(cursor.lastrowid) if cursor.rowcount == 1 else None
            connection.commit()
        return message_id

    def get_message(self, message_id: int) -> StoredMessage | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,))
            row = cursor.fetchone()
        return StoredMessage(*row) if row else None

    def find_message_by_external_id(
        self, channel: str, external_message_id: str
    ) -> StoredMessage | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE channel = ? AND external_message_id = ?
                """,
                (channel, external_message_id),
            )
            row = cursor.fetchone()
        return StoredMessage(*row) if row else None

    def list_conversation_messages(self, conversation_id: int) -> list[StoredMessage]:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE conversation_id = ?
                ORDER BY created_at ASC, id ASC
                """,
                (conversation_id,),
            )
            rows = cursor.fetchall()
        return [StoredMessage(*row) for row in rows]

    def mark_message_sending(self, message_id: int) -> None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE messages SET status = 'sending', error_message = NULL, failed_at = NULL
                WHERE id = ?
                """,
                (message_id,),
            )
            connection.commit()

    def mark_message_sent(
        self, message_id: int, sent_at: str, external_message_id: str | None
    ) -> None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE messages
                SET status = 'sent', sent_at = ?, failed_at = NULL, error_message = NULL,
                    external_message_id = COALESCE(?, external_message_id)
                WHERE id = ?
                """,
                (sent_at, external_message_id, message_id),
            )
            connection.commit()

    def mark_message_failed(self, message_id: int, failed_at: str, error_message: str) -> None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE messages SET status = 'failed', failed_at = ?, error_message = ?
                WHERE id = ?
                """,
                (failed_at, error_message, message_id),
            )
            connection.commit()

    def update_message_receipt(
        self,
        message_id: int,
        status: str,
        delivered_at: str | None,
        read_at: str | None,
        error_message: str | None = None,
    ) -> None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE messages
                SET status = ?,
                    delivered_at = COALESCE(?, delivered_at),
                    read_at = COALESCE(?, read_at),
                    error_message = COALESCE(?, error_message)
                WHERE id = ?
                """,
                (status, delivered_at, read_at, error_message, message_id),
            )
            connection.commit()

    # Rate limits and OAuth state

    def hit_rate_limit(self, key: str, window_start: str) -> int:
        """Summary: Count one hit in the current window and return the window total.

        Importance: Keeps the counter in the shared database so every instance sees it.
        Alternatives: Count hits in process memory.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            # Expired windows of every caller are pruned, not just this one.
            cursor.execute("DELETE FROM rate_limits WHERE window_start < ?", (window_start,))
            cursor.execute(
                """
                INSERT INTO rate_limits (key, window_start, count) VALUES (?, ?, 1)
                ON CONFLICT(key, window_start) DO UPDATE SET count = count + 1
                """,
                (key, window_start),
            )
            cursor.execute(
                "SELECT count FROM rate_limits WHERE key = ? AND window_start = ?",
                (key, window_start),
            )
            count = int(cursor.fetchone()[0])
            connection.commit()
        return count

    def save_oauth_state(self, state: str, platform: str, tenant_id: int, created_at: str) -> None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO oauth_states (state, platform, tenant_id, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (state, platform, tenant_id, created_at),
            )
            connection.commit()

    def pop_oauth_state(self, state: str) -> StoredOAuthState | None:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "SELECT state, platform, tenant_id, created_at FROM oauth_states WHERE state = ?",
                (state,),
            )
            row = cursor.fetchone()
            cursor.execute("DELETE FROM oauth_states WHERE state = ?", (state,))
            connection.commit()
        return StoredOAuthState(*row) if row else None

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Summary: Context manager for SQLite connections.

        Importance: Ensures connections are closed cleanly after use.
        Alternatives: Keep a single long-lived connection.
        """

        connection = sqlite3.connect(self._db_path, timeout=10)
        try:
            yield connection
        finally:
            connection.close()
