"""Summary: Credential persistence for connected channel accounts.

Importance: Hides token encoding and metadata serialization from the lifecycle logic.
Alternatives: Let every caller read credential rows and decode them itself.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from inboxforge.models import CredentialRecord, format_timestamp, parse_timestamp, utc_now
from inboxforge.storage.sqlite_store import SqliteStore, StoredCredential
from inboxforge.token_codec import TokenCodec


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CredentialStore:
    """Summary: Reads and writes decoded CredentialRecords.

    Importance: One record per (tenant, platform, external account), mutated in place on refresh.
    Alternatives: Store a new credential row on every refresh and keep history.
    """

    store: SqliteStore
    codec: TokenCodec
    now: Callable[[], datetime] = utc_now

    def save(
        self,
        tenant_id: int,
        platform: str,
        external_account_id: str,
        access_token: str,
        token_expires_at: datetime | None,
        metadata: dict[str, Any] | None = None,
        username: str | None = None,
    ) -> CredentialRecord:
        """Summary: Upsert a credential after a successful OAuth callback.

        Importance: Reconnecting an account replaces its tokens and reactivates it.
        Alternatives: Reject reconnects until the old credential is removed.
        """

        credential_id = self.store.upsert_credential(
            tenant_id=tenant_id,
            platform=platform,
            external_account_id=external_account_id,
            username=username,
            access_token=self.codec.encode(access_token),
            token_expires_at=format_timestamp(token_expires_at) if token_expires_at else None,
            metadata=json.dumps(self.codec.encode_metadata(metadata or {})),
            now=format_timestamp(self.now()),
        )
        logger.info("Saved %s credential %s for tenant %s.", platform, credential_id, tenant_id)
        return self.get(credential_id)

    def get(self, credential_id: int) -> CredentialRecord | None:
        stored = self.store.get_credential(credential_id)
        return self._decode(stored) if stored else None

    def active_for(self, tenant_id: int, platform: str) -> CredentialRecord | None:
        stored = self.store.get_active_credential(tenant_id, platform)
        return self._decode(stored) if stored else None

    def find_by_account(self, platform: str, external_account_id: str) -> CredentialRecord | None:
        stored = self.store.find_active_credential(platform, external_account_id)
        return self._decode(stored) if stored else None

    def find_by_metadata(self, platform: str, key: str, value: str) -> CredentialRecord | None:
        stored = self.store.find_active_credential_by_metadata(platform, key, value)
        return self._decode(stored) if stored else None

    def update_tokens(
        self,
        credential_id: int,
        access_token: str,
        token_expires_at: datetime | None,
        metadata: dict[str, Any],
    ) -> CredentialRecord:
        self.store.update_credential_tokens(
            credential_id=credential_id,
            access_token=self.codec.encode(access_token),
            token_expires_at=format_timestamp(token_expires_at) if token_expires_at else None,
            metadata=json.dumps(self.codec.encode_metadata(metadata)),
            now=format_timestamp(self.now()),
        )
        return self.get(credential_id)

    def deactivate(self, tenant_id: int, platform: str) -> int:
        """Summary: Deactivate a tenant's connection to a platform.

        Importance: Records are kept for audit; lookups skip inactive rows.
        Alternatives: Delete the credential rows outright.
        """

        count = self.store.deactivate_credentials(
            tenant_id, platform, format_timestamp(self.now())
        )
        logger.info("Deactivated %s %s credential(s) for tenant %s.", count, platform, tenant_id)
        return count

    def _decode(self, stored: StoredCredential) -> CredentialRecord:
        return CredentialRecord(
            id=stored.id,
            tenant_id=stored.tenant_id,
            platform=stored.platform,
            external_account_id=stored.external_account_id,
            access_token=self.codec.decode(stored.access_token),
            token_expires_at=parse_timestamp(stored.token_expires_at),
            metadata=self.codec.decode_metadata(json.loads(stored.metadata or "{}")),
            username=stored.username,
            is_active=bool(stored.is_active),
        )
