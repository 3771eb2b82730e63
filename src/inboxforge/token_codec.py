"""Summary: At-rest encoding for channel credentials.

Importance: Keeps platform access tokens and derived user tokens out of plain text in SQLite.
Alternatives: Use a dedicated secrets manager or strong encryption library.
"""

from __future__ import annotations

import base64
import hashlib
from typing import Any


SECRET_METADATA_KEYS = frozenset({"long_lived_user_token", "refresh_token"})


class TokenCodec:
    """Summary: Reversible encoder for credential secrets.

    Importance: Tokens must be readable again to call platform APIs.
    Alternatives: Use a proper encryption library with key management.
    """

    def __init__(self, secret: str) -> None:
        self._secret = secret.encode("utf-8")

    def encode(self, plaintext: str) -> str:
        raw = plaintext.encode("utf-8")
        mask = _keystream(self._secret, len(raw))
        return base64.urlsafe_b64encode(bytes(b ^ k for b, k in zip(raw, mask))).decode("ascii")

    def decode(self, payload: str) -> str:
        raw = base64.urlsafe_b64decode(payload.encode("ascii"))
        mask = _keystream(self._secret, len(raw))
        return bytes(b ^ k for b, k in zip(raw, mask)).decode("utf-8")

    def encode_metadata(self, metadata: dict[str, Any]) -> dict[str, Any]:
        """Summary: Encode the secret values of a credential metadata bag.

        Importance: Lookups still filter on non-secret keys like page_id or phone_number_id.
        Alternatives: Encode the whole metadata blob and give up on JSON queries.
        """

        return {
            key: self.encode(value) if key in SECRET_METADATA_KEYS and isinstance(value, str) else value
            for key, value in metadata.items()
        }

    def decode_metadata(self, metadata: dict[str, Any]) -> dict[str, Any]:
        return {
            key: self.decode(value) if key in SECRET_METADATA_KEYS and isinstance(value, str) else value
            for key, value in metadata.items()
        }


def _keystream(secret: bytes, length: int) -> bytes:
    """Derive a deterministic SHA-256 counter-mode keystream."""

    blocks = []
    counter = 0
    while len(blocks) * 32 < length:
        blocks.append(hashlib.sha256(secret + counter.to_bytes(4, "big")).digest())
        counter += 1
    return b"".join(blocks)[:length]
