"""Summary: Error taxonomy for InboxForge.

Importance: Gives callers actionable, typed failures for credentials, quotas, and delivery.
Alternatives: Raise RuntimeError with formatted messages everywhere.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class InboxForgeError(Exception):
    """Base error for InboxForge."""


class NotFoundError(InboxForgeError):
    """A tenant, conversation, message, or credential does not exist."""


class InvalidStateError(InboxForgeError):
    """The requested transition is not allowed from the current state."""


class ReconnectRequired(InboxForgeError):
    """Summary: A channel credential expired and could not be refreshed.

    Importance: Tells the tenant exactly which platform needs re-authorization.
    Alternatives: Fail with a generic authentication error.
    """

    def __init__(self, platform: str) -> None:
        self.platform = platform
        super().__init__(
            f"{platform} token expired and refresh failed. "
            f"Please reconnect your {platform} account in Settings."
        )


class QuotaExceeded(InboxForgeError):
    """Summary: A tenant exhausted a metered resource.

    Importance: Carries usage detail so callers can decide to upgrade or wait.
    Alternatives: Return a boolean and let callers build their own message.
    """

    def __init__(
        self, resource: str, used: int, limit: int | None, reset_at: datetime
    ) -> None:
        self.resource = resource
        self.used = used
        self.limit = limit
        self.reset_at = reset_at
        super().__init__(
            f"{resource.replace('_', ' ')} limit reached ({used}/{limit}); "
            f"resets at {reset_at.isoformat()}. Upgrade your plan to continue."
        )

    @property
    def remaining(self) -> int:
        if self.limit is None:
            return 0
        return max(0, self.limit - self.used)

    def detail(self) -> dict[str, Any]:
        return {
            "error": "quota_exceeded",
            "resource": self.resource,
            "message": str(self),
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_at": self.reset_at.isoformat(),
        }


class SendFailed(InboxForgeError):
    """Summary: Outbound delivery failed after a credential was obtained.

    Importance: Surfaces the upstream error so the message can be retried.
    Alternatives: Swallow delivery failures and rely on logs.
    """

    def __init__(self, reason: str, message_id: int | None = None) -> None:
        self.reason = reason
        self.message_id = message_id
        super().__init__(reason)


class UpstreamTransientError(InboxForgeError):
    """An upstream platform call failed; may succeed on a later attempt."""

    def __init__(self, detail: str, status_code: int | None = None) -> None:
        self.detail = detail
        self.status_code = status_code
        super().__init__(detail)
