"""Summary: Usage metering with lazily reset daily and monthly windows.

Importance: Gates AI suggestions and new conversations by subscription tier.
Alternatives: Reset counters from a cron job, or meter usage in an external billing system.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from inboxforge.errors import NotFoundError, QuotaExceeded
from inboxforge.models import format_timestamp, parse_timestamp, utc_now
from inboxforge.storage.sqlite_store import SqliteStore, StoredTenant


logger = logging.getLogger(__name__)

AI_SUGGESTIONS = "ai_suggestions"
CONVERSATIONS = "conversations"
RESOURCES = (AI_SUGGESTIONS, CONVERSATIONS)

# None means unbounded.
TIER_LIMITS: dict[str, dict[str, int | None]] = {
    "free": {AI_SUGGESTIONS: 20, CONVERSATIONS: 50},
    "starter": {AI_SUGGESTIONS: 500, CONVERSATIONS: 500},
    "pro": {AI_SUGGESTIONS: None, CONVERSATIONS: None},
}
DEFAULT_TIER = "free"


def next_day_reset(now: datetime) -> datetime:
    """Return the next UTC midnight after now."""

    now = now.astimezone(timezone.utc)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)


def next_month_reset(now: datetime) -> datetime:
    """Return midnight UTC on the first day of the month after now."""

    now = now.astimezone(timezone.utc)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


NEXT_RESET: dict[str, Callable[[datetime], datetime]] = {
    AI_SUGGESTIONS: next_day_reset,
    CONVERSATIONS: next_month_reset,
}


def tier_limit(tier: str, resource: str) -> int | None:
    limits = TIER_LIMITS.get(tier)
    if limits is None:
        logger.warning("Unknown subscription tier %s; applying %s limits.", tier, DEFAULT_TIER)
        limits = TIER_LIMITS[DEFAULT_TIER]
    return limits[resource]


@dataclass(frozen=True)
class UsageCounter:
    """Summary: Snapshot of one metered resource for a tenant.

    Importance: Carries everything a caller needs to explain a quota decision.
    Alternatives: Return only a boolean.
    """

    resource: str
    used: int
    limit: int | None
    reset_at: datetime

    @property
    def remaining(self) -> int | None:
        if self.limit is None:
            return None
        return max(0, self.limit - self.used)

    @property
    def can_use(self) -> bool:
        return self.limit is None or self.used < self.limit

    def to_dict(self) -> dict[str, Any]:
        return {
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_at": self.reset_at.isoformat(),
        }


@dataclass(frozen=True)
class UsageStatus:
    tier: str
    counters: dict[str, UsageCounter]

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier,
            "can_use_ai": self.counters[AI_SUGGESTIONS].can_use,
            "can_create_conversation": self.counters[CONVERSATIONS].can_use,
            AI_SUGGESTIONS: self.counters[AI_SUGGESTIONS].to_dict(),
            CONVERSATIONS: self.counters[CONVERSATIONS].to_dict(),
        }


@dataclass(frozen=True)
class UsageMeter:
    """Summary: Reads, resets, and increments per-tenant usage counters.

    Importance: Counters reset lazily on read; increments are conditional writes so a finite
    limit is never exceeded, even under concurrent callers.
    Alternatives: Keep counters in memory and flush periodically.
    """

    store: SqliteStore
    now: Callable[[], datetime] = utc_now

    def initial_reset_times(self) -> tuple[str, str]:
        now = self.now()
        return (
            format_timestamp(next_day_reset(now)),
            format_timestamp(next_month_reset(now)),
        )

    def status(self, tenant_id: int) -> UsageStatus:
        """Summary: Return both counters, rolling over any elapsed window first.

        Importance: The rollover is persisted as part of the read.
        Alternatives: Compute a virtual reset without writing it back.
        """

        tenant = self._load(tenant_id)
        now = self.now()
        rolled = False
        for resource in RESOURCES:
            reset_at = parse_timestamp(_reset_value(tenant, resource))
            if reset_at is None or now >= reset_at:
                next_reset = NEXT_RESET[resource](now)
                if self.store.reset_usage(
                    tenant_id, resource, format_timestamp(now), format_timestamp(next_reset)
                ):
                    logger.info(
                        "Reset %s usage for tenant %s; next reset at %s.",
                        resource,
                        tenant_id,
                        next_reset.isoformat(),
                    )
                rolled = True
        if rolled:
            tenant = self._load(tenant_id)
        return UsageStatus(
            tier=tenant.subscription_tier,
            counters={
                resource: UsageCounter(
                    resource=resource,
                    used=_used_value(tenant, resource),
                    limit=tier_limit(tenant.subscription_tier, resource),
                    reset_at=parse_timestamp(_reset_value(tenant, resource)),
                )
                for resource in RESOURCES
            },
        )

    def counter(self, tenant_id: int, resource: str) -> UsageCounter:
        _check_resource(resource)
        return self.status(tenant_id).counters[resource]

    def try_increment(self, tenant_id: int, resource: str) -> bool:
        """Summary: Consume one unit if the tenant is under its limit.

        Importance: Returns False instead of raising so callers choose how to report denial.
        Alternatives: Raise QuotaExceeded directly.
        """

        counter = self.counter(tenant_id, resource)
        if not counter.can_use:
            logger.warning(
                "Tenant %s is at its %s limit (%s/%s).",
                tenant_id,
                resource,
                counter.used,
                counter.limit,
            )
            return False
        allowed = self.store.increment_usage(tenant_id, resource, counter.limit)
        if not allowed:
            logger.warning("Tenant %s lost a race for the last %s unit.", tenant_id, resource)
        return allowed

    def require(self, tenant_id: int, resource: str) -> UsageCounter:
        """Consume one unit or raise QuotaExceeded with the current counter detail."""

        if not self.try_increment(tenant_id, resource):
            counter = self.counter(tenant_id, resource)
            raise QuotaExceeded(resource, counter.used, counter.limit, counter.reset_at)
        return self.counter(tenant_id, resource)

    def release(self, tenant_id: int, resource: str) -> None:
        """Return one unit consumed for an operation that did not happen."""

        _check_resource(resource)
        self.store.release_usage(tenant_id, resource)
        logger.info("Released one %s unit for tenant %s.", resource, tenant_id)

    def _load(self, tenant_id: int) -> StoredTenant:
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError(f"Tenant {tenant_id} not found")
        return tenant


def _check_resource(resource: str) -> None:
    if resource not in RESOURCES:
        raise ValueError(f"Unknown usage resource: {resource}")


def _used_value(tenant: StoredTenant, resource: str) -> int:
    if resource == AI_SUGGESTIONS:
        return tenant.ai_suggestions_used
    return tenant.conversations_used


def _reset_value(tenant: StoredTenant, resource: str) -> str:
    if resource == AI_SUGGESTIONS:
        return tenant.ai_suggestions_reset_at
    return tenant.conversations_reset_at
