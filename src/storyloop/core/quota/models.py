"""
Provider quota models.

A ProviderQuota is advisory: it describes what the last poll observed and
is never treated as authoritative by the router.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from storyloop.core.routing.models import Provider


class QuotaType(str, Enum):
    PERCENTAGE = "percentage"
    CREDITS = "credits"
    RATE_LIMIT = "rate-limit"
    SUBSCRIPTION = "subscription"
    LOCAL = "local"
    UNLIMITED = "unlimited"


class QuotaStatus(str, Enum):
    AVAILABLE = "available"
    LIMITED = "limited"
    EXHAUSTED = "exhausted"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"
    ERROR = "error"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderQuota(BaseModel):
    """
    Last observed quota for one provider.

    Numeric fields are populated according to ``quota_type``; unrelated
    fields stay None.
    """

    model_config = ConfigDict(populate_by_name=True)

    provider: Provider
    status: QuotaStatus
    quota_type: QuotaType = Field(alias="quotaType")

    reported_usage_percent: float | None = Field(default=None, alias="usagePercent")
    reset_time: str | None = Field(default=None, alias="resetTime")

    credits_remaining: float | None = Field(default=None, alias="creditsRemaining")
    credits_total: float | None = Field(default=None, alias="creditsTotal")

    requests_remaining: int | None = Field(default=None, alias="requestsRemaining")
    requests_limit: int | None = Field(default=None, alias="requestsLimit")
    tokens_remaining: int | None = Field(default=None, alias="tokensRemaining")
    tokens_limit: int | None = Field(default=None, alias="tokensLimit")

    models: list[str] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=_utcnow, alias="lastUpdated")
    error: str | None = None

    @property
    def is_available(self) -> bool:
        return self.status == QuotaStatus.AVAILABLE

    @property
    def usage_percent(self) -> float | None:
        """
        Usage as a percentage, computed per quota type.

        Returns None when the quota type's inputs were not reported.
        """
        qt = self.quota_type
        if qt in (QuotaType.PERCENTAGE, QuotaType.SUBSCRIPTION):
            return self.reported_usage_percent
        if qt == QuotaType.CREDITS:
            if self.credits_total and self.credits_remaining is not None:
                return _clamp(100.0 * self.credits_remaining / self.credits_total)
            return None
        if qt == QuotaType.RATE_LIMIT:
            if self.tokens_limit and self.tokens_remaining is not None:
                return _clamp(100.0 * self.tokens_remaining / self.tokens_limit)
            if self.requests_limit and self.requests_remaining is not None:
                return _clamp(100.0 * self.requests_remaining / self.requests_limit)
            return self.reported_usage_percent
        if qt == QuotaType.LOCAL:
            return 100.0 if self.is_available else 0.0
        return 100.0  # unlimited

    def summary(self) -> str:
        """One-line description for CLI output."""
        if self.error and self.status in (QuotaStatus.ERROR, QuotaStatus.UNKNOWN,
                                          QuotaStatus.UNAVAILABLE):
            return self.error
        qt = self.quota_type
        if qt == QuotaType.CREDITS and self.credits_remaining is not None:
            return f"${self.credits_remaining:.2f} remaining"
        if qt == QuotaType.RATE_LIMIT and self.tokens_remaining is not None:
            return f"{self.tokens_remaining:,} tokens remaining"
        if qt == QuotaType.SUBSCRIPTION and self.reported_usage_percent is not None:
            return f"{self.reported_usage_percent:.0f}% used"
        if qt == QuotaType.LOCAL:
            return f"{len(self.models)} model(s) loaded"
        return self.status.value


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))
