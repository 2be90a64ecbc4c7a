"""
Data models for storage layer.

Defines the subscription ledger row, usage log entries and derived summaries.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from enhpix.core.plans import Quality


class SubscriptionStatus(Enum):
    """Lifecycle of a subscription record."""
    TRIAL = "trial"
    ACTIVE = "active"
    CANCELED = "canceled"
    EXPIRED = "expired"


class BillingCycle(Enum):
    """How often a paid plan renews."""
    MONTHLY = "monthly"
    YEARLY = "yearly"


class UsageOutcome(Enum):
    """How an enhancement attempt ended."""
    SUCCEEDED = "succeeded"
    SIMULATED = "simulated"
    FAILED = "failed"
    TIMEOUT = "timeout"
    UNCHARGED = "uncharged"  # inference ran but no credit was left to charge
    CANCELED = "canceled"


@dataclass(frozen=True)
class Subscription:
    """Snapshot of a user's plan, quota and remaining credits."""
    id: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus
    period_start: datetime
    period_end: datetime
    images_total: int
    images_used: int
    images_remaining: int
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    external_subscription_ref: Optional[str] = None

    def __post_init__(self):
        """Validate the counter and period invariants."""
        if self.images_remaining < 0:
            raise ValueError("images_remaining must be >= 0")
        if self.images_used + self.images_remaining != self.images_total:
            raise ValueError("images_used + images_remaining must equal images_total")
        if self.period_end <= self.period_start:
            raise ValueError("period_end must be after period_start")

    def is_expired(self, now: datetime) -> bool:
        return now > self.period_end

    def days_remaining(self, now: datetime) -> int:
        """Whole days left in the current period, rounded up."""
        seconds = (self.period_end - now).total_seconds()
        return max(0, math.ceil(seconds / 86400))

    @property
    def usage_percentage(self) -> int:
        if self.images_total == 0:
            return 0
        return round(self.images_used / self.images_total * 100)


@dataclass(frozen=True)
class CreditResult:
    """Outcome of a successful credit consumption."""
    success: bool
    remaining: int


@dataclass(frozen=True)
class UsageRecord:
    """Immutable log entry for one enhancement attempt.

    Append-only: records are never modified once written, only removed
    by retention trimming.
    """
    timestamp: datetime
    quality: Quality
    scale: int
    file_size_mb: float
    estimated_cost: float
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    outcome: UsageOutcome = UsageOutcome.SUCCEEDED
    prediction_id: Optional[str] = None

    def __post_init__(self):
        if self.file_size_mb < 0:
            raise ValueError("file_size_mb must be >= 0")
        if self.estimated_cost < 0:
            raise ValueError("estimated_cost must be >= 0")


@dataclass(frozen=True)
class QualityBreakdown:
    """Call count and cost for one quality tier."""
    count: int = 0
    cost: float = 0.0


@dataclass(frozen=True)
class CostSummary:
    """Aggregates folded from the usage log on read. Never persisted."""
    total_cost: float
    total_images: int
    average_cost: float
    today_cost: float
    this_month_cost: float
    breakdown: Dict[Quality, QualityBreakdown] = field(default_factory=dict)
