"""
Cost and telemetry recording.

Appends one immutable record per enhancement attempt and folds the log
into cost summaries on read. Summaries are never stored, so they cannot
drift from the log.
"""

import json
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from enhpix.observability.logging import get_logger
from enhpix.storage.models import CostSummary, QualityBreakdown, UsageOutcome, UsageRecord
from enhpix.storage.repository import UsageRepository

from .plans import Quality
from .pricing import estimate_cost

logger = get_logger(__name__)

NowProvider = Callable[[], datetime]

DEFAULT_RETENTION_DAYS = 90


def summarize_records(records: Iterable[UsageRecord], now: datetime) -> CostSummary:
    """Fold usage records into total, today, this-month and per-quality costs.

    Pure function of the records and the current time.

    Args:
        records: Usage records in any order
        now: Current time; "today" starts at midnight, "this month" on the 1st

    Returns:
        CostSummary with all-zero aggregates for an empty log
    """
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    this_month = today.replace(day=1)

    total = Decimal("0")
    today_total = Decimal("0")
    month_total = Decimal("0")
    count = 0
    per_quality: Dict[Quality, List[Decimal]] = {quality: [] for quality in Quality}

    for record in records:
        cost = Decimal(str(record.estimated_cost))
        count += 1
        total += cost
        if record.timestamp >= today:
            today_total += cost
        if record.timestamp >= this_month:
            month_total += cost
        per_quality[record.quality].append(cost)

    return CostSummary(
        total_cost=float(total),
        total_images=count,
        average_cost=float(total / count) if count else 0.0,
        today_cost=float(today_total),
        this_month_cost=float(month_total),
        breakdown={
            quality: QualityBreakdown(count=len(costs), cost=float(sum(costs, Decimal("0"))))
            for quality, costs in per_quality.items()
        },
    )


class CostRecorder:
    """Records provider calls and reports what they cost.

    Recording never fails the caller: telemetry errors are logged and dropped.
    """

    def __init__(self, repository: UsageRepository):
        self.repository = repository

    def record(
        self,
        quality: Quality,
        scale: int,
        file_size_bytes: int,
        user_id: Optional[str] = None,
        plan_id: Optional[str] = None,
        outcome: UsageOutcome = UsageOutcome.SUCCEEDED,
        prediction_id: Optional[str] = None,
        estimated_cost: Optional[Decimal] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Append one usage record.

        Args:
            quality: Quality tier of the call
            scale: Upscaling factor sent to the provider
            file_size_bytes: Size of the source image
            user_id: User the call was made for
            plan_id: Plan the user was on
            outcome: How the attempt ended
            prediction_id: Provider prediction id, if one was created
            estimated_cost: Override for the tier's cost (e.g. zero for simulated calls)
            now: Record timestamp (defaults to current time)
        """
        try:
            cost = estimate_cost(quality) if estimated_cost is None else estimated_cost
            record = UsageRecord(
                timestamp=now or datetime.now(),
                quality=quality,
                scale=scale,
                file_size_mb=file_size_bytes / 1024 / 1024,
                estimated_cost=float(cost),
                user_id=user_id,
                plan_id=plan_id,
                outcome=outcome,
                prediction_id=prediction_id,
            )
            self.repository.append(record)
        except Exception as e:
            logger.warning(
                "usage_record_failed",
                quality=getattr(quality, "value", quality),
                user_id=user_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        logger.info(
            "usage_recorded",
            quality=quality.value,
            scale=scale,
            cost=f"{record.estimated_cost:.3f}",
            file_size_mb=round(record.file_size_mb, 2),
            outcome=outcome.value,
        )

    def estimate_processing_cost(self, quality: Quality, image_count: int = 1) -> Decimal:
        """Cost of processing images at a tier, before any call is made."""
        return estimate_cost(quality, image_count)

    def summarize(self, now_provider: NowProvider = datetime.now) -> CostSummary:
        """Recompute the cost summary from the full log."""
        return summarize_records(self.repository.fetch(), now_provider())

    def usage_by_period(self, days: int, now_provider: NowProvider = datetime.now) -> List[UsageRecord]:
        """Records from the last ``days`` days, newest first."""
        return self.repository.fetch(since=now_provider() - timedelta(days=days))

    def trim(self, retention_days: int = DEFAULT_RETENTION_DAYS, now_provider: NowProvider = datetime.now) -> int:
        """Remove records older than the retention window.

        A record exactly ``retention_days`` old is kept.

        Returns:
            Number of records removed

        Raises:
            ValueError: If retention_days is negative
        """
        if retention_days < 0:
            raise ValueError("retention_days must be >= 0")
        cutoff = now_provider() - timedelta(days=retention_days)
        removed = self.repository.delete_before(cutoff)
        logger.info("usage_records_trimmed", removed=removed, retention_days=retention_days)
        return removed

    def export_usage(self, now_provider: NowProvider = datetime.now) -> str:
        """Export the summary and every record as a JSON document."""
        now = now_provider()
        records = self.repository.fetch()
        summary = summarize_records(records, now)
        return json.dumps({
            "summary": {
                "totalCost": summary.total_cost,
                "totalImages": summary.total_images,
                "averageCost": summary.average_cost,
                "todayCost": summary.today_cost,
                "thisMonthCost": summary.this_month_cost,
                "breakdown": {
                    quality.value: {"count": item.count, "cost": item.cost}
                    for quality, item in summary.breakdown.items()
                },
            },
            "records": [
                {
                    "timestamp": record.timestamp.isoformat(),
                    "quality": record.quality.value,
                    "scale": record.scale,
                    "fileSizeMB": record.file_size_mb,
                    "estimatedCost": record.estimated_cost,
                    "userId": record.user_id,
                    "planId": record.plan_id,
                    "outcome": record.outcome.value,
                }
                for record in records
            ],
            "exportDate": now.isoformat(),
        }, indent=2)
