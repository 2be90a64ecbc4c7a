"""
Per-user usage ledger.

Binds a user to the subscription repository so the orchestrator never
reaches for shared mutable subscription state.
"""

from datetime import datetime
from typing import Optional

from enhpix.observability.logging import get_logger
from enhpix.storage.models import BillingCycle, CreditResult, Subscription
from enhpix.storage.repository import SubscriptionRepository

from .plans import Plan

logger = get_logger(__name__)


class UsageLedger:
    """A single user's plan, quota and remaining credits."""

    def __init__(self, repository: SubscriptionRepository, user_id: str):
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required and cannot be empty")
        self.repository = repository
        self.user_id = user_id

    def get_subscription(self) -> Subscription:
        """Current subscription record.

        Raises:
            SubscriptionNotFoundError: If the user was never provisioned
        """
        return self.repository.get(self.user_id)

    def current_plan(self) -> Plan:
        """Plan limits for the current subscription.

        Raises:
            UnknownPlanError: If the stored plan id is not in the catalog
        """
        return self.repository.catalog.get(self.get_subscription().plan_id)

    def provision_trial(self, now: Optional[datetime] = None) -> Subscription:
        return self.repository.provision_trial(self.user_id, now=now)

    def apply_payment(
        self,
        plan_id: str,
        billing_cycle: BillingCycle,
        external_subscription_ref: str,
        event_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Apply a confirmed payment. Replays of the same confirmation are no-ops."""
        return self.repository.apply_payment(
            self.user_id,
            plan_id,
            billing_cycle,
            external_subscription_ref,
            event_id=event_id,
            now=now,
        )

    def consume_credit(self) -> CreditResult:
        """Take one credit for a successful enhancement.

        Raises:
            InsufficientCreditsError: If nothing remains; the ledger is unchanged
        """
        result = self.repository.consume_credit(self.user_id)
        logger.info("credit_consumed", user_id=self.user_id, remaining=result.remaining)
        return result
