"""
Error taxonomy for the ledger, orchestrator and provider integrations.

Every failure a caller has to tell apart gets its own type.
"""

from typing import Optional


class EnhpixError(Exception):
    """Base exception for all Enhpix errors."""


class ConfigurationError(EnhpixError):
    """Raised for missing credentials or invalid settings."""


class UnknownPlanError(ConfigurationError):
    """Raised when a plan id is not in the catalog."""

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Unknown plan: {plan_id}")


class PersistenceError(EnhpixError):
    """Raised when the backing store is unavailable or rejects a write."""


class SubscriptionNotFoundError(EnhpixError):
    """Raised when a user has never been provisioned."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"No subscription for user: {user_id}")


class InsufficientCreditsError(EnhpixError):
    """Raised when a credit is consumed with nothing remaining."""

    def __init__(self, user_id: str, remaining: int = 0):
        self.user_id = user_id
        self.remaining = remaining
        super().__init__(f"No images remaining for user {user_id}")


class QuotaExceededError(EnhpixError):
    """Raised when an enhancement cannot be charged to the user's plan.

    ``uncharged`` is set when inference already ran but the credit could
    not be taken because a concurrent request used it first.
    """

    def __init__(self, user_id: str, uncharged: bool = False):
        self.user_id = user_id
        self.uncharged = uncharged
        if uncharged:
            message = f"Quota exhausted for user {user_id} while enhancement was running"
        else:
            message = f"No images remaining in current plan for user {user_id}"
        super().__init__(message)


class FeatureNotAvailableError(EnhpixError):
    """Raised when the user's plan does not include a feature."""

    def __init__(self, plan_id: str, feature: str):
        self.plan_id = plan_id
        self.feature = feature
        super().__init__(f"{feature} is not available on the {plan_id} plan")


class ProviderError(EnhpixError):
    """Raised when the inference provider reports a failure."""

    def __init__(self, message: str, prediction_id: Optional[str] = None):
        self.message = message
        self.prediction_id = prediction_id
        super().__init__(message)


class EnhancementTimeoutError(EnhpixError):
    """Raised when a prediction never reaches a terminal state. Retryable."""

    def __init__(self, prediction_id: str, attempts: int):
        self.prediction_id = prediction_id
        self.attempts = attempts
        super().__init__(
            f"Processing timeout after {attempts} polls of prediction {prediction_id} - please try again"
        )


class InvalidTransitionError(EnhpixError):
    """Raised on an enhancement state change the state machine forbids."""

    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move enhancement from {current.value} to {target.value}")


class PaymentProviderError(EnhpixError):
    """Raised when a payment provider call fails."""


class WebhookVerificationError(EnhpixError):
    """Raised when a webhook payload fails signature verification."""
