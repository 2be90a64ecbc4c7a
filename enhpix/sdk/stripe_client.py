"""
Stripe payment integration.

Creates subscription checkout sessions, verifies completed payments and
turns webhook events into ledger updates.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

import stripe

from ..config.loader import BillingSettings
from ..core.errors import (
    ConfigurationError,
    PaymentProviderError,
    UnknownPlanError,
    WebhookVerificationError,
)
from ..core.plans import PLAN_CATALOG, PlanCatalog
from ..observability.logging import get_logger
from ..storage.models import BillingCycle
from ..storage.repository import SubscriptionRepository

logger = get_logger(__name__)

# Subscription statuses after which the plan no longer renews
ENDED_SUBSCRIPTION_STATUSES = {"canceled", "unpaid", "incomplete_expired"}


@dataclass(frozen=True)
class CheckoutSession:
    """Hosted checkout page the customer is redirected to."""
    id: str
    url: str


@dataclass(frozen=True)
class PaymentVerification:
    """What the success page needs to confirm a checkout."""
    session_id: str
    payment_status: str
    customer_email: Optional[str]
    subscription_id: Optional[str]
    subscription_status: Optional[str]
    amount_total: Optional[int]
    currency: Optional[str]

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


def _field(obj: Any, key: str) -> Any:
    """Read a possibly-missing key from a Stripe object or plain mapping."""
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


def _ref(value: Any) -> Optional[str]:
    # Expanded objects carry their id; unexpanded ones are the id itself
    if value is None or isinstance(value, str):
        return value
    return _field(value, "id")


class StripeBilling:
    """Stripe checkout and payment verification."""

    def __init__(self, settings: BillingSettings, catalog: PlanCatalog = PLAN_CATALOG):
        """Initialize Stripe.

        Args:
            settings: Billing settings; secret_key is required

        Raises:
            ConfigurationError: If the Stripe secret key is not configured
        """
        if not settings.secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is not set")
        self.settings = settings
        self.catalog = catalog
        stripe.api_key = settings.secret_key

    def price_id_for(self, plan_id: str, billing_cycle: BillingCycle) -> str:
        """Stripe price id for a plan and billing cycle.

        Raises:
            UnknownPlanError: If the plan is unknown or not for sale
        """
        plan = self.catalog.get(plan_id)
        prices = self.settings.prices.get(plan.id)
        if not plan.is_paid or not prices or billing_cycle not in prices:
            raise UnknownPlanError(plan_id)
        return prices[billing_cycle]

    def create_checkout_session(
        self,
        plan_id: str,
        billing_cycle: BillingCycle,
        user_id: str,
        customer_email: Optional[str] = None,
        customer_name: Optional[str] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutSession:
        """Create a subscription checkout session.

        The user id, plan and billing cycle travel in the session metadata
        so the completion webhook can apply the payment.

        Raises:
            UnknownPlanError: If the plan cannot be bought
            PaymentProviderError: If the Stripe API call fails
        """
        price_id = self.price_id_for(plan_id, billing_cycle)
        metadata = {
            "userId": user_id,
            "planName": plan_id,
            "billing": billing_cycle.value,
            "customerName": customer_name or "",
        }
        params = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url or self.settings.success_url,
            "cancel_url": cancel_url or self.settings.cancel_url,
            "client_reference_id": user_id,
            "allow_promotion_codes": True,
            "billing_address_collection": "auto",
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        if customer_email:
            params["customer_email"] = customer_email

        try:
            logger.info(
                "creating_stripe_checkout_session",
                user_id=user_id,
                plan_id=plan_id,
                billing_cycle=billing_cycle.value,
            )
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as exc:
            logger.error("stripe_checkout_session_failed", error=str(exc), error_type=type(exc).__name__)
            raise PaymentProviderError(f"Failed to create checkout session: {exc}") from exc

        logger.info("stripe_checkout_session_created", session_id=session.id)
        return CheckoutSession(id=session.id, url=session.url)

    def verify_session(self, session_id: str) -> PaymentVerification:
        """Retrieve a checkout session with its customer and subscription.

        Raises:
            ValueError: If session_id is empty
            PaymentProviderError: If the Stripe API call fails
        """
        if not session_id:
            raise ValueError("session_id is required")
        try:
            session = stripe.checkout.Session.retrieve(session_id, expand=["customer", "subscription"])
        except stripe.StripeError as exc:
            logger.error("stripe_session_verification_failed", session_id=session_id, error=str(exc))
            raise PaymentProviderError(f"Failed to verify payment: {exc}") from exc

        customer = _field(session, "customer")
        subscription = _field(session, "subscription")
        return PaymentVerification(
            session_id=session_id,
            payment_status=_field(session, "payment_status"),
            customer_email=_field(customer, "email") or _field(_field(session, "customer_details"), "email"),
            subscription_id=_ref(subscription),
            subscription_status=_field(subscription, "status") if not isinstance(subscription, str) else None,
            amount_total=_field(session, "amount_total"),
            currency=_field(session, "currency"),
        )

    def construct_event(self, payload: bytes, signature: str) -> Any:
        """Verify a webhook signature and parse the event.

        Raises:
            ConfigurationError: If the webhook secret is not configured
            WebhookVerificationError: If the signature or payload is invalid
        """
        if not self.settings.webhook_secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not set")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.settings.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        logger.info("stripe_webhook_verified", event_id=_field(event, "id"), event_type=_field(event, "type"))
        return event


class WebhookHandler:
    """Applies subscription lifecycle events to the ledger.

    Every quota reset is keyed by the Stripe event id, so redelivered
    events leave the ledger as it was.
    """

    def __init__(self, repository: SubscriptionRepository, now_provider: Callable[[], datetime] = datetime.now):
        self.repository = repository
        self.now_provider = now_provider
        self._handlers = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.created": self._subscription_created,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
            "invoice.payment_succeeded": self._invoice_paid,
            "invoice.payment_failed": self._invoice_failed,
        }

    def handle(self, event: Any) -> str:
        """Dispatch one verified event.

        Returns:
            What was done: "applied", "canceled", "logged" or "ignored"
        """
        event_type = _field(event, "type")
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("stripe_webhook_unhandled", event_type=event_type)
            return "ignored"
        return handler(_field(event, "id"), _field(_field(event, "data"), "object"))

    def _checkout_completed(self, event_id: str, session: Any) -> str:
        metadata = _field(session, "metadata")
        user_id = _field(session, "client_reference_id") or _field(metadata, "userId")
        plan_id = _field(metadata, "planName")
        billing = _field(metadata, "billing") or BillingCycle.MONTHLY.value
        subscription_ref = _ref(_field(session, "subscription"))

        if not user_id or not plan_id or not subscription_ref:
            logger.warning(
                "stripe_checkout_missing_metadata",
                event_id=event_id,
                user_id=user_id,
                plan_id=plan_id,
            )
            return "ignored"

        self.repository.apply_payment(
            user_id,
            plan_id,
            BillingCycle(billing),
            subscription_ref,
            event_id=event_id,
            now=self.now_provider(),
        )
        return "applied"

    def _invoice_paid(self, event_id: str, invoice: Any) -> str:
        # The first invoice is covered by checkout.session.completed
        if _field(invoice, "billing_reason") == "subscription_create":
            return "ignored"
        subscription_ref = _ref(_field(invoice, "subscription"))
        subscription = self.repository.find_by_external_ref(subscription_ref) if subscription_ref else None
        if subscription is None:
            logger.warning("stripe_invoice_unknown_subscription", event_id=event_id, subscription=subscription_ref)
            return "ignored"

        self.repository.apply_payment(
            subscription.user_id,
            subscription.plan_id,
            subscription.billing_cycle,
            subscription_ref,
            event_id=event_id,
            now=self.now_provider(),
        )
        return "applied"

    def _subscription_updated(self, event_id: str, subscription: Any) -> str:
        status = _field(subscription, "status")
        if status in ENDED_SUBSCRIPTION_STATUSES:
            return self._subscription_deleted(event_id, subscription)
        logger.info("stripe_subscription_updated", subscription=_field(subscription, "id"), status=status)
        return "logged"

    def _subscription_deleted(self, event_id: str, subscription: Any) -> str:
        subscription_ref = _field(subscription, "id")
        if self.repository.cancel(subscription_ref) is None:
            logger.warning("stripe_cancel_unknown_subscription", event_id=event_id, subscription=subscription_ref)
            return "ignored"
        logger.info("stripe_subscription_canceled", subscription=subscription_ref)
        return "canceled"

    def _subscription_created(self, event_id: str, subscription: Any) -> str:
        logger.info(
            "stripe_subscription_created",
            subscription=_field(subscription, "id"),
            customer=_field(subscription, "customer"),
            status=_field(subscription, "status"),
        )
        return "logged"

    def _invoice_failed(self, event_id: str, invoice: Any) -> str:
        logger.warning(
            "stripe_invoice_payment_failed",
            invoice=_field(invoice, "id"),
            subscription=_ref(_field(invoice, "subscription")),
        )
        return "logged"
