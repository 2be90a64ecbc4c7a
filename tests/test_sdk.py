"""
Tests for the provider SDK wrappers.

Replicate calls run against httpx.MockTransport; Stripe calls are patched.
"""

import asyncio
import json
import os
import shutil
import tempfile
from unittest.mock import MagicMock, patch

import httpx
import pytest
import stripe

from enhpix.config.loader import BillingSettings, InferenceSettings
from enhpix.core.errors import (
    ConfigurationError,
    PaymentProviderError,
    ProviderError,
    UnknownPlanError,
    WebhookVerificationError,
)
from enhpix.core.providers import PredictionStatus, SimulatedProvider, SourceImage
from enhpix.sdk.replicate_client import ReplicateProvider, select_provider
from enhpix.sdk.stripe_client import StripeBilling, WebhookHandler
from enhpix.storage.models import BillingCycle, SubscriptionStatus
from enhpix.storage.repository import SubscriptionRepository, initialize_schema

API_BASE = "https://api.replicate.test/v1"


def _run_with_transport(handler, action):
    """Run an async action against a provider wired to a mock transport."""
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = ReplicateProvider("r8_test_token", api_base=API_BASE, http_client=client)
            return await action(provider)
    return asyncio.run(run())


class TestReplicateProvider:
    """Test Replicate request building and response parsing."""

    def setup_method(self):
        self.image = SourceImage(filename="photo.png", content=b"png-bytes")

    def test_requires_token(self):
        with pytest.raises(ValueError, match="api_token is required"):
            ReplicateProvider("")

    def test_create_prediction(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(201, json={"id": "pred_1", "status": "starting", "output": None})

        prediction = _run_with_transport(
            handler,
            lambda provider: provider.create_prediction(self.image, 4, "nightmareai/real-esrgan:abc123"),
        )

        assert prediction.id == "pred_1"
        assert prediction.status == PredictionStatus.STARTING
        request = requests[0]
        assert request.method == "POST"
        assert str(request.url) == f"{API_BASE}/predictions"
        assert request.headers["Authorization"] == "Bearer r8_test_token"
        body = json.loads(request.content)
        assert body == {
            "version": "abc123",
            "input": {"image": self.image.to_data_url(), "scale": 4},
        }

    def test_get_prediction_list_output(self):
        def handler(request):
            assert request.method == "GET"
            assert request.url.path.endswith("/predictions/pred_1")
            return httpx.Response(200, json={
                "id": "pred_1",
                "status": "succeeded",
                "output": ["https://replicate.delivery/out.png", "https://replicate.delivery/other.png"],
            })

        prediction = _run_with_transport(handler, lambda provider: provider.get_prediction("pred_1"))

        assert prediction.status == PredictionStatus.SUCCEEDED
        assert prediction.output == "https://replicate.delivery/out.png"
        assert prediction.is_terminal

    def test_failed_prediction_error_kept(self):
        def handler(request):
            return httpx.Response(200, json={"id": "pred_1", "status": "failed", "error": "model overloaded"})

        prediction = _run_with_transport(handler, lambda provider: provider.get_prediction("pred_1"))

        assert prediction.status == PredictionStatus.FAILED
        assert prediction.error == "model overloaded"

    def test_rejected_request_uses_detail(self):
        def handler(request):
            return httpx.Response(422, json={"detail": "Invalid version or not permitted"})

        with pytest.raises(ProviderError, match="Invalid version or not permitted"):
            _run_with_transport(
                handler,
                lambda provider: provider.create_prediction(self.image, 4, "owner/model:bad"),
            )

    def test_rejected_request_without_detail(self):
        def handler(request):
            return httpx.Response(500, text="upstream exploded")

        with pytest.raises(ProviderError, match="HTTP 500"):
            _run_with_transport(handler, lambda provider: provider.get_prediction("pred_1"))

    def test_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderError, match="Replicate request failed"):
            _run_with_transport(handler, lambda provider: provider.get_prediction("pred_1"))

    def test_unexpected_payload(self):
        def handler(request):
            return httpx.Response(200, json={"id": "pred_1", "status": "exploded"})

        with pytest.raises(ProviderError, match="Unexpected prediction payload"):
            _run_with_transport(handler, lambda provider: provider.get_prediction("pred_1"))

    def test_cancel_prediction(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"id": "pred_1", "status": "canceled"})

        _run_with_transport(handler, lambda provider: provider.cancel_prediction("pred_1"))

        assert requests[0].method == "POST"
        assert str(requests[0].url) == f"{API_BASE}/predictions/pred_1/cancel"

    def test_cancel_rejected(self):
        def handler(request):
            return httpx.Response(404, json={"detail": "Not found."})

        with pytest.raises(ProviderError, match="Not found."):
            _run_with_transport(handler, lambda provider: provider.cancel_prediction("pred_1"))


class TestSelectProvider:
    """Test choosing the provider variant from credentials."""

    def test_real_provider_with_token(self):
        provider = select_provider(InferenceSettings(api_token="r8_real_token"))
        assert isinstance(provider, ReplicateProvider)
        assert provider.simulated is False

    def test_simulated_without_token(self):
        provider = select_provider(InferenceSettings(api_token=None))
        assert isinstance(provider, SimulatedProvider)
        assert provider.simulated is True

    def test_demo_token_is_simulated(self):
        assert isinstance(select_provider(InferenceSettings(api_token="r8_demo_key")), SimulatedProvider)


class TestStripeBilling:
    """Test checkout session creation and verification."""

    def setup_method(self):
        self.billing = StripeBilling(BillingSettings(secret_key="sk_test_123", webhook_secret="whsec_123"))

    def test_requires_secret_key(self):
        with pytest.raises(ConfigurationError, match="STRIPE_SECRET_KEY"):
            StripeBilling(BillingSettings())

    def test_price_id_for(self):
        assert self.billing.price_id_for("pro", BillingCycle.YEARLY) == "price_1RvegXHUii3yXltrGWxpvpZi"

    def test_trial_cannot_be_bought(self):
        with pytest.raises(UnknownPlanError):
            self.billing.price_id_for("trial", BillingCycle.MONTHLY)

    @patch("enhpix.sdk.stripe_client.stripe.checkout.Session.create")
    def test_create_checkout_session(self, mock_create):
        mock_create.return_value = MagicMock(id="cs_test_1", url="https://checkout.stripe.com/c/cs_test_1")

        session = self.billing.create_checkout_session(
            "basic", BillingCycle.MONTHLY, "user_1", customer_email="a@example.com"
        )

        assert session.id == "cs_test_1"
        assert session.url == "https://checkout.stripe.com/c/cs_test_1"
        kwargs = mock_create.call_args.kwargs
        assert kwargs["mode"] == "subscription"
        assert kwargs["line_items"] == [{"price": "price_1RveeGHUii3yXltrohFUcH0U", "quantity": 1}]
        assert kwargs["client_reference_id"] == "user_1"
        assert kwargs["customer_email"] == "a@example.com"
        assert kwargs["metadata"]["planName"] == "basic"
        assert kwargs["metadata"]["billing"] == "monthly"

    @patch("enhpix.sdk.stripe_client.stripe.checkout.Session.create")
    def test_checkout_failure(self, mock_create):
        mock_create.side_effect = stripe.StripeError("card network down")

        with pytest.raises(PaymentProviderError, match="card network down"):
            self.billing.create_checkout_session("basic", BillingCycle.MONTHLY, "user_1")

    @patch("enhpix.sdk.stripe_client.stripe.checkout.Session.retrieve")
    def test_verify_session(self, mock_retrieve):
        mock_retrieve.return_value = {
            "payment_status": "paid",
            "customer": {"id": "cus_1", "email": "a@example.com"},
            "subscription": {"id": "sub_1", "status": "active"},
            "amount_total": 1900,
            "currency": "eur",
        }

        verification = self.billing.verify_session("cs_test_1")

        assert verification.is_paid
        assert verification.customer_email == "a@example.com"
        assert verification.subscription_id == "sub_1"
        assert verification.subscription_status == "active"
        assert verification.amount_total == 1900
        mock_retrieve.assert_called_once_with("cs_test_1", expand=["customer", "subscription"])

    def test_verify_session_requires_id(self):
        with pytest.raises(ValueError):
            self.billing.verify_session("")

    @patch("enhpix.sdk.stripe_client.stripe.Webhook.construct_event")
    def test_construct_event_bad_signature(self, mock_construct):
        mock_construct.side_effect = stripe.SignatureVerificationError("bad signature", "t=1,v1=abc")

        with pytest.raises(WebhookVerificationError):
            self.billing.construct_event(b"{}", "t=1,v1=abc")

    @patch("enhpix.sdk.stripe_client.stripe.Webhook.construct_event")
    def test_construct_event(self, mock_construct):
        mock_construct.return_value = {"id": "evt_1", "type": "checkout.session.completed"}

        event = self.billing.construct_event(b"{}", "t=1,v1=abc")

        assert event["id"] == "evt_1"
        mock_construct.assert_called_once_with(b"{}", "t=1,v1=abc", "whsec_123")

    def test_construct_event_without_secret(self):
        billing = StripeBilling(BillingSettings(secret_key="sk_test_123"))
        with pytest.raises(ConfigurationError, match="STRIPE_WEBHOOK_SECRET"):
            billing.construct_event(b"{}", "sig")


class TestWebhookHandler:
    """Test subscription lifecycle events against a real ledger."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = SubscriptionRepository(self.db_path)
        self.repository.provision_trial("user_1")
        self.handler = WebhookHandler(self.repository)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _checkout_event(self, event_id="evt_checkout_1", plan="pro", billing="monthly"):
        return {
            "id": event_id,
            "type": "checkout.session.completed",
            "data": {"object": {
                "id": "cs_test_1",
                "client_reference_id": "user_1",
                "subscription": "sub_123",
                "metadata": {"userId": "user_1", "planName": plan, "billing": billing},
            }},
        }

    def test_checkout_completed_applies_payment(self):
        assert self.handler.handle(self._checkout_event()) == "applied"

        sub = self.repository.get("user_1")
        assert sub.plan_id == "pro"
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.images_remaining == 400
        assert sub.external_subscription_ref == "sub_123"

    def test_redelivered_event_is_ignored(self):
        self.handler.handle(self._checkout_event())
        self.repository.consume_credit("user_1")

        self.handler.handle(self._checkout_event())

        assert self.repository.get("user_1").images_remaining == 399

    def test_yearly_checkout(self):
        self.handler.handle(self._checkout_event(plan="premium", billing="yearly"))

        sub = self.repository.get("user_1")
        assert sub.billing_cycle == BillingCycle.YEARLY
        assert sub.images_total == 1300

    def test_checkout_missing_metadata(self):
        event = {"id": "evt_1", "type": "checkout.session.completed", "data": {"object": {"id": "cs_1"}}}
        assert self.handler.handle(event) == "ignored"
        assert self.repository.get("user_1").plan_id == "trial"

    def test_renewal_invoice_resets_quota(self):
        self.handler.handle(self._checkout_event())
        self.repository.consume_credit("user_1")
        invoice = {
            "id": "evt_invoice_2",
            "type": "invoice.payment_succeeded",
            "data": {"object": {"billing_reason": "subscription_cycle", "subscription": "sub_123"}},
        }

        assert self.handler.handle(invoice) == "applied"
        assert self.repository.get("user_1").images_remaining == 400

    def test_first_invoice_is_left_to_checkout(self):
        invoice = {
            "id": "evt_invoice_1",
            "type": "invoice.payment_succeeded",
            "data": {"object": {"billing_reason": "subscription_create", "subscription": "sub_123"}},
        }
        assert self.handler.handle(invoice) == "ignored"

    def test_subscription_deleted_cancels(self):
        self.handler.handle(self._checkout_event())
        event = {"id": "evt_2", "type": "customer.subscription.deleted", "data": {"object": {"id": "sub_123"}}}

        assert self.handler.handle(event) == "canceled"
        sub = self.repository.get("user_1")
        assert sub.status == SubscriptionStatus.CANCELED
        assert sub.images_remaining == 400

    def test_subscription_updated_to_unpaid_cancels(self):
        self.handler.handle(self._checkout_event())
        event = {
            "id": "evt_3",
            "type": "customer.subscription.updated",
            "data": {"object": {"id": "sub_123", "status": "unpaid"}},
        }
        assert self.handler.handle(event) == "canceled"

    def test_subscription_updated_active_is_logged(self):
        event = {
            "id": "evt_3",
            "type": "customer.subscription.updated",
            "data": {"object": {"id": "sub_123", "status": "active"}},
        }
        assert self.handler.handle(event) == "logged"

    def test_payment_failed_is_logged(self):
        event = {"id": "evt_4", "type": "invoice.payment_failed", "data": {"object": {"id": "in_1"}}}
        assert self.handler.handle(event) == "logged"

    def test_unknown_event_ignored(self):
        assert self.handler.handle({"id": "evt_5", "type": "charge.refunded", "data": {"object": {}}}) == "ignored"
