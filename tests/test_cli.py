"""
Tests for the CLI interface.
"""
import asyncio
import json
import os
import shutil
import tempfile
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from enhpix.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from enhpix.core.providers import SimulatedProvider
from enhpix.sdk.stripe_client import CheckoutSession
from enhpix.storage.models import BillingCycle
from enhpix.storage.repository import SubscriptionRepository, _connection

runner = CliRunner()


async def _no_sleep(_delay):
    await asyncio.sleep(0)


@pytest.fixture
def workspace():
    """Temporary database, config file and image."""
    temp_dir = tempfile.mkdtemp()
    config_path = os.path.join(temp_dir, "enhpix.yaml")
    with open(config_path, 'w', encoding='utf-8') as f:
        yaml.dump({"inference": {"poll": {"interval_seconds": 0}}}, f)
    image_path = os.path.join(temp_dir, "photo.png")
    with open(image_path, 'wb') as f:
        f.write(b"\x89PNG\r\n\x1a\nfake image")
    env = {
        "ENHPIX_DB_PATH": os.path.join(temp_dir, "test.db"),
        "REPLICATE_API_TOKEN": "",
        "STRIPE_SECRET_KEY": "",
        "COLUMNS": "200",
    }
    yield {"config": config_path, "image": image_path, "env": env}
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def simulated_provider():
    """Route enhancements to a simulated provider that never waits."""
    with patch('enhpix.cli.main.select_provider') as mock_select:
        mock_select.return_value = SimulatedProvider(sleep=_no_sleep)
        yield mock_select


def _invoke(workspace, *args):
    return runner.invoke(app, ["--config", workspace["config"], *args], env=workspace["env"])


class TestCLI:
    """Test CLI commands."""

    def test_init_command(self, workspace):
        """Test database initialization."""
        result = _invoke(workspace, "init")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output
        assert os.path.exists(workspace["env"]["ENHPIX_DB_PATH"])

    def test_plans_command(self, workspace):
        result = _invoke(workspace, "plans")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Free Trial" in result.output
        assert "Premium" in result.output
        assert "16x" in result.output

    def test_provision_and_show_subscription(self, workspace):
        _invoke(workspace, "init")

        result = _invoke(workspace, "provision", "user_1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "trial plan with 3 images" in result.output

        result = _invoke(workspace, "subscription", "user_1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Free Trial" in result.output
        assert "3 of 3 remaining" in result.output

    def test_subscription_unknown_user(self, workspace):
        _invoke(workspace, "init")

        result = _invoke(workspace, "subscription", "nobody")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "No subscription for user: nobody" in result.output

    def test_enhance_simulated(self, workspace, simulated_provider):
        """Enhancement without credentials runs the simulation and charges a credit."""
        _invoke(workspace, "init")
        _invoke(workspace, "provision", "user_1")

        result = _invoke(workspace, "enhance", "user_1", workspace["image"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "(simulated)" in result.output
        assert "Enhancement completed!" in result.output
        assert "Images remaining: 2" in result.output

    def test_enhance_quota_exhausted(self, workspace, simulated_provider):
        _invoke(workspace, "init")
        _invoke(workspace, "provision", "user_1")
        for _ in range(3):
            assert _invoke(workspace, "enhance", "user_1", workspace["image"]).exit_code == EXIT_CODE_PASS

        result = _invoke(workspace, "enhance", "user_1", workspace["image"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Upgrade your plan" in result.output

    def test_enhance_missing_image(self, workspace, simulated_provider):
        _invoke(workspace, "init")
        _invoke(workspace, "provision", "user_1")

        result = _invoke(workspace, "enhance", "user_1", "/nonexistent/photo.png")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Cannot read image" in result.output

    def test_summary_and_export(self, workspace, simulated_provider):
        _invoke(workspace, "init")
        _invoke(workspace, "provision", "user_1")
        _invoke(workspace, "enhance", "user_1", workspace["image"])

        result = _invoke(workspace, "summary")
        assert result.exit_code == EXIT_CODE_PASS
        assert "API Cost Summary" in result.output
        assert "Total images: 1" in result.output
        assert "Total cost: €0.000" in result.output

        result = _invoke(workspace, "export")
        assert result.exit_code == EXIT_CODE_PASS
        document = json.loads(result.stdout)
        assert document["summary"]["totalImages"] == 1
        assert document["records"][0]["outcome"] == "simulated"

    def test_trim_command(self, workspace):
        _invoke(workspace, "init")

        result = _invoke(workspace, "trim", "--days", "30")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Cleaned up 0 old usage records" in result.output

    def test_trim_negative_days(self, workspace):
        _invoke(workspace, "init")

        result = _invoke(workspace, "trim", "--days=-1")

        assert result.exit_code == EXIT_CODE_FAIL

    def test_checkout_command(self, workspace):
        with patch('enhpix.cli.main.StripeBilling') as mock_billing:
            mock_billing.return_value.create_checkout_session.return_value = CheckoutSession(
                id="cs_test_1", url="https://checkout.stripe.com/c/cs_test_1"
            )
            result = _invoke(workspace, "checkout", "user_1", "pro", "--yearly", "--email", "a@example.com")

        assert result.exit_code == EXIT_CODE_PASS
        assert "https://checkout.stripe.com/c/cs_test_1" in result.output
        args, kwargs = mock_billing.return_value.create_checkout_session.call_args
        assert args[0] == "pro"
        assert args[1].value == "yearly"
        assert kwargs["customer_email"] == "a@example.com"

    def test_checkout_without_stripe_key(self, workspace):
        result = _invoke(workspace, "checkout", "user_1", "pro")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "STRIPE_SECRET_KEY" in result.output

    def test_invalid_config(self, workspace):
        with open(workspace["config"], 'w', encoding='utf-8') as f:
            yaml.dump({"budget": {"daily": 1}}, f)

        result = _invoke(workspace, "plans")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid configuration" in result.output

    def test_subscription_with_retired_plan(self, workspace):
        """A plan id missing from the catalog is reported, not raised."""
        _invoke(workspace, "init")
        _invoke(workspace, "provision", "user_1")
        with _connection(workspace["env"]["ENHPIX_DB_PATH"]) as conn:
            conn.execute("UPDATE subscription SET plan_id = 'legacy' WHERE user_id = 'user_1'")
            conn.commit()

        result = _invoke(workspace, "subscription", "user_1")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown plan: legacy" in result.output

    def test_enhance_with_image_type(self, workspace, simulated_provider):
        _invoke(workspace, "init")
        _invoke(workspace, "provision", "user_1")

        result = _invoke(workspace, "enhance", "user_1", workspace["image"], "--type", "photo")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Images remaining: 2" in result.output

    def test_batch_not_in_trial(self, workspace, simulated_provider):
        _invoke(workspace, "init")
        _invoke(workspace, "provision", "user_1")

        result = _invoke(workspace, "batch", "user_1", workspace["image"], workspace["image"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "batch_processing is not available on the trial plan" in result.output

    def test_batch_on_pro_plan(self, workspace, simulated_provider):
        _invoke(workspace, "init")
        _invoke(workspace, "provision", "user_1")
        SubscriptionRepository(workspace["env"]["ENHPIX_DB_PATH"]).apply_payment(
            "user_1", "pro", BillingCycle.MONTHLY, "sub_123"
        )

        result = _invoke(workspace, "batch", "user_1", workspace["image"], workspace["image"], "-t", "artwork")

        assert result.exit_code == EXIT_CODE_PASS
        assert "2 of 2 images enhanced" in result.output
        assert SubscriptionRepository(workspace["env"]["ENHPIX_DB_PATH"]).get("user_1").images_remaining == 398
