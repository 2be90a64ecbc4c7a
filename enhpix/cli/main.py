"""
CLI interface for Enhpix.

Operator access to the ledger, enhancement runs and cost reports.
"""

import asyncio
import sys
from datetime import datetime
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from enhpix.config.loader import Settings, load_settings
from enhpix.core.errors import EnhpixError, EnhancementTimeoutError, ProviderError, QuotaExceededError
from enhpix.core.ledger import UsageLedger
from enhpix.core.orchestrator import EnhancementOrchestrator, EnhancementProgress
from enhpix.core.plans import PLAN_CATALOG, ImageType
from enhpix.core.polling import PollPolicy
from enhpix.core.pricing import format_cost
from enhpix.core.providers import SourceImage
from enhpix.core.recorder import CostRecorder
from enhpix.observability.logging import setup_logging
from enhpix.sdk.replicate_client import ReplicateProvider, select_provider
from enhpix.sdk.stripe_client import StripeBilling
from enhpix.storage.models import BillingCycle
from enhpix.storage.repository import SubscriptionRepository, UsageRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML settings file"
    ),
):
    """Enhpix usage ledger CLI."""
    try:
        settings = load_settings(config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        _fail(f"Invalid configuration: {e}")
    setup_logging(settings.logging.level, settings.logging.format)
    ctx.obj = settings
    if ctx.invoked_subcommand is None:
        console.print("Enhpix - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the Enhpix database."""
    try:
        initialize_schema(_settings(ctx).db_path)
    except EnhpixError as e:
        _fail(f"initializing database: {e}")
    console.print("[green]✓[/] Database initialized successfully")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def plans():
    """List the plan catalog."""
    table = Table(title="Plans")
    table.add_column("Plan")
    table.add_column("Images/month", justify="right")
    table.add_column("Max scale", justify="right")
    table.add_column("Quality")
    table.add_column("Monthly", justify="right")
    table.add_column("Yearly", justify="right")
    for plan in PLAN_CATALOG.plans.values():
        table.add_row(
            plan.name,
            f"{plan.images_per_month:,}",
            f"{plan.max_scale}x",
            plan.quality.value,
            f"€{plan.price_monthly}",
            f"€{plan.price_yearly}",
        )
    console.print(table)


@app.command()
def provision(ctx: typer.Context, user_id: str = typer.Argument(..., help="User to provision")):
    """Create the free trial record for a new user."""
    try:
        subscription = SubscriptionRepository(_settings(ctx).db_path).provision_trial(user_id)
    except EnhpixError as e:
        _fail(str(e))
    console.print(
        f"[green]✓[/] {user_id} is on the {subscription.plan_id} plan "
        f"with {subscription.images_remaining} images"
    )


@app.command()
def subscription(ctx: typer.Context, user_id: str = typer.Argument(..., help="User to show")):
    """Show a user's plan and remaining images."""
    try:
        sub = SubscriptionRepository(_settings(ctx).db_path).get(user_id)
        plan = PLAN_CATALOG.get(sub.plan_id)
    except EnhpixError as e:
        _fail(str(e))

    now = datetime.now()
    console.print(f"\n[bold]Subscription for {user_id}[/bold]")
    console.print("-" * 40)
    console.print(f"Plan: {plan.name} ({sub.billing_cycle.value})")
    console.print(f"Status: {sub.status.value}")
    console.print(f"Images: {sub.images_remaining} of {sub.images_total} remaining ({sub.usage_percentage}% used)")
    console.print(f"Days remaining: {sub.days_remaining(now)}")
    console.print(f"Max scale: {plan.max_scale}x, quality: {plan.quality.value}")


def _orchestrator(settings: Settings, user_id: str, provider) -> EnhancementOrchestrator:
    return EnhancementOrchestrator(
        ledger=UsageLedger(SubscriptionRepository(settings.db_path), user_id),
        provider=provider,
        recorder=CostRecorder(UsageRepository(settings.db_path)),
        models=settings.inference.models,
        poll_policy=PollPolicy.from_settings(settings.inference.poll),
        model_versions=settings.inference.model_versions,
    )


@app.command()
def enhance(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User the enhancement is charged to"),
    path: str = typer.Argument(..., help="Image file to enhance"),
    image_type: Optional[ImageType] = typer.Option(
        None,
        "--type",
        "-t",
        help="Kind of picture; picks the best model your plan allows"
    ),
):
    """Enhance an image, charging one credit on success."""
    settings = _settings(ctx)

    def _show(update: EnhancementProgress) -> None:
        console.print(f"[dim][{update.progress:>3}%][/] {update.message}")

    try:
        image = SourceImage.from_path(path)
    except OSError as e:
        _fail(f"Cannot read image: {e}")

    provider = select_provider(settings.inference)
    orchestrator = _orchestrator(settings, user_id, provider)

    async def _run():
        try:
            return await orchestrator.enhance(image, _show, image_type=image_type)
        finally:
            if isinstance(provider, ReplicateProvider):
                await provider.aclose()

    try:
        result = asyncio.run(_run())
    except QuotaExceededError as e:
        _fail(f"{e}. Upgrade your plan to continue.")
    except EnhancementTimeoutError as e:
        _fail(str(e))
    except ProviderError as e:
        _fail(f"Enhancement failed: {e.message}")
    except EnhpixError as e:
        _fail(str(e))

    label = " (simulated)" if result.simulated else ""
    console.print(f"\n[green]✓[/] Enhanced {image.filename} at {result.scale}x{label}")
    console.print(f"Output: {result.output_url[:120]}")
    console.print(f"Images remaining: {result.remaining_credits}")


@app.command()
def batch(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User the enhancements are charged to"),
    paths: List[str] = typer.Argument(..., help="Image files to enhance"),
    image_type: Optional[ImageType] = typer.Option(
        None,
        "--type",
        "-t",
        help="Kind of picture; picks the best model your plan allows"
    ),
):
    """Enhance several images in one run (Pro and Premium plans)."""
    settings = _settings(ctx)

    try:
        images = [SourceImage.from_path(path) for path in paths]
    except OSError as e:
        _fail(f"Cannot read image: {e}")

    provider = select_provider(settings.inference)
    orchestrator = _orchestrator(settings, user_id, provider)

    async def _run():
        try:
            return await orchestrator.enhance_batch(images, image_type=image_type)
        finally:
            if isinstance(provider, ReplicateProvider):
                await provider.aclose()

    try:
        results = asyncio.run(_run())
    except EnhpixError as e:
        _fail(str(e))

    table = Table(title="Batch results")
    table.add_column("Image")
    table.add_column("Status")
    table.add_column("Output")
    for item in results:
        if item.success:
            table.add_row(item.source.filename, "[green]enhanced[/]", item.result.output_url[:60])
        else:
            table.add_row(item.source.filename, "[red]failed[/]", str(item.error))
    console.print(table)

    failed = sum(1 for item in results if not item.success)
    console.print(f"{len(results) - failed} of {len(results)} images enhanced")
    sys.exit(EXIT_CODE_FAIL if failed else EXIT_CODE_PASS)


@app.command()
def summary(ctx: typer.Context):
    """Show provider costs folded from the usage log."""
    try:
        cost_summary = CostRecorder(UsageRepository(_settings(ctx).db_path)).summarize()
    except EnhpixError as e:
        _fail(str(e))

    console.print("\n[bold]API Cost Summary[/bold]")
    console.print("-" * 40)
    console.print(f"Total cost: {format_cost(cost_summary.total_cost)}")
    console.print(f"Total images: {cost_summary.total_images}")
    console.print(f"Average cost: {format_cost(cost_summary.average_cost)}")
    console.print(f"Today: {format_cost(cost_summary.today_cost)}")
    console.print(f"This month: {format_cost(cost_summary.this_month_cost)}")

    table = Table()
    table.add_column("Quality")
    table.add_column("Images", justify="right")
    table.add_column("Cost", justify="right")
    for quality, item in cost_summary.breakdown.items():
        table.add_row(quality.value, str(item.count), format_cost(item.cost))
    console.print(table)


@app.command()
def trim(
    ctx: typer.Context,
    days: Optional[int] = typer.Option(
        None,
        "--days",
        "-d",
        help="Keep records from this many days (defaults to configured retention)"
    ),
):
    """Remove usage records older than the retention window."""
    settings = _settings(ctx)
    retention_days = days if days is not None else settings.telemetry.retention_days
    try:
        removed = CostRecorder(UsageRepository(settings.db_path)).trim(retention_days)
    except (EnhpixError, ValueError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Cleaned up {removed} old usage records")


@app.command()
def export(ctx: typer.Context):
    """Print the usage log and its summary as JSON."""
    try:
        document = CostRecorder(UsageRepository(_settings(ctx).db_path)).export_usage()
    except EnhpixError as e:
        _fail(str(e))
    print(document)


@app.command()
def checkout(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User buying the plan"),
    plan_id: str = typer.Argument(..., help="Plan to buy (basic, pro, premium)"),
    yearly: bool = typer.Option(False, "--yearly", help="Bill yearly instead of monthly"),
    email: Optional[str] = typer.Option(None, "--email", "-e", help="Pre-fill the customer email"),
):
    """Create a Stripe checkout session and print its URL."""
    cycle = BillingCycle.YEARLY if yearly else BillingCycle.MONTHLY
    try:
        session = StripeBilling(_settings(ctx).billing).create_checkout_session(
            plan_id, cycle, user_id, customer_email=email
        )
    except EnhpixError as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Checkout session {session.id}")
    console.print(session.url)


if __name__ == "__main__":
    app()
