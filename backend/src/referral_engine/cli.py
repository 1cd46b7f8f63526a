"""Command-line interface for the referral engine."""

import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from referral_engine.codes import CodeGenerationError
from referral_engine.discounts import DiscountType, discount_service
from referral_engine.logging_config import configure_logging, get_logger
from referral_engine.referral import (
    ClickMetadata,
    ReferralStatus,
    RewardType,
    referral_service,
    reward_service,
    stats_service,
)
from referral_engine.storage.db import db
from referral_engine.storage.export import export_to_csv, export_to_jsonl

# Configure logging
configure_logging()
logger = get_logger(__name__)

# Create Typer app
app = typer.Typer(
    name="referral-engine",
    help="Referral attribution, tier rewards and discount codes",
    no_args_is_help=True,
)

# Rich console for pretty output
console = Console()


def _fail(message: str) -> None:
    console.print(f"[bold red]✗[/bold red] {message}")
    raise typer.Exit(1)


@app.command("init")
def init_database() -> None:
    """Initialize the database and create tables."""
    console.print("[bold blue]Initializing database...[/bold blue]")
    db.create_tables()
    console.print("[bold green]✓[/bold green] Database initialized successfully")


# ==================== SEASONS / TIERS ====================


@app.command("season-create")
def create_season(
    name: Annotated[str, typer.Option("--name", "-n", help="Season name")],
    slug: Annotated[str | None, typer.Option("--slug", help="URL slug (derived from name if omitted)")] = None,
    description: Annotated[str | None, typer.Option("--description", "-d", help="Description")] = None,
    default: Annotated[bool, typer.Option("--default", help="Make this the default season")] = False,
    prefix: Annotated[str | None, typer.Option("--prefix", "-p", help="Referral code prefix")] = None,
    allow_self_referral: Annotated[bool, typer.Option("--allow-self-referral", help="Allow users to refer themselves")] = False,
    window_days: Annotated[int | None, typer.Option("--window-days", help="Conversion window in days")] = None,
) -> None:
    """Create a referral season."""
    config: dict = {"allow_self_referral": allow_self_referral}
    if prefix:
        config["referral_code_prefix"] = prefix.upper()
    if window_days is not None:
        config["conversion_window_days"] = window_days

    season = referral_service.create_season(
        name=name,
        slug=slug,
        description=description,
        is_default=default,
        config=config,
    )

    console.print(f"[bold green]✓[/bold green] Season created with ID: [bold]{season.id}[/bold]")
    console.print(f"  Slug: {season.slug}")
    console.print(f"  Default: {season.is_default}")
    console.print(f"  Code prefix: {season.code_prefix}")


@app.command("season-list")
def list_seasons() -> None:
    """List active seasons."""
    seasons = referral_service.get_active_seasons()

    if not seasons:
        console.print("[yellow]No active seasons found[/yellow]")
        return

    table = Table(title="Seasons")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Slug")
    table.add_column("Default")
    table.add_column("Started")

    for season in seasons:
        table.add_row(
            season.id,
            season.name,
            season.slug,
            "yes" if season.is_default else "",
            season.start_date.strftime("%Y-%m-%d"),
        )

    console.print(table)


@app.command("tier-create")
def create_tier(
    season_id: Annotated[str, typer.Argument(help="Season ID")],
    name: Annotated[str, typer.Option("--name", "-n", help="Tier name")],
    required: Annotated[int, typer.Option("--required", "-r", help="Successful referrals required")],
    reward_type: Annotated[str, typer.Option("--reward-type", "-t", help="Reward type")] = RewardType.DISCOUNT_CODE.value,
    reward_value: Annotated[str, typer.Option("--reward-value", "-v", help="Reward payload as JSON")] = "{}",
    sort_order: Annotated[int, typer.Option("--sort-order", help="Sort order among equal requirements")] = 0,
) -> None:
    """Create a reward tier in a season."""
    if reward_type not in {t.value for t in RewardType}:
        _fail(f"Unknown reward type: {reward_type}")

    try:
        payload = json.loads(reward_value)
    except json.JSONDecodeError as e:
        _fail(f"Invalid reward value JSON: {e}")

    if not referral_service.get_season_by_id(season_id):
        _fail(f"Season {season_id} not found")

    tier = referral_service.create_tier(
        season_id=season_id,
        name=name,
        referrals_required=required,
        reward_type=reward_type,
        reward_value=payload,
        sort_order=sort_order,
    )
    console.print(f"[bold green]✓[/bold green] Tier created with ID: [bold]{tier.id}[/bold]")


@app.command("tier-list")
def list_tiers(
    season_id: Annotated[str, typer.Argument(help="Season ID")],
) -> None:
    """List the active tiers of a season."""
    tiers = referral_service.get_tiers_by_season(season_id)

    if not tiers:
        console.print("[yellow]No tiers found[/yellow]")
        return

    table = Table(title="Tiers")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Required", justify="right")
    table.add_column("Reward")
    table.add_column("Value")

    for tier in tiers:
        table.add_row(
            tier.id,
            tier.name,
            str(tier.referrals_required),
            tier.reward_type,
            json.dumps(tier.reward_value),
        )

    console.print(table)


# ==================== REFERRAL EVENTS ====================


@app.command("code")
def get_code(
    user_id: Annotated[str, typer.Argument(help="User ID")],
    season_id: Annotated[str | None, typer.Option("--season", "-s", help="Season ID")] = None,
) -> None:
    """Get or create a user's referral code."""
    try:
        referral_code = referral_service.get_or_create_referral_code(user_id, season_id)
    except CodeGenerationError as e:
        _fail(str(e))

    if not referral_code:
        _fail(f"Season {season_id} not found")

    console.print(f"[bold]Code:[/bold] {referral_code.code}")
    console.print(f"[bold]Clicks:[/bold] {referral_code.clicks}")


@app.command("click")
def track_click(
    code: Annotated[str, typer.Argument(help="Referral code")],
    ip_address: Annotated[str | None, typer.Option("--ip", help="Client IP address")] = None,
    user_agent: Annotated[str | None, typer.Option("--user-agent", help="Client user agent")] = None,
    utm_source: Annotated[str | None, typer.Option("--utm-source")] = None,
    utm_medium: Annotated[str | None, typer.Option("--utm-medium")] = None,
    utm_campaign: Annotated[str | None, typer.Option("--utm-campaign")] = None,
) -> None:
    """Record a click on a referral link."""
    metadata = ClickMetadata(
        ip_address=ip_address,
        user_agent=user_agent,
        utm_source=utm_source,
        utm_medium=utm_medium,
        utm_campaign=utm_campaign,
    )
    referral = referral_service.track_click(code, metadata)

    if not referral:
        _fail(f"Invalid referral code: {code}")

    console.print(f"[bold green]✓[/bold green] Click recorded, referral ID: [bold]{referral.id}[/bold]")


@app.command("signup")
def register_signup(
    code: Annotated[str, typer.Argument(help="Referral code")],
    user_id: Annotated[str, typer.Argument(help="New user ID")],
    email: Annotated[str | None, typer.Option("--email", "-e", help="New user email")] = None,
) -> None:
    """Attribute a signup to a referral code."""
    referral = referral_service.register_referral(code, user_id, email)

    if not referral:
        _fail("Referral not registered (invalid code or self-referral)")

    console.print(f"[bold green]✓[/bold green] Referral {referral.id} is {referral.status}")
    console.print(f"  Referrer: {referral.referrer_id}")


@app.command("convert")
def convert(
    referral_id: Annotated[str, typer.Argument(help="Referral ID")],
    value: Annotated[float, typer.Option("--value", "-v", help="Conversion value")],
    conversion_type: Annotated[str, typer.Option("--type", "-t", help="Conversion type")] = "subscription",
    product_id: Annotated[str | None, typer.Option("--product", "-p", help="Product ID")] = None,
) -> None:
    """Convert a referral, then refresh the referrer's stats and rewards."""
    referral = referral_service.convert_referral(referral_id, conversion_type, value, product_id)

    if not referral:
        console.print(f"[yellow]Referral {referral_id} was not awaiting conversion[/yellow]")
        return

    console.print(f"[bold green]✓[/bold green] Referral {referral.id} converted ({referral.conversion_value})")

    stats = stats_service.update_stats(referral.referrer_id)
    try:
        rewards = reward_service.check_tier_progress(referral.referrer_id)
    except CodeGenerationError as e:
        _fail(str(e))

    console.print(f"  Successful referrals: {stats.successful_referrals}")
    for reward in rewards:
        console.print(f"  [bold green]Reward unlocked:[/bold green] {reward.tier.name} ({reward.reward_type})")


@app.command("referrals-expire")
def expire_referrals(
    season_id: Annotated[str | None, typer.Option("--season", "-s", help="Season ID (all active if omitted)")] = None,
    older_than_days: Annotated[int | None, typer.Option("--older-than", help="Window in days (season config if omitted)")] = None,
) -> None:
    """Expire clicks and signups that did not progress in time."""
    expired = referral_service.expire_referrals(season_id, older_than_days)
    console.print(f"[bold green]✓[/bold green] Expired {expired} referrals")


# ==================== STATS / REWARDS ====================


@app.command("stats")
def show_stats(
    user_id: Annotated[str, typer.Argument(help="User ID")],
) -> None:
    """Recompute and show a user's referral statistics."""
    stats = stats_service.update_stats(user_id)

    console.print(f"[bold]User:[/bold] {stats.user_id}")
    console.print(f"[bold]Clicks:[/bold] {stats.total_clicks}")
    console.print(f"[bold]Referrals:[/bold] {stats.total_referrals}")
    console.print(f"[bold]Successful:[/bold] {stats.successful_referrals}")
    console.print(f"[bold]Pending:[/bold] {stats.pending_referrals}")
    console.print(f"[bold]Expired:[/bold] {stats.expired_referrals}")
    console.print(f"[bold]Conversion value:[/bold] {stats.total_conversion_value}")
    console.print(f"[bold]Rewards:[/bold] {stats.total_rewards_earned} earned, {stats.total_rewards_claimed} claimed")
    if stats.referrals_to_next_tier is not None:
        console.print(f"[bold]Next tier in:[/bold] {stats.referrals_to_next_tier} referrals")


@app.command("leaderboard")
def show_leaderboard(
    season_id: Annotated[str | None, typer.Option("--season", "-s", help="Season ID")] = None,
    limit: Annotated[int | None, typer.Option("--limit", "-l", help="Number of rows")] = None,
) -> None:
    """Show the referral leaderboard."""
    entries = stats_service.get_leaderboard(season_id, limit)

    if not entries:
        console.print("[yellow]No referral stats yet[/yellow]")
        return

    table = Table(title="Leaderboard")
    table.add_column("Rank", justify="right")
    table.add_column("User", style="green")
    table.add_column("Successful", justify="right")
    table.add_column("Value", justify="right")

    for entry in entries:
        table.add_row(
            str(entry.rank),
            entry.user_id,
            str(entry.successful_referrals),
            f"{entry.total_conversion_value:.2f}",
        )

    console.print(table)


@app.command("rewards-check")
def check_rewards(
    user_id: Annotated[str, typer.Argument(help="User ID")],
) -> None:
    """Grant any tiers the user has reached."""
    try:
        rewards = reward_service.check_tier_progress(user_id)
    except CodeGenerationError as e:
        _fail(str(e))

    if not rewards:
        console.print("[yellow]No new rewards[/yellow]")
        return

    for reward in rewards:
        console.print(f"[bold green]✓[/bold green] Granted {reward.tier.name}: {reward.reward_type} ({reward.id})")


@app.command("rewards-list")
def list_rewards(
    user_id: Annotated[str, typer.Argument(help="User ID")],
) -> None:
    """List a user's rewards."""
    rewards = reward_service.get_user_rewards(user_id)

    if not rewards:
        console.print("[yellow]No rewards found[/yellow]")
        return

    table = Table(title="Rewards")
    table.add_column("ID", style="cyan")
    table.add_column("Tier", style="green")
    table.add_column("Type")
    table.add_column("Claimed")

    for reward in rewards:
        table.add_row(
            reward.id,
            reward.tier.name if reward.tier else "N/A",
            reward.reward_type,
            reward.claimed_at.strftime("%Y-%m-%d %H:%M") if reward.is_claimed else "",
        )

    console.print(table)


@app.command("reward-claim")
def claim_reward(
    reward_id: Annotated[str, typer.Argument(help="Reward ID")],
    user_id: Annotated[str, typer.Argument(help="User ID")],
) -> None:
    """Claim an unlocked reward."""
    reward = reward_service.claim_reward(reward_id, user_id)

    if not reward:
        _fail("Reward not found, not yours, or already claimed")

    console.print(f"[bold green]✓[/bold green] Reward {reward.id} claimed")


# ==================== DISCOUNTS ====================


@app.command("discount-create")
def create_discount(
    value: Annotated[float, typer.Option("--value", "-v", help="Percent or fixed amount")],
    code: Annotated[str | None, typer.Option("--code", "-c", help="Explicit code (generated if omitted)")] = None,
    discount_type: Annotated[str, typer.Option("--type", "-t", help="percent, fixed, free_month or free_trial")] = DiscountType.PERCENT.value,
    name: Annotated[str | None, typer.Option("--name", "-n", help="Display name")] = None,
    applies_to: Annotated[str, typer.Option("--applies-to", help="Purchase type or 'all'")] = "all",
    max_uses: Annotated[int | None, typer.Option("--max-uses", help="Global redemption cap")] = None,
    max_uses_per_user: Annotated[int, typer.Option("--max-uses-per-user", help="Per-user redemption cap")] = 1,
    min_purchase: Annotated[float | None, typer.Option("--min-purchase", help="Minimum purchase amount")] = None,
    max_discount: Annotated[float | None, typer.Option("--max-discount", help="Cap on the discount amount")] = None,
    expires_days: Annotated[int | None, typer.Option("--expires-days", help="Days until expiry")] = None,
    public: Annotated[bool, typer.Option("--public", help="Show on pricing page")] = False,
) -> None:
    """Create an admin discount code."""
    expires_at = datetime.utcnow() + timedelta(days=expires_days) if expires_days else None

    try:
        discount = discount_service.create_discount_code(
            value=value,
            code=code,
            type=discount_type,
            name=name,
            applies_to=applies_to,
            max_uses=max_uses,
            max_uses_per_user=max_uses_per_user,
            min_purchase=min_purchase,
            max_discount=max_discount,
            is_public=public,
            expires_at=expires_at,
        )
    except (ValueError, CodeGenerationError) as e:
        _fail(str(e))

    console.print(f"[bold green]✓[/bold green] Discount code created: [bold]{discount.code}[/bold]")


@app.command("discount-validate")
def validate_discount(
    code: Annotated[str, typer.Argument(help="Discount code")],
    user_id: Annotated[str, typer.Argument(help="User ID")],
    purchase_type: Annotated[str | None, typer.Option("--type", "-t", help="Purchase type")] = None,
    amount: Annotated[float | None, typer.Option("--amount", "-a", help="Purchase amount")] = None,
) -> None:
    """Check whether a discount code can be used."""
    validation = discount_service.validate_discount_code(code, user_id, purchase_type, amount)

    if not validation.valid:
        _fail(validation.error)

    discount = validation.discount
    console.print(f"[bold green]✓[/bold green] {discount.code} is valid ({discount.type} {discount.value})")


@app.command("discount-apply")
def apply_discount(
    code: Annotated[str, typer.Argument(help="Discount code")],
    user_id: Annotated[str, typer.Argument(help="User ID")],
    amount: Annotated[float, typer.Option("--amount", "-a", help="Original amount")],
    product_type: Annotated[str, typer.Option("--type", "-t", help="Product type")] = "subscription",
    product_id: Annotated[str | None, typer.Option("--product", "-p", help="Product ID")] = None,
    order_id: Annotated[str | None, typer.Option("--order", "-o", help="Order ID")] = None,
) -> None:
    """Redeem a discount code against a purchase."""
    application = discount_service.apply_discount_code(code, user_id, amount, product_type, product_id, order_id)

    if not application.success:
        _fail(application.error)

    console.print(f"[bold green]✓[/bold green] Discount applied")
    console.print(f"  Discount: {application.discount_amount}")
    console.print(f"  Final amount: {application.final_amount}")


# ==================== EXPORT ====================


@app.command("export")
def export_referrals(
    output_path: Annotated[Path, typer.Option("--output", "-o", help="Output file path")] = Path("referrals.csv"),
    format: Annotated[str, typer.Option("--format", "-f", help="Export format (csv or jsonl)")] = "csv",
    season_id: Annotated[str | None, typer.Option("--season", "-s", help="Season ID")] = None,
    status: Annotated[str | None, typer.Option("--status", help="Only export this status")] = None,
) -> None:
    """Export referrals to CSV or JSONL."""
    if status and status not in {s.value for s in ReferralStatus}:
        _fail(f"Unknown status: {status}")

    console.print(f"[bold blue]Exporting referrals to {output_path}...[/bold blue]")

    rows = referral_service.export_referral_data(season_id)
    if status:
        rows = [row for row in rows if row["status"] == status]

    if not rows:
        console.print("[yellow]No referrals found[/yellow]")
        return

    if format == "csv":
        export_to_csv(rows, output_path)
    elif format == "jsonl":
        export_to_jsonl(rows, output_path)
    else:
        _fail(f"Unknown format: {format}")

    console.print(f"[bold green]✓[/bold green] Exported {len(rows)} referrals to {output_path}")


if __name__ == "__main__":
    app()
