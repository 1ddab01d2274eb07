import asyncio
import logging
import mimetypes
from pathlib import Path

import typer
from dotenv import load_dotenv

from receiptsync.config import Settings
from receiptsync.currency import format_amount
from receiptsync.errors import AppError
from receiptsync.integrations.exchange_rates import ExchangeRateService
from receiptsync.integrations.realtime import RealtimeBridge
from receiptsync.integrations.supabase_gateway import SupabaseGateway
from receiptsync.integrations.vision_extractor import VisionExtractor
from receiptsync.local_store import LocalStore
from receiptsync.models import NotificationFilters, NotificationPriority
from receiptsync.state.categories import CategoriesContainer
from receiptsync.state.receipts import (
    DEFAULT_BATCH_CONCURRENCY,
    BatchUploadItem,
    ReceiptsContainer,
)
from receiptsync.state.subscription import SubscriptionContainer
from receiptsync.sync.dispatcher import ConsoleDisplay, LocalNotificationDispatcher
from receiptsync.sync.notifications import NotificationSynchronizer

load_dotenv()

app = typer.Typer(no_args_is_help=True)

EMAIL_OPTION = typer.Option(..., "--email", "-e", envvar="RECEIPTSYNC_EMAIL", help="Account email")
PASSWORD_OPTION = typer.Option(
    ..., "--password", "-p", envvar="RECEIPTSYNC_PASSWORD", help="Account password", hide_input=True
)


@app.callback(invoke_without_command=True)
def callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Receiptsync CLI tool."""
    settings = Settings.from_env()
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.WARNING)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    ctx.obj = settings
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj if isinstance(ctx.obj, Settings) else Settings.from_env()


def _fail(message: str, error: Exception) -> None:
    typer.echo(f"{message}: {error}", err=True)
    raise typer.Exit(code=1) from error


async def open_session(settings: Settings, email: str, password: str) -> SupabaseGateway:
    """Connect to the backend and sign in."""
    gateway = SupabaseGateway(settings)
    await gateway.connect()
    await gateway.sign_in(email, password)
    return gateway


def _build_synchronizer(
    gateway: SupabaseGateway, settings: Settings
) -> NotificationSynchronizer:
    dispatcher = LocalNotificationDispatcher(gateway, ConsoleDisplay())
    return NotificationSynchronizer(gateway, RealtimeBridge(gateway), dispatcher, settings)


@app.command()
def notifications(
    ctx: typer.Context,
    email: str = EMAIL_OPTION,
    password: str = PASSWORD_OPTION,
    unread_only: bool = typer.Option(False, "--unread-only", "-u", help="Only unread notifications"),
    team: str | None = typer.Option(None, "--team", "-t", help="Filter by team ID"),
    high_only: bool = typer.Option(False, "--high", help="Only high priority notifications"),
    limit: int = typer.Option(50, "--limit", "-n", help="Page size"),
):
    """List notifications with unread counters."""
    settings = _settings(ctx)
    filters = NotificationFilters(
        team_id=team,
        unread_only=unread_only,
        priority=NotificationPriority.HIGH if high_only else None,
    )

    async def run():
        gateway = await open_session(settings, email, password)
        sync = _build_synchronizer(gateway, settings)
        result = await sync.fetch(filters, limit=limit)
        if result is None:
            raise AppError(sync.error or "Failed to fetch notifications")
        return sync

    try:
        sync = asyncio.run(run())
    except AppError as e:
        _fail("Error fetching notifications", e)

    for item in sync.notifications:
        marker = " " if item.is_read else "*"
        typer.echo(
            f"{marker} {item.created_at:%Y-%m-%d %H:%M} [{item.priority.value}] "
            f"{item.title} - {item.message}"
        )
    typer.echo(
        f"Unread: {sync.unread_count} (high priority: {sync.high_priority_unread_count})"
    )


@app.command("mark-read")
def mark_read(
    ctx: typer.Context,
    notification_id: str | None = typer.Argument(None, help="Notification ID"),
    all_: bool = typer.Option(False, "--all", help="Mark every notification as read"),
    team: str | None = typer.Option(None, "--team", "-t", help="Limit --all to a team"),
    email: str = EMAIL_OPTION,
    password: str = PASSWORD_OPTION,
):
    """Mark one or all notifications as read."""
    if not notification_id and not all_:
        typer.echo("Provide a notification ID or --all", err=True)
        raise typer.Exit(code=1)
    settings = _settings(ctx)

    async def run():
        gateway = await open_session(settings, email, password)
        sync = _build_synchronizer(gateway, settings)
        await sync.fetch()
        if all_:
            await sync.mark_all_as_read(team)
        else:
            await sync.mark_as_read(notification_id)
        return sync.unread_count

    try:
        unread = asyncio.run(run())
    except AppError as e:
        _fail("Error marking notifications as read", e)
    typer.echo(f"Done. Unread: {unread}")


@app.command()
def watch(
    ctx: typer.Context,
    email: str = EMAIL_OPTION,
    password: str = PASSWORD_OPTION,
    duration: float | None = typer.Option(
        None, "--duration", "-d", help="Stop after this many seconds"
    ),
):
    """Stream new notifications to the terminal."""
    settings = _settings(ctx)

    async def run():
        gateway = await open_session(settings, email, password)
        sync = _build_synchronizer(gateway, settings)
        sync.on_connection_change(lambda state: typer.echo(f"[{state.value}]", err=True))
        await sync.start()
        typer.echo(f"Watching notifications ({sync.unread_count} unread). Ctrl+C to stop.")
        try:
            if duration is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(duration)
        finally:
            await sync.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        typer.echo("Stopped.")
    except AppError as e:
        _fail("Error watching notifications", e)


@app.command()
def upload(
    ctx: typer.Context,
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Receipt image"),
    email: str = EMAIL_OPTION,
    password: str = PASSWORD_OPTION,
    team: str | None = typer.Option(None, "--team", "-t", help="Team ID"),
    wait: bool = typer.Option(False, "--wait", "-w", help="Wait for server processing"),
    extract: bool = typer.Option(
        False, "--extract", help="Extract data locally with the vision model"
    ),
):
    """Upload a receipt image."""
    settings = _settings(ctx)
    image = path.read_bytes()
    content_type = mimetypes.guess_type(path.name)[0] or "image/jpeg"

    extractor = None
    if extract:
        if not settings.anthropic_api_key:
            typer.echo("Error: ANTHROPIC_API_KEY is required for --extract", err=True)
            raise typer.Exit(code=1)
        extractor = VisionExtractor(
            api_key=settings.anthropic_api_key, model=settings.vision_model
        )

    async def run():
        gateway = await open_session(settings, email, password)
        subscription = SubscriptionContainer(gateway)
        await subscription.load()
        receipts = ReceiptsContainer(gateway, settings, extractor, subscription)
        receipt = await receipts.upload_receipt(image, path.name, content_type, team)
        typer.echo(f"Uploaded receipt {receipt.id}")
        if extractor is not None:
            receipt = await receipts.extract_and_apply(receipt.id, image, content_type)
        elif wait:
            receipt = await receipts.wait_for_processing(receipt.id)
        return receipt

    try:
        receipt = asyncio.run(run())
    except AppError as e:
        _fail("Upload failed", e)

    typer.echo(
        f"{receipt.merchant_name}, {receipt.transaction_date}, "
        f"{format_amount(receipt.total_amount, receipt.currency)} "
        f"[{receipt.processing_status.value}]"
    )


@app.command("upload-batch")
def upload_batch(
    ctx: typer.Context,
    paths: list[Path] = typer.Argument(..., exists=True, dir_okay=False, help="Receipt images"),
    email: str = EMAIL_OPTION,
    password: str = PASSWORD_OPTION,
    team: str | None = typer.Option(None, "--team", "-t", help="Team ID"),
    concurrency: int = typer.Option(
        DEFAULT_BATCH_CONCURRENCY, "--concurrency", "-c", min=1, help="Uploads in flight at once"
    ),
):
    """Upload several receipt images as one batch."""
    settings = _settings(ctx)
    batch = [
        BatchUploadItem(path.read_bytes(), path.name, mimetypes.guess_type(path.name)[0])
        for path in paths
    ]

    async def run():
        gateway = await open_session(settings, email, password)
        subscription = SubscriptionContainer(gateway)
        await subscription.load()
        receipts = ReceiptsContainer(gateway, settings, subscription=subscription)
        return await receipts.upload_batch(batch, team_id=team, max_concurrency=concurrency)

    try:
        results = asyncio.run(run())
    except AppError as e:
        _fail("Batch upload failed", e)

    failed = 0
    for result in results:
        if result.ok:
            typer.echo(f"{result.filename}: uploaded {result.receipt.id}")
        else:
            failed += 1
            typer.echo(f"{result.filename}: {result.error}", err=True)
    typer.echo(f"Uploaded {len(results) - failed} of {len(results)}")
    if failed:
        raise typer.Exit(code=1)


@app.command()
def rates(
    ctx: typer.Context,
    base: str = typer.Argument("MYR", help="Base currency"),
    offline: bool = typer.Option(False, "--offline", help="Use cached rates only"),
    symbols: list[str] | None = typer.Option(None, "--symbol", "-s", help="Currencies to show"),
):
    """Show exchange rates, refreshing the 24 hour cache when online."""
    settings = _settings(ctx)
    service = ExchangeRateService(LocalStore(settings.store_path), settings)
    try:
        entry = asyncio.run(service.get_rates(base.upper(), online=not offline))
    except AppError as e:
        _fail("Error fetching exchange rates", e)

    stale = " (stale)" if entry.is_stale() else ""
    typer.echo(f"Rates for {entry.base} fetched {entry.fetched_at:%Y-%m-%d %H:%M} UTC{stale}")
    wanted = [s.upper() for s in symbols] if symbols else sorted(entry.rates)
    for code in wanted:
        if code in entry.rates:
            typer.echo(f"{code}: {entry.rates[code]:.4f}")
        else:
            typer.echo(f"{code}: n/a", err=True)


@app.command()
def categories(
    ctx: typer.Context,
    email: str = EMAIL_OPTION,
    password: str = PASSWORD_OPTION,
    ensure_defaults: bool = typer.Option(
        False, "--ensure-defaults", help="Create the default categories if none exist"
    ),
):
    """List custom categories with receipt counts."""
    settings = _settings(ctx)

    async def run():
        gateway = await open_session(settings, email, password)
        container = CategoriesContainer(gateway)
        if ensure_defaults:
            await container.ensure_defaults()
        else:
            await container.load()
        if container.error:
            raise AppError(container.error)
        return container.data

    try:
        items = asyncio.run(run())
    except AppError as e:
        _fail("Error loading categories", e)

    if not items:
        typer.echo("No categories found.")
        return
    for category in items:
        typer.echo(f"{category.name} ({category.color}, {category.icon}): {category.receipt_count}")


def main():
    app()


if __name__ == "__main__":
    main()
