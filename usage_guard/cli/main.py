"""
CLI interface for usage-guard.

Provides command-line access to refresh, inspect and watch Copilot
premium request usage.
"""

import asyncio
import sys
from dataclasses import replace
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from usage_guard.config.loader import AppConfig, load_config
from usage_guard.config.logger import setup_logging
from usage_guard.core.plans import DEFAULT_PRICE_PER_PREMIUM_REQUEST, PLAN_CATALOG
from usage_guard.core.scheduler import RefreshEvent, RefreshEventKind, RefreshScheduler
from usage_guard.core.usage import Health, ViewState
from usage_guard.sdk.credentials import EnvCredentialProvider, StaticCredentialProvider
from usage_guard.sdk.errors import FetchTimeoutError, UsageSourceError
from usage_guard.sdk.github_client import GitHubBillingClient
from usage_guard.sdk.notifications import ConsoleNotificationSink
from usage_guard.storage.db import DEFAULT_DB_PATH
from usage_guard.storage.repository import UsageStateRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

TOKEN_TEST_TIMEOUT_SECONDS = 10.0

_HEALTH_STYLES = {
    Health.OK: "green",
    Health.WARNING: "yellow",
    Health.DANGER: "red",
    Health.STALE: "dim",
    Health.ERROR: "red",
}

ConfigOption = typer.Option(None, "--config", "-c", help="Path to YAML configuration file")
DbOption = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to state database")
TokenOption = typer.Option(None, "--token", "-t", help="GitHub token (defaults to GITHUB_TOKEN / GH_TOKEN)")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """usage-guard CLI."""
    setup_logging("DEBUG" if verbose else None)
    if ctx.invoked_subcommand is None:
        console.print("usage-guard - Use --help to see available commands")


@app.command()
def init(db: str = DbOption):
    """Initialize the state database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(db: str = DbOption):
    """Show the last known usage without contacting GitHub."""
    view = UsageStateRepository(db).load_view_state()
    if view is None:
        console.print("[yellow]No usage recorded yet.[/] Run `usage-guard refresh` first.")
        sys.exit(EXIT_CODE_PASS)
    _display_view_state(replace(view, health=Health.STALE))
    sys.exit(EXIT_CODE_PASS)


@app.command()
def refresh(
    config: Optional[str] = ConfigOption,
    db: str = DbOption,
    token: Optional[str] = TokenOption,
):
    """Fetch current usage once, evaluate thresholds and show the result."""
    try:
        app_config = _load_app_config(config)
        scheduler = asyncio.run(_refresh_once(app_config, db, token))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if scheduler.status_message and scheduler.view_state is None:
        console.print(f"[yellow]{scheduler.status_message}[/]")
    if scheduler.view_state is not None:
        _display_view_state(scheduler.view_state)
    if scheduler.last_error:
        console.print(f"[red]Refresh failed:[/] {scheduler.last_error}")
        sys.exit(EXIT_CODE_FAIL)
    if scheduler.view_state is None:
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def watch(
    config: Optional[str] = ConfigOption,
    db: str = DbOption,
    token: Optional[str] = TokenOption,
):
    """Refresh on the configured interval until interrupted."""
    try:
        app_config = _load_app_config(config)
        asyncio.run(_watch(app_config, db, token))
    except KeyboardInterrupt:
        console.print("\nStopped.")
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def plans():
    """List the built-in Copilot plans."""
    table = Table(title="Copilot plans")
    table.add_column("Plan")
    table.add_column("Id")
    table.add_column("Included premium requests", justify="right")
    for plan in PLAN_CATALOG.list_plans():
        table.add_row(plan.name, plan.id, f"{plan.included_premium_requests:,}")
    console.print(table)
    console.print(f"Default price per premium request: ${DEFAULT_PRICE_PER_PREMIUM_REQUEST:.2f}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def whoami(
    config: Optional[str] = ConfigOption,
    token: Optional[str] = TokenOption,
):
    """Test the configured token by resolving the authenticated login."""
    try:
        app_config = _load_app_config(config)
        login = asyncio.run(_fetch_login(app_config, token))
    except UsageSourceError as e:
        console.print(f"[red]Token test failed:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Authenticated as {login}")
    sys.exit(EXIT_CODE_PASS)


def _load_app_config(path: Optional[str]) -> AppConfig:
    if path is None:
        return AppConfig()
    return load_config(path)


def _make_client(app_config: AppConfig, timeout: Optional[float] = None) -> GitHubBillingClient:
    return GitHubBillingClient(
        base_url=app_config.github.base_url,
        timeout=timeout or app_config.github.timeout_seconds,
    )


def _make_credentials(token: Optional[str]):
    if token:
        return StaticCredentialProvider(token)
    return EnvCredentialProvider()


def _make_scheduler(app_config: AppConfig, db_path: str, token: Optional[str], client) -> RefreshScheduler:
    initialize_schema(db_path)
    return RefreshScheduler(
        client,
        _make_credentials(token),
        UsageStateRepository(db_path),
        ConsoleNotificationSink(console=console),
        app_config.preferences,
        product=app_config.github.product,
        fetch_timeout_seconds=app_config.github.timeout_seconds,
    )


async def _refresh_once(app_config: AppConfig, db_path: str, token: Optional[str]) -> RefreshScheduler:
    client = _make_client(app_config)
    try:
        scheduler = _make_scheduler(app_config, db_path, token, client)
        await scheduler.refresh_on_startup()
        return scheduler
    finally:
        await client.close()


async def _watch(app_config: AppConfig, db_path: str, token: Optional[str]) -> None:
    client = _make_client(app_config)
    scheduler = _make_scheduler(app_config, db_path, token, client)
    scheduler.subscribe(_print_event)
    try:
        await scheduler.start()
        while True:
            await asyncio.sleep(3600)
    finally:
        scheduler.stop()
        await client.close()


async def _fetch_login(app_config: AppConfig, token: Optional[str]) -> str:
    credential = _make_credentials(token).read()
    if not credential:
        raise UsageSourceError("No GitHub token configured.")
    client = _make_client(app_config, timeout=TOKEN_TEST_TIMEOUT_SECONDS)
    try:
        return await asyncio.wait_for(client.fetch_login(credential), timeout=TOKEN_TEST_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        raise FetchTimeoutError(TOKEN_TEST_TIMEOUT_SECONDS)
    finally:
        await client.close()


def _print_event(event: RefreshEvent) -> None:
    if event.kind is RefreshEventKind.STARTED:
        return
    if event.kind is RefreshEventKind.CREDENTIAL_MISSING:
        console.print(f"[yellow]{event.status_message}[/]")
        return
    if event.view_state is not None:
        _display_view_state(event.view_state)
    if event.error_message:
        console.print(f"[red]{event.error_message}[/]")


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


def _display_view_state(view: ViewState) -> None:
    """Display a view state as a two-column table."""
    style = _HEALTH_STYLES[view.health]
    table = Table(title=f"Copilot premium usage - {view.period.label}", show_header=False)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    table.add_row("Spend", f"{_format_currency(view.spend_usd)} / {_format_currency(view.budget_usd)}")
    table.add_row("Budget used", f"{view.budget_percent:.1f}%")
    table.add_row("Included", f"{view.included_used:,} / {view.included_total:,} requests")
    table.add_row("Included used", f"{view.included_percent:.1f}%")
    table.add_row("Phase", view.phase.value)
    table.add_row("Health", f"[{style}]{view.health.value}[/]")
    if view.last_refresh_at is not None:
        table.add_row("Last refresh", view.last_refresh_at.isoformat(timespec="seconds"))
    if view.last_error_message:
        table.add_row("Last error", f"[red]{view.last_error_message}[/]")
    console.print(table)


if __name__ == "__main__":
    app()
