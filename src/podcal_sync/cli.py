"""Command-line interface for running and inspecting calendar sync."""

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
import structlog

from . import __version__
from .config import create_example_config, load_settings
from .errors import SyncError
from .models import Provider, SyncResults
from .scheduler import CalendarSyncJob, SyncRuntime
from .services.base import CalendarServiceError
from .store import UserContext
from .sync_engine import SyncEngine
from .triggers import AppearanceCalendarSync

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False) -> None:
    """Set up structured logging."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format="%(message)s")
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


def _require_valid_config(settings) -> None:
    missing_fields = settings.validate_required_settings()
    if missing_fields:
        console.print(Panel(
            "[red]Missing required configuration fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields) +
            "\n\nSet these environment variables or create a configuration file.\n" +
            "Use [bold]podcal-sync config create[/bold] to create an example file.",
            title="Configuration Error"
        ))
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """podcal-sync - calendar sync for podcast guest appearances.

    Keeps recording, air and promotion dates in step with Google Calendar
    and Outlook.
    """
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings
        setup_logging(settings.log_level, settings.debug)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--host', default='0.0.0.0', help='Bind host for HTTP server')
@click.option('--port', default=8080, type=int, help='Bind port for HTTP server')
def serve(host, port):
    """Run HTTP server with the background sync loop."""
    try:
        import uvicorn
        uvicorn.run("podcal_sync.server:app", host=host, port=port, reload=False)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create database tables."""
    engine = SyncEngine(ctx.obj['settings'])
    engine.initialize()
    console.print(f"[green]Database ready at {ctx.obj['settings'].database_url}[/green]")


@cli.command()
@click.option('--user', '-u', 'user_id', required=True, type=int, help='User ID to sync')
@click.option('--provider', '-p', type=click.Choice([p.value for p in Provider]),
              help='Provider to sync (defaults to the active connection)')
@async_command
async def sync(ctx, user_id, provider):
    """Run a full sync for one user."""
    settings = ctx.obj['settings']
    _require_valid_config(settings)

    user = UserContext(user_id=user_id)
    try:
        async with SyncEngine(settings) as engine:
            if provider:
                target = Provider(provider)
            else:
                conn = engine.connections.active_connection(user)
                if conn is None:
                    console.print(f"[yellow]User {user_id} has no active calendar connection[/yellow]")
                    sys.exit(1)
                target = conn.provider_enum

            console.print(f"🚀 Syncing user {user_id} with {target.label}...")
            results = await engine.sync_user(user, target)

        _display_sync_results(results)

    except (SyncError, CalendarServiceError) as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Sync cancelled by user[/yellow]")
        sys.exit(1)


@cli.command('sync-all')
@click.option('--loop', is_flag=True, help='Keep running on the configured interval')
@click.option('--interval', '-i', type=int, help='Sync interval in minutes (overrides config)')
@click.option('--max-runs', type=int, help='Maximum number of sync runs (default: infinite)')
@async_command
async def sync_all(ctx, loop, interval, max_runs):
    """Sync every connection that is due, as the background job does."""
    settings = ctx.obj['settings']
    _require_valid_config(settings)

    if interval:
        settings.sync_config.sync_interval_minutes = interval

    async with SyncEngine(settings) as engine:
        runtime = SyncRuntime(CalendarSyncJob(engine))
        runs = 0
        try:
            while True:
                console.print(f"[blue]--- Sync run {runs + 1} at {datetime.now():%Y-%m-%d %H:%M:%S} ---[/blue]")
                summary = await runtime.run_once()
                console.print(
                    f"Connections: {summary['users']}  ok: [green]{summary['succeeded']}[/green]  "
                    f"failed: [red]{summary['failed']}[/red]  cleaned up: {summary['cleaned_up']}"
                )
                runs += 1
                if not loop or (max_runs and runs >= max_runs):
                    break
                console.print(f"[dim]Next sync in {settings.sync_config.sync_interval_minutes} minutes...[/dim]")
                await asyncio.sleep(settings.sync_config.sync_interval_minutes * 60)
        except KeyboardInterrupt:
            console.print("\n[yellow]Stopped by user[/yellow]")


@cli.command()
@click.option('--user', '-u', 'user_id', required=True, type=int, help='User ID to inspect')
@click.pass_context
def status(ctx, user_id):
    """Show calendar connections for a user."""
    engine = SyncEngine(ctx.obj['settings'])
    engine.initialize()
    user = UserContext(user_id=user_id)

    table = Table(title=f"Calendar connections for user {user_id}")
    table.add_column("Provider", style="cyan")
    table.add_column("Enabled")
    table.add_column("Account")
    table.add_column("Calendar")
    table.add_column("Sync")
    table.add_column("Direction")
    table.add_column("Last sync")
    table.add_column("Error", style="red")

    for provider in Provider:
        conn = engine.connections.get(user, provider)
        enabled = "✓" if engine.registry.is_enabled(provider) else "✗"
        if conn is None:
            table.add_row(provider.label, enabled, "[dim]not connected[/dim]", "", "", "", "", "")
            continue
        table.add_row(
            provider.label,
            enabled,
            conn.provider_email or "",
            conn.calendar_name or conn.calendar_id or "[yellow]none selected[/yellow]",
            "on" if conn.sync_enabled else "off",
            conn.sync_direction,
            f"{conn.last_sync_at:%Y-%m-%d %H:%M}" if conn.last_sync_at else "never",
            conn.sync_error or "",
        )
    console.print(table)


@cli.command()
@click.option('--user', '-u', 'user_id', required=True, type=int, help='User ID to backfill')
@async_command
async def backfill(ctx, user_id):
    """Create missing events for existing appearance dates."""
    async with SyncEngine(ctx.obj['settings']) as engine:
        created = await AppearanceCalendarSync(engine).migrate_existing_dates(UserContext(user_id=user_id))
    console.print(f"[green]Created {created} calendar events[/green]")


@cli.command()
@click.option('--stats', is_flag=True, help='Only show what would be removed')
@click.pass_context
def cleanup(ctx, stats):
    """Remove old finished calendar events."""
    engine = SyncEngine(ctx.obj['settings'])
    engine.initialize()

    if stats:
        info = engine.get_cleanup_stats()
        if not info.enabled:
            console.print("[yellow]Cleanup is disabled[/yellow]")
            return
        console.print(Panel(
            f"Threshold: {info.days_old} days (before {info.cutoff:%Y-%m-%d})\n"
            f"Eligible events: {info.eligible}",
            title="Cleanup"
        ))
        return

    deleted = engine.cleanup_old_events()
    console.print(f"[green]Removed {deleted} old calendar events[/green]")


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command('create')
@click.option('--path', '-p', type=click.Path(), default='.env',
              help='Path to create config file')
@click.option('--force', '-f', is_flag=True,
              help='Overwrite existing file')
def create_config(path, force):
    """Create an example configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        if not Confirm.ask(f"File {path} already exists. Overwrite?"):
            console.print("[yellow]Configuration creation cancelled[/yellow]")
            return

    try:
        create_example_config(config_path)
        console.print(f"[green]Configuration file created at {path}[/green]")
        console.print("Please edit the file with your actual credentials.")
    except OSError as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")


@config.command('validate')
@click.pass_context
def validate_config(ctx):
    """Validate the current configuration."""
    settings = ctx.obj['settings']
    missing_fields = settings.validate_required_settings()

    if missing_fields:
        console.print(Panel(
            "[red]Missing required fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields),
            title="Configuration Validation",
            border_style="red"
        ))
        sys.exit(1)

    enabled = [p.label for p in Provider if settings.provider_configured(p)]
    console.print(Panel(
        "[green]✓ All required configuration fields are present[/green]\n"
        f"Providers: {', '.join(enabled)}",
        title="Configuration Validation",
        border_style="green"
    ))


def _display_sync_results(results: SyncResults) -> None:
    table = Table(title="Sync Results")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right")
    table.add_row("Pushed", str(results.pushed))
    table.add_row("Pulled", str(results.pulled))
    table.add_row("Updated", str(results.updated))
    table.add_row("Deleted", str(results.deleted))
    table.add_row("Errors", f"[red]{len(results.errors)}[/red]" if results.errors else "0")
    console.print(table)

    if results.errors:
        console.print(Panel(
            "\n".join(f"• {error}" for error in results.errors),
            title="[red]Errors[/red]",
            border_style="red"
        ))


if __name__ == '__main__':
    cli()
