"""Command-line interface with Rich formatting."""

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import click
from dateutil import parser as date_parser
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
from rich.table import Table
import structlog

from .config import Settings, load_settings, create_example_config
from .database import CacheStore
from .locking import TenantLockManager
from .models import (
    CachedCalendar, CachedContact, CachedEvent, CachedFolder, GrantRegistration, SyncResult, ensure_utc
)
from .queries import CacheQueries
from .services import NylasProviderClient
from .sync_engine import SyncEngine
from .tenants import TenantResolver

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False) -> None:
    """Set up structured logging."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=getattr(logging, level, logging.INFO))
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


def _require_provider_settings(settings: Settings) -> None:
    missing_fields = settings.validate_required_settings()
    if missing_fields:
        console.print(Panel(
            "[red]Missing required configuration fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields) +
            "\n\nPlease set these environment variables or create a configuration file.\n" +
            "Use [bold]tenantsync config create[/bold] to create an example file.",
            title="Configuration Error"
        ))
        sys.exit(1)


def _build_engine(settings: Settings) -> SyncEngine:
    settings.ensure_directories()
    store = CacheStore(settings)
    return SyncEngine(store, NylasProviderClient(settings), settings, TenantLockManager())


def _queries(settings: Settings) -> CacheQueries:
    settings.ensure_directories()
    store = CacheStore(settings)
    store.init_db()
    return CacheQueries(store)


def _parse_when(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return ensure_utc(date_parser.isoparse(value))
    except ValueError:
        raise click.BadParameter(f"Not an ISO date: {value}")


def _fail(settings: Settings, action: str, error: Exception) -> None:
    console.print(f"[red]{action} failed: {error}[/red]")
    if settings.debug:
        console.print_exception()
    sys.exit(1)


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """TenantSync - provider-to-cache synchronization for calendars and mail folders."""
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
    """Run the HTTP server."""
    try:
        import uvicorn
        uvicorn.run("tenantsync.server:app", host=host, port=port, reload=False)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create the cache tables."""
    settings = ctx.obj['settings']
    settings.ensure_directories()
    store = CacheStore(settings)
    try:
        store.init_db()
        console.print(f"[green]✓ Cache initialized at {settings.database_url}[/green]")
    finally:
        store.close()


@cli.command()
@click.argument('tenant')
@click.option('--grant-id', required=True, help='Provider grant id issued by the OAuth flow')
@click.option('--email', help='Account email for the grant')
@click.option('--provider', default='nylas', show_default=True, help='Provider name')
@click.option('--primary/--secondary', default=True, help='Use this grant for syncs by default')
@click.pass_context
def connect(ctx, tenant, grant_id, email, provider, primary):
    """Register a provider grant for TENANT."""
    settings = ctx.obj['settings']
    settings.ensure_directories()
    store = CacheStore(settings)
    store.init_db()
    try:
        with store.get_session() as session:
            grant = TenantResolver(store).register_grant(
                session, tenant,
                GrantRegistration(grant_id=grant_id, email=email, provider=provider, is_primary=primary)
            )
            console.print(f"[green]✓ Tenant {tenant} connected with grant {grant.grant_id}[/green]")
    except Exception as e:
        _fail(settings, "Connect", e)
    finally:
        store.close()


@cli.command()
@click.argument('tenant')
@click.argument('grant_id')
@click.pass_context
def disconnect(ctx, tenant, grant_id):
    """Deactivate GRANT_ID for TENANT so syncs stop using it."""
    settings = ctx.obj['settings']
    store = CacheStore(settings)
    try:
        with store.get_session() as session:
            if TenantResolver(store).deactivate_grant(session, tenant, grant_id):
                console.print(f"[green]✓ Grant {grant_id} deactivated for tenant {tenant}[/green]")
            else:
                console.print(f"[yellow]No grant {grant_id} registered for tenant {tenant}[/yellow]")
    except Exception as e:
        _fail(settings, "Disconnect", e)
    finally:
        store.close()


# -- sync ----------------------------------------------------------------

@cli.group()
def sync():
    """Pull provider state into the cache."""
    pass


@sync.command('calendars')
@click.argument('tenant')
@click.option('--account', help='Grant id or email to sync from')
@async_command
async def sync_calendars(ctx, tenant, account):
    """Reconcile TENANT's calendar list."""
    settings = ctx.obj['settings']
    _require_provider_settings(settings)

    try:
        async with _build_engine(settings) as engine:
            with _spinner("Syncing calendars..."):
                result = await engine.sync_calendars(tenant, account=account)
        _display_counts("Calendar Sync", result)
        _display_calendars(result.calendars)
    except Exception as e:
        _fail(settings, "Calendar sync", e)


@sync.command('events')
@click.argument('tenant')
@click.argument('calendar')
@click.option('--start', help='Window start (ISO date or datetime)')
@click.option('--end', help='Window end (ISO date or datetime)')
@click.option('--account', help='Grant id or email to sync from')
@async_command
async def sync_events(ctx, tenant, calendar, start, end, account):
    """Reconcile CALENDAR's events for TENANT within a time window."""
    settings = ctx.obj['settings']
    _require_provider_settings(settings)
    start_date, end_date = _parse_when(start), _parse_when(end)

    try:
        async with _build_engine(settings) as engine:
            with _spinner("Syncing events..."):
                result = await engine.sync_calendar_events(
                    tenant, calendar, start_date=start_date, end_date=end_date, account=account
                )
        _display_counts("Event Sync", result)
        if result.truncated:
            console.print("[yellow]⚠️  More events were available than were fetched; "
                          "enable SYNC_CONFIG__FOLLOW_PAGINATION to fetch every page[/yellow]")
        _display_events(result.events)
    except Exception as e:
        _fail(settings, "Event sync", e)


@sync.command('initial')
@click.argument('tenant')
@click.option('--account', help='Grant id or email to sync from')
@async_command
async def sync_initial(ctx, tenant, account):
    """Sync TENANT's calendars and then every calendar's events."""
    settings = ctx.obj['settings']
    _require_provider_settings(settings)

    try:
        async with _build_engine(settings) as engine:
            with _spinner("Running initial calendar sync..."):
                result = await engine.initial_calendar_sync(tenant, account=account)
        _display_counts("Calendar Sync", result.calendars)
        console.print(f"[green]✓ {len(result.calendars.calendars)} calendars, "
                      f"{result.total_events} events cached[/green]")
    except Exception as e:
        _fail(settings, "Initial sync", e)


@sync.command('folders')
@click.argument('tenant')
@click.option('--account', help='Grant id or email to sync from')
@click.option('--initial', is_flag=True, help='Record the run in the sync state and activity log')
@async_command
async def sync_folders(ctx, tenant, account, initial):
    """Reconcile TENANT's mail folders."""
    settings = ctx.obj['settings']
    _require_provider_settings(settings)

    try:
        async with _build_engine(settings) as engine:
            with _spinner("Syncing folders..."):
                if initial:
                    result = await engine.initial_folder_sync(tenant, account=account)
                else:
                    result = await engine.sync_folders(tenant, account=account)
        _display_counts("Folder Sync", result)
        _display_folders(result.folders)
    except Exception as e:
        _fail(settings, "Folder sync", e)


@sync.command('contacts')
@click.argument('tenant')
@click.option('--account', help='Grant id or email to sync from')
@click.option('--initial', is_flag=True, help='Record the run in the sync state and activity log')
@async_command
async def sync_contacts(ctx, tenant, account, initial):
    """Reconcile TENANT's address book."""
    settings = ctx.obj['settings']
    _require_provider_settings(settings)

    try:
        async with _build_engine(settings) as engine:
            with _spinner("Syncing contacts..."):
                if initial:
                    result = await engine.initial_contact_sync(tenant, account=account)
                else:
                    result = await engine.sync_contacts(tenant, account=account)
        _display_counts("Contact Sync", result)
        _display_contacts(result.contacts)
    except Exception as e:
        _fail(settings, "Contact sync", e)


# -- cached reads --------------------------------------------------------

@cli.command()
@click.argument('tenant')
@click.pass_context
def calendars(ctx, tenant):
    """List TENANT's cached calendars."""
    settings = ctx.obj['settings']
    try:
        _display_calendars(_queries(settings).get_cached_calendars(tenant))
    except Exception as e:
        _fail(settings, "Listing calendars", e)


@cli.command()
@click.argument('tenant')
@click.option('--calendar', help='Local or provider calendar id')
@click.option('--start', help='Only events starting at or after this instant')
@click.option('--end', help='Only events ending at or before this instant')
@click.option('--limit', type=int, help='Maximum events to show')
@click.pass_context
def events(ctx, tenant, calendar, start, end, limit):
    """List TENANT's cached events."""
    settings = ctx.obj['settings']
    try:
        cached = _queries(settings).get_cached_events(
            tenant, calendar_id=calendar, start_date=_parse_when(start),
            end_date=_parse_when(end), limit=limit
        )
        _display_events(cached)
    except click.BadParameter:
        raise
    except Exception as e:
        _fail(settings, "Listing events", e)


@cli.command()
@click.argument('tenant')
@click.option('--days', type=int, help='Look-ahead in days')
@click.option('--limit', type=int, help='Maximum events to show')
@click.pass_context
def upcoming(ctx, tenant, days, limit):
    """List TENANT's upcoming cached events."""
    settings = ctx.obj['settings']
    try:
        _display_events(_queries(settings).get_upcoming_events(tenant, days=days, limit=limit))
    except Exception as e:
        _fail(settings, "Listing upcoming events", e)


@cli.command()
@click.argument('tenant')
@click.pass_context
def folders(ctx, tenant):
    """List TENANT's cached mail folders."""
    settings = ctx.obj['settings']
    try:
        _display_folders(_queries(settings).get_cached_folders(tenant))
    except Exception as e:
        _fail(settings, "Listing folders", e)


@cli.command()
@click.argument('tenant')
@click.option('--search', help='Match display name, email or company')
@click.option('--limit', type=int, help='Maximum contacts to show')
@click.pass_context
def contacts(ctx, tenant, search, limit):
    """List TENANT's cached contacts."""
    settings = ctx.obj['settings']
    try:
        page = _queries(settings).get_cached_contacts(tenant, search=search, limit=limit)
    except Exception as e:
        _fail(settings, "Listing contacts", e)
        return
    _display_contacts(page.contacts)
    if page.total > len(page.contacts):
        console.print(f"[dim]Showing {len(page.contacts)} of {page.total} contacts[/dim]")


@cli.command()
@click.argument('tenant')
@click.pass_context
def status(ctx, tenant):
    """Show TENANT's last sync times and recent activity."""
    settings = ctx.obj['settings']
    try:
        sync_status = _queries(settings).get_sync_status(tenant)
    except Exception as e:
        _fail(settings, "Status", e)
        return

    def stamp(value):
        return value.strftime('%Y-%m-%d %H:%M:%S') if value else 'never'

    console.print(Panel(
        f"Calendars synced: {stamp(sync_status['calendars_synced_at'])}\n"
        f"Folders synced: {stamp(sync_status['folders_synced_at'])}\n"
        f"Contacts synced: {stamp(sync_status['contacts_synced_at'])}",
        title=f"Tenant {sync_status['tenant_id']}"
    ))

    if sync_status['recent_activity']:
        table = Table(show_header=True, header_style="bold magenta", title="Recent Activity")
        table.add_column("When")
        table.add_column("Action", style="cyan")
        table.add_column("Status", justify="center")
        table.add_column("Duration", justify="right")
        table.add_column("Error", style="red")
        for entry in sync_status['recent_activity']:
            ok = entry['status'] == 'success'
            table.add_row(
                stamp(entry['created_at']),
                entry['action'],
                "[green]✓[/green]" if ok else "[red]✗[/red]",
                f"{entry['duration_ms']} ms" if entry['duration_ms'] is not None else "",
                entry['error'] or ""
            )
        console.print(table)


# -- configuration -------------------------------------------------------

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
    except Exception as e:
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
    else:
        console.print(Panel(
            "[green]✓ All required configuration fields are present[/green]",
            title="Configuration Validation",
            border_style="green"
        ))


# -- rendering -----------------------------------------------------------

def _spinner(description: str) -> Progress:
    progress = Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True
    )
    progress.add_task(description, total=None)
    return progress


def _display_counts(title: str, result: SyncResult) -> None:
    table = Table(show_header=True, header_style="bold magenta", title=title)
    table.add_column("Added", justify="center")
    table.add_column("Updated", justify="center")
    table.add_column("Removed", justify="center")
    table.add_column("Skipped", justify="center")
    table.add_row(str(result.added), str(result.updated), str(result.removed), str(result.skipped))
    console.print(table)


def _display_calendars(items: List[CachedCalendar]) -> None:
    if not items:
        console.print("[yellow]No cached calendars[/yellow]")
        return
    table = Table(show_header=True, header_style="bold blue", title="Calendars")
    table.add_column("Name", style="cyan")
    table.add_column("ID", style="dim")
    table.add_column("Provider ID", style="dim")
    table.add_column("Primary", justify="center")
    table.add_column("Access", justify="center")
    for calendar in items:
        table.add_row(
            calendar.name,
            calendar.id,
            calendar.provider_id,
            "✓" if calendar.is_primary else "",
            "read-only" if calendar.is_read_only else "read-write"
        )
    console.print(table)


def _display_events(items: List[CachedEvent]) -> None:
    if not items:
        console.print("[yellow]No cached events[/yellow]")
        return
    table = Table(show_header=True, header_style="bold green", title="Events")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Title", style="cyan")
    table.add_column("Location")
    table.add_column("ID", style="dim")
    for event in items:
        fmt = '%Y-%m-%d' if event.all_day else '%Y-%m-%d %H:%M'
        table.add_row(
            event.start_time.strftime(fmt),
            event.end_time.strftime(fmt),
            event.title,
            event.location or "",
            event.id
        )
    console.print(table)


def _display_folders(items: List[CachedFolder]) -> None:
    if not items:
        console.print("[yellow]No cached folders[/yellow]")
        return
    table = Table(show_header=True, header_style="bold magenta", title="Folders")
    table.add_column("Path", style="cyan")
    table.add_column("Type")
    table.add_column("Total", justify="right")
    table.add_column("Unread", justify="right")
    table.add_column("ID", style="dim")
    for folder in items:
        table.add_row(
            folder.path,
            folder.folder_type.value,
            str(folder.total_count),
            str(folder.unread_count),
            folder.id
        )
    console.print(table)


def _display_contacts(items: List[CachedContact]) -> None:
    if not items:
        console.print("[yellow]No cached contacts[/yellow]")
        return
    table = Table(show_header=True, header_style="bold magenta", title="Contacts")
    table.add_column("Name", style="cyan")
    table.add_column("Email")
    table.add_column("Company")
    table.add_column("ID", style="dim")
    for contact in items:
        table.add_row(contact.display_name, contact.email or "", contact.company_name or "", contact.id)
    console.print(table)


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
