"""Command-line interface for Shelf Sync."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from .bookmark import BookmarkData, BookmarkEntry
from .config import ConfigModel, ConflictPreference, SyncSettings, get_config, load_config, save_config
from .credential_manager import CredentialManager
from .exceptions import AuthError, GistSyncError
from .local_store import LocalStore
from .sync import (
    BackupService,
    GistClient,
    SyncAction,
    SyncEngine,
    SyncResult,
    SyncScheduler,
    SyncTrigger,
)
from .sync.sync_engine import describe_error
from .utils.datetime import to_iso_string


console = Console()
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool):
    """Route log records through rich; warnings only unless verbose."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def get_store(config: ConfigModel) -> LocalStore:
    """Get the local state store."""
    return LocalStore(config.get_state_path())


def create_client(config: ConfigModel) -> GistClient:
    """Create an unauthenticated Gist client from configuration."""
    return GistClient(
        base_url=config.api_base_url,
        timeout=config.request_timeout,
        max_retries=config.max_retries,
        retry_delay=config.retry_delay,
        rate_limit_buffer=config.rate_limit_buffer,
        max_rate_limit_wait=config.max_rate_limit_wait,
    )


def require_token(credentials: CredentialManager) -> str:
    token = credentials.get_token()
    if not token:
        console.print("[red]Not authenticated with GitHub. Run 'shelf auth login' first.[/red]")
        sys.exit(1)
    return token


def print_result(result: SyncResult):
    """Print a sync result and exit non-zero on failure."""
    message = result.status_message()
    if result.action == SyncAction.CONFLICT:
        console.print(f"[yellow]⚠️  {message}[/yellow]")
    elif result.success:
        console.print(f"[green]✅ {message}[/green]")
    else:
        console.print(f"[red]❌ {message}[/red]")

    if result.remote_doc_id:
        console.print(f"[dim]Gist: {result.remote_doc_id}[/dim]")
    if not result.success:
        sys.exit(1)


@click.group()
@click.option("--config", type=click.Path(dir_okay=False), help="Path to config file")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def main(ctx, config, verbose):
    """Shelf Sync - keep your bookmarks in sync through a GitHub Gist."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    if config:
        ctx.obj["config_path"] = Path(config)
        ctx.obj["config"] = load_config(Path(config))
    else:
        ctx.obj["config_path"] = None
        ctx.obj["config"] = get_config()


# Authentication

@main.group()
def auth():
    """Manage the GitHub token used for syncing."""
    pass


@auth.command("login")
@click.option("--token", help="GitHub personal access token with the 'gist' scope")
@click.pass_context
def auth_login(ctx, token: Optional[str]):
    """Validate and store a GitHub token."""
    if not token:
        token = Prompt.ask("GitHub token (needs the 'gist' scope)", password=True)
    token = (token or "").strip()
    if not token:
        console.print("[red]No token given.[/red]")
        sys.exit(1)

    config = ctx.obj["config"]
    try:
        user = asyncio.run(_fetch_user(config, token))
    except GistSyncError as e:
        console.print(f"[red]❌ Token validation failed: {describe_error(e)}[/red]")
        sys.exit(1)

    credentials = CredentialManager()
    if credentials.store_token(token):
        console.print("[green]Token stored in the system keyring.[/green]")
    else:
        console.print("[yellow]Keyring unavailable; export SHELF_GITHUB_TOKEN to keep the token.[/yellow]")
    console.print(f"[green]✅ Logged in as {user.get('login', 'unknown')}[/green]")


async def _fetch_user(config: ConfigModel, token: str):
    async with create_client(config) as client:
        client.authenticate(token)
        return await client.get_user()


@auth.command("logout")
def auth_logout():
    """Forget the stored GitHub token."""
    if CredentialManager().delete_token():
        console.print("[green]Logged out.[/green]")
    else:
        console.print("[yellow]No stored token found.[/yellow]")


@auth.command("status")
@click.pass_context
def auth_status(ctx):
    """Show whether a usable GitHub token is available."""
    credentials = CredentialManager()
    info = credentials.get_storage_info()
    token = credentials.get_token()

    table = Table(title="GitHub Authentication")
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    table.add_row("Keyring", info["keyring_backend"] or "[dim]unavailable[/dim]")
    table.add_row("Token", "✅ found" if token else "❌ missing")

    if token:
        try:
            user = asyncio.run(_fetch_user(ctx.obj["config"], token))
            table.add_row("User", user.get("login", "unknown"))
        except AuthError:
            table.add_row("User", "[red]token rejected[/red]")
        except GistSyncError as e:
            table.add_row("User", f"[yellow]unknown ({e})[/yellow]")

    console.print(table)


# Sync

@main.command()
@click.option("--trigger", type=click.Choice([t.value for t in SyncTrigger]), default=SyncTrigger.MANUAL.value,
              help="Reason recorded for this sync")
@click.option("--strategy", type=click.Choice([p.value for p in ConflictPreference]),
              help="Conflict resolution for this run (defaults to the configured preference)")
@click.pass_context
def sync(ctx, trigger: str, strategy: Optional[str]):
    """Sync local bookmarks with GitHub."""
    config = ctx.obj["config"]
    token = require_token(CredentialManager())
    preference = ConflictPreference(strategy) if strategy else config.sync.conflict_resolution
    result = asyncio.run(_run_sync(config, token, SyncTrigger(trigger), preference))
    print_result(result)


@main.command()
@click.argument("resolution", type=click.Choice(["local", "remote", "merge"]))
@click.pass_context
def resolve(ctx, resolution: str):
    """Sync and settle any conflict with RESOLUTION."""
    config = ctx.obj["config"]
    token = require_token(CredentialManager())
    result = asyncio.run(_run_sync(config, token, SyncTrigger.MANUAL, ConflictPreference(resolution)))
    print_result(result)


async def _run_sync(config: ConfigModel, token: str, trigger: SyncTrigger,
                    preference: ConflictPreference) -> SyncResult:
    store = get_store(config)
    settings = SyncSettings.from_dict(config.sync.to_dict())
    settings.conflict_resolution = preference

    async with create_client(config) as client:
        client.authenticate(token)
        engine = SyncEngine(client, store)
        backups = BackupService(client, engine.device_id)
        scheduler = SyncScheduler(engine, store, settings, backup_service=backups,
                                  debounce_seconds=config.debounce_seconds)
        result = await scheduler.trigger(trigger)

        if result.action == SyncAction.CONFLICT and result.conflict and preference == ConflictPreference.ASK:
            result = await _ask_resolution(engine, store, result, scheduler.backup_hook())
        return result


async def _ask_resolution(engine: SyncEngine, store: LocalStore, result: SyncResult,
                          before_overwrite=None) -> SyncResult:
    conflict = result.conflict
    console.print(Panel(conflict.describe(), title="⚠️  Sync conflict", border_style="yellow"))
    choice = Prompt.ask(
        "Keep which version?",
        choices=["local", "remote", "merge", "cancel"],
        default="cancel",
    )
    if choice == "cancel":
        engine.discard_conflict()
        return result

    resolved = await engine.resolve_conflict(choice, conflict, before_overwrite=before_overwrite)
    if resolved.success and resolved.data is not None:
        store.save_snapshot(resolved.data)
    return resolved


@main.command()
@click.pass_context
def status(ctx):
    """Show sync status and local data summary."""
    config = ctx.obj["config"]
    store = get_store(config)
    credentials = CredentialManager()
    snapshot = store.load_snapshot()

    client = create_client(config)
    token = credentials.get_token()
    if token:
        client.authenticate(token)
    engine = SyncEngine(client, store)
    state = engine.status()
    asyncio.run(client.aclose())

    table = Table(title="Shelf Sync Status")
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    table.add_row("Authenticated", "✅" if state["authenticated"] else "❌")
    table.add_row("Device", state["device_id"])
    table.add_row("Gist", state["gist_id"] or "[dim]not created yet[/dim]")
    table.add_row("Groups", str(len(snapshot.groups)))
    table.add_row("Bookmarks", str(len(snapshot.entries)))
    table.add_row("Last local change", to_iso_string(snapshot.last_updated))
    table.add_row("Auto sync",
                  f"every {config.sync.sync_interval_minutes} min" if config.sync.auto_sync else "off")
    table.add_row("Conflicts", config.sync.conflict_resolution.value)
    console.print(table)


@main.command("list")
@click.pass_context
def list_bookmarks(ctx):
    """List the locally stored bookmarks by group."""
    snapshot = get_store(ctx.obj["config"]).load_snapshot()
    if not snapshot.entries and not snapshot.groups:
        console.print("[yellow]No bookmarks stored locally. Run 'shelf sync' to fetch them.[/yellow]")
        return

    for group in snapshot.sorted_groups():
        title = f"{group.icon} {group.name}" if group.icon else group.name
        _print_entries(title, snapshot.entries_in_group(group.id))

    orphans = snapshot.orphaned_entries()
    if orphans:
        _print_entries("Ungrouped", orphans)


def _print_entries(title: str, entries: List[BookmarkEntry]):
    table = Table(title=title, show_header=True, header_style="bold blue")
    table.add_column("", width=2)
    table.add_column("Title", style="cyan")
    table.add_column("URL", style="blue")
    table.add_column("Tags", style="green")
    for entry in entries:
        table.add_row("📌" if entry.pinned else "", entry.title, entry.url, ", ".join(sorted(entry.tags)))
    console.print(table)


# Backups

@main.group()
def backup():
    """Create and restore backup gists."""
    pass


def _run_backup_op(config: ConfigModel, operation):
    """Run ``operation(service)`` with an authenticated backup service."""
    token = require_token(CredentialManager())
    store = get_store(config)

    async def runner():
        async with create_client(config) as client:
            client.authenticate(token)
            return await operation(BackupService(client, store.device_id()))

    try:
        return asyncio.run(runner())
    except GistSyncError as e:
        console.print(f"[red]❌ Backup operation failed: {describe_error(e)}[/red]")
        sys.exit(1)


@backup.command("create")
@click.option("--label", "-l", help="Label for the backup")
@click.pass_context
def backup_create(ctx, label: Optional[str]):
    """Back up the local bookmarks to a new gist."""
    config = ctx.obj["config"]
    snapshot = get_store(config).load_snapshot()
    info = _run_backup_op(config, lambda service: service.create_backup(snapshot, label))
    console.print(f"[green]✅ Backup '{info.label}' created[/green]")
    console.print(f"[dim]ID: {info.id}[/dim]")


@backup.command("list")
@click.pass_context
def backup_list(ctx):
    """List backup gists, newest first."""
    backups = _run_backup_op(ctx.obj["config"], lambda service: service.list_backups())
    if not backups:
        console.print("[yellow]No backups found.[/yellow]")
        return

    table = Table(title="💾 Available Backups", show_header=True, header_style="bold blue")
    table.add_column("ID", style="dim")
    table.add_column("Label", style="cyan")
    table.add_column("Created", style="yellow")
    table.add_column("Device", style="green")
    table.add_column("Size", style="white")
    for info in backups:
        table.add_row(info.id, info.label, info.created.strftime("%Y-%m-%d %H:%M"),
                      info.device_id, f"{info.size / 1024:.1f}KB")
    console.print(table)


@backup.command("restore")
@click.argument("backup_id")
@click.option("--yes", "-y", is_flag=True, help="Restore without confirmation")
@click.pass_context
def backup_restore(ctx, backup_id: str, yes: bool):
    """Replace the local bookmarks with a backup."""
    config = ctx.obj["config"]
    store = get_store(config)
    snapshot: BookmarkData = _run_backup_op(config, lambda service: service.restore_backup(backup_id))

    if not yes and not Confirm.ask(
        f"Replace local data with {len(snapshot.entries)} bookmarks from backup {backup_id}?"
    ):
        console.print("[yellow]Restore cancelled.[/yellow]")
        return

    # Restored data counts as a fresh local edit so the next sync uploads it
    snapshot.touch()
    store.save_snapshot(snapshot)
    console.print("[green]✅ Backup restored locally. Run 'shelf sync' to upload it.[/green]")


@backup.command("delete")
@click.argument("backup_id")
@click.option("--yes", "-y", is_flag=True, help="Delete without confirmation")
@click.pass_context
def backup_delete(ctx, backup_id: str, yes: bool):
    """Delete a backup gist."""
    if not yes and not Confirm.ask(f"Delete backup {backup_id}?"):
        console.print("[yellow]Delete cancelled.[/yellow]")
        return
    _run_backup_op(ctx.obj["config"], lambda service: service.delete_backup(backup_id))
    console.print(f"[green]✅ Backup {backup_id} deleted[/green]")


# Settings

@main.group()
def settings():
    """Show or change sync settings."""
    pass


@settings.command("show")
@click.pass_context
def settings_show(ctx):
    """Show current sync settings."""
    config = ctx.obj["config"]
    table = Table(title="Sync Settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in config.sync.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)
    console.print(f"[dim]Configuration: {ctx.obj['config_path'] or config.get_config_path()}[/dim]")


@settings.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def settings_set(ctx, key: str, value: str):
    """Change one sync setting."""
    config = ctx.obj["config"]
    try:
        config.sync.update(key, value)
    except KeyError:
        valid = ", ".join(config.sync.to_dict())
        console.print(f"[red]Unknown setting '{key}'. Valid settings: {valid}[/red]")
        sys.exit(1)
    except ValueError as e:
        console.print(f"[red]Invalid value for {key}: {e}[/red]")
        sys.exit(1)

    save_config(config, ctx.obj["config_path"])
    console.print(f"[green]✅ {key} = {config.sync.to_dict()[key]}[/green]")


if __name__ == "__main__":
    main()
