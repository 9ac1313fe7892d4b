"""PlanSync CLI.

Commands:
- init-db: Create cache tables
- sync: Run a full or incremental Azure DevOps -> cache sync
- history: Show per-entity sync watermarks
- test-connection: Check ProductBoard and Azure DevOps credentials
- changed-features: List ProductBoard features changed since a timestamp
- publish-work-item: Push a cached work item to ProductBoard
- serve: Run the webhook/API server
"""

from __future__ import annotations

import asyncio
from datetime import datetime

import typer
from rich.console import Console
from rich.table import Table

from plansync.config import get_config
from plansync.core.errors import PlanSyncError
from plansync.core.logging import configure_logging
from plansync.db.connection import init_db
from plansync.services import build_services

app = typer.Typer(
    name="plansync",
    help="PlanSync - ProductBoard <-> Azure DevOps sync and cache",
    no_args_is_help=True,
)

console = Console()


@app.callback()
def main():
    configure_logging()


@app.command("init-db")
def init_db_command():
    """Initialize database schema."""
    config = get_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")

    async def _init():
        services = build_services(config)
        try:
            await init_db(services.engine)
        finally:
            await services.close()

    asyncio.run(_init())
    console.print("[green]✓ Tables created[/green]")


@app.command()
def sync(
    force_full: bool = typer.Option(False, "--force-full", help="Ignore sync watermarks"),
    timeout: float | None = typer.Option(None, "--timeout", help="Abort after N seconds"),
):
    """Sync Azure DevOps work items, area paths, teams and types into the cache."""
    config = get_config()
    if not config.ado.is_configured:
        console.print("[red]ADO_ORG, ADO_PROJECT and ADO_PAT must be set[/red]")
        raise typer.Exit(1)

    async def _sync():
        services = build_services(config)
        try:
            await init_db(services.engine)
            return await services.bulk.sync_all(force_full_sync=force_full, timeout=timeout)
        finally:
            await services.close()

    summary = asyncio.run(_sync())
    if summary.success:
        console.print(f"[green]✓ {summary.message}[/green]")
    else:
        console.print(f"[red]✗ {summary.message}[/red]")
        raise typer.Exit(1)


@app.command()
def history():
    """Show the last sync attempt per entity type."""

    async def _history():
        services = build_services(get_config())
        try:
            return await services.history.list_records()
        finally:
            await services.close()

    records = asyncio.run(_history())
    if not records:
        console.print("[yellow]No sync history recorded yet[/yellow]")
        return

    table = Table(title="Sync History")
    table.add_column("Entity", style="cyan")
    table.add_column("Last Sync")
    table.add_column("Items", justify="right")
    table.add_column("Status", style="green")
    table.add_column("Error", style="red")

    for record in records:
        table.add_row(
            record.entity_type,
            record.last_sync_time.isoformat(timespec="seconds"),
            str(record.items_synced),
            record.status,
            record.error_message or "",
        )

    console.print(table)


@app.command("test-connection")
def test_connection():
    """Check credentials against both partner APIs."""

    async def _test():
        services = build_services(get_config())
        try:
            return await asyncio.gather(
                services.productboard.test_connection(), services.ado.test_connection()
            )
        finally:
            await services.close()

    pb_ok, ado_ok = asyncio.run(_test())
    for name, ok in (("ProductBoard", pb_ok), ("Azure DevOps", ado_ok)):
        mark = "[green]✓ connected[/green]" if ok else "[red]✗ failed[/red]"
        console.print(f"{name}: {mark}")
    if not (pb_ok and ado_ok):
        raise typer.Exit(1)


@app.command("changed-features")
def changed_features(
    since: str | None = typer.Option(None, "--since", help="ISO timestamp cutoff"),
):
    """List ProductBoard features updated since a timestamp."""
    cutoff = datetime.fromisoformat(since) if since else None

    async def _list():
        services = build_services(get_config())
        try:
            return await services.productboard.list_features_changed_since(cutoff)
        finally:
            await services.close()

    try:
        features = asyncio.run(_list())
    except PlanSyncError as exc:
        console.print(f"[red]✗ {exc}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Changed Features ({len(features)})")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Status", style="green")
    table.add_column("Updated")

    for feature in features:
        status = feature.get("status")
        table.add_row(
            str(feature.get("id", "")),
            feature.get("name", ""),
            status.get("name", "") if isinstance(status, dict) else str(status or ""),
            feature.get("updatedAt", ""),
        )

    console.print(table)


@app.command("publish-work-item")
def publish_work_item(work_item_id: int = typer.Argument(..., help="Cached work item id")):
    """Create or update the ProductBoard feature for a cached work item."""

    async def _publish():
        services = build_services(get_config())
        try:
            items = await services.store.get_work_items([work_item_id])
            if not items:
                return None
            return await services.publisher.push_work_item(items[0])
        finally:
            await services.close()

    try:
        ps_id = asyncio.run(_publish())
    except PlanSyncError as exc:
        console.print(f"[red]✗ {exc}[/red]")
        raise typer.Exit(1)

    if ps_id is None:
        console.print(f"[yellow]Work item {work_item_id} is not cached; run sync first[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Work item {work_item_id} -> ProductBoard feature {ps_id}[/green]")


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Host to bind"),
    port: int = typer.Option(8001, help="Port to bind"),
    reload: bool = typer.Option(False, help="Enable autoreload (dev only)"),
):
    """Run the webhook receiver and sync API."""
    import uvicorn

    typer.echo(f"Starting PlanSync on http://{host}:{port}")
    uvicorn.run("plansync.web.app:app", host=host, port=port, reload=reload, workers=1)


if __name__ == "__main__":
    app()
