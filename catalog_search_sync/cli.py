"""
CLI commands for catalog-search-sync.

Provides the `catalog-sync` command-line interface for reconciling, resyncing
and inspecting the search index, feeding mutation events and running the
recurring reconcile job.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table
from tqdm import tqdm

from config import ConfigurationLoader
from core.exceptions import SyncError, UnknownEntityError
from core.models.config import GlobalSettings
from core.storage.schemas import EntityType
from core.sync.events import MutationEvent
from core.sync.full_resync import ResyncProgress

from . import __version__
from .service import CatalogSyncService

console = Console()
logger = logging.getLogger(__name__)


def _configure_logging(settings: GlobalSettings) -> None:
    handlers = [logging.StreamHandler(sys.stderr)]
    log_file = settings.get_log_file()
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers
    )


def _build_service(ctx: click.Context) -> CatalogSyncService:
    loader = ConfigurationLoader(ctx.obj["settings"])
    return CatalogSyncService(loader.load_config(ctx.obj["config_file"]))


def _parse_entity(entity: str) -> EntityType:
    try:
        return EntityType.parse(entity)
    except UnknownEntityError as e:
        raise click.BadParameter(str(e), param_hint="ENTITY")


async def _with_service(ctx: click.Context, action):
    service = _build_service(ctx)
    try:
        return await action(service)
    finally:
        await service.source.close()
        await service.index.disconnect()


@click.group()
@click.version_option(version=__version__, prog_name="catalog-sync")
@click.option(
    '--config', '-c', 'config_file',
    type=click.Path(dir_okay=False, path_type=Path),
    help='JSON config file (default: ~/.catalog-search-sync/config.json)'
)
@click.option(
    '--log-level',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'], case_sensitive=False),
    help='Override the configured log level'
)
@click.pass_context
def main(ctx: click.Context, config_file: Optional[Path], log_level: Optional[str]):
    """
    Catalog Search Sync CLI.

    Keep the Qdrant search index consistent with the commerce catalog.
    """
    settings = GlobalSettings()
    if log_level:
        settings.log_level = log_level.upper()
    _configure_logging(settings)
    ctx.obj = {"settings": settings, "config_file": config_file}


@main.command()
@click.argument('entity', default='all')
@click.option('--wait', '-w', is_flag=True, help='Wait until the index confirms every write')
@click.pass_context
def reconcile(ctx: click.Context, entity: str, wait: bool):
    """Resync ENTITY (or all) only if drift is detected."""
    if entity.lower() == 'all':
        async def action(service):
            return await service.detector.reconcile_all(wait=wait)
        results = asyncio.run(_with_service(ctx, action))
    else:
        entity_type = _parse_entity(entity)

        async def action(service):
            return {entity_type: await service.detector.reconcile(entity_type, wait=wait)}
        try:
            results = asyncio.run(_with_service(ctx, action))
        except SyncError as e:
            console.print(f"[red]❌ Reconcile failed: {e}[/red]")
            sys.exit(1)

    table = Table(title="Reconcile")
    table.add_column("Entity", style="cyan", no_wrap=True)
    table.add_column("Status", style="white")
    table.add_column("Synced", justify="right")
    table.add_column("Details", style="dim")

    failed = False
    for entity_type, result in results.items():
        if result.status == "failed":
            failed = True
            status = "[red]❌ failed[/red]"
        elif result.status == "synced_now":
            status = "[green]✅ synced now[/green]"
        elif result.status == "sync_in_progress":
            status = "[yellow]⏳ in progress[/yellow]"
        else:
            status = "[green]✅ already synced[/green]"
        table.add_row(entity_type.value, status, str(result.synced), result.message)

    console.print(table)
    if failed:
        sys.exit(1)


@main.command()
@click.argument('entity')
@click.option('--wait', '-w', is_flag=True, help='Wait until the index confirms every write')
@click.option('--rebuild', is_flag=True, help='Empty the index first, then insert the full set')
@click.pass_context
def sync(ctx: click.Context, entity: str, wait: bool, rebuild: bool):
    """Run a full resync of ENTITY regardless of drift."""
    entity_type = _parse_entity(entity)

    async def action(service):
        total = await service.source.count_records(entity_type)
        with tqdm(total=total, desc=f"Syncing {entity_type.value}", unit="doc", disable=rebuild) as bar:
            def on_progress(progress: ResyncProgress) -> None:
                bar.update(max(0, progress.synced - bar.n))

            service.resync.add_progress_callback(on_progress)
            try:
                return await service.resync.run(entity_type, wait=wait, rebuild=rebuild)
            finally:
                service.resync.remove_progress_callback(on_progress)

    try:
        result = asyncio.run(_with_service(ctx, action))
    except SyncError as e:
        console.print(f"[red]❌ Sync failed: {e}[/red]")
        sys.exit(1)

    if result.in_progress:
        console.print(f"[yellow]⏳ A {entity_type.value} sync is already in progress[/yellow]")
        return

    console.print(
        f"[green]🎉 Synced {result.synced} {entity_type.value} documents "
        f"in {result.batches} batches, swept {result.deleted} "
        f"({result.processing_time_ms:.0f}ms)[/green]"
    )
    console.print_json(json.dumps(result.to_dict()))


@main.command()
@click.argument('entity')
@click.pass_context
def check(ctx: click.Context, entity: str):
    """Show the drift signal for ENTITY without writing anything."""
    entity_type = _parse_entity(entity)

    async def action(service):
        return await service.detector.check(entity_type)

    try:
        signal = asyncio.run(_with_service(ctx, action))
    except SyncError as e:
        console.print(f"[red]❌ Check failed: {e}[/red]")
        sys.exit(1)

    table = Table(title=f"Drift: {entity_type.value}")
    table.add_column("Signal", style="cyan", no_wrap=True)
    table.add_column("Source", justify="right")
    table.add_column("Index", justify="right")
    table.add_column("OK")
    table.add_row(
        "count", str(signal.source_count), str(signal.index_count),
        "✅" if signal.count_matches else "❌"
    )
    table.add_row(
        "latest updated_at", str(signal.source_latest), str(signal.index_latest),
        "✅" if signal.freshness_ok else "❌"
    )
    console.print(table)

    if signal.in_sync:
        console.print("[green]✅ In sync[/green]")
    else:
        console.print("[yellow]⚠️  Drift detected; run 'catalog-sync reconcile' to fix[/yellow]")


@main.command()
@click.argument('entity')
@click.option('--wait', '-w', is_flag=True, help='Wait until the index confirms the write')
@click.pass_context
def repair(ctx: click.Context, entity: str, wait: bool):
    """Re-index only missing or outdated ENTITY documents."""
    entity_type = _parse_entity(entity)

    async def action(service):
        return await service.detector.repair_stale(entity_type, wait=wait)

    try:
        result = asyncio.run(_with_service(ctx, action))
    except SyncError as e:
        console.print(f"[red]❌ Repair failed: {e}[/red]")
        sys.exit(1)

    console.print(
        f"[green]✅ Checked {result.checked}, found {len(result.stale_ids)} stale, "
        f"repaired {result.repaired}[/green]"
    )


@main.command()
@click.argument('name')
@click.argument('entity_id')
@click.option('--wait', '-w', is_flag=True, help='Wait until the index confirms the write')
@click.pass_context
def event(ctx: click.Context, name: str, entity_id: str, wait: bool):
    """Apply one mutation event NAME (e.g. product.updated) for ENTITY_ID."""
    try:
        mutation = MutationEvent.from_name(name, entity_id)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="NAME")

    async def action(service):
        service.incremental.wait = wait
        mutation.max_retries = service.engine.retry_config.max_retries
        return await service.engine.process_event(mutation)

    result = asyncio.run(_with_service(ctx, action))
    if result is None:
        console.print(f"[red]❌ {mutation.name} {entity_id} failed: {mutation.last_error}[/red]")
        sys.exit(1)

    reason = f" ({result.reason})" if result.reason else ""
    console.print(f"[green]✅ {mutation.name} {entity_id}: {result.action}{reason}[/green]")


@main.command()
@click.option('--run-now', is_flag=True, help='Reconcile immediately instead of after the initial delay')
@click.pass_context
def schedule(ctx: click.Context, run_now: bool):
    """Run the recurring reconcile job until interrupted."""
    service = _build_service(ctx)
    interval = service.config.scheduler.interval_minutes
    console.print(f"[blue]🔄 Reconciling every {interval} minutes (Ctrl+C to stop)[/blue]")

    async def run() -> None:
        if run_now:
            service.scheduler.config.initial_delay_seconds = 0
        await service.engine.start()
        await service.scheduler.start()
        try:
            await asyncio.Event().wait()
        finally:
            await service.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("[yellow]🛑 Stopped[/yellow]")


@main.command()
@click.pass_context
def health(ctx: click.Context):
    """Check connectivity to the search index and the source store."""
    async def action(service):
        return await service.health_check()

    status = asyncio.run(_with_service(ctx, action))

    table = Table(title="Catalog Search Sync Health")
    table.add_column("Component", style="cyan", no_wrap=True)
    table.add_column("Status", style="white")
    table.add_column("Details", style="dim")

    for component in ("index", "source"):
        info = status[component]
        if info.get("status") == "healthy":
            details = f"{info.get('response_time_ms', 0):.0f}ms"
            table.add_row(component.title(), "[green]✅ Healthy[/green]", details)
        else:
            table.add_row(component.title(), "[red]❌ Unavailable[/red]", info.get("error", ""))

    for entity, collection in status["index"].get("collections", {}).items():
        if collection is None:
            table.add_row(f"  {entity}", "[yellow]⚠️  Missing[/yellow]", "run 'catalog-sync sync'")
        elif collection["ready"]:
            table.add_row(f"  {entity}", "[green]✅ Ready[/green]", f"{collection['points_count']} documents")
        else:
            table.add_row(
                f"  {entity}", f"[yellow]⏳ {collection['status']}[/yellow]",
                f"{collection['points_count']} documents"
            )

    console.print(table)
    if not status["healthy"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
