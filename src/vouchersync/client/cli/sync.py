"""Sync commands for the vouchersync CLI.

Commands:
- sync: Synchronize one company into the encrypted cache
- status: Show a company's sync progress and cached record count
"""

from __future__ import annotations

import sys
from typing import Any

import click

from vouchersync.client.cli.config import (
    build_remote_config,
    build_session,
    is_initialized,
    load_config,
    open_store,
)
from vouchersync.core.types import CompanyInfo


def _require_config() -> dict[str, Any]:
    config = load_config()
    if not is_initialized(config):
        click.echo("Error: vouchersync not initialized. Run 'vouchersync init' first.", err=True)
        sys.exit(1)
    return config


@click.command()
@click.argument("company_id")
@click.argument("location_id")
@click.option(
    "--since-date",
    required=True,
    help="Earliest record date (YYYYMMDD, YYYY-MM-DD or D-Mon-YY).",
)
@click.option("--name", default="", help="Company name shown in progress messages.")
@click.option("--fresh", is_flag=True, help="Discard the cached records and fetch everything.")
@click.option("--no-progress", is_flag=True, help="Disable progress output.")
def sync(
    company_id: str,
    location_id: str,
    since_date: str,
    name: str,
    fresh: bool,
    no_progress: bool,
) -> None:
    """Synchronize a company's records into the encrypted cache.

    An interrupted sync resumes at the chunk where it stopped.
    Press Ctrl+C to cancel; progress is kept for the next run.
    """
    from vouchersync.client.api import RemoteClient
    from vouchersync.client.sync import DeltaSyncEngine, ProgressEvent, SyncOrchestrator
    from vouchersync.core.errors import SyncCancelled, VoucherSyncError

    config = _require_config()
    session = build_session(config)
    company = CompanyInfo(
        company_id=company_id,
        location_id=location_id,
        display_name=name,
        earliest_record_date=since_date,
    )

    def on_progress(event: ProgressEvent) -> None:
        if event.total:
            click.echo(f"  [{event.percent:5.1f}%] {event.message}")
        else:
            click.echo(f"  {event.message}")

    try:
        store = open_store(config)
    except VoucherSyncError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    client = RemoteClient(build_remote_config(config), session)
    engine = DeltaSyncEngine(store, client, session)
    orchestrator = SyncOrchestrator(engine, store, session)
    if not no_progress:
        orchestrator.subscribe(on_progress)

    click.echo(f"Syncing {company.name} from {config['endpoint_url']}...")
    orchestrator.start()
    future = orchestrator.request_sync(company, start_fresh=fresh)

    exit_code = 0
    try:
        result = future.result()
        click.echo(
            f"\nSync complete: {result.record_count} records "
            f"({result.mode.value}, revision {result.last_revision})"
        )
    except KeyboardInterrupt:
        click.echo("\nCancelling...")
        orchestrator.cancel()
        orchestrator.wait_idle(timeout=10.0)
        click.echo("Sync cancelled; run the command again to resume.")
        exit_code = 130
    except SyncCancelled:
        click.echo("Sync cancelled; run the command again to resume.")
        exit_code = 130
    except VoucherSyncError as e:
        click.echo(click.style(f"\nSync failed: {e}", fg="red"), err=True)
        exit_code = 1
    finally:
        orchestrator.stop()
        client.close()
        store.close()

    if exit_code:
        sys.exit(exit_code)


@click.command()
@click.argument("company_id")
@click.argument("location_id")
def status(company_id: str, location_id: str) -> None:
    """Show the sync progress of a company."""
    from vouchersync.client.storage.hybrid import record_key, state_key
    from vouchersync.client.sync import SyncProgress
    from vouchersync.core.config import SyncConfig
    from vouchersync.core.errors import VoucherSyncError

    config = _require_config()
    company = CompanyInfo(company_id=company_id, location_id=location_id)

    try:
        store = open_store(config)
    except VoucherSyncError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    with store:
        state = store.get_state(state_key(config["user_id"], company_id))
        meta = store.get_metadata(record_key(company, SyncConfig().base_key))

    if state is None:
        click.echo(f"{company.owner_id}: never synced")
        return

    progress = SyncProgress.from_dict(state)
    click.echo(f"Company: {company.owner_id}")
    click.echo(f"Status: {progress.status.value}")
    if progress.mode:
        click.echo(f"Mode: {progress.mode.value}")
    if progress.total_chunks:
        click.echo(
            f"Chunks: {progress.chunks_completed} / {progress.total_chunks} "
            f"({progress.percent:.0f}%)"
        )
    if progress.failed_chunks:
        click.echo(f"Failed chunks: {', '.join(str(i + 1) for i in progress.failed_chunks)}")
    click.echo(f"Last revision: {progress.last_synced_revision}")
    if progress.error:
        click.echo(click.style(f"Error: {progress.error}", fg="red"))
    if meta is not None:
        partial = " (incomplete)" if meta.extra.get("complete") is False else ""
        click.echo(f"Cached records: {meta.extra.get('recordCount', 'unknown')}{partial}")
