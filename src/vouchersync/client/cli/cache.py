"""Cache administration commands for the vouchersync CLI.

Commands:
- cache list: List the stored entries (metadata only, nothing is decrypted)
- cache stats: Show backend, entry counts and storage usage
- cache clear: Delete a company's record sets and sync progress
- cache delete: Delete a single cache key
- cache cleanup: Remove expired record sets now
"""

from __future__ import annotations

import sys
from datetime import datetime

import click

from vouchersync.client.cli.config import is_initialized, load_config, open_store
from vouchersync.client.storage.hybrid import HybridStore
from vouchersync.core.errors import VoucherSyncError


def _format_size(size: int) -> str:
    """Format byte size as human-readable string."""
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"


def _open() -> HybridStore:
    config = load_config()
    if not is_initialized(config):
        click.echo("Error: vouchersync not initialized. Run 'vouchersync init' first.", err=True)
        sys.exit(1)
    try:
        return open_store(config)
    except VoucherSyncError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@click.group()
def cache() -> None:
    """Inspect and manage the encrypted cache."""


@cache.command("list")
def list_entries() -> None:
    """List cached entries."""
    with _open() as store:
        entries = store.list_entries()

    if not entries:
        click.echo("Cache is empty.")
        return

    click.echo(f"{'KIND':<7} {'SIZE':>10}  {'WRITTEN':<19}  KEY")
    for meta in entries:
        written = datetime.fromtimestamp(meta.created_at).strftime("%Y-%m-%d %H:%M:%S")
        click.echo(f"{meta.kind:<7} {_format_size(meta.size):>10}  {written:<19}  {meta.key}")


@cache.command()
def stats() -> None:
    """Show cache statistics."""
    with _open() as store:
        cache_stats = store.get_cache_stats()
        quota = store.get_storage_quota()
        low = store.is_storage_low()

    expiry = cache_stats.cache_expiry_days
    click.echo(f"Backend: {cache_stats.backend_type}")
    click.echo(f"Location: {cache_stats.location}")
    click.echo(f"Record sets: {cache_stats.record_sets}")
    click.echo(f"Sync states: {cache_stats.states}")
    click.echo(f"Usage: {_format_size(cache_stats.usage_bytes)}")
    click.echo(f"Expiry: {'never' if expiry is None else f'{expiry} days'}")
    click.echo(
        f"Storage: {_format_size(quota.usage)} of {_format_size(quota.quota)} "
        f"({quota.percent_used:.1f}%)"
    )
    if low:
        click.echo(click.style("Warning: storage is running low.", fg="yellow"))


@cache.command()
@click.argument("company_id")
@click.argument("location_id")
@click.option("--force", is_flag=True, help="Skip confirmation prompt.")
def clear(company_id: str, location_id: str, force: bool) -> None:
    """Delete a company's cached records and sync progress."""
    from vouchersync.core.types import CompanyInfo

    company = CompanyInfo(company_id=company_id, location_id=location_id)
    if not force and not click.confirm(f"Delete cached data of {company.owner_id}?"):
        click.echo("Aborted.")
        return

    config = load_config()
    with _open() as store:
        removed = store.clear_company(company, config["user_id"])
    click.echo(f"Removed {removed} entries.")


@cache.command()
@click.argument("key")
def delete(key: str) -> None:
    """Delete a single cache key."""
    with _open() as store:
        deleted = store.delete(key)
    if not deleted:
        click.echo(f"Error: No cache entry {key}", err=True)
        sys.exit(1)
    click.echo(f"Deleted {key}.")


@cache.command()
def cleanup() -> None:
    """Remove expired record sets."""
    with _open() as store:
        if store.cache_expiry_days is None:
            click.echo("Cache expiry is disabled; nothing to clean up.")
            return
        removed = store.cleanup_expired()
    click.echo(f"Removed {removed} expired entries.")
