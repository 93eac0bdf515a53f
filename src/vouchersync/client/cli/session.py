"""Session setup commands for the vouchersync CLI.

Commands:
- init: Store the endpoint, the signed-in user and the cache settings
- reset: Delete the configuration and the encrypted cache
"""

from __future__ import annotations

import sys

import click

from vouchersync.client.cli.config import (
    get_cache_dir,
    get_config_dir,
    get_config_file,
    load_config,
    open_store,
    save_config,
)
from vouchersync.core.config import BACKEND_CHOICES
from vouchersync.core.errors import VoucherSyncError


@click.command()
@click.option("--endpoint", required=True, help="URL of the voucher endpoint.")
@click.option("--user", "user_id", required=True, help="User id owning the cache.")
@click.option("--token", required=True, help="Auth token sent with each request.")
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Cache directory (default: <config dir>/cache).",
)
@click.option(
    "--backend",
    type=click.Choice(BACKEND_CHOICES),
    default="auto",
    show_default=True,
    help="Storage backend.",
)
@click.option(
    "--expiry-days",
    type=click.IntRange(min=0),
    default=None,
    help="Drop cached record sets older than this (default: never).",
)
@click.option("--no-keyring", is_flag=True, help="Do not cache derived keys in the OS keyring.")
def init(
    endpoint: str,
    user_id: str,
    token: str,
    cache_dir: str | None,
    backend: str,
    expiry_days: int | None,
    no_keyring: bool,
) -> None:
    """Configure vouchersync for a user.

    Re-running init replaces the session (e.g. after a token refresh);
    the cache stays readable as long as the user id is unchanged.
    """
    config = load_config()
    previous_user = config.get("user_id")

    config.update(
        {
            "endpoint_url": endpoint.rstrip("/"),
            "user_id": user_id,
            "auth_token": token,
            "backend": backend,
            "cache_expiry_days": expiry_days,
            "use_keyring": not no_keyring,
        }
    )
    if cache_dir:
        config["cache_dir"] = cache_dir

    try:
        with open_store(config) as store:
            backend_type = store.backend_type
            location = store.backend.location
    except VoucherSyncError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    save_config(config)

    if previous_user and previous_user != user_id:
        click.echo(f"Switched user from {previous_user} to {user_id}.")
    click.echo("vouchersync initialized successfully!")
    click.echo(f"Config file: {get_config_file()}")
    click.echo(f"Cache: {location} ({backend_type} backend)")


@click.command()
@click.option("--force", is_flag=True, help="Skip confirmation prompt.")
def reset(force: bool) -> None:
    """Delete the vouchersync configuration and the encrypted cache."""
    import shutil

    config_dir = get_config_dir()
    config = load_config()
    cache_dir = get_cache_dir(config)

    if not config_dir.exists() and not cache_dir.exists():
        click.echo("Nothing to reset. vouchersync is not initialized.")
        return

    if not force:
        click.echo("WARNING: This will delete:")
        click.echo(f"  - Configuration ({config_dir})")
        click.echo(f"  - Encrypted cache ({cache_dir})")
        if not click.confirm("Are you sure you want to reset?"):
            click.echo("Aborted.")
            return

    try:
        if cache_dir.exists():
            shutil.rmtree(cache_dir)
        if config_dir.exists():
            shutil.rmtree(config_dir)
        click.echo("vouchersync configuration has been reset.")
    except OSError as e:
        click.echo(f"Error deleting configuration: {e}", err=True)
        sys.exit(1)
