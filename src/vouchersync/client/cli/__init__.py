"""Command-line interface for vouchersync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- init: Configure the endpoint, user and cache
- reset: Delete the configuration and the cache
- sync: Synchronize a company into the encrypted cache
- status: Show a company's sync progress
- cache: Inspect and manage the cache (list, stats, clear, delete, cleanup)
"""

from __future__ import annotations

import logging

import click

from vouchersync.client.cli.cache import cache
from vouchersync.client.cli.config import (
    get_config_dir,
    get_config_file,
    load_config,
    save_config,
)
from vouchersync.client.cli.session import init, reset
from vouchersync.client.cli.sync import status, sync


@click.group()
@click.version_option(package_name="vouchersync")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """vouchersync - Encrypted offline voucher cache with delta sync."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Session commands
cli.add_command(init)
cli.add_command(reset)

# Sync commands
cli.add_command(sync)
cli.add_command(status)

# Cache commands
cli.add_command(cache)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "load_config",
    "save_config",
]
