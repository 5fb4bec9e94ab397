"""Main CLI entry point for storage-gateway."""

import click

from storage_gateway.cli.commands import storage
from storage_gateway.infra.logging.config import setup_logging


@click.group()
@click.version_option(version="0.1.0", prog_name="storage-gateway")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Storage Gateway CLI - one interface over several object stores.

    \b
    Command Groups:
      storage    Upload, list, search, stream and manage stored files

    \b
    Quick Start:
      storage-gateway storage info                      # Show configuration
      storage-gateway storage upload report.pdf -e r-7  # Upload a file
      storage-gateway storage list --limit 20           # List files
      storage-gateway storage download files/a.bin a.bin --resume
    """
    ctx.ensure_object(dict)


cli.add_command(storage.storage)


def main() -> None:
    """Entry point for CLI."""
    setup_logging()
    cli(obj={})


if __name__ == "__main__":
    main()
