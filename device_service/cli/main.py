"""Main CLI entry point for device-service management commands."""

import click

from device_service.cli.commands import server, tokens
from device_service.infra.logging.config import setup_logging


@click.group()
@click.version_option(version="1.0.0", prog_name="device-service")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Device Service CLI - run the server and maintain the token store.

    \b
    Quick Start:
      device-service init-db        # Create token store tables
      device-service serve          # Run the API server
      device-service sweep-tokens   # Purge expired tokens once
      device-service token-stats    # Show token store counts
    """
    ctx.ensure_object(dict)


cli.add_command(server.serve)
cli.add_command(tokens.sweep_tokens)
cli.add_command(tokens.token_stats)
cli.add_command(tokens.init_db)


def main() -> None:
    """Entry point for CLI."""
    setup_logging()
    cli(obj={})


if __name__ == "__main__":
    main()
