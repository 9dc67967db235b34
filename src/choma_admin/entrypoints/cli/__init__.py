"""ABOUTME: Main CLI entry point using Click for Choma admin 2FA operations
ABOUTME: Provides subcommands for database management and two-factor reporting"""

import click

from choma_admin.adapters.database import start_mappers
from choma_admin.config import get_config, get_version


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Choma admin two-factor service CLI."""
    # Ensure context object exists
    ctx.ensure_object(dict)

    # Initialize configuration and database mappers
    config = get_config()
    ctx.obj["config"] = config
    start_mappers()


@cli.command()
def version() -> None:
    """Show the choma-admin version."""
    click.echo(f"choma-admin {get_version()}")


# Import subcommands to register them
from .database import database  # noqa: E402
from .two_factor import two_factor  # noqa: E402

cli.add_command(database)
cli.add_command(two_factor)


if __name__ == "__main__":
    cli()
