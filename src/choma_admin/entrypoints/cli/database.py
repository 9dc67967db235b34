"""ABOUTME: CLI commands for database management operations
ABOUTME: Provides commands to create and reset the two-factor tables"""

import os

import click

from choma_admin.adapters.orm import metadata
from choma_admin.service_layer.unit_of_work import SqlAlchemyUnitOfWork


@click.group()
def database() -> None:
    """Database management commands."""
    pass


@database.command("init")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create any missing two-factor tables. Existing tables are left alone."""
    try:
        with SqlAlchemyUnitOfWork(ctx.obj.get("session_factory")) as uow:
            if uow.session.bind is not None:
                metadata.create_all(uow.session.bind)
            uow.commit()

        click.echo(click.style("✓ Database tables created.", "green"))

    except Exception as e:
        click.echo(click.style(f"✗ Error creating tables: {e}", "red"))
        raise click.Abort() from e


@database.command("reset")
@click.pass_context
def reset_db(ctx: click.Context) -> None:
    """Reset the database (drop all tables and recreate)."""
    try:
        if os.environ.get("ALLOW_RESET_DB", "") != "DANGEROUS":
            click.echo("Resetting the database is a dangerous operation. In order to enable it set the")
            click.echo("environment variable ALLOW_RESET_DB to DANGEROUS.")
            return

        click.echo(click.style("⚠️  WARNING: This will destroy ALL 2FA records and the audit trail!", "red"))
        delete_confirm = click.prompt("Type 'delete everything' if you want to continue.")
        if delete_confirm != "delete everything":
            click.echo("Operation cancelled.")
            return

        with SqlAlchemyUnitOfWork(ctx.obj.get("session_factory")) as uow:
            if uow.session.bind is not None:
                metadata.drop_all(uow.session.bind)
                metadata.create_all(uow.session.bind)

            uow.commit()

        click.echo(click.style("✓ Database reset successfully.", "green"))

    except Exception as e:
        click.echo(click.style(f"✗ Error resetting database: {e}", "red"))
        raise click.Abort() from e
