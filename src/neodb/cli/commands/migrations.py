"""Migration log commands."""

from typing import Annotated

import typer

from neodb.cli.context import CLIContext
from neodb.cli.output import OutputFormatter

# Create migrations subcommand group
app = typer.Typer(help="Inspect and roll back applied migrations")


@app.command("list")
def migrations_list(ctx: typer.Context) -> None:
    """List applied migrations, oldest first."""
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        db = cli_ctx.get_db()
        applied = db.schema_manager.get_applied_migrations()

        if not applied and not cli_ctx.json_output:
            typer.echo("No migrations applied")
        else:
            formatter.print_table(
                f"Applied migrations ({len(applied)} total)",
                applied,
                ["version", "id", "applied_at", "execution_time_ms"],
            )
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
    finally:
        cli_ctx.close()


@app.command("rollback")
def migrations_rollback(
    ctx: typer.Context,
    count: Annotated[
        int,
        typer.Option("--count", "-n", min=1, help="Number of migrations to roll back"),
    ] = 1,
) -> None:
    """Roll back the most recent migrations using their stored down SQL.

    Examples:

        neodb migrations rollback
        neodb migrations rollback --count 3
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        db = cli_ctx.get_db()
        rolled_back = db.schema_manager.rollback_migrations(count)

        if not rolled_back:
            formatter.print_success("Nothing to roll back", {"rolled_back": []})
        else:
            formatter.print_success(
                f"Rolled back {len(rolled_back)} migration(s)",
                {"rolled_back": rolled_back},
            )
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
    finally:
        cli_ctx.close()
