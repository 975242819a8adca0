"""NeoDB CLI - Main entry point."""

from typing import Annotated

import typer

import neodb
from neodb.cli.context import CLIContext, get_database_url

# Create main Typer app
app = typer.Typer(
    name="neodb",
    help="NeoDB CLI - Schema-driven relational data engine",
    no_args_is_help=True,
)

# Store CLI context globally (will be set in callback)
state: dict[str, CLIContext] = {}


@app.callback()
def main_callback(
    ctx: typer.Context,
    database: Annotated[
        str | None,
        typer.Option(
            "--database",
            "-d",
            help="PostgreSQL URL (default: $NEODB_URL, then $DATABASE_URL)",
        ),
    ] = None,
    schema: Annotated[
        str | None,
        typer.Option(
            "--schema",
            "-s",
            help="Postgres schema holding entity tables",
        ),
    ] = None,
    echo: Annotated[
        bool,
        typer.Option(
            "--echo",
            "-e",
            help="Echo SQL statements to console",
        ),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            "-j",
            help="Output as JSON (machine-readable)",
        ),
    ] = False,
) -> None:
    """Initialize CLI context with global options."""
    cli_ctx = CLIContext(
        database_url=get_database_url(database),
        schema=schema,
        echo=echo,
        json_output=json_output,
    )

    # Store in Typer context for command access
    ctx.obj = cli_ctx
    state["cli_ctx"] = cli_ctx


@app.command()
def version() -> None:
    """Show version information."""
    typer.echo(f"NeoDB v{neodb.__version__}")


# Register command groups
from neodb.cli.commands import admin, migrations, schema

app.command(name="init")(admin.init)
app.command(name="status")(admin.status)
app.add_typer(schema.app, name="schema")
app.add_typer(migrations.app, name="migrations")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
