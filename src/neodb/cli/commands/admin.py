"""Admin and utility commands."""

import typer

import neodb
from neodb.cli.context import CLIContext
from neodb.cli.output import OutputFormatter


def init(
    ctx: typer.Context,
) -> None:
    """Initialize a database with the NeoDB bookkeeping tables.

    Creates the target schema if needed, plus the migration log
    (_neo_migrations) and entity snapshot store (_neo_entities).

    Examples:

        neodb init
        neodb --database postgresql://localhost/mydb --schema app init
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        # get_db() initializes the bookkeeping tables
        db = cli_ctx.get_db()

        formatter.print_success(
            "Database initialized",
            {
                "schema": db.schema_manager.schema,
                "version": neodb.__version__,
            },
        )

    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
    finally:
        cli_ctx.close()


def status(
    ctx: typer.Context,
) -> None:
    """Show connection, pool and schema status.

    Examples:

        neodb status
        neodb --json status
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        db = cli_ctx.get_db()
        stored = db.schema_manager.get_all_stored_entities()
        applied = db.schema_manager.get_applied_migrations()

        status_data = db.get_status()
        status_data["version"] = neodb.__version__
        status_data["entities"] = [entity.name for entity in stored]
        status_data["migrations"] = len(applied)

        if cli_ctx.json_output:
            formatter.print_data(status_data)
        else:
            pool = status_data["pool"]
            typer.echo(f"\nNeoDB v{status_data['version']}")
            typer.echo(f"Connected: {'yes' if status_data['connected'] else 'no'}")
            typer.echo(f"Schema: {status_data['schema']}")
            typer.echo(f"Entities: {len(stored)}")
            typer.echo(f"Applied migrations: {status_data['migrations']}")
            typer.echo(
                f"Pool: {pool['checked_out']} in use, {pool['checked_in']} idle, "
                f"{pool['overflow']} overflow"
            )

    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
    finally:
        cli_ctx.close()
