"""Schema management commands."""

from typing import Annotated

import typer

from neodb.cli.context import CLIContext
from neodb.cli.output import OutputFormatter
from neodb.cli.parsing import read_entities_file
from neodb.core.registry import EntityRegistry
from neodb.schema.manager import creation_order, junction_pairs
from neodb.sql.compiler import (
    compile_entity,
    generate_create_table_sql,
    generate_junction_table_sql,
)

# Create schema subcommand group
app = typer.Typer(help="Compile, plan and sync entity schemas")

EntitiesFile = Annotated[str, typer.Argument(help="JSON file with entity definitions")]


@app.command("compile")
def schema_compile(ctx: typer.Context, file: EntitiesFile) -> None:
    """Print the DDL for entity definitions without touching a database.

    Examples:

        neodb schema compile entities.json
        neodb --schema app --json schema compile entities.json
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)
    schema = cli_ctx.schema or "public"

    try:
        entities = read_entities_file(file)
        registry = EntityRegistry(entities)

        statements: list[str] = []
        for entity in creation_order(entities):
            statements.extend(generate_create_table_sql(compile_entity(entity, schema, registry)))

        for first, second in junction_pairs(registry):
            statements.extend(generate_junction_table_sql(first, second, schema))

        formatter.print_sql(statements, f"{len(entities)} entities, schema '{schema}'")
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)


@app.command("plan")
def schema_plan(ctx: typer.Context, file: EntitiesFile) -> None:
    """Show the migrations needed to reach the definitions in FILE.

    Diffs against the snapshots stored by the last sync. Nothing is applied.

    Examples:

        neodb schema plan entities.json
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        entities = read_entities_file(file)
        db = cli_ctx.get_db()
        plan = db.schema_manager.generate_migration_plan(
            db.schema_manager.get_all_stored_entities(), entities
        )

        if cli_ctx.json_output:
            formatter.print_data(
                {
                    "migrations": [m.to_dict() for m in plan.migrations],
                    "destructive": plan.is_destructive,
                    "warnings": plan.warnings,
                }
            )
        elif plan.is_empty:
            typer.echo("Schema is up to date")
        else:
            formatter.print_table(
                f"Migration plan ({len(plan.migrations)} migrations)",
                [
                    {
                        "Version": m.version,
                        "Id": m.id,
                        "Statements": len(m.up),
                        "Destructive": "yes" if m.is_destructive else "",
                    }
                    for m in plan.migrations
                ],
                ["Version", "Id", "Statements", "Destructive"],
            )
            formatter.print_warnings(plan.warnings)
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
    finally:
        cli_ctx.close()


@app.command("sync")
def schema_sync(
    ctx: typer.Context,
    file: EntitiesFile,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Confirm migrations that drop tables or columns"),
    ] = False,
) -> None:
    """Apply the migration plan for FILE, then create junction tables.

    Every migration is logged and can be undone with `neodb migrations rollback`.
    Plans that drop tables or columns require --yes.

    Examples:

        neodb schema sync entities.json
        neodb schema sync entities.json --yes
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        entities = read_entities_file(file)
        db = cli_ctx.get_db()
        plan = db.schema_manager.generate_migration_plan(
            db.schema_manager.get_all_stored_entities(), entities
        )
        if plan.is_destructive and not yes:
            formatter.print_warnings(plan.warnings)

        applied = db.apply_migrations(plan, confirm_destructive=yes)
        if not applied.success:
            failed = ", ".join(f"{k}: {v}" for k, v in applied.errors.items())
            formatter.print_error(RuntimeError(f"Migration failed: {failed}"))
            raise typer.Exit(code=1)

        synced = db.sync_schema(entities)
        if not synced.success:
            failed = ", ".join(f"{k}: {v}" for k, v in synced.errors.items())
            formatter.print_error(RuntimeError(f"Schema sync failed: {failed}"))
            raise typer.Exit(code=1)

        formatter.print_success(
            "Schema synced",
            {
                "applied": applied.applied,
                "created": synced.created,
                "updated": synced.updated,
            },
        )
    except typer.Exit:
        raise
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
    finally:
        cli_ctx.close()
