"""SQL compiler: entity definitions to PostgreSQL DDL.

Pure functions. Nothing here touches a database; the Schema Manager executes
the statements these functions return.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from neodb.core.naming import junction_columns, junction_table_name, to_snake_case
from neodb.core.types import (
    NUMERIC_FIELD_TYPES,
    DeleteMode,
    EntityDefinition,
    FieldDefinition,
    FieldType,
)
from neodb.exceptions import CompilerError

if TYPE_CHECKING:
    from neodb.core.registry import EntityRegistry


# Mapping from NeoDB field types to PostgreSQL column types
FIELD_TYPE_SQL: dict[FieldType, str] = {
    FieldType.STRING: "TEXT",
    FieldType.TEXT: "TEXT",
    FieldType.RICHTEXT: "TEXT",
    FieldType.NUMBER: "INTEGER",
    FieldType.INTEGER: "INTEGER",
    FieldType.CURRENCY: "DECIMAL",
    FieldType.DECIMAL: "DECIMAL",
    FieldType.PERCENTAGE: "DECIMAL",
    FieldType.BOOLEAN: "BOOLEAN",
    FieldType.DATE: "DATE",
    FieldType.DATETIME: "TIMESTAMPTZ",
    FieldType.TIMESTAMP: "TIMESTAMPTZ",
    FieldType.TIME: "TIME",
    FieldType.EMAIL: "TEXT",
    FieldType.PHONE: "TEXT",
    FieldType.URL: "TEXT",
    FieldType.IMAGE: "TEXT",
    FieldType.FILE: "TEXT",
    FieldType.REFERENCE: "UUID",
    FieldType.ENUM: "VARCHAR(255)",
    FieldType.JSON: "JSONB",
    FieldType.ADDRESS: "JSONB",
    FieldType.GEOLOCATION: "JSONB",
    FieldType.RATING: "INTEGER",
    FieldType.COLOR: "TEXT",
    FieldType.BARCODE: "TEXT",
    FieldType.SIGNATURE: "TEXT",
    FieldType.DURATION: "INTEGER",
}

_unmapped = set(FieldType) - FIELD_TYPE_SQL.keys()
if _unmapped:
    raise RuntimeError(f"Field types without a SQL mapping: {sorted(_unmapped)}")

_NOW_DEFAULTS = {"now", "now()", "current_timestamp"}
_TODAY_DEFAULTS = {"today", "now", "current_date"}


# === Compiled Artifacts ===


@dataclass(frozen=True)
class ForeignKeyReference:
    """Target of a REFERENCES clause."""

    schema: str
    table: str
    column: str = "id"
    on_delete: str = "SET NULL"
    on_update: str = "CASCADE"

    def render(self) -> str:
        """Render the REFERENCES clause."""
        target = qualified_name(self.schema, self.table)
        return (
            f"REFERENCES {target}({quote_identifier(self.column)}) "
            f"ON DELETE {self.on_delete} ON UPDATE {self.on_update}"
        )


@dataclass(frozen=True)
class ColumnDefinition:
    """A physical column compiled from a field (or an implicit column)."""

    name: str
    type: str
    primary_key: bool = False
    nullable: bool = True
    unique: bool = False
    default: str | None = None
    references: ForeignKeyReference | None = None
    check: str | None = None
    field_id: str | None = None

    def render(self) -> str:
        """Render the column as it appears in CREATE TABLE / ADD COLUMN."""
        parts = [quote_identifier(self.name), self.type]
        if self.primary_key:
            parts.append("PRIMARY KEY")
        if not self.nullable:
            parts.append("NOT NULL")
        if self.unique and not self.primary_key:
            parts.append("UNIQUE")
        if self.default is not None:
            parts.append(f"DEFAULT {self.default}")
        if self.references is not None:
            parts.append(self.references.render())
        if self.check:
            parts.append(f"CHECK ({self.check})")
        return " ".join(parts)


@dataclass(frozen=True)
class IndexDefinition:
    """An index on one or more columns."""

    name: str
    columns: tuple[str, ...]
    unique: bool = False
    where: str | None = None

    def render(self, schema: str, table: str) -> str:
        """Render an idempotent CREATE INDEX statement."""
        unique = "UNIQUE " if self.unique else ""
        cols = ", ".join(quote_identifier(c) for c in self.columns)
        sql = (
            f"CREATE {unique}INDEX IF NOT EXISTS {quote_identifier(self.name)} "
            f"ON {qualified_name(schema, table)} ({cols})"
        )
        if self.where:
            sql += f" WHERE {self.where}"
        return sql


@dataclass(frozen=True)
class ConstraintDefinition:
    """A table constraint, for introspection and reporting."""

    name: str
    type: str  # primary_key | unique | foreign_key | check
    columns: tuple[str, ...]
    expression: str | None = None


@dataclass(frozen=True)
class TableDefinition:
    """Physical table compiled from an EntityDefinition."""

    schema: str
    name: str
    entity_id: str
    entity_name: str
    columns: tuple[ColumnDefinition, ...]
    indexes: tuple[IndexDefinition, ...] = ()
    constraints: tuple[ConstraintDefinition, ...] = ()
    delete_mode: DeleteMode = DeleteMode.HARD
    has_created_at: bool = True
    has_updated_at: bool = True
    has_deleted_at: bool = False

    @property
    def qualified_name(self) -> str:
        """Schema-qualified, quoted table name."""
        return qualified_name(self.schema, self.name)

    @property
    def column_names(self) -> list[str]:
        """Column names in declaration order."""
        return [c.name for c in self.columns]

    def has_column(self, name: str) -> bool:
        """Whether the table has a column with this name."""
        return any(c.name == name for c in self.columns)

    def get_column(self, name: str) -> ColumnDefinition | None:
        """Look up a column by name."""
        return next((c for c in self.columns if c.name == name), None)


@dataclass
class MigrationSql:
    """Forward and reverse statements for one entity change."""

    up: list[str] = field(default_factory=list)
    down: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        """True when the two shapes compile to the same table."""
        return not self.up


# === Identifier and Literal Helpers ===


def quote_identifier(name: str) -> str:
    """Double-quote an identifier.

    Raises:
        CompilerError: If the identifier is empty or contains a quote or NUL
    """
    if not name or '"' in name or "\x00" in name:
        raise CompilerError(
            f"Invalid SQL identifier {name!r}. Identifiers must be non-empty "
            "and may not contain double quotes or NUL characters.",
            {"identifier": name},
        )
    return f'"{name}"'


def qualified_name(schema: str, table: str) -> str:
    """Render ``"schema"."table"``."""
    return f"{quote_identifier(schema)}.{quote_identifier(table)}"


def quote_literal(value: str) -> str:
    """Render a SQL string literal, doubling embedded single quotes."""
    return "'" + value.replace("'", "''") + "'"


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def compile_default(field_def: FieldDefinition) -> str | None:
    """Render a field's default value as a SQL expression.

    Args:
        field_def: Field whose ``default_value`` is rendered

    Returns:
        SQL default expression, or None if the field has no default
    """
    value: Any = field_def.default_value
    if value is None:
        return None

    field_type = FieldType(field_def.type)
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return _format_number(value)
    if isinstance(value, (dict, list)):
        return f"{quote_literal(json.dumps(value))}::jsonb"
    if field_type in (FieldType.DATETIME, FieldType.TIMESTAMP):
        if str(value).lower() in _NOW_DEFAULTS:
            return "NOW()"
        return f"{quote_literal(str(value))}::timestamptz"
    if field_type == FieldType.DATE:
        if str(value).lower() in _TODAY_DEFAULTS:
            return "CURRENT_DATE"
        return f"{quote_literal(str(value))}::date"
    return quote_literal(str(value))


def compile_check(field_def: FieldDefinition) -> str | None:
    """Build the CHECK expression for enum options and numeric bounds."""
    column = quote_identifier(field_def.column_name)
    enum_check = None
    if field_def.type == FieldType.ENUM and field_def.enum_options:
        options = ", ".join(quote_literal(str(o)) for o in field_def.enum_options)
        enum_check = f"{column} IN ({options})"

    range_check = None
    rules = field_def.validation
    if rules is not None and FieldType(field_def.type) in NUMERIC_FIELD_TYPES:
        bounds = []
        if rules.min is not None:
            bounds.append(f"{column} >= {_format_number(rules.min)}")
        if rules.max is not None:
            bounds.append(f"{column} <= {_format_number(rules.max)}")
        if bounds:
            range_check = " AND ".join(bounds)

    if enum_check and range_check:
        return f"({enum_check}) AND ({range_check})"
    return enum_check or range_check


def _reference_table(target: str, registry: EntityRegistry | None) -> str:
    if registry is not None:
        return registry.table_name_for(target)
    return f"{to_snake_case(target)}s"


def compile_column(
    field_def: FieldDefinition,
    schema: str = "public",
    registry: EntityRegistry | None = None,
) -> ColumnDefinition:
    """Compile one stored field into a column.

    Args:
        field_def: Non-computed field definition
        schema: Postgres schema for REFERENCES targets
        registry: Registry used to resolve reference target tables

    Returns:
        ColumnDefinition

    Raises:
        CompilerError: If the field is computed
    """
    if field_def.is_computed:
        raise CompilerError(
            f"Computed field '{field_def.name}' has no physical column.",
            {"field": field_def.name},
        )

    references = None
    if field_def.type == FieldType.REFERENCE and field_def.reference is not None:
        references = ForeignKeyReference(
            schema=schema,
            table=_reference_table(field_def.reference.target_entity, registry),
            on_delete="CASCADE" if field_def.reference.cascade_delete else "SET NULL",
        )

    return ColumnDefinition(
        name=field_def.column_name,
        type=FIELD_TYPE_SQL[FieldType(field_def.type)],
        nullable=not field_def.required,
        unique=field_def.unique,
        default=compile_default(field_def),
        references=references,
        check=compile_check(field_def),
        field_id=field_def.id,
    )


def _field_index(table: str, field_def: FieldDefinition) -> IndexDefinition | None:
    if field_def.is_computed:
        return None
    if not (field_def.unique or field_def.indexed or field_def.type == FieldType.REFERENCE):
        return None
    column = field_def.column_name
    return IndexDefinition(name=f"idx_{table}_{column}", columns=(column,), unique=field_def.unique)


def _timestamp_columns(entity: EntityDefinition) -> list[ColumnDefinition]:
    columns = []
    if entity.timestamps.created_at:
        columns.append(
            ColumnDefinition(name="created_at", type="TIMESTAMPTZ", nullable=False, default="NOW()")
        )
    if entity.timestamps.updated_at:
        columns.append(
            ColumnDefinition(name="updated_at", type="TIMESTAMPTZ", nullable=False, default="NOW()")
        )
    if entity.has_deleted_at:
        columns.append(ColumnDefinition(name="deleted_at", type="TIMESTAMPTZ"))
    return columns


def _deleted_at_index(table: str) -> IndexDefinition:
    return IndexDefinition(
        name=f"idx_{table}_deleted_at", columns=("deleted_at",), where="deleted_at IS NULL"
    )


# === Public API ===


def compile_entity(
    entity: EntityDefinition,
    schema: str = "public",
    registry: EntityRegistry | None = None,
) -> TableDefinition:
    """Compile an entity into its physical table definition.

    The table gets an implicit UUID primary key, one column per stored field,
    and the timestamp columns its policy enables. Computed fields produce no
    column.

    Args:
        entity: Entity definition
        schema: Postgres schema name
        registry: Registry used to resolve reference target tables

    Returns:
        TableDefinition
    """
    table = entity.table_name
    columns: list[ColumnDefinition] = [
        ColumnDefinition(
            name="id",
            type="UUID",
            primary_key=True,
            nullable=False,
            default="gen_random_uuid()",
        )
    ]
    indexes: list[IndexDefinition] = []
    constraints: list[ConstraintDefinition] = [
        ConstraintDefinition(name=f"{table}_pkey", type="primary_key", columns=("id",))
    ]

    taken = {"id", "created_at", "updated_at", "deleted_at"}
    for field_def in entity.stored_fields:
        column = compile_column(field_def, schema, registry)
        if column.name in taken:
            raise CompilerError(
                f"Field '{field_def.name}' on '{entity.name}' maps to reserved or duplicate "
                f"column '{column.name}'. Rename the field.",
                {"entity": entity.name, "field": field_def.name, "column": column.name},
            )
        taken.add(column.name)
        columns.append(column)

        if column.unique:
            constraints.append(
                ConstraintDefinition(
                    name=f"{table}_{column.name}_key", type="unique", columns=(column.name,)
                )
            )
        if column.references is not None:
            constraints.append(
                ConstraintDefinition(
                    name=f"{table}_{column.name}_fkey",
                    type="foreign_key",
                    columns=(column.name,),
                    expression=column.references.render(),
                )
            )
        if column.check:
            constraints.append(
                ConstraintDefinition(
                    name=f"{table}_{column.name}_check",
                    type="check",
                    columns=(column.name,),
                    expression=column.check,
                )
            )
        index = _field_index(table, field_def)
        if index is not None:
            indexes.append(index)

    columns.extend(_timestamp_columns(entity))
    if entity.has_deleted_at:
        indexes.append(_deleted_at_index(table))

    return TableDefinition(
        schema=schema,
        name=table,
        entity_id=entity.id,
        entity_name=entity.name,
        columns=tuple(columns),
        indexes=tuple(indexes),
        constraints=tuple(constraints),
        delete_mode=DeleteMode(entity.delete_mode),
        has_created_at=entity.timestamps.created_at,
        has_updated_at=entity.timestamps.updated_at,
        has_deleted_at=entity.has_deleted_at,
    )


def _trigger_function(schema: str, table: str) -> str:
    return qualified_name(schema, f"update_{table}_updated_at")


def _trigger_name(table: str) -> str:
    return quote_identifier(f"trigger_{table}_updated_at")


def generate_updated_at_trigger_sql(schema: str, table: str) -> list[str]:
    """Statements installing the ``updated_at`` auto-touch trigger."""
    function = _trigger_function(schema, table)
    trigger = _trigger_name(table)
    target = qualified_name(schema, table)
    return [
        f"CREATE OR REPLACE FUNCTION {function}()\n"
        "RETURNS TRIGGER AS $$\n"
        "BEGIN\n"
        "  NEW.updated_at = NOW();\n"
        "  RETURN NEW;\n"
        "END;\n"
        "$$ LANGUAGE plpgsql",
        f"DROP TRIGGER IF EXISTS {trigger} ON {target}",
        f"CREATE TRIGGER {trigger}\n"
        f"  BEFORE UPDATE ON {target}\n"
        f"  FOR EACH ROW\n"
        f"  EXECUTE FUNCTION {function}()",
    ]


def generate_create_table_sql(table: TableDefinition) -> list[str]:
    """Idempotent DDL for a compiled table.

    Returns:
        CREATE TABLE IF NOT EXISTS, then one CREATE INDEX IF NOT EXISTS per
        index, then the updated_at trigger function and trigger.
    """
    body = ",\n".join(f"  {column.render()}" for column in table.columns)
    statements = [f"CREATE TABLE IF NOT EXISTS {table.qualified_name} (\n{body}\n)"]
    statements.extend(index.render(table.schema, table.name) for index in table.indexes)
    if table.has_updated_at:
        statements.extend(generate_updated_at_trigger_sql(table.schema, table.name))
    return statements


def generate_drop_table_sql(table: TableDefinition) -> list[str]:
    """Statements removing a compiled table and its trigger function."""
    statements = [f"DROP TABLE IF EXISTS {table.qualified_name} CASCADE"]
    if table.has_updated_at:
        function = _trigger_function(table.schema, table.name)
        statements.append(f"DROP FUNCTION IF EXISTS {function}()")
    return statements


def _diff_fields(
    old_field: FieldDefinition,
    new_field: FieldDefinition,
    table: TableDefinition,
    old_table_name: str,
    schema: str,
    registry: EntityRegistry | None,
) -> tuple[list[str], list[str]]:
    """Up/down statements for one field present in both shapes."""
    target = table.qualified_name
    up: list[str] = []
    down: list[str] = []

    old_col = compile_column(old_field, schema, registry)
    new_col = compile_column(new_field, schema, registry)
    old_name = quote_identifier(old_col.name)
    name = quote_identifier(new_col.name)

    if old_col.name != new_col.name:
        up.append(f"ALTER TABLE {target} RENAME COLUMN {old_name} TO {name}")
        down.insert(0, f"ALTER TABLE {target} RENAME COLUMN {name} TO {old_name}")

    if old_col.type != new_col.type:
        alter = f"ALTER TABLE {target} ALTER COLUMN {name} TYPE"
        up.append(f"{alter} {new_col.type} USING {name}::{new_col.type}")
        down.insert(0, f"{alter} {old_col.type} USING {name}::{old_col.type}")

    if old_col.nullable != new_col.nullable:
        forward = "DROP NOT NULL" if new_col.nullable else "SET NOT NULL"
        reverse = "DROP NOT NULL" if old_col.nullable else "SET NOT NULL"
        up.append(f"ALTER TABLE {target} ALTER COLUMN {name} {forward}")
        down.insert(0, f"ALTER TABLE {target} ALTER COLUMN {name} {reverse}")

    if old_col.default != new_col.default:
        forward = f"SET DEFAULT {new_col.default}" if new_col.default else "DROP DEFAULT"
        reverse = f"SET DEFAULT {old_col.default}" if old_col.default else "DROP DEFAULT"
        up.append(f"ALTER TABLE {target} ALTER COLUMN {name} {forward}")
        down.insert(0, f"ALTER TABLE {target} ALTER COLUMN {name} {reverse}")

    if old_col.unique != new_col.unique:
        constraint = quote_identifier(f"{table.name}_{new_col.name}_key")
        add = f"ALTER TABLE {target} ADD CONSTRAINT {constraint} UNIQUE ({name})"
        drop = f"ALTER TABLE {target} DROP CONSTRAINT IF EXISTS {constraint}"
        up.append(add if new_col.unique else drop)
        down.insert(0, drop if new_col.unique else add)

    if old_col.references != new_col.references:
        constraint = quote_identifier(f"{table.name}_{new_col.name}_fkey")
        drop = f"ALTER TABLE {target} DROP CONSTRAINT IF EXISTS {constraint}"
        up.append(drop)
        if new_col.references is not None:
            up.append(
                f"ALTER TABLE {target} ADD CONSTRAINT {constraint} "
                f"FOREIGN KEY ({name}) {new_col.references.render()}"
            )
        restore = [drop]
        if old_col.references is not None:
            restore.append(
                f"ALTER TABLE {target} ADD CONSTRAINT {constraint} "
                f"FOREIGN KEY ({name}) {old_col.references.render()}"
            )
        down[0:0] = restore

    old_index = _field_index(old_table_name, old_field)
    new_index = _field_index(table.name, new_field)
    if old_index != new_index:
        if old_index is not None:
            up.append(f"DROP INDEX IF EXISTS {qualified_name(schema, old_index.name)}")
        if new_index is not None:
            up.append(new_index.render(schema, table.name))
        restore = []
        if new_index is not None:
            restore.append(f"DROP INDEX IF EXISTS {qualified_name(schema, new_index.name)}")
        if old_index is not None:
            restore.append(old_index.render(schema, table.name))
        down[0:0] = restore

    if old_col.check != new_col.check:
        # Inline column checks are named <table>_<column>_check by Postgres
        old_check = quote_identifier(f"{old_table_name}_{old_col.name}_check")
        new_check = quote_identifier(f"{table.name}_{new_col.name}_check")
        up.append(f"ALTER TABLE {target} DROP CONSTRAINT IF EXISTS {old_check}")
        if new_check != old_check:
            up.append(f"ALTER TABLE {target} DROP CONSTRAINT IF EXISTS {new_check}")
        if new_col.check:
            up.append(f"ALTER TABLE {target} ADD CONSTRAINT {new_check} CHECK ({new_col.check})")
        # Runs after any column rename has been undone
        down.append(f"ALTER TABLE {target} DROP CONSTRAINT IF EXISTS {new_check}")
        if old_col.check:
            down.append(
                f"ALTER TABLE {target} ADD CONSTRAINT {old_check} CHECK ({old_col.check})"
            )

    return up, down


def generate_migration_sql(
    old: EntityDefinition | None,
    new: EntityDefinition | None,
    schema: str = "public",
    registry: EntityRegistry | None = None,
) -> MigrationSql:
    """Diff two shapes of an entity into forward and reverse statements.

    ``old=None`` creates the table; ``new=None`` drops it. Otherwise fields are
    matched by id: added fields become ADD COLUMN, removed fields DROP COLUMN,
    and changed fields ALTER COLUMN statements. No data transform is attempted
    beyond a ``USING col::type`` cast.

    Args:
        old: Previously synced shape, or None
        new: Incoming shape, or None
        schema: Postgres schema name
        registry: Registry used to resolve reference target tables

    Returns:
        MigrationSql with ``up`` and ``down`` statement lists

    Raises:
        CompilerError: If both shapes are None
    """
    if old is None and new is None:
        raise CompilerError("generate_migration_sql needs at least one entity shape.")
    if old is None:
        assert new is not None
        table = compile_entity(new, schema, registry)
        return MigrationSql(
            up=generate_create_table_sql(table), down=generate_drop_table_sql(table)
        )
    if new is None:
        table = compile_entity(old, schema, registry)
        return MigrationSql(
            up=generate_drop_table_sql(table), down=generate_create_table_sql(table)
        )

    old_table = compile_entity(old, schema, registry)
    new_table = compile_entity(new, schema, registry)
    target = new_table.qualified_name
    up: list[str] = []
    down_groups: list[list[str]] = []

    if old_table.name != new_table.name:
        up.append(
            f"ALTER TABLE {old_table.qualified_name} RENAME TO {quote_identifier(new_table.name)}"
        )
        down_groups.append([f"ALTER TABLE {target} RENAME TO {quote_identifier(old_table.name)}"])

    old_fields = {f.id: f for f in old.stored_fields}
    new_fields = {f.id: f for f in new.stored_fields}

    for field_id, new_field in new_fields.items():
        old_field = old_fields.get(field_id)
        if old_field is None:
            column = compile_column(new_field, schema, registry)
            up.append(f"ALTER TABLE {target} ADD COLUMN IF NOT EXISTS {column.render()}")
            index = _field_index(new_table.name, new_field)
            if index is not None:
                up.append(index.render(schema, new_table.name))
            down_groups.append(
                [f"ALTER TABLE {target} DROP COLUMN IF EXISTS {quote_identifier(column.name)}"]
            )
        else:
            field_up, field_down = _diff_fields(
                old_field, new_field, new_table, old_table.name, schema, registry
            )
            up.extend(field_up)
            if field_down:
                down_groups.append(field_down)

    for field_id, old_field in old_fields.items():
        if field_id in new_fields:
            continue
        column = compile_column(old_field, schema, registry)
        up.append(f"ALTER TABLE {target} DROP COLUMN IF EXISTS {quote_identifier(column.name)}")
        reverse = [f"ALTER TABLE {target} ADD COLUMN IF NOT EXISTS {column.render()}"]
        index = _field_index(new_table.name, old_field)
        if index is not None:
            reverse.append(index.render(schema, new_table.name))
        down_groups.append(reverse)

    for column_name in ("created_at", "updated_at", "deleted_at"):
        was, now = old_table.has_column(column_name), new_table.has_column(column_name)
        if was == now:
            continue
        column = (new_table if now else old_table).get_column(column_name)
        assert column is not None
        add = [f"ALTER TABLE {target} ADD COLUMN IF NOT EXISTS {column.render()}"]
        drop = [f"ALTER TABLE {target} DROP COLUMN IF EXISTS {quote_identifier(column_name)}"]
        if column_name == "deleted_at":
            add.append(_deleted_at_index(new_table.name).render(schema, new_table.name))
        if column_name == "updated_at":
            add.extend(generate_updated_at_trigger_sql(schema, new_table.name))
            drop.insert(0, f"DROP TRIGGER IF EXISTS {_trigger_name(new_table.name)} ON {target}")
        up.extend(add if now else drop)
        down_groups.append(drop if now else add)

    down = [statement for group in reversed(down_groups) for statement in group]
    return MigrationSql(up=up, down=down)


def generate_junction_table_sql(
    a: EntityDefinition, b: EntityDefinition, schema: str = "public"
) -> list[str]:
    """Idempotent DDL for the many-to-many table between two entities.

    Both foreign keys cascade on delete, the pair forms the primary key, and
    each column gets its own index. Declaring the relation from either side
    yields the same statements.
    """
    first, second = sorted((a, b), key=lambda e: to_snake_case(e.name))
    table = junction_table_name(a.name, b.name)
    first_col, second_col = junction_columns(first.name, second.name)
    target = qualified_name(schema, table)

    def fk_column(column: str, entity: EntityDefinition) -> str:
        ref = ForeignKeyReference(schema=schema, table=entity.table_name, on_delete="CASCADE")
        return f"  {quote_identifier(column)} UUID NOT NULL {ref.render()}"

    create = (
        f"CREATE TABLE IF NOT EXISTS {target} (\n"
        f"{fk_column(first_col, first)},\n"
        f"{fk_column(second_col, second)},\n"
        f'  "created_at" TIMESTAMPTZ NOT NULL DEFAULT NOW(),\n'
        f"  PRIMARY KEY ({quote_identifier(first_col)}, {quote_identifier(second_col)})\n"
        f")"
    )
    indexes = [
        IndexDefinition(name=f"idx_{table}_{column}", columns=(column,))
        for column in (first_col, second_col)
    ]
    return [create, *(index.render(schema, table) for index in indexes)]
