"""Tests for the SQL compiler."""

import pytest

from neodb.core.registry import EntityRegistry
from neodb.core.types import EntityDefinition, FieldDefinition, FieldType
from neodb.exceptions import CompilerError
from neodb.sql.compiler import (
    FIELD_TYPE_SQL,
    compile_check,
    compile_default,
    compile_entity,
    generate_create_table_sql,
    generate_drop_table_sql,
    generate_junction_table_sql,
    generate_migration_sql,
    quote_identifier,
    quote_literal,
)


def _field(**kwargs) -> FieldDefinition:
    data = {"id": "f1", "name": "value", **kwargs}
    return FieldDefinition.model_validate(data)


def _entity(fields: list[dict], **kwargs) -> EntityDefinition:
    return EntityDefinition.model_validate(
        {"id": "ent_note", "name": "Note", "fields": fields, **kwargs}
    )


class TestIdentifiers:
    """Tests for identifier and literal quoting."""

    def test_quote_identifier(self):
        """Identifiers are double-quoted."""
        assert quote_identifier("client_id") == '"client_id"'

    def test_quote_identifier_rejects_quotes(self):
        """Identifiers containing a double quote are rejected."""
        with pytest.raises(CompilerError) as exc_info:
            quote_identifier('bad"name')
        assert "Invalid SQL identifier" in str(exc_info.value)

    def test_quote_identifier_rejects_nul_and_empty(self):
        """NUL characters and empty names are rejected."""
        with pytest.raises(CompilerError):
            quote_identifier("bad\x00name")
        with pytest.raises(CompilerError):
            quote_identifier("")

    def test_quote_literal_doubles_quotes(self):
        """Single quotes inside literals are doubled."""
        assert quote_literal("it's") == "'it''s'"


class TestTypeMapping:
    """Tests for field type to column type mapping."""

    def test_every_field_type_is_mapped(self):
        """No field type is missing a SQL type."""
        assert set(FIELD_TYPE_SQL) == set(FieldType)

    @pytest.mark.parametrize(
        ("field_type", "sql_type"),
        [
            (FieldType.STRING, "TEXT"),
            (FieldType.NUMBER, "INTEGER"),
            (FieldType.CURRENCY, "DECIMAL"),
            (FieldType.BOOLEAN, "BOOLEAN"),
            (FieldType.DATE, "DATE"),
            (FieldType.DATETIME, "TIMESTAMPTZ"),
            (FieldType.REFERENCE, "UUID"),
            (FieldType.ENUM, "VARCHAR(255)"),
            (FieldType.ADDRESS, "JSONB"),
        ],
    )
    def test_representative_types(self, field_type, sql_type):
        """Representative types map to their PostgreSQL column types."""
        assert FIELD_TYPE_SQL[field_type] == sql_type


class TestDefaultsAndChecks:
    """Tests for DEFAULT and CHECK rendering."""

    def test_no_default(self):
        """Fields without a default render none."""
        assert compile_default(_field()) is None

    def test_string_default_is_escaped(self):
        """String defaults are quoted literals."""
        assert compile_default(_field(defaultValue="it's")) == "'it''s'"

    def test_numeric_and_boolean_defaults(self):
        """Numbers and booleans render bare."""
        assert compile_default(_field(type="integer", defaultValue=5)) == "5"
        assert compile_default(_field(type="decimal", defaultValue=2.5)) == "2.5"
        assert compile_default(_field(type="boolean", defaultValue=True)) == "TRUE"

    def test_temporal_defaults(self):
        """'now' and 'today' become server-side expressions."""
        assert compile_default(_field(type="datetime", defaultValue="now")) == "NOW()"
        assert compile_default(_field(type="date", defaultValue="today")) == "CURRENT_DATE"

    def test_json_default(self):
        """Dict defaults render as JSONB literals."""
        default = compile_default(_field(type="json", defaultValue={"a": 1}))
        assert default == '\'{"a": 1}\'::jsonb'

    def test_enum_check(self):
        """Enum options become an IN check."""
        field = _field(name="status", type="enum", enumOptions=["a", "b"])
        assert compile_check(field) == "\"status\" IN ('a', 'b')"

    def test_enum_options_as_objects(self):
        """Enum options given as value/label objects are flattened."""
        field = _field(
            name="status",
            type="enum",
            enumOptions=[{"value": "a", "label": "A"}, {"value": "b", "label": "B"}],
        )
        assert field.enum_options == ["a", "b"]

    def test_range_check(self):
        """Numeric bounds become a range check."""
        field = _field(name="amount", type="decimal", validation={"min": 0, "max": 100})
        assert compile_check(field) == '"amount" >= 0 AND "amount" <= 100'

    def test_no_check_for_text_length(self):
        """String length rules are enforced in validation, not by CHECK."""
        field = _field(name="title", validation={"minLength": 3})
        assert compile_check(field) is None


class TestCompileEntity:
    """Tests for compile_entity."""

    def test_implicit_columns(self, client_entity):
        """Tables get a UUID primary key and timestamp columns."""
        table = compile_entity(client_entity)
        assert table.name == "clients"
        assert table.column_names == [
            "id",
            "name",
            "email",
            "company",
            "created_at",
            "updated_at",
            "deleted_at",
        ]
        assert table.get_column("id").primary_key

    def test_computed_fields_have_no_column(self, invoice_entity, registry):
        """Computed fields produce no physical column."""
        table = compile_entity(invoice_entity, registry=registry)
        assert "amount_with_tax" not in table.column_names
        assert "client_id" in table.column_names

    def test_reference_column(self, invoice_entity, registry):
        """Reference fields become UUID foreign keys to the target table."""
        table = compile_entity(invoice_entity, registry=registry)
        column = table.get_column("client_id")
        assert column.type == "UUID"
        assert column.render() == (
            '"client_id" UUID REFERENCES "public"."clients"("id") '
            "ON DELETE SET NULL ON UPDATE CASCADE"
        )

    def test_cascade_delete_reference(self):
        """cascadeDelete switches ON DELETE to CASCADE."""
        entity = _entity(
            [
                {
                    "id": "f1",
                    "name": "ownerId",
                    "type": "reference",
                    "reference": {"targetEntity": "User", "cascadeDelete": True},
                }
            ]
        )
        table = compile_entity(entity)
        assert "ON DELETE CASCADE" in table.get_column("owner_id").render()

    def test_column_render_order(self, invoice_entity, registry):
        """Constraints render in a fixed order."""
        table = compile_entity(invoice_entity, registry=registry)
        assert table.get_column("number").render() == '"number" TEXT NOT NULL UNIQUE'
        assert table.get_column("status").render() == (
            "\"status\" VARCHAR(255) DEFAULT 'draft' "
            "CHECK (\"status\" IN ('draft', 'sent', 'paid'))"
        )

    def test_reserved_column_rejected(self):
        """A field mapping to a bookkeeping column is rejected."""
        entity = _entity([{"id": "f1", "name": "createdAt", "type": "datetime"}])
        with pytest.raises(CompilerError) as exc_info:
            compile_entity(entity)
        assert "created_at" in str(exc_info.value)

    def test_duplicate_column_rejected(self):
        """Two fields mapping to the same column are rejected."""
        entity = _entity(
            [
                {"id": "f1", "name": "dueDate", "type": "date"},
                {"id": "f2", "name": "due_date", "type": "date"},
            ]
        )
        with pytest.raises(CompilerError):
            compile_entity(entity)

    def test_plural_name_sets_table(self):
        """pluralName drives the table name."""
        entity = _entity([], pluralName="People")
        assert compile_entity(entity).name == "people"

    def test_indexes(self, invoice_entity, registry):
        """Unique and reference fields get indexes."""
        table = compile_entity(invoice_entity, registry=registry)
        names = {index.name: index for index in table.indexes}
        assert names["idx_invoices_number"].unique
        assert not names["idx_invoices_client_id"].unique


class TestCreateTableSql:
    """Tests for CREATE/DROP TABLE generation."""

    def test_create_table_statements(self, client_entity):
        """CREATE TABLE, indexes, then the updated_at trigger."""
        statements = generate_create_table_sql(compile_entity(client_entity))
        assert statements[0].startswith(
            'CREATE TABLE IF NOT EXISTS "public"."clients" (\n'
            '  "id" UUID PRIMARY KEY NOT NULL DEFAULT gen_random_uuid(),'
        )
        assert (
            'CREATE UNIQUE INDEX IF NOT EXISTS "idx_clients_email" ON "public"."clients" ("email")'
            in statements
        )
        assert (
            'CREATE INDEX IF NOT EXISTS "idx_clients_deleted_at" ON "public"."clients" '
            '("deleted_at") WHERE deleted_at IS NULL'
        ) in statements
        assert statements[-3].startswith(
            'CREATE OR REPLACE FUNCTION "public"."update_clients_updated_at"()'
        )
        assert statements[-2] == (
            'DROP TRIGGER IF EXISTS "trigger_clients_updated_at" ON "public"."clients"'
        )
        assert statements[-1].startswith('CREATE TRIGGER "trigger_clients_updated_at"')

    def test_no_trigger_without_updated_at(self):
        """Tables without updated_at get no trigger."""
        entity = _entity(
            [{"id": "f1", "name": "body", "type": "text"}],
            timestamps={"createdAt": True, "updatedAt": False},
        )
        statements = generate_create_table_sql(compile_entity(entity))
        assert len(statements) == 1
        assert '"updated_at"' not in statements[0]

    def test_custom_schema(self, client_entity):
        """Tables are qualified with the given schema."""
        statements = generate_create_table_sql(compile_entity(client_entity, "app"))
        assert '"app"."clients"' in statements[0]

    def test_drop_table(self, client_entity):
        """DROP TABLE cascades and removes the trigger function."""
        statements = generate_drop_table_sql(compile_entity(client_entity))
        assert statements == [
            'DROP TABLE IF EXISTS "public"."clients" CASCADE',
            'DROP FUNCTION IF EXISTS "public"."update_clients_updated_at"()',
        ]

    def test_junction_table(self, product_entity, tag_entity):
        """Junction tables get cascading FKs and a composite key."""
        statements = generate_junction_table_sql(tag_entity, product_entity)
        create = statements[0]
        assert create.startswith('CREATE TABLE IF NOT EXISTS "public"."product_tag"')
        assert '"product_id" UUID NOT NULL REFERENCES "public"."products"("id")' in create
        assert '"tag_id" UUID NOT NULL REFERENCES "public"."tags"("id")' in create
        assert 'PRIMARY KEY ("product_id", "tag_id")' in create
        assert len(statements) == 3

    def test_junction_table_is_symmetric(self, product_entity, tag_entity):
        """Either declaration order yields the same statements."""
        assert generate_junction_table_sql(
            product_entity, tag_entity
        ) == generate_junction_table_sql(tag_entity, product_entity)


class TestMigrationSql:
    """Tests for generate_migration_sql."""

    def test_create_and_drop(self, client_entity):
        """A missing old shape creates; a missing new shape drops."""
        create = generate_migration_sql(None, client_entity)
        assert create.up[0].startswith("CREATE TABLE IF NOT EXISTS")
        assert create.down[0] == 'DROP TABLE IF EXISTS "public"."clients" CASCADE'

        drop = generate_migration_sql(client_entity, None)
        assert drop.up[0] == 'DROP TABLE IF EXISTS "public"."clients" CASCADE'

    def test_both_missing(self):
        """At least one shape is required."""
        with pytest.raises(CompilerError):
            generate_migration_sql(None, None)

    def test_unchanged_is_empty(self, client_entity):
        """Identical shapes produce no statements."""
        assert generate_migration_sql(client_entity, client_entity).is_empty

    def test_add_column(self, client_entity):
        """New fields become ADD COLUMN, reversed by DROP COLUMN."""
        data = client_entity.model_dump(by_alias=True)
        data["fields"].append({"id": "f_phone", "name": "phoneNumber", "type": "phone"})
        new = EntityDefinition.model_validate(data)

        migration = generate_migration_sql(client_entity, new)
        assert migration.up == [
            'ALTER TABLE "public"."clients" ADD COLUMN IF NOT EXISTS "phone_number" TEXT'
        ]
        assert migration.down == [
            'ALTER TABLE "public"."clients" DROP COLUMN IF EXISTS "phone_number"'
        ]

    def test_drop_column(self, client_entity):
        """Removed fields become DROP COLUMN, reversed by ADD COLUMN."""
        data = client_entity.model_dump(by_alias=True)
        data["fields"] = [f for f in data["fields"] if f["id"] != "f_company"]
        new = EntityDefinition.model_validate(data)

        migration = generate_migration_sql(client_entity, new)
        assert migration.up == [
            'ALTER TABLE "public"."clients" DROP COLUMN IF EXISTS "company"'
        ]
        assert migration.down == [
            'ALTER TABLE "public"."clients" ADD COLUMN IF NOT EXISTS "company" TEXT'
        ]

    def test_rename_by_field_id(self, client_entity):
        """A field keeping its id under a new name is renamed, not dropped."""
        data = client_entity.model_dump(by_alias=True)
        for field in data["fields"]:
            if field["id"] == "f_company":
                field["name"] = "companyName"
        new = EntityDefinition.model_validate(data)

        migration = generate_migration_sql(client_entity, new)
        assert migration.up == [
            'ALTER TABLE "public"."clients" RENAME COLUMN "company" TO "company_name"'
        ]
        assert migration.down == [
            'ALTER TABLE "public"."clients" RENAME COLUMN "company_name" TO "company"'
        ]

    def test_type_change(self):
        """Type changes cast existing values."""
        old = _entity([{"id": "f1", "name": "score", "type": "string"}])
        new = _entity([{"id": "f1", "name": "score", "type": "integer"}])
        migration = generate_migration_sql(old, new)
        assert migration.up == [
            'ALTER TABLE "public"."notes" ALTER COLUMN "score" TYPE INTEGER USING "score"::INTEGER'
        ]
        assert migration.down == [
            'ALTER TABLE "public"."notes" ALTER COLUMN "score" TYPE TEXT USING "score"::TEXT'
        ]

    def test_required_change(self):
        """Toggling required sets or drops NOT NULL."""
        old = _entity([{"id": "f1", "name": "title"}])
        new = _entity([{"id": "f1", "name": "title", "required": True}])
        migration = generate_migration_sql(old, new)
        assert migration.up == ['ALTER TABLE "public"."notes" ALTER COLUMN "title" SET NOT NULL']
        assert migration.down == [
            'ALTER TABLE "public"."notes" ALTER COLUMN "title" DROP NOT NULL'
        ]

    def test_enum_options_change(self):
        """Changed enum options replace the column's CHECK constraint."""
        old = _entity([{"id": "f1", "name": "status", "type": "enum", "enumOptions": ["a", "b"]}])
        new = _entity(
            [{"id": "f1", "name": "status", "type": "enum", "enumOptions": ["a", "b", "c"]}]
        )
        migration = generate_migration_sql(old, new)
        assert migration.up == [
            'ALTER TABLE "public"."notes" DROP CONSTRAINT IF EXISTS "notes_status_check"',
            'ALTER TABLE "public"."notes" ADD CONSTRAINT "notes_status_check" '
            "CHECK (\"status\" IN ('a', 'b', 'c'))",
        ]
        assert migration.down == [
            'ALTER TABLE "public"."notes" DROP CONSTRAINT IF EXISTS "notes_status_check"',
            'ALTER TABLE "public"."notes" ADD CONSTRAINT "notes_status_check" '
            "CHECK (\"status\" IN ('a', 'b'))",
        ]

    def test_numeric_bounds_change(self):
        """Changed min/max bounds replace the CHECK constraint."""
        old = _entity(
            [{"id": "f1", "name": "qty", "type": "integer", "validation": {"min": 0}}]
        )
        new = _entity(
            [
                {
                    "id": "f1",
                    "name": "qty",
                    "type": "integer",
                    "validation": {"min": 1, "max": 10},
                }
            ]
        )
        migration = generate_migration_sql(old, new)
        assert not migration.is_empty
        assert migration.up[-1] == (
            'ALTER TABLE "public"."notes" ADD CONSTRAINT "notes_qty_check" '
            'CHECK ("qty" >= 1 AND "qty" <= 10)'
        )
        assert migration.down[-1] == (
            'ALTER TABLE "public"."notes" ADD CONSTRAINT "notes_qty_check" CHECK ("qty" >= 0)'
        )

    def test_bounds_removed(self):
        """Dropping every bound only drops the constraint."""
        old = _entity(
            [{"id": "f1", "name": "qty", "type": "integer", "validation": {"min": 0}}]
        )
        new = _entity([{"id": "f1", "name": "qty", "type": "integer"}])
        migration = generate_migration_sql(old, new)
        assert migration.up == [
            'ALTER TABLE "public"."notes" DROP CONSTRAINT IF EXISTS "notes_qty_check"'
        ]
        assert len(migration.down) == 2

    def test_enable_soft_delete(self):
        """Switching to soft delete adds deleted_at and its index."""
        old = _entity([{"id": "f1", "name": "title"}])
        new = _entity([{"id": "f1", "name": "title"}], deleteMode="soft")
        migration = generate_migration_sql(old, new)
        assert migration.up[0] == (
            'ALTER TABLE "public"."notes" ADD COLUMN IF NOT EXISTS "deleted_at" TIMESTAMPTZ'
        )
        assert "idx_notes_deleted_at" in migration.up[1]
        assert migration.down == [
            'ALTER TABLE "public"."notes" DROP COLUMN IF EXISTS "deleted_at"'
        ]

    def test_reference_target_uses_registry(self, invoice_entity):
        """Reference targets resolve through the registry's plural names."""
        people = EntityDefinition.model_validate(
            {"id": "ent_client", "name": "Client", "pluralName": "Customers", "fields": []}
        )
        table = compile_entity(invoice_entity, registry=EntityRegistry([people]))
        assert '"public"."customers"' in table.get_column("client_id").render()
