"""Tests for the query builder."""

import pytest

from neodb.core.types import QueryFilter
from neodb.exceptions import FieldNotFoundError, QueryBuildError
from neodb.sql.compiler import compile_entity
from neodb.sql.query_builder import QueryBuilder, to_filter


@pytest.fixture
def invoices(invoice_entity, registry):
    """Compiled invoices table."""
    return compile_entity(invoice_entity, registry=registry)


@pytest.fixture
def clients(client_entity):
    """Compiled clients table."""
    return compile_entity(client_entity)


class TestSelect:
    """Tests for SELECT rendering."""

    def test_plain_select(self, invoices):
        """Without clauses the builder selects everything."""
        query = QueryBuilder(invoices).build_select()
        assert query.sql == 'SELECT * FROM "public"."invoices"'
        assert query.params == []

    def test_where_comparison(self, invoices):
        """Comparisons bind one parameter each."""
        query = QueryBuilder(invoices).where("amount", "gt", 100).build_select()
        assert query.sql == 'SELECT * FROM "public"."invoices" WHERE "amount" > $1'
        assert query.params == [100]

    def test_camel_case_fields(self, invoices):
        """camelCase field names resolve to snake_case columns."""
        query = QueryBuilder(invoices).where("clientId", "isNull").build_select()
        assert query.sql.endswith('WHERE "client_id" IS NULL')
        assert query.params == []

    def test_placeholders_follow_clause_order(self, invoices):
        """Placeholders are numbered in the order conditions render."""
        query = (
            QueryBuilder(invoices)
            .where("status", "eq", "paid")
            .where("amount", "between", [10, 20])
            .where("number", "startsWith", "INV")
            .build_select()
        )
        assert query.sql == (
            'SELECT * FROM "public"."invoices" WHERE "status" = $1 '
            'AND "amount" BETWEEN $2 AND $3 AND "number" ILIKE $4'
        )
        assert query.params == ["paid", 10, 20, "INV%"]

    def test_in_and_not_in(self, invoices):
        """Set membership binds the whole list as one array parameter."""
        query = (
            QueryBuilder(invoices)
            .where("status", "in", ["draft", "sent"])
            .where("number", "nin", ["INV-0"])
            .build_select()
        )
        assert 'WHERE "status" = ANY($1) AND "number" != ALL($2)' in query.sql
        assert query.params == [["draft", "sent"], ["INV-0"]]

    def test_empty_in_is_skipped(self, invoices):
        """An empty IN list adds no condition."""
        query = QueryBuilder(invoices).where("status", "in", []).build_select()
        assert "WHERE" not in query.sql

    def test_text_operators(self, invoices):
        """Text operators wrap the value in wildcards."""
        for operator, expected_sql, expected in [
            ("like", '"number" LIKE $1', "%42%"),
            ("ilike", '"number" ILIKE $1', "%42%"),
            ("contains", '"number" ILIKE $1', "%42%"),
            ("endsWith", '"number" ILIKE $1', "%42"),
        ]:
            query = QueryBuilder(invoices).where("number", operator, "42").build_select()
            assert query.sql.endswith(expected_sql)
            assert query.params == [expected]

    def test_json_contains(self):
        """jsonContains casts the serialized value to JSONB."""
        from neodb.core.types import EntityDefinition

        entity = EntityDefinition.model_validate(
            {"id": "e", "name": "Event", "fields": [{"id": "f", "name": "meta", "type": "json"}]}
        )
        table = compile_entity(entity)
        query = QueryBuilder(table).where("meta", "jsonContains", {"a": 1}).build_select()
        assert query.sql.endswith('"meta" @> CAST($1 AS JSONB)')
        assert query.params == ['{"a": 1}']

    def test_where_or_group(self, invoices):
        """where_or renders one parenthesized OR group."""
        query = (
            QueryBuilder(invoices)
            .where_or(
                [
                    {"field": "status", "value": "draft"},
                    {"field": "amount", "operator": "gte", "value": 500},
                ]
            )
            .where("number", "neq", "INV-1")
            .build_select()
        )
        assert query.sql.endswith(
            'WHERE ("status" = $1 OR "amount" >= $2) AND "number" != $3'
        )
        assert query.params == ["draft", 500, "INV-1"]

    def test_sort_and_pagination(self, invoices):
        """Sorting, LIMIT and OFFSET render after the filters."""
        query = (
            QueryBuilder(invoices)
            .order_by("issuedOn", "desc", "last")
            .order_by("number")
            .paginate(3, 20)
            .build_select()
        )
        assert query.sql == (
            'SELECT * FROM "public"."invoices" ORDER BY "issued_on" DESC NULLS LAST, '
            '"number" ASC LIMIT 20 OFFSET 40'
        )

    def test_first_page_has_no_offset(self, invoices):
        """OFFSET is omitted when zero."""
        query = QueryBuilder(invoices).paginate(1, 10).build_select()
        assert query.sql.endswith("LIMIT 10")

    def test_limit_is_capped(self, invoices):
        """LIMIT never exceeds MAX_LIMIT."""
        query = QueryBuilder(invoices).limit(5000).build_select()
        assert query.sql.endswith(f"LIMIT {QueryBuilder.MAX_LIMIT}")

    def test_select_and_distinct(self, invoices):
        """Selected columns and DISTINCT ON render in the SELECT list."""
        query = QueryBuilder(invoices).select("status").distinct("status").build_select()
        assert query.sql == 'SELECT DISTINCT ON ("status") "status" FROM "public"."invoices"'

    def test_join_qualifies_columns(self, invoices, clients):
        """With a join, columns are qualified by table or alias."""
        query = (
            QueryBuilder(invoices)
            .left_join(clients, "clientId", alias="c")
            .where("c.name", "eq", "Acme")
            .where("status", "eq", "paid")
            .build_select()
        )
        assert query.sql == (
            'SELECT "invoices".* FROM "public"."invoices" AS "invoices" '
            'LEFT JOIN "public"."clients" AS "c" ON "invoices"."client_id" = "c"."id" '
            'WHERE "c"."name" = $1 AND "invoices"."status" = $2'
        )
        assert query.params == ["Acme", "paid"]

    def test_group_by_and_having(self, invoices):
        """GROUP BY and HAVING share the placeholder counter with WHERE."""
        query = (
            QueryBuilder(invoices)
            .select("status")
            .where("amount", "gt", 0)
            .group_by("status")
            .having_raw("COUNT(*) > $1", [5])
            .build_select()
        )
        assert query.sql == (
            'SELECT "status" FROM "public"."invoices" WHERE "amount" > $1 '
            'GROUP BY "status" HAVING (COUNT(*) > $2)'
        )
        assert query.params == [0, 5]


class TestRawConditions:
    """Tests for where_raw placeholder numbering."""

    def test_raw_before_structured(self, invoices):
        """A raw fragment first keeps $1; later conditions follow it."""
        query = (
            QueryBuilder(invoices)
            .where_raw("lower(number) = $1", ["inv-1"])
            .where("amount", "gt", 5)
            .build_select()
        )
        assert query.sql.endswith('WHERE (lower(number) = $1) AND "amount" > $2')
        assert query.params == ["inv-1", 5]

    def test_raw_after_structured(self, invoices):
        """A raw fragment after other conditions is renumbered."""
        query = (
            QueryBuilder(invoices)
            .where("amount", "gt", 5)
            .where_raw("amount BETWEEN $1 AND $2", [10, 20])
            .build_select()
        )
        assert query.sql.endswith('WHERE "amount" > $1 AND (amount BETWEEN $2 AND $3)')
        assert query.params == [5, 10, 20]

    def test_raw_placeholder_mismatch(self, invoices):
        """Placeholders must match the parameter count."""
        with pytest.raises(QueryBuildError) as exc_info:
            QueryBuilder(invoices).where_raw("amount > $2", [1])
        assert "placeholders" in str(exc_info.value)


class TestCount:
    """Tests for COUNT rendering."""

    def test_count(self, clients):
        """COUNT keeps filters and drops sorting and pagination."""
        query = (
            QueryBuilder(clients)
            .where("deletedAt", "isNull")
            .order_by("name")
            .paginate(2, 10)
            .build_count()
        )
        assert query.sql == (
            'SELECT COUNT(*) AS "count" FROM "public"."clients" WHERE "deleted_at" IS NULL'
        )

    def test_count_grouped(self, invoices):
        """Grouped queries are counted through a subquery."""
        query = QueryBuilder(invoices).select("status").group_by("status").build_count()
        assert query.sql.startswith('SELECT COUNT(*) AS "count" FROM (SELECT "status"')
        assert query.sql.endswith(') AS "sub"')


class TestWrites:
    """Tests for INSERT, UPDATE and DELETE rendering."""

    def test_insert(self, invoices):
        """INSERT binds values in key order and returns the row."""
        query = QueryBuilder(invoices).build_insert({"number": "INV-1", "amount": 10})
        assert query.sql == (
            'INSERT INTO "public"."invoices" ("number", "amount") VALUES ($1, $2) RETURNING *'
        )
        assert query.params == ["INV-1", 10]

    def test_insert_defaults_only(self, invoices):
        """An empty row inserts DEFAULT VALUES."""
        query = QueryBuilder(invoices).build_insert({})
        assert query.sql == 'INSERT INTO "public"."invoices" DEFAULT VALUES RETURNING *'

    def test_bulk_insert_fills_defaults(self, invoices):
        """Rows missing a column get DEFAULT."""
        query = QueryBuilder(invoices).build_bulk_insert(
            [{"number": "INV-1", "amount": 10}, {"number": "INV-2"}]
        )
        assert query.sql == (
            'INSERT INTO "public"."invoices" ("number", "amount") '
            "VALUES ($1, $2), ($3, DEFAULT) RETURNING *"
        )
        assert query.params == ["INV-1", 10, "INV-2"]

    def test_bulk_insert_empty(self, invoices):
        """Bulk insert needs rows."""
        with pytest.raises(QueryBuildError):
            QueryBuilder(invoices).build_bulk_insert([])

    def test_upsert(self, invoices):
        """Upsert overwrites non-key columns and touches updated_at."""
        query = QueryBuilder(invoices).build_upsert(
            {"number": "INV-1", "amount": 10}, ["number"]
        )
        assert query.sql == (
            'INSERT INTO "public"."invoices" ("number", "amount") VALUES ($1, $2) '
            'ON CONFLICT ("number") DO UPDATE SET "amount" = EXCLUDED."amount", '
            '"updated_at" = NOW() RETURNING *'
        )

    def test_update_params_before_where(self, invoices):
        """SET parameters come first; WHERE placeholders continue after them."""
        query = (
            QueryBuilder(invoices)
            .where("number", "eq", "INV-1")
            .build_update({"amount": 99, "status": "paid"})
        )
        assert query.sql == (
            'UPDATE "public"."invoices" SET "amount" = $1, "status" = $2, '
            '"updated_at" = NOW() WHERE "number" = $3 RETURNING *'
        )
        assert query.params == [99, "paid", "INV-1"]

    def test_delete(self, invoices):
        """DELETE returns the removed rows."""
        query = QueryBuilder(invoices).where("number", "eq", "INV-1").build_delete()
        assert query.sql == (
            'DELETE FROM "public"."invoices" WHERE "number" = $1 RETURNING *'
        )

    def test_soft_delete(self, clients):
        """Soft delete sets deleted_at."""
        query = QueryBuilder(clients).where("name", "eq", "Acme").build_soft_delete()
        assert query.sql == (
            'UPDATE "public"."clients" SET "deleted_at" = NOW() WHERE "name" = $1 RETURNING *'
        )

    def test_soft_delete_needs_column(self, invoices):
        """Tables without deleted_at cannot soft delete."""
        with pytest.raises(QueryBuildError) as exc_info:
            QueryBuilder(invoices).build_soft_delete()
        assert "deleted_at" in str(exc_info.value)


class TestErrors:
    """Tests for builder validation."""

    def test_unknown_field(self, invoices):
        """Unknown fields list the available columns."""
        with pytest.raises(FieldNotFoundError) as exc_info:
            QueryBuilder(invoices).where("total", "eq", 1)
        assert "Available fields" in str(exc_info.value)
        assert "amount" in exc_info.value.available_fields

    def test_unknown_operator(self, invoices):
        """Unknown operators list the valid ones."""
        with pytest.raises(QueryBuildError) as exc_info:
            QueryBuilder(invoices).where("amount", "approx", 1)
        assert "Valid operators" in str(exc_info.value)

    def test_between_needs_two_bounds(self, invoices):
        """between requires exactly two values."""
        with pytest.raises(QueryBuildError):
            QueryBuilder(invoices).where("amount", "between", [1])

    def test_bad_sort_direction(self, invoices):
        """Sort direction must be asc or desc."""
        with pytest.raises(QueryBuildError):
            QueryBuilder(invoices).order_by("amount", "sideways")

    def test_negative_limit(self, invoices):
        """LIMIT must be non-negative."""
        with pytest.raises(QueryBuildError):
            QueryBuilder(invoices).limit(-1)

    def test_reset(self, invoices):
        """reset clears every clause."""
        builder = QueryBuilder(invoices).where("amount", "gt", 1).limit(5)
        assert builder.reset().build_select().sql == 'SELECT * FROM "public"."invoices"'


class TestToFilter:
    """Tests for filter normalization."""

    def test_from_dict(self):
        """Dicts default to the eq operator."""
        flt = to_filter({"field": "status", "value": "paid"})
        assert flt == QueryFilter(field="status", operator="eq", value="paid")

    def test_missing_field(self):
        """Filter dicts need a field."""
        with pytest.raises(QueryBuildError):
            to_filter({"value": 1})
