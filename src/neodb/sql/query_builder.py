"""Query builder: declarative filters, sorts and pagination to parameterized SQL.

Clauses are recorded as values and rendered in one pass by ``build_*``. Each
clause knows how many parameters it consumes, and placeholders are numbered by
a single counter at render time, so call order never misaligns them:

    builder = QueryBuilder(table)
    builder.where_raw("lower(name) = $1", ["acme"]).where("age", "gt", 5)
    query = builder.build_select()
    # SELECT * FROM "public"."clients" WHERE (lower(name) = $1) AND "age" > $2
    # query.params == ["acme", 5]

Identifiers always come from the compiled table's column set. Only values are
parameterized.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from neodb.core.naming import to_snake_case
from neodb.core.types import FilterOperator, QueryFilter
from neodb.exceptions import FieldNotFoundError, QueryBuildError
from neodb.sql.compiler import TableDefinition, quote_identifier

_PLACEHOLDER = re.compile(r"\$(\d+)")

# Number of parameters each operator consumes
OPERATOR_ARITY: dict[FilterOperator, int] = {
    FilterOperator.EQ: 1,
    FilterOperator.NEQ: 1,
    FilterOperator.GT: 1,
    FilterOperator.GTE: 1,
    FilterOperator.LT: 1,
    FilterOperator.LTE: 1,
    FilterOperator.IN: 1,
    FilterOperator.NIN: 1,
    FilterOperator.LIKE: 1,
    FilterOperator.ILIKE: 1,
    FilterOperator.CONTAINS: 1,
    FilterOperator.STARTS_WITH: 1,
    FilterOperator.ENDS_WITH: 1,
    FilterOperator.IS_NULL: 0,
    FilterOperator.IS_NOT_NULL: 0,
    FilterOperator.BETWEEN: 2,
    FilterOperator.JSON_CONTAINS: 1,
}

_COMPARISONS = {
    FilterOperator.EQ: "=",
    FilterOperator.NEQ: "!=",
    FilterOperator.GT: ">",
    FilterOperator.GTE: ">=",
    FilterOperator.LT: "<",
    FilterOperator.LTE: "<=",
}


@dataclass(frozen=True)
class CompiledQuery:
    """Rendered SQL plus its positional parameters."""

    sql: str
    params: list[Any] = field(default_factory=list)


# === Clause Values ===


@dataclass(frozen=True)
class _ColumnRef:
    column: str
    alias: str | None = None  # joined table alias, None for the main table


@dataclass(frozen=True)
class _Condition:
    ref: _ColumnRef
    operator: FilterOperator
    value: Any = None

    @property
    def arity(self) -> int:
        return OPERATOR_ARITY[self.operator]


@dataclass(frozen=True)
class _RawCondition:
    sql: str  # placeholders numbered from $1 within the fragment
    params: tuple[Any, ...] = ()

    @property
    def arity(self) -> int:
        return len(self.params)


@dataclass(frozen=True)
class _AnyOf:
    conditions: tuple[_Condition, ...]

    @property
    def arity(self) -> int:
        return sum(c.arity for c in self.conditions)


_Clause = _Condition | _RawCondition | _AnyOf


@dataclass(frozen=True)
class _Join:
    kind: Literal["INNER", "LEFT"]
    table: TableDefinition
    alias: str
    local: _ColumnRef
    foreign_column: str


@dataclass(frozen=True)
class _Sort:
    ref: _ColumnRef
    direction: Literal["ASC", "DESC"]
    nulls: Literal["FIRST", "LAST"] | None = None


class _Params:
    """Allocates placeholder numbers while clauses render."""

    def __init__(self) -> None:
        self.values: list[Any] = []

    def add(self, sql: str, params: Sequence[Any]) -> str:
        """Append ``params`` and shift the fragment's local ``$n`` by the current offset."""
        offset = len(self.values)
        self.values.extend(params)
        if not offset:
            return sql
        return _PLACEHOLDER.sub(lambda m: f"${int(m.group(1)) + offset}", sql)


def _check_raw_placeholders(sql: str, params: Sequence[Any]) -> None:
    used = {int(n) for n in _PLACEHOLDER.findall(sql)}
    expected = set(range(1, len(params) + 1))
    if used != expected:
        raise QueryBuildError(
            "Raw SQL placeholders must be numbered $1..$n within the fragment, "
            f"one per parameter. Got placeholders {sorted(used)} for {len(params)} parameter(s).",
            {"sql": sql, "param_count": len(params)},
        )


def _condition_fragment(
    column_sql: str, operator: FilterOperator, value: Any
) -> tuple[str, list[Any]]:
    """SQL for one condition with placeholders numbered locally from $1."""
    if operator in _COMPARISONS:
        return f"{column_sql} {_COMPARISONS[operator]} $1", [value]
    if operator == FilterOperator.IN:
        return f"{column_sql} = ANY($1)", [list(value)]
    if operator == FilterOperator.NIN:
        return f"{column_sql} != ALL($1)", [list(value)]
    if operator == FilterOperator.LIKE:
        return f"{column_sql} LIKE $1", [f"%{value}%"]
    if operator in (FilterOperator.ILIKE, FilterOperator.CONTAINS):
        return f"{column_sql} ILIKE $1", [f"%{value}%"]
    if operator == FilterOperator.STARTS_WITH:
        return f"{column_sql} ILIKE $1", [f"{value}%"]
    if operator == FilterOperator.ENDS_WITH:
        return f"{column_sql} ILIKE $1", [f"%{value}"]
    if operator == FilterOperator.IS_NULL:
        return f"{column_sql} IS NULL", []
    if operator == FilterOperator.IS_NOT_NULL:
        return f"{column_sql} IS NOT NULL", []
    if operator == FilterOperator.BETWEEN:
        low, high = value
        return f"{column_sql} BETWEEN $1 AND $2", [low, high]
    if operator == FilterOperator.JSON_CONTAINS:
        return f"{column_sql} @> CAST($1 AS JSONB)", [json.dumps(value)]
    raise QueryBuildError(f"Unsupported operator '{operator}'")


def _parse_operator(operator: str | FilterOperator) -> FilterOperator:
    try:
        return FilterOperator(operator)
    except ValueError as e:
        raise QueryBuildError(
            f"Unknown filter operator '{operator}'. Valid operators: "
            f"{', '.join(FilterOperator.values())}",
            {"operator": str(operator), "valid_operators": FilterOperator.values()},
        ) from e


def to_filter(
    filter_or_field: QueryFilter | Mapping[str, Any] | str,
    operator: str | FilterOperator = FilterOperator.EQ,
    value: Any = None,
) -> QueryFilter:
    """Normalize a QueryFilter, a filter dict, or a field/operator/value triple.

    Raises:
        QueryBuildError: On a missing field or an unknown operator
    """
    if isinstance(filter_or_field, QueryFilter):
        return filter_or_field
    if isinstance(filter_or_field, Mapping):
        if "field" not in filter_or_field:
            raise QueryBuildError(f"Filter {dict(filter_or_field)} has no 'field' key.")
        return QueryFilter(
            field=filter_or_field["field"],
            operator=_parse_operator(filter_or_field.get("operator", FilterOperator.EQ)),
            value=filter_or_field.get("value"),
        )
    return QueryFilter(field=filter_or_field, operator=_parse_operator(operator), value=value)


class QueryBuilder:
    """Builds parameterized statements against one compiled table.

    One instance per query. Call ``reset()`` to reuse an instance.
    """

    MAX_LIMIT = 1000

    def __init__(self, table: TableDefinition) -> None:
        """Initialize the builder.

        Args:
            table: Compiled table the statements target
        """
        self._table = table
        self._columns = set(table.column_names)
        self.reset()

    def reset(self) -> QueryBuilder:
        """Clear all clauses so the instance can build an unrelated query."""
        self._select: list[_ColumnRef] = []
        self._distinct: list[_ColumnRef] | None = None
        self._where: list[_Clause] = []
        self._having: list[_Clause] = []
        self._joins: list[_Join] = []
        self._order: list[_Sort] = []
        self._group: list[_ColumnRef] = []
        self._limit: int | None = None
        self._offset: int | None = None
        return self

    @property
    def table(self) -> TableDefinition:
        """Compiled table this builder targets."""
        return self._table

    # === Identifier Resolution ===

    def _resolve(self, name: str) -> _ColumnRef:
        """Map a field or column name to a known column.

        Accepts camelCase field names, snake_case column names, and
        ``alias.column`` for joined tables.

        Raises:
            FieldNotFoundError: If the column is not part of the known set
        """
        if "." in name:
            alias, column = name.split(".", 1)
            column = column if column == "*" else to_snake_case(column)
            for join in self._joins:
                if join.alias == alias and (column == "*" or join.table.has_column(column)):
                    return _ColumnRef(column, alias)
            if alias == self._table.name and (column == "*" or column in self._columns):
                return _ColumnRef(column)
            raise FieldNotFoundError(name, self._table.name, sorted(self._columns))

        column = name if name in self._columns else to_snake_case(name)
        if column not in self._columns:
            raise FieldNotFoundError(name, self._table.name, sorted(self._columns))
        return _ColumnRef(column)

    def _column_sql(self, ref: _ColumnRef) -> str:
        column = "*" if ref.column == "*" else quote_identifier(ref.column)
        if ref.alias is not None:
            return f"{quote_identifier(ref.alias)}.{column}"
        if self._joins:
            return f"{quote_identifier(self._table.name)}.{column}"
        return column

    # === Clause Recording ===

    def select(self, *fields: str) -> QueryBuilder:
        """Restrict the selected columns (default ``*``)."""
        self._select.extend(self._resolve(f) for f in fields)
        return self

    def distinct(self, *on: str) -> QueryBuilder:
        """SELECT DISTINCT, or DISTINCT ON (fields) when fields are given."""
        self._distinct = [self._resolve(f) for f in on]
        return self

    def _make_condition(self, flt: QueryFilter) -> _Condition | None:
        operator = _parse_operator(flt.operator)
        value = flt.value
        if operator in (FilterOperator.IN, FilterOperator.NIN):
            if not isinstance(value, (list, tuple, set)) or not value:
                return None
        if operator == FilterOperator.BETWEEN and (
            not isinstance(value, (list, tuple)) or len(value) != 2
        ):
            raise QueryBuildError(
                f"'between' on '{flt.field}' needs exactly two bounds, e.g. [low, high].",
                {"field": flt.field, "value": value},
            )
        return _Condition(self._resolve(flt.field), operator, value)

    def where(
        self,
        filter_or_field: QueryFilter | Mapping[str, Any] | str,
        operator: str | FilterOperator = FilterOperator.EQ,
        value: Any = None,
    ) -> QueryBuilder:
        """Add an AND-ed condition.

        Args:
            filter_or_field: A QueryFilter, a filter dict, or a field name
            operator: Operator when a field name is given
            value: Value when a field name is given

        Raises:
            FieldNotFoundError: If the field is not a known column
            QueryBuildError: On an unknown operator or malformed ``between``
        """
        condition = self._make_condition(to_filter(filter_or_field, operator, value))
        if condition is not None:
            self._where.append(condition)
        return self

    def where_all(self, filters: Iterable[QueryFilter | Mapping[str, Any]]) -> QueryBuilder:
        """Add several AND-ed conditions."""
        for flt in filters:
            self.where(flt)
        return self

    def where_or(self, filters: Iterable[QueryFilter | Mapping[str, Any]]) -> QueryBuilder:
        """Add one parenthesized group of OR-ed conditions."""
        conditions = [self._make_condition(to_filter(f)) for f in filters]
        kept = tuple(c for c in conditions if c is not None)
        if kept:
            self._where.append(_AnyOf(kept))
        return self

    def where_raw(self, sql: str, params: Sequence[Any] = ()) -> QueryBuilder:
        """Add a raw AND-ed condition.

        Placeholders in ``sql`` are numbered from ``$1`` within the fragment;
        they are shifted to their final positions when the query renders.

        Raises:
            QueryBuildError: If placeholders and parameters do not line up
        """
        _check_raw_placeholders(sql, params)
        self._where.append(_RawCondition(sql, tuple(params)))
        return self

    def join(
        self,
        table: TableDefinition,
        local_field: str,
        foreign_field: str = "id",
        alias: str | None = None,
        kind: Literal["INNER", "LEFT"] = "INNER",
    ) -> QueryBuilder:
        """Join another compiled table on ``local_field = alias.foreign_field``."""
        alias = alias or table.name
        foreign_column = to_snake_case(foreign_field)
        if not table.has_column(foreign_column):
            raise FieldNotFoundError(foreign_field, table.name, table.column_names)
        local = self._resolve(local_field)
        self._joins.append(_Join(kind, table, alias, local, foreign_column))
        return self

    def left_join(
        self,
        table: TableDefinition,
        local_field: str,
        foreign_field: str = "id",
        alias: str | None = None,
    ) -> QueryBuilder:
        """LEFT JOIN another compiled table."""
        return self.join(table, local_field, foreign_field, alias, kind="LEFT")

    def order_by(
        self,
        field_name: str,
        direction: str = "asc",
        nulls: str | None = None,
    ) -> QueryBuilder:
        """Add a sort key.

        Args:
            field_name: Field or column to sort by
            direction: "asc" or "desc"
            nulls: Optional "first" or "last"
        """
        upper = direction.upper()
        if upper not in ("ASC", "DESC"):
            raise QueryBuildError(f"Sort direction must be 'asc' or 'desc', got '{direction}'")
        nulls_upper = nulls.upper() if nulls else None
        if nulls_upper not in (None, "FIRST", "LAST"):
            raise QueryBuildError(f"Nulls ordering must be 'first' or 'last', got '{nulls}'")
        sort = _Sort(self._resolve(field_name), upper, nulls_upper)  # type: ignore[arg-type]
        self._order.append(sort)
        return self

    def group_by(self, *fields: str) -> QueryBuilder:
        """Add GROUP BY columns."""
        self._group.extend(self._resolve(f) for f in fields)
        return self

    def having(
        self,
        filter_or_field: QueryFilter | Mapping[str, Any] | str,
        operator: str | FilterOperator = FilterOperator.EQ,
        value: Any = None,
    ) -> QueryBuilder:
        """Add a HAVING condition on a grouped column."""
        condition = self._make_condition(to_filter(filter_or_field, operator, value))
        if condition is not None:
            self._having.append(condition)
        return self

    def having_raw(self, sql: str, params: Sequence[Any] = ()) -> QueryBuilder:
        """Add a raw HAVING condition, e.g. ``COUNT(*) > $1``."""
        _check_raw_placeholders(sql, params)
        self._having.append(_RawCondition(sql, tuple(params)))
        return self

    def limit(self, count: int) -> QueryBuilder:
        """Cap the number of rows."""
        if not isinstance(count, int) or isinstance(count, bool) or count < 0:
            raise QueryBuildError(f"Limit must be a non-negative integer, got {count!r}")
        self._limit = min(count, self.MAX_LIMIT)
        return self

    def offset(self, count: int) -> QueryBuilder:
        """Skip rows."""
        if not isinstance(count, int) or isinstance(count, bool) or count < 0:
            raise QueryBuildError(f"Offset must be a non-negative integer, got {count!r}")
        self._offset = count
        return self

    def paginate(self, page: int, page_size: int) -> QueryBuilder:
        """LIMIT/OFFSET for a 1-based page number."""
        if page < 1:
            raise QueryBuildError(f"Page numbers start at 1, got {page}")
        return self.limit(page_size).offset((page - 1) * page_size)

    # === Rendering ===

    def _render_clause(self, clause: _Clause, params: _Params) -> str:
        if isinstance(clause, _RawCondition):
            return f"({params.add(clause.sql, clause.params)})"
        if isinstance(clause, _AnyOf):
            parts = [self._render_clause(c, params) for c in clause.conditions]
            return f"({' OR '.join(parts)})"
        column = self._column_sql(clause.ref)
        sql, values = _condition_fragment(column, clause.operator, clause.value)
        return params.add(sql, values)

    def _render_where(self, params: _Params) -> str:
        if not self._where:
            return ""
        return " WHERE " + " AND ".join(self._render_clause(c, params) for c in self._where)

    def _render_from(self) -> str:
        sql = f" FROM {self._table.qualified_name}"
        if self._joins:
            sql += f" AS {quote_identifier(self._table.name)}"
        for join in self._joins:
            alias = quote_identifier(join.alias)
            foreign = f"{alias}.{quote_identifier(join.foreign_column)}"
            sql += (
                f" {join.kind} JOIN {join.table.qualified_name} AS {alias}"
                f" ON {self._column_sql(join.local)} = {foreign}"
            )
        return sql

    def _render_select_body(self, params: _Params) -> str:
        if self._select:
            columns = ", ".join(self._column_sql(ref) for ref in self._select)
        elif self._joins:
            columns = f"{quote_identifier(self._table.name)}.*"
        else:
            columns = "*"

        distinct = ""
        if self._distinct is not None:
            if self._distinct:
                on = ", ".join(self._column_sql(ref) for ref in self._distinct)
                distinct = f"DISTINCT ON ({on}) "
            else:
                distinct = "DISTINCT "

        sql = f"SELECT {distinct}{columns}{self._render_from()}{self._render_where(params)}"
        if self._group:
            sql += " GROUP BY " + ", ".join(self._column_sql(ref) for ref in self._group)
        if self._having:
            sql += " HAVING " + " AND ".join(self._render_clause(c, params) for c in self._having)
        return sql

    def build_select(self) -> CompiledQuery:
        """Render SELECT with joins, filters, grouping, sorting and pagination."""
        params = _Params()
        sql = self._render_select_body(params)
        if self._order:
            keys = []
            for sort in self._order:
                key = f"{self._column_sql(sort.ref)} {sort.direction}"
                if sort.nulls:
                    key += f" NULLS {sort.nulls}"
                keys.append(key)
            sql += " ORDER BY " + ", ".join(keys)
        if self._limit is not None:
            sql += f" LIMIT {self._limit}"
        if self._offset:
            sql += f" OFFSET {self._offset}"
        return CompiledQuery(sql, params.values)

    def build_count(self) -> CompiledQuery:
        """Render a COUNT over the filtered rows (ignores sorting and pagination)."""
        params = _Params()
        if self._group or self._distinct is not None:
            inner = self._render_select_body(params)
            sql = f'SELECT COUNT(*) AS "count" FROM ({inner}) AS "sub"'
            return CompiledQuery(sql, params.values)
        sql = f'SELECT COUNT(*) AS "count"{self._render_from()}{self._render_where(params)}'
        return CompiledQuery(sql, params.values)

    def _insert_columns(self, data: Mapping[str, Any]) -> list[tuple[str, Any]]:
        return [(self._resolve(key).column, value) for key, value in data.items()]

    def build_insert(self, data: Mapping[str, Any]) -> CompiledQuery:
        """Render INSERT ... RETURNING * for one row."""
        pairs = self._insert_columns(data)
        if not pairs:
            sql = f"INSERT INTO {self._table.qualified_name} DEFAULT VALUES RETURNING *"
            return CompiledQuery(sql)
        columns = ", ".join(quote_identifier(column) for column, _ in pairs)
        placeholders = ", ".join(f"${i}" for i in range(1, len(pairs) + 1))
        return CompiledQuery(
            f"INSERT INTO {self._table.qualified_name} ({columns}) "
            f"VALUES ({placeholders}) RETURNING *",
            [value for _, value in pairs],
        )

    def build_bulk_insert(self, rows: Sequence[Mapping[str, Any]]) -> CompiledQuery:
        """Render a multi-row INSERT ... RETURNING *.

        Columns are the union of all row keys; a row missing a column gets DEFAULT.

        Raises:
            QueryBuildError: If ``rows`` is empty
        """
        if not rows:
            raise QueryBuildError("Bulk insert needs at least one row.")
        resolved = [dict(self._insert_columns(row)) for row in rows]
        columns: list[str] = []
        for row in resolved:
            columns.extend(c for c in row if c not in columns)
        if not columns:
            raise QueryBuildError("Bulk insert rows have no columns. Use build_insert({}) instead.")

        values: list[Any] = []
        tuples = []
        for row in resolved:
            cells = []
            for column in columns:
                if column in row:
                    values.append(row[column])
                    cells.append(f"${len(values)}")
                else:
                    cells.append("DEFAULT")
            tuples.append(f"({', '.join(cells)})")

        column_sql = ", ".join(quote_identifier(c) for c in columns)
        return CompiledQuery(
            f"INSERT INTO {self._table.qualified_name} ({column_sql}) "
            f"VALUES {', '.join(tuples)} RETURNING *",
            values,
        )

    def build_upsert(
        self,
        data: Mapping[str, Any],
        conflict_fields: Sequence[str],
        update_fields: Sequence[str] | None = None,
    ) -> CompiledQuery:
        """Render INSERT ... ON CONFLICT (...) DO UPDATE ... RETURNING *.

        Args:
            data: Row to insert
            conflict_fields: Fields forming the unique key
            update_fields: Fields overwritten on conflict (default: all non-key fields)
        """
        if not conflict_fields:
            raise QueryBuildError("Upsert needs at least one conflict field.")
        insert = self.build_insert(data)
        conflict = [self._resolve(f).column for f in conflict_fields]
        if update_fields is None:
            updates = [c for c, _ in self._insert_columns(data) if c not in conflict]
        else:
            updates = [self._resolve(f).column for f in update_fields]

        assignments = [f"{quote_identifier(c)} = EXCLUDED.{quote_identifier(c)}" for c in updates]
        if self._table.has_updated_at and "updated_at" not in updates:
            assignments.append('"updated_at" = NOW()')

        target = ", ".join(quote_identifier(c) for c in conflict)
        action = f"DO UPDATE SET {', '.join(assignments)}" if assignments else "DO NOTHING"
        sql = insert.sql.removesuffix(" RETURNING *")
        return CompiledQuery(f"{sql} ON CONFLICT ({target}) {action} RETURNING *", insert.params)

    def build_update(self, data: Mapping[str, Any]) -> CompiledQuery:
        """Render UPDATE ... SET ... WHERE ... RETURNING *.

        SET parameters come first; WHERE placeholders continue after them.
        ``updated_at`` is refreshed when the table tracks it.
        """
        params = _Params()
        assignments = []
        for column, value in self._insert_columns(data):
            assignments.append(params.add(f"{quote_identifier(column)} = $1", [value]))
        touched = any(a.startswith('"updated_at"') for a in assignments)
        if self._table.has_updated_at and not touched:
            assignments.append('"updated_at" = NOW()')
        if not assignments:
            raise QueryBuildError("Update needs at least one field to set.")
        sql = (
            f"UPDATE {self._table.qualified_name} SET {', '.join(assignments)}"
            f"{self._render_where(params)} RETURNING *"
        )
        return CompiledQuery(sql, params.values)

    def build_delete(self) -> CompiledQuery:
        """Render DELETE ... WHERE ... RETURNING *."""
        params = _Params()
        sql = f"DELETE FROM {self._table.qualified_name}{self._render_where(params)} RETURNING *"
        return CompiledQuery(sql, params.values)

    def build_soft_delete(self) -> CompiledQuery:
        """Render UPDATE ... SET deleted_at = NOW() ... RETURNING *.

        Raises:
            QueryBuildError: If the table has no deleted_at column
        """
        if not self._table.has_deleted_at:
            raise QueryBuildError(
                f"Table '{self._table.name}' has no deleted_at column. "
                "Set deleteMode to 'soft' or enable timestamps.deletedAt.",
                {"table": self._table.name},
            )
        params = _Params()
        sql = (
            f'UPDATE {self._table.qualified_name} SET "deleted_at" = NOW()'
            f"{self._render_where(params)} RETURNING *"
        )
        return CompiledQuery(sql, params.values)
