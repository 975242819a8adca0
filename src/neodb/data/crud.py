"""CRUD operations over compiled entity tables.

Every operation composes the Query Builder with an executor (a pooled
DatabaseConnection or an open TransactionScope). Records go in with camelCase
or snake_case keys and come back camelCase, with computed fields applied.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

from neodb.core.naming import keys_to_camel, to_snake_case
from neodb.core.types import (
    JSON_FIELD_TYPES,
    DeleteMode,
    EntityDefinition,
    FieldType,
    FilterOperator,
    FindOptions,
    PaginatedResult,
    QueryFilter,
    QueryPagination,
)
from neodb.data.validation import ValidationEngine
from neodb.exceptions import RecordNotFoundError, ValidationError
from neodb.sql.compiler import TableDefinition, compile_entity
from neodb.sql.query_builder import QueryBuilder, to_filter

if TYPE_CHECKING:
    from neodb.core.connection import Executor
    from neodb.core.registry import EntityRegistry
    from neodb.data.computed import ComputedFieldsEngine

logger = logging.getLogger(__name__)

FilterInput = QueryFilter | Mapping[str, Any]

DEFAULT_PAGE_SIZE = 25

# Bookkeeping columns callers may not write directly
_MANAGED_COLUMNS = frozenset({"created_at", "updated_at", "deleted_at"})


def parse_uuid(value: Any) -> uuid.UUID | None:
    """Parse a record id, returning None when it is not a UUID."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def parse_uuids(values: Sequence[Any]) -> list[uuid.UUID]:
    """Parse record ids for ``= ANY($n)``, dropping the ones that are not UUIDs."""
    parsed = (parse_uuid(v) for v in values)
    return [v for v in parsed if v is not None]


class CrudService:
    """Create, read, update and delete records of registered entities."""

    def __init__(
        self,
        executor: Executor,
        registry: EntityRegistry,
        schema: str = "public",
        validator: ValidationEngine | None = None,
        computed: ComputedFieldsEngine | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            executor: Connection or transaction statements run on
            registry: Registry resolving entity ids and names
            schema: Postgres schema holding entity tables
            validator: Validation engine (a default one is created if omitted)
            computed: Computed fields engine applied to returned records
        """
        self._executor = executor
        self._registry = registry
        self._schema = schema
        self._validator = validator or ValidationEngine()
        self._computed = computed
        self._tables: dict[str, TableDefinition] = {}

    def with_executor(self, executor: Executor) -> CrudService:
        """A copy of this service running on another executor (e.g. a transaction)."""
        clone = CrudService(executor, self._registry, self._schema, self._validator, self._computed)
        clone._tables = self._tables
        return clone

    def invalidate(self) -> None:
        """Forget compiled tables after entities are (re)registered."""
        self._tables.clear()

    # === Helpers ===

    def table_for(self, entity: EntityDefinition) -> TableDefinition:
        """Compiled table for an entity, cached per entity id."""
        table = self._tables.get(entity.id)
        if table is None:
            table = compile_entity(entity, self._schema, self._registry)
            self._tables[entity.id] = table
        return table

    def _builder(self, entity_id: str) -> tuple[EntityDefinition, QueryBuilder]:
        entity = self._registry.require(entity_id)
        return entity, QueryBuilder(self.table_for(entity))

    def _to_record(self, entity: EntityDefinition, row: Mapping[str, Any]) -> dict[str, Any]:
        record = keys_to_camel(dict(row))
        if self._computed is not None:
            record = self._computed.compute_for_record(entity.id, record)
        return record

    def _to_records(
        self, entity: EntityDefinition, rows: Sequence[Mapping[str, Any]]
    ) -> list[dict[str, Any]]:
        return [self._to_record(entity, row) for row in rows]

    def _to_columns(self, entity: EntityDefinition, data: Mapping[str, Any]) -> dict[str, Any]:
        """Map record keys to columns, dropping unknown, computed and managed keys."""
        columns: dict[str, Any] = {}
        for key, value in data.items():
            if key == "id":
                columns["id"] = value
                continue
            field_def = entity.get_field(key)
            if field_def is None or field_def.is_computed:
                continue
            if field_def.column_name in _MANAGED_COLUMNS:
                continue
            if FieldType(field_def.type) in JSON_FIELD_TYPES and value is not None:
                value = json.dumps(value) if not isinstance(value, str) else value
            columns[field_def.column_name] = value
        return columns

    @staticmethod
    def _column_for(entity: EntityDefinition, key: str) -> str:
        if key == "id":
            return key
        field_def = entity.get_field(key)
        return field_def.column_name if field_def is not None else to_snake_case(key)

    def _prepare(
        self, entity: EntityDefinition, data: Mapping[str, Any], partial: bool = False
    ) -> dict[str, Any]:
        sanitized = self._validator.sanitize(entity, data)
        self._validator.validate_or_raise(entity, sanitized, partial=partial)
        return self._to_columns(entity, sanitized)

    def _apply_filters(
        self, builder: QueryBuilder, filters: Sequence[FilterInput] | None
    ) -> None:
        for raw in filters or ():
            builder.where(self._coerce_filter(builder.table, to_filter(raw)))

    @staticmethod
    def _coerce_filter(table: TableDefinition, flt: QueryFilter) -> QueryFilter:
        """UUID lists are sent as uuid[] so ``= ANY`` matches UUID columns."""
        operator = FilterOperator(flt.operator)
        if operator not in (FilterOperator.IN, FilterOperator.NIN):
            return flt
        if not isinstance(flt.value, (list, tuple, set)):
            return flt
        column = table.get_column(flt.field) or table.get_column(to_snake_case(flt.field))
        if column is None or column.type != "UUID":
            return flt
        parsed = parse_uuids(list(flt.value))
        return flt.model_copy(update={"value": parsed}) if parsed else flt

    @staticmethod
    def _exclude_deleted(builder: QueryBuilder) -> None:
        if builder.table.has_deleted_at:
            builder.where("deleted_at", FilterOperator.IS_NULL)

    def _fetch_row(
        self, entity_id: str, record_id: str, include_deleted: bool = True
    ) -> tuple[EntityDefinition, dict[str, Any] | None]:
        entity, builder = self._builder(entity_id)
        parsed = parse_uuid(record_id)
        if parsed is None:
            return entity, None
        builder.where("id", FilterOperator.EQ, parsed)
        if not include_deleted:
            self._exclude_deleted(builder)
        query = builder.limit(1).build_select()
        return entity, self._executor.query_one(query.sql, query.params)

    # === Create ===

    def create(self, entity_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
        """Insert one record.

        Args:
            entity_id: Entity id or name
            data: Field values

        Returns:
            The created record (camelCase keys, computed fields applied)

        Raises:
            EntityNotFoundError: If the entity is not registered
            ValidationError: If the data fails validation
            ConstraintError: If the backend rejects the row
        """
        entity, builder = self._builder(entity_id)
        query = builder.build_insert(self._prepare(entity, data))
        rows = self._executor.query(query.sql, query.params)
        return self._to_record(entity, rows[0])

    def create_many(
        self, entity_id: str, records: Sequence[Mapping[str, Any]]
    ) -> list[dict[str, Any]]:
        """Insert several records in one statement.

        Every record is validated first. If any fails, nothing is inserted and
        the errors are reported per row as ``"<row>.<field>"``.
        """
        entity, builder = self._builder(entity_id)
        if not records:
            return []

        prepared: list[dict[str, Any]] = []
        errors: dict[str, str] = {}
        for row, data in enumerate(records):
            sanitized = self._validator.sanitize(entity, data)
            for name, message in self._validator.validate(entity, sanitized).items():
                errors[f"{row}.{name}"] = message
            prepared.append(self._to_columns(entity, sanitized))
        if errors:
            raise ValidationError(
                f"Validation failed for {len(records)} '{entity.name}' record(s)", errors
            )

        query = builder.build_bulk_insert(prepared)
        rows = self._executor.query(query.sql, query.params)
        return self._to_records(entity, rows)

    # === Read ===

    def find_many(
        self, entity_id: str, options: FindOptions | Mapping[str, Any] | None = None
    ) -> PaginatedResult:
        """List records with filters, sorting and pagination.

        Soft-deleted rows are excluded unless ``include_deleted`` is set. Sorting
        falls back to the entity's default sort, then to ``created_at DESC``.

        Args:
            entity_id: Entity id or name
            options: FindOptions or an equivalent dict

        Returns:
            PaginatedResult with the page of records and the total count
        """
        opts = options if isinstance(options, FindOptions) else None
        if opts is None:
            opts = FindOptions.model_validate(options or {})
        entity, builder = self._builder(entity_id)
        self._apply_filters(builder, opts.filters)
        if not opts.include_deleted:
            self._exclude_deleted(builder)

        count_query = builder.build_count()
        total_row = self._executor.query_one(count_query.sql, count_query.params)
        total = int(total_row["count"]) if total_row else 0

        sorts = opts.sorts or ([entity.default_sort] if entity.default_sort else [])
        for sort in sorts:
            builder.order_by(sort.field, sort.direction, sort.nulls)
        if not sorts and builder.table.has_created_at:
            builder.order_by("created_at", "desc")

        pagination = opts.pagination or QueryPagination(
            page=1, page_size=entity.page_size or DEFAULT_PAGE_SIZE
        )
        builder.paginate(pagination.page, pagination.page_size)
        query = builder.build_select()
        rows = self._executor.query(query.sql, query.params)

        return PaginatedResult(
            data=self._to_records(entity, rows),
            total_count=total,
            page=pagination.page,
            page_size=pagination.page_size,
            has_more=pagination.offset + len(rows) < total,
        )

    def find_by_id(self, entity_id: str, record_id: str) -> dict[str, Any] | None:
        """Fetch one record by id, or None.

        A soft-deleted record is still returned, with ``deletedAt`` set.
        """
        entity, row = self._fetch_row(entity_id, record_id)
        return self._to_record(entity, row) if row else None

    def find_one(
        self,
        entity_id: str,
        filters: Sequence[FilterInput] | None = None,
        include_deleted: bool = False,
    ) -> dict[str, Any] | None:
        """First record matching all filters, or None."""
        result = self.find_many(
            entity_id,
            FindOptions(
                filters=[to_filter(f) for f in filters or ()],
                pagination=QueryPagination(page=1, page_size=1),
                include_deleted=include_deleted,
            ),
        )
        return result.data[0] if result.data else None

    def count(
        self,
        entity_id: str,
        filters: Sequence[FilterInput] | None = None,
        include_deleted: bool = False,
    ) -> int:
        """Number of records matching all filters."""
        _, builder = self._builder(entity_id)
        self._apply_filters(builder, filters)
        if not include_deleted:
            self._exclude_deleted(builder)
        query = builder.build_count()
        row = self._executor.query_one(query.sql, query.params)
        return int(row["count"]) if row else 0

    def exists(self, entity_id: str, record_id: str) -> bool:
        """Whether a live (not soft-deleted) record with this id exists."""
        _, row = self._fetch_row(entity_id, record_id, include_deleted=False)
        return row is not None

    # === Update ===

    def update(self, entity_id: str, record_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
        """Update one record. Only the given fields change.

        Raises:
            RecordNotFoundError: If no record has this id
            ValidationError: If the data fails validation
        """
        entity, existing = self._fetch_row(entity_id, record_id)
        if existing is None:
            raise RecordNotFoundError(record_id, entity.name)

        columns = self._prepare(entity, data, partial=True)
        columns.pop("id", None)
        table = self.table_for(entity)
        if not columns and not table.has_updated_at:
            return self._to_record(entity, existing)

        builder = QueryBuilder(table).where("id", FilterOperator.EQ, existing["id"])
        query = builder.build_update(columns)
        rows = self._executor.query(query.sql, query.params)
        return self._to_record(entity, rows[0])

    def update_many(
        self, entity_id: str, filters: Sequence[FilterInput], data: Mapping[str, Any]
    ) -> list[dict[str, Any]]:
        """Update every record matching the filters.

        Raises:
            ValidationError: If no filters are given or the data is invalid
        """
        entity, builder = self._builder(entity_id)
        if not filters:
            raise ValidationError(
                f"update_many on '{entity.name}' needs at least one filter. "
                "Use explicit filters to update all records."
            )
        columns = self._prepare(entity, data, partial=True)
        columns.pop("id", None)
        self._apply_filters(builder, filters)
        self._exclude_deleted(builder)
        query = builder.build_update(columns)
        rows = self._executor.query(query.sql, query.params)
        return self._to_records(entity, rows)

    def upsert(
        self, entity_id: str, data: Mapping[str, Any], unique_fields: Sequence[str]
    ) -> dict[str, Any]:
        """Insert a record, or update the one that shares its unique fields.

        Args:
            entity_id: Entity id or name
            data: Field values (must include every unique field)
            unique_fields: Fields forming the conflict target

        Raises:
            ValidationError: If a unique field is missing from ``data``
        """
        entity, builder = self._builder(entity_id)
        given = {self._column_for(entity, key) for key in data}
        targets = {f: self._column_for(entity, f) for f in unique_fields}
        missing = [f for f, column in targets.items() if column not in given]
        if not unique_fields or missing:
            raise ValidationError(
                f"Upsert on '{entity.name}' needs values for its unique fields: "
                f"{', '.join(missing) or '(none given)'}",
                {f: "required for upsert" for f in missing},
            )
        columns = self._prepare(entity, data)
        query = builder.build_upsert(columns, list(targets.values()))
        rows = self._executor.query(query.sql, query.params)
        return self._to_record(entity, rows[0])

    # === Delete ===

    def delete(self, entity_id: str, record_id: str) -> dict[str, Any]:
        """Delete one record according to the entity's delete mode.

        Returns:
            The deleted record (for soft deletes, with ``deletedAt`` set)

        Raises:
            RecordNotFoundError: If no live record has this id
        """
        entity, existing = self._fetch_row(entity_id, record_id, include_deleted=False)
        if existing is None:
            raise RecordNotFoundError(record_id, entity.name)

        builder = QueryBuilder(self.table_for(entity))
        builder.where("id", FilterOperator.EQ, existing["id"])
        if entity.delete_mode == DeleteMode.SOFT:
            query = builder.build_soft_delete()
        else:
            query = builder.build_delete()
        rows = self._executor.query(query.sql, query.params)
        logger.debug(f"Deleted {entity.name} {record_id} ({entity.delete_mode})")
        return self._to_record(entity, rows[0] if rows else existing)

    def delete_many(self, entity_id: str, filters: Sequence[FilterInput]) -> int:
        """Delete every record matching the filters. Returns the number deleted.

        Raises:
            ValidationError: If no filters are given
        """
        entity, builder = self._builder(entity_id)
        if not filters:
            raise ValidationError(
                f"delete_many on '{entity.name}' needs at least one filter. "
                "Use explicit filters to delete all records."
            )
        self._apply_filters(builder, filters)
        self._exclude_deleted(builder)
        if entity.delete_mode == DeleteMode.SOFT:
            query = builder.build_soft_delete()
        else:
            query = builder.build_delete()
        return len(self._executor.query(query.sql, query.params))

    def restore(self, entity_id: str, record_id: str) -> dict[str, Any]:
        """Clear ``deleted_at`` on a soft-deleted record.

        Raises:
            ValidationError: If the entity does not soft-delete
            RecordNotFoundError: If no record has this id
        """
        entity, builder = self._builder(entity_id)
        if not builder.table.has_deleted_at:
            raise ValidationError(
                f"Entity '{entity.name}' does not support soft delete, so there is "
                "nothing to restore. Set deleteMode to 'soft' to enable it."
            )
        parsed = parse_uuid(record_id)
        if parsed is None:
            raise RecordNotFoundError(record_id, entity.name)
        query = builder.where("id", FilterOperator.EQ, parsed).build_update({"deleted_at": None})
        rows = self._executor.query(query.sql, query.params)
        if not rows:
            raise RecordNotFoundError(record_id, entity.name)
        return self._to_record(entity, rows[0])
