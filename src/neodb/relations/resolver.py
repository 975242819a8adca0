"""Relation resolution between entity records.

Relations come from three places:
- reference fields on the entity itself (many_to_one by default)
- relationships declared explicitly on the entity
- derived inverses: a reference field on S pointing at T gives T a one_to_many
  relation named after S's plural (e.g. ``invoices``)

Batch APIs resolve a relation for many records with one ``= ANY($1)`` query,
so listing N records with an include costs one extra round trip, not N.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from neodb.core.naming import (
    junction_columns,
    junction_table_name,
    keys_to_camel,
    pluralize,
    to_snake_case,
)
from neodb.core.types import EntityDefinition, FieldType, RelationDefinition, RelationType
from neodb.exceptions import RecordNotFoundError, RelationNotFoundError
from neodb.sql.compiler import qualified_name, quote_identifier

if TYPE_CHECKING:
    from neodb.core.connection import Executor
    from neodb.core.registry import EntityRegistry
    from neodb.data.computed import ComputedFieldsEngine

logger = logging.getLogger(__name__)

_TO_ONE = (RelationType.MANY_TO_ONE, RelationType.ONE_TO_ONE)

# Include spec: "client", "client.company", or {"relation": "client", "include": [...]}
IncludeSpec = str | Mapping[str, Any]


@dataclass
class ResolvedRelation:
    """Records reached through one relation."""

    name: str
    type: RelationType
    data: list[dict[str, Any]] = field(default_factory=list)

    @property
    def count(self) -> int:
        """Number of related records."""
        return len(self.data)


def _parse_id(value: Any) -> uuid.UUID | None:
    try:
        return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def parse_includes(includes: Sequence[IncludeSpec] | None) -> dict[str, dict[str, Any]]:
    """Turn include specs into a tree of relation name -> nested tree."""
    tree: dict[str, dict[str, Any]] = {}
    for spec in includes or ():
        if isinstance(spec, str):
            node = tree
            for part in spec.split("."):
                node = node.setdefault(part, {})
        else:
            node = tree.setdefault(str(spec["relation"]), {})
            _merge(node, parse_includes(spec.get("include")))
    return tree


def _merge(into: dict[str, Any], other: dict[str, Any]) -> None:
    for key, subtree in other.items():
        _merge(into.setdefault(key, {}), subtree)


class RelationResolver:
    """Resolves, batches and mutates relations between registered entities."""

    MAX_DEPTH = 3

    def __init__(
        self,
        executor: Executor,
        registry: EntityRegistry,
        schema: str = "public",
        computed: ComputedFieldsEngine | None = None,
    ) -> None:
        """Initialize the resolver.

        Args:
            executor: Connection or transaction statements run on
            registry: Registry resolving entity ids, names and tables
            schema: Postgres schema holding entity tables
            computed: Computed fields engine applied to related records
        """
        self._executor = executor
        self._registry = registry
        self._schema = schema
        self._computed = computed

    def with_executor(self, executor: Executor) -> RelationResolver:
        """A copy of this resolver running on another executor (e.g. a transaction)."""
        return RelationResolver(executor, self._registry, self._schema, self._computed)

    # === Relation Discovery ===

    def get_relations(self, entity_id: str) -> list[RelationDefinition]:
        """All relations of an entity: reference fields, declared, then derived.

        Raises:
            EntityNotFoundError: If the entity is not registered
        """
        entity = self._registry.require(entity_id)
        relations: dict[str, RelationDefinition] = {}

        for field_def in entity.stored_fields:
            if field_def.type != FieldType.REFERENCE or field_def.reference is None:
                continue
            target = self._registry.get(field_def.reference.target_entity)
            target_id = target.id if target else field_def.reference.target_entity
            kind = RelationType(field_def.reference.relationship)
            relation = RelationDefinition(
                name=field_def.name,
                type=kind,
                source_entity=entity.id,
                target_entity=target_id,
                foreign_key=field_def.column_name,
                back_reference=None,
                display_field=field_def.reference.display_field,
            )
            if kind == RelationType.MANY_TO_MANY and target is not None:
                relation = self._with_junction(relation, entity, target)
            relations[relation.name] = relation

        for spec in entity.relationships:
            target = self._registry.get(spec.target_entity)
            target_id = target.id if target else spec.target_entity
            target_name = target.name if target else spec.target_entity
            kind = RelationType(spec.type)
            if spec.foreign_key:
                foreign_key = to_snake_case(spec.foreign_key)
            elif kind == RelationType.ONE_TO_MANY:
                owner = spec.back_reference or entity.name
                foreign_key = to_snake_case(owner).removesuffix("_id") + "_id"
            else:
                foreign_key = f"{to_snake_case(target_name)}_id"
            relation = RelationDefinition(
                name=spec.name,
                type=kind,
                source_entity=entity.id,
                target_entity=target_id,
                foreign_key=foreign_key,
                back_reference=spec.back_reference,
            )
            if kind == RelationType.MANY_TO_MANY and target is not None:
                relation = self._with_junction(relation, entity, target)
            relations[relation.name] = relation

        for relation in self._derived_inverses(entity):
            relations.setdefault(relation.name, relation)

        return list(relations.values())

    def _with_junction(
        self, relation: RelationDefinition, source: EntityDefinition, target: EntityDefinition
    ) -> RelationDefinition:
        source_column, target_column = junction_columns(source.name, target.name)
        return relation.model_copy(
            update={
                "junction_table": junction_table_name(source.name, target.name),
                "source_column": source_column,
                "target_column": target_column,
                "foreign_key": target_column,
            }
        )

    def _derived_inverses(self, entity: EntityDefinition) -> list[RelationDefinition]:
        """one_to_many (and inverse many_to_many) relations other entities point at us with."""
        derived = []
        for other in self._registry.all():
            plural = to_snake_case(other.plural_name or pluralize(other.name))
            for field_def in other.stored_fields:
                ref = field_def.reference
                if field_def.type != FieldType.REFERENCE or ref is None:
                    continue
                referenced = self._registry.get(ref.target_entity)
                if referenced is None or referenced.id != entity.id:
                    continue
                kind = RelationType(ref.relationship)
                if kind == RelationType.MANY_TO_MANY:
                    if other.id == entity.id:
                        continue
                    inverse = RelationDefinition(
                        name=plural,
                        type=RelationType.MANY_TO_MANY,
                        source_entity=entity.id,
                        target_entity=other.id,
                        foreign_key="",
                        back_reference=field_def.name,
                    )
                    derived.append(self._with_junction(inverse, entity, other))
                elif kind in _TO_ONE:
                    derived.append(
                        RelationDefinition(
                            name=plural,
                            type=RelationType.ONE_TO_MANY,
                            source_entity=entity.id,
                            target_entity=other.id,
                            foreign_key=field_def.column_name,
                            back_reference=field_def.name,
                        )
                    )
        return derived

    def get_relation(self, entity_id: str, relation_name: str) -> RelationDefinition:
        """Look up one relation by name.

        ``clientId``, ``client_id`` and ``client`` all find a reference field
        named ``clientId``.

        Raises:
            RelationNotFoundError: If the entity has no such relation
        """
        relations = self.get_relations(entity_id)
        wanted = to_snake_case(relation_name)
        for relation in relations:
            if relation.name == relation_name:
                return relation
        for relation in relations:
            snake = to_snake_case(relation.name)
            if wanted in (snake, snake.removesuffix("_id")):
                return relation
        entity = self._registry.require(entity_id)
        raise RelationNotFoundError(relation_name, entity.name, [r.name for r in relations])

    # === SQL Helpers ===

    def _junction(self, relation: RelationDefinition) -> tuple[str, str, str]:
        """Qualified junction table and quoted source/target columns.

        Raises:
            EntityNotFoundError: If the many-to-many target is not registered
            RelationNotFoundError: If the relation has no junction table
        """
        if not (relation.junction_table and relation.source_column and relation.target_column):
            # Junction names are only known once the target is registered
            self._registry.require(relation.target_entity)
            source = self._registry.require(relation.source_entity)
            raise RelationNotFoundError(relation.name, source.name)
        return (
            qualified_name(self._schema, relation.junction_table),
            quote_identifier(relation.source_column),
            quote_identifier(relation.target_column),
        )

    def _table(self, entity_id: str) -> tuple[EntityDefinition, str]:
        entity = self._registry.require(entity_id)
        return entity, qualified_name(self._schema, entity.table_name)

    @staticmethod
    def _live(entity: EntityDefinition, alias: str) -> str:
        return f' AND {alias}."deleted_at" IS NULL' if entity.has_deleted_at else ""

    @staticmethod
    def _newest_first(entity: EntityDefinition, alias: str) -> str:
        return f' ORDER BY {alias}."created_at" DESC' if entity.timestamps.created_at else ""

    def _records(
        self, entity: EntityDefinition, rows: Sequence[Mapping[str, Any]]
    ) -> list[dict[str, Any]]:
        records = [keys_to_camel(dict(row)) for row in rows]
        if self._computed is not None:
            records = self._computed.compute_for_records(entity.id, records)
        return records

    def _select_related(
        self, relation: RelationDefinition, ids: list[uuid.UUID]
    ) -> tuple[EntityDefinition, list[dict[str, Any]]]:
        """Target rows for the source ids, each tagged with ``_source_id``."""
        source, source_table = self._table(relation.source_entity)
        target, target_table = self._table(relation.target_entity)
        fk = quote_identifier(relation.foreign_key)

        if relation.type in _TO_ONE:
            sql = (
                f'SELECT s."id" AS "_source_id", t.* FROM {target_table} t '
                f"JOIN {source_table} s ON s.{fk} = t.\"id\" "
                f'WHERE s."id" = ANY($1){self._live(target, "t")}'
            )
        elif relation.type == RelationType.ONE_TO_MANY:
            sql = (
                f'SELECT t.{fk} AS "_source_id", t.* FROM {target_table} t '
                f"WHERE t.{fk} = ANY($1){self._live(target, 't')}{self._newest_first(target, 't')}"
            )
        else:
            junction, source_col, target_col = self._junction(relation)
            sql = (
                f'SELECT j.{source_col} AS "_source_id", t.* FROM {target_table} t '
                f'JOIN {junction} j ON j.{target_col} = t."id" '
                f"WHERE j.{source_col} = ANY($1){self._live(target, 't')} "
                f'ORDER BY j."created_at" DESC'
            )
        return target, self._executor.query(sql, [ids])

    # === Resolution ===

    def resolve_relation(
        self, entity_id: str, record_id: str, relation_name: str
    ) -> ResolvedRelation:
        """Records related to one source record.

        Args:
            entity_id: Source entity id or name
            record_id: Source record id
            relation_name: Relation to follow

        Returns:
            ResolvedRelation (empty when the source record does not exist)

        Raises:
            RelationNotFoundError: If the entity has no such relation
        """
        relation = self.get_relation(entity_id, relation_name)
        grouped = self.batch_resolve_relation(entity_id, [record_id], relation.name)
        return ResolvedRelation(relation.name, RelationType(relation.type), grouped[str(record_id)])

    def batch_resolve_relation(
        self, entity_id: str, record_ids: Sequence[str], relation_name: str
    ) -> dict[str, list[dict[str, Any]]]:
        """Resolve a relation for many source records in one query.

        Every requested id gets an entry, an empty list when nothing is related.

        Args:
            entity_id: Source entity id or name
            record_ids: Source record ids
            relation_name: Relation to follow

        Returns:
            Source id -> related records (camelCase keys)
        """
        relation = self.get_relation(entity_id, relation_name)
        results: dict[str, list[dict[str, Any]]] = {str(rid): [] for rid in record_ids}
        canonical: dict[str, list[str]] = {}
        for rid in results:
            parsed = _parse_id(rid)
            if parsed is not None:
                canonical.setdefault(str(parsed), []).append(rid)
        if not canonical:
            return results

        ids = [uuid.UUID(key) for key in canonical]
        target, rows = self._select_related(relation, ids)
        for row in rows:
            source_id = str(row.pop("_source_id"))
            for requested in canonical.get(source_id, ()):
                results[requested].extend(self._records(target, [row]))
        return results

    def resolve_relations(
        self,
        entity_id: str,
        record_id: str,
        includes: Sequence[IncludeSpec],
        max_depth: int | None = None,
    ) -> dict[str, ResolvedRelation]:
        """Resolve several relations of one record, with nested includes.

        Nested relations are attached to each related record under the
        relation name, batched per level.
        """
        tree = parse_includes(includes)
        depth_limit = self.MAX_DEPTH if max_depth is None else max_depth
        results: dict[str, ResolvedRelation] = {}
        for name, subtree in tree.items():
            resolved = self.resolve_relation(entity_id, record_id, name)
            if subtree and depth_limit > 1:
                relation = self.get_relation(entity_id, name)
                self._attach(relation.target_entity, resolved.data, subtree, depth_limit - 1)
            results[name] = resolved
        return results

    def attach_includes(
        self,
        entity_id: str,
        records: list[dict[str, Any]],
        includes: Sequence[IncludeSpec],
        max_depth: int | None = None,
    ) -> list[dict[str, Any]]:
        """Attach related records to each record under the relation name.

        One query per relation per nesting level, regardless of record count.
        """
        depth_limit = self.MAX_DEPTH if max_depth is None else max_depth
        self._attach(entity_id, records, parse_includes(includes), depth_limit)
        return records

    def _attach(
        self, entity_id: str, records: list[dict[str, Any]], tree: dict[str, Any], depth: int
    ) -> None:
        if not records or not tree or depth < 1:
            return
        if depth == 1 and any(tree.values()):
            logger.warning(f"Include depth limit reached on '{entity_id}', nested includes dropped")
        ids = [str(r["id"]) for r in records if r.get("id") is not None]
        for name, subtree in tree.items():
            grouped = self.batch_resolve_relation(entity_id, ids, name)
            related: list[dict[str, Any]] = []
            for record in records:
                record[name] = grouped.get(str(record.get("id")), [])
                related.extend(record[name])
            if subtree:
                relation = self.get_relation(entity_id, name)
                self._attach(relation.target_entity, related, subtree, depth - 1)

    # === Mutation ===

    def create_relation(
        self, entity_id: str, record_id: str, relation_name: str, target_id: str
    ) -> None:
        """Link two records through a relation. Idempotent.

        *-to-one relations set the foreign key on the source, one_to_many sets
        it on the target, and many_to_many inserts a junction row.

        Raises:
            RelationNotFoundError: If the entity has no such relation
            RecordNotFoundError: If the record holding the foreign key is missing
            ConstraintError: If the other record does not exist
        """
        relation = self.get_relation(entity_id, relation_name)
        source_id, linked_id = _parse_id(record_id), _parse_id(target_id)
        if source_id is None:
            raise RecordNotFoundError(record_id, entity_id)
        if linked_id is None:
            raise RecordNotFoundError(target_id, relation.target_entity)
        self._link(relation, source_id, linked_id, record_id, target_id, link=True)

    def remove_relation(
        self, entity_id: str, record_id: str, relation_name: str, target_id: str
    ) -> None:
        """Unlink two records. Removing a link that does not exist is a no-op."""
        relation = self.get_relation(entity_id, relation_name)
        source_id, linked_id = _parse_id(record_id), _parse_id(target_id)
        if source_id is None or linked_id is None:
            return
        self._link(relation, source_id, linked_id, record_id, target_id, link=False)

    def _link(
        self,
        relation: RelationDefinition,
        source_id: uuid.UUID,
        linked_id: uuid.UUID,
        record_id: str,
        target_id: str,
        link: bool,
    ) -> None:
        fk = quote_identifier(relation.foreign_key)

        if relation.type == RelationType.MANY_TO_MANY:
            junction, source_col, target_col = self._junction(relation)
            if link:
                sql = (
                    f"INSERT INTO {junction} ({source_col}, {target_col}) "
                    "VALUES ($1, $2) ON CONFLICT DO NOTHING"
                )
            else:
                sql = f"DELETE FROM {junction} WHERE {source_col} = $1 AND {target_col} = $2"
            self._executor.execute(sql, [source_id, linked_id])
            return

        if relation.type in _TO_ONE:
            owner, table = self._table(relation.source_entity)
            row_id, owner_label = source_id, record_id
            value: uuid.UUID | None = linked_id if link else None
            guard = "" if link else f" AND {fk} = $3"
        else:
            owner, table = self._table(relation.target_entity)
            row_id, owner_label = linked_id, target_id
            value = source_id if link else None
            guard = "" if link else f" AND {fk} = $3"

        params: list[Any] = [value, row_id]
        if not link:
            params.append(linked_id if relation.type in _TO_ONE else source_id)
        sql = f'UPDATE {table} SET {fk} = $1 WHERE "id" = $2{guard} RETURNING "id"'
        rows = self._executor.query(sql, params)
        if link and not rows:
            raise RecordNotFoundError(owner_label, owner.name)

    # === Display Values ===

    def get_display_value(
        self, entity_id: str, record_id: str, display_field: str = "name"
    ) -> str | None:
        """Label of one record, e.g. a client's name."""
        return self.batch_get_display_values(entity_id, [record_id], display_field).get(
            str(record_id)
        )

    def batch_get_display_values(
        self, entity_id: str, record_ids: Sequence[str], display_field: str = "name"
    ) -> dict[str, str | None]:
        """Labels for many records in one query. Missing records map to None.

        Falls back to the record id when the entity has no such field.
        """
        entity, table = self._table(entity_id)
        results: dict[str, str | None] = {str(rid): None for rid in record_ids}
        ids = [p for p in (_parse_id(rid) for rid in record_ids) if p is not None]
        if not ids:
            return results

        field_def = entity.get_field(display_field)
        if field_def is None or field_def.is_computed:
            column = '"id"'
        else:
            column = quote_identifier(field_def.column_name)
        rows = self._executor.query(
            f'SELECT "id", {column} AS "label" FROM {table} WHERE "id" = ANY($1)', [ids]
        )
        labels = {str(row["id"]): row["label"] for row in rows}
        for rid in record_ids:
            parsed = _parse_id(rid)
            label = labels.get(str(parsed)) if parsed else None
            results[str(rid)] = None if label is None else str(label)
        return results

