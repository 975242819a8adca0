"""Schema manager: bookkeeping tables, schema sync and migrations.

Entity tables are created and altered from diffs between the stored snapshot
of each entity and its incoming definition. Every migration runs in its own
transaction: either all of its statements and its log row commit, or nothing
does and the migration stays pending.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Connection, Engine, delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from neodb.core.naming import junction_table_name, to_snake_case
from neodb.core.registry import EntityRegistry
from neodb.core.types import EntityDefinition, FieldType, RelationType
from neodb.exceptions import MigrationError, NeoDBError, QueryError
from neodb.schema.models import Base, EntitySnapshot, MigrationRecord
from neodb.sql.compiler import (
    compile_entity,
    generate_create_table_sql,
    generate_junction_table_sql,
    generate_migration_sql,
    quote_identifier,
)
from neodb.sql.query_builder import QueryBuilder

if TYPE_CHECKING:
    from neodb.core.connection import DatabaseConnection, TransactionScope

logger = logging.getLogger(__name__)

# duplicate_table, duplicate_column, duplicate_object
ALREADY_EXISTS_SQLSTATES = frozenset({"42P07", "42701", "42710"})

_DROP_COLUMN = re.compile(r'DROP COLUMN IF EXISTS "([^"]+)"')
_DROP_TABLE = re.compile(r'DROP TABLE IF EXISTS "[^"]+"\."([^"]+)"')


def checksum(statements: Sequence[str]) -> str:
    """SHA-256 over a migration's up statements."""
    return hashlib.sha256("\n".join(statements).encode()).hexdigest()


def advisory_lock_key(schema: str) -> int:
    """Signed 64-bit advisory lock key derived from the schema name."""
    digest = hashlib.sha256(f"neodb:{schema}".encode()).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def creation_order(entities: Sequence[EntityDefinition]) -> list[EntityDefinition]:
    """Order entities so referenced tables come before the tables referencing them.

    Entities in a reference cycle keep their input order.
    """
    registry = EntityRegistry(entities)
    ordered: dict[str, EntityDefinition] = {}
    visiting: set[str] = set()

    def visit(entity: EntityDefinition) -> None:
        if entity.id in ordered or entity.id in visiting:
            return
        visiting.add(entity.id)
        for field_def in entity.stored_fields:
            if field_def.type != FieldType.REFERENCE or field_def.reference is None:
                continue
            target = registry.get(field_def.reference.target_entity)
            if target is not None and target.id != entity.id:
                visit(target)
        visiting.discard(entity.id)
        ordered[entity.id] = entity

    for entity in entities:
        visit(entity)
    return list(ordered.values())


def junction_pairs(registry: EntityRegistry) -> list[tuple[EntityDefinition, EntityDefinition]]:
    """Entity pairs joined by a many-to-many reference field or relationship."""
    pairs: dict[str, tuple[EntityDefinition, EntityDefinition]] = {}
    for entity in registry.all():
        targets = [
            f.reference.target_entity
            for f in entity.stored_fields
            if f.type == FieldType.REFERENCE
            and f.reference is not None
            and f.reference.relationship == RelationType.MANY_TO_MANY
        ]
        targets += [
            r.target_entity
            for r in entity.relationships
            if r.type == RelationType.MANY_TO_MANY
        ]
        for key in targets:
            target = registry.get(key)
            if target is None:
                logger.warning(f"Many-to-many target '{key}' of '{entity.name}' is unknown")
                continue
            pairs.setdefault(junction_table_name(entity.name, target.name), (entity, target))
    return list(pairs.values())


# === Results ===


@dataclass
class SchemaMigration:
    """One ordered step of a migration plan."""

    id: str
    version: int
    name: str
    kind: str  # create | modify | drop
    up: list[str]
    down: list[str]
    entity_id: str | None = None
    entity: EntityDefinition | None = None  # shape after the migration, None for drops
    previous: EntityDefinition | None = None  # shape before, None for creates
    is_destructive: bool = False

    @property
    def checksum(self) -> str:
        """SHA-256 of the up statements."""
        return checksum(self.up)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly view for CLI output."""
        return {
            "id": self.id,
            "version": self.version,
            "name": self.name,
            "kind": self.kind,
            "destructive": self.is_destructive,
            "up": self.up,
            "down": self.down,
        }


@dataclass
class MigrationPlan:
    """Ordered migrations between two entity sets."""

    migrations: list[SchemaMigration] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_destructive(self) -> bool:
        """True when any migration drops a table or column."""
        return any(m.is_destructive for m in self.migrations)

    @property
    def is_empty(self) -> bool:
        """True when there is nothing to apply."""
        return not self.migrations


@dataclass
class SyncResult:
    """Outcome of ``sync_schema``."""

    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        """True when every entity synced."""
        return not self.errors


@dataclass
class ApplyResult:
    """Outcome of ``apply_migrations``."""

    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        """True when no migration failed."""
        return not self.errors


class SchemaManager:
    """Creates and evolves entity tables, tracking state in bookkeeping tables.

    ``sync_schema``, ``apply_migrations`` and ``rollback_migrations`` are
    serialized in-process by a lock and across processes by a Postgres
    transaction-scoped advisory lock.
    """

    def __init__(
        self,
        connection: DatabaseConnection,
        registry: EntityRegistry | None = None,
        schema: str | None = None,
    ) -> None:
        """Initialize the schema manager.

        Args:
            connection: Database connection
            registry: Registry resolving reference targets (shared with the facade)
            schema: Postgres schema (defaults to the connection's)
        """
        self._connection = connection
        self._registry = registry if registry is not None else EntityRegistry()
        self._schema = schema or connection.schema
        self._lock = threading.Lock()
        self._initialized = False

    @property
    def schema(self) -> str:
        """Postgres schema this manager maintains."""
        return self._schema

    def _bind(self, bind: Connection | Engine) -> Any:
        return bind.execution_options(schema_translate_map={None: self._schema})

    def _session(self, tx: TransactionScope | None = None) -> Session:
        if tx is None:
            return Session(self._bind(self._connection.engine))
        return Session(self._bind(tx.connection))

    def _lock_schema(self, tx: TransactionScope) -> None:
        tx.query("SELECT pg_advisory_xact_lock($1)", [advisory_lock_key(self._schema)])

    # === Bookkeeping ===

    def initialize(self) -> None:
        """Create the schema and bookkeeping tables if missing. Idempotent."""
        if self._initialized:
            return
        with self._connection.transaction() as tx:
            tx.execute(f"CREATE SCHEMA IF NOT EXISTS {quote_identifier(self._schema)}")
            Base.metadata.create_all(self._bind(tx.connection), checkfirst=True)
        self._initialized = True
        logger.info(f"Bookkeeping tables ready in schema '{self._schema}'")

    def get_stored_entity(self, entity_id: str) -> EntityDefinition | None:
        """Last-synced shape of an entity, or None if it was never synced."""
        with self._session() as session:
            snapshot = session.get(EntitySnapshot, entity_id)
            return EntityDefinition.model_validate(snapshot.schema_json) if snapshot else None

    def get_all_stored_entities(self) -> list[EntityDefinition]:
        """Last-synced shapes of every entity."""
        with self._session() as session:
            snapshots = session.scalars(select(EntitySnapshot).order_by(EntitySnapshot.name))
            return [EntityDefinition.model_validate(s.schema_json) for s in snapshots]

    def _stored_in(self, tx: TransactionScope, entity_id: str) -> EntityDefinition | None:
        with self._session(tx) as session:
            snapshot = session.get(EntitySnapshot, entity_id)
            return EntityDefinition.model_validate(snapshot.schema_json) if snapshot else None

    def _save_snapshot(self, tx: TransactionScope, entity: EntityDefinition) -> None:
        now = datetime.now(UTC)
        stmt = pg_insert(EntitySnapshot).values(
            id=entity.id,
            name=entity.name,
            table_name=entity.table_name,
            schema_json=entity.snapshot(),
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[EntitySnapshot.id],
            set_={
                "name": stmt.excluded.name,
                "table_name": stmt.excluded.table_name,
                "schema_json": stmt.excluded.schema_json,
                "updated_at": now,
            },
        )
        self._bind(tx.connection).execute(stmt)

    def _delete_snapshot(self, tx: TransactionScope, entity_id: str) -> None:
        self._bind(tx.connection).execute(
            delete(EntitySnapshot).where(EntitySnapshot.id == entity_id)
        )

    def table_exists(self, table_name: str) -> bool:
        """Whether a table exists in this manager's schema."""
        row = self._connection.query_one(
            "SELECT EXISTS (SELECT 1 FROM information_schema.tables "
            "WHERE table_schema = $1 AND table_name = $2) AS \"exists\"",
            [self._schema, table_name],
        )
        return bool(row and row["exists"])

    def get_table_columns(self, table_name: str) -> list[dict[str, Any]]:
        """Columns of a table as reported by information_schema."""
        return self._connection.query(
            "SELECT column_name, data_type, is_nullable, column_default "
            "FROM information_schema.columns "
            "WHERE table_schema = $1 AND table_name = $2 ORDER BY ordinal_position",
            [self._schema, table_name],
        )

    # === Sync ===

    def _run_tolerant(self, tx: TransactionScope, statements: Iterable[str]) -> None:
        """Run DDL, skipping only statements that fail because the object exists."""
        for statement in statements:
            savepoint = tx.connection.begin_nested()
            try:
                tx.execute(statement)
            except QueryError as e:
                savepoint.rollback()
                if e.sqlstate not in ALREADY_EXISTS_SQLSTATES:
                    raise
                logger.warning(f"Skipped existing object ({e.sqlstate}): {statement[:120]}")
            else:
                savepoint.commit()

    def sync_schema(self, entities: Sequence[EntityDefinition]) -> SyncResult:
        """Bring entity tables in line with the given definitions.

        New entities get their tables; changed entities get the diff between
        their stored snapshot and the new shape. Each entity syncs in its own
        transaction, so one failure does not stop the others. Junction tables
        for many-to-many relations are created in a second pass.

        Args:
            entities: Entity definitions to sync

        Returns:
            SyncResult listing created, updated and failed entities
        """
        result = SyncResult()
        with self._lock:
            self.initialize()
            self._registry.register_many(entities)

            for entity in creation_order(entities):
                try:
                    with self._connection.transaction() as tx:
                        self._lock_schema(tx)
                        stored = self._stored_in(tx, entity.id)
                        if stored is None:
                            table = compile_entity(entity, self._schema, self._registry)
                            self._run_tolerant(tx, generate_create_table_sql(table))
                            result.created.append(entity.name)
                        else:
                            migration = generate_migration_sql(
                                stored, entity, self._schema, self._registry
                            )
                            if migration.is_empty:
                                result.unchanged.append(entity.name)
                            else:
                                self._run_tolerant(tx, migration.up)
                                result.updated.append(entity.name)
                        self._save_snapshot(tx, entity)
                except (NeoDBError, SQLAlchemyError) as e:
                    logger.error(f"Schema sync failed for '{entity.name}': {e}")
                    result.errors[entity.name] = str(e)

            for first, second in junction_pairs(self._registry):
                name = junction_table_name(first.name, second.name)
                try:
                    with self._connection.transaction() as tx:
                        self._lock_schema(tx)
                        statements = generate_junction_table_sql(first, second, self._schema)
                        self._run_tolerant(tx, statements)
                except (NeoDBError, SQLAlchemyError) as e:
                    logger.error(f"Junction table '{name}' failed: {e}")
                    result.errors[name] = str(e)

        logger.info(
            f"Schema sync: {len(result.created)} created, {len(result.updated)} updated, "
            f"{len(result.errors)} failed"
        )
        return result

    def has_schema_changes(self, entities: Sequence[EntityDefinition]) -> bool:
        """Whether syncing these definitions would change any table."""
        registry = EntityRegistry([*self._registry.all(), *entities])
        for entity in entities:
            stored = self.get_stored_entity(entity.id)
            if stored is None:
                return True
            if not generate_migration_sql(stored, entity, self._schema, registry).is_empty:
                return True
        return False

    # === Migrations ===

    def generate_migration_plan(
        self,
        old: Sequence[EntityDefinition],
        new: Sequence[EntityDefinition],
    ) -> MigrationPlan:
        """Diff two entity sets into ordered migrations.

        Creates come first, then modifications, then drops. Any migration that
        drops a table or column is flagged destructive and explained in
        ``warnings``.

        Args:
            old: Current entity shapes (e.g. ``get_all_stored_entities()``)
            new: Desired entity shapes

        Returns:
            MigrationPlan
        """
        old_by_id = {e.id: e for e in old}
        new_by_id = {e.id: e for e in new}
        registry = EntityRegistry([*old, *new])
        stamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S")
        plan = MigrationPlan()

        def add(kind: str, before: EntityDefinition | None, after: EntityDefinition | None) -> None:
            entity = after or before
            assert entity is not None
            sql = generate_migration_sql(before, after, self._schema, registry)
            if sql.is_empty:
                return
            table = entity.table_name
            migration = SchemaMigration(
                id=f"{kind}_{to_snake_case(entity.name)}_{stamp}",
                version=len(plan.migrations) + 1,
                name=f"{kind.capitalize()} {table}",
                kind=kind,
                up=sql.up,
                down=sql.down,
                entity_id=entity.id,
                entity=after,
                previous=before,
            )
            for statement in sql.up:
                if match := _DROP_TABLE.search(statement):
                    migration.is_destructive = True
                    plan.warnings.append(
                        f"Dropping table '{match.group(1)}' deletes all of its rows."
                    )
                elif match := _DROP_COLUMN.search(statement):
                    migration.is_destructive = True
                    plan.warnings.append(
                        f"Dropping column '{match.group(1)}' from '{table}' deletes its data."
                    )
                elif " TYPE " in statement and "ALTER COLUMN" in statement:
                    plan.warnings.append(
                        f"Changing a column type on '{table}' may fail for existing rows."
                    )
            plan.migrations.append(migration)

        for entity in creation_order(list(new_by_id.values())):
            if entity.id not in old_by_id:
                add("create", None, entity)
        for entity_id, entity in new_by_id.items():
            if entity_id in old_by_id:
                add("modify", old_by_id[entity_id], entity)
        for entity_id, entity in old_by_id.items():
            if entity_id not in new_by_id:
                add("drop", entity, None)
        return plan

    def get_applied_migrations(self) -> list[dict[str, Any]]:
        """Applied migrations, oldest first."""
        self.initialize()
        with self._session() as session:
            records = session.scalars(
                select(MigrationRecord).order_by(
                    MigrationRecord.applied_at, MigrationRecord.version
                )
            )
            return [record.to_dict() for record in records]

    def apply_migrations(
        self,
        migrations: MigrationPlan | Sequence[SchemaMigration],
        confirm_destructive: bool = False,
    ) -> ApplyResult:
        """Apply migrations in order, each in its own transaction.

        Already-logged migrations are skipped. The first failure rolls back that
        migration, leaves it unlogged, and stops the run.

        Args:
            migrations: A plan or a list of migrations
            confirm_destructive: Must be True to apply a plan that drops data

        Returns:
            ApplyResult with applied, skipped and failed migration ids

        Raises:
            MigrationError: If the plan is destructive and not confirmed
        """
        steps = migrations.migrations if isinstance(migrations, MigrationPlan) else migrations
        destructive = [m for m in steps if m.is_destructive]
        if destructive and not confirm_destructive:
            raise MigrationError(
                f"{len(destructive)} migration(s) drop tables or columns. Review the plan "
                "and pass confirm_destructive=True to apply it.",
                destructive[0].id,
            )

        result = ApplyResult()
        with self._lock:
            self.initialize()
            with self._session() as session:
                done = set(session.scalars(select(MigrationRecord.id)))

            for migration in steps:
                if migration.id in done:
                    result.skipped.append(migration.id)
                    continue
                started = time.perf_counter()
                try:
                    with self._connection.transaction() as tx:
                        self._lock_schema(tx)
                        for statement in migration.up:
                            tx.execute(statement)
                        self._record(tx, migration, started)
                except (NeoDBError, SQLAlchemyError) as e:
                    logger.error(f"Migration {migration.id} failed and was rolled back: {e}")
                    result.errors[migration.id] = str(e)
                    break
                result.applied.append(migration.id)
                logger.info(f"Applied migration {migration.id}")
        return result

    def _record(self, tx: TransactionScope, migration: SchemaMigration, started: float) -> None:
        if migration.entity is not None:
            self._save_snapshot(tx, migration.entity)
        elif migration.entity_id is not None:
            self._delete_snapshot(tx, migration.entity_id)

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        previous = migration.previous.snapshot() if migration.previous is not None else None
        bind = self._bind(tx.connection)
        # Logged versions keep counting across plans
        latest = bind.scalar(select(func.max(MigrationRecord.version))) or 0
        bind.execute(
            pg_insert(MigrationRecord).values(
                id=migration.id,
                version=latest + 1,
                name=migration.name,
                applied_at=datetime.now(UTC),
                checksum=migration.checksum,
                execution_time_ms=elapsed_ms,
                down_sql=migration.down,
                entity_id=migration.entity_id,
                previous_schema=previous,
            )
        )

    def rollback_migrations(self, count: int = 1) -> list[str]:
        """Undo the most recent migrations by running their stored down SQL.

        Each rollback runs in its own transaction that also removes the log row
        and restores the entity snapshot.

        Args:
            count: Number of migrations to roll back

        Returns:
            Ids of rolled-back migrations, newest first

        Raises:
            MigrationError: If a migration has no down SQL or its down SQL fails
        """
        rolled_back: list[str] = []
        with self._lock:
            self.initialize()
            with self._session() as session:
                latest = list(
                    session.scalars(
                        select(MigrationRecord)
                        .order_by(
                            MigrationRecord.applied_at.desc(), MigrationRecord.version.desc()
                        )
                        .limit(count)
                    )
                )
                session.expunge_all()

            for record in latest:
                if not record.down_sql:
                    raise MigrationError(
                        f"Migration {record.id} has no down SQL and cannot be rolled back.",
                        record.id,
                    )
                try:
                    with self._connection.transaction() as tx:
                        self._lock_schema(tx)
                        for statement in record.down_sql:
                            tx.execute(statement)
                        if record.entity_id is not None:
                            if record.previous_schema is None:
                                self._delete_snapshot(tx, record.entity_id)
                            else:
                                previous = EntityDefinition.model_validate(record.previous_schema)
                                self._save_snapshot(tx, previous)
                        self._bind(tx.connection).execute(
                            delete(MigrationRecord).where(MigrationRecord.id == record.id)
                        )
                except (NeoDBError, SQLAlchemyError) as e:
                    logger.error(f"Rollback of {record.id} failed: {e}")
                    raise MigrationError(
                        f"Rollback of {record.id} failed and was undone: {e}", record.id
                    ) from e
                rolled_back.append(record.id)
                logger.info(f"Rolled back migration {record.id}")
        return rolled_back

    # === Seeding ===

    def seed_data(self, entity_id: str, records: Sequence[dict[str, Any]]) -> int:
        """Insert fixture records, skipping ids that already exist.

        Returns:
            Number of rows actually inserted
        """
        if not records:
            return 0
        entity = self._registry.require(entity_id)
        table = compile_entity(entity, self._schema, self._registry)
        rows = []
        for record in records:
            row = {}
            for key, value in record.items():
                column = key if key == "id" else to_snake_case(key)
                if not table.has_column(column):
                    continue
                if isinstance(value, (dict, list)):
                    value = json.dumps(value)
                row[column] = value
            rows.append(row)

        query = QueryBuilder(table).build_bulk_insert(rows)
        sql = query.sql.removesuffix(" RETURNING *")
        sql += ' ON CONFLICT ("id") DO NOTHING RETURNING "id"'
        inserted = len(self._connection.query(sql, query.params))
        logger.info(f"Seeded {inserted} of {len(records)} '{entity.name}' record(s)")
        return inserted
