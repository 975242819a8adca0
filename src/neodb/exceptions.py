"""Custom exceptions for NeoDB.

All exceptions carry an actionable message plus a JSON-serializable context:
- What went wrong AND how to fix it
- Available options (entities, fields, relations) when relevant
"""

from __future__ import annotations

from typing import Any


class NeoDBError(Exception):
    """Base exception for all NeoDB errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Return error as JSON-serializable dict for API consumers."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
        }


# === Connection Errors ===


class ConnectionError(NeoDBError):
    """Failed to connect to the database, or the pool is exhausted."""

    pass


class StatementTimeoutError(ConnectionError):
    """A statement exceeded the configured statement timeout."""

    def __init__(self, timeout_ms: int, sql: str | None = None) -> None:
        message = (
            f"Statement cancelled after {timeout_ms}ms. "
            "Narrow the query or raise statement_timeout_ms in the database config."
        )
        super().__init__(message, {"timeout_ms": timeout_ms, "sql": sql})
        self.timeout_ms = timeout_ms
        self.sql = sql


# === Lookup Errors ===


class NotFoundError(NeoDBError):
    """An entity, relation or record does not exist."""

    pass


class EntityNotFoundError(NotFoundError):
    """Entity is not registered."""

    def __init__(self, entity_name: str, available_entities: list[str] | None = None) -> None:
        available = available_entities or []
        if available:
            message = (
                f"Entity '{entity_name}' not found. Available entities: {', '.join(available)}"
            )
        else:
            message = f"Entity '{entity_name}' not found. No entities are registered yet."

        super().__init__(message, {"entity_name": entity_name, "available_entities": available})
        self.entity_name = entity_name
        self.available_entities = available


class RecordNotFoundError(NotFoundError):
    """Record with given ID does not exist."""

    def __init__(self, record_id: str, entity_name: str) -> None:
        message = f"Record '{record_id}' not found in '{entity_name}'."
        super().__init__(message, {"record_id": record_id, "entity_name": entity_name})
        self.record_id = record_id
        self.entity_name = entity_name


class RelationNotFoundError(NotFoundError):
    """Relation does not exist on entity."""

    def __init__(
        self,
        relation_name: str,
        entity_name: str,
        available_relations: list[str] | None = None,
    ) -> None:
        available = available_relations or []
        if available:
            message = (
                f"Relation '{relation_name}' not found on '{entity_name}'. "
                f"Available relations: {', '.join(available)}"
            )
        else:
            message = (
                f"Relation '{relation_name}' not found on '{entity_name}'. "
                "The entity has no reference fields or declared relationships."
            )

        super().__init__(
            message,
            {
                "relation_name": relation_name,
                "entity_name": entity_name,
                "available_relations": available,
            },
        )
        self.relation_name = relation_name
        self.entity_name = entity_name
        self.available_relations = available


# === Data Errors ===


class ValidationError(NeoDBError):
    """Record data failed validation. Raised before any SQL is issued."""

    def __init__(self, message: str, field_errors: dict[str, str] | None = None) -> None:
        super().__init__(message, {"field_errors": field_errors or {}})
        self.field_errors = field_errors or {}


class ConstraintError(NeoDBError):
    """The backend rejected a write because of a unique, FK, check or not-null constraint."""

    # SQLSTATE class 23 codes -> constraint kind
    SQLSTATE_KINDS = {
        "23505": "unique",
        "23503": "foreign_key",
        "23514": "check",
        "23502": "not_null",
    }

    def __init__(
        self,
        message: str,
        kind: str,
        constraint: str | None = None,
        sqlstate: str | None = None,
    ) -> None:
        super().__init__(
            message,
            {"kind": kind, "constraint": constraint, "sqlstate": sqlstate},
        )
        self.kind = kind
        self.constraint = constraint
        self.sqlstate = sqlstate


class QueryError(NeoDBError):
    """Query execution failed for a reason outside the taxonomy."""

    def __init__(self, message: str, sql: str | None = None, sqlstate: str | None = None) -> None:
        super().__init__(message, {"sql": sql, "sqlstate": sqlstate})
        self.sql = sql
        self.sqlstate = sqlstate


# === Programmer Errors (never retried) ===


class QueryBuildError(NeoDBError):
    """A query could not be built (unknown field, malformed filter)."""

    pass


class CompilerError(NeoDBError):
    """An entity definition could not be compiled into DDL."""

    pass


class FieldNotFoundError(QueryBuildError):
    """Field does not exist on the table being queried."""

    def __init__(
        self, field_name: str, table_name: str, available_fields: list[str] | None = None
    ) -> None:
        available = available_fields or []
        message = (
            f"Field '{field_name}' not found on '{table_name}'. "
            f"Available fields: {', '.join(available) or '(none)'}"
        )
        super().__init__(
            message,
            {
                "field_name": field_name,
                "table_name": table_name,
                "available_fields": available,
            },
        )
        self.field_name = field_name
        self.table_name = table_name
        self.available_fields = available


# === Schema Errors ===


class MigrationError(NeoDBError):
    """A migration failed. Its transaction was rolled back in full."""

    def __init__(self, message: str, migration_id: str | None = None) -> None:
        super().__init__(message, {"migration_id": migration_id})
        self.migration_id = migration_id
