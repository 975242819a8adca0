"""Core components for NeoDB."""

from neodb.core.connection import DatabaseConnection, Executor, TransactionScope
from neodb.core.registry import EntityRegistry
from neodb.core.types import (
    EntityDefinition,
    FieldDefinition,
    FieldType,
    QueryFilter,
    RelationDefinition,
    RelationType,
)

__all__ = [
    "DatabaseConnection",
    "TransactionScope",
    "Executor",
    "EntityRegistry",
    "EntityDefinition",
    "FieldDefinition",
    "FieldType",
    "RelationDefinition",
    "RelationType",
    "QueryFilter",
]
