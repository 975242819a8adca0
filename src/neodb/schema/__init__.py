"""Schema management for NeoDB."""

from neodb.schema.manager import (
    ApplyResult,
    MigrationPlan,
    SchemaManager,
    SchemaMigration,
    SyncResult,
)
from neodb.schema.models import EntitySnapshot, MigrationRecord

__all__ = [
    "SchemaManager",
    "SchemaMigration",
    "MigrationPlan",
    "SyncResult",
    "ApplyResult",
    "MigrationRecord",
    "EntitySnapshot",
]
