"""SQL generation: DDL compilation and parameterized queries."""

from neodb.sql.compiler import (
    MigrationSql,
    TableDefinition,
    compile_entity,
    generate_create_table_sql,
    generate_junction_table_sql,
    generate_migration_sql,
)
from neodb.sql.query_builder import CompiledQuery, QueryBuilder

__all__ = [
    "TableDefinition",
    "MigrationSql",
    "compile_entity",
    "generate_create_table_sql",
    "generate_migration_sql",
    "generate_junction_table_sql",
    "QueryBuilder",
    "CompiledQuery",
]
