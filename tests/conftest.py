"""Shared test fixtures for NeoDB."""

import os
import uuid
from collections.abc import Generator, Sequence
from typing import Any

import pytest

from neodb import DatabaseService, EntityDefinition
from neodb.core.registry import EntityRegistry


def _psycopg_available() -> bool:
    """Check if psycopg is installed."""
    try:
        import psycopg  # noqa: F401

        return True
    except ImportError:
        return False


def _postgresql_connectable(url: str) -> bool:
    """Check if we can connect to PostgreSQL."""
    if not _psycopg_available():
        return False
    try:
        from neodb.core.connection import DatabaseConnection

        conn = DatabaseConnection(url)
        result = conn.test_connection()
        conn.close()
        return result
    except Exception:
        return False


# Skip marker for tests requiring PostgreSQL
requires_postgresql = pytest.mark.skipif(
    not _psycopg_available(),
    reason="psycopg not installed (install with: pip install 'psycopg[binary]')",
)


# === Entity Definitions ===

CLIENT = {
    "id": "ent_client",
    "name": "Client",
    "deleteMode": "soft",
    "fields": [
        {"id": "f_name", "name": "name", "type": "string", "required": True},
        {"id": "f_email", "name": "email", "type": "email", "unique": True},
        {"id": "f_company", "name": "company", "type": "string"},
    ],
}

INVOICE = {
    "id": "ent_invoice",
    "name": "Invoice",
    "fields": [
        {"id": "f_number", "name": "number", "type": "string", "required": True, "unique": True},
        {"id": "f_amount", "name": "amount", "type": "currency", "validation": {"min": 0}},
        {
            "id": "f_status",
            "name": "status",
            "type": "enum",
            "enumOptions": ["draft", "sent", "paid"],
            "defaultValue": "draft",
        },
        {
            "id": "f_client",
            "name": "clientId",
            "type": "reference",
            "reference": {"targetEntity": "Client", "displayField": "name"},
        },
        {"id": "f_issued", "name": "issuedOn", "type": "date"},
        {
            "id": "f_with_tax",
            "name": "amountWithTax",
            "type": "currency",
            "computed": {"expression": "amount * 1.2", "dependencies": ["amount"]},
        },
    ],
}

PRODUCT = {
    "id": "ent_product",
    "name": "Product",
    "fields": [
        {"id": "f_name", "name": "name", "type": "string", "required": True},
        {"id": "f_price", "name": "price", "type": "currency"},
    ],
    "relationships": [{"name": "tags", "type": "many_to_many", "targetEntity": "Tag"}],
}

TAG = {
    "id": "ent_tag",
    "name": "Tag",
    "fields": [{"id": "f_name", "name": "name", "type": "string", "required": True}],
}


@pytest.fixture
def client_entity() -> EntityDefinition:
    """Soft-deleting Client entity."""
    return EntityDefinition.model_validate(CLIENT)


@pytest.fixture
def invoice_entity() -> EntityDefinition:
    """Invoice entity referencing Client, with a computed field."""
    return EntityDefinition.model_validate(INVOICE)


@pytest.fixture
def product_entity() -> EntityDefinition:
    """Product entity with a many-to-many relationship to Tag."""
    return EntityDefinition.model_validate(PRODUCT)


@pytest.fixture
def tag_entity() -> EntityDefinition:
    """Tag entity."""
    return EntityDefinition.model_validate(TAG)


@pytest.fixture
def entities(
    client_entity: EntityDefinition,
    invoice_entity: EntityDefinition,
    product_entity: EntityDefinition,
    tag_entity: EntityDefinition,
) -> list[EntityDefinition]:
    """All test entities, in an order that references before declaring."""
    return [invoice_entity, client_entity, product_entity, tag_entity]


@pytest.fixture
def registry(entities: list[EntityDefinition]) -> EntityRegistry:
    """Registry holding every test entity."""
    return EntityRegistry(entities)


# === Fake Executor ===


class FakeExecutor:
    """Records statements and replays scripted result rows.

    Each call to ``query``/``query_one`` consumes the next queued row list;
    with nothing queued it returns no rows.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, list[Any]]] = []
        self._responses: list[list[dict[str, Any]]] = []

    def queue(self, *results: list[dict[str, Any]]) -> None:
        """Queue row lists for the next queries, in order."""
        self._responses.extend(results)

    def query(self, sql: str, params: Sequence[Any] | None = None) -> list[dict[str, Any]]:
        self.calls.append((sql, list(params or [])))
        return [dict(row) for row in self._responses.pop(0)] if self._responses else []

    def query_one(self, sql: str, params: Sequence[Any] | None = None) -> dict[str, Any] | None:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> int:
        self.calls.append((sql, list(params or [])))
        return 1

    @property
    def statements(self) -> list[str]:
        """SQL of every recorded call."""
        return [sql for sql, _ in self.calls]


@pytest.fixture
def fake_executor() -> FakeExecutor:
    """Executor that never touches a database."""
    return FakeExecutor()


# === PostgreSQL ===


@pytest.fixture
def postgresql_url() -> str:
    """Get PostgreSQL URL from environment or use default.

    Tests using this fixture should also use @requires_postgresql marker.
    """
    url = os.environ.get("TEST_DATABASE_URL")
    if not url:
        # Default to local PostgreSQL
        url = "postgresql://localhost/neodb_test"

    # Skip if psycopg not available
    if not _psycopg_available():
        pytest.skip("psycopg not installed")

    # Skip if can't connect (no PostgreSQL server)
    if not _postgresql_connectable(url):
        pytest.skip(f"Cannot connect to PostgreSQL at {url}")

    return url


@pytest.fixture
def db(postgresql_url: str) -> Generator[DatabaseService, None, None]:
    """DatabaseService bound to a throwaway Postgres schema."""
    schema = f"neodb_test_{uuid.uuid4().hex[:12]}"
    database = DatabaseService(postgresql_url, schema=schema)
    database.initialize()
    yield database
    # Cleanup - drop the whole test schema
    database.connection.execute(f'DROP SCHEMA IF EXISTS "{schema}" CASCADE')
    database.close()
