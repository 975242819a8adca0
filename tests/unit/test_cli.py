"""CLI command tests for NeoDB."""

import json
import uuid
from collections.abc import Generator
from pathlib import Path

import pytest
from typer.testing import CliRunner

from neodb.cli.main import app
from neodb.cli.parsing import read_entities_file
from neodb.core.connection import DatabaseConnection

runner = CliRunner()


@pytest.fixture
def entities_file(tmp_path: Path, entities) -> str:
    """Entity definitions written the way the app generator emits them."""
    path = tmp_path / "entities.json"
    path.write_text(json.dumps({"entities": [e.snapshot() for e in entities]}))
    return str(path)


@pytest.fixture
def test_schema(postgresql_url: str) -> Generator[str, None, None]:
    """Throwaway Postgres schema name, dropped afterwards."""
    schema = f"neodb_cli_{uuid.uuid4().hex[:12]}"
    yield schema
    conn = DatabaseConnection(postgresql_url)
    conn.execute(f'DROP SCHEMA IF EXISTS "{schema}" CASCADE')
    conn.close()


class TestVersionCommand:
    """Test the version command."""

    def test_version_output(self) -> None:
        """Test that version command shows version info."""
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "NeoDB v0.1.0" in result.stdout


class TestParsing:
    """Tests for reading entity files."""

    def test_list_shape(self, tmp_path: Path, client_entity) -> None:
        """A bare list of entities is accepted."""
        path = tmp_path / "list.json"
        path.write_text(json.dumps([client_entity.snapshot()]))
        assert read_entities_file(str(path)) == [client_entity]

    def test_object_shape(self, entities_file: str) -> None:
        """An object with an entities key is accepted."""
        names = [e.name for e in read_entities_file(entities_file)]
        assert names == ["Invoice", "Client", "Product", "Tag"]

    def test_object_without_entities(self, tmp_path: Path) -> None:
        """Other objects are rejected."""
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"items": []}))
        with pytest.raises(ValueError) as exc_info:
            read_entities_file(str(path))
        assert "'entities' key" in str(exc_info.value)

    def test_missing_file(self) -> None:
        """Missing files raise FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            read_entities_file("/nonexistent/entities.json")


class TestSchemaCompile:
    """Test schema compile, which never connects to a database."""

    def test_compile_json(self, entities_file: str) -> None:
        """JSON mode prints the statements as an array."""
        result = runner.invoke(app, ["--json", "schema", "compile", entities_file])
        assert result.exit_code == 0, f"Failed with: {result.stdout}"
        statements = json.loads(result.stdout)
        assert statements[0].startswith('CREATE TABLE IF NOT EXISTS "public"."clients"')
        creates = [s for s in statements if s.startswith("CREATE TABLE")]
        assert [s.split()[5] for s in creates] == [
            '"public"."clients"',
            '"public"."invoices"',
            '"public"."products"',
            '"public"."tags"',
            '"public"."product_tag"',
        ]

    def test_compile_schema_option(self, entities_file: str) -> None:
        """--schema qualifies every table."""
        args = ["--schema", "app", "--json", "schema", "compile", entities_file]
        result = runner.invoke(app, args)
        assert result.exit_code == 0
        statements = json.loads(result.stdout)
        assert all('"public".' not in s for s in statements)
        assert any('"app"."invoices"' in s for s in statements)

    def test_compile_terminal(self, entities_file: str) -> None:
        """Terminal mode prints highlighted SQL under a heading."""
        result = runner.invoke(app, ["schema", "compile", entities_file])
        assert result.exit_code == 0
        assert "4 entities, schema 'public'" in result.stdout
        assert "CREATE TABLE IF NOT EXISTS" in result.stdout

    def test_compile_missing_file(self) -> None:
        """A missing file exits with an error."""
        result = runner.invoke(app, ["--json", "schema", "compile", "/nonexistent.json"])
        assert result.exit_code == 1
        assert "File not found" in json.loads(result.stdout)["error"]

    def test_compile_bad_shape(self, tmp_path: Path) -> None:
        """A document without entities exits with an error."""
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"items": []}))
        result = runner.invoke(app, ["schema", "compile", str(path)])
        assert result.exit_code == 1
        assert "Error" in result.stdout

    def test_compile_invalid_entity(self, tmp_path: Path) -> None:
        """Invalid entity definitions exit with an error."""
        path = tmp_path / "invalid.json"
        path.write_text(json.dumps([{"id": "e", "name": "Task", "fields": [{"id": "f"}]}]))
        result = runner.invoke(app, ["schema", "compile", str(path)])
        assert result.exit_code == 1
        assert "Invalid entity definition" in result.stdout


class TestDatabaseCommands:
    """Commands that need PostgreSQL."""

    def test_init_and_status(self, postgresql_url: str, test_schema: str) -> None:
        """init creates the bookkeeping tables; status reports on them."""
        base = ["-d", postgresql_url, "--schema", test_schema, "--json"]
        result = runner.invoke(app, [*base, "init"])
        assert result.exit_code == 0, f"Failed with: {result.stdout}"
        assert json.loads(result.stdout)["schema"] == test_schema

        result = runner.invoke(app, [*base, "status"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["connected"] is True
        assert data["entities"] == []
        assert data["migrations"] == 0

    def test_sync_plan_and_rollback(
        self, postgresql_url: str, test_schema: str, entities_file: str
    ) -> None:
        """sync applies logged migrations that rollback can undo."""
        base = ["-d", postgresql_url, "--schema", test_schema, "--json"]

        result = runner.invoke(app, [*base, "schema", "plan", entities_file])
        assert result.exit_code == 0, f"Failed with: {result.stdout}"
        assert len(json.loads(result.stdout)["migrations"]) == 4

        result = runner.invoke(app, [*base, "schema", "sync", entities_file])
        assert result.exit_code == 0, f"Failed with: {result.stdout}"
        assert len(json.loads(result.stdout)["applied"]) == 4

        result = runner.invoke(app, [*base, "schema", "plan", entities_file])
        assert json.loads(result.stdout)["migrations"] == []

        result = runner.invoke(app, [*base, "migrations", "list"])
        assert [m["version"] for m in json.loads(result.stdout)] == [1, 2, 3, 4]

        result = runner.invoke(app, [*base, "migrations", "rollback", "--count", "1"])
        assert result.exit_code == 0
        assert len(json.loads(result.stdout)["rolled_back"]) == 1
