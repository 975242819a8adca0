"""Tests for database connection."""

import uuid
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import DBAPIError, OperationalError

from neodb.core.connection import DatabaseConnection, TransactionScope, to_named_binds
from neodb.exceptions import (
    ConnectionError,
    ConstraintError,
    QueryError,
    StatementTimeoutError,
)

RECORD_ID = "8f14e45f-ceea-467a-9575-7b5c2f3a1b01"


class FakeDriverError(Exception):
    """Driver exception carrying a SQLSTATE like psycopg's."""

    def __init__(self, message: str, sqlstate: str | None, constraint: str | None = None):
        super().__init__(message)
        self.sqlstate = sqlstate
        self.diag = MagicMock(constraint_name=constraint)


def _db_error(sqlstate, constraint=None, error_class=DBAPIError):
    return error_class("INSERT ...", {}, FakeDriverError("boom", sqlstate, constraint))


@pytest.fixture
def offline():
    """Connection that never opens an engine."""
    return DatabaseConnection("postgresql://localhost/neodb_test")


class TestNamedBinds:
    """Tests for placeholder translation."""

    def test_positional_to_named(self):
        """$n placeholders become :pn binds."""
        sql, binds = to_named_binds('SELECT * FROM "t" WHERE "a" = $1 AND "b" = $2', [1, "x"])
        assert sql == 'SELECT * FROM "t" WHERE "a" = :p1 AND "b" = :p2'
        assert binds == {"p1": 1, "p2": "x"}

    def test_casts_stay_separate(self):
        """A $n::type cast keeps the bind name intact."""
        sql, _ = to_named_binds("SELECT $1::int", [5])
        assert sql == "SELECT :p1 ::int"

    def test_repeated_placeholder(self):
        """A placeholder may appear more than once."""
        sql, binds = to_named_binds("SELECT $1, $1", ["a"])
        assert sql == "SELECT :p1, :p1"
        assert binds == {"p1": "a"}


class TestErrorTranslation:
    """Tests for SQLSTATE classification."""

    @pytest.mark.parametrize(
        ("sqlstate", "kind"),
        [
            ("23505", "unique"),
            ("23503", "foreign_key"),
            ("23514", "check"),
            ("23502", "not_null"),
        ],
    )
    def test_constraint_errors(self, offline, sqlstate, kind):
        """Integrity violations become ConstraintError with their kind."""
        error = offline._translate_error(_db_error(sqlstate, "clients_email_key"), "INSERT ...")
        assert isinstance(error, ConstraintError)
        assert error.kind == kind
        assert error.constraint == "clients_email_key"
        assert "clients_email_key" in str(error)

    def test_statement_timeout(self, offline):
        """Cancelled statements become StatementTimeoutError."""
        error = offline._translate_error(_db_error("57014"), "SELECT pg_sleep(60)")
        assert isinstance(error, StatementTimeoutError)
        assert error.timeout_ms == 30000
        assert error.sql == "SELECT pg_sleep(60)"

    def test_connection_failure(self, offline):
        """Operational errors without a SQL error class are connection failures."""
        error = offline._translate_error(_db_error(None, error_class=OperationalError), "SELECT 1")
        assert isinstance(error, ConnectionError)
        error = offline._translate_error(_db_error("08006", error_class=OperationalError), "")
        assert isinstance(error, ConnectionError)

    def test_other_errors(self, offline):
        """Everything else is a QueryError carrying the SQL and SQLSTATE."""
        error = offline._translate_error(_db_error("42P01"), 'SELECT * FROM "nope"')
        assert isinstance(error, QueryError)
        assert error.sqlstate == "42P01"
        assert error.sql == 'SELECT * FROM "nope"'


class TestTransactionScope:
    """Tests for TransactionScope on a stand-in SQLAlchemy connection."""

    def test_query_normalizes_rows(self):
        """Rows come back as dicts with UUIDs as strings."""
        conn = MagicMock()
        result = conn.execute.return_value
        result.returns_rows = True
        result.mappings.return_value.all.return_value = [{"id": uuid.UUID(RECORD_ID), "n": 1}]
        tx = TransactionScope(conn, 0, 0)
        rows = tx.query('SELECT * FROM "t" WHERE "id" = $1', [RECORD_ID])
        assert rows == [{"id": RECORD_ID, "n": 1}]
        statement, binds = conn.execute.call_args.args
        assert str(statement) == 'SELECT * FROM "t" WHERE "id" = :p1'
        assert binds == {"p1": RECORD_ID}

    def test_execute_without_params(self):
        """Parameterless statements run as driver SQL and return the row count."""
        conn = MagicMock()
        result = conn.exec_driver_sql.return_value
        result.returns_rows = False
        result.rowcount = 3
        tx = TransactionScope(conn, 0, 0)
        assert tx.execute('DELETE FROM "t"') == 3
        conn.exec_driver_sql.assert_called_once_with('DELETE FROM "t"')

    def test_driver_errors_are_translated(self):
        """Driver errors surface as NeoDB errors."""
        conn = MagicMock()
        conn.execute.side_effect = _db_error("23505", "clients_email_key")
        tx = TransactionScope(conn, 0, 0)
        with pytest.raises(ConstraintError) as exc_info:
            tx.execute('INSERT INTO "t" VALUES ($1)', [1])
        assert exc_info.value.kind == "unique"

    def test_context_commits(self):
        """Leaving the block normally commits and releases the connection."""
        conn = MagicMock()
        with TransactionScope(conn, 0, 0):
            pass
        conn.begin.return_value.commit.assert_called_once()
        conn.close.assert_called_once()

    def test_context_rolls_back(self):
        """An exception rolls back."""
        conn = MagicMock()
        with pytest.raises(RuntimeError):
            with TransactionScope(conn, 0, 0):
                raise RuntimeError("fail")
        conn.begin.return_value.rollback.assert_called_once()
        conn.begin.return_value.commit.assert_not_called()

    def test_closed_scope_rejects_statements(self):
        """Statements after commit raise QueryError."""
        tx = TransactionScope(MagicMock(), 0, 0)
        tx.commit()
        assert not tx.is_active
        with pytest.raises(QueryError):
            tx.query("SELECT 1")


class TestDatabaseConnection:
    """Tests for DatabaseConnection class."""

    def test_engine_created_lazily(self, offline):
        """No engine exists until one is needed."""
        assert offline._engine is None
        assert offline.get_pool_stats() == {
            "size": 0,
            "checked_in": 0,
            "checked_out": 0,
            "overflow": 0,
        }

    def test_schema_from_config(self):
        """The schema comes from the config."""
        from neodb.config import DatabaseConfig

        conn = DatabaseConnection(DatabaseConfig(url="postgresql://localhost/x", schema_name="app"))
        assert conn.schema == "app"

    def test_invalid_url(self):
        """Invalid URL raises ConnectionError."""
        conn = DatabaseConnection("invalid://not-a-real-db")
        with pytest.raises(ConnectionError):
            conn.test_connection()

    def test_unsupported_dialect(self, tmp_path):
        """Only PostgreSQL is supported."""
        conn = DatabaseConnection(f"sqlite:///{tmp_path / 'unused.db'}")
        with pytest.raises(ConnectionError) as exc_info:
            _ = conn.engine
        assert "Unsupported database dialect" in str(exc_info.value)

    def test_postgresql_connection(self, postgresql_url: str):
        """Can connect to PostgreSQL."""
        conn = DatabaseConnection(postgresql_url)
        assert conn.test_connection() is True
        assert conn.query_one("SELECT $1::int AS n", [7]) == {"n": 7}
        conn.close()
        assert conn._engine is None

    def test_transaction_rollback(self, postgresql_url: str):
        """Work inside a failed transaction block is discarded."""
        conn = DatabaseConnection(postgresql_url)
        with pytest.raises(RuntimeError):
            with conn.transaction() as tx:
                tx.execute("CREATE TABLE neodb_rollback_check (n int)")
                raise RuntimeError("abort")
        row = conn.query_one("SELECT to_regclass('neodb_rollback_check') IS NULL AS gone")
        assert row == {"gone": True}
        conn.close()

    def test_context_manager(self, postgresql_url: str):
        """Can use as context manager."""
        with DatabaseConnection(postgresql_url) as conn:
            assert conn.test_connection() is True
