"""Database connection management for NeoDB.

Statements are written with Postgres-style ``$n`` placeholders and a positional
parameter list. They are translated to SQLAlchemy named binds at execution time.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any, Protocol

from sqlalchemy import Connection, Engine, create_engine, text
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from neodb.config import DatabaseConfig
from neodb.exceptions import (
    ConnectionError,
    ConstraintError,
    NeoDBError,
    QueryError,
    StatementTimeoutError,
)

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\$(\d+)(::)?")

# SQLSTATE for "canceling statement due to statement timeout"
QUERY_CANCELED = "57014"


def to_named_binds(sql: str, params: Sequence[Any] | None) -> tuple[str, dict[str, Any]]:
    """Translate ``$n`` placeholders into ``:pn`` named binds.

    A ``$n::type`` cast becomes ``:pn ::type`` so the bind stays recognizable.

    Args:
        sql: SQL with ``$1``-style placeholders
        params: Positional parameters

    Returns:
        Tuple of (SQL with named binds, bind dict)
    """

    def replace(match: re.Match[str]) -> str:
        bind = f":p{match.group(1)}"
        return f"{bind} ::" if match.group(2) else bind

    bound = {f"p{i}": value for i, value in enumerate(params or (), start=1)}
    return _PLACEHOLDER.sub(replace, sql), bound


class Executor(Protocol):
    """Anything that runs statements written with ``$n`` placeholders."""

    def query(self, sql: str, params: Sequence[Any] | None = None) -> list[dict[str, Any]]: ...

    def query_one(
        self, sql: str, params: Sequence[Any] | None = None
    ) -> dict[str, Any] | None: ...

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> int: ...


def _sqlstate(error: DBAPIError) -> str | None:
    """Extract the SQLSTATE code from a driver error (psycopg3 or psycopg2)."""
    orig = error.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def _constraint_name(error: DBAPIError) -> str | None:
    diag = getattr(error.orig, "diag", None)
    return getattr(diag, "constraint_name", None)


def _normalize_row(row: dict[str, Any]) -> dict[str, Any]:
    """UUIDs come back as strings."""
    return {k: str(v) if isinstance(v, uuid.UUID) else v for k, v in row.items()}


class _StatementRunner:
    """Statement helpers shared by pooled and transactional execution."""

    _slow_query_ms: int
    _statement_timeout_ms: int

    def _run(self, sql: str, params: Sequence[Any] | None) -> list[dict[str, Any]] | int:
        raise NotImplementedError

    def _execute_on(
        self, conn: Connection, sql: str, params: Sequence[Any] | None
    ) -> list[dict[str, Any]] | int:
        """Execute one statement and return rows (if any) or the affected row count."""
        started = time.perf_counter()
        try:
            if params:
                named_sql, binds = to_named_binds(sql, params)
                result: CursorResult[Any] = conn.execute(text(named_sql), binds)
            else:
                # DDL and parameterless statements skip bind parsing
                result = conn.exec_driver_sql(sql)
        except DBAPIError as e:
            raise self._translate_error(e, sql) from e
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.debug(f"SQL ({elapsed_ms:.1f}ms): {sql}")
            if self._slow_query_ms and elapsed_ms > self._slow_query_ms:
                logger.warning(f"Slow query ({elapsed_ms:.0f}ms): {sql[:200]}")

        if result.returns_rows:
            return [_normalize_row(dict(row)) for row in result.mappings().all()]
        return result.rowcount

    def _translate_error(self, error: DBAPIError, sql: str) -> NeoDBError:
        """Re-classify a driver exception into the NeoDB taxonomy."""
        sqlstate = _sqlstate(error)
        detail = str(error.orig).strip()

        if sqlstate in ConstraintError.SQLSTATE_KINDS:
            kind = ConstraintError.SQLSTATE_KINDS[sqlstate]
            constraint = _constraint_name(error)
            label = f" '{constraint}'" if constraint else ""
            return ConstraintError(
                f"{kind.replace('_', ' ').capitalize()} constraint{label} violated: {detail}",
                kind=kind,
                constraint=constraint,
                sqlstate=sqlstate,
            )
        if sqlstate == QUERY_CANCELED:
            return StatementTimeoutError(self._statement_timeout_ms, sql)
        if isinstance(error, OperationalError) and (sqlstate is None or sqlstate.startswith("08")):
            return ConnectionError(f"Database connection failed: {detail}", {"sqlstate": sqlstate})
        return QueryError(f"Query failed: {detail}", sql=sql, sqlstate=sqlstate)

    def query(self, sql: str, params: Sequence[Any] | None = None) -> list[dict[str, Any]]:
        """Run a statement and return all rows as dicts.

        Args:
            sql: SQL with ``$n`` placeholders
            params: Positional parameters

        Returns:
            List of row dicts (empty if the statement returns no rows)
        """
        result = self._run(sql, params)
        return result if isinstance(result, list) else []

    def query_one(self, sql: str, params: Sequence[Any] | None = None) -> dict[str, Any] | None:
        """Run a statement and return the first row, or None."""
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> int:
        """Run a statement and return the number of affected rows."""
        result = self._run(sql, params)
        return len(result) if isinstance(result, list) else max(result, 0)

    def execute_returning(
        self, sql: str, params: Sequence[Any] | None = None
    ) -> list[dict[str, Any]]:
        """Run a ``RETURNING`` statement and return the returned rows."""
        return self.query(sql, params)


class TransactionScope(_StatementRunner):
    """A single connection with an open transaction.

    Every statement runs on the same connection until ``commit`` or ``rollback``.
    The connection returns to the pool on either, and on ``close``.
    """

    def __init__(self, conn: Connection, slow_query_ms: int, statement_timeout_ms: int) -> None:
        self._conn = conn
        self._transaction = conn.begin()
        self._slow_query_ms = slow_query_ms
        self._statement_timeout_ms = statement_timeout_ms
        self._closed = False

    @property
    def is_active(self) -> bool:
        """Whether the transaction can still run statements."""
        return not self._closed and self._transaction.is_active

    @property
    def connection(self) -> Connection:
        """Underlying SQLAlchemy connection, for Core/ORM statements in this transaction."""
        return self._conn

    def _run(self, sql: str, params: Sequence[Any] | None) -> list[dict[str, Any]] | int:
        if not self.is_active:
            raise QueryError("Transaction is closed. Start a new one with begin_transaction().")
        return self._execute_on(self._conn, sql, params)

    def commit(self) -> None:
        """Commit the transaction and release the connection."""
        try:
            self._transaction.commit()
        except DBAPIError as e:
            raise self._translate_error(e, "COMMIT") from e
        finally:
            self.close()

    def rollback(self) -> None:
        """Roll back the transaction and release the connection."""
        try:
            if self._transaction.is_active:
                self._transaction.rollback()
        finally:
            self.close()

    def close(self) -> None:
        """Release the connection. An uncommitted transaction is rolled back."""
        if not self._closed:
            self._closed = True
            self._conn.close()

    def __enter__(self) -> TransactionScope:
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        if exc_type is None and self.is_active:
            self.commit()
        else:
            self.rollback()


class DatabaseConnection(_StatementRunner):
    """Pooled, transactional access to a PostgreSQL database.

    Statements outside an explicit transaction run in their own short
    transaction on a pooled connection.
    """

    SUPPORTED_DIALECTS = ("postgresql",)

    def __init__(self, config: DatabaseConfig | str | None = None, echo: bool = False) -> None:
        """Initialize database connection.

        Args:
            config: DatabaseConfig, a database URL, or None to read the environment
            echo: Whether to echo SQL statements (for debugging)
        """
        if config is None:
            config = DatabaseConfig.from_env()
        elif isinstance(config, str):
            config = DatabaseConfig(url=config)
        if echo:
            config = config.model_copy(update={"echo": True})

        self.config = config
        self._slow_query_ms = config.slow_query_ms
        self._statement_timeout_ms = config.statement_timeout_ms
        self._engine: Engine | None = None

    @property
    def schema(self) -> str:
        """Postgres schema holding entity tables."""
        return self.config.schema_name

    @property
    def engine(self) -> Engine:
        """Get or create the SQLAlchemy engine."""
        if self._engine is None:
            try:
                connect_args: dict[str, Any] = {
                    "connect_timeout": max(int(self.config.pool_timeout), 1),
                }
                if self.config.statement_timeout_ms:
                    connect_args["options"] = (
                        f"-c statement_timeout={self.config.statement_timeout_ms}"
                    )

                engine = create_engine(
                    self.config.sqlalchemy_url(),
                    echo=self.config.echo,
                    pool_pre_ping=True,  # Verify connections before use
                    pool_size=self.config.pool_size,
                    max_overflow=self.config.max_overflow,
                    pool_timeout=self.config.pool_timeout,
                    pool_recycle=self.config.pool_recycle,
                    connect_args=connect_args,
                )

                if engine.dialect.name not in self.SUPPORTED_DIALECTS:
                    engine.dispose()
                    raise ConnectionError(
                        f"Unsupported database dialect: {engine.dialect.name}. "
                        f"Supported: {', '.join(self.SUPPORTED_DIALECTS)}"
                    )
                self._engine = engine
            except ConnectionError:
                raise
            except Exception as e:
                raise ConnectionError(f"Failed to create database engine: {e}") from e
        return self._engine

    def _connect(self) -> Connection:
        """Check a connection out of the pool, translating pool failures."""
        try:
            return self.engine.connect()
        except PoolTimeoutError as e:
            raise ConnectionError(
                f"Connection pool exhausted after waiting {self.config.pool_timeout}s. "
                "Raise pool_size/max_overflow or release transactions sooner.",
                {"max_connections": self.config.max_connections},
            ) from e
        except DBAPIError as e:
            raise ConnectionError(f"Could not connect to database: {e.orig}") from e

    def _run(self, sql: str, params: Sequence[Any] | None) -> list[dict[str, Any]] | int:
        with self._connect() as conn, conn.begin():
            return self._execute_on(conn, sql, params)

    def begin_transaction(self) -> TransactionScope:
        """Open a transaction on a dedicated connection.

        The caller must pair this with ``commit()`` or ``rollback()`` on every
        exit path; ``transaction()`` does so automatically.
        """
        return TransactionScope(self._connect(), self._slow_query_ms, self._statement_timeout_ms)

    @contextmanager
    def transaction(self) -> Iterator[TransactionScope]:
        """Run a block inside one transaction.

        Commits when the block exits normally, rolls back on any exception.

        Example:
            with connection.transaction() as tx:
                tx.execute('UPDATE "public"."clients" SET "name" = $1', ["Acme"])
        """
        scope = self.begin_transaction()
        try:
            yield scope
        except BaseException:
            scope.rollback()
            raise
        else:
            if scope.is_active:
                scope.commit()

    def get_pool_stats(self) -> dict[str, int]:
        """Current pool occupancy."""
        if self._engine is None:
            return {"size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}
        pool: Any = self._engine.pool
        return {
            "size": pool.size(),
            "checked_in": pool.checkedin(),
            "checked_out": pool.checkedout(),
            "overflow": pool.overflow(),
        }

    def test_connection(self) -> bool:
        """Test if the database connection works.

        Returns:
            True if connection is successful

        Raises:
            ConnectionError: If connection test fails
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except ConnectionError:
            raise
        except Exception as e:
            raise ConnectionError(f"Database connection test failed: {e}") from e

    def close(self) -> None:
        """Close the database connection and dispose of the engine."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def __enter__(self) -> DatabaseConnection:
        """Context manager entry."""
        self.test_connection()
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        """Context manager exit."""
        self.close()
