"""Database configuration for NeoDB."""

from __future__ import annotations

import os
from collections.abc import Mapping

from pydantic import BaseModel, Field
from sqlalchemy.engine import URL

from neodb.exceptions import ConnectionError


def normalize_postgresql_url(url: str) -> str:
    """Normalize a PostgreSQL URL to use the psycopg3 driver.

    SQLAlchemy defaults to psycopg2 for 'postgresql://' URLs.
    This converts to 'postgresql+psycopg://' to use psycopg3.

    Args:
        url: Database URL

    Returns:
        Normalized URL using psycopg3 driver
    """
    # Already using psycopg3 or another driver
    if "postgresql+" in url:
        return url

    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)

    return url


class DatabaseConfig(BaseModel):
    """Connection, pool and timeout settings.

    Either ``url`` or ``host``/``database`` must be provided.
    """

    url: str | None = Field(default=None, description="Full database URL")
    host: str = Field(default="localhost")
    port: int = Field(default=5432)
    database: str | None = Field(default=None)
    user: str | None = Field(default=None)
    password: str | None = Field(default=None, repr=False)
    schema_name: str = Field(default="public", description="Postgres schema for entity tables")

    # Pool: min 2 idle connections, at most 10 in total
    pool_size: int = Field(default=2, ge=1)
    max_overflow: int = Field(default=8, ge=0)
    pool_timeout: float = Field(default=10.0, gt=0, description="Seconds to wait for a connection")
    pool_recycle: int = Field(default=30, description="Seconds before an idle connection recycles")

    statement_timeout_ms: int = Field(default=30000, ge=0, description="0 disables the timeout")
    slow_query_ms: int = Field(default=1000, ge=0)
    echo: bool = Field(default=False)

    @property
    def max_connections(self) -> int:
        """Upper bound of simultaneously open connections."""
        return self.pool_size + self.max_overflow

    def sqlalchemy_url(self) -> str | URL:
        """Build the SQLAlchemy URL for this config.

        Raises:
            ConnectionError: If neither a URL nor a database name is configured
        """
        if self.url:
            return normalize_postgresql_url(self.url)
        if not self.database:
            raise ConnectionError(
                "No database configured. Set DATABASE_URL, or NEO_DB_HOST and NEO_DB_NAME.",
                {"host": self.host, "port": self.port},
            )
        return URL.create(
            "postgresql+psycopg",
            username=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database,
        )

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, **overrides: object
    ) -> DatabaseConfig:
        """Create a config from environment variables.

        Priority for the URL:
        1. DATABASE_URL
        2. NEO_DB_URL
        3. NEO_DB_HOST / NEO_DB_PORT / NEO_DB_NAME / NEO_DB_USER / NEO_DB_PASSWORD

        Args:
            environ: Mapping to read instead of ``os.environ``
            **overrides: Explicit values that win over the environment

        Returns:
            DatabaseConfig instance
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {
            "url": env.get("DATABASE_URL") or env.get("NEO_DB_URL"),
            "host": env.get("NEO_DB_HOST", "localhost"),
            "port": int(env.get("NEO_DB_PORT", "5432")),
            "database": env.get("NEO_DB_NAME"),
            "user": env.get("NEO_DB_USER"),
            "password": env.get("NEO_DB_PASSWORD"),
            "schema_name": env.get("NEO_DB_SCHEMA", "public"),
        }
        if timeout := env.get("NEO_DB_STATEMENT_TIMEOUT_MS"):
            values["statement_timeout_ms"] = int(timeout)
        if slow := env.get("NEO_DB_SLOW_QUERY_MS"):
            values["slow_query_ms"] = int(slow)
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)
