"""CLI context management for database connections and shared state."""

import os
from dataclasses import dataclass, field

from neodb import DatabaseService


def get_database_url(url: str | None) -> str | None:
    """Resolve database URL from CLI arg or environment variables.

    Priority:
    1. Explicit URL argument
    2. NEODB_URL environment variable
    3. DATABASE_URL environment variable

    Returns None when none is set, leaving DatabaseConfig to read the
    NEO_DB_* connection variables.
    """
    if url:
        return url
    if env_url := os.getenv("NEODB_URL"):
        return env_url
    return os.getenv("DATABASE_URL") or None


@dataclass
class CLIContext:
    """Shared context for CLI commands.

    Manages database connection lifecycle and output preferences.
    """

    database_url: str | None
    schema: str | None
    echo: bool
    json_output: bool
    _db: DatabaseService | None = field(default=None, init=False, repr=False)

    def get_db(self) -> DatabaseService:
        """Get or create the database service (lazy initialization).

        Returns:
            Initialized DatabaseService
        """
        if self._db is None:
            db = DatabaseService(self.database_url, echo=self.echo, schema=self.schema)
            db.initialize()
            self._db = db
        return self._db

    def close(self) -> None:
        """Close database connection if open."""
        if self._db is not None:
            self._db.close()
            self._db = None
