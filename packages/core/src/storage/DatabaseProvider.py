"""SQLite database connection provider.

Opens a read-write connection to the chat store and applies the schema.
The connection runs in autocommit mode so every statement is its own
transaction; the rate limiter relies on that for its single-statement
counter increment.
"""

import logging
import sqlite3
from pathlib import Path

from storage.schema import SCHEMA_SQL

logger = logging.getLogger(__name__)

IN_MEMORY = ":memory:"


class DatabaseProvider:
    """Manage a single SQLite connection shared across request threads."""

    def __init__(self, db_path: str = IN_MEMORY, busy_timeout_ms: int = 2000) -> None:
        """Open the database file (creating it if needed) and apply the schema.

        Args:
            db_path: Filesystem path to the SQLite database, or ``":memory:"``.
            busy_timeout_ms: How long a statement waits on a locked database.

        Raises:
            FileNotFoundError: If the parent directory cannot be created.
            ConnectionError: If SQLite cannot open the file or apply the schema.
        """
        target = db_path
        if db_path != IN_MEMORY:
            try:
                resolved = Path(db_path).expanduser().resolve()
                resolved.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise FileNotFoundError(
                    f"Could not resolve database path '{db_path}': {e}"
                ) from e
            target = str(resolved)

        try:
            self._connection = sqlite3.connect(
                target,
                timeout=busy_timeout_ms / 1000,
                isolation_level=None,
                check_same_thread=False,
            )
            self._connection.execute("PRAGMA foreign_keys = ON")
            if target != IN_MEMORY:
                self._connection.execute("PRAGMA journal_mode = WAL")
            self._connection.executescript(SCHEMA_SQL)
        except sqlite3.Error as e:
            raise ConnectionError(
                f"Failed to open database at '{target}': {e}"
            ) from e

        logger.info("Opened chat store at %s", target)

    def get_connection(self) -> sqlite3.Connection:
        """Return the underlying SQLite connection."""
        return self._connection

    def close(self) -> None:
        self._connection.close()
