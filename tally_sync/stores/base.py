"""
Database connection management for the staging store.

Each thread gets its own psycopg connection so that the staging upsert and
the cursor commit of one page can share a single transaction while the
scheduler thread and a manual trigger run side by side.
"""
from __future__ import annotations
import threading
import psycopg
from psycopg.rows import dict_row
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional
from loguru import logger
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from ..config import TallySyncConfig
from ..errors import ReconciliationError
from ..models import get_schema_sql


def get_connection(config: TallySyncConfig):
    """
    Create a database connection.

    Opening is retried with exponential backoff; a staging database that is
    still starting up should not fail a sync run outright.
    """
    @retry(
        wait=wait_exponential(multiplier=1, min=1, max=10),
        stop=stop_after_attempt(max(config.db_connect_attempts, 1)),
        retry=retry_if_exception_type(psycopg.OperationalError),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            f"Retrying database connection (attempt {retry_state.attempt_number})..."
        ),
    )
    def _connect():
        return psycopg.connect(config.db_url, autocommit=True, row_factory=dict_row)

    return _connect()


class Database:
    """
    Owner of per-thread connections to the staging database.

    Stores receive the same Database instance so that their writes inside
    ``transaction()`` commit or roll back together.
    """

    def __init__(self, config: Optional[TallySyncConfig] = None):
        self.config = config or TallySyncConfig.from_env()
        self.schema = self.config.db_schema
        self._local = threading.local()
        self._all: list = []
        self._lock = threading.Lock()

    @property
    def conn(self):
        """Get or create this thread's connection."""
        conn = getattr(self._local, "conn", None)
        if conn is None or conn.closed:
            try:
                conn = get_connection(self.config)
            except psycopg.Error as e:
                raise ReconciliationError(f"Cannot connect to staging database: {e}") from e
            self._local.conn = conn
            with self._lock:
                self._all.append(conn)
        return conn

    def table(self, name: str) -> str:
        return f"{self.schema}.{name}"

    @contextmanager
    def transaction(self) -> Generator:
        """
        Run the enclosed writes in one transaction.

        Commits on success, rolls back on exception. Nested use becomes a
        savepoint.
        """
        with self.conn.transaction():
            yield

    def ensure_schema(self):
        """Create schema if it doesn't exist."""
        with self.conn.cursor() as cur:
            cur.execute(f"CREATE SCHEMA IF NOT EXISTS {self.schema}")

    def initialize_schema(self, ddl_path: Optional[Path] = None):
        """Create the schema and the engine's tables if they don't exist."""
        ddl = get_schema_sql(self.schema, ddl_path)
        self.ensure_schema()
        with self.transaction():
            with self.conn.cursor() as cur:
                cur.execute(ddl)
        logger.info(f"Staging schema {self.schema} initialized")

    def close(self):
        """Close every connection opened through this instance."""
        with self._lock:
            conns, self._all = self._all, []
        for conn in conns:
            if not conn.closed:
                conn.close()
        self._local = threading.local()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class Store:
    """Base class for the stores that share a Database."""

    def __init__(self, db: Database):
        self.db = db

    @property
    def conn(self):
        return self.db.conn

    def table(self, name: str) -> str:
        return self.db.table(name)
