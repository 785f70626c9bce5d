"""
Database abstraction layer (DB-API 2.0 connection factory).

Provides a thin abstraction over sqlite3 and psycopg2 for database portability.
NOT an ORM: just connection management, SQL dialect adaptation and the
engine's schema.

Usage:
    from iacstudio.db import DatabaseManager, init_schema

    dm = DatabaseManager(db_path=Path("data/iacstudio.db"))
    init_schema(dm)

    with dm.connect() as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT status FROM deployments WHERE id = ?", (deployment_id,))
        row = cursor.fetchone()
"""

import logging
import os
import queue
import re
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def is_postgres(db_url: Optional[str] = None) -> bool:
    """Check if the given URL points to PostgreSQL."""
    if db_url is None:
        return False
    return db_url.startswith("postgresql://") or db_url.startswith("postgres://")


class _CompatConnection:
    """
    Wraps a psycopg2 connection to provide SQLite-compatible interface.

    - Accepts '?' placeholders and converts to '%s'
    - Returns dict-like rows via RealDictCursor
    - Proxies commit/rollback/close
    """

    def __init__(self, conn):
        self._conn = conn

    def cursor(self):
        import psycopg2.extras
        return _CompatCursor(self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor))

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()

    def execute(self, sql, params=None):
        cursor = self.cursor()
        cursor.execute(sql, params)
        return cursor


class _CompatCursor:
    """Wraps a psycopg2 cursor to accept '?' placeholders."""

    def __init__(self, cursor):
        self._cursor = cursor

    def execute(self, sql, params=None):
        return self._cursor.execute(sql.replace("?", "%s"), params)

    def fetchone(self):
        return self._cursor.fetchone()

    def fetchall(self):
        return self._cursor.fetchall()

    @property
    def rowcount(self):
        return self._cursor.rowcount

    def close(self):
        self._cursor.close()


def adapt_schema_sql(sql: str, db_url: Optional[str] = None) -> str:
    """
    Adapt SQLite schema SQL for the target database dialect.

    Conversions for PostgreSQL:
    - INTEGER PRIMARY KEY AUTOINCREMENT -> SERIAL PRIMARY KEY
    - BLOB -> BYTEA

    Args:
        sql: SQLite-flavored SQL string
        db_url: Target database URL (None = SQLite, no changes)

    Returns:
        Adapted SQL string
    """
    if not is_postgres(db_url):
        return sql

    adapted = re.sub(
        r'INTEGER\s+PRIMARY\s+KEY\s+AUTOINCREMENT',
        'SERIAL PRIMARY KEY',
        sql,
        flags=re.IGNORECASE,
    )
    adapted = re.sub(r'\bBLOB\b', 'BYTEA', adapted, flags=re.IGNORECASE)

    return adapted


# =============================================================================
# DatabaseManager: connection pool
# =============================================================================

_DEFAULT_DB_PATH = Path("data") / "iacstudio.db"


class DatabaseManager:
    """
    Connection pool for the engine database.

    Reads DATABASE_URL for PostgreSQL; defaults to data/iacstudio.db
    (SQLite) when unset.

    Usage:
        dm = DatabaseManager.get_instance()
        with dm.connect() as conn:
            conn.execute("SELECT ...")
    """

    _instance: Optional["DatabaseManager"] = None
    _lock = threading.Lock()

    def __init__(
        self,
        db_url: Optional[str] = None,
        db_path: Optional[Path] = None,
        pool_size: int = 10,
    ):
        self._db_url = db_url or os.environ.get("DATABASE_URL")
        self._db_path = Path(db_path) if db_path else _DEFAULT_DB_PATH
        self._pool_size = pool_size
        self._use_postgres = is_postgres(self._db_url)

        if not self._use_postgres:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._pool: queue.Queue = queue.Queue(maxsize=pool_size)
        self._pg_pool = None

        if self._use_postgres:
            self._init_pg_pool()

    def _init_pg_pool(self):
        """Initialize PostgreSQL connection pool."""
        try:
            import psycopg2.pool
        except ImportError:
            raise ImportError(
                "psycopg2 is required for PostgreSQL. "
                "Install with: pip install psycopg2-binary"
            )
        self._pg_pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=1,
            maxconn=self._pool_size,
            dsn=self._db_url,
        )

    @classmethod
    def get_instance(
        cls,
        db_url: Optional[str] = None,
        db_path: Optional[Path] = None,
    ) -> "DatabaseManager":
        """Get or create the singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(db_url=db_url, db_path=db_path)
        return cls._instance

    @classmethod
    def reset(cls):
        """Reset the singleton and drain the pool. For testing only."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.close()
                cls._instance = None

    def close(self):
        """Close all pooled connections."""
        while not self._pool.empty():
            try:
                self._pool.get_nowait().close()
            except queue.Empty:
                break
        if self._pg_pool is not None:
            self._pg_pool.closeall()

    # ----- connection acquisition / release -----------------------------------

    def get_connection(self):
        """Acquire a connection from the pool."""
        if self._use_postgres:
            raw = self._pg_pool.getconn()
            raw.autocommit = False
            return _CompatConnection(raw)

        try:
            return self._pool.get_nowait()
        except queue.Empty:
            pass

        conn = sqlite3.connect(str(self._db_path), check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def release_connection(self, conn):
        """Return a connection to the pool."""
        if self._use_postgres:
            raw = conn._conn if isinstance(conn, _CompatConnection) else conn
            self._pg_pool.putconn(raw)
            return

        try:
            self._pool.put_nowait(conn)
        except queue.Full:
            conn.close()

    @contextmanager
    def connect(self):
        """Context manager: acquire → yield → commit/rollback → release."""
        conn = self.get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self.release_connection(conn)

    @property
    def db_path(self) -> Path:
        """Return the SQLite database path."""
        return self._db_path

    @property
    def db_url(self) -> Optional[str]:
        """Return the database URL (None for SQLite)."""
        return self._db_url


# =============================================================================
# Schema
# =============================================================================

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS projects (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT DEFAULT '',
        cloud_provider TEXT NOT NULL,
        settings TEXT,
        archived INTEGER DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS project_graphs (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        version INTEGER NOT NULL,
        nodes TEXT NOT NULL,
        edges TEXT NOT NULL,
        is_current INTEGER DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (project_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS deployments (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
        graph_id TEXT NOT NULL REFERENCES project_graphs(id) ON DELETE CASCADE,
        status TEXT NOT NULL,
        terraform_state BLOB,
        outputs TEXT,
        logs TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_deployments_project ON deployments(project_id)",
    "CREATE INDEX IF NOT EXISTS idx_deployments_status ON deployments(status)",
)


def init_schema(dm: DatabaseManager) -> None:
    """
    Create the engine tables if they do not exist.

    Only called at worker startup and by test fixtures.
    """
    with dm.connect() as conn:
        cursor = conn.cursor()
        for statement in _SCHEMA:
            cursor.execute(adapt_schema_sql(statement, dm.db_url))
    logger.info("Database schema initialized")
