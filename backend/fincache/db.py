"""Database connection and schema initialization for the durable cache store."""

import sqlite3
from pathlib import Path
from contextlib import contextmanager
from typing import Generator, Union
import logging

logger = logging.getLogger(__name__)

# Default database path relative to backend directory
_DEFAULT_DB_PATH = Path(__file__).parent.parent / "data" / "financial_cache.db"


def get_db_path(db_path: Union[str, Path] = None) -> Path:
    """Return the database path, creating parent directory if needed."""
    db_path = Path(db_path) if db_path is not None else _DEFAULT_DB_PATH
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return db_path


@contextmanager
def get_connection(db_path: Union[str, Path] = None) -> Generator[sqlite3.Connection, None, None]:
    """
    Context manager for database connections.

    Args:
        db_path: Optional custom path to database file

    Yields:
        SQLite connection with Row factory enabled
    """
    conn = sqlite3.connect(get_db_path(db_path))
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: Union[str, Path] = None) -> None:
    """
    Initialize database schema if tables don't exist.

    Args:
        db_path: Optional custom path to database file
    """
    with get_connection(db_path) as conn:
        cursor = conn.cursor()

        # One JSON document per (user, symbol); writes replace
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS cache_documents (
                user_id TEXT NOT NULL,
                symbol TEXT NOT NULL,
                document TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (user_id, symbol)
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_cache_documents_user
            ON cache_documents(user_id)
        """)

        conn.commit()
        logger.info("Cache database schema initialized")


def get_db_stats(db_path: Union[str, Path] = None) -> dict:
    """
    Get database statistics.

    Returns:
        Dict with total_users, total_documents, database_size_mb
    """
    db_path = get_db_path(db_path)

    with get_connection(db_path) as conn:
        cursor = conn.cursor()

        cursor.execute("SELECT COUNT(DISTINCT user_id) FROM cache_documents")
        total_users = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM cache_documents")
        total_documents = cursor.fetchone()[0]

    size_mb = 0
    if db_path.exists():
        size_mb = round(db_path.stat().st_size / (1024 * 1024), 2)

    return {
        'total_users': total_users,
        'total_documents': total_documents,
        'database_size_mb': size_mb
    }
