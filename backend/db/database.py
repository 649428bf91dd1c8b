"""
Database connection and initialization
"""
import sqlite3
from pathlib import Path
from contextlib import contextmanager
from typing import Generator
from loguru import logger

from config import DATABASE_PATH, DATA_DIR, DB_CONNECTION_TIMEOUT

DB_PATH = Path(DATABASE_PATH)
DB_DIR = Path(DATA_DIR)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS playback_snapshots (
    book_id TEXT PRIMARY KEY,
    queue_json TEXT NOT NULL,
    current_index INTEGER NOT NULL DEFAULT 0,
    current_section_index INTEGER NOT NULL DEFAULT -1,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS playback_state (
    book_id TEXT PRIMARY KEY,
    last_played_location_id TEXT,
    last_pause_time REAL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS reading_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    book_id TEXT NOT NULL,
    location_id TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'tts',
    label TEXT,
    completed BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_reading_history_book ON reading_history(book_id, created_at);

CREATE TABLE IF NOT EXISTS lexicon_rules (
    id TEXT PRIMARY KEY,
    pattern TEXT NOT NULL,
    replacement TEXT NOT NULL,
    is_regex BOOLEAN NOT NULL DEFAULT FALSE,
    book_id TEXT,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    order_index INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_lexicon_rules_book ON lexicon_rules(book_id);

CREATE TABLE IF NOT EXISTS playback_settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def init_database() -> None:
    """Create the data directory and apply the schema (idempotent)."""
    DB_DIR.mkdir(parents=True, exist_ok=True)
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)

    is_new = not DB_PATH.exists()
    if is_new:
        logger.info(f"Creating new database at {DB_PATH}")
    else:
        logger.debug(f"Using existing database at {DB_PATH}")

    conn = sqlite3.connect(DB_PATH, timeout=DB_CONNECTION_TIMEOUT)
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript(SCHEMA_SQL)
        conn.commit()
        if is_new:
            logger.info("Schema applied successfully (WAL mode enabled)")
    except Exception as e:
        logger.error(f"Error applying schema: {e}")
        raise
    finally:
        conn.close()


@contextmanager
def get_db_connection() -> Generator[sqlite3.Connection, None, None]:
    """
    Get a database connection with proper cleanup.

    Automatically rolls back on exception and ensures connection is closed.

    Usage:
        with get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM lexicon_rules")
    """
    conn = None
    try:
        conn = sqlite3.connect(DB_PATH, check_same_thread=False, timeout=DB_CONNECTION_TIMEOUT)
        conn.row_factory = sqlite3.Row  # Enable row access by column name
        conn.execute("PRAGMA journal_mode = WAL")
        yield conn
    except Exception:
        if conn:
            try:
                conn.rollback()
            except Exception as rollback_error:
                logger.warning(f"Error during rollback: {rollback_error}")
        raise
    else:
        if conn:
            conn.commit()
    finally:
        if conn:
            try:
                conn.close()
            except Exception as close_error:
                logger.warning(f"Error closing DB connection: {close_error}")


def get_db() -> Generator[sqlite3.Connection, None, None]:
    """
    Get a database connection (for FastAPI dependency injection)

    This is a generator that yields a connection and ensures it's closed after use.
    """
    conn = sqlite3.connect(DB_PATH, check_same_thread=False, timeout=DB_CONNECTION_TIMEOUT)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def get_db_connection_simple() -> sqlite3.Connection:
    """Get a simple database connection (not a context manager)"""
    conn = sqlite3.connect(DB_PATH, check_same_thread=False, timeout=DB_CONNECTION_TIMEOUT)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    return conn
