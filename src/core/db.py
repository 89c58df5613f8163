"""
SQLite schema for pattern memory.
Short-term and long-term tiers share one record shape; the metadata and vector_indexes tables
describe the deployment and the last index rebuild of each tier.
"""

import sqlite3
import time
from contextlib import contextmanager
from typing import Generator

from .config import DB_PATH, EMBED_DIM, HNSW_EF_SEARCH, HNSW_M, SCHEMA_VERSION, SQLITE_BUSY_TIMEOUT_SEC, ensure_db_directory
from .schema import SHORT_TERM, LONG_TERM, PatternPersistenceError
from util.logging import logger

TIER_TABLES = {
    SHORT_TERM: "short_term_patterns",
    LONG_TERM: "long_term_patterns",
}


@contextmanager
def get_db(db_path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    conn = sqlite3.connect(db_path or DB_PATH, timeout=SQLITE_BUSY_TIMEOUT_SEC)
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        yield conn
    finally:
        conn.close()


def init_db(db_path: str = None, dimension: int = EMBED_DIM):
    """Initialize the database with required tables."""
    db_path = db_path or DB_PATH
    ensure_db_directory(db_path)
    now_ms = int(time.time() * 1000)

    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS short_term_patterns (
                    id TEXT PRIMARY KEY,
                    strategy TEXT NOT NULL,
                    domain TEXT NOT NULL DEFAULT 'general',
                    embedding BLOB,
                    quality REAL NOT NULL DEFAULT 0.5 CHECK(quality >= 0 AND quality <= 1),
                    usage_count INTEGER NOT NULL DEFAULT 1,
                    success_count INTEGER NOT NULL DEFAULT 0,
                    session_id TEXT,
                    metadata TEXT,   -- JSON object
                    created_at INTEGER NOT NULL,  -- ms since epoch
                    updated_at INTEGER NOT NULL,
                    CHECK(usage_count >= success_count AND success_count >= 0)
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS long_term_patterns (
                    id TEXT PRIMARY KEY,
                    strategy TEXT NOT NULL,
                    domain TEXT NOT NULL DEFAULT 'general',
                    embedding BLOB,
                    quality REAL NOT NULL DEFAULT 0.5 CHECK(quality >= 0 AND quality <= 1),
                    usage_count INTEGER NOT NULL DEFAULT 1,
                    success_count INTEGER NOT NULL DEFAULT 0,
                    promoted_from TEXT,  -- source short-term id
                    metadata TEXT,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    CHECK(usage_count >= success_count AND success_count >= 0)
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS vector_indexes (
                    id TEXT PRIMARY KEY,  -- tier name
                    name TEXT NOT NULL UNIQUE,
                    dimensions INTEGER NOT NULL,
                    metric TEXT DEFAULT 'cosine',
                    hnsw_m INTEGER DEFAULT 16,
                    hnsw_ef_search INTEGER DEFAULT 100,
                    total_vectors INTEGER DEFAULT 0,
                    last_rebuild_at INTEGER,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            ''')

            # Eviction walks the lowest (quality, usage) rows first
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_short_term_eviction ON short_term_patterns(quality, usage_count, created_at)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_short_term_created ON short_term_patterns(created_at)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_long_term_created ON long_term_patterns(created_at)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_long_term_quality ON long_term_patterns(quality DESC)')

            for key, value in (
                ("schema_version", str(SCHEMA_VERSION)),
                ("embedding_dimensions", str(dimension)),
                ("created_at", str(now_ms)),
            ):
                cursor.execute(
                    "INSERT OR IGNORE INTO metadata (key, value, updated_at) VALUES (?, ?, ?)",
                    (key, value, now_ms)
                )

            for tier, table in TIER_TABLES.items():
                cursor.execute(
                    "INSERT OR IGNORE INTO vector_indexes (id, name, dimensions, hnsw_m, hnsw_ef_search, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (tier, table, dimension, HNSW_M, HNSW_EF_SEARCH, now_ms, now_ms)
                )

            conn.commit()
    except sqlite3.Error as e:
        logger.error(f"Failed to initialize pattern database at '{db_path}': {e}")
        raise PatternPersistenceError(f"Failed to initialize pattern database: {e}") from e

    stored_dimension = get_metadata_value("embedding_dimensions", db_path)
    if stored_dimension is not None and int(stored_dimension) != dimension:
        logger.warning(
            f"Pattern database '{db_path}' was created with {stored_dimension}-dim embeddings; "
            f"running with {dimension}. Mismatched vectors will be skipped on load."
        )


def get_metadata_value(key: str, db_path: str = None):
    """Read one value from the metadata table, or None."""
    try:
        with get_db(db_path) as conn:
            row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
            return row[0] if row else None
    except sqlite3.Error as e:
        raise PatternPersistenceError(f"Failed to read metadata '{key}': {e}") from e


def health_check(db_path: str = None):
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            tables = cursor.fetchall()

            # Check if required tables exist
            table_names = [table[0] for table in tables]
            required_tables = list(TIER_TABLES.values()) + ['metadata', 'vector_indexes']

            return all(table in table_names for table in required_tables)
    except sqlite3.Error:
        return False
