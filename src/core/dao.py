"""
Data access for the short-term and long-term pattern tables.
Every sqlite3 failure is logged and re-raised as PatternPersistenceError.
"""

import json
import sqlite3
from typing import Any, List, Optional, Union

import numpy as np

from .config import EMBED_DIM
from .db import TIER_TABLES, get_db
from .schema import SHORT_TERM, LONG_TERM, PatternRecord, PatternPersistenceError
from util.logging import logger

# The one column that differs between the two tier tables
_TIER_EXTRA_COLUMN = {
    SHORT_TERM: "session_id",
    LONG_TERM: "promoted_from",
}

_FLOAT_BYTES = 4


def _table(tier: str) -> str:
    try:
        return TIER_TABLES[tier]
    except KeyError:
        raise ValueError(f"Unknown pattern tier: {tier}")


def _persistence_error(operation: str, error: sqlite3.Error) -> PatternPersistenceError:
    logger.log_operation(f"dao.{operation}", "failed", {"error": str(error)})
    return PatternPersistenceError(f"{operation} failed: {error}")


def serialize_vector(vector: Union[np.ndarray, List[float]]) -> bytes:
    """Encode a vector as little-endian float32 bytes."""
    return np.asarray(vector, dtype="<f4").tobytes()


def deserialize_vector(payload: Any, dimension: int = EMBED_DIM) -> Optional[np.ndarray]:
    """
    Decode a persisted vector payload.

    Binary payloads are re-aligned to ``dimension * 4`` bytes: a trailing partial
    float is zero-padded and extra bytes are dropped. JSON array text is accepted
    too. Returns None for anything that cannot be recovered.
    """
    if payload is None:
        return None

    if isinstance(payload, str):
        try:
            values = json.loads(payload)
            vector = np.asarray(values, dtype=np.float32).reshape(-1)
        except (ValueError, TypeError):
            return None
        if len(vector) != dimension or not np.all(np.isfinite(vector)):
            return None
        return vector

    if not isinstance(payload, (bytes, bytearray, memoryview)):
        return None

    data = bytes(payload)
    expected = dimension * _FLOAT_BYTES
    if not data:
        return None
    if len(data) < expected:
        # Only tolerate a lost partial float, not missing dimensions
        if expected - len(data) >= _FLOAT_BYTES:
            return None
        data = data + b"\x00" * (expected - len(data))
    elif len(data) > expected:
        data = data[:expected]

    vector = np.frombuffer(data, dtype="<f4").astype(np.float32)
    if not np.all(np.isfinite(vector)):
        return None
    return vector


def _row_to_record(row: tuple, tier: str, dimension: int) -> PatternRecord:
    (id_, strategy, domain, embedding, quality, usage_count, success_count,
     extra, metadata, created_at, updated_at) = row
    return PatternRecord(
        id=id_,
        strategy=strategy,
        domain=domain,
        embedding=deserialize_vector(embedding, dimension),
        quality=quality,
        usage_count=usage_count,
        success_count=success_count,
        created_at=created_at,
        updated_at=updated_at,
        tier=tier,
        metadata=json.loads(metadata) if metadata else {},
        session_id=extra if tier == SHORT_TERM else None,
        promoted_from=extra if tier == LONG_TERM else None,
    )


def _select_columns(tier: str) -> str:
    return (
        "id, strategy, domain, embedding, quality, usage_count, success_count, "
        f"{_TIER_EXTRA_COLUMN[tier]}, metadata, created_at, updated_at"
    )


def insert_pattern(record: PatternRecord, db_path: str = None) -> None:
    """Insert a pattern row into the record's tier table."""
    table = _table(record.tier)
    extra = record.session_id if record.tier == SHORT_TERM else record.promoted_from
    try:
        with get_db(db_path) as conn:
            conn.execute(
                f"INSERT INTO {table} (id, strategy, domain, embedding, quality, usage_count, success_count, "
                f"{_TIER_EXTRA_COLUMN[record.tier]}, metadata, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id, record.strategy, record.domain,
                    serialize_vector(record.embedding) if record.embedding is not None else None,
                    record.quality, record.usage_count, record.success_count, extra,
                    json.dumps(record.metadata or {}), record.created_at, record.updated_at,
                )
            )
            conn.commit()
    except sqlite3.Error as e:
        raise _persistence_error("insert_pattern", e) from e


def get_pattern(tier: str, pattern_id: str, db_path: str = None, dimension: int = EMBED_DIM) -> Optional[PatternRecord]:
    """Get one pattern row by id from a tier."""
    table = _table(tier)
    try:
        with get_db(db_path) as conn:
            row = conn.execute(
                f"SELECT {_select_columns(tier)} FROM {table} WHERE id = ?", (pattern_id,)
            ).fetchone()
    except sqlite3.Error as e:
        raise _persistence_error("get_pattern", e) from e
    return _row_to_record(row, tier, dimension) if row else None


def list_patterns(tier: str, db_path: str = None, dimension: int = EMBED_DIM) -> List[PatternRecord]:
    """Load every row of a tier, oldest first. Malformed embeddings come back as None."""
    table = _table(tier)
    try:
        with get_db(db_path) as conn:
            rows = conn.execute(
                f"SELECT {_select_columns(tier)} FROM {table} ORDER BY created_at, rowid"
            ).fetchall()
    except sqlite3.Error as e:
        raise _persistence_error("list_patterns", e) from e
    return [_row_to_record(row, tier, dimension) for row in rows]


def count_patterns(tier: str, db_path: str = None) -> int:
    table = _table(tier)
    try:
        with get_db(db_path) as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    except sqlite3.Error as e:
        raise _persistence_error("count_patterns", e) from e


def update_usage(tier: str, pattern_id: str, success: bool, now_ms: int, db_path: str = None,
                 dimension: int = EMBED_DIM) -> Optional[PatternRecord]:
    """
    Apply one usage observation to a row.

    quality' = (quality * usage_count + success) / (usage_count + 1)

    Returns:
        The updated record, or None when the tier has no such row
    """
    table = _table(tier)
    outcome = 1 if success else 0
    try:
        with get_db(db_path) as conn:
            row = conn.execute(
                f"SELECT usage_count, success_count, quality FROM {table} WHERE id = ?", (pattern_id,)
            ).fetchone()
            if not row:
                return None

            usage_count, success_count, quality = row
            new_quality = (quality * usage_count + outcome) / (usage_count + 1)
            new_quality = min(1.0, max(0.0, new_quality))

            conn.execute(
                f"UPDATE {table} SET usage_count = ?, success_count = ?, quality = ?, updated_at = ? WHERE id = ?",
                (usage_count + 1, success_count + outcome, new_quality, now_ms, pattern_id)
            )
            conn.commit()
    except sqlite3.Error as e:
        raise _persistence_error("update_usage", e) from e

    return get_pattern(tier, pattern_id, db_path, dimension)


def delete_pattern(tier: str, pattern_id: str, db_path: str = None) -> bool:
    return delete_patterns(tier, [pattern_id], db_path) > 0


def delete_patterns(tier: str, pattern_ids: List[str], db_path: str = None) -> int:
    """Hard-delete rows by id. Returns the number of rows removed."""
    if not pattern_ids:
        return 0
    table = _table(tier)
    try:
        with get_db(db_path) as conn:
            cursor = conn.executemany(f"DELETE FROM {table} WHERE id = ?", [(pid,) for pid in pattern_ids])
            conn.commit()
            return cursor.rowcount
    except sqlite3.Error as e:
        raise _persistence_error("delete_patterns", e) from e


def lowest_ranked_short_term(limit: int, db_path: str = None) -> List[str]:
    """Ids of the short-term rows first in line for eviction."""
    if limit <= 0:
        return []
    try:
        with get_db(db_path) as conn:
            rows = conn.execute(
                "SELECT id FROM short_term_patterns "
                "ORDER BY quality ASC, usage_count ASC, created_at ASC, rowid ASC LIMIT ?",
                (limit,)
            ).fetchall()
    except sqlite3.Error as e:
        raise _persistence_error("lowest_ranked_short_term", e) from e
    return [row[0] for row in rows]


def stale_pattern_ids(tier: str, cutoff_ms: int, min_usage: int, db_path: str = None) -> List[str]:
    """Ids of rows created before ``cutoff_ms`` whose usage_count is below ``min_usage``."""
    table = _table(tier)
    try:
        with get_db(db_path) as conn:
            rows = conn.execute(
                f"SELECT id FROM {table} WHERE created_at < ? AND usage_count < ? ORDER BY created_at, rowid",
                (cutoff_ms, min_usage)
            ).fetchall()
    except sqlite3.Error as e:
        raise _persistence_error("stale_pattern_ids", e) from e
    return [row[0] for row in rows]


def average_quality(db_path: str = None) -> float:
    """Mean quality across both tiers; 0.0 when both are empty."""
    try:
        with get_db(db_path) as conn:
            row = conn.execute(
                "SELECT AVG(quality) FROM ("
                "SELECT quality FROM short_term_patterns UNION ALL SELECT quality FROM long_term_patterns)"
            ).fetchone()
    except sqlite3.Error as e:
        raise _persistence_error("average_quality", e) from e
    return float(row[0]) if row and row[0] is not None else 0.0


def record_index_rebuild(tier: str, total_vectors: int, rebuilt_at: int, dimension: int,
                         m: int, ef_search: int, db_path: str = None) -> None:
    """Refresh the vector_indexes bookkeeping row for a tier."""
    try:
        with get_db(db_path) as conn:
            conn.execute(
                "UPDATE vector_indexes SET total_vectors = ?, last_rebuild_at = ?, dimensions = ?, "
                "hnsw_m = ?, hnsw_ef_search = ?, updated_at = ? WHERE id = ?",
                (total_vectors, rebuilt_at, dimension, m, ef_search, rebuilt_at, tier)
            )
            conn.commit()
    except sqlite3.Error as e:
        raise _persistence_error("record_index_rebuild", e) from e


def get_index_info(tier: str, db_path: str = None) -> Optional[dict]:
    try:
        with get_db(db_path) as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute("SELECT * FROM vector_indexes WHERE id = ?", (tier,)).fetchone()
    except sqlite3.Error as e:
        raise _persistence_error("get_index_info", e) from e
    return dict(row) if row else None
