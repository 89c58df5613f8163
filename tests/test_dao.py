"""
Tests for the pattern tables: vector codec, row access and usage bookkeeping.
"""

import json
import sqlite3

import numpy as np
import pytest

from src.core import dao
from src.core.db import get_metadata_value, health_check, init_db
from src.core.schema import LONG_TERM, SHORT_TERM, PatternPersistenceError, PatternRecord

DIM = 8


def make_record(pattern_id, tier=SHORT_TERM, quality=0.5, usage_count=1, created_at=1000, vector=None):
    return PatternRecord(
        id=pattern_id,
        strategy=f"strategy for {pattern_id}",
        domain="testing",
        embedding=vector if vector is not None else np.arange(DIM, dtype=np.float32),
        quality=quality,
        usage_count=usage_count,
        success_count=0,
        created_at=created_at,
        updated_at=created_at,
        tier=tier,
        metadata={"source": "test"},
    )


@pytest.fixture
def db(db_path):
    init_db(db_path, dimension=DIM)
    return db_path


class TestVectorCodec:
    """Little-endian float32 BLOB encoding."""

    def test_round_trip(self):
        vector = np.array([0.5, -1.25, 3.0, 0.0], dtype=np.float32)
        payload = dao.serialize_vector(vector)

        assert len(payload) == 16
        assert payload[:4] == b"\x00\x00\x00?"
        assert np.array_equal(dao.deserialize_vector(payload, 4), vector)

    def test_partial_trailing_float_is_padded(self):
        vector = np.array([1.0, 2.0, 3.0, 4.0], dtype=np.float32)
        payload = dao.serialize_vector(vector)[:-2]

        decoded = dao.deserialize_vector(payload, 4)

        assert decoded is not None
        assert len(decoded) == 4
        assert np.array_equal(decoded[:3], vector[:3])

    def test_extra_bytes_are_dropped(self):
        vector = np.array([1.0, 2.0], dtype=np.float32)
        payload = dao.serialize_vector(vector) + b"\x01\x02\x03"

        assert np.array_equal(dao.deserialize_vector(payload, 2), vector)

    def test_missing_dimensions_rejected(self):
        payload = dao.serialize_vector(np.ones(3, dtype=np.float32))
        assert dao.deserialize_vector(payload, 4) is None

    def test_json_text_accepted(self):
        decoded = dao.deserialize_vector(json.dumps([0.1, 0.2, 0.3]), 3)
        assert np.allclose(decoded, [0.1, 0.2, 0.3])

    @pytest.mark.parametrize("payload", [None, b"", "not json", "[1, 2]", 42])
    def test_unrecoverable_payloads(self, payload):
        assert dao.deserialize_vector(payload, 3) is None

    def test_non_finite_rejected(self):
        payload = dao.serialize_vector(np.array([1.0, np.nan, 2.0], dtype=np.float32))
        assert dao.deserialize_vector(payload, 3) is None


class TestSchema:

    def test_init_creates_tables(self, db):
        assert health_check(db) is True
        assert get_metadata_value("schema_version", db) == "1"
        assert get_metadata_value("embedding_dimensions", db) == str(DIM)

    def test_init_is_idempotent(self, db):
        init_db(db, dimension=DIM)
        assert health_check(db) is True

    def test_vector_index_rows_per_tier(self, db):
        for tier in (SHORT_TERM, LONG_TERM):
            info = dao.get_index_info(tier, db)
            assert info["dimensions"] == DIM
            assert info["total_vectors"] == 0

    def test_quality_check_constraint(self, db):
        with pytest.raises(PatternPersistenceError):
            dao.insert_pattern(make_record("st_bad", quality=1.5), db)


class TestPatternRows:

    def test_insert_and_get(self, db):
        dao.insert_pattern(make_record("st_1"), db)

        record = dao.get_pattern(SHORT_TERM, "st_1", db, DIM)

        assert record.strategy == "strategy for st_1"
        assert record.metadata == {"source": "test"}
        assert record.tier == SHORT_TERM
        assert np.array_equal(record.embedding, np.arange(DIM, dtype=np.float32))
        assert dao.get_pattern(LONG_TERM, "st_1", db, DIM) is None

    def test_long_term_keeps_promoted_from(self, db):
        record = make_record("lt_1", tier=LONG_TERM)
        record.promoted_from = "st_1"
        dao.insert_pattern(record, db)

        loaded = dao.get_pattern(LONG_TERM, "lt_1", db, DIM)
        assert loaded.promoted_from == "st_1"
        assert loaded.session_id is None

    def test_duplicate_id_raises(self, db):
        dao.insert_pattern(make_record("st_1"), db)
        with pytest.raises(PatternPersistenceError):
            dao.insert_pattern(make_record("st_1"), db)

    def test_unknown_tier(self, db):
        with pytest.raises(ValueError):
            dao.count_patterns("medium_term", db)

    def test_list_is_oldest_first(self, db):
        dao.insert_pattern(make_record("st_new", created_at=3000), db)
        dao.insert_pattern(make_record("st_old", created_at=1000), db)

        assert [r.id for r in dao.list_patterns(SHORT_TERM, db, DIM)] == ["st_old", "st_new"]

    def test_malformed_embedding_loads_as_none(self, db):
        dao.insert_pattern(make_record("st_1"), db)
        conn = sqlite3.connect(db)
        conn.execute("UPDATE short_term_patterns SET embedding = ? WHERE id = 'st_1'", (b"\x01\x02",))
        conn.commit()
        conn.close()

        assert dao.get_pattern(SHORT_TERM, "st_1", db, DIM).embedding is None

    def test_delete_patterns(self, db):
        for i in range(3):
            dao.insert_pattern(make_record(f"st_{i}"), db)

        assert dao.delete_patterns(SHORT_TERM, ["st_0", "st_2", "st_missing"], db) == 2
        assert dao.count_patterns(SHORT_TERM, db) == 1
        assert dao.delete_pattern(SHORT_TERM, "st_1", db) is True
        assert dao.delete_pattern(SHORT_TERM, "st_1", db) is False

    def test_persistence_error_wraps_sqlite(self, tmp_path):
        with pytest.raises(PatternPersistenceError):
            dao.count_patterns(SHORT_TERM, str(tmp_path / "missing" / "patterns.db"))


class TestUsageUpdates:

    def test_success_raises_quality(self, db):
        dao.insert_pattern(make_record("st_1", quality=0.5), db)

        record = dao.update_usage(SHORT_TERM, "st_1", True, 5000, db, DIM)

        assert record.usage_count == 2
        assert record.success_count == 1
        assert record.quality == pytest.approx(0.75)
        assert record.updated_at == 5000

    def test_failure_lowers_quality(self, db):
        dao.insert_pattern(make_record("st_1", quality=0.75, usage_count=2), db)

        record = dao.update_usage(SHORT_TERM, "st_1", False, 5000, db, DIM)

        assert record.usage_count == 3
        assert record.success_count == 0
        assert record.quality == pytest.approx(0.5)

    def test_missing_row(self, db):
        assert dao.update_usage(SHORT_TERM, "st_missing", True, 5000, db, DIM) is None


class TestSelections:

    def test_eviction_order(self, db):
        dao.insert_pattern(make_record("st_good", quality=0.9), db)
        dao.insert_pattern(make_record("st_bad_used", quality=0.2, usage_count=3), db)
        dao.insert_pattern(make_record("st_bad_newer", quality=0.2, created_at=2000), db)
        dao.insert_pattern(make_record("st_bad_older", quality=0.2, created_at=1000), db)

        assert dao.lowest_ranked_short_term(3, db) == ["st_bad_older", "st_bad_newer", "st_bad_used"]
        assert dao.lowest_ranked_short_term(0, db) == []

    def test_stale_ids(self, db):
        dao.insert_pattern(make_record("st_old_unused", created_at=1000, usage_count=1), db)
        dao.insert_pattern(make_record("st_old_used", created_at=1000, usage_count=5), db)
        dao.insert_pattern(make_record("st_fresh", created_at=9000, usage_count=1), db)

        assert dao.stale_pattern_ids(SHORT_TERM, 5000, 3, db) == ["st_old_unused"]

    def test_average_quality(self, db):
        assert dao.average_quality(db) == 0.0

        dao.insert_pattern(make_record("st_1", quality=0.2), db)
        dao.insert_pattern(make_record("lt_1", tier=LONG_TERM, quality=0.8), db)

        assert dao.average_quality(db) == pytest.approx(0.5)

    def test_record_index_rebuild(self, db):
        dao.record_index_rebuild(LONG_TERM, 7, 12345, DIM, 16, 100, db)

        info = dao.get_index_info(LONG_TERM, db)
        assert info["total_vectors"] == 7
        assert info["last_rebuild_at"] == 12345
