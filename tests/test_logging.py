"""
Tests for structured logging helpers.
"""

import logging

import pytest

from util.logging import StructuredLogger


@pytest.fixture
def structured(caplog):
    caplog.set_level(logging.DEBUG, logger="pattern_memory_test")
    return StructuredLogger("pattern_memory_test")


def test_pattern_operation_message(structured, caplog):
    structured.log_pattern_operation("created", "st_abc", "short_term", {"domain": "ops"})

    record = caplog.records[-1]
    assert record.levelno == logging.INFO
    assert "Operation: pattern.created, Status: success" in record.getMessage()
    assert "'pattern_id': 'st_abc'" in record.getMessage()
    assert "'tier': 'short_term'" in record.getMessage()


def test_long_strings_truncated(structured, caplog):
    structured.log_pattern_operation("created", "st_abc", "short_term", {"strategy": "x" * 200})

    message = caplog.records[-1].getMessage()
    assert "x" * 50 + "..." in message
    assert "x" * 51 not in message


def test_failed_status_logs_error(structured, caplog):
    structured.log_operation("dao.insert_pattern", "failed", {"error": "disk I/O error"})
    assert caplog.records[-1].levelno == logging.ERROR


@pytest.mark.parametrize("status", ["degraded", "skipped"])
def test_degraded_statuses_log_warning(structured, caplog, status):
    structured.log_vector_operation("skipped", "st_abc", {"reason": "malformed embedding"}, status=status)
    assert caplog.records[-1].levelno == logging.WARNING


def test_embedding_fallback(structured, caplog):
    structured.log_embedding_fallback("SentenceTransformerEmbedding", "no module", text="t" * 80)

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert "embedding.fallback" in record.getMessage()
    assert "Status: degraded" in record.getMessage()


def test_maintenance_task_duration(structured, caplog):
    structured.log_maintenance_task("consolidate", 1.0, 1.25, details={"duplicates_removed": 2})

    message = caplog.records[-1].getMessage()
    assert "maintenance.consolidate" in message
    assert "'duration_ms': 250.0" in message
    assert "'duplicates_removed': 2" in message
