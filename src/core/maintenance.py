"""
Maintenance routines for pattern memory: database integrity and table/index drift checks.
"""

import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import dao
from .config import DB_PATH
from .db import TIER_TABLES
from .schema import TIERS, PatternPersistenceError
from util.logging import logger


@dataclass
class MaintenanceReport:
    """Comprehensive maintenance operation report."""
    operation: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    issues_found: int = 0
    issues_resolved: int = 0
    actions_taken: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert report to dictionary for serialization."""
        data = {
            "operation": self.operation,
            "started_at": self.started_at.isoformat(),
            "issues_found": self.issues_found,
            "issues_resolved": self.issues_resolved,
            "actions_taken": self.actions_taken,
            "recommendations": self.recommendations,
            "errors": self.errors,
            "metadata": self.metadata
        }
        if self.completed_at:
            data["completed_at"] = self.completed_at.isoformat()
        return data


def check_database_integrity(db_path: str = None) -> MaintenanceReport:
    """
    Check SQLite database integrity and the pattern schema.

    Returns:
        MaintenanceReport: Detailed integrity check results
    """
    db_path = db_path or DB_PATH
    report = MaintenanceReport(
        operation="database_integrity_check",
        started_at=datetime.now()
    )

    path = Path(db_path)
    if not path.exists():
        report.errors.append(f"Database file not found: {db_path}")
        report.completed_at = datetime.now()
        return report

    file_size = path.stat().st_size
    report.metadata["file_size"] = file_size
    if file_size == 0:
        report.errors.append("Database file is empty")
        report.completed_at = datetime.now()
        return report

    try:
        conn = sqlite3.connect(db_path)
        try:
            cursor = conn.cursor()

            cursor.execute("PRAGMA integrity_check")
            integrity_result = cursor.fetchone()
            if integrity_result and integrity_result[0] == "ok":
                report.metadata["integrity_status"] = "passed"
            else:
                report.issues_found += 1
                report.errors.append(f"Integrity check failed: {integrity_result}")
                report.recommendations.append("Restore the pattern database from a backup")

            cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
            table_names = {row[0] for row in cursor.fetchall()}
            for tier, table in TIER_TABLES.items():
                if table not in table_names:
                    report.issues_found += 1
                    report.errors.append(f"Missing table: {table}")
                    continue
                cursor.execute(f"SELECT COUNT(*) FROM {table}")
                report.metadata[f"{tier}_records"] = cursor.fetchone()[0]
        finally:
            conn.close()
    except sqlite3.Error as e:
        report.errors.append(f"Database integrity check failed: {e}")

    report.completed_at = datetime.now()
    return report


def validate_pattern_indexes(store) -> MaintenanceReport:
    """
    Compare each tier's table with its in-memory index.

    Flags rows without a vector (usually malformed embeddings) and vectors
    without a row. Nothing is modified.
    """
    start = time.time()
    report = MaintenanceReport(
        operation="pattern_index_validation",
        started_at=datetime.now()
    )

    try:
        for tier in TIERS:
            records = dao.list_patterns(tier, store.db_path, store.dimension)
            table_ids = {r.id for r in records}
            index_ids = set(store.indexes[tier].ids())

            malformed = sorted(r.id for r in records if r.embedding is None)
            missing = sorted(table_ids - index_ids - set(malformed))
            orphaned = sorted(index_ids - table_ids)

            report.metadata[tier] = {
                "table_records": len(table_ids),
                "index_vectors": len(index_ids),
                "malformed_embeddings": malformed,
                "missing_vectors": missing,
                "orphaned_vectors": orphaned,
            }

            report.issues_found += len(malformed) + len(missing) + len(orphaned)
            if malformed:
                report.recommendations.append(f"Re-embed or delete {len(malformed)} {tier} rows with malformed embeddings")
            if missing or orphaned:
                report.recommendations.append(f"Reload the {tier} index from its table")
    except PatternPersistenceError as e:
        report.errors.append(f"Pattern index validation failed: {e}")

    report.metadata["index_health"] = "good" if report.issues_found == 0 and not report.errors else "drifted"
    report.completed_at = datetime.now()
    logger.log_maintenance_task("validate_pattern_indexes", start, time.time(),
                                status="success" if not report.errors else "failed",
                                details={"issues_found": report.issues_found})
    return report


def rebuild_pattern_indexes(store) -> MaintenanceReport:
    """Rebuild both tier indexes from their tables and report what was loaded."""
    start = time.time()
    report = MaintenanceReport(
        operation="pattern_index_rebuild",
        started_at=datetime.now()
    )

    before = validate_pattern_indexes(store)
    try:
        loaded = store.reload_indexes()
        report.actions_taken.append("Reloaded short-term and long-term indexes")
        report.metadata["loaded"] = loaded
    except PatternPersistenceError as e:
        report.errors.append(f"Index rebuild failed: {e}")

    after = validate_pattern_indexes(store)
    report.issues_found = before.issues_found
    report.issues_resolved = max(0, before.issues_found - after.issues_found)
    if after.issues_found:
        report.recommendations.append("Remaining issues are malformed embeddings; rebuilding cannot fix them")

    report.completed_at = datetime.now()
    logger.log_maintenance_task("rebuild_pattern_indexes", start, time.time(),
                                status="success" if not report.errors else "failed",
                                details={"issues_resolved": report.issues_resolved})
    return report
