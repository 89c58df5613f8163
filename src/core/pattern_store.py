"""
Tiered pattern memory.

Patterns enter a volatile short-term tier, get reinforced by usage, and move to
a durable long-term tier once they have proven useful. Each tier is a SQLite
table mirrored by an in-memory ProximityGraphIndex; every mutating operation
keeps the two in lock-step and a reload rebuilds the index from the table.

A single PatternStore instance serializes its own operations. Separate
processes sharing one database are not coordinated: the dedup check-then-insert
in ``store`` and the read-then-delete passes in ``consolidate`` can race, so run
one writer per database.
"""

import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Union

import numpy as np
from pydantic import ValidationError

from . import dao
from .config import (
    DB_PATH, DEDUP_THRESHOLD, DEFAULT_DOMAIN, DEFAULT_QUALITY, EMBED_DIM, HNSW_EF_SEARCH, HNSW_M,
    LONG_TERM_MAX_AGE_MS, MAX_SHORT_TERM, MIN_USAGE_FOR_KEEP, PROMOTION_THRESHOLD,
    QUALITY_THRESHOLD, SHORT_TERM_MAX_AGE_MS, get_embedding_provider,
)
from .db import init_db
from .schema import (
    SHORT_TERM, LONG_TERM, TIERS,
    ConsolidationReport, InvalidPatternInput, PatternHit, PatternMetrics, PatternRecord,
    SearchPatternsRequest, SearchResult, StorePatternRequest, StoreResult,
)
from ..vector.embeddings import EmbeddingService, IEmbeddingProvider
from ..vector.graph_index import ProximityGraphIndex
from ..vector.index import cosine_distances
from ..vector.types import VectorRecord
from util.logging import logger

SHORT_TERM_PREFIX = "st_"
LONG_TERM_PREFIX = "lt_"


def now_ms() -> int:
    return int(time.time() * 1000)


def promoted_id(short_term_id: str) -> str:
    """Long-term id derived from the short-term id it was promoted from."""
    suffix = short_term_id[len(SHORT_TERM_PREFIX):] if short_term_id.startswith(SHORT_TERM_PREFIX) else short_term_id
    return f"{LONG_TERM_PREFIX}{suffix}"


class PatternStore:
    """
    Two-tier pattern memory with dedup-on-insert, usage-driven promotion,
    capacity eviction and consolidation.
    """

    def __init__(self, db_path: str = None,
                 embedder: Union[EmbeddingService, IEmbeddingProvider, Callable, None] = None,
                 dimension: int = EMBED_DIM,
                 dedup_threshold: float = DEDUP_THRESHOLD,
                 max_short_term: int = MAX_SHORT_TERM,
                 promotion_threshold: int = PROMOTION_THRESHOLD,
                 quality_threshold: float = QUALITY_THRESHOLD,
                 min_usage_for_keep: int = MIN_USAGE_FOR_KEEP,
                 short_term_max_age_ms: int = SHORT_TERM_MAX_AGE_MS,
                 long_term_max_age_ms: int = LONG_TERM_MAX_AGE_MS,
                 m: int = HNSW_M,
                 ef_search: int = HNSW_EF_SEARCH,
                 metrics: Optional[PatternMetrics] = None):
        """
        Open (or create) a pattern database and load both tier indexes.

        Args:
            db_path: SQLite file, defaults to DB_PATH
            embedder: EmbeddingService, provider or plain ``embed(text)`` callable;
                None uses the configured provider (hash embedding by default)
            dimension: Embedding dimension
            metrics: Counters object; each instance gets its own when omitted
        """
        self.db_path = db_path or DB_PATH
        self.dimension = dimension
        self.dedup_threshold = dedup_threshold
        self.max_short_term = max_short_term
        self.promotion_threshold = promotion_threshold
        self.quality_threshold = quality_threshold
        self.min_usage_for_keep = min_usage_for_keep
        self.short_term_max_age_ms = short_term_max_age_ms
        self.long_term_max_age_ms = long_term_max_age_ms
        self.m = m
        self.ef_search = ef_search

        if isinstance(embedder, EmbeddingService):
            self.embeddings = embedder
        else:
            provider = embedder if embedder is not None else get_embedding_provider()
            self.embeddings = EmbeddingService(provider, dimension=dimension)

        self.metrics = metrics if metrics is not None else PatternMetrics()
        self.indexes: Dict[str, ProximityGraphIndex] = {
            tier: ProximityGraphIndex(dimension=dimension, m=m, ef_search=ef_search) for tier in TIERS
        }
        self._lock = threading.RLock()

        init_db(self.db_path, dimension)
        self.reload_indexes()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def store(self, strategy: str, domain: str = DEFAULT_DOMAIN, metadata: Optional[Dict[str, Any]] = None,
              quality: Optional[float] = None, session_id: Optional[str] = None) -> StoreResult:
        """
        Remember a strategy in the short-term tier.

        A near-duplicate (similarity >= dedup_threshold) of an existing
        short-term pattern reinforces that pattern instead of adding a row.

        Returns:
            StoreResult with action "created" or "updated"
        """
        try:
            request = StorePatternRequest(
                strategy=strategy, domain=domain or DEFAULT_DOMAIN, metadata=metadata or {},
                quality=quality, session_id=session_id,
            )
        except ValidationError as e:
            raise InvalidPatternInput(str(e)) from e

        with self._lock:
            vector = self.embeddings.embed(request.strategy)
            self.metrics.stores += 1

            nearest = self.indexes[SHORT_TERM].search(vector, top_k=1)
            if nearest and nearest[0].score >= self.dedup_threshold:
                existing_id, similarity = nearest[0].id, nearest[0].score
                updated = dao.update_usage(SHORT_TERM, existing_id, True, now_ms(), self.db_path, self.dimension)
                if updated is not None:
                    self.metrics.dedup_hits += 1
                    logger.log_pattern_operation("deduplicated", existing_id, SHORT_TERM, {
                        "similarity": round(similarity, 4),
                        "usage_count": updated.usage_count,
                    })
                    return StoreResult(id=existing_id, action="updated", similarity=similarity)
                # Index pointed at a row that is gone; drop the stale vector and insert fresh
                self.indexes[SHORT_TERM].delete(existing_id)

            timestamp = now_ms()
            record = PatternRecord(
                id=f"{SHORT_TERM_PREFIX}{uuid.uuid4().hex}",
                strategy=request.strategy,
                domain=request.domain,
                embedding=np.asarray(vector, dtype=np.float32),
                quality=request.quality if request.quality is not None else DEFAULT_QUALITY,
                usage_count=1,
                success_count=0,
                created_at=timestamp,
                updated_at=timestamp,
                tier=SHORT_TERM,
                metadata=request.metadata,
                session_id=request.session_id,
            )
            dao.insert_pattern(record, self.db_path)
            self._index_record(record)
            logger.log_pattern_operation("created", record.id, SHORT_TERM, {
                "domain": record.domain,
                "strategy": record.strategy,
            })

            self._enforce_short_term_capacity()
            return StoreResult(id=record.id, action="created")

    def search_patterns(self, query: Union[str, np.ndarray, List[float]], k: int = 5,
                        include_short_term: bool = True) -> SearchResult:
        """
        Find the k patterns most similar to a text or vector query.

        Long-term hits are ranked ahead of short-term hits with equal similarity,
        and a pattern id appears at most once.
        """
        started = time.perf_counter()

        if isinstance(query, str):
            try:
                request = SearchPatternsRequest(query=query, k=k, include_short_term=include_short_term)
            except ValidationError as e:
                raise InvalidPatternInput(str(e)) from e
        else:
            if query is None:
                raise InvalidPatternInput("query is required")
            if k < 1:
                raise InvalidPatternInput("k must be >= 1")
            request = None

        with self._lock:
            if request is not None:
                vector = self.embeddings.embed(request.query)
            else:
                vector = np.asarray(query, dtype=np.float32).reshape(-1)
                if len(vector) != self.dimension:
                    raise InvalidPatternInput(
                        f"Query vector dimension {len(vector)} does not match expected dimension {self.dimension}"
                    )

            candidates = [(LONG_TERM, hit) for hit in self.indexes[LONG_TERM].search(vector, k)]
            if include_short_term:
                candidates += [(SHORT_TERM, hit) for hit in self.indexes[SHORT_TERM].search(vector, k)]

            # Stable sort keeps long-term ahead on ties
            candidates.sort(key=lambda item: item[1].score, reverse=True)

            patterns: List[PatternHit] = []
            seen = set()
            for tier, hit in candidates:
                if len(patterns) >= k:
                    break
                if hit.id in seen:
                    continue
                seen.add(hit.id)

                record = dao.get_pattern(tier, hit.id, self.db_path, self.dimension)
                if record is None:
                    continue
                patterns.append(PatternHit(
                    id=record.id,
                    strategy=record.strategy,
                    domain=record.domain,
                    quality=record.quality,
                    usage_count=record.usage_count,
                    similarity=hit.score,
                    tier=tier,
                ))

            elapsed_ms = (time.perf_counter() - started) * 1000
            self.metrics.searches += 1
            self.metrics.total_search_time_ms += elapsed_ms

            return SearchResult(
                patterns=patterns,
                search_time_ms=elapsed_ms,
                total_long_term=self.indexes[LONG_TERM].size(),
                total_short_term=self.indexes[SHORT_TERM].size(),
            )

    def record_usage(self, pattern_id: str, success: bool) -> bool:
        """
        Record one use of a pattern and whether it helped.

        Short-term rows that reach the promotion criteria move to long-term.

        Returns:
            False when neither tier has the pattern
        """
        if not pattern_id:
            raise InvalidPatternInput("pattern_id is required")

        with self._lock:
            timestamp = now_ms()
            updated = dao.update_usage(SHORT_TERM, pattern_id, success, timestamp, self.db_path, self.dimension)
            if updated is None:
                updated = dao.update_usage(LONG_TERM, pattern_id, success, timestamp, self.db_path, self.dimension)
            if updated is None:
                return False

            self.metrics.usage_updates += 1
            logger.log_pattern_operation("usage", pattern_id, updated.tier, {
                "success": bool(success),
                "usage_count": updated.usage_count,
                "quality": round(updated.quality, 4),
            })

            if updated.tier == SHORT_TERM:
                self._maybe_promote(updated)
            return True

    def consolidate(self) -> ConsolidationReport:
        """
        Prune stale rows and collapse near-duplicate long-term patterns.

        Safe to run at any time; a second run right after the first changes nothing.
        """
        started = time.perf_counter()
        report = ConsolidationReport()

        with self._lock:
            current = now_ms()

            # Short-term rows that never earned promotion
            stale_short = dao.stale_pattern_ids(
                SHORT_TERM, current - self.short_term_max_age_ms, self.promotion_threshold, self.db_path
            )
            report.short_term_pruned = dao.delete_patterns(SHORT_TERM, stale_short, self.db_path)

            self.reload_indexes()

            report.duplicates_removed = self._deduplicate_long_term()

            stale_long = dao.stale_pattern_ids(
                LONG_TERM, current - self.long_term_max_age_ms, self.min_usage_for_keep, self.db_path
            )
            report.long_term_pruned = dao.delete_patterns(LONG_TERM, stale_long, self.db_path)

            self.reload_indexes()

            report.patterns_pruned = report.short_term_pruned + report.long_term_pruned
            report.duration_ms = (time.perf_counter() - started) * 1000
            self.metrics.consolidations += 1

        logger.log_maintenance_task("consolidate", started, time.perf_counter(), details={
            "duplicates_removed": report.duplicates_removed,
            "short_term_pruned": report.short_term_pruned,
            "long_term_pruned": report.long_term_pruned,
        })
        return report

    def stats(self) -> Dict[str, Any]:
        """Tier sizes, average quality and this instance's running counters."""
        with self._lock:
            return {
                "short_term_patterns": dao.count_patterns(SHORT_TERM, self.db_path),
                "long_term_patterns": dao.count_patterns(LONG_TERM, self.db_path),
                "avg_quality": dao.average_quality(self.db_path),
                "avg_search_time_ms": self.metrics.avg_search_time_ms,
                "stores": self.metrics.stores,
                "searches": self.metrics.searches,
                "promotions": self.metrics.promotions,
                "consolidations": self.metrics.consolidations,
                "dedup_hits": self.metrics.dedup_hits,
                "evictions": self.metrics.evictions,
                "usage_updates": self.metrics.usage_updates,
                "embeddings": self.embeddings.stats(),
            }

    def get_pattern(self, pattern_id: str) -> Optional[PatternRecord]:
        """Look a pattern up in either tier."""
        for tier in TIERS:
            record = dao.get_pattern(tier, pattern_id, self.db_path, self.dimension)
            if record is not None:
                return record
        return None

    def list_patterns(self, tier: str) -> List[PatternRecord]:
        return dao.list_patterns(tier, self.db_path, self.dimension)

    def reload_indexes(self) -> Dict[str, int]:
        """
        Discard both in-memory graphs and rebuild them from their tables.

        Rows whose embedding cannot be decoded are skipped and stay in the table.

        Returns:
            Number of vectors loaded per tier
        """
        loaded = {}
        with self._lock:
            for tier in TIERS:
                index = self.indexes[tier]
                index.clear()
                for record in dao.list_patterns(tier, self.db_path, self.dimension):
                    if record.embedding is None:
                        logger.log_vector_operation("skipped", record.id, {
                            "tier": tier,
                            "reason": "malformed embedding",
                        }, status="skipped")
                        continue
                    self._index_record(record)

                loaded[tier] = index.size()
                dao.record_index_rebuild(
                    tier, index.size(), now_ms(), self.dimension, self.m, self.ef_search, self.db_path
                )
        return loaded

    # ------------------------------------------------------------------
    # Internal policies
    # ------------------------------------------------------------------

    def _index_record(self, record: PatternRecord) -> None:
        self.indexes[record.tier].add(VectorRecord(
            id=record.id,
            vector=record.embedding,
            metadata={"domain": record.domain},
        ))

    def _enforce_short_term_capacity(self) -> None:
        overflow = dao.count_patterns(SHORT_TERM, self.db_path) - self.max_short_term
        if overflow <= 0:
            return

        victims = dao.lowest_ranked_short_term(overflow, self.db_path)
        dao.delete_patterns(SHORT_TERM, victims, self.db_path)
        for pattern_id in victims:
            self.indexes[SHORT_TERM].delete(pattern_id)
            logger.log_pattern_operation("evicted", pattern_id, SHORT_TERM)
        self.metrics.evictions += len(victims)

    def _maybe_promote(self, record: PatternRecord) -> bool:
        if record.usage_count < self.promotion_threshold or record.quality < self.quality_threshold:
            return False
        if record.embedding is None:
            logger.log_pattern_operation("promote", record.id, SHORT_TERM,
                                         {"reason": "malformed embedding"}, status="skipped")
            return False

        target_id = promoted_id(record.id)
        promoted = PatternRecord(
            id=target_id,
            strategy=record.strategy,
            domain=record.domain,
            embedding=record.embedding,
            quality=record.quality,
            usage_count=record.usage_count,
            success_count=record.success_count,
            created_at=record.created_at,
            updated_at=now_ms(),
            tier=LONG_TERM,
            metadata=record.metadata,
            promoted_from=record.id,
        )
        dao.insert_pattern(promoted, self.db_path)
        self._index_record(promoted)

        dao.delete_pattern(SHORT_TERM, record.id, self.db_path)
        self.indexes[SHORT_TERM].delete(record.id)

        self.metrics.promotions += 1
        logger.log_pattern_operation("promoted", target_id, LONG_TERM, {
            "promoted_from": record.id,
            "usage_count": record.usage_count,
            "quality": round(record.quality, 4),
        })
        return True

    def _deduplicate_long_term(self) -> int:
        """
        Collapse long-term patterns whose pairwise similarity reaches dedup_threshold.

        Rows are compared oldest first. The lower-quality side of each duplicate
        pair is deleted; on equal quality the row compared first survives.
        """
        index = self.indexes[LONG_TERM]
        records = [r for r in dao.list_patterns(LONG_TERM, self.db_path, self.dimension) if r.id in index]
        if len(records) < 2:
            return 0

        matrix = np.vstack([index.get_vector(r.id) for r in records])
        alive = [True] * len(records)
        removed = 0

        for i, record in enumerate(records):
            if not alive[i]:
                continue
            similarities = 1.0 - cosine_distances(matrix[i], matrix)

            for j in range(i + 1, len(records)):
                if not alive[j] or similarities[j] < self.dedup_threshold:
                    continue
                other = records[j]
                loser, winner = (j, record) if other.quality <= record.quality else (i, other)

                dao.delete_pattern(LONG_TERM, records[loser].id, self.db_path)
                index.delete(records[loser].id)
                alive[loser] = False
                removed += 1
                logger.log_pattern_operation("deduplicated", records[loser].id, LONG_TERM, {
                    "kept": winner.id,
                    "similarity": round(float(similarities[j]), 4),
                })
                if loser == i:
                    break

        return removed
