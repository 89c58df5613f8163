"""
Pattern memory records, request validation models and error types.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

import numpy as np
from pydantic import BaseModel, field_validator

SHORT_TERM = "short_term"
LONG_TERM = "long_term"
TIERS = (SHORT_TERM, LONG_TERM)


class PatternMemoryError(Exception):
    """Base exception for pattern memory operations."""
    pass


class InvalidPatternInput(PatternMemoryError, ValueError):
    """Caller supplied a missing or malformed argument."""
    pass


class PatternPersistenceError(PatternMemoryError):
    """The SQLite layer failed to read or write pattern rows."""
    pass


@dataclass
class PatternRecord:
    id: str
    strategy: str
    domain: str
    embedding: Optional[np.ndarray]
    quality: float
    usage_count: int
    success_count: int
    created_at: int
    updated_at: int
    tier: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None  # short-term only
    promoted_from: Optional[str] = None  # long-term only


@dataclass
class StoreResult:
    id: str
    action: str  # created|updated
    similarity: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"id": self.id, "action": self.action}
        if self.similarity is not None:
            data["similarity"] = self.similarity
        return data


@dataclass
class PatternHit:
    id: str
    strategy: str
    domain: str
    quality: float
    usage_count: int
    similarity: float
    tier: str


@dataclass
class SearchResult:
    patterns: List[PatternHit]
    search_time_ms: float
    total_long_term: int
    total_short_term: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patterns": [asdict(hit) for hit in self.patterns],
            "search_time_ms": self.search_time_ms,
            "total_long_term": self.total_long_term,
            "total_short_term": self.total_short_term,
        }


@dataclass
class ConsolidationReport:
    duplicates_removed: int = 0
    patterns_pruned: int = 0
    short_term_pruned: int = 0
    long_term_pruned: int = 0
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PatternMetrics:
    """Running counters for one PatternStore instance, kept in memory only."""
    stores: int = 0
    searches: int = 0
    promotions: int = 0
    consolidations: int = 0
    dedup_hits: int = 0
    evictions: int = 0
    usage_updates: int = 0
    total_search_time_ms: float = 0.0

    @property
    def avg_search_time_ms(self) -> float:
        if not self.searches:
            return 0.0
        return self.total_search_time_ms / self.searches


class StorePatternRequest(BaseModel):
    strategy: str
    domain: str = "general"
    metadata: Dict[str, Any] = {}
    quality: Optional[float] = None
    session_id: Optional[str] = None

    @field_validator('strategy')
    @classmethod
    def strategy_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('strategy cannot be empty')
        return v

    @field_validator('domain')
    @classmethod
    def domain_defaults_when_blank(cls, v):
        return v.strip() or "general"

    @field_validator('quality')
    @classmethod
    def quality_must_be_in_range(cls, v):
        if v is not None and not 0.0 <= v <= 1.0:
            raise ValueError('quality must be between 0 and 1')
        return v


class SearchPatternsRequest(BaseModel):
    query: str
    k: int = 5
    include_short_term: bool = True

    @field_validator('query')
    @classmethod
    def query_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('query cannot be empty')
        return v

    @field_validator('k')
    @classmethod
    def k_must_be_positive(cls, v):
        if v < 1:
            raise ValueError('k must be >= 1')
        return v
