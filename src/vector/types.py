"""
Vector record types shared by the embedding layer and the proximity graph index.
"""

from typing import Dict, Optional
import numpy as np
from dataclasses import dataclass, field


@dataclass
class VectorRecord:
    """Represents a vector record with metadata."""

    id: str
    """Pattern identifier the vector belongs to"""

    vector: Optional[np.ndarray]
    """The vector representation of the content"""

    metadata: Dict[str, object] = field(default_factory=dict)
    """Additional metadata associated with the vector"""


@dataclass
class QueryResult:
    """Represents a search result from a vector index."""

    id: str
    """Pattern identifier for the matching record"""

    score: float
    """Cosine similarity of the match (1 - distance)"""

    metadata: Dict[str, object] = field(default_factory=dict)
    """Metadata associated with the matched record"""
