"""
Vector index interface and cosine helpers shared by the pattern tiers.
"""

from abc import ABC, abstractmethod
from typing import List
import numpy as np

# Import VectorRecord and QueryResult from types module
from .types import VectorRecord, QueryResult


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Dot product over the product of L2 norms; 0.0 when either vector has zero norm."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    denominator = np.linalg.norm(a) * np.linalg.norm(b)
    if denominator <= 0:
        return 0.0
    return float(np.dot(a, b) / denominator)


def cosine_distances(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine distance from ``query`` to every row of ``matrix``."""
    query = np.asarray(query, dtype=np.float64)
    matrix = np.asarray(matrix, dtype=np.float64)
    denominators = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    similarities = np.zeros(len(matrix), dtype=np.float64)
    nonzero = denominators > 0
    similarities[nonzero] = dots[nonzero] / denominators[nonzero]
    return 1.0 - similarities


class IVectorStore(ABC):
    """Abstract interface for vector storage operations."""

    @abstractmethod
    def add(self, record: VectorRecord) -> None:
        """Add a single vector record to the store."""
        pass

    @abstractmethod
    def batch_add(self, records: List[VectorRecord]) -> None:
        """Add multiple vector records to the store."""
        pass

    @abstractmethod
    def search(self, query_vector: np.ndarray, top_k: int = 5) -> List[QueryResult]:
        """Search for similar vectors and return ranked results."""
        pass

    @abstractmethod
    def delete(self, record_id: str) -> bool:
        """Delete a vector record by ID."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Clear all records from the store."""
        pass

    @abstractmethod
    def size(self) -> int:
        """Number of live vectors."""
        pass
