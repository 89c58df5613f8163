"""
Single-layer proximity graph index for approximate nearest-neighbor search.

Parameters are named after HNSW (``m``, ``ef_search``) but the graph has one
layer only: insertion links a new node to its ``m`` nearest neighbors found by
exhaustive comparison (O(n) per insert), and search is a bounded best-first walk
from a single entry point. Recall is approximate; small indexes fall back to an
exact scan.
"""

import heapq
import itertools
from typing import Dict, List, Optional, Set
import numpy as np

from .types import VectorRecord, QueryResult
from .index import IVectorStore, cosine_distances
from ..core.config import EMBED_DIM, HNSW_EF_SEARCH, HNSW_M


class ProximityGraphIndex(IVectorStore):
    """In-memory proximity graph keyed by pattern id, ranked by cosine distance."""

    def __init__(self, dimension: int = EMBED_DIM, m: int = HNSW_M, ef_search: int = HNSW_EF_SEARCH):
        """
        Initialize an empty graph.

        Args:
            dimension: Dimension of the vectors
            m: Neighbors linked per insert; a node is pruned back to m once it exceeds 2*m
            ef_search: Candidate list size and maximum number of expansions per search
        """
        self.dimension = dimension
        self.m = m
        self.ef_search = ef_search

        self._vectors: Dict[int, np.ndarray] = {}
        self._metadata: Dict[int, Dict[str, object]] = {}
        self._neighbors: Dict[int, Set[int]] = {}

        # Pattern ids are caller-supplied, vector ids are internal
        self._pattern_to_vector: Dict[str, int] = {}
        self._vector_to_pattern: Dict[int, str] = {}

        self.entry_point: Optional[int] = None
        self._next_vector_id = 0

    def add(self, record: VectorRecord) -> None:
        """Add a vector; re-adding an existing pattern id replaces its vector."""
        if record.vector is None:
            raise ValueError(f"Vector record {record.id} has no vector")

        vector = np.asarray(record.vector, dtype=np.float32).reshape(-1)
        if len(vector) != self.dimension:
            raise ValueError(f"Vector dimension {len(vector)} does not match expected dimension {self.dimension}")

        if record.id in self._pattern_to_vector:
            self.delete(record.id)

        nearest = self._nearest_existing(vector, self.m)

        vector_id = self._next_vector_id
        self._next_vector_id += 1

        self._vectors[vector_id] = vector
        self._metadata[vector_id] = dict(record.metadata or {})
        self._neighbors[vector_id] = set()
        self._pattern_to_vector[record.id] = vector_id
        self._vector_to_pattern[vector_id] = record.id

        if self.entry_point is None:
            self.entry_point = vector_id

        for neighbor_id in nearest:
            self._neighbors[vector_id].add(neighbor_id)
            self._neighbors[neighbor_id].add(vector_id)
            if len(self._neighbors[neighbor_id]) > 2 * self.m:
                self._prune(neighbor_id)

    def batch_add(self, records: List[VectorRecord]) -> None:
        """Add multiple vector records to the graph."""
        for record in records:
            self.add(record)

    def search(self, query_vector: np.ndarray, top_k: int = 5) -> List[QueryResult]:
        """Return up to ``top_k`` patterns ranked by descending cosine similarity."""
        if top_k <= 0 or not self._vectors:
            return []

        query = np.asarray(query_vector, dtype=np.float64).reshape(-1)
        if len(query) != self.dimension:
            raise ValueError(f"Query dimension {len(query)} does not match expected dimension {self.dimension}")

        if len(self._vectors) <= top_k:
            ranked = self._exact_ranking(query)
        else:
            ranked = self._greedy_ranking(query, top_k)

        return [
            QueryResult(
                id=self._vector_to_pattern[vector_id],
                score=float(1.0 - distance),
                metadata=self._metadata[vector_id],
            )
            for vector_id, distance in ranked[:top_k]
        ]

    def delete(self, record_id: str) -> bool:
        """Remove a pattern's vector and every edge touching it."""
        vector_id = self._pattern_to_vector.pop(record_id, None)
        if vector_id is None:
            return False

        del self._vector_to_pattern[vector_id]
        del self._vectors[vector_id]
        del self._metadata[vector_id]

        for neighbor_id in self._neighbors.pop(vector_id, set()):
            self._neighbors[neighbor_id].discard(vector_id)

        if self.entry_point == vector_id:
            self.entry_point = next(iter(self._vectors), None)
        return True

    def clear(self) -> None:
        """Clear all records from the graph."""
        self._vectors.clear()
        self._metadata.clear()
        self._neighbors.clear()
        self._pattern_to_vector.clear()
        self._vector_to_pattern.clear()
        self.entry_point = None
        self._next_vector_id = 0

    def size(self) -> int:
        return len(self._vectors)

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._pattern_to_vector

    def ids(self) -> List[str]:
        """Pattern ids currently indexed."""
        return list(self._pattern_to_vector)

    def get_vector(self, record_id: str) -> Optional[np.ndarray]:
        vector_id = self._pattern_to_vector.get(record_id)
        if vector_id is None:
            return None
        return self._vectors[vector_id]

    def neighbors(self, record_id: str) -> Set[str]:
        """Pattern ids linked to ``record_id`` in the graph."""
        vector_id = self._pattern_to_vector.get(record_id)
        if vector_id is None:
            return set()
        return {self._vector_to_pattern[n] for n in self._neighbors[vector_id]}

    def _nearest_existing(self, vector: np.ndarray, count: int) -> List[int]:
        if not self._vectors:
            return []
        vector_ids = list(self._vectors)
        distances = cosine_distances(vector, np.vstack([self._vectors[v] for v in vector_ids]))
        order = np.argsort(distances, kind="stable")[:count]
        return [vector_ids[i] for i in order]

    def _prune(self, vector_id: int) -> None:
        """Cut a node's edge set back to its ``m`` closest neighbors, dropping reverse edges too."""
        neighbor_ids = sorted(self._neighbors[vector_id])
        distances = cosine_distances(
            self._vectors[vector_id],
            np.vstack([self._vectors[n] for n in neighbor_ids]),
        )
        order = np.argsort(distances, kind="stable")
        keep = {neighbor_ids[i] for i in order[:self.m]}

        for neighbor_id in neighbor_ids:
            if neighbor_id not in keep:
                self._neighbors[vector_id].discard(neighbor_id)
                self._neighbors[neighbor_id].discard(vector_id)

    def _exact_ranking(self, query: np.ndarray):
        vector_ids = list(self._vectors)
        distances = cosine_distances(query, np.vstack([self._vectors[v] for v in vector_ids]))
        order = np.argsort(distances, kind="stable")
        return [(vector_ids[i], float(distances[i])) for i in order]

    def _greedy_ranking(self, query: np.ndarray, top_k: int):
        """
        Best-first walk from the entry point.

        Keeps the ``ef`` closest nodes found so far (``ef = max(ef_search, top_k)``)
        and expands the closest unexpanded node until no open candidate can
        improve that set, or ``ef_search`` expansions are used up.
        """
        ef = max(self.ef_search, top_k)
        order = itertools.count()

        entry = self.entry_point
        entry_distance = float(cosine_distances(query, self._vectors[entry][np.newaxis, :])[0])

        # Insertion order of `discovered` is discovery order and breaks distance ties
        discovered: Dict[int, float] = {entry: entry_distance}
        candidates = [(entry_distance, next(order), entry)]
        closest = [-entry_distance]  # max-heap of the ef best distances

        expansions = 0
        while candidates and expansions < self.ef_search:
            distance, _, candidate = heapq.heappop(candidates)
            if len(closest) >= ef and distance > -closest[0]:
                break
            expansions += 1

            fresh = [n for n in sorted(self._neighbors[candidate]) if n not in discovered]
            if not fresh:
                continue

            distances = cosine_distances(query, np.vstack([self._vectors[n] for n in fresh]))
            for neighbor_id, neighbor_distance in zip(fresh, distances):
                neighbor_distance = float(neighbor_distance)
                discovered[neighbor_id] = neighbor_distance
                heapq.heappush(candidates, (neighbor_distance, next(order), neighbor_id))
                heapq.heappush(closest, -neighbor_distance)
                if len(closest) > ef:
                    heapq.heappop(closest)

        return sorted(discovered.items(), key=lambda item: item[1])
