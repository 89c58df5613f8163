"""
Shared fixtures for pattern memory tests.
"""

import hashlib

import numpy as np
import pytest

from src.core.pattern_store import PatternStore


def seeded_embedding(text: str, dimension: int = 384) -> list:
    """Unit vector drawn from a generator seeded by the text; unrelated texts are near-orthogonal."""
    seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "little")
    vector = np.random.default_rng(seed).standard_normal(dimension)
    return (vector / np.linalg.norm(vector)).tolist()


@pytest.fixture
def db_path(tmp_path):
    """Fresh database file per test."""
    return str(tmp_path / "patterns.db")


@pytest.fixture
def embedder():
    return seeded_embedding


@pytest.fixture
def store(db_path, embedder):
    """PatternStore backed by a temporary database and the seeded test embedder."""
    return PatternStore(db_path=db_path, embedder=embedder)
