"""
Vector layer for pattern memory: embedding providers and the proximity graph index.
"""

# Package initialization for vector module
from .index import IVectorStore, cosine_similarity, cosine_distances
from .graph_index import ProximityGraphIndex
from .types import VectorRecord, QueryResult
from .embeddings import (
    IEmbeddingProvider,
    DeterministicHashEmbedding,
    SentenceTransformerEmbedding,
    CallableEmbedding,
    EmbeddingService,
)

__all__ = [
    'IVectorStore',
    'cosine_similarity',
    'cosine_distances',
    'ProximityGraphIndex',
    'VectorRecord',
    'QueryResult',
    'IEmbeddingProvider',
    'DeterministicHashEmbedding',
    'SentenceTransformerEmbedding',
    'CallableEmbedding',
    'EmbeddingService',
]
