"""
Embedding providers for pattern memory.
A primary model (sentence-transformers or any injected callable) backed by a deterministic hash fallback,
fronted by a bounded LRU cache.
"""

from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Callable, Dict, Sequence, Union
import numpy as np

from ..core.config import EMBED_CACHE_KEY_CHARS, EMBED_CACHE_SIZE, EMBED_DIM, EMBED_MAX_CHARS
from util.logging import logger


class IEmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    @abstractmethod
    def embed_text(self, text: str) -> list[float]:
        """Generate embedding vector for given text."""
        pass

    @abstractmethod
    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        pass


class DeterministicHashEmbedding(IEmbeddingProvider):
    """Deterministic hash-based embedding provider.

    Each output dimension ``i`` folds the normalized text through a 32-bit
    rolling hash seeded with ``i + 1``; the hash is mapped through ``sin`` into
    [0, 1] and the whole vector is L2-normalized. Vectors are stable across
    processes and always unit length, but carry no real semantics.
    """

    def __init__(self, dimension: int = 384):
        self.dimension = dimension

    def embed_text(self, text: str) -> list[float]:
        """Generate deterministic embedding vector using a seeded rolling hash."""
        return self.embed_array(text).tolist()

    def embed_array(self, text: str) -> np.ndarray:
        normalized = (text or "").strip().lower()

        # One rolling hash per dimension, all advanced together
        hashes = np.arange(1, self.dimension + 1, dtype=np.int64)
        for ch in normalized:
            hashes = (hashes * 31 + ord(ch)) & 0xFFFFFFFF

        # Reinterpret as signed 32-bit before mapping through sin()
        signed = np.where(hashes >= 0x80000000, hashes - 0x100000000, hashes)
        vector = (np.sin(signed.astype(np.float64)) + 1.0) / 2.0

        norm = np.linalg.norm(vector)
        if norm <= 0:
            vector = np.full(self.dimension, 1.0 / np.sqrt(self.dimension))
        else:
            vector = vector / norm
        return vector.astype(np.float32)

    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        return self.dimension


class SentenceTransformerEmbedding(IEmbeddingProvider):
    """Sentence transformers embedding provider using pre-trained models.

    The model is loaded on first use; a missing package or model surfaces as an
    exception from ``embed_text``, which ``EmbeddingService`` turns into a fallback.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model = None
        self._dimension = None

    @property
    def model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed_text(self, text: str) -> list[float]:
        """Generate embedding vector using sentence transformers."""
        embedding = self.model.encode(text, convert_to_tensor=False)
        return embedding.tolist()

    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        if self._dimension is None:
            # Get dimension by encoding a dummy string
            dummy_embedding = self.model.encode("test", convert_to_tensor=False)
            self._dimension = len(dummy_embedding)
        return self._dimension


class CallableEmbedding(IEmbeddingProvider):
    """Adapts a plain ``embed(text) -> vector`` function to the provider interface."""

    def __init__(self, embed_fn: Callable[[str], Sequence[float]], dimension: int = 384):
        self.embed_fn = embed_fn
        self.dimension = dimension

    def embed_text(self, text: str) -> list[float]:
        return list(self.embed_fn(text))

    def get_dimension(self) -> int:
        return self.dimension


class EmbeddingService:
    """
    Cached embedding front-end used by the pattern store.

    Delegates to the primary provider when one is configured and falls back to
    DeterministicHashEmbedding whenever the provider is absent, raises, or
    returns a malformed vector. ``embed`` never raises.
    """

    def __init__(self, provider: Union[IEmbeddingProvider, Callable, None] = None,
                 dimension: int = EMBED_DIM, cache_size: int = EMBED_CACHE_SIZE,
                 max_chars: int = EMBED_MAX_CHARS):
        """
        Initialize the embeddings service.

        Args:
            provider: Primary embedding provider or plain callable; None uses the hash embedding only
            dimension: Expected vector dimension
            cache_size: Maximum number of cached vectors
            max_chars: Input is truncated to this many characters before reaching the provider
        """
        if provider is not None and not isinstance(provider, IEmbeddingProvider):
            provider = CallableEmbedding(provider, dimension)

        self.provider = provider
        self.dimension = dimension
        self.cache_size = cache_size
        self.max_chars = max_chars
        self.fallback = DeterministicHashEmbedding(dimension)

        self._cache: "OrderedDict[str, np.ndarray]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._fallbacks = 0

    def embed(self, text: str) -> np.ndarray:
        """
        Embed text into a read-only float32 vector of ``dimension`` floats.

        Args:
            text: Text to embed

        Returns:
            Numpy array of shape (dimension,)
        """
        cache_key = text[:EMBED_CACHE_KEY_CHARS]
        cached = self._cache.get(cache_key)
        if cached is not None:
            self._cache.move_to_end(cache_key)
            self._hits += 1
            return cached

        self._misses += 1
        vector, from_primary = self._embed_uncached(text)
        vector.setflags(write=False)

        # Fallback vectors are not cached when a model is configured, so a recovered model gets used again
        if from_primary or self.provider is None:
            self._cache[cache_key] = vector
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)

        return vector

    def _embed_uncached(self, text: str):
        if self.provider is None:
            return self.fallback.embed_array(text), False

        try:
            raw = self.provider.embed_text(text[:self.max_chars])
            vector = np.array(raw, dtype=np.float32).reshape(-1)
            if vector.shape[0] != self.dimension:
                raise ValueError(f"Embedding dimension {vector.shape[0]} does not match expected dimension {self.dimension}")
            if not np.all(np.isfinite(vector)):
                raise ValueError("Embedding contains non-finite values")
            return vector, True
        except Exception as e:
            self._fallbacks += 1
            logger.log_embedding_fallback(self.provider.__class__.__name__, str(e), text)
            return self.fallback.embed_array(text), False

    def clear_cache(self) -> None:
        """Drop every cached vector."""
        self._cache.clear()

    def stats(self) -> Dict[str, object]:
        """Cache and fallback counters."""
        return {
            "provider": self.provider.__class__.__name__ if self.provider is not None else "DeterministicHashEmbedding",
            "dimension": self.dimension,
            "cache_size": len(self._cache),
            "cache_capacity": self.cache_size,
            "cache_hits": self._hits,
            "cache_misses": self._misses,
            "fallbacks": self._fallbacks,
        }
