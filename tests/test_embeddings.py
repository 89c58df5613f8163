"""
Tests for embedding providers and the cached embedding service.
"""

import sys
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from src.vector.embeddings import (
    CallableEmbedding,
    DeterministicHashEmbedding,
    EmbeddingService,
    IEmbeddingProvider,
    SentenceTransformerEmbedding,
)


class TestDeterministicHashEmbedding:
    """Hash fallback embedding."""

    def test_is_embedding_provider(self):
        assert isinstance(DeterministicHashEmbedding(), IEmbeddingProvider)

    def test_deterministic(self):
        """Same text always maps to the same vector."""
        embedder = DeterministicHashEmbedding(384)
        assert embedder.embed_text("retry with backoff") == embedder.embed_text("retry with backoff")

    def test_dimension_and_unit_norm(self):
        embedder = DeterministicHashEmbedding(384)
        for text in ["a", "retry with exponential backoff", "x" * 5000]:
            vector = embedder.embed_array(text)
            assert vector.shape == (384,)
            assert vector.dtype == np.float32
            assert np.all(np.isfinite(vector))
            assert np.linalg.norm(vector) == pytest.approx(1.0, abs=1e-5)

    def test_empty_text_is_well_formed(self):
        vector = DeterministicHashEmbedding(16).embed_array("")
        assert vector.shape == (16,)
        assert np.linalg.norm(vector) == pytest.approx(1.0, abs=1e-5)

    def test_normalizes_case_and_whitespace(self):
        embedder = DeterministicHashEmbedding(32)
        assert np.array_equal(embedder.embed_array("  Cache Warmup "), embedder.embed_array("cache warmup"))

    def test_different_texts_differ(self):
        embedder = DeterministicHashEmbedding(32)
        assert not np.array_equal(embedder.embed_array("alpha"), embedder.embed_array("beta"))

    def test_get_dimension(self):
        assert DeterministicHashEmbedding(64).get_dimension() == 64


class TestEmbeddingService:
    """Caching, truncation and fallback behaviour."""

    def test_hash_only_without_provider(self):
        service = EmbeddingService(dimension=32)
        vector = service.embed("split the query")

        assert vector.shape == (32,)
        assert np.array_equal(vector, DeterministicHashEmbedding(32).embed_array("split the query"))
        assert service.stats()["provider"] == "DeterministicHashEmbedding"

    def test_returned_vector_is_read_only(self):
        service = EmbeddingService(dimension=16)
        vector = service.embed("immutable")
        with pytest.raises(ValueError):
            vector[0] = 1.0

    def test_callable_provider_is_wrapped(self, embedder):
        service = EmbeddingService(embedder, dimension=384)
        assert isinstance(service.provider, CallableEmbedding)
        assert np.allclose(service.embed("use an index"), embedder("use an index"), atol=1e-6)

    def test_cache_hit_skips_provider(self, embedder):
        provider = MagicMock(side_effect=embedder)
        service = EmbeddingService(provider, dimension=384)

        first = service.embed("memoize lookups")
        second = service.embed("memoize lookups")

        assert provider.call_count == 1
        assert first is second
        stats = service.stats()
        assert stats["cache_hits"] == 1
        assert stats["cache_misses"] == 1

    def test_cache_key_uses_text_prefix(self, embedder):
        """Texts sharing the first 200 characters share a cache entry."""
        provider = MagicMock(side_effect=embedder)
        service = EmbeddingService(provider, dimension=384)

        prefix = "p" * 200
        service.embed(prefix + "first tail")
        service.embed(prefix + "second tail")

        assert provider.call_count == 1

    def test_lru_eviction_order(self, embedder):
        """The least recently used entry is evicted first."""
        provider = MagicMock(side_effect=embedder)
        service = EmbeddingService(provider, dimension=384, cache_size=2)

        service.embed("a")
        service.embed("b")
        service.embed("a")  # refresh a
        service.embed("c")  # evicts b
        assert provider.call_count == 3

        service.embed("a")
        assert provider.call_count == 3

        service.embed("b")
        assert provider.call_count == 4
        assert service.stats()["cache_size"] == 2

    def test_input_truncated_before_provider(self, embedder):
        seen = []

        def provider(text):
            seen.append(text)
            return embedder(text)

        service = EmbeddingService(provider, dimension=384, max_chars=10)
        service.embed("abcdefghijklmnopqrstuvwxyz")

        assert seen == ["abcdefghij"]

    def test_provider_exception_falls_back(self):
        provider = MagicMock(spec=IEmbeddingProvider)
        provider.embed_text.side_effect = RuntimeError("model offline")
        service = EmbeddingService(provider, dimension=32)

        vector = service.embed("keep working")

        assert np.array_equal(vector, DeterministicHashEmbedding(32).embed_array("keep working"))
        assert service.stats()["fallbacks"] == 1

    def test_wrong_dimension_falls_back(self):
        service = EmbeddingService(lambda text: [0.1, 0.2, 0.3], dimension=32)

        vector = service.embed("short vector")

        assert vector.shape == (32,)
        assert service.stats()["fallbacks"] == 1

    def test_non_finite_vector_falls_back(self):
        service = EmbeddingService(lambda text: [float("nan")] * 8, dimension=8)

        vector = service.embed("nan vector")

        assert np.all(np.isfinite(vector))
        assert service.stats()["fallbacks"] == 1

    def test_fallback_vectors_not_cached_when_provider_configured(self, embedder):
        """A provider that recovers is used on the next call."""
        calls = {"count": 0}

        def flaky(text):
            calls["count"] += 1
            if calls["count"] == 1:
                raise RuntimeError("warming up")
            return embedder(text)

        service = EmbeddingService(flaky, dimension=384)
        first = service.embed("recovering model")
        second = service.embed("recovering model")

        assert calls["count"] == 2
        assert not np.allclose(first, second)
        assert np.allclose(second, embedder("recovering model"), atol=1e-6)

    def test_fallback_logged_as_degraded(self):
        service = EmbeddingService(MagicMock(side_effect=RuntimeError("boom")), dimension=16)

        with patch("src.vector.embeddings.logger") as mock_logger:
            service.embed("log me")

        mock_logger.log_embedding_fallback.assert_called_once()
        provider_name, reason, text = mock_logger.log_embedding_fallback.call_args[0]
        assert reason == "boom"
        assert text == "log me"

    def test_clear_cache(self):
        service = EmbeddingService(dimension=16)
        service.embed("one")
        service.clear_cache()
        assert service.stats()["cache_size"] == 0


class TestSentenceTransformerEmbedding:
    """Lazy sentence-transformers provider."""

    def test_model_not_loaded_on_construction(self):
        provider = SentenceTransformerEmbedding("all-MiniLM-L6-v2")
        assert provider._model is None

    def test_uses_loaded_model(self):
        provider = SentenceTransformerEmbedding("all-MiniLM-L6-v2")
        provider._model = MagicMock()
        provider._model.encode.return_value = np.ones(384, dtype=np.float32)

        assert provider.embed_text("hello") == [1.0] * 384
        assert provider.get_dimension() == 384

    def test_missing_package_falls_back(self):
        """An unavailable model degrades to the hash embedding instead of raising."""
        service = EmbeddingService(SentenceTransformerEmbedding("all-MiniLM-L6-v2"), dimension=32)

        with patch.dict(sys.modules, {"sentence_transformers": None}):
            vector = service.embed("no model here")

        assert np.array_equal(vector, DeterministicHashEmbedding(32).embed_array("no model here"))
        assert service.stats()["fallbacks"] == 1
