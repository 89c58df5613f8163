"""
Pattern memory configuration.
All settings are read from the environment once at import time; every value has a working default.
"""

import os
from pathlib import Path

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/patterns.db")
SQLITE_BUSY_TIMEOUT_SEC = float(os.getenv("SQLITE_BUSY_TIMEOUT_SEC", "5"))

# Embedding configuration
EMBED_PROVIDER = os.getenv("EMBED_PROVIDER", "hash")  # hash|sentence-transformers
EMBED_MODEL_NAME = os.getenv("EMBED_MODEL_NAME", "all-MiniLM-L6-v2")
EMBED_DIM = int(os.getenv("EMBED_DIM", "384"))
EMBED_MAX_CHARS = int(os.getenv("EMBED_MAX_CHARS", "512"))
EMBED_CACHE_SIZE = int(os.getenv("EMBED_CACHE_SIZE", "1000"))
EMBED_CACHE_KEY_CHARS = 200

# Proximity graph configuration
HNSW_M = int(os.getenv("HNSW_M", "16"))
HNSW_EF_SEARCH = int(os.getenv("HNSW_EF_SEARCH", "100"))

# Tier lifecycle policy
DEDUP_THRESHOLD = float(os.getenv("DEDUP_THRESHOLD", "0.95"))
MAX_SHORT_TERM = int(os.getenv("MAX_SHORT_TERM", "500"))
PROMOTION_THRESHOLD = int(os.getenv("PROMOTION_THRESHOLD", "3"))
QUALITY_THRESHOLD = float(os.getenv("QUALITY_THRESHOLD", "0.6"))
MIN_USAGE_FOR_KEEP = int(os.getenv("MIN_USAGE_FOR_KEEP", "2"))
DEFAULT_QUALITY = 0.5
DEFAULT_DOMAIN = "general"
SHORT_TERM_MAX_AGE_HOURS = int(os.getenv("SHORT_TERM_MAX_AGE_HOURS", "24"))
LONG_TERM_MAX_AGE_DAYS = int(os.getenv("LONG_TERM_MAX_AGE_DAYS", "30"))

SHORT_TERM_MAX_AGE_MS = SHORT_TERM_MAX_AGE_HOURS * 60 * 60 * 1000
LONG_TERM_MAX_AGE_MS = LONG_TERM_MAX_AGE_DAYS * 24 * 60 * 60 * 1000

# Version string
VERSION = "1.0.0"
SCHEMA_VERSION = 1


def get_embedding_provider():
    """Get the configured primary embedding provider. Returns None when only the hash embedding is wanted."""
    if EMBED_PROVIDER == "sentence-transformers":
        from src.vector.embeddings import SentenceTransformerEmbedding
        return SentenceTransformerEmbedding(EMBED_MODEL_NAME)
    # hash and unknown providers run on the deterministic fallback alone
    return None


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def validate_pattern_config():
    """Validate pattern memory configuration and return any issues."""
    issues = []

    if EMBED_PROVIDER not in ["hash", "sentence-transformers"]:
        issues.append(f"Invalid EMBED_PROVIDER: {EMBED_PROVIDER}")

    if EMBED_DIM < 1:
        issues.append("EMBED_DIM must be >= 1")

    if EMBED_CACHE_SIZE < 1:
        issues.append("EMBED_CACHE_SIZE must be >= 1")

    if HNSW_M < 1:
        issues.append("HNSW_M must be >= 1")

    if HNSW_EF_SEARCH < 1:
        issues.append("HNSW_EF_SEARCH must be >= 1")

    if not 0.0 < DEDUP_THRESHOLD <= 1.0:
        issues.append(f"DEDUP_THRESHOLD must be in (0, 1]: {DEDUP_THRESHOLD}")

    if not 0.0 <= QUALITY_THRESHOLD <= 1.0:
        issues.append(f"QUALITY_THRESHOLD must be in [0, 1]: {QUALITY_THRESHOLD}")

    if MAX_SHORT_TERM < 1:
        issues.append("MAX_SHORT_TERM must be >= 1")

    if PROMOTION_THRESHOLD < 1:
        issues.append("PROMOTION_THRESHOLD must be >= 1")

    return issues
