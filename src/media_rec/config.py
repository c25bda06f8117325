"""
Configuration constants for the media recommender.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1, max_val: int | None = None) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value
        max_val: Maximum allowed value (None for unbounded)

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        if max_val is not None and val > max_val:
            logger.warning(f"{key}={val} is above maximum {max_val}, using {max_val}")
            return max_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_bool_env(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# Provider Configuration
TMDB_ACCESS_TOKEN = os.environ.get("TMDB_ACCESS_TOKEN", "")
TMDB_BASE_URL = os.environ.get("TMDB_BASE_URL", "https://api.themoviedb.org/3").rstrip("/")
TMDB_LANGUAGE = os.environ.get("TMDB_LANGUAGE", "en-US")
TMDB_REGION = os.environ.get("TMDB_REGION", "US").upper()
TMDB_IMAGE_BASE = "https://image.tmdb.org/t/p/w500"

# HTTP Client
HTTP_TIMEOUT = _get_float_env("TMDB_HTTP_TIMEOUT", 10.0, min_val=1.0)
HTTP2_ENABLED = _get_bool_env("TMDB_HTTP2", False)
MAX_CONCURRENT_REQUESTS = _get_int_env("MEDIA_REC_MAX_CONCURRENT", 8, min_val=1)

# Retry and Rate Limiting
DEFAULT_RETRY_AFTER = _get_float_env("MEDIA_REC_DEFAULT_RETRY_AFTER", 1.0, min_val=0.0)
MAX_RATE_LIMIT_WAIT_SECONDS = _get_float_env("MEDIA_REC_MAX_RATE_LIMIT_WAIT", 300.0, min_val=1.0)

# Cache Configuration
CACHE_BACKEND = os.environ.get("MEDIA_REC_CACHE_BACKEND", "sqlite").strip().lower()
CACHE_DB_PATH = Path(os.environ.get("MEDIA_REC_CACHE_DB", "data/media_cache.db"))
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

# TMDB data rarely changes; ranked results are cheap to rebuild from cached metadata
MEDIA_CACHE_TTL = _get_int_env("MEDIA_CACHE_TTL", 7 * 24 * 60 * 60, min_val=60)
RECOMMENDATIONS_CACHE_TTL = _get_int_env("RECOMMENDATIONS_CACHE_TTL", 24 * 60 * 60, min_val=60)

if MEDIA_CACHE_TTL <= RECOMMENDATIONS_CACHE_TTL:
    logger.warning(
        f"MEDIA_CACHE_TTL ({MEDIA_CACHE_TTL}s) should be longer than "
        f"RECOMMENDATIONS_CACHE_TTL ({RECOMMENDATIONS_CACHE_TTL}s)"
    )

# Aggregation
MAX_RESULTS = 20
CHAIN_EXPANSION_DEPTH = 1
MIN_CHAIN_BREADTH = 3
MAX_CHAIN_BREADTH = 5
CHAIN_EXPANSION_BREADTH = _get_int_env(
    "MEDIA_REC_CHAIN_BREADTH", MIN_CHAIN_BREADTH, min_val=MIN_CHAIN_BREADTH, max_val=MAX_CHAIN_BREADTH
)
TOP_CAST_COUNT = 10

# Scoring
SCORING_WEIGHTS_PATH = Path(os.environ.get("MEDIA_REC_SCORING_WEIGHTS", "data/scoring_weights.json"))
VOTE_PRIOR_COUNT = 1000      # Bayesian prior: pseudo-votes
VOTE_PRIOR_MEAN = 0.7        # Bayesian prior: 7.0/10
POPULARITY_SCALE = 1000.0
POPULARITY_DAMPENER_CAP = 0.9
YEAR_WINDOW = 10
KEYWORD_DENOMINATOR_CAP = 20
