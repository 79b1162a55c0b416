"""
Configuration constants for the AniList recommender.

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


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """Integer counterpart of _get_float_env."""
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# State database (credentials, last model, seen ids)
DB_PATH = Path(os.environ.get("ANILIST_DB", "data/anilist.db"))

# API access
API_BASE = "https://anilist.co/api/"
CLIENT_ID = os.environ.get("ANILIST_CLIENT_ID") or None
CLIENT_SECRET = os.environ.get("ANILIST_CLIENT_SECRET") or None
HTTP_TIMEOUT = _get_float_env("ANILIST_HTTP_TIMEOUT", 30.0, min_val=1.0)
USER_AGENT = "anilist-rec/0.1"

# Candidate hydration
DEFAULT_MAX_CONCURRENT = _get_int_env("ANILIST_MAX_CONCURRENT", 1, min_val=1)
DEFAULT_TOP_PAGES = _get_int_env("ANILIST_TOP_PAGES", 3, min_val=1)

# MyAnimeList export endpoint
MAL_LIST_URL = "http://myanimelist.net/malappinfo.php"
MAL_STATUS_COMPLETED = "2"

# Confidence weighting
# Pseudo-spread added per tag: 4.0 / sample_count
COUNT_SMOOTHING = 4.0
DEFAULT_PRIOR = 1.0

# Hand-tuned trust in each tag class. "Staff: <Role>" entries override "Staff".
PREFIX_WEIGHTS = {
    'Genre': 1.0,
    'Studio': 0.3,
    'Classification': 0.1,
    'Staff': 0.1,
    'Staff: Director': 1.0,
    'Staff: Script': 1.0,
    'Staff: Storyboard': 0.7,
    'Staff: Screenplay': 0.7,
    'Staff: Music': 1.0,
    'Staff: Sound Director': 0.5,
    'Staff: Art Director': 1.0,
    'Staff: Key Animation': 0.3,
    'Staff: Episode Director': 1.0,
    'Staff: Animation Director': 0.3,
    'Staff: Character Design': 0.7,
    'Staff: Series Composition': 0.3,
    'Staff: Original Creator': 0.4,
    'Staff: Special Effects': 0.2,
    'Staff: Theme Song Composition': 0.3,
    'Staff: Original Character Design': 0.7,
    'Staff: Chief Animation Director': 0.2,
}

# Bump when the persisted tag_stats layout or tag rendering changes
MODEL_SCHEMA_VERSION = 1
