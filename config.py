"""
config.py — environment-driven settings for the page generation service.

Values are read once at import time. A local .env file is honoured so the
service can be run without exporting anything by hand.
"""

import logging
import os

from dotenv import load_dotenv

load_dotenv()                       # reads .env into os.environ

logger = logging.getLogger("pagegen")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", "8000"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")

# ---------------------------------------------------------------------------
# Site identity, used in canonical URLs and schema markup
# ---------------------------------------------------------------------------

SITE_URL = os.getenv("SITE_URL", "").rstrip("/")
SITE_NAME = os.getenv("SITE_NAME", "Local Home Pros")
DEFAULT_REGION = os.getenv("DEFAULT_REGION", "CA")

if not SITE_URL:
    logger.warning("SITE_URL is not set — canonical URLs will point at http://localhost:3000")
    SITE_URL = "http://localhost:3000"

# ---------------------------------------------------------------------------
# Document store
# ---------------------------------------------------------------------------

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./pages.db")
STORE_BATCH_LIMIT = int(os.getenv("STORE_BATCH_LIMIT", "400"))
STORE_WORKERS = int(os.getenv("STORE_WORKERS", "1"))

# ---------------------------------------------------------------------------
# Generation jobs
# ---------------------------------------------------------------------------

GENERATION_BATCH_SIZE = int(os.getenv("GENERATION_BATCH_SIZE", "25"))
GENERATION_DEFAULT_MAX_PAGES = int(os.getenv("GENERATION_DEFAULT_MAX_PAGES", "500"))
GENERATION_MAX_PAGES_LIMIT = int(os.getenv("GENERATION_MAX_PAGES_LIMIT", "1000"))
GENERATION_FAIL_FAST = _env_bool("GENERATION_FAIL_FAST", True)
GENERATE_RATE_LIMIT_PER_MIN = int(os.getenv("GENERATE_RATE_LIMIT_PER_MIN", "6"))

# ---------------------------------------------------------------------------
# Health scans
# ---------------------------------------------------------------------------

HEALTH_SCAN_PAGE_SIZE = int(os.getenv("HEALTH_SCAN_PAGE_SIZE", "200"))
HEALTH_SCAN_MAX_PAGE_IDS = int(os.getenv("HEALTH_SCAN_MAX_PAGE_IDS", "5000"))
