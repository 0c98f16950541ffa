import logging
import os

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# ---------------------------
# Content backend
# ---------------------------

HUB_API_BASE_URL = (os.getenv("HUB_API_BASE_URL") or "http://localhost:5000").rstrip("/")
HUB_API_TOKEN = os.getenv("HUB_API_TOKEN") or None
HUB_API_TIMEOUT_SECONDS = _env_float("HUB_API_TIMEOUT_SECONDS", 10.0)
HUB_API_MAX_RETRIES = max(0, _env_int("HUB_API_MAX_RETRIES", 2))
HUB_API_RETRY_BACKOFF_SECONDS = max(0.0, _env_float("HUB_API_RETRY_BACKOFF_SECONDS", 0.5))

# ---------------------------
# Feed defaults
# ---------------------------

FEED_FETCH_LIMIT = max(1, _env_int("FEED_FETCH_LIMIT", 100))
FEED_PAGE_SIZE = max(1, _env_int("FEED_PAGE_SIZE", 24))
FEED_MAX_PAGE_SIZE = 100
FEED_CACHE_TTL_SECONDS = max(0, _env_int("FEED_CACHE_TTL_SECONDS", 60))
FEED_CACHE_MAX_ENTRIES = max(1, _env_int("FEED_CACHE_MAX_ENTRIES", 128))
SEARCH_DEBOUNCE_MS = max(0, _env_int("SEARCH_DEBOUNCE_MS", 300))

# ---------------------------
# HTTP surface
# ---------------------------

API_RATE_LIMIT_WINDOW_SECONDS = max(1, _env_int("API_RATE_LIMIT_WINDOW_SECONDS", 60))
API_RATE_LIMIT_MAX_REQUESTS = max(1, _env_int("API_RATE_LIMIT_MAX_REQUESTS", 60))
API_RATE_LIMIT_MAX_BUCKETS = max(1, _env_int("API_RATE_LIMIT_MAX_BUCKETS", 4096))
# X-Forwarded-For is only honoured when the direct peer is one of these.
TRUSTED_PROXY_IPS = {
    ip.strip() for ip in (os.getenv("TRUSTED_PROXY_IPS") or "").split(",") if ip.strip()
}
LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()


def parse_cors_origins() -> tuple[list[str], bool]:
    raw = (os.getenv("CORS_ALLOWED_ORIGINS") or "").strip()
    if not raw:
        return ["http://localhost:5173"], True
    if raw == "*":
        return ["*"], False
    origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    if not origins:
        return ["http://localhost:5173"], True
    return origins, True


def configure_logging(level: str | None = None) -> None:
    resolved = getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO)
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)
