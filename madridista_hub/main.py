import json
import logging
import threading
import time
from collections import deque
from typing import Any, Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

try:
    from madridista_hub.app import settings
    from madridista_hub.app.services.feed_client import FeedRequestError, build_query_params, fetch_videos
    from madridista_hub.app.services.video_pipeline import (
        FilterState,
        SortMode,
        category_param,
        clamp_page,
        filter_min_views,
        filter_videos,
        paginate,
        parse_category,
        parse_platform,
        parse_sort_mode,
        sort_videos,
        total_pages_for,
    )
    from madridista_hub.app.services.video_records import VideoRecord
except ModuleNotFoundError:
    from app import settings
    from app.services.feed_client import FeedRequestError, build_query_params, fetch_videos
    from app.services.video_pipeline import (
        FilterState,
        SortMode,
        category_param,
        clamp_page,
        filter_min_views,
        filter_videos,
        paginate,
        parse_category,
        parse_platform,
        parse_sort_mode,
        sort_videos,
        total_pages_for,
    )
    from app.services.video_records import VideoRecord

logger = logging.getLogger(__name__)

MAX_UPSTREAM_LIMIT = 1000
TRENDING_FETCH_LIMIT = 200


# ---------------------------
# Very simple in-memory cache
# ---------------------------

CACHE: dict[str, tuple[float, Any]] = {}
API_RATE_LIMIT_BUCKETS: dict[str, deque[float]] = {}


def cache_get(key: str):
    hit = CACHE.get(key)
    if not hit:
        return None
    expires_at, value = hit
    if time.time() > expires_at:
        CACHE.pop(key, None)
        return None
    return value


def cache_set(key: str, value: Any):
    if settings.FEED_CACHE_TTL_SECONDS <= 0:
        return
    now_ts = time.time()
    for stale_key in [k for k, (expires_at, _) in CACHE.items() if expires_at < now_ts]:
        CACHE.pop(stale_key, None)
    CACHE.pop(key, None)
    # Same TTL for every entry, so insertion order is expiry order.
    while len(CACHE) >= settings.FEED_CACHE_MAX_ENTRIES:
        CACHE.pop(next(iter(CACHE)))
    CACHE[key] = (now_ts + settings.FEED_CACHE_TTL_SECONDS, value)


# ---------------------------
# Helpers
# ---------------------------

def get_client_ip(request: Request) -> str:
    peer = request.client.host if request.client and request.client.host else ""
    if peer and peer in settings.TRUSTED_PROXY_IPS:
        forwarded = (request.headers.get("x-forwarded-for") or "").strip()
        if forwarded:
            return forwarded.split(",")[0].strip()
    return peer or "unknown"


def prune_rate_limit_buckets(cutoff: float) -> None:
    for key in [k for k, bucket in API_RATE_LIMIT_BUCKETS.items() if not bucket or bucket[-1] < cutoff]:
        API_RATE_LIMIT_BUCKETS.pop(key, None)


def enforce_api_rate_limit(request: Request, scope: str = "videos") -> None:
    now_ts = time.time()
    cutoff = now_ts - settings.API_RATE_LIMIT_WINDOW_SECONDS
    if len(API_RATE_LIMIT_BUCKETS) >= settings.API_RATE_LIMIT_MAX_BUCKETS:
        prune_rate_limit_buckets(cutoff)

    key = f"{scope}:{get_client_ip(request)}"
    bucket = API_RATE_LIMIT_BUCKETS.get(key)
    if bucket is None:
        bucket = deque()
        API_RATE_LIMIT_BUCKETS[key] = bucket

    while bucket and bucket[0] < cutoff:
        bucket.popleft()

    if len(bucket) >= settings.API_RATE_LIMIT_MAX_REQUESTS:
        raise HTTPException(
            status_code=429,
            detail="Too many requests. Please wait a minute and try again.",
        )

    bucket.append(now_ts)


def resolve_filter_state(platform: str | None, category: str | None, query: str | None) -> FilterState:
    try:
        return FilterState(
            platform=parse_platform(platform),
            category=parse_category(category),
            search_term=(query or "").strip(),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def resolve_sort_mode(sort: str | None, default: SortMode) -> SortMode:
    try:
        return parse_sort_mode(sort, default=default)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def clamp_page_size(page_size: int) -> int:
    return max(1, min(page_size, settings.FEED_MAX_PAGE_SIZE))


def clamp_limit(limit: int) -> int:
    return max(1, min(limit, MAX_UPSTREAM_LIMIT))


def load_listing(
    path: str,
    filter_state: FilterState,
    limit: int,
    extra_params: dict[str, Any] | None = None,
) -> list[VideoRecord]:
    params = build_query_params(filter_state, limit)
    if extra_params:
        params.update(extra_params)
    cache_key = f"listing:{path}:{json.dumps(params, sort_keys=True)}"
    cached = cache_get(cache_key)
    if cached is not None:
        return cached

    videos = fetch_videos(filter_state, limit=limit, path=path, extra_params=extra_params)
    cache_set(cache_key, videos)
    return videos


def build_listing_response(
    videos: list[VideoRecord],
    filter_state: FilterState,
    sort_mode: SortMode,
    page: int,
    page_size: int,
    min_views: int = 0,
) -> dict[str, Any]:
    filtered = filter_min_views(filter_videos(videos, filter_state), min_views)
    ordered = sort_videos(filtered, sort_mode)
    total_pages = total_pages_for(len(ordered), page_size)
    result = paginate(ordered, clamp_page(page, total_pages), page_size)

    meta: dict[str, Any] = result.to_meta()
    meta.update(
        {
            "requested_page": page,
            "sort": sort_mode.value,
            "filters": {
                "platform": filter_state.platform,
                "category": category_param(filter_state.category),
                "query": filter_state.search_term,
            },
            "query_string": filter_state.query_string(),
            "fetched_count": len(videos),
        }
    )
    if min_views > 0:
        meta["min_views"] = min_views
    if not result.items:
        meta["message"] = "No videos match the selected filters"
    return {"items": [video.to_payload() for video in result.items], "meta": meta}


class StartupGuard:
    """Runs application initialization once per app, however many startup events arrive."""

    def __init__(self):
        self._lock = threading.Lock()
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def run_once(self, initializer: Callable[[], None]) -> bool:
        with self._lock:
            if self._done:
                return False
            initializer()
            self._done = True
            return True


def initialize_application() -> None:
    settings.configure_logging()
    logger.info(
        "Video feed gateway ready: backend=%s page_size=%d cache_ttl=%ds",
        settings.HUB_API_BASE_URL,
        settings.FEED_PAGE_SIZE,
        settings.FEED_CACHE_TTL_SECONDS,
    )


# ---------------------------
# App setup
# ---------------------------

app = FastAPI(title="Hub Madridista video feed")
app.state.startup_guard = StartupGuard()

cors_origins, cors_credentials = settings.parse_cors_origins()

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(FeedRequestError)
async def feed_request_error_handler(_request: Request, exc: FeedRequestError):
    if exc.status_code == 404:
        return JSONResponse(
            status_code=404,
            content={"detail": "Not found.", "error_code": "upstream_not_found"},
        )
    if exc.status_code is not None and 400 <= exc.status_code < 500 and exc.status_code != 429:
        logger.warning("Content backend rejected the request: %s", exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error_code": "upstream_rejected"},
        )
    logger.error("Content backend request failed: %s", exc.message)
    return JSONResponse(
        status_code=502,
        content={
            "detail": "The video catalogue is temporarily unavailable. Please try again.",
            "error_code": "upstream_unavailable",
        },
    )


@app.on_event("startup")
def on_startup_initialize():
    app.state.startup_guard.run_once(initialize_application)


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/api/videos")
def list_videos(
    request: Request,
    platform: str = "all",
    category: str = "all",
    query: str = "",
    sort: str = "newest",
    page: int = 1,
    page_size: int = settings.FEED_PAGE_SIZE,
    limit: int = settings.FEED_FETCH_LIMIT,
):
    """
    Main listing (videos page / home grid): fetch by platform, category and
    search term, then filter, sort and return one page.
    """
    filter_state = resolve_filter_state(platform, category, query)
    sort_mode = resolve_sort_mode(sort, SortMode.NEWEST)
    page_size = clamp_page_size(page_size)
    enforce_api_rate_limit(request, scope="videos")

    videos = load_listing("/api/videos", filter_state, clamp_limit(limit))
    return build_listing_response(videos, filter_state, sort_mode, page, page_size)


@app.get("/api/videos/trending")
def trending_videos(
    request: Request,
    query: str = "",
    sort: str = "most-viewed",
    min_views: int = 0,
    page: int = 1,
    page_size: int = settings.FEED_PAGE_SIZE,
    limit: int = TRENDING_FETCH_LIMIT,
    display_limit: int | None = None,
):
    """Trending feed, sorted by views by default, with an optional minimum view count."""
    filter_state = resolve_filter_state("all", "all", query)
    sort_mode = resolve_sort_mode(sort, SortMode.MOST_VIEWED)
    page_size = clamp_page_size(page_size)
    enforce_api_rate_limit(request, scope="trending")

    limit = clamp_limit(limit)
    extra_params = {"displayLimit": max(1, min(display_limit, limit))} if display_limit else None
    videos = load_listing("/api/videos/trending", filter_state, limit, extra_params)
    return build_listing_response(
        videos,
        filter_state,
        sort_mode,
        page,
        page_size,
        min_views=max(0, min_views),
    )


@app.get("/api/videos/featured")
def featured_videos(
    request: Request,
    platform: str = "all",
    sort: str = "newest",
    page: int = 1,
    page_size: int = settings.FEED_PAGE_SIZE,
    limit: int = 50,
):
    filter_state = resolve_filter_state(platform, "all", "")
    sort_mode = resolve_sort_mode(sort, SortMode.NEWEST)
    page_size = clamp_page_size(page_size)
    enforce_api_rate_limit(request, scope="featured")

    videos = load_listing("/api/videos/featured", filter_state, clamp_limit(limit))
    return build_listing_response(videos, filter_state, sort_mode, page, page_size)


@app.get("/api/videos/category/{category}")
def category_videos(
    request: Request,
    category: str,
    platform: str = "all",
    query: str = "",
    sort: str = "newest",
    page: int = 1,
    page_size: int = settings.FEED_PAGE_SIZE,
    limit: int = 50,
):
    filter_state = resolve_filter_state(platform, category, query)
    if filter_state.category is None:
        raise HTTPException(status_code=400, detail="category must be a specific category")
    sort_mode = resolve_sort_mode(sort, SortMode.NEWEST)
    page_size = clamp_page_size(page_size)
    enforce_api_rate_limit(request, scope="category")

    # The category endpoint takes the id in the path; the filter keeps it for the local pass.
    path = f"/api/videos/category/{filter_state.category}"
    upstream_state = FilterState(platform=filter_state.platform, search_term=filter_state.search_term)
    videos = load_listing(path, upstream_state, clamp_limit(limit))
    return build_listing_response(videos, filter_state, sort_mode, page, page_size)
