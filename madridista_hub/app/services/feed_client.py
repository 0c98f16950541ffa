"""
Client for the Hub Madridista content backend.

`fetch_videos` builds the listing query string from a FilterState, issues the
GET and returns normalized records. `VideoFeed` keeps one listing's state and
guards it with a request-generation counter so a late response for an older
filter state never overwrites the results of a newer one.
"""

import logging
import threading
import time
from typing import Any, Callable

import requests

try:
    from madridista_hub.app import settings
    from madridista_hub.app.services.debounce import DebouncedValue
    from madridista_hub.app.services.video_pipeline import (
        ALL,
        FilterState,
        PageResult,
        SortMode,
        category_param,
        clamp_page,
        filter_videos,
        parse_category,
        parse_platform,
        parse_sort_mode,
        run_pipeline,
        total_pages_for,
    )
    from madridista_hub.app.services.video_records import VideoRecord, normalize_videos
except ModuleNotFoundError:
    from app import settings
    from app.services.debounce import DebouncedValue
    from app.services.video_pipeline import (
        ALL,
        FilterState,
        PageResult,
        SortMode,
        category_param,
        clamp_page,
        filter_videos,
        parse_category,
        parse_platform,
        parse_sort_mode,
        run_pipeline,
        total_pages_for,
    )
    from app.services.video_records import VideoRecord, normalize_videos

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
VIDEOS_PATH = "/api/videos"

# Values the backend's /api/videos validator accepts.
UPSTREAM_PLATFORMS = {"youtube", "tiktok", "twitter", "instagram"}
UPSTREAM_CATEGORY_SLUGS = {"matches", "training", "interviews", "analysis"}

_UNSET: Any = object()


class FeedRequestError(Exception):
    """Raised when the content backend cannot produce a usable listing."""

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


def _auth_headers() -> dict[str, str]:
    headers = {"Accept": "application/json"}
    if settings.HUB_API_TOKEN:
        headers["Authorization"] = f"Bearer {settings.HUB_API_TOKEN}"
    return headers


def _error_detail(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return (response.text or "").strip()[:200]
    if isinstance(payload, dict):
        return str(payload.get("error") or payload.get("message") or "")
    return ""


def hub_api_get(
    path: str,
    params: dict[str, Any] | None = None,
    timeout: float | None = None,
    retries: int | None = None,
) -> Any:
    url = f"{settings.HUB_API_BASE_URL}/{path.lstrip('/')}"
    timeout = settings.HUB_API_TIMEOUT_SECONDS if timeout is None else timeout
    retries = settings.HUB_API_MAX_RETRIES if retries is None else max(0, retries)

    for attempt in range(retries + 1):
        wait_time = settings.HUB_API_RETRY_BACKOFF_SECONDS * (2 ** attempt)
        logger.debug("GET %s params=%s (attempt %d)", url, params, attempt + 1)
        try:
            response = requests.get(url, params=params, headers=_auth_headers(), timeout=timeout)
        except requests.RequestException as exc:
            if attempt < retries:
                logger.warning("Request to %s failed, retrying in %.2fs: %s", url, wait_time, exc)
                time.sleep(wait_time)
                continue
            raise FeedRequestError(f"Content backend unreachable: {exc}") from exc

        if 200 <= response.status_code < 300:
            try:
                return response.json()
            except ValueError as exc:
                raise FeedRequestError("Content backend returned invalid JSON", response.status_code) from exc

        if response.status_code in RETRYABLE_STATUS_CODES and attempt < retries:
            logger.warning(
                "Content backend answered %s for %s, retrying in %.2fs",
                response.status_code,
                url,
                wait_time,
            )
            time.sleep(wait_time)
            continue

        detail = _error_detail(response)
        message = f"HTTP {response.status_code}"
        if detail:
            message = f"{message}: {detail}"
        raise FeedRequestError(message, response.status_code)

    raise FeedRequestError(f"Request failed after {retries} retries")


def build_query_params(filter_state: FilterState, limit: int | None = None) -> dict[str, Any]:
    """
    Upstream query for a filter state. The backend rejects platforms and
    category slugs it does not know with a 400, so those are left out and the
    local Filter stage narrows the listing instead.
    """
    params: dict[str, Any] = {}
    if filter_state.platform in UPSTREAM_PLATFORMS:
        params["platform"] = filter_state.platform
    if filter_state.category is not None:
        slug = category_param(filter_state.category)
        if slug in UPSTREAM_CATEGORY_SLUGS:
            params["category"] = slug
    if filter_state.search_term:
        params["query"] = filter_state.search_term
    params["limit"] = limit if limit is not None else settings.FEED_FETCH_LIMIT
    return params


def fetch_videos(
    filter_state: FilterState,
    limit: int | None = None,
    path: str = VIDEOS_PATH,
    extra_params: dict[str, Any] | None = None,
) -> list[VideoRecord]:
    params = build_query_params(filter_state, limit)
    if extra_params:
        params.update(extra_params)

    payload = hub_api_get(path, params)
    if not isinstance(payload, list):
        raise FeedRequestError(f"Expected a JSON array from {path}")

    videos = normalize_videos(payload)
    dropped = len(payload) - len(videos)
    if dropped:
        logger.debug("Dropped %d malformed records from %s", dropped, path)
    logger.info("Fetched %d videos from %s", len(videos), path)
    return videos


class VideoFeed:
    """
    State of one video listing: filters, sort, page and the last accepted results.

    Every filter change starts a new request generation. Results and errors are
    only applied when they belong to the latest generation; anything older is
    discarded. While a request is in flight the previous items stay visible and
    `loading` is set. A failure of the latest generation clears the items and
    records the error.
    """

    def __init__(
        self,
        filter_state: FilterState | None = None,
        sort_mode: SortMode | str = SortMode.NEWEST,
        page_size: int | None = None,
        limit: int | None = None,
        path: str = VIDEOS_PATH,
        fetcher: Callable[..., list[VideoRecord]] | None = None,
        search_delay_ms: int | None = None,
        auto_refresh: bool = True,
        background: bool = False,
        on_change: Callable[["VideoFeed"], None] | None = None,
    ):
        self.filter_state = filter_state or FilterState()
        self.sort_mode = parse_sort_mode(sort_mode)
        self.page_size = max(1, page_size or settings.FEED_PAGE_SIZE)
        self.page = 1
        self.limit = limit or settings.FEED_FETCH_LIMIT
        self.path = path
        self.fetcher = fetcher or fetch_videos
        self.auto_refresh = auto_refresh
        self.background = background
        self.on_change = on_change

        self.items: list[VideoRecord] = []
        self.loading = False
        self.error: FeedRequestError | None = None
        self.generation = 0
        self._lock = threading.Lock()

        delay = settings.SEARCH_DEBOUNCE_MS if search_delay_ms is None else search_delay_ms
        self.search = DebouncedValue(self.filter_state.search_term, delay, on_emit=self.set_search_term)

    @classmethod
    def from_query_params(cls, params: dict[str, Any], **kwargs) -> "VideoFeed":
        return cls(
            filter_state=FilterState.from_query_params(params),
            sort_mode=parse_sort_mode(params.get("sort")),
            **kwargs,
        )

    # ---------------------------
    # Request generations
    # ---------------------------

    def begin_request(self) -> int:
        with self._lock:
            return self._next_generation_locked(loading=True)

    def _next_generation_locked(self, loading: bool) -> int:
        self.generation += 1
        self.loading = loading
        return self.generation

    def is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self.generation

    def apply_result(self, generation: int, videos: list[VideoRecord]) -> bool:
        with self._lock:
            if generation != self.generation:
                logger.warning(
                    "Discarding stale results for generation %d (current %d)",
                    generation,
                    self.generation,
                )
                return False
            self.items = list(videos)
            self.error = None
            self.loading = False
        self._notify()
        return True

    def apply_error(self, generation: int, exc: FeedRequestError) -> bool:
        with self._lock:
            if generation != self.generation:
                logger.warning(
                    "Discarding stale error for generation %d (current %d): %s",
                    generation,
                    self.generation,
                    exc,
                )
                return False
            self.items = []
            self.error = exc
            self.loading = False
        logger.error("Video listing request failed: %s", exc)
        self._notify()
        return True

    def refresh(self) -> bool:
        with self._lock:
            generation = self._next_generation_locked(loading=True)
            filter_state = self.filter_state
        return self._load(generation, filter_state)

    def refresh_in_background(self) -> threading.Thread:
        with self._lock:
            generation = self._next_generation_locked(loading=True)
            filter_state = self.filter_state
        return self._load_in_background(generation, filter_state)

    def _load(self, generation: int, filter_state: FilterState) -> bool:
        try:
            videos = self.fetcher(filter_state, limit=self.limit, path=self.path)
        except FeedRequestError as exc:
            return self.apply_error(generation, exc)
        return self.apply_result(generation, videos)

    def _load_in_background(self, generation: int, filter_state: FilterState) -> threading.Thread:
        worker = threading.Thread(target=self._load, args=(generation, filter_state), daemon=True)
        worker.start()
        return worker

    # ---------------------------
    # Filter / sort / page state
    # ---------------------------

    def set_filters(self, platform: Any = _UNSET, category: Any = _UNSET, search_term: Any = _UNSET) -> bool:
        if platform is not _UNSET:
            platform = parse_platform(platform)
        if category is not _UNSET:
            category = parse_category(category)
        if search_term is not _UNSET:
            search_term = str(search_term or "").strip()

        # A filter change supersedes any request in flight, refreshed or not.
        with self._lock:
            current = self.filter_state
            updated = FilterState(
                platform=current.platform if platform is _UNSET else platform,
                category=current.category if category is _UNSET else category,
                search_term=current.search_term if search_term is _UNSET else search_term,
            )
            if updated == current:
                return False
            self.filter_state = updated
            self.page = 1
            generation = self._next_generation_locked(loading=self.auto_refresh)

        if self.auto_refresh:
            if self.background:
                self._load_in_background(generation, updated)
            else:
                self._load(generation, updated)
        return True

    def set_platform(self, platform: str) -> bool:
        return self.set_filters(platform=platform)

    def set_category(self, category: Any) -> bool:
        return self.set_filters(category=category)

    def set_search_term(self, search_term: str) -> bool:
        return self.set_filters(search_term=search_term)

    def type_search(self, raw: str) -> None:
        self.search.set(raw)

    def reset_filters(self) -> None:
        self.search.cancel()
        self.sort_mode = SortMode.NEWEST
        self.set_filters(platform=ALL, category=ALL, search_term="")
        self.page = 1

    def set_sort(self, sort_mode: SortMode | str) -> None:
        self.sort_mode = parse_sort_mode(sort_mode)
        self.page = 1

    def set_page(self, page: int) -> int:
        with self._lock:
            items = list(self.items)
        total = total_pages_for(len(filter_videos(items, self.filter_state)), self.page_size)
        self.page = clamp_page(page, total)
        return self.page

    def current_page(self) -> PageResult:
        with self._lock:
            items = list(self.items)
        return run_pipeline(items, self.filter_state, self.sort_mode, self.page, self.page_size)

    def query_string(self) -> str:
        return self.filter_state.query_string()

    def close(self) -> None:
        self.search.cancel()

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self)
