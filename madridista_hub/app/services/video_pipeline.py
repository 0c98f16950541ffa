"""
Filter -> Sort -> Pagination stages over an already-fetched list of videos.

All functions here are pure: they never mutate their inputs and never raise
on a single malformed record (records are normalized on ingestion).
"""

import math
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from functools import cmp_to_key
from typing import Any, Iterable, Mapping
from urllib.parse import urlencode

try:
    from madridista_hub.app.services.video_records import PLATFORMS, VideoRecord, parse_int_id
except ModuleNotFoundError:
    from app.services.video_records import PLATFORMS, VideoRecord, parse_int_id


ALL = "all"

CATEGORY_SLUGS = {
    "matches": 1,
    "training": 2,
    "interviews": 3,
    "analysis": 4,
    "tactics": 4,
    "news": 5,
    "history": 6,
    "transfers": 7,
    "academy": 8,
    "fan_content": 9,
    "highlights": 10,
}
CATEGORY_ID_TO_SLUG: dict[int, str] = {}
for _slug, _category_id in CATEGORY_SLUGS.items():
    CATEGORY_ID_TO_SLUG.setdefault(_category_id, _slug)


class SortMode(str, Enum):
    NEWEST = "newest"
    OLDEST = "oldest"
    MOST_VIEWED = "most-viewed"
    LEAST_VIEWED = "least-viewed"
    TITLE_ASC = "title-asc"
    TITLE_DESC = "title-desc"


SORT_ALIASES = {
    "popular": SortMode.MOST_VIEWED,
    "views": SortMode.MOST_VIEWED,
    "date": SortMode.NEWEST,
    "recent": SortMode.NEWEST,
    "latest": SortMode.NEWEST,
    "az": SortMode.TITLE_ASC,
    "za": SortMode.TITLE_DESC,
}


def parse_sort_mode(value: Any, default: SortMode = SortMode.NEWEST) -> SortMode:
    if isinstance(value, SortMode):
        return value
    raw = str(value or "").strip().lower()
    if not raw:
        return default
    raw = raw.replace("_", "-")
    if raw in SORT_ALIASES:
        return SORT_ALIASES[raw]
    try:
        return SortMode(raw)
    except ValueError:
        choices = ", ".join(mode.value for mode in SortMode)
        raise ValueError(f"sort must be one of: {choices}") from None


def parse_platform(value: Any) -> str:
    raw = str(value or ALL).strip().lower()
    if raw == ALL or raw in PLATFORMS:
        return raw
    raise ValueError(f"platform must be one of: {ALL}, {', '.join(PLATFORMS)}")


def parse_category(value: Any) -> int | None:
    """Resolve "all", an id, a numeric string or a category slug to an id (None = all)."""
    if value is None:
        return None
    category_id = parse_int_id(value)
    if category_id is not None:
        if category_id < 1:
            raise ValueError(f"Unknown category: {value}")
        return category_id
    raw = str(value).strip().lower()
    if not raw or raw == ALL:
        return None
    slug = raw.replace("-", "_").replace(" ", "_")
    if slug in CATEGORY_SLUGS:
        return CATEGORY_SLUGS[slug]
    raise ValueError(f"Unknown category: {value}")


def category_param(category_id: int | None) -> str:
    if category_id is None:
        return ALL
    return CATEGORY_ID_TO_SLUG.get(category_id, str(category_id))


@dataclass(frozen=True)
class FilterState:
    platform: str = ALL
    category: int | None = None
    search_term: str = ""

    @classmethod
    def from_query_params(cls, params: Mapping[str, Any]) -> "FilterState":
        search = params.get("query")
        if search is None:
            search = params.get("q") or params.get("search") or ""
        return cls(
            platform=parse_platform(params.get("platform")),
            category=parse_category(params.get("category")),
            search_term=str(search).strip(),
        )

    def to_query_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        if self.platform != ALL:
            params["platform"] = self.platform
        if self.category is not None:
            params["category"] = category_param(self.category)
        if self.search_term:
            params["query"] = self.search_term
        return params

    def query_string(self) -> str:
        return urlencode(self.to_query_params())

    def is_default(self) -> bool:
        return self.platform == ALL and self.category is None and not self.search_term


@dataclass
class PageResult:
    items: list[VideoRecord] = field(default_factory=list)
    page: int = 1
    page_size: int = 1
    total_pages: int = 1
    total_count: int = 0

    def to_meta(self) -> dict[str, int]:
        return {
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
            "total_count": self.total_count,
        }


# ---------------------------
# Filter
# ---------------------------

def _contains(haystack: str | None, needle: str) -> bool:
    return bool(haystack) and needle in haystack.lower()


def matches(video: VideoRecord, filter_state: FilterState) -> bool:
    platform = filter_state.platform.lower()
    if platform != ALL and video.platform.lower() != platform:
        return False

    if filter_state.category is not None and filter_state.category not in video.category_ids:
        return False

    term = filter_state.search_term.lower()
    if term and not (
        _contains(video.title, term)
        or _contains(video.description, term)
        or _contains(video.channel_title, term)
    ):
        return False

    return True


def filter_videos(videos: Iterable[VideoRecord], filter_state: FilterState) -> list[VideoRecord]:
    return [video for video in videos if matches(video, filter_state)]


def filter_min_views(videos: Iterable[VideoRecord], min_views: int) -> list[VideoRecord]:
    # Records without a view count are kept; the trending page only hid known low counts.
    if min_views <= 0:
        return list(videos)
    return [video for video in videos if video.view_count is None or video.view_count >= min_views]


# ---------------------------
# Sort
# ---------------------------

def title_sort_key(title: str | None) -> str:
    decomposed = unicodedata.normalize("NFKD", title or "")
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.casefold()


def _cmp(left: Any, right: Any) -> int:
    return (left > right) - (left < right)


def compare_videos(a: VideoRecord, b: VideoRecord, mode: SortMode) -> int:
    if mode == SortMode.NEWEST:
        return _cmp(b.published_timestamp, a.published_timestamp)
    if mode == SortMode.OLDEST:
        return _cmp(a.published_timestamp, b.published_timestamp)
    if mode == SortMode.MOST_VIEWED:
        return _cmp(b.views, a.views)
    if mode == SortMode.LEAST_VIEWED:
        return _cmp(a.views, b.views)
    if mode == SortMode.TITLE_ASC:
        return _cmp(title_sort_key(a.title), title_sort_key(b.title))
    if mode == SortMode.TITLE_DESC:
        return _cmp(title_sort_key(b.title), title_sort_key(a.title))
    return 0


def sort_videos(videos: Iterable[VideoRecord], mode: SortMode) -> list[VideoRecord]:
    # sorted() is stable, so equal keys keep their fetch order.
    return sorted(videos, key=cmp_to_key(lambda a, b: compare_videos(a, b, mode)))


# ---------------------------
# Pagination
# ---------------------------

def total_pages_for(count: int, page_size: int) -> int:
    return max(1, math.ceil(count / page_size))


def clamp_page(page: int, total_pages: int) -> int:
    return max(1, min(page, max(1, total_pages)))


def paginate(items: list[VideoRecord], page: int, page_size: int) -> PageResult:
    if page_size <= 0:
        raise ValueError("page_size must be greater than zero")
    start = (page - 1) * page_size
    window = items[start:start + page_size] if start >= 0 else []
    return PageResult(
        items=window,
        page=page,
        page_size=page_size,
        total_pages=total_pages_for(len(items), page_size),
        total_count=len(items),
    )


def run_pipeline(
    videos: Iterable[VideoRecord],
    filter_state: FilterState,
    sort_mode: SortMode,
    page: int,
    page_size: int,
) -> PageResult:
    filtered = filter_videos(videos, filter_state)
    ordered = sort_videos(filtered, sort_mode)
    return paginate(ordered, page, page_size)
