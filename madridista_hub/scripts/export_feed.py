from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from madridista_hub.app import settings
from madridista_hub.app.services.feed_client import FeedRequestError, fetch_videos
from madridista_hub.app.services.video_pipeline import (
    FilterState,
    SortMode,
    filter_videos,
    paginate,
    parse_sort_mode,
    sort_videos,
    total_pages_for,
)
from madridista_hub.app.services.video_records import VideoRecord

DEFAULT_OUTPUT = Path(__file__).resolve().parents[1] / "data_runtime" / "feed_snapshot.json"


def build_snapshot(
    videos: list[VideoRecord],
    filter_state: FilterState,
    sort_mode: SortMode,
    page_size: int,
) -> dict[str, Any]:
    ordered = sort_videos(filter_videos(videos, filter_state), sort_mode)
    total_pages = total_pages_for(len(ordered), page_size)
    pages = []
    for page in range(1, total_pages + 1):
        result = paginate(ordered, page, page_size)
        pages.append(
            {
                "page": result.page,
                "ids": [video.id for video in result.items],
                "items": [video.to_payload() for video in result.items],
            }
        )
    return {
        "updated_at": datetime.now(timezone.utc).isoformat(),
        "filters": filter_state.to_query_params(),
        "sort": sort_mode.value,
        "page_size": page_size,
        "total_count": len(ordered),
        "total_pages": total_pages,
        "pages": pages,
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Fetch a video listing, sort it and write paged JSON.")
    parser.add_argument("--platform", default="all")
    parser.add_argument("--category", default="all")
    parser.add_argument("--query", default="")
    parser.add_argument("--sort", default=SortMode.NEWEST.value)
    parser.add_argument("--page-size", type=int, default=settings.FEED_PAGE_SIZE)
    parser.add_argument("--limit", type=int, default=settings.FEED_FETCH_LIMIT)
    parser.add_argument("--path", default="/api/videos", help="Backend listing path")
    parser.add_argument("--output", type=Path, default=DEFAULT_OUTPUT)
    args = parser.parse_args()

    settings.configure_logging()
    try:
        filter_state = FilterState.from_query_params(
            {"platform": args.platform, "category": args.category, "query": args.query}
        )
        sort_mode = parse_sort_mode(args.sort)
    except ValueError as exc:
        parser.error(str(exc))
    if args.page_size <= 0:
        parser.error("--page-size must be greater than zero")

    try:
        videos = fetch_videos(filter_state, limit=max(1, args.limit), path=args.path)
    except FeedRequestError as exc:
        print(f"Could not fetch {args.path}: {exc.message}", file=sys.stderr)
        return 1

    snapshot = build_snapshot(videos, filter_state, sort_mode, args.page_size)
    args.output.parent.mkdir(parents=True, exist_ok=True)
    args.output.write_text(json.dumps(snapshot, ensure_ascii=False, indent=2), encoding="utf-8")
    print(f"Wrote feed snapshot: {args.output}")
    print(f"{snapshot['total_count']} videos across {snapshot['total_pages']} pages")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
