from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import patch

from starlette.requests import Request

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import madridista_hub.main as main_module
from madridista_hub.app.services.video_records import normalize_videos


def make_request(ip: str = "127.0.0.1") -> Request:
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/",
            "headers": [],
            "client": (ip, 8000),
            "query_string": b"",
            "server": ("test", 80),
            "scheme": "http",
            "http_version": "1.1",
        }
    )


def make_video(video_id: int, title: str, views: int, published_at: str, platform: str = "youtube") -> dict:
    return {
        "id": video_id,
        "title": title,
        "description": f"{title} description",
        "platform": platform,
        "channelId": "UC_SMOKE",
        "channelTitle": "Smoke Channel",
        "publishedAt": published_at,
        "viewCount": views,
        "categoryIds": ["1"],
        "thumbnailUrl": f"https://img/{video_id}.jpg",
    }


FIXTURE = [
    make_video(1, "Clasico highlights", 5000, "2024-03-01T20:00:00Z"),
    make_video(2, "Press conference", 1200, "2024-03-02T12:00:00Z"),
    make_video(3, "Training session", 800, "2024-02-28T09:00:00Z", platform="twitch"),
]


def assert_true(condition: bool, message: str) -> None:
    if not condition:
        raise AssertionError(message)


def reset_state() -> None:
    main_module.CACHE.clear()
    main_module.API_RATE_LIMIT_BUCKETS.clear()


def test_health() -> None:
    payload = main_module.health()
    assert_true(payload.get("ok") is True, "/health should return ok=true")


def test_videos_cache() -> None:
    reset_state()
    request = make_request()
    call_count = {"fetch": 0}

    def fake_fetch_videos(filter_state, limit=None, path="/api/videos", extra_params=None):
        _ = (filter_state, limit, path, extra_params)
        call_count["fetch"] += 1
        return normalize_videos(FIXTURE)

    with patch.object(main_module, "fetch_videos", side_effect=fake_fetch_videos):
        payload_1 = main_module.list_videos(request, sort="most-viewed", page=1, page_size=2)
        payload_2 = main_module.list_videos(request, sort="most-viewed", page=1, page_size=2)

    assert_true(payload_1 == payload_2, "/api/videos cached response should be identical")
    assert_true(call_count["fetch"] == 1, "/api/videos should hit the backend once then cache")
    assert_true([item["id"] for item in payload_1["items"]] == [1, 2], "/api/videos should sort by views")
    assert_true(payload_1["meta"]["total_pages"] == 2, "/api/videos should report two pages")


def test_trending_min_views() -> None:
    reset_state()
    request = make_request()

    with patch.object(main_module, "fetch_videos", return_value=normalize_videos(FIXTURE)):
        payload = main_module.trending_videos(request, min_views=1000)

    ids = [item["id"] for item in payload["items"]]
    assert_true(ids == [1, 2], "/api/videos/trending should drop videos under min_views")


def test_upstream_failure_maps_to_502() -> None:
    reset_state()
    request = make_request()
    error = main_module.FeedRequestError("HTTP 503", 503)

    with patch.object(main_module, "fetch_videos", side_effect=error):
        try:
            main_module.list_videos(request)
        except main_module.FeedRequestError as exc:
            raised = exc
        else:
            raised = None

    assert_true(raised is error, "/api/videos should propagate backend failures")


def run() -> int:
    checks = [
        ("health", test_health),
        ("videos cache + sort", test_videos_cache),
        ("trending min views", test_trending_min_views),
        ("upstream failure", test_upstream_failure_maps_to_502),
    ]
    failures = []

    for check_name, check_fn in checks:
        try:
            check_fn()
            print(f"[PASS] {check_name}")
        except Exception as exc:  # pragma: no cover - smoke script output path
            failures.append((check_name, str(exc)))
            print(f"[FAIL] {check_name}: {exc}")

    if failures:
        print(f"\nSmoke checks failed: {len(failures)}")
        for check_name, message in failures:
            print(f"- {check_name}: {message}")
        return 1

    print("\nAll smoke checks passed.")
    return 0


if __name__ == "__main__":
    sys.exit(run())
