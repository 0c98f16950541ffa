import threading
import time

import pytest
import requests

from madridista_hub.app import settings
from madridista_hub.app.services import feed_client
from madridista_hub.app.services.feed_client import (
    FeedRequestError,
    VideoFeed,
    build_query_params,
    fetch_videos,
    hub_api_get,
)
from madridista_hub.app.services.video_pipeline import FilterState, SortMode
from madridista_hub.app.services.video_records import normalize_video


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def make_video(video_id, platform="youtube", views=0, title=None):
    return normalize_video(
        {
            "id": video_id,
            "title": title or f"Video {video_id}",
            "platform": platform,
            "viewCount": views,
            "categoryIds": ["1"],
        }
    )


@pytest.fixture(autouse=True)
def fast_backend(monkeypatch):
    monkeypatch.setattr(settings, "HUB_API_BASE_URL", "http://hub.test")
    monkeypatch.setattr(settings, "HUB_API_TOKEN", None)
    monkeypatch.setattr(settings, "HUB_API_MAX_RETRIES", 2)
    monkeypatch.setattr(settings, "HUB_API_RETRY_BACKOFF_SECONDS", 0.0)
    monkeypatch.setattr(feed_client.time, "sleep", lambda _seconds: None)


def test_build_query_params_omits_defaults():
    assert build_query_params(FilterState(), 100) == {"limit": 100}
    params = build_query_params(FilterState(platform="youtube", category=3, search_term="Rodrygo"), 50)
    assert params == {"platform": "youtube", "category": "interviews", "query": "Rodrygo", "limit": 50}


def test_build_query_params_leaves_out_values_the_backend_rejects():
    assert build_query_params(FilterState(category=5), 10) == {"limit": 10}
    assert build_query_params(FilterState(category=42), 10) == {"limit": 10}
    assert build_query_params(FilterState(platform="twitch", category=4), 10) == {"category": "analysis", "limit": 10}


def test_fetch_videos_narrows_unsent_category_locally(monkeypatch):
    calls = []

    def fake_get(url, params=None, headers=None, timeout=None):
        calls.append(params)
        return FakeResponse(
            payload=[
                {"id": 1, "title": "Ultima hora", "categoryIds": ["5"]},
                {"id": 2, "title": "Partido", "categoryIds": ["1"]},
            ]
        )

    monkeypatch.setattr(feed_client.requests, "get", fake_get)
    feed = VideoFeed(filter_state=FilterState(category=5), auto_refresh=False)
    feed.refresh()

    assert calls == [{"limit": settings.FEED_FETCH_LIMIT}]
    assert [video.id for video in feed.current_page().items] == [1]


def test_fetch_videos_sends_query_and_normalizes(monkeypatch):
    calls = []

    def fake_get(url, params=None, headers=None, timeout=None):
        calls.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        return FakeResponse(
            payload=[
                {"id": 1, "title": "Gol", "platform": "youtube", "categoryIds": ["1"]},
                {"title": "broken"},
            ]
        )

    monkeypatch.setattr(settings, "HUB_API_TOKEN", "secret-token")
    monkeypatch.setattr(feed_client.requests, "get", fake_get)

    videos = fetch_videos(FilterState(platform="youtube", search_term="gol"), limit=20)

    assert [video.id for video in videos] == [1]
    assert videos[0].category_ids == [1]
    assert calls[0]["url"] == "http://hub.test/api/videos"
    assert calls[0]["params"] == {"platform": "youtube", "query": "gol", "limit": 20}
    assert calls[0]["headers"]["Authorization"] == "Bearer secret-token"
    assert calls[0]["timeout"] == settings.HUB_API_TIMEOUT_SECONDS


def test_non_2xx_raises_feed_request_error(monkeypatch):
    monkeypatch.setattr(
        feed_client.requests,
        "get",
        lambda *args, **kwargs: FakeResponse(400, payload={"message": "Invalid platform"}),
    )
    with pytest.raises(FeedRequestError) as excinfo:
        hub_api_get("/api/videos", {"platform": "myspace"})
    assert excinfo.value.status_code == 400
    assert "Invalid platform" in excinfo.value.message


def test_transient_failures_are_retried(monkeypatch):
    responses = [
        requests.ConnectionError("reset"),
        FakeResponse(503, text="busy"),
        FakeResponse(200, payload=[{"id": 9, "title": "Final"}]),
    ]

    def fake_get(*args, **kwargs):
        result = responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    monkeypatch.setattr(feed_client.requests, "get", fake_get)
    videos = fetch_videos(FilterState())
    assert [video.id for video in videos] == [9]
    assert responses == []


def test_retries_are_bounded(monkeypatch):
    attempts = {"count": 0}

    def fake_get(*args, **kwargs):
        attempts["count"] += 1
        return FakeResponse(503, text="busy")

    monkeypatch.setattr(feed_client.requests, "get", fake_get)
    with pytest.raises(FeedRequestError) as excinfo:
        hub_api_get("/api/videos")
    assert excinfo.value.status_code == 503
    assert attempts["count"] == 3


def test_non_array_payload_is_rejected(monkeypatch):
    monkeypatch.setattr(
        feed_client.requests,
        "get",
        lambda *args, **kwargs: FakeResponse(200, payload={"items": []}),
    )
    with pytest.raises(FeedRequestError):
        fetch_videos(FilterState())


def test_stale_generation_is_discarded():
    feed = VideoFeed(fetcher=lambda *args, **kwargs: [], auto_refresh=False)
    older = feed.begin_request()
    newer = feed.begin_request()

    assert feed.apply_result(newer, [make_video(2)]) is True
    assert feed.apply_result(older, [make_video(1)]) is False
    assert [video.id for video in feed.items] == [2]
    assert feed.loading is False

    assert feed.apply_error(older, FeedRequestError("late failure")) is False
    assert feed.error is None


def test_late_response_for_superseded_filter_is_dropped():
    first_started = threading.Event()
    release_first = threading.Event()

    def fetcher(filter_state, limit=None, path=None):
        if filter_state.platform == "youtube":
            first_started.set()
            release_first.wait(2)
            return [make_video(1, platform="youtube")]
        return [make_video(2, platform="twitch")]

    feed = VideoFeed(fetcher=fetcher, auto_refresh=False)
    feed.set_platform("youtube")
    worker = feed.refresh_in_background()
    assert first_started.wait(2)

    feed.set_platform("twitch")
    assert feed.refresh() is True

    release_first.set()
    worker.join(2)

    assert [video.id for video in feed.items] == [2]
    assert [video.id for video in feed.current_page().items] == [2]


def test_filter_change_alone_supersedes_request_in_flight():
    started = threading.Event()
    release = threading.Event()

    def fetcher(filter_state, limit=None, path=None):
        started.set()
        release.wait(2)
        return [make_video(1, platform="youtube")]

    feed = VideoFeed(fetcher=fetcher, auto_refresh=False)
    feed.set_platform("youtube")
    worker = feed.refresh_in_background()
    assert started.wait(2)
    generation = feed.generation

    feed.set_platform("twitch")
    assert feed.generation == generation + 1
    assert feed.loading is False

    release.set()
    worker.join(2)

    assert feed.items == []
    assert feed.loading is False
    assert feed.filter_state.platform == "twitch"


def test_background_filter_change_keeps_latest_results():
    release_first = threading.Event()
    done = threading.Event()

    def fetcher(filter_state, limit=None, path=None):
        if filter_state.platform == "youtube":
            release_first.wait(2)
            return [make_video(1, platform="youtube")]
        return [make_video(2, platform="tiktok")]

    feed = VideoFeed(fetcher=fetcher, background=True, on_change=lambda f: done.set())
    feed.set_platform("youtube")
    feed.set_platform("tiktok")
    assert done.wait(2)
    assert [video.id for video in feed.items] == [2]

    release_first.set()
    time.sleep(0.1)
    assert [video.id for video in feed.items] == [2]
    assert feed.loading is False


def test_filter_change_resets_page_and_refetches():
    calls = []

    def fetcher(filter_state, limit=None, path=None):
        calls.append(filter_state)
        return [make_video(i, platform="youtube", views=i) for i in range(1, 8)]

    feed = VideoFeed(fetcher=fetcher, page_size=3)
    feed.refresh()
    assert feed.set_page(3) == 3
    assert feed.set_page(10) == 3

    assert feed.set_platform("youtube") is True
    assert feed.page == 1
    assert calls[-1] == FilterState(platform="youtube")
    assert feed.set_platform("youtube") is False
    assert len(calls) == 2

    feed.set_page(2)
    feed.set_sort("popular")
    assert feed.page == 1
    assert feed.sort_mode is SortMode.MOST_VIEWED
    assert [video.id for video in feed.current_page().items] == [7, 6, 5]
    assert feed.query_string() == "platform=youtube"


def test_failure_clears_results_and_records_error():
    outcomes = [[make_video(1)], FeedRequestError("HTTP 500", 500)]

    def fetcher(filter_state, limit=None, path=None):
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    changes = []
    feed = VideoFeed(fetcher=fetcher, on_change=lambda f: changes.append(len(f.items)))
    feed.refresh()
    assert [video.id for video in feed.items] == [1]

    feed.set_category("training")
    assert feed.items == []
    assert feed.error.status_code == 500
    assert feed.loading is False
    assert changes == [1, 0]


def test_debounced_search_updates_filters():
    calls = []

    def fetcher(filter_state, limit=None, path=None):
        calls.append(filter_state.search_term)
        return []

    feed = VideoFeed(fetcher=fetcher, search_delay_ms=0)
    feed.type_search("  Mbappe ")
    assert feed.filter_state.search_term == "Mbappe"
    assert calls == ["Mbappe"]
    feed.close()


def test_from_query_params_restores_state():
    feed = VideoFeed.from_query_params(
        {"platform": "twitch", "category": "news", "query": "derbi", "sort": "za"},
        fetcher=lambda *args, **kwargs: [],
    )
    assert feed.filter_state == FilterState(platform="twitch", category=5, search_term="derbi")
    assert feed.sort_mode is SortMode.TITLE_DESC
    assert feed.search.value == "derbi"
