import logging
import re
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

PLATFORMS = ("youtube", "twitch", "tiktok", "twitter", "instagram")

# Backend camelCase name -> model field name. Snake case is accepted as-is.
FIELD_ALIASES = {
    "channelId": "channel_id",
    "channelTitle": "channel_title",
    "channelThumbnail": "channel_thumbnail",
    "publishedAt": "published_at",
    "viewCount": "view_count",
    "categoryIds": "category_ids",
    "thumbnailUrl": "thumbnail_url",
    "videoUrl": "video_url",
    "embedUrl": "embed_url",
    "externalId": "external_id",
    "isFavorite": "is_favorite",
}

# Anything above this is a JavaScript millisecond timestamp, not seconds.
_EPOCH_MILLIS_THRESHOLD = 100_000_000_000

_ISO_FRACTION_RE = re.compile(r"(\d{2}:\d{2}:\d{2})\.(\d+)")
_ISO_OFFSET_RE = re.compile(r"([+-])(\d{2}):?(\d{2})?$")


class VideoRecord(BaseModel):
    id: int
    title: str
    description: str | None = None
    platform: str = "youtube"
    channel_id: str | None = None
    channel_title: str | None = None
    channel_thumbnail: str | None = None
    published_at: datetime | None = None
    view_count: int | None = Field(default=None, ge=0)
    category_ids: list[int] = Field(default_factory=list)
    featured: bool = False
    is_favorite: bool = False
    thumbnail_url: str | None = None
    video_url: str | None = None
    embed_url: str | None = None
    external_id: str | None = None
    duration: str | None = None

    @property
    def published_timestamp(self) -> float:
        if self.published_at is None:
            return 0.0
        return self.published_at.timestamp()

    @property
    def views(self) -> int:
        return self.view_count or 0

    def to_payload(self) -> dict[str, Any]:
        """Serialize with the backend's camelCase keys so consumers see the same shape."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "platform": self.platform,
            "channelId": self.channel_id,
            "channelTitle": self.channel_title,
            "channelThumbnail": self.channel_thumbnail,
            "publishedAt": (
                self.published_at.isoformat().replace("+00:00", "Z") if self.published_at else None
            ),
            "viewCount": self.view_count,
            "categoryIds": list(self.category_ids),
            "featured": self.featured,
            "isFavorite": self.is_favorite,
            "thumbnailUrl": self.thumbnail_url,
            "videoUrl": self.video_url,
            "embedUrl": self.embed_url,
            "externalId": self.external_id,
            "duration": self.duration,
        }


def _normalize_iso_text(text: str) -> str:
    """Rewrite Postgres/JS timestamp text into a form `fromisoformat` accepts on 3.10."""
    if text[-1] in "Zz":
        text = text[:-1] + "+00:00"
    if len(text) <= 10:
        return text
    time_part = _ISO_FRACTION_RE.sub(
        lambda match: f"{match.group(1)}.{match.group(2)[:6].ljust(6, '0')}",
        text[11:],
    )
    time_part = _ISO_OFFSET_RE.sub(
        lambda match: f"{match.group(1)}{match.group(2)}:{match.group(3) or '00'}",
        time_part,
    )
    return f"{text[:10]}T{time_part}"


def parse_published_at(value: Any) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        seconds = float(value)
        if abs(seconds) >= _EPOCH_MILLIS_THRESHOLD:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(_normalize_iso_text(text))
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_view_count(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        count = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None
    if count < 0:
        return None
    return count


def parse_int_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return int(text)
    return None


def parse_int_ids(value: Any) -> list[int]:
    if value is None:
        return []
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        value = [value]
    if not isinstance(value, (list, tuple, set)):
        return []
    ids: list[int] = []
    seen: set[int] = set()
    for raw in value:
        parsed = parse_int_id(raw)
        if parsed is None or parsed in seen:
            continue
        seen.add(parsed)
        ids.append(parsed)
    return ids


def parse_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def normalize_video(raw: dict[str, Any]) -> VideoRecord | None:
    fields: dict[str, Any] = {}
    for key, value in raw.items():
        fields[FIELD_ALIASES.get(key, key)] = value

    video_id = parse_int_id(fields.get("id"))
    title = fields.get("title")
    if video_id is None or not isinstance(title, str):
        logger.debug("Dropping video without usable id/title: %r", raw.get("id"))
        return None

    try:
        return VideoRecord(
            id=video_id,
            title=title,
            description=_optional_text(fields.get("description")),
            platform=str(fields.get("platform") or "youtube").strip().lower(),
            channel_id=_optional_text(fields.get("channel_id")),
            channel_title=_optional_text(fields.get("channel_title")),
            channel_thumbnail=_optional_text(fields.get("channel_thumbnail")),
            published_at=parse_published_at(fields.get("published_at")),
            view_count=parse_view_count(fields.get("view_count")),
            category_ids=parse_int_ids(fields.get("category_ids")),
            featured=parse_flag(fields.get("featured")),
            is_favorite=parse_flag(fields.get("is_favorite")),
            thumbnail_url=_optional_text(fields.get("thumbnail_url")),
            video_url=_optional_text(fields.get("video_url")),
            embed_url=_optional_text(fields.get("embed_url")),
            external_id=_optional_text(fields.get("external_id")),
            duration=_optional_text(fields.get("duration")),
        )
    except ValidationError as exc:
        logger.debug("Dropping malformed video %s: %s", video_id, exc)
        return None


def normalize_videos(payload: Any) -> list[VideoRecord]:
    if not isinstance(payload, list):
        return []
    videos: list[VideoRecord] = []
    for raw in payload:
        if not isinstance(raw, dict):
            continue
        video = normalize_video(raw)
        if video is not None:
            videos.append(video)
    return videos
