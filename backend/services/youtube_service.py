"""
YouTube Data API v3 search client.

Only the `search.list` endpoint is used. Every failure mode is mapped onto the
error taxonomy so callers can tell "no results" (empty list) from "try again
later" (ProviderUnavailable / QuotaExceededError). A timeout is never treated
as "no results".
"""
import logging
from typing import List, Optional

import httpx

from config import settings
from engine.errors import ProviderUnavailable, QuotaExceededError
from models.media import VideoSearchResult

logger = logging.getLogger(__name__)

BASE_URL = "https://www.googleapis.com/youtube/v3"
MUSIC_CATEGORY = "10"

# Error reasons YouTube reports when the project's quota is exhausted
QUOTA_REASONS = {"quotaExceeded", "dailyLimitExceeded", "rateLimitExceeded", "userRateLimitExceeded"}


def get_embed_url(video_id: str) -> str:
    return f"https://www.youtube.com/embed/{video_id}"


def get_watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def _error_reasons(response: httpx.Response) -> List[str]:
    try:
        error = response.json().get("error") or {}
    except ValueError:
        return []
    return [e.get("reason", "") for e in error.get("errors") or []]


def _thumbnail(snippet: dict) -> Optional[str]:
    thumbs = snippet.get("thumbnails") or {}
    for size in ("medium", "high", "default"):
        if size in thumbs and thumbs[size].get("url"):
            return thumbs[size]["url"]
    return None


class YouTubeService:

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.youtube_api_key
        self.timeout = timeout if timeout is not None else settings.youtube_timeout_seconds
        self._transport = transport

    async def search(
        self,
        query: str,
        category_hint: Optional[str] = MUSIC_CATEGORY,
        max_results: int = 3,
    ) -> List[VideoSearchResult]:
        """Embeddable videos for a query. Empty list means the provider found nothing."""
        if not self.api_key:
            raise ProviderUnavailable("YouTube API key is not configured")

        params = {
            "part": "snippet",
            "q": query,
            "type": "video",
            "videoEmbeddable": "true",
            "maxResults": min(max(1, max_results), 5),
            "key": self.api_key,
        }
        if category_hint:
            params["videoCategoryId"] = category_hint

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.get(f"{BASE_URL}/search", params=params)
        except httpx.TimeoutException:
            logger.warning(f"[youtube] search timed out after {self.timeout}s q={query!r}")
            raise ProviderUnavailable("YouTube search timed out")
        except httpx.HTTPError as exc:
            logger.warning(f"[youtube] transport error q={query!r}: {exc}")
            raise ProviderUnavailable("YouTube search failed")

        if r.status_code in (403, 429):
            reasons = _error_reasons(r)
            if r.status_code == 429 or QUOTA_REASONS.intersection(reasons):
                logger.warning(f"[youtube] quota exhausted reasons={reasons}")
                raise QuotaExceededError("YouTube quota exhausted")
        if r.status_code >= 400:
            logger.warning(f"[youtube] search failed code={r.status_code} q={query!r}")
            raise ProviderUnavailable(f"YouTube search failed ({r.status_code})")

        items = r.json().get("items") or []
        results = []
        for item in items:
            video_id = (item.get("id") or {}).get("videoId")
            if not video_id:
                continue
            snippet = item.get("snippet") or {}
            results.append(VideoSearchResult(
                id=video_id,
                title=snippet.get("title", ""),
                thumbnail=_thumbnail(snippet),
                channel_title=snippet.get("channelTitle", ""),
                published_at=snippet.get("publishedAt"),
            ))
        return results


_youtube_service: Optional[YouTubeService] = None


def get_youtube_service() -> YouTubeService:
    global _youtube_service
    if _youtube_service is None:
        _youtube_service = YouTubeService()
    return _youtube_service
