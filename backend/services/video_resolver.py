"""
Video Resolution Service — picks one video id for (artist, track, preference).

Query strategies are tried in order and the first one that returns anything
wins. Results are classified as audio-like or video-like from title/channel
keywords, and a result agreeing with the caller's preference is preferred;
otherwise the first raw result of the winning strategy is used.
"""
import logging
from typing import List, Optional, Protocol

from models.media import Preference, VariantRecord, VideoSearchResult
from services.youtube_service import MUSIC_CATEGORY, get_youtube_service

logger = logging.getLogger(__name__)


class VideoSearchProvider(Protocol):
    async def search(
        self, query: str, category_hint: Optional[str] = ..., max_results: int = ...
    ) -> List[VideoSearchResult]: ...


VIDEO_STRATEGIES = (
    "{artist} {track} official music video",
    "{artist} {track} official video",
    "{artist} - {track}",
)
AUDIO_STRATEGIES = (
    "{artist} - {track} official audio",
    "{artist} {track} topic",
    "{artist} - {track} audio",
    "{artist} - {track}",
)

VIDEO_KEYWORDS = ("official video", "music video", "official music video", "videoclip", "(mv)", "[mv]")
AUDIO_KEYWORDS = ("official audio", "audio", "lyric video", "lyrics", "visualizer", "visualiser")


def classify(result: VideoSearchResult) -> Optional[Preference]:
    """Audio-like, video-like, or None when nothing in title/channel says either way."""
    channel = result.channel_title.lower()
    if "topic" in channel:
        return Preference.AUDIO
    if "vevo" in channel:
        return Preference.VIDEO
    title = result.title.lower()
    if any(k in title for k in VIDEO_KEYWORDS):
        return Preference.VIDEO
    if any(k in title for k in AUDIO_KEYWORDS):
        return Preference.AUDIO
    return None


def calculate_confidence(artist: str, track: str, title: str) -> float:
    title = title.lower()
    score = 0.0
    if artist.lower().strip() and artist.lower().strip() in title:
        score += 0.3
    if track.lower().strip() and track.lower().strip() in title:
        score += 0.4
    if "official" in title:
        score += 0.2
    if "audio" in title:
        score += 0.05
    if "music video" in title:
        score += 0.15
    return round(min(score, 1.0), 4)


class VideoResolutionService:

    def __init__(self, provider: Optional[VideoSearchProvider] = None, max_results: int = 5):
        self._provider = provider
        self.max_results = max_results

    @property
    def provider(self) -> VideoSearchProvider:
        return self._provider or get_youtube_service()

    @staticmethod
    def strategies(artist: str, track: str, preference: Preference) -> List[str]:
        templates = VIDEO_STRATEGIES if preference == Preference.VIDEO else AUDIO_STRATEGIES
        return [t.format(artist=artist, track=track) for t in templates]

    async def resolve(
        self, artist: str, track: str, preference: Preference
    ) -> Optional[VariantRecord]:
        """
        Best match for the preference, or None when every strategy came back empty.
        ProviderUnavailable (quota, timeout) propagates: that is not a "no match".
        """
        results: List[VideoSearchResult] = []
        used_query = None
        for query in self.strategies(artist, track, preference):
            results = await self.provider.search(query, MUSIC_CATEGORY, self.max_results)
            if results:
                used_query = query
                break

        if not results:
            logger.info(f"[resolver] no results for {artist} - {track} ({preference.value})")
            return None

        agreeing = [r for r in results if classify(r) == preference]
        if agreeing:
            chosen = max(agreeing, key=lambda r: calculate_confidence(artist, track, r.title))
        else:
            chosen = results[0]

        kind = classify(chosen)
        record = VariantRecord(
            external_id=chosen.id,
            title=chosen.title,
            thumbnail=chosen.thumbnail,
            confidence=calculate_confidence(artist, track, chosen.title),
            is_video=(kind == Preference.VIDEO) if kind else preference == Preference.VIDEO,
        )
        logger.info(
            f"[resolver] {artist} - {track} ({preference.value}) → {record.external_id} "
            f"q={used_query!r} confidence={record.confidence} agreeing={bool(agreeing)}"
        )
        return record
