from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from enum import Enum
from datetime import datetime, timezone
import re


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# externalId marker for "provider confirmed there is no match"
NOT_FOUND = "NOT_FOUND"

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_SPACES = re.compile(r"\s+")


def normalize_part(value: str) -> str:
    """Lowercase, strip punctuation, collapse whitespace. Idempotent."""
    cleaned = _NON_ALNUM.sub("", (value or "").lower())
    return _SPACES.sub(" ", cleaned).strip()


def make_track_key(artist: str, track: str) -> str:
    return f"{normalize_part(artist)}:{normalize_part(track)}"


class Preference(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"

    @classmethod
    def from_flag(cls, prefer_video: bool) -> "Preference":
        return cls.VIDEO if prefer_video else cls.AUDIO


# ── External provider shapes ──────────────────────────────────────────────────

class VideoSearchResult(BaseModel):
    id: str
    title: str
    thumbnail: Optional[str] = None
    channel_title: str = ""
    published_at: Optional[str] = None


class TrackSearchResult(BaseModel):
    id: str
    name: str
    artist: str
    album_art: Optional[str] = None
    album: Optional[str] = None


# ── Durable cache entry ───────────────────────────────────────────────────────

class VariantRecord(BaseModel):
    external_id: str
    title: Optional[str] = None
    thumbnail: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    is_video: bool = False
    first_resolved_at: datetime = Field(default_factory=_utcnow)
    last_accessed_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_negative(self) -> bool:
        return self.external_id == NOT_FOUND


class CacheEntry(BaseModel):
    track_key: str
    artist: str
    track: str
    audio: Optional[VariantRecord] = None
    video: Optional[VariantRecord] = None
    access_count: int = 1
    first_resolved_at: datetime = Field(default_factory=_utcnow)
    last_accessed_at: datetime = Field(default_factory=_utcnow)

    def variant(self, preference: Preference) -> Optional[VariantRecord]:
        return self.video if preference == Preference.VIDEO else self.audio

    def has_match(self) -> bool:
        return any(v is not None and not v.is_negative for v in (self.audio, self.video))

    def best_confidence(self) -> float:
        """Highest confidence across variants; negative markers count as 0."""
        scores = [
            v.confidence for v in (self.audio, self.video)
            if v is not None and not v.is_negative
        ]
        return max(scores) if scores else 0.0


# ── Resolution results ────────────────────────────────────────────────────────

class ResolveStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "temporarily_unavailable"


class ResolveResult(BaseModel):
    status: ResolveStatus
    external_id: Optional[str] = None
    title: Optional[str] = None
    thumbnail: Optional[str] = None
    confidence: float = 0.0
    from_cache: bool = False
    is_video: bool = False

    @property
    def not_found(self) -> bool:
        return self.status == ResolveStatus.NOT_FOUND

    @property
    def temporarily_unavailable(self) -> bool:
        return self.status == ResolveStatus.UNAVAILABLE

    @classmethod
    def from_variant(cls, record: VariantRecord, from_cache: bool) -> "ResolveResult":
        return cls(
            status=ResolveStatus.FOUND,
            external_id=record.external_id,
            title=record.title,
            thumbnail=record.thumbnail,
            confidence=record.confidence,
            from_cache=from_cache,
            is_video=record.is_video,
        )

    def to_public(self) -> Dict[str, Any]:
        if self.status == ResolveStatus.NOT_FOUND:
            return {"notFound": True, "fromCache": self.from_cache}
        if self.status == ResolveStatus.UNAVAILABLE:
            return {"temporarilyUnavailable": True}
        return {
            "externalId": self.external_id,
            "title": self.title,
            "thumbnail": self.thumbnail,
            "confidence": self.confidence,
            "fromCache": self.from_cache,
            "isVideo": self.is_video,
        }


# ── HTTP request/response models ──────────────────────────────────────────────

class ResolveRequest(BaseModel):
    artist: str
    track: str
    prefer_video: bool = False


class CleanupRequest(BaseModel):
    older_than_days: Optional[int] = None
    max_entries: Optional[int] = None
    min_confidence: Optional[float] = None
    min_access_count: int = 0


class CleanupReport(BaseModel):
    deleted_stale: int = 0
    deleted_rarely_used: int = 0
    deleted_over_cap: int = 0
    deleted_low_confidence: int = 0

    @property
    def total(self) -> int:
        return (
            self.deleted_stale + self.deleted_rarely_used
            + self.deleted_over_cap + self.deleted_low_confidence
        )


class ManualEntryRequest(BaseModel):
    artist: str
    track: str
    external_id: str
    prefer_video: bool = False
    title: Optional[str] = None
    thumbnail: Optional[str] = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class CacheStats(BaseModel):
    total_entries: int = 0
    entries_with_audio: int = 0
    entries_with_video: int = 0
    entries_with_any_match: int = 0
    entries_without_match: int = 0
    negative_audio: int = 0
    negative_video: int = 0
    in_flight: int = 0
    oldest_entry: Optional[Dict[str, Any]] = None
    most_accessed: Optional[Dict[str, Any]] = None
    top_accessed: List[Dict[str, Any]] = []
