"""
Media Cache Orchestrator — resolve(artist, track, prefer_video) with a durable
lookup cache, in-flight dedup and quota suppression.

Lookup order for one (track_key, preference):
  1. an in-flight lookup for the same key → await its result
  2. the durable cache entry's variant for this preference
       - a real match → access bookkeeping, from_cache=True
       - a NOT_FOUND marker younger than negative_cache_ttl → not found
  3. provider-wide quota block → temporarily unavailable
  4. the Video Resolution Service → persist match or NOT_FOUND marker

Audio and video variants are cached independently: an entry holding only the
video variant is a miss for an audio request. Provider unavailability (quota,
timeout) is never written to the durable cache.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from config import settings
from engine.errors import ProviderUnavailable, QuotaExceededError
from models.media import (
    NOT_FOUND, CacheEntry, CacheStats, CleanupReport, Preference,
    ResolveResult, ResolveStatus, VariantRecord, make_track_key,
)
from services.inflight import InFlightRegistry
from services.store import get_store
from services.video_resolver import VideoResolutionService

logger = logging.getLogger(__name__)

UNAVAILABLE = ResolveResult(status=ResolveStatus.UNAVAILABLE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _entry_summary(entry: CacheEntry) -> Dict[str, Any]:
    def _variant(v: Optional[VariantRecord]) -> Optional[str]:
        return v.external_id if v else None

    return {
        "track_key": entry.track_key,
        "artist": entry.artist,
        "track": entry.track,
        "audio_id": _variant(entry.audio),
        "video_id": _variant(entry.video),
        "access_count": entry.access_count,
        "first_resolved_at": entry.first_resolved_at.isoformat(),
        "last_accessed_at": entry.last_accessed_at.isoformat(),
    }


class MediaCacheOrchestrator:

    def __init__(
        self,
        store=None,
        resolver: Optional[VideoResolutionService] = None,
        registry: Optional[InFlightRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
        quota_suppression_seconds: Optional[float] = None,
        negative_ttl: Optional[timedelta] = None,
    ):
        self._store = store
        self.resolver = resolver if resolver is not None else VideoResolutionService()
        self.registry = (
            registry if registry is not None
            else InFlightRegistry(ttl_seconds=settings.inflight_ttl_seconds)
        )
        self.clock = clock if clock is not None else _utcnow
        self.quota_suppression_seconds = (
            quota_suppression_seconds
            if quota_suppression_seconds is not None
            else settings.quota_suppression_seconds
        )
        self.negative_ttl = (
            negative_ttl if negative_ttl is not None
            else timedelta(hours=settings.negative_cache_ttl_hours)
        )

    @property
    def store(self):
        return self._store if self._store is not None else get_store()

    # ── Resolve ───────────────────────────────────────────────────────────────

    async def resolve(self, artist: str, track: str, prefer_video: bool = False) -> ResolveResult:
        preference = Preference.from_flag(prefer_video)
        track_key = make_track_key(artist, track)
        key = (track_key, preference)

        pending = self.registry.get(key)
        if pending is not None:
            # Shielded so a cancelled follower cannot cancel the shared future
            result = await asyncio.shield(pending)
            logger.debug(f"[cache] {track_key} ({preference.value}) joined in-flight lookup")
            if result.status == ResolveStatus.UNAVAILABLE:
                return result
            return result.model_copy(update={"from_cache": True})

        # Claimed before the first await so concurrent callers fold into the branch above
        future = self.registry.claim(key)
        result = UNAVAILABLE
        try:
            result = await self._lookup(track_key, artist, track, preference)
        except Exception:
            logger.error(f"[cache] lookup failed for {track_key} ({preference.value})", exc_info=True)
        finally:
            # Runs on cancellation too, so followers never wait on an abandoned future
            hold = 0.0
            if result.status == ResolveStatus.UNAVAILABLE and self.registry.provider_blocked():
                hold = self.quota_suppression_seconds
            self.registry.settle(key, future, result, hold_seconds=hold)
        return result

    async def _lookup(
        self, track_key: str, artist: str, track: str, preference: Preference
    ) -> ResolveResult:
        now = self.clock()
        entry = await self.store.get_cache_entry(track_key)
        variant = entry.variant(preference) if entry else None

        if variant is not None:
            if not variant.is_negative:
                await self.store.record_cache_access(track_key, preference, now)
                logger.info(f"[cache] hit {track_key} ({preference.value}) → {variant.external_id}")
                return ResolveResult.from_variant(variant, from_cache=True)
            if now - variant.first_resolved_at < self.negative_ttl:
                await self.store.record_cache_access(track_key, preference, now)
                logger.info(f"[cache] negative hit {track_key} ({preference.value})")
                return ResolveResult(status=ResolveStatus.NOT_FOUND, from_cache=True)
            logger.info(f"[cache] negative marker expired for {track_key} ({preference.value})")

        if self.registry.provider_blocked():
            logger.info(f"[cache] provider blocked, skipping {track_key} ({preference.value})")
            return UNAVAILABLE

        logger.info(f"[cache] miss {track_key} ({preference.value}) — asking provider")
        try:
            record = await self.resolver.resolve(artist, track, preference)
        except QuotaExceededError:
            logger.warning(
                f"[cache] provider quota exhausted; suppressing lookups for "
                f"{self.quota_suppression_seconds:g}s"
            )
            self.registry.block_provider(self.quota_suppression_seconds)
            return UNAVAILABLE
        except ProviderUnavailable as exc:
            logger.warning(f"[cache] provider unavailable for {track_key}: {exc}")
            return UNAVAILABLE

        if record is None:
            marker = VariantRecord(
                external_id=NOT_FOUND,
                confidence=0.0,
                is_video=preference == Preference.VIDEO,
                first_resolved_at=now,
                last_accessed_at=now,
            )
            await self.store.put_cache_variant(track_key, artist, track, preference, marker, now)
            return ResolveResult(status=ResolveStatus.NOT_FOUND, from_cache=False)

        record = record.model_copy(update={"first_resolved_at": now, "last_accessed_at": now})
        await self.store.put_cache_variant(track_key, artist, track, preference, record, now)
        return ResolveResult.from_variant(record, from_cache=False)

    # ── Management ────────────────────────────────────────────────────────────

    async def lookup(self, artist: str, track: str) -> Optional[CacheEntry]:
        return await self.store.get_cache_entry(make_track_key(artist, track))

    async def add_manual_entry(
        self,
        artist: str,
        track: str,
        external_id: str,
        prefer_video: bool = False,
        title: Optional[str] = None,
        thumbnail: Optional[str] = None,
        confidence: float = 1.0,
    ) -> CacheEntry:
        """Pin a known id for one variant, replacing whatever was cached there."""
        preference = Preference.from_flag(prefer_video)
        track_key = make_track_key(artist, track)
        now = self.clock()
        record = VariantRecord(
            external_id=external_id,
            title=title,
            thumbnail=thumbnail,
            confidence=confidence,
            is_video=preference == Preference.VIDEO,
            first_resolved_at=now,
            last_accessed_at=now,
        )
        await self.store.put_cache_variant(track_key, artist, track, preference, record, now)
        logger.info(f"[cache] manual entry {track_key} ({preference.value}) → {external_id}")
        return await self.store.get_cache_entry(track_key)

    async def top_accessed(self, limit: int = 10) -> List[Dict[str, Any]]:
        entries = await self.store.list_cache_entries()
        entries.sort(key=lambda e: e.access_count, reverse=True)
        return [_entry_summary(e) for e in entries[:max(0, limit)]]

    async def stats(self, top: int = 5) -> CacheStats:
        entries = await self.store.list_cache_entries()
        if not entries:
            return CacheStats(in_flight=len(self.registry))

        def _positive(v: Optional[VariantRecord]) -> bool:
            return v is not None and not v.is_negative

        with_match = sum(1 for e in entries if e.has_match())
        oldest = min(entries, key=lambda e: e.first_resolved_at)
        ranked = sorted(entries, key=lambda e: e.access_count, reverse=True)
        return CacheStats(
            total_entries=len(entries),
            entries_with_audio=sum(1 for e in entries if _positive(e.audio)),
            entries_with_video=sum(1 for e in entries if _positive(e.video)),
            entries_with_any_match=with_match,
            entries_without_match=len(entries) - with_match,
            negative_audio=sum(1 for e in entries if e.audio and e.audio.is_negative),
            negative_video=sum(1 for e in entries if e.video and e.video.is_negative),
            in_flight=len(self.registry),
            oldest_entry=_entry_summary(oldest),
            most_accessed=_entry_summary(ranked[0]),
            top_accessed=[_entry_summary(e) for e in ranked[:top]],
        )

    async def cleanup(
        self,
        older_than_days: Optional[int] = None,
        max_entries: Optional[int] = None,
        min_confidence: Optional[float] = None,
        min_access_count: int = 0,
    ) -> CleanupReport:
        """
        Evict in four passes: not accessed for older_than_days, accessed fewer
        than min_access_count times, least used beyond max_entries, and best
        confidence below min_confidence (negative-only entries count as 0).
        """
        older_than_days = older_than_days if older_than_days is not None else settings.cache_max_age_days
        max_entries = max_entries if max_entries is not None else settings.cache_max_entries
        min_confidence = min_confidence if min_confidence is not None else settings.cache_min_confidence

        now = self.clock()
        report = CleanupReport()
        entries = await self.store.list_cache_entries()

        cutoff = now - timedelta(days=older_than_days)
        stale = [e.track_key for e in entries if e.last_accessed_at < cutoff]
        report.deleted_stale = await self.store.delete_cache_entries(stale)
        gone = set(stale)
        remaining = [e for e in entries if e.track_key not in gone]

        if min_access_count > 0:
            rare = [e.track_key for e in remaining if e.access_count < min_access_count]
            report.deleted_rarely_used = await self.store.delete_cache_entries(rare)
            gone = set(rare)
            remaining = [e for e in remaining if e.track_key not in gone]

        if len(remaining) > max_entries:
            remaining.sort(key=lambda e: (e.access_count, e.last_accessed_at))
            excess = len(remaining) - max_entries
            over = [e.track_key for e in remaining[:excess]]
            report.deleted_over_cap = await self.store.delete_cache_entries(over)
            remaining = remaining[excess:]

        if min_confidence > 0:
            low = [e.track_key for e in remaining if e.best_confidence() < min_confidence]
            report.deleted_low_confidence = await self.store.delete_cache_entries(low)

        logger.info(
            f"[cache] cleanup removed {report.total} entries "
            f"(stale={report.deleted_stale} rare={report.deleted_rarely_used} "
            f"over_cap={report.deleted_over_cap} low_confidence={report.deleted_low_confidence})"
        )
        return report


_media_cache: Optional[MediaCacheOrchestrator] = None


def get_media_cache() -> MediaCacheOrchestrator:
    """Lazy singleton; use as a FastAPI dependency: Depends(get_media_cache)."""
    global _media_cache
    if _media_cache is None:
        _media_cache = MediaCacheOrchestrator()
    return _media_cache
