"""
Last.fm track search — the metadata provider behind the song picker.

Results are memoised in-process for track_search_cache_seconds since players
tend to type the same queries over and over during a round. Expired entries are
dropped on every write and the memo is capped at MEMO_MAX_ENTRIES.
"""
import asyncio
import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from config import settings
from engine.errors import ProviderUnavailable
from models.media import TrackSearchResult

logger = logging.getLogger(__name__)

BASE_URL = "https://ws.audioscrobbler.com/2.0/"
MEMO_MAX_ENTRIES = 512


def _as_list(value: Any) -> List[Any]:
    # Last.fm returns a bare object instead of a one-element list
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _large_image(images: Any) -> Optional[str]:
    for img in _as_list(images):
        if img.get("size") == "large" and img.get("#text"):
            return img["#text"]
    return None


def _track_id(artist: str, name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9]", "", f"{artist}-{name}")


class LastFmService:

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        cache_seconds: Optional[float] = None,
        max_entries: int = MEMO_MAX_ENTRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.lastfm_api_key
        self.timeout = timeout if timeout is not None else settings.lastfm_timeout_seconds
        self.cache_seconds = (
            cache_seconds if cache_seconds is not None else settings.track_search_cache_seconds
        )
        self.max_entries = max_entries
        self.clock = clock if clock is not None else time.monotonic
        self._transport = transport
        # {cache_key: (stored_at, results)}
        self._memo: Dict[str, Tuple[float, List[TrackSearchResult]]] = {}

    def _cached(self, key: str) -> Optional[List[TrackSearchResult]]:
        hit = self._memo.get(key)
        if hit is None:
            return None
        stored_at, results = hit
        if self.clock() - stored_at > self.cache_seconds:
            del self._memo[key]
            return None
        return results

    def _remember(self, key: str, results: List[TrackSearchResult]) -> None:
        now = self.clock()
        for stale in [k for k, (at, _) in self._memo.items() if now - at > self.cache_seconds]:
            del self._memo[stale]
        # Insertion order is age order
        while self._memo and len(self._memo) >= self.max_entries:
            del self._memo[next(iter(self._memo))]
        self._memo[key] = (now, results)

    def clear_cache(self) -> None:
        self._memo.clear()

    async def _get(self, client: httpx.AsyncClient, params: Dict[str, Any]) -> Dict[str, Any]:
        r = await client.get(BASE_URL, params={**params, "api_key": self.api_key, "format": "json"})
        r.raise_for_status()
        return r.json()

    async def _track_info(
        self, client: httpx.AsyncClient, artist: str, name: str
    ) -> Optional[Dict[str, Any]]:
        try:
            data = await self._get(client, {"method": "track.getInfo", "artist": artist, "track": name})
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug(f"[lastfm] no extra info for {artist} - {name}: {exc}")
            return None
        return data.get("track")

    async def search(self, query: str, limit: int = 8) -> List[TrackSearchResult]:
        if not self.api_key:
            raise ProviderUnavailable("Last.fm API key is not configured")
        limit = min(max(1, int(limit)), 50)
        key = f"search:{query.strip().lower()}:{limit}"
        cached = self._cached(key)
        if cached is not None:
            logger.debug(f"[lastfm] cache hit q={query!r} ({len(cached)} results)")
            return cached

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                data = await self._get(client, {"method": "track.search", "track": query, "limit": limit})
                matches = _as_list(
                    ((data.get("results") or {}).get("trackmatches") or {}).get("track")
                )
                infos = await asyncio.gather(
                    *(self._track_info(client, t.get("artist", ""), t.get("name", "")) for t in matches)
                )
        except httpx.TimeoutException:
            logger.warning(f"[lastfm] search timed out q={query!r}")
            raise ProviderUnavailable("Track search timed out")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(f"[lastfm] search failed q={query!r}: {exc}")
            raise ProviderUnavailable("Track search failed")

        results = []
        for track, info in zip(matches, infos):
            album = (info or {}).get("album") or {}
            results.append(TrackSearchResult(
                id=_track_id(track.get("artist", ""), track.get("name", "")),
                name=track.get("name", ""),
                artist=track.get("artist", ""),
                album_art=_large_image(album.get("image")) or _large_image(track.get("image")),
                album=album.get("title"),
            ))
        self._remember(key, results)
        logger.info(f"[lastfm] q={query!r} → {len(results)} tracks")
        return results


_lastfm_service: Optional[LastFmService] = None


def get_lastfm_service() -> LastFmService:
    global _lastfm_service
    if _lastfm_service is None:
        _lastfm_service = LastFmService()
    return _lastfm_service
