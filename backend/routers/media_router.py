"""
Music search, media resolution and lookup-cache management endpoints.

Media is never a gate for gameplay: resolve reports "not found" and
"temporarily unavailable" as normal 200 bodies, never as errors.

Routes:
  GET  /api/music/search              — Track metadata search (Last.fm)
  POST /api/media/resolve             — Video id for (artist, track, preference)
  GET  /api/cache/stats
  POST /api/cache/cleanup
  GET  /api/cache/entry               — Raw cache entry for artist/track
  GET  /api/cache/top-accessed
  POST /api/cache/add-entry           — Pin a known video id
"""
import logging

from fastapi import APIRouter, HTTPException, Query

from engine.errors import NotResolvable
from models.media import CleanupRequest, ManualEntryRequest, ResolveRequest
from services.lastfm_service import get_lastfm_service
from services.media_cache import get_media_cache
from services.youtube_service import get_embed_url, get_watch_url

logger = logging.getLogger(__name__)

router = APIRouter(tags=["media"])


@router.get("/music/search")
async def search_music(
    q: str = Query(..., min_length=1),
    limit: int = Query(8, ge=1, le=50),
):
    tracks = await get_lastfm_service().search(q, limit)
    return {"results": [t.model_dump() for t in tracks]}


@router.post("/media/resolve")
async def resolve_media(body: ResolveRequest):
    if not body.artist.strip() or not body.track.strip():
        raise HTTPException(status_code=400, detail="artist and track are required")
    result = await get_media_cache().resolve(body.artist, body.track, body.prefer_video)
    data = result.to_public()
    if result.external_id and not result.not_found:
        data["embedUrl"] = get_embed_url(result.external_id)
        data["watchUrl"] = get_watch_url(result.external_id)
    return data


@router.get("/cache/stats")
async def cache_stats():
    stats = await get_media_cache().stats()
    return stats.model_dump()


@router.post("/cache/cleanup")
async def cache_cleanup(body: CleanupRequest):
    report = await get_media_cache().cleanup(
        older_than_days=body.older_than_days,
        max_entries=body.max_entries,
        min_confidence=body.min_confidence,
        min_access_count=body.min_access_count,
    )
    return {"success": True, "deleted": report.total, **report.model_dump()}


@router.get("/cache/entry")
async def cache_entry(artist: str = Query(...), track: str = Query(...)):
    entry = await get_media_cache().lookup(artist, track)
    if entry is None:
        raise NotResolvable(f"No cached lookup for {artist} - {track}")
    return entry.model_dump(mode="json")


@router.get("/cache/top-accessed")
async def cache_top_accessed(limit: int = Query(10, ge=1, le=100)):
    return {"entries": await get_media_cache().top_accessed(limit)}


@router.post("/cache/add-entry", status_code=201)
async def cache_add_entry(body: ManualEntryRequest):
    entry = await get_media_cache().add_manual_entry(
        body.artist,
        body.track,
        body.external_id,
        prefer_video=body.prefer_video,
        title=body.title,
        thumbnail=body.thumbnail,
        confidence=body.confidence,
    )
    return entry.model_dump(mode="json")
