"""
In-process store with the same async interface as FirestoreService.

Used when STORAGE_BACKEND=memory (local development) and by the test suite.
Every read returns a deep copy so callers can never mutate stored state
without going through save_session / the cache write methods.
"""
from typing import Optional, List, Dict, Iterable
from datetime import datetime

from models.game import GameSession
from models.media import CacheEntry, VariantRecord, Preference
from engine.errors import VersionConflict


class MemoryStore:

    def __init__(self):
        self._sessions: Dict[str, GameSession] = {}
        self._cache: Dict[str, CacheEntry] = {}

    # ── Sessions ──────────────────────────────────────────────────────────────

    async def create_session(self, session: GameSession) -> None:
        if session.id in self._sessions:
            raise ValueError(f"Session {session.id} already exists")
        self._sessions[session.id] = session.model_copy(deep=True)

    async def get_session(self, session_id: str) -> Optional[GameSession]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def get_session_by_code(self, code: str) -> Optional[GameSession]:
        code = code.upper()
        for session in self._sessions.values():
            if session.code == code:
                return session.model_copy(deep=True)
        return None

    async def code_exists(self, code: str) -> bool:
        return await self.get_session_by_code(code) is not None

    async def save_session(self, session: GameSession, expected_version: int) -> None:
        stored = self._sessions.get(session.id)
        current = stored.version if stored else None
        if current != expected_version:
            raise VersionConflict(
                f"Session {session.id} moved to version {current}",
                session_id=session.id,
            )
        self._sessions[session.id] = session.model_copy(deep=True)

    async def list_sessions_with_countdown(self, due_before: datetime) -> List[GameSession]:
        return [
            s.model_copy(deep=True)
            for s in self._sessions.values()
            if s.countdown and s.countdown.deadline <= due_before
        ]

    async def delete_expired_sessions(self, now: datetime) -> int:
        expired = [
            sid for sid, s in self._sessions.items()
            if s.expires_at and s.expires_at <= now
        ]
        for sid in expired:
            del self._sessions[sid]
        return len(expired)

    # ── Media cache ───────────────────────────────────────────────────────────

    async def get_cache_entry(self, track_key: str) -> Optional[CacheEntry]:
        entry = self._cache.get(track_key)
        return entry.model_copy(deep=True) if entry else None

    async def put_cache_variant(
        self,
        track_key: str,
        artist: str,
        track: str,
        preference: Preference,
        record: VariantRecord,
        now: datetime,
    ) -> None:
        entry = self._cache.get(track_key)
        if entry is None:
            entry = CacheEntry(
                track_key=track_key,
                artist=artist,
                track=track,
                first_resolved_at=now,
                last_accessed_at=now,
            )
            self._cache[track_key] = entry
        else:
            entry.last_accessed_at = now
        setattr(entry, preference.value, record.model_copy(deep=True))

    async def record_cache_access(
        self, track_key: str, preference: Preference, now: datetime
    ) -> None:
        entry = self._cache.get(track_key)
        if entry is None:
            return
        entry.access_count += 1
        entry.last_accessed_at = now
        variant = entry.variant(preference)
        if variant is not None:
            variant.last_accessed_at = now

    async def list_cache_entries(self) -> List[CacheEntry]:
        return [e.model_copy(deep=True) for e in self._cache.values()]

    async def delete_cache_entries(self, track_keys: Iterable[str]) -> int:
        deleted = 0
        for key in track_keys:
            if self._cache.pop(key, None) is not None:
                deleted += 1
        return deleted

    async def count_cache_entries(self) -> int:
        return len(self._cache)
