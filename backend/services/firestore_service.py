import asyncio
import os
from typing import Optional, List, Dict, Any, Iterable
from datetime import datetime

from models.game import GameSession
from models.media import CacheEntry, VariantRecord, Preference
from engine.errors import VersionConflict
from config import settings


def _session_doc(session: GameSession) -> Dict[str, Any]:
    data = session.model_dump(mode="json")
    # Flattened for the countdown sweep query (nested fields can't be range-filtered cheaply)
    data["countdown_deadline"] = (
        session.countdown.deadline.isoformat() if session.countdown else None
    )
    return data


class FirestoreService:
    """
    Async-friendly Firestore wrapper using run_in_executor to avoid
    blocking the event loop.

    Collections:
      sessions/{session_id}     — one document per GameSession (version-checked writes)
      media_cache/{track_key}   — one document per CacheEntry (field-merge writes)
    """

    def __init__(self):
        if settings.firestore_emulator_host:
            os.environ["FIRESTORE_EMULATOR_HOST"] = settings.firestore_emulator_host
        # Lazy import so the service can be instantiated before GCP creds exist
        from google.cloud import firestore
        self._firestore = firestore
        self.db = firestore.Client(project=settings.google_cloud_project or None)

    def _run(self, fn):
        """Run a sync Firestore call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(None, fn)

    # ── Collection helpers ────────────────────────────────────────────────────

    def _session_ref(self, session_id: str):
        return self.db.collection("sessions").document(session_id)

    def _cache_ref(self, track_key: str):
        return self.db.collection("media_cache").document(track_key)

    # ── Sessions ──────────────────────────────────────────────────────────────

    async def create_session(self, session: GameSession) -> None:
        data = _session_doc(session)
        await self._run(lambda: self._session_ref(session.id).create(data))

    async def get_session(self, session_id: str) -> Optional[GameSession]:
        doc = await self._run(lambda: self._session_ref(session_id).get())
        if doc.exists:
            return GameSession(**doc.to_dict())
        return None

    async def get_session_by_code(self, code: str) -> Optional[GameSession]:
        query = self.db.collection("sessions").where("code", "==", code.upper()).limit(1)
        docs = await self._run(lambda: list(query.stream()))
        return GameSession(**docs[0].to_dict()) if docs else None

    async def code_exists(self, code: str) -> bool:
        return await self.get_session_by_code(code) is not None

    async def save_session(self, session: GameSession, expected_version: int) -> None:
        """
        Write the session only if the stored version still equals expected_version.
        Raises VersionConflict otherwise; the caller reloads and re-applies.
        """
        ref = self._session_ref(session.id)
        data = _session_doc(session)
        firestore = self._firestore

        def _save():
            transaction = self.db.transaction()

            @firestore.transactional
            def _txn(txn):
                snap = ref.get(transaction=txn)
                current = snap.to_dict().get("version") if snap.exists else None
                if current != expected_version:
                    raise VersionConflict(
                        f"Session {session.id} moved to version {current}",
                        session_id=session.id,
                    )
                txn.set(ref, data)

            _txn(transaction)

        await self._run(_save)

    async def list_sessions_with_countdown(self, due_before: datetime) -> List[GameSession]:
        query = self.db.collection("sessions").where(
            "countdown_deadline", "<=", due_before.isoformat()
        )
        docs = await self._run(lambda: list(query.stream()))
        return [GameSession(**d.to_dict()) for d in docs]

    async def delete_expired_sessions(self, now: datetime) -> int:
        query = self.db.collection("sessions").where("expires_at", "<=", now.isoformat())
        docs = await self._run(lambda: list(query.stream()))
        for d in docs:
            await self._run(lambda ref=d.reference: ref.delete())
        return len(docs)

    # ── Media cache ───────────────────────────────────────────────────────────

    async def get_cache_entry(self, track_key: str) -> Optional[CacheEntry]:
        doc = await self._run(lambda: self._cache_ref(track_key).get())
        if doc.exists:
            return CacheEntry(**doc.to_dict())
        return None

    async def put_cache_variant(
        self,
        track_key: str,
        artist: str,
        track: str,
        preference: Preference,
        record: VariantRecord,
        now: datetime,
    ) -> None:
        """Create the entry if absent, otherwise replace only the given variant."""
        ref = self._cache_ref(track_key)
        firestore = self._firestore
        record_data = record.model_dump(mode="json")

        def _put():
            transaction = self.db.transaction()

            @firestore.transactional
            def _txn(txn):
                snap = ref.get(transaction=txn)
                if snap.exists:
                    txn.update(ref, {
                        preference.value: record_data,
                        "last_accessed_at": now.isoformat(),
                    })
                else:
                    entry = CacheEntry(
                        track_key=track_key,
                        artist=artist,
                        track=track,
                        first_resolved_at=now,
                        last_accessed_at=now,
                    )
                    data = entry.model_dump(mode="json")
                    data[preference.value] = record_data
                    txn.set(ref, data)

            _txn(transaction)

        await self._run(_put)

    async def record_cache_access(
        self, track_key: str, preference: Preference, now: datetime
    ) -> None:
        stamp = now.isoformat()
        await self._run(lambda: self._cache_ref(track_key).update({
            "access_count": self._firestore.Increment(1),
            "last_accessed_at": stamp,
            f"{preference.value}.last_accessed_at": stamp,
        }))

    async def list_cache_entries(self) -> List[CacheEntry]:
        docs = await self._run(lambda: list(self.db.collection("media_cache").stream()))
        return [CacheEntry(**d.to_dict()) for d in docs]

    async def delete_cache_entries(self, track_keys: Iterable[str]) -> int:
        keys = list(track_keys)
        if not keys:
            return 0

        def _delete():
            # Firestore batches cap at 500 writes
            for start in range(0, len(keys), 500):
                batch = self.db.batch()
                for key in keys[start:start + 500]:
                    batch.delete(self._cache_ref(key))
                batch.commit()

        await self._run(_delete)
        return len(keys)

    async def count_cache_entries(self) -> int:
        result = await self._run(
            lambda: self.db.collection("media_cache").count().get()
        )
        return int(result[0][0].value)
