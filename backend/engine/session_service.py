"""
Session Service — serialized read-modify-write around the Game Master.

Every mutation of a session runs as:
  1. acquire the per-session asyncio.Lock (one writer per session per process)
  2. load the session and remember its version
  3. reconcile an expired countdown (lazy check-on-read)
  4. apply the Game Master operation to a deep copy
  5. save with a version check; on VersionConflict (another process won) reload
     and re-apply, up to MAX_ATTEMPTS

Countdowns are persisted as a deadline on the session. Three things can fire
the forced advance, all idempotent through GameMaster.expire_countdown:
  - the in-process timer task scheduled when the countdown starts
  - any read or mutation that finds the deadline has passed
  - the periodic sweep started from main.py (covers restarts / other instances)
"""
import asyncio
import logging
import secrets
import string
import uuid
import weakref
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Any, Tuple, TypeVar

from models.game import GameSession, PlayerState, Prompt, SubmitRequest, CountdownKind
from engine.errors import GameError, NotFound, PermissionDenied, VersionConflict
from engine.game_master import GameMaster, game_master
from services.store import get_store

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3
CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


class SessionService:

    def __init__(
        self,
        store=None,
        master: Optional[GameMaster] = None,
        clock: Optional[Callable[[], datetime]] = None,
        schedule_timers: bool = True,
    ):
        self._store = store
        self.master = master if master is not None else game_master
        self.clock = clock if clock is not None else _utcnow
        self.schedule_timers = schedule_timers
        # Entries vanish once no coroutine holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        # {session_id: (countdown_id, task)}
        self._timers: Dict[str, Tuple[str, asyncio.Task]] = {}

    @property
    def store(self):
        return self._store if self._store is not None else get_store()

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def _load(self, session_id: str) -> GameSession:
        session = await self.store.get_session(session_id)
        if session is None:
            raise NotFound(f"Game {session_id} not found", session_id=session_id)
        return session

    async def _commit(self, session: GameSession, expected_version: int) -> None:
        session.version = expected_version + 1
        await self.store.save_session(session, expected_version)
        self._sync_timer(session)

    def _reconcile(self, session: GameSession, now: datetime) -> bool:
        """Apply an overdue countdown in place. Returns True if the session changed."""
        return self.master.expire_countdown(session, now=now) is not None

    # ── Serialized mutation ───────────────────────────────────────────────────

    async def _mutate(
        self, session_id: str, operation: Callable[[GameSession, datetime], T]
    ) -> Tuple[GameSession, T]:
        lock = self._lock_for(session_id)
        async with lock:
            for attempt in range(1, MAX_ATTEMPTS + 1):
                session = await self._load(session_id)
                expected = session.version
                now = self.clock()
                reconciled = self._reconcile(session, now)

                working = session.model_copy(deep=True)
                try:
                    result = operation(working, now)
                except GameError:
                    # The action is rejected but an overdue countdown still lands
                    if reconciled:
                        try:
                            await self._commit(session, expected)
                        except VersionConflict:
                            logger.info(f"[{session_id}] Reconciliation lost a version race")
                    raise

                try:
                    await self._commit(working, expected)
                except VersionConflict:
                    logger.warning(
                        f"[{session_id}] Version conflict (attempt {attempt}/{MAX_ATTEMPTS}) — retrying"
                    )
                    continue
                return working, result

        raise VersionConflict(
            f"Game {session_id} is busy, please retry", session_id=session_id
        )

    # ── Creation / lobby ──────────────────────────────────────────────────────

    async def create_session(self, host_name: str) -> GameSession:
        code = generate_code()
        while await self.store.code_exists(code):
            code = generate_code()

        now = self.clock()
        host_id = str(uuid.uuid4())
        session = GameSession(
            code=code,
            host_id=host_id,
            players=[PlayerState(id=host_id, name=host_name, joined_at=now)],
            created_at=now,
            expires_at=now + timedelta(days=self.master.retention_days),
        )
        await self.store.create_session(session)
        logger.info(f"[{session.id}] Game {code} created by host {host_id} ({host_name})")
        return session

    async def join_session(self, code: str, player_name: str) -> Tuple[GameSession, str]:
        found = await self.store.get_session_by_code(code.strip().upper())
        if found is None:
            raise NotFound(f"No game with code {code}")
        player_id = str(uuid.uuid4())
        session, _ = await self._mutate(
            found.id,
            lambda s, now: self.master.add_player(s, player_id, player_name, now),
        )
        return session, player_id

    async def get_session(self, session_id: str) -> GameSession:
        """Polling read. An overdue countdown is applied before returning."""
        session = await self._load(session_id)
        countdown = session.countdown
        if countdown and self.clock() >= countdown.deadline:
            await self.fire_countdown(session_id, countdown.id)
            session = await self._load(session_id)
        return session

    async def preview_prompt(self, session_id: str, actor_id: str) -> Prompt:
        """Host-only peek at a fresh prompt; nothing is recorded as used."""
        session = await self._load(session_id)
        if not session.is_host(actor_id):
            raise PermissionDenied("Only the host can preview prompts", session_id=session_id)
        return self.master.draw_prompt(session)

    # ── Game actions ──────────────────────────────────────────────────────────

    async def toggle_ready(self, session_id: str, player_id: str):
        return await self._mutate(
            session_id, lambda s, now: self.master.toggle_ready(s, player_id, now)
        )

    async def force_start(self, session_id: str, actor_id: str, prompt: Optional[Prompt] = None):
        return await self._mutate(
            session_id, lambda s, now: self.master.force_start(s, actor_id, prompt, now)
        )

    async def submit(self, session_id: str, player_id: str, payload: SubmitRequest):
        return await self._mutate(
            session_id, lambda s, now: self.master.submit(s, player_id, payload, now)
        )

    async def force_end_selecting(self, session_id: str, actor_id: str):
        return await self._mutate(
            session_id, lambda s, now: self.master.force_end_selecting(s, actor_id, now)
        )

    async def cast_vote(self, session_id: str, player_id: str, submission_id: str):
        return await self._mutate(
            session_id,
            lambda s, now: self.master.cast_vote(s, player_id, submission_id, now),
        )

    async def force_end_voting(self, session_id: str, actor_id: str):
        return await self._mutate(
            session_id, lambda s, now: self.master.force_end_voting(s, actor_id, now)
        )

    async def next_round(self, session_id: str, actor_id: str, prompt: Optional[Prompt] = None):
        def _operation(s: GameSession, now: datetime) -> Dict[str, Any]:
            result = self.master.next_round(s, actor_id, prompt, now)
            result["active_participants"] = self.master.lock_in_participants(s)
            return result

        return await self._mutate(session_id, _operation)

    async def end_game(self, session_id: str, actor_id: str):
        session, result = await self._mutate(
            session_id, lambda s, now: self.master.end_game(s, actor_id, now)
        )
        return session, result

    async def start_countdown(
        self,
        session_id: str,
        actor_id: str,
        kind: CountdownKind,
        message: Optional[str] = None,
    ):
        return await self._mutate(
            session_id,
            lambda s, now: self.master.start_countdown(s, actor_id, kind, message, now),
        )

    async def cancel_countdown(self, session_id: str, actor_id: str):
        return await self._mutate(
            session_id, lambda s, now: self.master.cancel_countdown(s, actor_id)
        )

    # ── Countdown firing ──────────────────────────────────────────────────────

    async def fire_countdown(
        self, session_id: str, countdown_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Forced advance for an expired countdown. A no-op when the countdown was
        cancelled or replaced, or the phase already completed naturally.
        """
        async with self._lock_for(session_id):
            session = await self.store.get_session(session_id)
            if session is None:
                return None
            expected = session.version
            result = self.master.expire_countdown(
                session, now=self.clock(), countdown_id=countdown_id
            )
            if result is None:
                return None
            try:
                await self._commit(session, expected)
            except VersionConflict:
                # Another instance committed first; it either advanced or cancelled
                logger.info(f"[{session_id}] Countdown fire lost a version race — skipped")
                return None
            return result

    def _sync_timer(self, session: GameSession) -> None:
        """Keep at most one timer task per session, matching the stored countdown."""
        current = self._timers.get(session.id)
        wanted = session.countdown.id if session.countdown else None
        if current and current[0] != wanted:
            self._timers.pop(session.id, None)
            if not current[1].done():
                current[1].cancel()
            current = None
        if wanted and current is None and self.schedule_timers:
            delay = session.countdown.seconds_remaining(self.clock())
            task = asyncio.get_running_loop().create_task(
                self._countdown_timer(session.id, wanted, delay)
            )
            self._timers[session.id] = (wanted, task)

    async def _countdown_timer(self, session_id: str, countdown_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        entry = self._timers.get(session_id)
        if entry and entry[0] == countdown_id:
            self._timers.pop(session_id, None)
        try:
            result = await self.fire_countdown(session_id, countdown_id)
            if result is None:
                logger.debug(f"[{session_id}] Countdown {countdown_id} fired with nothing to do")
        except Exception:
            logger.error(f"[{session_id}] Countdown timer failed", exc_info=True)

    async def sweep_countdowns(self) -> int:
        """Fire every overdue countdown in the store. Returns how many advanced."""
        due = await self.store.list_sessions_with_countdown(self.clock())
        advanced = 0
        for session in due:
            try:
                if await self.fire_countdown(session.id, session.countdown.id) is not None:
                    advanced += 1
            except Exception:
                logger.error(f"[{session.id}] Countdown sweep failed", exc_info=True)
        return advanced

    async def run_countdown_sweep(self, interval: float) -> None:
        logger.info(f"Countdown sweep running every {interval}s")
        while True:
            await asyncio.sleep(interval)
            try:
                advanced = await self.sweep_countdowns()
                if advanced:
                    logger.info(f"Countdown sweep advanced {advanced} game(s)")
            except Exception:
                logger.error("Countdown sweep iteration failed", exc_info=True)

    async def shutdown(self) -> None:
        for _, task in list(self._timers.values()):
            task.cancel()
        self._timers.clear()

    # ── Retention ─────────────────────────────────────────────────────────────

    async def purge_expired_sessions(self) -> int:
        deleted = await self.store.delete_expired_sessions(self.clock())
        if deleted:
            logger.info(f"Purged {deleted} expired game(s)")
        return deleted


_session_service: Optional[SessionService] = None


def get_session_service() -> SessionService:
    """Lazy singleton; use as a FastAPI dependency: Depends(get_session_service)."""
    global _session_service
    if _session_service is None:
        _session_service = SessionService()
    return _session_service
