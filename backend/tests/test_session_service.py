"""
Tests for the session service: serialized mutations, optimistic retries,
countdown reconciliation (timer, lazy read, sweep) and retention.
"""
import asyncio
import gc
from datetime import timedelta

import pytest

from conftest import T0
from engine.errors import InvalidPhase, NotFound, PermissionDenied, VersionConflict
from engine.game_master import GameMaster
from engine.session_service import SessionService
from models.game import CountdownKind, Phase, SubmitRequest
from services.memory_store import MemoryStore


def song(player_id: str, name: str = "Song") -> SubmitRequest:
    return SubmitRequest(player_id=player_id, song_id=f"{name}-id", song_name=name, artist="Artist")


async def lobby(service: SessionService, n_players: int = 3):
    """Created session with host + (n_players - 1) joined players. Returns (session_id, ids)."""
    session = await service.create_session("Host")
    ids = [session.host_id]
    for i in range(2, n_players + 1):
        _, pid = await service.join_session(session.code, f"Player {i}")
        ids.append(pid)
    return session.id, ids


async def started(service: SessionService, n_players: int = 3):
    session_id, ids = await lobby(service, n_players)
    for pid in ids[1:]:
        await service.toggle_ready(session_id, pid)
    return session_id, ids


class TestLobby:

    def test_create_and_join_by_code(self, service):
        async def scenario():
            session = await service.create_session("Host")
            joined, player_id = await service.join_session(session.code.lower(), "Bob")
            return session, joined, player_id

        session, joined, player_id = asyncio.run(scenario())
        assert len(session.code) == 6
        assert session.code.isupper() or session.code.isdigit()
        assert joined.id == session.id
        assert joined.get_player(player_id).name == "Bob"
        assert joined.expires_at == T0 + timedelta(days=7)

    def test_join_unknown_code(self, service):
        with pytest.raises(NotFound):
            asyncio.run(service.join_session("ZZZZZZ", "Bob"))

    def test_get_unknown_session(self, service):
        with pytest.raises(NotFound):
            asyncio.run(service.get_session("missing"))

    def test_every_commit_bumps_version(self, service):
        async def scenario():
            session_id, ids = await lobby(service, 2)
            before = (await service.get_session(session_id)).version
            await service.toggle_ready(session_id, ids[1])
            return before, (await service.get_session(session_id)).version

        before, after = asyncio.run(scenario())
        assert after == before + 1

    def test_rejected_action_leaves_store_untouched(self, service, store):
        async def scenario():
            session_id, ids = await lobby(service, 3)
            before = await store.get_session(session_id)
            with pytest.raises(PermissionDenied):
                await service.force_start(session_id, ids[1])
            return before, await store.get_session(session_id)

        before, after = asyncio.run(scenario())
        assert after.model_dump() == before.model_dump()

    def test_preview_prompt_host_only(self, service):
        async def scenario():
            session_id, ids = await lobby(service, 2)
            prompt = await service.preview_prompt(session_id, ids[0])
            with pytest.raises(PermissionDenied):
                await service.preview_prompt(session_id, ids[1])
            return prompt, await service.get_session(session_id)

        prompt, session = asyncio.run(scenario())
        assert prompt.text
        assert session.used_prompt_ids == []


class TestRounds:

    def test_full_round(self, service):
        async def scenario():
            session_id, ids = await started(service, 3)
            for pid in ids:
                await service.submit(session_id, pid, song(pid, pid))
            session = await service.get_session(session_id)
            subs = {s.player_id: s.id for s in session.submissions}
            await service.cast_vote(session_id, ids[0], subs[ids[1]])
            await service.cast_vote(session_id, ids[1], subs[ids[2]])
            _, result = await service.cast_vote(session_id, ids[2], subs[ids[1]])
            return result, await service.get_session(session_id)

        result, session = asyncio.run(scenario())
        assert session.phase == Phase.RESULTS
        assert result["transitioned"] is True
        assert sum(p.score for p in session.players) == 3 + 1  # votes + one speed bonus

    def test_next_round_repopulates_active_set(self, service):
        async def scenario():
            session_id, ids = await started(service, 3)
            await service.force_end_selecting(session_id, ids[0])
            await service.force_end_voting(session_id, ids[0])
            _, result = await service.next_round(session_id, ids[0])
            return ids, result, await service.get_session(session_id)

        ids, result, session = asyncio.run(scenario())
        assert session.phase == Phase.SELECTING
        assert sorted(result["active_participants"]) == sorted(ids)
        assert session.active_participants == result["active_participants"]
        assert len(session.previous_rounds) == 1

    def test_concurrent_submissions_single_speed_bonus(self, service):
        async def scenario():
            session_id, ids = await started(service, 4)
            await asyncio.gather(*(service.submit(session_id, pid, song(pid, pid)) for pid in ids[1:]))
            return await service.get_session(session_id)

        session = asyncio.run(scenario())
        bonuses = [s for s in session.submissions if getattr(s, "got_speed_bonus", False)]
        assert len(bonuses) == 1
        assert len(session.submissions) <= len(session.active_participants)

    def test_concurrent_close_scores_once(self, service, clock):
        """Host force-end racing an expired voting countdown: one wins, scoring once."""
        async def scenario():
            session_id, ids = await started(service, 3)
            for pid in ids:
                await service.submit(session_id, pid, song(pid, pid))
            session = await service.get_session(session_id)
            await service.cast_vote(session_id, ids[0], session.submission_for(ids[1]).id)
            await service.start_countdown(session_id, ids[0], CountdownKind.VOTING)
            clock.advance(10)
            outcomes = await asyncio.gather(
                service.force_end_voting(session_id, ids[0]),
                service.fire_countdown(session_id),
                return_exceptions=True,
            )
            return outcomes, await service.get_session(session_id)

        outcomes, session = asyncio.run(scenario())
        assert session.phase == Phase.RESULTS
        # one vote + one speed bonus
        assert sum(p.score for p in session.players) == 2
        assert any(isinstance(o, InvalidPhase) or o is None for o in outcomes)

    def test_end_game_returns_final_round(self, service):
        async def scenario():
            session_id, ids = await started(service, 2)
            await service.submit(session_id, ids[0], song(ids[0]))
            _, summary = await service.end_game(session_id, ids[0])
            return summary, await service.get_session(session_id)

        summary, session = asyncio.run(scenario())
        assert session.phase == Phase.ENDED
        assert len(summary["final_round"]["submissions"]) == 1


class ConflictingStore(MemoryStore):
    """Simulates another instance committing between our load and save."""

    def __init__(self, conflicts: int = 1):
        super().__init__()
        self.conflicts = conflicts
        self.saves = 0

    async def save_session(self, session, expected_version):
        self.saves += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            stored = self._sessions[session.id]
            stored.version += 1
        await super().save_session(session, expected_version)


class TestOptimisticConcurrency:

    def test_conflict_is_retried(self, master, clock):
        store = ConflictingStore(conflicts=1)
        service = SessionService(store=store, master=master, clock=clock, schedule_timers=False)

        async def scenario():
            session_id, ids = await lobby(service, 2)
            store.saves = 0
            store.conflicts = 1
            await service.toggle_ready(session_id, ids[1])
            return await service.get_session(session_id)

        session = asyncio.run(scenario())
        assert store.saves == 2
        assert session.phase == Phase.SELECTING

    def test_persistent_conflict_surfaces(self, master, clock):
        store = ConflictingStore(conflicts=0)
        service = SessionService(store=store, master=master, clock=clock, schedule_timers=False)

        async def scenario():
            session_id, ids = await lobby(service, 2)
            store.conflicts = 10
            await service.toggle_ready(session_id, ids[1])

        with pytest.raises(VersionConflict):
            asyncio.run(scenario())


class TestCountdown:

    def test_cancelled_countdown_does_not_fire(self, service, clock):
        """10 s countdown cancelled at 3 s: at 11 s nothing was forced."""
        async def scenario():
            session_id, ids = await started(service, 3)
            await service.start_countdown(session_id, ids[0], CountdownKind.SELECTION)
            clock.advance(3)
            await service.cancel_countdown(session_id, ids[0])
            clock.advance(8)
            await service.sweep_countdowns()
            return await service.get_session(session_id)

        session = asyncio.run(scenario())
        assert session.phase == Phase.SELECTING
        assert session.submissions == []
        assert session.countdown is None

    def test_expired_countdown_applied_on_read(self, service, clock):
        async def scenario():
            session_id, ids = await started(service, 3)
            await service.submit(session_id, ids[1], song(ids[1]))
            await service.start_countdown(session_id, ids[0], CountdownKind.SELECTION)
            clock.advance(10)
            return await service.get_session(session_id)

        session = asyncio.run(scenario())
        assert session.phase == Phase.VOTING
        assert len(session.current_round.forced_pass_player_ids) == 2

    def test_expired_countdown_applied_before_stale_action(self, service, clock, store):
        """A submit arriving after the deadline is rejected, but the advance still lands."""
        async def scenario():
            session_id, ids = await started(service, 3)
            await service.start_countdown(session_id, ids[0], CountdownKind.SELECTION)
            clock.advance(12)
            with pytest.raises(InvalidPhase):
                await service.submit(session_id, ids[2], song(ids[2]))
            return await store.get_session(session_id)

        session = asyncio.run(scenario())
        assert session.phase == Phase.VOTING
        assert session.countdown is None

    def test_sweep_advances_due_sessions(self, service, clock):
        async def scenario():
            session_id, ids = await started(service, 2)
            await service.start_countdown(session_id, ids[0], CountdownKind.SELECTION)
            clock.advance(5)
            early = await service.sweep_countdowns()
            clock.advance(5)
            due = await service.sweep_countdowns()
            again = await service.sweep_countdowns()
            return early, due, again

        assert asyncio.run(scenario()) == (0, 1, 0)

    def test_timer_task_fires_forced_advance(self, prompts):
        master = GameMaster(prompts=prompts, countdown_seconds=0.05, retention_days=7)
        service = SessionService(store=MemoryStore(), master=master)

        async def scenario():
            session_id, ids = await started(service, 3)
            await service.start_countdown(session_id, ids[0], CountdownKind.SELECTION)
            await asyncio.sleep(0.3)
            session = await service.store.get_session(session_id)
            await service.shutdown()
            return session

        session = asyncio.run(scenario())
        assert session.phase == Phase.VOTING
        assert len(session.current_round.forced_pass_player_ids) == 3

    def test_timer_task_cancelled_with_countdown(self, prompts):
        master = GameMaster(prompts=prompts, countdown_seconds=0.05, retention_days=7)
        service = SessionService(store=MemoryStore(), master=master)

        async def scenario():
            session_id, ids = await started(service, 3)
            await service.start_countdown(session_id, ids[0], CountdownKind.SELECTION)
            await service.cancel_countdown(session_id, ids[0])
            pending = dict(service._timers)
            await asyncio.sleep(0.3)
            session = await service.store.get_session(session_id)
            await service.shutdown()
            return pending, session

        pending, session = asyncio.run(scenario())
        assert pending == {}
        assert session.phase == Phase.SELECTING
        assert session.submissions == []


class TestRetention:

    def test_purge_expired_sessions(self, service, clock):
        async def scenario():
            ended_id, ids = await started(service, 2)
            await service.end_game(ended_id, ids[0])
            clock.advance(timedelta(days=2).total_seconds())
            fresh = await service.create_session("Other host")
            clock.advance(timedelta(days=5).total_seconds() + 1)
            deleted = await service.purge_expired_sessions()
            return deleted, ended_id, fresh.id

        deleted, ended_id, fresh_id = asyncio.run(scenario())
        assert deleted == 1
        with pytest.raises(NotFound):
            asyncio.run(service.get_session(ended_id))
        assert asyncio.run(service.get_session(fresh_id)).id == fresh_id

    def test_session_locks_do_not_accumulate(self, service, clock):
        async def scenario():
            ended_id, ids = await started(service, 2)
            await service.end_game(ended_id, ids[0])
            clock.advance(timedelta(days=8).total_seconds())
            await service.purge_expired_sessions()
            return ended_id

        ended_id = asyncio.run(scenario())
        gc.collect()
        assert ended_id not in service._locks
        assert len(service._locks) == 0
