"""
Game Master — Pure deterministic Python, no I/O.

Responsibilities:
- Phase transitions (waiting → selecting → voting → results → selecting | ended)
- Ready toggling and auto-start, host force-start
- Submission / pass acceptance, speed bonus claim
- Vote acceptance (one vote per player, small-group self-vote exception)
- Forced advance (host or countdown) with pass synthesis
- Scoring, applied exactly once at voting → results

Every operation validates phase, role and membership before touching the
session, so a rejected action leaves the aggregate exactly as it was.
Persistence and serialization live in engine/session_service.py.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List

from models.game import (
    GameSession, PlayerState, Prompt, Phase, Countdown, CountdownKind,
    COUNTDOWN_PHASE, RealSubmission, PassSubmission, RoundLedger, RoundSnapshot,
    SubmitRequest,
)
from engine.errors import (
    NotFound, PermissionDenied, InvalidPhase, NotAParticipant,
    InsufficientPlayers, InvalidVote, InvalidSubmission, SessionFull,
)
from engine.prompts import PromptBank, prompt_bank
from config import settings

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Below this many active participants a player may vote for their own song
SELF_VOTE_THRESHOLD = 3


class GameMaster:
    """
    Deterministic game logic engine.
    All methods mutate the GameSession passed in; callers own loading and saving.
    """

    def __init__(
        self,
        prompts: Optional[PromptBank] = None,
        countdown_seconds: Optional[float] = None,
        retention_days: Optional[int] = None,
        min_players: Optional[int] = None,
        max_players: Optional[int] = None,
    ):
        self.prompts = prompts if prompts is not None else prompt_bank
        self.countdown_seconds = (
            countdown_seconds if countdown_seconds is not None else settings.countdown_seconds
        )
        self.retention_days = (
            retention_days if retention_days is not None else settings.session_retention_days
        )
        self.min_players = min_players if min_players is not None else settings.min_players
        self.max_players = max_players if max_players is not None else settings.max_players

    # ── Guards ────────────────────────────────────────────────────────────────

    @staticmethod
    def _require_phase(session: GameSession, action: str, *phases: Phase) -> None:
        if session.phase not in phases:
            allowed = ", ".join(p.value for p in phases)
            raise InvalidPhase(
                f"Cannot {action} during {session.phase.value} (allowed: {allowed})",
                session_id=session.id,
            )

    @staticmethod
    def _require_member(session: GameSession, player_id: str) -> PlayerState:
        player = session.get_player(player_id)
        if player is None:
            raise NotFound(f"Player {player_id} is not in this game", session_id=session.id)
        return player

    @staticmethod
    def _require_host(session: GameSession, player_id: str, action: str) -> None:
        if not session.is_host(player_id):
            raise PermissionDenied(f"Only the host can {action}", session_id=session.id)

    @staticmethod
    def _require_active(session: GameSession, player_id: str, action: str) -> None:
        if not session.is_active(player_id):
            raise NotAParticipant(
                f"Player {player_id} is not taking part in this round and cannot {action}",
                session_id=session.id,
            )

    # ── Roster ────────────────────────────────────────────────────────────────

    def add_player(
        self, session: GameSession, player_id: str, name: str, now: Optional[datetime] = None
    ) -> PlayerState:
        """Join the lobby. Re-joining with a known id is a no-op."""
        existing = session.get_player(player_id)
        if existing:
            return existing
        self._require_phase(session, "join", Phase.WAITING)
        if len(session.players) >= self.max_players:
            raise SessionFull(
                f"Game is full (maximum {self.max_players} players)", session_id=session.id
            )
        player = PlayerState(id=player_id, name=name, joined_at=now or _utcnow())
        session.players.append(player)
        logger.info(f"[{session.id}] {name} joined ({len(session.players)} players)")
        return player

    # ── Round start ───────────────────────────────────────────────────────────

    def draw_prompt(self, session: GameSession) -> Prompt:
        return self.prompts.draw_unused(session.used_prompt_ids)

    def _start_round(
        self,
        session: GameSession,
        prompt: Optional[Prompt],
        active: List[str],
    ) -> None:
        prompt = prompt or self.draw_prompt(session)
        if prompt.id and prompt.id not in session.used_prompt_ids:
            session.used_prompt_ids.append(prompt.id)
        session.current_prompt = prompt
        session.active_participants = list(active)
        session.submissions = []
        session.current_round = RoundLedger(number=session.current_round.number + 1)
        session.countdown = None
        previous = session.phase
        session.phase = Phase.SELECTING
        logger.info(
            f"[{session.id}] Phase: {previous.value} → selecting "
            f"(round {session.current_round.number}, {len(active)} active, "
            f"prompt={prompt.text!r})"
        )

    def toggle_ready(
        self, session: GameSession, player_id: str, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Flip a player's ready flag in the lobby.
        Auto-starts the first round when every non-host player is ready and
        the roster has at least min_players.
        """
        self._require_phase(session, "change ready status", Phase.WAITING)
        player = self._require_member(session, player_id)

        player.ready = not player.ready
        non_host = [p for p in session.players if p.id != session.host_id]
        started = (
            len(session.players) >= self.min_players
            and all(p.ready for p in non_host)
        )
        if started:
            self._start_round(session, None, [p.id for p in session.players])

        return {"phase": session.phase, "ready": player.ready, "started": started}

    def force_start(
        self,
        session: GameSession,
        actor_id: str,
        prompt: Optional[Prompt] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Host starts the game without waiting for everyone.
        Only players who are ready (plus the host) take part in this round.
        """
        self._require_phase(session, "start the game", Phase.WAITING)
        self._require_host(session, actor_id, "start the game")
        if len(session.players) < self.min_players:
            raise InsufficientPlayers(
                f"Need at least {self.min_players} players to start "
                f"(have {len(session.players)})",
                session_id=session.id,
            )

        host = self._require_member(session, actor_id)
        host.ready = True
        active = [p.id for p in session.players if p.ready]
        excluded = [p.id for p in session.players if not p.ready]
        self._start_round(session, prompt, active)
        if excluded:
            logger.info(f"[{session.id}] Force start excluded unready players: {excluded}")
        return {"phase": session.phase, "active_participants": active, "excluded": excluded}

    def lock_in_participants(self, session: GameSession) -> List[str]:
        """
        Populate the active set for a round opened by next_round, which leaves
        it empty. Everyone on the roster at this moment takes part.
        """
        self._require_phase(session, "lock in participants", Phase.SELECTING)
        if not session.active_participants:
            session.active_participants = [p.id for p in session.players]
        return list(session.active_participants)

    # ── Selection ─────────────────────────────────────────────────────────────

    def submit(
        self,
        session: GameSession,
        player_id: str,
        payload: SubmitRequest,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Upsert a song (or a pass) for this round.

        The speed bonus goes to the first real submission accepted this round.
        The claim is recorded on the round ledger, so it survives re-submission
        by the same player and is never handed to anyone else.
        """
        now = now or _utcnow()
        self._require_phase(session, "submit a song", Phase.SELECTING)
        self._require_active(session, player_id, "submit a song")
        if not payload.has_passed and not (
            payload.song_id and payload.song_name and payload.artist
        ):
            raise InvalidSubmission(
                "A song submission needs song_id, song_name and artist",
                session_id=session.id,
            )

        existing = session.submission_for(player_id)
        submission_id = existing.id if existing else None
        ledger = session.current_round

        if payload.has_passed:
            submission = PassSubmission(player_id=player_id, submitted_at=now)
            if ledger.speed_bonus_player_id == player_id:
                ledger.speed_bonus_forfeited = True
        else:
            claim = ledger.speed_bonus_player_id
            got_bonus = not ledger.speed_bonus_forfeited and (claim is None or claim == player_id)
            submission = RealSubmission(
                player_id=player_id,
                song_id=payload.song_id,
                song_name=payload.song_name,
                artist=payload.artist,
                album_cover=payload.album_cover or "",
                submitted_at=now,
                got_speed_bonus=got_bonus,
            )
            if claim is None:
                ledger.speed_bonus_player_id = player_id
        if submission_id:
            submission.id = submission_id

        if existing:
            index = next(i for i, s in enumerate(session.submissions) if s.id == existing.id)
            session.submissions[index] = submission
        else:
            session.submissions.append(submission)

        transitioned = False
        if len(session.submissions) >= len(session.active_participants):
            self._open_voting(session, closed_by="submissions")
            transitioned = True

        return {
            "phase": session.phase,
            "submission_id": submission.id,
            "has_passed": submission.is_pass,
            "got_speed_bonus": getattr(submission, "got_speed_bonus", False),
            "replaced": existing is not None,
            "submission_count": len(session.submissions),
            "transitioned": transitioned,
        }

    def _open_voting(self, session: GameSession, closed_by: str) -> None:
        session.current_round.selection_closed_by = closed_by
        session.countdown = None
        session.phase = Phase.VOTING
        votable = len(session.real_submissions())
        logger.info(
            f"[{session.id}] Phase: selecting → voting "
            f"({votable} votable, closed by {closed_by})"
        )

    def _close_selecting(
        self, session: GameSession, closed_by: str, now: datetime
    ) -> Dict[str, Any]:
        missing = [
            pid for pid in session.active_participants
            if session.submission_for(pid) is None
        ]
        for pid in missing:
            session.submissions.append(
                PassSubmission(player_id=pid, submitted_at=now, forced=True)
            )
        session.current_round.forced_pass_player_ids = missing
        if missing:
            logger.info(f"[{session.id}] Forced passes for {missing}")
        self._open_voting(session, closed_by=closed_by)
        return {"phase": session.phase, "forced_passes": missing}

    def force_end_selecting(
        self, session: GameSession, actor_id: str, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        self._require_phase(session, "end song selection", Phase.SELECTING)
        self._require_host(session, actor_id, "end song selection")
        return self._close_selecting(session, closed_by="host", now=now or _utcnow())

    # ── Voting ────────────────────────────────────────────────────────────────

    def cast_vote(
        self,
        session: GameSession,
        player_id: str,
        submission_id: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Record a vote. A player holds at most one vote: voting again moves it.
        Self-votes are only allowed when fewer than SELF_VOTE_THRESHOLD players
        are active this round.
        """
        self._require_phase(session, "vote", Phase.VOTING)
        self._require_active(session, player_id, "vote")
        target = session.get_submission(submission_id)
        if target is None:
            raise NotFound(f"Submission {submission_id} not found", session_id=session.id)
        if target.is_pass:
            raise InvalidVote("Cannot vote for a pass", session_id=session.id)
        if (
            target.player_id == player_id
            and len(session.active_participants) >= SELF_VOTE_THRESHOLD
        ):
            raise InvalidVote("Cannot vote for your own submission", session_id=session.id)

        previous = session.voted_for(player_id)
        for s in session.real_submissions():
            if player_id in s.votes:
                s.votes.remove(player_id)
        target.votes.append(player_id)

        transitioned = False
        result: Dict[str, Any] = {}
        if session.total_votes() >= len(session.active_participants):
            result = self.close_voting(session, closed_by="votes", now=now)
            transitioned = True

        return {
            "phase": session.phase,
            "submission_id": target.id,
            "previous_submission_id": previous,
            "replaced": previous is not None,
            "total_votes": session.total_votes(),
            "transitioned": transitioned,
            **result,
        }

    def close_voting(
        self, session: GameSession, closed_by: str, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Apply round scoring and move to results.
        Guarded by the phase itself: a second call finds RESULTS and is rejected,
        so points can never be added twice.
        """
        self._require_phase(session, "close voting", Phase.VOTING)

        ledger = session.current_round
        non_voters = [
            pid for pid in session.active_participants if session.voted_for(pid) is None
        ]
        round_points: Dict[str, int] = {}
        for s in session.real_submissions():
            points = s.round_points()
            round_points[s.player_id] = points
            player = session.get_player(s.player_id)
            if player is not None:
                player.score += points
            else:
                logger.warning(
                    f"[{session.id}] Submission {s.id} belongs to unknown player "
                    f"{s.player_id} — points not applied"
                )

        ranking = self.rank_submissions(session)
        ledger.non_voter_ids = non_voters
        ledger.round_points = round_points
        ledger.winner_submission_ids = ranking["winners"]
        ledger.is_tie = ranking["is_tie"]
        ledger.voting_closed_by = closed_by
        session.countdown = None
        session.phase = Phase.RESULTS

        if non_voters:
            logger.info(f"[{session.id}] Players who did not vote: {non_voters}")
        logger.info(
            f"[{session.id}] Phase: voting → results (closed by {closed_by}, "
            f"points={round_points}, winners={ranking['winners']})"
        )
        return {
            "round_points": round_points,
            "non_voters": non_voters,
            "winners": ranking["winners"],
            "is_tie": ranking["is_tie"],
        }

    def force_end_voting(
        self, session: GameSession, actor_id: str, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        self._require_phase(session, "end voting", Phase.VOTING)
        self._require_host(session, actor_id, "end voting")
        result = self.close_voting(session, closed_by="host", now=now)
        return {"phase": session.phase, **result}

    @staticmethod
    def rank_submissions(session: GameSession) -> Dict[str, Any]:
        """
        Real submissions ordered by vote count, descending. Ties keep submission
        order and are reported as ties; no secondary tie-break.
        """
        real = session.real_submissions()
        ordered = sorted(real, key=lambda s: len(s.votes), reverse=True)
        top = len(ordered[0].votes) if ordered else 0
        winners = [s.id for s in ordered if len(s.votes) == top] if top > 0 else []
        return {
            "ranking": [{"submission_id": s.id, "votes": len(s.votes)} for s in ordered],
            "winners": winners,
            "is_tie": len(winners) > 1,
        }

    # ── Between rounds ────────────────────────────────────────────────────────

    def next_round(
        self,
        session: GameSession,
        actor_id: str,
        prompt: Optional[Prompt] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Archive the finished round and open the next one.
        Active participants are left empty here; see lock_in_participants.
        """
        now = now or _utcnow()
        self._require_phase(session, "start the next round", Phase.RESULTS)
        self._require_host(session, actor_id, "start the next round")

        ledger = session.current_round
        session.previous_rounds.append(RoundSnapshot(
            number=ledger.number,
            prompt=session.current_prompt,
            submissions=list(session.submissions),
            forced_pass_player_ids=ledger.forced_pass_player_ids,
            non_voter_ids=ledger.non_voter_ids,
            round_points=ledger.round_points,
            winner_submission_ids=ledger.winner_submission_ids,
            is_tie=ledger.is_tie,
            archived_at=now,
        ))
        for p in session.players:
            p.ready = False
        self._start_round(session, prompt, [])
        return {"phase": session.phase, "round": session.current_round.number}

    def end_game(
        self, session: GameSession, actor_id: str, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Finish the game. The final round's submissions stay on the session so a
        client polling just after the transition still sees them.
        """
        now = now or _utcnow()
        self._require_host(session, actor_id, "end the game")
        if session.phase == Phase.ENDED:
            raise InvalidPhase("The game has already ended", session_id=session.id)

        previous = session.phase
        session.phase = Phase.ENDED
        session.countdown = None
        session.ended_at = now
        session.expires_at = now + timedelta(days=self.retention_days)
        logger.info(f"[{session.id}] Phase: {previous.value} → ended")
        return self.final_summary(session)

    @staticmethod
    def final_summary(session: GameSession) -> Dict[str, Any]:
        scores = sorted(session.players, key=lambda p: p.score, reverse=True)
        top = scores[0].score if scores else 0
        return {
            "phase": session.phase,
            "final_scores": [
                {"player_id": p.id, "name": p.name, "score": p.score} for p in scores
            ],
            "champions": [p.id for p in scores if p.score == top] if scores else [],
            "final_round": {
                "number": session.current_round.number,
                "prompt": session.current_prompt.model_dump() if session.current_prompt else None,
                "submissions": [s.model_dump(mode="json") for s in session.submissions],
                "ledger": session.current_round.model_dump(),
            },
        }

    # ── Countdown ─────────────────────────────────────────────────────────────

    def start_countdown(
        self,
        session: GameSession,
        actor_id: str,
        kind: CountdownKind,
        message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Countdown:
        self._require_host(session, actor_id, "start a countdown")
        self._require_phase(session, f"start a {kind.value} countdown", COUNTDOWN_PHASE[kind])
        label = "Song selection" if kind == CountdownKind.SELECTION else "Voting"
        countdown = Countdown(
            kind=kind,
            message=message or f"{label} ends in {self.countdown_seconds:g} seconds!",
            started_at=now or _utcnow(),
            duration_seconds=self.countdown_seconds,
        )
        session.countdown = countdown
        logger.info(f"[{session.id}] {kind.value} countdown started ({countdown.duration_seconds}s)")
        return countdown

    def cancel_countdown(self, session: GameSession, actor_id: str) -> bool:
        self._require_host(session, actor_id, "cancel the countdown")
        if session.countdown is None:
            return False
        session.countdown = None
        logger.info(f"[{session.id}] Countdown cancelled")
        return True

    def expire_countdown(
        self,
        session: GameSession,
        now: Optional[datetime] = None,
        countdown_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Run the forced advance for a countdown whose deadline has passed.

        Returns None (and changes nothing) when the countdown was cancelled,
        replaced, has not expired yet, or the phase already moved on.
        """
        now = now or _utcnow()
        countdown = session.countdown
        if countdown is None:
            return None
        if countdown_id is not None and countdown.id != countdown_id:
            return None
        if now < countdown.deadline:
            return None
        if session.phase != COUNTDOWN_PHASE[countdown.kind]:
            return None

        logger.info(f"[{session.id}] {countdown.kind.value} countdown expired — forcing advance")
        if countdown.kind == CountdownKind.SELECTION:
            return self._close_selecting(session, closed_by="countdown", now=now)
        result = self.close_voting(session, closed_by="countdown", now=now)
        return {"phase": session.phase, **result}


# Module-level singleton
game_master = GameMaster()
