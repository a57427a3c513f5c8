from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Literal, Union, Annotated
from enum import Enum
from datetime import datetime, timedelta, timezone
import uuid


def _utcnow() -> datetime:
    """Timezone-aware UTC datetime (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class Phase(str, Enum):
    WAITING = "waiting"
    SELECTING = "selecting"
    VOTING = "voting"
    RESULTS = "results"
    ENDED = "ended"


class CountdownKind(str, Enum):
    SELECTION = "selection"
    VOTING = "voting"


# Countdown kind → the only phase in which it may run
COUNTDOWN_PHASE: Dict[CountdownKind, Phase] = {
    CountdownKind.SELECTION: Phase.SELECTING,
    CountdownKind.VOTING: Phase.VOTING,
}


class PlayerState(BaseModel):
    id: str
    name: str
    ready: bool = False
    score: int = Field(default=0, ge=0)
    joined_at: datetime = Field(default_factory=_utcnow)


class Prompt(BaseModel):
    id: Optional[str] = None  # None for host-written prompts
    text: str
    category: str = "custom"


class RealSubmission(BaseModel):
    kind: Literal["song"] = "song"
    id: str = Field(default_factory=_new_id)
    player_id: str
    song_id: str
    song_name: str
    artist: str
    album_cover: str = ""
    submitted_at: datetime = Field(default_factory=_utcnow)
    got_speed_bonus: bool = False
    votes: List[str] = []  # voter player ids, no duplicates

    @property
    def is_pass(self) -> bool:
        return False

    def round_points(self) -> int:
        return len(self.votes) + (1 if self.got_speed_bonus else 0)


class PassSubmission(BaseModel):
    """A player declining to answer. Counts toward completeness, never votable."""
    kind: Literal["pass"] = "pass"
    id: str = Field(default_factory=_new_id)
    player_id: str
    submitted_at: datetime = Field(default_factory=_utcnow)
    forced: bool = False  # synthesized by a forced end of selection

    @property
    def is_pass(self) -> bool:
        return True

    @property
    def votes(self) -> List[str]:
        return []

    def round_points(self) -> int:
        return 0


Submission = Annotated[Union[RealSubmission, PassSubmission], Field(discriminator="kind")]


class Countdown(BaseModel):
    """Advisory shared timer. The persisted deadline is what reconciliation acts on."""
    id: str = Field(default_factory=_new_id)
    kind: CountdownKind
    message: str = ""
    started_at: datetime = Field(default_factory=_utcnow)
    duration_seconds: float = 10

    @property
    def deadline(self) -> datetime:
        return self.started_at + timedelta(seconds=self.duration_seconds)

    def seconds_remaining(self, now: datetime) -> float:
        return max(0.0, (self.deadline - now).total_seconds())


class RoundLedger(BaseModel):
    """Per-round bookkeeping; written into RoundSnapshot when the round is archived."""
    number: int = 0
    speed_bonus_player_id: Optional[str] = None
    speed_bonus_forfeited: bool = False  # claimant switched to a pass; nobody else gets it
    forced_pass_player_ids: List[str] = []
    non_voter_ids: List[str] = []
    round_points: Dict[str, int] = {}  # player_id → points earned this round
    winner_submission_ids: List[str] = []
    is_tie: bool = False
    selection_closed_by: Optional[str] = None  # submissions | host | countdown
    voting_closed_by: Optional[str] = None     # votes | host | countdown


class RoundSnapshot(BaseModel):
    number: int
    prompt: Optional[Prompt] = None
    submissions: List[Submission] = []
    forced_pass_player_ids: List[str] = []
    non_voter_ids: List[str] = []
    round_points: Dict[str, int] = {}
    winner_submission_ids: List[str] = []
    is_tie: bool = False
    archived_at: datetime = Field(default_factory=_utcnow)


class GameSession(BaseModel):
    id: str = Field(default_factory=_new_id)
    code: str
    phase: Phase = Phase.WAITING
    host_id: str
    players: List[PlayerState] = []
    active_participants: List[str] = []
    current_prompt: Optional[Prompt] = None
    submissions: List[Submission] = []
    current_round: RoundLedger = Field(default_factory=RoundLedger)
    previous_rounds: List[RoundSnapshot] = []
    used_prompt_ids: List[str] = []
    countdown: Optional[Countdown] = None
    version: int = 0  # bumped on every committed mutation (optimistic concurrency)
    created_at: datetime = Field(default_factory=_utcnow)
    ended_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    # ── Lookups ───────────────────────────────────────────────────────────────

    def get_player(self, player_id: str) -> Optional[PlayerState]:
        for p in self.players:
            if p.id == player_id:
                return p
        return None

    def is_host(self, player_id: str) -> bool:
        return self.host_id == player_id

    def is_active(self, player_id: str) -> bool:
        return player_id in self.active_participants

    def submission_for(self, player_id: str) -> Optional[Submission]:
        for s in self.submissions:
            if s.player_id == player_id:
                return s
        return None

    def get_submission(self, submission_id: str) -> Optional[Submission]:
        for s in self.submissions:
            if s.id == submission_id:
                return s
        return None

    def real_submissions(self) -> List[RealSubmission]:
        return [s for s in self.submissions if not s.is_pass]

    def total_votes(self) -> int:
        return sum(len(s.votes) for s in self.real_submissions())

    def voted_for(self, player_id: str) -> Optional[str]:
        """Submission id currently holding this player's vote, if any."""
        for s in self.real_submissions():
            if player_id in s.votes:
                return s.id
        return None

    # ── Projection ────────────────────────────────────────────────────────────

    def to_public(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Polling projection: everything a client needs to render the current phase."""
        now = now or _utcnow()
        names = {p.id: p.name for p in self.players}

        def _submission(s: Submission) -> Dict[str, Any]:
            data: Dict[str, Any] = {
                "id": s.id,
                "player_id": s.player_id,
                "player_name": names.get(s.player_id, ""),
                "has_passed": s.is_pass,
                "submitted_at": s.submitted_at.isoformat(),
                "vote_count": len(s.votes),
                "voters": list(s.votes),
            }
            if isinstance(s, RealSubmission):
                data.update({
                    "song_id": s.song_id,
                    "song_name": s.song_name,
                    "artist": s.artist,
                    "album_cover": s.album_cover,
                    "got_speed_bonus": s.got_speed_bonus,
                })
            else:
                data["forced"] = s.forced
            return data

        countdown = None
        if self.countdown:
            countdown = {
                "id": self.countdown.id,
                "kind": self.countdown.kind.value,
                "message": self.countdown.message,
                "started_at": self.countdown.started_at.isoformat(),
                "duration_seconds": self.countdown.duration_seconds,
                "deadline": self.countdown.deadline.isoformat(),
                "seconds_remaining": self.countdown.seconds_remaining(now),
            }

        return {
            "session_id": self.id,
            "code": self.code,
            "phase": self.phase.value,
            "host_id": self.host_id,
            "round": self.current_round.number,
            "players": [
                {
                    "id": p.id,
                    "name": p.name,
                    "ready": p.ready,
                    "score": p.score,
                    "is_host": p.id == self.host_id,
                    "is_active": p.id in self.active_participants,
                }
                for p in self.players
            ],
            "active_participants": list(self.active_participants),
            "current_prompt": self.current_prompt.model_dump() if self.current_prompt else None,
            "submissions": [_submission(s) for s in self.submissions],
            "submission_count": len(self.submissions),
            "total_votes": self.total_votes(),
            "current_round": self.current_round.model_dump(),
            "countdown": countdown,
            "previous_rounds": [r.model_dump(mode="json") for r in self.previous_rounds],
            "created_at": self.created_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


# ── HTTP request/response models ──────────────────────────────────────────────

class CreateSessionRequest(BaseModel):
    host_name: str = "Host"


class CreateSessionResponse(BaseModel):
    session_id: str
    code: str
    host_player_id: str


class JoinSessionRequest(BaseModel):
    code: str
    player_name: str


class JoinSessionResponse(BaseModel):
    session_id: str
    code: str
    player_id: str


class ActorRequest(BaseModel):
    player_id: str


class PromptChoiceRequest(ActorRequest):
    prompt_text: Optional[str] = None
    prompt_category: Optional[str] = None

    def to_prompt(self) -> Optional[Prompt]:
        if not self.prompt_text or not self.prompt_text.strip():
            return None
        return Prompt(text=self.prompt_text.strip(), category=self.prompt_category or "custom")


class SubmitRequest(ActorRequest):
    has_passed: bool = False
    song_id: Optional[str] = None
    song_name: Optional[str] = None
    artist: Optional[str] = None
    album_cover: Optional[str] = None


class VoteRequest(ActorRequest):
    submission_id: str


class CountdownRequest(ActorRequest):
    kind: CountdownKind
    message: Optional[str] = None
