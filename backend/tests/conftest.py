"""
Pytest fixtures for the game and media cache tests.

Everything runs against MemoryStore with a controllable clock; async code is
driven with asyncio.run inside plain test functions.
"""
import asyncio
import random
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from engine.game_master import GameMaster
from engine.prompts import PromptBank
from engine.session_service import SessionService
from models.game import GameSession, PlayerState, Prompt
from models.media import VideoSearchResult
from services.inflight import InFlightRegistry
from services.media_cache import MediaCacheOrchestrator
from services.memory_store import MemoryStore
from services.video_resolver import VideoResolutionService

T0 = datetime(2026, 3, 1, 20, 0, tzinfo=timezone.utc)


class FakeClock:
    """Wall clock for the session service (datetime)."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMonotonic:
    """Monotonic clock for the in-flight registry (float seconds)."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeVideoProvider:
    """Scripted video search provider that records every query it receives."""

    def __init__(
        self,
        by_query: Optional[Dict[str, List[VideoSearchResult]]] = None,
        default: Optional[List[VideoSearchResult]] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.by_query = by_query or {}
        self.default = default or []
        self.error = error
        self.delay = delay
        self.calls: List[str] = []

    async def search(self, query, category_hint=None, max_results=3):
        self.calls.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.by_query.get(query, self.default))


def video(id: str, title: str, channel: str = "Some Channel") -> VideoSearchResult:
    return VideoSearchResult(id=id, title=title, thumbnail=f"https://i.ytimg.com/{id}.jpg", channel_title=channel)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def prompts() -> PromptBank:
    return PromptBank(rng=random.Random(7))


@pytest.fixture
def master(prompts) -> GameMaster:
    return GameMaster(
        prompts=prompts,
        countdown_seconds=10,
        retention_days=7,
        min_players=2,
        max_players=12,
    )


@pytest.fixture
def service(store, master, clock) -> SessionService:
    """Session service without background timer tasks; countdowns fire via clock + reads."""
    return SessionService(store=store, master=master, clock=clock, schedule_timers=False)


@pytest.fixture
def make_session():
    """Lobby session with players p1..pN; p1 hosts."""
    def _make(n_players: int = 3) -> GameSession:
        players = [PlayerState(id=f"p{i}", name=f"Player {i}", joined_at=T0) for i in range(1, n_players + 1)]
        return GameSession(
            id="game-1",
            code="ABC123",
            host_id="p1",
            players=players,
            created_at=T0,
            expires_at=T0 + timedelta(days=7),
        )
    return _make


@pytest.fixture
def selecting_session(master, make_session):
    """Session in SELECTING with every player active and a fixed prompt."""
    def _make(n_players: int = 3) -> GameSession:
        session = make_session(n_players)
        for p in session.players:
            p.ready = True
        master.force_start(session, "p1", Prompt(text="Best song for a road trip?"), now=T0)
        return session
    return _make


@pytest.fixture
def video_provider() -> FakeVideoProvider:
    return FakeVideoProvider()


@pytest.fixture
def media_cache(store, video_provider, clock, monotonic) -> MediaCacheOrchestrator:
    return MediaCacheOrchestrator(
        store=store,
        resolver=VideoResolutionService(provider=video_provider),
        registry=InFlightRegistry(ttl_seconds=30, clock=monotonic),
        clock=clock,
        quota_suppression_seconds=300,
        negative_ttl=timedelta(hours=24),
    )
