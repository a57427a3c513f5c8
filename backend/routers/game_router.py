"""
Game session HTTP endpoints. Clients poll GET /sessions/{id}; every mutation
returns its own result plus the refreshed projection.

Routes:
  POST /api/sessions                                — Create session + host player
  POST /api/sessions/join                           — Join the lobby by code
  GET  /api/sessions/{session_id}                   — Polling projection
  GET  /api/sessions/{session_id}/prompt-preview    — Host peeks at a fresh prompt
  POST /api/sessions/{session_id}/ready             — Toggle ready (may auto-start)
  POST /api/sessions/{session_id}/start             — Host force-start
  POST /api/sessions/{session_id}/submit            — Submit a song or pass
  POST /api/sessions/{session_id}/force-end-selection
  POST /api/sessions/{session_id}/vote
  POST /api/sessions/{session_id}/force-end-voting
  POST /api/sessions/{session_id}/next-round        — Host opens the next round
  POST /api/sessions/{session_id}/end               — Host ends the game
  POST /api/sessions/{session_id}/countdown         — Host starts a forced-advance countdown
  POST /api/sessions/{session_id}/countdown/cancel
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Query
from fastapi.encoders import jsonable_encoder

from models.game import (
    GameSession,
    CreateSessionRequest, CreateSessionResponse,
    JoinSessionRequest, JoinSessionResponse,
    ActorRequest, PromptChoiceRequest, SubmitRequest, VoteRequest, CountdownRequest,
)
from engine.session_service import get_session_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sessions"])


def _respond(session: GameSession, result: Dict[str, Any]) -> Dict[str, Any]:
    body = jsonable_encoder(result)
    body["session"] = session.to_public(get_session_service().clock())
    return body


@router.post("/sessions", response_model=CreateSessionResponse, status_code=201)
async def create_session(body: CreateSessionRequest):
    session = await get_session_service().create_session(body.host_name)
    return CreateSessionResponse(
        session_id=session.id, code=session.code, host_player_id=session.host_id
    )


@router.post("/sessions/join", response_model=JoinSessionResponse)
async def join_session(body: JoinSessionRequest):
    """Join by code. Only possible while the lobby is open."""
    session, player_id = await get_session_service().join_session(body.code, body.player_name)
    return JoinSessionResponse(session_id=session.id, code=session.code, player_id=player_id)


@router.get("/sessions/{session_id}")
async def get_session(session_id: str):
    service = get_session_service()
    session = await service.get_session(session_id)
    return session.to_public(service.clock())


@router.get("/sessions/{session_id}/prompt-preview")
async def prompt_preview(
    session_id: str,
    player_id: str = Query(..., description="Must be the session host"),
):
    prompt = await get_session_service().preview_prompt(session_id, player_id)
    return prompt.model_dump()


@router.post("/sessions/{session_id}/ready")
async def toggle_ready(session_id: str, body: ActorRequest):
    session, result = await get_session_service().toggle_ready(session_id, body.player_id)
    return _respond(session, result)


@router.post("/sessions/{session_id}/start")
async def force_start(session_id: str, body: PromptChoiceRequest):
    session, result = await get_session_service().force_start(
        session_id, body.player_id, body.to_prompt()
    )
    return _respond(session, result)


@router.post("/sessions/{session_id}/submit")
async def submit(session_id: str, body: SubmitRequest):
    session, result = await get_session_service().submit(session_id, body.player_id, body)
    return _respond(session, result)


@router.post("/sessions/{session_id}/force-end-selection")
async def force_end_selection(session_id: str, body: ActorRequest):
    session, result = await get_session_service().force_end_selecting(session_id, body.player_id)
    return _respond(session, result)


@router.post("/sessions/{session_id}/vote")
async def vote(session_id: str, body: VoteRequest):
    session, result = await get_session_service().cast_vote(
        session_id, body.player_id, body.submission_id
    )
    return _respond(session, result)


@router.post("/sessions/{session_id}/force-end-voting")
async def force_end_voting(session_id: str, body: ActorRequest):
    session, result = await get_session_service().force_end_voting(session_id, body.player_id)
    return _respond(session, result)


@router.post("/sessions/{session_id}/next-round")
async def next_round(session_id: str, body: PromptChoiceRequest):
    session, result = await get_session_service().next_round(
        session_id, body.player_id, body.to_prompt()
    )
    return _respond(session, result)


@router.post("/sessions/{session_id}/end")
async def end_game(session_id: str, body: ActorRequest):
    """Returns the final standings and the last round, which stays readable after the transition."""
    session, result = await get_session_service().end_game(session_id, body.player_id)
    return _respond(session, result)


@router.post("/sessions/{session_id}/countdown")
async def start_countdown(session_id: str, body: CountdownRequest):
    session, countdown = await get_session_service().start_countdown(
        session_id, body.player_id, body.kind, body.message
    )
    return _respond(session, {"countdown": countdown.model_dump(mode="json")})


@router.post("/sessions/{session_id}/countdown/cancel")
async def cancel_countdown(session_id: str, body: ActorRequest):
    session, cancelled = await get_session_service().cancel_countdown(session_id, body.player_id)
    return _respond(session, {"cancelled": cancelled})
