import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from config import settings
from engine.errors import GameError
from engine.session_service import get_session_service

logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🎵 Song Showdown backend starting up...")
    service = get_session_service()
    sweep = None
    if settings.countdown_sweep_interval_seconds > 0:
        sweep = asyncio.create_task(
            service.run_countdown_sweep(settings.countdown_sweep_interval_seconds)
        )
    yield
    if sweep is not None:
        sweep.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep
    await service.shutdown()
    logger.info("Backend shutting down.")


app = FastAPI(
    title="Song Showdown",
    version="0.1.0",
    description="Multiplayer song party game — pick a song for the prompt, vote for the best",
    lifespan=lifespan,
)

_origins = list(settings.allowed_origins)
if settings.extra_origin:
    _origins.append(settings.extra_origin.rstrip("/"))

app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.exception_handler(GameError)
async def game_error_handler(request: Request, exc: GameError):
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} → {exc.error_code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "song-showdown", "version": "0.1.0"}


from routers.game_router import router as game_router
from routers.media_router import router as media_router

app.include_router(game_router, prefix="/api")
app.include_router(media_router, prefix="/api")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
