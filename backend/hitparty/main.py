import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, get_settings
from .events import EventStore
from .gateway import ConnectionHub, router as ws_router
from .narration import build_narrator
from .registry import registry_from_settings
from .schemas import SessionStateOut, build_state
from .service import GameService
from .songs import build_song_provider
from .utils import normalize_code

logger = logging.getLogger(__name__)


async def sweep_forever(service: GameService, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await service.sweep()
        except Exception:
            logger.exception("session sweep failed")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # idle sessions and event logs of ended ones
        task = asyncio.create_task(sweep_forever(app.state.service, settings.SESSION_SWEEP_INTERVAL_SEC))
        try:
            yield
        finally:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    app = FastAPI(title="HitParty API", lifespan=lifespan)

    origins = settings.cors_origins()
    origin_regex = settings.CORS_ORIGIN_REGEX or None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_origin_regex=origin_regex,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    hub = ConnectionHub()
    app.state.hub = hub
    app.state.registry = registry_from_settings(settings)
    app.state.service = GameService(
        app.state.registry,
        hub,
        settings=settings,
        song_provider=build_song_provider(settings),
        narrator=build_narrator(settings),
        events=EventStore(),
    )

    @app.get("/health")
    async def health():
        return {"status": "ok", "sessions": len(app.state.registry)}

    @app.get("/api/session/{code}", response_model=SessionStateOut)
    async def get_session(code: str, request: Request):
        s = request.app.state.registry.get_session(code)
        if not s:
            raise HTTPException(404, "Session not found")
        return build_state(s)

    @app.get("/api/session/{code}/events")
    async def list_events(code: str, request: Request, after: int | None = None, limit: int = 200):
        events = await request.app.state.service.events.list(normalize_code(code), after=after, limit=limit)
        latest_seq = events[-1]["seq"] if events else after
        return {"events": events, "latest_seq": latest_seq}

    app.include_router(ws_router)
    return app


app = create_app()
