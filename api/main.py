"""
FastAPI Application — REST control surface + WebSocket event stream.

Provides:
- Session lifecycle: start, end, snapshot, transcript export
- Turn controls: submit user text, skip current utterance / rest of turn,
  reconnect transcription
- Background music: track list, volume, enable toggle
- WebSocket stream of TurnEvents for a live UI
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Literal, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

import structlog
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from config.settings import get_settings
from models.schemas import Track, TurnState
from utils.logging import configure_logging
from voice.session import VoiceSession
from voice.turn_controller import TurnEvent

logger = structlog.get_logger()

SessionFactory = Callable[[], VoiceSession]


class SessionManager:
    """Holds the single live voice session."""

    def __init__(self, factory: SessionFactory):
        self._factory = factory
        self.session: Optional[VoiceSession] = None

    @property
    def active(self) -> bool:
        return self.session is not None and self.session.context.state != TurnState.ENDED

    async def start(self) -> VoiceSession:
        if self.active:
            return self.session
        self.session = self._factory()
        await self.session.start_session()
        return self.session

    async def end(self) -> None:
        if self.session is not None:
            await self.session.end_session()

    def require(self) -> VoiceSession:
        if self.session is None:
            raise HTTPException(status_code=404, detail="No voice session")
        return self.session


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class SubmitRequest(BaseModel):
    text: str


class SkipRequest(BaseModel):
    scope: Literal["current", "turn"] = "current"


class TrackCreateRequest(BaseModel):
    name: str
    source: str


class VolumeRequest(BaseModel):
    volume: float = Field(ge=0.0, le=1.0)


class EnabledRequest(BaseModel):
    enabled: bool


def create_app(session_factory: Optional[SessionFactory] = None) -> FastAPI:
    manager = SessionManager(session_factory or VoiceSession.from_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        configure_logging(settings.logging.level, settings.logging.json)
        logger.info("chorus_started", app_name=settings.app_name)
        yield
        await manager.end()
        logger.info("chorus_stopped")

    app = FastAPI(
        title="Chorus API",
        description="Real-time voice turn-taking orchestrator",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.sessions = manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "session_active": manager.active,
        }

    # ══════════════════════════════════════════════════════════
    #  SESSION
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/session")
    async def start_session():
        session = await manager.start()
        return session.snapshot()

    @app.get("/api/v1/session")
    async def get_session():
        return manager.require().snapshot()

    @app.delete("/api/v1/session")
    async def end_session():
        session = manager.require()
        await manager.end()
        return session.snapshot()

    @app.post("/api/v1/session/submit")
    async def submit(req: SubmitRequest):
        session = manager.require()
        accepted = session.submit_user_text(req.text)
        return {"accepted": accepted, "state": session.context.state.value}

    @app.post("/api/v1/session/skip")
    async def skip(req: SkipRequest):
        session = manager.require()
        if req.scope == "turn":
            skipped = session.skip_to_end_of_ai_turn()
        else:
            skipped = session.skip_current_utterance()
        return {"skipped": skipped, "state": session.context.state.value}

    @app.post("/api/v1/session/transcription/restart")
    async def restart_transcription():
        session = manager.require()
        restarted = await session.restart_transcription()
        return {"restarted": restarted, "state": session.context.state.value}

    @app.get("/api/v1/session/transcript", response_class=PlainTextResponse)
    async def export_transcript():
        return manager.require().export_transcript()

    # ══════════════════════════════════════════════════════════
    #  BACKGROUND MUSIC
    # ══════════════════════════════════════════════════════════

    @app.get("/api/v1/music/tracks")
    async def list_tracks():
        return [t.model_dump() for t in manager.require().ambient.tracks]

    @app.post("/api/v1/music/tracks", status_code=201)
    async def add_track(req: TrackCreateRequest):
        session = manager.require()
        track = Track(name=req.name, source=req.source)
        try:
            session.add_track(track)
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return track.model_dump()

    @app.delete("/api/v1/music/tracks/{track_id}")
    async def remove_track(track_id: str):
        if not manager.require().remove_track(track_id):
            raise HTTPException(status_code=404, detail="Track not found")
        return {"status": "removed", "track_id": track_id}

    @app.put("/api/v1/music/volume")
    async def set_volume(req: VolumeRequest):
        manager.require().set_music_volume(req.volume)
        return {"volume": req.volume}

    @app.put("/api/v1/music/enabled")
    async def set_enabled(req: EnabledRequest):
        manager.require().set_music_enabled(req.enabled)
        return {"enabled": req.enabled}

    # ══════════════════════════════════════════════════════════
    #  WEBSOCKET — Live Turn Events
    # ══════════════════════════════════════════════════════════

    @app.websocket("/ws/session")
    async def websocket_events(websocket: WebSocket):
        """
        Streams TurnEvents as JSON:
          {"type": "state_changed", "data": {"from_state": ..., "to_state": ...}, ...}
        Clients may send {"type": "skip", "scope": "current"|"turn"} or
        {"type": "submit", "text": "..."}.
        """
        await websocket.accept()
        session = manager.session
        if session is None:
            await websocket.close(code=4004, reason="No voice session")
            return

        events: asyncio.Queue[TurnEvent] = asyncio.Queue()
        unsubscribe = session.subscribe(events.put_nowait)

        async def pump():
            while True:
                event = await events.get()
                await websocket.send_json(event.to_dict())

        sender = asyncio.create_task(pump())
        try:
            await websocket.send_json({"type": "snapshot", "data": session.snapshot()})
            while True:
                message = await websocket.receive_json()
                kind = message.get("type")
                if kind == "skip":
                    if message.get("scope") == "turn":
                        session.skip_to_end_of_ai_turn()
                    else:
                        session.skip_current_utterance()
                elif kind == "submit":
                    session.submit_user_text(message.get("text", ""))
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error("websocket_error", error=str(e))
        finally:
            unsubscribe()
            sender.cancel()

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
