import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi.responses import PlainTextResponse, Response
from pydantic import BaseModel

from reflectline.config import Settings, validate_config
from reflectline.detector import CompletionDetector, DetectorConfig
from reflectline.errors import ErrorKind
from reflectline.judge import SemanticJudge
from reflectline.messages import Connected, Disconnected
from reflectline.orchestrator import Orchestrator
from reflectline.post_call import journal_client_from_env
from reflectline.registry import CallRegistry
from reflectline.scheduler import CallScheduler
from reflectline.speech import AUDIO_MEDIA_TYPE, AudioCache, SpeechSynthesizer, Voice
from reflectline.store import EngineStore
from reflectline.telephony import CONNECT_STATUSES, DISCONNECT_STATUSES, TelephonyClient
from reflectline.transcription import run_media_stream

load_dotenv()

logger = logging.getLogger(__name__)

_HTTP_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.DUPLICATE_ACTIVE: 409,
    ErrorKind.ILLEGAL_TRANSITION: 409,
    ErrorKind.BUDGET_EXHAUSTED: 409,
    ErrorKind.INVALID_ARGUMENT: 400,
}


class EnqueueRequest(BaseModel):
    conversation_id: str
    destination: str
    scheduled_for: datetime
    owner: str = ""
    max_attempts: Optional[int] = None


def build_orchestrator(settings: Settings) -> Orchestrator:
    """Wire the engine from environment configuration."""
    store = EngineStore(settings.db_path)
    judge = SemanticJudge(timeout=settings.judge_timeout_seconds)
    return Orchestrator(
        CallScheduler(store),
        store=store,
        registry=CallRegistry(),
        telephony=TelephonyClient(),
        voice=Voice(SpeechSynthesizer(), AudioCache()),
        detector=CompletionDetector(judge, DetectorConfig.from_settings(settings)),
        judge=judge,
        journal=journal_client_from_env(),
        settings=settings,
    )


def _queued_json(call) -> dict:
    return {
        "conversation_id": call.conversation_id,
        "owner": call.owner,
        "destination": call.destination,
        "scheduled_for": call.scheduled_for.isoformat(),
        "status": call.status.value,
        "attempt_count": call.attempt_count,
        "max_attempts": call.max_attempts,
        "next_retry_at": call.next_retry_at.isoformat() if call.next_retry_at else None,
        "completed_at": call.completed_at.isoformat() if call.completed_at else None,
        "error": call.error,
    }


def _raise_for(result) -> None:
    if not result.ok:
        raise HTTPException(status_code=_HTTP_STATUS[result.error.kind], detail=result.error.message)


def create_app(
    orchestrator_factory: Callable[[Settings], Orchestrator] = build_orchestrator,
    settings: Optional[Settings] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        orchestrator = orchestrator_factory(settings)
        app.state.orchestrator = orchestrator
        await orchestrator.start()
        try:
            yield
        finally:
            await orchestrator.shutdown()
            await orchestrator.close()

    app = FastAPI(title="Reflectline Call Engine", lifespan=lifespan)

    @app.get("/health")
    async def health():
        return PlainTextResponse("ok")

    @app.post("/twilio/status")
    async def twilio_status(request: Request):
        """Twilio status callback: answered calls connect, finished ones disconnect."""
        form = await request.form()
        call_sid = form.get("CallSid", "")
        status = form.get("CallStatus", "")
        logger.info(f"[{call_sid}] Twilio status: {status}")

        orchestrator = request.app.state.orchestrator
        if status in CONNECT_STATUSES:
            orchestrator.dispatch(call_sid, Connected())
        elif status in DISCONNECT_STATUSES:
            orchestrator.dispatch(call_sid, Disconnected(reason=status))
        return PlainTextResponse("ok")

    @app.get("/audio/{call_sid}/{clip_id}")
    async def audio(call_sid: str, clip_id: str, request: Request):
        clip = request.app.state.orchestrator.voice.cache.get(call_sid, clip_id)
        if clip is None:
            raise HTTPException(status_code=404, detail="clip not found")
        return Response(content=clip, media_type=AUDIO_MEDIA_TYPE)

    @app.websocket("/ws/media")
    async def media_stream(websocket: WebSocket):
        await websocket.accept()
        await run_media_stream(websocket, websocket.app.state.orchestrator.registry)

    @app.post("/calls", status_code=201)
    async def enqueue_call(body: EnqueueRequest, request: Request):
        scheduler = request.app.state.orchestrator.scheduler
        result = await scheduler.enqueue(
            body.conversation_id,
            body.destination,
            body.scheduled_for,
            body.max_attempts or settings.default_max_attempts,
            owner=body.owner,
        )
        _raise_for(result)
        return _queued_json(result.value)

    @app.get("/calls/{conversation_id}")
    async def get_call(conversation_id: str, request: Request):
        result = await request.app.state.orchestrator.scheduler.get(conversation_id)
        _raise_for(result)
        return _queued_json(result.value)

    @app.delete("/calls/{conversation_id}")
    async def cancel_call(conversation_id: str, request: Request):
        result = await request.app.state.orchestrator.cancel(conversation_id)
        _raise_for(result)
        return _queued_json(result.value)

    return app


def main():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    validate_config()
    port = int(os.getenv("PORT", "8765"))
    uvicorn.run(create_app(), host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
