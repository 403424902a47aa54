"""
Proposal API server.

This module exposes:
- Proposal API: evaluate a proposal against the constitutional criteria
- Speech API: transcribe audio (Whisper), generate speech (ElevenLabs), list voices
- System API: status and health
- Generated audio under /downloads

Error surface: {"success": false, "error": ..., "category"?: ...} with
400 for bad input and 500 for provider or configuration failures.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from constitution.models import Proposal
from constitution.scoring import ScoringEngine, create_strategy
from logging_setup import Component, get_logger
from observability.events import Component as ObsComponent, EventEmitter

from .config import ServerConfig
from .errors import ProviderError, ProviderErrorHandler
from .providers import ElevenLabsProvider, WhisperProvider, prune_downloads


VERSION = "1.0.0"

ALLOWED_AUDIO_TYPES = frozenset({
    "audio/webm",
    "audio/mp4",
    "audio/ogg",
    "audio/wav",
    "audio/x-wav",
    "audio/wave",
    "audio/mpeg",
    "audio/mp3",
})

logger = get_logger(Component.API_SERVER)
emitter = EventEmitter(ObsComponent.API_SERVER)


@dataclass
class Services:
    config: ServerConfig
    engine: ScoringEngine
    whisper: WhisperProvider
    elevenlabs: ElevenLabsProvider

    async def aclose(self) -> None:
        await self.whisper.aclose()
        await self.elevenlabs.aclose()


def get_services(request: Request) -> Services:
    return request.app.state.services


def _new_request_id() -> str:
    return f"req_{int(time.time() * 1000)}"


def _error(status_code: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error, **extra})


def _provider_failure(e: ProviderError, operation: str, request_id: str) -> JSONResponse:
    category = ProviderErrorHandler.handle_error(e, e.provider, operation, request_id)
    logger.warning(
        "Provider call failed",
        request_id=request_id,
        operation=operation,
        category=category,
        status=e.status,
    )
    return _error(500, ProviderErrorHandler.get_user_message(category), category=category)


# --- Proposal API ---

proposal_router = APIRouter(prefix="/api/proposal", tags=["proposal"])


class EvaluateRequest(BaseModel):
    proposal: Optional[Any] = None


@proposal_router.post("/evaluate")
async def evaluate_proposal(req: EvaluateRequest, services: Services = Depends(get_services)):
    """Score a proposal and return the evaluation."""
    if not isinstance(req.proposal, str) or not req.proposal.strip():
        return _error(400, "Proposal text is required")

    request_id = _new_request_id()
    proposal = Proposal.create(req.proposal)
    evaluation = services.engine.evaluate(proposal)

    emitter.proposal_evaluated(
        request_id,
        proposal_id=proposal.id,
        total=evaluation.scores.total,
        consensus_index=evaluation.consensus_index,
        approved=evaluation.approved,
        high_consensus=evaluation.high_consensus,
    )
    return {"success": True, "result": evaluation.to_api_dict()}


# --- Speech API ---

speech_router = APIRouter(prefix="/api/speech", tags=["speech"])


class GenerateRequest(BaseModel):
    text: Optional[str] = None
    voice_id: Optional[str] = None
    model_id: Optional[str] = None
    voice_settings: Optional[Dict[str, Any]] = None


@speech_router.post("/transcribe")
async def transcribe_audio(
    audio: Optional[UploadFile] = File(None),
    language: Optional[str] = Form(None),
    prompt: Optional[str] = Form(None),
    services: Services = Depends(get_services),
):
    """Transcribe an uploaded recording with Whisper."""
    if audio is None:
        return _error(400, "No audio file provided")

    content_type = (audio.content_type or "").split(";")[0].strip().lower()
    if content_type not in ALLOWED_AUDIO_TYPES:
        return _error(400, "Invalid file type. Only audio files are allowed.")

    data = await audio.read()
    if not data:
        return _error(400, "Audio file is empty")

    request_id = _new_request_id()
    logger.info(
        "Transcription requested",
        request_id=request_id,
        size=len(data),
        content_type=content_type,
        language=language,
    )

    try:
        result = await services.whisper.transcribe(
            data,
            filename=audio.filename or "recording.webm",
            content_type=content_type,
            language=language,
            prompt=prompt,
        )
    except ProviderError as e:
        return _provider_failure(e, "transcribe", request_id)

    return {"success": True, "text": result["text"], "language": result["language"]}


@speech_router.post("/generate")
async def generate_speech(req: GenerateRequest, services: Services = Depends(get_services)):
    """Generate speech for text and return the URL of the saved MP3."""
    if not req.text or not req.text.strip():
        return _error(400, "Text content is required")

    request_id = _new_request_id()
    logger.info("Speech generation requested", request_id=request_id, text_length=len(req.text))

    try:
        result = await services.elevenlabs.synthesize(
            req.text,
            voice_id=req.voice_id,
            model_id=req.model_id,
            voice_settings=req.voice_settings,
        )
    except ProviderError as e:
        return _provider_failure(e, "generate", request_id)

    return {"success": True, **result}


@speech_router.get("/voices")
async def list_voices(services: Services = Depends(get_services)):
    """Voices available to the configured ElevenLabs account."""
    request_id = _new_request_id()
    try:
        voices = await services.elevenlabs.list_voices()
    except ProviderError as e:
        return _provider_failure(e, "voices", request_id)

    return {
        "success": True,
        "voices": [{"name": v.get("name"), "id": v.get("voice_id")} for v in voices],
    }


# --- System API ---

system_router = APIRouter(tags=["system"])


@system_router.get("/api/system/status")
async def system_status(services: Services = Depends(get_services)):
    config = services.config
    return {
        "status": "online",
        "version": VERSION,
        "environment": config.app_env,
        "constitutional_alignment": "Active",
        "voice_services": "Available" if config.voice_services_available else "Unavailable",
        "transcription_services": "Available" if config.transcription_services_available else "Unavailable",
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }


@system_router.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok", "component": "proposal_api"}


# --- Application ---

def _prune_safely(config: ServerConfig) -> None:
    try:
        prune_downloads(config.download_dir, config.download_max_age_s)
    except Exception:
        logger.exception("Pruning generated audio failed", download_dir=str(config.download_dir))


async def _prune_periodically(config: ServerConfig, sleep=asyncio.sleep) -> None:
    interval = max(config.download_max_age_s, 1)
    while True:
        await sleep(interval)
        _prune_safely(config)


def create_app(
    config: Optional[ServerConfig] = None,
    *,
    engine: Optional[ScoringEngine] = None,
    whisper: Optional[WhisperProvider] = None,
    elevenlabs: Optional[ElevenLabsProvider] = None,
) -> FastAPI:
    config = config or ServerConfig.from_env()
    services = Services(
        config=config,
        engine=engine or ScoringEngine(create_strategy(config.scoring_strategy)),
        whisper=whisper or WhisperProvider(config.openai_api_key, config.openai_base_url),
        elevenlabs=elevenlabs or ElevenLabsProvider(config),
    )

    if not config.transcription_services_available:
        logger.warning("OPENAI_API_KEY not set; transcription endpoint will fail")
    if not config.voice_services_available:
        logger.warning("ELEVEN_LABS_API_KEY not set; speech generation endpoint will fail")

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        _prune_safely(config)
        pruner = asyncio.create_task(_prune_periodically(config))
        logger.info("Proposal API started", environment=config.app_env, port=config.port)
        try:
            yield
        finally:
            pruner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pruner
            await services.aclose()
            logger.info("Proposal API stopped")

    app = FastAPI(title="Aikira Proposal API", version=VERSION, lifespan=lifespan)
    app.state.services = services
    app.include_router(proposal_router)
    app.include_router(speech_router)
    app.include_router(system_router)

    config.download_dir.mkdir(parents=True, exist_ok=True)
    app.mount("/downloads", StaticFiles(directory=str(config.download_dir)), name="downloads")
    return app


app = create_app()
