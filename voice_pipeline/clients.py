"""
HTTP clients for the Proposal API.

- TranscriptionClient: recorded audio -> text (POST /api/speech/transcribe)
- SynthesisClient: response text -> audio (POST /api/speech/generate)
- EvaluationClient: proposal -> Evaluation (POST /api/proposal/evaluate)

All share one pooled aiohttp.ClientSession owned by PipelineContext.
Failures surface as NetworkError; nothing here retries.
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from constitution.models import Evaluation, Proposal
from constitution.scoring import ScoringEngine
from logging_setup import Component, get_logger

from .errors import NetworkError, NetworkErrorKind
from .playback import AudioSource, DEFAULT_MIME_TYPE


logger = get_logger(Component.TRANSCRIPTION)
synthesis_logger = get_logger(Component.SYNTHESIS)
scoring_logger = get_logger(Component.SCORING)


def transcription_filename(mime_type: str) -> str:
    """Upload filename; the provider infers the container from the extension."""
    mime = (mime_type or "").lower()
    if "mp4" in mime:
        return "recording.mp4"
    if "mpeg" in mime or "mp3" in mime:
        return "recording.mp3"
    if "ogg" in mime:
        return "recording.ogg"
    if "wav" in mime:
        return "recording.wav"
    return "recording.webm"


@dataclass(frozen=True)
class Transcript:
    text: str
    language: Optional[str] = None


@dataclass(frozen=True)
class SynthesizedSpeech:
    audio_url: Optional[str] = None
    data: Optional[bytes] = None
    mime_type: str = DEFAULT_MIME_TYPE
    voice_id: Optional[str] = None
    model_id: Optional[str] = None

    def as_source(self) -> AudioSource:
        return AudioSource(url=self.audio_url, data=self.data, mime_type=self.mime_type)


async def _read_json(response: aiohttp.ClientResponse, operation: str) -> Dict[str, Any]:
    """Decode a JSON body, mapping HTTP and shape failures to NetworkError."""
    try:
        payload = await response.json(content_type=None)
    except (json.JSONDecodeError, aiohttp.ContentTypeError, UnicodeDecodeError) as e:
        if response.status >= 400:
            raise NetworkError(
                f"{operation} failed with status {response.status}",
                NetworkErrorKind.SERVER_ERROR,
                status=response.status,
            ) from e
        raise NetworkError(
            f"{operation} returned invalid JSON",
            NetworkErrorKind.INVALID_RESPONSE,
            status=response.status,
        ) from e

    if not isinstance(payload, dict):
        raise NetworkError(
            f"{operation} returned an unexpected body",
            NetworkErrorKind.INVALID_RESPONSE,
            status=response.status,
        )

    if response.status >= 400 or payload.get("success") is False:
        detail = payload.get("error") or f"status {response.status}"
        raise NetworkError(
            f"{operation} failed: {detail}",
            NetworkErrorKind.SERVER_ERROR,
            status=response.status,
        )
    return payload


class TranscriptionClient:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        *,
        timeout_ms: int = 30000,
        language: Optional[str] = None,
    ):
        self._session = session
        self.url = f"{base_url.rstrip('/')}/api/speech/transcribe"
        self.timeout_ms = timeout_ms
        self.language = language

    async def transcribe(self, data: bytes, mime_type: str) -> Transcript:
        form = aiohttp.FormData()
        form.add_field(
            "audio",
            data,
            filename=transcription_filename(mime_type),
            content_type=mime_type.split(";")[0] or "audio/webm",
        )
        if self.language:
            form.add_field("language", self.language)

        timeout = aiohttp.ClientTimeout(total=self.timeout_ms / 1000)
        t_start = time.perf_counter()
        try:
            async with self._session.post(self.url, data=form, timeout=timeout) as response:
                payload = await _read_json(response, "Transcription")
        except asyncio.TimeoutError as e:
            logger.warning("Transcription timed out", timeout_ms=self.timeout_ms)
            raise NetworkError(
                f"Transcription timed out after {self.timeout_ms} ms",
                NetworkErrorKind.TIMEOUT,
            ) from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"Transcription request failed: {e}", NetworkErrorKind.CONNECTION) from e

        text = (payload.get("text") or "").strip()
        if not text:
            raise NetworkError(
                "Transcription failed - no text received",
                NetworkErrorKind.INVALID_RESPONSE,
                status=response.status,
            )

        logger.info(
            "Transcription completed",
            size=len(data),
            mime_type=mime_type,
            text_length=len(text),
            latency_ms=int((time.perf_counter() - t_start) * 1000),
        )
        logger.debug_pii("Transcript", text=text)
        return Transcript(text=text, language=payload.get("language"))


class SynthesisClient:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        *,
        voice_id: Optional[str] = None,
        model_id: Optional[str] = None,
    ):
        self._session = session
        self.url = f"{base_url.rstrip('/')}/api/speech/generate"
        self.voice_id = voice_id
        self.model_id = model_id

    async def synthesize(self, text: str) -> SynthesizedSpeech:
        body: Dict[str, Any] = {"text": text}
        if self.voice_id:
            body["voice_id"] = self.voice_id
        if self.model_id:
            body["model_id"] = self.model_id

        # Synthesis has no internal timeout
        timeout = aiohttp.ClientTimeout(total=None)
        t_start = time.perf_counter()
        try:
            async with self._session.post(self.url, json=body, timeout=timeout) as response:
                if response.status < 400 and response.content_type.startswith("audio/"):
                    data = await response.read()
                    if not data:
                        raise NetworkError(
                            "Speech generation returned no audio",
                            NetworkErrorKind.INVALID_RESPONSE,
                            status=response.status,
                        )
                    speech = SynthesizedSpeech(data=data, mime_type=response.content_type)
                else:
                    payload = await _read_json(response, "Speech generation")
                    audio_url = payload.get("audio_url")
                    if not audio_url:
                        raise NetworkError(
                            "Speech generation returned no audio_url",
                            NetworkErrorKind.INVALID_RESPONSE,
                            status=response.status,
                        )
                    speech = SynthesizedSpeech(
                        audio_url=audio_url,
                        voice_id=payload.get("voice_id"),
                        model_id=payload.get("model_id"),
                    )
        except aiohttp.ClientError as e:
            raise NetworkError(f"Speech generation request failed: {e}", NetworkErrorKind.CONNECTION) from e

        synthesis_logger.info(
            "Speech generated",
            text_length=len(text),
            audio_url=speech.audio_url,
            inline_bytes=len(speech.data) if speech.data else None,
            voice_id=speech.voice_id,
            latency_ms=int((time.perf_counter() - t_start) * 1000),
        )
        return speech


class EvaluationClient:
    """Remote scoring through the proposal evaluation endpoint."""

    def __init__(self, session: aiohttp.ClientSession, base_url: str):
        self._session = session
        self.url = f"{base_url.rstrip('/')}/api/proposal/evaluate"

    async def evaluate(self, proposal: Proposal) -> Evaluation:
        try:
            async with self._session.post(self.url, json={"proposal": proposal.text}) as response:
                payload = await _read_json(response, "Proposal evaluation")
        except aiohttp.ClientError as e:
            raise NetworkError(f"Proposal evaluation request failed: {e}", NetworkErrorKind.CONNECTION) from e

        result = payload.get("result")
        try:
            evaluation = Evaluation.from_api_dict(result, proposal_id=proposal.id)
        except (KeyError, TypeError, ValueError) as e:
            raise NetworkError(
                "Proposal evaluation returned an invalid result",
                NetworkErrorKind.INVALID_RESPONSE,
            ) from e

        scoring_logger.info(
            "Remote evaluation received",
            proposal_id=proposal.id,
            approved=evaluation.approved,
        )
        return evaluation


class LocalEvaluator:
    """In-process scoring with the same interface as EvaluationClient."""

    def __init__(self, engine: ScoringEngine):
        self.engine = engine

    async def evaluate(self, proposal: Proposal) -> Evaluation:
        return self.engine.evaluate(proposal)
