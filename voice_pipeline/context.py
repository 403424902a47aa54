"""
Voice Pipeline composition root.

PipelineContext builds and owns everything one terminal needs: the pooled
HTTP session, the capture and playback components over the injected audio
backends, the network clients, and the orchestrator that sequences them.
There are no module-level singletons; close the context to release the
HTTP pool.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Optional

import aiohttp

from constitution.scoring import ScoringEngine, create_strategy
from logging_setup import Component as LogComponent, get_logger
from observability.event_store import EventStore, event_store
from observability.events import Component as ObsComponent, EventEmitter

from .capture import CaptureSession
from .clients import EvaluationClient, LocalEvaluator, SynthesisClient, TranscriptionClient
from .config import PipelineConfig
from .interfaces import AudioInputBackend, AudioOutputBackend, StatusCallback
from .orchestrator import PipelineOrchestrator
from .playback import AudioFetcher, PlaybackController


logger = get_logger(LogComponent.PIPELINE)


@dataclass
class PipelineContext:
    config: PipelineConfig
    http: aiohttp.ClientSession
    capture: CaptureSession
    playback: PlaybackController
    orchestrator: PipelineOrchestrator
    store: EventStore

    async def aclose(self) -> None:
        """
        Stop audio and close the HTTP pool.
        Safe to call multiple times.
        """
        await self.orchestrator.cancel()
        self.playback.stop()
        if not self.http.closed:
            await self.http.close()
            logger.info("Pipeline HTTP session closed")

    async def __aenter__(self) -> "PipelineContext":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


def create_http_session(pool_size: int = 10) -> aiohttp.ClientSession:
    """
    Shared HTTP session with connection pooling.

    No session-wide total timeout: transcription sets its own per request,
    synthesis and playback have none.
    """
    connector = aiohttp.TCPConnector(
        limit=pool_size,
        limit_per_host=pool_size,
        ttl_dns_cache=300,
        force_close=False,
    )
    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=None, connect=10.0),
    )


def create_pipeline_context(
    config: PipelineConfig,
    input_backend: AudioInputBackend,
    output_backend: AudioOutputBackend,
    *,
    http: Optional[aiohttp.ClientSession] = None,
    store: Optional[EventStore] = None,
    on_status: StatusCallback = None,
    rng: Optional[random.Random] = None,
) -> PipelineContext:
    """
    Wire a PipelineContext from configuration and audio backends.

    Must be called with a running event loop (aiohttp sessions bind to it).
    """
    http = http or create_http_session()
    store = store if store is not None else event_store

    capture = CaptureSession(
        input_backend,
        max_duration_ms=config.capture_max_duration_ms,
        timeslice_ms=config.capture_timeslice_ms,
        min_bytes=config.capture_min_bytes,
        on_status=on_status,
        emitter=EventEmitter(ObsComponent.CAPTURE, store),
    )
    playback = PlaybackController(
        output_backend,
        AudioFetcher(http, config.api_base_url),
        volume=config.playback_volume,
        gesture_timeout=config.playback_gesture_wait_ms / 1000,
        on_status=on_status,
        emitter=EventEmitter(ObsComponent.PLAYBACK, store),
    )

    if config.evaluation_mode == "remote":
        evaluator = EvaluationClient(http, config.api_base_url)
    else:
        evaluator = LocalEvaluator(ScoringEngine(create_strategy(config.scoring_strategy, rng)))

    orchestrator = PipelineOrchestrator(
        capture,
        TranscriptionClient(
            http,
            config.api_base_url,
            timeout_ms=config.transcription_timeout_ms,
            language=config.transcription_language,
        ),
        evaluator,
        SynthesisClient(
            http,
            config.api_base_url,
            voice_id=config.default_voice_id,
            model_id=config.default_model_id,
        ),
        playback,
        store=store,
    )

    logger.info(
        "Pipeline context created",
        api_base_url=config.api_base_url,
        evaluation_mode=config.evaluation_mode,
        scoring_strategy=config.scoring_strategy,
    )
    return PipelineContext(
        config=config,
        http=http,
        capture=capture,
        playback=playback,
        orchestrator=orchestrator,
        store=store,
    )
