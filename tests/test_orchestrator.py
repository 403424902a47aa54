"""
Pipeline orchestration tests.
Covers the run lifecycle, degraded outcomes, cancellation and status listeners.
"""
import asyncio
from types import SimpleNamespace

import pytest

from constitution.scoring import DeterministicStrategy, ScoringEngine
from fakes import (
    FakeFetcher,
    FakeInputBackend,
    FakeOutputBackend,
    FakeSynthesizer,
    FakeTranscriber,
    immediate_sleep,
)
from observability.event_store import EventStore
from observability.events import Component, EventEmitter
from voice_pipeline.capture import CaptureSession
from voice_pipeline.clients import LocalEvaluator
from voice_pipeline.errors import (
    CaptureErrorKind,
    NetworkError,
    NetworkErrorKind,
    PlaybackErrorKind,
)
from voice_pipeline.orchestrator import (
    PLAYBACK_FAILED_NOTICE,
    SPEECH_UNAVAILABLE_NOTICE,
    PipelineOrchestrator,
    PipelineRun,
    RunState,
)
from voice_pipeline.playback import PlaybackController


VOTING = "Implement a transparent and fair voting mechanism"

HAPPY_PATH = [
    ("idle", "recording"),
    ("recording", "transcribing"),
    ("transcribing", "evaluating"),
    ("evaluating", "synthesizing"),
    ("synthesizing", "playing"),
    ("playing", "idle"),
]

TEXT_PATH = [("idle", "evaluating")] + HAPPY_PATH[3:]


def make_pipeline(
    input_backend=None,
    output_backend=None,
    fetcher=None,
    transcriber=None,
    synthesizer=None,
    capture_sleep=asyncio.sleep,
):
    store = EventStore()
    input_backend = input_backend or FakeInputBackend()
    output_backend = output_backend or FakeOutputBackend()
    capture = CaptureSession(
        input_backend,
        emitter=EventEmitter(Component.CAPTURE, store),
        sleep=capture_sleep,
    )
    playback = PlaybackController(
        output_backend,
        fetcher or FakeFetcher(),
        gesture_timeout=0.01,
        emitter=EventEmitter(Component.PLAYBACK, store),
    )
    orchestrator = PipelineOrchestrator(
        capture,
        transcriber or FakeTranscriber(),
        LocalEvaluator(ScoringEngine(DeterministicStrategy())),
        synthesizer or FakeSynthesizer(),
        playback,
        store=store,
    )
    events = []
    orchestrator.subscribe(events.append)
    return SimpleNamespace(
        orchestrator=orchestrator,
        store=store,
        input=input_backend,
        output=output_backend,
        capture=capture,
        playback=playback,
        events=events,
    )


def transitions(events, run_id=None):
    return [
        (e.from_state.value, e.to_state.value)
        for e in events
        if run_id is None or e.run_id == run_id
    ]


class TestRunTransitions:

    def test_allowed_path(self):
        run = PipelineRun(run_id="run_1", trigger="voice")
        for state in (RunState.RECORDING, RunState.TRANSCRIBING, RunState.EVALUATING,
                      RunState.SYNTHESIZING, RunState.PLAYING, RunState.IDLE):
            run.transition_to(state)
        assert run.state is RunState.IDLE

    def test_idle_cannot_jump_to_playing(self):
        run = PipelineRun(run_id="run_1", trigger="text")
        with pytest.raises(RuntimeError):
            run.transition_to(RunState.PLAYING)

    def test_error_only_returns_to_idle(self):
        run = PipelineRun(run_id="run_1", trigger="voice", state=RunState.ERROR)
        with pytest.raises(RuntimeError):
            run.transition_to(RunState.RECORDING)
        run.transition_to(RunState.IDLE)


class TestVoiceRun:

    @pytest.mark.asyncio
    async def test_happy_path(self):
        p = make_pipeline()
        orchestrator = p.orchestrator

        run = await orchestrator.start_recording()
        assert orchestrator.state is RunState.RECORDING

        outcome = await orchestrator.stop_recording()

        assert outcome.spoken is True
        assert outcome.error is None
        assert outcome.proposal.text == VOTING
        assert outcome.evaluation.approved is True
        assert outcome.response_text == outcome.evaluation.response_text
        assert orchestrator.state is RunState.IDLE
        assert transitions(p.events) == HAPPY_PATH
        assert p.events[-1].message == "Ready for input"
        assert orchestrator.last_outcome is outcome

        types = [e["event_type"] for e in orchestrator.events(run.run_id)]
        assert types[0] == "pipeline.run_started"
        assert "capture.completed" in types
        assert "proposal.evaluated" in types
        assert "playback.completed" in types

    @pytest.mark.asyncio
    async def test_stop_without_recording(self):
        p = make_pipeline()
        assert await p.orchestrator.stop_recording() is None

    @pytest.mark.asyncio
    async def test_recording_too_short(self):
        p = make_pipeline(input_backend=FakeInputBackend(flush_chunks=[b"x" * 10]))

        await p.orchestrator.start_recording()
        outcome = await p.orchestrator.stop_recording()

        assert outcome.error.kind == CaptureErrorKind.TOO_SHORT
        assert outcome.evaluation is None
        assert transitions(p.events) == [("idle", "recording"), ("recording", "error"), ("error", "idle")]
        assert p.events[1].message == "Error: Recording too short. Please speak longer."
        assert p.events[1].cause == CaptureErrorKind.TOO_SHORT

    @pytest.mark.asyncio
    async def test_permission_denied(self):
        p = make_pipeline(input_backend=FakeInputBackend(request_error=PermissionError("denied")))

        run = await p.orchestrator.start_recording()

        assert run.error.kind == CaptureErrorKind.PERMISSION_DENIED
        assert p.orchestrator.state is RunState.IDLE
        assert transitions(p.events)[-1] == ("error", "idle")

    @pytest.mark.asyncio
    async def test_transcription_timeout(self):
        error = NetworkError("Transcription timed out", NetworkErrorKind.TIMEOUT)
        p = make_pipeline(transcriber=FakeTranscriber(error=error))

        await p.orchestrator.start_recording()
        outcome = await p.orchestrator.stop_recording()

        assert outcome.error is error
        assert transitions(p.events)[-2:] == [("transcribing", "error"), ("error", "idle")]
        assert p.events[-2].message == "Error: Request timed out. Please try again."

    @pytest.mark.asyncio
    async def test_auto_stop_continues_run(self):
        p = make_pipeline(capture_sleep=immediate_sleep)

        await p.orchestrator.start_recording()
        for _ in range(50):
            if p.orchestrator.last_outcome is not None:
                break
            await asyncio.sleep(0)

        outcome = p.orchestrator.last_outcome
        assert outcome is not None
        assert outcome.spoken is True
        assert transitions(p.events) == HAPPY_PATH
        assert await p.orchestrator.stop_recording() is None

    @pytest.mark.asyncio
    async def test_auto_stop_run_reports_playback_failure_to_listeners(self):
        error = NetworkError("down", NetworkErrorKind.CONNECTION)
        p = make_pipeline(
            fetcher=FakeFetcher(head_error=error, get_error=error),
            capture_sleep=immediate_sleep,
        )

        await p.orchestrator.start_recording()
        for _ in range(200):
            if p.orchestrator.last_outcome is not None:
                break
            await asyncio.sleep(0)

        assert p.orchestrator.last_outcome.spoken is False
        assert p.events[-1].to_state is RunState.IDLE
        assert p.events[-1].message == PLAYBACK_FAILED_NOTICE


class TestTextRun:

    @pytest.mark.asyncio
    async def test_submit_text(self):
        synthesizer = FakeSynthesizer()
        p = make_pipeline(synthesizer=synthesizer)

        outcome = await p.orchestrator.submit_text("  Protect user data  ")

        assert outcome.proposal.text == "Protect user data"
        assert outcome.spoken is True
        assert synthesizer.texts == [outcome.evaluation.response_text]
        assert transitions(p.events) == TEXT_PATH
        assert p.input.streams == []

    @pytest.mark.asyncio
    async def test_empty_text_rejected_before_any_transition(self):
        p = make_pipeline()

        with pytest.raises(ValueError):
            await p.orchestrator.submit_text("   ")

        assert p.events == []
        assert p.orchestrator.current_run is None

    @pytest.mark.asyncio
    async def test_synthesis_failure_keeps_evaluation(self):
        error = NetworkError("ElevenLabs down", NetworkErrorKind.SERVER_ERROR, status=500)
        p = make_pipeline(synthesizer=FakeSynthesizer(error=error))

        outcome = await p.orchestrator.submit_text(VOTING)

        assert outcome.evaluation is not None
        assert outcome.spoken is False
        assert outcome.notice == SPEECH_UNAVAILABLE_NOTICE
        assert transitions(p.events)[-2:] == [("synthesizing", "error"), ("error", "idle")]
        assert p.events[-2].message == "Error: The server could not process the request."
        assert p.events[-1].message == SPEECH_UNAVAILABLE_NOTICE

    @pytest.mark.asyncio
    async def test_playback_failure_degrades_to_idle(self):
        error = NetworkError("down", NetworkErrorKind.CONNECTION)
        p = make_pipeline(fetcher=FakeFetcher(head_error=error, get_error=error))

        outcome = await p.orchestrator.submit_text(VOTING)

        assert outcome.evaluation is not None
        assert outcome.spoken is False
        assert outcome.notice == PLAYBACK_FAILED_NOTICE
        assert outcome.error.kind == PlaybackErrorKind.ALL_STRATEGIES_EXHAUSTED
        assert transitions(p.events)[-1] == ("playing", "idle")
        assert p.events[-1].cause == PlaybackErrorKind.ALL_STRATEGIES_EXHAUSTED
        assert p.events[-1].message == PLAYBACK_FAILED_NOTICE
        assert ("playing", "error") not in transitions(p.events)


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_recording(self):
        p = make_pipeline()
        run = await p.orchestrator.start_recording()

        await p.orchestrator.cancel()

        assert run.cancelled
        assert p.orchestrator.state is RunState.IDLE
        assert p.events[-1].cause == "cancelled"
        assert p.input.streams[0].released == 1
        assert await p.orchestrator.stop_recording() is None

    @pytest.mark.asyncio
    async def test_cancel_when_idle_is_noop(self):
        p = make_pipeline()
        await p.orchestrator.cancel()
        assert p.events == []

    @pytest.mark.asyncio
    async def test_new_run_discards_in_flight_result(self):
        transcriber = FakeTranscriber()
        transcriber.gate = asyncio.Event()
        p = make_pipeline(transcriber=transcriber)

        first = await p.orchestrator.start_recording()
        pending = asyncio.ensure_future(p.orchestrator.stop_recording())
        for _ in range(5):
            await asyncio.sleep(0)
        assert p.orchestrator.state is RunState.TRANSCRIBING

        second_outcome = await p.orchestrator.submit_text("Protect user data")
        transcriber.gate.set()
        first_outcome = await pending

        assert first_outcome.cancelled is True
        assert first_outcome.evaluation is None
        assert second_outcome.spoken is True
        assert transitions(p.events, first.run_id) == [
            ("idle", "recording"),
            ("recording", "transcribing"),
            ("transcribing", "idle"),
        ]
        discarded = p.store.query(run_id=first.run_id, event_type="pipeline.run_discarded")
        assert discarded[0]["stage"] == "transcription"
        assert p.orchestrator.current_run.run_id == second_outcome.run_id

    @pytest.mark.asyncio
    async def test_new_recording_while_recording_releases_first_capture(self):
        p = make_pipeline()
        first = await p.orchestrator.start_recording()

        second = await p.orchestrator.start_recording()

        assert first.cancelled
        assert not second.cancelled
        assert p.input.streams[0].released == 1
        assert p.input.streams[1].released == 0
        assert transitions(p.events, first.run_id) == [("idle", "recording"), ("recording", "idle")]
        assert p.orchestrator.current_run is second
        assert p.orchestrator.state is RunState.RECORDING

        outcome = await p.orchestrator.stop_recording()
        assert outcome.run_id == second.run_id
        assert outcome.spoken is True

    @pytest.mark.asyncio
    async def test_text_run_while_recording_releases_capture(self):
        p = make_pipeline()
        first = await p.orchestrator.start_recording()

        outcome = await p.orchestrator.submit_text(VOTING)

        assert first.cancelled
        assert p.input.streams[0].released == 1
        assert p.capture.is_recording is False
        assert outcome.spoken is True
        assert transitions(p.events, outcome.run_id) == TEXT_PATH

    @pytest.mark.asyncio
    async def test_new_recording_stops_playback(self):
        p = make_pipeline(output_backend=FakeOutputBackend(hold=True))

        pending = asyncio.ensure_future(p.orchestrator.submit_text(VOTING))
        for _ in range(10):
            await asyncio.sleep(0)
        assert p.orchestrator.state is RunState.PLAYING

        await p.orchestrator.start_recording()
        outcome = await pending

        assert outcome.cancelled is True
        assert p.output.elements[0].paused
        assert p.orchestrator.state is RunState.RECORDING
        await p.orchestrator.cancel()


class TestStatusListeners:

    @pytest.mark.asyncio
    async def test_listener_failure_does_not_break_run(self):
        p = make_pipeline()

        def broken(event):
            raise RuntimeError("ui crashed")

        p.orchestrator.subscribe(broken)
        outcome = await p.orchestrator.submit_text(VOTING)

        assert outcome.spoken is True
        assert transitions(p.events) == TEXT_PATH

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        p = make_pipeline()
        seen = []
        unsubscribe = p.orchestrator.subscribe(seen.append)
        unsubscribe()
        unsubscribe()

        await p.orchestrator.submit_text(VOTING)

        assert seen == []
        assert len(p.events) == 4

    @pytest.mark.asyncio
    async def test_state_changes_recorded_as_events(self):
        p = make_pipeline()
        outcome = await p.orchestrator.submit_text(VOTING)

        changes = p.store.query(run_id=outcome.run_id, event_type="pipeline.state_changed")
        assert [(e["from_state"], e["to_state"]) for e in changes] == TEXT_PATH
