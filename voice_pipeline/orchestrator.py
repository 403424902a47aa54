"""
Pipeline orchestration.

One run at a time moves through

    Idle -> Recording -> Transcribing -> Evaluating -> Synthesizing -> Playing -> Idle

with Error reachable from any non-Idle state. Typed proposals enter at
Evaluating. Every transition produces a StatusEvent for subscribers and a
pipeline.state_changed event in the event store.

Starting a new run cancels the current one. A cancelled run's in-flight
results are discarded and it emits no further transitions.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from constitution.models import Evaluation, Proposal
from logging_setup import Component as LogComponent, get_logger
from observability.event_store import EventStore, event_store
from observability.events import Component as ObsComponent, EventEmitter

from .capture import CaptureSession, RecordedAudio
from .errors import CaptureError, PipelineError, PlaybackError, status_message
from .interfaces import Evaluator, Synthesizer, Transcriber
from .playback import PlaybackController


logger = get_logger(LogComponent.PIPELINE)


class RunState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    EVALUATING = "evaluating"
    SYNTHESIZING = "synthesizing"
    PLAYING = "playing"
    ERROR = "error"


_ALLOWED: Dict[RunState, set] = {
    RunState.IDLE: {RunState.RECORDING, RunState.EVALUATING},
    RunState.RECORDING: {RunState.TRANSCRIBING, RunState.ERROR, RunState.IDLE},
    RunState.TRANSCRIBING: {RunState.EVALUATING, RunState.ERROR, RunState.IDLE},
    RunState.EVALUATING: {RunState.SYNTHESIZING, RunState.ERROR, RunState.IDLE},
    RunState.SYNTHESIZING: {RunState.PLAYING, RunState.ERROR, RunState.IDLE},
    RunState.PLAYING: {RunState.IDLE, RunState.ERROR},
    RunState.ERROR: {RunState.IDLE},
}

STATUS_MESSAGES = {
    RunState.IDLE: "Ready for input",
    RunState.RECORDING: "Listening to your voice...",
    RunState.TRANSCRIBING: "Transcribing audio...",
    RunState.EVALUATING: "Processing proposal...",
    RunState.SYNTHESIZING: "Generating speech...",
    RunState.PLAYING: "Playing audio...",
}

SPEECH_UNAVAILABLE_NOTICE = "Speech generation failed. The response is shown as text only."
PLAYBACK_FAILED_NOTICE = "Audio playback failed. The response is shown as text only."


@dataclass
class PipelineRun:
    run_id: str
    trigger: str  # "voice" | "text"
    state: RunState = RunState.IDLE
    proposal: Optional[Proposal] = None
    transcript: Optional[str] = None
    evaluation: Optional[Evaluation] = None
    audio_url: Optional[str] = None
    cancelled: bool = False
    error: Optional[BaseException] = None
    notice: Optional[str] = None

    def transition_to(self, new_state: RunState) -> RunState:
        """Move to new_state. Returns the previous state."""
        old_state = self.state
        if new_state not in _ALLOWED[old_state]:
            raise RuntimeError(f"Invalid run transition {old_state.value} -> {new_state.value}")
        self.state = new_state
        return old_state


@dataclass(frozen=True)
class StatusEvent:
    run_id: str
    from_state: RunState
    to_state: RunState
    message: str
    cause: Optional[str] = None
    ts: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class RunOutcome:
    run_id: str
    proposal: Optional[Proposal] = None
    evaluation: Optional[Evaluation] = None
    spoken: bool = False
    notice: Optional[str] = None
    error: Optional[BaseException] = None
    cancelled: bool = False

    @property
    def response_text(self) -> Optional[str]:
        return self.evaluation.response_text if self.evaluation else None


StatusListener = Callable[[StatusEvent], Any]


class PipelineOrchestrator:
    """Sequences capture, transcription, scoring, synthesis and playback."""

    def __init__(
        self,
        capture: CaptureSession,
        transcriber: Transcriber,
        evaluator: Evaluator,
        synthesizer: Synthesizer,
        playback: PlaybackController,
        *,
        store: Optional[EventStore] = None,
        gesture_timeout: Optional[float] = None,
    ):
        self.capture = capture
        self.transcriber = transcriber
        self.evaluator = evaluator
        self.synthesizer = synthesizer
        self.playback = playback
        self.gesture_timeout = gesture_timeout
        self.store = store if store is not None else event_store
        self.emitter = EventEmitter(ObsComponent.PIPELINE, self.store)

        self._run: Optional[PipelineRun] = None
        self._listeners: List[StatusListener] = []
        self.last_outcome: Optional[RunOutcome] = None

        # A safety-timeout stop continues the run into transcription
        self.capture.on_auto_stop = self._on_capture_auto_stop

    @property
    def current_run(self) -> Optional[PipelineRun]:
        return self._run

    @property
    def state(self) -> RunState:
        return self._run.state if self._run else RunState.IDLE

    # --- Subscriptions ---

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a status listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def events(self, run_id: str) -> List[Dict[str, Any]]:
        """Observability events recorded for a run, oldest first."""
        return self.store.query(run_id=run_id)

    # --- Public operations ---

    async def start_recording(self) -> PipelineRun:
        await self._flush_active_run()
        run = self._new_run("voice")
        self._transition(run, RunState.RECORDING)

        try:
            await self.capture.start(run_id=run.run_id)
        except CaptureError as e:
            if not self._is_stale(run):
                self._fail(run, e)
        except Exception as e:
            if not self._is_stale(run):
                self._abort(run, e)
            raise
        return run

    async def stop_recording(self) -> Optional[RunOutcome]:
        """
        Stop capture and carry the run through to playback.

        Returns None when no recording is active (or an automatic stop
        already took over the run).
        """
        run = self._run
        if run is None or run.cancelled or run.state is not RunState.RECORDING:
            return None

        try:
            recording = await self.capture.stop()
        except CaptureError as e:
            if self._is_stale(run):
                return self._discard(run, "capture")
            self._fail(run, e)
            return self._finish(run)

        if recording is None:
            return None
        return await self._guarded(run, self._process_recording(run, recording))

    async def submit_text(self, text: str) -> RunOutcome:
        """Evaluate a typed proposal and speak the response."""
        proposal = Proposal.create(text)
        await self._flush_active_run()
        run = self._new_run("text")
        return await self._guarded(run, self._evaluate_and_respond(run, proposal))

    async def cancel(self) -> None:
        """Abandon the active run: capture discarded, playback stopped."""
        run = self._run
        if run is None or run.cancelled or run.state is RunState.IDLE:
            return

        self._transition(run, RunState.IDLE, cause="cancelled")
        run.cancelled = True
        await self.capture.cancel()
        self.playback.stop()
        logger.info("Run cancelled", run_id=run.run_id)

    def notify_user_gesture(self) -> bool:
        return self.playback.notify_user_gesture()

    def dismiss_gesture(self) -> bool:
        return self.playback.dismiss_gesture()

    # --- Run stages ---

    async def _on_capture_auto_stop(
        self,
        recording: Optional[RecordedAudio],
        failure: Optional[CaptureError],
    ) -> None:
        run = self._run
        if run is None or run.cancelled or run.state is not RunState.RECORDING:
            return

        if failure is not None or recording is None:
            self._fail(run, failure or CaptureError("Recording produced no audio"))
            self.last_outcome = self._finish(run)
            return

        logger.info("Continuing run after capture safety timeout", run_id=run.run_id)
        await self._guarded(run, self._process_recording(run, recording))

    async def _process_recording(self, run: PipelineRun, recording: RecordedAudio) -> RunOutcome:
        self._transition(run, RunState.TRANSCRIBING)
        try:
            transcript = await self.transcriber.transcribe(recording.data, recording.mime_type)
        except PipelineError as e:
            if self._is_stale(run):
                return self._discard(run, "transcription")
            self._fail(run, e)
            return self._finish(run)

        if self._is_stale(run):
            return self._discard(run, "transcription")

        run.transcript = transcript.text
        logger.debug_pii("Transcript received", run_id=run.run_id, text=transcript.text)
        return await self._evaluate_and_respond(run, Proposal.create(transcript.text))

    async def _evaluate_and_respond(self, run: PipelineRun, proposal: Proposal) -> RunOutcome:
        run.proposal = proposal
        self._transition(run, RunState.EVALUATING)
        try:
            evaluation = await self.evaluator.evaluate(proposal)
        except PipelineError as e:
            if self._is_stale(run):
                return self._discard(run, "evaluation")
            self._fail(run, e)
            return self._finish(run)

        if self._is_stale(run):
            return self._discard(run, "evaluation")

        run.evaluation = evaluation
        self.emitter.proposal_evaluated(
            run.run_id,
            proposal_id=proposal.id,
            total=evaluation.scores.total,
            consensus_index=evaluation.consensus_index,
            approved=evaluation.approved,
            high_consensus=evaluation.high_consensus,
        )

        self._transition(run, RunState.SYNTHESIZING)
        try:
            speech = await self.synthesizer.synthesize(evaluation.response_text)
        except PipelineError as e:
            if self._is_stale(run):
                return self._discard(run, "synthesis")
            # Degraded: the evaluation survives, only the voice is lost
            run.notice = SPEECH_UNAVAILABLE_NOTICE
            self._fail(run, e, notice=run.notice)
            return self._finish(run)

        if self._is_stale(run):
            return self._discard(run, "synthesis")

        run.audio_url = speech.audio_url
        self._transition(run, RunState.PLAYING)
        try:
            await self.playback.play(
                speech.as_source(),
                run_id=run.run_id,
                gesture_timeout=self.gesture_timeout,
            )
        except PlaybackError as e:
            if self._is_stale(run):
                return self._discard(run, "playback")
            run.error = e
            run.notice = PLAYBACK_FAILED_NOTICE
            self._transition(run, RunState.IDLE, cause=e.kind, message=run.notice)
            return self._finish(run)

        if self._is_stale(run):
            return self._discard(run, "playback")

        self._transition(run, RunState.IDLE)
        return self._finish(run, spoken=True)

    # --- Helpers ---

    async def _guarded(self, run: PipelineRun, stages) -> RunOutcome:
        """Unexpected exceptions still leave the run Idle before propagating."""
        try:
            outcome = await stages
        except Exception as e:
            if not self._is_stale(run):
                logger.exception("Unexpected pipeline failure", run_id=run.run_id)
                self._abort(run, e)
            raise
        if run is self._run:
            self.last_outcome = outcome
        return outcome

    async def _flush_active_run(self) -> None:
        if self._run is not None and self._run.state is not RunState.IDLE:
            logger.info("Flushing active run", run_id=self._run.run_id, state=self._run.state.value)
            await self.cancel()
        # A finished run may still hold the audio device
        self.playback.stop()

    def _new_run(self, trigger: str) -> PipelineRun:
        run = PipelineRun(run_id=f"run_{uuid.uuid4().hex[:12]}", trigger=trigger)
        self._run = run
        self.emitter.run_started(run.run_id, trigger=trigger)
        logger.info("Run started", run_id=run.run_id, trigger=trigger)
        return run

    def _is_stale(self, run: PipelineRun) -> bool:
        return run.cancelled or run is not self._run

    def _discard(self, run: PipelineRun, stage: str) -> RunOutcome:
        self.emitter.run_discarded(run.run_id, stage=stage)
        logger.info("Discarding result of cancelled run", run_id=run.run_id, stage=stage)
        return RunOutcome(
            run_id=run.run_id,
            proposal=run.proposal,
            evaluation=run.evaluation,
            cancelled=True,
        )

    def _finish(self, run: PipelineRun, spoken: bool = False) -> RunOutcome:
        return RunOutcome(
            run_id=run.run_id,
            proposal=run.proposal,
            evaluation=run.evaluation,
            spoken=spoken,
            notice=run.notice,
            error=run.error,
            cancelled=run.cancelled,
        )

    def _fail(self, run: PipelineRun, error: BaseException, notice: Optional[str] = None) -> None:
        run.error = error
        cause = getattr(error, "kind", None) or type(error).__name__
        self._transition(run, RunState.ERROR, cause=cause, message=status_message(error))
        self._transition(run, RunState.IDLE, cause=cause, message=notice)

    def _abort(self, run: PipelineRun, error: BaseException) -> None:
        """Leave the run Idle after an unexpected exception, from any state."""
        if run.state is RunState.IDLE:
            return
        if run.state is RunState.ERROR:
            self._transition(run, RunState.IDLE, cause=type(error).__name__)
            return
        self._fail(run, error)

    def _transition(
        self,
        run: PipelineRun,
        new_state: RunState,
        cause: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        old_state = run.transition_to(new_state)
        event = StatusEvent(
            run_id=run.run_id,
            from_state=old_state,
            to_state=new_state,
            message=message or STATUS_MESSAGES[new_state],
            cause=cause,
        )

        self.emitter.state_changed(
            run.run_id,
            from_state=old_state.value,
            to_state=new_state.value,
            message=event.message,
            cause=cause,
        )
        logger.info(
            "Run state changed",
            run_id=run.run_id,
            from_state=old_state.value,
            to_state=new_state.value,
            cause=cause,
        )

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Status listener failed", run_id=run.run_id)
