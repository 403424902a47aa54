"""
Microphone capture.

CaptureSession drives one RecordingSession at a time through

    Idle -> Requesting -> Recording -> Stopping -> Completed | Failed

States only move forward. A safety timer force-stops a recording that runs
past max_duration_ms and hands the result to on_auto_stop, so a forgotten
"stop" never leaves the microphone open.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from logging_setup import Component as LogComponent, get_logger
from observability.events import Component as ObsComponent, EventEmitter

from .errors import CaptureError, CaptureErrorKind, MicrophonePermissionError
from .interfaces import AudioInputBackend, AudioStream, Recorder, StatusCallback


logger = get_logger(LogComponent.CAPTURE)

# Negotiated in order; the first supported type wins
PREFERRED_MIME_TYPES = (
    "audio/webm;codecs=opus",
    "audio/webm",
    "audio/mp4",
    "audio/ogg;codecs=opus",
    "audio/wav",
)

CAPTURE_CONSTRAINTS: Dict[str, Any] = {
    "echoCancellation": True,
    "noiseSuppression": True,
    "autoGainControl": True,
}


class CaptureState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    RECORDING = "recording"
    STOPPING = "stopping"
    COMPLETED = "completed"
    FAILED = "failed"


_RANK = {
    CaptureState.IDLE: 0,
    CaptureState.REQUESTING: 1,
    CaptureState.RECORDING: 2,
    CaptureState.STOPPING: 3,
    CaptureState.COMPLETED: 4,
    CaptureState.FAILED: 4,
}

TERMINAL_STATES = (CaptureState.IDLE, CaptureState.COMPLETED, CaptureState.FAILED)


@dataclass(frozen=True)
class RecordedAudio:
    data: bytes
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class RecordingSession:
    """One microphone recording. Owned by CaptureSession."""

    mime_type: str = ""
    chunks: List[bytes] = field(default_factory=list)
    state: CaptureState = CaptureState.IDLE
    started_at: Optional[float] = None
    error: Optional[BaseException] = None
    cancelled: bool = False

    def transition_to(self, new_state: CaptureState) -> CaptureState:
        """
        Move forward to new_state. Returns the previous state.

        Raises RuntimeError on any backward or sideways move.
        """
        old_state = self.state
        if _RANK[new_state] <= _RANK[old_state]:
            raise RuntimeError(f"Invalid capture transition {old_state.value} -> {new_state.value}")
        self.state = new_state
        return old_state

    def add_chunk(self, data: bytes) -> None:
        if data:
            self.chunks.append(data)

    def join(self) -> bytes:
        return b"".join(self.chunks)


AutoStopCallback = Callable[[Optional[RecordedAudio], Optional[CaptureError]], Awaitable[None]]


class CaptureSession:
    """Microphone capture state machine over an injected AudioInputBackend."""

    def __init__(
        self,
        backend: AudioInputBackend,
        *,
        max_duration_ms: int = 15000,
        timeslice_ms: int = 1000,
        min_bytes: int = 1000,
        on_auto_stop: Optional[AutoStopCallback] = None,
        on_status: StatusCallback = None,
        emitter: Optional[EventEmitter] = None,
        now: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self._backend = backend
        self.max_duration_ms = max_duration_ms
        self.timeslice_ms = timeslice_ms
        self.min_bytes = min_bytes
        self.on_auto_stop = on_auto_stop
        self.on_status = on_status
        self.emitter = emitter or EventEmitter(ObsComponent.CAPTURE)
        self._now = now
        self._sleep = sleep

        self._session: Optional[RecordingSession] = None
        self._stream: Optional[AudioStream] = None
        self._recorder: Optional[Recorder] = None
        self._timer: Optional[asyncio.Task] = None
        self._run_id = ""

        # Result of the most recent stop, manual or automatic
        self.last_recording: Optional[RecordedAudio] = None
        self.last_failure: Optional[CaptureError] = None

    @property
    def session(self) -> Optional[RecordingSession]:
        return self._session

    @property
    def state(self) -> CaptureState:
        return self._session.state if self._session else CaptureState.IDLE

    @property
    def is_recording(self) -> bool:
        return self.state is CaptureState.RECORDING

    def _status(self, message: str) -> None:
        if self.on_status:
            self.on_status(message)

    async def start(self, run_id: str = "") -> RecordingSession:
        """
        Open the microphone and begin recording.

        A recording already in progress is stopped first; its failure, if
        any, is logged and does not prevent the new recording.
        """
        if self.state in (CaptureState.RECORDING, CaptureState.REQUESTING):
            try:
                await self.stop()
            except CaptureError as exc:
                logger.warning(
                    "Previous recording discarded on restart",
                    run_id=self._run_id,
                    kind=exc.kind,
                    error=str(exc),
                )

        self._run_id = run_id
        self.last_recording = None
        self.last_failure = None

        session = RecordingSession()
        self._session = session
        session.transition_to(CaptureState.REQUESTING)
        self._status("Listening to your voice...")
        logger.debug("Requesting microphone access", run_id=run_id)

        try:
            stream = await self._backend.request_stream(dict(CAPTURE_CONSTRAINTS))
        except PermissionError as exc:
            raise self._fail(session, MicrophonePermissionError(f"Microphone access denied: {exc}")) from exc
        except LookupError as exc:
            raise self._fail(
                session,
                CaptureError(f"No microphone found: {exc}", CaptureErrorKind.DEVICE_NOT_FOUND),
            ) from exc
        except Exception as exc:
            raise self._fail(
                session,
                CaptureError(f"Could not open microphone: {exc}", CaptureErrorKind.RECORDER_FAULT),
            ) from exc

        # Cancelled or superseded while waiting for permission
        if self._session is not session or session.state is not CaptureState.REQUESTING:
            stream.release()
            logger.info("Microphone granted after cancellation, released", run_id=run_id)
            return session

        self._stream = stream

        mime_type = next(
            (m for m in PREFERRED_MIME_TYPES if self._backend.is_type_supported(m)),
            None,
        )
        if mime_type is None:
            raise self._fail(
                session,
                CaptureError(
                    "None of the supported recording formats is available",
                    CaptureErrorKind.UNSUPPORTED_FORMAT,
                ),
            )

        try:
            recorder = self._backend.create_recorder(stream, mime_type)
            self._recorder = recorder
            session.mime_type = getattr(recorder, "mime_type", None) or mime_type
            recorder.start(self.timeslice_ms, session.add_chunk, self._on_recorder_error(session))
        except Exception as exc:
            raise self._fail(
                session,
                CaptureError(f"Recorder failed to start: {exc}", CaptureErrorKind.RECORDER_FAULT),
            ) from exc

        session.started_at = self._now()
        session.transition_to(CaptureState.RECORDING)
        self.emitter.capture_started(run_id, session.mime_type)
        logger.info(
            "Recording started",
            run_id=run_id,
            mime_type=session.mime_type,
            timeslice_ms=self.timeslice_ms,
        )

        self._timer = asyncio.get_running_loop().create_task(self._safety_timeout(session))
        return session

    def _on_recorder_error(self, session: RecordingSession) -> Callable[[BaseException], None]:
        def on_error(exc: BaseException) -> None:
            logger.warning("Recorder error", run_id=self._run_id, error=str(exc))
            if session.error is None:
                session.error = exc
        return on_error

    async def stop(self) -> Optional[RecordedAudio]:
        """
        Stop recording and return the audio.

        No-op returning None when nothing is recording. Raises CaptureError
        (TOO_SHORT, RECORDER_FAULT) when the recording is unusable.
        """
        session = self._session
        if session is None or session.state in TERMINAL_STATES:
            return None
        if session.state is CaptureState.REQUESTING:
            await self.cancel()
            return None
        if session.state is CaptureState.STOPPING:
            # Another stop is already flushing this recording
            return None
        return await self._stop(session, auto_stopped=False)

    async def _stop(self, session: RecordingSession, auto_stopped: bool) -> Optional[RecordedAudio]:
        self._cancel_timer()
        session.transition_to(CaptureState.STOPPING)
        self._status("Processing recording...")

        recorder = self._recorder
        try:
            if recorder is not None:
                await recorder.stop()
        except Exception as exc:
            raise self._fail(
                session,
                CaptureError(f"Recorder failed to stop: {exc}", CaptureErrorKind.RECORDER_FAULT),
            ) from exc
        finally:
            self._release()

        if session.state is not CaptureState.STOPPING:
            # Cancelled during the flush
            return None

        if session.error is not None:
            raise self._fail(
                session,
                CaptureError(f"Recording failed: {session.error}", CaptureErrorKind.RECORDER_FAULT),
            ) from session.error

        data = session.join()
        if len(data) < self.min_bytes:
            raise self._fail(
                session,
                CaptureError(
                    f"Recording too short ({len(data)} bytes)",
                    CaptureErrorKind.TOO_SHORT,
                ),
            )

        recording = RecordedAudio(data=data, mime_type=session.mime_type)
        session.transition_to(CaptureState.COMPLETED)
        self.last_recording = recording

        latency_ms = None
        if session.started_at is not None:
            latency_ms = int((self._now() - session.started_at) * 1000)
        self.emitter.capture_completed(
            self._run_id,
            size=recording.size,
            mime_type=recording.mime_type,
            latency_ms=latency_ms,
            auto_stopped=auto_stopped,
        )
        logger.info(
            "Recording completed",
            run_id=self._run_id,
            size=recording.size,
            chunks=len(session.chunks),
            auto_stopped=auto_stopped,
        )
        return recording

    async def cancel(self) -> None:
        """Discard the current recording without producing a result."""
        session = self._session
        if session is None or session.state in TERMINAL_STATES:
            return

        self._cancel_timer()
        session.cancelled = True
        session.transition_to(CaptureState.FAILED)

        recorder = self._recorder
        self._recorder = None
        try:
            if recorder is not None:
                await recorder.stop()
        except Exception as exc:
            logger.warning("Recorder stop failed during cancel", run_id=self._run_id, error=str(exc))
        finally:
            self._release()

        logger.info("Recording cancelled", run_id=self._run_id)

    async def _safety_timeout(self, session: RecordingSession) -> None:
        await self._sleep(self.max_duration_ms / 1000)

        if self._session is not session or session.state is not CaptureState.RECORDING:
            return

        logger.info(
            "Safety timeout: auto-stopping recording",
            run_id=self._run_id,
            max_duration_ms=self.max_duration_ms,
        )

        recording: Optional[RecordedAudio] = None
        failure: Optional[CaptureError] = None
        try:
            recording = await self._stop(session, auto_stopped=True)
        except CaptureError as exc:
            # Already recorded as last_failure
            failure = exc

        if session.cancelled or self.on_auto_stop is None:
            return
        try:
            await self.on_auto_stop(recording, failure)
        except Exception:
            logger.exception("Auto-stop callback failed", run_id=self._run_id)

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        # The timer itself calls _stop; it must not cancel itself
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

    def _release(self) -> None:
        stream, self._stream = self._stream, None
        self._recorder = None
        if stream is not None:
            stream.release()

    def _fail(self, session: RecordingSession, error: CaptureError) -> CaptureError:
        if session.state not in (CaptureState.COMPLETED, CaptureState.FAILED):
            session.transition_to(CaptureState.FAILED)
        self._cancel_timer()
        self._release()
        self.last_failure = error
        self.emitter.capture_failed(self._run_id, kind=error.kind, reason=str(error))
        logger.warning(
            "Recording failed",
            run_id=self._run_id,
            kind=error.kind,
            error=str(error),
        )
        return error
