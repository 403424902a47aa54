"""
Voice pipeline error taxonomy.

Every failure the pipeline surfaces is a PipelineError carrying a stable
`kind` string, so the orchestrator can map it to one status line without
inspecting messages.
"""
from typing import List, Optional


class CaptureErrorKind:
    """Stable capture failure kinds."""

    TOO_SHORT = "capture.too_short"
    DEVICE_NOT_FOUND = "capture.device_not_found"
    RECORDER_FAULT = "capture.recorder_fault"
    PERMISSION_DENIED = "capture.permission_denied"
    UNSUPPORTED_FORMAT = "capture.unsupported_format"


class NetworkErrorKind:
    """Stable network failure kinds."""

    TIMEOUT = "network.timeout"
    SERVER_ERROR = "network.server_error"
    CONNECTION = "network.connection"
    INVALID_RESPONSE = "network.invalid_response"


class PlaybackErrorKind:
    ALL_STRATEGIES_EXHAUSTED = "playback.all_strategies_exhausted"


class PipelineError(Exception):
    """Base class for all voice pipeline failures."""

    kind: str = "pipeline.error"

    def __init__(self, message: str, kind: Optional[str] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class CaptureError(PipelineError):
    kind = CaptureErrorKind.RECORDER_FAULT


class MicrophonePermissionError(CaptureError):
    """The user or the platform denied microphone access."""

    kind = CaptureErrorKind.PERMISSION_DENIED

    def __init__(self, message: str = "Microphone access denied"):
        super().__init__(message, CaptureErrorKind.PERMISSION_DENIED)


class NetworkError(PipelineError):
    kind = NetworkErrorKind.CONNECTION

    def __init__(self, message: str, kind: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message, kind)
        self.status = status


class PlaybackError(PipelineError):
    """Raised only once every playback strategy has failed."""

    kind = PlaybackErrorKind.ALL_STRATEGIES_EXHAUSTED

    def __init__(self, message: str, attempts: Optional[List] = None):
        super().__init__(message, PlaybackErrorKind.ALL_STRATEGIES_EXHAUSTED)
        self.attempts = list(attempts or [])


class ScoringInvariantViolation(PipelineError):
    """A scoring strategy produced a score outside [0, 1]."""

    kind = "scoring.invariant_violation"

    def __init__(self, category: str, score: float):
        super().__init__(f"{category} score {score!r} outside [0, 1]")
        self.category = category
        self.score = score


class AutoplayBlockedError(PipelineError):
    """
    Signal from an output backend that playback needs a user gesture.

    Handled inside PlaybackController; never escapes it.
    """

    kind = "playback.autoplay_blocked"

    def __init__(self, message: str = "Autoplay blocked"):
        super().__init__(message)


_STATUS_MESSAGES = {
    CaptureErrorKind.TOO_SHORT: "Recording too short. Please speak longer.",
    CaptureErrorKind.DEVICE_NOT_FOUND: "No microphone found.",
    CaptureErrorKind.RECORDER_FAULT: "Recording failed.",
    CaptureErrorKind.PERMISSION_DENIED: "Microphone access denied. Please allow microphone access.",
    CaptureErrorKind.UNSUPPORTED_FORMAT: "Audio recording is not supported on this device.",
    NetworkErrorKind.TIMEOUT: "Request timed out. Please try again.",
    NetworkErrorKind.SERVER_ERROR: "The server could not process the request.",
    NetworkErrorKind.CONNECTION: "Could not reach the server.",
    NetworkErrorKind.INVALID_RESPONSE: "Received an invalid response from the server.",
    PlaybackErrorKind.ALL_STRATEGIES_EXHAUSTED: "Audio playback failed.",
}


def status_message(error: BaseException) -> str:
    """
    One human-readable status line for a failure.

    Pipeline errors map by kind; anything else falls back to its message.
    """
    kind = getattr(error, "kind", None)
    if kind in _STATUS_MESSAGES:
        return f"Error: {_STATUS_MESSAGES[kind]}"
    detail = str(error) or type(error).__name__
    return f"Error: {detail}"
