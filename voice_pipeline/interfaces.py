"""
Capabilities the pipeline needs from its environment.

The pipeline never touches a sound device directly. Audio input and output
are injected as backends implementing these protocols, and the network steps
as Transcriber / Synthesizer / Evaluator.

Backend error conventions:
- request_stream raises builtin PermissionError when access is denied and
  LookupError when no input device exists.
- MediaElement.play / BufferSource.start raise AutoplayBlockedError when the
  platform requires a user gesture first.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Optional, Protocol


class AudioStream(Protocol):
    def release(self) -> None:
        """Stop every track and give the device back."""
        ...


class Recorder(Protocol):
    mime_type: str

    def start(
        self,
        timeslice_ms: int,
        on_data: Callable[[bytes], None],
        on_error: Callable[[BaseException], None],
    ) -> None:
        ...

    async def stop(self) -> None:
        """Flush pending data through on_data, then return."""
        ...


class AudioInputBackend(Protocol):
    async def request_stream(self, constraints: Dict[str, Any]) -> AudioStream:
        ...

    def is_type_supported(self, mime_type: str) -> bool:
        ...

    def create_recorder(self, stream: AudioStream, mime_type: str) -> Recorder:
        ...


class MediaElement(Protocol):
    volume: float

    async def play(self) -> None:
        """Begin playback. Returns once playback has started."""
        ...

    async def wait_ended(self) -> None:
        """Resolve when playback ends; raise if the element errors."""
        ...

    def pause(self) -> None:
        ...

    def reset(self) -> None:
        """Rewind to the start and drop the source."""
        ...


class GainNode(Protocol):
    gain: float

    def disconnect(self) -> None:
        ...


class BufferSource(Protocol):
    def start(self) -> None:
        ...

    async def wait_ended(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def disconnect(self) -> None:
        ...


class AudioOutputBackend(Protocol):
    def create_element(self, src: str, volume: float) -> MediaElement:
        ...

    def create_object_url(self, data: bytes, mime_type: str) -> str:
        ...

    def revoke_object_url(self, url: str) -> None:
        ...

    async def decode_audio(self, data: bytes) -> Any:
        ...

    def connect_buffer(self, decoded: Any, volume: float) -> tuple[BufferSource, GainNode]:
        """Build buffer-source -> gain -> destination for decoded audio."""
        ...

    async def resume(self) -> None:
        """Resume a suspended audio subsystem after a user gesture."""
        ...


class Transcriber(Protocol):
    def transcribe(self, data: bytes, mime_type: str) -> Awaitable[Any]:
        ...


class Synthesizer(Protocol):
    def synthesize(self, text: str) -> Awaitable[Any]:
        ...


class Evaluator(Protocol):
    def evaluate(self, proposal: Any) -> Awaitable[Any]:
        ...


StatusCallback = Optional[Callable[[str], None]]
