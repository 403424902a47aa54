"""
Synthesized-audio playback with ordered fallback strategies.

Strategies, tried in order until one plays to the end:
1. direct_element: HEAD the URL, then play it through a media element
2. fetch_blob: download (or use in-memory data), play from a local object URL
3. decode_buffer: decode the bytes and play through source -> gain -> destination

An autoplay block pauses the current strategy on a single pending
user-gesture continuation (UserGestureGate). A gesture resumes the audio
subsystem and retries the same strategy once; no gesture within the
caller's window falls through to the next strategy.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union
from urllib.parse import urljoin

import aiohttp

from logging_setup import Component as LogComponent, get_logger
from observability.events import Component as ObsComponent, EventEmitter

from .errors import AutoplayBlockedError, NetworkError, NetworkErrorKind, PlaybackError
from .interfaces import AudioOutputBackend, BufferSource, GainNode, MediaElement, StatusCallback


logger = get_logger(LogComponent.PLAYBACK)

DEFAULT_MIME_TYPE = "audio/mpeg"


@dataclass(frozen=True)
class AudioSource:
    """What to play: a URL, in-memory bytes, or both."""

    url: Optional[str] = None
    data: Optional[bytes] = None
    mime_type: str = DEFAULT_MIME_TYPE

    def __post_init__(self):
        if not self.url and not self.data:
            raise ValueError("AudioSource needs a url or data")

    @classmethod
    def coerce(cls, source: Union[str, "AudioSource"]) -> "AudioSource":
        if isinstance(source, AudioSource):
            return source
        if isinstance(source, str):
            return cls(url=source)
        raise TypeError(f"Cannot play {type(source).__name__}")

    def describe(self) -> str:
        return self.url or f"<{len(self.data or b'')} bytes {self.mime_type}>"


class PlaybackOutcome(str, Enum):
    SUCCESS = "success"
    BLOCKED = "blocked"
    FAILED = "failed"


@dataclass
class PlaybackAttempt:
    strategy_id: str
    attempt_number: int
    outcome: PlaybackOutcome
    error: Optional[str] = None


class UserGestureGate:
    """
    Single pending continuation waiting for a user gesture.

    arm() returns a future that resolves True on notify() and False on
    dismiss(). Arming again dismisses the previous continuation.
    """

    def __init__(self):
        self._pending: Optional[asyncio.Future] = None

    @property
    def pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def arm(self) -> asyncio.Future:
        self.dismiss()
        self._pending = asyncio.get_running_loop().create_future()
        return self._pending

    def notify(self) -> bool:
        return self._resolve(True)

    def dismiss(self) -> bool:
        return self._resolve(False)

    def _resolve(self, value: bool) -> bool:
        fut, self._pending = self._pending, None
        if fut is None or fut.done():
            return False
        fut.set_result(value)
        return True


class AudioFetcher:
    """HTTP access to synthesized audio, relative URLs resolved against base_url."""

    def __init__(self, session: aiohttp.ClientSession, base_url: str = ""):
        self._session = session
        self.base_url = base_url.rstrip("/")

    def resolve(self, url: str) -> str:
        if not self.base_url:
            return url
        return urljoin(self.base_url + "/", url)

    async def head(self, url: str) -> None:
        """Raise NetworkError unless the URL is reachable."""
        resolved = self.resolve(url)
        try:
            async with self._session.head(resolved) as response:
                if response.status >= 400:
                    raise NetworkError(
                        f"HEAD {resolved} returned {response.status}",
                        NetworkErrorKind.SERVER_ERROR,
                        status=response.status,
                    )
        except aiohttp.ClientError as e:
            raise NetworkError(f"HEAD {resolved} failed: {e}", NetworkErrorKind.CONNECTION) from e

    async def get(self, url: str) -> Tuple[bytes, str]:
        """Download the resource; returns (bytes, mime type)."""
        resolved = self.resolve(url)
        try:
            async with self._session.get(resolved) as response:
                if response.status >= 400:
                    raise NetworkError(
                        f"GET {resolved} returned {response.status}",
                        NetworkErrorKind.SERVER_ERROR,
                        status=response.status,
                    )
                data = await response.read()
                mime_type = response.content_type or DEFAULT_MIME_TYPE
        except aiohttp.ClientError as e:
            raise NetworkError(f"GET {resolved} failed: {e}", NetworkErrorKind.CONNECTION) from e

        if not data:
            raise NetworkError(f"GET {resolved} returned no audio", NetworkErrorKind.INVALID_RESPONSE)
        return data, mime_type


# --- Handles ---

class PlaybackHandle(ABC):
    """One prepared playback. release() is idempotent."""

    def __init__(self, strategy_id: str, on_release: Optional[Callable[[], None]] = None):
        self.strategy_id = strategy_id
        self._on_release = on_release
        self._released = False

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def wait_finished(self) -> None:
        ...

    @abstractmethod
    def halt(self) -> None:
        ...

    @abstractmethod
    def set_volume(self, volume: float) -> None:
        ...

    def _disconnect(self) -> None:
        pass

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._disconnect()
        if self._on_release:
            self._on_release()


class ElementHandle(PlaybackHandle):
    def __init__(self, strategy_id: str, element: MediaElement, on_release: Optional[Callable[[], None]] = None):
        super().__init__(strategy_id, on_release)
        self.element = element

    async def start(self) -> None:
        await self.element.play()

    async def wait_finished(self) -> None:
        await self.element.wait_ended()

    def halt(self) -> None:
        self.element.pause()
        self.element.reset()

    def set_volume(self, volume: float) -> None:
        self.element.volume = volume


class BufferHandle(PlaybackHandle):
    def __init__(self, strategy_id: str, source: BufferSource, gain: GainNode):
        super().__init__(strategy_id)
        self.source = source
        self.gain = gain
        self._started = False

    async def start(self) -> None:
        self.source.start()
        self._started = True

    async def wait_finished(self) -> None:
        await self.source.wait_ended()

    def halt(self) -> None:
        if self._started:
            self.source.stop()
            self._started = False

    def set_volume(self, volume: float) -> None:
        self.gain.gain = volume

    def _disconnect(self) -> None:
        self.source.disconnect()
        self.gain.disconnect()


# --- Strategies ---

class DirectElementStrategy:
    id = "direct_element"

    def __init__(self, output: AudioOutputBackend, fetcher: AudioFetcher):
        self._output = output
        self._fetcher = fetcher

    def applies(self, source: AudioSource) -> bool:
        return source.url is not None

    async def prepare(self, source: AudioSource, volume: float) -> PlaybackHandle:
        await self._fetcher.head(source.url)
        element = self._output.create_element(self._fetcher.resolve(source.url), volume)
        return ElementHandle(self.id, element)


class FetchBlobStrategy:
    id = "fetch_blob"

    def __init__(self, output: AudioOutputBackend, fetcher: AudioFetcher):
        self._output = output
        self._fetcher = fetcher

    def applies(self, source: AudioSource) -> bool:
        return True

    async def prepare(self, source: AudioSource, volume: float) -> PlaybackHandle:
        if source.data:
            data, mime_type = source.data, source.mime_type
        else:
            data, mime_type = await self._fetcher.get(source.url)

        object_url = self._output.create_object_url(data, mime_type)
        try:
            element = self._output.create_element(object_url, volume)
        except Exception:
            self._output.revoke_object_url(object_url)
            raise
        return ElementHandle(self.id, element, on_release=lambda: self._output.revoke_object_url(object_url))


class DecodeBufferStrategy:
    id = "decode_buffer"

    def __init__(self, output: AudioOutputBackend, fetcher: AudioFetcher):
        self._output = output
        self._fetcher = fetcher

    def applies(self, source: AudioSource) -> bool:
        return True

    async def prepare(self, source: AudioSource, volume: float) -> PlaybackHandle:
        if source.data:
            data = source.data
        else:
            data, _ = await self._fetcher.get(source.url)
        decoded = await self._output.decode_audio(data)
        buffer_source, gain = self._output.connect_buffer(decoded, volume)
        return BufferHandle(self.id, buffer_source, gain)


def default_strategies(output: AudioOutputBackend, fetcher: AudioFetcher) -> List[Any]:
    return [
        DirectElementStrategy(output, fetcher),
        FetchBlobStrategy(output, fetcher),
        DecodeBufferStrategy(output, fetcher),
    ]


class PlaybackController:
    """
    Plays synthesized audio, holding at most one active handle.

    play() returns when playback ends naturally or stop() is called, and
    raises PlaybackError only after every strategy has failed.
    """

    def __init__(
        self,
        output: AudioOutputBackend,
        fetcher: AudioFetcher,
        *,
        strategies: Optional[Sequence[Any]] = None,
        volume: float = 0.8,
        gesture_timeout: Optional[float] = 10.0,
        on_status: StatusCallback = None,
        emitter: Optional[EventEmitter] = None,
    ):
        self._output = output
        self.strategies = list(strategies) if strategies is not None else default_strategies(output, fetcher)
        self.volume = min(max(volume, 0.0), 1.0)
        self.gesture_timeout = gesture_timeout
        self.on_status = on_status
        self.emitter = emitter or EventEmitter(ObsComponent.PLAYBACK)

        self.gate = UserGestureGate()
        self.last_attempts: List[PlaybackAttempt] = []
        self._active: Optional[PlaybackHandle] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def is_playing(self) -> bool:
        return self._active is not None

    @property
    def awaiting_gesture(self) -> bool:
        return self.gate.pending

    def _status(self, message: str) -> None:
        if self.on_status:
            self.on_status(message)

    def set_volume(self, level: float) -> float:
        self.volume = min(max(level, 0.0), 1.0)
        if self._active is not None:
            self._active.set_volume(self.volume)
        logger.debug("Volume set", volume=self.volume)
        return self.volume

    def notify_user_gesture(self) -> bool:
        """Resume a playback waiting on a user gesture. False if none is waiting."""
        return self.gate.notify()

    def dismiss_gesture(self) -> bool:
        """Give up on a pending gesture; playback falls through to the next strategy."""
        return self.gate.dismiss()

    def stop(self) -> None:
        """Halt and release the active handle. Idempotent."""
        if self._stop_event is not None:
            self._stop_event.set()
        self.gate.dismiss()

        handle, self._active = self._active, None
        if handle is not None:
            handle.halt()
            handle.release()
            logger.info("Playback stopped", strategy=handle.strategy_id)

    async def play(
        self,
        source: Union[str, AudioSource],
        *,
        run_id: str = "",
        gesture_timeout: Optional[float] = None,
    ) -> None:
        source = AudioSource.coerce(source)
        timeout = self.gesture_timeout if gesture_timeout is None else gesture_timeout

        # At most one playing handle
        self.stop()
        stop_event = asyncio.Event()
        self._stop_event = stop_event
        attempts: List[PlaybackAttempt] = []
        self.last_attempts = attempts

        def record(strategy_id: str, outcome: PlaybackOutcome, error: Optional[BaseException] = None) -> None:
            attempt = PlaybackAttempt(
                strategy_id=strategy_id,
                attempt_number=len(attempts) + 1,
                outcome=outcome,
                error=str(error) if error is not None else None,
            )
            attempts.append(attempt)
            self.emitter.playback_attempt(
                run_id,
                strategy_id=strategy_id,
                attempt_number=attempt.attempt_number,
                outcome=outcome.value,
                error=attempt.error,
            )
            logger.info(
                "Playback attempt",
                run_id=run_id,
                strategy=strategy_id,
                attempt=attempt.attempt_number,
                outcome=outcome.value,
                error=attempt.error,
            )

        self._status("Playing audio...")
        logger.debug("Playback requested", run_id=run_id, source=source.describe())

        for strategy in self.strategies:
            if stop_event.is_set():
                return
            if not strategy.applies(source):
                continue

            try:
                handle = await strategy.prepare(source, self.volume)
            except Exception as e:
                record(strategy.id, PlaybackOutcome.FAILED, e)
                continue

            if stop_event.is_set():
                handle.release()
                return
            self._active = handle

            try:
                await handle.start()
            except AutoplayBlockedError as e:
                record(strategy.id, PlaybackOutcome.BLOCKED, e)
                self._status("Autoplay blocked. Click to enable audio.")
                if not await self._retry_after_gesture(handle, timeout, stop_event, record):
                    self._drop(handle)
                    if stop_event.is_set():
                        return
                    continue
            except Exception as e:
                record(strategy.id, PlaybackOutcome.FAILED, e)
                self._drop(handle)
                continue

            try:
                finished = await self._wait_until_done(handle, stop_event)
            except Exception as e:
                record(strategy.id, PlaybackOutcome.FAILED, e)
                self._drop(handle)
                if stop_event.is_set():
                    return
                continue

            if not finished:
                # stop() already released the handle
                self.emitter.playback_completed(run_id, strategy_id=strategy.id, stopped=True)
                return

            record(strategy.id, PlaybackOutcome.SUCCESS)
            self._drop(handle)
            self._status("Playback complete")
            self.emitter.playback_completed(run_id, strategy_id=strategy.id)
            return

        if stop_event.is_set():
            return

        self.emitter.playback_exhausted(run_id, attempts=len(attempts))
        logger.error("All playback strategies failed", run_id=run_id, attempts=len(attempts))
        self._status("Audio playback failed")
        raise PlaybackError("All playback strategies failed", attempts)

    async def _retry_after_gesture(
        self,
        handle: PlaybackHandle,
        timeout: Optional[float],
        stop_event: asyncio.Event,
        record: Callable[..., None],
    ) -> bool:
        """Wait for a gesture, then start the same handle once more."""
        fut = self.gate.arm()
        try:
            gestured = await asyncio.wait_for(fut, timeout)
        except asyncio.TimeoutError:
            self.gate.dismiss()
            logger.info("No user gesture within window", strategy=handle.strategy_id, timeout_s=timeout)
            return False

        if not gestured or stop_event.is_set():
            return False

        try:
            await self._output.resume()
            await handle.start()
        except Exception as e:
            record(handle.strategy_id, PlaybackOutcome.FAILED, e)
            return False
        return True

    async def _wait_until_done(self, handle: PlaybackHandle, stop_event: asyncio.Event) -> bool:
        """True when playback ended naturally, False when stopped."""
        finished = asyncio.ensure_future(handle.wait_finished())
        stopped = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait({finished, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (finished, stopped):
                if not task.done():
                    task.cancel()

        if finished.done() and not finished.cancelled():
            # Propagates a mid-playback error
            finished.result()
            return not stop_event.is_set()
        return False

    def _drop(self, handle: PlaybackHandle) -> None:
        if self._active is handle:
            self._active = None
            handle.halt()
        handle.release()
