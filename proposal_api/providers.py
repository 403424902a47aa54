"""
Speech providers behind the Proposal API.

- WhisperProvider: OpenAI Whisper transcription (multipart upload)
- ElevenLabsProvider: ElevenLabs text-to-speech, saved as MP3 under the
  downloads directory and served from /downloads

Each provider keeps one pooled aiohttp session, created lazily and closed
on application shutdown.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiohttp

from logging_setup import Component, get_logger

from .config import FALLBACK_VOICE_ID, ServerConfig
from .errors import ProviderError, ProviderNotConfigured


logger = get_logger(Component.PROVIDER)

WHISPER_MODEL = "whisper-1"
WHISPER_MAX_BYTES = 25 * 1024 * 1024


class _PooledProvider:
    """Lazily created aiohttp session with connection pooling."""

    name = "provider"

    def __init__(self, pool_size: int = 10, total_timeout: Optional[float] = None):
        self._pool_size = pool_size
        self._total_timeout = total_timeout
        self._http_session: Optional[aiohttp.ClientSession] = None

    def _get_or_create_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            connector = aiohttp.TCPConnector(
                limit=self._pool_size,
                limit_per_host=self._pool_size,
                ttl_dns_cache=300,
                force_close=False,
            )
            self._http_session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self._total_timeout, connect=10.0),
            )
            logger.info("Provider connection pool created", provider=self.name, pool_size=self._pool_size)
        return self._http_session

    async def aclose(self) -> None:
        """
        Best-effort cleanup of the HTTP session.
        Safe to call multiple times.
        """
        if self._http_session is not None:
            try:
                await self._http_session.close()
                logger.info("Provider connection pool closed", provider=self.name)
            except Exception as e:
                logger.warning(
                    "Error closing provider HTTP session",
                    provider=self.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                self._http_session = None


class WhisperProvider(_PooledProvider):
    name = "openai_whisper"

    def __init__(self, api_key: Optional[str], base_url: str = "https://api.openai.com"):
        super().__init__(total_timeout=60.0)
        self._api_key = api_key
        self.url = f"{base_url.rstrip('/')}/v1/audio/transcriptions"

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def transcribe(
        self,
        data: bytes,
        filename: str,
        content_type: str,
        language: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Returns {"text", "language"}."""
        if not self._api_key:
            raise ProviderNotConfigured("OpenAI", "OPENAI_API_KEY")
        if len(data) > WHISPER_MAX_BYTES:
            raise ProviderError(
                f"Audio file too large ({len(data)} bytes, limit {WHISPER_MAX_BYTES})",
                self.name,
                status=413,
            )

        form = aiohttp.FormData()
        form.add_field("file", data, filename=filename, content_type=content_type)
        form.add_field("model", WHISPER_MODEL)
        if language:
            form.add_field("language", language)
        if prompt:
            form.add_field("prompt", prompt)

        t_start = time.perf_counter()
        session = self._get_or_create_session()
        try:
            async with session.post(
                self.url,
                data=form,
                headers={"Authorization": f"Bearer {self._api_key}"},
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(
                        "Whisper API error",
                        status_code=response.status,
                        error_text=error_text[:200],
                    )
                    raise ProviderError(
                        f"Whisper API error: {response.status}",
                        self.name,
                        status=response.status,
                    )
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderError(f"Whisper network error: {type(e).__name__}", self.name) from e

        logger.info(
            "Whisper call completed",
            size=len(data),
            text_length=len(payload.get("text") or ""),
            latency_ms=int((time.perf_counter() - t_start) * 1000),
        )
        return {"text": payload.get("text") or "", "language": payload.get("language") or language}


class ElevenLabsProvider(_PooledProvider):
    name = "elevenlabs"

    def __init__(self, config: ServerConfig):
        super().__init__(total_timeout=config.synthesis_timeout_s)
        self._api_key = config.eleven_labs_api_key
        self.base_url = config.eleven_labs_base_url.rstrip("/")
        self.default_voice_id = config.default_voice_id
        self.default_model_id = config.default_model_id
        self.default_voice_settings = dict(config.voice_settings)
        self.download_dir = Path(config.download_dir)

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _headers(self) -> Dict[str, str]:
        if not self._api_key:
            raise ProviderNotConfigured("Eleven Labs", "ELEVEN_LABS_API_KEY")
        return {"xi-api-key": self._api_key}

    async def list_voices(self) -> List[Dict[str, Any]]:
        headers = self._headers()
        session = self._get_or_create_session()
        try:
            async with session.get(f"{self.base_url}/v1/voices", headers=headers) as response:
                if response.status != 200:
                    raise ProviderError(
                        f"ElevenLabs voices error: {response.status}",
                        self.name,
                        status=response.status,
                    )
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderError(f"ElevenLabs network error: {type(e).__name__}", self.name) from e
        return list(payload.get("voices") or [])

    async def resolve_voice_id(self, requested: Optional[str]) -> str:
        """
        Requested voice if the account has it, else the first available
        voice, else the standard fallback voice.
        """
        requested = requested or self.default_voice_id
        try:
            voices = await self.list_voices()
        except ProviderError as e:
            logger.warning(
                "Voice lookup failed, using fallback voice",
                error=str(e),
                status=e.status,
                voice_id=FALLBACK_VOICE_ID,
            )
            return FALLBACK_VOICE_ID

        if requested and any(v.get("voice_id") == requested for v in voices):
            return requested
        if voices:
            return voices[0]["voice_id"]
        return FALLBACK_VOICE_ID

    async def synthesize(
        self,
        text: str,
        voice_id: Optional[str] = None,
        model_id: Optional[str] = None,
        voice_settings: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Generate speech, save it, return {"audio_url", "voice_id", "model_id"}."""
        headers = self._headers()
        use_voice_id = await self.resolve_voice_id(voice_id)
        use_model_id = model_id or self.default_model_id
        body = {
            "text": text,
            "model_id": use_model_id,
            "voice_settings": voice_settings or self.default_voice_settings,
        }

        t_start = time.perf_counter()
        session = self._get_or_create_session()
        try:
            async with session.post(
                f"{self.base_url}/v1/text-to-speech/{use_voice_id}",
                json=body,
                headers={**headers, "Accept": "audio/mpeg"},
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(
                        "ElevenLabs API error",
                        status_code=response.status,
                        error_text=error_text[:200],
                    )
                    raise ProviderError(
                        f"ElevenLabs API error: {response.status}",
                        self.name,
                        status=response.status,
                    )
                audio = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderError(f"ElevenLabs network error: {type(e).__name__}", self.name) from e

        if not audio:
            raise ProviderError("ElevenLabs returned no audio", self.name)

        filename = f"aikira_response_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}.mp3"
        self.download_dir.mkdir(parents=True, exist_ok=True)
        (self.download_dir / filename).write_bytes(audio)

        logger.info(
            "Speech generated",
            voice_id=use_voice_id,
            model_id=use_model_id,
            text_length=len(text),
            size=len(audio),
            latency_ms=int((time.perf_counter() - t_start) * 1000),
        )
        return {
            "audio_url": f"/downloads/{filename}",
            "voice_id": use_voice_id,
            "model_id": use_model_id,
        }


def prune_downloads(download_dir: Path, max_age_s: int, now: Optional[float] = None) -> int:
    """Delete generated audio older than max_age_s. Returns the number removed."""
    if not download_dir.exists():
        return 0
    cutoff = (now if now is not None else time.time()) - max_age_s
    removed = 0
    for path in download_dir.iterdir():
        try:
            if path.is_file() and path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except OSError as e:
            logger.warning("Could not prune generated audio", path=str(path), error=type(e).__name__)
    if removed:
        logger.info("Pruned generated audio", removed=removed, download_dir=str(download_dir))
    return removed
