"""
Voice Pipeline configuration.

Loads pipeline settings from environment variables. Local env files
(.env_local / .env.local / .env) are read with python-dotenv and never
override variables that are already set.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


ENV_FILES = (".env_local", ".env.local", ".env")


def load_env_files(root: Optional[Path] = None) -> None:
    """Best-effort load of local env files from the repository root."""
    root = root or Path(__file__).parent.parent
    for name in ENV_FILES:
        p = root / name
        if p.exists():
            load_dotenv(p, override=False)


def _clean_env(key: str) -> Optional[str]:
    value = os.environ.get(key)
    if not value:
        return None

    # Strip comments (everything after #)
    if "#" in value:
        value = value.split("#")[0]

    value = value.strip()
    return value or None


def parse_int_env(key: str, default: int) -> int:
    """
    Parse integer environment variable, stripping comments and whitespace.

    Handles cases like:
    - "15000  # comment" -> 15000
    - "15000" -> 15000
    - None -> default
    """
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def parse_float_env(key: str, default: float) -> float:
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def parse_bool_env(key: str, default: bool) -> bool:
    value = _clean_env(key)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


@dataclass
class PipelineConfig:
    """Voice pipeline configuration."""

    # Proposal API server the clients talk to
    api_base_url: str = "http://localhost:3000"

    # Timeouts
    transcription_timeout_ms: int = 30000
    capture_max_duration_ms: int = 15000

    # Capture
    capture_timeslice_ms: int = 1000
    capture_min_bytes: int = 1000

    # Playback
    playback_volume: float = 0.8
    playback_gesture_wait_ms: int = 10000

    # Provider hints passed through to the API
    transcription_language: Optional[str] = None
    default_voice_id: Optional[str] = None
    default_model_id: Optional[str] = None

    # "heuristic" | "deterministic"
    scoring_strategy: str = "heuristic"
    # "local" (in-process ScoringEngine) | "remote" (evaluation endpoint)
    evaluation_mode: str = "local"

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Load configuration from environment variables."""
        load_env_files()
        return cls(
            api_base_url=os.environ.get("API_BASE_URL", "http://localhost:3000").rstrip("/"),
            transcription_timeout_ms=parse_int_env("TRANSCRIPTION_TIMEOUT_MS", default=30000),
            capture_max_duration_ms=parse_int_env("CAPTURE_MAX_DURATION_MS", default=15000),
            capture_timeslice_ms=parse_int_env("CAPTURE_TIMESLICE_MS", default=1000),
            capture_min_bytes=parse_int_env("CAPTURE_MIN_BYTES", default=1000),
            playback_volume=parse_float_env("PLAYBACK_VOLUME", default=0.8),
            playback_gesture_wait_ms=parse_int_env("PLAYBACK_GESTURE_WAIT_MS", default=10000),
            transcription_language=os.environ.get("TRANSCRIPTION_LANGUAGE") or None,
            default_voice_id=os.environ.get("DEFAULT_VOICE_ID") or None,
            default_model_id=os.environ.get("DEFAULT_MODEL_ID") or None,
            scoring_strategy=os.environ.get("SCORING_STRATEGY", "heuristic").lower(),
            evaluation_mode=os.environ.get("EVALUATION_MODE", "local").lower(),
        )
