"""
Proposal API server configuration.

Loads from environment variables (and local env files via python-dotenv)
with sensible defaults. Provider keys may be absent at startup: the server
still runs and the affected endpoints answer 500.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from voice_pipeline.config import load_env_files, parse_bool_env, parse_float_env, parse_int_env


DEFAULT_MODEL_ID = "eleven_multilingual_v2"
FALLBACK_VOICE_ID = "OYTbf65OHHFELVut7v1H"


@dataclass
class ServerConfig:
    """Proposal API server configuration."""

    # Providers
    openai_api_key: Optional[str] = None
    eleven_labs_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com"
    eleven_labs_base_url: str = "https://api.elevenlabs.io"

    # Synthesis defaults
    default_voice_id: Optional[str] = None
    default_model_id: str = DEFAULT_MODEL_ID
    voice_settings: Dict[str, Any] = field(default_factory=lambda: {
        "stability": 0.75,
        "similarity_boost": 0.75,
        "style": 0.5,
        "use_speaker_boost": True,
    })
    synthesis_timeout_s: float = 30.0

    # Generated audio
    download_dir: Path = Path("downloads")
    download_max_age_s: int = 3600

    # Server
    host: str = "0.0.0.0"
    port: int = 3000
    app_env: str = "development"
    log_level: str = "INFO"

    # "heuristic" | "deterministic"
    scoring_strategy: str = "heuristic"

    @property
    def voice_services_available(self) -> bool:
        return bool(self.eleven_labs_api_key)

    @property
    def transcription_services_available(self) -> bool:
        return bool(self.openai_api_key)

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """Load configuration from environment variables."""
        load_env_files()
        return cls(
            openai_api_key=os.environ.get("OPENAI_API_KEY") or None,
            eleven_labs_api_key=os.environ.get("ELEVEN_LABS_API_KEY") or None,
            openai_base_url=os.environ.get("OPENAI_BASE_URL", "https://api.openai.com").rstrip("/"),
            eleven_labs_base_url=os.environ.get("ELEVEN_LABS_BASE_URL", "https://api.elevenlabs.io").rstrip("/"),
            default_voice_id=os.environ.get("DEFAULT_VOICE_ID") or None,
            default_model_id=os.environ.get("DEFAULT_MODEL_ID") or DEFAULT_MODEL_ID,
            voice_settings={
                "stability": parse_float_env("VOICE_STABILITY", default=0.75),
                "similarity_boost": parse_float_env("VOICE_SIMILARITY_BOOST", default=0.75),
                "style": parse_float_env("VOICE_STYLE", default=0.5),
                "use_speaker_boost": parse_bool_env("VOICE_USE_SPEAKER_BOOST", default=True),
            },
            synthesis_timeout_s=parse_float_env("SYNTHESIS_TIMEOUT_S", default=30.0),
            download_dir=Path(os.environ.get("DOWNLOAD_DIR", "downloads")),
            download_max_age_s=parse_int_env("DOWNLOAD_MAX_AGE_S", default=3600),
            host=os.environ.get("HOST", "0.0.0.0"),
            port=parse_int_env("PORT", default=3000),
            app_env=os.environ.get("APP_ENV", "development"),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            scoring_strategy=os.environ.get("SCORING_STRATEGY", "heuristic").lower(),
        )
