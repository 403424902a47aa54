"""
Provider error handling.

Maps Whisper / ElevenLabs failures to stable categories without crashing
the request handler, and redacts anything that looks like a secret before
it reaches the event stream.
"""
from typing import Optional

from observability.events import Component as ObsComponent, EventEmitter, Severity


class ProviderError(Exception):
    """A speech provider call failed."""

    def __init__(self, message: str, provider: str, status: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status = status


class ProviderNotConfigured(ProviderError):
    """The provider's API key is missing."""

    def __init__(self, provider: str, env_var: str):
        super().__init__(f"{provider} misconfigured: {env_var} is not set", provider)
        self.env_var = env_var


class ProviderErrorCategory:
    """Stable error categories."""

    AUTH_FAILED = "provider.auth_failed"
    MISCONFIGURED = "provider.misconfigured"
    NETWORK_ERROR = "provider.network_error"

    # Limits / throttling
    RATE_LIMITED = "provider.rate_limited"
    CAPACITY_LIMITED = "provider.capacity_limited"

    INVALID_REQUEST = "provider.invalid_request"

    UNKNOWN_ERROR = "provider.unknown_error"


_STATUS_CATEGORIES = {
    400: ProviderErrorCategory.INVALID_REQUEST,
    401: ProviderErrorCategory.AUTH_FAILED,
    403: ProviderErrorCategory.AUTH_FAILED,
    413: ProviderErrorCategory.INVALID_REQUEST,
    415: ProviderErrorCategory.INVALID_REQUEST,
    422: ProviderErrorCategory.INVALID_REQUEST,
    429: ProviderErrorCategory.RATE_LIMITED,
    503: ProviderErrorCategory.CAPACITY_LIMITED,
}

_SECRET_MARKERS = ("secret", "password", "key", "token", "bearer")

provider_emitter = EventEmitter(ObsComponent.PROVIDER)


class ProviderErrorHandler:
    """Classifies and reports provider errors."""

    @staticmethod
    def classify_error(error: Exception) -> str:
        """Classify a provider error into a stable category."""
        if isinstance(error, ProviderNotConfigured):
            return ProviderErrorCategory.MISCONFIGURED

        status = getattr(error, "status", None)
        if status in _STATUS_CATEGORIES:
            return _STATUS_CATEGORIES[status]

        error_str = str(error).lower()

        if "auth" in error_str or "unauthorized" in error_str or "401" in error_str:
            return ProviderErrorCategory.AUTH_FAILED

        if "config" in error_str or "misconfigured" in error_str:
            return ProviderErrorCategory.MISCONFIGURED

        if "network" in error_str or "timeout" in error_str or "connection" in error_str:
            return ProviderErrorCategory.NETWORK_ERROR

        if "rate limit" in error_str or "429" in error_str or "throttle" in error_str:
            return ProviderErrorCategory.RATE_LIMITED

        if "capacity" in error_str or "503" in error_str:
            return ProviderErrorCategory.CAPACITY_LIMITED

        return ProviderErrorCategory.UNKNOWN_ERROR

    @staticmethod
    def redact(detail: str) -> str:
        lowered = detail.lower()
        if any(marker in lowered for marker in _SECRET_MARKERS):
            return "[redacted: potential secret]"
        return detail

    @staticmethod
    def handle_error(
        error: Exception,
        provider_name: str,
        operation: str,
        request_id: str = "",
    ) -> str:
        """
        Emit a provider.event and return the error category.
        Never raises.
        """
        category = ProviderErrorHandler.classify_error(error)

        payload = {
            "category": category,
            "operation": operation,
            "provider": {"name": provider_name},
            "detail": ProviderErrorHandler.redact(str(error)),
        }
        status = getattr(error, "status", None)
        if status is not None:
            payload["status"] = status

        provider_emitter.emit(
            "provider.event",
            run_id=request_id,
            severity=Severity.ERROR,
            **payload,
        )
        return category

    @staticmethod
    def get_user_message(category: str) -> str:
        """User-facing error message per category."""
        messages = {
            ProviderErrorCategory.AUTH_FAILED: "The speech provider rejected our credentials.",
            ProviderErrorCategory.MISCONFIGURED: "API keys not configured. Please configure the provider keys in your .env file.",
            ProviderErrorCategory.NETWORK_ERROR: "Could not reach the speech provider. Please try again.",
            ProviderErrorCategory.RATE_LIMITED: "The speech provider is busy. Please try again shortly.",
            ProviderErrorCategory.CAPACITY_LIMITED: "The speech provider is busy. Please try again shortly.",
            ProviderErrorCategory.INVALID_REQUEST: "The speech provider could not process this request.",
        }

        return messages.get(category, "Error processing speech request. Please try again.")
