import logging
import os
from dataclasses import dataclass, field

from adstudio.errors import ConfigurationError

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

IMAGE_PROVIDERS = ("gateway", "gemini", "openai", "dual")
REFINER_PROVIDERS = ("gateway", "gemini")

API_KEY_ENV: dict[str, str] = {
    "gateway": "AI_GATEWAY_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "openai": "OPENAI_API_KEY",
    "elevenlabs": "ELEVENLABS_API_KEY",
}

PROVIDER_LABELS: dict[str, str] = {
    "gateway": "AI gateway",
    "gemini": "Google Gemini",
    "openai": "OpenAI",
    "elevenlabs": "ElevenLabs",
}


def _env(name: str, default: str) -> str:
    value = os.getenv(name)
    return value.strip() if value and value.strip() else default


def _env_float(name: str, default: float) -> float:
    raw = _env(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number of seconds, got '{raw}'.") from None


@dataclass(frozen=True)
class Settings:
    gateway_url: str = "https://ai.gateway.lovable.dev/v1/chat/completions"
    ad_copy_model: str = "google/gemini-2.5-flash"
    gateway_image_model: str = "google/gemini-2.5-flash-image"
    refiner_model: str = "google/gemini-2.5-flash"
    gemini_api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_image_model: str = "gemini-2.5-flash-image"
    gemini_chat_model: str = "gemini-2.0-flash"
    openai_api_base: str = "https://api.openai.com/v1"
    openai_image_model: str = "gpt-image-1"
    stt_url: str = "https://api.elevenlabs.io/v1/speech-to-text"
    stt_model: str = "scribe_v1"
    stt_language: str = "por"
    image_provider: str = "gateway"
    refiner_provider: str = "gateway"
    content_language: str = "Brazilian Portuguese"
    frame_interval_seconds: float = 1.0
    http_timeout_seconds: float = 120.0
    cors_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"
    api_keys: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "Settings":
        keys = {provider: os.getenv(env_name, "").strip() for provider, env_name in API_KEY_ENV.items()}
        origins = tuple(o.strip() for o in _env("CORS_ORIGINS", "*").split(",") if o.strip())
        settings = cls(
            gateway_url=_env("AI_GATEWAY_URL", cls.gateway_url),
            ad_copy_model=_env("AD_COPY_MODEL", cls.ad_copy_model),
            gateway_image_model=_env("GATEWAY_IMAGE_MODEL", cls.gateway_image_model),
            refiner_model=_env("REFINER_MODEL", cls.refiner_model),
            gemini_api_base=_env("GEMINI_API_BASE", cls.gemini_api_base).rstrip("/"),
            gemini_image_model=_env("GEMINI_IMAGE_MODEL", cls.gemini_image_model),
            gemini_chat_model=_env("GEMINI_CHAT_MODEL", cls.gemini_chat_model),
            openai_api_base=_env("OPENAI_API_BASE", cls.openai_api_base).rstrip("/"),
            openai_image_model=_env("OPENAI_IMAGE_MODEL", cls.openai_image_model),
            stt_url=_env("ELEVENLABS_STT_URL", cls.stt_url),
            stt_model=_env("STT_MODEL", cls.stt_model),
            stt_language=_env("STT_LANGUAGE", cls.stt_language),
            image_provider=_env("IMAGE_PROVIDER", cls.image_provider).lower(),
            refiner_provider=_env("REFINER_PROVIDER", cls.refiner_provider).lower(),
            content_language=_env("CONTENT_LANGUAGE", cls.content_language),
            frame_interval_seconds=_env_float("FRAME_INTERVAL_SECONDS", cls.frame_interval_seconds),
            http_timeout_seconds=_env_float("HTTP_TIMEOUT_SECONDS", cls.http_timeout_seconds),
            cors_origins=origins or ("*",),
            log_level=_env("LOG_LEVEL", cls.log_level).upper(),
            api_keys={k: v for k, v in keys.items() if v},
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.image_provider not in IMAGE_PROVIDERS:
            raise ConfigurationError(
                f"Unsupported IMAGE_PROVIDER '{self.image_provider}'. Use one of: {', '.join(IMAGE_PROVIDERS)}."
            )
        if self.refiner_provider not in REFINER_PROVIDERS:
            raise ConfigurationError(
                f"Unsupported REFINER_PROVIDER '{self.refiner_provider}'. Use one of: {', '.join(REFINER_PROVIDERS)}."
            )
        if self.frame_interval_seconds < 0:
            raise ConfigurationError("FRAME_INTERVAL_SECONDS must not be negative.")
        if self.http_timeout_seconds <= 0:
            raise ConfigurationError("HTTP_TIMEOUT_SECONDS must be positive.")

    def has_key(self, provider: str) -> bool:
        return bool(self.api_keys.get(provider))

    def require_key(self, provider: str) -> str:
        api_key = self.api_keys.get(provider)
        if not api_key:
            label = PROVIDER_LABELS.get(provider, provider)
            raise ConfigurationError(f"{label} API key not found in {API_KEY_ENV[provider]}.")
        return api_key


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    logging.getLogger("httpx").setLevel(logging.WARNING)
