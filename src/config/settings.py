"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    log_level: str = Field(default="INFO")
    port: int = Field(default=5050, description="Port the HTTP/WebSocket server listens on.")

    # Realtime backend
    openai_api_key: str | None = Field(
        default=None,
        description="API key with access to the OpenAI Realtime API.",
    )
    realtime_url: str = Field(default="wss://api.openai.com/v1/realtime")
    realtime_model: str = Field(default="gpt-4o-realtime-preview")
    realtime_voice: str = Field(default="alloy")

    # Caller audio (Twilio Media Streams send mu-law @ 8kHz)
    caller_audio_encoding: str = Field(default="audio/x-mulaw")
    caller_sample_rate_hz: int = Field(default=8000, gt=0)

    # Session lifecycle
    backend_connect_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Upper bound for establishing the backend session. No retry on expiry.",
    )
    session_idle_timeout_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Force-close a session after this long without caller or backend activity.",
    )
    frame_reorder_window: int = Field(
        default=50,
        ge=1,
        description="Frames held back waiting for a missing sequence number before the gap is skipped.",
    )

    # Output guardrails
    guardrail_fallback_utterance: str = Field(
        default="I'm sorry, I can't help with that. Is there anything else I can do for you?",
    )

    # Twilio voice webhook
    public_base_url: str | None = Field(
        default=None,
        description="Public base URL for Twilio webhooks (e.g. https://<ngrok>.ngrok-free.app).",
    )
    twilio_say_voice: str = Field(default="Polly.Joanna-Neural")
    greeting_text: str = Field(
        default="Thank you for calling Dr. Vet's office! How can I help you today?",
    )

    @field_validator("caller_audio_encoding")
    @classmethod
    def normalize_encoding(cls, value: str) -> str:
        return value.strip().lower()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
