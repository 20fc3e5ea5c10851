"""Factory returning the configured realtime backend."""

from __future__ import annotations

from collections.abc import Callable

from agents.schemas import AgentConfig
from config.settings import Settings, get_settings
from realtime.base import BaseRealtimeBackend
from realtime.openai_client import OpenAIRealtimeBackend
from telephony.codec import AudioFormat, CodecAdapter

BackendFactory = Callable[[], BaseRealtimeBackend]


def build_backend_factory(agent: AgentConfig, settings: Settings | None = None) -> BackendFactory:
    """Return a callable producing one fresh backend per call."""

    settings = settings or get_settings()
    if not settings.openai_api_key:
        raise ValueError("Missing OpenAI API key. Please set OPENAI_API_KEY in the .env file.")

    caller_format = AudioFormat(
        encoding=settings.caller_audio_encoding,
        sample_rate_hz=settings.caller_sample_rate_hz,
    )
    backend_format = CodecAdapter().backend_format_for(caller_format)
    tools = agent.tools.backend_schemas()

    def factory() -> BaseRealtimeBackend:
        return OpenAIRealtimeBackend(
            api_key=settings.openai_api_key or "",
            url=settings.realtime_url,
            model=settings.realtime_model,
            voice=settings.realtime_voice,
            instructions=agent.instructions,
            tools=tools,
            audio_format=backend_format,
        )

    return factory
