"""Shared abstractions for realtime conversational backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from realtime.events import BackendEvent
from telephony.codec import AudioFormat, AudioFrame


class BaseRealtimeBackend(ABC):
    """One streaming conversation with a realtime backend."""

    #: Audio format the backend has been configured to accept and produce.
    audio_format: AudioFormat

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection and configure the conversation."""

    @abstractmethod
    async def send_audio(self, frame: AudioFrame) -> None:
        """Append caller audio (already in backend format) to the input buffer."""

    @abstractmethod
    async def send_tool_result(self, call_id: str, output: str) -> None:
        """Return a tool result and let the backend continue the turn."""

    @abstractmethod
    async def request_response(self, instructions: str, *, metadata: dict[str, str] | None = None) -> None:
        """Ask the backend to produce a response following ``instructions``.

        ``metadata`` is echoed back on the response's TurnStarted event.
        """

    @abstractmethod
    def events(self) -> AsyncIterator[BackendEvent]:
        """Iterate backend events until the connection ends."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
