"""OpenAI Realtime API client over a server-side WebSocket."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import urlencode

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException

from agents.errors import BackendConnectError
from realtime.base import BaseRealtimeBackend
from realtime.events import BackendClosed, BackendEvent, parse_server_event
from telephony.codec import AudioFormat, AudioFrame

LOGGER = logging.getLogger(__name__)

MAX_MESSAGE_BYTES = 20_000_000


class OpenAIRealtimeBackend(BaseRealtimeBackend):
    """Streams caller audio to the Realtime API and yields its events.

    Lifecycle:
    1. connect() opens the socket and sends session.update with the agent's
       instructions, tools and audio format.
    2. send_audio() appends frames to the input buffer; server VAD decides
       when the caller has finished speaking.
    3. events() yields parsed server events until the socket closes.
    4. close() shuts the socket.
    """

    def __init__(
        self,
        *,
        api_key: str,
        url: str,
        model: str,
        voice: str,
        instructions: str,
        tools: list[dict[str, Any]],
        audio_format: AudioFormat,
    ) -> None:
        if not api_key:
            raise ValueError("An OpenAI API key must be configured for the realtime backend.")
        self._api_key = api_key
        self._url = f"{url}?{urlencode({'model': model})}"
        self._voice = voice
        self._instructions = instructions
        self._tools = tools
        self.audio_format = audio_format
        self._ws: ClientConnection | None = None
        self._send_lock = asyncio.Lock()
        self._closed = False

    def session_config(self) -> dict[str, Any]:
        return {
            "instructions": self._instructions,
            "voice": self._voice,
            "modalities": ["audio", "text"],
            "input_audio_format": self.audio_format.encoding,
            "output_audio_format": self.audio_format.encoding,
            "input_audio_transcription": {"model": "whisper-1"},
            "turn_detection": {"type": "server_vad"},
            "tools": self._tools,
            "tool_choice": "auto",
        }

    async def connect(self) -> None:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            self._ws = await connect(
                self._url,
                additional_headers=headers,
                max_size=MAX_MESSAGE_BYTES,
                open_timeout=None,
            )
        except (OSError, WebSocketException) as exc:
            raise BackendConnectError(f"Realtime connect failed: {exc}") from exc

        await self._send({"type": "session.update", "session": self.session_config()})
        LOGGER.info("Connected to the OpenAI Realtime API")

    async def send_audio(self, frame: AudioFrame) -> None:
        await self._send(
            {
                "type": "input_audio_buffer.append",
                "audio": base64.b64encode(frame.payload).decode("ascii"),
            }
        )

    async def send_tool_result(self, call_id: str, output: str) -> None:
        await self._send(
            {
                "type": "conversation.item.create",
                "item": {"type": "function_call_output", "call_id": call_id, "output": output},
            }
        )
        await self._send({"type": "response.create"})

    async def request_response(self, instructions: str, *, metadata: dict[str, str] | None = None) -> None:
        response: dict[str, Any] = {"instructions": instructions}
        if metadata:
            response["metadata"] = metadata
        await self._send({"type": "response.create", "response": response})

    async def events(self) -> AsyncIterator[BackendEvent]:
        if self._ws is None:
            raise RuntimeError("events() called before connect()")
        try:
            async for raw in self._ws:
                event = parse_server_event(raw)
                if event is not None:
                    yield event
        except ConnectionClosedOK:
            pass
        except ConnectionClosed as exc:
            yield BackendClosed(reason=f"connection lost: {exc}")
            return
        yield BackendClosed(reason="closed")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._ws is not None:
            await self._ws.close()

    async def _send(self, message: dict[str, Any]) -> None:
        if self._ws is None or self._closed:
            return
        async with self._send_lock:
            try:
                await self._ws.send(json.dumps(message))
            except ConnectionClosed:
                LOGGER.debug("Dropping %s: backend connection closed", message.get("type"))
