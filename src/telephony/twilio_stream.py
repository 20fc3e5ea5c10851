"""Twilio Media Streams transport.

Wraps an accepted WebSocket carrying Twilio's JSON stream messages
(connected/start/media/mark/stop) and exposes it to the session gateway as a
sequence of typed stream events plus a small outbound API.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol, Union

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from telephony.codec import AudioFormat, AudioFrame

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StreamStarted:
    stream_sid: str
    call_sid: str | None
    media_format: AudioFormat


@dataclass(frozen=True, slots=True)
class MediaReceived:
    frame: AudioFrame


@dataclass(frozen=True, slots=True)
class MarkReceived:
    name: str


@dataclass(frozen=True, slots=True)
class StreamStopped:
    reason: str


StreamEvent = Union[StreamStarted, MediaReceived, MarkReceived, StreamStopped]


class CallerConnection(Protocol):
    """Inbound telephony connection as seen by the session gateway."""

    async def receive(self) -> StreamEvent:  # pragma: no cover - protocol stub
        ...

    async def send_audio(self, frame: AudioFrame) -> None:  # pragma: no cover - protocol stub
        ...

    async def clear(self) -> None:  # pragma: no cover - protocol stub
        ...

    async def close(self, code: int = 1000, reason: str = "") -> None:  # pragma: no cover - protocol stub
        ...


def parse_twilio_ws_message(text: str) -> dict[str, Any]:
    return json.loads(text)


def media_format_from_start(start: dict[str, Any]) -> AudioFormat:
    media_format = start.get("mediaFormat") or {}
    return AudioFormat(
        encoding=str(media_format.get("encoding") or "audio/x-mulaw").lower(),
        sample_rate_hz=int(media_format.get("sampleRate") or 8000),
        channels=int(media_format.get("channels") or 1),
    )


class TwilioMediaStream:
    """CallerConnection over a FastAPI WebSocket speaking the Twilio stream protocol."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket
        self._stream_sid: str | None = None
        self._format = AudioFormat(encoding="audio/x-mulaw")

    @property
    def stream_sid(self) -> str | None:
        return self._stream_sid

    async def receive(self) -> StreamEvent:
        """Return the next stream event, skipping messages with no meaning for the relay."""

        while True:
            try:
                text = await self._ws.receive_text()
            except WebSocketDisconnect as exc:
                return StreamStopped(reason=f"disconnected ({exc.code})")

            try:
                message = parse_twilio_ws_message(text)
            except json.JSONDecodeError:
                LOGGER.warning("Ignoring non-JSON Twilio message: %s", text[:100])
                continue
            if not isinstance(message, dict):
                LOGGER.warning("Ignoring non-object Twilio message: %s", text[:100])
                continue

            event = self.handle_message(message)
            if event is not None:
                return event

    def handle_message(self, message: dict[str, Any]) -> StreamEvent | None:
        event = str(message.get("event") or "")
        if event == "media":
            media = message.get("media") or {}
            if media.get("track") and media.get("track") != "inbound":
                return None
            payload = media.get("payload")
            if not isinstance(payload, str) or not payload:
                return None
            try:
                raw = base64.b64decode(payload, validate=True)
            except (binascii.Error, ValueError):
                LOGGER.warning("Ignoring media message with invalid base64 payload")
                return None
            sequence = int(media.get("chunk") or message.get("sequenceNumber") or 0)
            return MediaReceived(frame=AudioFrame(payload=raw, format=self._format, sequence=sequence))

        if event == "start":
            start = message.get("start") or {}
            self._stream_sid = str(start.get("streamSid") or message.get("streamSid") or "") or None
            self._format = media_format_from_start(start)
            return StreamStarted(
                stream_sid=self._stream_sid or "unknown",
                call_sid=start.get("callSid"),
                media_format=self._format,
            )

        if event == "mark":
            mark = message.get("mark") or {}
            return MarkReceived(name=str(mark.get("name") or ""))

        if event == "stop":
            return StreamStopped(reason="stop")

        if event != "connected":
            LOGGER.debug("Ignoring Twilio event %r", event)
        return None

    async def send_audio(self, frame: AudioFrame) -> None:
        await self._send(
            {
                "event": "media",
                "streamSid": self._stream_sid,
                "media": {"payload": base64.b64encode(frame.payload).decode("ascii")},
            }
        )

    async def clear(self) -> None:
        await self._send({"event": "clear", "streamSid": self._stream_sid})

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._ws.client_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self._ws.close(code=code, reason=reason)
        except RuntimeError:
            # Already closed by the peer.
            LOGGER.debug("Twilio socket already closed")

    async def _send(self, message: dict[str, Any]) -> None:
        if self._ws.client_state != WebSocketState.CONNECTED:
            return
        await self._ws.send_text(json.dumps(message))
