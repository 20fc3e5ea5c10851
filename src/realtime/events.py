"""Backend events and the mapping from Realtime API server messages."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Union

from agents.errors import BackendProtocolError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TurnStarted:
    turn_id: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AudioDelta:
    turn_id: str
    audio: bytes


@dataclass(frozen=True, slots=True)
class TranscriptDelta:
    turn_id: str
    text: str


@dataclass(frozen=True, slots=True)
class TurnDone:
    turn_id: str
    status: str = "completed"

    @property
    def cancelled(self) -> bool:
        return self.status in {"cancelled", "failed", "incomplete"}


@dataclass(frozen=True, slots=True)
class ToolCallRequest:
    call_id: str
    name: str
    arguments: str


@dataclass(frozen=True, slots=True)
class SpeechStarted:
    item_id: str | None = None


@dataclass(frozen=True, slots=True)
class BackendError:
    message: str
    code: str | None = None


@dataclass(frozen=True, slots=True)
class BackendClosed:
    reason: str = ""


BackendEvent = Union[
    TurnStarted,
    AudioDelta,
    TranscriptDelta,
    TurnDone,
    ToolCallRequest,
    SpeechStarted,
    BackendError,
    BackendClosed,
]

# Beta and GA names for the same server events.
_AUDIO_DELTA = {"response.audio.delta", "response.output_audio.delta"}
_TRANSCRIPT_DELTA = {
    "response.audio_transcript.delta",
    "response.output_audio_transcript.delta",
    "response.text.delta",
    "response.output_text.delta",
}


def _require(message: dict[str, Any], key: str, kind: type = str) -> Any:
    value = message.get(key)
    if not isinstance(value, kind):
        raise BackendProtocolError(f"{message.get('type')}: missing or invalid {key!r}")
    return value


def decode_server_message(raw: str | bytes) -> dict[str, Any]:
    try:
        message = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise BackendProtocolError(f"Backend sent non-JSON message: {exc}") from exc
    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
        raise BackendProtocolError("Backend message has no 'type'")
    return message


def parse_server_event(raw: str | bytes) -> BackendEvent | None:
    """Map one server message to a BackendEvent.

    Returns None for event types the session does not act on.
    Raises BackendProtocolError for messages of an unexpected shape.
    """

    message = decode_server_message(raw)
    event_type = message["type"]

    if event_type in _AUDIO_DELTA:
        delta = _require(message, "delta")
        try:
            audio = base64.b64decode(delta, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise BackendProtocolError(f"{event_type}: audio delta is not base64") from exc
        return AudioDelta(turn_id=_require(message, "response_id"), audio=audio)

    if event_type in _TRANSCRIPT_DELTA:
        return TranscriptDelta(turn_id=_require(message, "response_id"), text=_require(message, "delta"))

    if event_type == "response.function_call_arguments.done":
        return ToolCallRequest(
            call_id=_require(message, "call_id"),
            name=_require(message, "name"),
            arguments=message.get("arguments") or "{}",
        )

    if event_type == "response.created":
        response = _require(message, "response", dict)
        turn_id = response.get("id")
        if not isinstance(turn_id, str):
            raise BackendProtocolError("response.created: missing response id")
        metadata = response.get("metadata")
        return TurnStarted(turn_id=turn_id, metadata=metadata if isinstance(metadata, dict) else {})

    if event_type == "response.done":
        response = _require(message, "response", dict)
        turn_id = response.get("id")
        if not isinstance(turn_id, str):
            raise BackendProtocolError("response.done: missing response id")
        return TurnDone(turn_id=turn_id, status=str(response.get("status") or "completed"))

    if event_type == "input_audio_buffer.speech_started":
        return SpeechStarted(item_id=message.get("item_id"))

    if event_type == "error":
        error = message.get("error") or {}
        if not isinstance(error, dict):
            raise BackendProtocolError("error: invalid error payload")
        return BackendError(message=str(error.get("message") or "unknown error"), code=error.get("code"))

    LOGGER.debug("Ignoring backend event %s", event_type)
    return None
