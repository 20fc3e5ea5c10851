"""Per-call session container.

Owned by the SessionGateway for the lifetime of one call and mutated only by
that call's RealtimeSession loop.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from telephony.codec import AudioFormat

if TYPE_CHECKING:  # pragma: no cover
    from realtime.base import BaseRealtimeBackend
    from telephony.twilio_stream import CallerConnection


class SessionState(str, Enum):
    CONNECTING = "CONNECTING"
    ACTIVE = "ACTIVE"
    TOOL_PENDING = "TOOL_PENDING"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"


ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.CONNECTING: frozenset({SessionState.ACTIVE, SessionState.CLOSING}),
    SessionState.ACTIVE: frozenset({SessionState.TOOL_PENDING, SessionState.CLOSING}),
    SessionState.TOOL_PENDING: frozenset({SessionState.ACTIVE, SessionState.CLOSING}),
    SessionState.CLOSING: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


def new_session_id() -> str:
    return f"sess_{uuid4().hex[:12]}"


@dataclass
class Turn:
    """Generated output of one backend response, held until it passes the guardrails."""

    turn_id: str
    text_parts: list[str] = field(default_factory=list)
    audio: list[bytes] = field(default_factory=list)
    is_fallback: bool = False

    @property
    def text(self) -> str:
        return "".join(self.text_parts)


@dataclass
class Session:
    """Mutable runtime container for a single call."""

    inbound: CallerConnection
    session_id: str = field(default_factory=new_session_id)
    state: SessionState = SessionState.CONNECTING
    backend: BaseRealtimeBackend | None = None
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.monotonic)

    # Stream metadata from the Twilio "start" message
    stream_sid: str | None = None
    call_sid: str | None = None
    caller_format: AudioFormat | None = None

    # Partial output, keyed by backend response id
    output_buffer: dict[str, Turn] = field(default_factory=dict)
    cancelled: bool = False
    close_reason: str | None = None

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def log_context(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "stream_sid": self.stream_sid,
            "call_sid": self.call_sid,
        }
