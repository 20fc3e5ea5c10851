"""Lifecycle of one call bridged to one realtime backend conversation.

All state changes happen on a single loop task that drains the session's
message queue. Transport readers, the backend reader and tool tasks only ever
enqueue, so transitions are serialized without locks.

States::

    CONNECTING -> ACTIVE <-> TOOL_PENDING
         \\          \\           /
          +--------> CLOSING -> CLOSED
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Union

from agents.errors import (
    CLOSE_INTERNAL_ERROR,
    CLOSE_NORMAL,
    BackendProtocolError,
    GatewayError,
    GuardrailTripped,
    SessionStateError,
    ToolError,
    UnsupportedFormatError,
)
from agents.schemas import AgentConfig
from realtime.base import BaseRealtimeBackend
from realtime.events import (
    AudioDelta,
    BackendClosed,
    BackendError,
    BackendEvent,
    SpeechStarted,
    ToolCallRequest,
    TranscriptDelta,
    TurnDone,
    TurnStarted,
)
from session.models import ALLOWED_TRANSITIONS, Session, SessionState, Turn
from telephony.codec import AudioFrame, CodecAdapter
from telephony.sequencing import FrameSequencer
from telephony.twilio_stream import StreamStarted

LOGGER = logging.getLogger(__name__)

FALLBACK_INSTRUCTIONS = 'Say exactly the following to the caller, and nothing else: "{utterance}"'
FALLBACK_METADATA = {"gateway_turn": "fallback"}


@dataclass(frozen=True, slots=True)
class _InboundFrame:
    frame: AudioFrame


@dataclass(frozen=True, slots=True)
class _ToolFinished:
    call: ToolCallRequest
    output: str


@dataclass(frozen=True, slots=True)
class _BackendFailed:
    error: GatewayError


@dataclass(frozen=True, slots=True)
class _Wake:
    pass


_Message = Union[_InboundFrame, StreamStarted, _ToolFinished, _BackendFailed, _Wake, BackendEvent]

CloseCallback = Callable[[Session], Any]


class RealtimeSession:
    """State machine for one call.

    Producers call ``on_inbound_frame``, ``on_stream_started``,
    ``on_backend_event``, ``on_caller_closed`` and ``request_close``; none of
    them block. ``run()`` processes the messages until the session is CLOSED.
    """

    def __init__(
        self,
        session: Session,
        *,
        backend: BaseRealtimeBackend,
        agent: AgentConfig,
        codec: CodecAdapter | None = None,
        idle_timeout_s: float = 60.0,
        reorder_window: int = 50,
    ) -> None:
        self.session = session
        self.session.backend = backend
        self._backend = backend
        self._agent = agent
        self._codec = codec or CodecAdapter()
        self._idle_timeout_s = idle_timeout_s

        self._queue: asyncio.Queue[_Message] = asyncio.Queue()
        self._sequencer = FrameSequencer(window=reorder_window)
        self._outbound_seq = 0

        self._pending_calls: deque[ToolCallRequest] = deque()
        self._active_call: ToolCallRequest | None = None
        self._tool_tasks: set[asyncio.Task[None]] = set()

        self._reader_task: asyncio.Task[None] | None = None
        self._close_request: tuple[str, int] | None = None
        self._close_started = False
        self._closed = asyncio.Event()
        self._close_callbacks: list[CloseCallback] = []

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def state(self) -> SessionState:
        return self.session.state

    def add_close_callback(self, callback: CloseCallback) -> None:
        self._close_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the backend conversation and enter ACTIVE."""

        await self._backend.connect()
        self._transition(SessionState.ACTIVE)
        self.session.touch()

    def on_inbound_frame(self, frame: AudioFrame) -> None:
        if self._close_started:
            return
        self.session.touch()
        self._queue.put_nowait(_InboundFrame(frame))

    def on_stream_started(self, event: StreamStarted) -> None:
        self._queue.put_nowait(event)

    def on_backend_event(self, event: BackendEvent) -> None:
        self.session.touch()
        self._queue.put_nowait(event)

    def on_caller_closed(self, reason: str) -> None:
        """The inbound stream ended: drop pending tool results and close."""

        self.session.cancelled = True
        for task in list(self._tool_tasks):
            task.cancel()
        self.request_close(reason)

    def request_close(self, reason: str, code: int = CLOSE_NORMAL) -> None:
        if self._close_request is None:
            self._close_request = (reason, code)
        self._queue.put_nowait(_Wake())

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Process messages until the session is CLOSED."""

        self._reader_task = asyncio.create_task(self._read_backend())
        try:
            while not self._close_started:
                try:
                    message = await asyncio.wait_for(self._queue.get(), timeout=self._idle_remaining())
                except asyncio.TimeoutError:
                    LOGGER.info(
                        "Session %s idle for %.1fs; closing",
                        self.session_id,
                        self._idle_timeout_s,
                    )
                    await self.close("idle_timeout")
                    break

                if self._close_request is not None:
                    if not isinstance(message, _Wake):
                        # Keep it for the drain in close().
                        self._requeue_front(message)
                    await self.close(*self._close_request)
                    break

                try:
                    await self._dispatch(message)
                except (UnsupportedFormatError, BackendProtocolError, SessionStateError) as exc:
                    LOGGER.error(
                        "Session %s fatal error: %s %s",
                        self.session_id,
                        exc.detail,
                        self.session.log_context(),
                    )
                    await self.close(type(exc).__name__, exc.close_code)
                except Exception:
                    LOGGER.exception(
                        "Session %s failed unexpectedly %s",
                        self.session_id,
                        self.session.log_context(),
                    )
                    await self.close("internal_error", CLOSE_INTERNAL_ERROR)
        finally:
            await self.close("session_ended")
            await self._closed.wait()

    def _idle_remaining(self) -> float:
        deadline = self.session.last_activity + self._idle_timeout_s
        return max(0.0, deadline - time.monotonic())

    def _requeue_front(self, message: _Message) -> None:
        pending = [message]
        while not self._queue.empty():
            pending.append(self._queue.get_nowait())
        for item in pending:
            self._queue.put_nowait(item)

    async def _read_backend(self) -> None:
        try:
            async for event in self._backend.events():
                self.on_backend_event(event)
        except asyncio.CancelledError:
            raise
        except GatewayError as exc:
            self._queue.put_nowait(_BackendFailed(exc))
            return
        except Exception as exc:
            LOGGER.exception("Session %s backend reader crashed", self.session_id)
            self._queue.put_nowait(_BackendFailed(BackendProtocolError(str(exc))))
            return
        self.on_backend_event(BackendClosed(reason="event stream ended"))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, message: _Message) -> None:
        if isinstance(message, _InboundFrame):
            for frame in self._sequencer.push(message.frame):
                await self._forward_inbound(frame)
        elif isinstance(message, StreamStarted):
            self._start_stream(message)
        elif isinstance(message, _ToolFinished):
            await self._finish_tool(message)
        elif isinstance(message, _BackendFailed):
            raise message.error
        elif isinstance(message, _Wake):
            return
        else:
            await self._handle_backend_event(message)

    def _start_stream(self, event: StreamStarted) -> None:
        self.session.stream_sid = event.stream_sid
        self.session.call_sid = event.call_sid
        self.session.caller_format = event.media_format

        expected = self._backend.audio_format
        actual = self._codec.backend_format_for(event.media_format)
        if (actual.encoding, actual.sample_rate_hz) != (expected.encoding, expected.sample_rate_hz):
            raise UnsupportedFormatError(
                f"Stream format {event.media_format.tag} does not match backend format {expected.tag}"
            )
        LOGGER.info(
            "Session %s stream started (stream_sid=%s, call_sid=%s, format=%s)",
            self.session_id,
            event.stream_sid,
            event.call_sid,
            event.media_format.tag,
        )

    async def _forward_inbound(self, frame: AudioFrame) -> None:
        await self._backend.send_audio(self._codec.to_backend_format(frame))

    async def _handle_backend_event(self, event: BackendEvent) -> None:
        if isinstance(event, TurnStarted):
            self._start_turn(event)
        elif isinstance(event, AudioDelta):
            self._turn(event.turn_id).audio.append(event.audio)
        elif isinstance(event, TranscriptDelta):
            self._turn(event.turn_id).text_parts.append(event.text)
        elif isinstance(event, TurnDone):
            await self._complete_turn(event)
        elif isinstance(event, ToolCallRequest):
            self._pending_calls.append(event)
            self._dispatch_next_tool()
        elif isinstance(event, SpeechStarted):
            await self._barge_in()
        elif isinstance(event, BackendError):
            LOGGER.error(
                "Session %s backend error (%s): %s",
                self.session_id,
                event.code,
                event.message,
            )
            await self.close(f"backend_error: {event.message}", CLOSE_INTERNAL_ERROR)
        elif isinstance(event, BackendClosed):
            LOGGER.info("Session %s backend closed: %s", self.session_id, event.reason)
            await self.close("backend_closed", CLOSE_INTERNAL_ERROR)
        else:
            raise BackendProtocolError(f"Unexpected backend event {event!r}")

    # ------------------------------------------------------------------
    # Turns and guardrails
    # ------------------------------------------------------------------

    def _start_turn(self, event: TurnStarted) -> None:
        is_fallback = event.metadata.get("gateway_turn") == FALLBACK_METADATA["gateway_turn"]
        if event.turn_id not in self.session.output_buffer:
            self.session.output_buffer[event.turn_id] = Turn(turn_id=event.turn_id, is_fallback=is_fallback)

    def _turn(self, turn_id: str) -> Turn:
        turn = self.session.output_buffer.get(turn_id)
        if turn is None:
            turn = Turn(turn_id=turn_id)
            self.session.output_buffer[turn_id] = turn
        return turn

    async def _complete_turn(self, event: TurnDone) -> None:
        turn = self.session.output_buffer.pop(event.turn_id, None)
        if turn is None:
            # Nothing buffered: dropped on barge-in or never announced.
            return
        if event.cancelled:
            LOGGER.debug("Session %s dropping %s turn %s", self.session_id, event.status, turn.turn_id)
            return

        try:
            await self._agent.guardrails.check(turn.text)
        except GuardrailTripped as exc:
            LOGGER.warning(
                "Session %s withheld turn %s: %s %s",
                self.session_id,
                turn.turn_id,
                exc.detail,
                [result.output_info for result in exc.tripped],
            )
            await self.session.inbound.clear()
            if turn.is_fallback:
                LOGGER.error("Session %s fallback utterance tripped a guardrail; dropping it", self.session_id)
                return
            await self._backend.request_response(
                FALLBACK_INSTRUCTIONS.format(utterance=self._agent.fallback_utterance),
                metadata=FALLBACK_METADATA,
            )
            return

        await self._release(turn)

    async def _release(self, turn: Turn) -> None:
        for chunk in turn.audio:
            self._outbound_seq += 1
            frame = AudioFrame(payload=chunk, format=self._backend.audio_format, sequence=self._outbound_seq)
            await self.session.inbound.send_audio(self._codec.to_caller_format(frame))

    async def _barge_in(self) -> None:
        if self.session.output_buffer:
            LOGGER.debug(
                "Session %s caller started speaking; dropping %s buffered turn(s)",
                self.session_id,
                len(self.session.output_buffer),
            )
            self.session.output_buffer.clear()
        await self.session.inbound.clear()

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def _dispatch_next_tool(self) -> None:
        if self.state is not SessionState.ACTIVE or self._active_call is not None or not self._pending_calls:
            return
        call = self._pending_calls.popleft()
        self._active_call = call
        self._transition(SessionState.TOOL_PENDING)

        task = asyncio.create_task(self._run_tool(call))
        self._tool_tasks.add(task)
        task.add_done_callback(self._tool_tasks.discard)

    async def _run_tool(self, call: ToolCallRequest) -> None:
        try:
            result = await self._agent.tools.invoke(call.name, call.arguments)
            output = result if isinstance(result, str) else json.dumps(result, default=str)
        except ToolError as exc:
            LOGGER.warning(
                "Session %s tool %s failed: %s: %s",
                self.session_id,
                call.name,
                type(exc).__name__,
                exc.detail,
            )
            output = json.dumps(exc.to_result())
        self._queue.put_nowait(_ToolFinished(call=call, output=output))

    async def _finish_tool(self, message: _ToolFinished) -> None:
        if self.session.cancelled or message.call is not self._active_call:
            LOGGER.info("Session %s discarding result of tool %s", self.session_id, message.call.name)
            return
        await self._backend.send_tool_result(message.call.call_id, message.output)
        self._active_call = None
        self._transition(SessionState.ACTIVE)
        self._dispatch_next_tool()

    # ------------------------------------------------------------------
    # State and teardown
    # ------------------------------------------------------------------

    def _transition(self, new_state: SessionState) -> None:
        old_state = self.session.state
        if new_state not in ALLOWED_TRANSITIONS[old_state]:
            raise SessionStateError(f"Illegal transition {old_state.value} -> {new_state.value}")
        self.session.state = new_state
        LOGGER.info("Session %s: %s -> %s", self.session_id, old_state.value, new_state.value)

    async def close(self, reason: str = "closed", code: int = CLOSE_NORMAL) -> None:
        """Tear the session down. Only the first call has any effect."""

        if self._close_started:
            return
        self._close_started = True
        self.session.close_reason = reason
        self.session.cancelled = True
        was_connected = self.state is not SessionState.CONNECTING
        self._transition(SessionState.CLOSING)
        LOGGER.info("Session %s closing (%s)", self.session_id, reason)

        try:
            for task in list(self._tool_tasks):
                task.cancel()

            if was_connected:
                await self._drain_inbound()

            current = asyncio.current_task()
            if self._reader_task is not None and self._reader_task is not current:
                self._reader_task.cancel()
                try:
                    await self._reader_task
                except asyncio.CancelledError:
                    pass
        finally:
            await self._release_resources(code, reason)

    async def _release_resources(self, code: int, reason: str) -> None:
        try:
            await self._backend.close()
        except Exception:
            LOGGER.exception("Session %s failed to close backend", self.session_id)
        try:
            await self.session.inbound.close(code, reason[:120])
        except Exception:
            LOGGER.exception("Session %s failed to close inbound stream", self.session_id)

        self.session.output_buffer.clear()
        self._pending_calls.clear()
        self._active_call = None
        self._transition(SessionState.CLOSED)

        for callback in self._close_callbacks:
            try:
                callback(self.session)
            except Exception:
                LOGGER.exception("Session %s close callback failed", self.session_id)
        self._closed.set()
        # Unblock run() if close() was called from outside the loop.
        self._queue.put_nowait(_Wake())

    async def _drain_inbound(self) -> None:
        frames: list[AudioFrame] = []
        while not self._queue.empty():
            message = self._queue.get_nowait()
            if isinstance(message, _InboundFrame):
                frames.extend(self._sequencer.push(message.frame))
        frames.extend(self._sequencer.drain())
        try:
            for frame in frames:
                await self._forward_inbound(frame)
        except GatewayError as exc:
            LOGGER.warning("Session %s stopped draining inbound audio: %s", self.session_id, exc.detail)
        except Exception:
            LOGGER.exception("Session %s failed to drain inbound audio", self.session_id)
