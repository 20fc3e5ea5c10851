from __future__ import annotations

import asyncio
import json

import pytest
from pydantic import BaseModel

from agents.errors import BackendProtocolError
from agents.guardrails import BlocklistGuardrail, GuardrailChain
from agents.schemas import AgentConfig
from agents.tools import ToolRegistry, tool
from agents.triage import BLOCKLIST_TERMS, build_triage_agent
from fakes import FakeBackend, FakeCaller, mulaw_frame, settle
from realtime.events import (
    AudioDelta,
    BackendError,
    SpeechStarted,
    ToolCallRequest,
    TranscriptDelta,
    TurnDone,
    TurnStarted,
)
from session.models import Session, SessionState
from session.state_machine import FALLBACK_INSTRUCTIONS, FALLBACK_METADATA, RealtimeSession
from telephony.codec import AudioFormat
from telephony.twilio_stream import StreamStarted

FALLBACK = "Sorry, I can't help with that."


class LookupArgs(BaseModel):
    key: str


class BrokenSocketBackend(FakeBackend):
    async def send_audio(self, frame) -> None:
        raise RuntimeError("socket is gone")


class Harness:
    def __init__(self, agent: AgentConfig | None = None, backend: FakeBackend | None = None, **kwargs) -> None:
        self.agent = agent or build_triage_agent(fallback_utterance=FALLBACK)
        self.backend = backend or FakeBackend()
        self.caller = FakeCaller()
        self.machine = RealtimeSession(
            Session(inbound=self.caller),
            backend=self.backend,
            agent=self.agent,
            **kwargs,
        )
        self.task: asyncio.Task | None = None

    async def start(self) -> RealtimeSession:
        await self.machine.connect()
        self.task = asyncio.create_task(self.machine.run())
        await settle()
        return self.machine

    async def finish(self) -> None:
        if self.task is not None:
            await asyncio.wait_for(self.task, timeout=1.0)


def _turn(turn_id: str, text: str, *chunks: bytes, fallback: bool = False):
    events = [
        TurnStarted(turn_id=turn_id, metadata=dict(FALLBACK_METADATA) if fallback else {}),
        TranscriptDelta(turn_id=turn_id, text=text),
    ]
    events.extend(AudioDelta(turn_id=turn_id, audio=chunk) for chunk in chunks)
    events.append(TurnDone(turn_id=turn_id))
    return events


def _agent_with_tools(*definitions) -> AgentConfig:
    return AgentConfig(
        name="Test Agent",
        instructions="Test instructions.",
        tools=ToolRegistry(list(definitions)),
        guardrails=GuardrailChain([BlocklistGuardrail(["refund"])]),
        fallback_utterance=FALLBACK,
    )


def test_connect_enters_active() -> None:
    async def scenario() -> None:
        harness = Harness()
        assert harness.machine.state is SessionState.CONNECTING
        machine = await harness.start()
        assert machine.state is SessionState.ACTIVE
        assert harness.backend.connected
        assert machine.session_id.startswith("sess_")

        await machine.close()
        await harness.finish()

    asyncio.run(scenario())


def test_inbound_frames_reach_backend_in_sequence_order() -> None:
    async def scenario() -> None:
        harness = Harness()
        machine = await harness.start()

        for seq in [2, 1, 3, 5, 4]:
            machine.on_inbound_frame(mulaw_frame(seq))
        await settle()

        sent = harness.backend.sent_audio
        assert [frame.sequence for frame in sent] == [1, 2, 3, 4, 5]
        assert all(frame.format.encoding == "g711_ulaw" for frame in sent)
        assert sent[0].payload == mulaw_frame(1).payload

        await machine.close()
        await harness.finish()

    asyncio.run(scenario())


def test_clean_turn_is_released_to_caller_in_caller_format() -> None:
    async def scenario() -> None:
        harness = Harness()
        machine = await harness.start()

        harness.backend.emit(*_turn("resp_1", "Hello, how can I help?", b"\x01" * 160, b"\x02" * 160))
        await settle()

        sent = harness.caller.sent
        assert [frame.payload for frame in sent] == [b"\x01" * 160, b"\x02" * 160]
        assert [frame.sequence for frame in sent] == [1, 2]
        assert all(frame.format.encoding == "audio/x-mulaw" for frame in sent)
        assert machine.session.output_buffer == {}

        await machine.close()
        await harness.finish()

    asyncio.run(scenario())


def test_no_audio_is_released_before_the_turn_completes() -> None:
    async def scenario() -> None:
        harness = Harness()
        machine = await harness.start()

        harness.backend.emit(
            TranscriptDelta(turn_id="resp_1", text="Partial"),
            AudioDelta(turn_id="resp_1", audio=b"\x01" * 160),
        )
        await settle()
        assert harness.caller.sent == []
        assert "resp_1" in machine.session.output_buffer

        harness.backend.emit(TurnDone(turn_id="resp_1"))
        await settle()
        assert len(harness.caller.sent) == 1

        await machine.close()
        await harness.finish()

    asyncio.run(scenario())


def test_tripped_turn_is_withheld_and_fallback_is_spoken() -> None:
    async def scenario() -> None:
        harness = Harness()
        machine = await harness.start()

        harness.backend.emit(*_turn("resp_1", "You qualify for a Discount today.", b"\x09" * 160))
        await settle()

        assert harness.caller.sent == []
        assert harness.caller.clears == 1
        assert harness.backend.requested == [FALLBACK_INSTRUCTIONS.format(utterance=FALLBACK)]
        assert harness.backend.requested_metadata == [FALLBACK_METADATA]

        harness.backend.emit(*_turn("resp_2", FALLBACK, b"\x05" * 160, fallback=True))
        await settle()

        assert [frame.payload for frame in harness.caller.sent] == [b"\x05" * 160]
        assert machine.state is SessionState.ACTIVE

        await machine.close()
        await harness.finish()

    asyncio.run(scenario())


def test_tripped_fallback_turn_is_dropped_without_another_request() -> None:
    async def scenario() -> None:
        harness = Harness()
        machine = await harness.start()

        harness.backend.emit(*_turn("resp_1", "No refund for you.", b"\x09" * 160))
        await settle()
        harness.backend.emit(*_turn("resp_2", "Here is your refund.", b"\x09" * 160, fallback=True))
        await settle()

        assert harness.caller.sent == []
        assert len(harness.backend.requested) == 1
        assert machine.state is SessionState.ACTIVE

        await machine.close()
        await harness.finish()

    asyncio.run(scenario())


def test_cancelled_turn_is_dropped() -> None:
    async def scenario() -> None:
        harness = Harness()
        machine = await harness.start()

        harness.backend.emit(
            AudioDelta(turn_id="resp_1", audio=b"\x01" * 160),
            TurnDone(turn_id="resp_1", status="cancelled"),
        )
        await settle()
        assert harness.caller.sent == []

        await machine.close()
        await harness.finish()

    asyncio.run(scenario())


def test_tool_call_round_trip_through_tool_pending() -> None:
    async def scenario() -> None:
        gate = asyncio.Event()

        @tool(name="lookup", description="Look up a key.", parameters=LookupArgs)
        async def lookup(args: LookupArgs) -> dict:
            await gate.wait()
            return {"key": args.key, "value": 42}

        harness = Harness(_agent_with_tools(lookup))
        machine = await harness.start()

        harness.backend.emit(ToolCallRequest(call_id="call_1", name="lookup", arguments='{"key": "a"}'))
        await settle()
        assert machine.state is SessionState.TOOL_PENDING

        # Audio keeps flowing while the tool runs.
        machine.on_inbound_frame(mulaw_frame(1))
        await settle()
        assert [frame.sequence for frame in harness.backend.sent_audio] == [1]

        gate.set()
        await settle()

        assert machine.state is SessionState.ACTIVE
        assert len(harness.backend.tool_results) == 1
        call_id, output = harness.backend.tool_results[0]
        assert call_id == "call_1"
        assert json.loads(output) == {"key": "a", "value": 42}

        await machine.close()
        await harness.finish()

    asyncio.run(scenario())


def test_schedule_appointment_tool_result() -> None:
    async def scenario() -> None:
        harness = Harness()
        machine = await harness.start()

        harness.backend.emit(
            ToolCallRequest(call_id="call_1", name="schedule_appointment", arguments='{"date": "2024-01-01"}')
        )
        await settle()

        assert harness.backend.tool_results == [("call_1", "Appointment scheduled for 2024-01-01 at 10am")]
        assert machine.state is SessionState.ACTIVE

        await machine.close()
        await harness.finish()

    asyncio.run(scenario())


def test_failed_tool_reports_structured_error_and_session_continues() -> None:
    async def scenario() -> None:
        harness = Harness()
        machine = await harness.start()

        harness.backend.emit(ToolCallRequest(call_id="call_1", name="schedule_appointment", arguments="{}"))
        await settle()
        harness.backend.emit(ToolCallRequest(call_id="call_2", name="no_such_tool", arguments="{}"))
        await settle()

        results = dict(harness.backend.tool_results)
        assert json.loads(results["call_1"])["error"]["type"] == "ValidationError"
        assert json.loads(results["call_2"])["error"]["type"] == "UnknownToolError"
        assert machine.state is SessionState.ACTIVE

        machine.on_inbound_frame(mulaw_frame(1))
        await settle()
        assert len(harness.backend.sent_audio) == 1

        await machine.close()
        await harness.finish()

    asyncio.run(scenario())


def test_tool_calls_arriving_while_pending_are_run_in_order() -> None:
    async def scenario() -> None:
        gate = asyncio.Event()
        seen: list[str] = []

        @tool(name="lookup", description="Look up a key.", parameters=LookupArgs)
        async def lookup(args: LookupArgs) -> str:
            seen.append(args.key)
            await gate.wait()
            return args.key

        harness = Harness(_agent_with_tools(lookup))
        machine = await harness.start()

        harness.backend.emit(
            ToolCallRequest(call_id="call_1", name="lookup", arguments='{"key": "first"}'),
            ToolCallRequest(call_id="call_2", name="lookup", arguments='{"key": "second"}'),
        )
        await settle()
        assert seen == ["first"]

        gate.set()
        await settle()

        assert harness.backend.tool_results == [("call_1", "first"), ("call_2", "second")]
        assert machine.state is SessionState.ACTIVE

        await machine.close()
        await harness.finish()

    asyncio.run(scenario())


def test_caller_hangup_during_tool_call_discards_result() -> None:
    async def scenario() -> None:
        gate = asyncio.Event()

        @tool(name="lookup", description="Look up a key.", parameters=LookupArgs)
        async def lookup(args: LookupArgs) -> str:
            await gate.wait()
            return args.key

        harness = Harness(_agent_with_tools(lookup))
        machine = await harness.start()

        harness.backend.emit(ToolCallRequest(call_id="call_1", name="lookup", arguments='{"key": "a"}'))
        await settle()
        assert machine.state is SessionState.TOOL_PENDING

        machine.on_caller_closed("stop")
        gate.set()
        await harness.finish()

        assert machine.state is SessionState.CLOSED
        assert machine.session.cancelled
        assert harness.backend.tool_results == []
        assert machine.session.close_reason == "stop"

    asyncio.run(scenario())


def test_backend_error_closes_with_internal_error() -> None:
    async def scenario() -> None:
        harness = Harness()
        machine = await harness.start()

        harness.backend.emit(BackendError(message="boom", code="server_error"))
        await harness.finish()

        assert machine.state is SessionState.CLOSED
        assert harness.caller.close_calls == [(1011, "backend_error: boom")]
        assert harness.backend.close_calls == 1

    asyncio.run(scenario())


def test_backend_protocol_error_closes_session() -> None:
    async def scenario() -> None:
        harness = Harness()
        machine = await harness.start()

        harness.backend.fail(BackendProtocolError("garbage"))
        await harness.finish()

        assert machine.state is SessionState.CLOSED
        assert harness.caller.close_calls == [(1011, "BackendProtocolError")]

    asyncio.run(scenario())


def test_mismatched_stream_format_closes_with_unsupported_data() -> None:
    async def scenario() -> None:
        harness = Harness()
        machine = await harness.start()

        machine.on_stream_started(
            StreamStarted(
                stream_sid="MZ1",
                call_sid="CA1",
                media_format=AudioFormat(encoding="audio/opus", sample_rate_hz=48000),
            )
        )
        await harness.finish()

        assert machine.state is SessionState.CLOSED
        assert harness.caller.close_calls == [(1003, "UnsupportedFormatError")]

    asyncio.run(scenario())


def test_stream_start_records_call_metadata() -> None:
    async def scenario() -> None:
        harness = Harness()
        machine = await harness.start()

        machine.on_stream_started(
            StreamStarted(
                stream_sid="MZ1",
                call_sid="CA1",
                media_format=AudioFormat(encoding="audio/x-mulaw", sample_rate_hz=8000),
            )
        )
        await settle()

        assert machine.session.stream_sid == "MZ1"
        assert machine.session.call_sid == "CA1"
        assert machine.state is SessionState.ACTIVE

        await machine.close()
        await harness.finish()

    asyncio.run(scenario())


def test_caller_speech_drops_buffered_output() -> None:
    async def scenario() -> None:
        harness = Harness()
        machine = await harness.start()

        harness.backend.emit(
            TranscriptDelta(turn_id="resp_1", text="Let me tell you"),
            AudioDelta(turn_id="resp_1", audio=b"\x01" * 160),
            SpeechStarted(item_id="item_1"),
            TurnDone(turn_id="resp_1"),
        )
        await settle()

        assert harness.caller.sent == []
        assert harness.caller.clears == 1
        assert machine.session.output_buffer == {}

        await machine.close()
        await harness.finish()

    asyncio.run(scenario())


def test_close_is_idempotent() -> None:
    async def scenario() -> None:
        closed: list[str] = []
        harness = Harness()
        harness.machine.add_close_callback(lambda session: closed.append(session.session_id))
        machine = await harness.start()

        await machine.close("first")
        await machine.close("second", 1011)
        await harness.finish()

        assert closed == [machine.session_id]
        assert harness.backend.close_calls == 1
        assert harness.caller.close_calls == [(1000, "first")]
        assert machine.session.close_reason == "first"
        assert machine.state is SessionState.CLOSED

    asyncio.run(scenario())


def test_frames_queued_before_close_are_forwarded() -> None:
    async def scenario() -> None:
        harness = Harness()
        machine = await harness.start()

        machine.on_inbound_frame(mulaw_frame(2))
        machine.on_inbound_frame(mulaw_frame(3))
        machine.on_caller_closed("stop")
        await harness.finish()

        # Frame 1 never arrived; the held frames are flushed in order.
        assert [frame.sequence for frame in harness.backend.sent_audio] == [2, 3]
        assert machine.state is SessionState.CLOSED

    asyncio.run(scenario())


def test_idle_session_times_out() -> None:
    async def scenario() -> None:
        harness = Harness(idle_timeout_s=0.05)
        machine = await harness.start()

        await harness.finish()

        assert machine.state is SessionState.CLOSED
        assert machine.session.close_reason == "idle_timeout"
        assert harness.caller.close_calls == [(1000, "idle_timeout")]

    asyncio.run(scenario())


def test_sessions_do_not_share_state() -> None:
    async def scenario() -> None:
        first = Harness()
        second = Harness()
        first_machine = await first.start()
        second_machine = await second.start()

        first_machine.on_inbound_frame(mulaw_frame(1))
        first.backend.emit(*_turn("resp_1", "Hello", b"\x01" * 160))
        second.backend.emit(BackendError(message="boom"))
        await second.finish()
        await settle()

        assert second_machine.state is SessionState.CLOSED
        assert first_machine.state is SessionState.ACTIVE
        assert len(first.backend.sent_audio) == 1
        assert second.backend.sent_audio == []
        assert len(first.caller.sent) == 1
        assert second.caller.sent == []
        assert first_machine.session_id != second_machine.session_id

        await first_machine.close()
        await first.finish()

    asyncio.run(scenario())


@pytest.mark.parametrize("term", BLOCKLIST_TERMS)
def test_each_blocklisted_term_is_replaced_by_fallback(term: str) -> None:
    async def scenario() -> None:
        harness = Harness()
        machine = await harness.start()

        harness.backend.emit(*_turn("resp_1", f"About that {term}.", b"\x09" * 160))
        await settle()
        harness.backend.emit(*_turn("resp_2", FALLBACK, b"\x05" * 160, fallback=True))
        await settle()

        assert [frame.payload for frame in harness.caller.sent] == [b"\x05" * 160]

        await machine.close()
        await harness.finish()

    asyncio.run(scenario())


def test_tool_failure_in_one_session_does_not_reach_another() -> None:
    async def scenario() -> None:
        first = Harness()
        second = Harness()
        first_machine = await first.start()
        second_machine = await second.start()

        first.backend.emit(ToolCallRequest(call_id="call_1", name="schedule_appointment", arguments="{}"))
        second.backend.emit(
            ToolCallRequest(call_id="call_2", name="schedule_appointment", arguments='{"date": "2024-02-02"}')
        )
        await settle()

        assert json.loads(first.backend.tool_results[0][1])["error"]["type"] == "ValidationError"
        assert second.backend.tool_results == [("call_2", "Appointment scheduled for 2024-02-02 at 10am")]
        assert first_machine.state is SessionState.ACTIVE
        assert second_machine.state is SessionState.ACTIVE

        await first_machine.close()
        await second_machine.close()
        await first.finish()
        await second.finish()

    asyncio.run(scenario())


def test_send_failure_while_draining_still_releases_everything() -> None:
    async def scenario() -> None:
        harness = Harness(backend=BrokenSocketBackend())
        machine = harness.machine
        await machine.connect()

        machine.on_inbound_frame(mulaw_frame(1))
        machine.on_inbound_frame(mulaw_frame(2))
        machine.on_caller_closed("stop")
        await asyncio.wait_for(machine.run(), timeout=1.0)

        assert machine.state is SessionState.CLOSED
        assert harness.caller.close_calls == [(1000, "stop")]
        assert harness.backend.close_calls == 1

    asyncio.run(scenario())


def test_send_failure_during_relay_closes_with_internal_error() -> None:
    async def scenario() -> None:
        harness = Harness(backend=BrokenSocketBackend())
        machine = harness.machine
        await machine.connect()

        machine.on_inbound_frame(mulaw_frame(1))
        machine.on_inbound_frame(mulaw_frame(2))
        await asyncio.wait_for(machine.run(), timeout=1.0)

        assert machine.state is SessionState.CLOSED
        assert harness.caller.close_calls == [(1011, "internal_error")]
        assert harness.backend.close_calls == 1

    asyncio.run(scenario())


def test_cancelled_fallback_does_not_mark_the_next_turn() -> None:
    async def scenario() -> None:
        harness = Harness()
        machine = await harness.start()

        harness.backend.emit(*_turn("resp_1", "No refund for you.", b"\x09" * 160))
        await settle()
        # The fallback response is cancelled before producing any output.
        harness.backend.emit(
            TurnStarted(turn_id="resp_2", metadata=dict(FALLBACK_METADATA)),
            TurnDone(turn_id="resp_2", status="cancelled"),
        )
        await settle()

        harness.backend.emit(*_turn("resp_3", "A refund, then.", b"\x09" * 160))
        await settle()
        assert len(harness.backend.requested) == 2

        harness.backend.emit(*_turn("resp_4", FALLBACK, b"\x05" * 160, fallback=True))
        await settle()
        assert [frame.payload for frame in harness.caller.sent] == [b"\x05" * 160]

        await machine.close()
        await harness.finish()

    asyncio.run(scenario())
