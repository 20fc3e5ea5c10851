"""Session gateway.

Accepts one inbound telephony stream per call, binds it to a fresh backend
conversation through a RealtimeSession, relays until either side closes and
then releases everything. A failing call never affects the others, and
``accept_connection`` never raises.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Mapping
from types import MappingProxyType

from agents.errors import (
    CLOSE_INTERNAL_ERROR,
    BackendConnectError,
    ConnectTimeoutError,
    GatewayError,
)
from agents.schemas import AgentConfig
from realtime.factory import BackendFactory
from session.models import Session
from session.state_machine import RealtimeSession
from telephony.codec import CodecAdapter
from telephony.twilio_stream import (
    CallerConnection,
    MarkReceived,
    MediaReceived,
    StreamStarted,
    StreamStopped,
)

LOGGER = logging.getLogger(__name__)


class SessionGateway:
    """Bridges inbound telephony streams to realtime backend sessions."""

    def __init__(
        self,
        *,
        agent: AgentConfig,
        backend_factory: BackendFactory,
        codec: CodecAdapter | None = None,
        connect_timeout_s: float = 10.0,
        idle_timeout_s: float = 60.0,
        reorder_window: int = 50,
    ) -> None:
        self._agent = agent
        self._backend_factory = backend_factory
        self._codec = codec or CodecAdapter()
        self._connect_timeout_s = connect_timeout_s
        self._idle_timeout_s = idle_timeout_s
        self._reorder_window = reorder_window
        self._sessions: dict[str, RealtimeSession] = {}

    @property
    def active_sessions(self) -> Mapping[str, RealtimeSession]:
        return MappingProxyType(self._sessions)

    async def accept_connection(self, inbound: CallerConnection) -> None:
        session = Session(inbound=inbound)
        try:
            await self._serve(session)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("Session %s terminated by unexpected error", session.session_id)
            with contextlib.suppress(Exception):
                await inbound.close(CLOSE_INTERNAL_ERROR, "internal error")
        finally:
            self._sessions.pop(session.session_id, None)

    async def _serve(self, session: Session) -> None:
        machine = RealtimeSession(
            session,
            backend=self._backend_factory(),
            agent=self._agent,
            codec=self._codec,
            idle_timeout_s=self._idle_timeout_s,
            reorder_window=self._reorder_window,
        )
        self._sessions[session.session_id] = machine
        machine.add_close_callback(lambda s: self._sessions.pop(s.session_id, None))
        LOGGER.info("Session %s accepted", session.session_id)

        try:
            await self._connect(machine)
        except GatewayError as exc:
            LOGGER.error("Session %s could not reach the backend: %s", session.session_id, exc.detail)
            await machine.close(type(exc).__name__, exc.close_code)
            return

        pump = asyncio.create_task(self._pump_inbound(machine))
        try:
            await machine.run()
        finally:
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump
        LOGGER.info(
            "Session %s released (%s) after %.1fs",
            session.session_id,
            session.close_reason,
            time.time() - session.created_at,
        )

    async def _connect(self, machine: RealtimeSession) -> None:
        try:
            await asyncio.wait_for(machine.connect(), timeout=self._connect_timeout_s)
        except asyncio.TimeoutError as exc:
            raise ConnectTimeoutError(
                f"No backend session after {self._connect_timeout_s:.1f}s"
            ) from exc
        except GatewayError:
            raise
        except Exception as exc:
            raise BackendConnectError(f"Backend connect failed: {exc}") from exc

    async def _pump_inbound(self, machine: RealtimeSession) -> None:
        inbound = machine.session.inbound
        try:
            while True:
                event = await inbound.receive()
                if isinstance(event, MediaReceived):
                    machine.on_inbound_frame(event.frame)
                elif isinstance(event, StreamStarted):
                    machine.on_stream_started(event)
                elif isinstance(event, MarkReceived):
                    LOGGER.debug("Session %s mark %s played", machine.session_id, event.name)
                elif isinstance(event, StreamStopped):
                    LOGGER.info("Session %s caller stream ended: %s", machine.session_id, event.reason)
                    machine.on_caller_closed(event.reason)
                    return
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("Session %s inbound stream failed", machine.session_id)
            machine.on_caller_closed("inbound_error")
