"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules.
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING

from config.settings import get_settings

if TYPE_CHECKING:  # pragma: no cover
    from session.gateway import SessionGateway


@lru_cache(maxsize=1)
def _gateway_factory() -> SessionGateway:
    # Lazy import so the routes can be imported without backend credentials.
    from agents.triage import build_triage_agent
    from realtime.factory import build_backend_factory
    from session.gateway import SessionGateway

    settings = get_settings()
    agent = build_triage_agent(fallback_utterance=settings.guardrail_fallback_utterance)
    return SessionGateway(
        agent=agent,
        backend_factory=build_backend_factory(agent, settings),
        connect_timeout_s=settings.backend_connect_timeout_seconds,
        idle_timeout_s=settings.session_idle_timeout_seconds,
        reorder_window=settings.frame_reorder_window,
    )


def get_gateway() -> SessionGateway:
    return _gateway_factory()
