"""Agent configuration and tool argument schemas."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, Field, field_validator

from agents.guardrails import GuardrailChain
from agents.tools import ToolRegistry


@dataclass(frozen=True)
class AgentConfig:
    """Immutable agent definition handed to the session gateway at construction."""

    name: str
    instructions: str
    tools: ToolRegistry
    guardrails: GuardrailChain
    fallback_utterance: str

    def __post_init__(self) -> None:
        self.tools.freeze()


class ScheduleAppointmentArgs(BaseModel):
    """Arguments for the schedule_appointment tool."""

    date: str = Field(description="Requested appointment date, e.g. 2024-01-01.")

    @field_validator("date")
    @classmethod
    def date_not_empty(cls, value: str) -> str:
        date = value.strip()
        if not date:
            raise ValueError("Date may not be empty.")
        return date
