"""The veterinary office triage agent served on incoming calls."""

from __future__ import annotations

from agents.guardrails import BlocklistGuardrail, GuardrailChain
from agents.schemas import AgentConfig, ScheduleAppointmentArgs
from agents.tools import ToolRegistry, tool

AGENT_NAME = "Triage Agent"
INSTRUCTIONS = "You are a helpful assistant at a veterinary office."
BLOCKLIST_TERMS = ("diagnosis", "discount", "cure", "refund")


@tool(
    name="schedule_appointment",
    description="Schedule an appointment for a given date.",
    parameters=ScheduleAppointmentArgs,
)
async def schedule_appointment(args: ScheduleAppointmentArgs) -> str:
    return f"Appointment scheduled for {args.date} at 10am"


def build_triage_agent(*, fallback_utterance: str) -> AgentConfig:
    return AgentConfig(
        name=AGENT_NAME,
        instructions=INSTRUCTIONS,
        tools=ToolRegistry([schedule_appointment]),
        guardrails=GuardrailChain([BlocklistGuardrail(BLOCKLIST_TERMS)]),
        fallback_utterance=fallback_utterance,
    )
