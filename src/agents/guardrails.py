"""Output guardrails applied to each complete turn before the caller hears it."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from agents.errors import GuardrailTripped

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuardrailResult:
    guardrail_name: str
    tripwire_triggered: bool
    output_info: dict[str, Any] = field(default_factory=dict)


class OutputGuardrail(ABC):
    """A deterministic check over the full text of one turn.

    Implementations must not touch session state; the returned result is
    their only effect.
    """

    name: str = "guardrail"

    @abstractmethod
    async def execute(self, turn_text: str) -> GuardrailResult:
        """Evaluate ``turn_text`` and report whether the tripwire fired."""


class BlocklistGuardrail(OutputGuardrail):
    """Trips when the turn mentions any blocklisted term (case-insensitive)."""

    def __init__(self, terms: Iterable[str], *, name: str = "Blocklist terms") -> None:
        self.name = name
        self.terms = tuple(term.lower() for term in terms if term)

    async def execute(self, turn_text: str) -> GuardrailResult:
        text = turn_text.lower()
        matched = [term for term in self.terms if term in text]
        return GuardrailResult(
            guardrail_name=self.name,
            tripwire_triggered=bool(matched),
            output_info={"blocklist_terms_in_output": bool(matched), "matched_terms": matched},
        )


class GuardrailChain:
    """Ordered set of output guardrails.

    Every guardrail runs on every turn, even after one has tripped, so the
    full diagnostic set is available for logging.
    """

    def __init__(self, guardrails: Iterable[OutputGuardrail] = ()) -> None:
        self._guardrails: list[OutputGuardrail] = []
        for guardrail in guardrails:
            self.register(guardrail)

    def register(self, guardrail: OutputGuardrail) -> None:
        self._guardrails.append(guardrail)

    def __len__(self) -> int:
        return len(self._guardrails)

    @property
    def names(self) -> list[str]:
        return [guardrail.name for guardrail in self._guardrails]

    async def evaluate(self, turn_text: str) -> list[GuardrailResult]:
        results: list[GuardrailResult] = []
        for guardrail in self._guardrails:
            try:
                result = await guardrail.execute(turn_text)
            except Exception as exc:
                # A guardrail that cannot decide withholds the turn.
                LOGGER.exception("Guardrail %s raised; treating as tripped", guardrail.name)
                result = GuardrailResult(
                    guardrail_name=guardrail.name,
                    tripwire_triggered=True,
                    output_info={"error": repr(exc)},
                )
            results.append(result)
        return results

    async def check(self, turn_text: str) -> list[GuardrailResult]:
        """Evaluate the turn and raise GuardrailTripped if any tripwire fired."""

        results = await self.evaluate(turn_text)
        if any(result.tripwire_triggered for result in results):
            names = ", ".join(r.guardrail_name for r in results if r.tripwire_triggered)
            raise GuardrailTripped(results, f"Tripped: {names}")
        return results
