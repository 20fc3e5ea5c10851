"""Named, schema-validated actions the realtime backend may call mid-conversation."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

import pydantic
from pydantic import BaseModel

from agents.errors import (
    DuplicateNameError,
    RegistryFrozenError,
    ToolExecutionError,
    UnknownToolError,
    ValidationError,
)

LOGGER = logging.getLogger(__name__)

ToolHandler = Callable[[Any], Awaitable[Any]]


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: type[BaseModel]
    handler: ToolHandler

    def backend_schema(self) -> dict[str, Any]:
        schema = self.parameters.model_json_schema()
        schema.pop("title", None)
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": schema,
        }


def tool(
    *,
    name: str,
    description: str,
    parameters: type[BaseModel],
) -> Callable[[ToolHandler], ToolDefinition]:
    """Turn an async function into a ToolDefinition."""

    def decorator(handler: ToolHandler) -> ToolDefinition:
        return ToolDefinition(name=name, description=description, parameters=parameters, handler=handler)

    return decorator


class ToolRegistry:
    """Process-wide tool table.

    Tools are registered once at startup and the registry is then frozen;
    after that it is only read, so sessions can invoke tools concurrently.
    """

    def __init__(self, definitions: list[ToolDefinition] | None = None) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._frozen = False
        for definition in definitions or []:
            self.register(definition)

    def register(self, definition: ToolDefinition) -> None:
        if self._frozen:
            raise RegistryFrozenError(f"Cannot register {definition.name!r}: registry is frozen")
        if definition.name in self._tools:
            raise DuplicateNameError(f"Tool {definition.name!r} is already registered")
        self._tools[definition.name] = definition

    def freeze(self) -> ToolRegistry:
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> ToolDefinition:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownToolError(f"Unknown tool: {name!r}") from None

    def backend_schemas(self) -> list[dict[str, Any]]:
        return [definition.backend_schema() for definition in self._tools.values()]

    async def invoke(self, name: str, raw_args: Mapping[str, Any] | str | None) -> Any:
        """Validate ``raw_args`` against the tool's schema and run its handler.

        Raises:
            UnknownToolError: no tool is registered under ``name``.
            ValidationError: the arguments do not satisfy the schema. The
                handler is not called.
            ToolExecutionError: the handler raised; the original exception is
                available as ``cause`` and ``__cause__``.
        """

        definition = self.get(name)
        args = self._decode_args(name, raw_args)

        try:
            validated = definition.parameters.model_validate(args)
        except pydantic.ValidationError as exc:
            raise ValidationError(
                f"Invalid arguments for {name!r}: {exc.error_count()} error(s): "
                + "; ".join(f"{'.'.join(map(str, err['loc'])) or '<root>'}: {err['msg']}" for err in exc.errors())
            ) from exc

        try:
            return await definition.handler(validated)
        except Exception as exc:
            LOGGER.debug("Tool %s handler failed", name, exc_info=True)
            raise ToolExecutionError(f"Tool {name!r} failed: {exc}", cause=exc) from exc

    @staticmethod
    def _decode_args(name: str, raw_args: Mapping[str, Any] | str | None) -> Mapping[str, Any]:
        if raw_args is None or raw_args == "":
            return {}
        if isinstance(raw_args, str):
            try:
                raw_args = json.loads(raw_args)
            except json.JSONDecodeError as exc:
                raise ValidationError(f"Arguments for {name!r} are not valid JSON: {exc.msg}") from exc
        if not isinstance(raw_args, Mapping):
            raise ValidationError(f"Arguments for {name!r} must be a JSON object")
        return raw_args
