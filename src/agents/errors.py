"""Domain-specific exceptions for the voice-session gateway.

These exceptions are safe to import from API layers without pulling in the
realtime backend or audio dependencies.

Fatal errors end exactly one session and carry the WebSocket close code used
to hang up on the caller. Tool errors are recoverable and are reported back to
the backend as structured tool results.
"""

from __future__ import annotations

from typing import Any

# RFC 6455 close codes
CLOSE_NORMAL = 1000
CLOSE_UNSUPPORTED_DATA = 1003
CLOSE_INTERNAL_ERROR = 1011
CLOSE_TRY_AGAIN_LATER = 1013


class GatewayError(Exception):
    close_code: int = CLOSE_INTERNAL_ERROR
    default_detail: str = "Gateway error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class ConnectTimeoutError(GatewayError):
    close_code = CLOSE_TRY_AGAIN_LATER
    default_detail = "Timed out connecting to the realtime backend."


class BackendConnectError(GatewayError):
    default_detail = "Could not connect to the realtime backend."


class BackendProtocolError(GatewayError):
    default_detail = "Unexpected message from the realtime backend."


class UnsupportedFormatError(GatewayError):
    close_code = CLOSE_UNSUPPORTED_DATA
    default_detail = "Unsupported audio format."


class MalformedFrameError(UnsupportedFormatError):
    default_detail = "Malformed audio frame."


class SessionStateError(GatewayError):
    default_detail = "Invalid session state transition."


class DuplicateNameError(GatewayError):
    default_detail = "A tool with this name is already registered."


class RegistryFrozenError(GatewayError):
    default_detail = "The tool registry is frozen."


class ToolError(GatewayError):
    """Recoverable failure of a single tool invocation."""

    default_detail = "Tool invocation failed."

    def to_result(self) -> dict[str, Any]:
        return {"error": {"type": type(self).__name__, "message": self.detail}}


class UnknownToolError(ToolError):
    default_detail = "Unknown tool."


class ValidationError(ToolError):
    default_detail = "Tool arguments failed validation."


class ToolExecutionError(ToolError):
    default_detail = "Tool handler raised an error."

    def __init__(self, detail: str | None = None, *, cause: BaseException | None = None) -> None:
        super().__init__(detail)
        self.cause = cause


class GuardrailTripped(GatewayError):
    """Raised when at least one output guardrail trips for a turn."""

    default_detail = "Output guardrail tripwire triggered."

    def __init__(self, results: list[Any], detail: str | None = None) -> None:
        super().__init__(detail)
        self.results = results

    @property
    def tripped(self) -> list[Any]:
        return [result for result in self.results if result.tripwire_triggered]
