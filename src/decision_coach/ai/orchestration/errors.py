"""Error taxonomy for the turn orchestrator and its tools.

Only request validation and unrecoverable pipeline failures reach the caller as
errors, and even then they arrive inside an envelope. Everything else is
carried as an outcome-tagged result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------


class ErrorCode:
    """Machine-readable codes used in envelopes and tool results."""

    LLM_TIMEOUT = "LLM_TIMEOUT"
    TOOL_EXECUTION_FAILED = "TOOL_EXECUTION_FAILED"
    VALIDATION_REJECTED = "VALIDATION_REJECTED"
    CONTEXT_TOO_LARGE = "CONTEXT_TOO_LARGE"
    INVALID_REQUEST = "INVALID_REQUEST"
    UNKNOWN = "UNKNOWN"
    PIPELINE_ERROR = "PIPELINE_ERROR"
    CANCELLED = "CANCELLED"

    # Tool-level codes
    TOOL_NOT_FOUND = "tool_not_found"
    INVALID_ARGUMENTS = "invalid_arguments"
    TOOL_TIMEOUT = "tool_timeout"
    TOOL_UNAVAILABLE = "tool_unavailable"
    PREREQUISITE_MISSING = "prerequisite_missing"


_HTTP_STATUS: Mapping[str, int] = {
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.CANCELLED: 503,
}
_DEFAULT_ERROR_STATUS = 500

SAFE_ERROR_MESSAGE = "I ran into a problem processing that. Could you try again?"


def http_status_for(code: str | None) -> int:
    """Return the HTTP status that accompanies an envelope carrying ``code``."""

    if code is None:
        return 200
    return _HTTP_STATUS.get(code, _DEFAULT_ERROR_STATUS)


@dataclass
class OrchestratorError(Exception):
    """Failure that ends a turn with an error envelope.

    Attributes:
        code: One of the :class:`ErrorCode` envelope codes.
        message: Internal description. Never shown to the end user.
        details: Extra diagnostics, attached only outside production.
    """

    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


@dataclass
class RequestValidationError(OrchestratorError):
    """Inbound payload failed schema validation."""

    code: str = ErrorCode.INVALID_REQUEST
    message: str = "Request payload is invalid"


@dataclass
class ToolError(Exception):
    """Raised by tool handlers. Converted to a failed tool result by the executor."""

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    retryable: ClassVar[bool] = False

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


class TurnCancelled(Exception):
    """Raised at a suspend point once the turn's cancellation token has fired."""

    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


__all__ = [
    "ErrorCode",
    "SAFE_ERROR_MESSAGE",
    "http_status_for",
    "OrchestratorError",
    "RequestValidationError",
    "ToolError",
    "TurnCancelled",
]
