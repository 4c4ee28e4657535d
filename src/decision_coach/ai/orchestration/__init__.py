"""Turn orchestration for the decision coach."""

# Entry point
from .orchestrator import TurnOrchestrator
from .runtime_config import OrchestratorConfig

# Errors and cancellation
from .cancellation import CancellationToken
from .errors import (
    SAFE_ERROR_MESSAGE,
    ErrorCode,
    OrchestratorError,
    RequestValidationError,
    ToolError,
    TurnCancelled,
    http_status_for,
)

# Core types
from .types import (
    ConversationBlock,
    ConversationContext,
    LLMCallResult,
    ResponseEnvelope,
    ScienceLedger,
    StageIndicator,
    SuggestedAction,
    SystemEvent,
    ToolBatchResult,
    ToolInvocation,
    TurnRequest,
    TurnResult,
)
from .request import TURN_REQUEST_SCHEMA, parse_turn_request

# Collaborators
from .idempotency import IdempotencyStore, InMemoryIdempotencyStore
from .response_cache import LLMResponseCache, response_cache_key
from .heuristics import Specialist, default_specialists

# Tool system
from .tools import (
    AnalysisEngine,
    GraphDrafter,
    GraphEditor,
    ToolContext,
    ToolExecutor,
    ToolOutcome,
    ToolRegistry,
    ToolSpec,
    build_default_registry,
)

__all__ = [
    # Entry point
    "TurnOrchestrator",
    "OrchestratorConfig",
    # Errors and cancellation
    "CancellationToken",
    "ErrorCode",
    "OrchestratorError",
    "RequestValidationError",
    "SAFE_ERROR_MESSAGE",
    "ToolError",
    "TurnCancelled",
    "http_status_for",
    # Core types
    "ConversationBlock",
    "ConversationContext",
    "LLMCallResult",
    "ResponseEnvelope",
    "ScienceLedger",
    "StageIndicator",
    "SuggestedAction",
    "SystemEvent",
    "ToolBatchResult",
    "ToolInvocation",
    "TurnRequest",
    "TurnResult",
    "TURN_REQUEST_SCHEMA",
    "parse_turn_request",
    # Collaborators
    "IdempotencyStore",
    "InMemoryIdempotencyStore",
    "LLMResponseCache",
    "response_cache_key",
    "Specialist",
    "default_specialists",
    # Tool system
    "AnalysisEngine",
    "GraphDrafter",
    "GraphEditor",
    "ToolContext",
    "ToolExecutor",
    "ToolOutcome",
    "ToolRegistry",
    "ToolSpec",
    "build_default_registry",
]
