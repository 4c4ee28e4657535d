"""Pipeline phases for the orchestration turn flow.

This package contains the individual phases of the turn pipeline:
- classify: Decide turn kind, intent, route and stage
- enrich: Build decision state and assemble the context pack
- specialize: Run deterministic heuristics
- invoke: Call the model (acknowledgement or full reasoning path)
- tools: Execute tool invocations and collect side effects
- envelope: Assemble the response envelope and lineage hash
"""

from .classify import SILENT_EVENTS, classify_turn
from .enrich import enrich_turn
from .envelope import (
    assemble_envelope,
    build_error_envelope,
    compute_lineage_hash,
    lineage_for_payload,
    merge_suggested_actions,
)
from .invoke import (
    ACK_SYSTEM_PROMPT,
    ACK_USER_PROMPT,
    ModelClient,
    build_full_messages,
    invoke_ack,
    invoke_full,
    parse_tool_invocations,
)
from .specialize import specialize_turn
from .tools import RECOVERABLE_TOOL_ERRORS, execute_tools

__all__ = [
    # classify.py exports
    "SILENT_EVENTS",
    "classify_turn",
    # enrich.py exports
    "enrich_turn",
    # specialize.py exports
    "specialize_turn",
    # invoke.py exports
    "ACK_SYSTEM_PROMPT",
    "ACK_USER_PROMPT",
    "ModelClient",
    "build_full_messages",
    "invoke_ack",
    "invoke_full",
    "parse_tool_invocations",
    # tools.py exports
    "RECOVERABLE_TOOL_ERRORS",
    "execute_tools",
    # envelope.py exports
    "assemble_envelope",
    "build_error_envelope",
    "compute_lineage_hash",
    "lineage_for_payload",
    "merge_suggested_actions",
]
