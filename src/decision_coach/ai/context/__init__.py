"""Cache-aware three-zone context assembly."""

from .assembler import (
    CAPABILITIES,
    DEFAULT_ARCHETYPES,
    RETRIEVAL_MODES,
    AssemblerConfig,
    ContextAssembler,
    ContextPack,
)
from .budget import BudgetAllocation, BudgetManager, CascadeResult, trim_analysis
from .hashing import (
    CacheBoundary,
    canonical_json,
    canonicalize,
    compute_cache_boundary,
    compute_hash,
    compute_string_hash,
    hash_clarification_answers,
    hash_config,
    hash_prompt_content,
    sha256_hex,
)
from .profiles import (
    ROUTE_PROFILES,
    BudgetAllocationError,
    RouteProfile,
    TokenBudget,
    check_budget,
    compute_budget,
    get_profile,
)
from .renderer import (
    RULES_REMINDER,
    UNTRUSTED_CLOSE,
    UNTRUSTED_OPEN,
    RenderedZones,
    render_margin,
    render_probability,
    render_sensitivity,
    render_zone1,
    render_zone2,
    render_zone3,
    render_zones,
)
from .state import (
    CONTEXT_ROUTES,
    FABRIC_STAGES,
    AnalysisSummary,
    CausalEdge,
    ConversationTurn,
    DecisionState,
    DriverSummary,
    Framing,
    GraphSummary,
    ToolOutput,
)

__all__ = [
    "CAPABILITIES",
    "DEFAULT_ARCHETYPES",
    "RETRIEVAL_MODES",
    "AssemblerConfig",
    "ContextAssembler",
    "ContextPack",
    "BudgetAllocation",
    "BudgetManager",
    "CascadeResult",
    "trim_analysis",
    "CacheBoundary",
    "canonical_json",
    "canonicalize",
    "compute_cache_boundary",
    "compute_hash",
    "compute_string_hash",
    "hash_clarification_answers",
    "hash_config",
    "hash_prompt_content",
    "sha256_hex",
    "ROUTE_PROFILES",
    "BudgetAllocationError",
    "RouteProfile",
    "TokenBudget",
    "check_budget",
    "compute_budget",
    "get_profile",
    "RULES_REMINDER",
    "UNTRUSTED_CLOSE",
    "UNTRUSTED_OPEN",
    "RenderedZones",
    "render_margin",
    "render_probability",
    "render_sensitivity",
    "render_zone1",
    "render_zone2",
    "render_zone3",
    "render_zones",
    "CONTEXT_ROUTES",
    "FABRIC_STAGES",
    "AnalysisSummary",
    "CausalEdge",
    "ConversationTurn",
    "DecisionState",
    "DriverSummary",
    "Framing",
    "GraphSummary",
    "ToolOutput",
]
