"""Turn Orchestrator: public entry point for conversational turns.

:class:`TurnOrchestrator` wires the pipeline phases together

    classify -> enrich -> specialize -> invoke_llm -> execute_tools -> assemble_envelope

and guarantees that :meth:`TurnOrchestrator.handle_turn` always returns a
:class:`TurnResult` carrying a well-formed envelope. Expected degraded
outcomes travel as result values; only unrecoverable failures become error
envelopes, and even those are returned rather than raised.
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from ...services import telemetry as telemetry_service
from ...utils.logging import bind_turn
from ..client import AIClient, ClientSettings
from ..context.assembler import AssemblerConfig, ContextAssembler
from .cancellation import CancellationToken
from .errors import ErrorCode, OrchestratorError, RequestValidationError, TurnCancelled, http_status_for
from .heuristics import Specialist, default_specialists
from .idempotency import IdempotencyStore, InMemoryIdempotencyStore
from .pipeline import (
    ModelClient,
    assemble_envelope,
    build_error_envelope,
    classify_turn,
    compute_lineage_hash,
    enrich_turn,
    execute_tools,
    invoke_ack,
    invoke_full,
    lineage_for_payload,
    specialize_turn,
)
from .request import parse_turn_request
from .response_cache import LLMResponseCache
from .runtime_config import OrchestratorConfig
from .tools.builtin import AnalysisEngine, GraphDrafter, GraphEditor, build_default_registry
from .tools.executor import ExecutorConfig, ToolExecutor
from .tools.registry import ToolRegistry
from .tools.types import ToolContext, ToolHandler, ToolSpec
from .types import (
    EnrichedContext,
    LLMCallResult,
    SpecialistResult,
    StageIndicator,
    ToolBatchResult,
    ToolInvocation,
    TurnClassification,
    TurnRequest,
    TurnResult,
)

__all__ = ["TurnOrchestrator"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class _TurnTrace:
    """Mutable per-turn bookkeeping used for logging and usage telemetry."""

    turn_id: str
    started: float
    phases: list[str] = field(default_factory=list)
    route: str = "CHAT"
    model: str | None = None
    usage: dict[str, int] = field(default_factory=dict)
    tool_names: tuple[str, ...] = ()
    degraded: bool = False

    def enter(self, phase: str) -> None:
        self.phases.append(phase)

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000


class TurnOrchestrator:
    """Run one conversational turn per call.

    Collaborators are injected so that each concurrent run shares nothing but
    the idempotency store, the response cache and the tool side effects.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        client: ModelClient,
        *,
        assembler: ContextAssembler | None = None,
        registry: ToolRegistry | None = None,
        executor: ToolExecutor | None = None,
        idempotency: IdempotencyStore | None = None,
        specialists: Iterable[Specialist] | None = None,
        cache: LLMResponseCache | None = None,
        telemetry_sink: telemetry_service.TelemetrySink | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._assembler = assembler or ContextAssembler(AssemblerConfig(model_id=getattr(client, "model", "unknown")))
        if executor is not None:
            self._registry = executor.registry
            self._executor = executor
        else:
            self._registry = registry or build_default_registry()
            self._executor = ToolExecutor(self._registry, ExecutorConfig(default_timeout=config.tool_timeout_seconds))
        self._idempotency = idempotency
        self._specialists: tuple[Specialist, ...] = (
            tuple(specialists) if specialists is not None else default_specialists()
        )
        if cache is None and config.response_cache_enabled:
            cache = LLMResponseCache()
        self._cache = cache if config.response_cache_enabled else None
        self._telemetry_sink = telemetry_sink

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        *,
        client: ModelClient | None = None,
        analysis_engine: AnalysisEngine | None = None,
        graph_drafter: GraphDrafter | None = None,
        graph_editor: GraphEditor | None = None,
        telemetry_sink: telemetry_service.TelemetrySink | None = None,
    ) -> "TurnOrchestrator":
        """Wire an orchestrator and its process-scoped collaborators from :class:`Settings`."""

        config = OrchestratorConfig.from_settings(settings)
        if client is None:
            client = AIClient(ClientSettings.from_settings(settings))
        assembler = ContextAssembler(AssemblerConfig(enabled=settings.context_enabled, model_id=settings.model))
        cache = LLMResponseCache(max_entries=settings.response_cache_entries) if config.response_cache_enabled else None
        return cls(
            config,
            client,
            assembler=assembler,
            registry=build_default_registry(
                analysis_engine=analysis_engine,
                graph_drafter=graph_drafter,
                graph_editor=graph_editor,
            ),
            idempotency=InMemoryIdempotencyStore(
                ttl_seconds=settings.idempotency_ttl_seconds,
                max_entries=settings.idempotency_max_entries,
            ),
            cache=cache,
            telemetry_sink=telemetry_sink or telemetry_service.InMemoryTelemetrySink(),
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def client(self) -> ModelClient:
        return self._client

    @property
    def assembler(self) -> ContextAssembler:
        return self._assembler

    @property
    def tool_registry(self) -> ToolRegistry:
        return self._registry

    @property
    def response_cache(self) -> LLMResponseCache | None:
        return self._cache

    # ------------------------------------------------------------------
    # Tool management
    # ------------------------------------------------------------------

    def register_tool(self, spec: ToolSpec, handler: ToolHandler) -> None:
        """Expose an additional tool to the model."""

        self._registry.register_function(spec, handler)
        LOGGER.debug("Registered tool: %s", spec.name)

    def unregister_tool(self, name: str) -> None:
        if self._registry.unregister(name):
            LOGGER.debug("Unregistered tool: %s", name)

    def available_tools(self) -> tuple[str, ...]:
        return tuple(self._registry.list_names())

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle_turn(
        self,
        payload: Any,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> TurnResult:
        """Validate ``payload`` and run the turn to completion.

        Never raises for any input. Task cancellation (``CancelledError``)
        still propagates so callers can tear the run down.
        """

        trace = _TurnTrace(turn_id=uuid.uuid4().hex, started=time.perf_counter())
        log = bind_turn(LOGGER, trace.turn_id)
        try:
            return await self._handle(payload, trace, cancel_token)
        except Exception as exc:
            log.exception("Turn failed outside the pipeline")
            result = self._error_result(
                trace,
                OrchestratorError(ErrorCode.PIPELINE_ERROR, f"{type(exc).__name__}: {exc}"),
                lineage_hash=lineage_for_payload(payload),
            )
            self._record_usage(trace, result)
            return result

    async def aclose(self) -> None:
        """Release the model client when it supports closing."""

        close = getattr(self._client, "aclose", None)
        if callable(close):
            result = close()
            if inspect.isawaitable(result):
                await result

    # ------------------------------------------------------------------
    # Idempotency
    # ------------------------------------------------------------------

    async def _handle(self, payload: Any, trace: _TurnTrace, cancel_token: CancellationToken | None) -> TurnResult:
        log = bind_turn(LOGGER, trace.turn_id)
        try:
            request = parse_turn_request(payload)
        except RequestValidationError as exc:
            log.info("Rejected invalid turn request: %s", exc.message)
            result = self._error_result(trace, exc, lineage_hash=lineage_for_payload(payload))
            self._record_usage(trace, result)
            return result

        store = self._idempotency
        if store is None:
            return await self._run_and_record(request, trace, cancel_token)

        key = self._idempotency_key(request)
        stored = await store.get(key)
        if stored is not None:
            return self._replayed(key, stored)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[TurnResult] = loop.create_future()
        owner = store.register_inflight(key, future)
        if owner is not future:
            log.debug("Turn %s already in flight; waiting for its result", key)
            return self._replayed(key, await asyncio.shield(owner))

        try:
            result = await self._run_and_record(request, trace, cancel_token)
            if result.http_status == 200:
                result = await store.set_if_absent(key, result)
            future.set_result(result)
            return result
        except BaseException:
            if not future.done():
                future.set_result(
                    self._error_result(
                        trace,
                        OrchestratorError(ErrorCode.CANCELLED, "owning run did not complete"),
                        lineage_hash=self._lineage(request, None),
                    )
                )
            raise
        finally:
            store.clear_inflight(key, future)

    @staticmethod
    def _idempotency_key(request: TurnRequest) -> str:
        return f"{request.scenario_id}:{request.client_turn_id}"

    @staticmethod
    def _replayed(key: str, result: TurnResult) -> TurnResult:
        LOGGER.debug("Replaying stored result for turn %s", key)
        telemetry_service.emit(
            telemetry_service.TURN_REPLAYED,
            {"key": key, "turn_id": result.envelope.turn_id, "http_status": result.http_status},
        )
        return dataclasses.replace(result, replayed=True)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run_and_record(
        self,
        request: TurnRequest,
        trace: _TurnTrace,
        cancel_token: CancellationToken | None,
    ) -> TurnResult:
        token = cancel_token or CancellationToken.with_budget(self._config.turn_budget_seconds)
        result = await self._run_turn(request, trace, token)
        self._record_usage(trace, result)
        return result

    async def _run_turn(self, request: TurnRequest, trace: _TurnTrace, token: CancellationToken) -> TurnResult:
        log = bind_turn(LOGGER, trace.turn_id)
        config = self._config
        classification: TurnClassification | None = None

        try:
            trace.enter("classify")
            classification = classify_turn(request)
            trace.route = classification.route
            log.debug(
                "Classified turn: kind=%s intent=%s route=%s stage=%s",
                classification.kind,
                classification.intent,
                classification.route,
                classification.stage.stage,
            )

            enriched: EnrichedContext | None = None
            specialists = SpecialistResult.empty()
            if classification.kind in ("deterministic", "conversational"):
                trace.enter("enrich")
                enriched = enrich_turn(request, classification, self._assembler, prompt_version=config.prompt_version)
                trace.enter("specialize")
                specialists = specialize_turn(self._specialists, request, classification, enriched)

            token.raise_if_cancelled()

            llm = LLMCallResult.skipped()
            invocations: tuple[ToolInvocation, ...] = ()
            if classification.kind == "ack":
                trace.enter("invoke_llm")
                llm = await invoke_ack(self._client, config=config, cancel_token=token)
            elif classification.kind == "conversational" and enriched is not None:
                trace.enter("invoke_llm")
                llm = await invoke_full(
                    self._client,
                    enriched,
                    specialists,
                    self._registry.get_openai_tools(),
                    config=config,
                    cache=self._cache,
                    cancel_token=token,
                )
                if llm.outcome == "error":
                    raise OrchestratorError(
                        ErrorCode.PIPELINE_ERROR,
                        llm.error_message or "model call failed",
                        {"cause": llm.error_code},
                    )
                invocations = llm.tool_invocations
            elif classification.kind == "deterministic" and classification.deterministic_tool:
                invocations = (ToolInvocation.deterministic(classification.deterministic_tool),)
            trace.model = llm.model
            trace.usage = dict(llm.usage)
            trace.degraded = llm.outcome == "degraded"

            batch = ToolBatchResult.empty()
            if invocations:
                trace.enter("execute_tools")
                trace.tool_names = tuple(invocation.name for invocation in invocations)
                tool_context = ToolContext(
                    message=request.message,
                    context=request.context,
                    turn_id=trace.turn_id,
                    cancel_token=token,
                )
                batch = await execute_tools(
                    self._executor,
                    invocations,
                    tool_context,
                    timeout=config.tool_timeout_seconds,
                )
                if batch.outcome == "error":
                    raise OrchestratorError(
                        ErrorCode.PIPELINE_ERROR,
                        batch.error_message or "tool execution failed",
                        {"cause": ErrorCode.TOOL_EXECUTION_FAILED, "tool_error": batch.error_code},
                    )
                trace.degraded = trace.degraded or batch.outcome == "degraded"

            trace.enter("assemble_envelope")
            envelope = assemble_envelope(
                turn_id=trace.turn_id,
                request=request,
                classification=classification,
                enriched=enriched,
                specialists=specialists,
                llm=llm,
                invocations=invocations,
                batch=batch,
                config=config,
                long_running=self._is_long_running(invocations),
                phases=trace.phases,
            )
            trace.enter("done")
            return TurnResult(envelope=envelope)

        except TurnCancelled as exc:
            log.info("Turn cancelled during %s: %s", trace.phases[-1] if trace.phases else "start", exc.reason)
            error = OrchestratorError(ErrorCode.CANCELLED, exc.reason)
        except OrchestratorError as exc:
            log.warning("Turn failed during %s: %s", trace.phases[-1] if trace.phases else "start", exc)
            error = exc
        except Exception as exc:
            log.exception("Unexpected failure during %s", trace.phases[-1] if trace.phases else "start")
            error = OrchestratorError(ErrorCode.PIPELINE_ERROR, f"{type(exc).__name__}: {exc}")

        trace.enter("error")
        return self._error_result(
            trace,
            error,
            lineage_hash=self._lineage(request, classification),
            stage=classification.stage if classification is not None else None,
        )

    def _is_long_running(self, invocations: Sequence[ToolInvocation]) -> bool:
        if not invocations:
            return False
        spec = self._registry.get_spec(invocations[0].name)
        return bool(spec and spec.long_running)

    def _lineage(self, request: TurnRequest, classification: TurnClassification | None) -> str:
        if classification is None:
            return compute_lineage_hash(
                request,
                stage="frame",
                intent="conversational",
                route="CHAT",
                prompt_version=self._config.prompt_version,
            )
        return compute_lineage_hash(
            request,
            stage=classification.stage.stage,
            intent=classification.intent,
            route=classification.route,
            prompt_version=self._config.prompt_version,
        )

    def _error_result(
        self,
        trace: _TurnTrace,
        error: OrchestratorError,
        *,
        lineage_hash: str,
        stage: StageIndicator | None = None,
    ) -> TurnResult:
        envelope = build_error_envelope(
            turn_id=trace.turn_id,
            code=error.code,
            internal_message=error.message,
            lineage_hash=lineage_hash,
            config=self._config,
            stage=stage,
            details=error.details,
            phases=trace.phases,
        )
        return TurnResult(envelope=envelope, http_status=http_status_for(error.code))

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    def _record_usage(self, trace: _TurnTrace, result: TurnResult) -> None:
        envelope = result.envelope
        if envelope.error is not None:
            outcome = "error"
        elif trace.degraded:
            outcome = "degraded"
        else:
            outcome = "ok"

        payload: Mapping[str, Any] = {
            "turn_id": trace.turn_id,
            "route": trace.route,
            "outcome": outcome,
            "http_status": result.http_status,
            "latency_ms": round(trace.elapsed_ms, 3),
            "tools": list(trace.tool_names),
            "phases": list(trace.phases),
        }
        if envelope.error is not None:
            telemetry_service.emit(telemetry_service.TURN_FAILED, {**payload, "code": envelope.error.code})
        else:
            telemetry_service.emit(telemetry_service.TURN_COMPLETED, payload)

        sink = self._telemetry_sink
        if sink is None:
            return
        event = telemetry_service.TurnUsageEvent(
            turn_id=trace.turn_id,
            route=trace.route,
            model=trace.model,
            prompt_tokens=int(trace.usage.get("prompt_tokens", 0)),
            completion_tokens=int(trace.usage.get("completion_tokens", 0)),
            tool_names=trace.tool_names,
            latency_ms=trace.elapsed_ms,
            outcome=outcome,
            timestamp=time.time(),
        )
        try:
            sink.record(event)
        except Exception:
            LOGGER.debug("Telemetry sink failed to record turn %s", trace.turn_id, exc_info=True)
