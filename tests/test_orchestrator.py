"""End-to-end tests for :class:`TurnOrchestrator`."""

from __future__ import annotations

import asyncio

import pytest

from helpers import FakeAnalysisEngine, FakeModelClient, chat_reply, envelope_reply

from decision_coach.ai.context.assembler import AssemblerConfig, ContextAssembler
from decision_coach.ai.orchestration import (
    SAFE_ERROR_MESSAGE,
    CancellationToken,
    ErrorCode,
    InMemoryIdempotencyStore,
    OrchestratorConfig,
    ToolOutcome,
    ToolSpec,
    TurnOrchestrator,
    build_default_registry,
)
from decision_coach.services.settings import Settings
from decision_coach.services.telemetry import InMemoryTelemetrySink

_CONFIG = OrchestratorConfig(ack_timeout_seconds=0.05, full_timeout_seconds=0.2, tool_timeout_seconds=1.0)


def _orchestrator(client=None, *, config=_CONFIG, engine=None, **kwargs) -> TurnOrchestrator:
    registry = build_default_registry(analysis_engine=engine)
    return TurnOrchestrator(config, client or FakeModelClient(), registry=registry, **kwargs)


# =============================================================================
# Turn kinds
# =============================================================================


class TestTurnKinds:
    @pytest.mark.asyncio
    async def test_silent_event_makes_no_model_call(self, make_payload):
        client = FakeModelClient()

        result = await _orchestrator(client).handle_turn(make_payload("", event={"event_type": "patch_accepted"}))

        envelope = result.envelope
        assert result.http_status == 200
        assert envelope.assistant_text == ""
        assert envelope.progress_marker.kind == "changed_model"
        assert envelope.stage_indicator.source == "explicit_event"
        assert client.call_count == 0

    @pytest.mark.asyncio
    async def test_direct_edit_is_acknowledged(self, make_payload):
        client = FakeModelClient(["Nice, I see the new link."])

        result = await _orchestrator(client).handle_turn(make_payload("", event={"event_type": "direct_graph_edit"}))

        assert result.envelope.assistant_text == "Nice, I see the new link."
        assert len(client.chat_calls) == 1
        assert client.tool_calls == []

    @pytest.mark.asyncio
    async def test_slow_acknowledgement_falls_back(self, make_payload):
        result = await _orchestrator(FakeModelClient([1.0])).handle_turn(
            make_payload("", event={"event_type": "direct_graph_edit"})
        )

        assert result.http_status == 200
        assert result.envelope.assistant_text == "Model updated."
        assert result.envelope.extensions["llm_fallback"] is True

    @pytest.mark.asyncio
    async def test_deterministic_analysis_run(self, make_payload, sample_graph, sample_analysis):
        client = FakeModelClient()
        engine = FakeAnalysisEngine(sample_analysis)

        result = await _orchestrator(client, engine=engine).handle_turn(
            make_payload("Run the analysis", graph=sample_graph)
        )

        envelope = result.envelope
        assert client.call_count == 0
        assert len(engine.calls) == 1
        assert envelope.turn_plan.selected_tool == "run_analysis"
        assert envelope.turn_plan.routing == "deterministic"
        assert envelope.turn_plan.long_running is True
        assert envelope.stage_indicator.stage == "evaluate"
        assert envelope.stage_indicator.transition.trigger == "analysis_completed"
        assert envelope.progress_marker.kind == "ran_analysis"
        assert envelope.extensions["analysis_response"] == sample_analysis
        assert envelope.blocks[0].block_type == "fact"

    @pytest.mark.asyncio
    async def test_conversational_turn_with_tool_call(self, make_payload, sample_graph, sample_analysis):
        reply = chat_reply(envelope_reply("Let me explain."), tool_calls=[("explain_results", {"focus": "winner"})])
        client = FakeModelClient([reply])

        result = await _orchestrator(client).handle_turn(
            make_payload("Why is raising ahead?", graph=sample_graph, analysis=sample_analysis)
        )

        envelope = result.envelope
        assert result.http_status == 200
        assert envelope.assistant_text.startswith("Under this model, opt_raise comes out ahead")
        assert envelope.turn_plan.routing == "llm"
        assert envelope.science_ledger.claims_used[:1] == ("f_win_raise",)
        assert envelope.observability.intent_classification == "explain"
        tool_names = [tool["function"]["name"] for tool in client.tool_calls[0]["tools"]]
        assert "explain_results" in tool_names

    @pytest.mark.asyncio
    async def test_recoverable_tool_failure_degrades(self, make_payload):
        reply = chat_reply(envelope_reply("Sure."), tool_calls=[("explain_results", {})])
        sink = InMemoryTelemetrySink()

        result = await _orchestrator(FakeModelClient([reply]), telemetry_sink=sink).handle_turn(make_payload("Explain it"))

        assert result.http_status == 200
        assert result.envelope.assistant_text == "There are no analysis results yet."
        assert sink.tail()[0].outcome == "degraded"


# =============================================================================
# Failures
# =============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_invalid_request(self, make_payload):
        payload = make_payload("   ")

        result = await _orchestrator().handle_turn(payload)

        assert result.http_status == 400
        assert result.envelope.error.code == ErrorCode.INVALID_REQUEST
        assert result.envelope.lineage.context_hash

    @pytest.mark.asyncio
    async def test_non_mapping_payload(self):
        result = await _orchestrator().handle_turn(["not", "a", "dict"])

        assert result.http_status == 400

    @pytest.mark.asyncio
    async def test_model_timeout_is_a_pipeline_error(self, make_payload, captured_events):
        failures = captured_events("turn.failed")

        result = await _orchestrator(FakeModelClient([1.0])).handle_turn(make_payload("Hello there"))

        envelope = result.envelope
        assert result.http_status == 500
        assert envelope.error.code == ErrorCode.PIPELINE_ERROR
        assert envelope.assistant_text == SAFE_ERROR_MESSAGE
        assert envelope.diagnostics["details"]["cause"] == ErrorCode.LLM_TIMEOUT
        assert failures[0]["code"] == ErrorCode.PIPELINE_ERROR

    @pytest.mark.asyncio
    async def test_hard_tool_failure_is_a_pipeline_error(self, make_payload, sample_graph):
        reply = chat_reply("", tool_calls=[("run_analysis", {})])

        result = await _orchestrator(FakeModelClient([reply])).handle_turn(
            make_payload("Can you check this?", graph=sample_graph)
        )

        assert result.http_status == 500
        assert result.envelope.diagnostics["details"]["tool_error"] == ErrorCode.TOOL_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_odd_framing_shapes_still_answer(self, make_payload):
        client = FakeModelClient([envelope_reply("Happy to help.")])
        framing = {"goal": "Grow", "constraints": 5, "causal_claims": "price drives churn"}

        result = await _orchestrator(client).handle_turn(make_payload("hello", framing=framing))

        assert result.http_status == 200
        assert result.envelope.error is None
        assert result.envelope.assistant_text == "Happy to help."
        prompt = "\n".join(str(message["content"]) for message in client.tool_calls[0]["messages"])
        assert "price drives churn" in prompt
        assert "- p\n" not in prompt

    @pytest.mark.asyncio
    async def test_production_hides_diagnostics(self, make_payload):
        config = OrchestratorConfig(ack_timeout_seconds=0.05, full_timeout_seconds=0.2, production=True)

        result = await _orchestrator(FakeModelClient([RuntimeError("db password leaked")]), config=config).handle_turn(
            make_payload("Hello there")
        )

        payload = result.to_dict()
        assert result.http_status == 500
        assert "diagnostics" not in payload
        assert "password" not in str(payload)

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_error_envelope(self, make_payload):
        class BrokenModel(FakeModelClient):
            @property
            def model(self) -> str:
                raise RuntimeError("no model")

        assembler = ContextAssembler(AssemblerConfig(model_id="test-model"))

        result = await _orchestrator(BrokenModel(), assembler=assembler).handle_turn(make_payload("Hello there"))

        assert result.http_status == 500
        assert result.envelope.error.code == ErrorCode.PIPELINE_ERROR

    @pytest.mark.asyncio
    async def test_cancelled_turn(self, make_payload):
        token = CancellationToken()
        token.cancel("client disconnected")
        client = FakeModelClient()

        result = await _orchestrator(client).handle_turn(make_payload("Hello there"), cancel_token=token)

        assert result.http_status == 503
        assert result.envelope.error.code == ErrorCode.CANCELLED
        assert client.call_count == 0


# =============================================================================
# Idempotency and lineage
# =============================================================================


class TestReplay:
    @pytest.mark.asyncio
    async def test_repeated_turn_is_replayed(self, make_payload, captured_events):
        replays = captured_events("turn.replayed")
        client = FakeModelClient([envelope_reply("First answer."), envelope_reply("Second answer.")])
        orchestrator = _orchestrator(client, idempotency=InMemoryIdempotencyStore())

        first = await orchestrator.handle_turn(make_payload("Hello there"))
        second = await orchestrator.handle_turn(make_payload("Hello there"))

        assert client.call_count == 1
        assert second.replayed is True
        assert second.envelope.turn_id == first.envelope.turn_id
        assert second.envelope.assistant_text == "First answer."
        assert replays[0]["key"] == "scn_1:turn_1"

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_share_one_run(self, make_payload):
        client = FakeModelClient([envelope_reply("Only once.")])
        orchestrator = _orchestrator(client, idempotency=InMemoryIdempotencyStore())

        results = await asyncio.gather(
            orchestrator.handle_turn(make_payload("Hello there")),
            orchestrator.handle_turn(make_payload("Hello there")),
        )

        assert client.call_count == 1
        assert sorted(result.replayed for result in results) == [False, True]
        assert {result.envelope.assistant_text for result in results} == {"Only once."}

    @pytest.mark.asyncio
    async def test_errors_are_not_stored(self, make_payload):
        client = FakeModelClient([1.0, envelope_reply("Recovered.")])
        orchestrator = _orchestrator(client, idempotency=InMemoryIdempotencyStore())

        first = await orchestrator.handle_turn(make_payload("Hello there"))
        second = await orchestrator.handle_turn(make_payload("Hello there"))

        assert first.http_status == 500
        assert second.http_status == 200
        assert second.replayed is False

    @pytest.mark.asyncio
    async def test_lineage_is_stable_across_retries(self, make_payload):
        orchestrator = _orchestrator(FakeModelClient([envelope_reply("A"), envelope_reply("B")]))

        first = await orchestrator.handle_turn(make_payload("Hello there", client_turn_id="a"))
        second = await orchestrator.handle_turn(make_payload("Hello there", client_turn_id="b"))

        assert first.envelope.turn_id != second.envelope.turn_id
        assert first.envelope.lineage.context_hash == second.envelope.lineage.context_hash


# =============================================================================
# Collaborators
# =============================================================================


class TestCollaborators:
    @pytest.mark.asyncio
    async def test_usage_is_recorded(self, make_payload):
        sink = InMemoryTelemetrySink()

        await _orchestrator(FakeModelClient([envelope_reply("Hi.")]), telemetry_sink=sink).handle_turn(
            make_payload("Hello there")
        )

        event = sink.tail()[0]
        assert event.outcome == "ok"
        assert event.prompt_tokens == 100
        assert event.completion_tokens == 20
        assert event.route == "CHAT"

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_fail_the_turn(self, make_payload):
        class ExplodingSink(InMemoryTelemetrySink):
            def record(self, event):
                raise RuntimeError("disk full")

        result = await _orchestrator(telemetry_sink=ExplodingSink()).handle_turn(make_payload("Hello there"))

        assert result.http_status == 200

    @pytest.mark.asyncio
    async def test_custom_tools(self, make_payload):
        orchestrator = _orchestrator(FakeModelClient([chat_reply("", tool_calls=[("ping", {})])]))
        orchestrator.register_tool(
            ToolSpec(name="ping", description="Reply with pong"),
            lambda arguments, ctx: ToolOutcome(assistant_text="pong"),
        )

        result = await orchestrator.handle_turn(make_payload("Hello there"))

        assert "ping" in orchestrator.available_tools()
        assert result.envelope.assistant_text == "pong"
        orchestrator.unregister_tool("ping")
        assert "ping" not in orchestrator.available_tools()

    @pytest.mark.asyncio
    async def test_aclose_closes_client(self):
        client = FakeModelClient()

        await _orchestrator(client).aclose()

        assert client.closed is True


class TestFromSettings:
    @pytest.mark.asyncio
    async def test_builds_collaborators_from_settings(self, make_payload, sample_graph, sample_analysis):
        settings = Settings(
            model="gpt-test",
            context_enabled=False,
            response_cache_enabled=False,
            ack_timeout_seconds=0.05,
            full_timeout_seconds=0.2,
        )
        sink = InMemoryTelemetrySink()
        orchestrator = TurnOrchestrator.from_settings(
            settings,
            client=FakeModelClient(),
            analysis_engine=FakeAnalysisEngine(sample_analysis),
            telemetry_sink=sink,
        )

        first = await orchestrator.handle_turn(make_payload("run the analysis", graph=sample_graph))
        second = await orchestrator.handle_turn(make_payload("run the analysis", graph=sample_graph))

        assert orchestrator.assembler.config.enabled is False
        assert orchestrator.assembler.config.model_id == "gpt-test"
        assert orchestrator.response_cache is None
        assert orchestrator.config.full_timeout_seconds == 0.2
        assert first.envelope.progress_marker.kind == "ran_analysis"
        assert second.replayed is True
        assert len(sink.tail()) == 1
