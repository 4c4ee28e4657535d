"""Shared pytest fixtures."""

from __future__ import annotations

from typing import Any, Callable

import pytest

from decision_coach.ai.client import TokenCounterRegistry
from decision_coach.services import telemetry as telemetry_service
from decision_coach.services.settings import reset_settings_cache


@pytest.fixture(autouse=True)
def _isolate_process_state():
    yield
    telemetry_service.clear_event_listeners()
    reset_settings_cache()
    TokenCounterRegistry.reset_global_instance()


@pytest.fixture
def captured_events() -> Callable[[str], list[dict[str, Any]]]:
    """Subscribe to a telemetry event and return the list its payloads land in."""

    def subscribe(event_name: str) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        telemetry_service.register_event_listener(event_name, events.append)
        return events

    return subscribe


@pytest.fixture
def sample_graph() -> dict[str, Any]:
    return {
        "nodes": [
            {"id": "goal_revenue", "kind": "goal", "label": "Grow revenue"},
            {"id": "opt_raise", "kind": "option", "label": "Raise price"},
            {"id": "opt_hold", "kind": "option", "label": "Hold price"},
            {"id": "fac_churn", "kind": "factor", "label": "Customer churn"},
        ],
        "edges": [
            {"from": "opt_raise", "to": "fac_churn", "strength": {"mean": 0.4}},
            {"from": "fac_churn", "to": "goal_revenue", "strength": -0.6},
        ],
    }


@pytest.fixture
def sample_analysis() -> dict[str, Any]:
    return {
        "results": [
            {"option_id": "opt_hold", "win_probability": 0.571, "fact_id": "f_win_hold"},
            {"option_id": "opt_raise", "win_probability": 0.723, "fact_id": "f_win_raise"},
        ],
        "margin_fact_id": "f_margin",
        "factor_sensitivity": [
            {"node_id": "fac_churn", "elasticity": 0.1847, "confidence": "high", "fact_id": "f_drv_churn"},
            {"node_id": "fac_price", "elasticity": 0.092, "confidence": "medium", "fact_id": "f_drv_price"},
        ],
        "robustness": {
            "level": "moderate",
            "fact_id": "f_rob",
            "fragile_edges": ["fac_churn->goal_revenue"],
        },
    }


@pytest.fixture
def sample_framing() -> dict[str, Any]:
    return {
        "stage": "ideate",
        "goal": "Grow revenue",
        "options": ["Raise price", "Hold price"],
        "brief_text": "Should we raise prices on the pro plan?",
    }


@pytest.fixture
def make_payload() -> Callable[..., dict[str, Any]]:
    """Factory for inbound turn payloads."""

    def factory(
        message: str = "What do you think so far?",
        *,
        graph: Any = None,
        analysis: Any = None,
        framing: Any = None,
        messages: Any = None,
        selected: Any = None,
        event: Any = None,
        scenario_id: str = "scn_1",
        client_turn_id: str = "turn_1",
    ) -> dict[str, Any]:
        context: dict[str, Any] = {"graph": graph, "analysis_response": analysis, "framing": framing}
        if messages is not None:
            context["messages"] = messages
        if selected is not None:
            context["selected_elements"] = selected
        payload: dict[str, Any] = {
            "message": message,
            "context": context,
            "scenario_id": scenario_id,
            "client_turn_id": client_turn_id,
        }
        if event is not None:
            payload["system_event"] = event
        return payload

    return factory
