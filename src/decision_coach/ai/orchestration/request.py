"""Inbound turn request schema and parsing."""

from __future__ import annotations

from typing import Any, Dict, Mapping

from jsonschema import Draft7Validator, ValidationError

from .errors import RequestValidationError
from .types import SYSTEM_EVENT_TYPES, ConversationContext, SystemEvent, TurnRequest

__all__ = ["TURN_REQUEST_SCHEMA", "parse_turn_request"]

_NULLABLE_OBJECT = {"type": ["object", "null"]}

TURN_REQUEST_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["message", "context", "scenario_id", "client_turn_id"],
    "properties": {
        "message": {"type": "string", "maxLength": 20_000},
        "scenario_id": {"type": "string", "minLength": 1, "maxLength": 256},
        "client_turn_id": {"type": "string", "minLength": 1, "maxLength": 128},
        "context": {
            "type": "object",
            "properties": {
                "graph": _NULLABLE_OBJECT,
                "analysis_response": _NULLABLE_OBJECT,
                "framing": _NULLABLE_OBJECT,
                "scenario_id": {"type": ["string", "null"]},
                "selected_elements": {"type": "array", "items": {"type": "string"}},
                "messages": {
                    "type": "array",
                    "maxItems": 500,
                    "items": {
                        "type": "object",
                        "required": ["role", "content"],
                        "properties": {
                            "role": {"enum": ["user", "assistant"]},
                            "content": {"type": "string"},
                            "tool_outputs": {
                                "type": "array",
                                "items": {
                                    "type": "object",
                                    "required": ["tool_name"],
                                    "properties": {
                                        "tool_name": {"type": "string"},
                                        "system_fields": {"type": "object"},
                                        "user_originated_fields": {"type": "object"},
                                    },
                                },
                            },
                        },
                    },
                },
            },
        },
        "system_event": {
            "type": ["object", "null"],
            "required": ["event_type"],
            "properties": {
                "event_type": {"enum": list(SYSTEM_EVENT_TYPES)},
                "event_id": {"type": ["string", "null"]},
                "details": {"type": "object"},
            },
        },
    },
}

_VALIDATOR = Draft7Validator(TURN_REQUEST_SCHEMA)


def parse_turn_request(payload: Any) -> TurnRequest:
    """Validate ``payload`` and convert it into a :class:`TurnRequest`.

    Raises:
        RequestValidationError: when the payload is malformed.
    """

    if not isinstance(payload, Mapping):
        raise RequestValidationError(message="Request payload must be a JSON object")

    errors = sorted(_VALIDATOR.iter_errors(dict(payload)), key=lambda error: [str(part) for part in error.path])
    if errors:
        raise RequestValidationError(
            message=_format_validation_error(errors[0]),
            details={"errors": [_format_validation_error(error) for error in errors[:10]]},
        )

    raw_event = payload.get("system_event")
    system_event = None
    if isinstance(raw_event, Mapping):
        system_event = SystemEvent(
            event_type=raw_event["event_type"],
            event_id=raw_event.get("event_id"),
            details=dict(raw_event.get("details") or {}),
        )

    message = payload["message"]
    if system_event is None and not message.strip():
        raise RequestValidationError(message="message must not be empty")

    raw_context = payload["context"]
    context = ConversationContext(
        graph=raw_context.get("graph"),
        analysis_response=raw_context.get("analysis_response"),
        framing=raw_context.get("framing"),
        messages=tuple(raw_context.get("messages") or ()),
        scenario_id=raw_context.get("scenario_id"),
        selected_elements=tuple(raw_context.get("selected_elements") or ()),
    )
    return TurnRequest(
        message=message,
        context=context,
        scenario_id=payload["scenario_id"],
        client_turn_id=payload["client_turn_id"],
        system_event=system_event,
    )


def _format_validation_error(error: ValidationError) -> str:
    path = ".".join(str(part) for part in error.path)
    if path:
        return f"{path}: {error.message}"
    return error.message
