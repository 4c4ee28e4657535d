"""Tool registry for the orchestration pipeline.

Holds the tools the model may call, validates their arguments against each
tool's JSON Schema, and exports OpenAI tool descriptors.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from jsonschema import Draft7Validator

from .types import SimpleTool, Tool, ToolHandler, ToolSpec

__all__ = [
    "ToolRegistry",
    "ToolRegistration",
    "DuplicateToolError",
    "ToolNotFoundError",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolNotFoundError(Exception):
    """Raised when a requested tool is not registered or is disabled."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' not found")


# -----------------------------------------------------------------------------
# Tool Registration
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolRegistration:
    name: str
    tool: Tool
    spec: ToolSpec
    validator: Draft7Validator | None = None
    enabled: bool = True


# -----------------------------------------------------------------------------
# Tool Registry
# -----------------------------------------------------------------------------


class ToolRegistry:
    """Name-keyed tool registrations, in registration order.

    Argument schemas are checked once at registration time; the compiled
    validator is reused by :meth:`validate_arguments` for every call.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolRegistration] = {}

    def register(self, tool: Tool, *, enabled: bool = True, allow_override: bool = False) -> ToolRegistration:
        """Register a tool implementation.

        Raises:
            DuplicateToolError: If the name is taken and ``allow_override`` is False.
            jsonschema.SchemaError: If the tool's parameter schema is invalid.
        """
        if tool.name in self._tools and not allow_override:
            raise DuplicateToolError(tool.name)
        schema = dict(tool.spec.parameters or {})
        if schema:
            Draft7Validator.check_schema(schema)
        registration = ToolRegistration(
            name=tool.name,
            tool=tool,
            spec=tool.spec,
            validator=Draft7Validator(schema) if schema else None,
            enabled=enabled,
        )
        self._tools[tool.name] = registration
        LOGGER.debug("Registered tool %s (enabled=%s)", tool.name, enabled)
        return registration

    def register_function(
        self,
        spec: ToolSpec,
        handler: ToolHandler,
        *,
        enabled: bool = True,
        allow_override: bool = False,
    ) -> ToolRegistration:
        return self.register(SimpleTool(spec=spec, handler=handler), enabled=enabled, allow_override=allow_override)

    def unregister(self, name: str) -> bool:
        removed = self._tools.pop(name, None)
        if removed is not None:
            LOGGER.debug("Unregistered tool %s", name)
        return removed is not None

    def get(self, name: str) -> Tool | None:
        """Return the tool if found and enabled."""
        registration = self._enabled().get(name)
        return registration.tool if registration else None

    def get_required(self, name: str) -> Tool:
        tool = self.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def get_spec(self, name: str) -> ToolSpec | None:
        registration = self._tools.get(name)
        return registration.spec if registration else None

    def has(self, name: str) -> bool:
        return name in self._enabled()

    def validate_arguments(self, name: str, arguments: Mapping[str, Any]) -> list[str]:
        """Return schema violations for ``arguments`` (empty when valid).

        Each problem is prefixed with its dotted argument path when the
        violation is nested below the top level.
        """
        registration = self._tools.get(name)
        if registration is None:
            raise ToolNotFoundError(name)
        if registration.validator is None:
            return []
        problems = []
        for error in registration.validator.iter_errors(dict(arguments)):
            path = ".".join(map(str, error.path))
            problems.append(f"{path}: {error.message}" if path else error.message)
        return sorted(problems)

    def list_names(self, *, include_disabled: bool = False) -> list[str]:
        source = self._tools if include_disabled else self._enabled()
        return list(source)

    def get_openai_tools(self, *, filter_names: Sequence[str] | None = None) -> list[dict[str, Any]]:
        """Tool definitions in OpenAI format, in registration order."""
        return [
            registration.spec.to_openai_tool()
            for name, registration in self._enabled().items()
            if filter_names is None or name in filter_names
        ]

    def enable(self, name: str) -> bool:
        return self._set_enabled(name, True)

    def disable(self, name: str) -> bool:
        return self._set_enabled(name, False)

    def _set_enabled(self, name: str, enabled: bool) -> bool:
        registration = self._tools.get(name)
        if registration is None:
            return False
        registration.enabled = enabled
        return True

    def _enabled(self) -> dict[str, ToolRegistration]:
        return {name: registration for name, registration in self._tools.items() if registration.enabled}

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
