"""Static registry of the tools the model may call.

Each registration pairs a JSON-schema description (sent to the backend) with
an implementation plus the flags the dispatcher needs: whether the user must
consent first, whether the host UI must be hidden around the call, and
whether the follow-up request should go to the vision model.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

LOGGER = logging.getLogger(__name__)

MAX_VALIDATION_ERRORS = 5


# -----------------------------------------------------------------------------
# Tool Schema Types
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolSchema:
    """Schema for a tool as advertised to the model.

    Attributes:
        name: Tool name (identifier).
        description: Human-readable description shown to the model.
        parameters: JSON Schema for the arguments object.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_json_schema(self) -> dict[str, Any]:
        schema = dict(self.parameters)
        schema.setdefault("type", "object")
        schema.setdefault("properties", {})
        return schema

    def to_tool_spec(self) -> dict[str, Any]:
        """Return the function-calling spec understood by Ollama and OpenAI."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.to_json_schema(),
            },
        }


@dataclass(slots=True)
class ToolOutput:
    """Result of one tool execution.

    ``payload`` is serialized into the tool message. ``images`` are opaque
    references forwarded to the model in a follow-up user message, labelled
    with ``image_label``.
    """

    payload: Mapping[str, Any] | str
    images: Sequence[str] = ()
    image_label: str | None = None

    @classmethod
    def coerce(cls, value: Any) -> "ToolOutput":
        if isinstance(value, ToolOutput):
            return value
        if value is None:
            return cls(payload={})
        if isinstance(value, (str, Mapping)):
            return cls(payload=value)
        return cls(payload={"result": value})


# -----------------------------------------------------------------------------
# Tool Registration
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolRegistration:
    """A registered tool with its implementation and schema.

    Attributes:
        schema: Tool schema.
        impl: Tool implementation (callable taking keyword arguments).
        enabled: Whether the tool is currently enabled.
        requires_consent: Whether the user must approve each invocation.
        suppress_ui: Whether capture hooks wrap the call.
        prefers_vision_model: Whether the follow-up should use the vision model.
    """

    schema: ToolSchema
    impl: Callable[..., Any]
    enabled: bool = True
    requires_consent: bool = False
    suppress_ui: bool = False
    prefers_vision_model: bool = False

    @property
    def name(self) -> str:
        return self.schema.name

    @property
    def description(self) -> str:
        return self.schema.description

    def validate_arguments(self, arguments: Mapping[str, Any]) -> list[str]:
        """Return human-readable schema violations (empty when valid)."""

        try:
            validator = Draft202012Validator(self.schema.to_json_schema())
        except SchemaError as exc:  # pragma: no cover - registry bug
            return [f"Invalid tool schema: {exc.message}"]
        problems: list[str] = []
        for issue in validator.iter_errors(dict(arguments)):
            path = ".".join(str(part) for part in issue.absolute_path)
            problems.append(f"{path}: {issue.message}" if path else issue.message)
            if len(problems) >= MAX_VALIDATION_ERRORS:
                break
        return problems


# -----------------------------------------------------------------------------
# Tool Registry
# -----------------------------------------------------------------------------


class ToolRegistry:
    """Registry for model-callable tools.

    Example:
        registry = ToolRegistry()
        registry.register(read_file, name="read_file", description="...")
        spec = registry.to_tool_specs()
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolRegistration] = {}

    def register(
        self,
        tool: Callable[..., Any],
        *,
        schema: ToolSchema | None = None,
        name: str | None = None,
        description: str | None = None,
        parameters: Mapping[str, Any] | None = None,
        enabled: bool = True,
        requires_consent: bool = False,
        suppress_ui: bool = False,
        prefers_vision_model: bool = False,
    ) -> ToolRegistration:
        """Register a tool; a later registration with the same name replaces it."""

        if schema is None:
            tool_name = name or getattr(tool, "name", None) or getattr(tool, "__name__", None)
            if not tool_name:
                raise ValueError("Tool registration requires a name")
            schema = ToolSchema(
                name=str(tool_name),
                description=description or getattr(tool, "description", "") or "",
                parameters=dict(parameters) if parameters else {"type": "object", "properties": {}},
            )

        registration = ToolRegistration(
            schema=schema,
            impl=tool,
            enabled=enabled,
            requires_consent=requires_consent,
            suppress_ui=suppress_ui,
            prefers_vision_model=prefers_vision_model,
        )
        self._tools[schema.name] = registration
        LOGGER.debug(
            "Registered tool: %s (enabled=%s, consent=%s)",
            schema.name,
            enabled,
            requires_consent,
        )
        return registration

    def unregister(self, name: str) -> bool:
        registration = self._tools.pop(name, None)
        if registration:
            LOGGER.debug("Unregistered tool: %s", name)
            return True
        return False

    def set_enabled(self, name: str, enabled: bool) -> None:
        registration = self._tools.get(name)
        if registration is None:
            raise KeyError(name)
        registration.enabled = enabled

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_registration(self, name: str) -> ToolRegistration | None:
        return self._tools.get(name)

    def has_tool(self, name: str) -> bool:
        reg = self._tools.get(name)
        return reg is not None and reg.enabled

    def list_tools(self, *, enabled_only: bool = True) -> list[str]:
        return [name for name, reg in self._tools.items() if reg.enabled or not enabled_only]

    def to_tool_specs(self, *, enabled_only: bool = True) -> list[dict[str, Any]]:
        """Convert tools to the function-calling format sent with requests."""
        return [
            reg.schema.to_tool_spec()
            for reg in self._tools.values()
            if reg.enabled or not enabled_only
        ]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools


__all__ = [
    "ToolSchema",
    "ToolOutput",
    "ToolRegistration",
    "ToolRegistry",
]
