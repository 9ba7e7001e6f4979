"""Tests for ai/tools/tool_registry.py."""

from __future__ import annotations

import pytest

from overlaychat.ai.tools.tool_registry import ToolOutput, ToolRegistry, ToolSchema


# -----------------------------------------------------------------------------
# Test Fixtures and Helpers
# -----------------------------------------------------------------------------


def _greet(name: str) -> str:
    """Say hello."""
    return f"hello {name}"


_GREET_PARAMETERS = {
    "type": "object",
    "properties": {"name": {"type": "string"}},
    "required": ["name"],
    "additionalProperties": False,
}


# -----------------------------------------------------------------------------
# Tests: ToolSchema
# -----------------------------------------------------------------------------


class TestToolSchema:
    def test_tool_spec_shape(self) -> None:
        schema = ToolSchema(name="greet", description="Say hello.", parameters=_GREET_PARAMETERS)

        spec = schema.to_tool_spec()

        assert spec == {
            "type": "function",
            "function": {"name": "greet", "description": "Say hello.", "parameters": _GREET_PARAMETERS},
        }

    def test_json_schema_defaults(self) -> None:
        schema = ToolSchema(name="noop", description="", parameters={})

        assert schema.to_json_schema() == {"type": "object", "properties": {}}


# -----------------------------------------------------------------------------
# Tests: ToolOutput
# -----------------------------------------------------------------------------


class TestToolOutput:
    def test_coerce_passes_through_outputs(self) -> None:
        output = ToolOutput(payload={"a": 1}, images=["x.png"])

        assert ToolOutput.coerce(output) is output

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (None, {}),
            ("text", "text"),
            ({"a": 1}, {"a": 1}),
            (42, {"result": 42}),
        ],
    )
    def test_coerce_wraps_plain_values(self, value, expected) -> None:
        output = ToolOutput.coerce(value)

        assert output.payload == expected
        assert list(output.images) == []


# -----------------------------------------------------------------------------
# Tests: ToolRegistry
# -----------------------------------------------------------------------------


class TestToolRegistry:
    def test_register_uses_callable_name_and_flags(self) -> None:
        registry = ToolRegistry()

        registration = registry.register(_greet, parameters=_GREET_PARAMETERS, requires_consent=True)

        assert registration.name == "_greet"
        assert registration.requires_consent is True
        assert registry.get_registration("_greet") is registration
        assert "_greet" in registry
        assert len(registry) == 1

    def test_register_without_name_is_rejected(self) -> None:
        class _Anonymous:
            def __call__(self) -> None:
                return None

        with pytest.raises(ValueError):
            ToolRegistry().register(_Anonymous())

    def test_later_registration_replaces_earlier(self) -> None:
        registry = ToolRegistry()
        registry.register(lambda: "one", name="tool")
        second = registry.register(lambda: "two", name="tool")

        assert registry.get_registration("tool") is second
        assert len(registry) == 1

    def test_disabled_tools_are_hidden_from_specs(self) -> None:
        registry = ToolRegistry()
        registry.register(_greet, name="greet", parameters=_GREET_PARAMETERS)
        registry.register(lambda: None, name="off", enabled=False)

        assert registry.list_tools() == ["greet"]
        assert registry.list_tools(enabled_only=False) == ["greet", "off"]
        assert [spec["function"]["name"] for spec in registry.to_tool_specs()] == ["greet"]
        assert registry.has_tool("greet")
        assert not registry.has_tool("off")
        assert registry.get_registration("off") is not None

    def test_set_enabled_toggles(self) -> None:
        registry = ToolRegistry()
        registry.register(_greet, name="greet")

        registry.set_enabled("greet", False)
        assert not registry.has_tool("greet")
        registry.set_enabled("greet", True)
        assert registry.has_tool("greet")

        with pytest.raises(KeyError):
            registry.set_enabled("missing", True)

    def test_unregister(self) -> None:
        registry = ToolRegistry()
        registry.register(_greet, name="greet")

        assert registry.unregister("greet") is True
        assert registry.unregister("greet") is False
        assert registry.get_registration("greet") is None


class TestArgumentValidation:
    def test_valid_arguments_have_no_problems(self) -> None:
        registration = ToolRegistry().register(_greet, name="greet", parameters=_GREET_PARAMETERS)

        assert registration.validate_arguments({"name": "Ada"}) == []

    def test_problems_are_described(self) -> None:
        registration = ToolRegistry().register(_greet, name="greet", parameters=_GREET_PARAMETERS)

        missing = registration.validate_arguments({})
        wrong_type = registration.validate_arguments({"name": 3})
        extra = registration.validate_arguments({"name": "Ada", "age": 3})

        assert missing == ["'name' is a required property"]
        assert wrong_type[0].startswith("name: ")
        assert "additional properties" in extra[0].lower()
