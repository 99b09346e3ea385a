"""
Basic sanity tests for the tool executor.

Run with:
$ pytest -q
"""

import asyncio
import logging

from promptkit.agent.tool_executor import (
    execute_tool,
    execute_tools,
    format_tool_result,
    format_tool_results,
)
from promptkit.core.errors import FunctionCallError
from promptkit.core.schema import (
    FunctionCall,
    FunctionDefinition,
    ParameterSchema,
    SchemaKind,
    ToolResult,
)
from promptkit.tools import (
    FunctionRegistry,
    create_parameters,
)

registry = FunctionRegistry()
calls: list = []


# This is a stub tool for testing purposes.
@registry.tool("add")
def _add(a: int, b: int) -> int:
    """Return the sum of two integers (used only for tests)."""

    calls.append((a, b))
    return a + b


def _run(call: FunctionCall, reg: FunctionRegistry = registry, **kwargs) -> ToolResult:
    return asyncio.run(execute_tool(call, reg, **kwargs))


def test_execute_tool_success() -> None:
    """Executor should return the correct value when the tool is valid."""

    result = _run(FunctionCall(name="add", arguments={"a": 2, "b": 3}))
    assert result.success
    assert result.result == 5


def test_execute_tool_missing() -> None:
    """Executor should report an unknown tool without raising."""

    result = _run(FunctionCall(name="not_a_tool", arguments={}))
    assert not result.success
    assert result.error == 'Function "not_a_tool" not found in registry'


def test_execute_tool_bad_args_never_invokes_handler() -> None:
    """A missing required argument short-circuits before the handler runs."""

    calls.clear()
    result = _run(FunctionCall(name="add", arguments={"a": 2}))  # missing 'b'
    assert not result.success
    assert result.error == "Missing required parameter: b"
    assert calls == []


def test_execute_tool_tolerates_extra_args(caplog) -> None:
    """Unknown arguments are logged, not rejected."""

    local = FunctionRegistry()
    local.register(
        FunctionDefinition(
            name="echo",
            parameters=create_parameters({"text": ParameterSchema.string()}),
            handler=lambda args: args["text"],
        )
    )
    with caplog.at_level(logging.WARNING):
        result = _run(FunctionCall(name="echo", arguments={"text": "hi", "loud": True}), local)
    assert result.success and result.result == "hi"
    assert "loud" in caplog.text


def test_execute_tool_rejects_non_object_parameters() -> None:
    """Parameters declared as anything but an object are refused."""

    local = FunctionRegistry(
        [
            FunctionDefinition(
                name="weird",
                parameters=ParameterSchema(kind=SchemaKind.STRING),
                handler=lambda args: None,
            )
        ]
    )
    result = _run(FunctionCall(name="weird"), local)
    assert not result.success
    assert result.error == "Parameters must be an object"


def test_execute_tool_catches_handler_errors() -> None:
    """Handler exceptions become failed results carrying the message."""

    def explode(args):
        raise FunctionCallError("Division by zero")

    def silent(args):
        raise KeyError()

    local = FunctionRegistry(
        [
            FunctionDefinition(name="explode", handler=explode),
            FunctionDefinition(name="silent", handler=silent),
        ]
    )
    assert _run(FunctionCall(name="explode"), local).error == "Division by zero"
    # Empty messages fall back to the exception class name
    assert _run(FunctionCall(name="silent"), local).error == "KeyError"


def test_execute_tool_awaits_async_handlers() -> None:
    """Async handlers are awaited and their value wrapped."""

    async def fetch(args):
        await asyncio.sleep(0)
        return {"city": args["city"], "temp": 21}

    local = FunctionRegistry(
        [
            FunctionDefinition(
                name="weather",
                parameters={"type": "object", "properties": {"city": {"type": "string"}}},
                handler=fetch,
            )
        ]
    )
    result = _run(FunctionCall(name="weather", arguments={"city": "Oslo"}), local)
    assert result == ToolResult.ok({"city": "Oslo", "temp": 21})


def test_execute_tool_type_checks_on_request() -> None:
    """With check_types the declared property types are enforced."""

    call = FunctionCall(name="add", arguments={"a": "2", "b": 3})
    result = _run(call, check_types=True)
    assert not result.success
    assert result.error == "Invalid parameter a: expected number, got string"
    # Without the flag the handler runs and fails on its own
    assert not _run(FunctionCall(name="add", arguments={"a": "2", "b": 3})).success


def test_execute_tools_is_sequential_and_positional() -> None:
    """Batch execution keeps the order of the calls."""

    order = []

    async def slow(args):
        await asyncio.sleep(0.01)
        order.append("slow")
        return "slow"

    def fast(args):
        order.append("fast")
        return "fast"

    local = FunctionRegistry(
        [
            FunctionDefinition(name="slow", handler=slow),
            FunctionDefinition(name="fast", handler=fast),
        ]
    )
    batch = [FunctionCall(name="slow"), FunctionCall(name="missing"), FunctionCall(name="fast")]
    results = asyncio.run(execute_tools(batch, local))
    assert order == ["slow", "fast"]
    assert [r.success for r in results] == [True, False, True]

    transcript = format_tool_results(results, batch)
    assert transcript.startswith('Function: slow\nResult: Function "slow" executed successfully.')
    assert 'Function "missing" failed with error:' in transcript


def test_format_tool_result() -> None:
    """Successful values are rendered as indented JSON, failures as the error text."""

    assert (
        format_tool_result("add", ToolResult.ok({"sum": 5}))
        == 'Function "add" executed successfully. Result: {\n  "sum": 5\n}'
    )
    assert (
        format_tool_result("add", ToolResult.fail("boom"))
        == 'Function "add" failed with error: boom'
    )
