"""Dispatches function calls against a :class:`~promptkit.tools.FunctionRegistry` and wraps errors."""

from __future__ import annotations

import inspect
import logging
from typing import (
    List,
    Sequence,
)

from promptkit.core.errors import get_error_message
from promptkit.core.protocol import format_function_result
from promptkit.core.schema import (
    FunctionCall,
    FunctionDefinition,
    SchemaKind,
    ToolResult,
)
from promptkit.structured.schema_coercer import (
    ValidationFailure,
    validate,
)
from promptkit.tools import FunctionRegistry

logger = logging.getLogger(__name__)


def validate_arguments(
    call: FunctionCall, definition: FunctionDefinition, check_types: bool = False
) -> str | None:
    """
    Check *call* against *definition*'s parameter schema.

    Returns ``None`` when the call may run, otherwise the error message.  Unknown arguments are
    logged and tolerated.
    """
    params = definition.parameters
    if params.kind is not SchemaKind.OBJECT:
        return "Parameters must be an object"

    for name in params.required:
        if name not in call.arguments:
            return f"Missing required parameter: {name}"

    unknown = [name for name in call.arguments if name not in params.properties]
    if unknown:
        logger.warning("Unknown parameters for function '%s': %s", call.name, unknown)

    if check_types:
        for name, prop in params.properties.items():
            if name not in call.arguments:
                continue
            checked = validate(call.arguments[name], prop)
            if isinstance(checked, ValidationFailure):
                return f"Invalid parameter {name}: {checked.message}"
    return None


async def execute_tool(
    call: FunctionCall, registry: FunctionRegistry, check_types: bool = False
) -> ToolResult:
    """
    Look up ``call.name`` in *registry* and invoke it with ``call.arguments``.

    Parameters
    ----------
    call:
        The function call parsed from the model response.
    registry:
        Where tool definitions are looked up.
    check_types:
        Also validate the type of every declared argument, not only presence.

    Returns
    -------
    ToolResult
        ``success=True`` with the handler's value, or ``success=False`` with the error message.
        Handler failures are never raised; async handlers are awaited.
    """
    definition = registry.get(call.name)
    if definition is None:
        logger.warning("Function '%s' not found in registry", call.name)
        return ToolResult.fail(f'Function "{call.name}" not found in registry')

    error = validate_arguments(call, definition, check_types=check_types)
    if error is not None:
        logger.info("Rejected call to '%s': %s", call.name, error)
        return ToolResult.fail(error)

    try:
        logger.debug("Executing function '%s' with args=%s", call.name, call.arguments)
        result = definition.handler(dict(call.arguments))
        if inspect.isawaitable(result):
            result = await result
    except Exception as exc:  # pylint: disable=broad-exception-caught
        logger.exception("Unhandled error in function '%s'", call.name)
        return ToolResult.fail(get_error_message(exc))

    logger.debug("Function '%s' returned: %s", call.name, result)
    return ToolResult.ok(result)


async def execute_tools(
    calls: Sequence[FunctionCall], registry: FunctionRegistry, check_types: bool = False
) -> List[ToolResult]:
    """Execute *calls* strictly one after the other; results are positional."""
    results: List[ToolResult] = []
    for call in calls:
        results.append(await execute_tool(call, registry, check_types=check_types))
    return results


def format_tool_result(name: str, result: ToolResult) -> str:
    """Re-injection text for one tool outcome."""
    if result.success:
        return format_function_result(name, result.result, True)
    return format_function_result(name, result.error, False)


def format_tool_results(results: Sequence[ToolResult], calls: Sequence[FunctionCall]) -> str:
    """Transcript form of a batch: ``Function: name`` / ``Result: ...`` blocks."""
    blocks = []
    for call, result in zip(calls, results):
        blocks.append(f"Function: {call.name}\nResult: {format_tool_result(call.name, result)}")
    return "\n\n".join(blocks)
