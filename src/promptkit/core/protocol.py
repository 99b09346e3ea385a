"""
Textual contract between the orchestration loops and the completion session.

This module is the single place that knows what the model is asked to emit and how its output is
read back:

* tool use is requested with a JSON envelope
  ``{"functionCall": {"name": ..., "arguments": {...}}, "reasoning": "..."}``;
* structured output is requested with schema instructions followed by the user's request.

Parsing is deliberately permissive in one direction only: anything that is not clearly a
function-call envelope is treated as plain prose.  A missed tool call costs one more turn, a
misfired one has side effects.
"""

from __future__ import annotations

import json
import logging
from typing import (
    Any,
    Dict,
    Mapping,
    Optional,
    Sequence,
)

from pydantic import BaseModel
from pydantic_core import to_jsonable_python

from promptkit.core.json_extraction import try_parse_json_object
from promptkit.core.schema import FunctionCall
from promptkit.structured.schema_coercer import (
    UnionPolicy,
    render_schema_prompt,
)

logger = logging.getLogger(__name__)

FUNCTION_CALL_KEY = "functionCall"


class ParsedResponse(BaseModel):
    """Classification of one model response."""

    function_call: Optional[FunctionCall] = None
    reasoning: Optional[str] = None
    regular_response: Optional[str] = None

    @property
    def is_function_call(self) -> bool:
        return self.function_call is not None


# ---------------------------------------------------------------------------
# Function calling
# ---------------------------------------------------------------------------
_FUNCTION_RULES = """\
When you need to use a function, respond with a JSON object in this exact format:
{
  "functionCall": {
    "name": "function_name",
    "arguments": {
      "param1": "value1",
      "param2": "value2"
    }
  },
  "reasoning": "Why you're calling this function"
}

If you don't need to call a function, respond normally without the functionCall object.

Rules:
- Only use functions that are listed above
- Ensure all required parameters are provided
- Use the exact function and parameter names as specified
- If a function call fails, you'll receive an error message and can try again"""

_FEW_SHOT_EXAMPLES = """\
Example 1:
User: What time is it?
Assistant: {
  "functionCall": {
    "name": "getCurrentTime",
    "arguments": {}
  },
  "reasoning": "User wants to know the current time"
}

Example 2:
User: Calculate 15 * 7
Assistant: {
  "functionCall": {
    "name": "calculateMath",
    "arguments": {
      "expression": "15 * 7"
    }
  },
  "reasoning": "User wants to perform a calculation"
}

Example 3:
User: Hello, how are you?
Assistant: Hello! I'm doing well, thank you for asking. How can I help you today?
"""


def build_function_system_prompt(catalog: Sequence[Mapping[str, Any]]) -> str:
    """
    System instructions advertising *catalog* (see ``FunctionRegistry.to_catalog``).

    An empty catalog advertises no function-calling capability and yields ``""``.
    """
    if not catalog:
        return ""
    functions_json = json.dumps(list(catalog), indent=2)
    return (
        "You are a helpful assistant with access to the following functions:\n\n"
        f"{functions_json}\n\n"
        f"{_FUNCTION_RULES}"
    )


def build_few_shot_examples() -> str:
    """Example exchanges showing the envelope and a plain reply."""
    return _FEW_SHOT_EXAMPLES


def create_function_calling_prompt(
    user_message: str, catalog: Sequence[Mapping[str, Any]], include_few_shot: bool = False
) -> str:
    """Single-shot prompt: system instructions, optional examples, then the user's message."""
    system_prompt = build_function_system_prompt(catalog)
    few_shot = f"\n\n{build_few_shot_examples()}" if include_few_shot else ""
    return f"{system_prompt}{few_shot}\n\nUser: {user_message}"


def _coerce_arguments(raw: Any) -> Optional[Dict[str, Any]]:
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        # Some models double-encode the arguments object
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return decoded if isinstance(decoded, dict) else None
    return None


def parse_response(text: str) -> ParsedResponse:
    """
    Classify a model response as a function call or as regular prose.

    The first balanced ``{...}`` substring is parsed strictly; if it is an object carrying a
    ``functionCall`` with a name, the call (and optional ``reasoning``) is returned.  Every other
    outcome, including unparseable JSON, yields ``regular_response`` set to the full original
    text.  Never raises.
    """
    envelope = try_parse_json_object(text)
    if envelope is None:
        return ParsedResponse(regular_response=text)

    call = envelope.get(FUNCTION_CALL_KEY)
    if not isinstance(call, dict):
        return ParsedResponse(regular_response=text)

    name = call.get("name")
    arguments = _coerce_arguments(call.get("arguments"))
    if not isinstance(name, str) or not name.strip() or arguments is None:
        logger.debug("Ignoring malformed functionCall envelope: %s", call)
        return ParsedResponse(regular_response=text)

    reasoning = envelope.get("reasoning")
    return ParsedResponse(
        function_call=FunctionCall(name=name.strip(), arguments=arguments),
        reasoning=reasoning if reasoning is None or isinstance(reasoning, str) else str(reasoning),
    )


def to_json_text(value: Any) -> str:
    """Indented JSON rendering of an arbitrary tool result."""
    return json.dumps(to_jsonable_python(value, fallback=str), indent=2)


def format_function_result(function_name: str, value: Any, success: bool) -> str:
    """Canonical re-injection text for one tool outcome."""
    if success:
        return f'Function "{function_name}" executed successfully. Result: {to_json_text(value)}'
    return f'Function "{function_name}" failed with error: {value}'


# ---------------------------------------------------------------------------
# Structured output
# ---------------------------------------------------------------------------
def build_schema_prompt(schema: Any, union_policy: UnionPolicy = UnionPolicy.FIRST) -> str:
    """Schema instructions for structured output."""
    return render_schema_prompt(schema, union_policy=union_policy)


def build_structured_request(
    schema: Any, user_prompt: str, union_policy: UnionPolicy = UnionPolicy.FIRST
) -> str:
    """Schema instructions and the user's request, separated by a blank line."""
    return f"{build_schema_prompt(schema, union_policy)}\n\nUser Request: {user_prompt}"


def build_error_feedback(error: Any) -> str:
    """Corrective prompt sent after a response failed to parse or validate."""
    return (
        f"The previous response was invalid. Error: {error}. "
        "Please try again with valid JSON matching the schema."
    )
