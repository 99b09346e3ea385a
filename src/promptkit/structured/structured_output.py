"""
Structured-output extraction with bounded retries.

Each call runs a small state machine::

    Attempt(n) -> Parse -> Validate -> {Success | Retry(n + 1) | Exhausted}

The first attempt sends the schema instructions and the user's request; every later attempt
sends an error-feedback prompt on the same session so the model sees its own mistake.
``max_retries`` counts every attempt, the first one included.
"""

from __future__ import annotations

import inspect
import logging
from typing import (
    Any,
    Callable,
    Optional,
)

from pydantic import ValidationError as PydanticValidationError

from promptkit.config import settings
from promptkit.core.client import PromptClient
from promptkit.core.errors import (
    StructuredOutputError,
    get_error_message,
)
from promptkit.core.json_extraction import (
    JSONExtractionError,
    extract_json,
    parse_partial_json,
)
from promptkit.core.protocol import (
    build_error_feedback,
    build_structured_request,
)
from promptkit.core.session import (
    Session,
    SessionOptions,
)
from promptkit.structured.schema_coercer import (
    UnionPolicy,
    ValidationFailure,
    is_model_schema,
    validate,
)

logger = logging.getLogger(__name__)

PartialCallback = Callable[[Any], Any]


class SchemaValidationError(ValueError):
    """A parsed response that does not match the requested schema."""

    def __init__(self, failure: ValidationFailure) -> None:
        super().__init__(f"Schema validation failed at {failure}")
        self.failure = failure


_RETRYABLE = (JSONExtractionError, SchemaValidationError, PydanticValidationError)


def _check_max_retries(max_retries: int | None) -> int:
    if max_retries is None:
        max_retries = settings.MAX_RETRIES
    if max_retries < 1:
        raise ValueError("max_retries must be at least 1")
    return max_retries


def parse_structured_response(text: str, schema: Any) -> Any:
    """
    Turn one raw response into a validated value.

    Raises
    ------
    JSONExtractionError
        If no JSON could be parsed out of *text*.
    SchemaValidationError
        If the parsed value does not match *schema*.
    pydantic.ValidationError
        If *schema* is a model class and the model rejects the value.
    """
    value = extract_json(text)
    checked = validate(value, schema)
    if isinstance(checked, ValidationFailure):
        raise SchemaValidationError(checked)
    if is_model_schema(schema):
        return schema.model_validate(value)
    return value


def _prompt_for_attempt(attempt: int, request: str, last_error: Optional[BaseException]) -> str:
    if attempt == 1 or last_error is None:
        return request
    return build_error_feedback(get_error_message(last_error))


def _exhausted(max_retries: int, last_error: Optional[BaseException]) -> StructuredOutputError:
    return StructuredOutputError(
        f"Failed to get valid structured output after {max_retries} attempts: "
        f"{get_error_message(last_error) if last_error else 'no response'}",
        cause=last_error,
        attempts=max_retries,
    )


async def _emit_partial(on_partial: PartialCallback, partial: Any) -> None:
    """Hand *partial* to the callback; its failures are logged and ignored."""
    try:
        outcome = on_partial(partial)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception:  # pylint: disable=broad-exception-caught
        logger.debug("Partial callback failed", exc_info=True)


async def extract_structured(
    session: Session,
    prompt: str,
    schema: Any,
    max_retries: int | None = None,
    union_policy: UnionPolicy = UnionPolicy.FIRST,
) -> Any:
    """
    Ask *session* for a value matching *schema*.

    Parameters
    ----------
    session:
        An open :class:`~promptkit.core.session.Session`.
    prompt:
        The user's request.
    schema:
        A ``ParameterSchema``, a wire-schema dict, a pydantic model class or a type annotation.
        Model classes yield model instances, everything else plain JSON values.
    max_retries:
        Total number of prompts sent, at least 1.  Defaults to ``settings.MAX_RETRIES``.

    Raises
    ------
    StructuredOutputError
        When every attempt failed; ``cause`` holds the last parse or validation error.
    SessionError
        Session failures are not retried and propagate unchanged.
    """
    max_retries = _check_max_retries(max_retries)
    request = build_structured_request(schema, prompt, union_policy)
    last_error: Optional[BaseException] = None

    for attempt in range(1, max_retries + 1):
        response = await session.prompt(_prompt_for_attempt(attempt, request, last_error))
        try:
            return parse_structured_response(response, schema)
        except _RETRYABLE as exc:
            last_error = exc
            logger.info(
                "Structured output attempt %d/%d failed: %s", attempt, max_retries, exc
            )

    raise _exhausted(max_retries, last_error)


async def extract_structured_streaming(
    session: Session,
    prompt: str,
    schema: Any,
    max_retries: int | None = None,
    on_partial: PartialCallback | None = None,
    union_policy: UnionPolicy = UnionPolicy.FIRST,
) -> Any:
    """
    Streaming variant of :func:`extract_structured`.

    While an attempt streams, each snapshot is heuristically closed and parsed; whenever that
    yields a new object or array it is passed to *on_partial* (awaited if it returns an
    awaitable).  Partials are advisory only and never affect the outcome of the attempt.
    """
    max_retries = _check_max_retries(max_retries)
    request = build_structured_request(schema, prompt, union_policy)
    last_error: Optional[BaseException] = None

    for attempt in range(1, max_retries + 1):
        text = _prompt_for_attempt(attempt, request, last_error)
        response = ""
        last_partial: Any = None
        async for snapshot in session.prompt_streaming(text):
            response = snapshot
            if on_partial is None:
                continue
            partial = parse_partial_json(snapshot)
            if isinstance(partial, (dict, list)) and partial != last_partial:
                last_partial = partial
                await _emit_partial(on_partial, partial)
        try:
            return parse_structured_response(response, schema)
        except _RETRYABLE as exc:
            last_error = exc
            logger.info(
                "Streaming structured output attempt %d/%d failed: %s",
                attempt,
                max_retries,
                exc,
            )

    raise _exhausted(max_retries, last_error)


async def extract_with_client(
    client: PromptClient,
    prompt: str,
    schema: Any,
    max_retries: int | None = None,
    session_options: SessionOptions | None = None,
) -> Any:
    """Open a throw-away session on *client*, extract, and dispose the session."""
    session = await client.create_session(session_options)
    try:
        return await extract_structured(session, prompt, schema, max_retries)
    finally:
        client.destroy_session(session.session_id)
