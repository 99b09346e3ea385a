"""Tests for structured-output extraction with retries."""

import asyncio
import json

import pytest
from pydantic import BaseModel

from promptkit.core.backends import ScriptedBackend
from promptkit.core.client import PromptClient
from promptkit.core.errors import (
    SessionError,
    StructuredOutputError,
)
from promptkit.core.json_extraction import JSONExtractionError
from promptkit.core.session import Session
from promptkit.structured.structured_output import (
    SchemaValidationError,
    extract_structured,
    extract_structured_streaming,
    extract_with_client,
)

NAME_SCHEMA = {
    "type": "object",
    "properties": {"name": {"type": "string"}},
    "required": ["name"],
}


class Person(BaseModel):
    name: str
    age: int


def test_succeeds_on_third_attempt() -> None:
    """Two unparseable responses, then a valid one, with max_retries=3."""

    backend = ScriptedBackend(["not json", "not json again", '{"name":"Ann"}'])
    session = Session(backend)

    value = asyncio.run(extract_structured(session, "Who?", NAME_SCHEMA, max_retries=3))

    assert value == {"name": "Ann"}
    assert len(backend.prompts) == 3
    assert backend.prompts[0].endswith("\n\nUser Request: Who?")
    assert backend.prompts[1].startswith(
        "The previous response was invalid. Error: Failed to parse JSON response"
    )


def test_success_does_not_consume_remaining_retries() -> None:
    """A valid first response returns immediately."""

    backend = ScriptedBackend(['```json\n{"name": "Bo"}\n```', "unused"])
    value = asyncio.run(extract_structured(Session(backend), "Who?", NAME_SCHEMA))
    assert value == {"name": "Bo"}
    assert backend.remaining == 1


@pytest.mark.parametrize("max_retries", [1, 2, 5])
def test_exhaustion_after_exactly_max_retries(max_retries) -> None:
    """Never-valid responses raise after exactly max_retries prompts."""

    backend = ScriptedBackend(default="still not json")

    with pytest.raises(StructuredOutputError) as info:
        asyncio.run(
            extract_structured(Session(backend), "Who?", NAME_SCHEMA, max_retries=max_retries)
        )

    assert len(backend.prompts) == max_retries
    assert info.value.attempts == max_retries
    assert isinstance(info.value.cause, JSONExtractionError)
    assert info.value.code == "STRUCTURED_OUTPUT_ERROR"


def test_validation_failure_is_fed_back() -> None:
    """Schema mismatches are retry conditions with the failing path in the feedback."""

    backend = ScriptedBackend(['{"nom": "Ann"}', '{"name": "Ann"}'])
    value = asyncio.run(extract_structured(Session(backend), "Who?", NAME_SCHEMA))

    assert value == {"name": "Ann"}
    assert "$.name: missing required field" in backend.prompts[1]


def test_last_error_is_validation_error() -> None:
    """The exhaustion error carries the last underlying failure."""

    backend = ScriptedBackend(["nope", '{"name": 3}'])
    with pytest.raises(StructuredOutputError) as info:
        asyncio.run(extract_structured(Session(backend), "Who?", NAME_SCHEMA, max_retries=2))
    assert isinstance(info.value.cause, SchemaValidationError)
    assert info.value.cause.failure.path == "$.name"


def test_model_schema_returns_instance() -> None:
    """Pydantic models are validated by the model too."""

    backend = ScriptedBackend(['{"name": "Ann", "age": 31.5}', '{"name": "Ann", "age": 31}'])
    person = asyncio.run(extract_structured(Session(backend), "Who?", Person))

    assert person == Person(name="Ann", age=31)
    assert len(backend.prompts) == 2


def test_invalid_max_retries() -> None:
    """At least one attempt is required."""

    backend = ScriptedBackend(["{}"])
    with pytest.raises(ValueError):
        asyncio.run(extract_structured(Session(backend), "Who?", NAME_SCHEMA, max_retries=0))
    assert backend.prompts == []


def test_session_errors_are_not_retried() -> None:
    """Transport failures propagate unchanged after a single prompt."""

    backend = ScriptedBackend([RuntimeError("connection reset"), '{"name": "Ann"}'])
    with pytest.raises(SessionError) as info:
        asyncio.run(extract_structured(Session(backend), "Who?", NAME_SCHEMA))
    assert isinstance(info.value.cause, RuntimeError)
    assert len(backend.prompts) == 1


def test_streaming_emits_partials() -> None:
    """Each new parseable snapshot is reported; the final value matches the last partial."""

    document = {"name": "Ann", "tags": ["a", "b"]}
    backend = ScriptedBackend([json.dumps(document)], chunk_size=4)
    partials = []

    value = asyncio.run(
        extract_structured_streaming(
            Session(backend), "Who?", NAME_SCHEMA, on_partial=partials.append
        )
    )

    assert value == document
    assert partials, "no partial values were emitted"
    assert partials[-1] == document
    assert all(isinstance(partial, dict) for partial in partials)
    assert all(a != b for a, b in zip(partials, partials[1:]))


def test_streaming_ignores_callback_failures() -> None:
    """A partial callback that raises, sync or async, does not change the result."""

    def crash(partial):
        raise RuntimeError("ui crashed")

    async def crash_later(partial):
        raise RuntimeError("ui crashed")

    for callback in (crash, crash_later):
        backend = ScriptedBackend(['{"name": "Ann"}'], chunk_size=4)
        value = asyncio.run(
            extract_structured_streaming(Session(backend), "Who?", NAME_SCHEMA, on_partial=callback)
        )
        assert value == {"name": "Ann"}
        assert len(backend.prompts) == 1


def test_streaming_retries_with_feedback() -> None:
    """Streaming follows the same retry contract and accepts async callbacks."""

    backend = ScriptedBackend(["garbage", '{"name": "Ann"}'], chunk_size=3)
    seen = []

    async def on_partial(partial):
        seen.append(partial)

    value = asyncio.run(
        extract_structured_streaming(
            Session(backend), "Who?", NAME_SCHEMA, max_retries=2, on_partial=on_partial
        )
    )
    assert value == {"name": "Ann"}
    assert backend.prompts[1].startswith("The previous response was invalid.")
    assert seen[-1] == {"name": "Ann"}


def test_extract_with_client_disposes_session() -> None:
    """The convenience wrapper cleans up its session."""

    client = PromptClient(ScriptedBackend(['{"name": "Ann"}']))
    value = asyncio.run(extract_with_client(client, "Who?", NAME_SCHEMA))
    assert value == {"name": "Ann"}
    assert client.active_sessions == []
