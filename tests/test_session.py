"""Tests for sessions, the client, quota tracking and the completion backends."""

import asyncio
import json

import httpx
import pytest

from promptkit.core.backends import (
    AnthropicBackend,
    ScriptedBackend,
    TGIBackend,
    available_backends,
    estimate_tokens,
    load_backend,
)
from promptkit.core.client import PromptClient
from promptkit.core.errors import (
    QuotaExceededError,
    SessionError,
)
from promptkit.core.schema import Message
from promptkit.core.session import (
    QuotaLevel,
    Session,
    SessionOptions,
    create_session,
)


class UnavailableBackend(ScriptedBackend):
    async def is_available(self) -> bool:
        return False


def test_prompt_records_history() -> None:
    """Each exchange is appended to the conversation sent next time."""

    backend = ScriptedBackend(["first", "second"])
    session = Session(backend, SessionOptions(system_prompt="Be brief."))

    assert asyncio.run(session.prompt("one")) == "first"
    assert asyncio.run(session.prompt("two")) == "second"

    roles = [message.role for message in backend.conversations[1]]
    assert roles == ["system", "user", "assistant", "user"]
    assert backend.conversations[1][-1].content == "two"
    assert len(session.history) == 5


def test_dispose_is_idempotent() -> None:
    """Disposing twice is a no-op; prompting afterwards fails."""

    session = Session(ScriptedBackend(["unused"]))
    session.dispose()
    session.dispose()
    assert not session.is_active

    with pytest.raises(SessionError, match="disposed"):
        asyncio.run(session.prompt("hello"))


def test_backend_errors_are_wrapped() -> None:
    """Backend exceptions surface as SessionError with the cause attached."""

    session = Session(ScriptedBackend([ValueError("bad gateway")]))
    with pytest.raises(SessionError) as info:
        asyncio.run(session.prompt("hello"))
    assert isinstance(info.value.cause, ValueError)
    assert info.value.code == "SESSION_ERROR"


def test_streaming_yields_snapshots() -> None:
    """Snapshots accumulate the full text so far."""

    session = Session(ScriptedBackend(["Hello world"], chunk_size=5))

    async def collect():
        return [snapshot async for snapshot in session.prompt_streaming("hi")]

    assert asyncio.run(collect()) == ["Hello", "Hello worl", "Hello world"]
    assert session.history[-1].content == "Hello world"


def test_clone_forks_conversation() -> None:
    """A clone starts from the same history but evolves independently."""

    backend = ScriptedBackend(["a", "b"])
    session = Session(backend)
    asyncio.run(session.prompt("x"))
    clone = asyncio.run(session.clone())
    asyncio.run(clone.prompt("y"))

    assert len(session.history) == 2
    assert len(clone.history) == 4
    assert clone.session_id != session.session_id
    assert clone.token_budget().used > session.token_budget().used


def test_token_budget_and_quota() -> None:
    """Budget usage drives the quota levels and blocks prompts once exhausted."""

    backend = ScriptedBackend(default="y" * 16)
    session = Session(backend, SessionOptions(max_tokens=10))
    assert session.quota.warning_level() is QuotaLevel.SAFE
    assert session.quota.can_afford_prompt("x" * 40)

    asyncio.run(session.prompt("x" * 4))  # 1 + 4 tokens
    budget = session.token_budget()
    assert (budget.used, budget.remaining) == (5, 5)
    assert budget.percentage_used == 50.0

    asyncio.run(session.prompt("x" * 8))  # 2 + 4 tokens
    assert session.quota.warning_level() is QuotaLevel.EXHAUSTED
    assert "exhausted" in session.quota.cleanup_suggestion()
    with pytest.raises(QuotaExceededError):
        asyncio.run(session.prompt("more"))


def test_estimate_tokens() -> None:
    """Roughly four characters per token, rounded up."""

    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_create_session_checks_availability() -> None:
    """Unavailable backends cannot open sessions."""

    with pytest.raises(SessionError, match="not available"):
        asyncio.run(create_session(UnavailableBackend()))


def test_client_tracks_sessions() -> None:
    """The client initialises lazily and owns the sessions it creates."""

    client = PromptClient(ScriptedBackend())
    assert not client.is_initialized

    first = asyncio.run(client.create_session())
    second = asyncio.run(client.create_session())
    assert client.is_initialized
    assert client.get_session(first.session_id) is first
    assert sorted(client.active_sessions) == sorted([first.session_id, second.session_id])

    client.destroy_session(first.session_id)
    assert not first.is_active
    client.destroy_all_sessions()
    assert client.active_sessions == []
    assert not second.is_active


def test_backend_registry() -> None:
    """Backends are looked up by name."""

    assert {"anthropic", "openai", "scripted", "tgi"} <= set(available_backends())
    assert isinstance(load_backend("scripted", responses=["x"]), ScriptedBackend)
    with pytest.raises(ValueError, match="not registered"):
        load_backend("nope")


def test_anthropic_request_splits_system_prompt() -> None:
    """System messages travel in the dedicated field."""

    backend = AnthropicBackend(model="test-model", client=object())
    request = backend._request(  # pylint: disable=protected-access
        [Message(role="system", content="sys"), Message(role="user", content="hi")], 0.2, 3
    )
    assert request["system"] == "sys"
    assert request["messages"] == [{"role": "user", "content": "hi"}]
    assert request["model"] == "test-model"


# ---------------------------------------------------------------------------
# TGI over httpx
# ---------------------------------------------------------------------------
MESSAGES = [Message(role="system", content="sys"), Message(role="user", content="hello")]


def _tgi(handler, **kwargs) -> TGIBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TGIBackend(endpoint="http://tgi:8080", client=client, retry_delay=0, **kwargs)


def test_tgi_generate() -> None:
    """The transcript is posted to /generate and the generated text returned."""

    captured = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"generated_text": "Hi!"})

    backend = _tgi(handler)
    assert asyncio.run(backend.complete(MESSAGES, temperature=0.5, top_k=3)) == "Hi!"

    path, payload = captured[0]
    assert path == "/generate"
    assert payload["inputs"] == "sys\n\nUser: hello\n\nAssistant:"
    assert payload["parameters"]["temperature"] == 0.5
    assert payload["parameters"]["top_k"] == 3


def test_tgi_retries_connection_errors() -> None:
    """Connection errors are retried with backoff up to max_attempts."""

    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"generated_text": "ok"})

    backend = _tgi(handler, max_attempts=3)
    assert asyncio.run(backend.complete(MESSAGES, temperature=0, top_k=1)) == "ok"
    assert len(attempts) == 3

    attempts.clear()
    with pytest.raises(httpx.ConnectError):
        asyncio.run(_tgi(handler, max_attempts=2).complete(MESSAGES, temperature=0, top_k=1))
    assert len(attempts) == 2


def test_tgi_stream_and_health() -> None:
    """Server-sent tokens are streamed, special tokens skipped."""

    events = [
        {"token": {"text": "Hel", "special": False}},
        {"token": {"text": "lo", "special": False}},
        {"token": {"text": "</s>", "special": True}},
    ]
    body = "".join(f"data:{json.dumps(event)}\n\n" for event in events)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/health":
            return httpx.Response(503)
        return httpx.Response(200, text=body)

    backend = _tgi(handler)
    session = Session(backend)

    async def scenario():
        snapshots = [snapshot async for snapshot in session.prompt_streaming("hi")]
        return snapshots, await backend.is_available()

    snapshots, available = asyncio.run(scenario())
    assert snapshots == ["Hel", "Hello"]
    assert available is False
