"""
Completion backends for promptkit.

This module is the only place that *directly* calls an LLM.  Everything else (sessions, agent
loop, tools) stays model-agnostic and talks to a :class:`CompletionBackend`.

We support these back-ends out of the box:

1. **OpenAI / Anthropic** via their SDKs (requires API keys).
2. **Hugging Face Text-Generation-Inference (TGI)** for self-hosted models, over httpx.
3. **Scripted** canned responses, for tests and demos.

Additional providers can be added by subclassing :class:`CompletionBackend` and registering via
:func:`register_backend`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from abc import (
    ABC,
    abstractmethod,
)
from collections import deque
from typing import (
    Any,
    AsyncIterator,
    Callable,
    ClassVar,
    Dict,
    Iterable,
    List,
    Sequence,
    Type,
    Union,
)

import httpx

from promptkit.config import settings
from promptkit.core.schema import Message

logger = logging.getLogger(__name__)


def estimate_tokens(text: str) -> int:
    """Rough token estimate (~4 characters per token)."""
    return math.ceil(len(text) / 4) if text else 0


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_BACKEND_REGISTRY: dict[str, Type["CompletionBackend"]] = {}


def register_backend(name: str) -> Callable:
    """Decorator to register a backend class under *name*."""

    def wrapper(cls: Type["CompletionBackend"]) -> Type["CompletionBackend"]:
        _BACKEND_REGISTRY[name] = cls
        return cls

    return wrapper


def available_backends() -> List[str]:
    return sorted(_BACKEND_REGISTRY)


def load_backend(name: str | None = None, **kwargs: Any) -> "CompletionBackend":
    """
    Factory that returns an instantiated backend.

    Fallback order:
    1. *name* arg
    2. ``settings.PROVIDER`` env option
    """

    target = name or settings.PROVIDER
    cls = _BACKEND_REGISTRY.get(target.lower())
    if cls is None:
        raise ValueError(f"Backend '{target}' is not registered.")
    return cls(**kwargs)


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class CompletionBackend(ABC):
    """Abstract backend that turns a conversation into the next assistant message."""

    name: ClassVar[str] = "base"

    @abstractmethod
    async def complete(
        self, messages: Sequence[Message], *, temperature: float, top_k: int
    ) -> str:
        """Return the full response to the last user message in *messages*."""

    async def stream(
        self, messages: Sequence[Message], *, temperature: float, top_k: int
    ) -> AsyncIterator[str]:
        """Yield the response as text deltas.  Defaults to one delta with the full response."""
        yield await self.complete(messages, temperature=temperature, top_k=top_k)

    @property
    def context_window(self) -> int:
        """Token budget of one conversation on this backend."""
        return settings.CONTEXT_TOKENS

    def count_tokens(self, text: str) -> int:
        return estimate_tokens(text)

    async def is_available(self) -> bool:
        return True

    async def aclose(self) -> None:
        """Release network resources held by the backend."""


# ---------------------------------------------------------------------------
# Concrete backends
# ---------------------------------------------------------------------------
ScriptedResponse = Union[str, BaseException, Callable[[str], str]]


@register_backend("scripted")
class ScriptedBackend(CompletionBackend):
    """
    Replays canned responses in order and records every prompt it receives.

    A response may be a string, an exception instance (raised instead of answering) or a
    callable receiving the prompt text.  When the script runs out, *default* is returned if
    given, otherwise a ``RuntimeError`` is raised.
    """

    name = "scripted"

    def __init__(
        self,
        responses: Iterable[ScriptedResponse] = (),
        *,
        default: str | None = None,
        chunk_size: int = 8,
    ) -> None:
        self._responses: deque[ScriptedResponse] = deque(responses)
        self.default = default
        self.chunk_size = max(1, chunk_size)
        self.prompts: List[str] = []
        self.conversations: List[List[Message]] = []

    def add_responses(self, *responses: ScriptedResponse) -> None:
        self._responses.extend(responses)

    @property
    def remaining(self) -> int:
        return len(self._responses)

    async def complete(
        self, messages: Sequence[Message], *, temperature: float, top_k: int
    ) -> str:
        prompt = messages[-1].content if messages else ""
        self.prompts.append(prompt)
        self.conversations.append(list(messages))
        if not self._responses:
            if self.default is not None:
                return self.default
            raise RuntimeError("Scripted backend ran out of responses")
        item = self._responses.popleft()
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(prompt)
        return item

    async def stream(
        self, messages: Sequence[Message], *, temperature: float, top_k: int
    ) -> AsyncIterator[str]:
        text = await self.complete(messages, temperature=temperature, top_k=top_k)
        for start in range(0, len(text), self.chunk_size):
            yield text[start : start + self.chunk_size]


def _openai_messages(messages: Sequence[Message]) -> List[Dict[str, str]]:
    return [{"role": message.role, "content": message.content} for message in messages]


@register_backend("openai")
class OpenAIBackend(CompletionBackend):
    """OpenAI chat-completions backend."""

    name = "openai"

    def __init__(self, model: str | None = None, api_key: str | None = None, client: Any = None):
        self._client = client
        self._api_key = api_key
        self.model = model or settings.OPENAI_MODEL

    @property
    def client(self) -> Any:
        """SDK client, built on first use."""
        if self._client is None:
            import openai  # pylint: disable=import-outside-toplevel

            self._client = openai.AsyncOpenAI(
                api_key=self._api_key or settings.OPENAI_API_KEY,
                timeout=settings.REQUEST_TIMEOUT,
            )
        return self._client

    async def complete(
        self, messages: Sequence[Message], *, temperature: float, top_k: int
    ) -> str:
        resp = await self.client.chat.completions.create(
            model=self.model, messages=_openai_messages(messages), temperature=temperature
        )
        content = resp.choices[0].message.content
        if not content:
            logger.warning("OpenAI backend returned an empty response")
            return ""
        return content

    async def stream(
        self, messages: Sequence[Message], *, temperature: float, top_k: int
    ) -> AsyncIterator[str]:
        stream = await self.client.chat.completions.create(
            model=self.model,
            messages=_openai_messages(messages),
            temperature=temperature,
            stream=True,
        )
        async for chunk in stream:
            if chunk.choices and chunk.choices[0].delta.content:
                yield chunk.choices[0].delta.content

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()


@register_backend("anthropic")
class AnthropicBackend(CompletionBackend):
    """Anthropic messages-API backend."""

    name = "anthropic"
    max_output_tokens: ClassVar[int] = 8192

    def __init__(self, model: str | None = None, api_key: str | None = None, client: Any = None):
        self._client = client
        self._api_key = api_key
        self.model = model or settings.ANTHROPIC_MODEL

    @property
    def client(self) -> Any:
        if self._client is None:
            import anthropic  # pylint: disable=import-outside-toplevel

            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or settings.ANTHROPIC_API_KEY,
                timeout=settings.REQUEST_TIMEOUT,
            )
        return self._client

    def _request(
        self, messages: Sequence[Message], temperature: float, top_k: int
    ) -> Dict[str, Any]:
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        request: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_output_tokens,
            "messages": _openai_messages([m for m in messages if m.role != "system"]),
            "temperature": min(temperature, 1.0),
            "top_k": top_k,
        }
        if system:
            request["system"] = system
        return request

    async def complete(
        self, messages: Sequence[Message], *, temperature: float, top_k: int
    ) -> str:
        response = await self.client.messages.create(
            **self._request(messages, temperature, top_k)
        )
        # Handle different content block types from Anthropic API
        return "".join(
            block.text if block.type == "text" else str(block) for block in response.content
        )

    async def stream(
        self, messages: Sequence[Message], *, temperature: float, top_k: int
    ) -> AsyncIterator[str]:
        async with self.client.messages.stream(
            **self._request(messages, temperature, top_k)
        ) as stream:
            async for text in stream.text_stream:
                yield text

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()


@register_backend("tgi")
class TGIBackend(CompletionBackend):
    """Text-Generation-Inference backend with an httpx client."""

    name = "tgi"

    def __init__(
        self,
        endpoint: str | None = None,
        client: httpx.AsyncClient | None = None,
        max_attempts: int | None = None,
        retry_delay: float = 0.5,
        max_new_tokens: int = 512,
    ) -> None:
        self.endpoint = (endpoint or settings.TGI_ENDPOINT).rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=settings.REQUEST_TIMEOUT)
        self.max_attempts = max_attempts or settings.HTTP_MAX_ATTEMPTS
        self.retry_delay = retry_delay
        self.max_new_tokens = max_new_tokens

    @staticmethod
    def render_transcript(messages: Sequence[Message]) -> str:
        """Flatten the conversation into a plain-text prompt ending with an assistant cue."""
        parts: List[str] = []
        for message in messages:
            if message.role == "system":
                parts.append(message.content)
            elif message.role == "user":
                parts.append(f"User: {message.content}")
            else:
                parts.append(f"Assistant: {message.content}")
        parts.append("Assistant:")
        return "\n\n".join(parts)

    def _payload(
        self, messages: Sequence[Message], temperature: float, top_k: int
    ) -> Dict[str, Any]:
        parameters: Dict[str, Any] = {
            "max_new_tokens": self.max_new_tokens,
            "top_k": top_k,
            "stop": ["User:", "</s>"],
        }
        if temperature > 0:
            parameters["temperature"] = temperature
        return {"inputs": self.render_transcript(messages), "parameters": parameters}

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.endpoint}{path}"
        for attempt in range(self.max_attempts):
            try:
                resp = await self._client.post(url, json=payload)
                resp.raise_for_status()
                return resp.json()
            except httpx.ConnectError:
                # On connection refused, retry with exponential backoff
                if attempt >= self.max_attempts - 1:
                    raise
                delay = self.retry_delay * (2**attempt)
                logger.info(
                    "TGI not reachable, retrying in %.1f seconds (attempt %d/%d)...",
                    delay,
                    attempt + 1,
                    self.max_attempts,
                )
                await asyncio.sleep(delay)
        raise RuntimeError("unreachable")  # pragma: no cover

    async def complete(
        self, messages: Sequence[Message], *, temperature: float, top_k: int
    ) -> str:
        data = await self._post("/generate", self._payload(messages, temperature, top_k))
        content = data["generated_text"]
        logger.debug("TGI response: %s", content)
        return content

    async def stream(
        self, messages: Sequence[Message], *, temperature: float, top_k: int
    ) -> AsyncIterator[str]:
        url = f"{self.endpoint}/generate_stream"
        payload = self._payload(messages, temperature, top_k)
        async with self._client.stream("POST", url, json=payload) as resp:
            resp.raise_for_status()
            async for line in resp.aiter_lines():
                if not line.startswith("data:"):
                    continue
                event = json.loads(line[len("data:") :])
                token = event.get("token") or {}
                if token.get("special"):
                    continue
                if token.get("text"):
                    yield token["text"]

    async def is_available(self) -> bool:
        try:
            resp = await self._client.get(f"{self.endpoint}/health")
        except httpx.HTTPError as exc:
            logger.error("TGI health check failed: %s", exc)
            return False
        return resp.status_code == 200

    async def aclose(self) -> None:
        await self._client.aclose()
