"""
Completion sessions.

A :class:`Session` is the capability the orchestration core sits on: it keeps a conversation
history, sends it to a :class:`~promptkit.core.backends.CompletionBackend`, tracks the token
budget, can be cloned to fork the conversation and must be disposed when no longer needed.
"""

from __future__ import annotations

import logging
import uuid
from enum import Enum
from typing import (
    AsyncIterator,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)

from promptkit.config import settings
from promptkit.core.backends import CompletionBackend
from promptkit.core.errors import (
    PromptKitError,
    QuotaExceededError,
    SessionError,
)
from promptkit.core.schema import Message

logger = logging.getLogger(__name__)


class SessionOptions(BaseModel):
    """Parameters for :func:`create_session`."""

    system_prompt: Optional[str] = None
    initial_history: List[Message] = Field(default_factory=list)
    temperature: float = Field(default_factory=lambda: settings.TEMPERATURE, ge=0.0)
    top_k: int = Field(default_factory=lambda: settings.TOP_K, ge=1)
    max_tokens: int = Field(default_factory=lambda: settings.CONTEXT_TOKENS, gt=0)


class TokenBudget(BaseModel):
    """Token usage of a session."""

    model_config = ConfigDict(frozen=True)

    max: int
    used: int
    remaining: int

    @property
    def percentage_used(self) -> float:
        return (self.used / self.max) * 100 if self.max else 100.0


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------
class Session:
    """One conversation with a completion backend."""

    def __init__(
        self,
        backend: CompletionBackend,
        options: SessionOptions | None = None,
        *,
        session_id: str | None = None,
        history: List[Message] | None = None,
        tokens_used: int | None = None,
    ) -> None:
        self.backend = backend
        self.options = options or SessionOptions()
        self.session_id = session_id or str(uuid.uuid4())
        self._disposed = False

        if history is None:
            history = []
            if self.options.system_prompt:
                history.append(Message(role="system", content=self.options.system_prompt))
            history.extend(self.options.initial_history)
        self._history: List[Message] = list(history)

        if tokens_used is None:
            tokens_used = sum(self.count_tokens(message.content) for message in self._history)
        self._tokens_used = tokens_used
        self.quota = QuotaTracker(self)

    # ------------------------------------------------------------------ #
    # Prompting
    # ------------------------------------------------------------------ #
    async def prompt(self, text: str) -> str:
        """Send *text* and return the complete response."""
        self._ensure_active()
        self.quota.throw_if_exhausted()
        messages = [*self._history, Message(role="user", content=text)]
        logger.debug("Session %s prompt: %s", self.session_id, text)
        try:
            reply = await self.backend.complete(
                messages, temperature=self.options.temperature, top_k=self.options.top_k
            )
        except PromptKitError:
            raise
        except Exception as exc:
            raise SessionError("Failed to prompt session", cause=exc) from exc
        logger.debug("Session %s response: %s", self.session_id, reply)
        self._record(text, reply)
        return reply

    async def prompt_streaming(self, text: str) -> AsyncIterator[str]:
        """
        Send *text* and yield snapshots of the response.

        Each snapshot is the full text accumulated so far, not a delta.
        """
        self._ensure_active()
        self.quota.throw_if_exhausted()
        messages = [*self._history, Message(role="user", content=text)]
        accumulated = ""
        try:
            async for delta in self.backend.stream(
                messages, temperature=self.options.temperature, top_k=self.options.top_k
            ):
                accumulated += delta
                yield accumulated
        except PromptKitError:
            raise
        except Exception as exc:
            raise SessionError("Failed to stream from session", cause=exc) from exc
        self._record(text, accumulated)

    def _record(self, user_text: str, reply: str) -> None:
        self._history.append(Message(role="user", content=user_text))
        self._history.append(Message(role="assistant", content=reply))
        self._tokens_used += self.count_tokens(user_text) + self.count_tokens(reply)

    # ------------------------------------------------------------------ #
    # Budget / lifecycle
    # ------------------------------------------------------------------ #
    def count_tokens(self, text: str) -> int:
        return self.backend.count_tokens(text)

    def token_budget(self) -> TokenBudget:
        maximum = self.options.max_tokens
        return TokenBudget(
            max=maximum, used=self._tokens_used, remaining=max(0, maximum - self._tokens_used)
        )

    async def clone(self) -> "Session":
        """Independent continuation that starts from this session's conversation so far."""
        self._ensure_active()
        return Session(
            self.backend,
            self.options.model_copy(deep=True),
            history=list(self._history),
            tokens_used=self._tokens_used,
        )

    def dispose(self) -> None:
        """Release the session.  Calling it again is a no-op."""
        if self._disposed:
            return
        self._disposed = True
        logger.debug("Disposed session %s", self.session_id)

    @property
    def is_active(self) -> bool:
        return not self._disposed

    @property
    def history(self) -> List[Message]:
        return list(self._history)

    def _ensure_active(self) -> None:
        if self._disposed:
            raise SessionError(f"Session {self.session_id} has been disposed")


async def create_session(
    backend: CompletionBackend, options: SessionOptions | None = None
) -> Session:
    """Open a session on *backend*; availability problems surface as :class:`SessionError`."""
    try:
        available = await backend.is_available()
    except Exception as exc:
        raise SessionError("Failed to create session", cause=exc) from exc
    if not available:
        raise SessionError(f"Completion backend '{backend.name}' is not available")
    session = Session(backend, options)
    logger.debug("Created session %s on backend '%s'", session.session_id, backend.name)
    return session


# ---------------------------------------------------------------------------
# Quota tracking
# ---------------------------------------------------------------------------
class QuotaLevel(str, Enum):
    SAFE = "safe"
    WARNING = "warning"
    CRITICAL = "critical"
    EXHAUSTED = "exhausted"


class QuotaTracker:
    """Token-budget bookkeeping on top of :meth:`Session.token_budget`."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def info(self) -> TokenBudget:
        return self._session.token_budget()

    def has_available_quota(self, minimum_tokens: int = 100) -> bool:
        return self.info().remaining >= minimum_tokens

    def warning_level(self) -> QuotaLevel:
        used = self.info().percentage_used
        if used >= 100:
            return QuotaLevel.EXHAUSTED
        if used >= 90:
            return QuotaLevel.CRITICAL
        if used >= 70:
            return QuotaLevel.WARNING
        return QuotaLevel.SAFE

    def should_warn_user(self) -> bool:
        return self.warning_level() in (QuotaLevel.WARNING, QuotaLevel.CRITICAL)

    def throw_if_exhausted(self) -> None:
        if self.warning_level() is QuotaLevel.EXHAUSTED:
            raise QuotaExceededError(
                "Session quota exhausted. Please create a new session or clone the current one."
            )

    def cleanup_suggestion(self) -> str:
        level = self.warning_level()
        info = self.info()
        if level is QuotaLevel.EXHAUSTED:
            return "Quota fully exhausted. Create a new session immediately."
        if level is QuotaLevel.CRITICAL:
            return f"Only {info.remaining} tokens remaining. Consider cloning the session soon."
        if level is QuotaLevel.WARNING:
            return f"{info.percentage_used:.1f}% of quota used. Plan to refresh the session."
        return "Quota usage is healthy."

    def estimate_prompt_cost(self, prompt: str) -> int:
        return self._session.count_tokens(prompt)

    def can_afford_prompt(self, prompt: str) -> bool:
        return self.info().remaining >= self.estimate_prompt_cost(prompt)
