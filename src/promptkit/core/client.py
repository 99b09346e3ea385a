"""Explicit owner of a completion backend and the sessions opened on it."""

from __future__ import annotations

import logging
from typing import (
    Dict,
    List,
)

from promptkit.core.backends import (
    CompletionBackend,
    load_backend,
)
from promptkit.core.errors import SessionError
from promptkit.core.session import (
    Session,
    SessionOptions,
    create_session,
)

logger = logging.getLogger(__name__)


class PromptClient:
    """
    Context object handed to the agent and structured-output helpers.

    The backend is checked lazily: :meth:`initialize` runs on first use and raises
    :class:`SessionError` when the backend reports itself unavailable.
    """

    def __init__(self, backend: CompletionBackend | None = None) -> None:
        self.backend = backend or load_backend()
        self._initialized = False
        self._sessions: Dict[str, Session] = {}

    @classmethod
    def from_provider(cls, provider: str | None = None, **kwargs) -> "PromptClient":
        return cls(load_backend(provider, **kwargs))

    async def initialize(self) -> None:
        if self._initialized:
            return
        try:
            available = await self.backend.is_available()
        except Exception as exc:
            raise SessionError("Failed to initialize completion backend", cause=exc) from exc
        if not available:
            raise SessionError(f"Completion backend '{self.backend.name}' is not available")
        self._initialized = True
        logger.info("Initialized completion backend '%s'", self.backend.name)

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------ #
    # Sessions
    # ------------------------------------------------------------------ #
    async def create_session(self, options: SessionOptions | None = None) -> Session:
        await self.initialize()
        session = await create_session(self.backend, options)
        self._sessions[session.session_id] = session
        return session

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def destroy_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.dispose()

    def destroy_all_sessions(self) -> None:
        for session in self._sessions.values():
            session.dispose()
        self._sessions.clear()

    @property
    def active_sessions(self) -> List[str]:
        return [sid for sid, session in self._sessions.items() if session.is_active]

    async def aclose(self) -> None:
        """Dispose every session and release the backend."""
        self.destroy_all_sessions()
        await self.backend.aclose()
