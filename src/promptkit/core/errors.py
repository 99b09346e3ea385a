"""
Error hierarchy for promptkit.

Only two kinds of failure are meant to reach callers: resource failures of the completion
session (:class:`SessionError`, :class:`QuotaExceededError`) and exhaustion of a structured-output
retry loop (:class:`StructuredOutputError`).  Everything else is absorbed by the loops and fed
back to the model as corrective context.
"""

from __future__ import annotations


class PromptKitError(RuntimeError):
    """Base class for all promptkit errors."""

    default_code = "PROMPTKIT_ERROR"

    def __init__(
        self, message: str, code: str | None = None, cause: BaseException | None = None
    ) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.cause = cause

    @classmethod
    def wrap(cls, err: BaseException, message: str | None = None) -> "PromptKitError":
        """Return *err* unchanged if it already belongs to the hierarchy, else wrap it."""
        if isinstance(err, PromptKitError):
            return err
        return cls(message or get_error_message(err), cause=err)


class SessionError(PromptKitError):
    """Raised when a completion session cannot be created, prompted or cloned."""

    default_code = "SESSION_ERROR"


class QuotaExceededError(SessionError):
    """Raised when a session's token budget is exhausted."""

    default_code = "QUOTA_EXCEEDED"


class StructuredOutputError(PromptKitError):
    """Raised after every structured-output attempt failed to parse or validate."""

    default_code = "STRUCTURED_OUTPUT_ERROR"

    def __init__(
        self, message: str, cause: BaseException | None = None, attempts: int = 0
    ) -> None:
        super().__init__(message, cause=cause)
        self.attempts = attempts


class FunctionCallError(PromptKitError):
    """Raised by tool handlers to report a domain failure to the model."""

    default_code = "FUNCTION_CALL_ERROR"


class SchemaError(PromptKitError):
    """Raised when a schema cannot be turned into a wire description."""

    default_code = "SCHEMA_ERROR"


def get_error_message(error: BaseException | object) -> str:
    """Human readable message for *error*; falls back to the class name for empty messages."""
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error)


def recovery_suggestion(error: BaseException) -> str:
    """Suggest what a caller could try next after *error*."""
    if isinstance(error, QuotaExceededError):
        return "Try creating a new session or clearing old conversation history."
    if isinstance(error, SessionError):
        return "Try reinitializing the session or checking that the model backend is reachable."
    if isinstance(error, StructuredOutputError):
        return "Try simplifying your schema or providing more specific instructions."
    if isinstance(error, FunctionCallError):
        return "Check your function definition and ensure parameters are correctly specified."
    if isinstance(error, SchemaError):
        return "Flatten union types into an enum or choose a different union policy."
    return "Please check the error details and try again."
