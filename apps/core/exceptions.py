from __future__ import annotations

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for errors raised by the form engine.

    `code` is a stable machine-readable identifier; `details` carries extra
    context (ids, field names) that views pass through to the client.
    """

    code = "engine_error"

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details: Dict[str, Any] = details

    def as_dict(self) -> Dict[str, Any]:
        payload = {"code": self.code, "detail": self.message}
        payload.update(self.details)
        return payload


class AnswerValidationError(EngineError):
    """An answer failed its question's rule. Recoverable; the wizard stays put."""

    code = "validation_error"

    def __init__(self, question_id: Any, message: str):
        super().__init__(message, question_id=question_id)
        self.question_id = question_id


class NotFoundError(EngineError):
    code = "not_found"


class ExpiredSessionError(EngineError):
    code = "session_expired"

    def __init__(self, message: str = "This session has expired", session_id: Optional[Any] = None):
        super().__init__(message, session_id=session_id)


class PersistenceError(EngineError):
    """The record store failed. Callers are expected to retry."""

    code = "persistence_error"


class ConflictError(EngineError):
    """The operation collides with the session's current state (e.g. a submit in flight)."""

    code = "conflict"
