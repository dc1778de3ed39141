from __future__ import annotations

from typing import Optional

from rest_framework import status
from rest_framework.response import Response

from .exceptions import (
    EngineError, AnswerValidationError, NotFoundError, ExpiredSessionError,
    PersistenceError, ConflictError,
)

ERROR_STATUS = {
    AnswerValidationError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ExpiredSessionError: status.HTTP_410_GONE,
    PersistenceError: status.HTTP_503_SERVICE_UNAVAILABLE,
    ConflictError: status.HTTP_409_CONFLICT,
}


def parse_int(value: object, default: int) -> int:
    """Safe int parse with default fallback."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def engine_error_response(exc: EngineError) -> Response:
    """Translate an engine error into a DRF response with a matching status code."""
    code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return Response(exc.as_dict(), status=code)


def position_conflict_exists(form, position: Optional[int], exclude_pk: Optional[int] = None) -> bool:
    """
    Check if a given position already exists within the form.
    Import locally to avoid circulars with apps.forms.
    """
    if position is None:
        return False
    from apps.forms.models import Question  # local import
    qs = Question.objects.only("id").filter(form=form, position=position)
    if exclude_pk:
        qs = qs.exclude(pk=exclude_pk)
    return qs.exists()
