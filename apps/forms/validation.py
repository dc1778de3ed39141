from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Type

from rest_framework import serializers

from apps.core.exceptions import AnswerValidationError
from .fields import (
    AllocationField, InterestField, IsoDateField, IsoTimeField, MatrixField, RankingField,
)
from .models import QuestionType
from .taxonomy import AnswerShape, QuestionDef

REQUIRED_MESSAGE = "This field is required"

_REQUIRED_MESSAGES = {
    "required": REQUIRED_MESSAGE,
    "null": REQUIRED_MESSAGE,
    "blank": REQUIRED_MESSAGE,
    "empty": "Please select at least one option",
}


def field_name(question: QuestionDef) -> str:
    return f"question_{question.id}"


def is_blank(value: Any) -> bool:
    """Uniform presence check used by required validation and visibility."""
    return value is None or (isinstance(value, str) and value.strip() == "") or (
        isinstance(value, (list, tuple, dict)) and len(value) == 0
    )


def build_answer_field(question: QuestionDef) -> Optional[serializers.Field]:
    """
    Return the DRF field that validates answers to `question`, or None for
    structural screens.

    Required questions reject null/blank/empty values; optional ones accept them.
    """
    shape = question.kind.answer
    if shape is AnswerShape.NONE:
        return None

    cfg = question.config
    required = question.is_required
    common = {
        "required": required,
        "allow_null": not required,
        "error_messages": dict(_REQUIRED_MESSAGES),
    }

    if shape is AnswerShape.TEXT:
        return serializers.CharField(
            allow_blank=not required,
            max_length=question.max_character_count or None,
            trim_whitespace=False,
            **common,
        )

    if shape is AnswerShape.EMAIL:
        common["error_messages"]["invalid"] = "Please enter a valid email address"
        return serializers.EmailField(allow_blank=not required, **common)

    if shape is AnswerShape.CHOICE:
        return serializers.ChoiceField(choices=question.option_values(), allow_blank=not required, **common)

    if shape is AnswerShape.CHOICES:
        if question.type == QuestionType.DESTINATION_PREFERENCE and cfg.get("allow_custom_destination", True):
            child = serializers.CharField(max_length=255)
        else:
            child = serializers.ChoiceField(choices=question.option_values())
        return serializers.ListField(
            child=child,
            allow_empty=not required,
            max_length=cfg.get("max_selections"),
            **common,
        )

    if shape is AnswerShape.SELECTION:
        if cfg.get("allow_multiple"):
            return serializers.ListField(
                child=serializers.ChoiceField(choices=question.option_values()),
                allow_empty=not required,
                **common,
            )
        return serializers.ChoiceField(choices=question.option_values(), allow_blank=not required, **common)

    if shape is AnswerShape.BOOLEAN:
        return serializers.BooleanField(**common)

    if shape is AnswerShape.INTEGER:
        if question.type == QuestionType.NPS:
            return serializers.IntegerField(min_value=0, max_value=10, **common)
        return serializers.IntegerField(min_value=1, max_value=int(cfg.get("rating_scale", 5)), **common)

    if shape is AnswerShape.NUMBER:
        return serializers.FloatField(min_value=cfg.get("min_value"), max_value=cfg.get("max_value"), **common)

    if shape is AnswerShape.DATE:
        return IsoDateField(min_date=cfg.get("min_date"), max_date=cfg.get("max_date"), **common)

    if shape is AnswerShape.TIME:
        return IsoTimeField(**common)

    if shape is AnswerShape.RANKING:
        return RankingField(
            question.option_values(),
            allow_empty=not required,
            max_length=cfg.get("max_selections"),
            **common,
        )

    if shape is AnswerShape.ALLOCATION:
        return AllocationField(
            question.option_values(),
            total_budget=cfg.get("total_budget", 100),
            allow_exceed_total=bool(cfg.get("allow_exceed_total")),
            allow_empty=not required,
            **common,
        )

    if shape is AnswerShape.INTEREST:
        return InterestField(question.option_values(), allow_empty=not required, **common)

    if shape is AnswerShape.MATRIX:
        columns = [str(c.get("value", c.get("label"))) for c in cfg.get("columns") or []]
        return MatrixField(question.option_values(), columns, allow_empty=not required, **common)

    return serializers.JSONField(**common)


def build_response_serializer(questions: Iterable[QuestionDef]) -> Type[serializers.Serializer]:
    """
    Derive a serializer class validating a whole response set.

    Field names are `question_<id>`; structural screens contribute no field.
    """
    attrs: Dict[str, serializers.Field] = {}
    for q in questions:
        f = build_answer_field(q)
        if f is not None:
            attrs[field_name(q)] = f
    return type("ResponseSetSerializer", (serializers.Serializer,), attrs)


def _first_message(detail: Any) -> str:
    if isinstance(detail, Mapping):
        for value in detail.values():
            return _first_message(value)
    if isinstance(detail, (list, tuple)) and detail:
        return _first_message(detail[0])
    return str(detail)


def validate_answer(question: QuestionDef, value: Any) -> Any:
    """
    Validate one answer; returns the cleaned value (None when an optional
    question is left blank).

    Raises:
        AnswerValidationError with a field-level message.
    """
    f = build_answer_field(question)
    if f is None:
        return None
    if is_blank(value):
        if question.is_required:
            raise AnswerValidationError(question.id, REQUIRED_MESSAGE)
        return None
    try:
        return f.run_validation(value)
    except serializers.ValidationError as exc:
        raise AnswerValidationError(question.id, _first_message(exc.detail))


def validate_response_set(
    questions: Iterable[QuestionDef],
    responses: Mapping[str, Any],
) -> Tuple[Dict[str, Any], Dict[str, str]]:
    """
    Validate a full response set against its questions.

    Blank answers are dropped before validation so required questions report
    the uniform required message.

    Returns:
        (cleaned values keyed by question key, error messages keyed by question key)
    """
    questions = list(questions)
    by_field = {field_name(q): q for q in questions}
    data = {
        field_name(q): responses[q.key]
        for q in questions
        if q.key in responses and not is_blank(responses[q.key])
    }
    ser = build_response_serializer(questions)(data=data)
    if ser.is_valid():
        cleaned = {by_field[name].key: value for name, value in ser.validated_data.items() if value is not None}
        return cleaned, {}
    errors = {by_field[name].key: _first_message(detail) for name, detail in ser.errors.items() if name in by_field}
    return {}, errors


def answerable(questions: Iterable[QuestionDef]) -> List[QuestionDef]:
    return [q for q in questions if not q.is_structural]
