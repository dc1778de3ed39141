"""
Conditional display.

A question's `conditional_display` is plain data:

    {"depends_on": <question id>, "show_if": {"op": "includes", "value": "other"}}

`is_visible` is pure and cheap, so callers re-evaluate it on every navigation
step; a respondent may go back and change the answer a predicate depends on.
"""
from __future__ import annotations

import operator as _op
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from rest_framework import serializers

from .taxonomy import QuestionDef
from .validation import is_blank


def _includes(answer: Any, target: Any) -> bool:
    if isinstance(answer, (list, tuple, set)):
        return target in answer or str(target) in {str(a) for a in answer}
    if isinstance(answer, Mapping):
        return str(target) in answer
    if isinstance(answer, str):
        return str(target) in answer
    return False


def _in(answer: Any, target: Any) -> bool:
    if not isinstance(target, (list, tuple, set)):
        return False
    return answer in target or str(answer) in {str(t) for t in target}


def _ordered(func: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(answer: Any, target: Any) -> bool:
        return func(float(answer), float(target))
    return compare


# Supported predicate operators. Symbolic aliases match the admin builder.
OPS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": _op.eq,
    "not_equals": _op.ne,
    "includes": _includes,
    "not_includes": lambda a, t: not _includes(a, t),
    "in": _in,
    "not_in": lambda a, t: not _in(a, t),
    "gt": _ordered(_op.gt),
    "gte": _ordered(_op.ge),
    "lt": _ordered(_op.lt),
    "lte": _ordered(_op.le),
    "answered": lambda a, t: not is_blank(a),
}
ALIASES = {"=": "equals", "==": "equals", "!=": "not_equals", ">": "gt", ">=": "gte", "<": "lt", "<=": "lte"}


def _operator(symbol: Optional[str]) -> Optional[Callable[[Any, Any], bool]]:
    name = (symbol or "equals").strip()
    return OPS.get(ALIASES.get(name, name))


def evaluate(predicate: Optional[Mapping[str, Any]], answer: Any) -> bool:
    """
    Evaluate `predicate` against one recorded answer.
    Returns False if the operator is unsupported or if comparison fails.
    """
    predicate = predicate or {}
    func = _operator(predicate.get("op"))
    if func is None:
        return False
    try:
        return bool(func(answer, predicate.get("value")))
    except (TypeError, ValueError):
        return False


def is_visible(question: QuestionDef, responses: Mapping[str, Any]) -> bool:
    cond = question.conditional_display
    if not cond:
        return True
    depends_on = cond.get("depends_on")
    if depends_on is None:
        return True
    answer = responses.get(str(depends_on))
    if is_blank(answer):
        # Skipped rather than blocked until the dependency is answered.
        return False
    return evaluate(cond.get("show_if"), answer)


def visible_questions(questions: Iterable[QuestionDef], responses: Mapping[str, Any]) -> List[QuestionDef]:
    """
    Visible subset of ordered `questions`.

    Answers to hidden questions are ignored while resolving later predicates,
    so a stale answer left behind by a flipped branch cannot reveal anything.
    """
    effective: Dict[str, Any] = {}
    shown = []
    for q in questions:
        if is_visible(q, effective):
            shown.append(q)
            if q.key in responses:
                effective[q.key] = responses[q.key]
    return shown


def validate_condition(cond: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    """Normalize a `conditional_display` payload; raises DRF ValidationError when malformed."""
    if not cond:
        return None
    if not isinstance(cond, Mapping):
        raise serializers.ValidationError("Must be an object with depends_on and show_if.")
    if cond.get("depends_on") in (None, ""):
        raise serializers.ValidationError({"depends_on": ["This field is required."]})
    show_if = cond.get("show_if") or {}
    if not isinstance(show_if, Mapping):
        raise serializers.ValidationError({"show_if": ["Must be an object."]})
    op = (show_if.get("op") or "equals").strip()
    if _operator(op) is None:
        raise serializers.ValidationError({"show_if": [f"Unsupported operator '{op}'."]})
    return {"depends_on": cond["depends_on"], "show_if": {"op": ALIASES.get(op, op), "value": show_if.get("value")}}
