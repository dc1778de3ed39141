"""Milestone bookkeeping for multi-part research forms."""
from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Optional

from apps.core.exceptions import NotFoundError
from apps.forms.taxonomy import QuestionDef


def milestone_names(form: Mapping[str, Any]) -> List[str]:
    return list(form.get("milestones") or [])


def is_milestone_form(form: Mapping[str, Any]) -> bool:
    return bool(milestone_names(form))


def milestone_index(form: Mapping[str, Any], name: str) -> int:
    names = milestone_names(form)
    try:
        return names.index(name)
    except ValueError:
        raise NotFoundError(f"Milestone '{name}' is not defined on this form", milestone=name)


def current_milestone(form: Mapping[str, Any], session: Mapping[str, Any]) -> Optional[str]:
    names = milestone_names(form)
    idx = session.get("current_milestone_index") or 0
    return names[idx] if 0 <= idx < len(names) else None


def questions_for_step(
    form: Mapping[str, Any],
    session: Mapping[str, Any],
    questions: Iterable[QuestionDef],
) -> List[QuestionDef]:
    """Questions the wizard runs over: the whole form, or the current milestone's subset."""
    questions = list(questions)
    if not is_milestone_form(form):
        return questions
    name = current_milestone(form, session)
    return [q for q in questions if q.milestone == name]


def next_uncompleted(form: Mapping[str, Any], completed: Iterable[str], after: int = -1) -> Optional[int]:
    """
    Index of the first milestone after `after` not yet completed. None when no
    later milestone is open, which completes the session.
    """
    names = milestone_names(form)
    done = set(completed)
    for idx in range(after + 1, len(names)):
        if names[idx] not in done:
            return idx
    return None
