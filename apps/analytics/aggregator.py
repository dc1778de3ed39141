"""
Response aggregation.

Pure functions over persisted records; nothing here reads the store. Every
summary carries `kind`, and a question with no usable answers is reported as
`no_data` rather than as zeros.
"""
from __future__ import annotations

from collections import Counter, defaultdict
from statistics import mean
from typing import Any, Dict, Iterable, List, Mapping, Optional

from apps.form_sessions.milestones import questions_for_step
from apps.form_sessions.models import SessionStatus
from apps.form_sessions.wizard import Step, WizardState, current_question
from apps.forms.models import QuestionType
from apps.forms.taxonomy import QuestionDef, SummaryKind, order_questions
from apps.forms.validation import is_blank
from apps.responses.services import values_by_question

NO_DATA = "no_data"


def _round(value: float) -> float:
    return round(value, 1)


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _display_number(value: float):
    return int(value) if float(value).is_integer() else value


# ---- Per kind ----------------------------------------------------------------------

def _choice(question: QuestionDef, answered: List[Any]) -> Dict[str, Any]:
    counter: Counter = Counter()
    for value in answered:
        picked = value if isinstance(value, (list, tuple)) else [value]
        for item in dict.fromkeys(picked):  # a respondent counts once per value
            counter[item if isinstance(item, bool) else str(item)] += 1

    if question.type == QuestionType.YES_NO:
        known = [(True, "Yes"), (False, "No")]
    else:
        known = [(v, question.option_label(v)) for v in question.option_values()]
    known_values = {v for v, _ in known}
    extra = sorted(
        ((v, str(v)) for v in counter if v not in known_values),
        key=lambda pair: (-counter[pair[0]], str(pair[0])),
    )

    total = len(answered)
    return {
        "options": [
            {
                "value": value,
                "label": label,
                "count": counter.get(value, 0),
                "percentage": _round(counter.get(value, 0) / total * 100),
            }
            for value, label in known + extra
        ],
    }


def _numeric(question: QuestionDef, answered: List[Any]) -> Dict[str, Any]:
    numbers = [n for n in (_number(v) for v in answered) if n is not None]
    if not numbers:
        return {}
    histogram = Counter(numbers)
    out = {
        "average": _round(mean(numbers)),
        "min": _display_number(min(numbers)),
        "max": _display_number(max(numbers)),
        "histogram": [
            {"value": _display_number(value), "count": histogram[value]}
            for value in sorted(histogram)
        ],
    }
    if question.type == QuestionType.NPS:
        promoters = sum(1 for n in numbers if n >= 9)
        detractors = sum(1 for n in numbers if n <= 6)
        out["nps"] = _round((promoters - detractors) / len(numbers) * 100)
    return out


def _ranking(question: QuestionDef, answered: List[Any]) -> Dict[str, Any]:
    ranks: Dict[str, List[int]] = defaultdict(list)
    for value in answered:
        if not isinstance(value, (list, tuple)):
            continue
        for position, option in enumerate(value, start=1):
            ranks[str(option)].append(position)
    items = [
        {
            "value": option,
            "label": question.option_label(option),
            "average_rank": _round(mean(positions)),
            "count": len(positions),
        }
        for option, positions in ranks.items()
    ]
    items.sort(key=lambda i: (i["average_rank"], i["value"]))
    return {"rankings": items}


def _allocation(question: QuestionDef, answered: List[Any]) -> Dict[str, Any]:
    rows = [v for v in answered if isinstance(v, Mapping)]
    if not rows:
        return {}
    categories = list(dict.fromkeys(question.option_values() + [str(k) for r in rows for k in r]))
    items = []
    for category in categories:
        # A respondent who left a category out allocated nothing to it.
        amounts = [_number(r.get(category)) or 0.0 for r in rows]
        items.append({
            "value": category,
            "label": question.option_label(category),
            "average": _round(mean(amounts)),
        })
    items.sort(key=lambda i: (-i["average"], i["value"]))
    return {"allocations": items, "total_budget": question.config.get("total_budget")}


def _interest(question: QuestionDef, answered: List[Any]) -> Dict[str, Any]:
    levels: Dict[str, List[float]] = defaultdict(list)
    for value in answered:
        if not isinstance(value, Mapping):
            continue
        for activity, level in value.items():
            n = _number(level)
            if n is not None:
                levels[str(activity)].append(n)
    items = [
        {
            "value": activity,
            "label": question.option_label(activity),
            "average": _round(mean(values)),
            "count": len(values),
        }
        for activity, values in levels.items()
    ]
    items.sort(key=lambda i: (-i["average"], i["value"]))
    return {"interests": items}


SUMMARIZERS = {
    SummaryKind.CHOICE: _choice,
    SummaryKind.NUMERIC: _numeric,
    SummaryKind.RANKING: _ranking,
    SummaryKind.ALLOCATION: _allocation,
    SummaryKind.INTEREST: _interest,
}


def summarize_question(question: QuestionDef, values: Iterable[Any]) -> Dict[str, Any]:
    """
    Summarize the persisted values of one question.

    Percentages and means are taken over respondents who answered the
    question, not over sessions, so optional and conditional questions are not
    diluted by people who never saw them.
    """
    answered = [v for v in values if not is_blank(v)]
    base = {"question_id": question.id, "type": question.type, "title": question.title}
    kind = question.kind.summary
    if not answered or kind is None:
        return {**base, "kind": NO_DATA, "response_count": 0}

    summarizer = SUMMARIZERS.get(kind)
    detail = summarizer(question, answered) if summarizer else {}
    if summarizer and not detail:
        # Answers exist but none has the expected shape.
        return {**base, "kind": NO_DATA, "response_count": 0}
    return {**base, "kind": kind.value, "response_count": len(answered), **detail}


# ---- Form level --------------------------------------------------------------------

def _stopped_at(form: Mapping[str, Any], session: Mapping[str, Any], questions: List[QuestionDef]) -> Optional[QuestionDef]:
    state = WizardState.from_dict(session.get("state"))
    if state.step != Step.QUESTION.value:
        return None
    return current_question(state, questions_for_step(form, session, questions))


def build_form_analytics(
    form: Mapping[str, Any],
    questions: Iterable[QuestionDef],
    sessions: Iterable[Mapping[str, Any]],
    responses: Iterable[Mapping[str, Any]],
) -> Dict[str, Any]:
    """
    Derive FormAnalytics from a point-in-time snapshot of sessions and responses.

    views        sessions started
    submissions  completed sessions
    dropoff      unfinished sessions counted on the question they stopped at
    """
    questions = order_questions(questions)
    sessions = list(sessions)

    views = len(sessions)
    completed = [s for s in sessions if s.get("status") == SessionStatus.COMPLETED]
    durations = [
        (s["completed_at"] - s["created_at"]).total_seconds()
        for s in completed
        if s.get("completed_at") and s.get("created_at")
    ]

    dropoff: Counter = Counter()
    for session in sessions:
        if session.get("status") == SessionStatus.COMPLETED:
            continue
        question = _stopped_at(form, session, questions)
        if question is not None:
            dropoff[question.id] += 1

    values = values_by_question(responses)

    return {
        "form_id": form["id"],
        "title": form.get("title"),
        "views": views,
        "submissions": len(completed),
        "completion_rate": _round(len(completed) / views * 100) if views else None,
        "average_completion_seconds": _round(mean(durations)) if durations else None,
        "dropoff": [
            {"question_id": q.id, "title": q.title, "count": dropoff[q.id]}
            for q in questions
            if dropoff.get(q.id)
        ],
        "questions": [
            summarize_question(q, values.get(q.id, []))
            for q in questions
            if not q.is_structural
        ],
    }
