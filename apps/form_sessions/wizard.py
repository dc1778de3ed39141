"""
Wizard state machine.

The wizard is a pure reducer over an explicit state record:

    state = initial_state(questions)
    state = transition(state, questions, "next", value=4)

`questions` is the ordered list of `QuestionDef` the wizard runs over (a whole
form, or one milestone's subset). Nothing here touches storage; the session
service loads the state, reduces it under the session lock and saves it back.

Traversal excludes THANK_YOU screens, which are rendered as the completion
screen. A WELCOME screen in first position is the `welcome` step.
"""
from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from apps.core.exceptions import AnswerValidationError, ConflictError, NotFoundError
from apps.forms.conditions import visible_questions
from apps.forms.models import QuestionType
from apps.forms.taxonomy import QuestionDef, order_questions
from apps.forms.validation import answerable, is_blank, validate_answer, validate_response_set


class Step(str, Enum):
    WELCOME = "welcome"
    QUESTION = "question"
    SUBMITTING = "submitting"
    COMPLETED = "completed"


class Action(str, Enum):
    ANSWER = "answer"
    NEXT = "next"
    PREVIOUS = "previous"
    BEGIN_SUBMIT = "begin_submit"
    SUBMIT_SUCCEEDED = "submit_succeeded"
    SUBMIT_FAILED = "submit_failed"
    RESET = "reset"


@dataclass
class WizardState:
    step: str = Step.QUESTION.value
    index: int = 0
    direction: int = 0
    responses: Dict[str, Any] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    in_flight: bool = False
    in_flight_since: Optional[str] = None
    submission_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "WizardState":
        known = {f.name for f in fields(cls)}
        return cls(**{k: copy.deepcopy(v) for k, v in (data or {}).items() if k in known})

    def copy(self) -> "WizardState":
        return WizardState.from_dict(self.to_dict())


# ---- Traversal helpers ------------------------------------------------------------

def sequence(questions) -> List[QuestionDef]:
    """Ordered questions the wizard walks through (THANK_YOU screens excluded)."""
    return [q for q in order_questions(questions) if q.type != QuestionType.THANK_YOU]


def completion_screen(questions) -> Optional[QuestionDef]:
    screens = [q for q in order_questions(questions) if q.type == QuestionType.THANK_YOU]
    return screens[0] if screens else None


def _has_welcome(seq: List[QuestionDef]) -> bool:
    return bool(seq) and seq[0].type == QuestionType.WELCOME


def _visible_indices(seq: List[QuestionDef], responses: Mapping[str, Any]) -> List[int]:
    shown = {q.key for q in visible_questions(seq, responses)}
    start = 1 if _has_welcome(seq) else 0
    return [i for i in range(start, len(seq)) if seq[i].key in shown]


def initial_state(questions) -> WizardState:
    seq = sequence(questions)
    if _has_welcome(seq):
        return WizardState(step=Step.WELCOME.value, index=0)
    indices = _visible_indices(seq, {})
    if not indices:
        return WizardState(step=Step.SUBMITTING.value, index=len(seq))
    return WizardState(step=Step.QUESTION.value, index=indices[0])


def current_question(state: WizardState, questions) -> Optional[QuestionDef]:
    seq = sequence(questions)
    if state.step in (Step.QUESTION.value, Step.WELCOME.value) and 0 <= state.index < len(seq):
        return seq[state.index]
    return None


# ---- Reducer ----------------------------------------------------------------------

def _record(state: WizardState, question: QuestionDef, value: Any) -> bool:
    """Validate and store one answer on `state`; returns False when invalid."""
    try:
        cleaned = validate_answer(question, value)
    except AnswerValidationError as exc:
        state.responses[question.key] = value
        state.errors[question.key] = exc.message
        return False
    if cleaned is None:
        state.responses.pop(question.key, None)
    else:
        state.responses[question.key] = cleaned
    state.errors.pop(question.key, None)
    return True


def _answer(state, seq, question_id, value):
    key = str(question_id)
    question = next((q for q in seq if q.key == key), None)
    if question is None:
        raise NotFoundError(f"Question {question_id} is not part of this step", question_id=question_id)
    if question.key not in {q.key for q in visible_questions(seq, state.responses)}:
        raise ConflictError(f"Question {question_id} is not currently shown", question_id=question_id)
    _record(state, question, value)
    return state


def _next(state, seq, **payload):
    if state.step == Step.WELCOME.value:
        indices = _visible_indices(seq, state.responses)
        state.direction = 1
        if indices:
            state.step, state.index = Step.QUESTION.value, indices[0]
        else:
            state.step, state.index = Step.SUBMITTING.value, len(seq)
        return state
    if state.step != Step.QUESTION.value:
        return state

    question = seq[state.index]
    if "value" in payload and not question.is_structural:
        _record(state, question, payload["value"])
    indices = _visible_indices(seq, state.responses)
    if state.index in indices and not question.is_structural:
        if not _record(state, question, state.responses.get(question.key)):
            state.direction = 0
            return state

    later = [i for i in indices if i > state.index]
    state.direction = 1
    if later:
        state.index = later[0]
    else:
        state.step, state.index = Step.SUBMITTING.value, len(seq)
    return state


def _previous(state, seq):
    if state.step not in (Step.QUESTION.value, Step.SUBMITTING.value):
        return state
    earlier = [i for i in _visible_indices(seq, state.responses) if i < state.index]
    state.errors = {}
    if earlier:
        state.step, state.index, state.direction = Step.QUESTION.value, earlier[-1], -1
    elif _has_welcome(seq):
        state.step, state.index, state.direction = Step.WELCOME.value, 0, -1
    else:
        state.direction = 0
    return state


def _begin_submit(state, seq, now: Optional[datetime] = None):
    indices = _visible_indices(seq, state.responses)
    on_last = state.step == Step.QUESTION.value and (not indices or state.index >= indices[-1])
    if state.step != Step.SUBMITTING.value and not on_last:
        raise ConflictError("There are unanswered steps before submission")

    visible = answerable(visible_questions(seq, state.responses))
    cleaned, errors = validate_response_set(visible, state.responses)
    if errors:
        state.errors = errors
        first = next(i for i in indices if seq[i].key in errors)
        state.step, state.index, state.direction = Step.QUESTION.value, first, 0
        return state

    state.responses.update(cleaned)
    state.errors = {}
    state.step = Step.SUBMITTING.value
    state.index = len(seq)
    state.in_flight = True
    state.in_flight_since = now.isoformat() if now else None
    state.submission_error = None
    return state


def transition(state: WizardState, questions, action: str, **payload) -> WizardState:
    """
    Apply `action` to `state` and return the new state; `state` is not mutated.

    Actions and payloads:
        answer(question_id, value), next([value]), previous(),
        begin_submit([now]), submit_succeeded(), submit_failed(message), reset()

    Raises:
        ConflictError  navigation, answers or a second submit while a submission
                       is in flight, or anything but reset after completion.
        NotFoundError  answer to a question outside `questions`.
    """
    action = Action(action)
    seq = sequence(questions)

    if action is Action.RESET:
        return initial_state(questions)

    if state.step == Step.COMPLETED.value:
        raise ConflictError("This response set has already been submitted")

    guarded = (Action.ANSWER, Action.NEXT, Action.PREVIOUS, Action.BEGIN_SUBMIT)
    if state.in_flight and action in guarded:
        raise ConflictError("A submission is already in progress")

    new = state.copy()
    if action is Action.ANSWER:
        return _answer(new, seq, payload["question_id"], payload.get("value"))
    if action is Action.NEXT:
        return _next(new, seq, **payload)
    if action is Action.PREVIOUS:
        return _previous(new, seq)
    if action is Action.BEGIN_SUBMIT:
        return _begin_submit(new, seq, payload.get("now"))

    if not state.in_flight:
        raise ConflictError("No submission is in progress")
    new.in_flight = False
    new.in_flight_since = None
    if action is Action.SUBMIT_SUCCEEDED:
        new.step = Step.COMPLETED.value
        new.submission_error = None
    else:
        new.step = Step.SUBMITTING.value
        new.submission_error = payload.get("message") or "Submission failed, please try again"
    return new


# ---- Read side --------------------------------------------------------------------

def response_set(state: WizardState, questions) -> List[Dict[str, Any]]:
    """Answers to visible, answerable questions in display order."""
    seq = sequence(questions)
    return [
        {"question_id": q.id, "value": state.responses[q.key]}
        for q in answerable(visible_questions(seq, state.responses))
        if q.key in state.responses and not is_blank(state.responses[q.key])
    ]


def render(state: WizardState, questions, completion_message: Optional[str] = None) -> Dict[str, Any]:
    """Everything a runner needs to draw the current step."""
    seq = sequence(questions)
    indices = _visible_indices(seq, state.responses)
    question = current_question(state, questions)

    position = indices.index(state.index) + 1 if state.step == Step.QUESTION.value and state.index in indices else 0
    if state.step in (Step.SUBMITTING.value, Step.COMPLETED.value):
        position = len(indices)

    payload: Dict[str, Any] = {
        "step": state.step,
        "question": question.to_record() if question else None,
        "value": state.responses.get(question.key) if question else None,
        "is_first": state.step == Step.WELCOME.value or (bool(indices) and state.index == indices[0] and not _has_welcome(seq)),
        "is_last": state.step == Step.QUESTION.value and bool(indices) and state.index >= indices[-1],
        "direction": state.direction,
        "errors": dict(state.errors),
        "in_flight": state.in_flight,
        "submission_error": state.submission_error,
        "progress": {"current": position, "total": len(indices)},
    }
    if state.step == Step.COMPLETED.value:
        screen = completion_screen(questions)
        payload["completion"] = {
            "screen": screen.to_record() if screen else None,
            "message": completion_message,
        }
    return payload
