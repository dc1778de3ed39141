from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from django.conf import settings
from django.utils import timezone
from django.utils.crypto import get_random_string
from django.utils.dateparse import parse_datetime

from apps.core.exceptions import (
    ConflictError, ExpiredSessionError, NotFoundError, PersistenceError,
)
from apps.core.store import DjangoRecordStore, Record, RecordStore
from apps.forms.conditions import visible_questions
from apps.forms.models import FormStatus
from apps.forms.taxonomy import QuestionDef, order_questions
from apps.forms.validation import answerable
from apps.responses.services import persist_response_set
from . import wizard
from .milestones import (
    current_milestone, is_milestone_form, milestone_index, milestone_names,
    next_uncompleted, questions_for_step,
)
from .models import SessionStatus
from .wizard import Step, WizardState

logger = logging.getLogger(__name__)


# ---- Per-session locks ---------------------------------------------------------

LOCK_STRIPES = 64
_locks: List[threading.Lock] = [threading.Lock() for _ in range(LOCK_STRIPES)]


def session_lock(session_id: Any) -> threading.Lock:
    """
    Process-wide lock serializing read-modify-write of one session's state.

    Sessions share a fixed pool of locks, so unrelated sessions may wait on
    each other briefly but the pool never grows.
    """
    return _locks[hash(str(session_id)) % LOCK_STRIPES]


def _engine_setting(name: str, default: int) -> int:
    return int(getattr(settings, "FORM_ENGINE", {}).get(name, default))


class FormSessionService:
    """
    Drives respondent sessions: loads a session, reduces its wizard state and
    writes it back through the record store.

    Every mutating call runs under the session's lock. `submit` releases the
    lock while the response set is written, marking the wizard `in_flight`
    first so concurrent calls fail fast with ConflictError.
    """

    def __init__(self, store: Optional[RecordStore] = None):
        self.store = store or DjangoRecordStore()
        self.session_ttl = timedelta(hours=_engine_setting("SESSION_TTL_HOURS", 72))
        self.submit_lock_timeout = timedelta(seconds=_engine_setting("SUBMIT_LOCK_SECONDS", 60))

    # ---- Loading -----------------------------------------------------------------

    def _form(self, form_id: Any) -> Record:
        form = self.store.get("forms", form_id)
        if form is None:
            raise NotFoundError(f"Form {form_id} not found", form_id=form_id)
        return form

    def _questions(self, form_id: Any) -> List[QuestionDef]:
        rows = self.store.find("questions", {"form_id": form_id}, order=["position", "id"])
        return order_questions(QuestionDef.from_record(r) for r in rows)

    def get_session(self, session_id: Any) -> Record:
        session = self.store.get("sessions", session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found", session_id=session_id)
        return session

    def session_for_token(self, token: str) -> Record:
        rows = self.store.find("sessions", {"token": token}) if token else []
        if not rows:
            raise NotFoundError("Invalid session")
        return rows[0]

    def _check_expiry(self, session: Record) -> Record:
        """Raise ExpiredSessionError for expired sessions, marking overdue ones on the way."""
        if session["status"] == SessionStatus.EXPIRED:
            raise ExpiredSessionError(session_id=session["id"])
        expires_at = session.get("expires_at")
        if session["status"] == SessionStatus.ACTIVE and expires_at and expires_at <= timezone.now():
            self.store.update("sessions", session["id"], {"status": SessionStatus.EXPIRED.value})
            logger.info("Session expired on access", extra={"session_id": session["id"]})
            raise ExpiredSessionError(session_id=session["id"])
        return session

    def _load_active(self, session_id: Any) -> Tuple[Record, Record, List[QuestionDef]]:
        session = self._check_expiry(self.get_session(session_id))
        if session["status"] == SessionStatus.COMPLETED:
            raise ConflictError("This session is already completed", session_id=session_id)
        form = self._form(session["form_id"])
        return session, form, questions_for_step(form, session, self._questions(form["id"]))

    def _state(self, session: Record) -> WizardState:
        state = WizardState.from_dict(session.get("state"))
        if state.in_flight and state.in_flight_since:
            since = parse_datetime(state.in_flight_since)
            if since is not None and timezone.now() - since > self.submit_lock_timeout:
                # Abandoned submission; let the respondent retry.
                logger.warning("Releasing stale submission marker", extra={"session_id": session["id"]})
                state.in_flight = False
                state.in_flight_since = None
                state.submission_error = "The previous submission did not finish, please try again"
        return state

    def _save_state(self, session_id: Any, state: WizardState, **extra: Any) -> Record:
        return self.store.update("sessions", session_id, {"state": state.to_dict(), **extra})

    # ---- Views -------------------------------------------------------------------

    def _summary(self, session: Record, form: Record) -> Dict[str, Any]:
        return {
            "id": session["id"],
            "token": session["token"],
            "form_id": session["form_id"],
            "status": session["status"],
            "current_milestone": current_milestone(form, session),
            "current_milestone_index": session.get("current_milestone_index") or 0,
            "completed_milestones": list(session.get("completed_milestones") or []),
            "expires_at": session.get("expires_at"),
        }

    def _render(self, session: Record, form: Record, questions: List[QuestionDef]) -> Dict[str, Any]:
        step = wizard.render(WizardState.from_dict(session.get("state")), questions, form.get("completion_message"))
        step["milestone"] = current_milestone(form, session)
        step["show_progress"] = form.get("show_progress", True)
        return step

    def _payload(self, session: Record, form: Record, questions: List[QuestionDef]) -> Dict[str, Any]:
        return {"session": self._summary(session, form), "step": self._render(session, form, questions)}

    # ---- Operations --------------------------------------------------------------

    def start_session(self, form_id: Any) -> Dict[str, Any]:
        """
        Open a new session on an active form.

        Raises:
          NotFoundError if the form does not exist.
          ConflictError if the form is not accepting responses.
        """
        form = self._form(form_id)
        if form["status"] != FormStatus.ACTIVE:
            raise ConflictError("This form is not accepting responses", form_id=form_id)

        draft = {"form_id": form["id"], "current_milestone_index": 0, "completed_milestones": []}
        questions = questions_for_step(form, draft, self._questions(form["id"]))
        session = self.store.insert("sessions", {
            **draft,
            "token": get_random_string(48),
            "status": SessionStatus.ACTIVE.value,
            "state": wizard.initial_state(questions).to_dict(),
            "expires_at": timezone.now() + self.session_ttl,
            "completed_at": None,
        })
        logger.info("Session started", extra={"session_id": session["id"], "form_id": form["id"]})
        return self._payload(session, form, questions)

    def resume(self, token: str) -> Dict[str, Any]:
        session = self._check_expiry(self.session_for_token(token))
        form = self._form(session["form_id"])
        return self._payload(session, form, questions_for_step(form, session, self._questions(form["id"])))

    def render_step(self, session_id: Any) -> Dict[str, Any]:
        session = self._check_expiry(self.get_session(session_id))
        form = self._form(session["form_id"])
        return self._render(session, form, questions_for_step(form, session, self._questions(form["id"])))

    def answer(self, session_id: Any, question_id: Any, value: Any) -> Dict[str, Any]:
        """Validate and record one answer; returns {ok, error?}."""
        with session_lock(session_id):
            session, form, questions = self._load_active(session_id)
            state = wizard.transition(self._state(session), questions, "answer", question_id=question_id, value=value)
            self._save_state(session_id, state)
        error = state.errors.get(str(question_id))
        return {"ok": True} if error is None else {"ok": False, "error": error}

    def navigate(self, session_id: Any, direction: str, **payload: Any) -> Dict[str, Any]:
        """Move `next` or `previous`; a `value` for the current question may ride along with `next`."""
        if direction not in (wizard.Action.NEXT.value, wizard.Action.PREVIOUS.value):
            raise ValueError(f"Unknown direction '{direction}'")
        with session_lock(session_id):
            session, form, questions = self._load_active(session_id)
            state = wizard.transition(self._state(session), questions, direction, **payload)
            session = self._save_state(session_id, state)
        return self._render(session, form, questions)

    def submit(self, session_id: Any) -> Dict[str, Any]:
        """
        Persist the visible response set of the current step.

        Flow:
          1) Under the session lock and the store's row lock: validate everything and
             mark the wizard in flight, so workers in other processes see the claim.
          2) Write the response set through the store (lock released).
          3) Under the lock again: complete the wizard, then the milestone or session.

        Returns:
          {"ok": True, "done", "next_milestone"} on success,
          {"ok": False, "errors"} when answers are invalid,
          {"ok": False, "error", "retryable": True} when the store failed.

        Raises:
          ConflictError while another submission of the same session is in flight.
        """
        with session_lock(session_id):
            session = self._check_expiry(self.get_session(session_id))
            if session["status"] == SessionStatus.COMPLETED:
                # Already submitted; repeating the call is harmless.
                return {"ok": True, "done": True, "next_milestone": None}
            session, form, questions = self._load_active(session_id)
            with self.store.locked("sessions", session_id):
                # Another worker may have claimed the submission since the read above.
                session = self.get_session(session_id)
                if session["status"] == SessionStatus.COMPLETED:
                    return {"ok": True, "done": True, "next_milestone": None}
                state = wizard.transition(self._state(session), questions, "begin_submit", now=timezone.now())
                self._save_state(session_id, state)
            if not state.in_flight:
                return {"ok": False, "error": "Some answers need attention", "errors": dict(state.errors)}
            responses = wizard.response_set(state, questions)

        try:
            persist_response_set(self.store, session_id, responses)
        except PersistenceError as exc:
            with session_lock(session_id):
                session = self.get_session(session_id)
                state = wizard.transition(WizardState.from_dict(session["state"]), questions, "submit_failed", message=exc.message)
                self._save_state(session_id, state)
            logger.warning("Submission failed", extra={"session_id": session_id, "error": exc.message})
            return {"ok": False, "error": exc.message, "retryable": True}

        with session_lock(session_id):
            session = self.get_session(session_id)
            state = wizard.transition(WizardState.from_dict(session["state"]), questions, "submit_succeeded")
            result = self._finish_step(session, form, state)
        logger.info("Response set submitted", extra={"session_id": session_id, "count": len(responses)})
        return {"ok": True, **result}

    def discard(self, session_id: Any) -> Dict[str, Any]:
        """Drop unsaved wizard state for the current step; persisted responses stay."""
        with session_lock(session_id):
            session, form, questions = self._load_active(session_id)
            state = self._state(session)
            if state.in_flight:
                raise ConflictError("A submission is already in progress", session_id=session_id)
            session = self._save_state(session_id, wizard.transition(state, questions, "reset"))
        return self._render(session, form, questions)

    # ---- Milestones --------------------------------------------------------------

    def _finish_step(self, session: Record, form: Record, state: WizardState) -> Dict[str, Any]:
        """Close the current step: advance to the next milestone or complete the session."""
        patch: Dict[str, Any] = {"state": state.to_dict()}
        next_name = None
        if is_milestone_form(form):
            name = current_milestone(form, session)
            completed = list(session.get("completed_milestones") or [])
            if name and name not in completed:
                completed.append(name)
            patch["completed_milestones"] = completed
            idx = next_uncompleted(form, completed, after=session.get("current_milestone_index") or 0)
            if idx is not None:
                next_name = milestone_names(form)[idx]
                patch["current_milestone_index"] = idx
                following = questions_for_step(form, {"current_milestone_index": idx}, self._questions(form["id"]))
                patch["state"] = wizard.initial_state(following).to_dict()
                logger.info("Milestone completed", extra={"session_id": session["id"], "milestone": name})

        done = next_name is None
        if done:
            patch["status"] = SessionStatus.COMPLETED.value
            patch["completed_at"] = timezone.now()
        self.store.update("sessions", session["id"], patch)
        return {"done": done, "next_milestone": next_name}

    def begin_milestone(self, session_id: Any, milestone_name: str) -> Dict[str, Any]:
        """
        Enter `milestone_name`, restarting the wizard over its questions.

        Raises:
          NotFoundError if the form does not declare the milestone.
          ConflictError if it was already completed or a submission is in flight.
        """
        with session_lock(session_id):
            session, form, _ = self._load_active(session_id)
            idx = milestone_index(form, milestone_name)
            if milestone_name in (session.get("completed_milestones") or []):
                raise ConflictError(f"Milestone '{milestone_name}' is already completed", milestone=milestone_name)
            if self._state(session).in_flight:
                raise ConflictError("A submission is already in progress", session_id=session_id)
            session = {**session, "current_milestone_index": idx}
            questions = questions_for_step(form, session, self._questions(form["id"]))
            session = self.store.update("sessions", session_id, {
                "current_milestone_index": idx,
                "state": wizard.initial_state(questions).to_dict(),
            })
        logger.info("Milestone started", extra={"session_id": session_id, "milestone": milestone_name})
        return self._payload(session, form, questions)

    def complete_milestone(self, session_id: Any) -> Dict[str, Any]:
        """
        Mark the current milestone completed; returns {done, next_milestone}.

        Submitting a milestone completes it already. This call closes steps that
        have nothing left to answer (e.g. information-only milestones).
        """
        with session_lock(session_id):
            session = self._check_expiry(self.get_session(session_id))
            if session["status"] == SessionStatus.COMPLETED:
                return {"done": True, "next_milestone": None}
            session, form, questions = self._load_active(session_id)
            state = self._state(session)
            if state.in_flight:
                raise ConflictError("A submission is already in progress", session_id=session_id)
            pending = answerable(visible_questions(wizard.sequence(questions), state.responses))
            if state.step != Step.COMPLETED.value and pending:
                raise ConflictError("Submit this milestone's answers first", session_id=session_id)
            if state.step != Step.COMPLETED.value:
                state = WizardState(step=Step.COMPLETED.value, responses=state.responses)
            return self._finish_step(session, form, state)
