from __future__ import annotations

from typing import Any, Dict, Optional

from apps.core.exceptions import NotFoundError
from apps.core.store import DjangoRecordStore, RecordStore
from apps.forms.taxonomy import QuestionDef
from apps.responses.services import responses_for_sessions, values_by_question
from .aggregator import build_form_analytics, summarize_question


def get_form_analytics(form_id: Any, store: Optional[RecordStore] = None) -> Dict[str, Any]:
    """
    Compute FormAnalytics for one form from the store's current contents.

    Raises:
      NotFoundError if the form does not exist.
    """
    store = store or DjangoRecordStore()
    form = store.get("forms", form_id)
    if form is None:
        raise NotFoundError(f"Form {form_id} not found", form_id=form_id)
    questions = [QuestionDef.from_record(r) for r in store.find("questions", {"form_id": form["id"]})]
    sessions = store.find("sessions", {"form_id": form["id"]})
    responses = responses_for_sessions(store, [s["id"] for s in sessions])
    return build_form_analytics(form, questions, sessions, responses)


def get_question_summary(question_id: Any, store: Optional[RecordStore] = None) -> Dict[str, Any]:
    store = store or DjangoRecordStore()
    record = store.get("questions", question_id)
    if record is None:
        raise NotFoundError(f"Question {question_id} not found", question_id=question_id)
    question = QuestionDef.from_record(record)
    values = values_by_question(store.find("responses", {"question_id": question.id})).get(question.id, [])
    return summarize_question(question, values)
