import threading
from contextlib import contextmanager
from datetime import timedelta

from django.test import SimpleTestCase, TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from apps.analytics.services import get_form_analytics
from apps.core.exceptions import ConflictError, ExpiredSessionError, NotFoundError, PersistenceError
from apps.core.store import DjangoRecordStore, MemoryRecordStore
from apps.forms.models import Form, FormStatus, Question, QuestionType
from apps.forms.taxonomy import QuestionDef
from apps.forms.validation import REQUIRED_MESSAGE
from apps.responses.models import FormResponse
from .models import ResponseSession, SessionStatus
from .services import LOCK_STRIPES, FormSessionService, session_lock
from .tasks import mark_expired_sessions_task
from .triggers import fire_milestone_event
from .wizard import Step, WizardState, initial_state, render, response_set, transition


OPTIONS = {"options": [{"label": "Beach", "value": "beach"}, {"label": "Other", "value": "other"}]}


def q(id, type, required=False, config=None, **extra):
    return QuestionDef(id=id, form_id=1, title=f"Q{id}", type=type, position=id, is_required=required, config=config or {}, **extra)


def make_form(store, questions, milestones=None, status="active"):
    form = store.insert("forms", {
        "title": "Trip feedback", "status": status, "milestones": milestones or [],
        "completion_message": "Thanks!", "show_progress": True,
    })
    ids = []
    for position, item in enumerate(questions, start=1):
        row = store.insert("questions", {
            "form_id": form["id"],
            "title": item.get("title", f"Question {position}"),
            "type": item["type"],
            "position": position,
            "is_required": item.get("is_required", False),
            "config": item.get("config", {}),
            "conditional_display": item.get("conditional_display"),
            "milestone": item.get("milestone", ""),
        })
        ids.append(row["id"])
    return form, ids


RATING_THEN_TEXT = [
    {"type": "rating", "is_required": True, "config": {"rating_scale": 5}},
    {"type": "long_text"},
]


class WizardTests(SimpleTestCase):
    def setUp(self):
        self.questions = [q(1, QuestionType.RATING, required=True, config={"rating_scale": 5}), q(2, QuestionType.LONG_TEXT)]
        self.state = initial_state(self.questions)

    def test_starts_on_first_question(self):
        self.assertEqual(self.state.step, Step.QUESTION.value)
        self.assertEqual(self.state.index, 0)

    def test_required_empty_answer_stays_put(self):
        state = transition(self.state, self.questions, "next", value="")
        self.assertEqual(state.index, 0)
        self.assertEqual(state.errors, {"1": REQUIRED_MESSAGE})
        self.assertEqual(state.direction, 0)

    def test_previous_then_next_restores_value(self):
        state = transition(self.state, self.questions, "next", value=4)
        self.assertEqual(state.index, 1)
        state = transition(state, self.questions, "previous")
        self.assertEqual(state.index, 0)
        self.assertEqual(state.direction, -1)
        self.assertEqual(render(state, self.questions)["value"], 4)
        state = transition(state, self.questions, "next")
        self.assertEqual(state.index, 1)

    def test_transition_leaves_input_state_untouched(self):
        transition(self.state, self.questions, "next", value=4)
        self.assertEqual(self.state.index, 0)
        self.assertEqual(self.state.responses, {})

    def test_state_round_trips_through_dict(self):
        state = transition(self.state, self.questions, "next", value=4)
        self.assertEqual(WizardState.from_dict(state.to_dict()), state)

    def test_welcome_and_thank_you_screens(self):
        questions = [q(1, QuestionType.WELCOME), q(2, QuestionType.SHORT_TEXT, required=True), q(3, QuestionType.THANK_YOU)]
        state = initial_state(questions)
        self.assertEqual(state.step, Step.WELCOME.value)
        self.assertTrue(render(state, questions)["is_first"])

        state = transition(state, questions, "next")
        self.assertEqual((state.step, state.index), (Step.QUESTION.value, 1))
        state = transition(state, questions, "previous")
        self.assertEqual(state.step, Step.WELCOME.value)

        state = transition(state, questions, "next")
        state = transition(state, questions, "next", value="hi")
        self.assertEqual(state.step, Step.SUBMITTING.value)
        state = transition(state, questions, "begin_submit")
        state = transition(state, questions, "submit_succeeded")
        self.assertEqual(state.step, Step.COMPLETED.value)
        screen = render(state, questions, "Bye")["completion"]
        self.assertEqual(screen["screen"]["type"], QuestionType.THANK_YOU)
        self.assertEqual(screen["message"], "Bye")

    def test_conditional_question_follows_dependency(self):
        cond = {"depends_on": 1, "show_if": {"op": "equals", "value": "other"}}
        questions = [
            q(1, QuestionType.SINGLE_CHOICE, required=True, config=OPTIONS),
            q(2, QuestionType.SHORT_TEXT, required=True, conditional_display=cond),
            q(3, QuestionType.SHORT_TEXT),
        ]
        state = transition(initial_state(questions), questions, "next", value="other")
        self.assertEqual(state.index, 1)
        state = transition(state, questions, "next", value="details")
        self.assertEqual(state.index, 2)

        state = transition(state, questions, "previous")
        state = transition(state, questions, "previous")
        self.assertEqual(state.index, 0)
        state = transition(state, questions, "next", value="beach")
        self.assertEqual(state.index, 2)

        state = transition(state, questions, "next", value="")
        self.assertEqual(state.step, Step.SUBMITTING.value)
        # The hidden answer is kept but not submitted.
        self.assertEqual(state.responses["2"], "details")
        self.assertEqual(response_set(state, questions), [{"question_id": 1, "value": "beach"}])

    def test_answer_rules(self):
        cond = {"depends_on": 1, "show_if": {"op": "equals", "value": "other"}}
        questions = [q(1, QuestionType.SINGLE_CHOICE, config=OPTIONS), q(2, QuestionType.SHORT_TEXT, conditional_display=cond)]
        state = initial_state(questions)
        with self.assertRaises(ConflictError):
            transition(state, questions, "answer", question_id=2, value="x")
        with self.assertRaises(NotFoundError):
            transition(state, questions, "answer", question_id=99, value="x")
        state = transition(state, questions, "answer", question_id=1, value="moon")
        self.assertIn("1", state.errors)

    def test_submit_only_from_last_question(self):
        with self.assertRaises(ConflictError):
            transition(self.state, self.questions, "begin_submit")

    def test_submit_jumps_back_to_invalid_answer(self):
        questions = [q(1, QuestionType.EMAIL, required=True), q(2, QuestionType.SHORT_TEXT)]
        state = transition(initial_state(questions), questions, "next", value="a@b.co")
        state = transition(state, questions, "answer", question_id=1, value="bad")
        state = transition(state, questions, "begin_submit")
        self.assertFalse(state.in_flight)
        self.assertEqual((state.step, state.index), (Step.QUESTION.value, 0))
        self.assertIn("1", state.errors)

    def test_in_flight_submission_rejects_everything_else(self):
        state = transition(self.state, self.questions, "next", value=4)
        state = transition(state, self.questions, "begin_submit", now=timezone.now())
        self.assertTrue(state.in_flight)
        self.assertIsNotNone(state.in_flight_since)
        for action in ("next", "previous", "begin_submit"):
            with self.assertRaises(ConflictError):
                transition(state, self.questions, action)
        with self.assertRaises(ConflictError):
            transition(state, self.questions, "answer", question_id=1, value=3)

        failed = transition(state, self.questions, "submit_failed", message="db down")
        self.assertEqual(failed.step, Step.SUBMITTING.value)
        self.assertFalse(failed.in_flight)
        self.assertEqual(failed.submission_error, "db down")
        self.assertEqual(failed.responses, {"1": 4})

        retried = transition(failed, self.questions, "begin_submit")
        done = transition(retried, self.questions, "submit_succeeded")
        self.assertEqual(done.step, Step.COMPLETED.value)
        with self.assertRaises(ConflictError):
            transition(done, self.questions, "next")


class BlockingStore(MemoryRecordStore):
    """Holds response writes until released, to overlap two submits."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def insert(self, collection, record):
        if collection == "responses":
            self.entered.set()
            self.release.wait(5)
        return super().insert(collection, record)


class FlakyStore(MemoryRecordStore):
    fail_next = True

    def insert(self, collection, record):
        if collection == "responses" and self.fail_next:
            self.fail_next = False
            raise PersistenceError("store unavailable")
        return super().insert(collection, record)


class RivalClaimStore(MemoryRecordStore):
    """Another worker claims the submission right before the row lock is granted."""

    claim_next = True

    @contextmanager
    def locked(self, collection, record_id):
        if collection == "sessions" and self.claim_next:
            self.claim_next = False
            state = self.get(collection, record_id)["state"]
            state.update(in_flight=True, in_flight_since=timezone.now().isoformat())
            self.update(collection, record_id, {"state": state})
        with super().locked(collection, record_id):
            yield


class FormSessionServiceTests(SimpleTestCase):
    def setUp(self):
        self.store = MemoryRecordStore()
        self.service = FormSessionService(self.store)

    def start(self, questions, **kwargs):
        form, ids = make_form(self.store, questions, **kwargs)
        started = self.service.start_session(form["id"])
        return form, ids, started["session"]["id"], started

    def test_rating_scenario_submits_and_aggregates(self):
        form, (q1, q2), sid, started = self.start(RATING_THEN_TEXT)
        self.assertEqual(started["step"]["question"]["id"], q1)
        self.assertEqual(len(started["session"]["token"]), 48)

        self.assertEqual(self.service.answer(sid, q1, 4), {"ok": True})
        self.assertEqual(self.service.navigate(sid, "next")["question"]["id"], q2)
        self.assertEqual(self.service.navigate(sid, "next")["step"], Step.SUBMITTING.value)

        result = self.service.submit(sid)
        self.assertEqual(result, {"ok": True, "done": True, "next_milestone": None})
        rows = self.store.find("responses", {"session_id": sid})
        self.assertEqual([(r["question_id"], r["value"]) for r in rows], [(q1, 4)])
        self.assertEqual(self.store.get("sessions", sid)["status"], SessionStatus.COMPLETED)

        analytics = get_form_analytics(form["id"], store=self.store)
        self.assertEqual(analytics["views"], 1)
        self.assertEqual(analytics["submissions"], 1)
        self.assertEqual(analytics["completion_rate"], 100.0)
        self.assertEqual(analytics["questions"][0]["average"], 4.0)
        self.assertEqual(analytics["questions"][1]["kind"], "no_data")

        # Submitting a completed session again changes nothing.
        self.assertTrue(self.service.submit(sid)["ok"])
        self.assertEqual(len(self.store.find("responses", {"session_id": sid})), 1)

    def test_required_empty_answer_keeps_step(self):
        form, (q1, _), sid, _ = self.start(RATING_THEN_TEXT)
        self.assertEqual(self.service.answer(sid, q1, ""), {"ok": False, "error": REQUIRED_MESSAGE})
        step = self.service.render_step(sid)
        self.assertEqual(step["question"]["id"], q1)
        self.assertEqual(step["errors"], {str(q1): REQUIRED_MESSAGE})

    def test_milestones_advance_to_next_question_set(self):
        form, (qa, qb), sid, started = self.start(
            [
                {"type": "short_text", "is_required": True, "milestone": "A"},
                {"type": "rating", "config": {"rating_scale": 5}, "milestone": "B"},
            ],
            milestones=["A", "B"],
        )
        self.assertEqual(started["session"]["current_milestone"], "A")
        self.assertEqual(started["step"]["question"]["id"], qa)

        self.service.navigate(sid, "next", value="hello")
        self.assertEqual(self.service.submit(sid), {"ok": True, "done": False, "next_milestone": "B"})

        session = self.store.get("sessions", sid)
        self.assertEqual(session["current_milestone_index"], 1)
        self.assertEqual(session["completed_milestones"], ["A"])
        self.assertEqual(session["status"], SessionStatus.ACTIVE)
        self.assertEqual(self.service.render_step(sid)["question"]["id"], qb)

        self.service.navigate(sid, "next", value=3)
        self.assertEqual(self.service.submit(sid), {"ok": True, "done": True, "next_milestone": None})
        self.assertEqual(self.store.get("sessions", sid)["status"], SessionStatus.COMPLETED)
        self.assertEqual(len(self.store.find("responses", {"session_id": sid})), 2)

    def test_complete_milestone_without_answers(self):
        _, _, sid, _ = self.start(
            [
                {"type": "statement", "milestone": "Intro"},
                {"type": "short_text", "is_required": True, "milestone": "Main"},
            ],
            milestones=["Intro", "Main"],
        )
        self.assertEqual(self.service.complete_milestone(sid), {"done": False, "next_milestone": "Main"})
        with self.assertRaises(ConflictError):
            self.service.complete_milestone(sid)

    def test_triggers_enter_highest_priority_milestone(self):
        form, (qa, qb), sid, _ = self.start(
            [
                {"type": "short_text", "milestone": "A"},
                {"type": "short_text", "is_required": True, "milestone": "B"},
            ],
            milestones=["A", "B"],
        )
        base = {"form_id": form["id"], "event_type": "itinerary_item_added", "active": True, "description": ""}
        self.store.insert("milestone_triggers", {**base, "milestone": "A", "priority": 10, "filter_key": "", "filter_value": ""})
        self.store.insert("milestone_triggers", {**base, "milestone": "B", "priority": 90, "filter_key": "trip_type", "filter_value": "group"})

        self.assertIsNone(fire_milestone_event(self.service, sid, "comment_posted", {}))

        entered = fire_milestone_event(self.service, sid, "itinerary_item_added", {"trip_type": "group"})
        self.assertEqual(entered["session"]["current_milestone"], "B")
        self.assertEqual(entered["step"]["question"]["id"], qb)

        # B already has answers, so the lower priority trigger applies.
        self.assertEqual(self.service.answer(sid, qb, "went well"), {"ok": True})
        again = fire_milestone_event(self.service, sid, "itinerary_item_added", {"trip_type": "group"})
        self.assertEqual(again["session"]["current_milestone"], "A")
        with self.assertRaises(NotFoundError):
            self.service.begin_milestone(sid, "Z")

        self.service.navigate(sid, "next", value="")
        self.assertEqual(self.service.submit(sid), {"ok": True, "done": False, "next_milestone": "B"})
        with self.assertRaises(ConflictError):
            self.service.begin_milestone(sid, "A")

        self.service.navigate(sid, "next", value="went well")
        self.assertTrue(self.service.submit(sid)["done"])
        self.assertIsNone(fire_milestone_event(self.service, sid, "itinerary_item_added", {"trip_type": "group"}))

    def test_last_milestone_completes_session(self):
        _, (qa, qb), sid, _ = self.start(
            [
                {"type": "short_text", "milestone": "A"},
                {"type": "short_text", "is_required": True, "milestone": "B"},
            ],
            milestones=["A", "B"],
        )
        self.service.begin_milestone(sid, "B")
        self.service.navigate(sid, "next", value="done")

        self.assertEqual(self.service.submit(sid), {"ok": True, "done": True, "next_milestone": None})
        session = self.store.get("sessions", sid)
        self.assertEqual(session["status"], SessionStatus.COMPLETED)
        self.assertEqual(session["completed_milestones"], ["B"])
        self.assertIsNotNone(session["completed_at"])

    def test_concurrent_submits_persist_once(self):
        store = BlockingStore()
        service = FormSessionService(store)
        form, (q1, _) = make_form(store, RATING_THEN_TEXT)
        sid = service.start_session(form["id"])["session"]["id"]
        service.navigate(sid, "next", value=5)
        service.navigate(sid, "next")

        results = {}
        worker = threading.Thread(target=lambda: results.update(first=service.submit(sid)))
        worker.start()
        self.assertTrue(store.entered.wait(5))
        try:
            with self.assertRaises(ConflictError):
                service.submit(sid)
            with self.assertRaises(ConflictError):
                service.navigate(sid, "previous")
        finally:
            store.release.set()
            worker.join(5)

        self.assertTrue(results["first"]["ok"])
        rows = store.find("responses", {"session_id": sid})
        self.assertEqual([(r["question_id"], r["value"]) for r in rows], [(q1, 5)])

    def test_persistence_failure_is_retryable(self):
        store = FlakyStore()
        service = FormSessionService(store)
        form, (q1, _) = make_form(store, RATING_THEN_TEXT)
        sid = service.start_session(form["id"])["session"]["id"]
        service.navigate(sid, "next", value=2)
        service.navigate(sid, "next")

        self.assertEqual(service.submit(sid), {"ok": False, "error": "store unavailable", "retryable": True})
        step = service.render_step(sid)
        self.assertEqual(step["step"], Step.SUBMITTING.value)
        self.assertEqual(step["submission_error"], "store unavailable")
        self.assertEqual(store.get("sessions", sid)["state"]["responses"], {str(q1): 2})

        self.assertTrue(service.submit(sid)["ok"])
        self.assertEqual(len(store.find("responses", {"session_id": sid})), 1)

    def test_submission_claimed_in_another_process(self):
        store = RivalClaimStore()
        service = FormSessionService(store)
        form, _ = make_form(store, RATING_THEN_TEXT)
        sid = service.start_session(form["id"])["session"]["id"]
        service.navigate(sid, "next", value=5)
        service.navigate(sid, "next")

        with self.assertRaises(ConflictError):
            service.submit(sid)
        self.assertEqual(store.find("responses", {"session_id": sid}), [])

    def test_session_locks_come_from_a_fixed_pool(self):
        self.assertIs(session_lock(7), session_lock("7"))
        self.assertLessEqual(len({id(session_lock(i)) for i in range(1000)}), LOCK_STRIPES)

    def test_stale_submission_marker_is_released(self):
        _, (q1, _), sid, _ = self.start(RATING_THEN_TEXT)
        self.service.navigate(sid, "next", value=3)
        self.service.navigate(sid, "next")
        state = self.store.get("sessions", sid)["state"]
        state.update(in_flight=True, in_flight_since=(timezone.now() - timedelta(hours=1)).isoformat())
        self.store.update("sessions", sid, {"state": state})

        self.assertTrue(self.service.submit(sid)["ok"])

    def test_expired_session_rejects_answers(self):
        _, (q1, _), sid, _ = self.start(RATING_THEN_TEXT)
        self.store.update("sessions", sid, {"expires_at": timezone.now() - timedelta(minutes=1)})
        with self.assertRaises(ExpiredSessionError):
            self.service.answer(sid, q1, 3)
        self.assertEqual(self.store.get("sessions", sid)["status"], SessionStatus.EXPIRED)
        with self.assertRaises(ExpiredSessionError):
            self.service.render_step(sid)

    def test_start_requires_active_form(self):
        form, _ = make_form(self.store, RATING_THEN_TEXT, status="draft")
        with self.assertRaises(ConflictError):
            self.service.start_session(form["id"])
        with self.assertRaises(NotFoundError):
            self.service.start_session(999)

    def test_resume_and_discard(self):
        _, (q1, _), sid, started = self.start(RATING_THEN_TEXT)
        self.service.navigate(sid, "next", value=4)
        resumed = self.service.resume(started["session"]["token"])
        self.assertEqual(resumed["session"]["id"], sid)
        self.assertEqual(resumed["step"]["progress"], {"current": 2, "total": 2})

        step = self.service.discard(sid)
        self.assertEqual(step["question"]["id"], q1)
        self.assertIsNone(step["value"])
        with self.assertRaises(NotFoundError):
            self.service.resume("not-a-token")


class SessionsApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.form = Form.objects.create(title="Trip feedback", status=FormStatus.ACTIVE)
        self.q1 = Question.objects.create(form=self.form, title="Rate the trip", type=QuestionType.RATING, position=1, is_required=True, config={"rating_scale": 5})
        self.q2 = Question.objects.create(form=self.form, title="Anything else?", type=QuestionType.LONG_TEXT, position=2)

    def start(self):
        resp = self.client.post("/api/v1/sessions/start/", {"form_id": self.form.id}, format="json")
        self.assertEqual(resp.status_code, 201)
        return resp.json()

    def test_full_run(self):
        body = self.start()
        token = body["session"]["token"]
        self.assertEqual(body["step"]["question"]["id"], self.q1.id)

        bad = self.client.post(f"/api/v1/sessions/{token}/answers/", {"question_id": self.q1.id, "value": ""}, format="json")
        self.assertEqual(bad.status_code, 400)
        self.assertFalse(bad.json()["ok"])

        step = self.client.post(f"/api/v1/sessions/{token}/navigate/", {"direction": "next", "value": 4}, format="json")
        self.assertEqual(step.status_code, 200)
        self.assertEqual(step.json()["question"]["id"], self.q2.id)
        self.client.post(f"/api/v1/sessions/{token}/navigate/", {"direction": "next"}, format="json")

        done = self.client.post(f"/api/v1/sessions/{token}/submit/", format="json")
        self.assertEqual(done.status_code, 200)
        self.assertTrue(done.json()["done"])

        answers = FormResponse.objects.filter(session__token=token)
        self.assertEqual([(a.question_id, a.value) for a in answers], [(self.q1.id, 4)])
        self.assertEqual(self.client.get(f"/api/v1/sessions/{token}/").json()["session"]["status"], "completed")

    def test_submit_with_missing_answers(self):
        token = self.start()["session"]["token"]
        resp = self.client.post(f"/api/v1/sessions/{token}/submit/", format="json")
        self.assertEqual(resp.status_code, 409)

    def test_unknown_token(self):
        resp = self.client.get("/api/v1/sessions/nope/step/")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["code"], "not_found")

    def test_expired_session(self):
        token = self.start()["session"]["token"]
        ResponseSession.objects.filter(token=token).update(expires_at=timezone.now() - timedelta(hours=1))
        resp = self.client.post(f"/api/v1/sessions/{token}/answers/", {"question_id": self.q1.id, "value": 3}, format="json")
        self.assertEqual(resp.status_code, 410)
        self.assertEqual(resp.json()["code"], "session_expired")

    def test_draft_form_cannot_start(self):
        draft = Form.objects.create(title="Draft", status=FormStatus.DRAFT)
        resp = self.client.post("/api/v1/sessions/start/", {"form_id": draft.id}, format="json")
        self.assertEqual(resp.status_code, 409)


class DjangoRecordStoreTests(TestCase):
    def setUp(self):
        self.store = DjangoRecordStore()
        form = Form.objects.create(title="F", status=FormStatus.ACTIVE)
        self.session = ResponseSession.objects.create(form=form, token="t-lock")

    def test_locked_block_reads_and_writes_the_row(self):
        with self.store.locked("sessions", self.session.id):
            self.store.update("sessions", self.session.id, {"state": {"in_flight": True}})
            self.assertEqual(self.store.get("sessions", self.session.id)["state"], {"in_flight": True})
        self.session.refresh_from_db()
        self.assertEqual(self.session.state, {"in_flight": True})

    def test_locked_missing_record(self):
        with self.assertRaises(NotFoundError):
            with self.store.locked("sessions", 9999):
                pass


class ExpirySweepTests(TestCase):
    def test_marks_only_overdue_active_sessions(self):
        form = Form.objects.create(title="F", status=FormStatus.ACTIVE)
        now = timezone.now()
        overdue = ResponseSession.objects.create(form=form, token="t-1", expires_at=now - timedelta(hours=1))
        fresh = ResponseSession.objects.create(form=form, token="t-2", expires_at=now + timedelta(hours=1))
        done = ResponseSession.objects.create(form=form, token="t-3", status=SessionStatus.COMPLETED, expires_at=now - timedelta(hours=1))

        self.assertEqual(mark_expired_sessions_task(), 1)
        overdue.refresh_from_db()
        fresh.refresh_from_db()
        done.refresh_from_db()
        self.assertEqual(overdue.status, SessionStatus.EXPIRED)
        self.assertEqual(fresh.status, SessionStatus.ACTIVE)
        self.assertEqual(done.status, SessionStatus.COMPLETED)
