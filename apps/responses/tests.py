from django.contrib.auth.models import User
from django.test import SimpleTestCase, TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from apps.core.store import MemoryRecordStore
from apps.form_sessions.models import ResponseSession, SessionStatus
from apps.forms.models import Form, FormStatus, Question, QuestionType
from .models import FormResponse
from .services import persist_response_set, responses_for_sessions, values_by_question


class PersistResponseSetTests(SimpleTestCase):
    def setUp(self):
        self.store = MemoryRecordStore()

    def test_inserts_then_overwrites(self):
        persist_response_set(self.store, 1, [{"question_id": 10, "value": 4}, {"question_id": 11, "value": "ok"}])
        persist_response_set(self.store, 1, [{"question_id": 10, "value": 5}])

        rows = self.store.find("responses", {"session_id": 1}, order=["question_id"])
        self.assertEqual([(r["question_id"], r["value"]) for r in rows], [(10, 5), (11, "ok")])

    def test_sessions_do_not_share_rows(self):
        persist_response_set(self.store, 1, [{"question_id": 10, "value": 4}])
        persist_response_set(self.store, 2, [{"question_id": 10, "value": 2}])
        self.assertEqual(len(self.store.find("responses", {"question_id": 10})), 2)

    def test_empty_set_writes_nothing(self):
        self.assertEqual(persist_response_set(self.store, 1, []), [])
        self.assertEqual(self.store.find("responses"), [])

    def test_reads_by_session(self):
        form = self.store.insert("forms", {"title": "F"})
        other = self.store.insert("forms", {"title": "G"})
        s1 = self.store.insert("sessions", {"form_id": form["id"]})
        s2 = self.store.insert("sessions", {"form_id": other["id"]})
        persist_response_set(self.store, s1["id"], [{"question_id": 1, "value": "a"}])
        persist_response_set(self.store, s2["id"], [{"question_id": 1, "value": "b"}])

        rows = responses_for_sessions(self.store, [s1["id"]])
        self.assertEqual(values_by_question(rows), {1: ["a"]})


class ResponsesApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.admin = User.objects.create_user(username="admin", password="pass1234", is_staff=True)
        self.client.force_authenticate(user=self.admin)

        self.form = Form.objects.create(title="Trip feedback", status=FormStatus.ACTIVE)
        self.q1 = Question.objects.create(form=self.form, title="Rate it", type=QuestionType.RATING, position=1, config={"rating_scale": 5})
        self.q2 = Question.objects.create(form=self.form, title="Comments", type=QuestionType.LONG_TEXT, position=2)

        now = timezone.now()
        self.done = ResponseSession.objects.create(
            form=self.form, token="done", status=SessionStatus.COMPLETED,
            expires_at=now, completed_at=now,
        )
        self.open = ResponseSession.objects.create(form=self.form, token="open", expires_at=now)
        FormResponse.objects.create(session=self.done, question=self.q2, value="Great")
        FormResponse.objects.create(session=self.done, question=self.q1, value=5)

    def test_requires_staff(self):
        client = APIClient()
        client.force_authenticate(user=User.objects.create_user(username="r", password="pass1234"))
        self.assertEqual(client.get(f"/api/v1/responses/forms/{self.form.id}/").status_code, 403)

    def test_form_sessions_with_counts(self):
        resp = self.client.get(f"/api/v1/responses/forms/{self.form.id}/")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["count"], 2)
        counts = {row["id"]: row["response_count"] for row in body["results"]}
        self.assertEqual(counts, {self.done.id: 2, self.open.id: 0})

    def test_status_filter_and_embedded_answers(self):
        resp = self.client.get(f"/api/v1/responses/forms/{self.form.id}/?status=completed&include=responses")
        body = resp.json()
        self.assertEqual(body["count"], 1)
        answers = body["results"][0]["responses"]
        self.assertEqual([a["question"] for a in answers], [self.q1.id, self.q2.id])
        self.assertEqual(answers[0]["value"], 5)
        self.assertEqual(answers[1]["question_type"], QuestionType.LONG_TEXT)

    def test_session_detail(self):
        resp = self.client.get(f"/api/v1/responses/sessions/{self.done.id}/")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(resp.json()["responses"]), 2)
        self.assertEqual(self.client.get("/api/v1/responses/sessions/9999/").status_code, 404)
