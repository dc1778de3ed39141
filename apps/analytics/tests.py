from datetime import timedelta

from django.contrib.auth.models import User
from django.test import SimpleTestCase, TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from apps.form_sessions.models import ResponseSession, SessionStatus
from apps.forms.models import Form, FormStatus, Question, QuestionType
from apps.forms.taxonomy import QuestionDef
from apps.responses.models import FormResponse
from .aggregator import NO_DATA, build_form_analytics, summarize_question


def q(id, type, config=None, **extra):
    return QuestionDef(id=id, form_id=1, title=f"Q{id}", type=type, position=id, config=config or {}, **extra)


def opts(*values):
    return [{"label": v.title(), "value": v} for v in values]


class SummaryTests(SimpleTestCase):
    def test_single_choice_percentages_over_answered(self):
        question = q(1, QuestionType.SINGLE_CHOICE, {"options": opts("beach", "city", "other")})
        out = summarize_question(question, ["beach", "beach", "city", None, ""])
        self.assertEqual(out["kind"], "choice")
        self.assertEqual(out["response_count"], 3)
        self.assertEqual(
            [(o["value"], o["count"], o["percentage"]) for o in out["options"]],
            [("beach", 2, 66.7), ("city", 1, 33.3), ("other", 0, 0.0)],
        )

    def test_multiple_choice_counts_each_respondent_once(self):
        question = q(1, QuestionType.MULTIPLE_CHOICE, {"options": opts("beach", "city")})
        out = summarize_question(question, [["beach", "city"], ["beach", "beach"]])
        self.assertEqual([(o["count"], o["percentage"]) for o in out["options"]], [(2, 100.0), (1, 50.0)])

    def test_yes_no(self):
        out = summarize_question(q(1, QuestionType.YES_NO), [True, False, True])
        self.assertEqual(
            [(o["label"], o["count"]) for o in out["options"]],
            [("Yes", 2), ("No", 1)],
        )

    def test_rating_average_and_histogram(self):
        out = summarize_question(q(1, QuestionType.RATING, {"rating_scale": 5}), [5, 4, 3, 4])
        self.assertEqual(out["kind"], "numeric")
        self.assertEqual((out["average"], out["min"], out["max"]), (4.0, 3, 5))
        self.assertEqual(out["histogram"], [{"value": 3, "count": 1}, {"value": 4, "count": 2}, {"value": 5, "count": 1}])

    def test_nps_score(self):
        out = summarize_question(q(1, QuestionType.NPS), [10, 9, 7, 3])
        self.assertEqual(out["nps"], 25.0)

    def test_ranking_orders_by_average_rank(self):
        question = q(1, QuestionType.DRAG_RANK, {"options": opts("a", "b", "c")})
        out = summarize_question(question, [["a", "b", "c"], ["b", "a", "c"], ["b", "c", "a"]])
        self.assertEqual([(r["value"], r["average_rank"]) for r in out["rankings"]], [("b", 1.3), ("a", 2.0), ("c", 2.7)])

    def test_allocation_counts_missing_category_as_zero(self):
        question = q(1, QuestionType.BUDGET_ALLOCATOR, {"categories": opts("flights", "hotels"), "total_budget": 100})
        out = summarize_question(question, [{"flights": 60, "hotels": 40}, {"flights": 100}])
        self.assertEqual([(a["value"], a["average"]) for a in out["allocations"]], [("flights", 80.0), ("hotels", 20.0)])
        self.assertEqual(out["total_budget"], 100)

    def test_interest_means_over_raters(self):
        question = q(1, QuestionType.ACTIVITY_INTEREST, {"activities": opts("hiking", "museums")})
        out = summarize_question(question, [{"hiking": 5, "museums": 2}, {"hiking": 3}])
        self.assertEqual(
            [(i["value"], i["average"], i["count"]) for i in out["interests"]],
            [("hiking", 4.0, 2), ("museums", 2.0, 1)],
        )

    def test_text_answers_are_counted(self):
        out = summarize_question(q(1, QuestionType.LONG_TEXT), ["nice", "", "too long"])
        self.assertEqual((out["kind"], out["response_count"]), ("count", 2))

    def test_no_data(self):
        rating = q(1, QuestionType.RATING)
        self.assertEqual(summarize_question(rating, [])["kind"], NO_DATA)
        self.assertEqual(summarize_question(rating, ["abc"])["response_count"], 0)
        self.assertEqual(summarize_question(q(2, QuestionType.STATEMENT), ["x"])["kind"], NO_DATA)


class FormAnalyticsTests(SimpleTestCase):
    def test_views_submissions_and_dropoff(self):
        start = timezone.now()
        form = {"id": 1, "title": "Trip", "milestones": []}
        questions = [q(1, QuestionType.RATING), q(2, QuestionType.SHORT_TEXT), q(3, QuestionType.STATEMENT)]
        sessions = [
            {"id": 1, "status": SessionStatus.COMPLETED, "created_at": start, "completed_at": start + timedelta(seconds=120)},
            {"id": 2, "status": SessionStatus.ACTIVE, "created_at": start, "state": {"step": "question", "index": 1}},
            {"id": 3, "status": SessionStatus.EXPIRED, "created_at": start, "state": {"step": "question", "index": 1}},
            {"id": 4, "status": SessionStatus.ACTIVE, "created_at": start, "state": {"step": "submitting", "index": 3}},
        ]
        responses = [{"session_id": 1, "question_id": 1, "value": 4}]

        out = build_form_analytics(form, questions, sessions, responses)
        self.assertEqual((out["views"], out["submissions"]), (4, 1))
        self.assertEqual(out["completion_rate"], 25.0)
        self.assertEqual(out["average_completion_seconds"], 120.0)
        self.assertEqual(out["dropoff"], [{"question_id": 2, "title": "Q2", "count": 2}])
        self.assertEqual([s["question_id"] for s in out["questions"]], [1, 2])
        self.assertEqual(out["questions"][0]["average"], 4.0)

    def test_no_sessions(self):
        out = build_form_analytics({"id": 1, "title": "Empty"}, [q(1, QuestionType.RATING)], [], [])
        self.assertIsNone(out["completion_rate"])
        self.assertIsNone(out["average_completion_seconds"])
        self.assertEqual(out["questions"][0]["kind"], NO_DATA)


class AnalyticsApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = User.objects.create_user(username="viewer", password="pass1234", is_staff=True)
        self.client.force_authenticate(user=self.user)

        now = timezone.now()
        self.form = Form.objects.create(title="Trip feedback", status=FormStatus.ACTIVE)
        self.rating = Question.objects.create(form=self.form, title="Rate it", type=QuestionType.RATING, position=1, config={"rating_scale": 5})
        for i, score in enumerate([5, 3]):
            sess = ResponseSession.objects.create(
                form=self.form, token=f"t-{i}", status=SessionStatus.COMPLETED,
                expires_at=now + timedelta(days=1), completed_at=now,
            )
            FormResponse.objects.create(session=sess, question=self.rating, value=score)
        ResponseSession.objects.create(form=self.form, token="t-open", expires_at=now + timedelta(days=1))

    def test_form_analytics(self):
        resp = self.client.get(f"/api/v1/analytics/forms/{self.form.id}/")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual((body["views"], body["submissions"]), (3, 2))
        self.assertEqual(body["completion_rate"], 66.7)
        self.assertEqual(body["questions"][0]["average"], 4.0)

    def test_question_summary(self):
        resp = self.client.get(f"/api/v1/analytics/questions/{self.rating.id}/")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["response_count"], 2)

    def test_unknown_form(self):
        resp = self.client.get("/api/v1/analytics/forms/9999/")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["code"], "not_found")

    def test_overall_submissions_ok(self):
        resp = self.client.get("/api/v1/analytics/overall-submissions/?window=day&days=7")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(sum(data["data"]), 2)
        self.assertEqual(len(data["labels"]), len(data["data"]))

    def test_session_status(self):
        resp = self.client.get(f"/api/v1/analytics/session-status/?form_id={self.form.id}")
        self.assertEqual(resp.json(), {"labels": ["active", "completed", "expired"], "data": [1, 2, 0]})

    def test_requires_staff(self):
        client = APIClient()
        client.force_authenticate(user=User.objects.create_user(username="r", password="pass1234"))
        self.assertEqual(client.get("/api/v1/analytics/session-status/").status_code, 403)
