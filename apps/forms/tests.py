from django.contrib.auth.models import User
from django.test import SimpleTestCase, TestCase
from rest_framework import serializers
from rest_framework.test import APIClient

from apps.core.exceptions import AnswerValidationError
from apps.form_sessions.models import ResponseSession
from apps.forms.conditions import evaluate, is_visible, validate_condition, visible_questions
from apps.forms.models import Form, FormStatus, Question, QuestionType
from apps.forms.taxonomy import TAXONOMY, QuestionDef, order_questions, validate_config
from apps.forms.validation import (
    REQUIRED_MESSAGE, build_response_serializer, validate_answer, validate_response_set,
)


def q(id, type, position=None, required=False, config=None, **extra):
    return QuestionDef(
        id=id, form_id=1, title=f"Q{id}", type=type,
        position=position if position is not None else id,
        is_required=required, config=config or {}, **extra,
    )


OPTIONS = {"options": [{"label": "Beach", "value": "beach"}, {"label": "City", "value": "city"}, {"label": "Other", "value": "other"}]}


class TaxonomyTests(SimpleTestCase):
    def test_every_question_type_is_registered(self):
        self.assertEqual(set(TAXONOMY), set(QuestionType.values))

    def test_defaults_are_filled_in(self):
        self.assertEqual(validate_config(QuestionType.RATING, {}), {"rating_scale": 5})
        budget = validate_config(QuestionType.BUDGET_ALLOCATOR, {"categories": [{"label": "Food"}, {"label": "Stay"}]})
        self.assertEqual(budget["total_budget"], 100)
        self.assertFalse(budget["allow_exceed_total"])

    def test_option_value_defaults_to_label(self):
        cfg = validate_config(QuestionType.SINGLE_CHOICE, {"options": [{"label": "Yes please"}]})
        self.assertEqual(cfg["options"][0]["value"], "Yes please")
        self.assertEqual(cfg["options"][0]["id"], "Yes please")

    def test_unknown_config_key_rejected(self):
        with self.assertRaises(serializers.ValidationError) as ctx:
            validate_config(QuestionType.RATING, {"rating_scale": 5, "colour": "red"})
        self.assertIn("colour", ctx.exception.detail["config"])

    def test_duplicate_option_values_rejected(self):
        with self.assertRaises(serializers.ValidationError):
            validate_config(QuestionType.SINGLE_CHOICE, {"options": [{"label": "A", "value": "a"}, {"label": "B", "value": "a"}]})

    def test_rating_scale_bounds(self):
        with self.assertRaises(serializers.ValidationError):
            validate_config(QuestionType.RATING, {"rating_scale": 11})

    def test_structural_types_take_no_answer(self):
        self.assertTrue(q(1, QuestionType.WELCOME).is_structural)
        self.assertFalse(q(1, QuestionType.SHORT_TEXT).is_structural)

    def test_order_breaks_position_ties_by_id(self):
        ordered = order_questions([q(3, QuestionType.SHORT_TEXT, position=1), q(2, QuestionType.SHORT_TEXT, position=1), q(1, QuestionType.SHORT_TEXT, position=2)])
        self.assertEqual([x.id for x in ordered], [2, 3, 1])


class AnswerValidationTests(SimpleTestCase):
    def assertInvalid(self, question, value, message=None):
        with self.assertRaises(AnswerValidationError) as ctx:
            validate_answer(question, value)
        self.assertEqual(ctx.exception.question_id, question.id)
        if message:
            self.assertEqual(ctx.exception.message, message)

    def test_required_text_rejects_blank(self):
        question = q(1, QuestionType.SHORT_TEXT, required=True)
        self.assertInvalid(question, "", REQUIRED_MESSAGE)
        self.assertInvalid(question, None, REQUIRED_MESSAGE)
        self.assertInvalid(question, "   ", REQUIRED_MESSAGE)

    def test_optional_blank_is_valid(self):
        self.assertIsNone(validate_answer(q(1, QuestionType.LONG_TEXT), ""))
        self.assertIsNone(validate_answer(q(1, QuestionType.MULTIPLE_CHOICE, config=OPTIONS), []))

    def test_max_character_count(self):
        question = q(1, QuestionType.SHORT_TEXT, max_character_count=5)
        self.assertEqual(validate_answer(question, "hello"), "hello")
        self.assertInvalid(question, "hello!")

    def test_email(self):
        question = q(1, QuestionType.EMAIL, required=True)
        self.assertEqual(validate_answer(question, "a@example.com"), "a@example.com")
        self.assertInvalid(question, "nope", "Please enter a valid email address")

    def test_single_choice_must_be_configured_option(self):
        question = q(1, QuestionType.SINGLE_CHOICE, config=OPTIONS)
        self.assertEqual(validate_answer(question, "beach"), "beach")
        self.assertInvalid(question, "mountains")

    def test_multiple_choice(self):
        question = q(1, QuestionType.MULTIPLE_CHOICE, required=True, config=OPTIONS)
        self.assertEqual(validate_answer(question, ["beach", "city"]), ["beach", "city"])
        self.assertInvalid(question, [], REQUIRED_MESSAGE)
        self.assertInvalid(question, ["beach", "moon"])

    def test_yes_no_is_boolean(self):
        question = q(1, QuestionType.YES_NO, required=True)
        self.assertIs(validate_answer(question, False), False)
        self.assertInvalid(question, "perhaps")

    def test_rating_range(self):
        question = q(1, QuestionType.RATING, required=True, config={"rating_scale": 5})
        self.assertEqual(validate_answer(question, 4), 4)
        self.assertInvalid(question, 0)
        self.assertInvalid(question, 6)

    def test_nps_range_includes_zero(self):
        question = q(1, QuestionType.NPS, required=True)
        self.assertEqual(validate_answer(question, 0), 0)
        self.assertEqual(validate_answer(question, 10), 10)
        self.assertInvalid(question, 11)

    def test_slider_bounds(self):
        question = q(1, QuestionType.SLIDER_SCALE, config={"min_value": 0, "max_value": 100})
        self.assertEqual(validate_answer(question, 55.5), 55.5)
        self.assertInvalid(question, 101)

    def test_ranking_rejects_duplicates_and_unknown(self):
        question = q(1, QuestionType.DRAG_RANK, config=OPTIONS)
        self.assertEqual(validate_answer(question, ["city", "beach"]), ["city", "beach"])
        self.assertInvalid(question, ["city", "city"])
        self.assertInvalid(question, ["city", "moon"])

    def test_budget_allocation(self):
        config = {"categories": [{"label": "Food", "value": "food"}, {"label": "Stay", "value": "stay"}], "total_budget": 100}
        question = q(1, QuestionType.BUDGET_ALLOCATOR, config=config)
        self.assertEqual(validate_answer(question, {"food": 40, "stay": 60}), {"food": 40.0, "stay": 60.0})
        self.assertInvalid(question, {"food": 80, "stay": 40})
        self.assertInvalid(question, {"food": -1})
        self.assertInvalid(question, {"fuel": 10})

        lenient = q(2, QuestionType.BUDGET_ALLOCATOR, config={**config, "allow_exceed_total": True})
        self.assertEqual(validate_answer(lenient, {"food": 80, "stay": 40}), {"food": 80.0, "stay": 40.0})

    def test_activity_interest_levels(self):
        question = q(1, QuestionType.ACTIVITY_INTEREST, config={"activities": [{"label": "Hiking", "value": "hiking"}]})
        self.assertEqual(validate_answer(question, {"hiking": 5}), {"hiking": 5})
        self.assertInvalid(question, {"hiking": 6})

    def test_date_bounds(self):
        question = q(1, QuestionType.DATE_PICKER, config={"min_date": "2025-01-01"})
        self.assertEqual(validate_answer(question, "2025-06-01"), "2025-06-01")
        self.assertInvalid(question, "2024-12-31")

    def test_image_choice_allows_multiple_when_configured(self):
        single = q(1, QuestionType.IMAGE_CHOICE, config=OPTIONS)
        multi = q(2, QuestionType.IMAGE_CHOICE, config={**OPTIONS, "allow_multiple": True})
        self.assertEqual(validate_answer(single, "beach"), "beach")
        self.assertEqual(validate_answer(multi, ["beach", "city"]), ["beach", "city"])

    def test_structural_screens_are_always_valid(self):
        self.assertIsNone(validate_answer(q(1, QuestionType.WELCOME, required=True), None))

    def test_response_set_serializer_has_a_field_per_answerable_question(self):
        cls = build_response_serializer([q(1, QuestionType.WELCOME), q(2, QuestionType.RATING), q(3, QuestionType.SHORT_TEXT)])
        self.assertEqual(set(cls().fields), {"question_2", "question_3"})

    def test_validate_response_set_reports_per_question(self):
        questions = [q(1, QuestionType.RATING, required=True), q(2, QuestionType.LONG_TEXT), q(3, QuestionType.EMAIL, required=True)]
        cleaned, errors = validate_response_set(questions, {"1": 4, "2": "", "3": "bad"})
        self.assertEqual(cleaned, {})
        self.assertEqual(set(errors), {"3"})

        cleaned, errors = validate_response_set(questions, {"1": "4", "3": "a@b.co"})
        self.assertEqual(errors, {})
        self.assertEqual(cleaned, {"1": 4, "3": "a@b.co"})


class ConditionTests(SimpleTestCase):
    def setUp(self):
        self.q1 = q(1, QuestionType.MULTIPLE_CHOICE, config=OPTIONS)
        self.q2 = q(2, QuestionType.SHORT_TEXT, conditional_display={"depends_on": 1, "show_if": {"op": "includes", "value": "other"}})

    def test_unconditional_question_is_visible(self):
        self.assertTrue(is_visible(self.q1, {}))

    def test_hidden_while_dependency_unanswered(self):
        self.assertFalse(is_visible(self.q2, {}))
        self.assertFalse(is_visible(self.q2, {"1": []}))

    def test_reevaluates_when_dependency_changes(self):
        self.assertTrue(is_visible(self.q2, {"1": ["beach", "other"]}))
        self.assertFalse(is_visible(self.q2, {"1": ["beach"]}))

    def test_operators(self):
        self.assertTrue(evaluate({"op": "equals", "value": "x"}, "x"))
        self.assertTrue(evaluate({"op": "!=", "value": "x"}, "y"))
        self.assertTrue(evaluate({"op": "in", "value": ["a", "b"]}, "b"))
        self.assertTrue(evaluate({"op": "not_in", "value": ["a", "b"]}, "c"))
        self.assertTrue(evaluate({"op": "gte", "value": 4}, 4))
        self.assertTrue(evaluate({"op": "<", "value": 4}, "3"))
        self.assertTrue(evaluate({"op": "answered"}, "anything"))

    def test_failed_comparison_is_false(self):
        self.assertFalse(evaluate({"op": "gt", "value": 3}, "lots"))
        self.assertFalse(evaluate({"op": "gt", "value": 3}, ["a"]))
        self.assertFalse(evaluate({"op": "bogus", "value": 3}, 4))

    def test_stale_answer_of_hidden_question_does_not_reveal_chain(self):
        q3 = q(3, QuestionType.SHORT_TEXT, conditional_display={"depends_on": 2, "show_if": {"op": "answered"}})
        shown = visible_questions([self.q1, self.q2, q3], {"1": ["beach"], "2": "stale"})
        self.assertEqual([x.id for x in shown], [1])

    def test_validate_condition(self):
        self.assertIsNone(validate_condition(None))
        self.assertEqual(
            validate_condition({"depends_on": 1, "show_if": {"op": ">=", "value": 3}}),
            {"depends_on": 1, "show_if": {"op": "gte", "value": 3}},
        )
        with self.assertRaises(serializers.ValidationError):
            validate_condition({"depends_on": 1, "show_if": {"op": "matches"}})
        with self.assertRaises(serializers.ValidationError):
            validate_condition({"show_if": {"op": "equals", "value": 1}})


class FormsApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.admin = User.objects.create_user(username="admin", password="pass", is_staff=True)
        self.client.force_authenticate(user=self.admin)
        self.form = Form.objects.create(title="Trip feedback", status=FormStatus.DRAFT)

    def add_question(self, **payload):
        return self.client.post(f"/api/v1/forms/{self.form.id}/questions/", payload, format="json")

    def test_requires_staff(self):
        self.client.force_authenticate(user=User.objects.create_user(username="plain", password="p"))
        resp = self.client.get("/api/v1/forms/")
        self.assertEqual(resp.status_code, 403)

    def test_list_and_create(self):
        resp = self.client.post("/api/v1/forms/", {"title": "New", "milestones": ["A", "B"]}, format="json")
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["milestones"], ["A", "B"])
        listing = self.client.get("/api/v1/forms/?search=new")
        self.assertEqual(listing.status_code, 200)
        self.assertEqual(listing.json()["count"], 1)

    def test_question_config_is_normalized(self):
        resp = self.add_question(title="How was it?", type="rating", position=1, is_required=True)
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(Question.objects.get(pk=resp.json()["id"]).config, {"rating_scale": 5})

    def test_question_bad_config(self):
        resp = self.add_question(title="Pick", type="single_choice", position=1, config={"options": []})
        self.assertEqual(resp.status_code, 400)

    def test_position_must_be_unique(self):
        self.assertEqual(self.add_question(title="One", type="short_text", position=1).status_code, 201)
        resp = self.add_question(title="Two", type="short_text", position=1)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["field"], "position")

    def test_condition_must_reference_an_earlier_question(self):
        first = self.add_question(title="Where?", type="single_choice", position=2, config=OPTIONS).json()["id"]
        cond = {"depends_on": first, "show_if": {"op": "equals", "value": "other"}}
        before = self.add_question(title="Which?", type="short_text", position=1, conditional_display=cond)
        self.assertEqual(before.status_code, 400)
        after = self.add_question(title="Which?", type="short_text", position=3, conditional_display=cond)
        self.assertEqual(after.status_code, 201)

    def test_dependency_cannot_move_past_its_dependents(self):
        first = self.add_question(title="Where?", type="single_choice", position=2, config=OPTIONS).json()["id"]
        cond = {"depends_on": first, "show_if": {"op": "equals", "value": "other"}}
        self.assertEqual(self.add_question(title="Which?", type="short_text", position=3, conditional_display=cond).status_code, 201)

        url = f"/api/v1/forms/questions/{first}/"
        moved = self.client.patch(url, {"position": 5}, format="json")
        self.assertEqual(moved.status_code, 400)
        self.assertIn("position", moved.json())
        self.assertEqual(Question.objects.get(pk=first).position, 2)
        self.assertEqual(self.client.patch(url, {"position": 1}, format="json").status_code, 200)

    def test_status_moves_forward_only(self):
        url = f"/api/v1/forms/{self.form.id}/detail/"
        self.assertEqual(self.client.patch(url, {"status": "active"}, format="json").status_code, 200)
        self.assertEqual(self.client.patch(url, {"status": "draft"}, format="json").status_code, 400)

    def test_questions_frozen_once_sessions_exist(self):
        qid = self.add_question(title="One", type="short_text", position=1).json()["id"]
        ResponseSession.objects.create(form=self.form, token="tok-1")
        self.assertEqual(self.add_question(title="Two", type="short_text", position=2).status_code, 409)
        self.assertEqual(self.client.patch(f"/api/v1/forms/questions/{qid}/", {"title": "X"}, format="json").status_code, 409)
        # metadata stays editable
        resp = self.client.patch(f"/api/v1/forms/{self.form.id}/detail/", {"title": "Renamed"}, format="json")
        self.assertEqual(resp.status_code, 200)

    def test_detail_lists_questions_in_order(self):
        self.add_question(title="Second", type="short_text", position=2)
        self.add_question(title="First", type="short_text", position=1)
        body = self.client.get(f"/api/v1/forms/{self.form.id}/detail/").json()
        self.assertEqual([x["title"] for x in body["questions"]], ["First", "Second"])
