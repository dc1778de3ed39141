from rest_framework import serializers

from apps.core.utility import parse_int

from .conditions import validate_condition
from .models import Form, Question, QuestionType, STATUS_TRANSITIONS
from .taxonomy import validate_config


class FormCreateSerializer(serializers.ModelSerializer):
    milestones = serializers.ListField(
        child=serializers.CharField(max_length=128), required=False, allow_empty=True
    )

    class Meta:
        model = Form
        fields = [
            "title", "description", "status", "show_progress", "theme",
            "completion_message", "milestones",
        ]

    def validate_milestones(self, value):
        if len(value) != len(set(value)):
            raise serializers.ValidationError("Milestone names must be unique.")
        return value

    def validate_status(self, value):
        if self.instance is not None and value not in STATUS_TRANSITIONS[self.instance.status]:
            raise serializers.ValidationError(
                f"Cannot move a form from {self.instance.status} to {value}."
            )
        return value


class FormListSerializer(serializers.ModelSerializer):
    question_count = serializers.IntegerField(read_only=True)

    class Meta:
        model = Form
        fields = ["id", "title", "description", "status", "milestones", "question_count", "created_at"]


class QuestionCreateSerializer(serializers.ModelSerializer):
    """
    Validates a question against the taxonomy.

    Expects `form` in the serializer context so the conditional dependency and
    milestone can be checked against the owning form.
    """

    type = serializers.ChoiceField(choices=QuestionType.choices)
    config = serializers.JSONField(required=False)
    conditional_display = serializers.JSONField(required=False, allow_null=True)

    class Meta:
        model = Question
        fields = [
            "title", "description", "type", "position", "is_required", "config",
            "placeholder", "max_character_count", "conditional_display", "milestone",
        ]

    def validate(self, attrs):
        form = self.context["form"]
        instance = self.instance

        qtype = attrs.get("type", instance.type if instance else None)
        if "config" in attrs or "type" in attrs or instance is None:
            config = attrs.get("config", instance.config if instance else {})
            attrs["config"] = validate_config(qtype, config)

        if "conditional_display" in attrs:
            attrs["conditional_display"] = validate_condition(attrs["conditional_display"])

        cond = attrs.get("conditional_display", instance.conditional_display if instance else None)
        position = attrs.get("position", instance.position if instance else None)
        if cond:
            dep = Question.objects.filter(form=form, pk=parse_int(cond["depends_on"], 0)).first()
            if dep is None:
                raise serializers.ValidationError(
                    {"conditional_display": ["depends_on must reference a question of the same form."]}
                )
            if position is not None and dep.position >= position:
                raise serializers.ValidationError(
                    {"conditional_display": ["A conditional question must come after the question it depends on."]}
                )

        if instance is not None and "position" in attrs and position is not None:
            for other in Question.objects.filter(form=form).exclude(pk=instance.pk):
                other_cond = other.conditional_display or {}
                if parse_int(other_cond.get("depends_on"), 0) == instance.pk and other.position <= position:
                    raise serializers.ValidationError(
                        {"position": [f"Question {other.pk} depends on this one and must stay after it."]}
                    )

        milestone = attrs.get("milestone", instance.milestone if instance else "")
        if form.milestones and milestone not in form.milestones:
            raise serializers.ValidationError({"milestone": [f"Must be one of: {', '.join(form.milestones)}."]})
        if not form.milestones and milestone:
            raise serializers.ValidationError({"milestone": ["This form does not declare milestones."]})
        return attrs


class QuestionReadSerializer(serializers.ModelSerializer):
    class Meta:
        model = Question
        fields = [
            "id", "title", "description", "type", "position", "is_required", "config",
            "placeholder", "max_character_count", "conditional_display", "milestone",
        ]


class FormDetailSerializer(serializers.ModelSerializer):
    questions = QuestionReadSerializer(many=True, read_only=True)

    class Meta:
        model = Form
        fields = [
            "id", "title", "description", "status", "show_progress", "theme",
            "completion_message", "milestones", "questions", "created_at", "updated_at",
        ]
