from rest_framework import serializers
from apps.form_sessions.models import ResponseSession
from .models import FormResponse


class FormResponseReadSerializer(serializers.ModelSerializer):
    question_title = serializers.SerializerMethodField()
    question_type = serializers.SerializerMethodField()

    class Meta:
        model = FormResponse
        fields = ["id", "question", "question_title", "question_type", "value", "updated_at"]

    def get_question_title(self, obj: FormResponse):
        return obj.question.title

    def get_question_type(self, obj: FormResponse):
        return obj.question.type


class SessionResponsesSerializer(serializers.ModelSerializer):
    """A session with the response set persisted for it."""

    responses = FormResponseReadSerializer(many=True, read_only=True)

    class Meta:
        model = ResponseSession
        fields = [
            "id", "form", "status", "completed_milestones", "created_at",
            "completed_at", "responses",
        ]


class SessionBriefSerializer(serializers.ModelSerializer):
    response_count = serializers.IntegerField(read_only=True)

    class Meta:
        model = ResponseSession
        fields = ["id", "status", "completed_milestones", "created_at", "completed_at", "response_count"]
