from rest_framework import serializers

from .models import MilestoneEvent


class SessionStartSerializer(serializers.Serializer):
    form_id = serializers.IntegerField()


class AnswerSerializer(serializers.Serializer):
    question_id = serializers.IntegerField()
    # Shape depends on the question type; checked by the form's validation rules.
    value = serializers.JSONField(required=False, allow_null=True)


class NavigateSerializer(serializers.Serializer):
    direction = serializers.ChoiceField(choices=["next", "previous"])
    value = serializers.JSONField(required=False, allow_null=True)


class BeginMilestoneSerializer(serializers.Serializer):
    milestone = serializers.CharField(max_length=128)


class MilestoneEventSerializer(serializers.Serializer):
    event_type = serializers.ChoiceField(choices=MilestoneEvent.choices)
    payload = serializers.DictField(required=False, default=dict)
