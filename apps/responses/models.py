from django.db import models
from apps.core.models import TimeStampedModel
from auditlog.registry import auditlog
from apps.forms.models import Question
from apps.form_sessions.models import ResponseSession


class FormResponse(TimeStampedModel):
    session = models.ForeignKey(ResponseSession, on_delete=models.CASCADE, related_name="responses")
    question = models.ForeignKey(Question, on_delete=models.CASCADE, related_name="responses")
    # string, boolean, number, list of strings or mapping, shaped by the question type
    value = models.JSONField(blank=True, null=True)

    class Meta:
        unique_together = ("session", "question")
        indexes = [
            models.Index(fields=["question"], name="idx_response_question"),
        ]

    def __str__(self):
        return f"resp#{self.id} q#{self.question_id}"


# Register audit logging for responses
auditlog.register(FormResponse)
