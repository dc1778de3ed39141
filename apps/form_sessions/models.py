from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from apps.core.models import TimeStampedModel
from auditlog.registry import auditlog
from apps.forms.models import Form


class SessionStatus(models.TextChoices):
    ACTIVE = "active", "Active"
    COMPLETED = "completed", "Completed"
    EXPIRED = "expired", "Expired"


class ResponseSession(TimeStampedModel):
    form = models.ForeignKey(Form, on_delete=models.CASCADE, related_name="sessions")
    token = models.CharField(max_length=64, unique=True)
    status = models.CharField(max_length=16, choices=SessionStatus.choices, default=SessionStatus.ACTIVE)
    current_milestone_index = models.PositiveIntegerField(default=0)
    completed_milestones = models.JSONField(default=list, blank=True)
    state = models.JSONField(default=dict, blank=True)  # serialized WizardState
    expires_at = models.DateTimeField(blank=True, null=True)
    completed_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        indexes = [
            models.Index(fields=["form", "status"], name="idx_session_form_status"),
            models.Index(fields=["status", "expires_at"], name="idx_session_expiry"),
        ]

    def __str__(self):
        return f"session#{self.id} form#{self.form_id}"


class MilestoneEvent(models.TextChoices):
    TRIP_CREATED = "trip_created", "Trip created"
    TRIP_UPDATED = "trip_updated", "Trip updated"
    TRIP_DELETED = "trip_deleted", "Trip deleted"
    ITINERARY_ITEM_ADDED = "itinerary_item_added", "Itinerary item added"
    ITINERARY_ITEM_UPDATED = "itinerary_item_updated", "Itinerary item updated"
    ITINERARY_ITEM_DELETED = "itinerary_item_deleted", "Itinerary item deleted"
    GROUP_CREATED = "group_created", "Group created"
    GROUP_MEMBER_ADDED = "group_member_added", "Group member added"
    GROUP_MEMBER_REMOVED = "group_member_removed", "Group member removed"
    GROUP_PLAN_CREATED = "group_plan_created", "Group plan created"
    COMMENT_POSTED = "comment_posted", "Comment posted"
    COMMENT_REACTED = "comment_reacted", "Comment reacted"
    BUDGET_ITEM_ADDED = "budget_item_added", "Budget item added"
    TEMPLATE_USED = "template_used", "Template used"
    SURVEY_STARTED = "survey_started", "Survey started"
    SURVEY_COMPLETED = "survey_completed", "Survey completed"
    SURVEY_STEP_COMPLETED = "survey_step_completed", "Survey step completed"
    FEEDBACK_SUBMITTED = "feedback_submitted", "Feedback submitted"


class MilestoneTrigger(TimeStampedModel):
    """Maps an application event to the milestone of a form it should open."""

    form = models.ForeignKey(Form, on_delete=models.CASCADE, related_name="milestone_triggers")
    milestone = models.CharField(max_length=128)
    event_type = models.CharField(max_length=64, choices=MilestoneEvent.choices)
    active = models.BooleanField(default=True)
    priority = models.PositiveSmallIntegerField(
        default=50, validators=[MinValueValidator(0), MaxValueValidator(100)]
    )
    filter_key = models.CharField(max_length=64, blank=True, default="")
    filter_value = models.CharField(max_length=255, blank=True, default="")
    description = models.TextField(blank=True, default="")

    class Meta:
        indexes = [
            models.Index(fields=["form", "event_type"], name="idx_trigger_form_event"),
        ]

    def __str__(self):
        return f"{self.event_type} -> {self.form_id}:{self.milestone}"


# Register for audit logging
auditlog.register(ResponseSession)
auditlog.register(MilestoneTrigger)
