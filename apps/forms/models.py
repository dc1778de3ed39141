from django.db import models
from apps.core.models import TimeStampedModel
from auditlog.registry import auditlog


class FormStatus(models.TextChoices):
    DRAFT = "draft", "Draft"
    ACTIVE = "active", "Active"
    ARCHIVED = "archived", "Archived"


# Allowed forward transitions.
STATUS_TRANSITIONS = {
    FormStatus.DRAFT: {FormStatus.DRAFT, FormStatus.ACTIVE},
    FormStatus.ACTIVE: {FormStatus.ACTIVE, FormStatus.ARCHIVED},
    FormStatus.ARCHIVED: {FormStatus.ARCHIVED},
}


class Form(TimeStampedModel):
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, null=True)
    status = models.CharField(max_length=16, choices=FormStatus.choices, default=FormStatus.DRAFT)
    show_progress = models.BooleanField(default=True)
    theme = models.CharField(max_length=64, blank=True, default="")
    completion_message = models.TextField(blank=True, null=True)
    milestones = models.JSONField(default=list, blank=True)  # ordered milestone names

    class Meta:
        indexes = [
            models.Index(fields=["status"]),
        ]

    def __str__(self):
        return self.title


class QuestionType(models.TextChoices):
    # Text
    SHORT_TEXT = "short_text", "Short text"
    LONG_TEXT = "long_text", "Long text"
    EMAIL = "email", "Email"

    # Choice
    SINGLE_CHOICE = "single_choice", "Single choice"
    MULTIPLE_CHOICE = "multiple_choice", "Multiple choice"
    YES_NO = "yes_no", "Yes / No"

    # Rating
    RATING = "rating", "Rating"
    NPS = "nps", "Net promoter score"
    NUMERIC_SCALE = "numeric_scale", "Numeric scale"

    # Visual selectors
    IMAGE_CHOICE = "image_choice", "Image choice"
    COLOR_PICKER = "color_picker", "Color picker"
    EMOJI_REACTION = "emoji_reaction", "Emoji reaction"

    # Specialized inputs
    DATE_PICKER = "date_picker", "Date picker"
    TIME_SELECTOR = "time_selector", "Time selector"
    LOCATION_PICKER = "location_picker", "Location picker"
    FILE_UPLOAD = "file_upload", "File upload"

    # Interactive
    SLIDER_SCALE = "slider_scale", "Slider scale"
    DRAG_RANK = "drag_rank", "Drag to rank"
    BUDGET_ALLOCATOR = "budget_allocator", "Budget allocator"

    # Trip specific
    DESTINATION_PREFERENCE = "destination_preference", "Destination preference"
    ACTIVITY_INTEREST = "activity_interest", "Activity interest"
    ACCOMMODATION_STYLE = "accommodation_style", "Accommodation style"

    # Group
    MATRIX_RATING = "matrix_rating", "Matrix rating"
    PREFERENCE_RANKING = "preference_ranking", "Preference ranking"
    PAIRED_COMPARISON = "paired_comparison", "Paired comparison"

    # Information screens
    WELCOME = "welcome", "Welcome screen"
    INSTRUCTIONS = "instructions", "Instructions"
    THANK_YOU = "thank_you", "Thank you screen"
    STATEMENT = "statement", "Statement"


class Question(TimeStampedModel):
    form = models.ForeignKey(Form, on_delete=models.CASCADE, related_name="questions")
    title = models.TextField()
    description = models.TextField(blank=True, null=True)
    type = models.CharField(max_length=32, choices=QuestionType.choices)
    position = models.IntegerField()
    is_required = models.BooleanField(default=False)
    config = models.JSONField(default=dict, blank=True)           # type-specific, see forms.taxonomy
    placeholder = models.CharField(max_length=255, blank=True, null=True)
    max_character_count = models.PositiveIntegerField(blank=True, null=True)
    conditional_display = models.JSONField(blank=True, null=True)  # {"depends_on": id, "show_if": {...}}
    milestone = models.CharField(max_length=128, blank=True, default="")

    class Meta:
        unique_together = ("form", "position")
        ordering = ["position", "id"]

    def __str__(self):
        return f"{self.form_id}:{self.position}:{self.type}"


# Register audit logging for form models
auditlog.register(Form)
auditlog.register(Question)
