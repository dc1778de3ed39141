"""
Question type taxonomy.

Every `QuestionType` maps to exactly one `QuestionKind`:

  - `config_serializer` validates the type-specific configuration stored in
    `Question.config` (unknown keys are rejected, defaults are filled in),
  - `answer` is the legal response-value shape, consumed by forms.validation,
  - `summary` selects the aggregation in analytics.aggregator,
  - `structural` marks presentation-only screens that are never answered.

Adding a type means adding a registry entry here and handling its shapes in
the validation builder and the aggregator.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Type

from rest_framework import serializers

from .models import QuestionType


class AnswerShape(str, Enum):
    NONE = "none"
    TEXT = "text"
    EMAIL = "email"
    CHOICE = "choice"              # one configured option value
    CHOICES = "choices"            # list of configured option values
    SELECTION = "selection"        # CHOICE, or CHOICES when config.allow_multiple
    BOOLEAN = "boolean"
    INTEGER = "integer"
    NUMBER = "number"
    DATE = "date"
    TIME = "time"
    RANKING = "ranking"            # ordered list of distinct option values
    ALLOCATION = "allocation"      # category -> amount
    INTEREST = "interest"          # activity -> 1..5
    MATRIX = "matrix"              # row -> column value
    ANY = "any"


class SummaryKind(str, Enum):
    CHOICE = "choice"
    NUMERIC = "numeric"
    RANKING = "ranking"
    ALLOCATION = "allocation"
    INTEREST = "interest"
    COUNT = "count"


# ---- Config serializers --------------------------------------------------------

class StrictConfigSerializer(serializers.Serializer):
    """Rejects configuration keys the question type does not declare."""

    def to_internal_value(self, data):
        if isinstance(data, Mapping):
            unknown = sorted(set(data) - set(self.fields))
            if unknown:
                raise serializers.ValidationError({k: ["Not a configuration key for this question type."] for k in unknown})
        return super().to_internal_value(data)


class OptionSerializer(serializers.Serializer):
    id = serializers.CharField(max_length=64, required=False)
    label = serializers.CharField(max_length=255)
    value = serializers.CharField(max_length=255, required=False)
    image_url = serializers.CharField(max_length=1024, required=False)
    color = serializers.CharField(max_length=32, required=False)
    emoji = serializers.CharField(max_length=16, required=False)
    category = serializers.CharField(max_length=128, required=False)

    def to_internal_value(self, data):
        out = super().to_internal_value(data)
        # An option without an explicit value answers with its label.
        out.setdefault("value", out["label"])
        out.setdefault("id", out["value"])
        return out


def _options(min_length: int = 1, required: bool = True):
    return OptionSerializer(many=True, min_length=min_length, required=required, allow_empty=min_length == 0)


def _unique_values(options: List[dict], field_name: str) -> None:
    values = [o["value"] for o in options]
    if len(values) != len(set(values)):
        raise serializers.ValidationError({field_name: ["Option values must be unique."]})


class EmptyConfigSerializer(StrictConfigSerializer):
    pass


class ChoiceConfigSerializer(StrictConfigSerializer):
    options = _options()

    def validate(self, attrs):
        _unique_values(attrs["options"], "options")
        return attrs


class SelectionConfigSerializer(ChoiceConfigSerializer):
    allow_multiple = serializers.BooleanField(default=False)


class RatingConfigSerializer(StrictConfigSerializer):
    rating_scale = serializers.IntegerField(min_value=3, max_value=10, default=5)


class ScaleConfigSerializer(StrictConfigSerializer):
    min_value = serializers.FloatField(default=1)
    max_value = serializers.FloatField(default=5)
    step_size = serializers.FloatField(default=1, min_value=0)
    min_label = serializers.CharField(max_length=128, required=False)
    max_label = serializers.CharField(max_length=128, required=False)

    def validate(self, attrs):
        if attrs["min_value"] >= attrs["max_value"]:
            raise serializers.ValidationError({"max_value": ["Must be greater than min_value."]})
        return attrs


class SliderConfigSerializer(ScaleConfigSerializer):
    min_value = serializers.FloatField(default=0)
    max_value = serializers.FloatField(default=100)
    show_value = serializers.BooleanField(default=True)


class ColorPickerConfigSerializer(StrictConfigSerializer):
    predefined_colors = serializers.ListField(child=serializers.CharField(max_length=32), required=False)
    allow_custom_color = serializers.BooleanField(default=False)


class DatePickerConfigSerializer(StrictConfigSerializer):
    min_date = serializers.DateField(required=False)
    max_date = serializers.DateField(required=False)
    allow_range = serializers.BooleanField(default=False)

    def to_internal_value(self, data):
        out = super().to_internal_value(data)
        # Stored as JSON, so keep ISO strings.
        for key in ("min_date", "max_date"):
            if out.get(key) is not None:
                out[key] = out[key].isoformat()
        return out


class TimeSelectorConfigSerializer(StrictConfigSerializer):
    is_24_hour = serializers.BooleanField(default=False)
    time_intervals = serializers.IntegerField(min_value=1, max_value=720, default=30)


class LocationPickerConfigSerializer(StrictConfigSerializer):
    default_location = serializers.DictField(required=False)


class FileUploadConfigSerializer(StrictConfigSerializer):
    allowed_file_types = serializers.ListField(child=serializers.CharField(max_length=64), required=False)
    max_file_size = serializers.IntegerField(min_value=1, required=False)
    max_files = serializers.IntegerField(min_value=1, default=1)


class RankingConfigSerializer(ChoiceConfigSerializer):
    options = _options(min_length=2)
    max_selections = serializers.IntegerField(min_value=1, required=False)


class BudgetConfigSerializer(StrictConfigSerializer):
    categories = _options(min_length=2)
    total_budget = serializers.FloatField(min_value=0, default=100)
    allow_exceed_total = serializers.BooleanField(default=False)

    def validate(self, attrs):
        _unique_values(attrs["categories"], "categories")
        return attrs


class DestinationConfigSerializer(StrictConfigSerializer):
    destinations = _options(min_length=0, required=False)
    allow_custom_destination = serializers.BooleanField(default=True)
    max_selections = serializers.IntegerField(min_value=1, required=False)

    def validate(self, attrs):
        if not attrs.get("destinations") and not attrs["allow_custom_destination"]:
            raise serializers.ValidationError({"destinations": ["Provide destinations or allow custom ones."]})
        return attrs


class ActivityInterestConfigSerializer(StrictConfigSerializer):
    activities = _options()
    group_by_category = serializers.BooleanField(default=False)

    def validate(self, attrs):
        _unique_values(attrs["activities"], "activities")
        return attrs


class MatrixConfigSerializer(StrictConfigSerializer):
    rows = _options()
    columns = _options()


class ScreenConfigSerializer(StrictConfigSerializer):
    button_text = serializers.CharField(max_length=64, required=False)
    image_url = serializers.CharField(max_length=1024, required=False)


class ThankYouConfigSerializer(ScreenConfigSerializer):
    redirect_url = serializers.CharField(max_length=1024, required=False)


# ---- Registry ------------------------------------------------------------------

@dataclass(frozen=True)
class QuestionKind:
    config_serializer: Type[serializers.Serializer]
    answer: AnswerShape
    summary: Optional[SummaryKind]
    structural: bool = False
    # Config key holding the option list, for option-based shapes.
    options_key: Optional[str] = None
    defaults: Dict[str, Any] = field(default_factory=dict)


QT = QuestionType

TAXONOMY: Dict[str, QuestionKind] = {
    QT.SHORT_TEXT: QuestionKind(EmptyConfigSerializer, AnswerShape.TEXT, SummaryKind.COUNT),
    QT.LONG_TEXT: QuestionKind(EmptyConfigSerializer, AnswerShape.TEXT, SummaryKind.COUNT),
    QT.EMAIL: QuestionKind(EmptyConfigSerializer, AnswerShape.EMAIL, SummaryKind.COUNT),

    QT.SINGLE_CHOICE: QuestionKind(ChoiceConfigSerializer, AnswerShape.CHOICE, SummaryKind.CHOICE, options_key="options"),
    QT.MULTIPLE_CHOICE: QuestionKind(ChoiceConfigSerializer, AnswerShape.CHOICES, SummaryKind.CHOICE, options_key="options"),
    QT.YES_NO: QuestionKind(EmptyConfigSerializer, AnswerShape.BOOLEAN, SummaryKind.CHOICE),

    QT.RATING: QuestionKind(RatingConfigSerializer, AnswerShape.INTEGER, SummaryKind.NUMERIC),
    QT.NPS: QuestionKind(EmptyConfigSerializer, AnswerShape.INTEGER, SummaryKind.NUMERIC),
    QT.NUMERIC_SCALE: QuestionKind(ScaleConfigSerializer, AnswerShape.NUMBER, SummaryKind.NUMERIC),

    QT.IMAGE_CHOICE: QuestionKind(SelectionConfigSerializer, AnswerShape.SELECTION, SummaryKind.CHOICE, options_key="options"),
    QT.COLOR_PICKER: QuestionKind(ColorPickerConfigSerializer, AnswerShape.TEXT, SummaryKind.CHOICE),
    QT.EMOJI_REACTION: QuestionKind(ChoiceConfigSerializer, AnswerShape.CHOICE, SummaryKind.CHOICE, options_key="options"),

    QT.DATE_PICKER: QuestionKind(DatePickerConfigSerializer, AnswerShape.DATE, SummaryKind.COUNT),
    QT.TIME_SELECTOR: QuestionKind(TimeSelectorConfigSerializer, AnswerShape.TIME, SummaryKind.COUNT),
    QT.LOCATION_PICKER: QuestionKind(LocationPickerConfigSerializer, AnswerShape.ANY, SummaryKind.COUNT),
    QT.FILE_UPLOAD: QuestionKind(FileUploadConfigSerializer, AnswerShape.ANY, SummaryKind.COUNT),

    QT.SLIDER_SCALE: QuestionKind(SliderConfigSerializer, AnswerShape.NUMBER, SummaryKind.NUMERIC),
    QT.DRAG_RANK: QuestionKind(RankingConfigSerializer, AnswerShape.RANKING, SummaryKind.RANKING, options_key="options"),
    QT.BUDGET_ALLOCATOR: QuestionKind(BudgetConfigSerializer, AnswerShape.ALLOCATION, SummaryKind.ALLOCATION, options_key="categories"),

    QT.DESTINATION_PREFERENCE: QuestionKind(DestinationConfigSerializer, AnswerShape.CHOICES, SummaryKind.CHOICE, options_key="destinations"),
    QT.ACTIVITY_INTEREST: QuestionKind(ActivityInterestConfigSerializer, AnswerShape.INTEREST, SummaryKind.INTEREST, options_key="activities"),
    QT.ACCOMMODATION_STYLE: QuestionKind(SelectionConfigSerializer, AnswerShape.SELECTION, SummaryKind.CHOICE, options_key="options"),

    QT.MATRIX_RATING: QuestionKind(MatrixConfigSerializer, AnswerShape.MATRIX, SummaryKind.COUNT, options_key="rows"),
    QT.PREFERENCE_RANKING: QuestionKind(RankingConfigSerializer, AnswerShape.RANKING, SummaryKind.RANKING, options_key="options"),
    QT.PAIRED_COMPARISON: QuestionKind(RankingConfigSerializer, AnswerShape.ANY, SummaryKind.COUNT, options_key="options"),

    QT.WELCOME: QuestionKind(ScreenConfigSerializer, AnswerShape.NONE, None, structural=True),
    QT.INSTRUCTIONS: QuestionKind(ScreenConfigSerializer, AnswerShape.NONE, None, structural=True),
    QT.THANK_YOU: QuestionKind(ThankYouConfigSerializer, AnswerShape.NONE, None, structural=True),
    QT.STATEMENT: QuestionKind(ScreenConfigSerializer, AnswerShape.NONE, None, structural=True),
}


def kind_for(question_type: str) -> QuestionKind:
    try:
        return TAXONOMY[question_type]
    except KeyError:
        raise serializers.ValidationError({"type": [f"Unknown question type '{question_type}'."]})


def validate_config(question_type: str, config: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Validate `config` for `question_type`; returns the normalized config (defaults applied)."""
    kind = kind_for(question_type)
    ser = kind.config_serializer(data=dict(config or {}))
    if not ser.is_valid():
        raise serializers.ValidationError({"config": ser.errors})
    return dict(ser.validated_data)


# ---- Question definition -------------------------------------------------------

@dataclass(frozen=True)
class QuestionDef:
    """Immutable view of a question record used by the pure engine modules."""

    id: Any
    form_id: Any
    title: str
    type: str
    position: int
    is_required: bool = False
    config: Dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None
    placeholder: Optional[str] = None
    max_character_count: Optional[int] = None
    conditional_display: Optional[Dict[str, Any]] = None
    milestone: str = ""

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "QuestionDef":
        return cls(
            id=record["id"],
            form_id=record.get("form_id"),
            title=record.get("title") or "",
            type=record["type"],
            position=int(record.get("position") or 0),
            is_required=bool(record.get("is_required")),
            config=dict(record.get("config") or {}),
            description=record.get("description"),
            placeholder=record.get("placeholder"),
            max_character_count=record.get("max_character_count"),
            conditional_display=record.get("conditional_display") or None,
            milestone=record.get("milestone") or "",
        )

    @property
    def key(self) -> str:
        """Response-map key; ids are stringified so JSON round-trips keep them stable."""
        return str(self.id)

    @property
    def kind(self) -> QuestionKind:
        return kind_for(self.type)

    @property
    def is_structural(self) -> bool:
        return self.kind.structural

    @property
    def options(self) -> List[Dict[str, Any]]:
        key = self.kind.options_key
        return list(self.config.get(key) or []) if key else []

    def option_values(self) -> List[str]:
        return [str(o.get("value", o.get("label"))) for o in self.options]

    def option_label(self, value: Any) -> str:
        for o in self.options:
            if str(o.get("value", o.get("label"))) == str(value) or str(o.get("id")) == str(value):
                return o.get("label") or str(value)
        return str(value)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "form_id": self.form_id,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "position": self.position,
            "is_required": self.is_required,
            "config": self.config,
            "placeholder": self.placeholder,
            "max_character_count": self.max_character_count,
            "conditional_display": self.conditional_display,
            "milestone": self.milestone,
        }


def order_questions(questions) -> List[QuestionDef]:
    """Ascending position; equal positions fall back to the lower id."""
    return sorted(questions, key=lambda q: (q.position, q.id))
