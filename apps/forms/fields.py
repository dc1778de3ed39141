"""DRF fields for the composite answer shapes of the question taxonomy."""
from __future__ import annotations

from datetime import date, time
from typing import Iterable, Optional

from rest_framework import serializers


class IsoDateField(serializers.DateField):
    """DateField whose internal value stays an ISO string (answers are stored as JSON)."""

    default_error_messages = {
        "before_min": "Date must be on or after {min_date}.",
        "after_max": "Date must be on or before {max_date}.",
    }

    def __init__(self, min_date: Optional[str] = None, max_date: Optional[str] = None, **kwargs):
        self.min_date = min_date
        self.max_date = max_date
        super().__init__(**kwargs)

    def to_internal_value(self, value):
        parsed: date = super().to_internal_value(value)
        if self.min_date and parsed < date.fromisoformat(self.min_date):
            self.fail("before_min", min_date=self.min_date)
        if self.max_date and parsed > date.fromisoformat(self.max_date):
            self.fail("after_max", max_date=self.max_date)
        return parsed.isoformat()


class IsoTimeField(serializers.TimeField):
    def to_internal_value(self, value):
        parsed: time = super().to_internal_value(value)
        return parsed.isoformat(timespec="minutes")


class RankingField(serializers.ListField):
    """Ordered list of distinct configured option values; first entry is rank 1."""

    default_error_messages = {
        "unknown_option": "{value} is not one of the options.",
        "duplicate": "Each option can be ranked only once.",
    }

    def __init__(self, choices: Iterable[str], **kwargs):
        self.choices = [str(c) for c in choices]
        kwargs.setdefault("child", serializers.CharField())
        super().__init__(**kwargs)

    def to_internal_value(self, data):
        values = super().to_internal_value(data)
        for v in values:
            if v not in self.choices:
                self.fail("unknown_option", value=v)
        if len(values) != len(set(values)):
            self.fail("duplicate")
        return values


class KeyedMappingField(serializers.DictField):
    """Mapping whose keys must come from a configured option list."""

    default_error_messages = {
        "unknown_key": "{item} is not one of the configured items.",
    }

    def __init__(self, keys: Iterable[str], **kwargs):
        self.allowed_keys = [str(k) for k in keys]
        super().__init__(**kwargs)

    def to_internal_value(self, data):
        out = super().to_internal_value(data)
        for key in out:
            if key not in self.allowed_keys:
                self.fail("unknown_key", item=key)
        return out


class AllocationField(KeyedMappingField):
    """category -> non-negative amount; the sum may not exceed the total budget."""

    default_error_messages = {
        "over_budget": "Allocations add up to {total}, which exceeds the budget of {budget}.",
    }

    def __init__(self, keys: Iterable[str], total_budget: float = 100, allow_exceed_total: bool = False, **kwargs):
        self.total_budget = float(total_budget)
        self.allow_exceed_total = allow_exceed_total
        kwargs.setdefault("child", serializers.FloatField(min_value=0))
        super().__init__(keys, **kwargs)

    def to_internal_value(self, data):
        out = super().to_internal_value(data)
        total = sum(out.values())
        if not self.allow_exceed_total and total > self.total_budget:
            self.fail("over_budget", total=total, budget=self.total_budget)
        return out


class InterestField(KeyedMappingField):
    """activity -> interest level on a 1-5 scale."""

    def __init__(self, keys: Iterable[str], **kwargs):
        kwargs.setdefault("child", serializers.IntegerField(min_value=1, max_value=5))
        super().__init__(keys, **kwargs)


class MatrixField(KeyedMappingField):
    """row -> one of the configured column values."""

    def __init__(self, rows: Iterable[str], columns: Iterable[str], **kwargs):
        kwargs.setdefault("child", serializers.ChoiceField(choices=[str(c) for c in columns]))
        super().__init__(rows, **kwargs)
