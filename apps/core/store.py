from __future__ import annotations

import copy
import itertools
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

from django.apps import apps as django_apps
from django.db import DatabaseError, transaction
from django.utils import timezone

from .exceptions import NotFoundError, PersistenceError

Record = Dict[str, Any]

# Collection name -> Django model label.
COLLECTIONS: Mapping[str, str] = {
    "forms": "forms.Form",
    "questions": "forms.Question",
    "sessions": "form_sessions.ResponseSession",
    "responses": "responses.FormResponse",
    "milestone_triggers": "form_sessions.MilestoneTrigger",
}


class RecordStore:
    """
    Record-oriented read/write contract the form engine depends on.

    Records are plain dicts keyed by field name (foreign keys as `<name>_id`).
    `filter` is a mapping of field -> value; a `__in` suffix matches any value of
    a sequence. `order` is a list of field names, `-` prefix for descending.
    """

    def insert(self, collection: str, record: Mapping[str, Any]) -> Record:
        raise NotImplementedError

    def update(self, collection: str, record_id: Any, patch: Mapping[str, Any]) -> Record:
        raise NotImplementedError

    def find(
        self,
        collection: str,
        filter: Optional[Mapping[str, Any]] = None,
        order: Optional[Sequence[str]] = None,
    ) -> List[Record]:
        raise NotImplementedError

    def get(self, collection: str, record_id: Any) -> Optional[Record]:
        raise NotImplementedError

    def locked(self, collection: str, record_id: Any):
        """
        Context manager holding an exclusive lock on one record, across
        processes where the backend supports it. Reads and writes of that
        record inside the block see the latest committed version.
        """
        raise NotImplementedError


def _check_collection(collection: str) -> None:
    if collection not in COLLECTIONS:
        raise NotFoundError(f"Unknown collection '{collection}'", collection=collection)


# ---- Django ORM -----------------------------------------------------------------

class DjangoRecordStore(RecordStore):
    """RecordStore backed by the project's Django models."""

    def _model(self, collection: str):
        _check_collection(collection)
        return django_apps.get_model(COLLECTIONS[collection])

    @staticmethod
    def _to_record(obj) -> Record:
        return {f.attname: f.value_from_object(obj) for f in obj._meta.concrete_fields}

    def insert(self, collection: str, record: Mapping[str, Any]) -> Record:
        model = self._model(collection)
        try:
            with transaction.atomic():
                obj = model(**dict(record))
                obj.save()
        except DatabaseError as exc:
            raise PersistenceError(f"Insert into {collection} failed: {exc}", collection=collection) from exc
        return self._to_record(obj)

    def update(self, collection: str, record_id: Any, patch: Mapping[str, Any]) -> Record:
        model = self._model(collection)
        try:
            with transaction.atomic():
                obj = model.objects.select_for_update().filter(pk=record_id).first()
                if obj is None:
                    raise NotFoundError(f"{collection} record {record_id} not found", collection=collection)
                for key, value in patch.items():
                    setattr(obj, key, value)
                fields = list(patch.keys())
                if any(f.name == "updated_at" for f in model._meta.concrete_fields):
                    fields.append("updated_at")
                obj.save(update_fields=fields)
        except DatabaseError as exc:
            raise PersistenceError(f"Update of {collection} failed: {exc}", collection=collection) from exc
        return self._to_record(obj)

    def find(
        self,
        collection: str,
        filter: Optional[Mapping[str, Any]] = None,
        order: Optional[Sequence[str]] = None,
    ) -> List[Record]:
        model = self._model(collection)
        qs = model.objects.filter(**dict(filter or {}))
        if order:
            qs = qs.order_by(*order)
        else:
            qs = qs.order_by("pk")
        try:
            return [self._to_record(obj) for obj in qs]
        except DatabaseError as exc:
            raise PersistenceError(f"Query on {collection} failed: {exc}", collection=collection) from exc

    def get(self, collection: str, record_id: Any) -> Optional[Record]:
        model = self._model(collection)
        try:
            obj = model.objects.filter(pk=record_id).first()
        except (ValueError, TypeError):
            # Malformed id for this primary key type.
            return None
        except DatabaseError as exc:
            raise PersistenceError(f"Lookup on {collection} failed: {exc}", collection=collection) from exc
        return self._to_record(obj) if obj is not None else None

    @contextmanager
    def locked(self, collection: str, record_id: Any) -> Iterator[None]:
        """Row lock (`SELECT ... FOR UPDATE`) held until the block's transaction commits."""
        model = self._model(collection)
        try:
            with transaction.atomic():
                rows = list(model.objects.select_for_update().filter(pk=record_id).values_list("pk", flat=True))
                if not rows:
                    raise NotFoundError(f"{collection} record {record_id} not found", collection=collection)
                yield
        except DatabaseError as exc:
            raise PersistenceError(f"Locking {collection} failed: {exc}", collection=collection) from exc


# ---- In-process ---------------------------------------------------------------

def _matches(record: Mapping[str, Any], filter: Mapping[str, Any]) -> bool:
    for key, expected in filter.items():
        if key.endswith("__in"):
            if record.get(key[:-4]) not in set(expected):
                return False
        elif record.get(key) != expected:
            return False
    return True


def _sorted(records: Iterable[Record], order: Sequence[str]) -> List[Record]:
    result = list(records)
    # Stable sorts applied from the least significant key.
    for key in reversed(order):
        desc = key.startswith("-")
        name = key[1:] if desc else key
        result.sort(key=lambda r: (r.get(name) is None, r.get(name)), reverse=desc)
    return result


class MemoryRecordStore(RecordStore):
    """
    Thread-safe in-process RecordStore.

    Used by the test-suite and for previewing forms without touching the
    database. Ids are auto-incremented integers per collection; records are
    copied on the way in and out so callers never share mutable state.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._data: Dict[str, Dict[Any, Record]] = {name: {} for name in COLLECTIONS}
        self._ids = {name: itertools.count(1) for name in COLLECTIONS}

    def insert(self, collection: str, record: Mapping[str, Any]) -> Record:
        _check_collection(collection)
        with self._lock:
            row = copy.deepcopy(dict(record))
            row.setdefault("id", next(self._ids[collection]))
            now = timezone.now()
            row.setdefault("created_at", now)
            row.setdefault("updated_at", now)
            self._data[collection][row["id"]] = row
            return copy.deepcopy(row)

    def update(self, collection: str, record_id: Any, patch: Mapping[str, Any]) -> Record:
        _check_collection(collection)
        with self._lock:
            row = self._data[collection].get(record_id)
            if row is None:
                raise NotFoundError(f"{collection} record {record_id} not found", collection=collection)
            row.update(copy.deepcopy(dict(patch)))
            row["updated_at"] = timezone.now()
            return copy.deepcopy(row)

    def find(
        self,
        collection: str,
        filter: Optional[Mapping[str, Any]] = None,
        order: Optional[Sequence[str]] = None,
    ) -> List[Record]:
        _check_collection(collection)
        with self._lock:
            rows = [r for r in self._data[collection].values() if _matches(r, filter or {})]
            rows = _sorted(rows, order or ["id"])
            return copy.deepcopy(rows)

    def get(self, collection: str, record_id: Any) -> Optional[Record]:
        _check_collection(collection)
        with self._lock:
            row = self._data[collection].get(record_id)
            return copy.deepcopy(row) if row is not None else None

    @contextmanager
    def locked(self, collection: str, record_id: Any) -> Iterator[None]:
        _check_collection(collection)
        with self._lock:
            if record_id not in self._data[collection]:
                raise NotFoundError(f"{collection} record {record_id} not found", collection=collection)
            yield
