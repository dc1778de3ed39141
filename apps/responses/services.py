from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping

from apps.core.store import Record, RecordStore

logger = logging.getLogger(__name__)


# ---- Persistence -----------------------------------------------------------------

def persist_response_set(store: RecordStore, session_id: Any, responses: Iterable[Mapping[str, Any]]) -> List[Record]:
    """
    Upsert a response set for one session.

    Flow:
      1) Load the session's existing rows for the questions being written.
      2) Update rows that already exist, insert the rest.

    Raises:
      PersistenceError (from the store) when a write fails; rows written before
      the failure are overwritten by the retry, never duplicated.

    Notes:
      - One row per (session, question); a later answer overwrites.
    """
    responses = list(responses)
    if not responses:
        return []

    existing: Dict[Any, Record] = {
        r["question_id"]: r
        for r in store.find(
            "responses",
            {"session_id": session_id, "question_id__in": [r["question_id"] for r in responses]},
        )
    }

    written: List[Record] = []
    for item in responses:
        row = existing.get(item["question_id"])
        if row is not None:
            written.append(store.update("responses", row["id"], {"value": item["value"]}))
        else:
            written.append(store.insert("responses", {
                "session_id": session_id,
                "question_id": item["question_id"],
                "value": item["value"],
            }))

    logger.info("Response set persisted", extra={"session_id": session_id, "count": len(written)})
    return written


# ---- Reads -----------------------------------------------------------------------

def responses_for_sessions(store: RecordStore, session_ids: Iterable[Any]) -> List[Record]:
    ids = list(session_ids)
    if not ids:
        return []
    return store.find("responses", {"session_id__in": ids}, order=["session_id", "question_id"])


def values_by_question(responses: Iterable[Mapping[str, Any]]) -> Dict[Any, List[Any]]:
    """question_id -> list of persisted values (one per session)."""
    out: Dict[Any, List[Any]] = {}
    for r in responses:
        out.setdefault(r["question_id"], []).append(r["value"])
    return out
