from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from .milestones import current_milestone

logger = logging.getLogger(__name__)


def _matches(trigger: Mapping[str, Any], payload: Mapping[str, Any]) -> bool:
    key = trigger.get("filter_key") or ""
    if not key:
        return True
    return str(payload.get(key, "")) == (trigger.get("filter_value") or "")


def fire_milestone_event(
    service,
    session_id: Any,
    event_type: str,
    payload: Optional[Mapping[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """
    Enter the milestone configured for an application event.

    The highest-priority active trigger of the session's form whose event type
    and payload filter match wins. Milestones already completed, or already in
    progress, are skipped. Returns the begin_milestone payload, or None when no
    trigger applies.
    """
    payload = payload or {}
    session = service.get_session(session_id)
    form = service.store.get("forms", session["form_id"])
    triggers = service.store.find(
        "milestone_triggers",
        {"form_id": session["form_id"], "event_type": event_type, "active": True},
        order=["-priority", "id"],
    )
    done = set(session.get("completed_milestones") or [])
    current = current_milestone(form or {}, session)

    for trigger in triggers:
        if not _matches(trigger, payload):
            continue
        name = trigger["milestone"]
        if name in done:
            continue
        if name == current and (session.get("state") or {}).get("responses"):
            # Respondent is already working through it.
            continue
        logger.info(
            "Milestone trigger fired",
            extra={"session_id": session_id, "event_type": event_type, "milestone": name},
        )
        return service.begin_milestone(session_id, name)
    return None
