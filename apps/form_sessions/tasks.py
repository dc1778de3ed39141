from __future__ import annotations

import logging

from django.utils import timezone

from tripforms.celery import celery_app
from .models import ResponseSession, SessionStatus

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=10,
    retry_jitter=True,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def mark_expired_sessions_task(self, batch_size: int = 200) -> int:
    """
    Mark active sessions past their expiry as expired, in batches.
    Scans ResponseSession where status=ACTIVE and expires_at < now,
    updates them in chunks of `batch_size`. Returns total updated.
    """
    now = timezone.now()
    total = 0
    while True:
        ids = list(
            ResponseSession.objects.filter(
                status=SessionStatus.ACTIVE,
                expires_at__lt=now,
            )
            .order_by("id")
            .values_list("id", flat=True)[:batch_size]
        )
        if not ids:
            break

        updated = ResponseSession.objects.filter(id__in=ids).update(
            status=SessionStatus.EXPIRED,
            updated_at=now,
        )
        total += updated
        if updated < batch_size:
            break

    logger.info("Expired sessions marked", extra={"count": total})
    return total
