from __future__ import annotations

from datetime import timedelta
from django.db.models.functions import TruncDate, TruncWeek
from django.db.models import Count
from django.utils import timezone
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework import permissions

from apps.core.exceptions import NotFoundError
from apps.core.utility import engine_error_response, parse_int
from apps.form_sessions.models import ResponseSession, SessionStatus
from .services import get_form_analytics, get_question_summary


class FormAnalyticsView(APIView):
    """
    Views, submissions, completion rate, drop-off and per-question summaries
    for one form, recomputed on every request.
    """
    permission_classes = [permissions.IsAdminUser]

    def get(self, request, form_id: int):
        try:
            return Response(get_form_analytics(form_id))
        except NotFoundError as exc:
            return engine_error_response(exc)


class QuestionSummaryView(APIView):
    permission_classes = [permissions.IsAdminUser]

    def get(self, request, question_id: int):
        try:
            return Response(get_question_summary(question_id))
        except NotFoundError as exc:
            return engine_error_response(exc)


class OverallSubmissionsView(APIView):
    permission_classes = [permissions.IsAdminUser]

    def get(self, request):
        """
        Returns time series of completed sessions grouped by day or ISO week.

        Query params:
          - window: 'day' (default) or 'week'
          - days: lookback window in days (default 30)
          - form_id: restrict to one form
        Response:
          { labels: [...], data: [...] }
        """
        window = (request.query_params.get("window") or "day").lower()
        days = max(1, min(365, parse_int(request.query_params.get("days"), 30)))

        since = timezone.now() - timedelta(days=days)
        qs = ResponseSession.objects.filter(status=SessionStatus.COMPLETED, completed_at__gte=since)
        form_id = parse_int(request.query_params.get("form_id"), 0)
        if form_id > 0:
            qs = qs.filter(form_id=form_id)

        trunc = TruncWeek if window == "week" else TruncDate
        series = (
            qs.annotate(bucket=trunc("completed_at"))
              .values("bucket")
              .order_by("bucket")
              .annotate(count=Count("id"))
        )
        if window == "week":
            labels = [s["bucket"].date().isoformat() for s in series]
        else:
            labels = [s["bucket"].isoformat() for s in series]
        data = [s["count"] for s in series]

        return Response({"labels": labels, "data": data})


class SessionStatusView(APIView):
    permission_classes = [permissions.IsAdminUser]

    def get(self, request):
        """
        Counts sessions by status (active/completed/expired).
        Optional filter: form_id
        """
        qs = ResponseSession.objects.all()
        form_id = parse_int(request.query_params.get("form_id"), 0)
        if form_id > 0:
            qs = qs.filter(form_id=form_id)

        map_counts = {row["status"]: row["count"] for row in qs.values("status").annotate(count=Count("id"))}
        order = [SessionStatus.ACTIVE, SessionStatus.COMPLETED, SessionStatus.EXPIRED]
        labels = [s.value for s in order]
        data = [map_counts.get(s, 0) for s in order]
        return Response({"labels": labels, "data": data})
