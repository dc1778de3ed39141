from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework import permissions
from django.shortcuts import get_object_or_404
from django.db.models import Count, Prefetch
from django.core.paginator import Paginator

from apps.core.serializer import PaginationQuerySerializer
from apps.forms.models import Form
from apps.form_sessions.models import ResponseSession, SessionStatus
from .models import FormResponse
from .serializers import SessionBriefSerializer, SessionResponsesSerializer


class FormResponsesView(APIView):
    """
    GET: Paginated sessions of a form, newest first, with their response counts.
         Optional filter: status (active/completed/expired).
         Pass `include=responses` to embed each session's persisted answers.
    """
    permission_classes = [permissions.IsAdminUser]

    def get(self, request, form_id: int):
        form = get_object_or_404(Form, pk=form_id)
        qs = (
            ResponseSession.objects
            .filter(form=form)
            .annotate(response_count=Count("responses"))
            .order_by("-created_at", "-id")
        )

        status_filter = (request.query_params.get("status") or "").strip()
        if status_filter in dict(SessionStatus.choices):
            qs = qs.filter(status=status_filter)

        embed = (request.query_params.get("include") or "").strip() == "responses"
        if embed:
            qs = qs.prefetch_related(
                Prefetch("responses", queryset=FormResponse.objects.select_related("question").order_by("question__position"))
            )

        pager_ser = PaginationQuerySerializer(data=request.query_params)
        pager_ser.is_valid(raise_exception=False)
        page = pager_ser.validated_data.get("page", 1)
        page_size = pager_ser.validated_data.get("page_size", 10)

        paginator = Paginator(qs, page_size)
        page_obj = paginator.get_page(page)
        serializer = SessionResponsesSerializer if embed else SessionBriefSerializer
        return Response({
            "count": paginator.count,
            "results": serializer(page_obj.object_list, many=True).data,
        })


class SessionResponsesView(APIView):
    """GET: One session's persisted response set."""
    permission_classes = [permissions.IsAdminUser]

    def get(self, request, session_id: int):
        sess = get_object_or_404(
            ResponseSession.objects.prefetch_related(
                Prefetch("responses", queryset=FormResponse.objects.select_related("question").order_by("question__position"))
            ),
            pk=session_id,
        )
        return Response(SessionResponsesSerializer(sess).data)
