from __future__ import annotations

import logging

from django.core.paginator import Paginator
from django.db import IntegrityError, transaction
from django.db.models import Count
from django.shortcuts import get_object_or_404
from rest_framework import permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.core.serializer import PaginationQuerySerializer
from apps.core.utility import position_conflict_exists as _position_conflict_exists
from .models import Form, FormStatus, Question
from .serializers import (
    FormCreateSerializer, FormListSerializer, FormDetailSerializer,
    QuestionCreateSerializer, QuestionReadSerializer,
)

logger = logging.getLogger(__name__)

POSITION_CONFLICT = {"detail": "Position must be unique within the form.", "field": "position"}
FORM_IN_USE = {"detail": "The form already has sessions; its questions and milestones are frozen.", "code": "conflict"}


def _has_sessions(form: Form) -> bool:
    return form.sessions.exists()


class FormListCreateView(APIView):
    """
    GET: Paginated list with optional filters:
         - status (must be a valid FormStatus)
         - search (case-insensitive match on title)
         Query params: page (default 1), page_size (default 10, max 100)

    POST: Create a new Form (always starts as a draft unless a status is given).
    """
    permission_classes = [permissions.IsAdminUser]

    def get(self, request):
        qs = Form.objects.annotate(question_count=Count("questions")).order_by("id")

        status_param = (request.query_params.get("status") or "").strip()
        if status_param in dict(FormStatus.choices):
            qs = qs.filter(status=status_param)

        search = (request.query_params.get("search") or "").strip()
        if search:
            qs = qs.filter(title__icontains=search)

        pager_ser = PaginationQuerySerializer(data=request.query_params)
        pager_ser.is_valid(raise_exception=False)
        page = pager_ser.validated_data.get("page", 1)
        page_size = pager_ser.validated_data.get("page_size", 10)

        paginator = Paginator(qs, page_size)
        page_obj = paginator.get_page(page)
        return Response({
            "count": paginator.count,
            "results": FormListSerializer(page_obj.object_list, many=True).data,
        })

    @transaction.atomic
    def post(self, request):
        ser = FormCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        form = ser.save()
        logger.info("Form created", extra={"form_id": form.id})
        return Response(FormDetailSerializer(form).data, status=status.HTTP_201_CREATED)


class FormDetailView(APIView):
    """
    GET: Return a form with its ordered questions.
    PATCH: Partial update. Milestones cannot change once sessions exist;
           status only moves forward (draft -> active -> archived).
    DELETE: Remove a form that has no sessions.
    """
    permission_classes = [permissions.IsAdminUser]

    def get(self, request, form_id: int):
        form = get_object_or_404(Form.objects.prefetch_related("questions"), pk=form_id)
        return Response(FormDetailSerializer(form).data)

    @transaction.atomic
    def patch(self, request, form_id: int):
        form = get_object_or_404(Form, pk=form_id)
        ser = FormCreateSerializer(form, data=request.data, partial=True)
        ser.is_valid(raise_exception=True)

        milestones = ser.validated_data.get("milestones")
        if milestones is not None and milestones != form.milestones and _has_sessions(form):
            return Response(FORM_IN_USE, status=status.HTTP_409_CONFLICT)

        ser.save()
        return Response({"ok": True})

    @transaction.atomic
    def delete(self, request, form_id: int):
        form = get_object_or_404(Form, pk=form_id)
        if _has_sessions(form):
            return Response(FORM_IN_USE, status=status.HTTP_409_CONFLICT)
        form.delete()
        return Response(status=status.HTTP_204_NO_CONTENT)


class QuestionCreateView(APIView):
    """
    POST: Create a question under a form.
         - Config is validated and normalized by the question type taxonomy.
         - Enforces unique position within the form (friendly error before DB).
    """
    permission_classes = [permissions.IsAdminUser]

    @transaction.atomic
    def post(self, request, form_id: int):
        form = get_object_or_404(Form, pk=form_id)
        if _has_sessions(form):
            return Response(FORM_IN_USE, status=status.HTTP_409_CONFLICT)

        ser = QuestionCreateSerializer(data=request.data, context={"form": form})
        ser.is_valid(raise_exception=True)

        if _position_conflict_exists(form, ser.validated_data.get("position")):
            return Response(POSITION_CONFLICT, status=status.HTTP_400_BAD_REQUEST)

        try:
            with transaction.atomic():
                question = ser.save(form=form)
        except IntegrityError:
            # DB uniqueness rule fired (race)
            return Response(POSITION_CONFLICT, status=status.HTTP_400_BAD_REQUEST)

        return Response({"id": question.id}, status=status.HTTP_201_CREATED)


class QuestionUpdateView(APIView):
    """
    PATCH: Update question attributes.
    DELETE: Remove a question. Both are refused once the form has sessions.
    """
    permission_classes = [permissions.IsAdminUser]

    @transaction.atomic
    def patch(self, request, question_id: int):
        q = get_object_or_404(Question.objects.select_related("form"), pk=question_id)
        if _has_sessions(q.form):
            return Response(FORM_IN_USE, status=status.HTTP_409_CONFLICT)

        ser = QuestionCreateSerializer(q, data=request.data, partial=True, context={"form": q.form})
        ser.is_valid(raise_exception=True)

        if _position_conflict_exists(q.form, ser.validated_data.get("position"), exclude_pk=q.pk):
            return Response(POSITION_CONFLICT, status=status.HTTP_400_BAD_REQUEST)

        try:
            with transaction.atomic():
                ser.save()
        except IntegrityError:
            return Response(POSITION_CONFLICT, status=status.HTTP_400_BAD_REQUEST)
        return Response({"id": q.id})

    @transaction.atomic
    def delete(self, request, question_id: int):
        q = get_object_or_404(Question.objects.select_related("form"), pk=question_id)
        if _has_sessions(q.form):
            return Response(FORM_IN_USE, status=status.HTTP_409_CONFLICT)
        if Question.objects.filter(form=q.form, conditional_display__depends_on=q.pk).exists():
            return Response(
                {"detail": "Other questions depend on this one.", "field": "conditional_display"},
                status=status.HTTP_400_BAD_REQUEST,
            )
        q.delete()
        return Response(status=status.HTTP_204_NO_CONTENT)


class QuestionDetailView(APIView):
    """
    GET: Return a single question.
    """
    permission_classes = [permissions.IsAdminUser]

    def get(self, request, question_id: int):
        q = get_object_or_404(Question, pk=question_id)
        return Response(QuestionReadSerializer(q).data)
