from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework import status

from apps.core.exceptions import EngineError
from apps.core.utility import engine_error_response
from .serializers import (
    SessionStartSerializer, AnswerSerializer, NavigateSerializer,
    BeginMilestoneSerializer, MilestoneEventSerializer,
)
from .services import FormSessionService
from .triggers import fire_milestone_event


class SessionRunnerView(APIView):
    """
    Base for the public runner endpoints.
    Sessions are addressed by their resume token; engine errors map to
    400/404/409/410/503 through `engine_error_response`.
    """
    # Public to allow anonymous runners
    permission_classes = []
    service_class = FormSessionService

    def get_service(self):
        return self.service_class()

    def handle_exception(self, exc):
        if isinstance(exc, EngineError):
            return engine_error_response(exc)
        return super().handle_exception(exc)

    def session_id(self, service, token: str):
        return service.session_for_token(token)["id"]


class SessionStartView(SessionRunnerView):
    """
    Start a new session on an active form.
    Returns the session (with its resume token) and the first step.
    """

    def post(self, request):
        payload = SessionStartSerializer(data=request.data)
        payload.is_valid(raise_exception=True)
        result = self.get_service().start_session(payload.validated_data["form_id"])
        return Response(result, status=status.HTTP_201_CREATED)


class SessionDetailView(SessionRunnerView):
    """Resume a session by token."""

    def get(self, request, token: str):
        return Response(self.get_service().resume(token))


class SessionStepView(SessionRunnerView):
    def get(self, request, token: str):
        service = self.get_service()
        return Response(service.render_step(self.session_id(service, token)))


class SessionAnswerView(SessionRunnerView):
    """
    Record one answer. An invalid value is kept on the step with its error
    and answered with 400.
    """

    def post(self, request, token: str):
        ser = AnswerSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        service = self.get_service()
        result = service.answer(
            self.session_id(service, token),
            ser.validated_data["question_id"],
            ser.validated_data.get("value"),
        )
        code = status.HTTP_200_OK if result["ok"] else status.HTTP_400_BAD_REQUEST
        return Response(result, status=code)


class SessionNavigateView(SessionRunnerView):
    def post(self, request, token: str):
        ser = NavigateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = dict(ser.validated_data)
        direction = data.pop("direction")
        service = self.get_service()
        return Response(service.navigate(self.session_id(service, token), direction, **data))


class SessionSubmitView(SessionRunnerView):
    """
    Submit the current step's response set.
    400 when answers are invalid, 503 (retryable) when the store failed.
    """

    def post(self, request, token: str):
        service = self.get_service()
        result = service.submit(self.session_id(service, token))
        if result["ok"]:
            return Response(result)
        code = status.HTTP_503_SERVICE_UNAVAILABLE if result.get("retryable") else status.HTTP_400_BAD_REQUEST
        return Response(result, status=code)


class SessionDiscardView(SessionRunnerView):
    def post(self, request, token: str):
        service = self.get_service()
        return Response(service.discard(self.session_id(service, token)))


class MilestoneBeginView(SessionRunnerView):
    def post(self, request, token: str):
        ser = BeginMilestoneSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        service = self.get_service()
        return Response(service.begin_milestone(self.session_id(service, token), ser.validated_data["milestone"]))


class MilestoneCompleteView(SessionRunnerView):
    def post(self, request, token: str):
        service = self.get_service()
        return Response(service.complete_milestone(self.session_id(service, token)))


class MilestoneEventView(SessionRunnerView):
    """
    Deliver an application event (e.g. itinerary_item_added).
    Enters the matching milestone, or returns {"triggered": false}.
    """

    def post(self, request, token: str):
        ser = MilestoneEventSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        service = self.get_service()
        result = fire_milestone_event(
            service,
            self.session_id(service, token),
            ser.validated_data["event_type"],
            ser.validated_data.get("payload"),
        )
        if result is None:
            return Response({"triggered": False})
        return Response({"triggered": True, **result})
