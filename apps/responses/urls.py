from django.urls import path
from .views import FormResponsesView, SessionResponsesView

urlpatterns = [
    path("forms/<int:form_id>/", FormResponsesView.as_view(), name="form-responses"),
    path("sessions/<int:session_id>/", SessionResponsesView.as_view(), name="session-responses"),
]
