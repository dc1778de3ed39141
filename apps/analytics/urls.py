from django.urls import path
from .views import FormAnalyticsView, QuestionSummaryView, OverallSubmissionsView, SessionStatusView


urlpatterns = [
    path("forms/<int:form_id>/", FormAnalyticsView.as_view(), name="form-analytics"),
    path("questions/<int:question_id>/", QuestionSummaryView.as_view(), name="question-summary"),
    path("overall-submissions/", OverallSubmissionsView.as_view(), name="overall-submissions"),
    path("session-status/", SessionStatusView.as_view(), name="session-status"),
]
