from django.urls import path
from .views import (
    SessionStartView, SessionDetailView, SessionStepView, SessionAnswerView,
    SessionNavigateView, SessionSubmitView, SessionDiscardView,
    MilestoneBeginView, MilestoneCompleteView, MilestoneEventView,
)

urlpatterns = [
    path("start/", SessionStartView.as_view(), name="session-start"),
    path("<str:token>/", SessionDetailView.as_view(), name="session-detail"),
    path("<str:token>/step/", SessionStepView.as_view(), name="session-step"),
    path("<str:token>/answers/", SessionAnswerView.as_view(), name="session-answer"),
    path("<str:token>/navigate/", SessionNavigateView.as_view(), name="session-navigate"),
    path("<str:token>/submit/", SessionSubmitView.as_view(), name="session-submit"),
    path("<str:token>/discard/", SessionDiscardView.as_view(), name="session-discard"),
    # milestones
    path("<str:token>/milestones/begin/", MilestoneBeginView.as_view(), name="milestone-begin"),
    path("<str:token>/milestones/complete/", MilestoneCompleteView.as_view(), name="milestone-complete"),
    path("<str:token>/events/", MilestoneEventView.as_view(), name="milestone-event"),
]
