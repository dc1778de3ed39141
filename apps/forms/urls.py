from django.urls import path
from .views import (
    FormListCreateView, FormDetailView, QuestionCreateView,
    QuestionUpdateView, QuestionDetailView,
)

urlpatterns = [
    path("", FormListCreateView.as_view(), name="form-list-create"),
    path("<int:form_id>/detail/", FormDetailView.as_view(), name="form-detail"),
    path("<int:form_id>/questions/", QuestionCreateView.as_view(), name="question-create"),
    path("questions/<int:question_id>/", QuestionUpdateView.as_view(), name="question-update"),
    path("questions/<int:question_id>/detail/", QuestionDetailView.as_view(), name="question-detail"),
]
