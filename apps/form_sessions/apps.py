from django.apps import AppConfig


class FormSessionsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.form_sessions"
    label = "form_sessions"
