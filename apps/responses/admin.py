from django.contrib import admin
from .models import FormResponse

admin.site.register(FormResponse)
