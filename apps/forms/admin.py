from django.contrib import admin
from .models import Form, Question

admin.site.register(Form)
admin.site.register(Question)
