from django.contrib import admin
from .models import ResponseSession, MilestoneTrigger

admin.site.register(ResponseSession)
admin.site.register(MilestoneTrigger)
