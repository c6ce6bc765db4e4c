"""
talentdesk/urls.py

Root URL configuration.
"""

from django.conf import settings
from django.conf.urls.static import static
from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    # ── Admin ──────────────────────────────────────────────────────────────────
    path("admin/", admin.site.urls),

    # ── Bulk CV import (trigger endpoint + session status API) ─────────────────
    path("imports/", include("imports.urls", namespace="imports")),
] + static(settings.MEDIA_URL, document_root=settings.MEDIA_ROOT)
