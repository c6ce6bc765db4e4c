from django.urls import path

from imports import views

app_name = "imports"

urlpatterns = [
    path("process/", views.process_import, name="process"),
    path("sessions/", views.SessionCreateView.as_view(), name="session_create"),
    path("sessions/<int:pk>/", views.SessionStatusView.as_view(), name="session_status"),
]
