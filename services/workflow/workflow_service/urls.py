"""URL configuration for the maintenance workflow service."""
from django.urls import include, path

urlpatterns = [
    path("api/", include("accounts.urls")),
    path("api/", include("work_orders.urls")),
    path("api/", include("workflows.urls")),
]
