"""API views for the identity records."""
from __future__ import annotations

from django.db.models import ProtectedError
from rest_framework import viewsets
from rest_framework.decorators import api_view
from rest_framework.exceptions import ValidationError
from rest_framework.filters import OrderingFilter, SearchFilter
from rest_framework.response import Response

from .models import Role, User
from .serializers import RoleSerializer, UserSerializer


class RoleViewSet(viewsets.ModelViewSet):
    queryset = Role.objects.all()
    serializer_class = RoleSerializer
    filter_backends = [SearchFilter, OrderingFilter]
    search_fields = ["name", "description"]
    ordering = ["name"]


class UserViewSet(viewsets.ModelViewSet):
    queryset = User.objects.prefetch_related("roles").all()
    serializer_class = UserSerializer
    filter_backends = [SearchFilter, OrderingFilter]
    search_fields = ["email", "display_name"]
    ordering_fields = ["display_name", "created_at"]
    ordering = ["display_name"]

    def get_queryset(self):  # type: ignore[override]
        queryset = super().get_queryset()
        organization_id = self.request.headers.get("X-Organization-Id")
        if organization_id and organization_id.isdigit():
            queryset = queryset.filter(organization_id=int(organization_id))
        return queryset

    def perform_destroy(self, instance):  # type: ignore[override]
        try:
            instance.delete()
        except ProtectedError:
            raise ValidationError(
                {"detail": "Users who acted on a workflow cannot be deleted. Deactivate them instead."}
            )


@api_view(["GET"])
def health(request):  # type: ignore[override]
    """Readiness endpoint for orchestration tooling."""

    return Response({"status": "ok", "service": "workflow-service"})
