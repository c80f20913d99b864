"""API views for work orders and safety incidents."""
from __future__ import annotations

import logging

from django.db.models import ProtectedError
from rest_framework import viewsets
from rest_framework.filters import OrderingFilter, SearchFilter

from workflow_service.middleware import get_correlation_id
from workflows.engine import initialize_workflow
from workflows.exceptions import NoDefaultTemplateError, PermissionDeniedError, WorkflowValidationError
from workflows.permissions import actor_for_request, organization_for_request

from .models import Incident, WorkOrder
from .serializers import IncidentSerializer, WorkOrderSerializer

logger = logging.getLogger(__name__)


class WorkflowEntityViewSet(viewsets.ModelViewSet):
    """Entity CRUD that starts the default workflow on create."""

    filter_backends = [SearchFilter, OrderingFilter]
    search_fields = ["title", "description", "status"]
    ordering_fields = ["created_at", "updated_at", "status"]
    ordering = ["-created_at"]

    def get_queryset(self):  # type: ignore[override]
        queryset = super().get_queryset().select_related("workflow_state")
        organization_id = organization_for_request(self.request)
        if organization_id is None:
            organization_id = actor_for_request(self.request).organization_id
        if organization_id is not None:
            queryset = queryset.filter(organization_id=organization_id)
        status = self.request.query_params.get("status")
        if status:
            queryset = queryset.filter(status=status)
        return queryset

    def perform_create(self, serializer):  # type: ignore[override]
        actor = actor_for_request(self.request)
        organization_id = serializer.validated_data.get("organization_id")
        if actor.organization_id is not None and organization_id != actor.organization_id:
            raise PermissionDeniedError(
                held_roles=actor.role_labels,
                detail="Records can only be created in your own organization.",
            )
        entity = serializer.save()
        correlation_id = get_correlation_id(self.request)
        try:
            initialize_workflow(
                entity,
                actor=actor,
                correlation_id=correlation_id,
            )
        except NoDefaultTemplateError:
            logger.warning(
                "[%s] No default %s workflow for organization %s; %s %s created without one",
                correlation_id,
                entity.MODULE,
                entity.organization_id,
                entity.ENTITY_TYPE,
                entity.pk,
            )
        entity.refresh_from_db()

    def perform_destroy(self, instance):  # type: ignore[override]
        try:
            instance.delete()
        except ProtectedError:
            raise WorkflowValidationError("Records with workflow history cannot be deleted.")


class WorkOrderViewSet(WorkflowEntityViewSet):
    queryset = WorkOrder.objects.all()
    serializer_class = WorkOrderSerializer
    search_fields = ["title", "description", "status", "priority"]
    ordering_fields = ["created_at", "updated_at", "priority", "due_date"]


class IncidentViewSet(WorkflowEntityViewSet):
    queryset = Incident.objects.all()
    serializer_class = IncidentSerializer
    search_fields = ["title", "description", "status", "severity"]
    ordering_fields = ["created_at", "updated_at", "severity", "occurred_at"]
