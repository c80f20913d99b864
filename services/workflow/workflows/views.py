"""API views for workflow templates and running workflows."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from django.db.models import Avg, Count, ProtectedError, Q
from django.shortcuts import get_object_or_404
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action, api_view
from rest_framework.filters import OrderingFilter, SearchFilter
from rest_framework.request import Request
from rest_framework.response import Response

from workflow_service.middleware import get_correlation_id
from work_orders.models import ENTITY_MODELS, MODULE_MODELS, WorkflowEntity

from . import engine, events, read_model
from .exceptions import WorkflowValidationError
from .models import (
    BulkInitializationJob,
    StepRoleAssignment,
    WorkflowApproval,
    WorkflowExecutionLog,
    WorkflowTemplate,
    WorkflowTemplateStep,
)
from .permissions import WorkflowAction, actor_for_request, organization_for_request
from .serializers import (
    BulkInitializationJobSerializer,
    BulkInitializeRequestSerializer,
    StepConditionSerializer,
    StepEditorSerializer,
    StepRoleAssignmentSerializer,
    TransitionRequestSerializer,
    WorkflowApprovalSerializer,
    WorkflowExecutionLogSerializer,
    WorkflowStateSerializer,
    WorkflowTemplateSerializer,
)
from .tasks import bulk_initialize_workflows

logger = logging.getLogger(__name__)


def _require_organization(request: Request) -> int:
    organization_id = organization_for_request(request)
    if organization_id is None:
        raise WorkflowValidationError("The X-Organization-Id header is required.")
    return organization_id


class WorkflowTemplateViewSet(viewsets.ModelViewSet):
    queryset = WorkflowTemplate.objects.prefetch_related("steps__role_assignments").all()
    serializer_class = WorkflowTemplateSerializer
    filter_backends = [SearchFilter, OrderingFilter]
    search_fields = ["name", "description"]
    ordering_fields = ["name", "version", "updated_at"]
    ordering = ["name"]

    def get_queryset(self):  # type: ignore[override]
        queryset = super().get_queryset()
        organization_id = organization_for_request(self.request)
        if organization_id is not None:
            queryset = queryset.filter(organization_id=organization_id)
        module = self.request.query_params.get("module")
        if module:
            queryset = queryset.filter(module=module)
        return queryset

    def _publish(self, signal, template: WorkflowTemplate, template_id: Optional[int] = None) -> None:
        events.publish(
            signal,
            sender=WorkflowTemplate,
            correlation_id=get_correlation_id(self.request),
            organization_id=template.organization_id,
            template_id=template_id or template.pk,
            name=template.name,
            module=template.module,
        )

    def perform_create(self, serializer):  # type: ignore[override]
        template = serializer.save()
        self._publish(events.workflow_template_created, template)

    def perform_update(self, serializer):  # type: ignore[override]
        template = serializer.save()
        self._publish(events.workflow_template_updated, template)

    def perform_destroy(self, instance):  # type: ignore[override]
        template_id = instance.pk
        try:
            instance.delete()
        except ProtectedError:
            raise WorkflowValidationError(
                "The template has running workflows or recorded transitions and cannot be deleted."
            )
        self._publish(events.workflow_template_deleted, instance, template_id)

    @action(detail=True, methods=["post"], url_path="set-default")
    def set_default(self, request, *args, **kwargs):  # type: ignore[override]
        """Make this template the default of its module."""

        template = self.get_object()
        WorkflowTemplate.objects.filter(
            organization_id=template.organization_id,
            module=template.module,
            is_default=True,
        ).exclude(pk=template.pk).update(is_default=False)
        template.is_default = True
        template.save(update_fields=["is_default", "updated_at"])
        self._publish(events.workflow_template_updated, template)
        serializer = self.get_serializer(template)
        return Response(serializer.data)

    @action(detail=True, methods=["get", "post"], url_path="steps")
    def steps(self, request, *args, **kwargs):  # type: ignore[override]
        template = self.get_object()
        if request.method == "GET":
            serializer = StepEditorSerializer(template.steps.all(), many=True)
            return Response(serializer.data)

        serializer = StepEditorSerializer(data=request.data, context={"template": template})
        serializer.is_valid(raise_exception=True)
        step = serializer.save()
        return Response(StepEditorSerializer(step).data, status=status.HTTP_201_CREATED)


class WorkflowTemplateStepViewSet(
    mixins.RetrieveModelMixin,
    mixins.UpdateModelMixin,
    mixins.DestroyModelMixin,
    viewsets.GenericViewSet,
):
    queryset = WorkflowTemplateStep.objects.select_related("template").prefetch_related(
        "role_assignments"
    )
    serializer_class = StepEditorSerializer

    def get_queryset(self):  # type: ignore[override]
        queryset = super().get_queryset()
        organization_id = organization_for_request(self.request)
        if organization_id is not None:
            queryset = queryset.filter(organization_id=organization_id)
        return queryset

    def perform_destroy(self, instance):  # type: ignore[override]
        try:
            instance.delete()
        except ProtectedError:
            raise WorkflowValidationError(
                "The step is current in a running workflow or referenced by recorded transitions."
            )

    @action(detail=True, methods=["get", "post"], url_path="roles")
    def roles(self, request, *args, **kwargs):  # type: ignore[override]
        """List or upsert the role assignments of a step."""

        step = self.get_object()
        if request.method == "GET":
            serializer = StepRoleAssignmentSerializer(step.role_assignments.all(), many=True)
            return Response(serializer.data)

        serializer = StepRoleAssignmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        role_name = data.pop("role_name").strip()
        existing = step.role_assignments.filter(role_name__iexact=role_name).first()
        if existing is None:
            assignment = StepRoleAssignment.objects.create(
                step=step,
                role_name=role_name,
                organization_id=step.organization_id,
                **data,
            )
            code = status.HTTP_201_CREATED
        else:
            for attr, value in data.items():
                setattr(existing, attr, value)
            existing.save()
            assignment = existing
            code = status.HTTP_200_OK
        return Response(StepRoleAssignmentSerializer(assignment).data, status=code)

    @action(detail=True, methods=["get", "post"], url_path="conditions")
    def conditions(self, request, *args, **kwargs):  # type: ignore[override]
        step = self.get_object()
        if request.method == "GET":
            serializer = StepConditionSerializer(step.conditions.all(), many=True)
            return Response(serializer.data)

        serializer = StepConditionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        serializer.save(step=step)
        return Response(serializer.data, status=status.HTTP_201_CREATED)


def _entity(request: Request, entity_type: str, entity_id: int) -> WorkflowEntity:
    model = ENTITY_MODELS.get(entity_type)
    if model is None:
        raise WorkflowValidationError(f"Unknown entity type: {entity_type}")
    lookup: Dict[str, Any] = {"pk": entity_id}
    organization_id = organization_for_request(request)
    if organization_id is None:
        organization_id = actor_for_request(request).organization_id
    if organization_id is not None:
        lookup["organization_id"] = organization_id
    return get_object_or_404(model, **lookup)


def _state_data(entity: WorkflowEntity) -> Optional[Dict[str, Any]]:
    state = read_model.get_state(entity.ENTITY_TYPE, entity.pk)
    if state is None:
        return None
    return WorkflowStateSerializer(state).data


@api_view(["GET"])
def workflow_detail(request: Request, entity_type: str, entity_id: int) -> Response:
    """Current state of a workflow and the actions open to the caller."""

    entity = _entity(request, entity_type, entity_id)
    actor = actor_for_request(request)
    panel = engine.available_actions(entity, actor)
    return Response(
        {
            "entity_type": entity.ENTITY_TYPE,
            "entity_id": entity.pk,
            "state": _state_data(entity),
            **panel,
        }
    )


@api_view(["POST"])
def workflow_initialize(request: Request, entity_type: str, entity_id: int) -> Response:
    entity = _entity(request, entity_type, entity_id)
    actor = actor_for_request(request)
    state = engine.initialize_workflow(
        entity,
        actor=actor,
        correlation_id=get_correlation_id(request),
    )
    return Response(WorkflowStateSerializer(state).data, status=status.HTTP_201_CREATED)


def _transition(request: Request, entity_type: str, entity_id: int, action_name: str) -> Response:
    entity = _entity(request, entity_type, entity_id)
    serializer = TransitionRequestSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data
    command = engine.TransitionCommand(
        entity=entity,
        action=action_name,
        actor=actor_for_request(request),
        comments=data["comments"],
        assign_to_user_id=data["assign_to_user_id"],
        expected_version=data["expected_version"],
        correlation_id=get_correlation_id(request),
    )
    result = engine.execute_transition(command)
    payload = result.as_dict()
    payload["state"] = _state_data(entity)
    return Response(payload)


@api_view(["POST"])
def workflow_approve(request: Request, entity_type: str, entity_id: int) -> Response:
    return _transition(request, entity_type, entity_id, WorkflowAction.APPROVE)


@api_view(["POST"])
def workflow_auto_transition(request: Request, entity_type: str, entity_id: int) -> Response:
    return _transition(request, entity_type, entity_id, WorkflowAction.AUTO_TRANSITION)


@api_view(["POST"])
def workflow_reject(request: Request, entity_type: str, entity_id: int) -> Response:
    return _transition(request, entity_type, entity_id, WorkflowAction.REJECT)


@api_view(["POST"])
def workflow_reassign(request: Request, entity_type: str, entity_id: int) -> Response:
    return _transition(request, entity_type, entity_id, WorkflowAction.REASSIGN)


@api_view(["POST"])
def workflow_complete(request: Request, entity_type: str, entity_id: int) -> Response:
    return _transition(request, entity_type, entity_id, WorkflowAction.COMPLETE)


@api_view(["GET"])
def workflow_history(request: Request, entity_type: str, entity_id: int) -> Response:
    """Transition records of an entity, newest first."""

    entity = _entity(request, entity_type, entity_id)
    approvals = WorkflowApproval.objects.filter(**{entity.ENTITY_TYPE: entity}).select_related(
        "step", "from_step", "approved_by"
    )
    serializer = WorkflowApprovalSerializer(approvals, many=True)
    return Response(serializer.data)


class BulkInitializationJobViewSet(mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = BulkInitializationJob.objects.all()
    serializer_class = BulkInitializationJobSerializer
    lookup_field = "id"
    lookup_value_regex = "[0-9a-f-]+"

    @action(detail=False, methods=["post"], url_path="bulk-initialize")
    def bulk_initialize(self, request, *args, **kwargs):  # type: ignore[override]
        """Queue initialization of every entity of a module missing a workflow."""

        organization_id = _require_organization(request)
        payload_serializer = BulkInitializeRequestSerializer(data=request.data)
        payload_serializer.is_valid(raise_exception=True)
        job = BulkInitializationJob.objects.create(
            module=payload_serializer.validated_data["module"],
            organization_id=organization_id,
        )
        logger.info(
            "[%s] Queued bulk initialization %s for %s",
            get_correlation_id(request),
            job.id,
            job.module,
        )
        bulk_initialize_workflows.delay(str(job.id))
        job.refresh_from_db()
        serializer = self.get_serializer(job)
        return Response(serializer.data, status=status.HTTP_202_ACCEPTED)


@api_view(["GET"])
def workflow_status(request: Request, module: str) -> Response:
    """How many entities of a module have a running workflow."""

    organization_id = _require_organization(request)
    model = MODULE_MODELS.get(module)
    if model is None:
        raise WorkflowValidationError(f"Unknown module: {module}")
    entities = model.objects.filter(organization_id=organization_id)
    total = entities.count()
    with_workflow = entities.filter(workflow_state__isnull=False).count()
    return Response(
        {
            "totalEntities": total,
            "withWorkflow": with_workflow,
            "withoutWorkflow": total - with_workflow,
            "hasDefaultTemplate": engine.default_template(module, organization_id) is not None,
        }
    )


@api_view(["GET"])
def workflow_analytics(request: Request) -> Response:
    """Execution metrics of the engine for one organization."""

    organization_id = _require_organization(request)
    logs = WorkflowExecutionLog.objects.filter(organization_id=organization_id)
    totals = logs.aggregate(
        total=Count("id"),
        successful=Count("id", filter=Q(success=True)),
        average=Avg("execution_time_ms"),
    )
    recent = WorkflowExecutionLogSerializer(logs.order_by("-created_at", "-id")[:10], many=True)
    return Response(
        {
            "totalExecutions": totals["total"],
            "successfulExecutions": totals["successful"],
            "failedExecutions": totals["total"] - totals["successful"],
            "avgExecutionTimeMs": round(totals["average"] or 0, 2),
            "recentLogs": recent.data,
        }
    )
