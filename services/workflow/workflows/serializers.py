"""Serializers for workflow templates, steps and running workflows."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from django.db import transaction
from django.db.models import ProtectedError
from rest_framework import serializers

from work_orders.models import MODULE_MODELS

from .models import (
    BulkInitializationJob,
    StepCondition,
    StepRoleAssignment,
    WorkflowApproval,
    WorkflowExecutionLog,
    WorkflowState,
    WorkflowTemplate,
    WorkflowTemplateStep,
)
from .permissions import RoleName
from .steps import RejectionMode, order_steps, rejection_mode_for, resolve_reject_target


class StepRoleAssignmentSerializer(serializers.ModelSerializer):
    class Meta:
        model = StepRoleAssignment
        fields = [
            "id",
            "role_name",
            "can_approve",
            "can_reject",
            "can_assign",
            "can_view",
            "can_edit",
            "is_primary_assignee",
        ]
        # Uniqueness per step is handled by the upsert.
        validators: List[Any] = []


class StepConditionSerializer(serializers.ModelSerializer):
    class Meta:
        model = StepCondition
        fields = ["id", "field_name", "operator", "expected_value", "is_active", "created_at"]
        read_only_fields = ["created_at"]


STEP_FIELDS = [
    "id",
    "name",
    "description",
    "step_order",
    "step_type",
    "approval_type",
    "required_approvals",
    "is_required",
    "sla_hours",
    "reject_target_step",
    "allows_work_order_creation",
    "work_order_status",
    "incident_status",
    "auto_assign_enabled",
    "is_active",
]


APPROVER_REQUIRED = "At least one role must be able to approve this step."


def _has_approver(roles: List[Dict[str, Any]]) -> bool:
    return any(role.get("can_approve") for role in roles)


def _sync_roles(step: WorkflowTemplateStep, roles: List[Dict[str, Any]]) -> None:
    """Upsert one assignment per listed role and drop the unlisted ones."""

    existing = {RoleName.parse(a.role_name): a for a in step.role_assignments.all()}
    kept = set()
    for role in roles:
        key = RoleName.parse(role["role_name"])
        kept.add(key)
        assignment = existing.get(key)
        values = {name: value for name, value in role.items() if name != "role_name"}
        if assignment is None:
            StepRoleAssignment.objects.create(
                step=step,
                role_name=role["role_name"].strip(),
                organization_id=step.organization_id,
                **values,
            )
            continue
        for name, value in values.items():
            setattr(assignment, name, value)
        assignment.save()
    stale = [a.id for key, a in existing.items() if key not in kept]
    if stale:
        StepRoleAssignment.objects.filter(id__in=stale).delete()


class WorkflowTemplateStepSerializer(serializers.ModelSerializer):
    """Step as listed inside its template."""

    roles = StepRoleAssignmentSerializer(many=True, required=False, source="role_assignments")

    class Meta:
        model = WorkflowTemplateStep
        fields = STEP_FIELDS + ["roles"]
        read_only_fields = ["step_order", "reject_target_step"]

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        approval_type = attrs.get("approval_type", WorkflowTemplateStep.SINGLE)
        if approval_type != WorkflowTemplateStep.NONE and not _has_approver(attrs.get("role_assignments", [])):
            raise serializers.ValidationError({"roles": APPROVER_REQUIRED})
        return attrs


class StepEditorSerializer(serializers.ModelSerializer):
    """Create and update a single step together with its role assignments."""

    roles = StepRoleAssignmentSerializer(many=True, required=False, source="role_assignments")
    rejection_mode = serializers.ChoiceField(
        choices=RejectionMode.CHOICES, required=False, write_only=True
    )
    reject_to_step_id = serializers.IntegerField(required=False, allow_null=True, write_only=True)

    class Meta:
        model = WorkflowTemplateStep
        fields = STEP_FIELDS + ["template", "roles", "rejection_mode", "reject_to_step_id"]
        read_only_fields = ["template", "reject_target_step"]
        validators: List[Any] = []

    def _template(self) -> WorkflowTemplate:
        if self.instance is not None:
            return self.instance.template
        return self.context["template"]

    def validate_name(self, value: str) -> str:
        if not value.strip():
            raise serializers.ValidationError("Step name is required.")
        return value.strip()

    def validate_roles(self, value: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        seen = set()
        for role in value:
            key = RoleName.parse(role["role_name"])
            if not key.key:
                raise serializers.ValidationError("Role name cannot be empty.")
            if key in seen:
                raise serializers.ValidationError(f"Role {role['role_name']} is listed twice.")
            seen.add(key)
        return value

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        approval_type = attrs.get(
            "approval_type",
            self.instance.approval_type if self.instance is not None else WorkflowTemplateStep.SINGLE,
        )
        if approval_type != WorkflowTemplateStep.NONE:
            roles = attrs.get("role_assignments")
            if roles is not None:
                has_approver = _has_approver(roles)
            elif self.instance is not None:
                has_approver = self.instance.role_assignments.filter(can_approve=True).exists()
            else:
                has_approver = False
            if not has_approver:
                raise serializers.ValidationError({"roles": APPROVER_REQUIRED})

        template = self._template()
        step_order = attrs.get("step_order", self.instance.step_order if self.instance else None)
        if step_order is not None:
            clash = template.steps.filter(step_order=step_order)
            if self.instance is not None:
                clash = clash.exclude(pk=self.instance.pk)
            if clash.exists():
                raise serializers.ValidationError({"step_order": "Another step already uses this position."})
        return attrs

    def _apply_rejection_mode(self, step: WorkflowTemplateStep, mode: Optional[str], target_id: Optional[int]) -> None:
        if mode is None:
            return
        steps = order_steps(step.template.steps.all())
        try:
            step.reject_target_step_id = resolve_reject_target(mode, step, steps, target_id)
        except ValueError as exc:
            raise serializers.ValidationError({"rejection_mode": str(exc)})
        step.save(update_fields=["reject_target_step", "updated_at"])

    @transaction.atomic
    def create(self, validated_data: Dict[str, Any]) -> WorkflowTemplateStep:
        roles = validated_data.pop("role_assignments", [])
        mode = validated_data.pop("rejection_mode", None)
        target_id = validated_data.pop("reject_to_step_id", None)
        template = self._template()
        if "step_order" not in validated_data:
            last = template.steps.order_by("-step_order").first()
            validated_data["step_order"] = (last.step_order + 1) if last else 1
        step = WorkflowTemplateStep.objects.create(
            template=template,
            organization_id=template.organization_id,
            **validated_data,
        )
        _sync_roles(step, roles)
        self._apply_rejection_mode(step, mode, target_id)
        return step

    @transaction.atomic
    def update(self, instance: WorkflowTemplateStep, validated_data: Dict[str, Any]) -> WorkflowTemplateStep:
        roles = validated_data.pop("role_assignments", None)
        mode = validated_data.pop("rejection_mode", None)
        target_id = validated_data.pop("reject_to_step_id", None)
        for attr, value in validated_data.items():
            setattr(instance, attr, value)
        instance.save()
        if roles is not None:
            _sync_roles(instance, roles)
        self._apply_rejection_mode(instance, mode, target_id)
        return instance

    def to_representation(self, instance: WorkflowTemplateStep) -> Dict[str, Any]:
        data = super().to_representation(instance)
        data["rejection_mode"] = rejection_mode_for(instance, order_steps(instance.template.steps.all()))
        return data


class WorkflowTemplateSerializer(serializers.ModelSerializer):
    steps = WorkflowTemplateStepSerializer(many=True, required=False)

    class Meta:
        model = WorkflowTemplate
        fields = [
            "id",
            "name",
            "description",
            "module",
            "is_default",
            "is_active",
            "version",
            "organization_id",
            "created_by",
            "steps",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["created_at", "updated_at"]

    def _create_steps(self, template: WorkflowTemplate, steps: List[Dict[str, Any]]) -> None:
        for index, step in enumerate(steps, start=1):
            roles = step.pop("role_assignments", [])
            created = WorkflowTemplateStep.objects.create(
                template=template,
                step_order=index,
                organization_id=template.organization_id,
                **step,
            )
            _sync_roles(created, roles)

    @transaction.atomic
    def create(self, validated_data):  # type: ignore[override]
        steps = validated_data.pop("steps", [])
        template = WorkflowTemplate.objects.create(**validated_data)
        self._create_steps(template, steps)
        return template

    @transaction.atomic
    def update(self, instance, validated_data):  # type: ignore[override]
        steps = validated_data.pop("steps", None)
        for attr, value in validated_data.items():
            setattr(instance, attr, value)
        instance.save()

        if steps is not None:
            try:
                instance.steps.all().delete()
            except ProtectedError:
                raise serializers.ValidationError(
                    {"steps": "Steps cannot be replaced while workflows run on them or transitions reference them."}
                )
            self._create_steps(instance, steps)
        return instance


class StepSummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = WorkflowTemplateStep
        fields = ["id", "name", "step_order", "approval_type"]


class WorkflowStateSerializer(serializers.ModelSerializer):
    entity_type = serializers.CharField(read_only=True)
    entity_id = serializers.IntegerField(read_only=True)
    current_step = StepSummarySerializer(read_only=True)
    is_sla_breached = serializers.BooleanField(read_only=True)

    class Meta:
        model = WorkflowState
        fields = [
            "id",
            "entity_type",
            "entity_id",
            "template",
            "current_step",
            "assigned_to",
            "pending_approval_from_role",
            "step_started_at",
            "sla_due_at",
            "is_sla_breached",
            "version",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class WorkflowApprovalSerializer(serializers.ModelSerializer):
    step_name = serializers.CharField(source="step.name", read_only=True, default=None)
    from_step_name = serializers.CharField(source="from_step.name", read_only=True, default=None)
    approved_by_name = serializers.CharField(source="approved_by.display_name", read_only=True, default=None)

    class Meta:
        model = WorkflowApproval
        fields = [
            "id",
            "step",
            "step_name",
            "from_step",
            "from_step_name",
            "approved_by",
            "approved_by_name",
            "approval_action",
            "comments",
            "created_at",
        ]
        read_only_fields = fields


class TransitionRequestSerializer(serializers.Serializer):
    comments = serializers.CharField(required=False, allow_blank=True, default="")
    assign_to_user_id = serializers.IntegerField(required=False, allow_null=True, default=None)
    expected_version = serializers.IntegerField(required=False, allow_null=True, default=None, min_value=1)


class BulkInitializeRequestSerializer(serializers.Serializer):
    module = serializers.ChoiceField(choices=sorted(MODULE_MODELS))


class BulkInitializationJobSerializer(serializers.ModelSerializer):
    class Meta:
        model = BulkInitializationJob
        fields = [
            "id",
            "module",
            "organization_id",
            "status",
            "initialized",
            "skipped",
            "failed",
            "error_message",
            "created_at",
            "updated_at",
            "completed_at",
        ]
        read_only_fields = fields


class WorkflowExecutionLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = WorkflowExecutionLog
        fields = [
            "id",
            "entity_type",
            "entity_id",
            "step_id",
            "action_type",
            "performed_by_id",
            "execution_time_ms",
            "success",
            "error_message",
            "metadata",
            "correlation_id",
            "created_at",
        ]
        read_only_fields = fields
