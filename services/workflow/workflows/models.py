"""Database models for the workflow service."""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from django.db import models
from django.db.models import Q
from django.utils import timezone


class WorkflowTemplate(models.Model):
    """An ordered definition of the steps a work order or incident goes through."""

    WORK_ORDERS = "work_orders"
    SAFETY_INCIDENTS = "safety_incidents"

    MODULE_CHOICES = [
        (WORK_ORDERS, "Work Orders"),
        (SAFETY_INCIDENTS, "Safety Incidents"),
    ]

    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    module = models.CharField(max_length=32, choices=MODULE_CHOICES, default=WORK_ORDERS)
    is_default = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    version = models.PositiveIntegerField(default=1)
    organization_id = models.IntegerField(db_index=True)
    created_by = models.ForeignKey(
        "accounts.User",
        on_delete=models.SET_NULL,
        related_name="+",
        null=True,
        blank=True,
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name", "version"]
        unique_together = ("organization_id", "name", "version")

    def __str__(self) -> str:
        return f"{self.name} v{self.version}"


class WorkflowTemplateStep(models.Model):
    """One stage inside a workflow template."""

    NONE = "none"
    SINGLE = "single"
    MULTIPLE = "multiple"
    UNANIMOUS = "unanimous"

    APPROVAL_TYPES = [
        (NONE, "No Approval"),
        (SINGLE, "Single Approver"),
        (MULTIPLE, "Multiple Approvers"),
        (UNANIMOUS, "Unanimous Approval"),
    ]

    STANDARD = "standard"
    APPROVAL = "approval"
    ASSIGNMENT = "assignment"
    REVIEW = "review"

    STEP_TYPES = [
        (STANDARD, "Standard"),
        (APPROVAL, "Approval"),
        (ASSIGNMENT, "Assignment"),
        (REVIEW, "Review"),
    ]

    template = models.ForeignKey(WorkflowTemplate, related_name="steps", on_delete=models.CASCADE)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    step_order = models.PositiveIntegerField(default=1)
    step_type = models.CharField(max_length=32, choices=STEP_TYPES, default=STANDARD)
    approval_type = models.CharField(max_length=16, choices=APPROVAL_TYPES, default=SINGLE)
    required_approvals = models.PositiveIntegerField(default=2)
    is_required = models.BooleanField(default=True)
    sla_hours = models.PositiveIntegerField(null=True, blank=True)
    reject_target_step = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        related_name="+",
        null=True,
        blank=True,
    )
    allows_work_order_creation = models.BooleanField(default=False)
    work_order_status = models.CharField(max_length=32, blank=True)
    incident_status = models.CharField(max_length=32, blank=True)
    auto_assign_enabled = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    organization_id = models.IntegerField(db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["step_order", "id"]
        unique_together = ("template", "step_order")

    def __str__(self) -> str:
        return f"{self.step_order}. {self.name}"

    @property
    def is_auto_transition(self) -> bool:
        return self.approval_type == self.NONE

    def sla_due_at(self, started_at: datetime) -> Optional[datetime]:
        if not self.sla_hours:
            return None
        return started_at + timedelta(hours=self.sla_hours)


class StepRoleAssignment(models.Model):
    """Permissions a role holds on one workflow step."""

    step = models.ForeignKey(
        WorkflowTemplateStep, related_name="role_assignments", on_delete=models.CASCADE
    )
    role_name = models.CharField(max_length=100)
    can_approve = models.BooleanField(default=False)
    can_reject = models.BooleanField(default=False)
    can_assign = models.BooleanField(default=False)
    can_view = models.BooleanField(default=True)
    can_edit = models.BooleanField(default=False)
    is_primary_assignee = models.BooleanField(default=False)
    organization_id = models.IntegerField(db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["step", "role_name"]
        unique_together = ("step", "role_name")

    def __str__(self) -> str:
        return f"{self.role_name} @ {self.step}"


class StepCondition(models.Model):
    """A field check that must hold on the entity before a step can be entered."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"

    OPERATOR_CHOICES = [
        (EQUALS, "Equals"),
        (NOT_EQUALS, "Not Equals"),
        (GREATER_THAN, "Greater Than"),
        (LESS_THAN, "Less Than"),
        (CONTAINS, "Contains"),
    ]

    step = models.ForeignKey(WorkflowTemplateStep, related_name="conditions", on_delete=models.CASCADE)
    field_name = models.CharField(max_length=100)
    operator = models.CharField(max_length=16, choices=OPERATOR_CHOICES, default=EQUALS)
    expected_value = models.JSONField(null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["step", "id"]

    def __str__(self) -> str:
        return f"{self.field_name} {self.operator} {self.expected_value!r}"

    def evaluate(self, entity: Any) -> bool:
        value = getattr(entity, self.field_name, None)
        expected = self.expected_value
        try:
            if self.operator == self.EQUALS:
                return value == expected
            if self.operator == self.NOT_EQUALS:
                return value != expected
            if self.operator == self.GREATER_THAN:
                return value is not None and value > expected
            if self.operator == self.LESS_THAN:
                return value is not None and value < expected
            if self.operator == self.CONTAINS:
                return str(expected) in str(value)
        except TypeError:
            return False
        return True


class WorkflowState(models.Model):
    """The current position of one work order or incident within its template.

    The row only exists while the workflow is running; completing the final
    step deletes it.
    """

    work_order = models.OneToOneField(
        "work_orders.WorkOrder",
        on_delete=models.CASCADE,
        related_name="workflow_state",
        null=True,
        blank=True,
    )
    incident = models.OneToOneField(
        "work_orders.Incident",
        on_delete=models.CASCADE,
        related_name="workflow_state",
        null=True,
        blank=True,
    )
    template = models.ForeignKey(WorkflowTemplate, related_name="states", on_delete=models.PROTECT)
    current_step = models.ForeignKey(
        WorkflowTemplateStep, related_name="+", on_delete=models.PROTECT
    )
    assigned_to = models.ForeignKey(
        "accounts.User",
        on_delete=models.SET_NULL,
        related_name="+",
        null=True,
        blank=True,
    )
    pending_approval_from_role = models.CharField(max_length=100, blank=True)
    step_started_at = models.DateTimeField(default=timezone.now)
    sla_due_at = models.DateTimeField(null=True, blank=True)
    organization_id = models.IntegerField(db_index=True)
    version = models.PositiveIntegerField(default=1)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-updated_at", "id"]
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(work_order__isnull=False, incident__isnull=True)
                    | Q(work_order__isnull=True, incident__isnull=False)
                ),
                name="workflow_state_single_entity",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.entity_type}:{self.entity_id} @ step {self.current_step_id}"

    @property
    def entity_type(self) -> str:
        return "work_order" if self.work_order_id is not None else "incident"

    @property
    def entity_id(self) -> Optional[int]:
        return self.work_order_id if self.work_order_id is not None else self.incident_id

    @property
    def is_sla_breached(self) -> bool:
        return self.sla_due_at is not None and timezone.now() > self.sla_due_at


class WorkflowApproval(models.Model):
    """Append-only log of every workflow transition.

    Entities, steps and users referenced by a record are protected from deletion.
    """

    APPROVED = "approved"
    REJECTED = "rejected"
    REASSIGNED = "reassigned"

    ACTION_CHOICES = [
        (APPROVED, "Approved"),
        (REJECTED, "Rejected"),
        (REASSIGNED, "Reassigned"),
    ]

    work_order = models.ForeignKey(
        "work_orders.WorkOrder",
        on_delete=models.PROTECT,
        related_name="approvals",
        null=True,
        blank=True,
    )
    incident = models.ForeignKey(
        "work_orders.Incident",
        on_delete=models.PROTECT,
        related_name="approvals",
        null=True,
        blank=True,
    )
    step = models.ForeignKey(
        WorkflowTemplateStep, on_delete=models.PROTECT, related_name="+", null=True, blank=True
    )
    from_step = models.ForeignKey(
        WorkflowTemplateStep, on_delete=models.PROTECT, related_name="+", null=True, blank=True
    )
    approved_by = models.ForeignKey(
        "accounts.User", on_delete=models.PROTECT, related_name="+", null=True, blank=True
    )
    approval_action = models.CharField(max_length=16, choices=ACTION_CHOICES)
    comments = models.TextField(blank=True)
    organization_id = models.IntegerField(db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]

    def __str__(self) -> str:
        return f"{self.approval_action} by {self.approved_by_id} at step {self.step_id}"

    def save(self, *args: Any, **kwargs: Any) -> None:
        if not self._state.adding:
            raise ValueError("Workflow approval records are append-only.")
        super().save(*args, **kwargs)

    def delete(self, *args: Any, **kwargs: Any) -> Any:
        raise ValueError("Workflow approval records are append-only.")


class ApprovalVote(models.Model):
    """A distinct approval collected on a multi-approver step."""

    state = models.ForeignKey(WorkflowState, related_name="votes", on_delete=models.CASCADE)
    step = models.ForeignKey(WorkflowTemplateStep, related_name="+", on_delete=models.CASCADE)
    user = models.ForeignKey("accounts.User", related_name="+", on_delete=models.CASCADE)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at", "id"]
        unique_together = ("state", "step", "user")


class WorkflowExecutionLog(models.Model):
    """Timing and outcome of every engine call, kept for analytics."""

    entity_type = models.CharField(max_length=32)
    entity_id = models.IntegerField()
    workflow_state_id = models.IntegerField(null=True, blank=True)
    step_id = models.IntegerField(null=True, blank=True)
    action_type = models.CharField(max_length=32)
    performed_by_id = models.IntegerField(null=True, blank=True)
    execution_time_ms = models.PositiveIntegerField(default=0)
    success = models.BooleanField(default=True)
    error_message = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    correlation_id = models.CharField(max_length=64, blank=True)
    organization_id = models.IntegerField(db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["organization_id", "created_at"], name="workflows_w_organiz_5b1c2e_idx"),
        ]


class BulkInitializationJob(models.Model):
    """Queue-backed job that starts workflows for every entity missing one."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    STATUS_CHOICES = [
        (PENDING, "Pending"),
        (PROCESSING, "Processing"),
        (COMPLETED, "Completed"),
        (FAILED, "Failed"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    module = models.CharField(max_length=32, choices=WorkflowTemplate.MODULE_CHOICES)
    organization_id = models.IntegerField(db_index=True)
    status = models.CharField(max_length=32, choices=STATUS_CHOICES, default=PENDING)
    initialized = models.PositiveIntegerField(default=0)
    skipped = models.PositiveIntegerField(default=0)
    failed = models.PositiveIntegerField(default=0)
    error_message = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="workflows_b_status_3f9a1d_idx"),
        ]

    def mark_processing(self) -> None:
        self.status = self.PROCESSING
        self.save(update_fields=["status", "updated_at"])

    def mark_completed(self, initialized: int, skipped: int, failed: int) -> None:
        self.status = self.COMPLETED
        self.initialized = initialized
        self.skipped = skipped
        self.failed = failed
        self.completed_at = timezone.now()
        self.error_message = ""
        self.save(
            update_fields=[
                "status",
                "initialized",
                "skipped",
                "failed",
                "completed_at",
                "error_message",
                "updated_at",
            ]
        )

    def mark_failed(self, message: str) -> None:
        self.status = self.FAILED
        self.error_message = message
        self.completed_at = timezone.now()
        self.save(update_fields=["status", "error_message", "completed_at", "updated_at"])
