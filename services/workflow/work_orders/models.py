"""Database models for the entities that move through approval workflows."""
from __future__ import annotations

from datetime import datetime
from typing import List

from django.db import models


class WorkflowEntity(models.Model):
    """Common fields and workflow hooks of work orders and incidents."""

    ENTITY_TYPE = ""
    MODULE = ""
    STEP_STATUS_FIELD = ""
    COMPLETED_STATUS = ""

    title = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    organization_id = models.IntegerField(db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True

    def apply_status(self, status: str) -> List[str]:
        """Set ``status`` in memory and return the fields that changed."""

        if not status or status == self.status:  # type: ignore[attr-defined]
            return []
        self.status = status  # type: ignore[attr-defined]
        return ["status"]

    def mark_workflow_completed(self, when: datetime) -> List[str]:
        raise NotImplementedError

    @property
    def is_workflow_completed(self) -> bool:
        return self.status == self.COMPLETED_STATUS  # type: ignore[attr-defined]


class WorkOrder(WorkflowEntity):
    """A maintenance work order."""

    ENTITY_TYPE = "work_order"
    MODULE = "work_orders"
    STEP_STATUS_FIELD = "work_order_status"

    DRAFT = "draft"
    OPEN = "open"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    STATUS_CHOICES = [
        (DRAFT, "Draft"),
        (OPEN, "Open"),
        (PENDING_APPROVAL, "Pending Approval"),
        (APPROVED, "Approved"),
        (IN_PROGRESS, "In Progress"),
        (ON_HOLD, "On Hold"),
        (COMPLETED, "Completed"),
        (CANCELLED, "Cancelled"),
    ]

    COMPLETED_STATUS = COMPLETED

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    PRIORITY_CHOICES = [
        (LOW, "Low"),
        (MEDIUM, "Medium"),
        (HIGH, "High"),
        (CRITICAL, "Critical"),
    ]

    status = models.CharField(max_length=32, choices=STATUS_CHOICES, default=OPEN)
    priority = models.CharField(max_length=16, choices=PRIORITY_CHOICES, default=MEDIUM)
    asset_id = models.IntegerField(null=True, blank=True)
    requester = models.ForeignKey(
        "accounts.User",
        on_delete=models.SET_NULL,
        related_name="requested_work_orders",
        null=True,
        blank=True,
    )
    assigned_technician = models.ForeignKey(
        "accounts.User",
        on_delete=models.SET_NULL,
        related_name="assigned_work_orders",
        null=True,
        blank=True,
    )
    due_date = models.DateField(null=True, blank=True)
    actual_start_date = models.DateTimeField(null=True, blank=True)
    actual_finish_date = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at", "id"]

    def __str__(self) -> str:
        return f"{self.title} ({self.status})"

    def mark_workflow_completed(self, when: datetime) -> List[str]:
        self.status = self.COMPLETED
        self.actual_finish_date = when
        return ["status", "actual_finish_date"]


class Incident(WorkflowEntity):
    """A safety incident report."""

    ENTITY_TYPE = "incident"
    MODULE = "safety_incidents"
    STEP_STATUS_FIELD = "incident_status"

    REPORTED = "reported"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    CLOSED = "closed"

    STATUS_CHOICES = [
        (REPORTED, "Reported"),
        (INVESTIGATING, "Investigating"),
        (RESOLVED, "Resolved"),
        (CLOSED, "Closed"),
    ]

    COMPLETED_STATUS = CLOSED

    MINOR = "minor"
    MODERATE = "moderate"
    SERIOUS = "serious"
    FATAL = "fatal"

    SEVERITY_CHOICES = [
        (MINOR, "Minor"),
        (MODERATE, "Moderate"),
        (SERIOUS, "Serious"),
        (FATAL, "Fatal"),
    ]

    status = models.CharField(max_length=32, choices=STATUS_CHOICES, default=REPORTED)
    severity = models.CharField(max_length=16, choices=SEVERITY_CHOICES, default=MINOR)
    reported_by = models.ForeignKey(
        "accounts.User",
        on_delete=models.SET_NULL,
        related_name="reported_incidents",
        null=True,
        blank=True,
    )
    occurred_at = models.DateTimeField(null=True, blank=True)
    resolved_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at", "id"]

    def __str__(self) -> str:
        return f"{self.title} ({self.status})"

    def mark_workflow_completed(self, when: datetime) -> List[str]:
        self.status = self.CLOSED
        if self.resolved_at is not None:
            return ["status"]
        self.resolved_at = when
        return ["status", "resolved_at"]


ENTITY_MODELS = {
    WorkOrder.ENTITY_TYPE: WorkOrder,
    Incident.ENTITY_TYPE: Incident,
}

MODULE_MODELS = {
    WorkOrder.MODULE: WorkOrder,
    Incident.MODULE: Incident,
}
