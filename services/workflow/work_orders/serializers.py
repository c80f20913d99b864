"""Serializers for work orders and incidents."""
from __future__ import annotations

from rest_framework import serializers

from .models import Incident, WorkOrder


class WorkflowEntitySerializer(serializers.ModelSerializer):
    workflow_step = serializers.SerializerMethodField()

    def get_workflow_step(self, obj):  # type: ignore[no-untyped-def]
        state = getattr(obj, "workflow_state", None)
        return state.current_step_id if state is not None else None

    def validate_status(self, value: str) -> str:
        if self.instance is None or value == self.instance.status:
            return value
        if getattr(self.instance, "workflow_state", None) is not None:
            raise serializers.ValidationError("The status is set by the running workflow.")
        return value


class WorkOrderSerializer(WorkflowEntitySerializer):
    class Meta:
        model = WorkOrder
        fields = [
            "id",
            "title",
            "description",
            "status",
            "priority",
            "organization_id",
            "asset_id",
            "requester",
            "assigned_technician",
            "due_date",
            "actual_start_date",
            "actual_finish_date",
            "workflow_step",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["actual_finish_date", "created_at", "updated_at"]


class IncidentSerializer(WorkflowEntitySerializer):
    class Meta:
        model = Incident
        fields = [
            "id",
            "title",
            "description",
            "status",
            "severity",
            "organization_id",
            "reported_by",
            "occurred_at",
            "resolved_at",
            "workflow_step",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["created_at", "updated_at"]
