"""API tests for work orders and incidents."""
from __future__ import annotations

from datetime import timedelta

from django.core.cache import cache
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from accounts.models import User
from workflows.models import (
    WorkflowApproval,
    WorkflowExecutionLog,
    WorkflowState,
    WorkflowTemplate,
    WorkflowTemplateStep,
)

from .models import Incident, WorkOrder


class WorkOrderApiTests(TestCase):
    def setUp(self) -> None:
        cache.clear()
        self.client = APIClient()
        self.client.credentials(HTTP_X_ORGANIZATION_ID="1")

    def test_crud_without_workflow(self) -> None:
        payload = {
            "title": "Lubricate conveyor",
            "organization_id": 1,
            "priority": WorkOrder.HIGH,
            "asset_id": 42,
        }
        response = self.client.post(reverse("work-order-list"), payload, format="json")
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["status"], WorkOrder.OPEN)
        self.assertIsNone(response.data["workflow_step"])

        failed = WorkflowExecutionLog.objects.get(entity_type="work_order", entity_id=response.data["id"])
        self.assertFalse(failed.success)

        detail = self.client.patch(
            reverse("work-order-detail", args=[response.data["id"]]),
            {"status": WorkOrder.IN_PROGRESS},
            format="json",
        )
        self.assertEqual(detail.status_code, 200)
        self.assertEqual(detail.data["status"], WorkOrder.IN_PROGRESS)

    def test_list_filters_by_organization_and_status(self) -> None:
        WorkOrder.objects.create(title="Mine", organization_id=1, status=WorkOrder.OPEN)
        WorkOrder.objects.create(title="Mine too", organization_id=1, status=WorkOrder.ON_HOLD)
        WorkOrder.objects.create(title="Theirs", organization_id=2)

        response = self.client.get(reverse("work-order-list"), {"status": WorkOrder.ON_HOLD})

        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["title"] for item in response.data], ["Mine too"])

    def test_create_applies_first_step_status(self) -> None:
        template = WorkflowTemplate.objects.create(
            name="Default", module=WorkflowTemplate.WORK_ORDERS, organization_id=1, is_default=True
        )
        first = WorkflowTemplateStep.objects.create(
            template=template,
            name="Request",
            step_order=1,
            approval_type=WorkflowTemplateStep.NONE,
            work_order_status=WorkOrder.PENDING_APPROVAL,
            organization_id=1,
        )

        response = self.client.post(
            reverse("work-order-list"), {"title": "Replace filter", "organization_id": 1}, format="json"
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["status"], WorkOrder.PENDING_APPROVAL)
        self.assertEqual(response.data["workflow_step"], first.id)

        locked = self.client.patch(
            reverse("work-order-detail", args=[response.data["id"]]),
            {"status": WorkOrder.COMPLETED},
            format="json",
        )
        self.assertEqual(locked.status_code, 400)
        self.assertIn("status", locked.data)
        renamed = self.client.patch(
            reverse("work-order-detail", args=[response.data["id"]]),
            {"title": "Replace intake filter", "status": WorkOrder.PENDING_APPROVAL},
            format="json",
        )
        self.assertEqual(renamed.status_code, 200)
        self.assertEqual(WorkOrder.objects.get(pk=response.data["id"]).status, WorkOrder.PENDING_APPROVAL)

    def test_create_in_another_organization_is_refused(self) -> None:
        user = User.objects.create(email="planner@example.com", display_name="Planner", organization_id=2)
        self.client.credentials(HTTP_X_USER_ID=str(user.id))

        response = self.client.post(
            reverse("work-order-list"), {"title": "Paint railings", "organization_id": 1}, format="json"
        )

        self.assertEqual(response.status_code, 403)
        self.assertFalse(WorkOrder.objects.exists())

    def test_work_order_with_history_cannot_be_deleted(self) -> None:
        template = WorkflowTemplate.objects.create(
            name="Default", module=WorkflowTemplate.WORK_ORDERS, organization_id=1
        )
        step = WorkflowTemplateStep.objects.create(
            template=template, name="Request", step_order=1, organization_id=1
        )
        work_order = WorkOrder.objects.create(title="Patch roof", organization_id=1)
        WorkflowApproval.objects.create(
            work_order=work_order,
            step=step,
            from_step=step,
            approval_action=WorkflowApproval.APPROVED,
            organization_id=1,
        )

        response = self.client.delete(reverse("work-order-detail", args=[work_order.id]))

        self.assertEqual(response.status_code, 400)
        self.assertTrue(WorkOrder.objects.filter(pk=work_order.pk).exists())
        self.assertEqual(WorkflowApproval.objects.filter(work_order=work_order).count(), 1)


class IncidentModelTests(TestCase):
    def test_completion_keeps_existing_resolution_time(self) -> None:
        resolved_at = timezone.now() - timedelta(days=1)
        incident = Incident.objects.create(title="Spill", organization_id=1, resolved_at=resolved_at)

        changed = incident.mark_workflow_completed(timezone.now())

        self.assertEqual(changed, ["status"])
        self.assertEqual(incident.status, Incident.CLOSED)
        self.assertEqual(incident.resolved_at, resolved_at)
        self.assertTrue(incident.is_workflow_completed)

    def test_apply_status_reports_changes(self) -> None:
        incident = Incident(title="Fall", organization_id=1)
        self.assertEqual(incident.apply_status(""), [])
        self.assertEqual(incident.apply_status(Incident.REPORTED), [])
        self.assertEqual(incident.apply_status(Incident.INVESTIGATING), ["status"])

    def test_deleting_entity_without_history_removes_its_workflow(self) -> None:
        template = WorkflowTemplate.objects.create(
            name="Incidents", module=WorkflowTemplate.SAFETY_INCIDENTS, organization_id=1
        )
        step = WorkflowTemplateStep.objects.create(
            template=template, name="Report", step_order=1, organization_id=1
        )
        incident = Incident.objects.create(title="Trip", organization_id=1)
        WorkflowState.objects.create(incident=incident, template=template, current_step=step, organization_id=1)

        incident.delete()

        self.assertFalse(WorkflowState.objects.exists())
