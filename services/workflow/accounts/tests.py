"""Smoke tests for the identity API."""
from __future__ import annotations

from django.test import TestCase
from django.urls import reverse
from rest_framework.test import APIClient

from work_orders.models import WorkOrder
from workflows.models import WorkflowApproval

from .models import Role, User


class UserApiTests(TestCase):
    def setUp(self) -> None:
        self.client = APIClient()
        Role.objects.create(name="Technician")
        Role.objects.create(name="Manager")

    def test_create_user_with_roles(self) -> None:
        payload = {
            "email": "casey@example.com",
            "display_name": "Casey Tech",
            "organization_id": 1,
            "roles": ["Technician", "Manager"],
        }
        response = self.client.post(reverse("user-list"), payload, format="json")
        self.assertEqual(response.status_code, 201)
        self.assertCountEqual(response.data["roles"], ["Technician", "Manager"])

        user = User.objects.get(email="casey@example.com")
        self.assertCountEqual(user.role_names(), ["Technician", "Manager"])

    def test_list_is_scoped_by_organization_header(self) -> None:
        User.objects.create(email="a@example.com", display_name="A", organization_id=1)
        User.objects.create(email="b@example.com", display_name="B", organization_id=2)

        response = self.client.get(reverse("user-list"), HTTP_X_ORGANIZATION_ID="2")
        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["email"] for item in response.data], ["b@example.com"])

    def test_health(self) -> None:
        response = self.client.get(reverse("workflow-health"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "ok")
        self.assertIn("X-Correlation-Id", response)

    def test_user_with_recorded_approvals_cannot_be_deleted(self) -> None:
        user = User.objects.create(email="signer@example.com", display_name="Signer", organization_id=1)
        work_order = WorkOrder.objects.create(title="Check valves", organization_id=1)
        WorkflowApproval.objects.create(
            work_order=work_order,
            approved_by=user,
            approval_action=WorkflowApproval.APPROVED,
            organization_id=1,
        )

        response = self.client.delete(reverse("user-detail", args=[user.id]))

        self.assertEqual(response.status_code, 400)
        self.assertTrue(User.objects.filter(pk=user.pk).exists())
