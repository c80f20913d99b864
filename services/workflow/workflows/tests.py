"""API tests for templates, step editing and running workflows."""
from __future__ import annotations

from django.core.cache import cache
from django.test import TestCase
from django.urls import reverse
from rest_framework.test import APIClient

from accounts.models import Role, User
from work_orders.models import Incident, WorkOrder

from . import events
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


def make_user(email: str, *roles: str, organization_id: int = 1) -> User:
    user = User.objects.create(
        email=email,
        display_name=email.split("@")[0].title(),
        organization_id=organization_id,
    )
    for name in roles:
        role, _ = Role.objects.get_or_create(name=name)
        user.roles.add(role)
    return user


def build_template(organization_id: int = 1, module: str = WorkflowTemplate.WORK_ORDERS):
    """Draft -> Review -> Approve, each step approved by its own role."""

    template = WorkflowTemplate.objects.create(
        name=f"{module} approval",
        module=module,
        organization_id=organization_id,
        is_default=True,
    )
    steps = []
    for order, (name, role, wo_status, incident_status) in enumerate(
        [
            ("Draft", "Technician", "draft", "reported"),
            ("Review", "Reviewer", "pending_approval", "investigating"),
            ("Approve", "Manager", "approved", "resolved"),
        ],
        start=1,
    ):
        step = WorkflowTemplateStep.objects.create(
            template=template,
            name=name,
            step_order=order,
            work_order_status=wo_status,
            incident_status=incident_status,
            organization_id=organization_id,
        )
        StepRoleAssignment.objects.create(
            step=step,
            role_name=role,
            can_approve=True,
            can_reject=True,
            can_assign=True,
            organization_id=organization_id,
        )
        steps.append(step)
    return template, steps


class WorkflowApiTests(TestCase):
    def setUp(self) -> None:
        cache.clear()
        self.client = APIClient()
        self.template, (self.draft, self.review, self.approve) = build_template()
        self.technician = make_user("tech@example.com", "technician")
        self.reviewer = make_user("reviewer@example.com", "Reviewer")
        self.manager = make_user("manager@example.com", "Manager")
        self.outsider = make_user("outsider@example.com", "Technician", "Manager", organization_id=2)

    def act_as(self, user: User) -> None:
        self.client.credentials(
            HTTP_X_USER_ID=str(user.id),
            HTTP_X_ORGANIZATION_ID=str(user.organization_id),
        )

    def create_work_order(self, **extra) -> WorkOrder:
        self.act_as(self.technician)
        payload = {"title": "Replace pump seal", "organization_id": 1, **extra}
        response = self.client.post(reverse("work-order-list"), payload, format="json")
        self.assertEqual(response.status_code, 201)
        return WorkOrder.objects.get(pk=response.data["id"])

    def post_action(self, name: str, work_order: WorkOrder, payload=None):
        return self.client.post(
            reverse(f"workflow-{name}", args=["work_order", work_order.id]),
            payload or {},
            format="json",
        )

    def test_creating_work_order_starts_default_workflow(self) -> None:
        work_order = self.create_work_order()

        self.assertEqual(work_order.status, WorkOrder.DRAFT)
        state = WorkflowState.objects.get(work_order=work_order)
        self.assertEqual(state.current_step, self.draft)
        self.assertEqual(state.pending_approval_from_role, "Technician")

        response = self.client.get(reverse("workflow-detail", args=["work_order", work_order.id]))
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["initialized"])
        self.assertEqual(response.data["current_step"]["name"], "Draft")
        self.assertEqual(response.data["next_step"]["name"], "Review")
        self.assertIsNone(response.data["rejection_target"])
        self.assertTrue(response.data["can_act"])
        actions = {item["action"]: item for item in response.data["actions"]}
        self.assertTrue(actions["approve"]["enabled"])
        self.assertFalse(actions["reject"]["enabled"])
        self.assertFalse(actions["complete"]["enabled"])

    def test_create_without_default_template_still_succeeds(self) -> None:
        user = make_user("solo@example.com", organization_id=7)
        self.act_as(user)
        response = self.client.post(
            reverse("work-order-list"),
            {"title": "Inspect boiler", "organization_id": 7},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertIsNone(response.data["workflow_step"])
        self.assertEqual(response.data["status"], WorkOrder.OPEN)

    def test_reviewer_cannot_approve_draft(self) -> None:
        work_order = self.create_work_order()
        self.act_as(self.reviewer)

        response = self.post_action("approve", work_order)

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.data["required_roles"], ["Technician"])
        self.assertEqual(response.data["held_roles"], ["Reviewer"])
        self.assertIn("correlationId", response.data)
        self.assertFalse(WorkflowApproval.objects.filter(work_order=work_order).exists())

    def test_technician_approves_draft_into_review(self) -> None:
        work_order = self.create_work_order()

        response = self.post_action("approve", work_order, {"comments": "Ready for review"})

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["advanced"])
        self.assertEqual(response.data["from_step_id"], self.draft.id)
        self.assertEqual(response.data["to_step_id"], self.review.id)
        self.assertEqual(response.data["state"]["current_step"]["id"], self.review.id)
        approvals = WorkflowApproval.objects.filter(work_order=work_order)
        self.assertEqual(approvals.count(), 1)
        self.assertEqual(approvals.get().approval_action, WorkflowApproval.APPROVED)
        work_order.refresh_from_db()
        self.assertEqual(work_order.status, WorkOrder.PENDING_APPROVAL)

    def test_reject_returns_to_previous_step(self) -> None:
        work_order = self.create_work_order()
        self.post_action("approve", work_order)
        self.act_as(self.reviewer)

        response = self.post_action("reject", work_order, {"comments": "Missing parts list"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["to_step_id"], self.draft.id)
        rejected = WorkflowApproval.objects.filter(
            work_order=work_order, approval_action=WorkflowApproval.REJECTED
        )
        self.assertEqual(rejected.count(), 1)
        self.assertEqual(rejected.get().comments, "Missing parts list")
        work_order.refresh_from_db()
        self.assertEqual(work_order.status, WorkOrder.DRAFT)

    def test_reject_requires_reason(self) -> None:
        work_order = self.create_work_order()
        self.post_action("approve", work_order)
        self.act_as(self.reviewer)

        response = self.post_action("reject", work_order, {"comments": "   "})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(WorkflowState.objects.get(work_order=work_order).current_step, self.review)

    def test_reject_on_first_step_has_no_target(self) -> None:
        work_order = self.create_work_order()

        response = self.post_action("reject", work_order, {"comments": "No"})

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["detail"].code, "no_rejection_target")

    def test_complete_final_step(self) -> None:
        work_order = self.create_work_order()
        self.post_action("approve", work_order)
        self.act_as(self.reviewer)
        self.post_action("approve", work_order)
        self.act_as(self.manager)

        response = self.post_action("complete", work_order)

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["completed"])
        self.assertIsNone(response.data["state"])
        work_order.refresh_from_db()
        self.assertEqual(work_order.status, WorkOrder.COMPLETED)
        self.assertIsNotNone(work_order.actual_finish_date)
        self.assertFalse(WorkflowState.objects.filter(work_order=work_order).exists())
        latest = WorkflowApproval.objects.filter(work_order=work_order).first()
        self.assertEqual(latest.approval_action, WorkflowApproval.APPROVED)
        self.assertEqual(latest.step, self.approve)
        self.assertEqual(WorkflowApproval.objects.filter(work_order=work_order).count(), 3)

        again = self.post_action("complete", work_order)
        self.assertEqual(again.status_code, 200)
        self.assertTrue(again.data["already_completed"])
        self.assertEqual(WorkflowApproval.objects.filter(work_order=work_order).count(), 3)

    def test_complete_before_final_step_conflicts(self) -> None:
        work_order = self.create_work_order()

        response = self.post_action("complete", work_order)

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["detail"].code, "not_final_step")

    def test_approve_on_final_step_has_no_next_step(self) -> None:
        work_order = self.create_work_order()
        self.post_action("approve", work_order)
        self.act_as(self.reviewer)
        self.post_action("approve", work_order)
        self.act_as(self.manager)

        response = self.post_action("approve", work_order)

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["detail"].code, "no_next_step")

    def test_reassign(self) -> None:
        work_order = self.create_work_order()

        missing = self.post_action("reassign", work_order)
        self.assertEqual(missing.status_code, 400)

        foreign = self.post_action("reassign", work_order, {"assign_to_user_id": self.outsider.id})
        self.assertEqual(foreign.status_code, 400)

        response = self.post_action(
            "reassign",
            work_order,
            {"assign_to_user_id": self.reviewer.id, "comments": "Covering shift"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.data["advanced"])
        state = WorkflowState.objects.get(work_order=work_order)
        self.assertEqual(state.assigned_to, self.reviewer)
        self.assertEqual(state.current_step, self.draft)
        work_order.refresh_from_db()
        self.assertEqual(work_order.assigned_technician, self.reviewer)
        self.assertTrue(
            WorkflowApproval.objects.filter(
                work_order=work_order, approval_action=WorkflowApproval.REASSIGNED
            ).exists()
        )

    def test_stale_version_is_rejected(self) -> None:
        work_order = self.create_work_order()

        first = self.post_action("approve", work_order, {"expected_version": 1})
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.data["version"], 2)

        self.act_as(self.reviewer)
        stale = self.post_action("approve", work_order, {"expected_version": 1})
        self.assertEqual(stale.status_code, 409)
        self.assertEqual(stale.data["detail"].code, "stale_workflow_state")

    def test_initialize_twice_conflicts(self) -> None:
        work_order = self.create_work_order()

        response = self.post_action("initialize", work_order)

        self.assertEqual(response.status_code, 409)

    def test_history_is_newest_first(self) -> None:
        work_order = self.create_work_order()
        self.post_action("approve", work_order, {"comments": "first"})
        self.act_as(self.reviewer)
        self.post_action("reject", work_order, {"comments": "second"})

        response = self.client.get(reverse("workflow-history", args=["work_order", work_order.id]))

        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["comments"] for item in response.data], ["second", "first"])
        self.assertEqual(response.data[0]["approval_action"], WorkflowApproval.REJECTED)
        self.assertEqual(response.data[0]["from_step_name"], "Review")

    def test_unmet_conditions_block_approval(self) -> None:
        StepCondition.objects.create(
            step=self.review,
            field_name="priority",
            operator=StepCondition.EQUALS,
            expected_value=WorkOrder.HIGH,
        )
        work_order = self.create_work_order()

        blocked = self.post_action("approve", work_order)
        self.assertEqual(blocked.status_code, 409)
        self.assertEqual(blocked.data["detail"].code, "conditions_not_met")
        self.assertFalse(WorkflowApproval.objects.filter(work_order=work_order).exists())

        WorkOrder.objects.filter(pk=work_order.pk).update(priority=WorkOrder.HIGH)
        allowed = self.post_action("approve", work_order)
        self.assertEqual(allowed.status_code, 200)

    def test_unknown_entity_type(self) -> None:
        response = self.client.get(reverse("workflow-detail", args=["asset", 1]))
        self.assertEqual(response.status_code, 400)

    def test_incident_runs_through_the_same_engine(self) -> None:
        build_template(module=WorkflowTemplate.SAFETY_INCIDENTS)
        self.act_as(self.technician)
        response = self.client.post(
            reverse("incident-list"),
            {"title": "Slip near loading dock", "organization_id": 1},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        incident = Incident.objects.get(pk=response.data["id"])
        self.assertEqual(incident.status, Incident.REPORTED)

        url = lambda name: reverse(f"workflow-{name}", args=["incident", incident.id])  # noqa: E731
        self.assertEqual(self.client.post(url("approve"), {}, format="json").status_code, 200)
        self.act_as(self.reviewer)
        self.assertEqual(self.client.post(url("approve"), {}, format="json").status_code, 200)
        self.act_as(self.manager)
        completed = self.client.post(url("complete"), {}, format="json")

        self.assertEqual(completed.status_code, 200)
        incident.refresh_from_db()
        self.assertEqual(incident.status, Incident.CLOSED)
        self.assertIsNotNone(incident.resolved_at)

    def test_users_of_another_organization_cannot_act(self) -> None:
        work_order = self.create_work_order()

        self.client.credentials(HTTP_X_USER_ID=str(self.outsider.id))
        hidden = self.post_action("approve", work_order)
        self.assertEqual(hidden.status_code, 404)
        detail = self.client.get(reverse("workflow-detail", args=["work_order", work_order.id]))
        self.assertEqual(detail.status_code, 404)

        self.client.credentials(HTTP_X_USER_ID=str(self.outsider.id), HTTP_X_ORGANIZATION_ID="1")
        claimed = self.post_action("approve", work_order)
        self.assertEqual(claimed.status_code, 403)

        self.assertEqual(WorkflowState.objects.get(work_order=work_order).current_step, self.draft)
        self.assertFalse(WorkflowApproval.objects.filter(work_order=work_order).exists())

    def test_recorded_transitions_protect_their_steps_and_entity(self) -> None:
        work_order = self.create_work_order()
        self.post_action("approve", work_order)
        self.act_as(self.reviewer)
        self.post_action("approve", work_order)
        self.act_as(self.manager)
        self.post_action("complete", work_order)
        self.assertFalse(WorkflowState.objects.filter(template=self.template).exists())

        replaced = self.client.patch(
            reverse("template-detail", args=[self.template.id]),
            {"steps": [{"name": "Only step", "approval_type": "none"}]},
            format="json",
        )
        self.assertEqual(replaced.status_code, 400)
        removed = self.client.delete(reverse("step-detail", args=[self.review.id]))
        self.assertEqual(removed.status_code, 400)
        deleted = self.client.delete(reverse("work-order-detail", args=[work_order.id]))
        self.assertEqual(deleted.status_code, 400)

        history = WorkflowApproval.objects.filter(work_order=work_order).order_by("id")
        self.assertEqual(
            list(history.values_list("from_step_id", "step_id")),
            [
                (self.draft.id, self.review.id),
                (self.review.id, self.approve.id),
                (self.approve.id, self.approve.id),
            ],
        )
        self.assertEqual(self.template.steps.count(), 3)

    def test_transitions_are_announced_after_commit(self) -> None:
        received = []

        def listener(signal, sender, **kwargs):  # type: ignore[no-untyped-def]
            received.append((signal, kwargs))

        for signal in (events.workflow_initialized, events.workflow_step_transitioned):
            signal.connect(listener)
            self.addCleanup(signal.disconnect, listener)

        with self.captureOnCommitCallbacks(execute=True):
            work_order = self.create_work_order()
        with self.captureOnCommitCallbacks(execute=True):
            self.post_action("approve", work_order, {"comments": "Ready"})

        self.assertEqual(
            [signal for signal, _ in received],
            [events.workflow_initialized, events.workflow_step_transitioned],
        )
        initialized, moved = received[0][1], received[1][1]
        self.assertEqual(initialized["first_step_id"], self.draft.id)
        self.assertEqual(initialized["template_id"], self.template.id)
        self.assertEqual(moved["from_step_id"], self.draft.id)
        self.assertEqual(moved["to_step_id"], self.review.id)
        self.assertEqual(moved["performed_by"], self.technician.id)
        self.assertEqual(moved["organization_id"], 1)
        self.assertTrue(moved["correlation_id"])

    def test_execution_log_and_analytics(self) -> None:
        work_order = self.create_work_order()
        self.act_as(self.reviewer)
        self.post_action("approve", work_order)
        self.act_as(self.technician)
        self.post_action("approve", work_order)

        logs = WorkflowExecutionLog.objects.filter(entity_type="work_order", entity_id=work_order.id)
        self.assertEqual(logs.count(), 3)
        self.assertEqual(logs.filter(success=False).count(), 1)

        response = self.client.get(reverse("workflow-analytics"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["totalExecutions"], 3)
        self.assertEqual(response.data["successfulExecutions"], 2)
        self.assertEqual(response.data["failedExecutions"], 1)
        self.assertEqual(len(response.data["recentLogs"]), 3)


class TemplateApiTests(TestCase):
    def setUp(self) -> None:
        cache.clear()
        self.client = APIClient()
        self.client.credentials(HTTP_X_ORGANIZATION_ID="1")

    def test_create_template_numbers_steps(self) -> None:
        payload = {
            "name": "Corrective maintenance",
            "module": "work_orders",
            "organization_id": 1,
            "steps": [
                {
                    "name": "Triage",
                    "approval_type": "none",
                },
                {
                    "name": "Supervisor sign-off",
                    "approval_type": "single",
                    "sla_hours": 24,
                    "roles": [{"role_name": "Supervisor", "can_approve": True}],
                },
            ],
        }
        response = self.client.post(reverse("template-list"), payload, format="json")

        self.assertEqual(response.status_code, 201)
        self.assertEqual([step["step_order"] for step in response.data["steps"]], [1, 2])
        self.assertEqual(response.data["steps"][1]["roles"][0]["role_name"], "Supervisor")

        steps = self.client.get(reverse("template-steps", args=[response.data["id"]]))
        self.assertEqual(steps.status_code, 200)
        self.assertEqual(steps.data[1]["rejection_mode"], "previous")

    def test_nested_approval_steps_need_an_approver_role(self) -> None:
        payload = {
            "name": "Nobody signs",
            "module": "work_orders",
            "organization_id": 1,
            "steps": [
                {"name": "Sign-off", "approval_type": "single"},
                {
                    "name": "Board",
                    "approval_type": "unanimous",
                    "roles": [{"role_name": "Board", "can_reject": True}],
                },
            ],
        }

        response = self.client.post(reverse("template-list"), payload, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("roles", response.data["steps"][0])
        self.assertIn("roles", response.data["steps"][1])
        self.assertFalse(WorkflowTemplate.objects.filter(name="Nobody signs").exists())

    def test_template_changes_are_announced(self) -> None:
        received = []

        def listener(signal, sender, **kwargs):  # type: ignore[no-untyped-def]
            received.append((signal, kwargs["template_id"]))

        for signal in (
            events.workflow_template_created,
            events.workflow_template_updated,
            events.workflow_template_deleted,
        ):
            signal.connect(listener)
            self.addCleanup(signal.disconnect, listener)

        with self.captureOnCommitCallbacks(execute=True):
            created = self.client.post(
                reverse("template-list"),
                {"name": "Inspection", "module": "work_orders", "organization_id": 1},
                format="json",
            )
        template_id = created.data["id"]
        with self.captureOnCommitCallbacks(execute=True):
            self.client.patch(
                reverse("template-detail", args=[template_id]), {"description": "Monthly"}, format="json"
            )
        with self.captureOnCommitCallbacks(execute=True):
            deleted = self.client.delete(reverse("template-detail", args=[template_id]))

        self.assertEqual(deleted.status_code, 204)
        self.assertEqual(
            received,
            [
                (events.workflow_template_created, template_id),
                (events.workflow_template_updated, template_id),
                (events.workflow_template_deleted, template_id),
            ],
        )

    def test_set_default_clears_other_defaults(self) -> None:
        first, _ = build_template()
        second = WorkflowTemplate.objects.create(
            name="Alternative", module=WorkflowTemplate.WORK_ORDERS, organization_id=1
        )

        response = self.client.post(reverse("template-set-default", args=[second.id]), format="json")

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["is_default"])
        first.refresh_from_db()
        self.assertFalse(first.is_default)

    def test_replacing_steps_of_template_in_use_is_refused(self) -> None:
        template, (draft, _, _) = build_template()
        work_order = WorkOrder.objects.create(title="Leak", organization_id=1)
        WorkflowState.objects.create(
            work_order=work_order, template=template, current_step=draft, organization_id=1
        )

        response = self.client.patch(
            reverse("template-detail", args=[template.id]),
            {"steps": [{"name": "Only step", "approval_type": "none"}]},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(template.steps.count(), 3)


class StepEditorApiTests(TestCase):
    def setUp(self) -> None:
        cache.clear()
        self.client = APIClient()
        self.client.credentials(HTTP_X_ORGANIZATION_ID="1")
        self.template, (self.draft, self.review, self.approve) = build_template()

    def test_approval_step_needs_an_approver_role(self) -> None:
        response = self.client.patch(
            reverse("step-detail", args=[self.review.id]),
            {"roles": [{"role_name": "Reviewer", "can_approve": False, "can_reject": True}]},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("roles", response.data)

        no_approval = self.client.patch(
            reverse("step-detail", args=[self.review.id]),
            {"approval_type": "none", "roles": []},
            format="json",
        )
        self.assertEqual(no_approval.status_code, 200)
        self.assertFalse(self.review.role_assignments.exists())

    def test_blank_name_is_rejected(self) -> None:
        response = self.client.patch(
            reverse("step-detail", args=[self.review.id]), {"name": "  "}, format="json"
        )
        self.assertEqual(response.status_code, 400)

    def test_roles_are_upserted_and_unlisted_roles_removed(self) -> None:
        response = self.client.patch(
            reverse("step-detail", args=[self.review.id]),
            {
                "roles": [
                    {"role_name": "reviewer", "can_approve": True, "can_assign": False},
                    {"role_name": "Supervisor", "can_approve": True},
                ]
            },
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        names = sorted(self.review.role_assignments.values_list("role_name", flat=True))
        self.assertEqual(names, ["Reviewer", "Supervisor"])
        self.assertFalse(self.review.role_assignments.get(role_name="Reviewer").can_assign)

        self.client.patch(
            reverse("step-detail", args=[self.review.id]),
            {"roles": [{"role_name": "Supervisor", "can_approve": True}]},
            format="json",
        )
        names = list(self.review.role_assignments.values_list("role_name", flat=True))
        self.assertEqual(names, ["Supervisor"])

    def test_single_role_upsert_endpoint(self) -> None:
        url = reverse("step-roles", args=[self.draft.id])
        created = self.client.post(url, {"role_name": "Planner", "can_view": True}, format="json")
        self.assertEqual(created.status_code, 201)
        updated = self.client.post(url, {"role_name": "planner", "can_approve": True}, format="json")
        self.assertEqual(updated.status_code, 200)
        self.assertTrue(self.draft.role_assignments.get(role_name="Planner").can_approve)
        self.assertEqual(len(self.client.get(url).data), 2)

    def test_rejection_modes(self) -> None:
        url = reverse("step-detail", args=[self.approve.id])
        response = self.client.patch(url, {"rejection_mode": "first"}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["reject_target_step"], self.draft.id)
        self.assertEqual(response.data["rejection_mode"], "first")

        later = self.client.patch(
            reverse("step-detail", args=[self.review.id]),
            {"rejection_mode": "specific", "reject_to_step_id": self.approve.id},
            format="json",
        )
        self.assertEqual(later.status_code, 400)

        reset = self.client.patch(url, {"rejection_mode": "previous"}, format="json")
        self.assertIsNone(reset.data["reject_target_step"])

    def test_configured_rejection_target_is_used(self) -> None:
        self.approve.reject_target_step = self.draft
        self.approve.save()
        manager = make_user("manager@example.com", "Manager")
        work_order = WorkOrder.objects.create(title="Leak", organization_id=1)
        WorkflowState.objects.create(
            work_order=work_order, template=self.template, current_step=self.approve, organization_id=1
        )
        self.client.credentials(HTTP_X_USER_ID=str(manager.id), HTTP_X_ORGANIZATION_ID="1")

        response = self.client.post(
            reverse("workflow-reject", args=["work_order", work_order.id]),
            {"comments": "Start over"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["to_step_id"], self.draft.id)

    def test_add_step_and_condition(self) -> None:
        response = self.client.post(
            reverse("template-steps", args=[self.template.id]),
            {"name": "Close out", "approval_type": "none"},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["step_order"], 4)

        condition = self.client.post(
            reverse("step-conditions", args=[response.data["id"]]),
            {"field_name": "priority", "operator": "not_equals", "expected_value": "low"},
            format="json",
        )
        self.assertEqual(condition.status_code, 201)

    def test_deleting_current_step_is_refused(self) -> None:
        work_order = WorkOrder.objects.create(title="Leak", organization_id=1)
        WorkflowState.objects.create(
            work_order=work_order, template=self.template, current_step=self.review, organization_id=1
        )

        response = self.client.delete(reverse("step-detail", args=[self.review.id]))

        self.assertEqual(response.status_code, 400)
        self.assertTrue(WorkflowTemplateStep.objects.filter(pk=self.review.pk).exists())


class BulkInitializationApiTests(TestCase):
    def setUp(self) -> None:
        cache.clear()
        self.client = APIClient()
        self.client.credentials(HTTP_X_ORGANIZATION_ID="1")

    def test_bulk_initialize_creates_missing_workflows(self) -> None:
        build_template()
        for index in range(3):
            WorkOrder.objects.create(title=f"Order {index}", organization_id=1)
        WorkOrder.objects.create(title="Done", organization_id=1, status=WorkOrder.COMPLETED)
        WorkOrder.objects.create(title="Elsewhere", organization_id=2)

        before = self.client.get(reverse("workflow-status", args=["work_orders"]))
        self.assertEqual(before.data["withoutWorkflow"], 4)
        self.assertTrue(before.data["hasDefaultTemplate"])

        response = self.client.post(
            reverse("workflow-job-bulk-initialize"), {"module": "work_orders"}, format="json"
        )
        self.assertEqual(response.status_code, 202)
        job = BulkInitializationJob.objects.get(pk=response.data["id"])
        self.assertEqual(job.status, BulkInitializationJob.COMPLETED)
        self.assertEqual((job.initialized, job.skipped, job.failed), (3, 1, 0))

        detail = self.client.get(reverse("workflow-job-detail", args=[job.id]))
        self.assertEqual(detail.data["initialized"], 3)

        after = self.client.get(reverse("workflow-status", args=["work_orders"]))
        self.assertEqual(after.data["totalEntities"], 4)
        self.assertEqual(after.data["withWorkflow"], 3)

    def test_bulk_initialize_without_default_template_fails_job(self) -> None:
        WorkOrder.objects.create(title="Orphan", organization_id=1)

        response = self.client.post(
            reverse("workflow-job-bulk-initialize"), {"module": "work_orders"}, format="json"
        )

        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.data["status"], BulkInitializationJob.FAILED)

    def test_organization_header_is_required(self) -> None:
        self.client.credentials()
        response = self.client.get(reverse("workflow-status", args=["work_orders"]))
        self.assertEqual(response.status_code, 400)
