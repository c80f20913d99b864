"""Engine level tests: step navigation, the permission gate and quorum rules."""
from __future__ import annotations

from datetime import timedelta
from unittest import mock

from django.core.cache import cache
from django.test import SimpleTestCase, TestCase, override_settings

from accounts.models import Role, User
from work_orders.models import WorkOrder

from . import engine, read_model
from .exceptions import (
    NoDefaultTemplateError,
    PermissionDeniedError,
    StepConditionsNotMetError,
    WorkflowValidationError,
)
from .models import (
    ApprovalVote,
    StepCondition,
    StepRoleAssignment,
    WorkflowApproval,
    WorkflowExecutionLog,
    WorkflowState,
    WorkflowTemplate,
    WorkflowTemplateStep,
)
from .permissions import Actor, Capability, RoleName, WorkflowAction, can_act, required_capability
from .steps import (
    RejectionMode,
    find_step_index,
    first_step,
    is_final_step,
    next_step,
    rejection_mode_for,
    rejection_target,
    resolve_reject_target,
)


def step(step_id: int, order: int, **extra) -> WorkflowTemplateStep:
    return WorkflowTemplateStep(id=step_id, step_order=order, name=f"Step {order}", **extra)


class StepNavigationTests(SimpleTestCase):
    def setUp(self) -> None:
        self.steps = [step(10, 1), step(20, 2), step(30, 3), step(40, 4)]

    def test_rejection_defaults_to_preceding_step(self) -> None:
        self.assertEqual(rejection_target(self.steps[2], self.steps).id, 20)

    def test_configured_rejection_target_wins(self) -> None:
        current = step(30, 3, reject_target_step_id=10)
        self.assertEqual(rejection_target(current, self.steps).id, 10)

    def test_first_step_has_no_rejection_target(self) -> None:
        self.assertIsNone(rejection_target(self.steps[0], self.steps))

    def test_configured_target_outside_the_list_resolves_to_nothing(self) -> None:
        current = step(30, 3, reject_target_step_id=999)
        self.assertIsNone(rejection_target(current, self.steps))

    def test_next_and_first_step(self) -> None:
        self.assertEqual(next_step(self.steps, self.steps[0]).id, 20)
        self.assertIsNone(next_step(self.steps, self.steps[3]))
        self.assertEqual(first_step(self.steps).id, 10)
        self.assertIsNone(first_step([]))
        self.assertEqual(find_step_index(self.steps, 30), 2)
        self.assertEqual(find_step_index(self.steps, 5), -1)

    def test_final_step_is_highest_order(self) -> None:
        self.assertTrue(is_final_step(self.steps, self.steps[3]))
        self.assertFalse(is_final_step(self.steps, self.steps[2]))

    def test_duplicate_final_order_picks_first_match(self) -> None:
        steps = [step(1, 1), step(2, 2), step(3, 3), step(4, 3)]
        self.assertTrue(is_final_step(steps, steps[2]))
        self.assertFalse(is_final_step(steps, steps[3]))

    def test_resolve_reject_target_modes(self) -> None:
        current = self.steps[2]
        self.assertIsNone(resolve_reject_target(RejectionMode.PREVIOUS, current, self.steps))
        self.assertEqual(resolve_reject_target(RejectionMode.FIRST, current, self.steps), 10)
        self.assertEqual(resolve_reject_target(RejectionMode.SPECIFIC, current, self.steps, 20), 20)
        with self.assertRaises(ValueError):
            resolve_reject_target(RejectionMode.SPECIFIC, current, self.steps, 40)
        with self.assertRaises(ValueError):
            resolve_reject_target(RejectionMode.SPECIFIC, current, self.steps)
        with self.assertRaises(ValueError):
            resolve_reject_target(RejectionMode.FIRST, self.steps[0], self.steps)
        with self.assertRaises(ValueError):
            resolve_reject_target("sideways", current, self.steps)

    def test_rejection_mode_for(self) -> None:
        self.assertEqual(rejection_mode_for(self.steps[2], self.steps), RejectionMode.PREVIOUS)
        self.assertEqual(
            rejection_mode_for(step(30, 3, reject_target_step_id=10), self.steps), RejectionMode.FIRST
        )
        self.assertEqual(
            rejection_mode_for(step(30, 3, reject_target_step_id=20), self.steps), RejectionMode.SPECIFIC
        )


class PermissionGateTests(SimpleTestCase):
    def setUp(self) -> None:
        self.step = step(1, 1, approval_type=WorkflowTemplateStep.SINGLE)
        self.assignments = [
            StepRoleAssignment(role_name="manager", can_approve=True),
            StepRoleAssignment(role_name="Auditor", can_approve=False, can_reject=True),
        ]

    def test_role_match_ignores_case(self) -> None:
        actor = Actor(user_id=1, organization_id=1, roles=frozenset({RoleName.parse("Manager")}))
        self.assertTrue(can_act(actor, self.step, self.assignments))
        self.assertEqual(RoleName.parse("MANAGER"), RoleName.parse("manager"))

    def test_actor_without_matching_role_is_denied(self) -> None:
        nobody = Actor(user_id=1, organization_id=1)
        auditor = Actor(user_id=2, organization_id=1, roles=frozenset({RoleName.parse("auditor")}))
        self.assertFalse(can_act(nobody, self.step, self.assignments))
        self.assertFalse(can_act(auditor, self.step, self.assignments))
        self.assertTrue(can_act(auditor, self.step, self.assignments, Capability.REJECT))

    def test_steps_without_approval_open_to_any_user(self) -> None:
        open_step = step(2, 2, approval_type=WorkflowTemplateStep.NONE)
        self.assertTrue(can_act(Actor(user_id=5, organization_id=1), open_step, []))
        self.assertFalse(can_act(Actor(user_id=None, organization_id=1), open_step, []))

    def test_required_capability(self) -> None:
        self.assertEqual(required_capability(WorkflowAction.REJECT, strict=False), Capability.APPROVE)
        self.assertEqual(required_capability(WorkflowAction.REJECT, strict=True), Capability.REJECT)
        self.assertEqual(required_capability(WorkflowAction.REASSIGN, strict=True), Capability.ASSIGN)
        self.assertEqual(required_capability(WorkflowAction.COMPLETE, strict=True), Capability.APPROVE)


class EngineTests(TestCase):
    def setUp(self) -> None:
        cache.clear()
        self.template = WorkflowTemplate.objects.create(
            name="Capital works", module=WorkflowTemplate.WORK_ORDERS, organization_id=1, is_default=True
        )
        self.intake = WorkflowTemplateStep.objects.create(
            template=self.template,
            name="Intake",
            step_order=1,
            approval_type=WorkflowTemplateStep.NONE,
            organization_id=1,
        )
        self.board = WorkflowTemplateStep.objects.create(
            template=self.template,
            name="Board review",
            step_order=2,
            approval_type=WorkflowTemplateStep.MULTIPLE,
            required_approvals=2,
            sla_hours=4,
            work_order_status=WorkOrder.PENDING_APPROVAL,
            organization_id=1,
        )
        self.signoff = WorkflowTemplateStep.objects.create(
            template=self.template,
            name="Sign-off",
            step_order=3,
            approval_type=WorkflowTemplateStep.UNANIMOUS,
            organization_id=1,
        )
        self.closeout = WorkflowTemplateStep.objects.create(
            template=self.template,
            name="Close out",
            step_order=4,
            approval_type=WorkflowTemplateStep.NONE,
            organization_id=1,
        )
        StepRoleAssignment.objects.create(step=self.board, role_name="Board", can_approve=True, organization_id=1)
        StepRoleAssignment.objects.create(
            step=self.signoff, role_name="Director", can_approve=True, organization_id=1
        )
        self.member_a = self._user("a@example.com", "Board", "Director")
        self.member_b = self._user("b@example.com", "board", "director")
        self._user("retired@example.com", "Director", is_active=False)
        self._user("elsewhere@example.com", "Director", organization_id=2)
        self.clerk = self._user("clerk@example.com")
        self.work_order = WorkOrder.objects.create(title="New roof", organization_id=1)

    def _user(self, email, *roles, organization_id=1, is_active=True) -> User:
        user = User.objects.create(
            email=email, display_name=email, organization_id=organization_id, is_active=is_active
        )
        for name in roles:
            role, _ = Role.objects.get_or_create(name=name)
            user.roles.add(role)
        return user

    def _run(self, action: str, user: User, **extra) -> engine.TransitionResult:
        return engine.execute_transition(
            engine.TransitionCommand(
                entity=self.work_order,
                action=action,
                actor=Actor.from_user(user),
                **extra,
            )
        )

    def test_initialize_requires_default_template(self) -> None:
        other = WorkOrder.objects.create(title="Fence", organization_id=3)
        with self.assertRaises(NoDefaultTemplateError):
            engine.initialize_workflow(other)

    def test_auto_transition_and_sla(self) -> None:
        engine.initialize_workflow(self.work_order)

        result = self._run(WorkflowAction.AUTO_TRANSITION, self.clerk)

        self.assertTrue(result.advanced)
        state = WorkflowState.objects.get(work_order=self.work_order)
        self.assertEqual(state.current_step, self.board)
        self.assertEqual(state.sla_due_at - state.step_started_at, timedelta(hours=4))
        self.work_order.refresh_from_db()
        self.assertEqual(self.work_order.status, WorkOrder.PENDING_APPROVAL)
        approval = WorkflowApproval.objects.get(work_order=self.work_order)
        self.assertEqual(approval.comments, engine.AUTO_TRANSITION_COMMENT)

    def test_auto_transition_refused_on_approval_step(self) -> None:
        engine.initialize_workflow(self.work_order)
        self._run(WorkflowAction.AUTO_TRANSITION, self.clerk)

        with self.assertRaises(WorkflowValidationError):
            self._run(WorkflowAction.AUTO_TRANSITION, self.member_a)

    def test_multiple_approvals_collect_a_quorum(self) -> None:
        engine.initialize_workflow(self.work_order)
        self._run(WorkflowAction.AUTO_TRANSITION, self.clerk)

        first = self._run(WorkflowAction.APPROVE, self.member_a, comments="Looks fine")
        self.assertFalse(first.advanced)
        self.assertEqual((first.approvals_collected, first.approvals_required), (1, 2))
        with self.assertRaises(WorkflowValidationError):
            self._run(WorkflowAction.APPROVE, self.member_a)

        second = self._run(WorkflowAction.APPROVE, self.member_b)
        self.assertTrue(second.advanced)
        self.assertEqual(second.to_step_id, self.signoff.id)
        self.assertFalse(ApprovalVote.objects.exists())
        intermediate = WorkflowApproval.objects.filter(
            work_order=self.work_order, step=self.board, from_step=self.board
        )
        self.assertEqual(intermediate.count(), 1)
        self.assertEqual(intermediate.get().from_step, self.board)

    def test_unanimous_counts_active_approvers_of_the_organization(self) -> None:
        engine.initialize_workflow(self.work_order)
        self._run(WorkflowAction.AUTO_TRANSITION, self.clerk)
        self._run(WorkflowAction.APPROVE, self.member_a)
        self._run(WorkflowAction.APPROVE, self.member_b)

        first = self._run(WorkflowAction.APPROVE, self.member_b)
        self.assertEqual(first.approvals_required, 2)
        self.assertFalse(first.advanced)
        second = self._run(WorkflowAction.APPROVE, self.member_a)
        self.assertEqual(second.to_step_id, self.closeout.id)

        done = self._run(WorkflowAction.COMPLETE, self.clerk)
        self.assertTrue(done.completed)
        self.assertFalse(WorkflowState.objects.filter(work_order=self.work_order).exists())

    def test_denied_actor_writes_nothing_but_the_execution_log(self) -> None:
        engine.initialize_workflow(self.work_order)
        self._run(WorkflowAction.AUTO_TRANSITION, self.clerk)

        with self.assertRaises(PermissionDeniedError):
            self._run(WorkflowAction.APPROVE, self.clerk)

        self.assertFalse(ApprovalVote.objects.exists())
        failure = WorkflowExecutionLog.objects.filter(success=False).get()
        self.assertEqual(failure.action_type, WorkflowAction.APPROVE)
        self.assertEqual(failure.performed_by_id, self.clerk.id)

    def test_failed_condition_rolls_back_the_whole_transition(self) -> None:
        StepCondition.objects.create(
            step=self.board, field_name="priority", operator=StepCondition.EQUALS, expected_value="critical"
        )
        engine.initialize_workflow(self.work_order)

        with self.assertRaises(StepConditionsNotMetError):
            self._run(WorkflowAction.AUTO_TRANSITION, self.clerk)

        state = WorkflowState.objects.get(work_order=self.work_order)
        self.assertEqual(state.current_step, self.intake)
        self.assertEqual(state.version, 1)
        self.assertFalse(WorkflowApproval.objects.exists())
        self.work_order.refresh_from_db()
        self.assertEqual(self.work_order.status, WorkOrder.OPEN)

    @override_settings(WORKFLOW_STRICT_CAPABILITIES=True)
    def test_strict_capabilities_require_can_reject(self) -> None:
        engine.initialize_workflow(self.work_order)
        self._run(WorkflowAction.AUTO_TRANSITION, self.clerk)

        with self.assertRaises(PermissionDeniedError):
            self._run(WorkflowAction.REJECT, self.member_a, comments="Over budget")

        StepRoleAssignment.objects.filter(step=self.board).update(can_reject=True)
        cache.clear()
        result = self._run(WorkflowAction.REJECT, self.member_a, comments="Over budget")
        self.assertEqual(result.to_step_id, self.intake.id)

    def test_available_actions_reports_quorum_progress(self) -> None:
        engine.initialize_workflow(self.work_order)
        self._run(WorkflowAction.AUTO_TRANSITION, self.clerk)
        self._run(WorkflowAction.APPROVE, self.member_a)

        panel = engine.available_actions(self.work_order, Actor.from_user(self.member_b))

        self.assertEqual(panel["current_step"]["id"], self.board.id)
        self.assertEqual((panel["approvals_collected"], panel["approvals_required"]), (1, 2))
        self.assertEqual(panel["required_roles"], ["Board"])
        self.assertEqual(panel["rejection_target"]["id"], self.intake.id)

    def test_bulk_initialize_counts(self) -> None:
        WorkOrder.objects.create(title="Gutters", organization_id=1)
        WorkOrder.objects.create(title="Archived", organization_id=1, status=WorkOrder.COMPLETED)
        engine.initialize_workflow(self.work_order)

        self.assertEqual(engine.bulk_initialize(WorkflowTemplate.WORK_ORDERS, 1), (1, 1, 0))

    def test_actor_from_another_organization_is_refused(self) -> None:
        engine.initialize_workflow(self.work_order)
        outsider = self._user("outsider@example.com", "Board", organization_id=2)

        with self.assertRaises(PermissionDeniedError):
            self._run(WorkflowAction.AUTO_TRANSITION, outsider)
        shed = WorkOrder.objects.create(title="Shed", organization_id=1)
        with self.assertRaises(PermissionDeniedError):
            engine.initialize_workflow(shed, actor=Actor.from_user(outsider))

        self.assertEqual(WorkflowState.objects.get(work_order=self.work_order).current_step, self.intake)
        self.assertFalse(WorkflowApproval.objects.exists())
        self.assertFalse(WorkflowState.objects.filter(work_order=shed).exists())


class ReadModelTests(TestCase):
    def setUp(self) -> None:
        cache.clear()
        self.template = WorkflowTemplate.objects.create(
            name="Lighting", module=WorkflowTemplate.WORK_ORDERS, organization_id=1
        )
        self.step = WorkflowTemplateStep.objects.create(
            template=self.template, name="Survey", step_order=1, organization_id=1
        )
        self.key = read_model.steps_key(self.template.id)

    def test_reads_inside_a_transaction_are_not_cached(self) -> None:
        steps = read_model.list_steps_for_template(self.template.id)

        self.assertEqual([item.id for item in steps], [self.step.id])
        self.assertIsNone(cache.get(self.key))

    @mock.patch("workflows.read_model.transaction")
    def test_committed_reads_are_cached(self, transaction: mock.Mock) -> None:
        transaction.get_connection.return_value.in_atomic_block = False

        read_model.list_steps_for_template(self.template.id)

        self.assertEqual([item.id for item in cache.get(self.key)], [self.step.id])
