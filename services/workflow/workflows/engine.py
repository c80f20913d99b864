"""Transactional execution of workflow transitions.

``execute_transition`` is the single write path for a running workflow. The
approval record, the move of ``current_step``, the entity status side effect
and the completion updates are committed together inside one
``transaction.atomic()`` block with the state row locked, so a failure at any
point leaves nothing half written. Every call, successful or not, appends a
``WorkflowExecutionLog`` row outside that block, and committed changes are
announced through the signals in ``workflows.events``.
"""
from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from accounts.models import User
from work_orders.models import MODULE_MODELS, WorkflowEntity

from . import events, read_model
from .exceptions import (
    ConcurrentTransitionError,
    NoDefaultTemplateError,
    NoNextStepError,
    NoRejectionTargetError,
    NotFinalStepError,
    PermissionDeniedError,
    RemoteOperationError,
    StepConditionsNotMetError,
    WorkflowAlreadyInitializedError,
    WorkflowError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from .models import (
    ApprovalVote,
    StepCondition,
    WorkflowApproval,
    WorkflowExecutionLog,
    WorkflowState,
    WorkflowTemplate,
    WorkflowTemplateStep,
)
from .permissions import (
    Actor,
    Capability,
    RoleName,
    WorkflowAction,
    can_act,
    check_can_act,
    required_capability,
    required_roles,
)
from .steps import get_step, is_final_step, next_step, rejection_target

logger = logging.getLogger(__name__)

AUTO_TRANSITION_COMMENT = "Automatically advanced: no approval required for this step."
COMPLETION_COMMENT = "Workflow completed."


@dataclass
class TransitionCommand:
    entity: WorkflowEntity
    action: str
    actor: Actor
    comments: str = ""
    assign_to_user_id: Optional[int] = None
    expected_version: Optional[int] = None
    correlation_id: str = ""


@dataclass
class TransitionResult:
    action: str
    entity_type: str
    entity_id: int
    from_step_id: Optional[int] = None
    to_step_id: Optional[int] = None
    advanced: bool = False
    completed: bool = False
    already_completed: bool = False
    approvals_collected: int = 0
    approvals_required: int = 0
    approval_id: Optional[int] = None
    version: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def _entity_lookup(entity: WorkflowEntity) -> Dict[str, Any]:
    return {entity.ENTITY_TYPE: entity}


def _entity_id_lookup(entity: WorkflowEntity) -> Dict[str, Any]:
    return {f"{entity.ENTITY_TYPE}_id": entity.pk}


def default_template(module: str, organization_id: int) -> Optional[WorkflowTemplate]:
    return (
        WorkflowTemplate.objects.filter(
            module=module,
            organization_id=organization_id,
            is_default=True,
            is_active=True,
        )
        .order_by("-version", "-id")
        .first()
    )


def _check_organization(actor: Optional[Actor], entity: WorkflowEntity) -> None:
    if actor is None or actor.organization_id is None:
        return
    if actor.organization_id != entity.organization_id:
        raise PermissionDeniedError(
            held_roles=actor.role_labels,
            detail="This workflow belongs to another organization.",
        )


def _record_execution(
    action: str,
    entity: WorkflowEntity,
    actor: Optional[Actor],
    started: float,
    correlation_id: str,
    state_id: Optional[int] = None,
    step_id: Optional[int] = None,
    error: Optional[Exception] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    try:
        WorkflowExecutionLog.objects.create(
            entity_type=entity.ENTITY_TYPE,
            entity_id=entity.pk,
            workflow_state_id=state_id,
            step_id=step_id,
            action_type=action,
            performed_by_id=actor.user_id if actor else None,
            execution_time_ms=int((time.monotonic() - started) * 1000),
            success=error is None,
            error_message=str(error) if error is not None else "",
            metadata=metadata or {},
            correlation_id=correlation_id or "",
            organization_id=entity.organization_id,
        )
    except DatabaseError:
        logger.exception("[%s] Could not write execution log for %s", correlation_id, action)


def _run(
    action: str,
    entity: WorkflowEntity,
    actor: Optional[Actor],
    correlation_id: str,
    operation: Callable[[], Tuple[Any, Optional[int], Optional[int], Dict[str, Any]]],
) -> Any:
    """Run ``operation`` atomically and log its outcome."""

    started = time.monotonic()
    try:
        with transaction.atomic():
            value, state_id, step_id, metadata = operation()
    except WorkflowError as exc:
        _record_execution(action, entity, actor, started, correlation_id, error=exc)
        raise
    except IntegrityError as exc:
        logger.warning("[%s] %s on %s:%s hit a constraint: %s", correlation_id, action, entity.ENTITY_TYPE, entity.pk, exc)
        _record_execution(action, entity, actor, started, correlation_id, error=exc)
        if action == WorkflowAction.INITIALIZE:
            raise WorkflowAlreadyInitializedError() from exc
        raise ConcurrentTransitionError() from exc
    except DatabaseError as exc:
        logger.exception("[%s] %s on %s:%s failed", correlation_id, action, entity.ENTITY_TYPE, entity.pk)
        _record_execution(action, entity, actor, started, correlation_id, error=exc)
        raise RemoteOperationError() from exc

    _record_execution(
        action,
        entity,
        actor,
        started,
        correlation_id,
        state_id=state_id,
        step_id=step_id,
        metadata=metadata,
    )
    return value


def _primary_role(assignments: List[Any]) -> str:
    for assignment in assignments:
        if assignment.is_primary_assignee:
            return assignment.role_name
    for assignment in assignments:
        if assignment.can_approve:
            return assignment.role_name
    return ""


def _enter_step(
    state: WorkflowState,
    entity: WorkflowEntity,
    step: WorkflowTemplateStep,
    now,
) -> None:
    """Make ``step`` current and apply its entity status."""

    state.current_step = step
    state.step_started_at = now
    state.sla_due_at = step.sla_due_at(now)
    state.pending_approval_from_role = _primary_role(read_model.list_assignments_for_step(step.id))
    if state.pk is not None:
        ApprovalVote.objects.filter(state=state).delete()

    changed = entity.apply_status(getattr(step, entity.STEP_STATUS_FIELD, ""))
    if changed:
        entity.save(update_fields=changed + ["updated_at"])


def _save_state(state: WorkflowState) -> None:
    state.version += 1
    state.save()


def _record(
    state: WorkflowState,
    entity: WorkflowEntity,
    action: str,
    actor: Actor,
    from_step: Optional[WorkflowTemplateStep],
    to_step: Optional[WorkflowTemplateStep],
    comments: str,
) -> WorkflowApproval:
    return WorkflowApproval.objects.create(
        step=to_step,
        from_step=from_step,
        approved_by_id=actor.user_id,
        approval_action=action,
        comments=comments,
        organization_id=state.organization_id,
        **_entity_lookup(entity),
    )


def _check_conditions(entity: WorkflowEntity, step: WorkflowTemplateStep) -> None:
    failed = [
        condition
        for condition in StepCondition.objects.filter(step=step, is_active=True)
        if not condition.evaluate(entity)
    ]
    if failed:
        fields = ", ".join(condition.field_name for condition in failed)
        raise StepConditionsNotMetError(f"Step conditions not met for transition: {fields}.")


def _assignee(user_id: Optional[int], organization_id: int) -> User:
    if user_id is None:
        raise WorkflowValidationError("Select a user to assign the workflow to.")
    user = User.objects.filter(pk=user_id, organization_id=organization_id, is_active=True).first()
    if user is None:
        raise WorkflowValidationError("The selected user does not belong to this organization.")
    return user


def _assign(state: WorkflowState, entity: WorkflowEntity, user: User) -> None:
    state.assigned_to = user
    if hasattr(entity, "assigned_technician_id") and entity.assigned_technician_id != user.id:
        entity.assigned_technician = user
        entity.save(update_fields=["assigned_technician", "updated_at"])


def approvals_required(state: WorkflowState, step: WorkflowTemplateStep, assignments: List[Any]) -> int:
    """Number of distinct approvals ``step`` needs before it advances."""

    if step.approval_type == WorkflowTemplateStep.MULTIPLE:
        return max(1, step.required_approvals)
    if step.approval_type == WorkflowTemplateStep.UNANIMOUS:
        approver_roles = {RoleName.parse(name) for name in required_roles(assignments)}
        users = User.objects.filter(organization_id=state.organization_id, is_active=True).prefetch_related("roles")
        eligible = [
            user
            for user in users
            if approver_roles & {RoleName.parse(name) for name in user.role_names()}
        ]
        return max(1, len(eligible))
    return 1


class _Transition:
    """State of one locked transition while its handler runs."""

    def __init__(self, command: TransitionCommand) -> None:
        self.command = command
        self.now = timezone.now()
        model = type(command.entity)
        try:
            self.entity = model.objects.select_for_update().get(pk=command.entity.pk)
        except model.DoesNotExist:
            raise WorkflowNotFoundError(f"{model.ENTITY_TYPE} {command.entity.pk} no longer exists.")
        _check_organization(command.actor, self.entity)
        self.state = (
            WorkflowState.objects.select_for_update()
            .filter(**_entity_id_lookup(self.entity))
            .first()
        )
        self.result = TransitionResult(
            action=command.action,
            entity_type=self.entity.ENTITY_TYPE,
            entity_id=self.entity.pk,
        )
        if self.state is None:
            return
        if command.expected_version is not None and command.expected_version != self.state.version:
            raise ConcurrentTransitionError()
        self.steps = read_model.list_steps_for_template(self.state.template_id)
        self.current = get_step(self.steps, self.state.current_step_id) or self.state.current_step
        self.assignments = read_model.list_assignments_for_step(self.current.id)
        self.result.from_step_id = self.current.id
        self.result.to_step_id = self.current.id

    def gate(self, action: str) -> None:
        check_can_act(self.command.actor, self.current, self.assignments, required_capability(action))

    def move_to(self, step: WorkflowTemplateStep, action: str, comments: str) -> None:
        approval = _record(self.state, self.entity, action, self.command.actor, self.current, step, comments)
        _enter_step(self.state, self.entity, step, self.now)
        if self.command.assign_to_user_id is not None:
            _assign(self.state, self.entity, _assignee(self.command.assign_to_user_id, self.state.organization_id))
        _save_state(self.state)
        self.result.approval_id = approval.id
        self.result.to_step_id = step.id
        self.result.advanced = True
        self.result.version = self.state.version


def _approve(transition: _Transition) -> None:
    transition.gate(WorkflowAction.APPROVE)
    target = next_step(transition.steps, transition.current)
    if target is None:
        raise NoNextStepError()

    state = transition.state
    actor = transition.command.actor
    required = approvals_required(state, transition.current, transition.assignments)
    if required > 1:
        _, created = ApprovalVote.objects.get_or_create(
            state=state, step=transition.current, user_id=actor.user_id
        )
        if not created:
            raise WorkflowValidationError("You have already approved this step.")
        collected = ApprovalVote.objects.filter(state=state, step=transition.current).count()
        transition.result.approvals_collected = collected
        transition.result.approvals_required = required
        if collected < required:
            approval = _record(
                state,
                transition.entity,
                WorkflowApproval.APPROVED,
                actor,
                transition.current,
                transition.current,
                transition.command.comments,
            )
            _save_state(state)
            transition.result.approval_id = approval.id
            transition.result.version = state.version
            return
    else:
        transition.result.approvals_collected = 1
        transition.result.approvals_required = 1

    _check_conditions(transition.entity, target)
    transition.move_to(target, WorkflowApproval.APPROVED, transition.command.comments)


def _auto_transition(transition: _Transition) -> None:
    if not transition.current.is_auto_transition:
        raise WorkflowValidationError("This step requires an approval and cannot advance automatically.")
    transition.gate(WorkflowAction.AUTO_TRANSITION)
    target = next_step(transition.steps, transition.current)
    if target is None:
        raise NoNextStepError()
    _check_conditions(transition.entity, target)
    transition.move_to(
        target,
        WorkflowApproval.APPROVED,
        transition.command.comments or AUTO_TRANSITION_COMMENT,
    )


def _reject(transition: _Transition) -> None:
    transition.gate(WorkflowAction.REJECT)
    target = rejection_target(transition.current, transition.steps)
    if target is None:
        raise NoRejectionTargetError()
    comments = (transition.command.comments or "").strip()
    if not comments:
        raise WorkflowValidationError("A rejection reason is required.")
    transition.move_to(target, WorkflowApproval.REJECTED, comments)


def _reassign(transition: _Transition) -> None:
    transition.gate(WorkflowAction.REASSIGN)
    state = transition.state
    user = _assignee(transition.command.assign_to_user_id, state.organization_id)
    approval = _record(
        state,
        transition.entity,
        WorkflowApproval.REASSIGNED,
        transition.command.actor,
        transition.current,
        transition.current,
        transition.command.comments,
    )
    _assign(state, transition.entity, user)
    _save_state(state)
    transition.result.approval_id = approval.id
    transition.result.version = state.version


def _complete(transition: _Transition) -> None:
    transition.gate(WorkflowAction.COMPLETE)
    if not is_final_step(transition.steps, transition.current):
        raise NotFinalStepError()
    approval = _record(
        transition.state,
        transition.entity,
        WorkflowApproval.APPROVED,
        transition.command.actor,
        transition.current,
        transition.current,
        transition.command.comments or COMPLETION_COMMENT,
    )
    changed = transition.entity.mark_workflow_completed(transition.now)
    transition.entity.save(update_fields=changed + ["updated_at"])
    transition.state.delete()
    transition.result.approval_id = approval.id
    transition.result.to_step_id = None
    transition.result.completed = True


HANDLERS: Dict[str, Callable[[_Transition], None]] = {
    WorkflowAction.APPROVE: _approve,
    WorkflowAction.AUTO_TRANSITION: _auto_transition,
    WorkflowAction.REJECT: _reject,
    WorkflowAction.REASSIGN: _reassign,
    WorkflowAction.COMPLETE: _complete,
}


def execute_transition(command: TransitionCommand) -> TransitionResult:
    """Apply one workflow action to an entity."""

    handler = HANDLERS.get(command.action)
    if handler is None:
        raise WorkflowValidationError(f"Unknown workflow action: {command.action}")

    def operation():  # type: ignore[no-untyped-def]
        transition = _Transition(command)
        if transition.state is None:
            if command.action == WorkflowAction.COMPLETE and transition.entity.is_workflow_completed:
                transition.result.already_completed = True
                transition.result.completed = True
                return transition.result, None, None, {"already_completed": True}
            raise WorkflowNotFoundError()
        state_id = transition.state.pk
        handler(transition)
        metadata = {
            "from_step_id": transition.result.from_step_id,
            "to_step_id": transition.result.to_step_id,
            "approvals_collected": transition.result.approvals_collected,
        }
        return transition.result, state_id, transition.result.from_step_id, metadata

    result = _run(command.action, command.entity, command.actor, command.correlation_id, operation)
    logger.info(
        "[%s] %s on %s:%s by user %s: step %s -> %s",
        command.correlation_id,
        command.action,
        result.entity_type,
        result.entity_id,
        command.actor.user_id,
        result.from_step_id,
        result.to_step_id,
    )
    _publish_transition(command, result)
    return result


def _publish_transition(command: TransitionCommand, result: TransitionResult) -> None:
    common = {
        "sender": type(command.entity),
        "correlation_id": command.correlation_id,
        "organization_id": command.entity.organization_id,
        "entity_type": result.entity_type,
        "entity_id": result.entity_id,
        "performed_by": command.actor.user_id,
    }
    if result.advanced or (result.completed and not result.already_completed):
        events.publish(
            events.workflow_step_transitioned,
            action=command.action,
            from_step_id=result.from_step_id,
            to_step_id=result.to_step_id,
            completed=result.completed,
            **common,
        )
    elif command.action == WorkflowAction.REASSIGN:
        events.publish(
            events.workflow_step_reassigned,
            assigned_to_user_id=command.assign_to_user_id,
            step_id=result.from_step_id,
            **common,
        )


def initialize_workflow(
    entity: WorkflowEntity,
    actor: Optional[Actor] = None,
    template: Optional[WorkflowTemplate] = None,
    correlation_id: str = "",
) -> WorkflowState:
    """Start the workflow of ``entity`` at the first step of its template."""

    def operation():  # type: ignore[no-untyped-def]
        _check_organization(actor, entity)
        if WorkflowState.objects.filter(**_entity_id_lookup(entity)).exists():
            raise WorkflowAlreadyInitializedError()
        chosen = template or default_template(entity.MODULE, entity.organization_id)
        if chosen is None:
            raise NoDefaultTemplateError()
        steps = read_model.list_steps_for_template(chosen.id)
        if not steps:
            raise NoDefaultTemplateError("The default workflow template has no steps.")

        now = timezone.now()
        state = WorkflowState(
            template=chosen,
            organization_id=entity.organization_id,
            **_entity_lookup(entity),
        )
        _enter_step(state, entity, steps[0], now)
        state.save()
        return state, state.pk, steps[0].id, {"template_id": chosen.id}

    state = _run(WorkflowAction.INITIALIZE, entity, actor, correlation_id, operation)
    logger.info(
        "[%s] Initialized workflow for %s:%s with template %s",
        correlation_id,
        entity.ENTITY_TYPE,
        entity.pk,
        state.template_id,
    )
    events.publish(
        events.workflow_initialized,
        sender=type(entity),
        correlation_id=correlation_id,
        organization_id=entity.organization_id,
        entity_type=entity.ENTITY_TYPE,
        entity_id=entity.pk,
        template_id=state.template_id,
        first_step_id=state.current_step_id,
        performed_by=actor.user_id if actor else None,
    )
    return state


def bulk_initialize(module: str, organization_id: int) -> Tuple[int, int, int]:
    """Initialize every entity of ``module`` that has no workflow yet.

    Returns ``(initialized, skipped, failed)``.
    """

    model = MODULE_MODELS.get(module)
    if model is None:
        raise WorkflowValidationError(f"Unknown module: {module}")
    template = default_template(module, organization_id)
    if template is None:
        raise NoDefaultTemplateError()

    initialized = skipped = failed = 0
    pending = model.objects.filter(organization_id=organization_id, workflow_state__isnull=True).order_by("id")
    for entity in pending:
        if entity.is_workflow_completed:
            skipped += 1
            continue
        try:
            initialize_workflow(entity, template=template)
        except WorkflowAlreadyInitializedError:
            skipped += 1
        except WorkflowError as exc:
            logger.warning("Could not initialize workflow for %s:%s: %s", entity.ENTITY_TYPE, entity.pk, exc)
            failed += 1
        else:
            initialized += 1
    return initialized, skipped, failed


def _step_summary(step: Optional[WorkflowTemplateStep]) -> Optional[Dict[str, Any]]:
    if step is None:
        return None
    return {
        "id": step.id,
        "name": step.name,
        "step_order": step.step_order,
        "approval_type": step.approval_type,
    }


def _action(name: str, enabled: bool, reason: str = "") -> Dict[str, Any]:
    return {"action": name, "enabled": enabled, "reason": "" if enabled else reason}


def available_actions(entity: WorkflowEntity, actor: Actor) -> Dict[str, Any]:
    """Describe what ``actor`` can do on the workflow of ``entity`` right now."""

    state = read_model.get_state(entity.ENTITY_TYPE, entity.pk)
    if state is None:
        completed = entity.is_workflow_completed
        return {
            "initialized": False,
            "completed": completed,
            "current_step": None,
            "next_step": None,
            "rejection_target": None,
            "is_final_step": False,
            "is_auto_transition": False,
            "can_act": False,
            "required_roles": [],
            "held_roles": actor.role_labels,
            "approvals_collected": 0,
            "approvals_required": 0,
            "actions": [
                _action(
                    WorkflowAction.INITIALIZE,
                    not completed,
                    "The workflow has already been completed.",
                )
            ],
        }

    steps = read_model.list_steps_for_template(state.template_id)
    current = get_step(steps, state.current_step_id) or state.current_step
    assignments = read_model.list_assignments_for_step(current.id)
    following = next_step(steps, current)
    target = rejection_target(current, steps)
    final = is_final_step(steps, current)
    allowed = {
        action: can_act(actor, current, assignments, required_capability(action))
        for action in WorkflowAction.TRANSITIONS
    }
    denied = "You don't have permission to perform actions on this step."
    required = approvals_required(state, current, assignments)
    collected = ApprovalVote.objects.filter(state_id=state.pk, step_id=current.id).count() if required > 1 else 0

    actions = []
    if not allowed[WorkflowAction.APPROVE]:
        actions.append(_action(WorkflowAction.APPROVE, False, denied))
    elif following is None:
        actions.append(_action(WorkflowAction.APPROVE, False, "No next step available."))
    else:
        actions.append(_action(WorkflowAction.APPROVE, True))

    if not current.is_auto_transition:
        actions.append(_action(WorkflowAction.AUTO_TRANSITION, False, "This step requires an approval."))
    elif following is None:
        actions.append(_action(WorkflowAction.AUTO_TRANSITION, False, "No next step available."))
    else:
        actions.append(_action(WorkflowAction.AUTO_TRANSITION, allowed[WorkflowAction.AUTO_TRANSITION], denied))

    if not allowed[WorkflowAction.REJECT]:
        actions.append(_action(WorkflowAction.REJECT, False, denied))
    elif target is None:
        actions.append(_action(WorkflowAction.REJECT, False, "Cannot reject: no valid previous step configured."))
    else:
        actions.append(_action(WorkflowAction.REJECT, True))

    actions.append(_action(WorkflowAction.REASSIGN, allowed[WorkflowAction.REASSIGN], denied))

    if not final:
        actions.append(_action(WorkflowAction.COMPLETE, False, "This is not the final step."))
    else:
        actions.append(_action(WorkflowAction.COMPLETE, allowed[WorkflowAction.COMPLETE], denied))

    return {
        "initialized": True,
        "completed": False,
        "current_step": _step_summary(current),
        "next_step": _step_summary(following),
        "rejection_target": _step_summary(target),
        "is_final_step": final,
        "is_auto_transition": current.is_auto_transition,
        "can_act": allowed[WorkflowAction.APPROVE],
        "required_roles": required_roles(assignments, Capability.APPROVE),
        "held_roles": actor.role_labels,
        "approvals_collected": collected,
        "approvals_required": required,
        "actions": actions,
    }
