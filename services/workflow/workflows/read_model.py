"""Cached reads of template steps, role assignments and workflow states."""
from __future__ import annotations

import logging
from typing import List, Optional

from django.conf import settings
from django.core.cache import cache
from django.db import transaction

from .models import StepRoleAssignment, WorkflowState, WorkflowTemplateStep

logger = logging.getLogger(__name__)


def _timeout() -> int:
    return getattr(settings, "WORKFLOW_CACHE_TIMEOUT", 300)


def _store(key: str, value) -> None:  # type: ignore[no-untyped-def]
    # Only committed rows are cached.
    if transaction.get_connection().in_atomic_block:
        return
    cache.set(key, value, _timeout())


def steps_key(template_id: int) -> str:
    return f"workflows:steps:{template_id}"


def assignments_key(step_id: int) -> str:
    return f"workflows:assignments:{step_id}"


def state_key(entity_type: str, entity_id: int) -> str:
    return f"workflows:state:{entity_type}:{entity_id}"


def list_steps_for_template(template_id: int) -> List[WorkflowTemplateStep]:
    """Active steps of a template ordered by ``step_order``."""

    key = steps_key(template_id)
    steps = cache.get(key)
    if steps is None:
        steps = list(
            WorkflowTemplateStep.objects.filter(template_id=template_id, is_active=True).order_by(
                "step_order", "id"
            )
        )
        _store(key, steps)
    return steps


def list_assignments_for_step(step_id: int) -> List[StepRoleAssignment]:
    key = assignments_key(step_id)
    assignments = cache.get(key)
    if assignments is None:
        assignments = list(StepRoleAssignment.objects.filter(step_id=step_id).order_by("role_name"))
        _store(key, assignments)
    return assignments


def get_state(entity_type: str, entity_id: int) -> Optional[WorkflowState]:
    """Return the running state of an entity or ``None`` when there is none."""

    key = state_key(entity_type, entity_id)
    state = cache.get(key)
    if state is None:
        lookup = {"work_order_id": entity_id} if entity_type == "work_order" else {"incident_id": entity_id}
        state = WorkflowState.objects.filter(**lookup).first()
        if state is None:
            return None
        _store(key, state)
    return state


def _delete_now_and_on_commit(key: str) -> None:
    cache.delete(key)
    transaction.on_commit(lambda: cache.delete(key))


def invalidate_template(template_id: int) -> None:
    logger.debug("Invalidating step list of template %s", template_id)
    _delete_now_and_on_commit(steps_key(template_id))


def invalidate_step(step_id: int) -> None:
    _delete_now_and_on_commit(assignments_key(step_id))


def invalidate_state(entity_type: str, entity_id: int) -> None:
    _delete_now_and_on_commit(state_key(entity_type, entity_id))
