"""Keep the read model in step with writes to workflow configuration."""
from __future__ import annotations

from django.db.models.signals import post_delete, post_save
from django.dispatch import receiver

from work_orders.models import Incident, WorkOrder

from . import read_model
from .models import (
    StepCondition,
    StepRoleAssignment,
    WorkflowState,
    WorkflowTemplate,
    WorkflowTemplateStep,
)


@receiver([post_save, post_delete], sender=WorkflowTemplateStep)
def _step_changed(sender, instance, **kwargs):  # type: ignore[no-untyped-def]
    read_model.invalidate_template(instance.template_id)
    read_model.invalidate_step(instance.id)


@receiver([post_save, post_delete], sender=WorkflowTemplate)
def _template_changed(sender, instance, **kwargs):  # type: ignore[no-untyped-def]
    read_model.invalidate_template(instance.id)


@receiver([post_save, post_delete], sender=StepRoleAssignment)
def _assignment_changed(sender, instance, **kwargs):  # type: ignore[no-untyped-def]
    read_model.invalidate_step(instance.step_id)


@receiver([post_save, post_delete], sender=StepCondition)
def _condition_changed(sender, instance, **kwargs):  # type: ignore[no-untyped-def]
    read_model.invalidate_step(instance.step_id)


@receiver([post_save, post_delete], sender=WorkflowState)
def _state_changed(sender, instance, **kwargs):  # type: ignore[no-untyped-def]
    if instance.entity_id is not None:
        read_model.invalidate_state(instance.entity_type, instance.entity_id)


@receiver([post_save, post_delete], sender=WorkOrder)
@receiver([post_save, post_delete], sender=Incident)
def _entity_changed(sender, instance, **kwargs):  # type: ignore[no-untyped-def]
    read_model.invalidate_state(sender.ENTITY_TYPE, instance.id)
