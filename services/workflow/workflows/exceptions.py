"""Errors raised by the workflow engine.

All of them are DRF ``APIException`` subclasses so an error raised deep inside a
transition propagates unchanged to the view layer and is rendered with a
meaningful status code.
"""
from __future__ import annotations

from typing import Iterable, Optional

from rest_framework import status
from rest_framework.exceptions import APIException


class WorkflowError(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Workflow operation failed."
    default_code = "workflow_error"


class PermissionDeniedError(WorkflowError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "You don't have permission to perform actions on this step."
    default_code = "permission_denied"

    def __init__(
        self,
        required_roles: Iterable[str] = (),
        held_roles: Iterable[str] = (),
        detail: Optional[str] = None,
    ) -> None:
        self.required_roles = list(required_roles)
        self.held_roles = list(held_roles)
        super().__init__(
            {
                "detail": detail or self.default_detail,
                "required_roles": self.required_roles,
                "held_roles": self.held_roles,
            }
        )


class NoNextStepError(WorkflowError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "No next step available."
    default_code = "no_next_step"


class NoRejectionTargetError(WorkflowError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Cannot reject: no valid previous step configured."
    default_code = "no_rejection_target"


class NotFinalStepError(WorkflowError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "This is not the final step."
    default_code = "not_final_step"


class StepConditionsNotMetError(WorkflowError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Step conditions not met for transition."
    default_code = "conditions_not_met"


class ConcurrentTransitionError(WorkflowError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "The workflow was changed by another request. Reload and retry."
    default_code = "stale_workflow_state"


class WorkflowAlreadyInitializedError(WorkflowError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "A workflow is already running for this entity."
    default_code = "workflow_exists"


class WorkflowValidationError(WorkflowError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid workflow request."
    default_code = "invalid"


class WorkflowNotFoundError(WorkflowError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Workflow state not found. Has the workflow been initialized?"
    default_code = "workflow_not_found"


class NoDefaultTemplateError(WorkflowError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "No default workflow template found."
    default_code = "no_default_template"


class RemoteOperationError(WorkflowError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "The workflow could not be saved. Please retry."
    default_code = "remote_operation_failed"
