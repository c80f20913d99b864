"""Role based gate deciding who may act on a workflow step."""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, FrozenSet, Iterable, List, Optional, Set

from django.conf import settings
from rest_framework.request import Request

from accounts.models import User

from .exceptions import PermissionDeniedError, WorkflowValidationError

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"
ORGANIZATION_HEADER = "X-Organization-Id"


class Capability(enum.Enum):
    APPROVE = "can_approve"
    REJECT = "can_reject"
    ASSIGN = "can_assign"
    VIEW = "can_view"
    EDIT = "can_edit"


class WorkflowAction:
    INITIALIZE = "initialize"
    APPROVE = "approve"
    AUTO_TRANSITION = "auto_transition"
    REJECT = "reject"
    REASSIGN = "reassign"
    COMPLETE = "complete"

    TRANSITIONS = (APPROVE, AUTO_TRANSITION, REJECT, REASSIGN, COMPLETE)


@dataclass(frozen=True)
class RoleName:
    """A role identifier compared without regard to case."""

    key: str
    label: str = field(default="", compare=False)

    @classmethod
    def parse(cls, value: str) -> "RoleName":
        cleaned = (value or "").strip()
        return cls(key=cleaned.casefold(), label=cleaned)

    def __str__(self) -> str:
        return self.label or self.key


@dataclass(frozen=True)
class Actor:
    user_id: Optional[int]
    organization_id: Optional[int]
    roles: FrozenSet[RoleName] = frozenset()

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(
            user_id=user.id,
            organization_id=user.organization_id,
            roles=frozenset(RoleName.parse(name) for name in user.role_names()),
        )

    @property
    def role_labels(self) -> List[str]:
        return sorted(str(role) for role in self.roles)


def _matching(actor: Actor, assignments: Iterable[Any]) -> List[Any]:
    return [
        assignment
        for assignment in assignments
        if RoleName.parse(assignment.role_name) in actor.roles
    ]


def capabilities_for(actor: Actor, assignments: Iterable[Any]) -> Set[Capability]:
    granted: Set[Capability] = set()
    for assignment in _matching(actor, assignments):
        for capability in Capability:
            if getattr(assignment, capability.value, False):
                granted.add(capability)
    return granted


def required_roles(assignments: Iterable[Any], capability: Capability = Capability.APPROVE) -> List[str]:
    return [
        assignment.role_name
        for assignment in assignments
        if getattr(assignment, capability.value, False)
    ]


def can_act(
    actor: Actor,
    step: Any,
    assignments: Iterable[Any],
    capability: Capability = Capability.APPROVE,
) -> bool:
    if step.is_auto_transition:
        return actor.user_id is not None
    return capability in capabilities_for(actor, assignments)


def check_can_act(
    actor: Actor,
    step: Any,
    assignments: Iterable[Any],
    capability: Capability = Capability.APPROVE,
) -> None:
    assignments = list(assignments)
    if can_act(actor, step, assignments, capability):
        return
    logger.info(
        "User %s denied %s on step %s (roles=%s)",
        actor.user_id,
        capability.value,
        step.id,
        actor.role_labels,
    )
    raise PermissionDeniedError(
        required_roles=required_roles(assignments, capability),
        held_roles=actor.role_labels,
    )


def required_capability(action: str, strict: Optional[bool] = None) -> Capability:
    """Capability an action needs on the current step."""

    if strict is None:
        strict = getattr(settings, "WORKFLOW_STRICT_CAPABILITIES", False)
    if strict and action == WorkflowAction.REJECT:
        return Capability.REJECT
    if strict and action == WorkflowAction.REASSIGN:
        return Capability.ASSIGN
    return Capability.APPROVE


def _header_int(request: Request, name: str) -> Optional[int]:
    value = request.headers.get(name)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise WorkflowValidationError(f"{name} must be an integer.")


def organization_for_request(request: Request) -> Optional[int]:
    return _header_int(request, ORGANIZATION_HEADER)


def actor_for_request(request: Request) -> Actor:
    """Resolve the acting user once per request from the identity headers."""

    cached = getattr(request, "_workflow_actor", None)
    if cached is not None:
        return cached

    user_id = _header_int(request, USER_HEADER)
    organization_id = organization_for_request(request)
    if user_id is None:
        actor = Actor(user_id=None, organization_id=organization_id)
    else:
        user = User.objects.prefetch_related("roles").filter(pk=user_id, is_active=True).first()
        if user is None:
            raise PermissionDeniedError(detail="Unknown or inactive user.")
        if organization_id is not None and user.organization_id != organization_id:
            raise PermissionDeniedError(detail="User does not belong to this organization.")
        actor = Actor.from_user(user)

    request._workflow_actor = actor  # type: ignore[attr-defined]
    return actor
