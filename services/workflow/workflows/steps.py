"""Pure helpers that navigate the ordered step list of a template.

Every function takes the step list as an argument and performs no queries, so
the same code serves the engine, the actions panel and the step editor. Steps
may be model instances or any object exposing ``id``, ``step_order`` and
``reject_target_step_id``.
"""
from __future__ import annotations

from typing import Any, Iterable, List, Optional, Sequence


def order_steps(steps: Iterable[Any]) -> List[Any]:
    return sorted(steps, key=lambda step: (step.step_order, step.id))


def find_step_index(steps: Sequence[Any], step_id: Optional[int]) -> int:
    """Return the position of ``step_id`` in ``steps`` or ``-1``."""

    for index, step in enumerate(steps):
        if step.id == step_id:
            return index
    return -1


def get_step(steps: Sequence[Any], step_id: Optional[int]) -> Optional[Any]:
    index = find_step_index(steps, step_id)
    return steps[index] if index >= 0 else None


def first_step(steps: Sequence[Any]) -> Optional[Any]:
    return steps[0] if steps else None


def next_step(steps: Sequence[Any], current: Any) -> Optional[Any]:
    index = find_step_index(steps, current.id)
    if index < 0 or index + 1 >= len(steps):
        return None
    return steps[index + 1]


def previous_step(steps: Sequence[Any], current: Any) -> Optional[Any]:
    index = find_step_index(steps, current.id)
    if index <= 0:
        return None
    return steps[index - 1]


def is_final_step(steps: Sequence[Any], current: Any) -> bool:
    """True when ``current`` carries the highest ``step_order`` of the list.

    When several steps share the highest order only the first of them, in list
    order, counts as final.
    """

    final: Optional[Any] = None
    for step in steps:
        if final is None or step.step_order > final.step_order:
            final = step
    return final is not None and final.id == current.id


def rejection_target(step: Any, steps: Sequence[Any]) -> Optional[Any]:
    """Resolve where a rejection at ``step`` sends the workflow.

    A configured target wins when it is part of ``steps``; otherwise the step
    immediately before ``step``. ``None`` means rejection is impossible.
    """

    target_id = getattr(step, "reject_target_step_id", None)
    if target_id is not None:
        return get_step(steps, target_id)
    return previous_step(steps, step)


class RejectionMode:
    PREVIOUS = "previous"
    FIRST = "first"
    SPECIFIC = "specific"

    CHOICES = [
        (PREVIOUS, "Previous step"),
        (FIRST, "First step"),
        (SPECIFIC, "Specific step"),
    ]


def rejection_mode_for(step: Any, steps: Sequence[Any]) -> str:
    """Describe the stored rejection target of ``step`` as an editor mode."""

    target_id = getattr(step, "reject_target_step_id", None)
    if target_id is None:
        return RejectionMode.PREVIOUS
    first = first_step(steps)
    if first is not None and first.id == target_id and first.id != step.id:
        return RejectionMode.FIRST
    return RejectionMode.SPECIFIC


def resolve_reject_target(
    mode: str,
    step: Any,
    steps: Sequence[Any],
    specific_step_id: Optional[int] = None,
) -> Optional[int]:
    """Translate an editor rejection mode into ``reject_target_step_id``.

    Raises ``ValueError`` when the mode or the chosen step is not usable.
    """

    if mode == RejectionMode.PREVIOUS:
        return None
    if mode == RejectionMode.FIRST:
        first = first_step(steps)
        if first is None or first.id == step.id:
            raise ValueError("The first step cannot reject to itself.")
        return first.id
    if mode == RejectionMode.SPECIFIC:
        if specific_step_id is None:
            raise ValueError("A target step is required for specific rejection.")
        target = get_step(steps, specific_step_id)
        if target is None:
            raise ValueError("The target step does not belong to this template.")
        if target.step_order >= step.step_order:
            raise ValueError("The target step must come before the current step.")
        return target.id
    raise ValueError(f"Unknown rejection mode: {mode}")
