"""
Lifecycle of a HealingAction.

Phases only move forward. ``Retrying`` marks an attempt that failed with a
transient error and will be tried again; ``Denied``, ``Succeeded`` and
``Failed`` are terminal and never left.
"""

import time
from typing import Dict, FrozenSet, Optional

from ..exceptions import InvalidTransitionError
from ..utils import to_iso
from .healing import ActionPhase, HealingAction

MAX_CONDITIONS = 10

ALLOWED_TRANSITIONS: Dict[ActionPhase, FrozenSet[ActionPhase]] = {
    ActionPhase.PENDING: frozenset({ActionPhase.VALIDATING}),
    ActionPhase.VALIDATING: frozenset({ActionPhase.APPROVED, ActionPhase.DENIED}),
    ActionPhase.APPROVED: frozenset({ActionPhase.EXECUTING}),
    ActionPhase.EXECUTING: frozenset({ActionPhase.SUCCEEDED, ActionPhase.FAILED, ActionPhase.RETRYING}),
    ActionPhase.RETRYING: frozenset({ActionPhase.EXECUTING}),
    ActionPhase.DENIED: frozenset(),
    ActionPhase.SUCCEEDED: frozenset(),
    ActionPhase.FAILED: frozenset(),
}


def can_transition(current: ActionPhase, target: ActionPhase) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def transition(action: HealingAction, target: ActionPhase, reason: str = "",
               message: str = "", now: Optional[float] = None) -> HealingAction:
    """Move ``action`` to ``target``, stamping timestamps and a condition."""
    current = action.phase
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Illegal phase change {current.value} -> {target.value}",
            context={"action": action.key},
        )

    now = time.time() if now is None else now
    action.phase = target

    if target is ActionPhase.EXECUTING and action.start_time is None:
        action.start_time = now
    if target.terminal:
        action.completion_time = now

    action.conditions.append({
        "type": target.value,
        "status": "True",
        "lastTransitionTime": to_iso(now),
        "reason": reason or target.value,
        "message": message,
    })
    del action.conditions[:-MAX_CONDITIONS]
    return action
