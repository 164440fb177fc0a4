"""
Data model for HealingPolicy and HealingAction resources and the ledgers.
"""

from .healing import (
    ActionPhase,
    ActionRecord,
    ActionResult,
    ActionTemplate,
    ActionType,
    AIAssessment,
    ComparisonOperator,
    HealingAction,
    HealingPolicy,
    Outcome,
    PolicyMode,
    PolicyWindow,
    ResourceFilter,
    ResourceSelector,
    SafetyConfig,
    SafetyState,
    TargetRef,
    Trigger,
    TriggerType,
    Verdict,
)
from .state_machine import ALLOWED_TRANSITIONS, can_transition, transition

__all__ = [
    "ActionPhase",
    "ActionRecord",
    "ActionResult",
    "ActionTemplate",
    "ActionType",
    "AIAssessment",
    "ComparisonOperator",
    "HealingAction",
    "HealingPolicy",
    "Outcome",
    "PolicyMode",
    "PolicyWindow",
    "ResourceFilter",
    "ResourceSelector",
    "SafetyConfig",
    "SafetyState",
    "TargetRef",
    "Trigger",
    "TriggerType",
    "Verdict",
    "ALLOWED_TRANSITIONS",
    "can_transition",
    "transition",
]
