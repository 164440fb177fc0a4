from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set

from ..config import ANNOTATION_APPROVED_BY, CRD_GROUP, CRD_VERSION
from ..utils import from_iso, to_iso


class ActionType(Enum):
    """Remediation primitives"""
    RESTART = "restart"
    SCALE = "scale"
    PATCH = "patch"
    DELETE = "delete"
    CORDON = "cordon"


class PolicyMode(Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"      # every action waits for approval
    DRYRUN = "dryrun"      # every action is simulated
    MONITOR = "monitor"    # evaluate only, never create actions


class TriggerType(Enum):
    METRIC = "metric"
    QUERY = "query"
    EVENT = "event"          # count of matching Kubernetes Events in a window
    CONDITION = "condition"  # age of a matching status condition


class ComparisonOperator(Enum):
    """Comparison operators for trigger thresholds"""
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"
    NE = "ne"

    def compare(self, value: float, threshold: float) -> bool:
        if self is ComparisonOperator.GT:
            return value > threshold
        if self is ComparisonOperator.GTE:
            return value >= threshold
        if self is ComparisonOperator.LT:
            return value < threshold
        if self is ComparisonOperator.LTE:
            return value <= threshold
        if self is ComparisonOperator.EQ:
            return abs(value - threshold) < 1e-9
        return abs(value - threshold) >= 1e-9


class ActionPhase(Enum):
    PENDING = "Pending"
    VALIDATING = "Validating"
    APPROVED = "Approved"
    DENIED = "Denied"
    EXECUTING = "Executing"
    RETRYING = "Retrying"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in (ActionPhase.DENIED, ActionPhase.SUCCEEDED, ActionPhase.FAILED)

    @property
    def holds_slot(self) -> bool:
        """Phases in which an admitted action owns a concurrency slot."""
        return self in (ActionPhase.APPROVED, ActionPhase.EXECUTING, ActionPhase.RETRYING)


class Outcome(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    DENIED = "denied"


# ============================================================================
# Targets and selectors
# ============================================================================

@dataclass(frozen=True)
class TargetRef:
    """Reference to a cluster object; cluster-scoped kinds use an empty namespace."""
    kind: str
    name: str
    namespace: str = ""
    api_version: str = "v1"
    uid: str = ""

    @property
    def key(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"

    def to_dict(self) -> Dict[str, str]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "namespace": self.namespace,
            "uid": self.uid,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TargetRef":
        return cls(
            kind=data["kind"],
            name=data["name"],
            namespace=data.get("namespace") or "",
            api_version=data.get("apiVersion") or data.get("api_version") or "v1",
            uid=data.get("uid") or "",
        )


@dataclass
class ResourceFilter:
    kind: str
    api_version: str = ""
    exclude_names: List[str] = field(default_factory=list)


@dataclass
class ResourceSelector:
    """Which objects a policy watches"""
    namespaces: List[str] = field(default_factory=list)
    match_labels: Dict[str, str] = field(default_factory=dict)
    resources: List[ResourceFilter] = field(default_factory=list)

    def __post_init__(self):
        self.resources = [ResourceFilter(**_snake(r)) if isinstance(r, dict) else r
                          for r in self.resources]

    def excludes(self, target: TargetRef) -> bool:
        for resource in self.resources:
            if resource.kind == target.kind and target.name in resource.exclude_names:
                return True
        return False


# ============================================================================
# Policy
# ============================================================================

@dataclass
class Trigger:
    """Condition over one value the collector reports for a target.

    Event and condition triggers are normalised into ``value >= threshold``:
    the collector reports the number of matching events, or how long the
    condition has held, under the trigger name.
    """
    name: str
    threshold: float = 0.0
    operator: ComparisonOperator = ComparisonOperator.GT
    type: TriggerType = TriggerType.METRIC
    metric: str = ""
    query: str = ""
    duration_seconds: float = 0.0
    # event triggers
    reason: str = ""
    event_type: str = ""
    count: int = 1
    window_seconds: float = 300.0
    # condition triggers
    condition_type: str = ""
    condition_status: str = "True"

    def __post_init__(self):
        if isinstance(self.operator, str):
            self.operator = ComparisonOperator(self.operator)
        if isinstance(self.type, str):
            self.type = TriggerType(self.type)
        self.threshold = float(self.threshold)
        self.duration_seconds = float(self.duration_seconds)
        if self.type is TriggerType.METRIC and not self.metric:
            self.metric = self.name
        elif self.type is TriggerType.EVENT:
            self.count = int(self.count)
            self.window_seconds = float(self.window_seconds)
            self.operator = ComparisonOperator.GTE
            self.threshold = float(max(self.count, 1))
        elif self.type is TriggerType.CONDITION:
            if not self.condition_type:
                raise ValueError(f"Condition trigger {self.name} needs a conditionType")
            self.operator = ComparisonOperator.GTE
            self.threshold = self.duration_seconds

    @property
    def metric_key(self) -> str:
        """Key under which the collector reports this trigger's value."""
        return self.metric if self.type is TriggerType.METRIC else self.name

    @property
    def sustained(self) -> bool:
        """Whether the comparison must hold across passes before firing"""
        return self.type in (TriggerType.METRIC, TriggerType.QUERY) and self.duration_seconds > 0

    def is_satisfied(self, values: Dict[str, float]) -> bool:
        value = values.get(self.metric_key)
        if value is None:
            return False
        return self.operator.compare(value, self.threshold)

@dataclass
class ActionTemplate:
    name: str
    type: ActionType
    priority: int = 0
    requires_approval: bool = False
    description: str = ""
    params: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.type, str):
            self.type = ActionType(self.type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.value,
            "priority": self.priority,
            "requiresApproval": self.requires_approval,
            "description": self.description,
            "params": dict(self.params),
        }


@dataclass
class SafetyConfig:
    """Per-policy safety limits. ``None`` falls back to operator settings."""
    max_concurrent_actions: Optional[int] = None
    cooldown_seconds: Optional[float] = None
    max_actions_per_window: Optional[int] = None
    window_seconds: Optional[float] = None
    max_blast_radius: Optional[int] = None
    dry_run: bool = False
    require_approval: bool = False


@dataclass
class HealingPolicy:
    """HealingPolicy custom resource"""
    name: str
    namespace: str
    uid: str = ""
    generation: int = 0
    mode: PolicyMode = PolicyMode.AUTOMATIC
    selector: ResourceSelector = field(default_factory=ResourceSelector)
    triggers: List[Trigger] = field(default_factory=list)
    actions: List[ActionTemplate] = field(default_factory=list)
    safety: SafetyConfig = field(default_factory=SafetyConfig)

    def __post_init__(self):
        if isinstance(self.mode, str):
            self.mode = PolicyMode(self.mode)
        if isinstance(self.selector, dict):
            self.selector = ResourceSelector(**_snake(self.selector))
        if isinstance(self.safety, dict):
            self.safety = SafetyConfig(**_snake(self.safety))
        self.triggers = [Trigger(**_snake(t)) if isinstance(t, dict) else t for t in self.triggers]
        self.actions = [ActionTemplate(**_snake(a)) if isinstance(a, dict) else a for a in self.actions]

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def dry_run(self) -> bool:
        return self.safety.dry_run or self.mode is PolicyMode.DRYRUN

    @property
    def requires_approval(self) -> bool:
        return self.safety.require_approval or self.mode is PolicyMode.MANUAL

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "HealingPolicy":
        """Parse a HealingPolicy resource body"""
        metadata = body.get("metadata", {})
        spec = dict(body.get("spec", {}))
        selector = dict(spec.get("selector") or {})
        if "labelSelector" in selector:
            selector["match_labels"] = (selector.pop("labelSelector") or {}).get("matchLabels", {})
        try:
            return cls(
                name=metadata["name"],
                namespace=metadata.get("namespace") or "",
                uid=metadata.get("uid", ""),
                generation=metadata.get("generation", 0),
                mode=spec.get("mode", PolicyMode.AUTOMATIC.value),
                selector=selector,
                triggers=list(spec.get("triggers") or []),
                actions=list(spec.get("actions") or []),
                safety=dict(spec.get("safety") or {}),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Failed to parse HealingPolicy resource: {e}")


# ============================================================================
# Action
# ============================================================================

@dataclass
class AIAssessment:
    source: str = "rule"
    confidence: Optional[float] = None
    reasoning: str = ""


@dataclass
class Verdict:
    """Safety decision for one action"""
    approved: bool
    check: str
    reason: str = ""
    simulated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"approved": self.approved, "check": self.check,
                "reason": self.reason, "simulated": self.simulated}


@dataclass
class ActionResult:
    success: bool
    message: str = ""
    error: str = ""
    changes: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message,
                "error": self.error, "changes": list(self.changes)}


@dataclass
class HealingAction:
    """HealingAction custom resource: one remediation instance"""
    name: str
    namespace: str
    policy_name: str
    trigger: str
    template: ActionTemplate
    target: TargetRef
    uid: str = ""
    dedupe_key: str = ""
    dry_run: bool = False
    approval_required: bool = False
    ai: AIAssessment = field(default_factory=AIAssessment)
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)

    # status
    phase: ActionPhase = ActionPhase.PENDING
    verdict: Optional[Verdict] = None
    attempts: int = 0
    created_at: Optional[float] = None
    start_time: Optional[float] = None
    last_attempt_time: Optional[float] = None
    completion_time: Optional[float] = None
    result: Optional[ActionResult] = None
    target_replicas: Optional[int] = None
    conditions: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def policy_key(self) -> str:
        return f"{self.namespace}/{self.policy_name}"

    @property
    def action_type(self) -> ActionType:
        return self.template.type

    @property
    def approved_by(self) -> Optional[str]:
        return self.annotations.get(ANNOTATION_APPROVED_BY) or None

    def status_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "verdict": self.verdict.to_dict() if self.verdict else None,
            "attempts": self.attempts,
            "createdAt": to_iso(self.created_at),
            "startTime": to_iso(self.start_time),
            "lastAttemptTime": to_iso(self.last_attempt_time),
            "completionTime": to_iso(self.completion_time),
            "result": self.result.to_dict() if self.result else None,
            "targetReplicas": self.target_replicas,
            "approval": {"approved": bool(self.approved_by), "approvedBy": self.approved_by},
            "conditions": list(self.conditions),
        }

    def to_body(self, owner_uid: str = "") -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "name": self.name,
            "namespace": self.namespace,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
        }
        if owner_uid:
            metadata["ownerReferences"] = [{
                "apiVersion": f"{CRD_GROUP}/{CRD_VERSION}",
                "kind": "HealingPolicy",
                "name": self.policy_name,
                "uid": owner_uid,
                "controller": True,
            }]
        return {
            "apiVersion": f"{CRD_GROUP}/{CRD_VERSION}",
            "kind": "HealingAction",
            "metadata": metadata,
            "spec": {
                "policyRef": {"name": self.policy_name, "namespace": self.namespace},
                "trigger": self.trigger,
                "dedupeKey": self.dedupe_key,
                "action": self.template.to_dict(),
                "targetResource": self.target.to_dict(),
                "dryRun": self.dry_run,
                "approvalRequired": self.approval_required,
                "analysis": {
                    "source": self.ai.source,
                    "confidence": self.ai.confidence,
                    "reasoning": self.ai.reasoning,
                },
            },
            "status": self.status_dict(),
        }

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "HealingAction":
        """Parse a HealingAction resource body"""
        metadata = body.get("metadata", {})
        spec = body.get("spec", {})
        status = body.get("status") or {}
        verdict = status.get("verdict")
        result = status.get("result")
        analysis = spec.get("analysis") or {}
        try:
            return cls(
                name=metadata["name"],
                namespace=metadata.get("namespace") or "",
                uid=metadata.get("uid", ""),
                labels=dict(metadata.get("labels") or {}),
                annotations=dict(metadata.get("annotations") or {}),
                policy_name=spec["policyRef"]["name"],
                trigger=spec.get("trigger", ""),
                dedupe_key=spec.get("dedupeKey", ""),
                template=ActionTemplate(**_snake(spec["action"])),
                target=TargetRef.from_dict(spec["targetResource"]),
                dry_run=bool(spec.get("dryRun", False)),
                approval_required=bool(spec.get("approvalRequired", False)),
                ai=AIAssessment(**_snake(analysis)),
                phase=ActionPhase(status.get("phase") or ActionPhase.PENDING.value),
                verdict=Verdict(**verdict) if verdict else None,
                attempts=int(status.get("attempts") or 0),
                created_at=from_iso(status.get("createdAt") or metadata.get("creationTimestamp")),
                start_time=from_iso(status.get("startTime")),
                last_attempt_time=from_iso(status.get("lastAttemptTime")),
                completion_time=from_iso(status.get("completionTime")),
                result=ActionResult(**result) if result else None,
                target_replicas=status.get("targetReplicas"),
                conditions=list(status.get("conditions") or []),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Failed to parse HealingAction resource: {e}")


# ============================================================================
# Ledger entries
# ============================================================================

@dataclass(frozen=True)
class ActionRecord:
    """Immutable audit entry, one per terminal outcome"""
    record_id: str
    action_id: str
    policy_key: str
    target_key: str
    action_type: str
    outcome: Outcome
    timestamp: float
    attempts: int = 0
    dry_run: bool = False
    duration_ms: float = 0.0
    error: str = ""
    message: str = ""


@dataclass
class SafetyState:
    """Admission bookkeeping for one (policy, target) pair"""
    holders: Set[str] = field(default_factory=set)
    window: Deque[float] = field(default_factory=deque)
    last_action_at: Optional[float] = None
    consecutive_failures: int = 0
    last_failure_at: Optional[float] = None

    @property
    def in_flight(self) -> int:
        return len(self.holders)

    def prune_window(self, now: float, window_seconds: float) -> None:
        while self.window and now - self.window[0] >= window_seconds:
            self.window.popleft()

    def is_idle(self, now: float, cooldown_seconds: float) -> bool:
        return (not self.holders
                and not self.window
                and self.consecutive_failures == 0
                and (self.last_action_at is None or now - self.last_action_at >= cooldown_seconds))


@dataclass
class PolicyWindow:
    """Distinct targets a policy touched recently, for blast-radius limits"""
    targets: Dict[str, float] = field(default_factory=dict)

    def prune(self, now: float, window_seconds: float) -> None:
        for key in [k for k, ts in self.targets.items() if now - ts >= window_seconds]:
            del self.targets[key]


# ============================================================================
# Helpers
# ============================================================================

_CAMEL_FIELDS = {
    "requiresApproval": "requires_approval",
    "apiVersion": "api_version",
    "excludeNames": "exclude_names",
    "matchLabels": "match_labels",
    "maxConcurrentActions": "max_concurrent_actions",
    "cooldownSeconds": "cooldown_seconds",
    "maxActionsPerWindow": "max_actions_per_window",
    "windowSeconds": "window_seconds",
    "maxBlastRadius": "max_blast_radius",
    "dryRun": "dry_run",
    "requireApproval": "require_approval",
    "durationSeconds": "duration_seconds",
    "eventType": "event_type",
    "conditionType": "condition_type",
    "conditionStatus": "condition_status",
}


def _snake(data: Dict[str, Any]) -> Dict[str, Any]:
    """Accept both the CRD's camelCase and Python field names"""
    return {_CAMEL_FIELDS.get(k, k): v for k, v in data.items()}
