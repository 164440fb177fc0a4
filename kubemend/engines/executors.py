"""
Remediation primitives.

Each executor validates its template statically, applies the mutation and
describes what a dry run would have done. Executors are written so that a
retried attempt of the same action converges on the same end state.
"""

import abc
import logging
import time
from typing import Any, Dict, FrozenSet, List, Optional

from ..clients.kubernetes import ClusterClient, SCALABLE_KINDS
from ..config import ANNOTATION_RESTARTED_AT, ANNOTATION_RESTARTED_BY
from ..exceptions import ConfigurationError, TerminalClusterError
from ..models import ActionResult, ActionTemplate, ActionType, HealingAction, TargetRef
from ..utils import to_iso

LOG = logging.getLogger(__name__)

WORKLOAD_KINDS = frozenset({"Deployment", "StatefulSet", "DaemonSet"})
UNDELETABLE_KINDS = frozenset({"PersistentVolume", "CustomResourceDefinition", "Namespace", "Node"})


class ActionExecutor(abc.ABC):
    """Base class for one remediation action type"""

    action_type: ActionType
    kinds: FrozenSet[str] = frozenset()
    supports_rollback = False

    def applicable(self, kind: str) -> bool:
        return kind in self.kinds

    def validate(self, template: ActionTemplate, target: TargetRef) -> None:
        """Raise ConfigurationError if the template cannot act on ``target``"""
        if not self.applicable(target.kind):
            raise ConfigurationError(
                f"{self.action_type.value} cannot be applied to {target.kind}",
                context={"template": template.name, "target": target.key},
            )

    @abc.abstractmethod
    async def execute(self, client: ClusterClient, action: HealingAction) -> ActionResult:
        pass

    @abc.abstractmethod
    def describe(self, action: HealingAction) -> str:
        pass

    async def rollback(self, client: ClusterClient, action: HealingAction, snapshot: Dict[str, Any]) -> ActionResult:
        raise ConfigurationError(f"{self.action_type.value} actions cannot be rolled back")


class RestartExecutor(ActionExecutor):
    """Deletes a pod or rolls a workload's pods"""

    action_type = ActionType.RESTART
    kinds = frozenset({"Pod"}) | WORKLOAD_KINDS

    def validate(self, template, target):
        super().validate(template, target)
        _int_param(template, "gracePeriodSeconds")

    async def execute(self, client, action):
        target = action.target
        if target.kind == "Pod":
            try:
                await client.delete(target, grace_period_seconds=_int_param(action.template, "gracePeriodSeconds"))
            except TerminalClusterError as e:
                # an earlier attempt may already have removed it
                if e.status == 404 and action.attempts > 1:
                    return ActionResult(True, f"Pod {target.name} already restarted")
                raise
            return ActionResult(True, f"Deleted pod {target.name} for restart",
                                changes=[_change("pod", target.name, "deleted")])

        current = await client.get(target)
        annotations = (((current.get("spec") or {}).get("template") or {}).get("metadata") or {}).get("annotations") or {}
        if annotations.get(ANNOTATION_RESTARTED_BY) == action.key:
            return ActionResult(True, f"{target.kind} {target.name} already restarted by this action")

        restarted_at = to_iso(time.time())
        await client.patch(target, {
            "spec": {"template": {"metadata": {"annotations": {
                ANNOTATION_RESTARTED_AT: restarted_at,
                ANNOTATION_RESTARTED_BY: action.key,
            }}}}
        })
        return ActionResult(True, f"Rolling restart of {target.kind} {target.name}",
                            changes=[_change("spec.template.metadata.annotations", annotations.get(ANNOTATION_RESTARTED_AT), restarted_at)])

    def describe(self, action):
        verb = "delete pod" if action.target.kind == "Pod" else "roll pods of"
        return f"Would {verb} {action.target.key}"


class ScaleExecutor(ActionExecutor):
    """Scales a workload up, down or to an absolute replica count.

    Params: ``direction`` (up, down, absolute), ``replicas`` (step or
    absolute count), optional ``minReplicas`` and ``maxReplicas``.
    """

    action_type = ActionType.SCALE
    kinds = SCALABLE_KINDS
    supports_rollback = True

    def validate(self, template, target):
        super().validate(template, target)
        params = template.params
        direction = params.get("direction", "up")
        if direction not in ("up", "down", "absolute"):
            raise ConfigurationError(f"Unknown scale direction {direction}", context={"template": template.name})
        _int_param(template, "replicas", default=1)
        low = _int_param(template, "minReplicas")
        high = _int_param(template, "maxReplicas")
        if low is not None and high is not None and low > high:
            raise ConfigurationError("minReplicas exceeds maxReplicas", context={"template": template.name})

    @staticmethod
    def desired_replicas(params: Dict[str, Any], current: int) -> int:
        direction = params.get("direction", "up")
        step = int(params.get("replicas", 1))
        if direction == "up":
            desired = current + step
        elif direction == "down":
            desired = current - step
        else:
            desired = step
        if params.get("minReplicas") is not None:
            desired = max(desired, int(params["minReplicas"]))
        if params.get("maxReplicas") is not None:
            desired = min(desired, int(params["maxReplicas"]))
        return max(desired, 0)

    async def execute(self, client, action):
        current = await client.read_replicas(action.target)
        if action.target_replicas is None:
            # fixed once so a retry scales to the same count
            action.target_replicas = self.desired_replicas(action.template.params, current)
        desired = action.target_replicas
        if desired == current:
            return ActionResult(True, f"{action.target.key} already at {current} replicas")
        await client.scale(action.target, desired)
        return ActionResult(True, f"Scaled {action.target.key} from {current} to {desired} replicas",
                            changes=[_change("spec.replicas", current, desired)])

    async def rollback(self, client, action, snapshot):
        original = (snapshot.get("spec") or {}).get("replicas")
        if original is None:
            raise ConfigurationError("Snapshot has no replica count", context={"action": action.key})
        current = await client.read_replicas(action.target)
        await client.scale(action.target, original)
        return ActionResult(True, f"Restored {action.target.key} to {original} replicas",
                            changes=[_change("spec.replicas", current, original)])

    def describe(self, action):
        params = action.template.params
        return (f"Would scale {action.target.key} {params.get('direction', 'up')} "
                f"by {params.get('replicas', 1)}")


class PatchExecutor(ActionExecutor):
    """Applies a strategic merge patch (``patch``) or JSON patch (``patches``)"""

    action_type = ActionType.PATCH
    kinds = frozenset({"Pod", "Service", "ConfigMap", "PersistentVolumeClaim", "Node"}) | WORKLOAD_KINDS | SCALABLE_KINDS
    supports_rollback = True

    def validate(self, template, target):
        super().validate(template, target)
        patch, patches = template.params.get("patch"), template.params.get("patches")
        if not patch and not patches:
            raise ConfigurationError("Patch action requires 'patch' or 'patches'", context={"template": template.name})
        if patch is not None and not isinstance(patch, dict):
            raise ConfigurationError("'patch' must be an object", context={"template": template.name})
        if patches is not None:
            if not isinstance(patches, list) or not all(isinstance(p, dict) and "path" in p for p in patches):
                raise ConfigurationError("'patches' must be a list of {op, path, value}", context={"template": template.name})

    @staticmethod
    def body(params: Dict[str, Any]):
        if params.get("patches"):
            return [{"op": p.get("op", "replace"), "path": p["path"], **({"value": p["value"]} if "value" in p else {})}
                    for p in params["patches"]]
        return params["patch"]

    async def execute(self, client, action):
        body = self.body(action.template.params)
        await client.patch(action.target, body)
        paths = [p["path"] for p in body] if isinstance(body, list) else sorted(body)
        return ActionResult(True, f"Patched {action.target.key}",
                            changes=[_change(path, None, "patched") for path in paths])

    async def rollback(self, client, action, snapshot):
        body = _restorable(snapshot)
        await client.replace(action.target, body)
        return ActionResult(True, f"Restored {action.target.key} from snapshot")

    def describe(self, action):
        return f"Would patch {action.target.key} with {self.body(action.template.params)}"


class DeleteExecutor(ActionExecutor):
    action_type = ActionType.DELETE
    kinds = frozenset({"Pod", "Service", "ConfigMap", "PersistentVolumeClaim"}) | WORKLOAD_KINDS | SCALABLE_KINDS

    def validate(self, template, target):
        if target.kind in UNDELETABLE_KINDS:
            raise ConfigurationError(f"Deleting {target.kind} is not allowed", context={"target": target.key})
        super().validate(template, target)
        _int_param(template, "gracePeriodSeconds")
        policy = template.params.get("propagationPolicy")
        if policy is not None and policy not in ("Foreground", "Background", "Orphan"):
            raise ConfigurationError(f"Unknown propagation policy {policy}", context={"template": template.name})

    async def execute(self, client, action):
        params = action.template.params
        grace = 0 if params.get("force") else _int_param(action.template, "gracePeriodSeconds")
        try:
            await client.delete(action.target, grace_period_seconds=grace,
                                propagation_policy=params.get("propagationPolicy"))
        except TerminalClusterError as e:
            if e.status == 404 and action.attempts > 1:
                return ActionResult(True, f"{action.target.key} already deleted")
            raise
        return ActionResult(True, f"Deleted {action.target.key}",
                            changes=[_change(action.target.kind, action.target.name, "deleted")])

    def describe(self, action):
        return f"Would delete {action.target.key}"


class CordonExecutor(ActionExecutor):
    """Marks a node unschedulable"""

    action_type = ActionType.CORDON
    kinds = frozenset({"Node"})
    supports_rollback = True

    async def execute(self, client, action):
        node = await client.get(action.target)
        if (node.get("spec") or {}).get("unschedulable"):
            return ActionResult(True, f"Node {action.target.name} already cordoned")
        await client.patch(action.target, {"spec": {"unschedulable": True}})
        return ActionResult(True, f"Cordoned node {action.target.name}",
                            changes=[_change("spec.unschedulable", False, True)])

    async def rollback(self, client, action, snapshot):
        original = bool((snapshot.get("spec") or {}).get("unschedulable", False))
        await client.patch(action.target, {"spec": {"unschedulable": original}})
        return ActionResult(True, f"Restored node {action.target.name} unschedulable={original}")

    def describe(self, action):
        return f"Would cordon node {action.target.name}"


def default_executors() -> List[ActionExecutor]:
    return [RestartExecutor(), ScaleExecutor(), PatchExecutor(), DeleteExecutor(), CordonExecutor()]


def _change(field: str, old: Optional[Any], new: Any) -> Dict[str, Any]:
    return {"field": field, "oldValue": old, "newValue": new, "timestamp": to_iso(time.time())}


def _restorable(snapshot: Dict[str, Any]) -> Dict[str, Any]:
    body = {k: v for k, v in snapshot.items() if k != "status"}
    metadata = dict(body.get("metadata") or {})
    for key in ("resourceVersion", "uid", "creationTimestamp", "managedFields", "generation"):
        metadata.pop(key, None)
    body["metadata"] = metadata
    return body


def _int_param(template: ActionTemplate, name: str, default: Optional[int] = None) -> Optional[int]:
    """Non-negative integer template param, or ConfigurationError"""
    value = template.params.get(name, default)
    if value is None:
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}", context={"template": template.name})
    if number < 0:
        raise ConfigurationError(f"{name} must not be negative", context={"template": template.name})
    return number
