"""
Pytest configuration and shared fixtures for kubemend tests.
"""

import copy
from typing import Any, Dict, List, Optional

import pytest

from kubemend.clients.prometheus import MetricsCollector, TargetMetrics
from kubemend.config import RemediationSettings, SafetySettings
from kubemend.engines.execution import ActionExecutionLoop
from kubemend.engines.remediation import RemediationEngine
from kubemend.engines.safety import SafetyController
from kubemend.exceptions import TerminalClusterError
from kubemend.models import ActionTemplate, HealingAction, HealingPolicy, TargetRef
from kubemend.stores import ActionRecorder, InMemoryActionStore, SnapshotLedger


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeClusterClient:
    """In-memory stand-in for ClusterClient.

    Objects are stored by TargetRef.key. ``fail(verb, *errors)`` queues
    exceptions raised by the next calls of that verb.
    """

    def __init__(self):
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.mutations: List[tuple] = []
        self.events: List[Dict[str, Any]] = []
        self._failures: Dict[str, List[Exception]] = {}

    def add(self, ref: TargetRef, body: Optional[Dict[str, Any]] = None) -> TargetRef:
        obj = copy.deepcopy(body or {})
        obj.setdefault("metadata", {}).update({"name": ref.name, "namespace": ref.namespace})
        obj.setdefault("spec", {})
        self.objects[ref.key] = obj
        return ref

    def fail(self, verb: str, *errors: Exception) -> None:
        self._failures.setdefault(verb, []).extend(errors)

    def _maybe_fail(self, verb: str) -> None:
        queued = self._failures.get(verb)
        if queued:
            raise queued.pop(0)

    def _object(self, ref: TargetRef) -> Dict[str, Any]:
        if ref.key not in self.objects:
            raise TerminalClusterError(f"{ref.key} not found", status=404)
        return self.objects[ref.key]

    async def get(self, ref):
        self._maybe_fail("get")
        return copy.deepcopy(self._object(ref))

    async def list_targets(self, kind, namespace, label_selector=""):
        return [copy.deepcopy(o) for k, o in self.objects.items()
                if k.startswith(f"{kind}/{namespace or ''}/")]

    async def list_events(self, namespace, field_selector=""):
        self._maybe_fail("list_events")
        return [copy.deepcopy(e) for e in self.events
                if (e.get("metadata") or {}).get("namespace", "") == (namespace or "")]

    async def patch(self, ref, body):
        self._maybe_fail("patch")
        obj = self._object(ref)
        self.mutations.append(("patch", ref.key, copy.deepcopy(body)))
        if isinstance(body, dict):
            _merge(obj, body)
        return copy.deepcopy(obj)

    async def replace(self, ref, body):
        self._maybe_fail("replace")
        self._object(ref)
        self.mutations.append(("replace", ref.key))
        self.objects[ref.key] = copy.deepcopy(body)
        return copy.deepcopy(body)

    async def delete(self, ref, grace_period_seconds=None, propagation_policy=None):
        self._maybe_fail("delete")
        self._object(ref)
        self.mutations.append(("delete", ref.key))
        del self.objects[ref.key]

    async def read_replicas(self, ref):
        self._maybe_fail("read_replicas")
        return self._object(ref)["spec"].get("replicas", 0)

    async def scale(self, ref, replicas):
        self._maybe_fail("scale")
        obj = self._object(ref)
        self.mutations.append(("scale", ref.key, replicas))
        obj["spec"]["replicas"] = replicas


class InMemoryRepository:
    """HealingPolicy / HealingAction storage keyed by namespace/name"""

    def __init__(self):
        self.policies: Dict[str, HealingPolicy] = {}
        self.actions: Dict[str, HealingAction] = {}
        self.status_writes: List[Dict[str, Any]] = []

    def add_policy(self, policy: HealingPolicy) -> HealingPolicy:
        self.policies[policy.key] = policy
        return policy

    async def list_policies(self, namespace=None):
        return [p for p in self.policies.values() if namespace in (None, p.namespace)]

    async def get_policy(self, namespace, name):
        return self.policies.get(f"{namespace}/{name}")

    async def list_actions(self, namespace=None):
        return [HealingAction.from_body(a.to_body()) for a in self.actions.values()
                if namespace in (None, a.namespace)]

    async def create_action(self, action, owner_uid=""):
        if action.key in self.actions:
            return False
        action.uid = f"uid-{len(self.actions)}"
        self.actions[action.key] = HealingAction.from_body(action.to_body(owner_uid))
        return True

    async def update_action_status(self, action):
        status = action.status_dict()
        self.status_writes.append(status)
        if action.key in self.actions:
            self.actions[action.key] = HealingAction.from_body(action.to_body())


class StaticCollector(MetricsCollector):
    """Returns fresh copies of preset per-target metrics"""

    def __init__(self, targets: Optional[List[TargetMetrics]] = None):
        self.targets = targets or []
        self.calls = 0

    async def fetch_metrics(self, policy):
        self.calls += 1
        return [copy.deepcopy(t) for t in self.targets]


def _merge(obj: Dict[str, Any], patch: Dict[str, Any]) -> None:
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(obj.get(key), dict):
            _merge(obj[key], value)
        else:
            obj[key] = copy.deepcopy(value)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def safety_settings():
    return SafetySettings(protected_namespaces=["kube-system"])


@pytest.fixture
def remediation_settings():
    """Fast retries for tests."""
    return RemediationSettings(max_attempts=3, backoff_base_seconds=0, call_timeout_seconds=5)


@pytest.fixture
def store():
    return InMemoryActionStore()


@pytest.fixture
def safety(store, safety_settings, clock):
    return SafetyController(store, safety_settings, clock=clock)


@pytest.fixture
def recorder(clock):
    return ActionRecorder(retention_seconds=3600, batch_size=2, clock=clock)


@pytest.fixture
def snapshots(clock):
    return SnapshotLedger(retention_seconds=600, clock=clock)


@pytest.fixture
def cluster():
    return FakeClusterClient()


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def engine(cluster, safety, recorder, snapshots, repository, remediation_settings, clock):
    async def no_sleep(_):
        return None

    return RemediationEngine(cluster, safety, recorder, snapshots, repository, remediation_settings,
                             clock=clock, sleep=no_sleep)


@pytest.fixture
def execution(safety, engine, recorder, clock):
    return ActionExecutionLoop(safety, engine, recorder, clock=clock)


@pytest.fixture
def deployment(cluster):
    return cluster.add(TargetRef(kind="Deployment", name="web", namespace="prod", api_version="apps/v1"),
                       {"spec": {"replicas": 3, "template": {"metadata": {}}}})


@pytest.fixture
def make_policy():
    """Factory for HealingPolicy objects."""
    def _make(name="cpu-policy", namespace="prod", mode="automatic", safety=None, actions=None, triggers=None):
        return HealingPolicy(
            name=name,
            namespace=namespace,
            uid=f"uid-{name}",
            generation=1,
            mode=mode,
            triggers=triggers if triggers is not None else [
                {"name": "high-cpu", "metric": "cpu_usage_percent", "threshold": 90, "operator": "gt"}
            ],
            actions=actions if actions is not None else [
                {"name": "restart", "type": "restart", "priority": 10},
            ],
            safety=safety or {},
        )
    return _make


@pytest.fixture
def make_action():
    """Factory for HealingAction objects bound to a policy."""
    def _make(policy, target, name="action-1", template=None, dry_run=False, approval_required=False):
        return HealingAction(
            name=name,
            namespace=policy.namespace,
            policy_name=policy.name,
            trigger="high-cpu",
            template=template or ActionTemplate(name="restart", type="restart"),
            target=target,
            dedupe_key=f"{policy.key}|{target.key}|high-cpu",
            dry_run=dry_run,
            approval_required=approval_required,
        )
    return _make
