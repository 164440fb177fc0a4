"""
Metrics collection for policy evaluation.
"""

import abc
import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from string import Template
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from ..config import ANNOTATION_HEALING_DISABLED, ANNOTATION_PROTECTED
from ..exceptions import ClusterError, MetricsError
from ..metrics import set_component_health
from ..models import HealingPolicy, TargetRef, Trigger, TriggerType
from ..utils import from_iso, label_selector
from .kubernetes import CLUSTER_KINDS, ClusterClient

LOG = logging.getLogger(__name__)

# Built-in metric names and the PromQL used for them
DEFAULT_QUERIES: Dict[str, str] = {
    "cpu_usage_percent": (
        'sum(rate(container_cpu_usage_seconds_total{namespace="$namespace",pod=~"$pod_regex",container!=""}[5m]))'
        ' / sum(kube_pod_container_resource_limits{namespace="$namespace",pod=~"$pod_regex",resource="cpu"}) * 100'
    ),
    "memory_usage_percent": (
        'sum(container_memory_working_set_bytes{namespace="$namespace",pod=~"$pod_regex",container!=""})'
        ' / sum(kube_pod_container_resource_limits{namespace="$namespace",pod=~"$pod_regex",resource="memory"}) * 100'
    ),
    "restart_count": 'sum(kube_pod_container_status_restarts_total{namespace="$namespace",pod=~"$pod_regex"})',
    "error_rate": (
        'sum(rate(http_requests_total{namespace="$namespace",pod=~"$pod_regex",status=~"5.."}[5m]))'
        ' / sum(rate(http_requests_total{namespace="$namespace",pod=~"$pod_regex"}[5m])) * 100'
    ),
}

DEFAULT_KINDS = ("Deployment",)


@dataclass
class TargetMetrics:
    """Metric values (or a collection error) for one target"""
    target: TargetRef
    values: Dict[str, float] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    conditions: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def protected(self) -> bool:
        return (self.annotations.get(ANNOTATION_PROTECTED) == "true"
                or self.labels.get(ANNOTATION_PROTECTED) == "true"
                or self.annotations.get(ANNOTATION_HEALING_DISABLED) == "true")


class MetricsCollector(abc.ABC):

    @abc.abstractmethod
    async def fetch_metrics(self, policy: HealingPolicy) -> List[TargetMetrics]:
        """Metrics for every target the policy selects; failures are per target"""


class PrometheusClient:
    """Simple Prometheus client"""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url.rstrip('/')
        self.session_timeout = aiohttp.ClientTimeout(total=timeout)

    async def query(self, query: str) -> Optional[float]:
        """Execute an instant PromQL query; ``None`` when the result is empty"""
        try:
            async with aiohttp.ClientSession(timeout=self.session_timeout) as session:
                async with session.get(
                    f"{self.url}/api/v1/query",
                    params={"query": query},
                    headers={'Accept': 'application/json'}
                ) as resp:
                    if resp.status != 200:
                        raise MetricsError(f"Prometheus returned status {resp.status}", context={"query": query})
                    data = await resp.json()
        except asyncio.TimeoutError:
            set_component_health("prometheus", False)
            raise MetricsError("Prometheus query timed out", context={"query": query})
        except aiohttp.ClientError as e:
            set_component_health("prometheus", False)
            raise MetricsError(f"Prometheus client error: {e}", context={"query": query})

        set_component_health("prometheus", True)
        result = data.get("data", {}).get("result", [])
        if not result:
            return None
        value = result[0].get("value", [None, None])[1]
        try:
            value = float(value)
        except (TypeError, ValueError):
            return None
        return None if math.isnan(value) else value

    async def health_check(self) -> bool:
        try:
            async with aiohttp.ClientSession(timeout=self.session_timeout) as session:
                async with session.get(f"{self.url}/-/healthy") as resp:
                    healthy = resp.status == 200
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            LOG.error(f"Prometheus health check failed: {e}")
            healthy = False
        set_component_health("prometheus", healthy)
        return healthy


class PrometheusMetricsCollector(MetricsCollector):
    """Resolves policy targets through the API server and queries Prometheus per target.

    Queries may use the ``$namespace``, ``$name``, ``$kind`` and ``$pod_regex``
    placeholders. Event triggers count recent core events involving the target
    and condition triggers report how long a status condition has held; neither
    touches Prometheus.
    """

    def __init__(self, client: ClusterClient, prometheus: PrometheusClient,
                 clock: Callable[[], float] = time.time):
        self.client = client
        self.prometheus = prometheus
        self.clock = clock

    async def fetch_metrics(self, policy: HealingPolicy) -> List[TargetMetrics]:
        targets = await self.resolve_targets(policy)
        events: Dict[str, Any] = {}
        if any(t.type is TriggerType.EVENT for t in policy.triggers):
            for namespace in sorted({t.target.namespace for t in targets}):
                events[namespace] = await self._events(namespace)
        return list(await asyncio.gather(*(self._collect(policy, t, events.get(t.target.namespace, [])) for t in targets)))

    async def _events(self, namespace: str):
        # cluster-scoped targets only have events outside any namespace
        field_selector = "" if namespace else "involvedObject.kind=Node"
        try:
            return await self.client.list_events(namespace, field_selector)
        except ClusterError as e:
            return MetricsError(f"Cannot list events in {namespace or 'cluster'}: {e}")

    async def resolve_targets(self, policy: HealingPolicy) -> List[TargetMetrics]:
        selector = policy.selector
        namespaces = selector.namespaces or [policy.namespace]
        kinds = [r.kind for r in selector.resources] or list(DEFAULT_KINDS)
        found = []
        for kind in kinds:
            # cluster-scoped kinds are listed once
            for namespace in (namespaces if kind not in CLUSTER_KINDS else [""]):
                try:
                    objects = await self.client.list_targets(kind, namespace, label_selector(selector.match_labels))
                except ClusterError as e:
                    raise MetricsError(f"Cannot list {kind} in {namespace}: {e}", context={"policy": policy.key})
                for obj in objects:
                    metadata = obj.get("metadata", {})
                    ref = TargetRef(
                        kind=kind,
                        name=metadata["name"],
                        namespace=metadata.get("namespace") or "",
                        api_version=obj.get("apiVersion") or "v1",
                        uid=metadata.get("uid", ""),
                    )
                    if selector.excludes(ref):
                        continue
                    found.append(TargetMetrics(
                        target=ref,
                        labels=dict(metadata.get("labels") or {}),
                        annotations=dict(metadata.get("annotations") or {}),
                        conditions=list((obj.get("status") or {}).get("conditions") or []),
                    ))
        return found

    async def _collect(self, policy: HealingPolicy, metrics: TargetMetrics, events=()) -> TargetMetrics:
        try:
            for trigger in policy.triggers:
                if trigger.type is TriggerType.EVENT:
                    if isinstance(events, MetricsError):
                        raise events
                    metrics.values[trigger.name] = float(self.count_events(trigger, metrics.target, events))
                    continue
                if trigger.type is TriggerType.CONDITION:
                    age = self.condition_age(trigger, metrics.conditions)
                    if age is not None:
                        metrics.values[trigger.name] = age
                    continue
                query = self.query_for(trigger, metrics.target)
                if query is None:
                    continue
                value = await self.prometheus.query(query)
                if value is not None:
                    metrics.values[trigger.metric_key] = value
        except MetricsError as e:
            metrics.error = str(e)
            LOG.warning(f"Metrics unavailable for {metrics.target.key}: {e}")
        return metrics

    @staticmethod
    def query_for(trigger: Trigger, target: TargetRef) -> Optional[str]:
        template = trigger.query or DEFAULT_QUERIES.get(trigger.metric)
        if not template:
            return None
        pod_regex = target.name if target.kind == "Pod" else f"{target.name}-.*"
        return Template(template).safe_substitute(
            namespace=target.namespace, name=target.name, kind=target.kind, pod_regex=pod_regex)

    def count_events(self, trigger: Trigger, target: TargetRef, events) -> int:
        """Events matching the trigger's reason and type inside its window"""
        since = self.clock() - trigger.window_seconds
        count = 0
        for event in events:
            involved = event.get("involvedObject") or {}
            if not _involves(involved, target):
                continue
            if trigger.reason and event.get("reason") != trigger.reason:
                continue
            if trigger.event_type and event.get("type") != trigger.event_type:
                continue
            seen = from_iso(event.get("lastTimestamp") or event.get("eventTime")
                            or (event.get("metadata") or {}).get("creationTimestamp"))
            if seen is None or seen < since:
                continue
            count += 1
        return count

    def condition_age(self, trigger: Trigger, conditions: List[Dict[str, Any]]) -> Optional[float]:
        """Seconds the condition has had the wanted status; ``None`` when it does not"""
        for condition in conditions:
            if condition.get("type") != trigger.condition_type:
                continue
            if str(condition.get("status")) != trigger.condition_status:
                return None
            since = from_iso(condition.get("lastTransitionTime"))
            return 0.0 if since is None else max(0.0, self.clock() - since)
        return None


def _involves(involved: Dict[str, Any], target: TargetRef) -> bool:
    if involved.get("kind") == target.kind and involved.get("name") == target.name:
        return True
    # pod events count towards the workload that owns the pod
    return (target.kind != "Pod" and involved.get("kind") == "Pod"
            and str(involved.get("name", "")).startswith(f"{target.name}-"))
