"""
Main kubemend operator: builds the components and exposes the operations
the kopf handlers call.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from .clients.kubernetes import ClusterClient, ResourceRepository, load_kube_config
from .clients.prometheus import MetricsCollector, PrometheusClient, PrometheusMetricsCollector
from .config import OperatorSettings, load_settings
from .engines.analyzer import AIAnalyzer, build_analyzer
from .engines.evaluation import PolicyEvaluator
from .engines.execution import ActionExecutionLoop
from .engines.remediation import RemediationEngine
from .engines.safety import SafetyController
from .metrics import set_component_health
from .models import ActionResult, HealingAction, HealingPolicy, PolicyMode
from .stores import ActionRecorder, InMemoryActionStore, SnapshotLedger
from .utils import create_policy_status, from_iso, to_iso

LOG = logging.getLogger(__name__)

# ============================================================================
# Main Operator
# ============================================================================

class KubeMendOperator:
    """Wires the evaluation, safety, remediation and recording components"""

    def __init__(self, settings: Optional[OperatorSettings] = None, analyzer: Optional[AIAnalyzer] = None):
        self.settings = settings or load_settings()
        retention = self.settings.retention

        self.store = InMemoryActionStore()
        self.recorder = ActionRecorder(retention_seconds=retention.record_retention_seconds,
                                       batch_size=retention.sweep_batch_size)
        self.snapshots = SnapshotLedger(retention_seconds=retention.snapshot_retention_seconds,
                                        batch_size=retention.sweep_batch_size)
        self.safety = SafetyController(self.store, self.settings.safety, dry_run=self.settings.dry_run)
        self.analyzer = analyzer if analyzer is not None else build_analyzer(self.settings.ai)

        self.client: Optional[ClusterClient] = None
        self.repository: Optional[ResourceRepository] = None
        self.collector: Optional[MetricsCollector] = None
        self.engine: Optional[RemediationEngine] = None
        self.evaluator: Optional[PolicyEvaluator] = None
        self.execution: Optional[ActionExecutionLoop] = None

        self._stop: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []

    async def initialize(self, client: Optional[ClusterClient] = None, repository=None,
                         collector: Optional[MetricsCollector] = None):
        """Connect to the cluster, rebuild state and start background cleanup"""
        try:
            if client is None:
                load_kube_config()
                client = ClusterClient(call_timeout=self.settings.remediation.call_timeout_seconds)
            self.client = client
            self.repository = repository or ResourceRepository(client)
            if collector is None:
                prometheus = PrometheusClient(self.settings.prometheus.url, self.settings.prometheus.timeout_seconds)
                if not await prometheus.health_check():
                    LOG.warning(f"Prometheus at {prometheus.url} is not healthy; targets will report metrics errors")
                collector = PrometheusMetricsCollector(client, prometheus)
            self.collector = collector

            self.engine = RemediationEngine(self.client, self.safety, self.recorder, self.snapshots,
                                            self.repository, self.settings.remediation)
            self.evaluator = PolicyEvaluator(self.collector, self.safety, self.analyzer, self.settings.ai,
                                             self.settings.max_actions_per_pass,
                                             executors=self.engine.executors.values())
            self.execution = ActionExecutionLoop(self.safety, self.engine, self.recorder)

            await self.recover()
            self.start_background_tasks()
            set_component_health("kubernetes", True)
            LOG.info("kubemend operator initialised")
        except Exception as e:
            LOG.error(f"Operator initialisation failed: {e}")
            set_component_health("kubernetes", False)
            raise

    async def recover(self) -> int:
        """Rebuild in-flight counters from persisted HealingActions"""
        namespace = self.settings.watch_namespace
        policies = await self.repository.list_policies(namespace)
        actions = await self.repository.list_actions(namespace)
        return self.safety.recover(actions, policies)

    def start_background_tasks(self):
        self._stop = asyncio.Event()
        interval = self.settings.retention.sweep_interval_seconds
        self._tasks = [
            asyncio.create_task(self.safety.run_cleanup(self._stop), name="safety-cleanup"),
            asyncio.create_task(self.recorder.run_cleanup(self._stop, interval), name="record-sweep"),
            asyncio.create_task(self.snapshots.run_cleanup(self._stop, interval), name="snapshot-sweep"),
        ]

    async def shutdown(self):
        """Stop background loops and wait for them to exit"""
        if self._stop is not None:
            self._stop.set()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        LOG.info("kubemend operator stopped")

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def evaluation_due(self, body: Dict[str, Any]) -> bool:
        """Monitor-mode policies are evaluated on a slower cadence"""
        mode = (body.get("spec") or {}).get("mode", PolicyMode.AUTOMATIC.value)
        if mode != PolicyMode.MONITOR.value:
            return True
        last = from_iso((body.get("status") or {}).get("lastEvaluated"))
        return last is None or time.time() - last >= self.settings.monitor_interval_seconds

    async def evaluate_policy(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Evaluate one policy, create its candidate actions and return its new status"""
        policy = HealingPolicy.from_body(body)
        existing = await self.repository.list_actions(policy.namespace)
        evaluation = (await self.evaluator.evaluate([policy], existing))[0]

        created = 0
        for candidate in evaluation.candidates:
            if await self.repository.create_action(candidate, owner_uid=policy.uid):
                created += 1
                LOG.info(f"Created HealingAction {candidate.key}: {candidate.action_type.value} "
                         f"on {candidate.target.key} ({candidate.trigger})")

        previous = int((body.get("status") or {}).get("actionsTaken") or 0)
        if evaluation.error:
            message = f"Evaluation failed: {evaluation.error}"
        elif evaluation.suppressed:
            message = "Suppressed: " + ", ".join(f"{k}={v}" for k, v in sorted(evaluation.suppressed.items()))
        else:
            message = f"{len(evaluation.active_triggers)} active trigger(s)"
        return create_policy_status(
            last_evaluated=to_iso(time.time()),
            active_triggers=evaluation.active_triggers,
            actions_created=created,
            actions_taken=previous + created,
            result=evaluation.result,
            message=message,
            observed_generation=policy.generation,
        )

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def process_action(self, body: Dict[str, Any]) -> HealingAction:
        action = HealingAction.from_body(body)
        if action.phase.terminal:
            return action
        policy = await self.repository.get_policy(action.namespace, action.policy_name)
        return await self.execution.process(action, policy)

    def forget_action(self, namespace: str, name: str) -> None:
        if self.execution is not None:
            self.execution.forget(f"{namespace}/{name}")

    async def rollback_action(self, body: Dict[str, Any]) -> ActionResult:
        action = HealingAction.from_body(body)
        return await self.engine.rollback(action)
