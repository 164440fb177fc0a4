"""
Policy Evaluation Loop: turns trigger firings into candidate HealingActions.
"""

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from ..clients.prometheus import MetricsCollector, TargetMetrics
from ..config import (
    AISettings,
    LABEL_ACTION_TYPE,
    LABEL_DEDUPE_KEY,
    LABEL_MANAGED_BY,
    LABEL_POLICY,
    LABEL_SEQUENCE,
    MANAGER_NAME,
)
from ..metrics import POLICY_EVALUATIONS
from ..models import (
    ActionTemplate,
    ActionType,
    AIAssessment,
    HealingAction,
    HealingPolicy,
    PolicyMode,
    TargetRef,
    Trigger,
)
from ..utils import dns_name, stable_digest
from .analyzer import AIAnalyzer, AnalysisContext, analyze_with_timeout
from .executors import ActionExecutor, default_executors
from .safety import SafetyController

LOG = logging.getLogger(__name__)


def dedupe_key(policy: HealingPolicy, target: TargetRef, trigger: Trigger) -> str:
    return f"{policy.key}|{target.key}|{trigger.name}"


@dataclass
class PolicyEvaluation:
    """Outcome of one pass over one policy"""
    policy: HealingPolicy
    candidates: List[HealingAction] = field(default_factory=list)
    active_triggers: List[str] = field(default_factory=list)
    suppressed: Counter = field(default_factory=Counter)
    error: Optional[str] = None

    @property
    def result(self) -> str:
        if self.error:
            return "error"
        if self.policy.mode is PolicyMode.MONITOR:
            return "monitor"
        return "triggered" if self.candidates else "idle"


class PolicyEvaluator:
    """Evaluates policies against current metrics.

    Evaluation has no side effects: it proposes candidates and leaves their
    creation to the caller. A non-terminal action with the same (policy,
    target, trigger) key suppresses a new one, and a (policy, target) in
    cooldown produces nothing. Identical inputs give identical candidates.
    Triggers with a duration only fire once they have held on every pass for
    that long.
    """

    def __init__(self, collector: MetricsCollector, safety: SafetyController,
                 analyzer: Optional[AIAnalyzer] = None, ai_settings: Optional[AISettings] = None,
                 max_actions_per_pass: int = 5, executors: Optional[Iterable[ActionExecutor]] = None,
                 clock: Callable[[], float] = time.time):
        self.collector = collector
        self.safety = safety
        self.analyzer = analyzer
        self.ai_settings = ai_settings or AISettings()
        self.max_actions_per_pass = max_actions_per_pass
        self.executors: Dict[ActionType, ActionExecutor] = {
            e.action_type: e for e in (executors if executors is not None else default_executors())
        }
        self.clock = clock
        # dedupe key -> first pass a sustained trigger was seen satisfied
        self._firing_since: Dict[str, float] = {}

    async def evaluate(self, policies: Iterable[HealingPolicy],
                       existing_actions: Iterable[HealingAction]) -> List[PolicyEvaluation]:
        """One pass over ``policies``; a failing policy never stops the others"""
        existing = list(existing_actions)
        results = []
        for policy in policies:
            try:
                evaluation = await self.evaluate_policy(policy, existing)
            except Exception as e:
                LOG.error(f"Evaluation of policy {policy.key} failed: {e}", exc_info=True)
                evaluation = PolicyEvaluation(policy=policy, error=str(e))
            POLICY_EVALUATIONS.labels(result=evaluation.result).inc()
            results.append(evaluation)
        return results

    async def evaluate_policy(self, policy: HealingPolicy,
                              existing_actions: Iterable[HealingAction]) -> PolicyEvaluation:
        evaluation = PolicyEvaluation(policy=policy)
        mine = [a for a in existing_actions if a.policy_key == policy.key]
        active_keys = {a.dedupe_key for a in mine if not a.phase.terminal}
        sequences: Dict[str, int] = {}
        for action in mine:
            sequences[action.dedupe_key] = max(sequences.get(action.dedupe_key, -1), _sequence(action))

        targets = await self.collector.fetch_metrics(policy)
        proposed = set()

        for metrics in sorted(targets, key=lambda t: t.target.key):
            if metrics.error is not None:
                evaluation.suppressed["metrics_error"] += 1
                continue
            if metrics.protected or metrics.target.namespace in self.safety.settings.protected_namespaces:
                evaluation.suppressed["protected"] += 1
                continue

            for trigger in policy.triggers:
                key = dedupe_key(policy, metrics.target, trigger)
                if not trigger.is_satisfied(metrics.values):
                    self._firing_since.pop(key, None)
                    continue
                if not self._held_long_enough(trigger, key):
                    evaluation.suppressed["pending_duration"] += 1
                    continue
                evaluation.active_triggers.append(f"{trigger.name}@{metrics.target.key}")
                if policy.mode is PolicyMode.MONITOR:
                    continue

                if key in active_keys or key in proposed:
                    evaluation.suppressed["duplicate"] += 1
                    continue
                if self.safety.in_cooldown(policy, metrics.target):
                    evaluation.suppressed["cooldown"] += 1
                    continue

                template = self.select_template(policy, metrics.target.kind)
                if template is None:
                    LOG.warning(f"Policy {policy.key} has no action applicable to {metrics.target.kind}")
                    evaluation.suppressed["no_template"] += 1
                    continue

                template, assessment = await self._consult(policy, metrics, trigger, template)
                if template is None:
                    evaluation.suppressed["ai"] += 1
                    continue

                proposed.add(key)
                evaluation.candidates.append(
                    self._candidate(policy, metrics.target, trigger, template, assessment,
                                    key, sequences.get(key, -1) + 1)
                )

        evaluation.candidates.sort(key=lambda a: (-a.template.priority, a.name))
        if len(evaluation.candidates) > self.max_actions_per_pass:
            evaluation.suppressed["pass_limit"] += len(evaluation.candidates) - self.max_actions_per_pass
            del evaluation.candidates[self.max_actions_per_pass:]

        if evaluation.candidates:
            LOG.info(f"Policy {policy.key}: {len(evaluation.candidates)} candidate action(s), "
                     f"{len(evaluation.active_triggers)} active trigger(s)")
        return evaluation

    def _held_long_enough(self, trigger: Trigger, key: str) -> bool:
        if not trigger.sustained:
            return True
        since = self._firing_since.setdefault(key, self.clock())
        return self.clock() - since >= trigger.duration_seconds

    def select_template(self, policy: HealingPolicy, kind: str,
                        action_type: Optional[ActionType] = None) -> Optional[ActionTemplate]:
        """Highest-priority template applicable to ``kind``, declaration order breaking ties"""
        best = None
        for template in policy.actions:
            if action_type is not None and template.type is not action_type:
                continue
            executor = self.executors.get(template.type)
            if executor is None or not executor.applicable(kind):
                continue
            if best is None or template.priority > best.priority:
                best = template
        return best

    async def _consult(self, policy: HealingPolicy, metrics: TargetMetrics, trigger: Trigger,
                       template: ActionTemplate):
        """Let the analyzer confirm, suppress or substitute the rule-based choice"""
        recommendation = await analyze_with_timeout(
            self.analyzer,
            AnalysisContext(policy=policy, target=metrics.target, trigger=trigger.name,
                            metrics=dict(metrics.values), proposed_action=template.type.value),
            self.ai_settings.timeout_seconds,
        )
        if recommendation is None:
            return template, AIAssessment()
        if recommendation.confidence < self.ai_settings.min_confidence:
            return template, AIAssessment("rule", recommendation.confidence,
                                          f"Below confidence threshold: {recommendation.reasoning}")

        assessment = AIAssessment("ai", recommendation.confidence, recommendation.reasoning)
        if recommendation.suppress:
            LOG.info(f"Analyzer suppressed {trigger.name} on {metrics.target.key}: {recommendation.reasoning}")
            return None, assessment
        if recommendation.action == template.type.value:
            return template, assessment

        action_type = ActionType(recommendation.action)
        alternative = self.select_template(policy, metrics.target.kind, action_type)
        if alternative is None:
            executor = self.executors.get(action_type)
            if action_type in (ActionType.RESTART, ActionType.CORDON) and executor and executor.applicable(metrics.target.kind):
                # parameterless actions can be built without a template
                alternative = ActionTemplate(name=f"ai-{action_type.value}", type=action_type,
                                             priority=template.priority,
                                             requires_approval=template.requires_approval)
        if alternative is None:
            return template, AIAssessment("rule", recommendation.confidence,
                                          f"Recommended {recommendation.action} is not applicable")
        LOG.info(f"Analyzer substituted {alternative.type.value} for {template.type.value} on {metrics.target.key}")
        return alternative, assessment

    def _candidate(self, policy: HealingPolicy, target: TargetRef, trigger: Trigger,
                   template: ActionTemplate, assessment: AIAssessment, key: str, sequence: int) -> HealingAction:
        digest = stable_digest(key)
        return HealingAction(
            name=dns_name(policy.name, trigger.name, stable_digest(key, str(sequence))),
            namespace=policy.namespace,
            policy_name=policy.name,
            trigger=trigger.name,
            template=template,
            target=target,
            dedupe_key=key,
            dry_run=policy.dry_run,
            approval_required=policy.requires_approval or template.requires_approval,
            ai=assessment,
            labels={
                LABEL_MANAGED_BY: MANAGER_NAME,
                LABEL_POLICY: policy.name,
                LABEL_ACTION_TYPE: template.type.value,
                LABEL_DEDUPE_KEY: digest,
                LABEL_SEQUENCE: str(sequence),
            },
            created_at=self.clock(),
        )


def _sequence(action: HealingAction) -> int:
    try:
        return int(action.labels.get(LABEL_SEQUENCE, 0))
    except ValueError:
        return 0
