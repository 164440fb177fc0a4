"""
Remediation Engine: runs approved actions against the cluster.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional

from ..clients.kubernetes import ClusterClient
from ..config import RemediationSettings
from ..exceptions import ClusterError, ConfigurationError, KubeMendError, TransientClusterError
from ..metrics import HEALING_ACTIONS
from ..models import ActionPhase, ActionResult, ActionType, HealingAction, Outcome, transition
from ..stores import ActionRecorder, SnapshotLedger
from ..utils import calculate_backoff, to_iso
from .executors import ActionExecutor, default_executors
from .safety import SafetyController

LOG = logging.getLogger(__name__)


class RemediationEngine:
    """Executes approved HealingActions.

    Transient failures are retried with bounded exponential backoff, terminal
    ones fail the action at once. Every terminal outcome writes exactly one
    record, and the action's safety slot is released on every exit path.
    """

    def __init__(self, client: ClusterClient, safety: SafetyController, recorder: ActionRecorder,
                 snapshots: SnapshotLedger, repository, settings: RemediationSettings,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.client = client
        self.safety = safety
        self.recorder = recorder
        self.snapshots = snapshots
        self.repository = repository
        self.settings = settings
        self.clock = clock
        self.sleep = sleep
        self.executors: Dict[ActionType, ActionExecutor] = {}
        for executor in default_executors():
            self.register(executor)

    def register(self, executor: ActionExecutor) -> None:
        self.executors[executor.action_type] = executor

    def executor_for(self, action_type: ActionType) -> ActionExecutor:
        executor = self.executors.get(action_type)
        if executor is None:
            raise ConfigurationError(f"No executor registered for {action_type.value}")
        return executor

    async def execute(self, action: HealingAction) -> HealingAction:
        """Run an Approved (or resumed Executing/Retrying) action to a terminal phase"""
        succeeded: Optional[bool] = None
        try:
            if action.phase is ActionPhase.APPROVED:
                transition(action, ActionPhase.EXECUTING, "ExecutionStarted", now=self.clock())
                await self.persist(action)

            if action.verdict is not None and action.verdict.simulated:
                await self._simulate(action)
            else:
                await self._run(action)
            succeeded = action.phase is ActionPhase.SUCCEEDED
            return action
        finally:
            # must run even when this task is being cancelled
            await asyncio.shield(self.safety.release(action, succeeded))

    async def _simulate(self, action: HealingAction) -> None:
        try:
            executor = self.executor_for(action.action_type)
            executor.validate(action.template, action.target)
        except ConfigurationError as e:
            await self._finish(action, ActionPhase.FAILED, ActionResult(False, "Dry-run validation failed", str(e)),
                               Outcome.FAILED, dry_run=True)
            return
        action.attempts += 1
        result = ActionResult(True, executor.describe(action))
        await self._finish(action, ActionPhase.SUCCEEDED, result, Outcome.SUCCEEDED, dry_run=True)

    async def _run(self, action: HealingAction) -> None:
        try:
            executor = self.executor_for(action.action_type)
            executor.validate(action.template, action.target)
        except ConfigurationError as e:
            await self._finish(action, ActionPhase.FAILED, ActionResult(False, "Invalid action", str(e)), Outcome.FAILED)
            return

        while True:
            if action.phase is ActionPhase.RETRYING:
                transition(action, ActionPhase.EXECUTING, "RetryStarted", now=self.clock())
            action.attempts += 1
            action.last_attempt_time = self.clock()
            await self.persist(action)

            try:
                result = await asyncio.wait_for(self._attempt(executor, action),
                                                timeout=self.settings.call_timeout_seconds)
            except (TransientClusterError, asyncio.TimeoutError) as e:
                error = str(e) or "attempt timed out"
                if action.attempts >= self.settings.max_attempts:
                    await self._finish(action, ActionPhase.FAILED,
                                       ActionResult(False, f"Gave up after {action.attempts} attempts", error),
                                       Outcome.FAILED)
                    return
                delay = calculate_backoff(action.attempts, self.settings.backoff_base_seconds,
                                          self.settings.backoff_multiplier, self.settings.max_backoff_seconds)
                LOG.warning(f"Attempt {action.attempts} of {action.key} failed ({error}), retrying in {delay:.1f}s")
                transition(action, ActionPhase.RETRYING, "TransientFailure", error, now=self.clock())
                await self.persist(action)
                await self.sleep(delay)
                continue
            except KubeMendError as e:
                await self._finish(action, ActionPhase.FAILED, ActionResult(False, "Action failed", str(e)),
                                   Outcome.FAILED)
                return
            except Exception as e:
                LOG.error(f"Unexpected failure executing {action.key}: {e}", exc_info=True)
                await self._finish(action, ActionPhase.FAILED,
                                   ActionResult(False, "Action failed", f"{type(e).__name__}: {e}"),
                                   Outcome.FAILED)
                return

            await self._finish(action, ActionPhase.SUCCEEDED, result, Outcome.SUCCEEDED)
            return

    async def _attempt(self, executor: ActionExecutor, action: HealingAction) -> ActionResult:
        if executor.supports_rollback and self.snapshots.original(action.key) is None:
            self.snapshots.save(action.key, await self.client.get(action.target))
        return await executor.execute(self.client, action)

    async def _finish(self, action: HealingAction, phase: ActionPhase, result: ActionResult,
                      outcome: Outcome, dry_run: bool = False) -> None:
        action.result = result
        reason = "ActionSucceeded" if phase is ActionPhase.SUCCEEDED else "ActionFailed"
        transition(action, phase, reason, result.error or result.message, now=self.clock())
        self.recorder.record(action, outcome, message=result.message, error=result.error, dry_run=dry_run)
        HEALING_ACTIONS.labels(
            action_type=action.action_type.value,
            namespace=action.target.namespace or "cluster",
            status="simulated" if dry_run and outcome is Outcome.SUCCEEDED else outcome.value,
        ).inc()
        if outcome is Outcome.SUCCEEDED:
            LOG.info(f"{action.key} succeeded: {result.message}")
        else:
            LOG.error(f"{action.key} failed: {result.error}")
        await self.persist(action)

    async def rollback(self, action: HealingAction) -> ActionResult:
        """Restore the target to its state before ``action`` changed it"""
        if not action.phase.terminal or action.phase is ActionPhase.DENIED:
            raise ConfigurationError(f"{action.key} is {action.phase.value}; only executed actions can be rolled back")
        if action.verdict is not None and action.verdict.simulated:
            raise ConfigurationError(f"{action.key} was a dry run; nothing to roll back")
        if any(r.outcome is Outcome.ROLLED_BACK for r in self.recorder.history(action.key)):
            raise ConfigurationError(f"{action.key} was already rolled back")
        if not self.settings.enable_rollback:
            raise ConfigurationError("Rollback is disabled")

        executor = self.executor_for(action.action_type)
        snapshot = self.snapshots.original(action.key)
        if snapshot is None:
            raise ConfigurationError(f"No snapshot retained for {action.key}")

        try:
            result = await executor.rollback(self.client, action, snapshot)
        except ClusterError as e:
            LOG.error(f"Rollback of {action.key} failed: {e}")
            raise
        self.recorder.record(action, Outcome.ROLLED_BACK, message=result.message)
        HEALING_ACTIONS.labels(action_type=action.action_type.value,
                               namespace=action.target.namespace or "cluster",
                               status=Outcome.ROLLED_BACK.value).inc()
        action.conditions.append({
            "type": "RolledBack", "status": "True", "reason": "RollbackSucceeded",
            "message": result.message, "lastTransitionTime": to_iso(self.clock()),
        })
        await self.persist(action)
        return result

    async def persist(self, action: HealingAction) -> None:
        try:
            await self.repository.update_action_status(action)
        except ClusterError as e:
            # the next transition writes the full status again
            LOG.warning(f"Could not persist status of {action.key}: {e}")
