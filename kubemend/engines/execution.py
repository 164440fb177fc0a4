"""
Action Execution Loop: drives each HealingAction through its lifecycle.

    Pending -> Validating -> Approved -> Executing -> Succeeded | Failed
                          -> Denied                -> Retrying -> Executing

Work on one action is serialised by a per-action lock, so a watch event and
a requeue timer for the same object never run concurrently. kopf hands every
handler its own copy of the body, so a caller that waited on the lock may hold
a copy older than what the previous holder wrote; the loop keeps the latest
state it produced per action and prefers it over a copy that is behind.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Optional

from ..metrics import HEALING_ACTIONS
from ..models import ActionPhase, HealingAction, HealingPolicy, Outcome, Verdict, transition
from ..stores import ActionRecorder
from ..utils import KeyedLock
from .remediation import RemediationEngine
from .safety import SafetyController

LOG = logging.getLogger(__name__)

# How far along the lifecycle a phase is
PHASE_RANK = {
    ActionPhase.PENDING: 0,
    ActionPhase.VALIDATING: 1,
    ActionPhase.APPROVED: 2,
    ActionPhase.EXECUTING: 3,
    ActionPhase.RETRYING: 3,
    ActionPhase.DENIED: 4,
    ActionPhase.SUCCEEDED: 4,
    ActionPhase.FAILED: 4,
}


class ActionExecutionLoop:

    def __init__(self, safety: SafetyController, engine: RemediationEngine, recorder: ActionRecorder,
                 clock: Callable[[], float] = time.time):
        self.safety = safety
        self.engine = engine
        self.recorder = recorder
        self.clock = clock
        self._locks = KeyedLock()
        self._latest: Dict[str, HealingAction] = {}

    async def process(self, action: HealingAction, policy: Optional[HealingPolicy]) -> HealingAction:
        """Advance ``action`` as far as it can go right now"""
        async with self._locks.hold(action.key):
            action = self._freshest(action)
            try:
                return await self._advance(action, policy)
            finally:
                self._latest[action.key] = action

    def forget(self, key: str) -> None:
        """Drop the remembered state of a deleted action"""
        self._latest.pop(key, None)

    def _freshest(self, action: HealingAction) -> HealingAction:
        known = self._latest.get(action.key)
        if known is None or PHASE_RANK[action.phase] >= PHASE_RANK[known.phase]:
            return action
        LOG.debug(f"Ignoring stale copy of {action.key} ({action.phase.value}, known {known.phase.value})")
        # approvals arrive as annotations on newer bodies
        known.annotations.update(action.annotations)
        return known

    async def _advance(self, action: HealingAction, policy: Optional[HealingPolicy]) -> HealingAction:
        if action.phase.terminal:
            return action

        if action.phase is ActionPhase.PENDING:
            if action.created_at is None:
                action.created_at = self.clock()
            if action.approval_required and not action.approved_by:
                LOG.info(f"{action.key} is waiting for approval")
                return action
            transition(action, ActionPhase.VALIDATING, "ValidationStarted", now=self.clock())
            await self.engine.persist(action)

        try:
            if action.phase is ActionPhase.VALIDATING:
                # also the resume point after a restart: admission state was volatile
                if not await self._validate(action, policy):
                    return action
            elif action.verdict is not None and not action.verdict.simulated:
                # resumed Approved/Executing/Retrying action keeps its slot
                await self.safety.reclaim(action)
        except BaseException:
            # a slot taken above is owned by the engine only once execute() starts
            await asyncio.shield(self.safety.release(action))
            raise

        return await self.engine.execute(action)

    async def _validate(self, action: HealingAction, policy: Optional[HealingPolicy]) -> bool:
        if policy is None:
            verdict = Verdict(False, "policy_missing", f"Policy {action.policy_key} no longer exists")
        else:
            verdict = await self.safety.validate(action, policy)
        action.verdict = verdict

        if verdict.approved:
            reason = "DryRunApproved" if verdict.simulated else "SafetyApproved"
            transition(action, ActionPhase.APPROVED, reason, verdict.reason, now=self.clock())
            await self.engine.persist(action)
            return True

        transition(action, ActionPhase.DENIED, "SafetyDenied", verdict.reason, now=self.clock())
        self.recorder.record(action, Outcome.DENIED, message=verdict.reason)
        HEALING_ACTIONS.labels(action_type=action.action_type.value,
                               namespace=action.target.namespace or "cluster",
                               status=Outcome.DENIED.value).inc()
        LOG.info(f"{action.key} denied by {verdict.check}: {verdict.reason}")
        await self.engine.persist(action)
        return False
