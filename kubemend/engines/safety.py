"""
Safety Controller: admission control for healing actions.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

from ..config import SafetySettings
from ..metrics import ACTIONS_IN_FLIGHT, SAFETY_VALIDATIONS
from ..models import ActionPhase, HealingAction, HealingPolicy, PolicyWindow, SafetyState, TargetRef, Verdict
from ..stores import ActionStore

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class SafetyLimits:
    """Policy safety configuration resolved against operator defaults"""
    cooldown_seconds: float
    max_concurrent_actions: int
    max_actions_per_window: int
    window_seconds: float
    max_blast_radius: Optional[int]


class SafetyController:
    """Validates actions against a policy's safety limits.

    Checks run in a fixed order and stop at the first denial: dry-run,
    cooldown, concurrency, rate limit, blast radius, circuit breaker and
    protected namespace. Counters for an approved action change inside the
    same critical section as the decision.
    """

    def __init__(self, store: ActionStore, settings: SafetySettings,
                 dry_run: bool = False, clock: Callable[[], float] = time.time):
        self.store = store
        self.settings = settings
        self.dry_run = dry_run
        self.clock = clock
        self._limits: Dict[str, SafetyLimits] = {}

    # ------------------------------------------------------------------
    # Limits
    # ------------------------------------------------------------------

    def limits(self, policy: HealingPolicy) -> SafetyLimits:
        safety = policy.safety
        limits = SafetyLimits(
            cooldown_seconds=_pick(safety.cooldown_seconds, self.settings.default_cooldown_seconds),
            max_concurrent_actions=_pick(safety.max_concurrent_actions, self.settings.default_max_concurrent_actions),
            max_actions_per_window=_pick(safety.max_actions_per_window, self.settings.default_max_actions_per_window),
            window_seconds=_pick(safety.window_seconds, self.settings.default_window_seconds),
            max_blast_radius=safety.max_blast_radius,
        )
        self._limits[policy.key] = limits
        return limits

    def _cached_limits(self, policy_key: str) -> SafetyLimits:
        limits = self._limits.get(policy_key)
        if limits is None:
            limits = SafetyLimits(
                cooldown_seconds=self.settings.default_cooldown_seconds,
                max_concurrent_actions=self.settings.default_max_concurrent_actions,
                max_actions_per_window=self.settings.default_max_actions_per_window,
                window_seconds=self.settings.default_window_seconds,
                max_blast_radius=None,
            )
        return limits

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def is_simulated(self, action: HealingAction, policy: HealingPolicy) -> bool:
        return self.dry_run or policy.dry_run or action.dry_run

    async def validate(self, action: HealingAction, policy: HealingPolicy) -> Verdict:
        """Decide whether ``action`` may run now"""
        limits = self.limits(policy)

        async with self.store.locked(policy.key, action.target.key) as (state, window):
            now = self.clock()
            if self.is_simulated(action, policy):
                # simulations never take a slot but do restart the cooldown
                state.last_action_at = now
                verdict = Verdict(True, "dry_run", "Dry-run: execution will be simulated", simulated=True)
            else:
                verdict = self._admit(action, limits, state, window, now)

        SAFETY_VALIDATIONS.labels(result="approved" if verdict.approved else "denied", check=verdict.check).inc()
        ACTIONS_IN_FLIGHT.set(self.store.in_flight())
        LOG.info(
            f"Safety validation for {action.key} on {action.target.key}: "
            f"{'approved' if verdict.approved else 'denied'} ({verdict.check})",
            extra={"audit": True, "action": action.key, "policy": policy.key,
                   "target": action.target.key, "check": verdict.check, "approved": verdict.approved},
        )
        return verdict

    def _admit(self, action: HealingAction, limits: SafetyLimits, state: SafetyState,
               window: PolicyWindow, now: float) -> Verdict:
        target = action.target

        if state.last_action_at is not None:
            elapsed = now - state.last_action_at
            if elapsed < limits.cooldown_seconds:
                return Verdict(False, "cooldown",
                               f"Cooldown active: {limits.cooldown_seconds - elapsed:.0f}s remaining")

        if state.in_flight >= limits.max_concurrent_actions:
            return Verdict(False, "concurrency",
                           f"{state.in_flight} action(s) in flight, limit {limits.max_concurrent_actions}")

        state.prune_window(now, limits.window_seconds)
        if len(state.window) >= limits.max_actions_per_window:
            return Verdict(False, "rate_limit",
                           f"{len(state.window)} actions in the last {limits.window_seconds:.0f}s, "
                           f"limit {limits.max_actions_per_window}")

        window.prune(now, limits.window_seconds)
        if (limits.max_blast_radius is not None
                and target.key not in window.targets
                and len(window.targets) >= limits.max_blast_radius):
            return Verdict(False, "blast_radius",
                           f"Policy already affected {len(window.targets)} targets, limit {limits.max_blast_radius}")

        if (state.consecutive_failures >= self.settings.circuit_failure_threshold
                and state.last_failure_at is not None
                and now - state.last_failure_at < self.settings.circuit_timeout_seconds):
            return Verdict(False, "circuit_breaker",
                           f"Circuit open after {state.consecutive_failures} consecutive failures")

        if target.namespace and target.namespace in self.settings.protected_namespaces:
            return Verdict(False, "protected", f"Namespace {target.namespace} is protected")

        state.holders.add(action.key)
        state.window.append(now)
        state.last_action_at = now
        window.targets[target.key] = now
        return Verdict(True, "admitted", "All safety checks passed")

    # ------------------------------------------------------------------
    # Slot lifecycle
    # ------------------------------------------------------------------

    async def release(self, action: HealingAction, succeeded: Optional[bool] = None) -> None:
        """Give back the action's slot. ``succeeded=None`` means no outcome (cancelled).

        Safe to call more than once; only the first call changes counters.
        """
        async with self.store.locked(action.policy_key, action.target.key) as (state, _):
            if action.key not in state.holders:
                return
            state.holders.discard(action.key)
            now = self.clock()
            if succeeded is True:
                state.consecutive_failures = 0
                state.last_action_at = now
            elif succeeded is False:
                state.consecutive_failures += 1
                state.last_failure_at = now
                state.last_action_at = now
        ACTIONS_IN_FLIGHT.set(self.store.in_flight())

    async def reclaim(self, action: HealingAction) -> None:
        """Re-register a slot for an already admitted action being resumed"""
        async with self.store.locked(action.policy_key, action.target.key) as (state, window):
            state.holders.add(action.key)
            window.targets.setdefault(action.target.key, self.clock())
        ACTIONS_IN_FLIGHT.set(self.store.in_flight())

    def in_cooldown(self, policy: HealingPolicy, target: TargetRef) -> bool:
        """Read-only cooldown check used before creating candidates"""
        state = self.store.peek(policy.key, target.key)
        if state is None or state.last_action_at is None:
            return False
        return self.clock() - state.last_action_at < self.limits(policy).cooldown_seconds

    # ------------------------------------------------------------------
    # Recovery and cleanup
    # ------------------------------------------------------------------

    def recover(self, actions: Iterable[HealingAction], policies: Iterable[HealingPolicy] = ()) -> int:
        """Rebuild safety state from persisted actions after a restart.

        Admitted, non-terminal actions hold their slot again. Executed actions
        refill the rate-limit windows while inside their policy's window and
        the cooldown anchors while inside its cooldown.
        """
        now = self.clock()
        limits = {policy.key: self.limits(policy) for policy in policies}
        states: Dict[tuple, SafetyState] = {}
        windows: Dict[str, PolicyWindow] = {}
        reclaimed = 0

        for action in sorted(actions, key=lambda a: a.start_time or a.created_at or 0.0):
            if action.verdict is None or not action.verdict.approved or action.verdict.simulated:
                continue
            policy_limits = limits.get(action.policy_key) or self._cached_limits(action.policy_key)
            admitted_at = action.start_time or action.created_at or now
            anchor = action.completion_time or admitted_at
            in_window = action.phase.holds_slot or now - admitted_at < policy_limits.window_seconds
            cooling = now - anchor < policy_limits.cooldown_seconds
            if not in_window and not cooling:
                continue

            state = states.setdefault((action.policy_key, action.target.key), SafetyState())
            window = windows.setdefault(action.policy_key, PolicyWindow())
            if in_window:
                state.window.append(admitted_at)
                window.targets[action.target.key] = max(window.targets.get(action.target.key, 0.0), admitted_at)
            state.last_action_at = max(state.last_action_at or 0.0, anchor)

            if action.phase.holds_slot:
                state.holders.add(action.key)
                reclaimed += 1
            elif action.phase is ActionPhase.FAILED:
                state.consecutive_failures += 1
                state.last_failure_at = anchor
            elif action.phase is ActionPhase.SUCCEEDED:
                state.consecutive_failures = 0

        self.store.load(states, windows)
        ACTIONS_IN_FLIGHT.set(self.store.in_flight())
        LOG.info(f"Recovered safety state for {len(states)} targets, {reclaimed} in-flight action(s)")
        return reclaimed

    async def cleanup(self) -> int:
        """Drop safety state that no longer constrains anything"""
        now = self.clock()

        def is_idle(key, state: SafetyState) -> bool:
            limits = self._cached_limits(key[0])
            state.prune_window(now, limits.window_seconds)
            if (state.consecutive_failures and state.last_failure_at is not None
                    and now - state.last_failure_at >= self.settings.circuit_timeout_seconds):
                state.consecutive_failures = 0
            return state.is_idle(now, limits.cooldown_seconds)

        def prune_window(policy_key: str, window: PolicyWindow) -> bool:
            window.prune(now, self._cached_limits(policy_key).window_seconds)
            return not window.targets

        removed = await self.store.purge(is_idle, prune_window)
        if removed:
            LOG.debug(f"Safety cleanup removed {removed} idle state(s)")
        return removed

    async def run_cleanup(self, stop: asyncio.Event, interval: Optional[float] = None) -> None:
        interval = interval or self.settings.cleanup_interval_seconds
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                try:
                    await self.cleanup()
                except Exception as e:
                    LOG.error(f"Safety cleanup failed: {e}", exc_info=True)


def _pick(value, default):
    return default if value is None else value
