"""
Action Store: per (policy, target) safety state.

Admission decisions read and write this state inside one critical section.
Locks are keyed, never global: a policy lock guards the policy's blast-radius
window and a (policy, target) lock guards the SafetyState. They are always
taken in that order.
"""

import abc
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from ..models import PolicyWindow, SafetyState
from ..utils import KeyedLock

StateKey = Tuple[str, str]


class ActionStore(abc.ABC):
    """Keyed ledger of SafetyState"""

    @abc.abstractmethod
    def locked(self, policy_key: str, target_key: str) -> "AsyncIterator[Tuple[SafetyState, PolicyWindow]]":
        """Async context manager yielding the (created on demand) state and policy window."""

    @abc.abstractmethod
    def peek(self, policy_key: str, target_key: str) -> Optional[SafetyState]:
        """Read-only view; callers must not mutate the result."""

    @abc.abstractmethod
    def load(self, states: Dict[StateKey, SafetyState], windows: Dict[str, PolicyWindow]) -> None:
        """Replace the contents, used when rebuilding after a restart."""

    @abc.abstractmethod
    async def purge(self, is_idle: Callable[[StateKey, SafetyState], bool],
                    prune_window: Callable[[str, PolicyWindow], bool]) -> int:
        """Drop idle states and empty windows, returning how many states went."""

    @abc.abstractmethod
    def in_flight(self) -> int:
        """Total number of slots currently held."""


class InMemoryActionStore(ActionStore):
    """Process-lifetime store backed by dictionaries"""

    def __init__(self):
        self._states: Dict[StateKey, SafetyState] = {}
        self._windows: Dict[str, PolicyWindow] = {}
        self._policy_locks = KeyedLock()
        self._state_locks = KeyedLock()

    @asynccontextmanager
    async def locked(self, policy_key: str, target_key: str):
        async with self._policy_locks.hold(policy_key):
            async with self._state_locks.hold((policy_key, target_key)):
                state = self._states.setdefault((policy_key, target_key), SafetyState())
                window = self._windows.setdefault(policy_key, PolicyWindow())
                yield state, window

    def peek(self, policy_key: str, target_key: str) -> Optional[SafetyState]:
        return self._states.get((policy_key, target_key))

    def load(self, states: Dict[StateKey, SafetyState], windows: Dict[str, PolicyWindow]) -> None:
        self._states = dict(states)
        self._windows = dict(windows)

    async def purge(self, is_idle, prune_window) -> int:
        removed = 0
        for key in list(self._states):
            policy_key, target_key = key
            async with self.locked(policy_key, target_key) as (state, window):
                if is_idle(key, state):
                    del self._states[key]
                    removed += 1
            # let admissions interleave with long sweeps
            await asyncio.sleep(0)

        for policy_key in list(self._windows):
            async with self._policy_locks.hold(policy_key):
                window = self._windows.get(policy_key)
                if window is not None and prune_window(policy_key, window):
                    del self._windows[policy_key]
        return removed

    def in_flight(self) -> int:
        return sum(state.in_flight for state in self._states.values())

    def __len__(self) -> int:
        return len(self._states)
