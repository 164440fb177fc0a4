"""
Helpers shared across the kubemend components.
"""

import asyncio
import hashlib
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Hashable, List, Optional

_DNS_INVALID = re.compile(r"[^a-z0-9-]+")


class KeyedLock:
    """A set of asyncio locks created on demand, one per key.

    Entries are dropped once nobody holds or waits on them, so the map only
    grows with the number of keys in active use.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def calculate_backoff(attempt: int, base: float, multiplier: float, maximum: float) -> float:
    """Delay before retry number ``attempt`` (1-based), capped at ``maximum``."""
    if attempt < 1:
        attempt = 1
    delay = base * (multiplier ** (attempt - 1))
    return min(delay, maximum)


def to_iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def from_iso(value) -> Optional[float]:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        return value.timestamp()
    return datetime.fromisoformat(str(value).replace('Z', '+00:00')).timestamp()


def label_selector(match_labels: Dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(match_labels.items()))


def stable_digest(*parts: str, length: int = 10) -> str:
    return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()[:length]


def dns_name(*parts: str, max_length: int = 63) -> str:
    """Join parts into a lowercase DNS-1123 label, truncating the prefix."""
    name = "-".join(_DNS_INVALID.sub("-", p.lower()).strip("-") for p in parts if p)
    name = re.sub(r"-{2,}", "-", name)
    if len(name) > max_length:
        # keep the tail, it carries the digest
        name = name[-max_length:].lstrip("-")
    return name


def create_policy_status(
    last_evaluated: str,
    active_triggers: List[str],
    actions_created: int,
    actions_taken: int,
    result: str,
    message: str,
    observed_generation: int,
) -> Dict[str, Any]:
    """Create a status patch for a HealingPolicy resource"""
    return {
        "lastEvaluated": last_evaluated,
        "activeTriggers": active_triggers,
        "actionsCreated": actions_created,
        "actionsTaken": actions_taken,
        "lastResult": result,
        "observedGeneration": observed_generation,
        "conditions": [
            {
                "type": "Ready",
                "status": "False" if result == "error" else "True",
                "lastTransitionTime": last_evaluated,
                "reason": "EvaluationFailed" if result == "error" else "EvaluationComplete",
                "message": message
            }
        ]
    }
