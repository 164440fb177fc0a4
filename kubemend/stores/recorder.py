"""
Append-only ledgers with time-based retention.

``ActionRecorder`` keeps the audit trail of terminal outcomes and
``SnapshotLedger`` keeps pre-mutation copies of targets for rollback. Both
sit on an injectable ``RecordBackend``. Writes are synchronous and bounded;
retention sweeps run in batches and take the per-key locks one key at a
time, so a cancelled sweep never leaves one held.
"""

import abc
import asyncio
import copy
import logging
import threading
import time
import uuid
import zlib
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..metrics import RECORDS_EVICTED
from ..models import ActionRecord, HealingAction, Outcome

LOG = logging.getLogger(__name__)


class RecordBackend(abc.ABC):
    """Storage for timestamped entries grouped by action identity"""

    @abc.abstractmethod
    def append(self, key: str, timestamp: float, entry: Any) -> None:
        pass

    @abc.abstractmethod
    def get(self, key: str) -> List[Any]:
        pass

    @abc.abstractmethod
    def entries(self) -> List[Any]:
        pass

    @abc.abstractmethod
    def keys(self) -> List[str]:
        pass

    @abc.abstractmethod
    def evict(self, keys: Sequence[str], cutoff: float) -> int:
        """Remove entries of ``keys`` stamped before ``cutoff``"""


class InMemoryRecordBackend(RecordBackend):
    """Entries guarded by a striped lock map keyed by action identity"""

    def __init__(self, stripes: int = 64):
        self._entries: Dict[str, List[Tuple[float, Any]]] = {}
        self._locks = [threading.Lock() for _ in range(max(1, stripes))]

    def lock_for(self, key: str) -> threading.Lock:
        return self._locks[zlib.crc32(key.encode("utf-8")) % len(self._locks)]

    def append(self, key: str, timestamp: float, entry: Any) -> None:
        with self.lock_for(key):
            self._entries.setdefault(key, []).append((timestamp, entry))

    def get(self, key: str) -> List[Any]:
        with self.lock_for(key):
            return [entry for _, entry in self._entries.get(key, [])]

    def entries(self) -> List[Any]:
        found = []
        for key in self.keys():
            found.extend(self.get(key))
        return found

    def keys(self) -> List[str]:
        return list(self._entries)

    def evict(self, keys: Sequence[str], cutoff: float) -> int:
        evicted = 0
        for key in keys:
            with self.lock_for(key):
                items = self._entries.get(key)
                if items is None:
                    continue
                kept = [item for item in items if item[0] >= cutoff]
                evicted += len(items) - len(kept)
                if kept:
                    self._entries[key] = kept
                else:
                    del self._entries[key]
        return evicted

    def __len__(self) -> int:
        return sum(len(self.get(key)) for key in self.keys())


class RetentionLedger:
    """Shared retention sweep for the ledgers"""

    name = "ledger"

    def __init__(self, backend: Optional[RecordBackend] = None, retention_seconds: float = 86400.0,
                 batch_size: int = 500, clock: Callable[[], float] = time.time):
        self.backend = backend or InMemoryRecordBackend()
        self.retention_seconds = retention_seconds
        self.batch_size = batch_size
        self.clock = clock

    async def sweep(self) -> int:
        """Evict entries older than the retention period"""
        cutoff = self.clock() - self.retention_seconds
        keys = self.backend.keys()
        evicted = 0
        for start in range(0, len(keys), self.batch_size):
            evicted += self.backend.evict(keys[start:start + self.batch_size], cutoff)
            await asyncio.sleep(0)
        if evicted:
            RECORDS_EVICTED.labels(ledger=self.name).inc(evicted)
            LOG.debug(f"Evicted {evicted} {self.name} entries older than {self.retention_seconds:.0f}s")
        return evicted

    async def run_cleanup(self, stop: asyncio.Event, interval: float) -> None:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                try:
                    await self.sweep()
                except Exception as e:
                    LOG.error(f"{self.name} sweep failed: {e}", exc_info=True)


class ActionRecorder(RetentionLedger):
    """Audit trail: one immutable ActionRecord per terminal outcome"""

    name = "records"

    def record(self, action: HealingAction, outcome: Outcome, message: str = "",
               error: str = "", dry_run: bool = False) -> ActionRecord:
        now = self.clock()
        started = action.start_time or action.created_at
        entry = ActionRecord(
            record_id=uuid.uuid4().hex,
            action_id=action.key,
            policy_key=action.policy_key,
            target_key=action.target.key,
            action_type=action.action_type.value,
            outcome=outcome,
            timestamp=now,
            attempts=action.attempts,
            dry_run=dry_run,
            duration_ms=round((now - started) * 1000.0, 3) if started else 0.0,
            error=error,
            message=message,
        )
        self.backend.append(action.key, now, entry)
        LOG.info(
            f"Recorded {outcome.value} for {action.key} ({action.action_type.value} on {action.target.key})",
            extra={"audit": True, "action": action.key, "outcome": outcome.value, "dry_run": dry_run},
        )
        return entry

    def history(self, action_id: str) -> List[ActionRecord]:
        return self.backend.get(action_id)

    def records(self, policy_key: Optional[str] = None, since: Optional[float] = None) -> List[ActionRecord]:
        found = [r for r in self.backend.entries()
                 if (policy_key is None or r.policy_key == policy_key)
                 and (since is None or r.timestamp >= since)]
        return sorted(found, key=lambda r: r.timestamp)

    def count(self, policy_key: str, since: float) -> int:
        return len(self.records(policy_key, since))

    def last(self, policy_key: str) -> Optional[ActionRecord]:
        found = self.records(policy_key)
        return found[-1] if found else None


class SnapshotLedger(RetentionLedger):
    """Pre-mutation copies of targets, kept for rollback"""

    name = "snapshots"

    def save(self, action_id: str, snapshot: Dict[str, Any]) -> None:
        self.backend.append(action_id, self.clock(), copy.deepcopy(snapshot))

    def original(self, action_id: str) -> Optional[Dict[str, Any]]:
        """State of the target before the action first changed it"""
        found = self.backend.get(action_id)
        return copy.deepcopy(found[0]) if found else None
