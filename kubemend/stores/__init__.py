"""
In-process ledgers: safety state, the audit record and rollback snapshots.
"""

from .action_store import ActionStore, InMemoryActionStore
from .recorder import ActionRecorder, InMemoryRecordBackend, RecordBackend, SnapshotLedger

__all__ = [
    "ActionStore",
    "InMemoryActionStore",
    "ActionRecorder",
    "SnapshotLedger",
    "RecordBackend",
    "InMemoryRecordBackend",
]
