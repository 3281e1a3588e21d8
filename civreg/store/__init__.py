"""
Temporal record store.

Generic versioned storage with no registry knowledge:

- Versioned collections keyed by surrogate id
- Valid-time reads (as of an effective date) and transaction-time reads
  (at a commit sequence)
- Units of work committed atomically with optimistic conflict detection
"""

from .store import INDEXED_FIELDS, RecordStore, Snapshot
from .unit import Mutation, UnitOfWork, record_key
from .versions import CommittedUnit, RecordVersion, VersionRef

__all__ = [
    "RecordStore",
    "Snapshot",
    "UnitOfWork",
    "Mutation",
    "record_key",
    "CommittedUnit",
    "RecordVersion",
    "VersionRef",
    "INDEXED_FIELDS",
]
