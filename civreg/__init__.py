"""
civreg - consistency and temporal-integrity engine for a municipal population registry.

Residents, households and the civil-status life events that mutate them are
kept in a versioned record store. Every submitted event becomes one unit of
work: mutations are computed, cascaded, validated against the invariant
ruleset and committed atomically, or rejected whole.
"""

__version__ = "0.1.0"

from .errors import (
    ConcurrencyConflict,
    Conflict,
    EventError,
    FormatError,
    IdentityConflict,
    InvariantViolation,
    NoHeadError,
    NotFound,
    OutOfSequence,
    RegistryError,
    SequenceError,
    ValidationFailed,
)
from .service import Registry, SubmitResult

__all__ = [
    "__version__",
    "Registry",
    "SubmitResult",
    "RegistryError",
    "EventError",
    "FormatError",
    "InvariantViolation",
    "IdentityConflict",
    "SequenceError",
    "ConcurrencyConflict",
    "NotFound",
    "NoHeadError",
    "ValidationFailed",
    "Conflict",
    "OutOfSequence",
]
