"""
Audit log of submitted events.

Every submission, committed or rejected, is appended to ``audit.log`` in the
data directory as one JSON line. The record store already keeps every
version; this log answers the operator's question of what was submitted,
what it created and what it closed.

This module provides:
- Structured logging of submissions and their outcome
- Creation and closure summaries derived from a unit's mutations
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from .records import Period, RegistrationStatus
from .store import Mutation


@dataclass
class ClosureSummary:
    """Summary of what an operation ended: periods closed, registrations cancelled."""
    periods: int = 0
    cancellations: int = 0
    details: dict[str, int] = field(default_factory=dict)


@dataclass
class CreationSummary:
    """Summary of what an operation created."""
    records: int = 0
    versions: int = 0
    details: dict[str, int] = field(default_factory=dict)


@dataclass
class AuditEntry:
    """A single audit log entry."""
    timestamp: str
    operation: str
    outcome: str
    closed: ClosureSummary
    created: CreationSummary
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "timestamp": self.timestamp,
            "operation": self.operation,
            "outcome": self.outcome,
            "closed": asdict(self.closed),
            "created": asdict(self.created),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AuditEntry":
        """Create from dictionary."""
        return cls(
            timestamp=data["timestamp"],
            operation=data["operation"],
            outcome=data.get("outcome", "committed"),
            closed=ClosureSummary(**data.get("closed", {})),
            created=CreationSummary(**data.get("created", {})),
            metadata=data.get("metadata", {}),
        )


def _periods(record: Any) -> list[Period]:
    return [v for v in vars(record).values() if isinstance(v, Period)]


def summarize_mutations(mutations: Iterable[Mutation]) -> tuple[CreationSummary, ClosureSummary]:
    """Count created records per collection, and closures and cancellations per collection."""
    created = CreationSummary()
    closed = ClosureSummary()
    for m in mutations:
        created.versions += 1
        if m.before is None:
            created.records += 1
            created.details[m.collection] = created.details.get(m.collection, 0) + 1
            continue

        before_open = sum(p.is_open for p in _periods(m.before))
        after_open = sum(p.is_open for p in _periods(m.after))
        if after_open < before_open:
            closed.periods += before_open - after_open
            closed.details[m.collection] = closed.details.get(m.collection, 0) + 1
        was = getattr(m.before, "status", None)
        now = getattr(m.after, "status", None)
        if now == RegistrationStatus.CANCELLED and was != RegistrationStatus.CANCELLED:
            closed.cancellations += 1
            closed.details[m.collection] = closed.details.get(m.collection, 0) + 1
    return created, closed


def get_audit_log_path(data_dir: Path) -> Path:
    """Get the path to the audit log file."""
    return data_dir / "audit.log"


def log_operation(
    data_dir: Path,
    operation: str,
    outcome: str = "committed",
    closed: ClosureSummary | None = None,
    created: CreationSummary | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuditEntry:
    """
    Log an operation to the audit log.

    Args:
        data_dir: Registry data directory
        operation: Name of the operation (e.g., "death", "seal_register")
        outcome: "committed" or the error kind of a rejection
        closed: Summary of what was ended
        created: Summary of what was created
        metadata: Additional context (effective date, ids, error message)

    Returns:
        The created audit entry
    """
    entry = AuditEntry(
        timestamp=datetime.now(timezone.utc).isoformat(),
        operation=operation,
        outcome=outcome,
        closed=closed or ClosureSummary(),
        created=created or CreationSummary(),
        metadata=metadata or {},
    )

    log_path = get_audit_log_path(data_dir)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    # Append as JSON Lines format (one JSON object per line)
    with log_path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(entry.to_dict(), default=str) + "\n")

    return entry


def read_audit_log(data_dir: Path, last_n: int | None = None) -> list[AuditEntry]:
    """
    Read entries from the audit log.

    Args:
        data_dir: Registry data directory
        last_n: If specified, return only the last N entries

    Returns:
        List of audit entries, oldest first
    """
    log_path = get_audit_log_path(data_dir)
    if not log_path.exists():
        return []

    entries = []
    with log_path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    data = json.loads(line)
                    entries.append(AuditEntry.from_dict(data))
                except (json.JSONDecodeError, KeyError, TypeError):
                    continue  # Skip malformed lines

    if last_n is not None:
        return entries[-last_n:]
    return entries


def format_audit_entry(entry: AuditEntry) -> str:
    """Format an audit entry for human-readable display."""
    lines = [
        f"[{entry.timestamp}] {entry.operation} ({entry.outcome})",
    ]

    if entry.created.records:
        parts = [f"{n} {collection}" for collection, n in sorted(entry.created.details.items())]
        lines.append(f"  Created: {', '.join(parts)}")

    if entry.closed.periods or entry.closed.cancellations:
        parts = []
        if entry.closed.periods:
            parts.append(f"{entry.closed.periods} periods")
        if entry.closed.cancellations:
            parts.append(f"{entry.closed.cancellations} cancellations")
        lines.append(f"  Closed: {', '.join(parts)}")

    if entry.metadata:
        for key, value in entry.metadata.items():
            lines.append(f"  {key}: {value}")

    return "\n".join(lines)
