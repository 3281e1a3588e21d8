from __future__ import annotations

from pathlib import Path

from helpers import OTHER_ADDRESS, Family, FixedClock, must, submit

from civreg.audit_log import (
    AuditEntry,
    ClosureSummary,
    CreationSummary,
    format_audit_entry,
    get_audit_log_path,
    log_operation,
    read_audit_log,
)
from civreg.config import RegistryConfig
from civreg.service import Registry


def test_log_operation_appends_json_lines(tmp_path: Path) -> None:
    log_operation(tmp_path, "move", created=CreationSummary(records=2, versions=3, details={"life_event": 1}))
    log_operation(tmp_path, "death", "invariant_violation", metadata={"error": "single-head"})

    lines = get_audit_log_path(tmp_path).read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2

    entries = read_audit_log(tmp_path)
    assert [e.operation for e in entries] == ["move", "death"]
    assert entries[0].created.records == 2
    assert entries[1].outcome == "invariant_violation"
    assert read_audit_log(tmp_path, last_n=1)[0].operation == "death"


def test_malformed_lines_are_skipped(tmp_path: Path) -> None:
    log_operation(tmp_path, "birth")
    with get_audit_log_path(tmp_path).open("a", encoding="utf-8") as f:
        f.write("not json\n")
        f.write('{"operation": "missing timestamp"}\n')
    log_operation(tmp_path, "move")

    assert [e.operation for e in read_audit_log(tmp_path)] == ["birth", "move"]


def test_missing_log_reads_empty(tmp_path: Path) -> None:
    assert read_audit_log(tmp_path / "nowhere") == []


def test_format_audit_entry() -> None:
    entry = AuditEntry(
        timestamp="2024-06-01T00:00:00+00:00",
        operation="death",
        outcome="committed",
        closed=ClosureSummary(periods=2, cancellations=1, details={"membership": 1, "seal_registration": 1}),
        created=CreationSummary(records=2, versions=6, details={"application": 1, "life_event": 1}),
        metadata={"seq": 7},
    )
    text = format_audit_entry(entry)
    assert text.splitlines()[0] == "[2024-06-01T00:00:00+00:00] death (committed)"
    assert "Created: 1 application, 1 life_event" in text
    assert "Closed: 2 periods, 1 cancellations" in text
    assert "seq: 7" in text


def test_committed_event_is_audited(registry: Registry, clock: FixedClock, family: Family) -> None:
    result = must(submit(registry, clock, "move", "2024-03-01", {"resident_id": family.child, "address": OTHER_ADDRESS}))

    entry = registry.audit_entries(last_n=1)[0]
    assert entry.operation == "move"
    assert entry.outcome == "committed"
    assert entry.metadata["seq"] == result.outcome.seq  # type: ignore[union-attr]
    assert entry.metadata["application_id"] == result.outcome.application_id  # type: ignore[union-attr]
    assert entry.created.details["life_event"] == 1
    assert entry.created.details["address"] == 1


def test_death_audit_counts_closures(registry: Registry, clock: FixedClock, family: Family) -> None:
    must(submit(registry, clock, "seal_register", "2021-01-10", {"resident_id": family.child, "seal_number": "S9"}))
    must(submit(registry, clock, "death", "2024-06-01", {"resident_id": family.child}))

    entry = registry.audit_entries(last_n=1)[0]
    assert entry.operation == "death"
    assert entry.closed.cancellations == 1
    # residency and membership
    assert entry.closed.periods == 2
    assert "residency_end.cancel_seal" in entry.metadata["cascades"]


def test_rejection_is_audited(registry: Registry, clock: FixedClock, family: Family) -> None:
    result = submit(registry, clock, "death", "2024-06-01", {"resident_id": family.head})
    assert not result.success

    entry = registry.audit_entries(last_n=1)[0]
    assert entry.operation == "death"
    assert entry.outcome == "invariant_violation"
    assert entry.metadata["application_id"] == result.rejected_application_id
    assert "single-head" in entry.metadata["error"]


def test_malformed_submission_is_audited(registry: Registry) -> None:
    result = registry.submit_event("coronation", "2024-01-01", {})
    assert not result.success

    entry = registry.audit_entries(last_n=1)[0]
    assert entry.operation == "coronation"
    assert entry.outcome == "format_error"


def test_audit_can_be_disabled(tmp_path: Path, clock: FixedClock) -> None:
    registry = Registry(tmp_path / "reg", config=RegistryConfig(audit=False), clock=clock)
    registry.submit_event("coronation", "2024-01-01", {})
    assert not get_audit_log_path(tmp_path / "reg").exists()
