"""Integrity check and audit log CLI commands."""

from __future__ import annotations

import json

from rich.console import Console

from ..audit_log import format_audit_entry
from ..service import Registry


def run_check(registry: Registry, *, invariant_filter: str | None = None, output_json: bool = False) -> int:
    """
    Re-evaluate every deferred rule over the committed state.

    Returns:
        Exit code (0 = consistent, 1 = violations found)
    """
    console = Console(stderr=True)
    report = registry.check(invariant_filter)

    if output_json:
        print(
            json.dumps(
                {
                    "ok": report.ok,
                    "rules_checked": report.rules_checked,
                    "violations": [v.to_dict() for v in report.violations],
                },
                indent=2,
                sort_keys=True,
            )
        )
        return 0 if report.ok else 1

    if invariant_filter:
        console.print(f"Checking invariant {invariant_filter} only", style="dim")

    grouped = report.by_invariant()
    for invariant in sorted(grouped):
        violations = grouped[invariant]
        console.print(f"{invariant}: {len(violations)} violation(s)", style="bold red")
        for v in violations:
            console.print(f"  {v.rule} {v.collection}:{v.entity_id}: {v.message}", style="dim", markup=False)

    status = "ok" if report.ok else "FAILED"
    style = "green" if report.ok else "bold red"
    console.print(f"{status}: {report.rules_checked} checks, {len(report.violations)} violations", style=style)
    return 0 if report.ok else 1


def run_audit_log(registry: Registry, *, last_n: int | None = None) -> int:
    console = Console()
    entries = registry.audit_entries(last_n)
    if not entries:
        console.print("No audit entries.", style="dim")
        return 0
    for entry in entries:
        console.print(format_audit_entry(entry), highlight=False, markup=False)
    return 0
