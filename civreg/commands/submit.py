"""Event submission CLI command."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.table import Table

from ..service import Registry


def _load_payload(payload: str | None) -> dict[str, Any]:
    """Payload is inline JSON, ``@path`` to a JSON file, or empty."""
    if not payload:
        return {}
    text = Path(payload[1:]).read_text(encoding="utf-8") if payload.startswith("@") else payload
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("payload must be a JSON object")
    return data


def run_submit(
    registry: Registry,
    event_type: str,
    effective_date: str,
    *,
    payload: str | None = None,
    applicant: str | None = None,
    application_id: str | None = None,
    output_json: bool = False,
) -> int:
    """
    Submit one life event.

    Returns:
        Exit code (0 = committed, 1 = rejected, 2 = unreadable payload)
    """
    err = Console(stderr=True)
    try:
        data = _load_payload(payload)
    except (OSError, ValueError) as e:
        err.print(f"Invalid payload: {e}", style="bold red")
        return 2

    application: dict[str, Any] | str | None = application_id
    if application is None and applicant:
        application = {"applicant": applicant}

    result = registry.submit_event(event_type, effective_date, data, application)

    if output_json:
        print(json.dumps(result.to_dict(), indent=2, sort_keys=True))
        return 0 if result.success else 1

    console = Console()
    if not result.success:
        assert result.error is not None
        err.print(f"rejected ({result.error.kind}): {result.error}", style="bold red", markup=False)
        for v in getattr(result.error, "violations", []):
            err.print(f"  - {v.invariant}: {v.rule} {v.collection}:{v.entity_id}", style="dim", markup=False)
        return 1

    outcome = result.outcome
    assert outcome is not None
    console.print(f"committed: {event_type} @ {effective_date} (seq {outcome.seq})", style="green")
    console.print(f"  application: {outcome.application_id}", style="dim")

    table = Table(title="Versions written")
    table.add_column("collection", style="magenta")
    table.add_column("record_id", style="cyan", no_wrap=True)
    table.add_column("seq", justify="right")
    for ref in outcome.versions:
        table.add_row(ref.collection, ref.record_id, str(ref.seq))
    console.print(table)
    if outcome.cascades:
        console.print(f"  cascades: {', '.join(outcome.cascades)}", style="dim")
    return 0
