"""Read-only CLI commands: resident, household head and life-event history."""

from __future__ import annotations

import json
from datetime import date

from rich.console import Console
from rich.table import Table

from ..errors import NoHeadError, NotFound
from ..service import Registry


def run_resident(registry: Registry, resident_id: str, *, as_of: date | None = None, output_json: bool = False) -> int:
    err = Console(stderr=True)
    try:
        view = registry.resident_as_of(resident_id, as_of) if as_of else registry.current_resident(resident_id)
    except NotFound as e:
        err.print(str(e), style="bold red")
        return 1

    data = view.to_dict()
    if output_json:
        print(json.dumps(data, indent=2, sort_keys=True))
        return 0

    console = Console()
    table = Table(title=f"Resident {resident_id}" + (f" as of {as_of.isoformat()}" if as_of else ""))
    table.add_column("field", style="cyan")
    table.add_column("value")
    for key, value in data.items():
        if key == "address" and isinstance(value, dict):
            value = ", ".join(str(v) for v in value.values() if v)
        table.add_row(key, "" if value is None else str(value))
    console.print(table)
    return 0


def run_head(registry: Registry, household_id: str, *, as_of: date | None = None) -> int:
    err = Console(stderr=True)
    try:
        head = registry.household_head(household_id, as_of)
    except (NotFound, NoHeadError) as e:
        err.print(str(e), style="bold red")
        return 1

    console = Console()
    console.print(head)
    members = registry.household_members(household_id, as_of)
    for m in members:
        console.print(f"  {m.role.value:8} {m.resident_id} since {m.period.start.isoformat()}", style="dim")
    return 0


def run_events(registry: Registry, resident_id: str, *, output_json: bool = False) -> int:
    events = registry.life_events(resident_id)
    if output_json:
        print(json.dumps([e.to_dict() for e in events], indent=2, sort_keys=True))
        return 0

    console = Console()
    table = Table(title=f"Life events of {resident_id}")
    table.add_column("change_date", no_wrap=True)
    table.add_column("event", style="magenta")
    table.add_column("notified")
    table.add_column("processed")
    table.add_column("application", style="dim")
    table.add_column("detail", style="dim")
    for e in events:
        table.add_row(
            e.change_date.isoformat(),
            e.event_type,
            e.notification_date.isoformat(),
            e.processing_date.isoformat(),
            e.application_id or "",
            ", ".join(f"{k}={v}" for k, v in e.detail.items()),
        )
    console.print(table)
    return 0
