"""Shared payload builders and submission helpers for the registry tests."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any

from civreg.service import Registry, SubmitResult

ADDRESS = {"prefecture_code": "13", "municipality_code": "13101", "town": "Chiyoda", "block": "1", "lot": "2"}
OTHER_ADDRESS = {"prefecture_code": "13", "municipality_code": "13101", "town": "Kanda", "block": "3", "lot": "4"}
THIRD_ADDRESS = {"prefecture_code": "13", "municipality_code": "13102", "town": "Nihonbashi", "block": "5"}


class FixedClock:
    """Processing-date clock the tests move by hand."""

    def __init__(self, today: date):
        self.today = today

    def __call__(self) -> date:
        return self.today


def person(n: int, *, name: str | None = None, birth_date: str = "1980-01-01", gender: str = "1") -> dict[str, Any]:
    """Resident fields with identifiers derived from ``n``."""
    return {
        "personal_number": f"{n:012d}",
        "registry_code": f"{n:011d}",
        "name": name or f"Resident {n}",
        "birth_date": birth_date,
        "gender": gender,
    }


def submit(
    registry: Registry,
    clock: FixedClock,
    event_type: str,
    day: str,
    payload: dict[str, Any] | None = None,
    **kwargs: Any,
) -> SubmitResult:
    """Submit with the processing date set to the effective date."""
    clock.today = date.fromisoformat(day)
    return registry.submit_event(event_type, day, payload or {}, **kwargs)


def must(result: SubmitResult) -> SubmitResult:
    assert result.success, result.error
    return result


@dataclass
class Family:
    head: str
    child: str
    household: str
