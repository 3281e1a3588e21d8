"""Pytest configuration and fixtures."""

from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest
from helpers import ADDRESS, Family, FixedClock, must, person, submit

from civreg.service import Registry


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(date(2024, 1, 1))


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "registry"


@pytest.fixture
def registry(data_dir: Path, clock: FixedClock) -> Registry:
    """Registry persisted under tmp_path."""
    return Registry(data_dir, clock=clock)


@pytest.fixture
def family(registry: Registry, clock: FixedClock) -> Family:
    """Household H-0001: head (resident 1) since 2020-04-01, child (resident 2) since 2020-05-01."""
    must(
        submit(
            registry,
            clock,
            "transfer_in",
            "2020-04-01",
            {
                "resident": person(1, name="Sato Taro"),
                "address": ADDRESS,
                "new_household": {"household_number": "H-0001"},
            },
        )
    )
    head = registry.resolve(personal_number=person(1)["personal_number"])
    household = registry.current_resident(head).household_id
    assert household is not None

    must(
        submit(
            registry,
            clock,
            "transfer_in",
            "2020-05-01",
            {
                "resident": person(2, name="Sato Hanako", birth_date="2010-05-05", gender="2"),
                "address": ADDRESS,
                "household_id": household,
                "role": "child",
            },
        )
    )
    child = registry.resolve(personal_number=person(2)["personal_number"])
    return Family(head=head, child=child, household=household)
