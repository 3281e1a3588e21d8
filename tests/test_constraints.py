from __future__ import annotations

from dataclasses import replace
from datetime import date
from pathlib import Path

import pytest

from civreg.constraints import ConstraintEngine, load_core_ruleset, load_ruleset
from civreg.constraints.load import parse_ruleset
from civreg.records import (
    Household,
    IdentityCard,
    LifeEventRecord,
    Membership,
    Period,
    RegistrationStatus,
    Resident,
    Role,
    SealRegistration,
)
from civreg.store import RecordStore


def _write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _resident(rid: str = "res_1", **kwargs) -> Resident:
    fields = dict(
        id=rid,
        personal_number="000000000001",
        registry_code="00000000001",
        name="Sato Taro",
        birth_date=date(1980, 1, 1),
        gender="1",
        residency=Period(date(2020, 4, 1)),
        household_id="hh_1",
    )
    fields.update(kwargs)
    return Resident(**fields)


@pytest.fixture
def engine() -> ConstraintEngine:
    return ConstraintEngine(load_core_ruleset())


@pytest.fixture
def store() -> RecordStore:
    """Household hh_1 with res_1 as head since 2020-04-01."""
    store = RecordStore()
    unit = store.begin()
    day = date(2020, 4, 1)
    unit.put(_resident(), valid_from=day)
    unit.put(Household("hh_1", "H-0001", None, Period(day)), valid_from=day)
    unit.put(Membership("mem_1", "res_1", "hh_1", Role.HEAD, Period(day)), valid_from=day)
    store.commit_unit(unit)
    return store


def test_core_ruleset_loads_and_covers_invariants() -> None:
    ruleset = load_core_ruleset()
    assert ruleset.ruleset_id == "civreg/core"
    invariants = {r.invariant for r in ruleset.rules}
    assert {"single-head", "notification-window", "single-seal", "single-card"} <= invariants
    assert all(r.phase in ("immediate", "deferred") for r in ruleset.rules)


def test_parse_ruleset_rejects_duplicate_ids() -> None:
    with pytest.raises(ValueError, match="duplicate"):
        parse_ruleset(
            {
                "ruleset_id": "t",
                "version": 1,
                "rules": [{"id": "a", "scope": "resident"}, {"id": "a", "scope": "resident"}],
            }
        )


def test_parse_ruleset_rejects_deferred_record_scope() -> None:
    with pytest.raises(ValueError, match="deferred scope"):
        parse_ruleset({"ruleset_id": "t", "version": 1, "rules": [{"id": "a", "scope": "membership", "phase": "deferred"}]})


def test_custom_ruleset_from_toml(tmp_path: Path) -> None:
    path = tmp_path / "rules.toml"
    _write(
        path,
        """
ruleset_id = "local/test"
version = 2

[[rules]]
id = "resident.short_name"
invariant = "format"
scope = "resident"
severity = "warning"
predicate = { name = "one_of", params = { field = "name", values = ["Sato Taro"] } }
message = "unexpected name"
""",
    )
    ruleset = load_ruleset(path)
    engine = ConstraintEngine(ruleset)
    unit = RecordStore().begin()
    unit.put(_resident(name="Someone Else"), valid_from=date(2020, 4, 1))

    report = engine.validate(unit)
    assert report.ok
    assert [w.rule for w in report.warnings] == ["resident.short_name"]


def test_immediate_format_rules(engine: ConstraintEngine) -> None:
    unit = RecordStore().begin()
    unit.put(_resident(personal_number="12345", gender="7"), valid_from=date(2020, 4, 1))
    report = engine.check_immediate(unit.mutations(), unit)
    rules = {v.rule for v in report.errors}
    assert "resident.personal_number_format" in rules
    assert "resident.gender_code" in rules


def test_notification_window(engine: ConstraintEngine) -> None:
    unit = RecordStore().begin()
    unit.put(
        LifeEventRecord(
            id="evt_1",
            event_type="move",
            resident_id="res_1",
            change_date=date(2024, 3, 1),
            notification_date=date(2024, 3, 16),
            processing_date=date(2024, 3, 16),
        ),
        valid_from=date(2024, 3, 1),
    )
    report = engine.check_immediate(unit.mutations(), unit)
    assert [v.invariant for v in report.errors] == ["notification-window"]


def test_notification_on_last_day_of_window(engine: ConstraintEngine) -> None:
    unit = RecordStore().begin()
    unit.put(
        LifeEventRecord(
            id="evt_1",
            event_type="move",
            resident_id="res_1",
            change_date=date(2024, 3, 1),
            notification_date=date(2024, 3, 15),
            processing_date=date(2024, 3, 20),
        ),
        valid_from=date(2024, 3, 1),
    )
    assert engine.check_immediate(unit.mutations(), unit).ok


def test_committed_life_event_cannot_be_rewritten(engine: ConstraintEngine) -> None:
    store = RecordStore()
    event = LifeEventRecord(
        id="evt_1",
        event_type="move",
        resident_id="res_1",
        change_date=date(2024, 3, 1),
        notification_date=date(2024, 3, 5),
        processing_date=date(2024, 3, 5),
    )
    store.put(event, valid_from=event.change_date)

    unit = store.begin()
    unit.put(replace(event, prior_address_id="adr_1"), valid_from=event.change_date)
    report = engine.check_immediate(unit.mutations(), unit)

    assert [(v.invariant, v.rule, v.entity_id) for v in report.errors] == [
        ("append-only", "life_event.append_only", "evt_1")
    ]

    # Writing back the committed version unchanged is not a rewrite.
    unit = store.begin()
    unit.put(event, valid_from=event.change_date)
    assert engine.check_immediate(unit.mutations(), unit).ok


def test_head_retirement_without_successor_breaks_single_head(engine: ConstraintEngine, store: RecordStore) -> None:
    unit = store.begin()
    unit.put(_resident("res_2", personal_number="000000000002", registry_code="00000000002"), valid_from=date(2021, 1, 1))
    unit.put(Membership("mem_2", "res_2", "hh_1", Role.CHILD, Period(date(2021, 1, 1))), valid_from=date(2021, 1, 1))
    unit.put(Membership("mem_1", "res_1", "hh_1", Role.HEAD, Period(date(2020, 4, 1), date(2022, 1, 1))), valid_from=date(2022, 1, 1))

    report = engine.validate(unit)
    assert "single-head" in report.by_invariant()


def test_retire_and_promote_in_one_unit_is_accepted(engine: ConstraintEngine, store: RecordStore) -> None:
    unit = store.begin()
    day = date(2022, 1, 1)
    unit.put(Membership("mem_1", "res_1", "hh_1", Role.HEAD, Period(date(2020, 4, 1), day)), valid_from=day)
    unit.put(Membership("mem_1b", "res_1", "hh_1", Role.OTHER, Period(day)), valid_from=day)
    unit.put(_resident("res_2", personal_number="000000000002", registry_code="00000000002"), valid_from=day)
    unit.put(Membership("mem_2", "res_2", "hh_1", Role.HEAD, Period(day)), valid_from=day)

    report = engine.validate(unit)
    assert "single-head" not in report.by_invariant(), report.violations


def test_two_active_seals_break_single_active(engine: ConstraintEngine, store: RecordStore) -> None:
    unit = store.begin()
    unit.put(SealRegistration("seal_1", "res_1", "S100", date(2021, 1, 1)), valid_from=date(2021, 1, 1))
    unit.put(SealRegistration("seal_2", "res_1", "S200", date(2022, 1, 1)), valid_from=date(2022, 1, 1))
    report = engine.check_deferred(unit, residents=["res_1"])
    assert "single-seal" in report.by_invariant()


def test_overlapping_cards_break_single_active(engine: ConstraintEngine, store: RecordStore) -> None:
    unit = store.begin()
    unit.put(
        IdentityCard("card_1", "res_1", "C1", date(2021, 1, 1), date(2031, 1, 1), status=RegistrationStatus.CANCELLED, cancellation_date=date(2023, 1, 1)),
        valid_from=date(2021, 1, 1),
    )
    unit.put(IdentityCard("card_2", "res_1", "C2", date(2022, 6, 1), date(2032, 6, 1)), valid_from=date(2022, 6, 1))
    report = engine.check_deferred(unit, residents=["res_1"])
    assert "single-card" in report.by_invariant()


def test_audit_of_consistent_store_is_clean(engine: ConstraintEngine, store: RecordStore) -> None:
    report = engine.audit(store.snapshot())
    assert report.ok, report.violations
    assert report.rules_checked > 0
