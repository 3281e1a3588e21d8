from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from itertools import combinations
from typing import Any, Callable, Protocol

from ..records import GUARDIANSHIP, Household, Membership, Period, Record, RegistrationStatus, Resident, Role
from ..store import Mutation
from .schema import RuleDef, Violation


class RecordView(Protocol):
    def get(self, collection: str, record_id: str) -> Record | None: ...

    def scan(self, collection: str, where: Callable[[Record], bool] | None = None, **equals: Any) -> list[Record]: ...


@dataclass(frozen=True)
class ConstraintContext:
    view: RecordView
    notification_window_days: int = 14


ImmediateFn = Callable[[Mutation, RuleDef, ConstraintContext], list[Violation]]
DeferredFn = Callable[[str, RuleDef, ConstraintContext], list[Violation]]


def _violation(rule: RuleDef, collection: str, entity_id: str, detail: str | None = None) -> Violation:
    msg = rule.message or "invariant not satisfied"
    if detail:
        msg = f"{msg} ({detail})"
    return Violation(
        invariant=rule.invariant or "unclassified",
        rule=rule.id,
        collection=collection,
        entity_id=entity_id,
        message=msg,
        severity=rule.severity,
    )


def _field(record: Any, path: str) -> Any:
    value = record
    for part in path.split("."):
        value = getattr(value, part, None)
        if value is None:
            return None
    return value


def _fmt(day: date | None) -> str:
    return day.isoformat() if day else "open"


# -----------------------------------------------------------------------------
# Immediate predicates (one mutated record)
# -----------------------------------------------------------------------------


def predicate_digits(m: Mutation, rule: RuleDef, ctx: ConstraintContext) -> list[Violation]:
    field_name = str(rule.predicate.params.get("field", ""))
    length = int(rule.predicate.params.get("length", 0))
    value = _field(m.after, field_name)
    if isinstance(value, str) and value.isascii() and value.isdigit() and (not length or len(value) == length):
        return []
    return [_violation(rule, m.collection, m.record_id, f"{field_name}={value!r}")]


def predicate_one_of(m: Mutation, rule: RuleDef, ctx: ConstraintContext) -> list[Violation]:
    field_name = str(rule.predicate.params.get("field", ""))
    values = rule.predicate.params.get("values", [])
    allowed = {str(v) for v in values} if isinstance(values, list) else set()
    value = _field(m.after, field_name)
    if str(value) in allowed:
        return []
    return [_violation(rule, m.collection, m.record_id, f"{field_name}={value!r}")]


def predicate_required(m: Mutation, rule: RuleDef, ctx: ConstraintContext) -> list[Violation]:
    names = rule.predicate.params.get("fields", [])
    if not isinstance(names, list):
        return []
    missing = [n for n in names if not str(_field(m.after, n) or "").strip()]
    if not missing:
        return []
    return [_violation(rule, m.collection, m.record_id, ", ".join(missing))]


def predicate_period_ordered(m: Mutation, rule: RuleDef, ctx: ConstraintContext) -> list[Violation]:
    field_name = str(rule.predicate.params.get("field", "period"))
    period = _field(m.after, field_name)
    if not isinstance(period, Period) or period.is_ordered:
        return []
    return [_violation(rule, m.collection, m.record_id, f"{_fmt(period.start)} > {_fmt(period.end)}")]


def predicate_date_order(m: Mutation, rule: RuleDef, ctx: ConstraintContext) -> list[Violation]:
    earlier_name = str(rule.predicate.params.get("earlier", ""))
    later_name = str(rule.predicate.params.get("later", ""))
    strict = bool(rule.predicate.params.get("strict", False))
    earlier = _field(m.after, earlier_name)
    later = _field(m.after, later_name)
    if earlier is None or later is None:
        return []
    if later > earlier or (not strict and later == earlier):
        return []
    return [_violation(rule, m.collection, m.record_id, f"{earlier_name}={_fmt(earlier)}, {later_name}={_fmt(later)}")]


def predicate_notification_window(m: Mutation, rule: RuleDef, ctx: ConstraintContext) -> list[Violation]:
    days = int(rule.predicate.params.get("window_days", ctx.notification_window_days))
    change = getattr(m.after, "change_date", None)
    notified = getattr(m.after, "notification_date", None)
    if change is None or notified is None:
        return []
    if notified <= change + timedelta(days=days):
        return []
    return [_violation(rule, m.collection, m.record_id, f"notified {_fmt(notified)}, changed {_fmt(change)}, window {days} days")]


def predicate_immutable(m: Mutation, rule: RuleDef, ctx: ConstraintContext) -> list[Violation]:
    if m.before is None:
        return []
    names = rule.predicate.params.get("fields", [])
    if not isinstance(names, list):
        return []
    if "*" in names:
        return [] if m.before == m.after else [_violation(rule, m.collection, m.record_id)]
    changed = [n for n in names if _field(m.before, n) != _field(m.after, n)]
    if not changed:
        return []
    return [_violation(rule, m.collection, m.record_id, ", ".join(changed))]


# -----------------------------------------------------------------------------
# Deferred predicates (whole household / whole resident)
# -----------------------------------------------------------------------------


def _memberships(ctx: ConstraintContext, **equals: Any) -> list[Membership]:
    return [m for m in ctx.view.scan(Membership.collection, **equals) if isinstance(m, Membership)]


def _head_gap(period: Period, heads: list[Membership]) -> date | None:
    """First date within ``period`` not covered by any head, or None."""
    cursor = period.start
    for m in heads:
        if period.end is not None and cursor >= period.end:
            return None
        if m.period.start > cursor:
            return cursor
        if m.period.end is None:
            return None
        cursor = max(cursor, m.period.end)
    if period.end is not None and cursor >= period.end:
        return None
    return cursor


def predicate_single_head(household_id: str, rule: RuleDef, ctx: ConstraintContext) -> list[Violation]:
    household = ctx.view.get(Household.collection, household_id)
    if not isinstance(household, Household):
        return []

    heads = [m for m in _memberships(ctx, household_id=household_id) if m.role == Role.HEAD and not m.period.is_empty]
    heads.sort(key=lambda m: (m.period.start, m.id))

    results: list[Violation] = []
    for a, b in combinations(heads, 2):
        if a.period.overlaps(b.period):
            later = max(a.period.start, b.period.start)
            results.append(
                _violation(
                    rule,
                    Household.collection,
                    household_id,
                    f"heads {a.resident_id} and {b.resident_id} overlap from {_fmt(later)}",
                )
            )

    if not household.period.is_empty:
        gap = _head_gap(household.period, heads)
        if gap is not None:
            results.append(_violation(rule, Household.collection, household_id, f"no head from {_fmt(gap)}"))
    return results


def predicate_memberships_within_household(household_id: str, rule: RuleDef, ctx: ConstraintContext) -> list[Violation]:
    household = ctx.view.get(Household.collection, household_id)
    if not isinstance(household, Household):
        return []
    results: list[Violation] = []
    for m in _memberships(ctx, household_id=household_id):
        if not household.period.contains(m.period):
            results.append(
                _violation(
                    rule,
                    Membership.collection,
                    m.id,
                    f"{m.resident_id} [{_fmt(m.period.start)}, {_fmt(m.period.end)}) "
                    f"vs household [{_fmt(household.period.start)}, {_fmt(household.period.end)})",
                )
            )
    return results


def _registrations(ctx: ConstraintContext, collection: str, resident_id: str) -> list[Any]:
    return [r for r in ctx.view.scan(collection, resident_id=resident_id) if hasattr(r, "active_period")]


def predicate_single_active(resident_id: str, rule: RuleDef, ctx: ConstraintContext) -> list[Violation]:
    collection = str(rule.predicate.params.get("collection", ""))
    records = _registrations(ctx, collection, resident_id)

    results: list[Violation] = []
    active_now = [r.id for r in records if r.status == RegistrationStatus.ACTIVE]
    if len(active_now) > 1:
        results.append(_violation(rule, Resident.collection, resident_id, f"active: {', '.join(sorted(active_now))}"))
        return results

    for a, b in combinations(records, 2):
        pa, pb = a.active_period(), b.active_period()
        if pa.overlaps(pb):
            results.append(
                _violation(
                    rule,
                    Resident.collection,
                    resident_id,
                    f"{a.id} and {b.id} both active on {_fmt(max(pa.start, pb.start))}",
                )
            )
    return results


def predicate_active_within_residency(resident_id: str, rule: RuleDef, ctx: ConstraintContext) -> list[Violation]:
    resident = ctx.view.get(Resident.collection, resident_id)
    if not isinstance(resident, Resident):
        return []
    collection = str(rule.predicate.params.get("collection", ""))

    results: list[Violation] = []
    for r in _registrations(ctx, collection, resident_id):
        period = r.active_period()
        if period.is_empty or period.start < resident.residency.start:
            # Belongs to an earlier residency or never counted as active.
            continue
        if not resident.residency.contains(period):
            results.append(_violation(rule, collection, r.id, f"active until {_fmt(period.end)}"))
    return results


def predicate_single_household(resident_id: str, rule: RuleDef, ctx: ConstraintContext) -> list[Violation]:
    memberships = [m for m in _memberships(ctx, resident_id=resident_id) if not m.period.is_empty]
    results: list[Violation] = []
    for a, b in combinations(memberships, 2):
        if a.period.overlaps(b.period):
            results.append(
                _violation(
                    rule,
                    Resident.collection,
                    resident_id,
                    f"{a.household_id} and {b.household_id} from {_fmt(max(a.period.start, b.period.start))}",
                )
            )
    return results


def predicate_memberships_within_residency(resident_id: str, rule: RuleDef, ctx: ConstraintContext) -> list[Violation]:
    resident = ctx.view.get(Resident.collection, resident_id)
    if not isinstance(resident, Resident):
        return []
    results: list[Violation] = []
    for m in _memberships(ctx, resident_id=resident_id):
        if m.period.start < resident.residency.start and not m.period.is_open:
            # Belongs to an earlier residency.
            continue
        if not resident.residency.contains(m.period):
            results.append(
                _violation(
                    rule,
                    Membership.collection,
                    m.id,
                    f"[{_fmt(m.period.start)}, {_fmt(m.period.end)}) vs residency "
                    f"[{_fmt(resident.residency.start)}, {_fmt(resident.residency.end)})",
                )
            )
    return results


def predicate_household_reference(resident_id: str, rule: RuleDef, ctx: ConstraintContext) -> list[Violation]:
    resident = ctx.view.get(Resident.collection, resident_id)
    if not isinstance(resident, Resident) or not resident.is_active:
        return []
    open_memberships = [m for m in _memberships(ctx, resident_id=resident_id) if m.period.is_open]
    if len(open_memberships) != 1:
        return [_violation(rule, Resident.collection, resident_id, f"{len(open_memberships)} open memberships")]
    if open_memberships[0].household_id != resident.household_id:
        return [
            _violation(
                rule,
                Resident.collection,
                resident_id,
                f"references {resident.household_id}, member of {open_memberships[0].household_id}",
            )
        ]
    return []


def predicate_support_flags(resident_id: str, rule: RuleDef, ctx: ConstraintContext) -> list[Violation]:
    resident = ctx.view.get(Resident.collection, resident_id)
    if not isinstance(resident, Resident):
        return []
    open_measures = [m for m in ctx.view.scan("support_measure", resident_id=resident_id) if m.period.is_open]  # type: ignore[attr-defined]
    protective = bool(open_measures)
    guardianship = any(m.measure_type == GUARDIANSHIP for m in open_measures)  # type: ignore[attr-defined]
    if resident.protective_measure == protective and resident.guardianship == guardianship:
        return []
    return [
        _violation(
            rule,
            Resident.collection,
            resident_id,
            f"flags protective={resident.protective_measure}, guardianship={resident.guardianship}; "
            f"open measures imply {protective}, {guardianship}",
        )
    ]


IMMEDIATE_PREDICATES: dict[str, ImmediateFn] = {
    "digits": predicate_digits,
    "one_of": predicate_one_of,
    "required": predicate_required,
    "period_ordered": predicate_period_ordered,
    "date_order": predicate_date_order,
    "notification_window": predicate_notification_window,
    "immutable": predicate_immutable,
}

DEFERRED_PREDICATES: dict[str, DeferredFn] = {
    "single_head": predicate_single_head,
    "memberships_within_household": predicate_memberships_within_household,
    "single_active": predicate_single_active,
    "active_within_residency": predicate_active_within_residency,
    "single_household": predicate_single_household,
    "memberships_within_residency": predicate_memberships_within_residency,
    "household_reference": predicate_household_reference,
    "support_flags": predicate_support_flags,
}
