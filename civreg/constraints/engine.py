from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable

from ..records import Household, Membership, Resident
from ..store import Mutation, Snapshot, UnitOfWork
from .predicates import DEFERRED_PREDICATES, IMMEDIATE_PREDICATES, ConstraintContext, RecordView
from .schema import RuleDef, RulesetDef, Violation

logger = logging.getLogger(__name__)


@dataclass
class ValidationReport:
    """Outcome of one validation pass. ``ok`` when no error-severity violation was found."""

    violations: list[Violation] = field(default_factory=list)
    rules_checked: int = 0

    @property
    def errors(self) -> list[Violation]:
        return [v for v in self.violations if v.severity == "error"]

    @property
    def warnings(self) -> list[Violation]:
        return [v for v in self.violations if v.severity == "warning"]

    @property
    def ok(self) -> bool:
        return not self.errors

    def by_invariant(self) -> dict[str, list[Violation]]:
        grouped: dict[str, list[Violation]] = defaultdict(list)
        for v in self.violations:
            grouped[v.invariant].append(v)
        return dict(grouped)

    def extend(self, other: ValidationReport) -> None:
        self.violations.extend(other.violations)
        self.rules_checked += other.rules_checked


def affected_groups(mutations: Iterable[Mutation]) -> tuple[set[str], set[str]]:
    """Households and residents whose deferred invariants a mutation set can change."""
    households: set[str] = set()
    residents: set[str] = set()
    for m in mutations:
        if m.collection == Household.collection:
            households.add(m.record_id)
        elif m.collection == Resident.collection:
            residents.add(m.record_id)
        for record in (m.before, m.after):
            if record is None:
                continue
            household_id = getattr(record, "household_id", None)
            resident_id = getattr(record, "resident_id", None)
            if household_id and m.collection == Membership.collection:
                households.add(household_id)
            if resident_id:
                residents.add(resident_id)
    return households, residents


class ConstraintEngine:
    """
    Evaluate a ruleset against a mutation set.

    Immediate rules look at one mutated record at a time. Deferred rules look
    at the whole related set (a household's memberships, a resident's
    registrations) in the tentative post-mutation state, once per unit of
    work, so intermediate steps of a multi-step change are never judged.
    """

    def __init__(self, ruleset: RulesetDef, *, notification_window_days: int = 14):
        self.ruleset = ruleset
        self.notification_window_days = notification_window_days
        for rule in ruleset.rules:
            table = IMMEDIATE_PREDICATES if rule.phase == "immediate" else DEFERRED_PREDICATES
            if rule.predicate.name not in table:
                logger.warning("Rule %s uses unknown %s predicate %r", rule.id, rule.phase, rule.predicate.name)

    def _context(self, view: RecordView) -> ConstraintContext:
        return ConstraintContext(view=view, notification_window_days=self.notification_window_days)

    def _rules(self, phase: str) -> list[RuleDef]:
        return [r for r in self.ruleset.rules if r.phase == phase]

    def check_immediate(self, mutations: Iterable[Mutation], view: RecordView) -> ValidationReport:
        ctx = self._context(view)
        report = ValidationReport()
        rules = self._rules("immediate")
        for m in mutations:
            for rule in rules:
                if rule.scope != m.collection:
                    continue
                fn = IMMEDIATE_PREDICATES.get(rule.predicate.name)
                if fn is None:
                    continue
                report.rules_checked += 1
                report.violations.extend(fn(m, rule, ctx))
        return report

    def check_deferred(
        self,
        view: RecordView,
        *,
        households: Iterable[str] = (),
        residents: Iterable[str] = (),
        invariant_filter: str | None = None,
    ) -> ValidationReport:
        ctx = self._context(view)
        report = ValidationReport()
        groups = {"household": sorted(set(households)), "resident": sorted(set(residents))}
        for rule in self._rules("deferred"):
            if invariant_filter and rule.invariant != invariant_filter:
                continue
            fn = DEFERRED_PREDICATES.get(rule.predicate.name)
            if fn is None:
                continue
            for entity_id in groups.get(rule.scope, []):
                report.rules_checked += 1
                report.violations.extend(fn(entity_id, rule, ctx))
        return report

    def validate(self, unit: UnitOfWork) -> ValidationReport:
        """Immediate checks on every mutation of the unit, then deferred checks on the affected groups."""
        mutations = unit.mutations()
        report = self.check_immediate(mutations, unit)
        households, residents = affected_groups(mutations)
        report.extend(self.check_deferred(unit, households=households, residents=residents))
        logger.debug(
            "Validated unit %s: %d rules, %d violations",
            unit.unit_id,
            report.rules_checked,
            len(report.violations),
        )
        return report

    def audit(self, snapshot: Snapshot, *, invariant_filter: str | None = None) -> ValidationReport:
        """Run every deferred rule over every household and resident in a snapshot."""
        households = [h.id for h in snapshot.scan(Household.collection)]  # type: ignore[attr-defined]
        residents = [r.id for r in snapshot.scan(Resident.collection)]  # type: ignore[attr-defined]
        return self.check_deferred(
            snapshot,
            households=households,
            residents=residents,
            invariant_filter=invariant_filter,
        )
