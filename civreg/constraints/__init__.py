"""Declarative constraint engine (rules as data, predicates as code)."""

from .engine import ConstraintEngine, ValidationReport, affected_groups
from .load import load_core_ruleset, load_ruleset
from .schema import RuleDef, RulesetDef, Violation

__all__ = [
    "ConstraintEngine",
    "ValidationReport",
    "affected_groups",
    "load_core_ruleset",
    "load_ruleset",
    "RuleDef",
    "RulesetDef",
    "Violation",
]
