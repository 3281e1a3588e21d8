from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal


Phase = Literal["immediate", "deferred"]
Severity = Literal["error", "warning", "info"]

PHASES = ("immediate", "deferred")
DEFERRED_SCOPES = ("household", "resident")


@dataclass(frozen=True)
class Predicate:
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RuleDef:
    """
    One invariant check.

    Immediate rules apply to each mutated record whose collection equals
    ``scope``. Deferred rules apply once per affected household or resident
    (``scope``) against the tentative post-mutation state.
    """

    id: str
    scope: str
    phase: Phase = "immediate"
    severity: Severity = "error"
    invariant: str | None = None
    predicate: Predicate = field(default_factory=lambda: Predicate(name="noop"))
    message: str | None = None
    rationale: str | None = None


@dataclass(frozen=True)
class RulesetDef:
    ruleset_id: str
    version: int
    description: str | None = None
    rules: list[RuleDef] = field(default_factory=list)


@dataclass(frozen=True)
class Violation:
    """A failed check, naming the invariant, rule and entity involved."""

    invariant: str
    rule: str
    collection: str
    entity_id: str
    message: str
    severity: Severity = "error"

    def to_dict(self) -> dict[str, Any]:
        return {
            "invariant": self.invariant,
            "rule": self.rule,
            "collection": self.collection,
            "entity_id": self.entity_id,
            "message": self.message,
            "severity": self.severity,
        }
