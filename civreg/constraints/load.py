from __future__ import annotations

from pathlib import Path
from typing import Any

from .schema import DEFERRED_SCOPES, PHASES, Predicate, RuleDef, RulesetDef

CORE_RULESET_PATH = Path(__file__).parent / "core.toml"


def _coerce_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _optional_str(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def parse_ruleset(data: dict[str, Any]) -> RulesetDef:
    ruleset_id = str(data.get("ruleset_id", "")).strip()
    if not ruleset_id:
        raise ValueError("ruleset_id is required")

    version = int(data.get("version", 0))
    if version <= 0:
        raise ValueError("version must be a positive integer")

    defaults = _coerce_dict(data.get("defaults"))
    default_phase = str(defaults.get("phase", "immediate")).strip() or "immediate"
    default_severity = str(defaults.get("severity", "error")).strip() or "error"

    rules: list[RuleDef] = []
    seen: set[str] = set()
    for raw in data.get("rules", []):
        if not isinstance(raw, dict):
            continue

        rule_id = str(raw.get("id", "")).strip()
        if not rule_id:
            continue
        if rule_id in seen:
            raise ValueError(f"duplicate rule id: {rule_id}")
        seen.add(rule_id)

        scope = str(raw.get("scope", "")).strip()
        if not scope:
            raise ValueError(f"rule {rule_id}: scope is required")

        phase = str(raw.get("phase", default_phase)).strip() or default_phase
        if phase not in PHASES:
            raise ValueError(f"rule {rule_id}: unknown phase {phase!r}")
        if phase == "deferred" and scope not in DEFERRED_SCOPES:
            raise ValueError(f"rule {rule_id}: deferred scope must be one of {', '.join(DEFERRED_SCOPES)}")

        severity = str(raw.get("severity", default_severity)).strip() or default_severity

        pred_raw = _coerce_dict(raw.get("predicate"))
        pred_name = str(pred_raw.get("name", "noop")).strip() or "noop"
        pred_params = _coerce_dict(pred_raw.get("params"))

        rules.append(
            RuleDef(
                id=rule_id,
                scope=scope,
                phase=phase,  # type: ignore[arg-type]
                severity=severity,  # type: ignore[arg-type]
                invariant=_optional_str(raw.get("invariant")),
                predicate=Predicate(name=pred_name, params=pred_params),
                message=_optional_str(raw.get("message")),
                rationale=_optional_str(raw.get("rationale")),
            )
        )

    return RulesetDef(
        ruleset_id=ruleset_id,
        version=version,
        description=_optional_str(data.get("description")),
        rules=rules,
    )


def load_ruleset(path: Path) -> RulesetDef:
    """
    Load a ruleset from TOML.

    The schema is intentionally small: rules are data, evaluation is code.
    """
    import tomllib

    return parse_ruleset(tomllib.loads(path.read_text(encoding="utf-8")))


def load_core_ruleset() -> RulesetDef:
    """Load the invariant catalogue shipped with the package."""
    return load_ruleset(CORE_RULESET_PATH)
