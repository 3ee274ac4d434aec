"""
Health Scoring - Threshold Evaluator.

============================================================
RESPONSIBILITY
============================================================
Turns a raw measurement plus an ordered rule set into a
bounded category score and the rule that decided it.

- Rules are partitioned by group, evaluated in declared order
- ScoreOverride: first match wins and ends evaluation
- Penalty: cumulative, subtracted from the baseline, floored at 0
- Cap: bounds the computed score from above (minimum of caps)
- No match: the baseline score (100 unless configured)

============================================================
DESIGN PRINCIPLES
============================================================
- Pure: no I/O, no clock, no hidden state
- Deterministic: same input, same output
- Output is always clamped to [0, 100]

============================================================
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Union

from .models import RuleAction, ThresholdRule


MIN_SCORE = 0.0
MAX_SCORE = 100.0

# A scalar applies to every group; a mapping names the value per group.
Measurement = Union[float, int, Mapping[str, float]]


# ============================================================
# RESULT
# ============================================================

@dataclass(frozen=True)
class EvaluationResult:
    """Outcome of evaluating one measurement."""

    score: float
    fired_rule: Optional[ThresholdRule] = None
    matched_rules: List[ThresholdRule] = field(default_factory=list)
    overridden: bool = False

    @property
    def fired_rule_name(self) -> Optional[str]:
        return self.fired_rule.name if self.fired_rule else None

    def notes(self) -> str:
        """Diagnostic text for the category score row."""
        if not self.matched_rules:
            return "No threshold breached"
        return "; ".join(rule.describe() for rule in self.matched_rules)


# ============================================================
# HELPERS
# ============================================================

def clamp_score(value: float) -> float:
    """Clamp to [0, 100] and round to 2 decimals."""
    return round(max(MIN_SCORE, min(MAX_SCORE, float(value))), 2)


def group_rules(rules: Iterable[ThresholdRule]) -> Dict[str, List[ThresholdRule]]:
    """
    Partition active rules by group.

    Groups keep first-appearance order; rules inside a group are
    sorted by evaluation_order (stable for equal orders).
    """
    groups: Dict[str, List[ThresholdRule]] = {}
    for rule in rules:
        if not rule.is_active:
            continue
        groups.setdefault(rule.group, []).append(rule)

    for group in groups:
        groups[group] = sorted(groups[group], key=lambda r: r.evaluation_order)

    return groups


def _value_for(measurement: Measurement, group: str) -> Optional[float]:
    if isinstance(measurement, Mapping):
        value = measurement.get(group)
        return None if value is None else float(value)
    return float(measurement)


# ============================================================
# EVALUATOR
# ============================================================

def evaluate_thresholds(
    measurement: Measurement,
    rules: Iterable[ThresholdRule],
    baseline: float = MAX_SCORE,
) -> EvaluationResult:
    """
    Evaluate a measurement against an ordered rule set.

    Args:
        measurement: Scalar value, or mapping of group name to value.
            Groups missing from the mapping are skipped.
        rules: Threshold rules of one collector
        baseline: Starting score before penalties

    Returns:
        EvaluationResult with bounded score and deciding rule
    """
    penalty_total = 0.0
    cap_value: Optional[float] = None
    cap_rule: Optional[ThresholdRule] = None
    largest_penalty: Optional[ThresholdRule] = None
    matched: List[ThresholdRule] = []

    for group, group_rules_ in group_rules(rules).items():
        value = _value_for(measurement, group)
        if value is None:
            continue

        for rule in group_rules_:
            if not rule.matches(value):
                continue

            if rule.action == RuleAction.SCORE_OVERRIDE:
                return EvaluationResult(
                    score=clamp_score(rule.result_value),
                    fired_rule=rule,
                    matched_rules=[rule],
                    overridden=True,
                )

            matched.append(rule)

            if rule.action == RuleAction.PENALTY:
                penalty_total += rule.result_value
                if largest_penalty is None or rule.result_value > largest_penalty.result_value:
                    largest_penalty = rule
            elif rule.action == RuleAction.CAP:
                if cap_value is None or rule.result_value < cap_value:
                    cap_value = rule.result_value
                    cap_rule = rule

    computed = max(MIN_SCORE, baseline - penalty_total)
    fired = largest_penalty

    if cap_value is not None and cap_value < computed:
        computed = cap_value
        fired = cap_rule
    elif fired is None:
        fired = cap_rule

    return EvaluationResult(
        score=clamp_score(computed),
        fired_rule=fired,
        matched_rules=matched,
    )


__all__ = [
    "MIN_SCORE",
    "MAX_SCORE",
    "Measurement",
    "EvaluationResult",
    "clamp_score",
    "group_rules",
    "evaluate_thresholds",
]
