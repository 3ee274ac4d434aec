"""
Health Scoring - Transition Tracking & Summaries.

============================================================
RESPONSIBILITY
============================================================
- Detect status bucket changes between consolidation cycles
- Pick a best-effort cause for each transition
- Summarize the fleet and recent transitions for dashboards

A transition is emitted if and only if the new bucket differs
from the immediately preceding final score of the instance.
The first consolidation of an instance emits nothing.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .models import (
    CategoryContribution,
    CollectorKind,
    FinalHealthScore,
    HealthStatus,
    TransitionEvent,
)


# ============================================================
# DETECTION
# ============================================================

def select_cause(contributions: List[CategoryContribution]) -> Optional[str]:
    """
    Category with the lowest weighted contribution.

    Ties are broken by lower score, then by collector
    declaration order.
    """
    if not contributions:
        return None
    weakest = min(
        contributions,
        key=lambda c: (c.contribution, c.score, CollectorKind.order_of(c.collector_name)),
    )
    return weakest.collector_name


def detect_transition(
    previous: Optional[FinalHealthScore],
    current: FinalHealthScore,
    detected_at: Optional[datetime] = None,
) -> Optional[TransitionEvent]:
    """Build a TransitionEvent when the bucket changed, else None."""
    if previous is None or previous.status == current.status:
        return None

    return TransitionEvent(
        instance_name=current.instance_name,
        previous_status=previous.status,
        new_status=current.status,
        previous_score=previous.final_score,
        new_score=current.final_score,
        cause=select_cause(current.contributions),
        detected_at=detected_at or current.computed_at,
    )


# ============================================================
# FLEET SUMMARY
# ============================================================

@dataclass
class FleetSummary:
    """Point-in-time view of the fleet's latest final scores."""

    total_instances: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    average_score: Optional[float] = None
    worst_instances: List[Dict[str, Any]] = field(default_factory=list)
    capped_instances: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_instances": self.total_instances,
            "by_status": dict(self.by_status),
            "average_score": self.average_score,
            "worst_instances": list(self.worst_instances),
            "capped_instances": self.capped_instances,
        }


def summarize_fleet(scores: List[FinalHealthScore], worst_n: int = 10) -> FleetSummary:
    """Counts per bucket, average score and the worst N instances."""
    summary = FleetSummary(
        total_instances=len(scores),
        by_status={status.value: 0 for status in HealthStatus},
    )
    if not scores:
        return summary

    for score in scores:
        summary.by_status[score.status.value] += 1
        if score.cap_applied is not None:
            summary.capped_instances += 1

    summary.average_score = round(sum(s.final_score for s in scores) / len(scores), 2)

    ranked = sorted(scores, key=lambda s: (s.final_score, s.instance_name))
    summary.worst_instances = [
        {
            "instance_name": s.instance_name,
            "final_score": s.final_score,
            "status": s.status.value,
            "weakest_category": select_cause(s.contributions),
        }
        for s in ranked[:worst_n]
    ]
    return summary


# ============================================================
# TRANSITION SUMMARY
# ============================================================

@dataclass
class TransitionSummary:
    """Aggregate of a list of transition events."""

    total: int = 0
    degradations: int = 0
    recoveries: int = 0
    by_cause: Dict[str, int] = field(default_factory=dict)
    into_critical: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "degradations": self.degradations,
            "recoveries": self.recoveries,
            "by_cause": dict(self.by_cause),
            "into_critical": list(self.into_critical),
        }


def summarize_transitions(events: List[TransitionEvent]) -> TransitionSummary:
    """Degradation/recovery counts and the most frequent causes."""
    summary = TransitionSummary(total=len(events))
    for event in events:
        if event.is_degradation:
            summary.degradations += 1
            if event.new_status == HealthStatus.CRITICAL and event.instance_name not in summary.into_critical:
                summary.into_critical.append(event.instance_name)
        elif event.is_recovery:
            summary.recoveries += 1
        if event.cause:
            summary.by_cause[event.cause] = summary.by_cause.get(event.cause, 0) + 1
    return summary


__all__ = [
    "select_cause",
    "detect_transition",
    "FleetSummary",
    "summarize_fleet",
    "TransitionSummary",
    "summarize_transitions",
]
