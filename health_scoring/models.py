"""
Health Scoring - Data Models.

============================================================
CORE DATA STRUCTURES
============================================================

Defines all data models for fleet health scoring:
- CollectorKind: The metric categories measured across the fleet
- RuleOperator / RuleAction: Threshold rule vocabulary
- RunStatus / TriggerKind: Collector run bookkeeping
- HealthStatus: Final score buckets
- CollectorConfig: Per-collector schedule and weight
- ThresholdRule: Condition-to-action scoring rule
- CollectorException: Operator-declared penalty suppression
- ExecutionLog: One row per collector run
- CategoryScore: Per (instance, collector, run) score
- FinalHealthScore: Weighted per-instance score
- TransitionEvent: Status bucket change

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# =============================================================
# ENUMS
# =============================================================


class CollectorKind(str, Enum):
    """
    Metric categories, one collector each.

    Declaration order is the canonical ordering used for
    breakdowns and tie-breaks.
    """
    CPU = "CPU"
    MEMORY = "Memory"
    IO = "IO"
    DISKS = "Disks"
    BACKUPS = "Backups"
    ALWAYS_ON = "AlwaysOn"
    LOG_CHAIN = "LogChain"
    DATABASE_STATES = "DatabaseStates"
    CRITICAL_ERRORS = "CriticalErrors"
    MAINTENANCE = "Maintenance"
    CONFIG_TEMPDB = "ConfigTempdb"
    AUTOGROWTH = "Autogrowth"
    WAITS = "Waits"

    @classmethod
    def order_of(cls, collector_name: str) -> int:
        """Position of a collector name in declaration order (unknown names last)."""
        for index, kind in enumerate(cls):
            if kind.value == collector_name:
                return index
        return len(cls)


class RuleOperator(str, Enum):
    """Comparison operators for threshold rules."""
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    EQ = "=="
    NE = "!="

    def compare(self, value: float, threshold: float) -> bool:
        """Apply the operator to a measurement and a threshold."""
        if self is RuleOperator.GT:
            return value > threshold
        if self is RuleOperator.GTE:
            return value >= threshold
        if self is RuleOperator.LT:
            return value < threshold
        if self is RuleOperator.LTE:
            return value <= threshold
        if self is RuleOperator.EQ:
            return value == threshold
        return value != threshold

    @classmethod
    def parse(cls, raw: str) -> "RuleOperator":
        """Parse an operator, accepting the single '=' spelling."""
        if raw == "=":
            return cls.EQ
        return cls(raw)


class RuleAction(str, Enum):
    """What a matching threshold rule does to the category score."""
    PENALTY = "Penalty"
    CAP = "Cap"
    SCORE_OVERRIDE = "ScoreOverride"


class RunStatus(str, Enum):
    """Collector execution log status."""
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        """Check if the run has finished."""
        return self != RunStatus.RUNNING


class TriggerKind(str, Enum):
    """How a collector run was started."""
    SCHEDULED = "Scheduled"
    MANUAL = "Manual"


class HealthStatus(str, Enum):
    """
    Status bucket of a final health score.

    Boundaries are owned by configuration.
    """
    HEALTHY = "Healthy"
    WARNING = "Warning"
    RISK = "Risk"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        """Higher is healthier."""
        return {
            HealthStatus.HEALTHY: 3,
            HealthStatus.WARNING: 2,
            HealthStatus.RISK: 1,
            HealthStatus.CRITICAL: 0,
        }[self]


# =============================================================
# CONFIGURATION RECORDS
# =============================================================


@dataclass
class CollectorConfig:
    """
    Schedule, weight and last-run bookkeeping of one collector.

    Never deleted; disabled instead.
    """
    collector_name: str
    display_name: str = ""
    description: Optional[str] = None
    category: str = "Performance"
    enabled: bool = True
    interval_seconds: int = 300
    timeout_seconds: int = 30
    weight: float = 0.0
    parallel_degree: int = 5
    execution_order: int = 0
    baseline_score: float = 100.0

    # Last run
    last_run_at: Optional[datetime] = None
    last_duration_ms: Optional[int] = None
    last_instances_processed: Optional[int] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "collector_name": self.collector_name,
            "display_name": self.display_name or self.collector_name,
            "description": self.description,
            "category": self.category,
            "enabled": self.enabled,
            "interval_seconds": self.interval_seconds,
            "timeout_seconds": self.timeout_seconds,
            "weight": self.weight,
            "parallel_degree": self.parallel_degree,
            "execution_order": self.execution_order,
            "baseline_score": self.baseline_score,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_duration_ms": self.last_duration_ms,
            "last_instances_processed": self.last_instances_processed,
            "last_error": self.last_error,
            "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
        }


@dataclass
class ThresholdRule:
    """
    A condition-to-action mapping for one collector.

    Rules belong to a named group; the group names the
    measurement value the rule is compared against.
    """
    collector_name: str
    group: str
    operator: RuleOperator
    threshold_value: float
    action: RuleAction
    result_value: float
    evaluation_order: int = 0
    name: str = ""
    display_name: str = ""
    description: Optional[str] = None
    default_value: Optional[float] = None
    is_active: bool = True
    id: Optional[int] = None

    def __post_init__(self) -> None:
        if isinstance(self.operator, str) and not isinstance(self.operator, RuleOperator):
            self.operator = RuleOperator.parse(self.operator)
        if isinstance(self.action, str) and not isinstance(self.action, RuleAction):
            self.action = RuleAction(self.action)
        if self.default_value is None:
            self.default_value = self.threshold_value
        if not self.name:
            self.name = f"{self.group}_{self.action.value}_{self.evaluation_order}"

    def matches(self, value: float) -> bool:
        """Check the rule's condition against a measurement value."""
        return self.operator.compare(value, self.threshold_value)

    def describe(self) -> str:
        """Short human-readable form, e.g. 'P95CPU > 90 -> Penalty 30'."""
        return (
            f"{self.group} {self.operator.value} {self.threshold_value:g} "
            f"-> {self.action.value} {self.result_value:g}"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "collector_name": self.collector_name,
            "name": self.name,
            "display_name": self.display_name or self.name,
            "group": self.group,
            "operator": self.operator.value,
            "threshold_value": self.threshold_value,
            "action": self.action.value,
            "result_value": self.result_value,
            "evaluation_order": self.evaluation_order,
            "default_value": self.default_value,
            "is_active": self.is_active,
            "description": self.description,
        }


@dataclass
class CollectorException:
    """
    Operator-declared suppression of penalties for one server.

    An expired entry is inert but kept.
    """
    collector_name: str
    server_name: str
    exception_type: str = "All"
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    is_active: bool = True
    id: Optional[int] = None

    def is_effective_at(self, now: datetime) -> bool:
        """Active and not yet expired at the given time."""
        if not self.is_active:
            return False
        return self.expires_at is None or self.expires_at > now

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "collector_name": self.collector_name,
            "exception_type": self.exception_type,
            "server_name": self.server_name,
            "reason": self.reason,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "created_by": self.created_by,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


# =============================================================
# RUN RECORDS
# =============================================================


@dataclass
class ExecutionLog:
    """One row per collector run."""
    collector_name: str
    started_at: datetime
    trigger: TriggerKind = TriggerKind.SCHEDULED
    status: RunStatus = RunStatus.RUNNING
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    total_instances: int = 0
    success_count: int = 0
    error_count: int = 0
    error_message: Optional[str] = None
    triggered_by: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "collector_name": self.collector_name,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "status": self.status.value,
            "trigger": self.trigger.value,
            "triggered_by": self.triggered_by,
            "total_instances": self.total_instances,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "error_message": self.error_message,
        }


@dataclass
class CategoryScore:
    """
    Score of one category on one instance for one run.

    Immutable once written.
    """
    instance_name: str
    collector_name: str
    score: float
    collected_at: datetime
    run_id: Optional[int] = None
    measurement: Dict[str, Any] = field(default_factory=dict)
    notes: str = ""
    fired_rule: Optional[str] = None
    suppressed_by_exception: bool = False
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "instance_name": self.instance_name,
            "collector_name": self.collector_name,
            "score": self.score,
            "collected_at": self.collected_at.isoformat(),
            "run_id": self.run_id,
            "measurement": self.measurement,
            "notes": self.notes,
            "fired_rule": self.fired_rule,
            "suppressed_by_exception": self.suppressed_by_exception,
        }


# =============================================================
# CONSOLIDATION RECORDS
# =============================================================


@dataclass(frozen=True)
class CategoryContribution:
    """Share of one category in a final score."""
    collector_name: str
    score: float
    weight: float
    effective_weight: float  # weight / sum of present weights
    contribution: float  # score * effective_weight

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collector_name": self.collector_name,
            "score": self.score,
            "weight": self.weight,
            "effective_weight": self.effective_weight,
            "contribution": self.contribution,
        }


@dataclass
class FinalHealthScore:
    """Weighted, bounded health score of one instance."""
    instance_name: str
    raw_score: float
    final_score: float
    status: HealthStatus
    contributions: List[CategoryContribution] = field(default_factory=list)
    cap_applied: Optional[float] = None
    cap_rule: Optional[str] = None
    computed_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def categories_present(self) -> List[str]:
        return [c.collector_name for c in self.contributions]

    def get_contribution(self, collector_name: str) -> Optional[CategoryContribution]:
        """Get the contribution of one category."""
        for contribution in self.contributions:
            if contribution.collector_name == collector_name:
                return contribution
        return None

    def scoring_fields(self) -> Dict[str, Any]:
        """Everything except identity and timestamp; equal inputs give equal output."""
        return {
            "instance_name": self.instance_name,
            "raw_score": self.raw_score,
            "cap_applied": self.cap_applied,
            "cap_rule": self.cap_rule,
            "final_score": self.final_score,
            "status": self.status.value,
            "contributions": [c.to_dict() for c in self.contributions],
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        data = self.scoring_fields()
        data["id"] = self.id
        data["computed_at"] = self.computed_at.isoformat() if self.computed_at else None
        return data


@dataclass
class TransitionEvent:
    """
    Change of an instance's status bucket between two cycles.

    Append-only.
    """
    instance_name: str
    previous_status: HealthStatus
    new_status: HealthStatus
    previous_score: float
    new_score: float
    cause: Optional[str] = None
    detected_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def is_degradation(self) -> bool:
        """Check if this is a degradation (worsening)."""
        return self.new_status.rank < self.previous_status.rank

    @property
    def is_recovery(self) -> bool:
        """Check if this is a recovery (improvement)."""
        return self.new_status.rank > self.previous_status.rank

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "id": self.id,
            "instance_name": self.instance_name,
            "previous_status": self.previous_status.value,
            "new_status": self.new_status.value,
            "previous_score": self.previous_score,
            "new_score": self.new_score,
            "cause": self.cause,
            "detected_at": self.detected_at.isoformat() if self.detected_at else None,
            "is_degradation": self.is_degradation,
            "is_recovery": self.is_recovery,
        }
