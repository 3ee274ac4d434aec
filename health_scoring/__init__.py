"""
Health Scoring Package.

============================================================
PURPOSE
============================================================
Turns collector measurements into fleet health scores.

- models: data model of configs, rules, exceptions, scores
- evaluator: pure threshold evaluation
- exception_registry: (collector, server) suppression lookup
- stores: persistence interfaces + in-memory implementations
- consolidator: weighted final score and status bucket
- transitions: status change detection and summaries
- config: engine configuration

============================================================
"""

from .models import (
    CollectorKind,
    RuleOperator,
    RuleAction,
    RunStatus,
    TriggerKind,
    HealthStatus,
    CollectorConfig,
    ThresholdRule,
    CollectorException,
    ExecutionLog,
    CategoryScore,
    CategoryContribution,
    FinalHealthScore,
    TransitionEvent,
)
from .evaluator import EvaluationResult, clamp_score, evaluate_thresholds
from .exception_registry import (
    ExceptionRegistry,
    GENERIC_EXCEPTION_TYPE,
    SUPPORTED_EXCEPTION_TYPES,
)
from .stores import (
    ConfigStore,
    ExceptionStore,
    ScoreStore,
    InMemoryConfigStore,
    InMemoryExceptionStore,
    InMemoryScoreStore,
)
from .config import (
    ConsolidationCapRule,
    EngineConfig,
    StatusBoundaries,
    load_config,
)
from .consolidator import (
    ConsolidationResult,
    HealthScoreConsolidator,
    compute_final_score,
    participating_weights,
    weight_warning,
)
from .transitions import (
    FleetSummary,
    TransitionSummary,
    detect_transition,
    select_cause,
    summarize_fleet,
    summarize_transitions,
)


__all__ = [
    # Models
    "CollectorKind",
    "RuleOperator",
    "RuleAction",
    "RunStatus",
    "TriggerKind",
    "HealthStatus",
    "CollectorConfig",
    "ThresholdRule",
    "CollectorException",
    "ExecutionLog",
    "CategoryScore",
    "CategoryContribution",
    "FinalHealthScore",
    "TransitionEvent",
    # Evaluator
    "EvaluationResult",
    "clamp_score",
    "evaluate_thresholds",
    # Exceptions
    "ExceptionRegistry",
    "GENERIC_EXCEPTION_TYPE",
    "SUPPORTED_EXCEPTION_TYPES",
    # Stores
    "ConfigStore",
    "ExceptionStore",
    "ScoreStore",
    "InMemoryConfigStore",
    "InMemoryExceptionStore",
    "InMemoryScoreStore",
    # Config
    "ConsolidationCapRule",
    "EngineConfig",
    "StatusBoundaries",
    "load_config",
    # Consolidation
    "ConsolidationResult",
    "HealthScoreConsolidator",
    "compute_final_score",
    "participating_weights",
    "weight_warning",
    # Transitions
    "FleetSummary",
    "TransitionSummary",
    "detect_transition",
    "select_cause",
    "summarize_fleet",
    "summarize_transitions",
]
