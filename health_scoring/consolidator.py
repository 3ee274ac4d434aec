"""
Health Scoring - Consolidator.

============================================================
RESPONSIBILITY
============================================================
Combines the latest category scores of each instance into
one weighted, bounded final score with a status bucket.

- Reads ONLY persisted category scores; never talks to instances
- Missing categories are omitted; the weighted sum uses the
  weights of the categories present:
      raw = sum(score * weight) / sum(weight present)
- Instance-wide caps reuse the threshold evaluator (Cap rules)
- Status bucket boundaries come from configuration
- Emits a TransitionEvent when the bucket changes

============================================================
DESIGN PRINCIPLES
============================================================
- Idempotent: unchanged inputs give identical output,
  apart from the computed-at stamp
- A failing instance never aborts the cycle
- Weight totals off 100 are tolerated and warned about

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple
import asyncio
import logging

from core.clock import ClockFactory, ClockProtocol
from core.exceptions import ConsolidationError

from .config import EngineConfig
from .evaluator import clamp_score, evaluate_thresholds
from .models import (
    CategoryContribution,
    CategoryScore,
    CollectorConfig,
    CollectorKind,
    FinalHealthScore,
    TransitionEvent,
)
from .stores import ConfigStore, ScoreStore
from .transitions import detect_transition


logger = logging.getLogger(__name__)


# ============================================================
# PURE SCORING
# ============================================================

def participating_weights(configs: List[CollectorConfig]) -> Dict[str, float]:
    """Weights of enabled collectors with a positive weight."""
    return {
        c.collector_name: float(c.weight)
        for c in configs
        if c.enabled and c.weight > 0
    }


def weight_warning(weights: Mapping[str, float], tolerance: float = 0.01) -> Optional[str]:
    """Warning text when the enabled weight total deviates from 100."""
    total = sum(weights.values())
    if abs(total - 100.0) <= tolerance:
        return None
    direction = "exceeds" if total > 100.0 else "is below"
    return f"Total enabled collector weight {total:g} {direction} 100"


def compute_final_score(
    instance_name: str,
    category_scores: Mapping[str, float],
    weights: Mapping[str, float],
    config: EngineConfig,
) -> Optional[FinalHealthScore]:
    """
    Weighted final score of one instance.

    Categories without a participating weight are ignored.
    Returns None when no weighted category is present.
    """
    present = [
        name for name in sorted(category_scores, key=lambda n: (CollectorKind.order_of(n), n))
        if name in weights
    ]
    total_weight = sum(weights[name] for name in present)
    if not present or total_weight <= 0:
        return None

    contributions = []
    weighted_sum = 0.0
    for name in present:
        score = float(category_scores[name])
        effective = weights[name] / total_weight
        weighted_sum += score * weights[name]
        contributions.append(
            CategoryContribution(
                collector_name=name,
                score=round(score, 2),
                weight=weights[name],
                effective_weight=round(effective, 4),
                contribution=round(score * effective, 2),
            )
        )

    raw_score = clamp_score(weighted_sum / total_weight)
    final_score, cap_applied, cap_rule = _apply_caps(raw_score, category_scores, present, config)

    return FinalHealthScore(
        instance_name=instance_name,
        raw_score=raw_score,
        final_score=final_score,
        status=config.status_boundaries.classify(final_score),
        contributions=contributions,
        cap_applied=cap_applied,
        cap_rule=cap_rule,
    )


def _apply_caps(
    raw_score: float,
    category_scores: Mapping[str, float],
    present: List[str],
    config: EngineConfig,
) -> Tuple[float, Optional[float], Optional[str]]:
    rules = []
    for cap in config.cap_rules:
        rules.extend(cap.to_threshold_rules(present))
    if not rules:
        return raw_score, None, None

    measurement = {name: float(category_scores[name]) for name in present}
    result = evaluate_thresholds(measurement, rules, baseline=raw_score)
    if result.fired_rule is None or result.score >= raw_score:
        return raw_score, None, None
    return result.score, result.fired_rule.result_value, result.fired_rule.name


# ============================================================
# RESULT
# ============================================================

@dataclass
class ConsolidationResult:
    """Outcome of one consolidation cycle."""

    started_at: datetime
    completed_at: Optional[datetime] = None
    scores: List[FinalHealthScore] = field(default_factory=list)
    transitions: List[TransitionEvent] = field(default_factory=list)
    failed_instances: Dict[str, str] = field(default_factory=dict)
    skipped_instances: List[str] = field(default_factory=list)
    weight_warning: Optional[str] = None

    @property
    def instances_scored(self) -> int:
        return len(self.scores)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "instances_scored": self.instances_scored,
            "transitions": [t.to_dict() for t in self.transitions],
            "failed_instances": dict(self.failed_instances),
            "skipped_instances": list(self.skipped_instances),
            "weight_warning": self.weight_warning,
        }


# ============================================================
# CONSOLIDATOR
# ============================================================

class HealthScoreConsolidator:
    """
    Periodic consolidation of category scores.

    Scheduling is owned by the orchestrator; this class runs
    one cycle at a time.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        score_store: ScoreStore,
        config: Optional[EngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._config_store = config_store
        self._score_store = score_store
        self._config = config or EngineConfig()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_result: Optional[ConsolidationResult] = None

    @property
    def clock(self) -> ClockProtocol:
        return self._clock or ClockFactory.get_clock()

    @property
    def last_result(self) -> Optional[ConsolidationResult]:
        return self._last_result

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    # --------------------------------------------------------
    # Cycle
    # --------------------------------------------------------

    async def run_cycle(self) -> ConsolidationResult:
        """Run one cycle off the event loop; cycles never overlap."""
        async with self._lock:
            return await asyncio.to_thread(self.consolidate)

    def consolidate(self) -> ConsolidationResult:
        """
        Consolidate every instance with at least one category score.

        Raises:
            ConsolidationError: configs or instance list unreadable
        """
        started_at = self.clock.now()
        result = ConsolidationResult(started_at=started_at)

        try:
            weights = participating_weights(self._config_store.list_configs())
            instances = self._score_store.instances_with_scores()
        except Exception as e:
            raise ConsolidationError(f"Consolidation inputs unavailable: {e}", cause=e) from e

        result.weight_warning = weight_warning(weights, self._config.weight_tolerance)
        if result.weight_warning:
            logger.warning(result.weight_warning)

        for instance_name in instances:
            try:
                score, transition = self.consolidate_instance(instance_name, weights, started_at)
            except Exception as e:
                logger.error(f"Consolidation failed for {instance_name}: {e}", exc_info=True)
                result.failed_instances[instance_name] = str(e)
                continue

            if score is None:
                result.skipped_instances.append(instance_name)
                continue
            result.scores.append(score)
            if transition is not None:
                result.transitions.append(transition)

        result.completed_at = self.clock.now()
        self._last_result = result

        logger.info(
            f"Consolidation complete | instances={result.instances_scored} | "
            f"transitions={len(result.transitions)} | failed={len(result.failed_instances)} | "
            f"skipped={len(result.skipped_instances)}"
        )
        return result

    def consolidate_instance(
        self,
        instance_name: str,
        weights: Mapping[str, float],
        computed_at: Optional[datetime] = None,
    ) -> Tuple[Optional[FinalHealthScore], Optional[TransitionEvent]]:
        """Score, persist and transition-check one instance."""
        latest: Dict[str, CategoryScore] = self._score_store.latest_category_scores(instance_name)
        category_scores = {name: row.score for name, row in latest.items()}

        score = compute_final_score(instance_name, category_scores, weights, self._config)
        if score is None:
            return None, None

        score.computed_at = computed_at or self.clock.now()
        previous = self._score_store.latest_final_score(instance_name)
        saved = self._score_store.save_final_score(score)

        transition = detect_transition(previous, saved, detected_at=score.computed_at)
        if transition is not None:
            transition = self._score_store.save_transition(transition)
            log = logger.warning if transition.is_degradation else logger.info
            log(
                f"Status transition | instance={instance_name} | "
                f"{transition.previous_status.value} -> {transition.new_status.value} | "
                f"score {transition.previous_score} -> {transition.new_score} | "
                f"cause={transition.cause}"
            )

        return saved, transition

    # --------------------------------------------------------
    # Status
    # --------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        """Consolidator status for the admin surface."""
        return {
            "running": self.is_running,
            "interval_seconds": self._config.consolidation_interval_seconds,
            "status_boundaries": self._config.status_boundaries.to_dict(),
            "last_result": self._last_result.to_dict() if self._last_result else None,
        }


__all__ = [
    "participating_weights",
    "weight_warning",
    "compute_final_score",
    "ConsolidationResult",
    "HealthScoreConsolidator",
]
