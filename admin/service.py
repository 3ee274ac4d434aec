"""
Admin - Configuration Service.

============================================================
PURPOSE
============================================================
The configuration surface consumed by an external admin UI.

- Collector configs: list, read, update
- Manual run trigger and recent execution logs
- Threshold rules: read, update (single and bulk), reset
- Collector exceptions: create, remove, list, supported types
- Consolidator: run now, status
- Summaries: collectors, fleet, transitions, instance history

============================================================
VALIDATION
============================================================
Invalid input is rejected here with ConfigurationError and
never reaches the orchestrator.

============================================================
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from collectors.registry import CollectorRegistry
from core.clock import ClockFactory, ClockProtocol
from core.exceptions import ConfigurationError, ThresholdRuleNotFoundError
from health_scoring.config import EngineConfig
from health_scoring.consolidator import (
    ConsolidationResult,
    HealthScoreConsolidator,
    participating_weights,
    weight_warning,
)
from health_scoring.exception_registry import ExceptionRegistry
from health_scoring.models import (
    CollectorConfig,
    CollectorException,
    ExecutionLog,
    RuleAction,
    RuleOperator,
    ThresholdRule,
)
from health_scoring.stores import ConfigStore, ScoreStore
from health_scoring.transitions import summarize_fleet, summarize_transitions
from orchestrator.core import CollectorOrchestrator
from orchestrator.models import TriggerOutcome


logger = logging.getLogger(__name__)


# ============================================================
# LIMITS
# ============================================================

MIN_INTERVAL_SECONDS = 30
MAX_PARALLEL_DEGREE = 64
MAX_TIMEOUT_SECONDS = 3600


def validate_config_update(
    interval_seconds: Optional[int] = None,
    weight: Optional[float] = None,
    parallel_degree: Optional[int] = None,
    timeout_seconds: Optional[int] = None,
) -> None:
    """Raises ConfigurationError on the first invalid value."""
    if interval_seconds is not None and interval_seconds < MIN_INTERVAL_SECONDS:
        raise ConfigurationError(
            f"interval_seconds must be at least {MIN_INTERVAL_SECONDS}",
            config_key="interval_seconds",
            actual_value=interval_seconds,
        )
    if weight is not None and not 0.0 <= weight <= 100.0:
        raise ConfigurationError(
            "weight must be within [0, 100]",
            config_key="weight",
            actual_value=weight,
        )
    if parallel_degree is not None and not 1 <= parallel_degree <= MAX_PARALLEL_DEGREE:
        raise ConfigurationError(
            f"parallel_degree must be within [1, {MAX_PARALLEL_DEGREE}]",
            config_key="parallel_degree",
            actual_value=parallel_degree,
        )
    if timeout_seconds is not None and not 1 <= timeout_seconds <= MAX_TIMEOUT_SECONDS:
        raise ConfigurationError(
            f"timeout_seconds must be within [1, {MAX_TIMEOUT_SECONDS}]",
            config_key="timeout_seconds",
            actual_value=timeout_seconds,
        )


def apply_rule_update(rule: ThresholdRule, changes: Dict[str, Any]) -> ThresholdRule:
    """
    Validated copy of a rule with changes applied.

    Editable: threshold_value, result_value, operator, action,
    is_active, display_name, description.
    """
    editable = {
        "threshold_value", "result_value", "operator", "action",
        "is_active", "display_name", "description",
    }
    unknown = set(changes) - editable - {"id"}
    if unknown:
        raise ConfigurationError(
            f"Rule fields are not editable: {', '.join(sorted(unknown))}",
            config_key="rule",
        )

    values = {k: v for k, v in changes.items() if k in editable}
    try:
        if "operator" in values:
            values["operator"] = RuleOperator.parse(values["operator"])
        if "action" in values:
            values["action"] = RuleAction(values["action"])
        for key in ("threshold_value", "result_value"):
            if key in values:
                values[key] = float(values[key])
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid rule update for {rule.name}: {e}", config_key="rule") from e

    updated = replace(rule, **values)
    if updated.action == RuleAction.PENALTY and updated.result_value < 0:
        raise ConfigurationError(
            f"Penalty of rule {rule.name} must not be negative",
            config_key="result_value",
            actual_value=updated.result_value,
        )
    if updated.action in (RuleAction.CAP, RuleAction.SCORE_OVERRIDE) and not 0 <= updated.result_value <= 100:
        raise ConfigurationError(
            f"{updated.action.value} value of rule {rule.name} must be within [0, 100]",
            config_key="result_value",
            actual_value=updated.result_value,
        )
    return updated


# ============================================================
# SERVICE
# ============================================================

class CollectorAdminService:
    """
    Configuration operations over the injected stores.

    Store calls are dispatched with asyncio.to_thread.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        score_store: ScoreStore,
        exception_registry: ExceptionRegistry,
        registry: CollectorRegistry,
        orchestrator: Optional[CollectorOrchestrator] = None,
        consolidator: Optional[HealthScoreConsolidator] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._config_store = config_store
        self._score_store = score_store
        self._exceptions = exception_registry
        self._registry = registry
        self._orchestrator = orchestrator
        self._consolidator = consolidator or (orchestrator.consolidator if orchestrator else None)
        self._config = config or EngineConfig()
        self._clock = clock

    @property
    def clock(self) -> ClockProtocol:
        return self._clock or ClockFactory.get_clock()

    # --------------------------------------------------------
    # Collector configs
    # --------------------------------------------------------

    async def list_configs(self) -> List[CollectorConfig]:
        return await asyncio.to_thread(self._config_store.list_configs)

    async def get_config(self, collector_name: str) -> CollectorConfig:
        self._registry.get(collector_name)
        return await asyncio.to_thread(self._config_store.get_config, collector_name)

    async def update_config(
        self,
        collector_name: str,
        enabled: Optional[bool] = None,
        interval_seconds: Optional[int] = None,
        weight: Optional[float] = None,
        parallel_degree: Optional[int] = None,
        timeout_seconds: Optional[int] = None,
        updated_by: Optional[str] = None,
    ) -> CollectorConfig:
        """
        Update one collector's config.

        Raises:
            CollectorNotFoundError: unknown collector kind
            ConfigurationError: invalid value
        """
        validate_config_update(interval_seconds, weight, parallel_degree, timeout_seconds)
        current = await self.get_config(collector_name)

        changes: Dict[str, Any] = {}
        if enabled is not None:
            changes["enabled"] = bool(enabled)
        if interval_seconds is not None:
            changes["interval_seconds"] = int(interval_seconds)
        if weight is not None:
            changes["weight"] = float(weight)
        if parallel_degree is not None:
            changes["parallel_degree"] = int(parallel_degree)
        if timeout_seconds is not None:
            changes["timeout_seconds"] = int(timeout_seconds)

        updated = replace(current, updated_at=self.clock.now(), **changes)
        saved = await asyncio.to_thread(self._config_store.save_config, updated)
        logger.info(
            f"[{collector_name}] Config updated | by={updated_by or 'unknown'} | "
            f"changes={', '.join(f'{k}={v}' for k, v in changes.items()) or 'none'}"
        )

        if saved.enabled and not current.enabled and self._orchestrator and self._orchestrator.is_running:
            await self._orchestrator.refresh_schedule()
        return saved

    # --------------------------------------------------------
    # Runs
    # --------------------------------------------------------

    async def trigger_run(self, collector_name: str, triggered_by: Optional[str] = None) -> TriggerOutcome:
        """
        Manually trigger a collector run.

        Rejections (already running, disabled) are returned, not raised.
        """
        if self._orchestrator is None:
            raise ConfigurationError("Manual triggers need a running orchestrator")
        outcome = await self._orchestrator.trigger_now(collector_name, triggered_by=triggered_by)
        logger.info(f"[{collector_name}] Manual trigger by {triggered_by or 'unknown'}: {outcome.value}")
        return outcome

    async def recent_logs(self, collector_name: str, limit: int = 20) -> List[ExecutionLog]:
        self._registry.get(collector_name)
        return await asyncio.to_thread(self._config_store.recent_execution_logs, collector_name, limit)

    # --------------------------------------------------------
    # Threshold rules
    # --------------------------------------------------------

    async def get_rules(self, collector_name: str) -> List[ThresholdRule]:
        self._registry.get(collector_name)
        return await asyncio.to_thread(self._config_store.list_rules, collector_name)

    async def update_rule(self, rule_id: int, changes: Dict[str, Any]) -> ThresholdRule:
        """
        Update one rule.

        Raises:
            ThresholdRuleNotFoundError: unknown rule id
            ConfigurationError: invalid value
        """
        rule = await asyncio.to_thread(self._config_store.get_rule, rule_id)
        updated = apply_rule_update(rule, changes)
        saved = await asyncio.to_thread(self._config_store.save_rule, updated)
        logger.info(f"[{rule.collector_name}] Rule {rule.name} updated | {saved.describe()}")
        return saved

    async def update_rules(self, collector_name: str, updates: List[Dict[str, Any]]) -> List[ThresholdRule]:
        """
        Bulk update; every entry carries the rule "id".

        All entries are validated before any is saved.
        """
        self._registry.get(collector_name)
        current = {r.id: r for r in await asyncio.to_thread(self._config_store.list_rules, collector_name)}

        validated = []
        for changes in updates:
            rule_id = changes.get("id")
            if rule_id is None:
                raise ConfigurationError("Every rule update needs an id", config_key="id")
            rule = current.get(int(rule_id))
            if rule is None:
                raise ThresholdRuleNotFoundError(int(rule_id), collector_name)
            validated.append(apply_rule_update(rule, changes))

        for rule in validated:
            await asyncio.to_thread(self._config_store.save_rule, rule)
        logger.info(f"[{collector_name}] {len(validated)} rule(s) updated")
        return await asyncio.to_thread(self._config_store.list_rules, collector_name)

    async def reset_rules(self, collector_name: str) -> List[ThresholdRule]:
        """Restore shipped defaults for a collector."""
        spec = self._registry.get(collector_name)
        rules = await asyncio.to_thread(self._config_store.reset_rules, collector_name, spec.default_rules())
        logger.info(f"[{collector_name}] Rules reset to shipped defaults")
        return rules

    # --------------------------------------------------------
    # Exceptions
    # --------------------------------------------------------

    async def add_exception(
        self,
        collector_name: str,
        server_name: str,
        exception_type: Optional[str] = None,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        created_by: Optional[str] = None,
    ) -> CollectorException:
        self._registry.get(collector_name)
        exception_type = exception_type or self._exceptions.supported_types(collector_name)[0]["type"]
        return await asyncio.to_thread(
            self._exceptions.add,
            collector_name,
            server_name,
            exception_type,
            reason,
            expires_at,
            created_by,
        )

    async def remove_exception(self, exception_id: int) -> None:
        await asyncio.to_thread(self._exceptions.remove, exception_id)

    async def list_exceptions(self, collector_name: Optional[str] = None) -> List[Dict[str, Any]]:
        """Entries with their current effectiveness."""
        if collector_name is not None:
            self._registry.get(collector_name)
        entries = await asyncio.to_thread(self._exceptions.list, collector_name)
        now = self.clock.now()
        return [{**e.to_dict(), "effective": e.is_effective_at(now)} for e in entries]

    def supported_exception_types(self, collector_name: str) -> List[Dict[str, str]]:
        return self._registry.get(collector_name).supported_exception_types()

    # --------------------------------------------------------
    # Consolidation
    # --------------------------------------------------------

    async def run_consolidation_now(self) -> ConsolidationResult:
        if self._orchestrator is not None:
            return await self._orchestrator.run_consolidation_now()
        if self._consolidator is None:
            raise ConfigurationError("No consolidator is configured")
        return await self._consolidator.run_cycle()

    def consolidator_status(self) -> Dict[str, Any]:
        if self._consolidator is None:
            return {"configured": False}
        return {"configured": True, **self._consolidator.get_status()}

    # --------------------------------------------------------
    # Summaries
    # --------------------------------------------------------

    async def get_summary(self) -> Dict[str, Any]:
        """Collector counts, weights and last errors."""
        configs = await self.list_configs()
        weights = participating_weights(configs)
        warning = weight_warning(weights, self._config.weight_tolerance)

        return {
            "total_collectors": len(configs),
            "enabled_collectors": sum(1 for c in configs if c.enabled),
            "total_weight": round(sum(weights.values()), 2),
            "weight_warning": warning,
            "collectors_with_errors": [
                {
                    "collector_name": c.collector_name,
                    "last_error": c.last_error,
                    "last_error_at": c.last_error_at.isoformat() if c.last_error_at else None,
                }
                for c in configs if c.last_error
            ],
            "orchestrator": self._orchestrator.get_status().to_dict() if self._orchestrator else None,
        }

    async def fleet_summary(self, worst_n: int = 10) -> Dict[str, Any]:
        scores = await asyncio.to_thread(self._score_store.latest_final_scores)
        return summarize_fleet(scores, worst_n=worst_n).to_dict()

    async def transitions(self, instance_name: Optional[str] = None, limit: int = 100) -> Dict[str, Any]:
        events = await asyncio.to_thread(self._score_store.list_transitions, instance_name, limit)
        return {
            "summary": summarize_transitions(events).to_dict(),
            "events": [e.to_dict() for e in events],
        }

    async def instance_history(self, instance_name: str, limit: int = 100) -> Dict[str, Any]:
        """Final score history plus the latest score per category."""
        history = await asyncio.to_thread(self._score_store.final_score_history, instance_name, limit)
        latest = await asyncio.to_thread(self._score_store.latest_category_scores, instance_name)
        return {
            "instance_name": instance_name,
            "final_scores": [s.to_dict() for s in history],
            "latest_category_scores": {name: s.to_dict() for name, s in latest.items()},
        }


__all__ = [
    "MIN_INTERVAL_SECONDS",
    "validate_config_update",
    "apply_rule_update",
    "CollectorAdminService",
]
