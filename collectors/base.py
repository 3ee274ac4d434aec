"""
Collectors - Generic Collector.

============================================================
RESPONSIBILITY
============================================================
One run of one collector kind:

1. Record a Running execution log
2. Fetch eligible instances from the instance provider
3. For each instance, at most parallel_degree at a time:
   sample -> derive measurement -> evaluate thresholds
   -> honor exceptions -> persist one category score
4. Record Completed (or Failed) and the last-run fields

============================================================
FAILURE SEMANTICS
============================================================
- Instance failure (unreachable, timeout, bad payload):
  counted in error_count, no category score written,
  the run continues
- Collector failure (inventory, rules unreadable):
  the run is Failed, last_error is recorded
- Nothing is raised to the caller; the outcome is returned

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
import asyncio
import logging
import time

from core.clock import ClockFactory, ClockProtocol
from core.exceptions import HealthEngineError, NotFoundError
from health_scoring.evaluator import EvaluationResult, evaluate_thresholds
from health_scoring.exception_registry import ExceptionRegistry
from health_scoring.models import (
    CategoryScore,
    CollectorConfig,
    ExecutionLog,
    RunStatus,
    ThresholdRule,
    TriggerKind,
)
from health_scoring.stores import ConfigStore, ScoreStore

from .provider import InstanceInfo, InstanceProvider
from .registry import CollectorSpec
from .sampler import MetricSampler


logger = logging.getLogger(__name__)

SUPPRESSED_SCORE = 100.0
CANCELLED_MESSAGE = "Cancelled during shutdown"


# ============================================================
# RESULTS
# ============================================================

@dataclass
class InstanceResult:
    """Outcome for one instance within a run."""

    instance_name: str
    success: bool
    score: Optional[float] = None
    fired_rule: Optional[str] = None
    suppressed_by_exception: bool = False
    error: Optional[str] = None
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_name": self.instance_name,
            "success": self.success,
            "score": self.score,
            "fired_rule": self.fired_rule,
            "suppressed_by_exception": self.suppressed_by_exception,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


@dataclass
class RunResult:
    """Outcome of one collector run."""

    collector_name: str
    trigger: TriggerKind
    started_at: datetime
    status: RunStatus = RunStatus.RUNNING
    completed_at: Optional[datetime] = None
    duration_ms: int = 0
    total_instances: int = 0
    success_count: int = 0
    error_count: int = 0
    error_message: Optional[str] = None
    log_id: Optional[int] = None
    instance_results: List[InstanceResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collector_name": self.collector_name,
            "trigger": self.trigger.value,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "total_instances": self.total_instances,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "error_message": self.error_message,
            "log_id": self.log_id,
        }


# ============================================================
# COLLECTOR
# ============================================================

class Collector:
    """
    Generic collector; one instance per collector kind.

    Kind-specific behavior comes entirely from the CollectorSpec.
    Store calls are dispatched with asyncio.to_thread.
    """

    def __init__(
        self,
        spec: CollectorSpec,
        config_store: ConfigStore,
        score_store: ScoreStore,
        exception_registry: ExceptionRegistry,
        instance_provider: InstanceProvider,
        sampler: MetricSampler,
        clock: Optional[ClockProtocol] = None,
    ):
        self._spec = spec
        self._config_store = config_store
        self._score_store = score_store
        self._exceptions = exception_registry
        self._provider = instance_provider
        self._sampler = sampler
        self._clock = clock
        self._active_log_id: Optional[int] = None

    @property
    def name(self) -> str:
        return self._spec.name

    @property
    def spec(self) -> CollectorSpec:
        return self._spec

    @property
    def clock(self) -> ClockProtocol:
        return self._clock or ClockFactory.get_clock()

    @property
    def active_log_id(self) -> Optional[int]:
        """Execution log of the run in progress, if any."""
        return self._active_log_id

    # --------------------------------------------------------
    # Run
    # --------------------------------------------------------

    async def run(
        self,
        trigger: TriggerKind = TriggerKind.SCHEDULED,
        triggered_by: Optional[str] = None,
    ) -> RunResult:
        """
        Execute one full run.

        Never raises; a cancelled run is recorded as Failed before
        the cancellation propagates.
        """
        started_mono = time.monotonic()
        result = RunResult(
            collector_name=self.name,
            trigger=trigger,
            started_at=self.clock.now(),
        )

        try:
            log = await asyncio.to_thread(
                self._config_store.start_execution_log,
                ExecutionLog(
                    collector_name=self.name,
                    started_at=result.started_at,
                    trigger=trigger,
                    triggered_by=triggered_by,
                ),
            )
        except Exception as e:
            logger.error(f"[{self.name}] Could not record run start: {e}", exc_info=True)
            result.status = RunStatus.FAILED
            result.error_message = f"Execution log unavailable: {e}"
            result.completed_at = self.clock.now()
            return result

        result.log_id = log.id
        self._active_log_id = log.id
        logger.info(f"[{self.name}] Run started | trigger={trigger.value} | log_id={log.id}")

        try:
            try:
                config = await asyncio.to_thread(self._config_store.get_config, self.name)
                rules = await asyncio.to_thread(self._config_store.list_rules, self.name, True)
                instances = await self._eligible_instances()
            except Exception as e:
                logger.error(f"[{self.name}] Run failed before processing instances: {e}", exc_info=True)
                result.status = RunStatus.FAILED
                result.error_message = str(e)
                await self._finish(log, result, started_mono)
                return result

            result.total_instances = len(instances)
            semaphore = asyncio.Semaphore(max(1, config.parallel_degree))

            async def guarded(instance: InstanceInfo) -> InstanceResult:
                async with semaphore:
                    return await self._process_instance(instance, config, rules, log.id)

            result.instance_results = list(await asyncio.gather(*(guarded(i) for i in instances)))
        except asyncio.CancelledError:
            # The log must still leave Running before the cancellation propagates
            result.status = RunStatus.FAILED
            result.error_message = CANCELLED_MESSAGE
            await asyncio.shield(self._finish(log, result, started_mono))
            raise

        result.success_count = sum(1 for r in result.instance_results if r.success)
        result.error_count = result.total_instances - result.success_count
        result.status = RunStatus.COMPLETED

        await self._finish(log, result, started_mono)
        return result

    async def run_for_instance(self, instance_name: str) -> InstanceResult:
        """
        Evaluate and persist a single instance outside any run.

        Raises:
            NotFoundError: instance not eligible for this collector
            InventoryError: inventory unavailable
        """
        instance = await self._provider.get_instance(instance_name, self.name)
        if instance is None or not self._spec.is_eligible(instance):
            raise NotFoundError(
                f"Instance {instance_name} is not eligible for collector {self.name}",
                context={"collector_name": self.name, "instance_name": instance_name},
            )

        config = await asyncio.to_thread(self._config_store.get_config, self.name)
        rules = await asyncio.to_thread(self._config_store.list_rules, self.name, True)
        return await self._process_instance(instance, config, rules, run_id=None)

    # --------------------------------------------------------
    # Scoring
    # --------------------------------------------------------

    def score_measurement(
        self,
        instance_name: str,
        measurement: Dict[str, float],
        rules: List[ThresholdRule],
        baseline: float,
    ) -> CategoryScore:
        """
        Evaluate a measurement and apply exceptions.

        An active exception forces the score to 100; the
        measurement itself is kept.
        """
        evaluation: EvaluationResult = evaluate_thresholds(measurement, rules, baseline=baseline)
        excepted = self._exceptions.find_active(self.name, instance_name)

        if excepted:
            entry = excepted[0]
            notes = (
                f"Suppressed by exception #{entry.id} ({entry.exception_type}"
                f"{': ' + entry.reason if entry.reason else ''}); "
                f"evaluated {evaluation.score:g}: {evaluation.notes()}"
            )
            return CategoryScore(
                instance_name=instance_name,
                collector_name=self.name,
                score=SUPPRESSED_SCORE,
                collected_at=self.clock.now(),
                measurement=dict(measurement),
                notes=notes,
                fired_rule=None,
                suppressed_by_exception=True,
            )

        return CategoryScore(
            instance_name=instance_name,
            collector_name=self.name,
            score=evaluation.score,
            collected_at=self.clock.now(),
            measurement=dict(measurement),
            notes=evaluation.notes(),
            fired_rule=evaluation.fired_rule_name,
        )

    # --------------------------------------------------------
    # Internals
    # --------------------------------------------------------

    async def _eligible_instances(self) -> List[InstanceInfo]:
        instances = await self._provider.get_instances(self.name)
        return [i for i in instances if self._spec.is_eligible(i)]

    async def _process_instance(
        self,
        instance: InstanceInfo,
        config: CollectorConfig,
        rules: List[ThresholdRule],
        run_id: Optional[int],
    ) -> InstanceResult:
        started = time.monotonic()
        name = instance.instance_name

        try:
            payload = await asyncio.wait_for(
                self._sampler.fetch(self.name, instance, config.timeout_seconds),
                timeout=config.timeout_seconds,
            )
            measurement = self._spec.measure(payload)
            score = await asyncio.to_thread(
                self.score_measurement, name, measurement, rules, config.baseline_score,
            )
            score.run_id = run_id
            await asyncio.to_thread(self._score_store.save_category_score, score)
        except asyncio.TimeoutError:
            error = f"Timed out after {config.timeout_seconds}s"
            logger.warning(f"[{self.name}] {name}: {error}")
            return InstanceResult(name, False, error=error, duration_ms=_elapsed_ms(started))
        except HealthEngineError as e:
            logger.warning(f"[{self.name}] {name}: {e.message}")
            return InstanceResult(name, False, error=e.message, duration_ms=_elapsed_ms(started))
        except Exception as e:
            logger.warning(f"[{self.name}] {name}: unexpected error: {e}", exc_info=True)
            error = f"Unexpected error: {e}"
            return InstanceResult(name, False, error=error, duration_ms=_elapsed_ms(started))

        return InstanceResult(
            instance_name=name,
            success=True,
            score=score.score,
            fired_rule=score.fired_rule,
            suppressed_by_exception=score.suppressed_by_exception,
            duration_ms=_elapsed_ms(started),
        )

    async def _finish(self, log: ExecutionLog, result: RunResult, started_mono: float) -> None:
        """Persist the terminal log state and the config's last-run fields."""
        self._active_log_id = None
        result.completed_at = self.clock.now()
        result.duration_ms = _elapsed_ms(started_mono)

        log.status = result.status
        log.completed_at = result.completed_at
        log.duration_ms = result.duration_ms
        log.total_instances = result.total_instances
        log.success_count = result.success_count
        log.error_count = result.error_count
        log.error_message = result.error_message

        failed = result.status == RunStatus.FAILED
        try:
            await asyncio.to_thread(self._config_store.complete_execution_log, log)
            await asyncio.to_thread(
                self._config_store.record_run_outcome,
                self.name,
                result.completed_at,
                result.duration_ms,
                result.success_count,
                result.error_message if failed else None,
            )
        except Exception as e:
            logger.error(f"[{self.name}] Could not record run outcome: {e}", exc_info=True)

        if failed:
            logger.error(
                f"[{self.name}] Run FAILED | log_id={log.id} | duration={result.duration_ms}ms | "
                f"error={result.error_message}"
            )
        else:
            logger.info(
                f"[{self.name}] Run completed | log_id={log.id} | instances={result.total_instances} | "
                f"success={result.success_count} | errors={result.error_count} | "
                f"duration={result.duration_ms}ms"
            )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


__all__ = [
    "SUPPRESSED_SCORE",
    "CANCELLED_MESSAGE",
    "InstanceResult",
    "RunResult",
    "Collector",
]
