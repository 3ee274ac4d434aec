"""
Orchestrator - Core.

============================================================
RESPONSIBILITY
============================================================
Controls WHEN collectors and the consolidator run.

- One independent timer per enabled collector kind
- One timer for the health-score consolidator
- A supervisor tick that starts timers for newly enabled kinds
- Single-flight: at most one in-flight run per collector kind
- Manual triggers outside the schedule (tagged Manual)
- Graceful stop: no new runs, in-flight runs drain
- Handles signals (SIGINT, SIGTERM)

============================================================
ARCHITECTURAL POSITION
============================================================
- This orchestrator has NO scoring logic
- It never talks to instances
- Collectors and the consolidator communicate only
  through the score store

============================================================
"""

import asyncio
import json
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from collectors.base import Collector, RunResult
from collectors.provider import InstanceProvider
from collectors.registry import CollectorRegistry
from collectors.sampler import MetricSampler
from core.clock import ClockFactory, ClockProtocol
from core.exceptions import CollectorNotFoundError, ConfigurationError
from health_scoring.config import EngineConfig
from health_scoring.consolidator import ConsolidationResult, HealthScoreConsolidator
from health_scoring.exception_registry import ExceptionRegistry
from health_scoring.models import TriggerKind
from health_scoring.stores import ConfigStore, ScoreStore

from .models import CollectorStatus, OrchestratorStatus, TimerState, TriggerOutcome


# ============================================================
# LOGGING SETUP
# ============================================================

class _JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def __init__(self, correlation_id: Optional[str] = None):
        super().__init__()
        self._correlation_id = correlation_id or ""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": self._correlation_id,
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(
    level: str = "INFO",
    log_format: str = "text",
    correlation_id: Optional[str] = None,
) -> logging.Logger:
    """
    Set up process-wide logging.

    Args:
        level: Log level
        log_format: Output format (json or text)
        correlation_id: Correlation ID for tracing

    Returns:
        Configured logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter: logging.Formatter = _JsonFormatter(correlation_id)
    else:
        formatter = logging.Formatter(
            f"%(asctime)s | %(levelname)-8s | %(name)s | {correlation_id or ''} | %(message)s"
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    return logging.getLogger("orchestrator")


def make_correlation_id(prefix: str = "health") -> str:
    return f"{prefix}_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}"


logger = logging.getLogger(__name__)


# ============================================================
# ORCHESTRATOR
# ============================================================

class CollectorOrchestrator:
    """
    Per-collector scheduler.

    Every timer, run and consolidation cycle is an asyncio task
    on the running loop. Single-flight is enforced by checking
    and registering the in-flight task without an intervening
    await.
    """

    def __init__(
        self,
        collectors: Iterable[Collector],
        config_store: ConfigStore,
        consolidator: Optional[HealthScoreConsolidator] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
        correlation_id: Optional[str] = None,
    ):
        self._collectors: Dict[str, Collector] = {c.name: c for c in collectors}
        self._config_store = config_store
        self._consolidator = consolidator
        self._config = config or EngineConfig()
        self._clock = clock
        self._correlation_id = correlation_id

        errors = self._config.validate()
        if errors:
            raise ConfigurationError(f"Invalid configuration: {', '.join(errors)}")

        self._statuses: Dict[str, CollectorStatus] = {
            name: CollectorStatus(collector_name=name) for name in self._collectors
        }
        self._timers: Dict[str, asyncio.Task] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._consolidation_task: Optional[asyncio.Task] = None
        self._supervisor_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

        self._running = False
        self._stopping = False
        self._started_at: Optional[datetime] = None

    # --------------------------------------------------------
    # Properties
    # --------------------------------------------------------

    @property
    def clock(self) -> ClockProtocol:
        return self._clock or ClockFactory.get_clock()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def collector_names(self) -> List[str]:
        return list(self._collectors)

    @property
    def consolidator(self) -> Optional[HealthScoreConsolidator]:
        return self._consolidator

    def get_collector(self, collector_name: str) -> Collector:
        collector = self._collectors.get(collector_name)
        if collector is None:
            raise CollectorNotFoundError(collector_name, available=self.collector_names)
        return collector

    def is_in_flight(self, collector_name: str) -> bool:
        task = self._in_flight.get(collector_name)
        return task is not None and not task.done()

    def is_scheduled(self, collector_name: str) -> bool:
        task = self._timers.get(collector_name)
        return task is not None and not task.done()

    def _live_runs(self) -> Tuple[Set[int], Set[str]]:
        """
        Logs of runs in flight in this process.

        Collectors whose run has not recorded its log yet are
        returned by name instead.
        """
        log_ids: Set[int] = set()
        collectors: Set[str] = set()
        for name, task in self._in_flight.items():
            if task.done():
                continue
            log_id = self._collectors[name].active_log_id
            if log_id is None:
                collectors.add(name)
            else:
                log_ids.add(log_id)
        return log_ids, collectors

    # --------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------

    async def start(self) -> None:
        """Start timers for every enabled collector plus the consolidator."""
        if self._running:
            logger.warning("Orchestrator already running")
            return

        logger.info("=== ORCHESTRATOR STARTUP SEQUENCE ===")
        self._stop_event = asyncio.Event()
        self._stopping = False

        live_log_ids, busy_collectors = self._live_runs()
        abandoned = await asyncio.to_thread(
            self._config_store.abandon_running_logs,
            self.clock.now(),
            "Abandoned: process restarted while the run was in flight",
            live_log_ids,
            busy_collectors,
        )
        if abandoned:
            logger.warning(f"Marked {abandoned} stale Running execution log(s) as Failed")

        self._running = True
        self._started_at = self.clock.now()

        await self.refresh_schedule()

        if self._consolidator is not None:
            self._consolidation_task = asyncio.create_task(
                self._consolidation_loop(), name="timer:consolidator"
            )
        self._supervisor_task = asyncio.create_task(self._supervisor_loop(), name="timer:supervisor")

        logger.info(
            f"=== ORCHESTRATOR STARTUP COMPLETE === | collectors={len(self._collectors)} | "
            f"scheduled={sum(1 for n in self._collectors if self.is_scheduled(n))}"
        )

    def request_stop(self) -> None:
        """Ask every timer to exit at its next wait."""
        self._stopping = True
        if self._stop_event is not None:
            self._stop_event.set()

    async def stop(self) -> None:
        """
        Stop gracefully.

        Timers exit at their next wait; in-flight runs and the
        current consolidation cycle are awaited up to the drain
        timeout, then cancelled.
        """
        if not self._running:
            return

        logger.info("=== ORCHESTRATOR SHUTDOWN SEQUENCE ===")
        self.request_stop()

        tasks = [t for t in self._timers.values() if not t.done()]
        tasks.extend(t for t in self._in_flight.values() if not t.done())
        for task in (self._consolidation_task, self._supervisor_task):
            if task is not None and not task.done():
                tasks.append(task)

        if tasks:
            logger.info(f"Draining {len(tasks)} task(s) | timeout={self._config.drain_timeout_seconds}s")
            _, pending = await asyncio.wait(tasks, timeout=self._config.drain_timeout_seconds)
            if pending:
                logger.warning(
                    f"Drain timeout reached; cancelling {len(pending)} task(s): "
                    f"{', '.join(t.get_name() for t in pending)}"
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        self._running = False
        logger.info("=== ORCHESTRATOR SHUTDOWN COMPLETE ===")

    async def run_forever(self) -> None:
        """Start, then block until a stop is requested (signal or caller)."""
        await self.start()
        self._install_signal_handlers()
        try:
            await self._stop_event.wait()
        finally:
            self._restore_signal_handlers()
            await self.stop()

    # --------------------------------------------------------
    # Triggers
    # --------------------------------------------------------

    async def trigger_now(
        self,
        collector_name: str,
        triggered_by: Optional[str] = None,
    ) -> TriggerOutcome:
        """
        Request an out-of-schedule run.

        Rejected (not queued) when the collector is disabled, a run
        is already in flight, or the orchestrator is stopping.

        Raises:
            CollectorNotFoundError: unknown collector kind
        """
        self.get_collector(collector_name)

        if self._stopping:
            logger.warning(f"[{collector_name}] Manual trigger rejected: orchestrator is stopping")
            return TriggerOutcome.SHUTTING_DOWN

        config = await asyncio.to_thread(self._config_store.get_config, collector_name)
        if not config.enabled:
            logger.warning(f"[{collector_name}] Manual trigger rejected: collector is disabled")
            self._statuses[collector_name].triggers_rejected += 1
            return TriggerOutcome.DISABLED

        return self._dispatch(collector_name, TriggerKind.MANUAL, triggered_by)

    async def wait_for_run(self, collector_name: str) -> Optional[RunResult]:
        """Await the in-flight run of a collector, if any."""
        task = self._in_flight.get(collector_name)
        if task is None:
            return None
        return await asyncio.shield(task)

    async def run_consolidation_now(self) -> ConsolidationResult:
        """
        Run one consolidation cycle out of band.

        Waits for a cycle already in progress, then runs a fresh one.
        """
        if self._consolidator is None:
            raise ConfigurationError("No consolidator is configured")
        logger.info("Consolidation requested out of band")
        return await self._consolidator.run_cycle()

    def _dispatch(
        self,
        collector_name: str,
        trigger: TriggerKind,
        triggered_by: Optional[str],
    ) -> TriggerOutcome:
        status = self._statuses[collector_name]
        if self._stopping:
            return TriggerOutcome.SHUTTING_DOWN
        if self.is_in_flight(collector_name):
            status.triggers_rejected += 1
            logger.warning(
                f"[{collector_name}] {trigger.value} trigger rejected: a run is already in flight"
            )
            return TriggerOutcome.ALREADY_RUNNING

        task = asyncio.create_task(
            self._run_collector(collector_name, trigger, triggered_by),
            name=f"run:{collector_name}",
        )
        self._in_flight[collector_name] = task
        status.running = True
        status.runs_dispatched += 1
        status.last_run_started_at = self.clock.now()
        return TriggerOutcome.STARTED

    async def _run_collector(
        self,
        collector_name: str,
        trigger: TriggerKind,
        triggered_by: Optional[str],
    ) -> Optional[RunResult]:
        status = self._statuses[collector_name]
        try:
            result = await self._collectors[collector_name].run(trigger=trigger, triggered_by=triggered_by)
            status.last_outcome = result.to_dict()
            return result
        except Exception as e:
            logger.error(f"[{collector_name}] Run raised unexpectedly: {e}", exc_info=True)
            status.last_outcome = {"status": "Failed", "error_message": str(e)}
            return None
        finally:
            status.running = False
            if self._in_flight.get(collector_name) is asyncio.current_task():
                del self._in_flight[collector_name]

    # --------------------------------------------------------
    # Timers
    # --------------------------------------------------------

    async def refresh_schedule(self) -> List[str]:
        """Start timers for enabled collectors that have none. Returns names started."""
        if not self._running or self._stopping:
            return []

        try:
            configs = await asyncio.to_thread(self._config_store.list_configs)
        except Exception as e:
            logger.error(f"Could not read collector configuration: {e}", exc_info=True)
            return []

        started = []
        for config in configs:
            name = config.collector_name
            if name not in self._collectors:
                continue
            status = self._statuses[name]
            status.enabled = config.enabled
            status.interval_seconds = config.interval_seconds
            if config.enabled and not self.is_scheduled(name):
                self._timers[name] = asyncio.create_task(self._collector_loop(name), name=f"timer:{name}")
                started.append(name)

        if started:
            logger.info(f"Timers started: {', '.join(started)}")
        return started

    async def _collector_loop(self, collector_name: str) -> None:
        """
        Independent timer for one collector.

        Ticks immediately, then every interval_seconds. The config
        is re-read each tick so disabling or re-timing takes effect
        on the next tick; an in-flight run is never cancelled.
        """
        status = self._statuses[collector_name]
        status.timer_state = TimerState.SCHEDULED

        try:
            while not self._stop_event.is_set():
                try:
                    config = await asyncio.to_thread(self._config_store.get_config, collector_name)
                except Exception as e:
                    logger.error(f"[{collector_name}] Could not read config: {e}", exc_info=True)
                    if await self._wait(self._config.schedule_refresh_seconds):
                        break
                    continue

                status.enabled = config.enabled
                status.interval_seconds = config.interval_seconds
                if not config.enabled:
                    logger.info(f"[{collector_name}] Collector disabled; timer stopped")
                    status.timer_state = TimerState.DISABLED
                    return

                status.last_tick_at = self.clock.now()
                self._dispatch(collector_name, TriggerKind.SCHEDULED, None)

                if await self._wait(config.interval_seconds):
                    break

            status.timer_state = TimerState.STOPPED
        finally:
            if self._timers.get(collector_name) is asyncio.current_task():
                del self._timers[collector_name]

    async def _consolidation_loop(self) -> None:
        delay = self._config.consolidation_startup_delay_seconds
        if delay > 0 and await self._wait(delay):
            return

        while not self._stop_event.is_set():
            try:
                await self._consolidator.run_cycle()
            except Exception as e:
                logger.error(f"Consolidation cycle failed: {e}", exc_info=True)

            if await self._wait(self._config.consolidation_interval_seconds):
                return

    async def _supervisor_loop(self) -> None:
        while not await self._wait(self._config.schedule_refresh_seconds):
            await self.refresh_schedule()

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if a stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    # --------------------------------------------------------
    # Signal Handlers
    # --------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        """Install signal handlers for graceful shutdown."""
        if sys.platform == "win32":
            signal.signal(signal.SIGINT, self._signal_handler)
            return

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._on_signal, sig)

    def _restore_signal_handlers(self) -> None:
        if sys.platform == "win32":
            signal.signal(signal.SIGINT, signal.default_int_handler)
            return

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    def _signal_handler(self, signum: int, frame: Any) -> None:
        """Synchronous signal handler (Windows)."""
        logger.info(f"Received signal {signum}")
        self._stop_event.get_loop().call_soon_threadsafe(self.request_stop)

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received signal {sig.name}")
        self.request_stop()

    # --------------------------------------------------------
    # Status
    # --------------------------------------------------------

    def get_statuses(self) -> List[CollectorStatus]:
        """Per-collector scheduling status in registration order."""
        for name, status in self._statuses.items():
            status.running = self.is_in_flight(name)
            if not self.is_scheduled(name) and status.timer_state == TimerState.SCHEDULED:
                status.timer_state = TimerState.STOPPED
        return list(self._statuses.values())

    def get_status(self) -> OrchestratorStatus:
        return OrchestratorStatus(
            running=self._running,
            stopping=self._stopping,
            started_at=self._started_at,
            correlation_id=self._correlation_id,
            collectors=self.get_statuses(),
            consolidator=self._consolidator.get_status() if self._consolidator else None,
        )


# ============================================================
# ORCHESTRATOR FACTORY
# ============================================================

def build_collectors(
    registry: CollectorRegistry,
    config_store: ConfigStore,
    score_store: ScoreStore,
    exception_registry: ExceptionRegistry,
    instance_provider: InstanceProvider,
    sampler: MetricSampler,
    clock: Optional[ClockProtocol] = None,
) -> List[Collector]:
    """One generic Collector per registered kind, in declaration order."""
    return [
        Collector(
            spec=spec,
            config_store=config_store,
            score_store=score_store,
            exception_registry=exception_registry,
            instance_provider=instance_provider,
            sampler=sampler,
            clock=clock,
        )
        for spec in registry.specs()
    ]


def create_orchestrator(
    registry: CollectorRegistry,
    config_store: ConfigStore,
    score_store: ScoreStore,
    exception_registry: ExceptionRegistry,
    instance_provider: InstanceProvider,
    sampler: MetricSampler,
    config: Optional[EngineConfig] = None,
    clock: Optional[ClockProtocol] = None,
    correlation_id: Optional[str] = None,
) -> CollectorOrchestrator:
    """
    Factory function to create an orchestrator with its consolidator.

    Args:
        registry: Collector kinds to schedule
        config_store: Collector configuration, rules and run logs
        score_store: Category/final scores and transitions
        exception_registry: Active suppressions
        instance_provider: Instance inventory
        sampler: Raw metric transport
        config: Engine configuration (or load from environment)
        clock: Clock override for tests
        correlation_id: Logging correlation id (default: generated)

    Returns:
        Configured CollectorOrchestrator instance
    """
    if config is None:
        config = EngineConfig.from_env()

    collectors = build_collectors(
        registry, config_store, score_store, exception_registry, instance_provider, sampler, clock,
    )
    consolidator = HealthScoreConsolidator(config_store, score_store, config=config, clock=clock)
    return CollectorOrchestrator(
        collectors,
        config_store,
        consolidator=consolidator,
        config=config,
        clock=clock,
        correlation_id=correlation_id or make_correlation_id(config.correlation_id_prefix),
    )


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "CollectorOrchestrator",
    "build_collectors",
    "create_orchestrator",
    "make_correlation_id",
    "setup_logging",
]
