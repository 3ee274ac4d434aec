"""
Tests for the Collector Orchestrator.

============================================================
PURPOSE
============================================================
Scheduling, single-flight, manual triggers and graceful stop.

TEST PRINCIPLES:
- At most one in-flight run per collector kind
- Manual triggers are rejected, never queued
- Stop drains in-flight runs, then cancels at the timeout
- Disabled kinds are never scheduled

============================================================
"""

import asyncio

import pytest

from collectors.base import CANCELLED_MESSAGE
from core.exceptions import CollectorNotFoundError, ConfigurationError
from health_scoring.config import EngineConfig
from health_scoring.consolidator import HealthScoreConsolidator
from health_scoring.models import CategoryScore, ExecutionLog, RunStatus, TriggerKind
from orchestrator import (
    CollectorOrchestrator,
    TimerState,
    TriggerOutcome,
    build_collectors,
    create_orchestrator,
)


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(
        schedule_refresh_seconds=3600,
        drain_timeout_seconds=5,
        consolidation_interval_seconds=3600,
    )


@pytest.fixture
def make_orchestrator(
    registry, config_store, score_store, exception_registry, provider, sampler, clock, engine_config,
):
    """Orchestrator over the shared fixtures; config overrides by keyword."""

    def _make(consolidate: bool = True, **overrides) -> CollectorOrchestrator:
        config = EngineConfig(**{**engine_config.__dict__, **overrides})
        collectors = build_collectors(
            registry, config_store, score_store, exception_registry, provider, sampler, clock,
        )
        consolidator = (
            HealthScoreConsolidator(config_store, score_store, config=config, clock=clock)
            if consolidate else None
        )
        return CollectorOrchestrator(
            collectors,
            config_store,
            consolidator=consolidator,
            config=config,
            clock=clock,
            correlation_id="health_test",
        )

    return _make


# =============================================================
# TEST: Manual Triggers
# =============================================================

class TestManualTrigger:
    """trigger_now semantics; no timers are running."""

    @pytest.mark.asyncio
    async def test_single_flight(self, make_orchestrator, sampler):
        """A second trigger while a run is in flight is rejected."""
        orchestrator = make_orchestrator()
        sampler.set_payload("CPU", {"p95_cpu_percent": 10.0})
        sampler.gate = asyncio.Event()

        assert await orchestrator.trigger_now("CPU") == TriggerOutcome.STARTED
        assert orchestrator.is_in_flight("CPU")
        assert await orchestrator.trigger_now("CPU") == TriggerOutcome.ALREADY_RUNNING

        sampler.gate.set()
        result = await orchestrator.wait_for_run("CPU")

        assert result.status == RunStatus.COMPLETED
        assert not orchestrator.is_in_flight("CPU")
        assert await orchestrator.trigger_now("CPU") == TriggerOutcome.STARTED
        await orchestrator.wait_for_run("CPU")

        status = next(s for s in orchestrator.get_statuses() if s.collector_name == "CPU")
        assert status.runs_dispatched == 2
        assert status.triggers_rejected == 1

    @pytest.mark.asyncio
    async def test_other_collectors_run_concurrently(self, make_orchestrator, sampler):
        """Single-flight is per kind, not global."""
        orchestrator = make_orchestrator()
        sampler.set_payload("CPU", {"p95_cpu_percent": 10.0})
        sampler.set_payload("Backups", {"max_hours_since_full_backup": 1})
        sampler.gate = asyncio.Event()

        assert await orchestrator.trigger_now("CPU") == TriggerOutcome.STARTED
        assert await orchestrator.trigger_now("Backups") == TriggerOutcome.STARTED

        sampler.gate.set()
        await orchestrator.wait_for_run("CPU")
        await orchestrator.wait_for_run("Backups")

    @pytest.mark.asyncio
    async def test_manual_run_is_tagged(self, make_orchestrator, config_store, sampler):
        """Manual runs are logged as Manual with their author."""
        orchestrator = make_orchestrator()
        sampler.set_payload("CPU", {"p95_cpu_percent": 10.0})

        await orchestrator.trigger_now("CPU", triggered_by="dba")
        result = await orchestrator.wait_for_run("CPU")

        assert result.trigger == TriggerKind.MANUAL
        log = config_store.recent_execution_logs("CPU")[0]
        assert log.trigger == TriggerKind.MANUAL
        assert log.triggered_by == "dba"

    @pytest.mark.asyncio
    async def test_disabled_collector_rejected(self, make_orchestrator, enable_only, sampler):
        """A disabled collector cannot be triggered."""
        enable_only("Memory")
        orchestrator = make_orchestrator()

        assert await orchestrator.trigger_now("CPU") == TriggerOutcome.DISABLED
        assert sampler.calls == []
        assert await orchestrator.wait_for_run("CPU") is None

    @pytest.mark.asyncio
    async def test_unknown_collector_raises(self, make_orchestrator):
        """Unknown kinds raise CollectorNotFoundError."""
        orchestrator = make_orchestrator()
        with pytest.raises(CollectorNotFoundError):
            await orchestrator.trigger_now("Replication")


# =============================================================
# TEST: Scheduling
# =============================================================

class TestScheduling:
    """Timers and the schedule supervisor."""

    @pytest.mark.asyncio
    async def test_enabled_kinds_are_scheduled(self, make_orchestrator, enable_only, sampler, config_store, eventually):
        """Each enabled kind gets a timer that ticks immediately."""
        enable_only("CPU", "Memory")
        sampler.set_payload("CPU", {"p95_cpu_percent": 10.0})
        sampler.set_payload("Memory", {"page_life_expectancy": 900})
        orchestrator = make_orchestrator()

        await orchestrator.start()
        try:
            assert orchestrator.is_scheduled("CPU")
            assert orchestrator.is_scheduled("Memory")
            assert not orchestrator.is_scheduled("IO")

            await eventually(lambda: (
                len(config_store.recent_execution_logs("CPU")) == 1
                and len(config_store.recent_execution_logs("Memory")) == 1
                and not orchestrator.is_in_flight("CPU")
                and not orchestrator.is_in_flight("Memory")
            ))
            log = config_store.recent_execution_logs("CPU")[0]
            assert log.trigger == TriggerKind.SCHEDULED
            assert config_store.recent_execution_logs("IO") == []
        finally:
            await orchestrator.stop()

        statuses = {s.collector_name: s for s in orchestrator.get_statuses()}
        assert statuses["CPU"].timer_state == TimerState.STOPPED
        assert statuses["IO"].timer_state == TimerState.NOT_STARTED

    @pytest.mark.asyncio
    async def test_refresh_starts_newly_enabled(self, make_orchestrator, enable_only, config_store, sampler):
        """Enabling a kind at runtime gives it a timer on refresh."""
        enable_only("CPU")
        sampler.set_payload("CPU", {"p95_cpu_percent": 10.0})
        sampler.set_payload("Memory", {"page_life_expectancy": 900})
        orchestrator = make_orchestrator()

        await orchestrator.start()
        try:
            config = config_store.get_config("Memory")
            config.enabled = True
            config_store.save_config(config)

            assert await orchestrator.refresh_schedule() == ["Memory"]
            assert orchestrator.is_scheduled("Memory")
            assert await orchestrator.refresh_schedule() == []
        finally:
            await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_disabling_stops_timer(self, make_orchestrator, enable_only, config_store, sampler, eventually):
        """A timer exits on its next tick once its kind is disabled."""
        enable_only("CPU")
        config = config_store.get_config("CPU")
        config.interval_seconds = 1
        config_store.save_config(config)
        sampler.set_payload("CPU", {"p95_cpu_percent": 10.0})
        orchestrator = make_orchestrator()

        await orchestrator.start()
        try:
            await eventually(lambda: len(config_store.recent_execution_logs("CPU")) == 1)
            config = config_store.get_config("CPU")
            config.enabled = False
            config_store.save_config(config)

            await eventually(lambda: not orchestrator.is_scheduled("CPU"), timeout=3.0)
            status = next(s for s in orchestrator.get_statuses() if s.collector_name == "CPU")
            assert status.timer_state == TimerState.DISABLED
            assert len(config_store.recent_execution_logs("CPU")) == 1
        finally:
            await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_start_abandons_stale_runs(self, make_orchestrator, enable_only, config_store, clock):
        """Runs left Running by a previous process are failed on start."""
        enable_only()
        stale = config_store.start_execution_log(ExecutionLog(collector_name="CPU", started_at=clock.now()))
        orchestrator = make_orchestrator(consolidate=False)

        await orchestrator.start()
        await orchestrator.stop()

        log = config_store.recent_execution_logs("CPU")[0]
        assert log.id == stale.id
        assert log.status == RunStatus.FAILED
        assert log.error_message.startswith("Abandoned")

    @pytest.mark.asyncio
    async def test_start_keeps_live_run(self, make_orchestrator, enable_only, config_store, sampler, clock):
        """A run triggered before start keeps its Running log until it finishes."""
        enable_only("CPU")
        sampler.set_payload("CPU", {"p95_cpu_percent": 10.0})
        sampler.gate = asyncio.Event()
        stale = config_store.start_execution_log(ExecutionLog(collector_name="Memory", started_at=clock.now()))
        orchestrator = make_orchestrator(consolidate=False)

        assert await orchestrator.trigger_now("CPU") == TriggerOutcome.STARTED
        await asyncio.sleep(0.05)
        await orchestrator.start()
        try:
            running = config_store.running_execution_logs()
            assert [log.collector_name for log in running] == ["CPU"]
            assert config_store.recent_execution_logs("Memory")[0].id == stale.id
            assert config_store.recent_execution_logs("Memory")[0].status == RunStatus.FAILED

            sampler.gate.set()
            result = await orchestrator.wait_for_run("CPU")
            assert result.status == RunStatus.COMPLETED
            assert config_store.recent_execution_logs("CPU")[0].status == RunStatus.COMPLETED
        finally:
            sampler.gate.set()
            await orchestrator.stop()


# =============================================================
# TEST: Graceful Stop
# =============================================================

class TestStop:
    """Drain, cancel and post-stop behavior."""

    @pytest.mark.asyncio
    async def test_stop_drains_in_flight_run(self, make_orchestrator, enable_only, config_store, sampler, eventually):
        """An in-flight run completes before stop returns."""
        enable_only("CPU")
        sampler.set_payload("CPU", {"p95_cpu_percent": 10.0})
        sampler.gate = asyncio.Event()
        orchestrator = make_orchestrator()

        await orchestrator.start()
        await eventually(lambda: sampler.in_flight == 2)

        stopping = asyncio.create_task(orchestrator.stop())
        await asyncio.sleep(0.05)
        assert not stopping.done()

        sampler.gate.set()
        await stopping

        assert not orchestrator.is_running
        log = config_store.recent_execution_logs("CPU")[0]
        assert log.status == RunStatus.COMPLETED
        assert log.success_count == 2

    @pytest.mark.asyncio
    async def test_drain_timeout_cancels(self, make_orchestrator, enable_only, config_store, sampler, eventually):
        """Runs still in flight at the drain timeout are cancelled and recorded as Failed."""
        enable_only("CPU")
        sampler.set_payload("CPU", {"p95_cpu_percent": 10.0})
        sampler.gate = asyncio.Event()
        orchestrator = make_orchestrator(drain_timeout_seconds=0)

        await orchestrator.start()
        await eventually(lambda: sampler.in_flight == 2)
        await orchestrator.stop()

        assert not orchestrator.is_in_flight("CPU")
        assert sampler.in_flight == 0
        log = config_store.recent_execution_logs("CPU")[0]
        assert log.status == RunStatus.FAILED
        assert log.error_message == CANCELLED_MESSAGE
        assert log.completed_at is not None
        assert config_store.running_execution_logs() == []
        assert config_store.get_config("CPU").last_error == CANCELLED_MESSAGE

    @pytest.mark.asyncio
    async def test_triggers_rejected_after_stop(self, make_orchestrator, enable_only):
        """No new runs are accepted once stopping."""
        enable_only("CPU")
        orchestrator = make_orchestrator(consolidate=False)

        await orchestrator.start()
        await orchestrator.stop()

        assert await orchestrator.trigger_now("CPU") == TriggerOutcome.SHUTTING_DOWN

    @pytest.mark.asyncio
    async def test_run_forever_returns_on_request_stop(self, make_orchestrator, enable_only, eventually):
        """request_stop unblocks run_forever, which then drains."""
        enable_only()
        orchestrator = make_orchestrator(consolidate=False)

        runner = asyncio.create_task(orchestrator.run_forever())
        await eventually(lambda: orchestrator.is_running)
        orchestrator.request_stop()
        await asyncio.wait_for(runner, timeout=2.0)

        assert not orchestrator.is_running


# =============================================================
# TEST: Consolidation
# =============================================================

class TestConsolidation:
    """Consolidator timer and out-of-band cycles."""

    @pytest.mark.asyncio
    async def test_consolidation_timer_runs_cycle(
        self, make_orchestrator, enable_only, sampler, score_store, clock, eventually,
    ):
        """The consolidator runs on start and scores stored categories."""
        enable_only("CPU")
        sampler.gate = asyncio.Event()
        score_store.save_category_score(CategoryScore("SQL01", "CPU", 80.0, clock.now()))
        orchestrator = make_orchestrator(drain_timeout_seconds=0)

        await orchestrator.start()
        try:
            await eventually(lambda: orchestrator.consolidator.last_result is not None)
        finally:
            await orchestrator.stop()

        assert score_store.latest_final_score("SQL01").final_score == 80.0

    @pytest.mark.asyncio
    async def test_run_consolidation_now(self, make_orchestrator, score_store, clock):
        """An out-of-band cycle works without start()."""
        score_store.save_category_score(CategoryScore("SQL01", "CPU", 95.0, clock.now()))
        orchestrator = make_orchestrator()

        result = await orchestrator.run_consolidation_now()

        assert result.instances_scored == 1

    @pytest.mark.asyncio
    async def test_run_consolidation_without_consolidator(self, make_orchestrator):
        """Without a consolidator an out-of-band cycle is a configuration error."""
        orchestrator = make_orchestrator(consolidate=False)
        with pytest.raises(ConfigurationError):
            await orchestrator.run_consolidation_now()


# =============================================================
# TEST: Construction and Status
# =============================================================

class TestConstruction:
    """Factory and status snapshot."""

    def test_invalid_config_rejected(self, make_orchestrator):
        """An invalid engine config is refused at construction."""
        with pytest.raises(ConfigurationError):
            make_orchestrator(schedule_refresh_seconds=0)

    def test_create_orchestrator(
        self, registry, config_store, score_store, exception_registry, provider, sampler, clock, engine_config,
    ):
        """The factory wires one collector per kind plus a consolidator."""
        orchestrator = create_orchestrator(
            registry, config_store, score_store, exception_registry, provider, sampler,
            config=engine_config, clock=clock, correlation_id="health_factory",
        )
        assert orchestrator.collector_names == registry.names()
        assert orchestrator.consolidator is not None

        status = orchestrator.get_status().to_dict()
        assert status["running"] is False
        assert status["correlation_id"] == "health_factory"
        assert len(status["collectors"]) == 13
        assert status["consolidator"]["running"] is False
