"""
Tests for the Store Implementations.

============================================================
PURPOSE
============================================================
The SQL stores and the in-memory stores implement the same
interfaces; every test here runs against both.

TEST PRINCIPLES:
- Same inputs, same observable results on both backends
- Missing entities raise the domain NotFound errors
- Timestamps come back timezone-aware (UTC)

============================================================
"""

from dataclasses import dataclass
from datetime import timedelta

import pytest

from core.exceptions import (
    CollectorNotFoundError,
    ExceptionNotFoundError,
    ThresholdRuleNotFoundError,
)
from database import (
    REQUIRED_TABLES,
    SqlConfigStore,
    SqlExceptionStore,
    SqlScoreStore,
    create_database_engine,
    create_session_factory,
    get_table_row_counts,
    initialize_database,
    missing_tables,
)
from health_scoring.models import (
    CategoryContribution,
    CategoryScore,
    CollectorConfig,
    CollectorException,
    ExecutionLog,
    FinalHealthScore,
    HealthStatus,
    RuleAction,
    RuleOperator,
    RunStatus,
    ThresholdRule,
    TransitionEvent,
    TriggerKind,
)
from health_scoring.stores import InMemoryConfigStore, InMemoryExceptionStore, InMemoryScoreStore


@dataclass
class Stores:
    configs: object
    exceptions: object
    scores: object


@pytest.fixture(params=["memory", "sql"])
def stores(request):
    if request.param == "memory":
        yield Stores(InMemoryConfigStore(), InMemoryExceptionStore(), InMemoryScoreStore())
        return

    engine = create_database_engine("sqlite://")
    initialize_database(engine)
    session_factory = create_session_factory(engine)
    yield Stores(
        SqlConfigStore(session_factory),
        SqlExceptionStore(session_factory),
        SqlScoreStore(session_factory),
    )
    engine.dispose()


def make_rule(group="P95CPU", threshold=90.0, order=10, name="cpu_high", active=True):
    return ThresholdRule(
        collector_name="CPU",
        group=group,
        operator=RuleOperator.GT,
        threshold_value=threshold,
        action=RuleAction.PENALTY,
        result_value=30.0,
        evaluation_order=order,
        name=name,
        is_active=active,
    )


# =============================================================
# TEST: Engine
# =============================================================

class TestEngine:
    """Schema creation on a fresh database."""

    def test_initialize_creates_every_table(self):
        """All required tables exist and start empty."""
        engine = create_database_engine("sqlite://")
        try:
            initialize_database(engine)
            assert missing_tables(engine) == []
            counts = get_table_row_counts(engine)
            assert set(counts) == set(REQUIRED_TABLES)
            assert all(count == 0 for count in counts.values())
        finally:
            engine.dispose()

    def test_missing_tables_before_init(self):
        """A bare database reports every table missing."""
        engine = create_database_engine("sqlite://")
        try:
            assert missing_tables(engine) == REQUIRED_TABLES
        finally:
            engine.dispose()


# =============================================================
# TEST: Config Store
# =============================================================

class TestConfigStore:
    """Configs, rules and execution logs."""

    def test_config_round_trip(self, stores):
        """Saved configs read back field for field."""
        stores.configs.save_config(CollectorConfig("CPU", display_name="CPU", weight=12.0, execution_order=1))
        stores.configs.save_config(CollectorConfig("Backups", weight=23.0, execution_order=5))

        config = stores.configs.get_config("CPU")
        assert config.weight == 12.0
        assert config.display_name == "CPU"
        assert [c.collector_name for c in stores.configs.list_configs()] == ["CPU", "Backups"]
        assert stores.configs.has_config("Backups")
        assert not stores.configs.has_config("Waits")

    def test_missing_config_raises(self, stores):
        """Unknown collectors raise CollectorNotFoundError."""
        with pytest.raises(CollectorNotFoundError):
            stores.configs.get_config("Waits")

    def test_record_run_outcome(self, stores, clock):
        """A failed run records last_error; a later success clears it."""
        stores.configs.save_config(CollectorConfig("CPU"))

        stores.configs.record_run_outcome("CPU", clock.now(), 1200, 0, error="Inventory down")
        failed = stores.configs.get_config("CPU")
        assert failed.last_error == "Inventory down"
        assert failed.last_error_at == clock.now()

        clock.advance(minutes=5)
        stores.configs.record_run_outcome("CPU", clock.now(), 800, 40)
        ok = stores.configs.get_config("CPU")
        assert ok.last_error is None
        assert ok.last_error_at is None
        assert ok.last_run_at == clock.now()
        assert ok.last_instances_processed == 40

    def test_rules_ordering_and_filtering(self, stores):
        """Rules list by group then evaluation order; inactive rules are filterable."""
        stores.configs.save_rule(make_rule(order=20, name="cpu_critical", threshold=95))
        stores.configs.save_rule(make_rule(order=10, name="cpu_high"))
        stores.configs.save_rule(make_rule(group="RunnableTasks", name="runnable", threshold=1, active=False))

        names = [r.name for r in stores.configs.list_rules("CPU")]
        assert names == ["cpu_high", "cpu_critical", "runnable"]
        assert [r.name for r in stores.configs.list_rules("CPU", active_only=True)] == ["cpu_high", "cpu_critical"]
        assert stores.configs.list_rules("Memory") == []

    def test_rule_update_and_missing(self, stores):
        """Rules update in place by id; unknown ids raise."""
        saved = stores.configs.save_rule(make_rule())
        saved.threshold_value = 85.0
        stores.configs.save_rule(saved)

        reloaded = stores.configs.get_rule(saved.id)
        assert reloaded.threshold_value == 85.0
        assert reloaded.default_value == 90.0
        assert reloaded.operator == RuleOperator.GT
        assert reloaded.action == RuleAction.PENALTY

        with pytest.raises(ThresholdRuleNotFoundError):
            stores.configs.get_rule(9999)
        saved.id = 9999
        with pytest.raises(ThresholdRuleNotFoundError):
            stores.configs.save_rule(saved)

    def test_reset_rules(self, stores):
        """Reset restores thresholds, reactivates and recreates missing defaults."""
        saved = stores.configs.save_rule(make_rule())
        saved.threshold_value = 50.0
        saved.is_active = False
        stores.configs.save_rule(saved)

        rules = stores.configs.reset_rules("CPU", [make_rule(), make_rule(order=20, name="cpu_critical", threshold=95)])

        by_name = {r.name: r for r in rules}
        assert by_name["cpu_high"].threshold_value == 90.0
        assert by_name["cpu_high"].is_active
        assert by_name["cpu_high"].id == saved.id
        assert by_name["cpu_critical"].threshold_value == 95.0

    def test_reset_restores_operator_and_action(self, stores):
        """Edited operator, action and result value go back to the shipped rule."""
        saved = stores.configs.save_rule(make_rule())
        saved.operator = RuleOperator.LT
        saved.action = RuleAction.SCORE_OVERRIDE
        saved.result_value = 0.0
        saved.evaluation_order = 99
        stores.configs.save_rule(saved)

        restored = stores.configs.reset_rules("CPU", [make_rule()])[0]

        assert restored.id == saved.id
        assert restored.operator == RuleOperator.GT
        assert restored.action == RuleAction.PENALTY
        assert restored.result_value == 30.0
        assert restored.evaluation_order == 10
        assert restored.threshold_value == 90.0

    def test_execution_log_lifecycle(self, stores, clock):
        """Logs start Running, complete, and list newest first."""
        first = stores.configs.start_execution_log(ExecutionLog("CPU", started_at=clock.now()))
        clock.advance(minutes=5)
        second = stores.configs.start_execution_log(
            ExecutionLog("CPU", started_at=clock.now(), trigger=TriggerKind.MANUAL, triggered_by="dba")
        )

        first.status = RunStatus.COMPLETED
        first.completed_at = clock.now()
        first.success_count = 3
        stores.configs.complete_execution_log(first)

        recent = stores.configs.recent_execution_logs("CPU")
        assert [log.id for log in recent] == [second.id, first.id]
        assert recent[0].trigger == TriggerKind.MANUAL
        assert recent[0].triggered_by == "dba"
        assert recent[1].status == RunStatus.COMPLETED
        assert recent[1].success_count == 3
        assert [log.id for log in stores.configs.running_execution_logs()] == [second.id]

    def test_abandon_running_logs(self, stores, clock):
        """Running logs are failed with the given reason."""
        stores.configs.start_execution_log(ExecutionLog("CPU", started_at=clock.now()))
        stores.configs.start_execution_log(ExecutionLog("Memory", started_at=clock.now()))

        assert stores.configs.abandon_running_logs(clock.now(), "Abandoned: restart") == 2

        assert stores.configs.running_execution_logs() == []
        log = stores.configs.recent_execution_logs("Memory")[0]
        assert log.status == RunStatus.FAILED
        assert log.error_message == "Abandoned: restart"

    def test_abandon_skips_live_runs(self, stores, clock):
        """Excluded log ids and collectors stay Running."""
        live = stores.configs.start_execution_log(ExecutionLog("CPU", started_at=clock.now()))
        starting = stores.configs.start_execution_log(ExecutionLog("Memory", started_at=clock.now()))
        stale = stores.configs.start_execution_log(ExecutionLog("IO", started_at=clock.now()))

        count = stores.configs.abandon_running_logs(
            clock.now(), "Abandoned: restart", exclude_log_ids=[live.id], exclude_collectors=["Memory"],
        )

        assert count == 1
        assert sorted(log.id for log in stores.configs.running_execution_logs()) == sorted([live.id, starting.id])
        assert stores.configs.recent_execution_logs("IO")[0].id == stale.id
        assert stores.configs.recent_execution_logs("IO")[0].status == RunStatus.FAILED


# =============================================================
# TEST: Exception Store
# =============================================================

class TestExceptionStore:
    """Exception rows."""

    def test_add_list_remove(self, stores, clock):
        """Entries are listed in creation order and removable."""
        first = stores.exceptions.add(CollectorException(
            "Backups", "SQL01", "FullBackup", reason="Decommissioning",
            expires_at=clock.now() + timedelta(days=1), created_at=clock.now(),
        ))
        second = stores.exceptions.add(CollectorException("CPU", "SQL02", created_at=clock.now()))

        assert [e.id for e in stores.exceptions.list()] == [first.id, second.id]
        assert [e.id for e in stores.exceptions.list("Backups")] == [first.id]
        fetched = stores.exceptions.get(first.id)
        assert fetched.expires_at == clock.now() + timedelta(days=1)
        assert fetched.reason == "Decommissioning"

        stores.exceptions.remove(first.id)
        assert [e.id for e in stores.exceptions.list()] == [second.id]

    def test_missing_exception(self, stores):
        """Unknown ids raise ExceptionNotFoundError."""
        with pytest.raises(ExceptionNotFoundError):
            stores.exceptions.get(42)
        with pytest.raises(ExceptionNotFoundError):
            stores.exceptions.remove(42)


# =============================================================
# TEST: Score Store
# =============================================================

class TestScoreStore:
    """Category scores, final scores and transitions."""

    def test_latest_category_scores(self, stores, clock):
        """The newest row per category wins."""
        stores.scores.save_category_score(CategoryScore("SQL01", "CPU", 40.0, clock.now(), measurement={"P95CPU": 95.0}))
        clock.advance(minutes=5)
        stores.scores.save_category_score(CategoryScore("SQL01", "CPU", 100.0, clock.now(), measurement={"P95CPU": 20.0}))
        stores.scores.save_category_score(CategoryScore("SQL01", "Backups", 50.0, clock.now()))
        stores.scores.save_category_score(CategoryScore("SQL02", "CPU", 70.0, clock.now()))

        latest = stores.scores.latest_category_scores("SQL01")
        assert set(latest) == {"CPU", "Backups"}
        assert latest["CPU"].score == 100.0
        assert latest["CPU"].measurement == {"P95CPU": 20.0}
        assert latest["CPU"].collected_at == clock.now()
        assert stores.scores.instances_with_scores() == ["SQL01", "SQL02"]
        assert [s.score for s in stores.scores.category_score_history("SQL01", "CPU")] == [100.0, 40.0]

    def test_latest_is_most_recent_write(self, stores, clock):
        """The last row written wins, one row per category."""
        for score in (90.0, 80.0, 70.0):
            clock.advance(minutes=5)
            stores.scores.save_category_score(CategoryScore("SQL01", "CPU", score, clock.now()))
        stores.scores.save_category_score(CategoryScore("SQL01", "CPU", 55.0, clock.now() - timedelta(hours=1)))
        stores.scores.save_category_score(CategoryScore("SQL01", "Memory", 65.0, clock.now()))

        latest = stores.scores.latest_category_scores("SQL01")

        assert {name: s.score for name, s in latest.items()} == {"CPU": 55.0, "Memory": 65.0}
        assert stores.scores.latest_category_scores("SQL02") == {}

    def test_suppressed_flag_persists(self, stores, clock):
        """Exception suppression is stored with the score."""
        stores.scores.save_category_score(CategoryScore(
            "SQL01", "Backups", 100.0, clock.now(), suppressed_by_exception=True, notes="Suppressed",
        ))
        score = stores.scores.latest_category_scores("SQL01")["Backups"]
        assert score.suppressed_by_exception
        assert score.notes == "Suppressed"

    def test_final_scores(self, stores, clock):
        """Final scores keep contributions; the newest per instance is returned."""
        contribution = CategoryContribution("CPU", 90.0, 40.0, 1.0, 90.0)
        stores.scores.save_final_score(FinalHealthScore(
            "SQL01", 95.0, 95.0, HealthStatus.HEALTHY, contributions=[contribution], computed_at=clock.now(),
        ))
        clock.advance(minutes=5)
        stores.scores.save_final_score(FinalHealthScore(
            "SQL01", 72.0, 60.0, HealthStatus.RISK, cap_applied=60.0, cap_rule="backups_collapsed",
            computed_at=clock.now(),
        ))
        stores.scores.save_final_score(FinalHealthScore("SQL02", 88.0, 88.0, HealthStatus.WARNING, computed_at=clock.now()))

        latest = stores.scores.latest_final_score("SQL01")
        assert latest.final_score == 60.0
        assert latest.cap_rule == "backups_collapsed"
        assert latest.status == HealthStatus.RISK

        history = stores.scores.final_score_history("SQL01")
        assert [s.final_score for s in history] == [60.0, 95.0]
        assert history[1].contributions == [contribution]

        assert [s.instance_name for s in stores.scores.latest_final_scores()] == ["SQL01", "SQL02"]
        assert stores.scores.latest_final_score("SQL09") is None

    def test_transitions(self, stores, clock):
        """Transitions list newest first and filter by instance."""
        for instance, new_status in (("SQL01", HealthStatus.WARNING), ("SQL02", HealthStatus.CRITICAL)):
            stores.scores.save_transition(TransitionEvent(
                instance, HealthStatus.HEALTHY, new_status, 95.0, 50.0, cause="IO", detected_at=clock.now(),
            ))
            clock.advance(minutes=1)

        events = stores.scores.list_transitions()
        assert [e.instance_name for e in events] == ["SQL02", "SQL01"]
        only = stores.scores.list_transitions("SQL01")
        assert len(only) == 1
        assert only[0].new_status == HealthStatus.WARNING
        assert only[0].cause == "IO"
        assert stores.scores.list_transitions(limit=1)[0].instance_name == "SQL02"
