"""
Health Scoring - Stores.

============================================================
RESPONSIBILITY
============================================================
Persistence interfaces shared by collectors, the orchestrator,
the consolidator and the admin surface, plus thread-safe
in-memory implementations.

- ConfigStore: collector configs, threshold rules, execution logs
- ExceptionStore: collector exceptions
- ScoreStore: category scores, final scores, transition events

The SQL implementations live in database.repositories.

============================================================
DESIGN PRINCIPLES
============================================================
- Stores are injected, never global
- Reads return copies; callers cannot mutate stored state
- History is append-only; "latest" is the newest row

============================================================
"""

from abc import ABC, abstractmethod
from copy import deepcopy
from datetime import datetime
from typing import Dict, Iterable, List, Optional
import itertools
import threading

from core.exceptions import (
    CollectorNotFoundError,
    ExceptionNotFoundError,
    ThresholdRuleNotFoundError,
)

from .models import (
    CategoryScore,
    CollectorConfig,
    CollectorException,
    ExecutionLog,
    FinalHealthScore,
    RunStatus,
    ThresholdRule,
    TransitionEvent,
)


# ============================================================
# INTERFACES
# ============================================================

class ConfigStore(ABC):
    """Collector configuration, threshold rules and run logs."""

    # --------------------------------------------------------
    # Collector configs
    # --------------------------------------------------------

    @abstractmethod
    def list_configs(self) -> List[CollectorConfig]:
        """All collector configs ordered by execution_order, then name."""

    @abstractmethod
    def get_config(self, collector_name: str) -> CollectorConfig:
        """Raises CollectorNotFoundError when missing."""

    @abstractmethod
    def save_config(self, config: CollectorConfig) -> CollectorConfig:
        """Insert or replace a config."""

    def record_run_outcome(
        self,
        collector_name: str,
        run_at: datetime,
        duration_ms: int,
        instances_processed: int,
        error: Optional[str] = None,
    ) -> None:
        """Update last-run fields; a successful run clears the last error."""
        config = self.get_config(collector_name)
        _apply_run_outcome(config, run_at, duration_ms, instances_processed, error)
        self.save_config(config)

    def has_config(self, collector_name: str) -> bool:
        try:
            self.get_config(collector_name)
        except CollectorNotFoundError:
            return False
        return True

    # --------------------------------------------------------
    # Threshold rules
    # --------------------------------------------------------

    @abstractmethod
    def list_rules(self, collector_name: str, active_only: bool = False) -> List[ThresholdRule]:
        """Rules of a collector ordered by group, evaluation_order, id."""

    @abstractmethod
    def get_rule(self, rule_id: int) -> ThresholdRule:
        """Raises ThresholdRuleNotFoundError when missing."""

    @abstractmethod
    def save_rule(self, rule: ThresholdRule) -> ThresholdRule:
        """Insert (id None) or update a rule; returns it with id set."""

    @abstractmethod
    def reset_rules(self, collector_name: str, defaults: List[ThresholdRule]) -> List[ThresholdRule]:
        """
        Restore shipped defaults.

        Existing rules matched by name get threshold_value back to
        default_value and are re-activated; shipped rules that are
        missing are re-created.
        """

    # --------------------------------------------------------
    # Execution logs
    # --------------------------------------------------------

    @abstractmethod
    def start_execution_log(self, log: ExecutionLog) -> ExecutionLog:
        """Persist a Running log; returns it with id set."""

    @abstractmethod
    def complete_execution_log(self, log: ExecutionLog) -> ExecutionLog:
        """Persist the terminal state of a log."""

    @abstractmethod
    def recent_execution_logs(self, collector_name: str, limit: int = 20) -> List[ExecutionLog]:
        """Newest first."""

    @abstractmethod
    def running_execution_logs(self, collector_name: Optional[str] = None) -> List[ExecutionLog]:
        """Logs still in Running."""

    def abandon_running_logs(
        self,
        now: datetime,
        reason: str,
        exclude_log_ids: Iterable[int] = (),
        exclude_collectors: Iterable[str] = (),
    ) -> int:
        """
        Fail logs left Running by a previous process.

        Logs of runs still executing in this process are passed in
        as exclusions and left untouched.
        """
        skip_ids = set(exclude_log_ids)
        skip_collectors = set(exclude_collectors)
        count = 0
        for log in self.running_execution_logs():
            if log.id in skip_ids or log.collector_name in skip_collectors:
                continue
            log.status = RunStatus.FAILED
            log.completed_at = now
            log.error_message = reason
            self.complete_execution_log(log)
            count += 1
        return count


class ExceptionStore(ABC):
    """Operator-declared collector exceptions."""

    @abstractmethod
    def add(self, exception: CollectorException) -> CollectorException:
        """Persist; returns it with id set."""

    @abstractmethod
    def remove(self, exception_id: int) -> None:
        """Raises ExceptionNotFoundError when missing."""

    @abstractmethod
    def get(self, exception_id: int) -> CollectorException:
        """Raises ExceptionNotFoundError when missing."""

    @abstractmethod
    def list(self, collector_name: Optional[str] = None) -> List[CollectorException]:
        """All entries (expired included), optionally for one collector."""


class ScoreStore(ABC):
    """Category scores, final scores and transition events."""

    # --------------------------------------------------------
    # Category scores
    # --------------------------------------------------------

    @abstractmethod
    def save_category_score(self, score: CategoryScore) -> CategoryScore:
        """Append one category score."""

    @abstractmethod
    def latest_category_scores(self, instance_name: str) -> Dict[str, CategoryScore]:
        """Most recently written score per collector for one instance."""

    @abstractmethod
    def instances_with_scores(self) -> List[str]:
        """Instances with at least one category score, sorted."""

    @abstractmethod
    def category_score_history(
        self,
        instance_name: str,
        collector_name: Optional[str] = None,
        limit: int = 100,
    ) -> List[CategoryScore]:
        """Newest first."""

    # --------------------------------------------------------
    # Final scores
    # --------------------------------------------------------

    @abstractmethod
    def save_final_score(self, score: FinalHealthScore) -> FinalHealthScore:
        """Append one final score."""

    @abstractmethod
    def latest_final_score(self, instance_name: str) -> Optional[FinalHealthScore]:
        """Newest final score of an instance, if any."""

    @abstractmethod
    def latest_final_scores(self) -> List[FinalHealthScore]:
        """Newest final score per instance, sorted by instance."""

    @abstractmethod
    def final_score_history(self, instance_name: str, limit: int = 100) -> List[FinalHealthScore]:
        """Newest first."""

    # --------------------------------------------------------
    # Transitions
    # --------------------------------------------------------

    @abstractmethod
    def save_transition(self, event: TransitionEvent) -> TransitionEvent:
        """Append one transition event."""

    @abstractmethod
    def list_transitions(
        self,
        instance_name: Optional[str] = None,
        limit: int = 100,
    ) -> List[TransitionEvent]:
        """Newest first."""


# ============================================================
# IN-MEMORY IMPLEMENTATIONS
# ============================================================

def _apply_run_outcome(
    config: CollectorConfig,
    run_at: datetime,
    duration_ms: int,
    instances_processed: int,
    error: Optional[str],
) -> None:
    config.last_run_at = run_at
    config.last_duration_ms = duration_ms
    config.last_instances_processed = instances_processed
    config.last_error = error
    config.last_error_at = run_at if error else None


def _restore_rule(rule: ThresholdRule, default: ThresholdRule) -> None:
    """Overwrite every shipped field of a rule with its default."""
    rule.group = default.group
    rule.evaluation_order = default.evaluation_order
    rule.operator = default.operator
    rule.threshold_value = default.default_value
    rule.default_value = default.default_value
    rule.action = default.action
    rule.result_value = default.result_value
    rule.display_name = default.display_name
    rule.description = default.description
    rule.is_active = True


def _rule_sort_key(rule: ThresholdRule):
    return (rule.group, rule.evaluation_order, rule.id or 0)


class InMemoryConfigStore(ConfigStore):
    """Thread-safe in-memory ConfigStore for tests and development."""

    def __init__(self, configs: Optional[List[CollectorConfig]] = None):
        self._lock = threading.RLock()
        self._configs: Dict[str, CollectorConfig] = {}
        self._rules: Dict[int, ThresholdRule] = {}
        self._logs: Dict[int, ExecutionLog] = {}
        self._rule_ids = itertools.count(1)
        self._log_ids = itertools.count(1)

        for config in configs or []:
            self.save_config(config)

    def list_configs(self) -> List[CollectorConfig]:
        with self._lock:
            configs = sorted(
                self._configs.values(),
                key=lambda c: (c.execution_order, c.collector_name),
            )
            return [deepcopy(c) for c in configs]

    def get_config(self, collector_name: str) -> CollectorConfig:
        with self._lock:
            config = self._configs.get(collector_name)
            if config is None:
                raise CollectorNotFoundError(collector_name, available=sorted(self._configs))
            return deepcopy(config)

    def save_config(self, config: CollectorConfig) -> CollectorConfig:
        with self._lock:
            self._configs[config.collector_name] = deepcopy(config)
            return deepcopy(config)

    def record_run_outcome(
        self,
        collector_name: str,
        run_at: datetime,
        duration_ms: int,
        instances_processed: int,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            config = self._configs.get(collector_name)
            if config is None:
                raise CollectorNotFoundError(collector_name, available=sorted(self._configs))
            _apply_run_outcome(config, run_at, duration_ms, instances_processed, error)

    def list_rules(self, collector_name: str, active_only: bool = False) -> List[ThresholdRule]:
        with self._lock:
            rules = [
                r for r in self._rules.values()
                if r.collector_name == collector_name and (r.is_active or not active_only)
            ]
            return [deepcopy(r) for r in sorted(rules, key=_rule_sort_key)]

    def get_rule(self, rule_id: int) -> ThresholdRule:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise ThresholdRuleNotFoundError(rule_id)
            return deepcopy(rule)

    def save_rule(self, rule: ThresholdRule) -> ThresholdRule:
        with self._lock:
            stored = deepcopy(rule)
            if stored.id is None:
                stored.id = next(self._rule_ids)
            elif stored.id not in self._rules:
                raise ThresholdRuleNotFoundError(stored.id, rule.collector_name)
            self._rules[stored.id] = stored
            return deepcopy(stored)

    def reset_rules(self, collector_name: str, defaults: List[ThresholdRule]) -> List[ThresholdRule]:
        with self._lock:
            existing = {
                r.name: r for r in self._rules.values()
                if r.collector_name == collector_name
            }
            for default in defaults:
                rule = existing.get(default.name)
                if rule is None:
                    restored = deepcopy(default)
                    restored.id = None
                    restored.collector_name = collector_name
                    self.save_rule(restored)
                else:
                    _restore_rule(rule, default)
            return self.list_rules(collector_name)

    def start_execution_log(self, log: ExecutionLog) -> ExecutionLog:
        with self._lock:
            stored = deepcopy(log)
            stored.id = next(self._log_ids)
            self._logs[stored.id] = stored
            return deepcopy(stored)

    def complete_execution_log(self, log: ExecutionLog) -> ExecutionLog:
        with self._lock:
            self._logs[log.id] = deepcopy(log)
            return deepcopy(log)

    def recent_execution_logs(self, collector_name: str, limit: int = 20) -> List[ExecutionLog]:
        with self._lock:
            logs = [l for l in self._logs.values() if l.collector_name == collector_name]
            logs.sort(key=lambda l: (l.started_at, l.id), reverse=True)
            return [deepcopy(l) for l in logs[:limit]]

    def running_execution_logs(self, collector_name: Optional[str] = None) -> List[ExecutionLog]:
        with self._lock:
            return [
                deepcopy(l) for l in self._logs.values()
                if l.status == RunStatus.RUNNING
                and (collector_name is None or l.collector_name == collector_name)
            ]


class InMemoryExceptionStore(ExceptionStore):
    """Thread-safe in-memory ExceptionStore."""

    def __init__(self):
        self._lock = threading.RLock()
        self._items: Dict[int, CollectorException] = {}
        self._ids = itertools.count(1)

    def add(self, exception: CollectorException) -> CollectorException:
        with self._lock:
            stored = deepcopy(exception)
            stored.id = next(self._ids)
            self._items[stored.id] = stored
            return deepcopy(stored)

    def remove(self, exception_id: int) -> None:
        with self._lock:
            if exception_id not in self._items:
                raise ExceptionNotFoundError(exception_id)
            del self._items[exception_id]

    def get(self, exception_id: int) -> CollectorException:
        with self._lock:
            item = self._items.get(exception_id)
            if item is None:
                raise ExceptionNotFoundError(exception_id)
            return deepcopy(item)

    def list(self, collector_name: Optional[str] = None) -> List[CollectorException]:
        with self._lock:
            return [
                deepcopy(e) for e in sorted(self._items.values(), key=lambda e: e.id)
                if collector_name is None or e.collector_name == collector_name
            ]


class InMemoryScoreStore(ScoreStore):
    """Thread-safe in-memory ScoreStore; rows are kept in write order."""

    def __init__(self):
        self._lock = threading.RLock()
        self._category_scores: List[CategoryScore] = []
        self._final_scores: List[FinalHealthScore] = []
        self._transitions: List[TransitionEvent] = []
        self._ids = itertools.count(1)

    def save_category_score(self, score: CategoryScore) -> CategoryScore:
        with self._lock:
            stored = deepcopy(score)
            stored.id = next(self._ids)
            self._category_scores.append(stored)
            return deepcopy(stored)

    def latest_category_scores(self, instance_name: str) -> Dict[str, CategoryScore]:
        with self._lock:
            latest: Dict[str, CategoryScore] = {}
            for score in self._category_scores:
                if score.instance_name != instance_name:
                    continue
                latest[score.collector_name] = score
            return {name: deepcopy(s) for name, s in latest.items()}

    def instances_with_scores(self) -> List[str]:
        with self._lock:
            return sorted({s.instance_name for s in self._category_scores})

    def category_score_history(
        self,
        instance_name: str,
        collector_name: Optional[str] = None,
        limit: int = 100,
    ) -> List[CategoryScore]:
        with self._lock:
            rows = [
                s for s in self._category_scores
                if s.instance_name == instance_name
                and (collector_name is None or s.collector_name == collector_name)
            ]
            rows.reverse()
            return [deepcopy(s) for s in rows[:limit]]

    def save_final_score(self, score: FinalHealthScore) -> FinalHealthScore:
        with self._lock:
            stored = deepcopy(score)
            stored.id = next(self._ids)
            self._final_scores.append(stored)
            return deepcopy(stored)

    def latest_final_score(self, instance_name: str) -> Optional[FinalHealthScore]:
        with self._lock:
            for score in reversed(self._final_scores):
                if score.instance_name == instance_name:
                    return deepcopy(score)
            return None

    def latest_final_scores(self) -> List[FinalHealthScore]:
        with self._lock:
            latest: Dict[str, FinalHealthScore] = {}
            for score in self._final_scores:
                latest[score.instance_name] = score
            return [deepcopy(latest[name]) for name in sorted(latest)]

    def final_score_history(self, instance_name: str, limit: int = 100) -> List[FinalHealthScore]:
        with self._lock:
            rows = [s for s in self._final_scores if s.instance_name == instance_name]
            rows.reverse()
            return [deepcopy(s) for s in rows[:limit]]

    def save_transition(self, event: TransitionEvent) -> TransitionEvent:
        with self._lock:
            stored = deepcopy(event)
            stored.id = next(self._ids)
            self._transitions.append(stored)
            return deepcopy(stored)

    def list_transitions(
        self,
        instance_name: Optional[str] = None,
        limit: int = 100,
    ) -> List[TransitionEvent]:
        with self._lock:
            rows = [
                t for t in self._transitions
                if instance_name is None or t.instance_name == instance_name
            ]
            rows.reverse()
            return [deepcopy(t) for t in rows[:limit]]


__all__ = [
    "ConfigStore",
    "ExceptionStore",
    "ScoreStore",
    "InMemoryConfigStore",
    "InMemoryExceptionStore",
    "InMemoryScoreStore",
]
