"""
Database - SQL Store Implementations.

============================================================
RESPONSIBILITY
============================================================
SQLAlchemy-backed ConfigStore, ExceptionStore and ScoreStore.

- One transaction per store call (transaction_scope)
- Rows are mapped to and from the health_scoring dataclasses;
  callers never see ORM objects
- Datetimes are written as UTC and read back timezone-aware
- History tables are append-only; "latest" is the highest id

All methods are synchronous; async callers dispatch them with
asyncio.to_thread.

============================================================
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from core.clock import ensure_utc
from core.exceptions import (
    CollectorNotFoundError,
    ExceptionNotFoundError,
    ThresholdRuleNotFoundError,
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
from health_scoring.stores import ConfigStore, ExceptionStore, ScoreStore

from .engine import transaction_scope
from .models import (
    CategoryScoreRecord,
    CollectorConfigRecord,
    CollectorExceptionRecord,
    ExecutionLogRecord,
    FinalHealthScoreRecord,
    ThresholdRuleRecord,
    TransitionEventRecord,
)

logger = logging.getLogger(__name__)


# =============================================================
# HELPER FUNCTIONS
# =============================================================

def _to_db(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return ensure_utc(dt).astimezone(timezone.utc)


def _from_db(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return ensure_utc(dt)


# -------------------------------------------------------------
# Collector configs
# -------------------------------------------------------------

_CONFIG_FIELDS = (
    "collector_name", "display_name", "description", "category", "enabled",
    "interval_seconds", "timeout_seconds", "weight", "parallel_degree",
    "execution_order", "baseline_score", "last_duration_ms",
    "last_instances_processed", "last_error",
)
_CONFIG_TIMESTAMPS = ("last_run_at", "last_error_at", "updated_at")


def _config_from_record(record: CollectorConfigRecord) -> CollectorConfig:
    values = {name: getattr(record, name) for name in _CONFIG_FIELDS}
    values.update({name: _from_db(getattr(record, name)) for name in _CONFIG_TIMESTAMPS})
    return CollectorConfig(**values)


def _config_to_record(config: CollectorConfig, record: CollectorConfigRecord) -> CollectorConfigRecord:
    for name in _CONFIG_FIELDS:
        setattr(record, name, getattr(config, name))
    for name in _CONFIG_TIMESTAMPS:
        setattr(record, name, _to_db(getattr(config, name)))
    return record


# -------------------------------------------------------------
# Threshold rules
# -------------------------------------------------------------

def _rule_from_record(record: ThresholdRuleRecord) -> ThresholdRule:
    return ThresholdRule(
        id=record.id,
        collector_name=record.collector_name,
        name=record.name,
        display_name=record.display_name,
        description=record.description,
        group=record.rule_group,
        evaluation_order=record.evaluation_order,
        operator=RuleOperator.parse(record.operator),
        threshold_value=record.threshold_value,
        default_value=record.default_value,
        action=RuleAction(record.action),
        result_value=record.result_value,
        is_active=record.is_active,
    )


def _rule_to_record(rule: ThresholdRule, record: ThresholdRuleRecord) -> ThresholdRuleRecord:
    record.collector_name = rule.collector_name
    record.name = rule.name
    record.display_name = rule.display_name
    record.description = rule.description
    record.rule_group = rule.group
    record.evaluation_order = rule.evaluation_order
    record.operator = rule.operator.value
    record.threshold_value = rule.threshold_value
    record.default_value = rule.default_value
    record.action = rule.action.value
    record.result_value = rule.result_value
    record.is_active = rule.is_active
    return record


# -------------------------------------------------------------
# Execution logs
# -------------------------------------------------------------

def _log_from_record(record: ExecutionLogRecord) -> ExecutionLog:
    return ExecutionLog(
        id=record.id,
        collector_name=record.collector_name,
        trigger=TriggerKind(record.trigger),
        triggered_by=record.triggered_by,
        status=RunStatus(record.status),
        started_at=_from_db(record.started_at),
        completed_at=_from_db(record.completed_at),
        duration_ms=record.duration_ms,
        total_instances=record.total_instances,
        success_count=record.success_count,
        error_count=record.error_count,
        error_message=record.error_message,
    )


def _log_to_record(log: ExecutionLog, record: ExecutionLogRecord) -> ExecutionLogRecord:
    record.collector_name = log.collector_name
    record.trigger = log.trigger.value
    record.triggered_by = log.triggered_by
    record.status = log.status.value
    record.started_at = _to_db(log.started_at)
    record.completed_at = _to_db(log.completed_at)
    record.duration_ms = log.duration_ms
    record.total_instances = log.total_instances
    record.success_count = log.success_count
    record.error_count = log.error_count
    record.error_message = log.error_message
    return record


# -------------------------------------------------------------
# Exceptions
# -------------------------------------------------------------

def _exception_from_record(record: CollectorExceptionRecord) -> CollectorException:
    return CollectorException(
        id=record.id,
        collector_name=record.collector_name,
        server_name=record.server_name,
        exception_type=record.exception_type,
        reason=record.reason,
        expires_at=_from_db(record.expires_at),
        created_by=record.created_by,
        created_at=_from_db(record.created_at),
        is_active=record.is_active,
    )


# -------------------------------------------------------------
# Scores
# -------------------------------------------------------------

def _category_score_from_record(record: CategoryScoreRecord) -> CategoryScore:
    return CategoryScore(
        id=record.id,
        instance_name=record.instance_name,
        collector_name=record.collector_name,
        run_id=record.run_id,
        score=record.score,
        measurement=dict(record.measurement or {}),
        notes=record.notes or "",
        fired_rule=record.fired_rule,
        suppressed_by_exception=record.suppressed_by_exception,
        collected_at=_from_db(record.collected_at),
    )


def _contribution_from_dict(data: Dict[str, Any]) -> CategoryContribution:
    return CategoryContribution(
        collector_name=data["collector_name"],
        score=data["score"],
        weight=data["weight"],
        effective_weight=data["effective_weight"],
        contribution=data["contribution"],
    )


def _final_score_from_record(record: FinalHealthScoreRecord) -> FinalHealthScore:
    return FinalHealthScore(
        id=record.id,
        instance_name=record.instance_name,
        raw_score=record.raw_score,
        final_score=record.final_score,
        status=HealthStatus(record.status),
        cap_applied=record.cap_applied,
        cap_rule=record.cap_rule,
        contributions=[_contribution_from_dict(c) for c in record.contributions or []],
        computed_at=_from_db(record.computed_at),
    )


def _transition_from_record(record: TransitionEventRecord) -> TransitionEvent:
    return TransitionEvent(
        id=record.id,
        instance_name=record.instance_name,
        previous_status=HealthStatus(record.previous_status),
        new_status=HealthStatus(record.new_status),
        previous_score=record.previous_score,
        new_score=record.new_score,
        cause=record.cause,
        detected_at=_from_db(record.detected_at),
    )


# =============================================================
# CONFIG STORE
# =============================================================

class SqlConfigStore(ConfigStore):
    """ConfigStore over collector_configs, threshold_rules and collector_execution_logs."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # ---------------------------------------------------------
    # Collector configs
    # ---------------------------------------------------------

    def list_configs(self) -> List[CollectorConfig]:
        with transaction_scope(self._session_factory) as session:
            records = session.scalars(
                select(CollectorConfigRecord).order_by(
                    CollectorConfigRecord.execution_order,
                    CollectorConfigRecord.collector_name,
                )
            ).all()
            return [_config_from_record(r) for r in records]

    def get_config(self, collector_name: str) -> CollectorConfig:
        with transaction_scope(self._session_factory) as session:
            return _config_from_record(self._config_record(session, collector_name))

    def save_config(self, config: CollectorConfig) -> CollectorConfig:
        with transaction_scope(self._session_factory) as session:
            record = session.get(CollectorConfigRecord, config.collector_name)
            if record is None:
                record = CollectorConfigRecord()
                session.add(record)
            _config_to_record(config, record)
            session.flush()
            return _config_from_record(record)

    def record_run_outcome(
        self,
        collector_name: str,
        run_at: datetime,
        duration_ms: int,
        instances_processed: int,
        error: Optional[str] = None,
    ) -> None:
        with transaction_scope(self._session_factory) as session:
            record = self._config_record(session, collector_name)
            record.last_run_at = _to_db(run_at)
            record.last_duration_ms = duration_ms
            record.last_instances_processed = instances_processed
            record.last_error = error
            record.last_error_at = _to_db(run_at) if error else None

    def _config_record(self, session: Session, collector_name: str) -> CollectorConfigRecord:
        record = session.get(CollectorConfigRecord, collector_name)
        if record is None:
            available = session.scalars(select(CollectorConfigRecord.collector_name)).all()
            raise CollectorNotFoundError(collector_name, available=sorted(available))
        return record

    # ---------------------------------------------------------
    # Threshold rules
    # ---------------------------------------------------------

    def list_rules(self, collector_name: str, active_only: bool = False) -> List[ThresholdRule]:
        query = select(ThresholdRuleRecord).where(ThresholdRuleRecord.collector_name == collector_name)
        if active_only:
            query = query.where(ThresholdRuleRecord.is_active.is_(True))
        query = query.order_by(
            ThresholdRuleRecord.rule_group,
            ThresholdRuleRecord.evaluation_order,
            ThresholdRuleRecord.id,
        )
        with transaction_scope(self._session_factory) as session:
            return [_rule_from_record(r) for r in session.scalars(query).all()]

    def get_rule(self, rule_id: int) -> ThresholdRule:
        with transaction_scope(self._session_factory) as session:
            record = session.get(ThresholdRuleRecord, rule_id)
            if record is None:
                raise ThresholdRuleNotFoundError(rule_id)
            return _rule_from_record(record)

    def save_rule(self, rule: ThresholdRule) -> ThresholdRule:
        with transaction_scope(self._session_factory) as session:
            if rule.id is None:
                record = ThresholdRuleRecord()
                session.add(record)
            else:
                record = session.get(ThresholdRuleRecord, rule.id)
                if record is None:
                    raise ThresholdRuleNotFoundError(rule.id, rule.collector_name)
            _rule_to_record(rule, record)
            session.flush()
            return _rule_from_record(record)

    def reset_rules(self, collector_name: str, defaults: List[ThresholdRule]) -> List[ThresholdRule]:
        with transaction_scope(self._session_factory) as session:
            existing = {
                r.name: r for r in session.scalars(
                    select(ThresholdRuleRecord).where(ThresholdRuleRecord.collector_name == collector_name)
                ).all()
            }
            restored = 0
            for default in defaults:
                record = existing.get(default.name)
                if record is None:
                    record = ThresholdRuleRecord()
                    session.add(record)
                    _rule_to_record(default, record)
                    record.collector_name = collector_name
                    restored += 1
                else:
                    _rule_to_record(default, record)
                    record.threshold_value = default.default_value
                    record.collector_name = collector_name
                    record.is_active = True
        logger.info(f"[{collector_name}] Rules reset to defaults | recreated={restored}")
        return self.list_rules(collector_name)

    # ---------------------------------------------------------
    # Execution logs
    # ---------------------------------------------------------

    def start_execution_log(self, log: ExecutionLog) -> ExecutionLog:
        with transaction_scope(self._session_factory) as session:
            record = _log_to_record(log, ExecutionLogRecord())
            session.add(record)
            session.flush()
            return _log_from_record(record)

    def complete_execution_log(self, log: ExecutionLog) -> ExecutionLog:
        with transaction_scope(self._session_factory) as session:
            record = session.get(ExecutionLogRecord, log.id)
            if record is None:
                record = ExecutionLogRecord(id=log.id)
                session.add(record)
            _log_to_record(log, record)
            session.flush()
            return _log_from_record(record)

    def recent_execution_logs(self, collector_name: str, limit: int = 20) -> List[ExecutionLog]:
        query = (
            select(ExecutionLogRecord)
            .where(ExecutionLogRecord.collector_name == collector_name)
            .order_by(ExecutionLogRecord.started_at.desc(), ExecutionLogRecord.id.desc())
            .limit(limit)
        )
        with transaction_scope(self._session_factory) as session:
            return [_log_from_record(r) for r in session.scalars(query).all()]

    def running_execution_logs(self, collector_name: Optional[str] = None) -> List[ExecutionLog]:
        query = select(ExecutionLogRecord).where(ExecutionLogRecord.status == RunStatus.RUNNING.value)
        if collector_name is not None:
            query = query.where(ExecutionLogRecord.collector_name == collector_name)
        with transaction_scope(self._session_factory) as session:
            return [_log_from_record(r) for r in session.scalars(query.order_by(ExecutionLogRecord.id)).all()]


# =============================================================
# EXCEPTION STORE
# =============================================================

class SqlExceptionStore(ExceptionStore):
    """ExceptionStore over collector_exceptions."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def add(self, exception: CollectorException) -> CollectorException:
        with transaction_scope(self._session_factory) as session:
            record = CollectorExceptionRecord(
                collector_name=exception.collector_name,
                server_name=exception.server_name,
                exception_type=exception.exception_type,
                reason=exception.reason,
                expires_at=_to_db(exception.expires_at),
                created_by=exception.created_by,
                created_at=_to_db(exception.created_at),
                is_active=exception.is_active,
            )
            session.add(record)
            session.flush()
            return _exception_from_record(record)

    def remove(self, exception_id: int) -> None:
        with transaction_scope(self._session_factory) as session:
            record = session.get(CollectorExceptionRecord, exception_id)
            if record is None:
                raise ExceptionNotFoundError(exception_id)
            session.delete(record)

    def get(self, exception_id: int) -> CollectorException:
        with transaction_scope(self._session_factory) as session:
            record = session.get(CollectorExceptionRecord, exception_id)
            if record is None:
                raise ExceptionNotFoundError(exception_id)
            return _exception_from_record(record)

    def list(self, collector_name: Optional[str] = None) -> List[CollectorException]:
        query = select(CollectorExceptionRecord)
        if collector_name is not None:
            query = query.where(CollectorExceptionRecord.collector_name == collector_name)
        with transaction_scope(self._session_factory) as session:
            records = session.scalars(query.order_by(CollectorExceptionRecord.id)).all()
            return [_exception_from_record(r) for r in records]


# =============================================================
# SCORE STORE
# =============================================================

class SqlScoreStore(ScoreStore):
    """ScoreStore over category_scores, final_health_scores and transition_events."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # ---------------------------------------------------------
    # Category scores
    # ---------------------------------------------------------

    def save_category_score(self, score: CategoryScore) -> CategoryScore:
        with transaction_scope(self._session_factory) as session:
            record = CategoryScoreRecord(
                instance_name=score.instance_name,
                collector_name=score.collector_name,
                run_id=score.run_id,
                score=score.score,
                measurement=dict(score.measurement),
                notes=score.notes,
                fired_rule=score.fired_rule,
                suppressed_by_exception=score.suppressed_by_exception,
                collected_at=_to_db(score.collected_at),
            )
            session.add(record)
            session.flush()
            return _category_score_from_record(record)

    def latest_category_scores(self, instance_name: str) -> Dict[str, CategoryScore]:
        newest = (
            select(func.max(CategoryScoreRecord.id))
            .where(CategoryScoreRecord.instance_name == instance_name)
            .group_by(CategoryScoreRecord.collector_name)
            .scalar_subquery()
        )
        query = select(CategoryScoreRecord).where(CategoryScoreRecord.id.in_(newest))
        with transaction_scope(self._session_factory) as session:
            return {
                record.collector_name: _category_score_from_record(record)
                for record in session.scalars(query).all()
            }

    def instances_with_scores(self) -> List[str]:
        query = select(CategoryScoreRecord.instance_name).distinct().order_by(CategoryScoreRecord.instance_name)
        with transaction_scope(self._session_factory) as session:
            return list(session.scalars(query).all())

    def category_score_history(
        self,
        instance_name: str,
        collector_name: Optional[str] = None,
        limit: int = 100,
    ) -> List[CategoryScore]:
        query = select(CategoryScoreRecord).where(CategoryScoreRecord.instance_name == instance_name)
        if collector_name is not None:
            query = query.where(CategoryScoreRecord.collector_name == collector_name)
        query = query.order_by(CategoryScoreRecord.id.desc()).limit(limit)
        with transaction_scope(self._session_factory) as session:
            return [_category_score_from_record(r) for r in session.scalars(query).all()]

    # ---------------------------------------------------------
    # Final scores
    # ---------------------------------------------------------

    def save_final_score(self, score: FinalHealthScore) -> FinalHealthScore:
        with transaction_scope(self._session_factory) as session:
            record = FinalHealthScoreRecord(
                instance_name=score.instance_name,
                raw_score=score.raw_score,
                final_score=score.final_score,
                status=score.status.value,
                cap_applied=score.cap_applied,
                cap_rule=score.cap_rule,
                contributions=[c.to_dict() for c in score.contributions],
                computed_at=_to_db(score.computed_at),
            )
            session.add(record)
            session.flush()
            return _final_score_from_record(record)

    def latest_final_score(self, instance_name: str) -> Optional[FinalHealthScore]:
        query = (
            select(FinalHealthScoreRecord)
            .where(FinalHealthScoreRecord.instance_name == instance_name)
            .order_by(FinalHealthScoreRecord.id.desc())
            .limit(1)
        )
        with transaction_scope(self._session_factory) as session:
            record = session.scalars(query).first()
            return _final_score_from_record(record) if record else None

    def latest_final_scores(self) -> List[FinalHealthScore]:
        newest = (
            select(func.max(FinalHealthScoreRecord.id))
            .group_by(FinalHealthScoreRecord.instance_name)
            .scalar_subquery()
        )
        query = (
            select(FinalHealthScoreRecord)
            .where(FinalHealthScoreRecord.id.in_(newest))
            .order_by(FinalHealthScoreRecord.instance_name)
        )
        with transaction_scope(self._session_factory) as session:
            return [_final_score_from_record(r) for r in session.scalars(query).all()]

    def final_score_history(self, instance_name: str, limit: int = 100) -> List[FinalHealthScore]:
        query = (
            select(FinalHealthScoreRecord)
            .where(FinalHealthScoreRecord.instance_name == instance_name)
            .order_by(FinalHealthScoreRecord.id.desc())
            .limit(limit)
        )
        with transaction_scope(self._session_factory) as session:
            return [_final_score_from_record(r) for r in session.scalars(query).all()]

    # ---------------------------------------------------------
    # Transitions
    # ---------------------------------------------------------

    def save_transition(self, event: TransitionEvent) -> TransitionEvent:
        with transaction_scope(self._session_factory) as session:
            record = TransitionEventRecord(
                instance_name=event.instance_name,
                previous_status=event.previous_status.value,
                new_status=event.new_status.value,
                previous_score=event.previous_score,
                new_score=event.new_score,
                cause=event.cause,
                detected_at=_to_db(event.detected_at),
            )
            session.add(record)
            session.flush()
            return _transition_from_record(record)

    def list_transitions(
        self,
        instance_name: Optional[str] = None,
        limit: int = 100,
    ) -> List[TransitionEvent]:
        query = select(TransitionEventRecord)
        if instance_name is not None:
            query = query.where(TransitionEventRecord.instance_name == instance_name)
        query = query.order_by(TransitionEventRecord.id.desc()).limit(limit)
        with transaction_scope(self._session_factory) as session:
            return [_transition_from_record(r) for r in session.scalars(query).all()]


__all__ = [
    "SqlConfigStore",
    "SqlExceptionStore",
    "SqlScoreStore",
]
