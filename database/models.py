"""
Database ORM Models - All Tables.

============================================================
DATABASE SCHEMA
============================================================

Defines the seven health engine tables with:
- Primary keys
- Timestamps (UTC, timezone-aware)
- Indexes on the "latest row" lookups

Configuration:
1. collector_configs
2. threshold_rules
3. collector_exceptions

Runs and scores (append-only history):
4. collector_execution_logs
5. category_scores
6. final_health_scores
7. transition_events

============================================================
"""

from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean,
    DateTime, JSON, Index, UniqueConstraint,
)

from .engine import Base


# =============================================================
# 1. COLLECTOR CONFIGS TABLE
# =============================================================

class CollectorConfigRecord(Base):
    """
    One row per collector kind.

    Source: seed, admin configuration operations
    Never deleted; disabled instead.
    """
    __tablename__ = "collector_configs"

    collector_name = Column(String(64), primary_key=True)
    display_name = Column(String(128), nullable=False, default="")
    description = Column(Text, nullable=True)
    category = Column(String(32), nullable=False, default="Performance")

    # Scheduling
    enabled = Column(Boolean, nullable=False, default=True)
    interval_seconds = Column(Integer, nullable=False, default=300)
    timeout_seconds = Column(Integer, nullable=False, default=30)
    parallel_degree = Column(Integer, nullable=False, default=5)
    execution_order = Column(Integer, nullable=False, default=0)

    # Scoring
    weight = Column(Float, nullable=False, default=0.0)
    baseline_score = Column(Float, nullable=False, default=100.0)

    # Last run
    last_run_at = Column(DateTime(timezone=True), nullable=True)
    last_duration_ms = Column(Integer, nullable=True)
    last_instances_processed = Column(Integer, nullable=True)
    last_error = Column(Text, nullable=True)
    last_error_at = Column(DateTime(timezone=True), nullable=True)

    updated_at = Column(DateTime(timezone=True), nullable=True)


# =============================================================
# 2. THRESHOLD RULES TABLE
# =============================================================

class ThresholdRuleRecord(Base):
    """
    Threshold rules, grouped per collector.

    Source: seed, admin rule operations
    """
    __tablename__ = "threshold_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    collector_name = Column(String(64), nullable=False, index=True)
    name = Column(String(128), nullable=False)
    display_name = Column(String(128), nullable=False, default="")
    description = Column(Text, nullable=True)

    rule_group = Column(String(64), nullable=False)
    evaluation_order = Column(Integer, nullable=False, default=0)
    operator = Column(String(2), nullable=False)
    threshold_value = Column(Float, nullable=False)
    default_value = Column(Float, nullable=True)
    action = Column(String(16), nullable=False)
    result_value = Column(Float, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("collector_name", "name", name="uq_threshold_rules_collector_name"),
        Index("idx_threshold_rules_group_order", "collector_name", "rule_group", "evaluation_order"),
    )


# =============================================================
# 3. COLLECTOR EXCEPTIONS TABLE
# =============================================================

class CollectorExceptionRecord(Base):
    """
    Operator-declared suppressions.

    Expired rows stay; they are inert.
    """
    __tablename__ = "collector_exceptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    collector_name = Column(String(64), nullable=False)
    server_name = Column(String(255), nullable=False)
    exception_type = Column(String(64), nullable=False, default="All")
    reason = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("idx_collector_exceptions_lookup", "collector_name", "server_name"),
    )


# =============================================================
# 4. COLLECTOR EXECUTION LOGS TABLE
# =============================================================

class ExecutionLogRecord(Base):
    """
    One row per collector run.

    Running -> Completed | Failed
    """
    __tablename__ = "collector_execution_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    collector_name = Column(String(64), nullable=False)
    trigger = Column(String(16), nullable=False)
    triggered_by = Column(String(128), nullable=True)
    status = Column(String(16), nullable=False, index=True)

    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)

    total_instances = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_execution_logs_collector_started", "collector_name", "started_at"),
    )


# =============================================================
# 5. CATEGORY SCORES TABLE
# =============================================================

class CategoryScoreRecord(Base):
    """
    Per (instance, collector, run) category score.

    Immutable once written.
    """
    __tablename__ = "category_scores"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_name = Column(String(255), nullable=False)
    collector_name = Column(String(64), nullable=False)
    run_id = Column(Integer, nullable=True)

    score = Column(Float, nullable=False)
    measurement = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)
    fired_rule = Column(String(128), nullable=True)
    suppressed_by_exception = Column(Boolean, nullable=False, default=False)

    collected_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_category_scores_latest", "instance_name", "collector_name", "id"),
    )


# =============================================================
# 6. FINAL HEALTH SCORES TABLE
# =============================================================

class FinalHealthScoreRecord(Base):
    """
    Consolidated score per instance per cycle.
    """
    __tablename__ = "final_health_scores"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_name = Column(String(255), nullable=False)

    raw_score = Column(Float, nullable=False)
    final_score = Column(Float, nullable=False)
    status = Column(String(16), nullable=False)
    cap_applied = Column(Float, nullable=True)
    cap_rule = Column(String(128), nullable=True)
    contributions = Column(JSON, nullable=True)

    computed_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_final_scores_instance_computed", "instance_name", "computed_at"),
    )


# =============================================================
# 7. TRANSITION EVENTS TABLE
# =============================================================

class TransitionEventRecord(Base):
    """
    Status bucket changes. Append-only.
    """
    __tablename__ = "transition_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_name = Column(String(255), nullable=False, index=True)

    previous_status = Column(String(16), nullable=False)
    new_status = Column(String(16), nullable=False)
    previous_score = Column(Float, nullable=False)
    new_score = Column(Float, nullable=False)
    cause = Column(String(64), nullable=True)

    detected_at = Column(DateTime(timezone=True), nullable=False)


__all__ = [
    "CollectorConfigRecord",
    "ThresholdRuleRecord",
    "CollectorExceptionRecord",
    "ExecutionLogRecord",
    "CategoryScoreRecord",
    "FinalHealthScoreRecord",
    "TransitionEventRecord",
]
