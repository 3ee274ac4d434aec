"""
Database Package Initialization.

============================================================
PERSISTENCE LAYER
============================================================

SQLAlchemy persistence for the health engine. The SQL stores
implement the ConfigStore / ExceptionStore / ScoreStore
interfaces from health_scoring.stores, so every component
can run against them or against the in-memory stores.

REQUIRED:
- Every failure raises DatabasePersistenceError
- All transactions are explicit with commit/rollback

============================================================
"""

# Core engine and session management
from .engine import (
    Base,
    DEFAULT_DATABASE_URL,
    REQUIRED_TABLES,
    get_database_url,
    create_database_engine,
    create_session_factory,
    transaction_scope,
    verify_database_connection,
    create_all_tables,
    missing_tables,
    initialize_database,
    get_table_row_counts,
)

# ORM Models - All 7 tables
from .models import (
    CollectorConfigRecord,
    ThresholdRuleRecord,
    CollectorExceptionRecord,
    ExecutionLogRecord,
    CategoryScoreRecord,
    FinalHealthScoreRecord,
    TransitionEventRecord,
)

# Store implementations
from .repositories import SqlConfigStore, SqlExceptionStore, SqlScoreStore
from .seed import SeedReport, seed_defaults


__all__ = [
    # Engine & Session
    "Base",
    "DEFAULT_DATABASE_URL",
    "REQUIRED_TABLES",
    "get_database_url",
    "create_database_engine",
    "create_session_factory",
    "transaction_scope",
    # Initialization
    "verify_database_connection",
    "create_all_tables",
    "missing_tables",
    "initialize_database",
    "get_table_row_counts",
    # Models
    "CollectorConfigRecord",
    "ThresholdRuleRecord",
    "CollectorExceptionRecord",
    "ExecutionLogRecord",
    "CategoryScoreRecord",
    "FinalHealthScoreRecord",
    "TransitionEventRecord",
    # Stores
    "SqlConfigStore",
    "SqlExceptionStore",
    "SqlScoreStore",
    "SeedReport",
    "seed_defaults",
]
