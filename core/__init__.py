"""
Core Module Package.

This package contains the core infrastructure components
that all other modules depend on.

Components:
- clock: Unified time abstraction
- exceptions: Custom exception hierarchy
"""

from .clock import ClockFactory, ClockProtocol, MockClock, SystemClock, ensure_utc
from .exceptions import (
    HealthEngineError,
    ConfigurationError,
    DuplicateExceptionError,
    NotFoundError,
    CollectorNotFoundError,
    ThresholdRuleNotFoundError,
    ExceptionNotFoundError,
    CollectionError,
    InventoryError,
    MeasurementError,
    StoreError,
    DatabasePersistenceError,
    DatabaseConnectionError,
    ConsolidationError,
    Severity,
)
