"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines all custom exceptions for the health scoring engine.

- Provides clear exception hierarchy
- Separates configuration-boundary errors from runtime errors
- Supports error categorization for logging
- Includes context for debugging

============================================================
EXCEPTION HIERARCHY
============================================================
HealthEngineError (base)
├── ConfigurationError
│   └── DuplicateExceptionError
├── NotFoundError
│   ├── CollectorNotFoundError
│   ├── ThresholdRuleNotFoundError
│   └── ExceptionNotFoundError
├── CollectionError
│   ├── InventoryError
│   └── MeasurementError
├── StoreError
│   └── DatabasePersistenceError
└── ConsolidationError

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels for logging."""

    LOW = "low"
    """Minor issue, informational."""

    MEDIUM = "medium"
    """Moderate issue, requires attention."""

    HIGH = "high"
    """Serious issue, a whole run or cycle is affected."""

    CRITICAL = "critical"
    """Critical issue, requires immediate action."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class HealthEngineError(Exception):
    """
    Base exception for all health engine errors.

    All exceptions carry:
    - severity: for logging
    - context: for debugging
    - recoverable: whether the next scheduled tick may succeed
    - timestamp: when the error occurred
    """

    default_severity: Severity = Severity.MEDIUM
    default_recoverable: bool = True

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.recoverable = recoverable if recoverable is not None else self.default_recoverable
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/storage."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(HealthEngineError):
    """
    Invalid configuration rejected at the configuration boundary.

    Never reaches the orchestrator.
    """

    default_severity = Severity.LOW
    default_recoverable = False

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        actual_value: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})

        if config_key:
            context["config_key"] = config_key
        if actual_value is not None:
            context["actual_value"] = str(actual_value)[:100]

        super().__init__(message, context=context, **kwargs)


class DuplicateExceptionError(ConfigurationError):
    """An active exception already exists for the same collector/type/server."""

    def __init__(self, collector_name: str, exception_type: str, server_name: str):
        super().__init__(
            message=(
                f"An exception for {exception_type} on server {server_name} "
                f"already exists for collector {collector_name}"
            ),
            context={
                "collector_name": collector_name,
                "exception_type": exception_type,
                "server_name": server_name,
            },
        )


# ============================================================
# LOOKUP ERRORS
# ============================================================

class NotFoundError(HealthEngineError):
    """Base class for missing entities."""

    default_severity = Severity.LOW
    default_recoverable = False


class CollectorNotFoundError(NotFoundError):
    """Collector kind is not registered or has no configuration."""

    def __init__(self, collector_name: str, available: Optional[List[str]] = None):
        message = f"Collector not found: {collector_name}"
        context: Dict[str, Any] = {"collector_name": collector_name}
        if available:
            message += f". Available: {', '.join(available)}"
            context["available"] = available
        super().__init__(message, context=context)
        self.collector_name = collector_name


class ThresholdRuleNotFoundError(NotFoundError):
    """Threshold rule id does not exist."""

    def __init__(self, rule_id: int, collector_name: Optional[str] = None):
        super().__init__(
            f"Threshold rule {rule_id} not found",
            context={"rule_id": rule_id, "collector_name": collector_name},
        )


class ExceptionNotFoundError(NotFoundError):
    """Collector exception id does not exist."""

    def __init__(self, exception_id: int):
        super().__init__(
            f"Collector exception {exception_id} not found",
            context={"exception_id": exception_id},
        )


# ============================================================
# COLLECTION ERRORS
# ============================================================

class CollectionError(HealthEngineError):
    """Base class for errors raised while collecting measurements."""

    default_severity = Severity.MEDIUM
    default_recoverable = True


class InventoryError(CollectionError):
    """
    Instance inventory could not be fetched.

    Fails the whole collector run.
    """

    default_severity = Severity.HIGH

    def __init__(self, message: str, source: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if source:
            context["source"] = source
        super().__init__(message, context=context, **kwargs)


class MeasurementError(CollectionError):
    """
    A single instance could not be measured.

    Counted as an error on the run; never fails the run.
    """

    def __init__(
        self,
        message: str,
        collector_name: Optional[str] = None,
        instance_name: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if collector_name:
            context["collector_name"] = collector_name
        if instance_name:
            context["instance_name"] = instance_name
        super().__init__(message, context=context, **kwargs)
        self.collector_name = collector_name
        self.instance_name = instance_name


# ============================================================
# STORE ERRORS
# ============================================================

class StoreError(HealthEngineError):
    """Base class for persistence errors."""

    default_severity = Severity.HIGH


class DatabasePersistenceError(StoreError):
    """A database transaction failed and was rolled back."""


class DatabaseConnectionError(StoreError):
    """The database could not be reached."""

    default_severity = Severity.CRITICAL


# ============================================================
# CONSOLIDATION ERRORS
# ============================================================

class ConsolidationError(HealthEngineError):
    """A consolidation cycle failed; the next tick still fires."""

    default_severity = Severity.HIGH


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "Severity",
    "HealthEngineError",
    "ConfigurationError",
    "DuplicateExceptionError",
    "NotFoundError",
    "CollectorNotFoundError",
    "ThresholdRuleNotFoundError",
    "ExceptionNotFoundError",
    "CollectionError",
    "InventoryError",
    "MeasurementError",
    "StoreError",
    "DatabasePersistenceError",
    "DatabaseConnectionError",
    "ConsolidationError",
]
