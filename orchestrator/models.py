"""
Orchestrator - Models.

============================================================
RESPONSIBILITY
============================================================
Defines data models for the collector orchestrator.

- Timer state per collector kind
- Outcome of a trigger request (started or rejected)
- Per-collector and orchestrator-wide status snapshots

============================================================
"""

from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


# ============================================================
# TIMER STATE
# ============================================================

class TimerState(Enum):
    """Lifecycle of one collector's scheduling loop."""

    NOT_STARTED = "not_started"
    """No timer has been started for this collector."""

    SCHEDULED = "scheduled"
    """Timer is active and waiting for its next tick."""

    DISABLED = "disabled"
    """Timer exited because the collector was disabled."""

    STOPPED = "stopped"
    """Timer exited because the orchestrator stopped."""

    @property
    def is_active(self) -> bool:
        return self == TimerState.SCHEDULED


# ============================================================
# TRIGGER OUTCOME
# ============================================================

class TriggerOutcome(Enum):
    """Result of asking for a collector run."""

    STARTED = "started"
    """A new run was dispatched."""

    ALREADY_RUNNING = "already_running"
    """Rejected: a run for the same collector is in flight."""

    DISABLED = "disabled"
    """Rejected: the collector is disabled."""

    SHUTTING_DOWN = "shutting_down"
    """Rejected: the orchestrator is draining."""

    @property
    def accepted(self) -> bool:
        return self == TriggerOutcome.STARTED


# ============================================================
# STATUS
# ============================================================

@dataclass
class CollectorStatus:
    """Scheduling status of one collector kind."""

    collector_name: str
    enabled: bool = False
    interval_seconds: int = 0
    timer_state: TimerState = TimerState.NOT_STARTED
    running: bool = False
    last_tick_at: Optional[datetime] = None
    last_run_started_at: Optional[datetime] = None
    last_outcome: Optional[Dict[str, Any]] = None
    runs_dispatched: int = 0
    triggers_rejected: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "collector_name": self.collector_name,
            "enabled": self.enabled,
            "interval_seconds": self.interval_seconds,
            "timer_state": self.timer_state.value,
            "running": self.running,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "last_run_started_at": (
                self.last_run_started_at.isoformat() if self.last_run_started_at else None
            ),
            "last_outcome": self.last_outcome,
            "runs_dispatched": self.runs_dispatched,
            "triggers_rejected": self.triggers_rejected,
        }


@dataclass
class OrchestratorStatus:
    """Orchestrator-wide snapshot."""

    running: bool
    stopping: bool
    started_at: Optional[datetime] = None
    correlation_id: Optional[str] = None
    collectors: List[CollectorStatus] = field(default_factory=list)
    consolidator: Optional[Dict[str, Any]] = None

    @property
    def runs_in_flight(self) -> int:
        return sum(1 for c in self.collectors if c.running)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "running": self.running,
            "stopping": self.stopping,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "correlation_id": self.correlation_id,
            "runs_in_flight": self.runs_in_flight,
            "collectors": [c.to_dict() for c in self.collectors],
            "consolidator": self.consolidator,
        }


__all__ = [
    "TimerState",
    "TriggerOutcome",
    "CollectorStatus",
    "OrchestratorStatus",
]
