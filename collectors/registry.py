"""
Collectors - Registration Table.

============================================================
RESPONSIBILITY
============================================================
Maps each collector kind to what makes it distinct:
- measurement function (raw payload -> grouped measurement)
- shipped default rules and configuration
- supported exception types
- instance eligibility (e.g. AlwaysOn only on AG replicas)

A flat table keyed by CollectorKind; every kind shares the
generic Collector run.

============================================================
"""

from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional
import logging
import threading

from core.exceptions import CollectorNotFoundError
from health_scoring.exception_registry import ExceptionRegistry
from health_scoring.models import CollectorConfig, CollectorKind, ThresholdRule

from . import measurements
from .defaults import default_config, default_rules
from .measurements import MeasureFunction
from .provider import InstanceInfo


logger = logging.getLogger(__name__)


def _any_instance(instance: InstanceInfo) -> bool:
    return True


def _always_on_only(instance: InstanceInfo) -> bool:
    return instance.is_always_on


# ============================================================
# COLLECTOR SPEC
# ============================================================

@dataclass
class CollectorSpec:
    """Everything kind-specific about a collector."""

    kind: CollectorKind
    measure: MeasureFunction
    default_rules: Callable[[], List[ThresholdRule]]
    default_config: Callable[[], CollectorConfig]
    description: str = ""
    is_eligible: Callable[[InstanceInfo], bool] = field(default=_any_instance)

    @property
    def name(self) -> str:
        return self.kind.value

    def supported_exception_types(self) -> List[Dict[str, str]]:
        return ExceptionRegistry.supported_types(self.name)


# ============================================================
# REGISTRY
# ============================================================

class CollectorRegistry:
    """Thread-safe kind -> CollectorSpec table."""

    def __init__(self):
        self._specs: Dict[str, CollectorSpec] = {}
        self._lock = threading.RLock()

    def register(self, spec: CollectorSpec) -> None:
        with self._lock:
            if spec.name in self._specs:
                logger.warning(f"Collector {spec.name} re-registered")
            self._specs[spec.name] = spec

    def get(self, collector_name: str) -> CollectorSpec:
        """Raises CollectorNotFoundError for unknown kinds."""
        with self._lock:
            spec = self._specs.get(collector_name)
            if spec is None:
                raise CollectorNotFoundError(collector_name, available=self.names())
            return spec

    def find(self, collector_name: str) -> Optional[CollectorSpec]:
        with self._lock:
            return self._specs.get(collector_name)

    def names(self) -> List[str]:
        """Registered names in declaration order."""
        with self._lock:
            return sorted(self._specs, key=CollectorKind.order_of)

    def specs(self) -> List[CollectorSpec]:
        with self._lock:
            return [self._specs[name] for name in self.names()]

    def __contains__(self, collector_name: str) -> bool:
        with self._lock:
            return collector_name in self._specs

    def __len__(self) -> int:
        with self._lock:
            return len(self._specs)


_MEASURES: Dict[CollectorKind, tuple] = {
    CollectorKind.CPU: (measurements.measure_cpu, "P95 CPU utilization and runnable tasks"),
    CollectorKind.MEMORY: (measurements.measure_memory, "Page life expectancy, grants and stolen memory"),
    CollectorKind.IO: (measurements.measure_io, "Data and log file latency"),
    CollectorKind.DISKS: (measurements.measure_disks, "Free space of data, log and system volumes"),
    CollectorKind.BACKUPS: (measurements.measure_backups, "Full and log backup recency"),
    CollectorKind.ALWAYS_ON: (measurements.measure_always_on, "Availability group synchronization"),
    CollectorKind.LOG_CHAIN: (measurements.measure_log_chain, "Log backup chain integrity"),
    CollectorKind.DATABASE_STATES: (measurements.measure_database_states, "Suspect, emergency and pending databases"),
    CollectorKind.CRITICAL_ERRORS: (measurements.measure_critical_errors, "Severity 20+, I/O and corruption errors"),
    CollectorKind.MAINTENANCE: (measurements.measure_maintenance, "CHECKDB and IndexOptimize recency"),
    CollectorKind.CONFIG_TEMPDB: (measurements.measure_config_tempdb, "TempDB contention, latency and layout"),
    CollectorKind.AUTOGROWTH: (measurements.measure_autogrowth, "Autogrowth events and max-size headroom"),
    CollectorKind.WAITS: (measurements.measure_waits, "Wait statistics and blocking"),
}


def build_default_registry() -> CollectorRegistry:
    """Registry with all thirteen shipped collector kinds."""
    registry = CollectorRegistry()
    for kind in CollectorKind:
        measure, description = _MEASURES[kind]
        registry.register(
            CollectorSpec(
                kind=kind,
                measure=measure,
                default_rules=lambda kind=kind: default_rules(kind),
                default_config=lambda kind=kind, text=description: replace(default_config(kind), description=text),
                description=description,
                is_eligible=_always_on_only if kind == CollectorKind.ALWAYS_ON else _any_instance,
            )
        )
    return registry


__all__ = [
    "CollectorSpec",
    "CollectorRegistry",
    "build_default_registry",
]
