"""
Health Scoring - Exception Registry.

============================================================
RESPONSIBILITY
============================================================
Pure suppression lookup: is a (collector, server) pair
currently excepted from penalties?

- Expiry is evaluated lazily at lookup time
- Expired entries are inert, never swept
- Knows nothing about scoring

============================================================
SERVER MATCHING
============================================================
An entry for "SQL01" matches all of:
- "SQL01"                 (full name)
- "SQL01\\INST1"          (host part before the backslash)
- "sql01.corp.local"      (short name before the first dot)
Comparison is case-insensitive.

============================================================
"""

from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple
import logging

from core.clock import ClockFactory, ClockProtocol, ensure_utc
from core.exceptions import ConfigurationError, DuplicateExceptionError

from .models import CollectorException, CollectorKind
from .stores import ExceptionStore


logger = logging.getLogger(__name__)


GENERIC_EXCEPTION_TYPE = "All"

SUPPORTED_EXCEPTION_TYPES: Dict[str, Tuple[Tuple[str, str], ...]] = {
    CollectorKind.MAINTENANCE.value: (
        ("CHECKDB", "Integrity check (CHECKDB)"),
        ("IndexOptimize", "Index maintenance (IndexOptimize)"),
    ),
    CollectorKind.BACKUPS.value: (
        ("FullBackup", "Full backup"),
        ("LogBackup", "Log backup"),
        ("DiffBackup", "Differential backup"),
    ),
    CollectorKind.ALWAYS_ON.value: (
        ("Synchronization", "Replica synchronization"),
        ("SuspendedDB", "Suspended database"),
    ),
}


# ============================================================
# NAME MATCHING
# ============================================================

def server_name_variants(name: str) -> Set[str]:
    """Full name, host part and short host name, lower-cased."""
    full = name.strip().lower()
    host = full.split("\\", 1)[0]
    short = host.split(".", 1)[0]
    return {full, host, short}


def server_matches(exception_server: str, instance_name: str) -> bool:
    """Check if an exception's server name covers an instance name."""
    target = exception_server.strip().lower()
    if not target:
        return False
    return target in server_name_variants(instance_name)


# ============================================================
# REGISTRY
# ============================================================

class ExceptionRegistry:
    """
    Lookup and maintenance of collector exceptions.

    Thin policy layer over an ExceptionStore.
    """

    def __init__(
        self,
        store: ExceptionStore,
        clock: Optional[ClockProtocol] = None,
    ):
        self._store = store
        self._clock = clock

    @property
    def clock(self) -> ClockProtocol:
        return self._clock or ClockFactory.get_clock()

    # --------------------------------------------------------
    # Lookup
    # --------------------------------------------------------

    def find_active(
        self,
        collector_name: str,
        server_name: str,
        now: Optional[datetime] = None,
    ) -> List[CollectorException]:
        """All effective exceptions covering this server for a collector."""
        now = ensure_utc(now) if now else self.clock.now()
        return [
            e for e in self._store.list(collector_name)
            if e.is_effective_at(now) and server_matches(e.server_name, server_name)
        ]

    def is_excepted_now(self, collector_name: str, server_name: str) -> bool:
        """True only if an entry exists and has not expired."""
        return bool(self.find_active(collector_name, server_name))

    # --------------------------------------------------------
    # Maintenance
    # --------------------------------------------------------

    @staticmethod
    def supported_types(collector_name: str) -> List[Dict[str, str]]:
        """Exception kinds a collector accepts."""
        types = SUPPORTED_EXCEPTION_TYPES.get(collector_name)
        if not types:
            return [{"type": GENERIC_EXCEPTION_TYPE, "display_name": "All checks"}]
        return [{"type": t, "display_name": d} for t, d in types]

    def add(
        self,
        collector_name: str,
        server_name: str,
        exception_type: str = GENERIC_EXCEPTION_TYPE,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        created_by: Optional[str] = None,
    ) -> CollectorException:
        """
        Create an exception.

        Raises:
            ConfigurationError: unknown exception type or blank server
            DuplicateExceptionError: an active entry already exists
        """
        server_name = (server_name or "").strip()
        if not server_name:
            raise ConfigurationError("Server name is required", config_key="server_name")

        allowed = [t["type"] for t in self.supported_types(collector_name)]
        if exception_type not in allowed:
            raise ConfigurationError(
                f"Unsupported exception type '{exception_type}' for {collector_name}. "
                f"Supported: {', '.join(allowed)}",
                config_key="exception_type",
                actual_value=exception_type,
            )

        now = self.clock.now()
        for existing in self._store.list(collector_name):
            if (
                existing.is_effective_at(now)
                and existing.exception_type == exception_type
                and existing.server_name.lower() == server_name.lower()
            ):
                raise DuplicateExceptionError(collector_name, exception_type, server_name)

        created = self._store.add(
            CollectorException(
                collector_name=collector_name,
                server_name=server_name,
                exception_type=exception_type,
                reason=reason,
                expires_at=ensure_utc(expires_at) if expires_at else None,
                created_by=created_by,
                created_at=now,
            )
        )
        logger.info(
            f"Exception added | collector={collector_name} | type={exception_type} | "
            f"server={server_name} | by={created_by or 'unknown'}"
        )
        return created

    def remove(self, exception_id: int) -> None:
        """Delete an exception. Raises ExceptionNotFoundError."""
        self._store.remove(exception_id)
        logger.info(f"Exception removed | id={exception_id}")

    def list(self, collector_name: Optional[str] = None) -> List[CollectorException]:
        """Entries for a collector, expired included."""
        return self._store.list(collector_name)


__all__ = [
    "GENERIC_EXCEPTION_TYPE",
    "SUPPORTED_EXCEPTION_TYPES",
    "server_name_variants",
    "server_matches",
    "ExceptionRegistry",
]
