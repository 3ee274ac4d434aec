"""
Collectors - Measurement Derivation.

============================================================
RESPONSIBILITY
============================================================
Turns the raw per-instance payload returned by a metric
sampler into the grouped measurement the threshold rules of
each collector kind are written against.

- One function per collector kind
- Output is a flat mapping: group name -> numeric value
- A group whose inputs are not reported is omitted, so the
  rules of that group simply do not apply
- Malformed payloads raise MeasurementError

============================================================
"""

from typing import Any, Callable, Dict, Mapping, Optional

from core.exceptions import MeasurementError


Payload = Mapping[str, Any]
GroupedMeasurement = Dict[str, float]
MeasureFunction = Callable[[Payload], GroupedMeasurement]

# Days reported when a maintenance job has never run.
NEVER_RAN_DAYS = 9999.0


# ============================================================
# HELPERS
# ============================================================

def _number(payload: Payload, key: str, default: Optional[float] = None) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise MeasurementError(f"Field '{key}' is not numeric: {value!r}") from e


def _required(payload: Payload, key: str) -> float:
    value = _number(payload, key)
    if value is None:
        raise MeasurementError(f"Required field '{key}' missing from payload")
    return value


def _percent_of(part: Optional[float], total: Optional[float]) -> Optional[float]:
    if part is None or not total:
        return None
    return part * 100.0 / total


def _put(result: GroupedMeasurement, group: str, value: Optional[float]) -> None:
    if value is not None:
        result[group] = round(value, 4)


# ============================================================
# PERFORMANCE
# ============================================================

def measure_cpu(payload: Payload) -> GroupedMeasurement:
    result: GroupedMeasurement = {"P95CPU": _required(payload, "p95_cpu_percent")}
    _put(result, "RunnableTasks", _number(payload, "runnable_tasks"))
    return result


def measure_memory(payload: Payload) -> GroupedMeasurement:
    """
    PLE is expressed as a percentage of its target; without a
    target, 300 seconds is the reference.
    """
    ple = _required(payload, "page_life_expectancy")
    target = _number(payload, "ple_target") or 300.0

    result: GroupedMeasurement = {"PLERatio": ple * 100.0 / target}
    _put(result, "GrantsPending", _number(payload, "memory_grants_pending"))
    _put(
        result,
        "StolenPct",
        _percent_of(_number(payload, "stolen_memory_mb"), _number(payload, "total_server_memory_mb")),
    )
    return {k: round(v, 4) for k, v in result.items()}


def measure_io(payload: Payload) -> GroupedMeasurement:
    data_read = _required(payload, "data_file_avg_read_ms")
    data_write = _required(payload, "data_file_avg_write_ms")
    log_write = _required(payload, "log_file_avg_write_ms")
    return {
        "AvgLatencyMs": round((data_read + data_write + log_write) / 3.0, 4),
        "LogWriteMs": log_write,
    }


def measure_disks(payload: Payload) -> GroupedMeasurement:
    """Worst free space, preferring the real free space that counts file headroom."""
    worst = _number(payload, "worst_real_free_pct")
    if worst is None:
        worst = _required(payload, "worst_free_pct")

    result: GroupedMeasurement = {"WorstFreePct": worst}

    # Alerted: low real free space on a volume whose files can still grow.
    alerted = [
        _number(volume, "real_free_pct", 100.0)
        for volume in payload.get("volumes") or []
        if volume.get("is_alerted")
    ]
    if alerted:
        result["WorstAlertedFreePct"] = min(alerted)
    return result


def measure_waits(payload: Payload) -> GroupedMeasurement:
    total = _number(payload, "total_wait_ms") or 0.0
    result: GroupedMeasurement = {}

    if total > 0:
        _put(result, "PageIOLatchPct", _percent_of(_number(payload, "pageiolatch_wait_ms", 0.0), total))
        _put(result, "CXPacketPct", _percent_of(_number(payload, "cxpacket_wait_ms", 0.0), total))
        _put(
            result,
            "ResourceSemaphorePct",
            _percent_of(_number(payload, "resource_semaphore_wait_ms", 0.0), total),
        )
        _put(result, "ThreadPoolPct", _percent_of(_number(payload, "threadpool_wait_ms", 0.0), total))

    _put(result, "BlockedSessions", _number(payload, "blocked_session_count", 0.0))
    return result


# ============================================================
# AVAILABILITY
# ============================================================

def measure_backups(payload: Payload) -> GroupedMeasurement:
    """
    Backup age in hours of the most overdue database.

    Log backup age only applies when some database runs in
    full recovery.
    """
    result: GroupedMeasurement = {
        "FullBackupAgeHours": _number(payload, "max_hours_since_full_backup", NEVER_RAN_DAYS * 24),
    }
    _put(result, "LogBackupAgeHours", _number(payload, "max_hours_since_log_backup"))
    return result


def measure_always_on(payload: Payload) -> GroupedMeasurement:
    if not payload.get("always_on_enabled", False):
        return {}

    database_count = _number(payload, "database_count", 0.0)
    synchronized = _number(payload, "synchronized_count", database_count)
    return {
        "SuspendedCount": _number(payload, "suspended_count", 0.0),
        "UnsynchronizedCount": max(0.0, database_count - synchronized),
        "MaxSendQueueKB": _number(payload, "max_send_queue_kb", 0.0),
        "MaxRedoQueueKB": _number(payload, "max_redo_queue_kb", 0.0),
    }


def measure_log_chain(payload: Payload) -> GroupedMeasurement:
    broken = _number(payload, "broken_chain_count", 0.0)
    max_hours = _number(payload, "max_hours_since_log_backup", 0.0)
    return {
        "BrokenChainCount": broken,
        "StaleBrokenChain": 1.0 if broken > 0 and max_hours > 24 else 0.0,
        "FullDbsWithoutLogBackup": _number(payload, "full_dbs_without_log_backup", 0.0),
    }


def measure_database_states(payload: Payload) -> GroupedMeasurement:
    """Offline databases are intentional and not measured."""
    return {
        "SuspectOrEmergency": (
            _number(payload, "suspect_count", 0.0) + _number(payload, "emergency_count", 0.0)
        ),
        "SuspectPages": _number(payload, "suspect_page_count", 0.0),
        "RecoveryPending": _number(payload, "recovery_pending_count", 0.0),
        "SingleUserOrRestoring": (
            _number(payload, "single_user_count", 0.0) + _number(payload, "restoring_count", 0.0)
        ),
    }


def measure_critical_errors(payload: Payload) -> GroupedMeasurement:
    return {
        "IOErrors": _number(payload, "io_error_count", 0.0),
        "Corruption": _number(payload, "corruption_count", 0.0),
        "Severity20Plus": _number(payload, "severity20_plus_count", 0.0),
        "Severity20PlusLastHour": _number(payload, "severity20_plus_last_hour", 0.0),
        "Deadlocks": _number(payload, "deadlock_count", 0.0),
        "LogFull": _number(payload, "log_full_count", 0.0),
    }


# ============================================================
# MAINTENANCE
# ============================================================

def measure_maintenance(payload: Payload) -> GroupedMeasurement:
    """A job that never ran reports NEVER_RAN_DAYS."""
    return {
        "CheckdbAgeDays": _number(payload, "days_since_checkdb", NEVER_RAN_DAYS),
        "IndexOptimizeAgeDays": _number(payload, "days_since_index_optimize", NEVER_RAN_DAYS),
    }


def measure_config_tempdb(payload: Payload) -> GroupedMeasurement:
    result: GroupedMeasurement = {}
    _put(result, "PageLatchDeltaMs", _number(payload, "page_latch_delta_ms"))
    _put(result, "WriteLatencyMs", _number(payload, "tempdb_avg_write_latency_ms"))
    _put(result, "FileCount", _number(payload, "tempdb_file_count"))
    _put(result, "FreeSpacePct", _number(payload, "tempdb_free_space_pct"))
    if not result:
        raise MeasurementError("TempDB payload carries no known field")
    return result


def measure_autogrowth(payload: Payload) -> GroupedMeasurement:
    return {
        "EventsLast24h": _number(payload, "autogrowth_events_last_24h", 0.0),
        "FilesNearMaxSize": _number(payload, "files_near_max_size", 0.0),
        "FilesAtMaxSize": _number(payload, "files_at_max_size", 0.0),
    }


__all__ = [
    "NEVER_RAN_DAYS",
    "Payload",
    "GroupedMeasurement",
    "MeasureFunction",
    "measure_cpu",
    "measure_memory",
    "measure_io",
    "measure_disks",
    "measure_waits",
    "measure_backups",
    "measure_always_on",
    "measure_log_chain",
    "measure_database_states",
    "measure_critical_errors",
    "measure_maintenance",
    "measure_config_tempdb",
    "measure_autogrowth",
]
