"""
Collectors - Shipped Defaults.

============================================================
RESPONSIBILITY
============================================================
Default configuration and threshold rules of every collector
kind. Seeded at deployment; "reset" restores these rules.

Ladders are written as cumulative penalties, e.g. the CPU
ladder (<=80 -> 100, <=90 -> 70, else 40) is:
    P95CPU > 80 -> Penalty 30
    P95CPU > 90 -> Penalty 30

============================================================
DEFAULT WEIGHTS (sum to 100)
============================================================
Backups 23 | AlwaysOn 17 | IO 13 | CPU 12 | Memory 10
Waits 10   | Disks 9     | Maintenance 6
LogChain, DatabaseStates, CriticalErrors, ConfigTempdb and
Autogrowth are collected but weigh 0.

============================================================
"""

from typing import Dict, List

from health_scoring.models import (
    CollectorConfig,
    CollectorKind,
    RuleAction,
    RuleOperator,
    ThresholdRule,
)


PENALTY = RuleAction.PENALTY
CAP = RuleAction.CAP
OVERRIDE = RuleAction.SCORE_OVERRIDE


def _rules(kind: CollectorKind, specs: List[tuple]) -> List[ThresholdRule]:
    """Build rules from (name, group, operator, threshold, action, result) tuples."""
    rules = []
    order_by_group: Dict[str, int] = {}
    for name, group, operator, threshold, action, result in specs:
        order = order_by_group.get(group, 0) + 1
        order_by_group[group] = order
        rules.append(
            ThresholdRule(
                collector_name=kind.value,
                group=group,
                operator=RuleOperator.parse(operator),
                threshold_value=float(threshold),
                action=action,
                result_value=float(result),
                evaluation_order=order * 10,
                name=name,
                display_name=name.replace("_", " "),
            )
        )
    return rules


# ============================================================
# DEFAULT RULES
# ============================================================

DEFAULT_RULE_SPECS: Dict[CollectorKind, List[tuple]] = {
    CollectorKind.CPU: [
        ("P95CPU_High", "P95CPU", ">", 80, PENALTY, 30),
        ("P95CPU_Critical", "P95CPU", ">", 90, PENALTY, 30),
        ("RunnableTasks_Cap", "RunnableTasks", ">", 1, CAP, 70),
    ],
    CollectorKind.MEMORY: [
        ("PLE_BelowTarget", "PLERatio", "<", 100, PENALTY, 20),
        ("PLE_Low", "PLERatio", "<", 70, PENALTY, 20),
        ("PLE_VeryLow", "PLERatio", "<", 50, PENALTY, 20),
        ("PLE_Critical", "PLERatio", "<", 30, PENALTY, 20),
        ("PLE_Collapsed_Cap", "PLERatio", "<", 15, CAP, 60),
        ("Grants_Pending", "GrantsPending", ">", 0, PENALTY, 10),
        ("Grants_High", "GrantsPending", ">", 5, PENALTY, 15),
        ("Grants_Critical_Cap", "GrantsPending", ">", 10, CAP, 60),
        ("Stolen_High", "StolenPct", ">", 30, PENALTY, 15),
        ("Stolen_Critical_Cap", "StolenPct", ">", 50, CAP, 70),
    ],
    CollectorKind.IO: [
        ("Latency_Elevated", "AvgLatencyMs", ">", 5, PENALTY, 20),
        ("Latency_High", "AvgLatencyMs", ">", 10, PENALTY, 20),
        ("Latency_Critical", "AvgLatencyMs", ">", 20, PENALTY, 20),
        ("LogWrite_Cap", "LogWriteMs", ">", 20, CAP, 70),
    ],
    CollectorKind.DISKS: [
        ("FreeSpace_Below20", "WorstFreePct", "<", 20, PENALTY, 20),
        ("FreeSpace_Below15", "WorstFreePct", "<", 15, PENALTY, 20),
        ("FreeSpace_Below10", "WorstFreePct", "<", 10, PENALTY, 20),
        ("FreeSpace_Below5", "WorstFreePct", "<", 5, PENALTY, 40),
        ("AlertedVolume_Exhausted", "WorstAlertedFreePct", "<=", 5, OVERRIDE, 0),
        ("AlertedVolume_Cap", "WorstAlertedFreePct", "<=", 10, CAP, 30),
    ],
    CollectorKind.BACKUPS: [
        ("FullBackup_Breached", "FullBackupAgeHours", ">", 24, PENALTY, 50),
        ("LogBackup_Breached", "LogBackupAgeHours", ">", 2, PENALTY, 50),
    ],
    CollectorKind.ALWAYS_ON: [
        ("Suspended_Databases", "SuspendedCount", ">", 0, OVERRIDE, 0),
        ("Unsynchronized_Databases", "UnsynchronizedCount", ">", 0, PENALTY, 50),
        ("Unsynchronized_Cap", "UnsynchronizedCount", ">", 0, CAP, 60),
        ("SendQueue_High", "MaxSendQueueKB", ">", 100000, PENALTY, 30),
        ("RedoQueue_High", "MaxRedoQueueKB", ">", 100000, PENALTY, 20),
    ],
    CollectorKind.LOG_CHAIN: [
        ("BrokenChain_Stale", "StaleBrokenChain", "==", 1, OVERRIDE, 0),
        ("BrokenChain_Single", "BrokenChainCount", ">", 0, PENALTY, 50),
        ("BrokenChain_Many", "BrokenChainCount", ">", 2, PENALTY, 30),
        ("Full_Without_LogBackup", "FullDbsWithoutLogBackup", ">", 0, PENALTY, 20),
    ],
    CollectorKind.DATABASE_STATES: [
        ("Suspect_Or_Emergency", "SuspectOrEmergency", ">", 0, OVERRIDE, 0),
        ("SuspectPages_Found", "SuspectPages", ">", 0, PENALTY, 60),
        ("SuspectPages_Cap", "SuspectPages", ">", 0, CAP, 50),
        ("Recovery_Pending", "RecoveryPending", ">", 0, PENALTY, 60),
        ("SingleUser_Or_Restoring", "SingleUserOrRestoring", ">", 0, PENALTY, 20),
    ],
    CollectorKind.CRITICAL_ERRORS: [
        ("IO_Errors", "IOErrors", ">", 0, OVERRIDE, 0),
        ("Corruption_Detected", "Corruption", ">", 0, OVERRIDE, 0),
        ("Severity20_Any", "Severity20Plus", ">", 0, PENALTY, 20),
        ("Severity20_Many", "Severity20Plus", ">", 2, PENALTY, 20),
        ("Severity20_Recent_Cap", "Severity20PlusLastHour", ">", 0, CAP, 70),
        ("Deadlocks_Any", "Deadlocks", ">", 0, PENALTY, 10),
        ("Deadlocks_Many", "Deadlocks", ">", 5, PENALTY, 20),
        ("LogFull_Events", "LogFull", ">", 0, PENALTY, 60),
        ("LogFull_Cap", "LogFull", ">", 0, CAP, 50),
    ],
    CollectorKind.MAINTENANCE: [
        ("CHECKDB_Over7Days", "CheckdbAgeDays", ">", 7, PENALTY, 10),
        ("CHECKDB_Over14Days", "CheckdbAgeDays", ">", 14, PENALTY, 15),
        ("CHECKDB_Over30Days", "CheckdbAgeDays", ">", 30, PENALTY, 25),
        ("IndexOptimize_Over7Days", "IndexOptimizeAgeDays", ">", 7, PENALTY, 5),
        ("IndexOptimize_Over14Days", "IndexOptimizeAgeDays", ">", 14, PENALTY, 10),
        ("IndexOptimize_Over30Days", "IndexOptimizeAgeDays", ">", 30, PENALTY, 15),
    ],
    CollectorKind.CONFIG_TEMPDB: [
        ("Contention_Moderate", "PageLatchDeltaMs", ">", 20, PENALTY, 5),
        ("Contention_High", "PageLatchDeltaMs", ">", 100, PENALTY, 10),
        ("Contention_Critical", "PageLatchDeltaMs", ">", 500, PENALTY, 15),
        ("WriteLatency_Elevated", "WriteLatencyMs", ">", 10, PENALTY, 3),
        ("WriteLatency_High", "WriteLatencyMs", ">", 20, PENALTY, 7),
        ("WriteLatency_Critical", "WriteLatencyMs", ">", 50, PENALTY, 10),
        ("Files_Below4", "FileCount", "<", 4, PENALTY, 10),
        ("Files_Single", "FileCount", "<", 2, PENALTY, 10),
        ("FreeSpace_Low", "FreeSpacePct", "<", 20, PENALTY, 10),
        ("FreeSpace_Critical", "FreeSpacePct", "<", 10, PENALTY, 10),
    ],
    CollectorKind.AUTOGROWTH: [
        ("Events_50", "EventsLast24h", ">=", 50, PENALTY, 10),
        ("Events_100", "EventsLast24h", ">=", 100, PENALTY, 10),
        ("Events_200", "EventsLast24h", ">=", 200, PENALTY, 10),
        ("Events_500", "EventsLast24h", ">=", 500, PENALTY, 20),
        ("Events_1000", "EventsLast24h", ">=", 1000, PENALTY, 10),
        ("Files_Near_MaxSize_Cap", "FilesNearMaxSize", ">", 0, CAP, 40),
        ("Files_At_MaxSize", "FilesAtMaxSize", ">", 0, OVERRIDE, 0),
    ],
    CollectorKind.WAITS: [
        ("PageIOLatch_Elevated", "PageIOLatchPct", ">", 5, PENALTY, 15),
        ("PageIOLatch_Critical", "PageIOLatchPct", ">", 10, PENALTY, 15),
        ("CXPacket_Elevated", "CXPacketPct", ">", 10, PENALTY, 10),
        ("CXPacket_Critical", "CXPacketPct", ">", 15, PENALTY, 10),
        ("ResourceSemaphore_Elevated", "ResourceSemaphorePct", ">", 2, PENALTY, 15),
        ("ResourceSemaphore_Critical", "ResourceSemaphorePct", ">", 5, PENALTY, 15),
        ("ThreadPool_Any", "ThreadPoolPct", ">", 0.01, PENALTY, 40),
        ("Blocking_Any", "BlockedSessions", ">", 0, PENALTY, 10),
        ("Blocking_Heavy", "BlockedSessions", ">", 10, PENALTY, 20),
    ],
}


def default_rules(kind: CollectorKind) -> List[ThresholdRule]:
    """Fresh copies of the shipped rules of a collector kind."""
    return _rules(kind, DEFAULT_RULE_SPECS.get(kind, []))


# ============================================================
# DEFAULT CONFIGS
# ============================================================

# kind: (display name, category, interval, weight, execution order)
DEFAULT_CONFIG_SPECS: Dict[CollectorKind, tuple] = {
    CollectorKind.CPU: ("CPU", "Performance", 300, 12.0, 1),
    CollectorKind.MEMORY: ("Memory", "Performance", 300, 10.0, 2),
    CollectorKind.IO: ("I/O", "Performance", 300, 13.0, 3),
    CollectorKind.DISKS: ("Disks", "Performance", 600, 9.0, 4),
    CollectorKind.BACKUPS: ("Backups", "Availability", 900, 23.0, 5),
    CollectorKind.ALWAYS_ON: ("AlwaysOn", "Availability", 300, 17.0, 6),
    CollectorKind.LOG_CHAIN: ("Log Chain", "Availability", 900, 0.0, 7),
    CollectorKind.DATABASE_STATES: ("Database States", "Availability", 300, 0.0, 8),
    CollectorKind.CRITICAL_ERRORS: ("Critical Errors", "Availability", 600, 0.0, 9),
    CollectorKind.MAINTENANCE: ("Maintenance", "Maintenance", 3600, 6.0, 10),
    CollectorKind.CONFIG_TEMPDB: ("Config & TempDB", "Maintenance", 3600, 0.0, 11),
    CollectorKind.AUTOGROWTH: ("Autogrowth", "Maintenance", 1800, 0.0, 12),
    CollectorKind.WAITS: ("Wait Statistics", "Performance", 300, 10.0, 13),
}


def default_config(kind: CollectorKind) -> CollectorConfig:
    """Shipped configuration of a collector kind."""
    display_name, category, interval, weight, order = DEFAULT_CONFIG_SPECS[kind]
    return CollectorConfig(
        collector_name=kind.value,
        display_name=display_name,
        category=category,
        enabled=True,
        interval_seconds=interval,
        timeout_seconds=30,
        weight=weight,
        parallel_degree=5,
        execution_order=order,
    )


__all__ = [
    "DEFAULT_RULE_SPECS",
    "DEFAULT_CONFIG_SPECS",
    "default_rules",
    "default_config",
]
