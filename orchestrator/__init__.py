"""
Orchestrator Package - Scheduling Layer.

============================================================
PACKAGE OVERVIEW
============================================================
Decides WHEN collectors and the consolidator run. It has no
knowledge of scoring semantics.

============================================================
CORE PRINCIPLES
============================================================
1. One independent timer per enabled collector kind
2. At most one in-flight run per collector kind
3. Rejected triggers are signaled, never queued
4. Stop drains in-flight runs before returning
5. Nothing a collector does is fatal to the process

============================================================
ARCHITECTURE
============================================================

    +-----------------------------------------------------+
    |               CollectorOrchestrator                 |
    |-----------------------------------------------------|
    |  collector timers  |  one asyncio task per kind     |
    |  consolidator      |  fixed-interval timer          |
    |  supervisor        |  starts newly enabled kinds    |
    |  in-flight runs    |  single-flight per kind        |
    |  CLI               |  run / trigger / consolidate   |
    +-----------------------------------------------------+

============================================================
QUICK START
============================================================
Command line usage::

    python app.py run
    python app.py trigger CPU
    python app.py consolidate

Programmatic usage::

    orchestrator = create_orchestrator(registry, config_store, score_store,
                                       exception_registry, provider, sampler)
    await orchestrator.start()
    outcome = await orchestrator.trigger_now("Backups", triggered_by="dba")
    await orchestrator.stop()

============================================================
"""

from .models import (
    TimerState,
    TriggerOutcome,
    CollectorStatus,
    OrchestratorStatus,
)
from .core import (
    CollectorOrchestrator,
    build_collectors,
    create_orchestrator,
    make_correlation_id,
    setup_logging,
)


__all__ = [
    # Models
    "TimerState",
    "TriggerOutcome",
    "CollectorStatus",
    "OrchestratorStatus",
    # Core
    "CollectorOrchestrator",
    "build_collectors",
    "create_orchestrator",
    "make_correlation_id",
    "setup_logging",
]
