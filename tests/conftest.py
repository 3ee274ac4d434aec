"""
Shared fixtures for the health engine test suite.

============================================================
PURPOSE
============================================================
- Deterministic clock
- In-memory stores seeded with shipped defaults
- A scriptable metric sampler (payloads, failures, delays,
  gates and concurrency tracking)

============================================================
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from admin.service import CollectorAdminService
from collectors.base import Collector
from collectors.provider import InstanceInfo, StaticInstanceProvider
from collectors.registry import CollectorRegistry, build_default_registry
from collectors.sampler import MetricSampler
from core.clock import MockClock
from core.exceptions import MeasurementError
from database.seed import seed_defaults
from health_scoring.config import EngineConfig
from health_scoring.consolidator import HealthScoreConsolidator
from health_scoring.exception_registry import ExceptionRegistry
from health_scoring.stores import InMemoryConfigStore, InMemoryExceptionStore, InMemoryScoreStore
from orchestrator.core import CollectorOrchestrator, build_collectors


T0 = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


# ============================================================
# FAKE SAMPLER
# ============================================================

class FakeSampler(MetricSampler):
    """
    Scriptable sampler.

    Payloads are keyed by (collector_name, instance_name); a key
    of (collector_name, "*") applies to every instance.
    """

    def __init__(self):
        self.payloads: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.failures: Dict[Tuple[str, str], Exception] = {}
        self.delay_seconds: float = 0.0
        self.gate: Optional[asyncio.Event] = None
        self.calls: List[Tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    def set_payload(self, collector_name: str, payload: Dict[str, Any], instance_name: str = "*") -> None:
        self.payloads[(collector_name, instance_name)] = payload

    def fail(self, collector_name: str, instance_name: str, error: Optional[Exception] = None) -> None:
        self.failures[(collector_name, instance_name)] = error or MeasurementError(
            f"{instance_name} unreachable",
            collector_name=collector_name,
            instance_name=instance_name,
        )

    async def fetch(self, collector_name: str, instance: InstanceInfo, timeout_seconds: float) -> Dict[str, Any]:
        name = instance.instance_name
        self.calls.append((collector_name, name))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)

            if (collector_name, name) in self.failures:
                raise self.failures[(collector_name, name)]
            payload = self.payloads.get((collector_name, name), self.payloads.get((collector_name, "*")))
            if payload is None:
                raise MeasurementError(
                    f"No payload scripted for {collector_name}/{name}",
                    collector_name=collector_name,
                    instance_name=name,
                )
            return dict(payload)
        finally:
            self.in_flight -= 1

    async def close(self) -> None:
        self.closed = True


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("Condition not reached before timeout")
        await asyncio.sleep(interval)


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock() -> MockClock:
    return MockClock(T0)


@pytest.fixture
def registry() -> CollectorRegistry:
    return build_default_registry()


@pytest.fixture
def config_store(registry) -> InMemoryConfigStore:
    """Config store seeded with every shipped config and rule."""
    store = InMemoryConfigStore()
    seed_defaults(store, registry)
    return store


@pytest.fixture
def score_store() -> InMemoryScoreStore:
    return InMemoryScoreStore()


@pytest.fixture
def exception_store() -> InMemoryExceptionStore:
    return InMemoryExceptionStore()


@pytest.fixture
def exception_registry(exception_store, clock) -> ExceptionRegistry:
    return ExceptionRegistry(exception_store, clock=clock)


@pytest.fixture
def instances() -> List[InstanceInfo]:
    return [
        InstanceInfo("SQL01", environment="Production", hosting_site="OnPremise"),
        InstanceInfo("SQL02\\INST1", environment="Production", hosting_site="OnPremise", is_always_on=True),
    ]


@pytest.fixture
def provider(instances) -> StaticInstanceProvider:
    return StaticInstanceProvider(instances)


@pytest.fixture
def sampler() -> FakeSampler:
    return FakeSampler()


@pytest.fixture
def enable_only(config_store):
    """Disable every collector except the named ones."""

    def _enable_only(*names: str) -> None:
        for config in config_store.list_configs():
            config.enabled = config.collector_name in names
            config_store.save_config(config)

    return _enable_only


@pytest.fixture
def replace_rules(config_store):
    """Deactivate a collector's shipped rules and add the given ones."""

    def _replace_rules(collector_name: str, rules) -> None:
        for rule in config_store.list_rules(collector_name):
            rule.is_active = False
            config_store.save_rule(rule)
        for rule in rules:
            config_store.save_rule(rule)

    return _replace_rules


@pytest.fixture
def make_collector(registry, config_store, score_store, exception_registry, provider, sampler, clock):
    """Build the generic collector of one kind over the shared fixtures."""

    def _make_collector(collector_name: str, instance_provider=None) -> Collector:
        return Collector(
            spec=registry.get(collector_name),
            config_store=config_store,
            score_store=score_store,
            exception_registry=exception_registry,
            instance_provider=instance_provider or provider,
            sampler=sampler,
            clock=clock,
        )

    return _make_collector


@pytest.fixture
def eventually():
    """The wait_until poller, for async tests."""
    return wait_until


@pytest.fixture
def admin_service(registry, config_store, score_store, exception_registry, provider, sampler, clock):
    """Admin service over an orchestrator that has not been started."""
    config = EngineConfig(consolidation_interval_seconds=3600)
    orchestrator = CollectorOrchestrator(
        build_collectors(registry, config_store, score_store, exception_registry, provider, sampler, clock),
        config_store,
        consolidator=HealthScoreConsolidator(config_store, score_store, config=config, clock=clock),
        config=config,
        clock=clock,
    )
    return CollectorAdminService(
        config_store,
        score_store,
        exception_registry,
        registry,
        orchestrator=orchestrator,
        config=config,
        clock=clock,
    )
