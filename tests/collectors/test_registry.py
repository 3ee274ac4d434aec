"""
Tests for the Collector Registration Table and Shipped Defaults.

Tests cover:
- All thirteen kinds registered in declaration order
- Unknown kinds
- Shipped weights and rule ordering
- Eligibility
"""

import pytest

from collectors.defaults import DEFAULT_RULE_SPECS, default_config, default_rules
from collectors.provider import InstanceInfo
from collectors.registry import CollectorSpec, build_default_registry
from core.exceptions import CollectorNotFoundError
from health_scoring.evaluator import evaluate_thresholds
from health_scoring.models import CollectorKind


class TestRegistry:
    """Lookup by kind name."""

    def test_all_kinds_registered(self, registry):
        """Every collector kind has a spec, in declaration order."""
        assert len(registry) == 13
        assert registry.names() == [kind.value for kind in CollectorKind]
        assert "Backups" in registry

    def test_unknown_kind(self, registry):
        """get raises, find returns None."""
        with pytest.raises(CollectorNotFoundError):
            registry.get("Replication")
        assert registry.find("Replication") is None

    def test_spec_defaults(self, registry):
        """Specs hand out fresh defaults with a description."""
        spec = registry.get("Memory")
        config = spec.default_config()
        assert config.collector_name == "Memory"
        assert config.description == spec.description
        assert spec.default_rules()[0] is not spec.default_rules()[0]

    def test_supported_exception_types(self, registry):
        """Backups advertise backup-specific exception types."""
        types = [t["type"] for t in registry.get("Backups").supported_exception_types()]
        assert "FullBackup" in types

    def test_reregistration_replaces(self):
        """Registering a kind twice keeps the latest spec."""
        registry = build_default_registry()
        original = registry.get("CPU")
        replacement = CollectorSpec(
            kind=CollectorKind.CPU,
            measure=lambda payload: {"P95CPU": 1.0},
            default_rules=original.default_rules,
            default_config=original.default_config,
        )
        registry.register(replacement)
        assert registry.get("CPU") is replacement
        assert len(registry) == 13


class TestEligibility:
    """Which instances a kind runs against."""

    def test_always_on_requires_replica(self, registry):
        """AlwaysOn only runs on AG replicas; others run everywhere."""
        replica = InstanceInfo("SQL02", is_always_on=True)
        standalone = InstanceInfo("SQL01")
        assert registry.get("AlwaysOn").is_eligible(replica)
        assert not registry.get("AlwaysOn").is_eligible(standalone)
        assert registry.get("CPU").is_eligible(standalone)


class TestShippedDefaults:
    """Weights and rules seeded at deployment."""

    def test_weights_sum_to_100(self):
        """Enabled default weights total exactly 100."""
        assert sum(default_config(kind).weight for kind in CollectorKind) == 100.0

    def test_every_kind_has_rules(self):
        """Every kind ships at least one rule."""
        assert set(DEFAULT_RULE_SPECS) == set(CollectorKind)

    def test_rule_names_unique_per_kind(self):
        """Reset matches rules by name, so names must be unique."""
        for kind in CollectorKind:
            names = [rule.name for rule in default_rules(kind)]
            assert len(names) == len(set(names)), kind

    def test_evaluation_order_within_group(self):
        """Rules of one group are ordered 10, 20, ..."""
        rules = [r for r in default_rules(CollectorKind.CPU) if r.group == "P95CPU"]
        assert [r.evaluation_order for r in rules] == [10, 20]

    def test_default_value_tracks_threshold(self):
        """Shipped rules remember their threshold for reset."""
        for rule in default_rules(CollectorKind.DISKS):
            assert rule.default_value == rule.threshold_value

    @pytest.mark.parametrize("measurement,expected", [
        ({"P95CPU": 50}, 100.0),
        ({"P95CPU": 85}, 70.0),
        ({"P95CPU": 95}, 40.0),
        ({"P95CPU": 50, "RunnableTasks": 4}, 70.0),
    ])
    def test_cpu_ladder(self, measurement, expected):
        """The CPU ladder scores 100/70/40 with a runnable-tasks cap."""
        assert evaluate_thresholds(measurement, default_rules(CollectorKind.CPU)).score == expected

    def test_suspect_database_overrides_to_zero(self):
        """A suspect database drives DatabaseStates straight to 0."""
        rules = default_rules(CollectorKind.DATABASE_STATES)
        assert evaluate_thresholds({"SuspectOrEmergency": 1}, rules).score == 0.0
