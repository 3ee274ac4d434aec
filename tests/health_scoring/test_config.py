"""
Tests for Engine Configuration.

Tests cover:
- Shipped defaults
- Validation of boundaries, ports and cap rules
- YAML loading
- Environment overlay
"""

import pytest

from core.exceptions import ConfigurationError
from health_scoring.config import (
    ConsolidationCapRule,
    EngineConfig,
    StatusBoundaries,
    default_cap_rules,
    load_config,
)
from health_scoring.models import HealthStatus


class TestDefaults:
    """Out-of-the-box configuration."""

    def test_defaults_are_valid(self):
        """The default configuration passes validation."""
        config = EngineConfig()
        assert config.validate() == []
        assert config.ensure_valid() is config

    def test_default_boundaries(self):
        """90/75/60 split the four buckets."""
        boundaries = StatusBoundaries()
        assert boundaries.classify(90) == HealthStatus.HEALTHY
        assert boundaries.classify(89.99) == HealthStatus.WARNING
        assert boundaries.classify(75) == HealthStatus.WARNING
        assert boundaries.classify(60) == HealthStatus.RISK
        assert boundaries.classify(59.99) == HealthStatus.CRITICAL

    def test_default_caps(self):
        """Backups, AlwaysOn and DatabaseStates cap the instance at 60."""
        caps = {rule.collector_name: rule for rule in default_cap_rules()}
        assert set(caps) == {"Backups", "AlwaysOn", "DatabaseStates"}
        assert all(rule.cap_value == 60.0 and rule.threshold == 10.0 for rule in caps.values())


class TestValidation:
    """Invalid settings are reported, not silently fixed."""

    @pytest.mark.parametrize("healthy,warning,risk", [
        (75, 90, 60),
        (90, 90, 60),
        (110, 75, 60),
        (90, 75, -1),
    ])
    def test_invalid_boundaries(self, healthy, warning, risk):
        """Boundaries must be strictly decreasing inside [0, 100]."""
        config = EngineConfig(status_boundaries=StatusBoundaries(healthy, warning, risk))
        assert config.validate()
        with pytest.raises(ConfigurationError):
            config.ensure_valid()

    def test_invalid_port(self):
        """The admin port must be a real TCP port."""
        errors = EngineConfig(api_port=70000).validate()
        assert any("api_port" in e for e in errors)

    def test_invalid_cap_rule(self):
        """Unknown operators and out-of-range caps are rejected."""
        config = EngineConfig(cap_rules=[
            ConsolidationCapRule(name="bad_op", operator="~"),
            ConsolidationCapRule(name="bad_cap", cap_value=120),
        ])
        errors = config.validate()
        assert len(errors) == 2

    def test_invalid_log_format(self):
        """Only json and text log formats exist."""
        assert EngineConfig(log_format="xml").validate()


class TestLoaders:
    """YAML file and environment overlay."""

    def test_from_yaml(self, tmp_path):
        """Sections of the YAML file map onto the config."""
        path = tmp_path / "engine.yaml"
        path.write_text(
            "status_boundaries:\n"
            "  healthy: 85\n"
            "  warning: 60\n"
            "  risk: 40\n"
            "cap_rules:\n"
            "  - name: io_collapsed\n"
            "    collector_name: IO\n"
            "    threshold: 15\n"
            "    cap_value: 50\n"
            "consolidation:\n"
            "  interval_seconds: 120\n"
            "inventory:\n"
            "  url: http://inventory.local/api\n"
            "  excluded_instances: [SQLTEST01]\n"
            "api:\n"
            "  port: 9090\n"
            "logging:\n"
            "  format: json\n"
        )

        config = EngineConfig.from_yaml(path)

        assert config.status_boundaries.to_dict() == {"healthy": 85, "warning": 60, "risk": 40}
        assert [rule.name for rule in config.cap_rules] == ["io_collapsed"]
        assert config.consolidation_interval_seconds == 120
        assert config.inventory_url == "http://inventory.local/api"
        assert config.excluded_instances == ["SQLTEST01"]
        assert config.api_port == 9090
        assert config.log_format == "json"
        assert config.validate() == []

    def test_from_env_overlays_base(self, monkeypatch):
        """HEALTH_* variables override the base values."""
        monkeypatch.setenv("HEALTH_CONSOLIDATION_INTERVAL_SECONDS", "60")
        monkeypatch.setenv("HEALTH_BOUNDARY_HEALTHY", "95")
        monkeypatch.setenv("HEALTH_INCLUDE_DMZ", "true")
        monkeypatch.setenv("HEALTH_EXCLUDED_INSTANCES", "SQL01, SQL02 ,")
        monkeypatch.setenv("HEALTH_API_PORT", "9000")

        config = EngineConfig.from_env(base=EngineConfig(api_host="127.0.0.1"))

        assert config.consolidation_interval_seconds == 60
        assert config.status_boundaries.healthy == 95.0
        assert config.status_boundaries.warning == 75.0
        assert config.include_dmz is True
        assert config.excluded_instances == ["SQL01", "SQL02"]
        assert config.api_port == 9000
        assert config.api_host == "127.0.0.1"

    def test_load_config_validates(self, tmp_path, monkeypatch):
        """load_config raises on an invalid file."""
        monkeypatch.delenv("HEALTH_BOUNDARY_HEALTHY", raising=False)
        path = tmp_path / "engine.yaml"
        path.write_text("status_boundaries:\n  healthy: 50\n  warning: 75\n  risk: 60\n")
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_load_config_without_file(self, tmp_path):
        """A missing file falls back to defaults."""
        config = load_config(tmp_path / "missing.yaml")
        assert config.status_boundaries.healthy == 90.0

    def test_to_dict_sections(self):
        """to_dict groups settings by section."""
        data = EngineConfig().to_dict()
        assert set(data) >= {"consolidation", "status_boundaries", "cap_rules", "inventory", "api", "logging"}
