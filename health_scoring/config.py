"""
Health Scoring - Configuration.

============================================================
ENGINE CONFIGURATION
============================================================

Process-level settings of the engine:
- Consolidation schedule and status boundaries
- Instance-wide cap rules applied after weighting
- Orchestrator timing (schedule refresh, drain timeout)
- Inventory and metrics gateway endpoints

Per-collector settings (interval, weight, parallel degree)
are NOT here; they live in the injected ConfigStore.

Sources, lowest to highest priority:
1. Dataclass defaults
2. YAML file (from_yaml)
3. HEALTH_* environment variables (from_env, .env supported)

============================================================
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging
import os

import yaml
from dotenv import load_dotenv

from core.exceptions import ConfigurationError

from .models import HealthStatus, RuleAction, RuleOperator, ThresholdRule


logger = logging.getLogger(__name__)

ANY_CATEGORY = "*"


# =============================================================
# STATUS BOUNDARIES
# =============================================================


@dataclass
class StatusBoundaries:
    """
    Lower bounds of each status bucket.

    score >= healthy  -> Healthy
    score >= warning  -> Warning
    score >= risk     -> Risk
    otherwise         -> Critical
    """
    healthy: float = 90.0
    warning: float = 75.0
    risk: float = 60.0

    def validate(self) -> List[str]:
        errors = []
        if not (100.0 >= self.healthy > self.warning > self.risk >= 0.0):
            errors.append(
                "status boundaries must satisfy 100 >= healthy > warning > risk >= 0 "
                f"(got {self.healthy}/{self.warning}/{self.risk})"
            )
        return errors

    def classify(self, score: float) -> HealthStatus:
        """Bucket a final score."""
        if score >= self.healthy:
            return HealthStatus.HEALTHY
        if score >= self.warning:
            return HealthStatus.WARNING
        if score >= self.risk:
            return HealthStatus.RISK
        return HealthStatus.CRITICAL

    def to_dict(self) -> Dict[str, float]:
        return {"healthy": self.healthy, "warning": self.warning, "risk": self.risk}


# =============================================================
# CONSOLIDATION CAPS
# =============================================================


@dataclass
class ConsolidationCapRule:
    """
    Instance-wide ceiling triggered by one category score.

    Expressed as a Cap threshold rule whose group is the
    category name ("*" applies to every present category).
    """
    name: str
    collector_name: str = ANY_CATEGORY
    operator: str = "<"
    threshold: float = 20.0
    cap_value: float = 60.0

    def to_threshold_rules(self, categories: List[str]) -> List[ThresholdRule]:
        """Expand into Cap rules over the given category names."""
        targets = categories if self.collector_name == ANY_CATEGORY else [self.collector_name]
        return [
            ThresholdRule(
                collector_name="Consolidation",
                group=category,
                operator=RuleOperator.parse(self.operator),
                threshold_value=self.threshold,
                action=RuleAction.CAP,
                result_value=self.cap_value,
                name=self.name,
            )
            for category in targets
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "collector_name": self.collector_name,
            "operator": self.operator,
            "threshold": self.threshold,
            "cap_value": self.cap_value,
        }


def default_cap_rules() -> List[ConsolidationCapRule]:
    """A collapsed availability category keeps the instance out of Healthy/Warning."""
    return [
        ConsolidationCapRule(name="backups_collapsed", collector_name="Backups", threshold=10.0, cap_value=60.0),
        ConsolidationCapRule(name="always_on_collapsed", collector_name="AlwaysOn", threshold=10.0, cap_value=60.0),
        ConsolidationCapRule(name="database_states_collapsed", collector_name="DatabaseStates", threshold=10.0, cap_value=60.0),
    ]


# =============================================================
# ENGINE CONFIG
# =============================================================


@dataclass
class EngineConfig:
    """Process-level engine configuration."""

    # Consolidation
    consolidation_interval_seconds: int = 300
    consolidation_startup_delay_seconds: int = 0
    status_boundaries: StatusBoundaries = field(default_factory=StatusBoundaries)
    cap_rules: List[ConsolidationCapRule] = field(default_factory=default_cap_rules)
    weight_tolerance: float = 0.01

    # Orchestrator
    schedule_refresh_seconds: int = 10
    drain_timeout_seconds: int = 60

    # Inventory
    inventory_url: Optional[str] = None
    inventory_cache_ttl_seconds: int = 300
    include_dmz: bool = False
    include_aws: bool = True
    excluded_instances: List[str] = field(default_factory=list)

    # Metrics gateway
    metrics_url: Optional[str] = None

    # Admin API
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # Persistence
    database_url: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"
    correlation_id_prefix: str = "health"

    def validate(self) -> List[str]:
        """Validate configuration, return list of errors."""
        errors = self.status_boundaries.validate()

        if self.consolidation_interval_seconds < 1:
            errors.append("consolidation_interval_seconds must be at least 1")
        if self.consolidation_startup_delay_seconds < 0:
            errors.append("consolidation_startup_delay_seconds must not be negative")
        if self.schedule_refresh_seconds < 1:
            errors.append("schedule_refresh_seconds must be at least 1")
        if self.drain_timeout_seconds < 0:
            errors.append("drain_timeout_seconds must not be negative")
        if not 0 < self.api_port < 65536:
            errors.append(f"api_port must be within 1..65535 (got {self.api_port})")
        if self.log_format not in ("json", "text"):
            errors.append(f"log_format must be 'json' or 'text' (got {self.log_format})")

        for rule in self.cap_rules:
            try:
                RuleOperator.parse(rule.operator)
            except ValueError:
                errors.append(f"cap rule {rule.name}: unknown operator {rule.operator}")
            if not 0.0 <= rule.cap_value <= 100.0:
                errors.append(f"cap rule {rule.name}: cap_value must be within [0, 100]")

        return errors

    def ensure_valid(self) -> "EngineConfig":
        """Raise ConfigurationError on the first invalid setting."""
        errors = self.validate()
        if errors:
            raise ConfigurationError(f"Invalid engine configuration: {'; '.join(errors)}")
        return self

    # ---------------------------------------------------------
    # Loaders
    # ---------------------------------------------------------

    @classmethod
    def from_env(cls, base: Optional["EngineConfig"] = None) -> "EngineConfig":
        """Overlay HEALTH_* environment variables (and .env) on a base config."""
        load_dotenv()
        config = base or cls()

        config.consolidation_interval_seconds = int(
            os.getenv("HEALTH_CONSOLIDATION_INTERVAL_SECONDS", config.consolidation_interval_seconds)
        )
        config.consolidation_startup_delay_seconds = int(
            os.getenv("HEALTH_CONSOLIDATION_STARTUP_DELAY_SECONDS", config.consolidation_startup_delay_seconds)
        )
        config.schedule_refresh_seconds = int(
            os.getenv("HEALTH_SCHEDULE_REFRESH_SECONDS", config.schedule_refresh_seconds)
        )
        config.drain_timeout_seconds = int(
            os.getenv("HEALTH_DRAIN_TIMEOUT_SECONDS", config.drain_timeout_seconds)
        )
        config.status_boundaries = StatusBoundaries(
            healthy=float(os.getenv("HEALTH_BOUNDARY_HEALTHY", config.status_boundaries.healthy)),
            warning=float(os.getenv("HEALTH_BOUNDARY_WARNING", config.status_boundaries.warning)),
            risk=float(os.getenv("HEALTH_BOUNDARY_RISK", config.status_boundaries.risk)),
        )
        config.inventory_url = os.getenv("HEALTH_INVENTORY_URL", config.inventory_url)
        config.inventory_cache_ttl_seconds = int(
            os.getenv("HEALTH_INVENTORY_CACHE_TTL_SECONDS", config.inventory_cache_ttl_seconds)
        )
        config.include_dmz = _env_bool("HEALTH_INCLUDE_DMZ", config.include_dmz)
        config.include_aws = _env_bool("HEALTH_INCLUDE_AWS", config.include_aws)
        excluded = os.getenv("HEALTH_EXCLUDED_INSTANCES")
        if excluded is not None:
            config.excluded_instances = [n.strip() for n in excluded.split(",") if n.strip()]
        config.metrics_url = os.getenv("HEALTH_METRICS_URL", config.metrics_url)
        config.api_host = os.getenv("HEALTH_API_HOST", config.api_host)
        config.api_port = int(os.getenv("HEALTH_API_PORT", config.api_port))
        config.database_url = os.getenv("DATABASE_URL", config.database_url)
        config.log_level = os.getenv("LOG_LEVEL", config.log_level)
        config.log_format = os.getenv("LOG_FORMAT", config.log_format)

        return config

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "EngineConfig":
        """Load configuration from a YAML file."""
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        config = cls()

        if "status_boundaries" in data:
            sb = data["status_boundaries"]
            config.status_boundaries = StatusBoundaries(
                healthy=sb.get("healthy", 90.0),
                warning=sb.get("warning", 75.0),
                risk=sb.get("risk", 60.0),
            )

        if "cap_rules" in data:
            config.cap_rules = [
                ConsolidationCapRule(
                    name=rule["name"],
                    collector_name=rule.get("collector_name", ANY_CATEGORY),
                    operator=rule.get("operator", "<"),
                    threshold=rule.get("threshold", 20.0),
                    cap_value=rule.get("cap_value", 60.0),
                )
                for rule in data["cap_rules"] or []
            ]

        consolidation = data.get("consolidation", {})
        config.consolidation_interval_seconds = consolidation.get("interval_seconds", 300)
        config.consolidation_startup_delay_seconds = consolidation.get("startup_delay_seconds", 0)
        config.weight_tolerance = consolidation.get("weight_tolerance", 0.01)

        orchestrator = data.get("orchestrator", {})
        config.schedule_refresh_seconds = orchestrator.get("schedule_refresh_seconds", 10)
        config.drain_timeout_seconds = orchestrator.get("drain_timeout_seconds", 60)

        inventory = data.get("inventory", {})
        config.inventory_url = inventory.get("url")
        config.inventory_cache_ttl_seconds = inventory.get("cache_ttl_seconds", 300)
        config.include_dmz = inventory.get("include_dmz", False)
        config.include_aws = inventory.get("include_aws", True)
        config.excluded_instances = list(inventory.get("excluded_instances", []))

        config.metrics_url = data.get("metrics", {}).get("url")
        api = data.get("api", {})
        config.api_host = api.get("host", "0.0.0.0")
        config.api_port = api.get("port", 8080)
        config.database_url = data.get("database_url")

        logging_section = data.get("logging", {})
        config.log_level = logging_section.get("level", "INFO")
        config.log_format = logging_section.get("format", "text")

        logger.info(f"Loaded engine configuration from {path}")
        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "consolidation": {
                "interval_seconds": self.consolidation_interval_seconds,
                "startup_delay_seconds": self.consolidation_startup_delay_seconds,
                "weight_tolerance": self.weight_tolerance,
            },
            "status_boundaries": self.status_boundaries.to_dict(),
            "cap_rules": [rule.to_dict() for rule in self.cap_rules],
            "orchestrator": {
                "schedule_refresh_seconds": self.schedule_refresh_seconds,
                "drain_timeout_seconds": self.drain_timeout_seconds,
            },
            "inventory": {
                "url": self.inventory_url,
                "cache_ttl_seconds": self.inventory_cache_ttl_seconds,
                "include_dmz": self.include_dmz,
                "include_aws": self.include_aws,
                "excluded_instances": list(self.excluded_instances),
            },
            "metrics": {"url": self.metrics_url},
            "api": {"host": self.api_host, "port": self.api_port},
            "logging": {"level": self.log_level, "format": self.log_format},
        }


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes")


def load_config(path: Optional[Union[str, Path]] = None) -> EngineConfig:
    """
    Load configuration from file (if present) and environment.

    Args:
        path: Optional path to YAML config file

    Returns:
        Validated EngineConfig
    """
    config = EngineConfig()
    if path and Path(path).exists():
        config = EngineConfig.from_yaml(path)
    return EngineConfig.from_env(base=config).ensure_valid()


__all__ = [
    "ANY_CATEGORY",
    "StatusBoundaries",
    "ConsolidationCapRule",
    "default_cap_rules",
    "EngineConfig",
    "load_config",
]
