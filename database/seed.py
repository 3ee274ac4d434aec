"""
Database - Seed of Shipped Defaults.

============================================================
RESPONSIBILITY
============================================================
Creates the shipped CollectorConfig row and default threshold
rules for every registered collector kind.

- Idempotent: existing configs and rules are left untouched
- Works against any ConfigStore (SQL or in-memory)

============================================================
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from collectors.registry import CollectorRegistry
from health_scoring.stores import ConfigStore

logger = logging.getLogger(__name__)


@dataclass
class SeedReport:
    """What a seed pass created."""

    configs_created: List[str] = field(default_factory=list)
    rules_created: Dict[str, int] = field(default_factory=dict)

    @property
    def total_rules(self) -> int:
        return sum(self.rules_created.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "configs_created": list(self.configs_created),
            "rules_created": dict(self.rules_created),
            "total_rules": self.total_rules,
        }


def seed_defaults(config_store: ConfigStore, registry: CollectorRegistry) -> SeedReport:
    """
    Seed configs and rules for every kind that has none.

    Returns:
        SeedReport of created rows
    """
    report = SeedReport()

    for spec in registry.specs():
        name = spec.name
        if not config_store.has_config(name):
            config_store.save_config(spec.default_config())
            report.configs_created.append(name)

        if not config_store.list_rules(name):
            rules = spec.default_rules()
            for rule in rules:
                config_store.save_rule(rule)
            if rules:
                report.rules_created[name] = len(rules)

    if report.configs_created or report.rules_created:
        logger.info(
            f"Seeded defaults | configs={len(report.configs_created)} | rules={report.total_rules}"
        )
    else:
        logger.debug("Seed skipped; every collector already configured")
    return report


__all__ = [
    "SeedReport",
    "seed_defaults",
]
