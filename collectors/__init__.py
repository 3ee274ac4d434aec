"""
Collectors Package.

============================================================
PURPOSE
============================================================
Measures one metric category across the instance fleet and
scores it, for each of the thirteen collector kinds.

- registry: kind -> (measurement, default rules, config)
- base: generic collector run
- provider: instance inventory
- sampler: raw metric transport
- measurements / defaults: kind-specific data

============================================================
"""

from .provider import (
    InstanceInfo,
    InstanceProvider,
    StaticInstanceProvider,
    HttpInstanceProvider,
    parse_inventory_item,
)
from .sampler import MetricSampler, HttpMetricSampler
from .defaults import default_config, default_rules
from .registry import CollectorSpec, CollectorRegistry, build_default_registry
from .base import Collector, InstanceResult, RunResult, SUPPRESSED_SCORE


__all__ = [
    "InstanceInfo",
    "InstanceProvider",
    "StaticInstanceProvider",
    "HttpInstanceProvider",
    "parse_inventory_item",
    "MetricSampler",
    "HttpMetricSampler",
    "default_config",
    "default_rules",
    "CollectorSpec",
    "CollectorRegistry",
    "build_default_registry",
    "Collector",
    "InstanceResult",
    "RunResult",
    "SUPPRESSED_SCORE",
]
