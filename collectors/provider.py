"""
Collectors - Instance Provider.

============================================================
RESPONSIBILITY
============================================================
Supplies the list of monitorable instances to collectors.

- StaticInstanceProvider: fixed list (development, tests)
- HttpInstanceProvider: inventory REST endpoint via aiohttp,
  cached for a TTL, filtered for DMZ/AWS/excluded instances

An inventory failure raises InventoryError; the collector run
that asked for instances is then marked Failed.

============================================================
INVENTORY FORMAT
============================================================
A JSON array of objects:
    NombreInstancia  instance name (required)
    ambiente         environment
    hostingSite      "AWS", "OnPremise", ...
    MajorVersion     SQL Server major version
    AlwaysOn         "Enabled" / "Disabled"
Keys are also accepted in camelCase.

============================================================
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional
import asyncio
import logging

import aiohttp

from core.clock import ClockFactory, ClockProtocol
from core.exceptions import InventoryError


logger = logging.getLogger(__name__)

DEFAULT_SQL_MAJOR_VERSION = 11


# ============================================================
# INSTANCE INFO
# ============================================================

@dataclass(frozen=True)
class InstanceInfo:
    """One monitorable database instance."""

    instance_name: str
    environment: Optional[str] = None
    hosting_site: Optional[str] = None
    sql_major_version: int = DEFAULT_SQL_MAJOR_VERSION
    sql_version: Optional[str] = None
    is_always_on: bool = False

    @property
    def is_dmz(self) -> bool:
        return "dmz" in self.instance_name.lower()

    @property
    def is_aws(self) -> bool:
        return (self.hosting_site or "").lower() == "aws"

    @property
    def host_name(self) -> str:
        """Server part of a named instance (before the backslash)."""
        return self.instance_name.split("\\", 1)[0]

    @property
    def short_name(self) -> str:
        return self.host_name.split(".", 1)[0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_name": self.instance_name,
            "environment": self.environment,
            "hosting_site": self.hosting_site,
            "sql_major_version": self.sql_major_version,
            "sql_version": self.sql_version,
            "is_always_on": self.is_always_on,
            "is_dmz": self.is_dmz,
            "is_aws": self.is_aws,
        }


def parse_inventory_item(item: Dict[str, Any]) -> Optional[InstanceInfo]:
    """Parse one inventory element; None when it has no instance name."""

    def pick(*keys: str) -> Optional[str]:
        for key in keys:
            value = item.get(key)
            if value is not None and str(value).strip():
                return str(value).strip()
        return None

    name = pick("NombreInstancia", "nombreInstancia")
    if not name:
        return None

    version_raw = pick("MajorVersion", "majorVersion")
    try:
        major = int(version_raw) if version_raw else 0
    except ValueError:
        major = 0

    always_on = pick("AlwaysOn", "alwaysOn") or ""

    return InstanceInfo(
        instance_name=name,
        environment=pick("ambiente", "Ambiente"),
        hosting_site=pick("hostingSite", "HostingSite"),
        sql_major_version=major or DEFAULT_SQL_MAJOR_VERSION,
        sql_version=version_raw,
        is_always_on=always_on.lower() == "enabled",
    )


# ============================================================
# PROVIDER INTERFACE
# ============================================================

class InstanceProvider(ABC):
    """Source of the instances eligible for a collector."""

    @abstractmethod
    async def get_instances(self, collector_name: str) -> List[InstanceInfo]:
        """
        Instances eligible for a collector.

        Raises:
            InventoryError: inventory unavailable
        """

    async def get_instance(self, instance_name: str, collector_name: str) -> Optional[InstanceInfo]:
        """Look up one instance by name (case-insensitive)."""
        target = instance_name.lower()
        for instance in await self.get_instances(collector_name):
            if instance.instance_name.lower() == target:
                return instance
        return None

    async def close(self) -> None:
        """Release resources."""


class StaticInstanceProvider(InstanceProvider):
    """Fixed instance list."""

    def __init__(self, instances: Iterable[InstanceInfo]):
        self._instances = list(instances)

    async def get_instances(self, collector_name: str) -> List[InstanceInfo]:
        return list(self._instances)


# ============================================================
# HTTP PROVIDER
# ============================================================

class HttpInstanceProvider(InstanceProvider):
    """
    Inventory REST endpoint with a TTL cache.

    Concurrent callers share one fetch per expiry.
    """

    def __init__(
        self,
        url: str,
        cache_ttl_seconds: int = 300,
        include_dmz: bool = False,
        include_aws: bool = True,
        excluded_instances: Optional[Iterable[str]] = None,
        timeout_seconds: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._url = url
        self._cache_ttl = timedelta(seconds=cache_ttl_seconds)
        self._include_dmz = include_dmz
        self._include_aws = include_aws
        self._excluded = {name.strip().lower() for name in excluded_instances or [] if name.strip()}
        self._timeout = timeout_seconds
        self._session = session
        self._owns_session = session is None
        self._clock = clock

        self._cache: Optional[List[InstanceInfo]] = None
        self._cache_expires_at: Optional[datetime] = None
        self._cache_lock = asyncio.Lock()

    @property
    def clock(self) -> ClockProtocol:
        return self._clock or ClockFactory.get_clock()

    # --------------------------------------------------------
    # Public
    # --------------------------------------------------------

    async def get_instances(self, collector_name: str) -> List[InstanceInfo]:
        instances = await self._get_inventory()
        return [i for i in instances if self._is_eligible(i)]

    def invalidate_cache(self) -> None:
        self._cache = None
        self._cache_expires_at = None

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    # --------------------------------------------------------
    # Filtering
    # --------------------------------------------------------

    def _is_eligible(self, instance: InstanceInfo) -> bool:
        if instance.instance_name.lower() in self._excluded:
            return False
        if instance.is_dmz and not self._include_dmz:
            return False
        if instance.is_aws and not self._include_aws:
            return False
        return True

    # --------------------------------------------------------
    # Fetching
    # --------------------------------------------------------

    async def _get_inventory(self) -> List[InstanceInfo]:
        async with self._cache_lock:
            now = self.clock.now()
            if self._cache is not None and self._cache_expires_at and now < self._cache_expires_at:
                return self._cache

            instances = await self._fetch()
            self._cache = instances
            self._cache_expires_at = now + self._cache_ttl
            return instances

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def _fetch(self) -> List[InstanceInfo]:
        session = await self._get_session()
        try:
            async with session.get(self._url) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise InventoryError(
                        f"Inventory returned HTTP {response.status}: {body[:200]}",
                        source=self._url,
                    )
                payload = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise InventoryError(f"Inventory unreachable: {e}", source=self._url, cause=e) from e
        except asyncio.TimeoutError as e:
            raise InventoryError("Inventory request timed out", source=self._url, cause=e) from e
        except ValueError as e:
            raise InventoryError(f"Inventory returned invalid JSON: {e}", source=self._url, cause=e) from e

        if not isinstance(payload, list):
            raise InventoryError("Inventory response is not a JSON array", source=self._url)

        instances = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            instance = parse_inventory_item(item)
            if instance is not None:
                instances.append(instance)

        logger.info(f"Fetched {len(instances)} instances from inventory at {self._url}")
        return instances


__all__ = [
    "DEFAULT_SQL_MAJOR_VERSION",
    "InstanceInfo",
    "parse_inventory_item",
    "InstanceProvider",
    "StaticInstanceProvider",
    "HttpInstanceProvider",
]
