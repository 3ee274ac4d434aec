"""
Collectors - Metric Sampler.

============================================================
RESPONSIBILITY
============================================================
The transport that obtains a raw metric payload for one
(collector kind, instance) pair. Opaque to scoring: a
sampler either returns a JSON-like mapping or raises.

- MetricSampler: interface
- HttpMetricSampler: metrics gateway over aiohttp
    GET {base_url}/{collector_name}/{instance_name}

Timeouts are enforced by the collector; a sampler failure
raises MeasurementError.

============================================================
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from urllib.parse import quote
import asyncio
import logging

import aiohttp

from core.exceptions import MeasurementError

from .provider import InstanceInfo


logger = logging.getLogger(__name__)


class MetricSampler(ABC):
    """Per-instance raw metric transport."""

    @abstractmethod
    async def fetch(
        self,
        collector_name: str,
        instance: InstanceInfo,
        timeout_seconds: float,
    ) -> Dict[str, Any]:
        """
        Raw payload for one instance.

        Raises:
            MeasurementError: instance unreachable or payload invalid
        """

    async def close(self) -> None:
        """Release resources."""


class HttpMetricSampler(MetricSampler):
    """Fetches payloads from a metrics gateway."""

    def __init__(
        self,
        base_url: str,
        session: Optional[aiohttp.ClientSession] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._headers = {"Accept": "application/json", **(headers or {})}

    def url_for(self, collector_name: str, instance: InstanceInfo) -> str:
        return f"{self._base_url}/{quote(collector_name)}/{quote(instance.instance_name, safe='')}"

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self._headers)
            self._owns_session = True
        return self._session

    async def fetch(
        self,
        collector_name: str,
        instance: InstanceInfo,
        timeout_seconds: float,
    ) -> Dict[str, Any]:
        session = await self._get_session()
        url = self.url_for(collector_name, instance)
        params = {"sql_major_version": str(instance.sql_major_version)}
        logger.debug(f"Sampling {collector_name} on {instance.instance_name} | url={url}")

        try:
            async with session.get(
                url,
                params=params,
                timeout=aiohttp.ClientTimeout(total=timeout_seconds),
            ) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise MeasurementError(
                        f"Metrics gateway returned HTTP {response.status}: {body[:200]}",
                        collector_name=collector_name,
                        instance_name=instance.instance_name,
                    )
                payload = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise MeasurementError(
                f"Metrics gateway unreachable: {e}",
                collector_name=collector_name,
                instance_name=instance.instance_name,
                cause=e,
            ) from e
        except asyncio.TimeoutError as e:
            raise MeasurementError(
                f"Sampling timed out after {timeout_seconds}s",
                collector_name=collector_name,
                instance_name=instance.instance_name,
                cause=e,
            ) from e
        except ValueError as e:
            raise MeasurementError(
                f"Metrics gateway returned invalid JSON: {e}",
                collector_name=collector_name,
                instance_name=instance.instance_name,
                cause=e,
            ) from e

        if not isinstance(payload, dict):
            raise MeasurementError(
                "Metrics payload is not a JSON object",
                collector_name=collector_name,
                instance_name=instance.instance_name,
            )
        return payload

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()


__all__ = [
    "MetricSampler",
    "HttpMetricSampler",
]
