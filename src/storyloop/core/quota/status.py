"""
Anthropic API status check.

Reads the public statuspage feed before a run so the operator is warned
when the Claude API is degraded or down. Like quota data this is advisory:
an unreachable status page yields ``unknown`` and the run goes ahead.

The result (failures included) is cached for a TTL so repeated runs do not
hammer the status page.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum

import httpx
from pydantic import BaseModel, Field

from storyloop import __version__
from storyloop.core.config.models import QuotaConfig

logger = logging.getLogger(__name__)

STATUS_URL = "https://status.claude.com/api/v2/status.json"
INCIDENTS_URL = "https://status.claude.com/api/v2/incidents.json"
DEFAULT_TTL_SECONDS = 300.0
DEFAULT_TIMEOUT_SECONDS = 5.0


class ApiStatus(str, Enum):
    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    OUTAGE = "outage"
    UNKNOWN = "unknown"


# statuspage.io indicator -> ApiStatus
_INDICATORS: dict[str, ApiStatus] = {
    "none": ApiStatus.OPERATIONAL,
    "minor": ApiStatus.DEGRADED,
    "major": ApiStatus.DEGRADED,
    "critical": ApiStatus.OUTAGE,
}


class ApiStatusReport(BaseModel):
    """One reading of the status page."""

    status: ApiStatus
    message: str
    incidents: list[str] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def should_warn(self) -> bool:
        return self.status in (ApiStatus.DEGRADED, ApiStatus.OUTAGE)

    def describe(self) -> str:
        text = f"Claude API status is '{self.status.value}': {self.message}"
        if self.incidents:
            text += f" (active incidents: {', '.join(self.incidents)})"
        return text


class ApiStatusChecker:
    """
    Cached reader for the Claude status page.

    Args:
        status_url: statuspage ``status.json`` endpoint.
        incidents_url: statuspage ``incidents.json`` endpoint.
        ttl_seconds: Cache lifetime for check().
        timeout_seconds: Per-request timeout.
        transport: httpx transport (tests pass httpx.MockTransport).
        clock: Monotonic clock (injectable for tests).
    """

    def __init__(
        self,
        *,
        status_url: str = STATUS_URL,
        incidents_url: str = INCIDENTS_URL,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.status_url = status_url
        self.incidents_url = incidents_url
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._clock = clock
        self._lock = asyncio.Lock()
        self._report: ApiStatusReport | None = None
        self._checked_at: float | None = None

    @classmethod
    def from_config(cls, config: QuotaConfig) -> ApiStatusChecker:
        return cls(
            status_url=config.api_status_url,
            incidents_url=config.api_incidents_url,
            ttl_seconds=config.ttl_seconds,
        )

    @property
    def last_report(self) -> ApiStatusReport | None:
        return self._report

    def _is_fresh(self) -> bool:
        return self._checked_at is not None and self._clock() - self._checked_at < self.ttl_seconds

    async def check(self, force: bool = False) -> ApiStatusReport:
        """Current status, from cache when younger than the TTL. Never raises."""
        async with self._lock:
            if not force and self._report is not None and self._is_fresh():
                return self._report
            try:
                report = await self._fetch()
            except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
                logger.debug("API status check failed: %s", e)
                report = ApiStatusReport(
                    status=ApiStatus.UNKNOWN, message="Unable to check API status"
                )
            self._report = report
            self._checked_at = self._clock()

        if report.should_warn:
            logger.warning(report.describe())
        return report

    async def _fetch(self) -> ApiStatusReport:
        async with httpx.AsyncClient(
            timeout=self.timeout_seconds,
            transport=self._transport,
            headers={"User-Agent": f"storyloop/{__version__}"},
        ) as client:
            response = await client.get(self.status_url)
            response.raise_for_status()
            body = response.json()["status"]
            status = _INDICATORS.get(str(body.get("indicator")), ApiStatus.UNKNOWN)
            return ApiStatusReport(
                status=status,
                message=str(body.get("description", "")),
                incidents=await self._active_incidents(client),
            )

    async def _active_incidents(self, client: httpx.AsyncClient) -> list[str]:
        # Incidents are extra detail; losing them does not change the status
        try:
            response = await client.get(self.incidents_url)
            response.raise_for_status()
            incidents = response.json().get("incidents", [])
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("Could not read incidents: %s", e)
            return []
        return [
            f"{i.get('name', '?')}: {i.get('impact', '?')}"
            for i in incidents
            if isinstance(i, dict) and i.get("status") != "resolved"
        ]
