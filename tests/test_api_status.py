"""
Tests for the Claude API status check.

Status page requests run against httpx.MockTransport.
"""

from __future__ import annotations

import httpx
import pytest

from storyloop.core.config.models import QuotaConfig
from storyloop.core.quota.status import (
    INCIDENTS_URL,
    STATUS_URL,
    ApiStatus,
    ApiStatusChecker,
    ApiStatusReport,
)


def _status(indicator: str, description: str) -> httpx.Response:
    body = {"status": {"indicator": indicator, "description": description}}
    return httpx.Response(200, json=body)


def _fresh(response: httpx.Response) -> httpx.Response:
    return httpx.Response(
        response.status_code, content=response.content, headers=response.headers
    )


def _checker(status: httpx.Response, incidents: httpx.Response | None = None, seen=None, **kwargs):
    if incidents is None:
        incidents = httpx.Response(200, json={"incidents": []})

    def handle(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if str(request.url) == STATUS_URL:
            return _fresh(status)
        if str(request.url) == INCIDENTS_URL:
            return _fresh(incidents)
        return httpx.Response(404)

    return ApiStatusChecker(transport=httpx.MockTransport(handle), **kwargs)


class TestCheck:
    """Tests for reading the status page."""

    @pytest.mark.asyncio
    async def test_operational(self):
        """Test indicator 'none' is operational and does not warn."""
        report = await _checker(_status("none", "All Systems Operational")).check()
        assert report.status == ApiStatus.OPERATIONAL
        assert report.message == "All Systems Operational"
        assert report.should_warn is False

    @pytest.mark.asyncio
    async def test_degraded_with_incidents(self):
        """Test a major indicator warns and lists unresolved incidents only."""
        incidents = httpx.Response(
            200,
            json={
                "incidents": [
                    {
                        "name": "Elevated errors on Opus",
                        "impact": "major",
                        "status": "investigating",
                    },
                    {"name": "Old outage", "impact": "critical", "status": "resolved"},
                ]
            },
        )
        report = await _checker(_status("major", "Partial Outage"), incidents).check()

        assert report.status == ApiStatus.DEGRADED
        assert report.should_warn is True
        assert report.incidents == ["Elevated errors on Opus: major"]
        assert "Elevated errors on Opus" in report.describe()

    @pytest.mark.asyncio
    async def test_critical_is_outage(self):
        """Test a critical indicator maps to outage."""
        report = await _checker(_status("critical", "Major Outage")).check()
        assert report.status == ApiStatus.OUTAGE

    @pytest.mark.asyncio
    async def test_unreachable_is_unknown(self):
        """Test a server error yields unknown instead of raising."""
        report = await _checker(httpx.Response(503)).check()
        assert report.status == ApiStatus.UNKNOWN
        assert report.message == "Unable to check API status"
        assert report.should_warn is False

    @pytest.mark.asyncio
    async def test_malformed_body_is_unknown(self):
        """Test a body without a status object yields unknown."""
        report = await _checker(httpx.Response(200, json={"page": {}})).check()
        assert report.status == ApiStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_incident_failure_keeps_status(self):
        """Test a failing incidents feed leaves the status reading intact."""
        report = await _checker(_status("minor", "Degraded"), httpx.Response(500)).check()
        assert report.status == ApiStatus.DEGRADED
        assert report.incidents == []


class TestCache:
    """Tests for the TTL cache."""

    @pytest.mark.asyncio
    async def test_ttl_cache(self):
        """Test checks within the TTL reuse the report unless forced."""
        seen: list[httpx.Request] = []
        now = [0.0]
        checker = _checker(
            _status("none", "ok"), seen=seen, clock=lambda: now[0], ttl_seconds=60
        )

        first = await checker.check()
        requests = len(seen)
        assert await checker.check() is first
        assert len(seen) == requests

        await checker.check(force=True)
        assert len(seen) == requests * 2

        now[0] = 120.0
        await checker.check()
        assert len(seen) == requests * 3

    @pytest.mark.asyncio
    async def test_failures_cached(self):
        """Test an unreachable status page is not retried within the TTL."""
        seen: list[httpx.Request] = []
        checker = _checker(httpx.Response(503), seen=seen)

        await checker.check()
        await checker.check()

        assert len(seen) == 1
        assert checker.last_report.status == ApiStatus.UNKNOWN

    def test_from_config(self):
        """Test URLs and TTL come from QuotaConfig."""
        config = QuotaConfig(api_status_url="http://status.local/s.json", ttl_seconds=10)
        checker = ApiStatusChecker.from_config(config)
        assert checker.status_url == "http://status.local/s.json"
        assert checker.ttl_seconds == 10


class TestReport:
    """Tests for ApiStatusReport."""

    def test_describe_without_incidents(self):
        """Test describe() names the status and message."""
        report = ApiStatusReport(status=ApiStatus.OUTAGE, message="Major Outage")
        assert report.describe() == "Claude API status is 'outage': Major Outage"
