"""Tests for CLI health checks and CLI selection."""

from __future__ import annotations

import asyncio

import pytest

from storyloop.core.config.models import CLIConfig
from storyloop.core.errors import NoCLIAvailableError, UnknownCLIError
from storyloop.core.selector.health import HealthCache, run_version_check
from storyloop.core.selector.selector import CLISelector, SelectionSource


class FakeCheck:
    """Health check double recording calls; healthy CLIs are listed up front."""

    def __init__(self, healthy: set[str], delay: float = 0.0) -> None:
        self.healthy = healthy
        self.delay = delay
        self.calls: list[str] = []

    async def __call__(self, cli: str, timeout: float) -> tuple[bool, str]:
        self.calls.append(cli)
        if self.delay:
            await asyncio.sleep(self.delay)
        if cli in self.healthy:
            return True, f"{cli} 1.0.0"
        return False, "exit code 1"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _selector(healthy: set[str], installed: set[str] | None = None, **kwargs) -> CLISelector:
    fake = FakeCheck(healthy)
    cache = HealthCache(check_fn=fake, **kwargs)
    installed = healthy if installed is None else installed
    return CLISelector(cache, which=lambda cli: f"/usr/bin/{cli}" if cli in installed else None)


class TestHealthCache:
    """Tests for HealthCache."""

    @pytest.mark.asyncio
    async def test_cache_hit(self):
        """Test a second check within the TTL does not check again."""
        fake = FakeCheck({"claude"})
        cache = HealthCache(check_fn=fake)
        assert await cache.check("claude") is True
        assert await cache.check("claude") is True
        assert fake.calls == ["claude"]
        assert cache.get("claude").reason == "claude 1.0.0"

    @pytest.mark.asyncio
    async def test_ttl_expiry(self):
        """Test an expired entry is checked again."""
        fake = FakeCheck({"codex"})
        clock = FakeClock()
        cache = HealthCache(check_fn=fake, ttl_seconds=300, clock=clock)
        await cache.check("codex")
        clock.now += 301
        assert cache.get("codex") is None
        await cache.check("codex")
        assert fake.calls == ["codex", "codex"]

    @pytest.mark.asyncio
    async def test_single_flight(self):
        """Test concurrent checks for one CLI spawn a single version check."""
        fake = FakeCheck({"claude"}, delay=0.05)
        cache = HealthCache(check_fn=fake)
        results = await asyncio.gather(*(cache.check("claude") for _ in range(5)))
        assert results == [True] * 5
        assert fake.calls == ["claude"]

    @pytest.mark.asyncio
    async def test_unhealthy_cached(self):
        """Test failures are cached with a reason."""
        cache = HealthCache(check_fn=FakeCheck(set()))
        assert await cache.check("gemini") is False
        entry = cache.get("gemini")
        assert entry.is_healthy is False
        assert entry.reason == "exit code 1"

    @pytest.mark.asyncio
    async def test_check_exception_is_unhealthy(self):
        """Test a check that raises marks the CLI unhealthy."""

        async def broken(cli: str, timeout: float) -> tuple[bool, str]:
            raise RuntimeError("spawn failed")

        cache = HealthCache(check_fn=broken)
        assert await cache.check("aider") is False
        assert cache.get("aider").reason == "spawn failed"

    @pytest.mark.asyncio
    async def test_unknown_cli_never_checked(self):
        """Test non-whitelisted identifiers raise before anything runs."""
        fake = FakeCheck({"rm"})
        cache = HealthCache(check_fn=fake)
        with pytest.raises(UnknownCLIError):
            await cache.check("rm")
        assert fake.calls == []

    @pytest.mark.asyncio
    async def test_clear_and_snapshot(self):
        """Test clear() forgets results and snapshot() lists live entries."""
        cache = HealthCache(check_fn=FakeCheck({"claude"}))
        await cache.check("claude")
        await cache.check("codex")
        assert {e.cli for e in cache.snapshot()} == {"claude", "codex"}
        cache.clear("claude")
        assert [e.cli for e in cache.snapshot()] == ["codex"]
        cache.clear()
        assert cache.snapshot() == []


class TestVersionCheck:
    """Tests for the real --version check against fake executables."""

    @pytest.mark.asyncio
    async def test_healthy(self, make_script, fake_path):
        """Test exit 0 is healthy and the first line is the reason."""
        make_script("claude", 'echo "1.2.3 (Claude Code)"\n')
        assert await run_version_check("claude", 5.0) == (True, "1.2.3 (Claude Code)")

    @pytest.mark.asyncio
    async def test_nonzero(self, make_script, fake_path):
        """Test a nonzero exit is unhealthy with detail."""
        make_script("codex", 'echo "not logged in" >&2\nexit 1\n')
        healthy, reason = await run_version_check("codex", 5.0)
        assert healthy is False
        assert "exit code 1" in reason
        assert "not logged in" in reason

    @pytest.mark.asyncio
    async def test_hang(self, make_script, fake_path):
        """Test a hanging --version times out as unhealthy."""
        make_script("gemini", "sleep 30\n")
        healthy, reason = await run_version_check("gemini", 0.3)
        assert healthy is False
        assert "timed out" in reason


class TestCLISelector:
    """Tests for the CLI priority chain."""

    @pytest.mark.asyncio
    async def test_project_override(self):
        """Test the PRD cli wins when healthy."""
        selector = _selector({"claude", "codex"})
        resolution = await selector.resolve("codex", "claude")
        assert resolution.cli == "codex"
        assert resolution.source == SelectionSource.PROJECT_OVERRIDE

    @pytest.mark.asyncio
    async def test_unhealthy_override_falls_to_preference(self):
        """Test an unhealthy override falls back to the global preference."""
        selector = _selector({"claude"}, installed={"claude", "codex"})
        resolution = await selector.resolve("codex", "claude")
        assert resolution.cli == "claude"
        assert resolution.source == SelectionSource.GLOBAL_PREFERENCE

    @pytest.mark.asyncio
    async def test_fallback_chain_order(self):
        """Test project fallbacks come before global fallbacks."""
        selector = _selector({"aider", "opencode"})
        resolution = await selector.resolve(
            None, None, ["gemini", "aider"], global_fallback_chain=["opencode"]
        )
        assert resolution.cli == "aider"
        assert resolution.source == SelectionSource.FALLBACK_CHAIN

    @pytest.mark.asyncio
    async def test_auto_detect_canonical_order(self):
        """Test auto-detect walks the whitelist in order."""
        selector = _selector({"codex", "opencode"})
        resolution = await selector.resolve()
        assert resolution.cli == "opencode"
        assert resolution.source == SelectionSource.AUTO_DETECT

    @pytest.mark.asyncio
    async def test_auto_detect_requires_installed(self):
        """Test CLIs not on PATH are never checked during auto-detect."""
        selector = _selector({"claude"}, installed=set())
        with pytest.raises(NoCLIAvailableError):
            await selector.resolve()
        assert selector.health._check_fn.calls == []

    @pytest.mark.asyncio
    async def test_unknown_ids_skipped(self):
        """Test non-whitelisted overrides are ignored, not executed."""
        selector = _selector({"claude"})
        resolution = await selector.resolve("rm -rf /", "bash", ["sh"])
        assert resolution.cli == "claude"
        assert resolution.source == SelectionSource.AUTO_DETECT
        assert "rm -rf /" not in selector.health._check_fn.calls

    @pytest.mark.asyncio
    async def test_nothing_available(self):
        """Test NoCLIAvailableError lists what was tried, each CLI once."""
        selector = _selector(set(), installed={"claude"})
        with pytest.raises(NoCLIAvailableError) as exc_info:
            await selector.resolve("claude", "claude", ["claude"])
        assert exc_info.value.tried.count("claude") == 1
        assert selector.health._check_fn.calls == ["claude"]

    def test_installed(self):
        """Test installed() keeps canonical order."""
        selector = _selector(set(), installed={"aider", "claude"})
        assert selector.installed() == ["claude", "aider"]

    def test_from_config(self):
        """Test from_config carries the health TTL and timeout into the cache."""
        selector = CLISelector.from_config(
            CLIConfig(health_ttl_seconds=42, health_timeout_seconds=1.5)
        )
        assert selector.health.ttl_seconds == 42
        assert selector.health.timeout_seconds == 1.5
