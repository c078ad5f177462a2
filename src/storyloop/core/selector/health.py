"""
CLI health checks with an in-memory TTL cache.

A CLI is healthy when ``<cli> --version`` exits 0 within a hard timeout.
Results are cached per CLI for the TTL; an expired entry is treated
exactly like a missing one. Concurrent checks for the same CLI are
single-flight: later callers await the in-flight check instead of
spawning their own.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from storyloop.core.errors import UnknownCLIError
from storyloop.core.harness.clis import get_cli_spec, is_whitelisted
from storyloop.core.harness.process import run_process

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 3.0
DEFAULT_TTL_SECONDS = 300.0

CheckFn = Callable[[str, float], Awaitable["tuple[bool, str]"]]


@dataclass(frozen=True)
class HealthEntry:
    """Cached health result for one CLI."""

    cli: str
    is_healthy: bool
    checked_at: float
    reason: str = ""


async def run_version_check(cli: str, timeout: float) -> tuple[bool, str]:
    """Run ``<cli> --version``; healthy on exit 0 within ``timeout``."""
    spec = get_cli_spec(cli)
    result = await run_process([spec.name, *spec.version_args], timeout=timeout)
    if result.success:
        return True, result.stdout.strip().splitlines()[0] if result.stdout.strip() else ""
    if result.timed_out:
        return False, f"--version timed out after {timeout}s"
    if result.error:
        return False, result.error
    detail = result.stderr.strip() or result.stdout.strip()
    return False, f"exit code {result.exit_code}" + (f": {detail[:120]}" if detail else "")


class HealthCache:
    """
    Health check cache owned by the CLI selector.

    Args:
        ttl_seconds: How long a result stays valid.
        timeout_seconds: Hard timeout for one check.
        check_fn: Coroutine performing the actual check (injectable for tests).
        clock: Monotonic clock (injectable for tests).
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        check_fn: CheckFn | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        self._check_fn = check_fn or run_version_check
        self._clock = clock
        self._entries: dict[str, HealthEntry] = {}
        self._inflight: dict[str, asyncio.Future[bool]] = {}
        self._lock = asyncio.Lock()

    def get(self, cli: str) -> HealthEntry | None:
        """Cached entry if present and unexpired."""
        entry = self._entries.get(cli)
        if entry is None:
            return None
        if self._clock() - entry.checked_at >= self.ttl_seconds:
            return None
        return entry

    async def check(self, cli: str) -> bool:
        """
        Return whether ``cli`` is healthy, checking only on a cache miss.

        Raises:
            UnknownCLIError: If ``cli`` is not whitelisted. Nothing is spawned.
        """
        if not is_whitelisted(cli):
            raise UnknownCLIError(cli)

        async with self._lock:
            entry = self.get(cli)
            if entry is not None:
                logger.debug(
                    "Health check cache hit for %s: %s",
                    cli,
                    "healthy" if entry.is_healthy else "unhealthy",
                )
                return entry.is_healthy
            future = self._inflight.get(cli)
            owner = future is None
            if future is None:
                future = asyncio.get_running_loop().create_future()
                self._inflight[cli] = future

        if not owner:
            logger.debug("Awaiting in-flight health check for %s", cli)
            return await asyncio.shield(future)

        healthy = False
        reason = ""
        try:
            healthy, reason = await self._check_fn(cli, self.timeout_seconds)
        except Exception as e:  # A failed check means unhealthy
            reason = str(e) or type(e).__name__
        finally:
            async with self._lock:
                self._entries[cli] = HealthEntry(
                    cli=cli, is_healthy=healthy, checked_at=self._clock(), reason=reason
                )
                self._inflight.pop(cli, None)
            if not future.done():
                future.set_result(healthy)

        if healthy:
            logger.info("CLI %s is healthy%s", cli, f" ({reason})" if reason else "")
        else:
            logger.warning("CLI %s failed health check: %s", cli, reason or "unknown error")
        return healthy

    def clear(self, cli: str | None = None) -> None:
        """Forget one CLI's result, or all results."""
        if cli is None:
            self._entries.clear()
        else:
            self._entries.pop(cli, None)

    def snapshot(self) -> list[HealthEntry]:
        """All unexpired entries."""
        return [e for cli in list(self._entries) if (e := self.get(cli)) is not None]
