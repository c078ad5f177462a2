"""
CLI selection.

Resolves which external CLI to run for a project, walking a fixed priority
chain and returning the first whitelisted, healthy candidate:

    1. PRD ``cli`` override
    2. Global preferred CLI (settings.json ``preferredCli``)
    3. Fallback chain: project ``cliFallbackOrder``, then global
    4. Auto-detect: the whitelist in canonical order, installed and healthy

Identifiers from the PRD or settings that are not on the whitelist are
logged and skipped; they never reach process execution.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Iterable
from enum import Enum
from typing import NamedTuple

from storyloop.core.config.models import CLIConfig
from storyloop.core.errors import CLIUnhealthyError, NoCLIAvailableError
from storyloop.core.harness.clis import CLI_WHITELIST, is_whitelisted

from .health import HealthCache

logger = logging.getLogger(__name__)


class SelectionSource(str, Enum):
    """Which step of the priority chain chose the CLI."""

    PROJECT_OVERRIDE = "project-override"
    GLOBAL_PREFERENCE = "global-preference"
    FALLBACK_CHAIN = "fallback-chain"
    AUTO_DETECT = "auto-detect"


class Resolution(NamedTuple):
    cli: str
    source: SelectionSource


class CLISelector:
    """
    Resolves the CLI executable for a run.

    Args:
        health: Health cache; the selector owns it and all checks go through it.
        which: PATH lookup used by auto-detect (injectable for tests).
    """

    def __init__(
        self,
        health: HealthCache | None = None,
        *,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self.health = health or HealthCache()
        self._which = which

    @classmethod
    def from_config(cls, config: CLIConfig) -> CLISelector:
        return cls(
            HealthCache(
                ttl_seconds=config.health_ttl_seconds,
                timeout_seconds=config.health_timeout_seconds,
            )
        )

    async def _usable(self, cli: str, tried: list[str], *, require_installed: bool) -> bool:
        if cli in tried:
            return False
        tried.append(cli)
        if not is_whitelisted(cli):
            logger.warning("Ignoring unsupported CLI '%s' (not in whitelist)", cli)
            return False
        if require_installed and self._which(cli) is None:
            logger.debug("CLI %s is not installed", cli)
            return False
        if await self.health.check(cli):
            return True
        err = CLIUnhealthyError(cli, self._reason(cli))
        logger.warning("%s. Falling back to alternative CLI", err)
        return False

    def _reason(self, cli: str) -> str:
        entry = self.health.get(cli)
        return entry.reason if entry else ""

    async def resolve(
        self,
        project_override: str | None = None,
        global_preference: str | None = None,
        fallback_chain: Iterable[str] | None = None,
        *,
        global_fallback_chain: Iterable[str] | None = None,
    ) -> Resolution:
        """
        Resolve the CLI to use.

        Args:
            project_override: ``cli`` from the PRD.
            global_preference: ``preferredCli`` from settings.
            fallback_chain: Project-specific fallback order.
            global_fallback_chain: Global fallback order from settings.

        Returns:
            Resolution(cli, source).

        Raises:
            NoCLIAvailableError: If no whitelisted CLI is installed and healthy.
        """
        tried: list[str] = []

        if project_override:
            if await self._usable(project_override, tried, require_installed=False):
                logger.info("Using project CLI override: %s", project_override)
                return Resolution(project_override, SelectionSource.PROJECT_OVERRIDE)

        if global_preference:
            if await self._usable(global_preference, tried, require_installed=False):
                logger.info("Using global preferred CLI: %s", global_preference)
                return Resolution(global_preference, SelectionSource.GLOBAL_PREFERENCE)

        chain = [*(fallback_chain or []), *(global_fallback_chain or [])]
        for cli in chain:
            if await self._usable(cli, tried, require_installed=False):
                logger.info("Using fallback CLI: %s", cli)
                return Resolution(cli, SelectionSource.FALLBACK_CHAIN)

        for cli in CLI_WHITELIST:
            if await self._usable(cli, tried, require_installed=True):
                logger.info("Auto-detected CLI: %s", cli)
                return Resolution(cli, SelectionSource.AUTO_DETECT)

        logger.error("No CLI available (tried: %s)", ", ".join(tried) or "none")
        raise NoCLIAvailableError(tried)

    def installed(self) -> list[str]:
        """Whitelisted CLIs found on PATH, in canonical order."""
        return [cli for cli in CLI_WHITELIST if self._which(cli) is not None]
