"""
Quota tracker: polls each provider for remaining capacity.

Provider checks run concurrently over a shared httpx.AsyncClient. Every check
returns a ProviderQuota; failures become ``status=error`` and never raise.
Results are cached for a TTL and the last snapshot is written to
``quotas.json`` so the CLI can show it offline.

Credentials come from the opencode auth store
(``~/.local/share/opencode/auth.json``) or environment variables.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError

from storyloop.core.config.loader import get_state_dir
from storyloop.core.config.models import QuotaConfig
from storyloop.core.prd.store import write_json_atomic
from storyloop.core.routing.catalog import models_for_provider
from storyloop.core.routing.models import Provider

from .models import ProviderQuota, QuotaStatus, QuotaType

logger = logging.getLogger(__name__)

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_CHECK_MODEL = "claude-3-5-haiku-20241022"
OPENROUTER_CREDITS_URL = "https://openrouter.ai/api/v1/credits"
DEFAULT_LM_STUDIO_URL = "http://localhost:1234/v1"

CLAUDE_DAILY_TOKENS = 5_000_000
CLAUDE_WEEKLY_TOKENS = 30_000_000
SUBSCRIPTION_LIMITED_PERCENT = 90.0
RATE_LIMIT_LOW_TOKENS = 10_000

# Env vars checked per provider, in order
API_KEY_ENV: dict[Provider, tuple[str, ...]] = {
    Provider.ANTHROPIC: ("ANTHROPIC_API_KEY",),
    Provider.OPENROUTER: ("OPENROUTER_API_KEY",),
    Provider.OPENAI: ("OPENAI_API_KEY",),
    Provider.GEMINI: ("GOOGLE_API_KEY", "GEMINI_API_KEY"),
}

# Keys in auth.json differ from provider ids for gemini
AUTH_STORE_KEY: dict[Provider, str] = {
    Provider.ANTHROPIC: "anthropic",
    Provider.OPENROUTER: "openrouter",
    Provider.OPENAI: "openai",
    Provider.GEMINI: "google",
}


def default_auth_path() -> Path:
    return Path.home() / ".local" / "share" / "opencode" / "auth.json"


def default_claude_projects_dir() -> Path:
    return Path.home() / ".claude" / "projects"


def default_snapshot_path() -> Path:
    return get_state_dir() / "quotas.json"


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class AuthStore:
    """Read-only view of the opencode auth.json credential store."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or default_auth_path()
        self._data: dict[str, Any] | None = None

    def _load(self) -> dict[str, Any]:
        if self._data is None:
            self._data = {}
            if self.path.exists():
                try:
                    raw = json.loads(self.path.read_text(encoding="utf-8"))
                    if isinstance(raw, dict):
                        self._data = raw
                except (OSError, json.JSONDecodeError) as e:
                    logger.debug("Could not read auth store %s: %s", self.path, e)
        return self._data

    def entry(self, key: str) -> dict[str, Any] | None:
        value = self._load().get(key)
        return value if isinstance(value, dict) else None

    def token(self, key: str) -> str | None:
        """Access token for oauth entries, key for api entries."""
        entry = self.entry(key)
        if entry is None:
            return None
        kind = entry.get("type")
        if kind == "oauth":
            token = entry.get("access")
        elif kind == "api":
            token = entry.get("key")
        else:
            token = entry.get("apiKey") or entry.get("key")
        return str(token) if token else None

    def is_oauth(self, key: str) -> bool:
        entry = self.entry(key)
        return entry is not None and entry.get("type") == "oauth"


# ---------------------------------------------------------------------------
# Claude subscription usage
# ---------------------------------------------------------------------------


@dataclass
class SessionUsage:
    daily_tokens: int = 0
    weekly_tokens: int = 0

    @property
    def daily_percent(self) -> float:
        return min(100.0, self.daily_tokens / CLAUDE_DAILY_TOKENS * 100)

    @property
    def weekly_percent(self) -> float:
        return min(100.0, self.weekly_tokens / CLAUDE_WEEKLY_TOKENS * 100)


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def claude_session_usage(projects_dir: Path, now: datetime | None = None) -> SessionUsage:
    """
    Sum token usage from Claude session logs.

    Scans ``<projects_dir>/*/*.jsonl`` for lines carrying ``message.usage``;
    tokens since local midnight count toward the daily total, tokens from
    the last seven days toward the weekly total.
    """
    now = now or datetime.now().astimezone()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    week_ago = now - timedelta(days=7)
    usage = SessionUsage()
    if not projects_dir.is_dir():
        return usage

    for log_file in projects_dir.glob("*/*.jsonl"):
        try:
            with log_file.open(encoding="utf-8", errors="replace") as f:
                for line in f:
                    if '"usage"' not in line:
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    ts = _parse_timestamp(data.get("timestamp"))
                    message = data.get("message")
                    if ts is None or not isinstance(message, dict):
                        continue
                    tokens = message.get("usage")
                    if not isinstance(tokens, dict):
                        continue
                    total = int(tokens.get("input_tokens") or 0) + int(
                        tokens.get("output_tokens") or 0
                    )
                    if ts >= today:
                        usage.daily_tokens += total
                    if ts >= week_ago:
                        usage.weekly_tokens += total
        except OSError as e:
            logger.debug("Skipping unreadable session log %s: %s", log_file, e)
    return usage


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


def save_snapshot(quotas: Mapping[Provider, ProviderQuota], path: Path | None = None) -> None:
    path = path or default_snapshot_path()
    data = {
        "updatedAt": datetime.now(timezone.utc).isoformat(),
        "quotas": {
            p.value: q.model_dump(mode="json", by_alias=True, exclude_none=True)
            for p, q in quotas.items()
        },
    }
    write_json_atomic(path, data)


def load_snapshot(path: Path | None = None) -> dict[Provider, ProviderQuota]:
    """Last persisted quotas, or an empty dict if none or unreadable."""
    path = path or default_snapshot_path()
    if not path.exists():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        quotas = raw.get("quotas", {}) if isinstance(raw, dict) else {}
        return {Provider(k): ProviderQuota.model_validate(v) for k, v in quotas.items()}
    except (OSError, json.JSONDecodeError, ValueError, ValidationError) as e:
        logger.warning("Ignoring unreadable quota snapshot %s: %s", path, e)
        return {}


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------


class QuotaTracker:
    """
    Owns the ProviderQuota for every provider.

    Only this class writes quota state; the router reads ``quotas``.

    Args:
        env: Environment to read API keys from (defaults to os.environ).
        auth: Credential store.
        lm_studio_url: LM Studio OpenAI-compatible base URL.
        ttl_seconds: Cache lifetime for refresh().
        request_timeout: Timeout for remote provider checks.
        local_timeout: Timeout for the LM Studio check.
        claude_projects_dir: Where Claude session logs live.
        snapshot_path: quotas.json location; None disables persistence.
        transport: httpx transport (tests pass httpx.MockTransport).
    """

    def __init__(
        self,
        *,
        env: Mapping[str, str] | None = None,
        auth: AuthStore | None = None,
        lm_studio_url: str = DEFAULT_LM_STUDIO_URL,
        ttl_seconds: float = 300.0,
        request_timeout: float = 10.0,
        local_timeout: float = 2.0,
        claude_projects_dir: Path | None = None,
        snapshot_path: Path | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.env = os.environ if env is None else env
        self.auth = auth or AuthStore()
        self.lm_studio_url = lm_studio_url.rstrip("/")
        self.ttl_seconds = ttl_seconds
        self.request_timeout = request_timeout
        self.local_timeout = local_timeout
        self.claude_projects_dir = claude_projects_dir or default_claude_projects_dir()
        self.snapshot_path = snapshot_path
        self._transport = transport
        self._clock = clock
        self._lock = asyncio.Lock()
        self._quotas: dict[Provider, ProviderQuota] = {}
        self._checked_at: float | None = None

    @classmethod
    def from_config(
        cls,
        config: QuotaConfig,
        *,
        env: Mapping[str, str] | None = None,
        snapshot_path: Path | None = None,
    ) -> QuotaTracker:
        return cls(
            env=env,
            lm_studio_url=config.lm_studio_url,
            ttl_seconds=config.ttl_seconds,
            request_timeout=config.request_timeout_seconds,
            local_timeout=config.local_timeout_seconds,
            snapshot_path=snapshot_path,
        )

    @property
    def quotas(self) -> dict[Provider, ProviderQuota]:
        """Copy of the last refreshed quotas."""
        return dict(self._quotas)

    def get(self, provider: Provider) -> ProviderQuota | None:
        return self._quotas.get(provider)

    def is_fresh(self) -> bool:
        return (
            self._checked_at is not None
            and self._clock() - self._checked_at < self.ttl_seconds
            and bool(self._quotas)
        )

    def api_key(self, provider: Provider) -> str | None:
        token = self.auth.token(AUTH_STORE_KEY[provider])
        if token:
            return token
        for var in API_KEY_ENV[provider]:
            if value := self.env.get(var):
                return value
        return None

    async def refresh(self, force: bool = False) -> dict[Provider, ProviderQuota]:
        """
        Poll every provider concurrently.

        Returns the cached result when it is younger than the TTL unless
        ``force`` is set.
        """
        async with self._lock:
            if not force and self.is_fresh():
                return self.quotas

            async with httpx.AsyncClient(
                timeout=self.request_timeout, transport=self._transport
            ) as client:
                results = await asyncio.gather(
                    self._safe(Provider.ANTHROPIC, self.check_anthropic(client)),
                    self._safe(Provider.OPENROUTER, self.check_openrouter(client)),
                    self._safe(Provider.OPENAI, self.check_openai()),
                    self._safe(Provider.GEMINI, self.check_gemini()),
                    self._safe(Provider.LOCAL, self.check_local(client)),
                )

            self._quotas = {q.provider: q for q in results}
            self._checked_at = self._clock()

        for quota in results:
            if quota.status in (QuotaStatus.LIMITED, QuotaStatus.EXHAUSTED):
                logger.warning("%s quota is %s", quota.provider.value, quota.status.value)

        if self.snapshot_path is not None:
            try:
                save_snapshot(self._quotas, self.snapshot_path)
            except OSError as e:
                logger.warning("Failed to write quota snapshot: %s", e)
        return self.quotas

    async def _safe(self, provider: Provider, check: Any) -> ProviderQuota:
        try:
            quota: ProviderQuota = await check
            return quota
        except Exception as e:  # Checks never raise
            logger.debug("Quota check for %s failed", provider.value, exc_info=True)
            return ProviderQuota(
                provider=provider,
                status=QuotaStatus.ERROR,
                quota_type=QuotaType.LOCAL if provider == Provider.LOCAL else QuotaType.RATE_LIMIT,
                error=str(e) or type(e).__name__,
            )

    def _models(self, provider: Provider) -> list[str]:
        return [m.id for m in models_for_provider(provider)]

    def _missing_key(self, provider: Provider, quota_type: QuotaType) -> ProviderQuota:
        return ProviderQuota(
            provider=provider,
            status=QuotaStatus.UNKNOWN,
            quota_type=quota_type,
            models=self._models(provider),
            error="No API key found",
        )

    # -- providers ---------------------------------------------------------

    async def check_anthropic(self, client: httpx.AsyncClient) -> ProviderQuota:
        provider = Provider.ANTHROPIC
        api_key = self.api_key(provider)
        if not api_key:
            return self._missing_key(provider, QuotaType.RATE_LIMIT)

        if self.auth.is_oauth(AUTH_STORE_KEY[provider]):
            usage = await asyncio.to_thread(claude_session_usage, self.claude_projects_dir)
            higher = max(usage.daily_percent, usage.weekly_percent)
            return ProviderQuota(
                provider=provider,
                status=(
                    QuotaStatus.LIMITED
                    if higher > SUBSCRIPTION_LIMITED_PERCENT
                    else QuotaStatus.AVAILABLE
                ),
                quota_type=QuotaType.SUBSCRIPTION,
                reported_usage_percent=higher,
                tokens_remaining=round(CLAUDE_DAILY_TOKENS * (1 - usage.daily_percent / 100)),
                tokens_limit=CLAUDE_DAILY_TOKENS,
                models=self._models(provider),
            )

        try:
            response = await client.post(
                ANTHROPIC_MESSAGES_URL,
                headers={
                    "x-api-key": api_key,
                    "anthropic-version": ANTHROPIC_VERSION,
                    "content-type": "application/json",
                },
                json={
                    "model": ANTHROPIC_CHECK_MODEL,
                    "max_tokens": 1,
                    "messages": [{"role": "user", "content": "hi"}],
                },
            )
        except httpx.HTTPError as e:
            return ProviderQuota(
                provider=provider,
                status=QuotaStatus.ERROR,
                quota_type=QuotaType.RATE_LIMIT,
                models=self._models(provider),
                error=str(e) or type(e).__name__,
            )

        remaining = _int_header(response, "anthropic-ratelimit-input-tokens-remaining")
        limit = _int_header(response, "anthropic-ratelimit-input-tokens-limit")
        if remaining is not None and limit is not None:
            return ProviderQuota(
                provider=provider,
                status=(
                    QuotaStatus.AVAILABLE
                    if remaining > RATE_LIMIT_LOW_TOKENS
                    else QuotaStatus.LIMITED
                ),
                quota_type=QuotaType.RATE_LIMIT,
                tokens_remaining=remaining,
                tokens_limit=limit,
                reset_time=response.headers.get("anthropic-ratelimit-input-tokens-reset"),
                models=self._models(provider),
            )
        return ProviderQuota(
            provider=provider,
            status=QuotaStatus.AVAILABLE if response.is_success else QuotaStatus.LIMITED,
            quota_type=QuotaType.RATE_LIMIT,
            models=self._models(provider),
        )

    async def check_openrouter(self, client: httpx.AsyncClient) -> ProviderQuota:
        provider = Provider.OPENROUTER
        api_key = self.api_key(provider)
        if not api_key:
            return self._missing_key(provider, QuotaType.CREDITS)

        try:
            response = await client.get(
                OPENROUTER_CREDITS_URL, headers={"Authorization": f"Bearer {api_key}"}
            )
            payload = response.json()
            data = payload.get("data") if isinstance(payload, dict) else None
            if not isinstance(data, dict):
                raise ValueError("Invalid response from OpenRouter")
        except (httpx.HTTPError, ValueError) as e:
            return ProviderQuota(
                provider=provider,
                status=QuotaStatus.ERROR,
                quota_type=QuotaType.CREDITS,
                models=self._models(provider),
                error=str(e) or type(e).__name__,
            )

        total = float(data.get("total_credits") or 0)
        used = float(data.get("total_usage") or 0)
        remaining = total - used
        if remaining > 1:
            status = QuotaStatus.AVAILABLE
        elif remaining > 0:
            status = QuotaStatus.LIMITED
        else:
            status = QuotaStatus.EXHAUSTED
        return ProviderQuota(
            provider=provider,
            status=status,
            quota_type=QuotaType.CREDITS,
            credits_remaining=remaining,
            credits_total=total,
            models=self._models(provider),
        )

    async def check_openai(self) -> ProviderQuota:
        provider = Provider.OPENAI
        if not self.api_key(provider):
            return self._missing_key(provider, QuotaType.SUBSCRIPTION)
        return ProviderQuota(
            provider=provider,
            status=QuotaStatus.AVAILABLE,
            quota_type=QuotaType.SUBSCRIPTION,
            models=self._models(provider),
        )

    async def check_gemini(self) -> ProviderQuota:
        provider = Provider.GEMINI
        if not self.api_key(provider):
            return self._missing_key(provider, QuotaType.RATE_LIMIT)
        return ProviderQuota(
            provider=provider,
            status=QuotaStatus.AVAILABLE,
            quota_type=QuotaType.RATE_LIMIT,
            reported_usage_percent=0.0,
            models=self._models(provider),
        )

    async def check_local(self, client: httpx.AsyncClient) -> ProviderQuota:
        provider = Provider.LOCAL
        try:
            response = await client.get(
                f"{self.lm_studio_url}/models", timeout=self.local_timeout
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("LM Studio check failed: %s", e)
            return ProviderQuota(
                provider=provider,
                status=QuotaStatus.UNAVAILABLE,
                quota_type=QuotaType.LOCAL,
                error="LM Studio not running",
            )

        loaded = payload.get("data") if isinstance(payload, dict) else None
        models = [str(m["id"]) for m in loaded or [] if isinstance(m, dict) and m.get("id")]
        return ProviderQuota(
            provider=provider,
            status=QuotaStatus.AVAILABLE,
            quota_type=QuotaType.LOCAL,
            models=models,
        )


def _int_header(response: httpx.Response, name: str) -> int | None:
    value = response.headers.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None
