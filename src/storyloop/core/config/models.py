"""
Configuration data models for storyloop.

These models define the structure of .storyloop.json and
~/.config/storyloop/config.json files, plus the process-wide settings
file (settings.json), with validation and type safety via Pydantic.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from storyloop.core.routing.models import ExecutionMode


class CLIConfig(BaseModel):
    """
    CLI health checking.

    The health check runs `<cli> --version` with a hard timeout; results are
    cached in memory for the TTL.
    """

    health_timeout_seconds: float = Field(
        default=3.0, gt=0, description="Hard timeout for `<cli> --version`"
    )
    health_ttl_seconds: float = Field(
        default=300.0, gt=0, description="How long a health result stays valid"
    )


class RoutingConfig(BaseModel):
    """Model routing policy."""

    mode: ExecutionMode = Field(
        default=ExecutionMode.BALANCED, description="Execution mode for model selection"
    )
    use_learning: bool = Field(
        default=True, description="Blend learned performance into static routing"
    )
    min_learning_runs: int = Field(
        default=3, ge=1, description="Runs required before learning data is trusted"
    )
    low_reliability_threshold: float = Field(
        default=40.0,
        ge=0.0,
        le=100.0,
        description="Reliability score below which a model is down-ranked",
    )


class VerifyConfig(BaseModel):
    """Acceptance criteria verification."""

    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-command timeout")
    max_parallel: int = Field(
        default=1, ge=1, description="Criteria commands run concurrently per story"
    )
    error_max_chars: int = Field(
        default=200, ge=1, description="Truncate failure detail to this many characters"
    )


class ProcessConfig(BaseModel):
    """External CLI process lifecycle."""

    grace_seconds: float = Field(
        default=5.0, gt=0, description="Wait after SIGTERM before SIGKILL"
    )
    attempt_timeout_minutes: int = Field(
        default=60, ge=1, description="Stop an attempt that runs longer than this"
    )
    queue_size: int = Field(
        default=256, ge=1, description="Buffered output events before the pump blocks"
    )


class QuotaConfig(BaseModel):
    """Provider quota polling."""

    lm_studio_url: str = Field(
        default="http://localhost:1234/v1", description="LM Studio OpenAI-compatible base URL"
    )
    ttl_seconds: float = Field(default=300.0, gt=0, description="Quota cache lifetime")
    request_timeout_seconds: float = Field(default=10.0, gt=0)
    local_timeout_seconds: float = Field(default=2.0, gt=0)
    api_status_url: str = Field(
        default="https://status.claude.com/api/v2/status.json",
        description="statuspage status.json checked before a run",
    )
    api_incidents_url: str = Field(default="https://status.claude.com/api/v2/incidents.json")
    api_status_delay_seconds: float = Field(
        default=3.0, ge=0, description="Pause before running while the API is degraded"
    )
    ignore_api_status: bool = Field(
        default=False, description="Skip the API status check before a run"
    )

    @field_validator("lm_studio_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class PathsConfig(BaseModel):
    """Where project-local state lives."""

    state_dir_name: str = Field(default=".storyloop", description="Per-project state dir")
    archive_dir_name: str = Field(default=".archive", description="Archive dir next to the PRD")
    backup_limit: int = Field(default=20, ge=1, description="PRD backups to keep")
    prd_filename: str = Field(default="prd.json")


class RunnerConfig(BaseModel):
    """Multi-project run limits."""

    max_concurrent_projects: int = Field(default=5, ge=1)


class StoryloopConfig(BaseModel):
    """
    Main storyloop configuration.

    Combines all configuration sections. Loaded with layered merging:
    defaults < user config < project config < env vars.
    """

    cli: CLIConfig = Field(default_factory=CLIConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    verify: VerifyConfig = Field(default_factory=VerifyConfig)
    process: ProcessConfig = Field(default_factory=ProcessConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)

    model_config = ConfigDict(validate_assignment=True, extra="ignore")


SETTINGS_VERSION = 1


class Settings(BaseModel):
    """
    Process-wide settings file (settings.json).

    Known fields are typed; anything else the dashboard writes is kept
    verbatim in ``extras`` so it survives a round trip, but application
    code never reads it.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    version: int = SETTINGS_VERSION
    preferred_cli: str | None = Field(default=None, alias="preferredCli")
    cli_fallback_order: list[str] = Field(default_factory=list, alias="cliFallbackOrder")
    execution_mode: ExecutionMode | None = Field(default=None, alias="executionMode")
    extras: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def collect_extras(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known: set[str] = set()
        for name, info in cls.model_fields.items():
            known.add(name)
            if info.alias:
                known.add(info.alias)
        extras = dict(data.get("extras") or {})
        cleaned: dict[str, Any] = {}
        for key, value in data.items():
            if key in known:
                cleaned[key] = value
            else:
                extras[key] = value
        cleaned["extras"] = extras
        return cleaned

    @field_validator("cli_fallback_order", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    def to_file_dict(self) -> dict[str, Any]:
        """Serialize back to the on-disk camelCase shape, extras included."""
        data = dict(self.extras)
        data.update(
            self.model_dump(mode="json", by_alias=True, exclude_none=True, exclude={"extras"})
        )
        return data
