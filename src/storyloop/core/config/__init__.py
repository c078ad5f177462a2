"""
Configuration models and loading.

Pydantic models for storyloop configuration with multi-layer merging:
defaults < user < project < env vars, plus the read-only settings file.
"""

from .loader import (
    clear_cache,
    get_project_config_path,
    get_settings_path,
    get_state_dir,
    get_user_config_path,
    get_xdg_config_home,
    load_config,
    load_settings,
)
from .models import (
    CLIConfig,
    PathsConfig,
    ProcessConfig,
    QuotaConfig,
    RoutingConfig,
    RunnerConfig,
    Settings,
    StoryloopConfig,
    VerifyConfig,
)

__all__ = [
    # Models
    "CLIConfig",
    "PathsConfig",
    "ProcessConfig",
    "QuotaConfig",
    "RoutingConfig",
    "RunnerConfig",
    "Settings",
    "StoryloopConfig",
    "VerifyConfig",
    # Loader functions
    "clear_cache",
    "get_project_config_path",
    "get_settings_path",
    "get_state_dir",
    "get_user_config_path",
    "get_xdg_config_home",
    "load_config",
    "load_settings",
]
