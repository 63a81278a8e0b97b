"""
Configuration models and loading.

This module provides Pydantic models for issuesync configuration
with multi-layer merging: defaults < user < project < env vars.
"""

from .env import load_layered_env
from .loader import (
    clear_cache,
    find_project_root,
    get_project_config_path,
    get_user_config_path,
    load_config,
    write_project_config,
)
from .models import DisplayConfig, IssueSyncConfig, SyncConfig

__all__ = [
    # Models
    "DisplayConfig",
    "IssueSyncConfig",
    "SyncConfig",
    # Loader functions
    "clear_cache",
    "find_project_root",
    "get_project_config_path",
    "get_user_config_path",
    "load_config",
    "load_layered_env",
    "write_project_config",
]
