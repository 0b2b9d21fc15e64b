"""
Configuration management.

Configuration file parsing, environment resolution and typed settings.
"""

from deltaflow.config.loader import Config, load_config, resolve_config
from deltaflow.config.settings import (
    ExecutionSettings,
    StateSettings,
    execution_settings_from_config,
    retry_policy_from_config,
    state_settings_from_config,
)

__all__ = [
    "load_config",
    "Config",
    "resolve_config",
    "ExecutionSettings",
    "StateSettings",
    "execution_settings_from_config",
    "retry_policy_from_config",
    "state_settings_from_config",
]
