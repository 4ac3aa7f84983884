"""
Configuration module for the call bridge.

This module provides configuration management functionality including:
- Schema validation with Pydantic v2
- Environment variable support (CALLBRIDGE_ prefix)
- CLI tools for configuration management
"""

from .schema import (
    DEFAULT_CONFIG,
    AdmissionConfig,
    BridgeSettings,
    LoggingConfig,
    SignalingConfig,
    StoreConfig,
    UiConfig,
)
from .manager import ConfigManager, get_config, get_config_manager, reload_config, save_config

__all__ = [
    "BridgeSettings",
    "DEFAULT_CONFIG",
    "AdmissionConfig",
    "StoreConfig",
    "SignalingConfig",
    "UiConfig",
    "LoggingConfig",
    "ConfigManager",
    "get_config",
    "get_config_manager",
    "reload_config",
    "save_config",
]
