"""
Configuration manager.

This module loads the bridge configuration from a JSON file plus environment
variables (environment wins), saves it back, validates and exports it.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..logging_config import get_logger
from .schema import BridgeSettings

logger = get_logger(__name__)

DEFAULT_CONFIG_FILE = "config/callbridge.json"
CONFIG_FILE_ENV = "CALLBRIDGE_CONFIG_FILE"
ENV_PREFIX = "CALLBRIDGE_"


def _deep_merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigManager:
    """
    Configuration manager.

    This class manages the application configuration, including:
    - Loading from JSON files and environment variables
    - Validation and error handling
    - Saving and exporting (with secrets masked)
    """

    def __init__(self, config_file: Optional[str] = None):
        self.config_file_path = Path(config_file or os.getenv(CONFIG_FILE_ENV, DEFAULT_CONFIG_FILE))
        self.config: Optional[BridgeSettings] = None
        self.load_config()

    def _read_file(self) -> Dict[str, Any]:
        if not self.config_file_path.exists():
            return {}
        with open(self.config_file_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"{self.config_file_path} must contain a JSON object")
        return data

    def load_config(self) -> BridgeSettings:
        """
        Load configuration from file and environment variables.

        Returns:
            BridgeSettings: The loaded configuration
        """
        try:
            file_config = self._read_file()
            self.config = BridgeSettings(**file_config)
            logger.debug("Configuration loaded", path=str(self.config_file_path))
            return self.config

        except (OSError, ValueError, ValidationError) as e:
            logger.error("Failed to load configuration", path=str(self.config_file_path), error=str(e))
            logger.warning("Using default configuration")
            try:
                self.config = BridgeSettings()
            except ValidationError as env_error:
                logger.error("Failed to load default configuration", error=str(env_error))
                self.config = BridgeSettings.model_construct()
            return self.config

    def reload_config(self) -> BridgeSettings:
        """Reload configuration from file."""
        return self.load_config()

    def save_config(self, config: Optional[BridgeSettings] = None) -> bool:
        """
        Save configuration to file.

        Args:
            config: Configuration to save. If None, saves current config.

        Returns:
            bool: True if saved successfully, False otherwise.
        """
        try:
            config_to_save = config or self.config
            self.config_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file_path, 'w', encoding='utf-8') as f:
                json.dump(config_to_save.model_dump(mode="json"), f, indent=2, ensure_ascii=False)
            logger.info("Configuration saved", path=str(self.config_file_path))
            return True

        except OSError as e:
            logger.error("Failed to save configuration", path=str(self.config_file_path), error=str(e))
            return False

    def get_config(self) -> BridgeSettings:
        """Get the current configuration."""
        return self.config

    def update_config(self, updates: Dict[str, Any]) -> bool:
        """
        Update configuration with new values (nested sections are merged).

        Returns:
            bool: True if updated and saved, False otherwise.
        """
        try:
            merged = _deep_merge(self.config.model_dump(mode="json"), updates)
            self.config = BridgeSettings(**merged)
        except ValidationError as e:
            logger.error("Failed to update configuration", error=str(e))
            return False
        return self.save_config()

    def validate_config(self) -> tuple[bool, List[str]]:
        """
        Validate the configuration file together with the environment.

        Returns:
            tuple: (is_valid, error_messages)
        """
        try:
            BridgeSettings(**self._read_file())
            return True, []
        except ValidationError as e:
            return False, [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ]
        except (OSError, ValueError) as e:
            return False, [f"{self.config_file_path}: {e}"]

    def get_environment_variables(self) -> Dict[str, str]:
        """Environment variables that affect configuration."""
        return {k: v for k, v in os.environ.items() if k.startswith(ENV_PREFIX)}

    def export_config(self, include_secrets: bool = False) -> Dict[str, Any]:
        """
        Export configuration as a dictionary.

        Args:
            include_secrets: Whether to include secret values
        """
        config_dict = self.config.model_dump(mode="json")
        if not include_secrets:
            config_dict['store']['redis_url'] = self.config.masked_redis_url()
        return config_dict


_config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Get or create the global configuration manager."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def get_config() -> BridgeSettings:
    """Get the current configuration."""
    return get_config_manager().get_config()


def reload_config() -> BridgeSettings:
    """Reload configuration from file."""
    return get_config_manager().reload_config()


def save_config(config: Optional[BridgeSettings] = None) -> bool:
    """Save configuration to file."""
    return get_config_manager().save_config(config)
